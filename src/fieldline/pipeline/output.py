"""Output artifacts consumed by the tile generator.

Two shapes are supported:
- a single GeoJSON FeatureCollection document
- newline-delimited JSON, one Feature per line

Both are written to a temporary sibling and moved into place, so a reader
never sees a partially written file.
"""

import json
import os
from pathlib import Path
from typing import Iterable

from fieldline.models import Feature


def _write_atomic(path: Path, write) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        with open(tmp_path, "w", encoding="utf-8") as fh:
            write(fh)
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise
    return path


def write_feature_collection(path: str | Path, features: list[Feature]) -> Path:
    """Write ``{"type": "FeatureCollection", "features": [...]}``, overwriting."""
    collection = {"type": "FeatureCollection", "features": features}
    return _write_atomic(Path(path), lambda fh: json.dump(collection, fh))


def write_ndjson(path: str | Path, features: Iterable[Feature]) -> Path:
    """Write one JSON Feature per line, overwriting."""
    def _write(fh) -> None:
        for feature in features:
            fh.write(json.dumps(feature))
            fh.write("\n")

    return _write_atomic(Path(path), _write)
