"""Parquet-backed feature cache with upsert-by-identity.

Holds every cached feature per source plus per-source metadata (record count,
last fetch time) that drives staleness-based refresh decisions.

Storage structure:
    {base}/sources.parquet              one row per source
    {base}/features/{source_id}.parquet one row per feature identity

Example:
    data/cache/sources.parquet
    data/cache/features/campbell.parquet

The store is an explicit handle with an open/flush/close lifecycle. All
state is loaded at ``open()`` and mutations are applied in memory, then
written back by ``flush()`` (also on ``close()`` and context-manager exit).
Each file is written to a temporary sibling and moved into place with
``os.replace`` so an interrupted flush never leaves a half-written file.

Usage:
    with FeatureStore("data/cache") as store:
        if store.needs_refresh("campbell", max_age_hours=24):
            store.upsert_features("campbell", features, identity_fn)
            store.update_source_metadata("campbell", record_count=len(features))
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterable

import pandas as pd
import pyarrow as pa
import pyarrow.parquet as pq

from fieldline.models import Feature, IdentityFn, SourceMetadata

logger = logging.getLogger(__name__)

_SOURCES_FILE = "sources.parquet"
_FEATURES_DIR = "features"
_SOURCE_ID_RE = re.compile(r"^[A-Za-z0-9._-]+$")

_SOURCES_SCHEMA = pa.schema([
    ("source_id", pa.string()),
    ("record_count", pa.int64()),
    ("last_fetched", pa.timestamp("us", tz="UTC")),
    ("truncated", pa.bool_()),
    ("etag", pa.string()),
    ("last_modified", pa.string()),
])

_FEATURES_SCHEMA = pa.schema([
    ("feature_id", pa.string()),
    ("data", pa.string()),  # Feature serialized as JSON
    ("fetched_at", pa.timestamp("us", tz="UTC")),
])


class CacheCorruptionError(Exception):
    """On-disk cache file cannot be read or has an unexpected shape."""

    def __init__(self, path: Path, reason: str) -> None:
        super().__init__(f"Cache file {path} is unreadable: {reason}")
        self.path = path


@dataclass
class CacheStats:
    """Aggregate cache statistics."""

    source_count: int
    feature_count: int
    size_bytes: int


@dataclass
class _Entry:
    data: str
    fetched_at: datetime


def geojson_feature_id(
    feature: Feature,
    index: int,
    id_property: str | None = None,
) -> str:
    """Identity of a GeoJSON feature.

    Reads ``properties[id_property]`` when present, falling back to the
    feature's position in its batch.
    """
    if id_property:
        value = (feature.get("properties") or {}).get(id_property)
        if value:
            return str(value)
    return f"feature_{index}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _atomic_write(table: pa.Table, path: Path) -> None:
    tmp_path = path.with_name(f".{path.name}.tmp")
    try:
        pq.write_table(table, tmp_path, compression="snappy", write_statistics=True)
        os.replace(tmp_path, path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


def _read_frame(path: Path, schema: pa.Schema) -> pd.DataFrame:
    try:
        df = pq.read_table(path).to_pandas()
    except (pa.ArrowException, OSError) as e:
        raise CacheCorruptionError(path, str(e)) from e

    missing = set(schema.names) - set(df.columns)
    if missing:
        raise CacheCorruptionError(path, f"missing columns {sorted(missing)}")
    return df


def _optional_str(value: object) -> str | None:
    return value if isinstance(value, str) else None


class FeatureStore:
    """Persistent per-source feature cache.

    Args:
        base_path: Root directory for the cache. ``None`` keeps everything in
            memory (flush is a no-op), which isolates tests.
        clock: Returns the current UTC time. Injected so tests can advance
            time for staleness checks.
    """

    def __init__(
        self,
        base_path: str | Path | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.base_path = Path(base_path) if base_path is not None else None
        self._clock = clock or _utcnow
        self._metadata: dict[str, SourceMetadata] = {}
        self._features: dict[str, dict[str, _Entry]] = {}
        self._dirty_sources: set[str] = set()
        self._metadata_dirty = False
        self._opened = False

    # ── Lifecycle ──────────────────────────────────────────────

    def __enter__(self) -> "FeatureStore":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def open(self) -> "FeatureStore":
        """Load all cached state from disk.

        Raises:
            CacheCorruptionError: If any cache file is unreadable or malformed
        """
        if self._opened:
            return self

        if self.base_path is not None:
            (self.base_path / _FEATURES_DIR).mkdir(parents=True, exist_ok=True)
            self._load_metadata()
            self._load_features()
            logger.debug(
                "Opened feature cache at %s (%d sources)",
                self.base_path, len(self._features),
            )

        self._opened = True
        return self

    def flush(self) -> None:
        """Write pending changes to disk."""
        self._require_open()
        if self.base_path is None:
            self._dirty_sources.clear()
            self._metadata_dirty = False
            return

        for source_id in sorted(self._dirty_sources):
            path = self._features_path(source_id)
            entries = self._features.get(source_id)
            if entries is None:
                path.unlink(missing_ok=True)
                continue
            table = pa.Table.from_pylist(
                [
                    {"feature_id": fid, "data": e.data, "fetched_at": e.fetched_at}
                    for fid, e in entries.items()
                ],
                schema=_FEATURES_SCHEMA,
            )
            _atomic_write(table, path)
        self._dirty_sources.clear()

        if self._metadata_dirty:
            table = pa.Table.from_pylist(
                [
                    {
                        "source_id": m.source_id,
                        "record_count": m.record_count,
                        "last_fetched": m.last_fetched,
                        "truncated": m.truncated,
                        "etag": m.etag,
                        "last_modified": m.last_modified,
                    }
                    for m in self._metadata.values()
                ],
                schema=_SOURCES_SCHEMA,
            )
            _atomic_write(table, self.base_path / _SOURCES_FILE)
            self._metadata_dirty = False

    def close(self) -> None:
        """Flush pending changes and release the handle."""
        if not self._opened:
            return
        self.flush()
        self._opened = False

    # ── Metadata ───────────────────────────────────────────────

    def get_source_metadata(self, source_id: str) -> SourceMetadata | None:
        """Return metadata for a source, or None if never fetched."""
        self._require_open()
        return self._metadata.get(source_id)

    def needs_refresh(self, source_id: str, max_age_hours: float = 24.0) -> bool:
        """Whether a source must be re-fetched.

        True when the source has no metadata, when its last fetch was
        truncated by the batch ceiling, or when it is older than
        ``max_age_hours``.
        """
        meta = self.get_source_metadata(source_id)
        if meta is None:
            return True
        if meta.truncated:
            return True

        age_hours = (self._clock() - meta.last_fetched).total_seconds() / 3600
        return age_hours > max_age_hours

    def update_source_metadata(
        self,
        source_id: str,
        *,
        record_count: int | None = None,
        truncated: bool | None = None,
        etag: str | None = None,
        last_modified: str | None = None,
    ) -> SourceMetadata:
        """Merge the given fields and stamp ``last_fetched`` with now.

        Fields left as None keep their stored value.
        """
        self._require_open()
        self._validate_source_id(source_id)
        if record_count is not None and record_count < 0:
            raise ValueError(f"record_count must be >= 0, got {record_count}")

        existing = self._metadata.get(source_id)
        meta = SourceMetadata(
            source_id=source_id,
            record_count=(
                record_count if record_count is not None
                else existing.record_count if existing else 0
            ),
            last_fetched=self._clock(),
            truncated=(
                truncated if truncated is not None
                else existing.truncated if existing else False
            ),
            etag=etag if etag is not None else (existing.etag if existing else None),
            last_modified=(
                last_modified if last_modified is not None
                else existing.last_modified if existing else None
            ),
        )
        self._metadata[source_id] = meta
        self._metadata_dirty = True
        return meta

    # ── Features ───────────────────────────────────────────────

    def get_features(self, source_id: str) -> list[Feature]:
        """All cached features for a source, in insertion order."""
        self._require_open()
        entries = self._features.get(source_id, {})
        return [json.loads(e.data) for e in entries.values()]

    def get_feature_count(self, source_id: str) -> int:
        """Number of cached features for a source."""
        self._require_open()
        return len(self._features.get(source_id, {}))

    def upsert_features(
        self,
        source_id: str,
        features: Iterable[Feature],
        identity_fn: IdentityFn,
    ) -> int:
        """Insert or overwrite features keyed by ``identity_fn(feature, index)``.

        Identities and serialization are computed for the whole batch before
        the store is touched, so a failure leaves the source unchanged.
        A repeated identity replaces the earlier value in place.

        Returns:
            Number of distinct identities written
        """
        self._require_open()
        self._validate_source_id(source_id)

        now = self._clock()
        staged: dict[str, _Entry] = {}
        for index, feature in enumerate(features):
            feature_id = identity_fn(feature, index)
            staged[feature_id] = _Entry(data=json.dumps(feature), fetched_at=now)

        entries = self._features.setdefault(source_id, {})
        entries.update(staged)
        self._dirty_sources.add(source_id)
        return len(staged)

    def clear_source(self, source_id: str) -> None:
        """Drop all features and metadata for a source (full refresh)."""
        self._require_open()
        if self._features.pop(source_id, None) is not None:
            self._dirty_sources.add(source_id)
        if self._metadata.pop(source_id, None) is not None:
            self._metadata_dirty = True

    def list_sources(self) -> list[str]:
        """Sorted ids of every source with features or metadata."""
        self._require_open()
        return sorted(set(self._metadata) | set(self._features))

    def get_stats(self) -> CacheStats:
        """Get cache statistics.

        ``size_bytes`` reflects what is on disk as of the last flush.
        """
        self._require_open()
        size_bytes = 0
        if self.base_path is not None:
            size_bytes = sum(
                f.stat().st_size for f in self.base_path.rglob("*.parquet")
            )
        return CacheStats(
            source_count=len(self.list_sources()),
            feature_count=sum(len(e) for e in self._features.values()),
            size_bytes=size_bytes,
        )

    # ── Internals ──────────────────────────────────────────────

    def _require_open(self) -> None:
        if not self._opened:
            raise RuntimeError("Store not opened. Use 'with FeatureStore(...)' or call open().")

    @staticmethod
    def _validate_source_id(source_id: str) -> None:
        if not _SOURCE_ID_RE.match(source_id):
            raise ValueError(f"Invalid source id: {source_id!r}")

    def _features_path(self, source_id: str) -> Path:
        assert self.base_path is not None
        return self.base_path / _FEATURES_DIR / f"{source_id}.parquet"

    def _load_metadata(self) -> None:
        path = self.base_path / _SOURCES_FILE
        if not path.exists():
            return

        df = _read_frame(path, _SOURCES_SCHEMA)
        for row in df.itertuples(index=False):
            if not isinstance(row.source_id, str):
                raise CacheCorruptionError(path, f"source id {row.source_id!r} is not a string")
            if pd.isna(row.last_fetched):
                raise CacheCorruptionError(path, f"source {row.source_id!r} has no last_fetched")
            if pd.isna(row.record_count):
                raise CacheCorruptionError(path, f"source {row.source_id!r} has no record_count")
            if row.record_count < 0:
                raise CacheCorruptionError(
                    path, f"source {row.source_id!r} has negative record_count {row.record_count}"
                )
            if pd.isna(row.truncated):
                raise CacheCorruptionError(path, f"source {row.source_id!r} has no truncated flag")
            self._metadata[row.source_id] = SourceMetadata(
                source_id=row.source_id,
                record_count=int(row.record_count),
                last_fetched=row.last_fetched.to_pydatetime(),
                truncated=bool(row.truncated),
                etag=_optional_str(row.etag),
                last_modified=_optional_str(row.last_modified),
            )

    def _load_features(self) -> None:
        for path in sorted((self.base_path / _FEATURES_DIR).glob("*.parquet")):
            df = _read_frame(path, _FEATURES_SCHEMA)
            entries: dict[str, _Entry] = {}
            for row in df.itertuples(index=False):
                if not isinstance(row.feature_id, str):
                    raise CacheCorruptionError(path, f"feature id {row.feature_id!r} is not a string")
                if row.feature_id in entries:
                    raise CacheCorruptionError(path, f"feature {row.feature_id!r} appears twice")
                try:
                    decoded = json.loads(row.data)
                except (TypeError, ValueError) as e:
                    raise CacheCorruptionError(
                        path, f"feature {row.feature_id!r} is not valid JSON"
                    ) from e
                if not isinstance(decoded, dict) or pd.isna(row.fetched_at):
                    raise CacheCorruptionError(
                        path, f"feature {row.feature_id!r} is not a timestamped JSON object"
                    )
                entries[row.feature_id] = _Entry(
                    data=row.data,
                    fetched_at=row.fetched_at.to_pydatetime(),
                )
            self._features[path.stem] = entries
