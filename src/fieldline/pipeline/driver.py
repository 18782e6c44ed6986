"""PipelineDriver — cache-or-fetch decision for one source per run.

Fast path: the source's cached copy is younger than ``max_age_hours`` →
write it straight to the output artifact without touching the network.

Refresh path: build the adapter for the source's API descriptor, fetch every
page with ParallelFetcher, upsert into the FeatureStore by the source's
identity field, stamp metadata, flush, and write the merged collection.
A failed fetch leaves the cache untouched.

Usage:
    with FeatureStore(settings.cache_dir) as store:
        driver = PipelineDriver(store)
        result = await driver.run(get_source("campbell"), "data/raw/campbell/parcels.geojson")
"""

import logging
from dataclasses import dataclass
from functools import partial
from pathlib import Path
from typing import Callable, Literal

from fieldline.cache import FeatureStore, geojson_feature_id
from fieldline.clients import PageFetcher, create_page_fetcher
from fieldline.config import settings
from fieldline.models import ApiDescriptor, FetchProgress, Source
from fieldline.pipeline.fetcher import ParallelFetcher
from fieldline.pipeline.output import write_feature_collection, write_ndjson

logger = logging.getLogger(__name__)

OutputFormat = Literal["geojson", "ndjson"]

_WRITERS = {
    "geojson": write_feature_collection,
    "ndjson": write_ndjson,
}


@dataclass
class RunResult:
    """Outcome of one pipeline run for a source."""

    source_id: str
    output_path: Path
    record_count: int
    from_cache: bool
    truncated: bool = False


def default_output_path(
    source_id: str,
    output_dir: str | Path | None = None,
    output_format: OutputFormat = "geojson",
) -> Path:
    """``{output_dir}/{source_id}/parcels.{geojson|ndjson}``."""
    base = Path(output_dir if output_dir is not None else settings.output_dir)
    return base / source_id / f"parcels.{output_format}"


class PipelineDriver:
    """Serves a source from cache or refreshes it from upstream.

    Args:
        store: Opened FeatureStore
        concurrency: Max in-flight page fetches (default: settings)
        batch_size: Records per page (default: settings)
        max_batches: Page ceiling per run (default: settings)
        max_age_hours: Staleness threshold (default: settings)
        fetcher_factory: Builds a PageFetcher for an API descriptor.
            Defaults to ``create_page_fetcher`` with client settings.
        on_progress: Per-page progress callback
    """

    def __init__(
        self,
        store: FeatureStore,
        *,
        concurrency: int | None = None,
        batch_size: int | None = None,
        max_batches: int | None = None,
        max_age_hours: float | None = None,
        fetcher_factory: Callable[[ApiDescriptor], PageFetcher] | None = None,
        on_progress: Callable[[FetchProgress], None] | None = None,
    ) -> None:
        self.store = store
        self.concurrency = concurrency or settings.concurrency
        self.batch_size = batch_size or settings.batch_size
        self.max_batches = max_batches or settings.max_batches
        self.max_age_hours = max_age_hours if max_age_hours is not None else settings.max_age_hours
        self.fetcher_factory = fetcher_factory or self._default_fetcher
        self.on_progress = on_progress

    def _default_fetcher(self, api: ApiDescriptor) -> PageFetcher:
        return create_page_fetcher(
            api,
            rate_limit=settings.rate_limit,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
            base_backoff=settings.base_backoff,
            max_backoff=settings.max_backoff,
            max_connections=self.concurrency,
        )

    async def run(
        self,
        source: Source,
        output_path: str | Path,
        force: bool = False,
        output_format: OutputFormat = "geojson",
    ) -> RunResult:
        """Produce the output artifact for ``source``.

        Args:
            source: Registry entry to serve
            output_path: Artifact destination (overwritten)
            force: Re-fetch even if the cache is fresh
            output_format: "geojson" FeatureCollection or "ndjson"

        Raises:
            FetchError: If any page fails; nothing is cached
        """
        write = _WRITERS[output_format]
        output_path = Path(output_path)
        meta = self.store.get_source_metadata(source.id)

        if not force and not self.store.needs_refresh(source.id, self.max_age_hours):
            cached = self.store.get_features(source.id)
            logger.info(
                "%s: using cached data (%s records from %s)",
                source.id, f"{meta.record_count:,}", meta.last_fetched.isoformat(),
            )
            write(output_path, cached)
            logger.info("Wrote %s (%d features from cache)", output_path, len(cached))
            return RunResult(
                source_id=source.id,
                output_path=output_path,
                record_count=len(cached),
                from_cache=True,
            )

        if meta is not None and meta.truncated:
            logger.info("%s: previous fetch was truncated, re-fetching", source.id)

        logger.info("Fetching %s from %s (%s)...", source.name, source.attribution, source.api.type)
        fetcher = ParallelFetcher(
            concurrency=self.concurrency,
            batch_size=self.batch_size,
            max_batches=self.max_batches,
            on_progress=self.on_progress,
        )
        async with self.fetcher_factory(source.api) as page_fetcher:
            result = await fetcher.fetch(page_fetcher)

        logger.info("%s: fetched %s features", source.id, f"{result.total_fetched:,}")

        self.store.upsert_features(
            source.id,
            result.features,
            partial(geojson_feature_id, id_property=source.id_field),
        )
        self.store.update_source_metadata(
            source.id,
            record_count=result.total_fetched,
            truncated=result.truncated,
            etag=result.etag,
            last_modified=result.last_modified,
        )
        self.store.flush()

        merged = self.store.get_features(source.id)
        write(output_path, merged)
        logger.info("Wrote %s (%d features)", output_path, len(merged))

        return RunResult(
            source_id=source.id,
            output_path=output_path,
            record_count=len(merged),
            from_cache=False,
            truncated=result.truncated,
        )
