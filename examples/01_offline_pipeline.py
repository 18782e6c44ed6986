"""Example 1: Offline Pipeline Run

This example shows the basic usage of fieldline: running one source through
the cache-or-fetch pipeline twice. The first run fetches every page, the
second is served from the cache without touching the adapter.

For demonstration purposes, this uses a synthetic page fetcher and an
in-memory cache. In production, the driver builds an ArcGIS or Socrata
adapter from the source's API descriptor.
"""

import asyncio
import random
import tempfile
from pathlib import Path

from fieldline.cache import FeatureStore
from fieldline.models import ArcGISApi, Page, Source
from fieldline.pipeline import PipelineDriver


DEMO_SOURCE = Source(
    id="demo",
    name="Demo Parcels",
    attribution="Nowhere County",
    api=ArcGISApi(url="https://gis.example.gov/arcgis/query", out_fields=("APN", "YEAR_BUILT")),
    id_field="APN",
)


class SyntheticParcels:
    """Page fetcher over ``n`` generated parcels."""

    def __init__(self, n: int) -> None:
        self.n = n
        self.requests = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def count(self):
        return self.n

    async def fetch_page(self, offset: int, limit: int) -> Page:
        self.requests += 1
        await asyncio.sleep(0.01)  # simulated latency
        features = [
            {
                "type": "Feature",
                "geometry": {
                    "type": "Point",
                    "coordinates": [-121.95 + random.uniform(-0.01, 0.01), 37.28],
                },
                "properties": {"APN": f"412-{i:05d}", "YEAR_BUILT": random.randint(1890, 2020)},
            }
            for i in range(offset, min(offset + limit, self.n))
        ]
        return Page(features=features, has_more=len(features) >= limit)


async def main():
    """Run the offline pipeline example."""
    print("=" * 60)
    print("fieldline — Example 1: Offline Pipeline Run")
    print("=" * 60)
    print()

    upstream = SyntheticParcels(n=1234)
    output = Path(tempfile.mkdtemp()) / "demo" / "parcels.geojson"

    with FeatureStore() as store:
        driver = PipelineDriver(
            store,
            concurrency=4,
            batch_size=100,
            max_batches=50,
            fetcher_factory=lambda api: upstream,
        )

        # Step 1: cold cache, every page is fetched
        print("Step 1: Cold run...")
        result = await driver.run(DEMO_SOURCE, output)
        print(f"  ✓ {result.record_count} features from upstream ({upstream.requests} page requests)")
        print()

        # Step 2: warm cache, no requests
        print("Step 2: Warm run...")
        before = upstream.requests
        result = await driver.run(DEMO_SOURCE, output)
        print(f"  ✓ {result.record_count} features from cache ({upstream.requests - before} page requests)")
        print()

        stats = store.get_stats()
        print(f"Cache: {stats.source_count} source(s), {stats.feature_count} features")
        print(f"Output: {result.output_path}")


if __name__ == "__main__":
    asyncio.run(main())
