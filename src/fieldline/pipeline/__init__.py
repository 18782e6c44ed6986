"""Fetch-and-cache pipeline — Source → API pages → Feature cache → Output.

The pipeline coordinates one source per run:
1. Check the feature cache for a fresh copy
2. Otherwise fetch every page concurrently from the upstream API
3. Upsert features by identity and stamp source metadata
4. Write the merged FeatureCollection for the tile generator

Components:
- PipelineDriver: Cache-or-fetch decision and artifact writing
- ParallelFetcher: Bounded-concurrency page fetching
- fetch_endpoints: Several layers fetched and merged as one dataset
"""

from fieldline.pipeline.driver import PipelineDriver, RunResult, default_output_path
from fieldline.pipeline.fetcher import FetchError, ParallelFetcher
from fieldline.pipeline.multi_endpoint import (
    Endpoint,
    EndpointReport,
    MultiEndpointResult,
    fetch_endpoints,
)

__all__ = [
    "Endpoint",
    "EndpointReport",
    "FetchError",
    "MultiEndpointResult",
    "ParallelFetcher",
    "PipelineDriver",
    "RunResult",
    "default_output_path",
    "fetch_endpoints",
]
