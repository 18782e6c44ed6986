"""Parquet-based feature cache for fieldline.

Per-source feature storage with upsert-by-identity and staleness metadata.
"""

from fieldline.cache.feature_store import (
    CacheCorruptionError,
    CacheStats,
    FeatureStore,
    geojson_feature_id,
)

__all__ = ["CacheCorruptionError", "CacheStats", "FeatureStore", "geojson_feature_id"]
