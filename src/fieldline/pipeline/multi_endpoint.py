"""Multi-endpoint fetching — several layers of one provider as one dataset.

Some counties publish parcels across more than one layer (e.g. one per
jurisdiction). Each endpoint is fetched in turn with the same
ParallelFetcher, its features are tagged with per-endpoint properties, and
the results are concatenated or de-duplicated by an id property.

Usage:
    endpoints = [
        Endpoint("county", ArcGISApi(url=..., out_fields=("APN",))),
        Endpoint("city", ArcGISApi(url=..., out_fields=("APN",)),
                 optional=True, properties={"jurisdiction": "city"}),
    ]
    result = await fetch_endpoints(endpoints, fetcher, merge="dedupe", id_property="APN")
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Literal

from fieldline.clients import PageFetcher, create_page_fetcher
from fieldline.models import ApiDescriptor, Feature
from fieldline.pipeline.fetcher import ParallelFetcher

logger = logging.getLogger(__name__)

MergeMode = Literal["concat", "dedupe"]


@dataclass
class Endpoint:
    """One layer of a multi-endpoint source.

    Attributes:
        id: Name used in logs and in the per-endpoint report
        api: Access descriptor for this layer
        optional: A failure is recorded and skipped instead of raised
        properties: Added to every feature's properties from this layer
    """

    id: str
    api: ApiDescriptor
    optional: bool = False
    properties: dict[str, Any] | None = None


@dataclass
class EndpointReport:
    fetched: int = 0
    error: str | None = None


@dataclass
class MultiEndpointResult:
    features: list[Feature] = field(default_factory=list)
    total_fetched: int = 0
    by_endpoint: dict[str, EndpointReport] = field(default_factory=dict)


def _tag(features: list[Feature], properties: dict[str, Any]) -> None:
    for feature in features:
        props = feature.get("properties")
        if isinstance(props, dict):
            props.update(properties)


def _dedupe(features: list[Feature], id_property: str) -> list[Feature]:
    """First occurrence of each id wins; features without the id are kept."""
    seen: set[str] = set()
    kept: list[Feature] = []
    for feature in features:
        props = feature.get("properties")
        value = props.get(id_property) if isinstance(props, dict) else None
        if value is None:
            kept.append(feature)
            continue
        key = str(value)
        if key not in seen:
            seen.add(key)
            kept.append(feature)
    return kept


async def fetch_endpoints(
    endpoints: list[Endpoint],
    fetcher: ParallelFetcher,
    fetcher_factory: Callable[[ApiDescriptor], PageFetcher] = create_page_fetcher,
    merge: MergeMode = "concat",
    id_property: str | None = None,
) -> MultiEndpointResult:
    """Fetch every endpoint in order and merge the features.

    Args:
        endpoints: Layers to fetch, in order (earlier layers win dedupe)
        fetcher: Paging settings shared by every endpoint
        fetcher_factory: Builds the adapter for an endpoint's descriptor
        merge: "concat" keeps everything, "dedupe" drops repeated ids
        id_property: Property compared by "dedupe"

    Raises:
        ValueError: If ``merge="dedupe"`` without ``id_property``
        FetchError: If a non-optional endpoint fails
    """
    if merge == "dedupe" and not id_property:
        raise ValueError("merge='dedupe' requires id_property")
    if fetcher.skip_buffer:
        raise ValueError("Multi-endpoint fetching needs buffered features")

    collected: list[Feature] = []
    by_endpoint: dict[str, EndpointReport] = {}

    for endpoint in endpoints:
        logger.info("=== Fetching %s ===", endpoint.id)
        try:
            async with fetcher_factory(endpoint.api) as page_fetcher:
                result = await fetcher.fetch(page_fetcher)
        except Exception as e:
            by_endpoint[endpoint.id] = EndpointReport(fetched=0, error=str(e))
            if not endpoint.optional:
                raise
            logger.warning("  %s: SKIPPED (%s)", endpoint.id, e)
            continue

        if endpoint.properties:
            _tag(result.features, endpoint.properties)
        collected.extend(result.features)
        by_endpoint[endpoint.id] = EndpointReport(fetched=result.total_fetched)
        logger.info("  %s: %s features", endpoint.id, f"{result.total_fetched:,}")

    features = collected
    if merge == "dedupe":
        features = _dedupe(collected, id_property)
        logger.info("Deduplication: %d -> %d features", len(collected), len(features))

    return MultiEndpointResult(
        features=features,
        total_fetched=len(features),
        by_endpoint=by_endpoint,
    )
