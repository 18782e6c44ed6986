"""Upstream adapter layer for fieldline.

One batch-fetcher adapter per API descriptor tag:
- ArcGIS REST feature services ("arcgis")
- Socrata datasets ("socrata")
- Other offset-paged JSON endpoints described by hooks ("generic")

Use ``create_page_fetcher`` to build the adapter for a source's descriptor
instead of inspecting descriptor shapes at call sites.
"""

from typing import Any, Callable, Protocol

from fieldline.clients.arcgis import ArcGISClient
from fieldline.clients.base import (
    APIProviderError,
    BaseAsyncClient,
    FatalFetchError,
    RateLimiter,
    TransientFetchError,
)
from fieldline.clients.generic import GenericClient
from fieldline.clients.socrata import SocrataClient
from fieldline.models import ApiDescriptor, Page


class PageFetcher(Protocol):
    """Async context manager that retrieves one page per call."""

    async def __aenter__(self) -> "PageFetcher": ...

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None: ...

    async def count(self) -> int | None: ...

    async def fetch_page(self, offset: int, limit: int) -> Page: ...


_ADAPTERS: dict[str, Callable[..., PageFetcher]] = {
    "arcgis": ArcGISClient,
    "socrata": SocrataClient,
    "generic": GenericClient,
}


def create_page_fetcher(api: ApiDescriptor, **client_kwargs: Any) -> PageFetcher:
    """Build the adapter registered for ``api.type``.

    Args:
        api: Source API descriptor
        **client_kwargs: Forwarded to the client (rate_limit, timeout, ...)

    Raises:
        ValueError: If no adapter is registered for the descriptor's tag
    """
    try:
        factory = _ADAPTERS[api.type]
    except KeyError:
        raise ValueError(f"No adapter for API type '{api.type}'") from None
    return factory(api, **client_kwargs)


__all__ = [
    "APIProviderError",
    "ArcGISClient",
    "BaseAsyncClient",
    "FatalFetchError",
    "GenericClient",
    "PageFetcher",
    "RateLimiter",
    "SocrataClient",
    "TransientFetchError",
    "create_page_fetcher",
]
