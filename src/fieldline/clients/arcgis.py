"""ArcGIS REST feature service adapter.

Pages through a FeatureServer/MapServer ``query`` endpoint with
``resultOffset``/``resultRecordCount`` and requests GeoJSON output, so every
returned feature is already a GeoJSON Feature.

API docs: https://developers.arcgis.com/rest/services-reference/enterprise/query-feature-service-layer/

Usage:
    api = ArcGISApi(url=".../FeatureServer/0/query", out_fields=("APN",))
    async with ArcGISClient(api) as client:
        page = await client.fetch_page(offset=0, limit=2000)
"""

import logging
from typing import Any
from urllib.parse import urlsplit

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from fieldline.clients.base import APIProviderError, BaseAsyncClient, FatalFetchError
from fieldline.models import ArcGISApi, Page

logger = logging.getLogger(__name__)


class _FeaturePage(BaseModel):
    """Shape of an ``f=geojson`` query response."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    features: list[dict[str, Any]]
    exceeded_transfer_limit: bool | None = Field(default=None, alias="exceededTransferLimit")


class ArcGISClient(BaseAsyncClient):
    """Batch fetcher for an ArcGIS query endpoint.

    Args:
        api: Endpoint descriptor (URL, output fields, optional filter)
        **kwargs: Forwarded to BaseAsyncClient (rate_limit, timeout, retries)
    """

    def __init__(self, api: ArcGISApi, **kwargs: Any) -> None:
        parts = urlsplit(api.url)
        super().__init__(base_url=f"{parts.scheme}://{parts.netloc}", **kwargs)
        self.api = api
        self._path = parts.path

    def _base_params(self) -> dict[str, str]:
        return {"where": self.api.where or "1=1"}

    async def count(self) -> int | None:
        """Total matching records, or None if the server cannot count."""
        params = {**self._base_params(), "returnCountOnly": "true", "f": "json"}
        try:
            body = await self.get(self._path, params=params)
        except APIProviderError as e:
            # Some servers don't support returnCountOnly
            logger.warning("Count query failed for %s: %s", self.api.url, e)
            return None

        count = body.get("count") if isinstance(body, dict) else None
        return count if isinstance(count, int) else None

    async def fetch_page(self, offset: int, limit: int) -> Page:
        """Fetch one page of features starting at ``offset``.

        Raises:
            FatalFetchError: Retries exhausted, or the body is not a feature
                collection, or the server capped the page below ``limit``
        """
        params = {
            **self._base_params(),
            "outFields": ",".join(self.api.out_fields),
            "returnGeometry": "true",
            "outSR": self.api.out_sr,
            "f": "geojson",
            "resultOffset": str(offset),
            "resultRecordCount": str(limit),
        }
        body, headers = await self.get_with_headers(self._path, params=params)

        if isinstance(body, dict) and "error" in body:
            # ArcGIS reports query errors with HTTP 200
            raise FatalFetchError(
                f"ArcGIS error at offset {offset}: {body['error']}",
                status_code=200,
                response_body=str(body["error"])[:500],
            )

        try:
            parsed = _FeaturePage.model_validate(body)
        except ValidationError as e:
            raise FatalFetchError(
                f"Malformed feature collection at offset {offset}: {e.error_count()} errors",
                status_code=200,
                response_body=str(body)[:500],
            ) from e

        features = parsed.features
        exceeded = parsed.exceeded_transfer_limit

        if len(features) < limit and exceeded:
            raise FatalFetchError(
                f"Server returned {len(features)} of {limit} records at offset {offset} "
                "but reports more data; batch size exceeds the layer's maxRecordCount",
                status_code=200,
            )

        has_more = len(features) >= limit and exceeded is not False
        return Page(
            features=features,
            has_more=has_more,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )
