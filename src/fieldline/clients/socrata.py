"""Socrata (SODA) dataset adapter.

Pages through a ``/resource/{id}.json`` endpoint with ``$limit``/``$offset``.
Rows are flat JSON objects; the geometry column is lifted out into a GeoJSON
Feature so downstream code sees one record shape regardless of upstream.

API docs: https://dev.socrata.com/docs/paging.html
"""

import logging
from typing import Any
from urllib.parse import urlsplit

from fieldline.clients.base import APIProviderError, BaseAsyncClient, FatalFetchError
from fieldline.models import Feature, Page, SocrataApi

logger = logging.getLogger(__name__)


class SocrataClient(BaseAsyncClient):
    """Batch fetcher for a Socrata resource endpoint.

    Args:
        api: Endpoint descriptor (URL, selected fields, optional filter)
        **kwargs: Forwarded to BaseAsyncClient
    """

    def __init__(self, api: SocrataApi, **kwargs: Any) -> None:
        parts = urlsplit(api.url)
        super().__init__(base_url=f"{parts.scheme}://{parts.netloc}", **kwargs)
        self.api = api
        self._path = parts.path

    def _to_feature(self, row: dict[str, Any]) -> Feature:
        properties = dict(row)
        geometry = properties.pop(self.api.geometry_field, None)
        return {"type": "Feature", "geometry": geometry, "properties": properties}

    async def count(self) -> int | None:
        """Total matching rows via ``count(*)``."""
        params = {"$select": "count(*) AS count"}
        if self.api.where:
            params["$where"] = self.api.where

        try:
            body = await self.get(self._path, params=params)
        except APIProviderError as e:
            logger.warning("Count query failed for %s: %s", self.api.url, e)
            return None

        try:
            return int(body[0]["count"])
        except (TypeError, KeyError, IndexError, ValueError):
            return None

    async def fetch_page(self, offset: int, limit: int) -> Page:
        """Fetch one page of rows starting at ``offset``."""
        params = {
            "$select": ",".join(self.api.fields),
            "$limit": str(limit),
            "$offset": str(offset),
            # Stable ordering is required for offset paging
            "$order": ":id",
        }
        if self.api.where:
            params["$where"] = self.api.where

        body, headers = await self.get_with_headers(self._path, params=params)

        if not isinstance(body, list) or not all(isinstance(row, dict) for row in body):
            raise FatalFetchError(
                f"Malformed Socrata response at offset {offset}: expected a JSON array of rows",
                status_code=200,
                response_body=str(body)[:500],
            )

        features = [self._to_feature(row) for row in body]
        return Page(
            features=features,
            has_more=len(features) >= limit,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )
