"""Hook-driven adapter for offset-paged JSON endpoints.

For providers that are neither ArcGIS nor Socrata. The descriptor supplies
the per-page query parameters and knows how to pull features (and the
continuation signal) out of a response body.

Usage:
    api = GenericApi(
        url="https://data.example.org/api/parcels",
        page_params=lambda offset, limit: {"skip": str(offset), "take": str(limit)},
        extract_features=lambda body: body["items"],
    )
    async with GenericClient(api) as client:
        page = await client.fetch_page(offset=0, limit=500)
"""

import logging
from typing import Any
from urllib.parse import parse_qsl, urlsplit

from fieldline.clients.base import APIProviderError, BaseAsyncClient, FatalFetchError
from fieldline.models import GenericApi, Page

logger = logging.getLogger(__name__)


class GenericClient(BaseAsyncClient):
    """Batch fetcher driven by a GenericApi descriptor's hooks.

    Args:
        api: Endpoint descriptor with paging and extraction hooks
        **kwargs: Forwarded to BaseAsyncClient
    """

    def __init__(self, api: GenericApi, **kwargs: Any) -> None:
        parts = urlsplit(api.url)
        super().__init__(base_url=f"{parts.scheme}://{parts.netloc}", **kwargs)
        self.api = api
        self._path = parts.path
        # Fixed query parameters already present in the URL
        self._fixed_params = dict(parse_qsl(parts.query))

    async def count(self) -> int | None:
        if self.api.count_params is None or self.api.extract_count is None:
            return None

        params = {**self._fixed_params, **self.api.count_params}
        try:
            body = await self.get(self._path, params=params)
        except APIProviderError as e:
            logger.warning("Count query failed for %s: %s", self.api.url, e)
            return None
        return self.api.extract_count(body)

    async def fetch_page(self, offset: int, limit: int) -> Page:
        """Fetch one page and hand the body to the descriptor's hooks.

        Raises:
            FatalFetchError: Retries exhausted, or the extraction hook
                rejected the body
        """
        params = {**self._fixed_params, **self.api.page_params(offset, limit)}
        body, headers = await self.get_with_headers(self._path, params=params)

        try:
            features = self.api.extract_features(body)
        except (KeyError, IndexError, TypeError, ValueError) as e:
            raise FatalFetchError(
                f"Could not extract features at offset {offset}: {e}",
                status_code=200,
                response_body=str(body)[:500],
            ) from e

        if not isinstance(features, list):
            raise FatalFetchError(
                f"Could not extract features at offset {offset}: expected a list",
                status_code=200,
                response_body=str(body)[:500],
            )

        if self.api.has_more is not None:
            has_more = bool(self.api.has_more(body, features, offset))
        else:
            has_more = len(features) >= limit

        return Page(
            features=features,
            has_more=has_more,
            etag=headers.get("etag"),
            last_modified=headers.get("last-modified"),
        )
