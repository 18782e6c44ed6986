"""ParallelFetcher — paginated API → in-memory FetchResult.

Drives one adapter's ``fetch_page`` calls from a fixed pool of asyncio
workers that share a page cursor. Guarantees:
- at most ``concurrency`` page requests are unresolved at any instant
- at most ``max_batches`` pages are ever issued (termination against
  endlessly paginating servers)
- a failed page fails the whole run with FetchError; no partial result

Pages may also be streamed to an ``on_features`` callback in page order as
they become contiguous, optionally without buffering them in the result.
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable

from fieldline.clients import FatalFetchError, PageFetcher
from fieldline.models import Feature, FetchProgress, FetchResult, Page

logger = logging.getLogger(__name__)

FeaturesCallback = Callable[[list[Feature]], Awaitable[None] | None]


class FetchError(FatalFetchError):
    """A page failed after its retry budget; carries the failing offset."""

    def __init__(
        self,
        offset: int,
        message: str,
        status_code: int | None = None,
        response_body: str | None = None,
    ) -> None:
        super().__init__(message, status_code=status_code, response_body=response_body)
        self.offset = offset


@dataclass
class _RunState:
    next_offset: int = 0
    issued: int = 0
    fetched: int = 0
    completed: int = 0
    exhausted: bool = False
    failed_offset: int | None = None
    failure: Exception | None = None
    pages: dict[int, list[Feature]] = field(default_factory=dict)
    first_page: Page | None = None
    # Streaming: completed pages not yet handed to on_features
    pending: dict[int, list[Feature]] = field(default_factory=dict)
    next_emit: int = 0
    emit_lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class ParallelFetcher:
    """Fetches every page of a source with bounded concurrency.

    Args:
        concurrency: Max simultaneous in-flight page fetches (>= 1)
        batch_size: Records requested per page (>= 1)
        max_batches: Hard ceiling on pages issued (>= 1)
        on_progress: Called after each completed page. Pages may complete
            out of order; ``fetched`` never decreases.
        on_features: Called with each non-empty page's features, in page
            order. May be a coroutine function.
        skip_buffer: Don't keep features in the FetchResult (requires
            ``on_features``); ``total_fetched`` still counts them.

    Usage:
        fetcher = ParallelFetcher(concurrency=4, batch_size=2000, max_batches=100)
        async with ArcGISClient(api) as client:
            result = await fetcher.fetch(client)
    """

    def __init__(
        self,
        concurrency: int,
        batch_size: int,
        max_batches: int,
        on_progress: Callable[[FetchProgress], None] | None = None,
        on_features: FeaturesCallback | None = None,
        skip_buffer: bool = False,
    ) -> None:
        for name, value in (
            ("concurrency", concurrency),
            ("batch_size", batch_size),
            ("max_batches", max_batches),
        ):
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
        if skip_buffer and on_features is None:
            raise ValueError("skip_buffer requires an on_features callback")

        self.concurrency = concurrency
        self.batch_size = batch_size
        self.max_batches = max_batches
        self.on_progress = on_progress or _log_progress
        self.on_features = on_features
        self.skip_buffer = skip_buffer

    async def fetch(self, page_fetcher: PageFetcher) -> FetchResult:
        """Retrieve all pages from an opened adapter.

        Args:
            page_fetcher: Adapter already entered as an async context manager

        Returns:
            FetchResult with features concatenated in page order

        Raises:
            FetchError: If any page fails
        """
        total = await page_fetcher.count()
        if total is not None:
            logger.info("Total records: %s", f"{total:,}")

        state = _RunState()
        try:
            async with asyncio.TaskGroup() as tg:
                for _ in range(self.concurrency):
                    tg.create_task(self._worker(page_fetcher, state, total))
        except ExceptionGroup as eg:
            # A callback raised; the other workers were cancelled
            raise eg.exceptions[0]

        if state.failure is not None:
            offset = state.failed_offset
            cause = state.failure
            logger.error("Fetch aborted: page at offset %d failed: %s", offset, cause)
            raise FetchError(
                offset=offset,
                message=f"Page at offset {offset} failed: {cause}",
                status_code=getattr(cause, "status_code", None),
                response_body=getattr(cause, "response_body", None),
            ) from cause

        features: list[Feature] = []
        for offset in sorted(state.pages):
            features.extend(state.pages[offset])

        truncated = not state.exhausted and state.issued >= self.max_batches
        if truncated:
            logger.warning(
                "Truncated: stopped after max_batches=%d pages (%d features) "
                "while the source still reports more data",
                self.max_batches, state.fetched,
            )

        first = state.first_page
        return FetchResult(
            features=features,
            total_fetched=state.fetched,
            truncated=truncated,
            pages_fetched=state.completed,
            etag=first.etag if first else None,
            last_modified=first.last_modified if first else None,
        )

    def _claim(self, state: _RunState) -> int | None:
        """Next page offset to issue, or None when no more may be issued."""
        if state.failure is not None or state.exhausted:
            return None
        if state.issued >= self.max_batches:
            return None

        offset = state.next_offset
        state.next_offset += self.batch_size
        state.issued += 1
        return offset

    async def _emit_ready(self, state: _RunState) -> None:
        """Hand contiguous completed pages to on_features in page order."""
        async with state.emit_lock:
            while state.next_emit in state.pending:
                features = state.pending.pop(state.next_emit)
                state.next_emit += self.batch_size
                if features:
                    ret = self.on_features(features)
                    if inspect.isawaitable(ret):
                        await ret

    async def _worker(
        self,
        page_fetcher: PageFetcher,
        state: _RunState,
        total: int | None,
    ) -> None:
        while True:
            offset = self._claim(state)
            if offset is None:
                return

            batch_num = offset // self.batch_size
            try:
                page = await page_fetcher.fetch_page(offset, self.batch_size)
            except Exception as e:
                if state.failure is None:
                    state.failure = e
                    state.failed_offset = offset
                return

            if offset == 0:
                state.first_page = page
            if not self.skip_buffer:
                state.pages[offset] = page.features
            state.fetched += len(page.features)
            state.completed += 1
            if not page.has_more:
                state.exhausted = True

            self.on_progress(FetchProgress(
                message=(
                    f"Batch {batch_num}: {len(page.features)} features "
                    f"(total: {state.fetched:,})"
                ),
                fetched=state.fetched,
                total=total,
                batch_num=batch_num,
                offset=offset,
            ))

            if self.on_features is not None:
                state.pending[offset] = page.features
                await self._emit_ready(state)


def _log_progress(progress: FetchProgress) -> None:
    logger.info("  %s", progress.message)
