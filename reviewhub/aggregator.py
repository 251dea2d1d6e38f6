"""Fan-out of per-store review fetches into one sorted, filtered feed."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from reviewhub.auth import AuthError
from reviewhub.fetcher import ReviewFetcher
from reviewhub.models import FeedFilters, FeedResult, Review, Store, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 5


@dataclass(slots=True)
class StoreFetchResult:
    """Result of one store's fetch: reviews, or the auth failure that stopped it."""

    store: Store
    reviews: List[Review] = field(default_factory=list)
    error: AuthError | None = None
    skipped: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.skipped


def is_unreplied_real(review: Review) -> bool:
    return not review.is_system_message and not review.replied and review.is_real_data


def merge_reviews(batches: Iterable[Sequence[Review]]) -> List[Review]:
    """Merge per-store batches, drop duplicate ids, sort newest first.

    The sort is stable, so entries with equal ``created_at`` keep the order in
    which they were merged.
    """

    seen: set[str] = set()
    merged: List[Review] = []
    for batch in batches:
        for review in batch:
            if review.id in seen:
                continue
            seen.add(review.id)
            merged.append(review)

    merged.sort(key=lambda r: ensure_utc(r.created_at), reverse=True)
    return merged


def apply_filters(reviews: Sequence[Review], filters: FeedFilters) -> tuple[List[Review], int]:
    """Return ``(page, total_count)`` where ``total_count`` is counted before the limit."""

    selected = [r for r in reviews if is_unreplied_real(r)] if filters.unreplied_only else list(reviews)
    total = len(selected)
    if filters.limit is not None and filters.limit > 0:
        selected = selected[: filters.limit]
    return selected, total


class ReviewAggregator:
    def __init__(self, fetcher: ReviewFetcher, *, concurrency: int = DEFAULT_CONCURRENCY) -> None:
        self._fetcher = fetcher
        self._concurrency = max(1, int(concurrency))

    async def fetch_all(self, stores: Sequence[Store]) -> List[StoreFetchResult]:
        """
        Запустить ``fetch`` по всем магазинам с ограничением параллелизма.

        Первая ``AuthError`` останавливает пакет: ещё не начатые магазины
        пропускаются, а уже идущие запросы отменяются.
        """

        semaphore = asyncio.Semaphore(self._concurrency)
        aborted = asyncio.Event()
        tasks: list[asyncio.Task[StoreFetchResult]] = []

        async def _run(store: Store) -> StoreFetchResult:
            async with semaphore:
                if aborted.is_set():
                    return StoreFetchResult(store=store, skipped=True)
                try:
                    reviews = await self._fetcher.fetch(store)
                except AuthError as exc:
                    if not aborted.is_set():
                        aborted.set()
                        logger.warning("Auth failure on store %s, aborting batch: %s", store.id, exc)
                        current = asyncio.current_task()
                        for t in tasks:
                            if t is not current:
                                t.cancel()
                    return StoreFetchResult(store=store, error=exc)
                return StoreFetchResult(store=store, reviews=reviews)

        for store in stores:
            tasks.append(asyncio.create_task(_run(store)))

        if not tasks:
            return []

        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        results: List[StoreFetchResult] = []
        for store, outcome in zip(stores, outcomes):
            if isinstance(outcome, StoreFetchResult):
                results.append(outcome)
            elif isinstance(outcome, asyncio.CancelledError) and aborted.is_set():
                results.append(StoreFetchResult(store=store, skipped=True))
            elif isinstance(outcome, BaseException):
                raise outcome
        return results

    async def aggregate(self, stores: Sequence[Store], filters: FeedFilters | None = None) -> FeedResult:
        filters = filters or FeedFilters()
        results = await self.fetch_all(stores)

        for res in results:
            if res.error is not None:
                raise res.error

        merged = merge_reviews(res.reviews for res in results)
        page, total = apply_filters(merged, filters)

        logger.info(
            "Aggregated %s entries from %s stores (returned=%s, unreplied_only=%s, limit=%s)",
            len(merged),
            len(stores),
            len(page),
            filters.unreplied_only,
            filters.limit,
        )

        return FeedResult(
            reviews=page,
            total_count=total,
            stores_checked=len(stores),
            has_system_messages=any(r.is_system_message for r in merged),
        )


__all__ = [
    "ReviewAggregator",
    "StoreFetchResult",
    "apply_filters",
    "is_unreplied_real",
    "merge_reviews",
]
