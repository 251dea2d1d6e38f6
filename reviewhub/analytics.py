"""Deterministic rollups over a review set for a time window.

``compute_analytics`` is a pure function of its arguments: the current time is
passed in explicitly, nothing is cached, and no placeholder values are ever
synthesized. Computing twice over the same reviews, stores, period and ``now``
yields equal snapshots.
"""

from __future__ import annotations

import math
from collections import Counter
from datetime import date, datetime, timedelta
from typing import Sequence

from reviewhub.models import (
    AnalyticsSnapshot,
    DailyPoint,
    Review,
    Store,
    StoreStats,
    ensure_utc,
    utc_now,
)

RATING_BUCKETS = (1, 2, 3, 4, 5)


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10**digits
    return math.floor(value * factor + 0.5) / factor


def average_rating(reviews: Sequence[Review]) -> float:
    """Mean star rating over every entry, rounded to one decimal.

    Unrated entries (rating 0) are part of the mean, same as in the review count.
    """

    if not reviews:
        return 0.0
    return round_half_up(sum(r.rating for r in reviews) / len(reviews), 1)


def response_rate(total: int, unanswered: int) -> int:
    if total <= 0:
        return 0
    return int(round_half_up((total - unanswered) / total * 100))


def rating_distribution(reviews: Sequence[Review]) -> dict[int, int]:
    counts = Counter(int(math.floor(r.rating)) for r in reviews if 1 <= r.rating <= 5)
    return {bucket: counts.get(bucket, 0) for bucket in RATING_BUCKETS}


def daily_series(reviews: Sequence[Review], period_days: int, today: date) -> list[DailyPoint]:
    """Review counts for each of the last ``period_days`` dates, oldest first."""

    per_day = Counter(r.created_date for r in reviews)
    points: list[DailyPoint] = []
    for offset in range(period_days - 1, -1, -1):
        day = today - timedelta(days=offset)
        points.append(DailyPoint(day=day, count=per_day.get(day, 0)))
    return points


def _store_stats(store: Store, reviews: Sequence[Review]) -> StoreStats:
    unanswered = sum(1 for r in reviews if not r.replied)
    return StoreStats(
        store_id=store.id,
        store_name=store.display_name,
        review_count=len(reviews),
        average_rating=average_rating(reviews),
        unanswered_reviews=unanswered,
    )


def compute_analytics(
    all_reviews: Sequence[Review],
    period_days: int,
    *,
    stores: Sequence[Store] = (),
    now: datetime | None = None,
    store_id: str | None = None,
) -> AnalyticsSnapshot:
    """Посчитать сводку за последние ``period_days`` дней.

    - системные сообщения не участвуют ни в одной метрике;
    - ``daily_series`` строится по всем отзывам (без фильтра периода),
      совпадение по календарной дате UTC;
    - ``total_stores`` и состав ``per_store_stats`` от периода не зависят.
    """

    if period_days < 1:
        raise ValueError("period_days must be >= 1")

    now_utc = ensure_utc(now or utc_now())
    today = now_utc.date()
    cutoff = now_utc - timedelta(days=period_days)

    genuine = [r for r in all_reviews if not r.is_system_message]
    in_period = [r for r in genuine if ensure_utc(r.created_at) >= cutoff]

    total = len(in_period)
    unanswered = sum(1 for r in in_period if not r.replied)

    by_store: dict[str, list[Review]] = {}
    for r in in_period:
        by_store.setdefault(r.store_id, []).append(r)

    return AnalyticsSnapshot(
        period_days=period_days,
        total_stores=len(stores),
        total_reviews=total,
        average_rating=average_rating(in_period),
        rating_distribution=rating_distribution(in_period),
        unanswered_reviews=unanswered,
        response_rate=response_rate(total, unanswered),
        today_reviews=sum(1 for r in genuine if r.created_date == today),
        has_real_data=any(r.is_real_data for r in genuine),
        daily_series=daily_series(genuine, period_days, today),
        per_store_stats=[_store_stats(s, by_store.get(s.id, [])) for s in stores],
        store_id=store_id,
    )


__all__ = [
    "average_rating",
    "compute_analytics",
    "daily_series",
    "rating_distribution",
    "response_rate",
    "round_half_up",
]
