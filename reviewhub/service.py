# reviewhub/service.py
from __future__ import annotations

import logging
import re
from collections import OrderedDict
from datetime import datetime
from typing import Any, Callable, Dict

from reviewhub.aggregator import ReviewAggregator
from reviewhub.analytics import compute_analytics
from reviewhub.auth import AuthError, AuthRequired, RefreshRetryPolicy, TokenManager, TokenStore
from reviewhub.config import GBPConfig
from reviewhub.directory import StoreDirectory, select_stores
from reviewhub.fetcher import ReviewFetcher
from reviewhub.gbp_client import GBPAPIError, GBPClient
from reviewhub.models import (
    AnalyticsSnapshot,
    FeedFilters,
    FeedResult,
    ReviewListResponse,
    Store,
    utc_now,
)

logger = logging.getLogger(__name__)

_LOCATION_IN_NAME_RE = re.compile(r"/locations/([^/]+)/reviews/")

MAX_TOKEN_MANAGERS = 1024


class StoreNotFound(LookupError):
    """Отзыв относится к локации, которой нет среди магазинов пользователя."""


class InvalidReplyInput(ValueError):
    """Пустое имя отзыва или пустой текст ответа."""


def _clean(value: Any) -> str:
    return "" if value is None else str(value).strip()


def feed_message(feed: FeedResult, *, unreplied: bool) -> str:
    real = sum(1 for r in feed.reviews if r.is_real_data)
    if not feed.reviews and unreplied:
        return "No unreplied reviews."
    if not feed.reviews:
        return (
            "Could not retrieve review data. Access to review details may be "
            "restricted by the directory API."
        )
    if real > 0:
        kind = "unreplied reviews" if unreplied else "reviews"
        return f"Fetched {real} {kind}."
    return "Review details could not be retrieved; see the system messages for each store."


class ReviewService:
    """
    Входная точка конвейера: ``list_reviews`` / ``get_analytics`` / ``reply_to_review``.

    TokenManager держим по одному на пользователя, чтобы single-flight
    обновление токена работало и между параллельными запросами. Реестр
    ограничен LRU; менеджер без токена удаляется сразу.
    """

    def __init__(
        self,
        directory: StoreDirectory,
        client: GBPClient,
        token_store: TokenStore,
        *,
        clock: Callable[[], datetime] = utc_now,
        max_token_managers: int = MAX_TOKEN_MANAGERS,
    ) -> None:
        self.directory = directory
        self.client = client
        self.token_store = token_store
        self._clock = clock
        self._max_managers = max(1, int(max_token_managers))
        self._managers: OrderedDict[str, TokenManager] = OrderedDict()

    @property
    def config(self) -> GBPConfig:
        return self.client.config

    def token_manager(self, user_id: str) -> TokenManager:
        uid = str(user_id)
        manager = self._managers.get(uid)
        if manager is None:
            manager = TokenManager(uid, self.token_store, self.client.http, self.config, clock=self._clock)
            self._managers[uid] = manager
            self._evict_idle()
        else:
            self._managers.move_to_end(uid)
        return manager

    def _evict_idle(self) -> None:
        # самые давние первыми; идущий обмен токена не прерываем
        for uid in list(self._managers)[:-1]:
            if len(self._managers) <= self._max_managers:
                return
            if not self._managers[uid].refreshing:
                del self._managers[uid]

    def forget_user(self, user_id: str) -> None:
        manager = self._managers.get(str(user_id))
        if manager is not None and not manager.refreshing:
            del self._managers[str(user_id)]

    def _policy(self, user_id: str) -> RefreshRetryPolicy:
        return RefreshRetryPolicy(tokens=self.token_manager(user_id))

    def _aggregator(self, user_id: str) -> ReviewAggregator:
        fetcher = ReviewFetcher(self.client, self._policy(user_id), clock=self._clock)
        return ReviewAggregator(fetcher, concurrency=self.config.fetch_concurrency)

    async def _authorize(self, user_id: str | None) -> str:
        uid = _clean(user_id)
        if not uid:
            raise AuthRequired("Session identity is missing")
        # проверяем токен до запуска конвейера; заодно обновляем истёкший
        try:
            await self.token_manager(uid).get_valid_token()
        except AuthError:
            self.forget_user(uid)
            raise
        return uid

    async def _aggregate(self, user_id: str, stores: list[Store], filters: FeedFilters | None = None) -> FeedResult:
        try:
            return await self._aggregator(user_id).aggregate(stores, filters)
        except AuthError:
            self.forget_user(user_id)
            raise

    async def _target_stores(self, user_id: str, store_id: str | None) -> list[Store]:
        stores = await self.directory.list_stores(user_id)
        targets = select_stores(stores, store_id)
        logger.info(
            "User %s: %s stores, %s targeted (store_id=%s)",
            user_id,
            len(stores),
            len(targets),
            store_id or "-",
        )
        return targets

    async def list_reviews(
        self,
        user_id: str | None,
        store_id: str | None = None,
        unreplied_only: bool = False,
        limit: int | None = None,
    ) -> ReviewListResponse:
        uid = await self._authorize(user_id)
        targets = await self._target_stores(uid, store_id)

        filters = FeedFilters(unreplied_only=unreplied_only, limit=limit)
        feed = await self._aggregate(uid, targets, filters)

        return ReviewListResponse(
            reviews=feed.reviews,
            count=len(feed.reviews),
            total_count=feed.total_count,
            real_reviews_count=sum(1 for r in feed.reviews if r.is_real_data),
            system_messages_count=sum(1 for r in feed.reviews if r.is_system_message),
            stores_checked=feed.stores_checked,
            has_system_messages=feed.has_system_messages,
            is_real_data=any(r.is_real_data for r in feed.reviews),
            store_id=store_id or None,
            unreplied=unreplied_only,
            limit=limit,
            message=feed_message(feed, unreplied=unreplied_only),
        )

    async def get_analytics(
        self,
        user_id: str | None,
        store_id: str | None = None,
        period_days: int | None = None,
    ) -> AnalyticsSnapshot:
        uid = await self._authorize(user_id)
        period = period_days or self.config.default_period_days
        targets = await self._target_stores(uid, store_id)

        feed = await self._aggregate(uid, targets)
        snapshot = compute_analytics(
            feed.reviews,
            period,
            stores=targets,
            now=self._clock(),
            store_id=store_id or None,
        )
        logger.info(
            "Analytics for user %s: stores=%s reviews=%s avg=%s",
            uid,
            snapshot.total_stores,
            snapshot.total_reviews,
            snapshot.average_rating,
        )
        return snapshot

    async def reply_to_review(self, user_id: str | None, review_name: str, comment: str) -> Dict[str, Any]:
        uid = await self._authorize(user_id)
        text = _clean(comment)
        name = _clean(review_name)
        if not name or not text:
            raise InvalidReplyInput("Review name and reply comment are required")

        match = _LOCATION_IN_NAME_RE.search(f"/{name.strip('/')}/")
        stores = await self.directory.list_stores(uid)
        owned = {s.location_id for s in stores if s.location_id}
        if match is None or match.group(1) not in owned:
            raise StoreNotFound(f"Review {name} does not belong to the user's stores")

        try:
            status, payload = await self._policy(uid).run(
                lambda token: self.client.put_reply(token, name, text)
            )
        except AuthError:
            self.forget_user(uid)
            raise
        if not 200 <= status < 300:
            raise GBPAPIError(f"Failed to reply to review: HTTP {status}", status=status)

        logger.info("Reply posted for review %s by user %s", name, uid)
        return payload or {}


__all__ = ["InvalidReplyInput", "ReviewService", "StoreNotFound", "feed_message"]
