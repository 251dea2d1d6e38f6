# reviewhub/fetcher.py
from __future__ import annotations

import hashlib
import logging
import re
from datetime import datetime
from functools import partial
from typing import Any, Callable, Dict, List

from pydantic import ValidationError

from reviewhub.auth import AuthError, RefreshRetryPolicy
from reviewhub.gbp_client import GBPClient, GBPReview, GBPReviewListResponse, parse_accounts
from reviewhub.models import MessageType, Review, Store, ensure_utc, utc_now
from reviewhub.ratings import normalize_rating

logger = logging.getLogger(__name__)

ANONYMOUS_REVIEWER = "anonymous"
SYSTEM_REVIEWER = "System notice"
UNNAMED_STORE = "Unnamed store"

SYSTEM_MESSAGE_TEXT: Dict[MessageType, str] = {
    MessageType.API_LIMITATION: (
        "Review access for this location is restricted by the directory API "
        "(reviewer privacy protection). Check reviews in the business profile "
        "dashboard or collect feedback with surveys and QR codes."
    ),
    MessageType.NO_REVIEWS_FOUND: (
        "The review endpoint for this location was not found. The location may "
        "not be set up correctly in the business profile."
    ),
    MessageType.NO_ACCOUNT_ACCESS: (
        "No business profile account is available for this user. Check the "
        "account permissions."
    ),
    MessageType.ACCOUNT_ERROR: (
        "Failed to load business profile account information. The authorization "
        "may need to be renewed."
    ),
    MessageType.FETCH_ERROR: "An error occurred while fetching reviews: {detail}",
    MessageType.NO_REVIEWS_AVAILABLE: (
        "No reviews have been posted for this location yet. Use surveys to "
        "collect reviews from customers."
    ),
}

_FRACTION_RE = re.compile(r"\.(\d{6})\d+")


def _text(value: Any) -> str:
    """Stringify an optional upstream value and strip whitespace."""

    return "" if value is None else str(value).strip()


def parse_upstream_time(value: Any) -> datetime | None:
    """RFC 3339 строка из upstream -> aware-UTC datetime (или None)."""

    s = _text(value)
    if not s:
        return None
    s = _FRACTION_RE.sub(r".\1", s.replace("Z", "+00:00"))
    try:
        return ensure_utc(datetime.fromisoformat(s))
    except ValueError:
        return None


class ReviewFetcher:
    """
    Загрузка отзывов одного магазина.

    ``fetch`` не бросает исключений на обычных ошибках upstream: каждая ошибка
    превращается ровно в одно системное сообщение. Наружу выходят только
    ``AuthError``: токен общий для всех магазинов, и продолжать бессмысленно.
    """

    def __init__(
        self,
        client: GBPClient,
        policy: RefreshRetryPolicy,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._client = client
        self._policy = policy
        self._clock = clock

    async def fetch(self, store: Store) -> List[Review]:
        location_id = store.location_id
        if not location_id:
            logger.debug("Store %s has no external location id, skipping", store.id)
            return []

        account, failure = await self._resolve_account(store)
        if failure is not None:
            return [failure]

        return await self._fetch_reviews(store, account, location_id)

    async def _resolve_account(self, store: Store) -> tuple[str, Review | None]:
        try:
            status, payload = await self._policy.run(self._client.list_accounts)
        except AuthError:
            raise
        except Exception as exc:
            logger.warning("Account lookup for store %s failed: %r", store.id, exc)
            return "", self.system_message(store, MessageType.ACCOUNT_ERROR)

        if not 200 <= status < 300:
            logger.warning("Account lookup for store %s -> HTTP %s", store.id, status)
            return "", self.system_message(store, MessageType.ACCOUNT_ERROR)

        try:
            accounts = parse_accounts(payload)
        except ValidationError:
            logger.warning("Account lookup for store %s returned malformed payload", store.id)
            return "", self.system_message(store, MessageType.ACCOUNT_ERROR)

        if not accounts:
            logger.info("No accounts available for store %s", store.id)
            return "", self.system_message(store, MessageType.NO_ACCOUNT_ACCESS)

        # первый аккаунт, обычно он единственный
        return accounts[0].name, None

    async def _fetch_reviews(self, store: Store, account: str, location_id: str) -> List[Review]:
        collected: List[Review] = []
        page_token: str | None = None

        for page in range(1, self._client.config.reviews_max_pages + 1):
            call = partial(
                self._client.list_reviews,
                account=account,
                location_id=location_id,
                page_token=page_token,
            )
            try:
                status, payload = await self._policy.run(call)
            except AuthError:
                raise
            except Exception as exc:
                logger.warning("Reviews fetch for store %s page %s failed: %r", store.id, page, exc)
                detail = _text(exc) or type(exc).__name__
                return collected + [self.system_message(store, MessageType.FETCH_ERROR, detail=detail)]

            if not 200 <= status < 300:
                if collected:
                    detail = f"HTTP {status} on page {page}"
                    return collected + [self.system_message(store, MessageType.FETCH_ERROR, detail=detail)]
                return [self.classify_status(store, status)]

            try:
                data = GBPReviewListResponse.model_validate(payload or {})
            except ValidationError as exc:
                logger.warning("Malformed reviews payload for store %s: %s", store.id, exc)
                return collected + [
                    self.system_message(store, MessageType.FETCH_ERROR, detail="malformed review payload")
                ]

            offset = len(collected)
            collected.extend(
                self._to_review(store, item, offset + idx) for idx, item in enumerate(data.reviews)
            )

            page_token = data.next_page_token
            if not page_token:
                break

        if not collected:
            logger.info("No reviews for store %s", store.id)
            return [self.system_message(store, MessageType.NO_REVIEWS_AVAILABLE)]

        logger.info("Fetched %s reviews for store %s", len(collected), store.id)
        return collected

    def classify_status(self, store: Store, status: int) -> Review:
        if status == 403:
            logger.warning("Reviews access restricted for store %s", store.id)
            return self.system_message(store, MessageType.API_LIMITATION)
        if status == 404:
            logger.warning("Reviews endpoint not found for store %s", store.id)
            return self.system_message(store, MessageType.NO_REVIEWS_FOUND)
        return self.system_message(store, MessageType.FETCH_ERROR, detail=f"HTTP {status}")

    def _to_review(self, store: Store, item: GBPReview, index: int) -> Review:
        now = self._clock()
        created_at = parse_upstream_time(item.create_time) or now
        updated_at = parse_upstream_time(item.update_time) or created_at
        rating = normalize_rating(item.star_rating)

        reply_text = item.reply_comment
        reply_time = None
        if item.review_reply is not None:
            reply_time = parse_upstream_time(item.review_reply.update_time)

        reviewer_name = ANONYMOUS_REVIEWER
        photo_url = None
        if item.reviewer is not None:
            reviewer_name = _text(item.reviewer.display_name) or ANONYMOUS_REVIEWER
            photo_url = _text(item.reviewer.profile_photo_url) or None

        return Review(
            id=self._review_id(store, item, index),
            store_id=store.id,
            store_name=store.display_name or UNNAMED_STORE,
            external_location_id=store.location_id,
            rating=rating,
            text=item.comment or "",
            reviewer_name=reviewer_name,
            reviewer_photo_url=photo_url,
            created_at=created_at,
            updated_at=updated_at,
            replied=reply_text is not None,
            reply_text=reply_text,
            reply_time=reply_time,
            is_real_data=rating > 0,
            is_system_message=False,
        )

    @staticmethod
    def _review_id(store: Store, item: GBPReview, index: int) -> str:
        rid = _text(item.name) or _text(item.review_id)
        if rid:
            return rid
        seed = f"{store.id}:{store.location_id}:{item.create_time}:{index}"
        return f"{store.id}_{hashlib.blake2s(seed.encode('utf-8'), digest_size=8).hexdigest()}"

    def system_message(self, store: Store, message_type: MessageType, *, detail: str = "") -> Review:
        now = self._clock()
        text = SYSTEM_MESSAGE_TEXT[message_type].format(detail=detail or "unknown error")
        return Review(
            id=f"{message_type.value}_{store.id}_{int(now.timestamp() * 1000)}",
            store_id=store.id,
            store_name=store.display_name or UNNAMED_STORE,
            external_location_id=store.location_id or None,
            rating=0,
            text=text,
            reviewer_name=SYSTEM_REVIEWER,
            created_at=now,
            updated_at=now,
            replied=False,
            is_real_data=False,
            is_system_message=True,
            message_type=message_type,
        )


__all__ = ["ReviewFetcher", "SYSTEM_MESSAGE_TEXT", "parse_upstream_time"]
