"""Domain models shared by the fetch, aggregation and analytics layers.

Upstream payload shapes live next to the HTTP client in ``gbp_client``; the
models here are what the rest of the package (and the HTTP surface) passes
around. Everything that leaves the package is serialized with camelCase keys.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        frozen=True,
        protected_namespaces=(),
    )


class MessageType(str, Enum):
    """Kinds of synthetic feed entries emitted instead of per-store failures."""

    API_LIMITATION = "api_limitation"
    NO_REVIEWS_FOUND = "no_reviews_found"
    NO_ACCOUNT_ACCESS = "no_account_access"
    ACCOUNT_ERROR = "account_error"
    FETCH_ERROR = "fetch_error"
    NO_REVIEWS_AVAILABLE = "no_reviews_available"


class Store(_WireModel):
    """A business location owned by a user."""

    id: str
    owner_id: str
    display_name: str = ""
    external_location_id: str | None = None

    @property
    def location_id(self) -> str:
        return (self.external_location_id or "").strip()


class Review(_WireModel):
    id: str
    store_id: str
    store_name: str
    external_location_id: str | None = None
    rating: int = Field(default=0, ge=0, le=5)
    text: str = ""
    reviewer_name: str = "anonymous"
    reviewer_photo_url: str | None = None
    created_at: datetime
    updated_at: datetime
    replied: bool = False
    reply_text: str | None = None
    reply_time: datetime | None = None
    is_real_data: bool = True
    is_system_message: bool = False
    message_type: MessageType | None = None

    @property
    def created_date(self) -> date:
        return ensure_utc(self.created_at).date()


@dataclass(frozen=True, slots=True)
class TokenState:
    access_token: str
    refresh_token: str | None = None
    expires_at: datetime | None = None

    def is_expired(self, now: datetime, *, skew_s: int = 0) -> bool:
        # Без срока жизни считаем токен действующим, пока upstream не ответит 401.
        if self.expires_at is None:
            return False
        return ensure_utc(now) + timedelta(seconds=skew_s) >= ensure_utc(self.expires_at)

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "TokenState | None":
        access = str(payload.get("access_token") or "").strip()
        if not access:
            return None
        expires_raw = payload.get("expires_at")
        try:
            expires_at = datetime.fromisoformat(str(expires_raw)) if expires_raw else None
        except ValueError:
            expires_at = None
        refresh = str(payload.get("refresh_token") or "").strip() or None
        return cls(access_token=access, refresh_token=refresh, expires_at=expires_at)


@dataclass(frozen=True, slots=True)
class FeedFilters:
    unreplied_only: bool = False
    limit: int | None = None


@dataclass(slots=True)
class FeedResult:
    reviews: list[Review] = field(default_factory=list)
    total_count: int = 0
    stores_checked: int = 0
    has_system_messages: bool = False


class ReviewListResponse(_WireModel):
    reviews: list[Review]
    count: int
    total_count: int
    real_reviews_count: int
    system_messages_count: int
    stores_checked: int
    has_system_messages: bool
    is_real_data: bool
    store_id: str | None = None
    unreplied: bool = False
    limit: int | None = None
    message: str = ""


class DailyPoint(_WireModel):
    day: date = Field(alias="date")
    count: int


class StoreStats(_WireModel):
    store_id: str
    store_name: str
    review_count: int
    average_rating: float
    unanswered_reviews: int


class AnalyticsSnapshot(_WireModel):
    period_days: int
    total_stores: int
    total_reviews: int
    average_rating: float
    rating_distribution: dict[int, int]
    unanswered_reviews: int
    response_rate: int
    today_reviews: int
    has_real_data: bool
    daily_series: list[DailyPoint]
    per_store_stats: list[StoreStats]
    store_id: str | None = None


def ensure_utc(dt: datetime) -> datetime:
    if dt.tzinfo:
        return dt.astimezone(timezone.utc)
    return dt.replace(tzinfo=timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


__all__ = [
    "AnalyticsSnapshot",
    "DailyPoint",
    "FeedFilters",
    "FeedResult",
    "MessageType",
    "Review",
    "ReviewListResponse",
    "Store",
    "StoreStats",
    "TokenState",
    "ensure_utc",
    "utc_now",
]
