# reviewhub/gbp_client.py
from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Dict, List
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ConfigDict, Field

from reviewhub.config import GBPConfig

logger = logging.getLogger(__name__)

RETRYABLE_STATUSES = {429, 500, 502, 503, 504}


class GBPAPIError(RuntimeError):
    """Ошибка вызова API бизнес-справочника."""

    def __init__(self, message: str, *, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


# ---------- Модели ответов upstream ----------


class GBPAccount(BaseModel):
    name: str
    account_name: str | None = Field(default=None, alias="accountName")
    type: str | None = None

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GBPAccountListResponse(BaseModel):
    accounts: list[GBPAccount] = Field(default_factory=list)
    next_page_token: str | None = Field(default=None, alias="nextPageToken")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GBPReviewer(BaseModel):
    display_name: str | None = Field(default=None, alias="displayName")
    profile_photo_url: str | None = Field(default=None, alias="profilePhotoUrl")
    is_anonymous: bool | None = Field(default=None, alias="isAnonymous")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GBPReviewReply(BaseModel):
    comment: str | None = None
    update_time: str | None = Field(default=None, alias="updateTime")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


class GBPReview(BaseModel):
    name: str | None = None
    review_id: str | None = Field(default=None, alias="reviewId")
    # строковая метка ("FIVE") или число, разбирает ratings.normalize_rating
    star_rating: Any = Field(default=None, alias="starRating")
    comment: str | None = None
    reviewer: GBPReviewer | None = None
    create_time: str | None = Field(default=None, alias="createTime")
    update_time: str | None = Field(default=None, alias="updateTime")
    review_reply: GBPReviewReply | None = Field(default=None, alias="reviewReply")

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    @property
    def reply_comment(self) -> str | None:
        if self.review_reply is None:
            return None
        txt = (self.review_reply.comment or "").strip()
        return txt or None


class GBPReviewListResponse(BaseModel):
    reviews: list[GBPReview] = Field(default_factory=list)
    average_rating: float | None = Field(default=None, alias="averageRating")
    total_review_count: int | None = Field(default=None, alias="totalReviewCount")
    next_page_token: str | None = Field(default=None, alias="nextPageToken")

    model_config = ConfigDict(extra="allow", populate_by_name=True)


# ---------- Клиент ----------


class GBPClient:
    """
    Тонкий async-клиент бизнес-справочника.

    Все методы возвращают ``(HTTP статус, JSON)`` без raise_for_status:
    классификацию ответов делает вызывающий код. Сетевые ошибки, 429 и 5xx
    повторяются с экспоненциальной задержкой; после последней попытки сетевая
    ошибка пробрасывается как ``httpx.HTTPError``.
    """

    def __init__(self, config: GBPConfig, *, http_client: httpx.AsyncClient | None = None) -> None:
        self.config = config
        self._owns_http = http_client is None
        self.http = http_client or httpx.AsyncClient(
            timeout=config.timeout_s,
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        if self._owns_http:
            await self.http.aclose()

    def _backoff(self, attempt: int) -> float:
        backoffs = self.config.retry_backoffs or (0.0,)
        return backoffs[min(attempt - 1, len(backoffs) - 1)]

    async def _request_with_status(
        self,
        method: str,
        url: str,
        token: str,
        *,
        params: Dict[str, Any] | None = None,
        json: Dict[str, Any] | None = None,
    ) -> tuple[int, Dict[str, Any] | None]:
        """Выполнить запрос и вернуть статус + JSON без raise_for_status."""

        headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
        max_attempts = max(1, self.config.http_max_attempts)
        r: httpx.Response | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                r = await self.http.request(
                    method,
                    url,
                    params=params,
                    json=json,
                    headers=headers,
                    timeout=self.config.timeout_s,
                )
            except httpx.TransportError as exc:
                if attempt >= max_attempts:
                    raise

                delay = self._backoff(attempt)
                if delay > 0:
                    delay += random.uniform(0, 0.25)
                logger.warning(
                    "GBP %s %s retry %s/%s after %.2fs due to %r",
                    method,
                    url,
                    attempt,
                    max_attempts,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
                continue

            status = r.status_code
            if status in RETRYABLE_STATUSES and attempt < max_attempts:
                retry_after: float | None = None
                if status == 429:
                    try:
                        retry_after = float(r.headers.get("Retry-After") or "")
                    except ValueError:
                        retry_after = None

                delay = retry_after if retry_after is not None else self._backoff(attempt)
                logger.warning(
                    "GBP %s %s retry %s/%s on HTTP %s in %.2fs",
                    method,
                    url,
                    attempt,
                    max_attempts,
                    status,
                    delay,
                )
                await asyncio.sleep(delay)
                continue

            break

        if r is None:
            raise RuntimeError("HTTP client did not return a response")

        status = r.status_code
        try:
            data = r.json()
        except ValueError:
            raw = r.text
            if status < 400:
                logger.error("GBP %s %s -> HTTP %s JSON decode failed: %s", method, url, status, raw[:500])
            else:
                logger.warning("GBP %s %s -> HTTP %s: %s", method, url, status, raw[:500])
            return status, {"raw": raw}

        if status >= 400:
            logger.warning("GBP %s %s -> HTTP %s: %s", method, url, status, data)

        return status, data if isinstance(data, dict) else None

    # ---------- Аккаунты ----------

    async def list_accounts(self, token: str) -> tuple[int, Dict[str, Any] | None]:
        return await self._request_with_status("GET", self.config.accounts_url, token)

    # ---------- Отзывы ----------

    def reviews_url(self, account: str, location_id: str) -> str:
        account_path = account.strip("/")
        location = quote(location_id.strip(), safe="")
        return f"{self.config.reviews_base_url}/{account_path}/locations/{location}/reviews"

    async def list_reviews(
        self,
        token: str,
        account: str,
        location_id: str,
        *,
        page_token: str | None = None,
    ) -> tuple[int, Dict[str, Any] | None]:
        params: Dict[str, Any] = {"pageSize": self.config.reviews_page_size}
        if page_token:
            params["pageToken"] = page_token
        return await self._request_with_status(
            "GET",
            self.reviews_url(account, location_id),
            token,
            params=params,
        )

    async def put_reply(self, token: str, review_name: str, comment: str) -> tuple[int, Dict[str, Any] | None]:
        """Опубликовать ответ на отзыв (``PUT /{review_name}/reply``)."""

        path = review_name.strip("/")
        if not path.endswith("/reply"):
            path = f"{path}/reply"
        url = f"{self.config.reviews_base_url}/{path}"
        return await self._request_with_status("PUT", url, token, json={"comment": comment})


def parse_accounts(payload: Dict[str, Any] | None) -> List[GBPAccount]:
    return GBPAccountListResponse.model_validate(payload or {}).accounts


__all__ = [
    "GBPAPIError",
    "GBPAccount",
    "GBPAccountListResponse",
    "GBPClient",
    "GBPReview",
    "GBPReviewListResponse",
    "GBPReviewReply",
    "GBPReviewer",
    "parse_accounts",
]
