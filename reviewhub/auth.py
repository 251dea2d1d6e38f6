# reviewhub/auth.py
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Protocol, Tuple

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from reviewhub.config import GBPConfig
from reviewhub.models import TokenState, utc_now

logger = logging.getLogger(__name__)


class AuthError(RuntimeError):
    """Ошибка авторизации во внешнем сервисе."""


class AuthRequired(AuthError):
    """Нет токена: пользователь ещё не прошёл OAuth."""


class AuthExpired(AuthError):
    """Обновить токен не удалось, нужен повторный OAuth."""


class TokenStore(Protocol):
    """Where the OAuth token pair of a user session lives."""

    def load(self, user_id: str) -> TokenState | None: ...

    def save(self, user_id: str, state: TokenState) -> None: ...

    def clear(self, user_id: str) -> None: ...


class MemoryTokenStore:
    def __init__(self, initial: Dict[str, TokenState] | None = None) -> None:
        self._states: Dict[str, TokenState] = dict(initial or {})

    def load(self, user_id: str) -> TokenState | None:
        return self._states.get(str(user_id))

    def save(self, user_id: str, state: TokenState) -> None:
        self._states[str(user_id)] = state

    def clear(self, user_id: str) -> None:
        self._states.pop(str(user_id), None)


class TokenRefreshResponse(BaseModel):
    access_token: str
    expires_in: int | None = None
    refresh_token: str | None = None
    token_type: str | None = None

    model_config = ConfigDict(extra="allow")


class TokenManager:
    """
    Владелец пары access/refresh токенов одного пользователя.

    ``refresh()`` работает как single-flight: пока обмен refresh-токена в процессе,
    остальные вызовы ждут тот же результат и не шлют повторных запросов.
    """

    def __init__(
        self,
        user_id: str,
        store: TokenStore,
        http_client: httpx.AsyncClient,
        config: GBPConfig,
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.user_id = str(user_id)
        self._store = store
        self._http = http_client
        self._config = config
        self._clock = clock
        self._lock = asyncio.Lock()
        self._inflight: asyncio.Future[str] | None = None

    def _load(self) -> TokenState | None:
        return self._store.load(self.user_id)

    @property
    def refreshing(self) -> bool:
        return self._inflight is not None

    def has_token(self) -> bool:
        state = self._load()
        return bool(state and state.access_token)

    async def get_valid_token(self) -> str:
        state = self._load()
        if state is None or not state.access_token:
            raise AuthRequired("OAuth token is missing, authorization required")

        if state.is_expired(self._clock(), skew_s=self._config.token_expiry_skew_s):
            logger.info("Access token expired for user=%s, refreshing", self.user_id)
            return await self.refresh(rejected_token=state.access_token)

        return state.access_token

    async def refresh(self, rejected_token: str | None = None) -> str:
        """Обменять refresh-токен на новый access-токен (single-flight).

        ``rejected_token``: токен, который upstream только что отклонил. Если
        текущий токен уже другой и не истёк, значит его обновил параллельный
        вызов, и повторный обмен не нужен.
        """

        async with self._lock:
            task = self._inflight
            if task is None:
                state = self._load()
                if (
                    rejected_token is not None
                    and state is not None
                    and state.access_token
                    and state.access_token != rejected_token
                    and not state.is_expired(self._clock(), skew_s=self._config.token_expiry_skew_s)
                ):
                    return state.access_token

                task = asyncio.ensure_future(self._exchange(state))
                task.add_done_callback(self._on_refresh_done)
                self._inflight = task

        # shield: отмена одного ожидающего не должна рвать общий обмен
        return await asyncio.shield(task)

    def _on_refresh_done(self, task: asyncio.Future[str]) -> None:
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled():
            # помечаем исключение полученным, даже если все ожидающие отменены
            task.exception()

    async def _exchange(self, state: TokenState | None) -> str:
        if state is None or not state.refresh_token:
            self._invalidate()
            raise AuthExpired("No refresh token available, re-authentication required")

        body = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "refresh_token": state.refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            r = await self._http.post(self._config.token_url, data=body, timeout=self._config.timeout_s)
        except httpx.HTTPError as exc:
            logger.warning("Token refresh for user=%s failed: %s", self.user_id, exc)
            self._invalidate()
            raise AuthExpired(f"Token refresh failed: {exc}") from exc

        if r.status_code >= 400:
            logger.warning("Token refresh for user=%s -> HTTP %s", self.user_id, r.status_code)
            self._invalidate()
            raise AuthExpired(f"Token refresh rejected with HTTP {r.status_code}")

        try:
            payload = TokenRefreshResponse.model_validate(r.json())
        except (ValueError, ValidationError) as exc:
            logger.warning("Token refresh for user=%s returned malformed payload", self.user_id)
            self._invalidate()
            raise AuthExpired("Token refresh returned malformed payload") from exc

        now = self._clock()
        expires_at = now + timedelta(seconds=payload.expires_in) if payload.expires_in else None
        new_state = TokenState(
            access_token=payload.access_token,
            refresh_token=payload.refresh_token or state.refresh_token,
            expires_at=expires_at,
        )
        self._store.save(self.user_id, new_state)
        logger.info("Access token refreshed for user=%s (expires_in=%s)", self.user_id, payload.expires_in)
        return new_state.access_token

    def _invalidate(self) -> None:
        self._store.clear(self.user_id)


UpstreamCall = Callable[[str], Awaitable[Tuple[int, Any]]]


@dataclass(frozen=True, slots=True)
class RefreshRetryPolicy:
    """
    Политика 401 → refresh → повтор для одного вызова upstream.

    ``max_refreshes``: сколько раз обновляем токен и повторяем запрос.
    Ответ повторной попытки возвращается как есть, даже если это снова 401.
    """

    tokens: TokenManager
    max_refreshes: int = 1
    backoff_s: float = 0.0

    async def run(self, call: UpstreamCall) -> Tuple[int, Any]:
        token = await self.tokens.get_valid_token()
        attempt = 0
        while True:
            status, payload = await call(token)
            if status != 401 or attempt >= self.max_refreshes:
                return status, payload

            attempt += 1
            logger.info(
                "Upstream rejected token for user=%s, refresh %s/%s",
                self.tokens.user_id,
                attempt,
                self.max_refreshes,
            )
            token = await self.tokens.refresh(rejected_token=token)
            if self.backoff_s > 0:
                await asyncio.sleep(self.backoff_s * attempt)


__all__ = [
    "AuthError",
    "AuthExpired",
    "AuthRequired",
    "MemoryTokenStore",
    "RefreshRetryPolicy",
    "TokenManager",
    "TokenStore",
]
