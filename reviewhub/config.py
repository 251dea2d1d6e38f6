# reviewhub/config.py
from __future__ import annotations

import os
from dataclasses import dataclass


def _env(*names: str, default: str = "") -> str:
    """
    Берём первое непустое значение из списка переменных окружения.
    """
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            return v
    return (default or "").strip()


def _env_float(name: str, default: float) -> float:
    try:
        return float(_env(name, default=str(default)))
    except Exception:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(_env(name, default=str(default)))
    except Exception:
        return default


@dataclass(frozen=True, slots=True)
class GBPConfig:
    accounts_url: str
    reviews_base_url: str
    token_url: str
    client_id: str
    client_secret: str
    timeout_s: float = 15.0
    fetch_concurrency: int = 5
    http_max_attempts: int = 3
    retry_backoffs: tuple[float, ...] = (0.5, 1.0, 2.0)
    reviews_page_size: int = 50
    reviews_max_pages: int = 10
    token_expiry_skew_s: int = 60
    default_period_days: int = 30


def load_gbp_config() -> GBPConfig:
    accounts_url = _env(
        "GBP_ACCOUNTS_URL",
        default="https://mybusinessaccountmanagement.googleapis.com/v1/accounts",
    ).rstrip("/")
    reviews_base_url = _env(
        "GBP_REVIEWS_BASE_URL",
        default="https://mybusiness.googleapis.com/v4",
    ).rstrip("/")
    token_url = _env("GOOGLE_TOKEN_URL", default="https://oauth2.googleapis.com/token")

    concurrency = _env_int("GBP_FETCH_CONCURRENCY", 5)

    return GBPConfig(
        accounts_url=accounts_url,
        reviews_base_url=reviews_base_url,
        token_url=token_url,
        client_id=_env("GOOGLE_CLIENT_ID"),
        client_secret=_env("GOOGLE_CLIENT_SECRET"),
        timeout_s=_env_float("GBP_HTTP_TIMEOUT_S", 15.0),
        fetch_concurrency=max(1, min(concurrency, 10)),
        http_max_attempts=max(1, _env_int("GBP_HTTP_MAX_ATTEMPTS", 3)),
        reviews_page_size=max(1, min(_env_int("GBP_REVIEWS_PAGE_SIZE", 50), 50)),
        reviews_max_pages=max(1, _env_int("GBP_REVIEWS_MAX_PAGES", 10)),
        token_expiry_skew_s=max(0, _env_int("TOKEN_EXPIRY_SKEW_S", 60)),
        default_period_days=max(1, _env_int("ANALYTICS_DEFAULT_PERIOD_DAYS", 30)),
    )


__all__ = ["GBPConfig", "load_gbp_config"]
