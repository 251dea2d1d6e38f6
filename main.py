# main.py
from __future__ import annotations

import logging
import os
from contextlib import suppress

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from reviewhub.auth import AuthExpired, AuthRequired
from reviewhub.config import GBPConfig, load_gbp_config
from reviewhub.db import SqlStoreDirectory, close_db, init_db
from reviewhub.directory import JsonStoreDirectory, StoreDirectory
from reviewhub.gbp_client import GBPAPIError, GBPClient
from reviewhub.models import AnalyticsSnapshot, ReviewListResponse
from reviewhub.service import InvalidReplyInput, ReviewService, StoreNotFound
from reviewhub.utils.storage import JsonTokenStore

logger = logging.getLogger("main")

load_dotenv()


def _env(*names: str, default: str = "") -> str:
    for n in names:
        v = (os.getenv(n) or "").strip()
        if v:
            return v
    return (default or "").strip()


def setup_logging() -> None:
    level = _env("LOG_LEVEL", default="INFO").upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def validate_env() -> GBPConfig:
    """
    Проверяем переменные и возвращаем конфиг справочника.
    """
    cfg = load_gbp_config()
    if not cfg.client_id or not cfg.client_secret:
        logger.warning("GOOGLE_CLIENT_ID/GOOGLE_CLIENT_SECRET не заданы, обновление токенов будет падать.")
    return cfg


# -----------------------------------------------------------------------------
# Global setup
# -----------------------------------------------------------------------------

setup_logging()
GBP_CFG = validate_env()

app = FastAPI(title="reviewhub")

_service: ReviewService | None = None
_client: GBPClient | None = None


async def build_directory() -> StoreDirectory:
    database_url = _env("DATABASE_URL")
    if not database_url:
        logger.info("DATABASE_URL не задан, магазины читаются из stores.json")
        return JsonStoreDirectory()
    session_factory = await init_db(database_url)
    return SqlStoreDirectory(session_factory)


@app.on_event("startup")
async def on_startup() -> None:
    global _service, _client

    logger.info("Startup: initializing store directory")
    directory = await build_directory()

    logger.info("Startup: initializing directory API client")
    _client = GBPClient(GBP_CFG)
    _service = ReviewService(directory, _client, JsonTokenStore())


@app.on_event("shutdown")
async def on_shutdown() -> None:
    global _client, _service
    logger.info("Shutdown: closing clients")

    if _client is not None:
        with suppress(Exception):
            await _client.aclose()
    _client = None
    _service = None

    await close_db()


def get_review_service() -> ReviewService:
    if _service is None:
        raise HTTPException(status_code=503, detail="Service is not initialized")
    return _service


def get_user_id(x_user_id: str | None = Header(default=None)) -> str:
    # личность пользователя определяет внешний auth-слой и передаёт заголовком
    uid = (x_user_id or "").strip()
    if not uid:
        raise AuthRequired("Session identity is missing")
    return uid


# -----------------------------------------------------------------------------
# Error mapping
# -----------------------------------------------------------------------------


@app.exception_handler(AuthRequired)
async def _auth_required_handler(request: Request, exc: AuthRequired) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "auth_required", "detail": str(exc)})


@app.exception_handler(AuthExpired)
async def _auth_expired_handler(request: Request, exc: AuthExpired) -> JSONResponse:
    return JSONResponse(status_code=401, content={"error": "auth_expired", "detail": str(exc)})


@app.exception_handler(GBPAPIError)
async def _upstream_error_handler(request: Request, exc: GBPAPIError) -> JSONResponse:
    return JSONResponse(
        status_code=502,
        content={"error": "upstream_error", "detail": str(exc), "status": exc.status},
    )


@app.exception_handler(StoreNotFound)
async def _store_not_found_handler(request: Request, exc: StoreNotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "not_found", "detail": str(exc)})


@app.exception_handler(InvalidReplyInput)
async def _bad_request_handler(request: Request, exc: InvalidReplyInput) -> JSONResponse:
    return JSONResponse(status_code=400, content={"error": "bad_request", "detail": str(exc)})


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


class ReplyRequest(BaseModel):
    review_name: str = Field(min_length=1)
    comment: str = Field(min_length=1, max_length=4096)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


@app.api_route("/", methods=["GET", "HEAD"])
async def root() -> dict:
    return {"status": "ok", "detail": "reviewhub is running"}


@app.get("/health")
async def health() -> dict:
    return {"ok": True}


@app.get("/reviews", response_model=ReviewListResponse)
async def list_reviews(
    store_id: str | None = Query(default=None, alias="storeId"),
    unreplied: bool = Query(default=False),
    limit: int | None = Query(default=None, ge=0),
    user_id: str = Depends(get_user_id),
    service: ReviewService = Depends(get_review_service),
) -> ReviewListResponse:
    return await service.list_reviews(user_id, store_id=store_id, unreplied_only=unreplied, limit=limit)


@app.get("/analytics", response_model=AnalyticsSnapshot)
async def get_analytics(
    store_id: str | None = Query(default=None, alias="storeId"),
    period: int | None = Query(default=None, ge=1, le=365),
    user_id: str = Depends(get_user_id),
    service: ReviewService = Depends(get_review_service),
) -> AnalyticsSnapshot:
    return await service.get_analytics(user_id, store_id=store_id, period_days=period)


@app.post("/reviews/reply")
async def reply_to_review(
    body: ReplyRequest,
    user_id: str = Depends(get_user_id),
    service: ReviewService = Depends(get_review_service),
) -> dict:
    payload = await service.reply_to_review(user_id, body.review_name, body.comment)
    return {"success": True, "reply": payload}


__all__ = ["app"]
