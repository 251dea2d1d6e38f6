from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import String, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from reviewhub.models import Store

logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


class Base(DeclarativeBase):
    pass


class StoreRow(Base):
    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    display_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    external_location_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    def to_store(self) -> Store:
        return Store(
            id=self.id,
            owner_id=self.owner_id,
            display_name=self.display_name or "",
            external_location_id=self.external_location_id,
        )


async def init_db(database_url: str) -> async_sessionmaker[AsyncSession]:
    """Инициализировать БД и создать таблицы."""

    global _engine, _session_factory
    if _session_factory is not None:
        return _session_factory

    _engine = create_async_engine(database_url, echo=False, future=True)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _session_factory = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    logger.info("Database initialized")
    return _session_factory


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


class SqlStoreDirectory:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_stores(self, owner_id: str) -> list[Store]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(StoreRow).where(StoreRow.owner_id == str(owner_id)).order_by(StoreRow.id)
            )
            return [row.to_store() for row in result.scalars()]


__all__ = ["Base", "SqlStoreDirectory", "StoreRow", "close_db", "init_db"]
