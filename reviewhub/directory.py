"""Read-only lookup of a user's stores.

Store CRUD lives elsewhere; the review pipeline only needs to list the stores
of one owner, so it depends on the narrow ``StoreDirectory`` protocol.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Protocol

from pydantic import ValidationError

from reviewhub.models import Store
from reviewhub.utils.storage import read_stores_payload

logger = logging.getLogger(__name__)


class StoreDirectory(Protocol):
    """Repository interface for listing the stores of an owner."""

    async def list_stores(self, owner_id: str) -> list[Store]: ...


def select_stores(stores: Iterable[Store], store_id: str | None) -> list[Store]:
    """Restrict to one store when ``store_id`` is given (unknown id -> empty)."""

    if not store_id:
        return list(stores)
    return [s for s in stores if s.id == store_id]


class InMemoryStoreDirectory:
    def __init__(self, stores: Iterable[Store] = ()) -> None:
        self._stores = list(stores)

    async def list_stores(self, owner_id: str) -> list[Store]:
        return [s for s in self._stores if s.owner_id == str(owner_id)]


class JsonStoreDirectory:
    """Stores read from ``stores.json`` under the storage root on each call."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path

    async def list_stores(self, owner_id: str) -> list[Store]:
        stores: list[Store] = []
        for raw in read_stores_payload(self.path):
            try:
                store = Store.model_validate(raw)
            except ValidationError:
                logger.warning("Skipping malformed store entry: %r", raw)
                continue
            if store.owner_id == str(owner_id):
                stores.append(store)
        return stores


__all__ = [
    "InMemoryStoreDirectory",
    "JsonStoreDirectory",
    "StoreDirectory",
    "select_stores",
]
