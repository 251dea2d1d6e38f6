# reviewhub/utils/storage.py
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict

from reviewhub.models import TokenState

logger = logging.getLogger(__name__)

# -----------------------------------------------------------------------------
# Storage location (persistent disk friendly)
# -----------------------------------------------------------------------------


def _storage_root() -> Path:
    p = (os.getenv("STORAGE_DIR") or "").strip()
    if p:
        return Path(p)

    for env_name in ("PERSIST_DIR", "PERSISTENT_DIR"):
        v = (os.getenv(env_name) or "").strip()
        if v:
            return Path(v)

    return Path("data")


ROOT = _storage_root()

TOKENS_FILE = ROOT / "oauth_tokens.json"
STORES_FILE = ROOT / "stores.json"

_LOCK = threading.RLock()


def _read_json(path: Path, default: Any) -> Any:
    try:
        if not path.exists():
            return default
        raw = path.read_text(encoding="utf-8", errors="replace").strip()
        if not raw:
            return default
        return json.loads(raw)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to read %s: %s", path, exc)
        return default


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    txt = json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True, default=_json_default)
    tmp.write_text(txt, encoding="utf-8")
    tmp.replace(path)


def _json_default(obj: Any) -> Any:
    if isinstance(obj, datetime):
        return obj.isoformat()
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


class JsonTokenStore:
    """
    OAuth-токены пользователей в одном JSON-файле.

    Файл читается лениво при первом обращении; каждая запись сразу
    сбрасывается на диск атомарной заменой.
    """

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or TOKENS_FILE
        self._loaded = False
        self._states: Dict[str, dict] = {}

    def _ensure_loaded(self) -> None:
        if self._loaded:
            return
        with _LOCK:
            if self._loaded:
                return
            data = _read_json(self.path, default={})
            self._states = data if isinstance(data, dict) else {}
            self._loaded = True

    def _flush(self) -> None:
        _write_json_atomic(self.path, self._states)

    def load(self, user_id: str) -> TokenState | None:
        self._ensure_loaded()
        with _LOCK:
            payload = self._states.get(str(user_id))
        if not isinstance(payload, dict):
            return None
        return TokenState.from_dict(payload)

    def save(self, user_id: str, state: TokenState) -> None:
        self._ensure_loaded()
        with _LOCK:
            self._states[str(user_id)] = state.to_dict()
            self._flush()

    def clear(self, user_id: str) -> None:
        self._ensure_loaded()
        with _LOCK:
            if self._states.pop(str(user_id), None) is not None:
                self._flush()


def read_stores_payload(path: Path | None = None) -> list[dict]:
    data = _read_json(path or STORES_FILE, default=[])
    if isinstance(data, dict):
        data = data.get("stores") or []
    if not isinstance(data, list):
        return []
    return [x for x in data if isinstance(x, dict)]


__all__ = [
    "JsonTokenStore",
    "ROOT",
    "STORES_FILE",
    "TOKENS_FILE",
    "read_stores_payload",
]
