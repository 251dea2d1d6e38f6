"""Star rating normalization for upstream review payloads."""
from __future__ import annotations

from typing import Any

STAR_LABELS: dict[str, int] = {
    "ONE": 1,
    "TWO": 2,
    "THREE": 3,
    "FOUR": 4,
    "FIVE": 5,
}

MIN_RATING = 0
MAX_RATING = 5


def normalize_rating(raw: Any) -> int:
    """Привести оценку из ответа upstream к целому 0..5.

    Поддерживаем целые числа (в т.ч. ``4.0``) и строковые метки ``ONE``..``FIVE``
    без учёта регистра. Всё остальное превращается в ``0`` («нет оценки»).
    Функция никогда не бросает исключений.
    """

    # bool is an int subclass; True must not become a 1-star review
    if isinstance(raw, bool) or raw is None:
        return 0

    if isinstance(raw, int):
        return raw if MIN_RATING <= raw <= MAX_RATING else 0

    if isinstance(raw, float):
        if raw.is_integer() and MIN_RATING <= raw <= MAX_RATING:
            return int(raw)
        return 0

    if isinstance(raw, str):
        return STAR_LABELS.get(raw.strip().upper(), 0)

    return 0


__all__ = ["STAR_LABELS", "normalize_rating"]
