from __future__ import annotations

from collections.abc import Sequence
from typing import TypeVar

T = TypeVar("T")


def chunk(items: Sequence[T], size: int) -> list[list[T]]:
    if not items:
        return []
    step = max(1, size)
    return [list(items[start : start + step]) for start in range(0, len(items), step)]
