from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from post_repair.schemas.posts import UnfixedItem

logger = logging.getLogger(__name__)


def pretty_json(value: Any) -> str:
    return json.dumps(value, indent=4, ensure_ascii=False, default=str)


class RepairRunError(Exception):
    """Aggregate failure of a run; carries every per-item failure description."""

    def __init__(self, descriptions: list[str]) -> None:
        self.descriptions = list(descriptions)
        self.count = len(self.descriptions)
        super().__init__(f"{self.count} item(s) could not be repaired; unfixed: {pretty_json(self.descriptions)}")


@dataclass(slots=True)
class RepairReport:
    mode: str
    total: int = 0
    repaired: int = 0
    skipped: int = 0
    failures: list[UnfixedItem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    @property
    def error(self) -> RepairRunError | None:
        if self.ok:
            return None
        return RepairRunError(self.descriptions())

    def record_failure(self, item_id: str, reason: str, exc: BaseException | None = None) -> UnfixedItem:
        item = UnfixedItem(item_id=item_id, reason=reason, error=_describe_exception(exc))
        self.failures.append(item)
        logger.warning("repair failed mode=%s item=%s reason=%s error=%s", self.mode, item_id, reason, item.error)
        return item

    def descriptions(self) -> list[str]:
        return [item.describe() for item in self.failures]

    def raise_for_failures(self) -> None:
        error = self.error
        if error is not None:
            raise error

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "total": self.total,
            "repaired": self.repaired,
            "skipped": self.skipped,
            "failed": len(self.failures),
        }


def _describe_exception(exc: BaseException | None) -> str:
    if exc is None:
        return "not found"
    return str(exc) or type(exc).__name__
