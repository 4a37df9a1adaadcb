from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

"""Reconciliation domain models.

RunState tracks one import run through its lifecycle:

    IDLE -> DECODING -> MAPPING -> JOINING -> RESOLVING -> WRITING -> SUMMARIZING

ABORTED is entered instead when decoding/mapping fails at the sheet level; no
writes are attempted in that case.
"""

__all__ = [
    "RunState",
    "Resolution",
    "ReconciliationRecord",
    "OrphanedChildRow",
]


class RunState(Enum):
    IDLE = "idle"
    DECODING = "decoding"
    MAPPING = "mapping"
    JOINING = "joining"
    RESOLVING = "resolving"
    WRITING = "writing"
    SUMMARIZING = "summarizing"
    ABORTED = "aborted"


@dataclass(frozen=True)
class Resolution:
    """Create-vs-update decision for one record."""
    mode: str  # "create" | "update"
    target_id: str | None = None

    @classmethod
    def create(cls) -> Resolution:
        return cls(mode="create")

    @classmethod
    def update(cls, target_id: Any) -> Resolution:
        return cls(mode="update", target_id=str(target_id))

    def __str__(self) -> str:
        if self.mode == "update":
            return f"update:{self.target_id}"
        return self.mode


@dataclass
class ReconciliationRecord:
    """Unit of work: one assembled payload and its outcome.

    Constructed for each root sheet row; only ``resolution``, ``error`` and
    ``succeeded`` are set after construction.
    """
    row_number: int
    key: str | None
    payload: dict[str, Any]
    identifier: str | None = None
    children: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    resolution: Resolution | None = None
    error: str | None = None
    error_type: str | None = None
    succeeded: bool = False

    @property
    def failed(self) -> bool:
        return self.error is not None

    def fail(self, error_type: str, message: str) -> None:
        # 最初のエラーを優先 (後続段階で上書きしない)
        if self.error is None:
            self.error_type = error_type
            self.error = message

    @property
    def outcome(self) -> str:
        if self.error is not None:
            return f"error:{self.error}"
        return "success" if self.succeeded else "pending"

    @property
    def label(self) -> str:
        """Human readable reference used in summary messages."""
        if self.key:
            return f"Row {self.row_number} ({self.key})"
        return f"Row {self.row_number}"


@dataclass(frozen=True)
class OrphanedChildRow:
    """Child sheet row whose natural key matches no root row (warning only)."""
    sheet_name: str
    row_number: int
    key: str | None
