from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum

"""Import session ledger models.

An ImportSession is the unit-of-work and audit/undo boundary for one CSV
import run. It owns the ids of the properties created under it.

State transitions: in_progress → (completed | failed) → undone
``undone`` is terminal.
"""

__all__ = [
    "SessionStatus",
    "RowOutcome",
    "ImportSession",
    "UndoPreview",
    "UndoResult",
]


class SessionStatus(Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"  # ledger closed (row errors may exist)
    FAILED = "failed"
    UNDONE = "undone"


class RowOutcome(Enum):
    CREATED = "created"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass(frozen=True)
class ImportSession:
    session_id: str
    user_id: str
    created_at: datetime
    total_properties: int
    success_count: int = 0
    error_count: int = 0
    skipped_count: int = 0
    status: SessionStatus = SessionStatus.IN_PROGRESS

    @property
    def can_undo(self) -> bool:
        return self.status in (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass(frozen=True)
class UndoPreview:
    """What an undo would do; shown to the operator before confirming."""
    session: ImportSession
    owner_name: str
    pending_count: int  # まだ削除されていない紐付けプロパティ数


@dataclass(frozen=True)
class UndoResult:
    session_id: str
    undone_count: int
