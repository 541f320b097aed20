from __future__ import annotations

import statistics
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .error_record import ErrorType, RowError
from .row_data import RawRow

"""Batch and run result models for the property CSV importer.

These models carry per-batch outcomes, progress events and the end-of-run
summary the operator sees.
"""

__all__ = [
    "RunState",
    "ImportBatch",
    "SkippedRow",
    "BatchResult",
    "ProgressEvent",
    "RowEvent",
    "SessionSummary",
    "BatchStatsAccumulator",
]


class RunState(Enum):
    """Orchestrator state machine.

    IDLE → ANALYZING → AWAITING_MAPPING → IMPORTING → (COMPLETED | FAILED | CANCELLED)
    """
    IDLE = "idle"
    ANALYZING = "analyzing"
    AWAITING_MAPPING = "awaiting_mapping"
    IMPORTING = "importing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunState.COMPLETED, RunState.FAILED, RunState.CANCELLED)


@dataclass(frozen=True)
class ImportBatch:
    """Contiguous slice ``[start_index, end_index)`` of the run's rows."""
    batch_number: int  # 1始まり
    start_index: int
    end_index: int  # exclusive
    rows: tuple[RawRow, ...]

    @property
    def size(self) -> int:
        return self.end_index - self.start_index


@dataclass(frozen=True)
class SkippedRow:
    """A row left out because it duplicates an existing property (not an error)."""
    row_number: int
    name: str
    reason: str
    reference_id: str | None = None


@dataclass(frozen=True)
class BatchResult:
    batch_number: int
    successful: int
    failed: int
    skipped: int
    created_ids: tuple[str, ...] = ()
    errors: tuple[RowError, ...] = ()
    skipped_rows: tuple[SkippedRow, ...] = ()
    elapsed_seconds: float = 0.0
    batch_failed: bool = False  # バッチ単位失敗 (悲観的に全行 failed)
    outcome_unknown: bool = False  # COMMIT 結果不明 (要手動確認)
    unverified: int = 0  # failed のうち結果未確認の行数

    @property
    def processed(self) -> int:
        return self.successful + self.failed + self.skipped


@dataclass(frozen=True)
class ProgressEvent:
    """Progress update, emitted at least once per settled batch."""
    message: str
    batch_number: int
    total_batches: int
    successful: int
    failed: int
    skipped: int
    progress_rows: int
    total_rows: int


@dataclass(frozen=True)
class RowEvent:
    """Fine-grained per-row notification (optional observer)."""
    row_number: int
    status: str  # created / skipped / failed
    property_name: str = ""
    error_type: ErrorType | None = None


@dataclass(frozen=True)
class SessionSummary:
    """End-of-run report.

    On completion ``successful + failed + skipped == total_rows``; a cancelled
    run additionally reports ``unprocessed`` rows.
    """
    session_id: str
    state: RunState
    total_rows: int
    successful: int
    failed: int
    skipped: int
    total_batches: int
    completed_batches: int
    start_time: datetime
    end_time: datetime
    elapsed_seconds: float
    unverified: int = 0  # 結果未確認行 (failed にも計上済)
    unprocessed: int = 0  # キャンセルで未処理
    failed_batches: list[int] = field(default_factory=list)
    errors: list[RowError] = field(default_factory=list)
    skipped_rows: list[SkippedRow] = field(default_factory=list)
    avg_batch_seconds: float = 0.0
    p95_batch_seconds: float = 0.0

    @property
    def cancelled(self) -> bool:
        return self.state is RunState.CANCELLED

    @property
    def accounted_rows(self) -> int:
        return self.successful + self.failed + self.skipped + self.unprocessed


class BatchStatsAccumulator:
    """Helper class to accumulate batch timing statistics for SessionSummary."""

    def __init__(self) -> None:
        self.batch_times: list[float] = []

    def add_batch_time(self, elapsed_seconds: float) -> None:
        """Add a batch timing measurement."""
        self.batch_times.append(elapsed_seconds)

    def get_stats(self) -> tuple[int, float, float]:
        """Calculate batch statistics.

        Returns:
            tuple: (total_batches, avg_batch_seconds, p95_batch_seconds)
        """
        if not self.batch_times:
            return (0, 0.0, 0.0)

        total_batches = len(self.batch_times)
        avg_batch_seconds = statistics.mean(self.batch_times)

        if total_batches == 1:
            p95_batch_seconds = self.batch_times[0]
        else:
            p95_batch_seconds = statistics.quantiles(
                self.batch_times, n=20, method='inclusive'
            )[18]  # 95th percentile (19th out of 20 quantiles, 0-indexed)

        return (total_batches, avg_batch_seconds, p95_batch_seconds)
