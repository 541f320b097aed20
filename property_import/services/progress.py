from __future__ import annotations

import sys
from typing import Any

from tqdm import tqdm
from tqdm.std import tqdm as TqdmType

from ..models.processing_result import ProgressEvent

"""Progress display with tqdm (TTY only).

One tqdm bar counts rows; its postfix shows the running batch and the
success/failed/skipped totals. In non-TTY environments (CI, pipes) the bar is
disabled so logs are not flooded with control sequences.
"""

__all__ = [
    "ProgressTracker",
    "is_tty_enabled",
]


def is_tty_enabled() -> bool:
    return sys.stdout.isatty()


class ProgressTracker:
    """Row progress bar driven by ProgressEvents.

    Usable directly as the orchestrator's ``on_progress`` callback.
    """

    def __init__(self, total_rows: int, *, description: str = "Importing") -> None:
        self.total_rows = total_rows
        self.description = description
        self.last_rows = 0
        self.events = 0

        self.enabled = is_tty_enabled()
        self.pbar: TqdmType[Any] | None
        if self.enabled:
            self.pbar = tqdm(
                total=total_rows,
                desc=description,
                unit="row",
                leave=True,
                position=0,
                ncols=80,
                ascii=True,
            )
        else:
            self.pbar = None

    def __call__(self, event: ProgressEvent) -> None:
        self.update(event)

    def update(self, event: ProgressEvent) -> None:
        self.events += 1
        advanced = max(event.progress_rows - self.last_rows, 0)
        self.last_rows = max(self.last_rows, event.progress_rows)
        if self.enabled and self.pbar is not None:
            if advanced:
                self.pbar.update(advanced)
            self.pbar.set_description(
                f"{self.description} batch {event.batch_number}/{event.total_batches}"
            )
            self.pbar.set_postfix(ok=event.successful, failed=event.failed, skipped=event.skipped)

    def close(self) -> None:
        if self.enabled and self.pbar is not None:
            self.pbar.close()
            self.pbar = None

    def __enter__(self) -> ProgressTracker:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.close()
