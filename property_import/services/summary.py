from __future__ import annotations

from ..models.processing_result import SessionSummary

"""SUMMARY line rendering.

Format:
SUMMARY session=<id> rows=N success=S failed=F skipped=K unverified=U
batches=C/T elapsed_sec=E status=<state>
"""


def _format_seconds(value: float) -> str:
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if value < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.2f}".rstrip("0").rstrip(".")


def render_summary_line(summary: SessionSummary) -> str:
    """Render the single SUMMARY line for a finished run.

    >>> # doctest: +SKIP
    >>> render_summary_line(summary)
    'SUMMARY session=... rows=3 success=2 failed=1 skipped=0 unverified=0 batches=1/1 elapsed_sec=0.5 status=completed'
    """
    line = (
        f"SUMMARY session={summary.session_id or '-'} "
        f"rows={summary.total_rows} "
        f"success={summary.successful} "
        f"failed={summary.failed} "
        f"skipped={summary.skipped} "
        f"unverified={summary.unverified} "
        f"batches={summary.completed_batches}/{summary.total_batches} "
        f"elapsed_sec={_format_seconds(summary.elapsed_seconds)} "
        f"status={summary.state.value}"
    )
    if summary.unprocessed:
        line += f" unprocessed={summary.unprocessed}"
    return line
