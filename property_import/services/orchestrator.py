from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime
from pathlib import Path

from ..csvio.reader import CsvFileError, CsvTable, read_csv_file
from ..db.property_store import (
    CommitUncertainError,
    PropertyRejectedError,
    PropertyStore,
    StoreError,
)
from ..logging.error_log import ErrorLogBuffer
from ..models.config_models import ImportOptions, ImportSettings
from ..models.error_record import ErrorType, RowError
from ..models.mapping import ColumnMapping, TargetField
from ..models.processing_result import (
    BatchResult,
    BatchStatsAccumulator,
    ImportBatch,
    ProgressEvent,
    RowEvent,
    RunState,
    SessionSummary,
    SkippedRow,
)
from ..models.property import NormalizedProperty, UserProfile
from ..models.row_data import RawRow
from ..models.session import RowOutcome, SessionStatus
from .column_mapper import MappingSuggestion, MappingValidationError, analyze, validate_mapping
from .duplicates import classify
from .ledger import ImportSessionLedger
from .locks import import_lease
from .normalizer import NormalizationPreview, normalize, preview, run_date_for

"""Batch orchestration for the property CSV import.

This module drives one import run end to end:
1. analyze(): read the CSV and suggest a column mapping (no writes)
2. run(): validate the confirmed mapping, take the scope lease, open the
   ledger session, then process fixed-size batches strictly in file order

Every batch is one transaction. Inside it each row is normalized, checked
against the live property set for duplicates and created under its own
savepoint, so a bad row never takes its neighbours down. When the batch as a
whole fails (connection loss, store error outside a row) it is rolled back and
all its rows are charged as failed. When COMMIT itself is lost the rows are
reported failed *and* unverified: success is never claimed without proof.

Counts always add up: successful + failed + skipped (+ unprocessed when
cancelled) == total rows.
"""

logger = logging.getLogger(__name__)

__all__ = [
    "OrchestrationError",
    "CancellationToken",
    "AnalysisResult",
    "ImportOrchestrator",
    "choose_batch_size",
    "plan_batches",
]

OUTCOME_UNKNOWN_MESSAGE = "outcome unknown, verify manually"


class OrchestrationError(Exception):
    """Run misuse or a precondition the run cannot start without."""


class CancellationToken:
    """Cooperative cancellation, checked before each batch is dispatched."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass(frozen=True)
class AnalysisResult:
    table: CsvTable
    suggestion: MappingSuggestion
    preview: NormalizationPreview | None = None  # マッピング有効時のみ

    @property
    def problems(self) -> list[str]:
        return validate_mapping(self.suggestion.suggested_mapping, self.table.columns)


def choose_batch_size(
    total_rows: int,
    settings: ImportSettings,
    override: int | None = None,
) -> int:
    if override is not None:
        if override < 1:
            raise ValueError(f"batch size must be >= 1: {override}")
        return override
    if total_rows > settings.large_file_threshold:
        return settings.large_file_batch_size
    return settings.batch_size


def plan_batches(rows: Sequence[RawRow], batch_size: int) -> list[ImportBatch]:
    """Partition ``rows`` into contiguous batches covering ``[0, len(rows))``."""
    if batch_size < 1:
        raise ValueError(f"batch size must be >= 1: {batch_size}")
    return [
        ImportBatch(
            batch_number=i // batch_size + 1,
            start_index=i,
            end_index=min(i + batch_size, len(rows)),
            rows=tuple(rows[i : i + batch_size]),
        )
        for i in range(0, len(rows), batch_size)
    ]


class ImportOrchestrator:
    """Single-use driver for one import run.

    Parameters
    ----------
    store: PropertyStore (PostgreSQL or in-memory)
    ledger: 省略時は store から ImportSessionLedger を生成
    settings: バッチ/重複判定設定
    on_progress: バッチ毎に ProgressEvent を受け取る
    on_row: 行毎に RowEvent を受け取る (任意)
    sleep: バッチ間待機 (テストで差し替え)
    error_log: 行エラーの JSON Lines バッファ (run 終了時に flush)
    """

    def __init__(
        self,
        store: PropertyStore,
        ledger: ImportSessionLedger | None = None,
        settings: ImportSettings | None = None,
        *,
        on_progress: Callable[[ProgressEvent], None] | None = None,
        on_row: Callable[[RowEvent], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        error_log: ErrorLogBuffer | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger or ImportSessionLedger(store)
        self.settings = settings or ImportSettings()
        self.on_progress = on_progress
        self.on_row = on_row
        self._sleep = sleep
        self.error_log = error_log
        self.state = RunState.IDLE
        self.session_id: str | None = None
        self.summary: SessionSummary | None = None
        self._mapping: ColumnMapping | None = None

    # --- analysis ----------------------------------------------------

    def analyze(self, path: Path) -> AnalysisResult:
        if self.state is not RunState.IDLE:
            raise OrchestrationError(f"analyze() called in state {self.state.value}")
        self.state = RunState.ANALYZING
        try:
            table = read_csv_file(path, max_bytes=self.settings.max_file_bytes)
        except CsvFileError:
            self.state = RunState.FAILED
            raise
        suggestion = analyze(table.columns, table.sample(), table.total_rows)
        projected = None
        if suggestion.suggested_mapping.is_valid:
            projected = preview(
                table.rows,
                suggestion.suggested_mapping,
                run_date=run_date_for(self.settings.timezone),
            )
        self.state = RunState.AWAITING_MAPPING
        logger.info(
            "analyzed %s: rows=%d columns=%d mapped=%d",
            path.name,
            table.total_rows,
            len(table.columns),
            len(suggestion.suggested_mapping),
        )
        return AnalysisResult(table=table, suggestion=suggestion, preview=projected)

    def import_file(
        self,
        path: Path,
        mapping: ColumnMapping | None,
        options: ImportOptions | None = None,
        *,
        user_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> SessionSummary:
        """analyze() then run(); ``mapping=None`` accepts the suggestion as is."""
        analysis = self.analyze(path)
        chosen = mapping if mapping is not None else analysis.suggestion.suggested_mapping
        return self.run(
            analysis.table.rows, chosen, options, user_id=user_id, cancel_token=cancel_token
        )

    # --- run ---------------------------------------------------------

    def run(
        self,
        rows: Sequence[RawRow],
        mapping: ColumnMapping,
        options: ImportOptions | None = None,
        *,
        user_id: str,
        cancel_token: CancellationToken | None = None,
    ) -> SessionSummary:
        if self.state not in (RunState.IDLE, RunState.AWAITING_MAPPING):
            raise OrchestrationError(f"run() called in state {self.state.value}")
        problems = validate_mapping(mapping)
        if problems:
            raise MappingValidationError(problems)
        options = options or ImportOptions(skip_existing=self.settings.skip_existing)
        batch_size = choose_batch_size(len(rows), self.settings, options.batch_size)

        user = self.store.get_user_profile(user_id)
        if user is None:
            raise OrchestrationError(f"unknown user: {user_id}")
        self._mapping = mapping

        self.state = RunState.IMPORTING
        scope = options.scope or user.batalhao
        try:
            with import_lease(
                self.store, scope, self.settings.lock_wait_seconds, sleep=self._sleep
            ):
                self.session_id = self.ledger.begin(user_id, len(rows))
                try:
                    summary = self._run_batches(
                        rows, mapping, options, user, batch_size, cancel_token
                    )
                    self.summary = summary
                    self.ledger.close(self.session_id, summary, SessionStatus.COMPLETED)
                except Exception:
                    logger.error("import session %s aborted", self.session_id, exc_info=True)
                    self._close_failed()
                    raise
        except Exception:
            self.state = RunState.FAILED
            if self.summary is not None:
                self.summary = replace(self.summary, state=RunState.FAILED)
            raise
        finally:
            self._flush_errors()

        self.state = summary.state
        return summary

    def _close_failed(self) -> None:
        if self.session_id is None:
            return
        try:
            self.ledger.close(self.session_id, self.summary, SessionStatus.FAILED)
        except Exception as close_err:
            # 元の例外を優先して送出する
            logger.warning("could not mark session %s failed: %s", self.session_id, close_err)

    def _flush_errors(self) -> None:
        if self.error_log is None or self.summary is None:
            return
        self.error_log.extend(self.summary.errors)
        try:
            path = self.error_log.flush()
        except OSError as e:
            logger.error("could not write error log: %s", e)
            return
        if path is not None:
            logger.info("row errors written to %s", path)

    def _run_batches(
        self,
        rows: Sequence[RawRow],
        mapping: ColumnMapping,
        options: ImportOptions,
        user: UserProfile,
        batch_size: int,
        cancel_token: CancellationToken | None,
    ) -> SessionSummary:
        assert self.session_id is not None
        start_time = datetime.now(UTC)
        started = time.perf_counter()
        batches = plan_batches(rows, batch_size)
        total_rows = len(rows)
        total_batches = len(batches)
        run_date = run_date_for(self.settings.timezone)
        teams = self._known_teams(user)
        stats = BatchStatsAccumulator()

        successful = failed = skipped = unverified = 0
        completed_batches = 0
        failed_batches: list[int] = []
        errors: list[RowError] = []
        skipped_rows: list[SkippedRow] = []
        cancelled = False

        logger.info(
            "session %s: %d rows in %d batches of %d (skip_existing=%s)",
            self.session_id,
            total_rows,
            total_batches,
            batch_size,
            options.skip_existing,
        )
        for batch in batches:
            if cancel_token is not None and cancel_token.cancelled:
                cancelled = True
                logger.warning(
                    "import cancelled before batch %d/%d", batch.batch_number, total_batches
                )
                break
            done_rows = successful + failed + skipped
            self._emit(
                ProgressEvent(
                    message=f"Processing batch {batch.batch_number}/{total_batches}",
                    batch_number=batch.batch_number,
                    total_batches=total_batches,
                    successful=successful,
                    failed=failed,
                    skipped=skipped,
                    progress_rows=done_rows,
                    total_rows=total_rows,
                )
            )

            result = self._process_batch(batch, mapping, options, user, run_date, teams)
            stats.add_batch_time(result.elapsed_seconds)
            successful += result.successful
            failed += result.failed
            skipped += result.skipped
            errors.extend(result.errors)
            skipped_rows.extend(result.skipped_rows)
            if result.batch_failed:
                failed_batches.append(batch.batch_number)
            if result.outcome_unknown:
                unverified += result.unverified
            completed_batches += 1

            self._emit(
                ProgressEvent(
                    message=(
                        f"Batch {batch.batch_number}/{total_batches} done: "
                        f"{result.successful} created, {result.failed} failed, "
                        f"{result.skipped} skipped"
                    ),
                    batch_number=batch.batch_number,
                    total_batches=total_batches,
                    successful=successful,
                    failed=failed,
                    skipped=skipped,
                    progress_rows=successful + failed + skipped,
                    total_rows=total_rows,
                )
            )
            if batch.batch_number < total_batches and self.settings.inter_batch_delay_seconds > 0:
                self._sleep(self.settings.inter_batch_delay_seconds)

        unprocessed = total_rows - (successful + failed + skipped)
        _, avg, p95 = stats.get_stats()
        end_time = datetime.now(UTC)
        return SessionSummary(
            session_id=self.session_id,
            state=RunState.CANCELLED if cancelled else RunState.COMPLETED,
            total_rows=total_rows,
            successful=successful,
            failed=failed,
            skipped=skipped,
            total_batches=total_batches,
            completed_batches=completed_batches,
            start_time=start_time,
            end_time=end_time,
            elapsed_seconds=time.perf_counter() - started,
            unverified=unverified,
            unprocessed=unprocessed,
            failed_batches=failed_batches,
            errors=errors,
            skipped_rows=skipped_rows,
            avg_batch_seconds=avg,
            p95_batch_seconds=p95,
        )

    def _known_teams(self, user: UserProfile) -> set[str] | None:
        if not user.batalhao:
            return None
        try:
            teams = self.store.get_teams_by_battalion(user.batalhao)
        except StoreError as e:
            logger.warning("could not load teams for battalion %s: %s", user.batalhao, e)
            return None
        return {t.strip().casefold() for t in teams} or None

    def _process_batch(
        self,
        batch: ImportBatch,
        mapping: ColumnMapping,
        options: ImportOptions,
        user: UserProfile,
        run_date: date,
        teams: set[str] | None,
    ) -> BatchResult:
        started = time.perf_counter()
        row_errors: dict[int, RowError] = {}
        outcomes: list[tuple[str | None, RowOutcome]] = []
        created: list[tuple[RawRow, str, str]] = []
        skipped_rows: list[SkippedRow] = []

        try:
            self.store.begin()
            for row in batch.rows:
                self._process_row(
                    row, mapping, options, user, run_date, teams,
                    row_errors, outcomes, created, skipped_rows,
                )
            assert self.session_id is not None
            self.ledger.record_outcomes(self.session_id, outcomes)
            self.store.commit()
        except CommitUncertainError as e:
            logger.warning(
                "batch %d: commit outcome unknown (%s); %d rows must be verified manually",
                batch.batch_number,
                e,
                len(batch.rows) - len(row_errors),
            )
            return self._failed_batch(
                batch, row_errors, OUTCOME_UNKNOWN_MESSAGE, started, outcome_unknown=True
            )
        except StoreError as e:
            self.store.rollback()
            logger.error("batch %d failed and was rolled back: %s", batch.batch_number, e)
            return self._failed_batch(
                batch,
                row_errors,
                f"batch {batch.batch_number} failed and was rolled back: {e}",
                started,
            )

        for row, pid, name in created:
            self._emit_row(RowEvent(row.row_number, RowOutcome.CREATED.value, name))
        for s in skipped_rows:
            self._emit_row(RowEvent(s.row_number, RowOutcome.SKIPPED.value, s.name))
        for err in row_errors.values():
            self._emit_row(
                RowEvent(err.row_number, RowOutcome.FAILED.value, err.property_name, err.error_type)
            )

        return BatchResult(
            batch_number=batch.batch_number,
            successful=len(created),
            failed=len(row_errors),
            skipped=len(skipped_rows),
            created_ids=tuple(pid for _, pid, _ in created),
            errors=tuple(sorted(row_errors.values(), key=lambda e: e.row_number)),
            skipped_rows=tuple(skipped_rows),
            elapsed_seconds=time.perf_counter() - started,
        )

    def _process_row(
        self,
        row: RawRow,
        mapping: ColumnMapping,
        options: ImportOptions,
        user: UserProfile,
        run_date: date,
        teams: set[str] | None,
        row_errors: dict[int, RowError],
        outcomes: list[tuple[str | None, RowOutcome]],
        created: list[tuple[RawRow, str, str]],
        skipped_rows: list[SkippedRow],
    ) -> None:
        result = normalize(row, mapping, run_date=run_date)
        if isinstance(result, RowError):
            row_errors[row.row_number] = result
            outcomes.append((None, RowOutcome.FAILED))
            return
        prop: NormalizedProperty = result
        if teams is not None and prop.equipe and prop.equipe.strip().casefold() not in teams:
            logger.warning(
                "row %d: team %r is not registered for battalion %s",
                row.row_number,
                prop.equipe,
                user.batalhao,
            )

        try:
            if options.skip_existing:
                candidates = self.store.find_duplicate_candidates(
                    prop.name, prop.latitude, prop.longitude, self.settings.duplicate_radius_meters
                )
                found = classify(prop, candidates, self.settings.duplicate_radius_meters)
                if found.is_duplicate:
                    logger.debug("row %d skipped: %s", row.row_number, found.reason)
                    skipped_rows.append(
                        SkippedRow(
                            row_number=row.row_number,
                            name=prop.name,
                            reason=found.reason,
                            reference_id=found.reference.id if found.reference else None,
                        )
                    )
                    outcomes.append((None, RowOutcome.SKIPPED))
                    return
            property_id = self.store.create_property(prop, user)
        except PropertyRejectedError as e:
            row_errors[row.row_number] = _row_error(row, prop, ErrorType.DATABASE_ERROR, str(e))
            outcomes.append((None, RowOutcome.FAILED))
            return
        except StoreError:
            raise
        except Exception as e:
            logger.error("row %d: unexpected error", row.row_number, exc_info=True)
            row_errors[row.row_number] = _row_error(row, prop, ErrorType.CRITICAL_ERROR, str(e))
            outcomes.append((None, RowOutcome.FAILED))
            return
        created.append((row, property_id, prop.name))
        outcomes.append((property_id, RowOutcome.CREATED))

    def _failed_batch(
        self,
        batch: ImportBatch,
        row_errors: dict[int, RowError],
        message: str,
        started: float,
        *,
        outcome_unknown: bool = False,
    ) -> BatchResult:
        """Pessimistic accounting: every row of the batch counts as failed."""
        errors: list[RowError] = []
        unknown_rows = 0
        for row in batch.rows:
            own = row_errors.get(row.row_number)
            if own is None:
                unknown_rows += 1
                own = RowError.create(
                    row_number=row.row_number,
                    property_name=_best_name(row, self._mapping),
                    error_type=ErrorType.CRITICAL_ERROR,
                    error_message=message,
                    raw_data=row.raw_text,
                )
            errors.append(own)
            self._emit_row(
                RowEvent(row.row_number, RowOutcome.FAILED.value, own.property_name, own.error_type)
            )
        if not outcome_unknown and self.session_id is not None:
            try:
                self.ledger.record_batch_failure(self.session_id, len(batch.rows))
            except StoreError as e:
                logger.warning("batch %d: could not record failure in ledger: %s", batch.batch_number, e)
        return BatchResult(
            batch_number=batch.batch_number,
            successful=0,
            failed=len(batch.rows),
            skipped=0,
            errors=tuple(errors),
            elapsed_seconds=time.perf_counter() - started,
            batch_failed=True,
            outcome_unknown=outcome_unknown,
            unverified=unknown_rows if outcome_unknown else 0,
        )

    def _emit(self, event: ProgressEvent) -> None:
        logger.debug(event.message)
        if self.on_progress is not None:
            self.on_progress(event)

    def _emit_row(self, event: RowEvent) -> None:
        if self.on_row is not None:
            self.on_row(event)


def _row_error(row: RawRow, prop: NormalizedProperty, error_type: ErrorType, message: str) -> RowError:
    return RowError.create(
        row_number=row.row_number,
        property_name=prop.name,
        error_type=error_type,
        error_message=message,
        raw_data=row.raw_text,
        mapped_data=prop.to_dict(),
    )


def _best_name(row: RawRow, mapping: ColumnMapping | None) -> str:
    if mapping is None:
        return ""
    for source in mapping.sources_for(TargetField.NAME):
        value = (row.get(source) or "").strip()
        if value:
            return value
    return ""
