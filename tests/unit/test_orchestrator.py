from __future__ import annotations

import json
import logging
from dataclasses import replace
from datetime import date

import pytest

from property_import.csvio.reader import CsvFileError
from property_import.db.memory_store import InMemoryPropertyStore
from property_import.db.property_store import CommitUncertainError, StoreConnectionError
from property_import.logging.error_log import ErrorLogBuffer
from property_import.models.config_models import ImportOptions, ImportSettings
from property_import.models.error_record import ErrorType
from property_import.models.mapping import ColumnMapping
from property_import.models.processing_result import RunState
from property_import.models.property import NormalizedProperty
from property_import.models.session import SessionStatus
from property_import.services.column_mapper import MappingValidationError
from property_import.services.locks import ImportLockedError, lock_key
from property_import.services.orchestrator import (
    OUTCOME_UNKNOWN_MESSAGE,
    CancellationToken,
    ImportOrchestrator,
    OrchestrationError,
    choose_batch_size,
    plan_batches,
)

OPERATOR_ID = "u-op"
ADMIN_ID = "u-admin"

HEADER = "nome;coordenadas;cidade;proprietario"


def _line(i: int, name: str | None = None, owner: str | None = None, coords: str | None = None) -> str:
    name = name if name is not None else f"Fazenda {i}"
    owner = owner if owner is not None else f"Dono {i}"
    # 約 1.1 km 間隔
    coords = coords if coords is not None else f"{-25.0 - i * 0.01:.5f}, -49.00000"
    return f"{name};{coords};Curitiba;{owner}"


def _rows(make_table, n: int, extra: list[str] | None = None):
    lines = [HEADER] + [_line(i) for i in range(1, n + 1)] + (extra or [])
    return make_table(lines).rows


def _assert_accounted(summary):
    assert summary.successful + summary.failed + summary.skipped + summary.unprocessed == summary.total_rows


def _assert_ledger_matches(store, summary):
    session = store.fetch_session(summary.session_id)
    assert session.success_count == summary.successful
    assert session.error_count == summary.failed
    assert session.skipped_count == summary.skipped
    assert len(store.session_property_ids(summary.session_id)) == summary.successful
    return session


class ConnectionDropStore(InMemoryPropertyStore):
    """Drops the "connection" when creating one of the poisoned names."""

    def __init__(self, *args, poison=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.poison = set(poison)

    def create_property(self, prop, created_by):
        if prop.name in self.poison:
            raise StoreConnectionError("server closed the connection unexpectedly")
        return super().create_property(prop, created_by)


class LostCommitStore(InMemoryPropertyStore):
    """COMMIT reaches the store but the acknowledgement is lost."""

    def __init__(self, *args, poison=(), **kwargs):
        super().__init__(*args, **kwargs)
        self.poison = set(poison)
        self._armed = False

    def create_property(self, prop, created_by):
        if prop.name in self.poison:
            self._armed = True
        return super().create_property(prop, created_by)

    def commit(self):
        super().commit()
        if self._armed:
            self._armed = False
            raise CommitUncertainError("connection lost during COMMIT")


class ExplodingLookupStore(InMemoryPropertyStore):
    def find_duplicate_candidates(self, name, latitude, longitude, radius_m):
        if name == "Fazenda 2":
            raise RuntimeError("boom")
        return super().find_duplicate_candidates(name, latitude, longitude, radius_m)


# --- batch planning ----------------------------------------------------------


def test_choose_batch_size_thresholds():
    s = ImportSettings()
    assert choose_batch_size(300, s) == 50
    assert choose_batch_size(301, s) == 25
    assert choose_batch_size(10_000, s, override=7) == 7
    with pytest.raises(ValueError):
        choose_batch_size(10, s, override=0)


def test_plan_batches_contiguous(make_table):
    rows = _rows(make_table, 7)
    batches = plan_batches(rows, 3)
    assert [(b.batch_number, b.start_index, b.end_index) for b in batches] == [
        (1, 0, 3), (2, 3, 6), (3, 6, 7),
    ]
    assert [r for b in batches for r in b.rows] == list(rows)
    assert batches[-1].size == 1


# --- happy path --------------------------------------------------------------


def test_run_creates_all_rows_and_closes_session(store, fast_settings, basic_mapping, make_table):
    rows = _rows(make_table, 5)
    events = []
    orch = ImportOrchestrator(
        store, settings=replace(fast_settings, batch_size=2), on_progress=events.append
    )
    summary = orch.run(rows, basic_mapping, user_id=OPERATOR_ID)

    assert summary.state is RunState.COMPLETED
    assert orch.state is RunState.COMPLETED
    assert (summary.successful, summary.failed, summary.skipped) == (5, 0, 0)
    assert summary.total_batches == summary.completed_batches == 3
    _assert_accounted(summary)
    session = _assert_ledger_matches(store, summary)
    assert session.status is SessionStatus.COMPLETED
    assert session.total_properties == 5
    assert len(store.active_properties()) == 5

    # 2 events per batch, monotonic progress, last one covers every row
    assert len(events) == 6
    progress = [e.progress_rows for e in events]
    assert progress == sorted(progress)
    assert events[-1].progress_rows == 5
    assert events[0].message == "Processing batch 1/3"


def test_rows_are_created_in_file_order(store, fast_settings, basic_mapping, make_table):
    rows = _rows(make_table, 4)
    seen = []
    orch = ImportOrchestrator(store, settings=fast_settings, on_row=seen.append)
    summary = orch.run(rows, basic_mapping, user_id=OPERATOR_ID)
    created = [store.property(pid).prop.name for pid in store.session_property_ids(summary.session_id)]
    assert created == ["Fazenda 1", "Fazenda 2", "Fazenda 3", "Fazenda 4"]
    assert [e.row_number for e in seen] == [2, 3, 4, 5]
    assert {e.status for e in seen} == {"created"}


def test_created_property_carries_operator_and_run_date(store, fast_settings, basic_mapping, make_table):
    rows = _rows(make_table, 1)
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    stored = store.property(store.session_property_ids(summary.session_id)[0])
    assert stored.created_by == OPERATOR_ID
    assert isinstance(stored.prop.cadastro_date, date)


# --- row level failures ------------------------------------------------------


def test_invalid_rows_fail_alone(store, fast_settings, basic_mapping, make_table):
    rows = _rows(
        make_table,
        3,
        extra=[_line(10, owner=""), _line(11, coords="abc"), _line(12, coords="95, 10")],
    )
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert (summary.successful, summary.failed, summary.skipped) == (3, 3, 0)
    assert [e.error_type for e in summary.errors] == [
        ErrorType.MISSING_FIELDS,
        ErrorType.INVALID_COORDINATES,
        ErrorType.INVALID_COORDINATES,
    ]
    assert [e.row_number for e in summary.errors] == [5, 6, 7]
    assert summary.failed_batches == []
    _assert_accounted(summary)
    _assert_ledger_matches(store, summary)


def test_database_rejection_is_row_scoped(store, fast_settings, basic_mapping, make_table):
    rows = _rows(make_table, 2, extra=[_line(3, name="X" * 300)])
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert summary.successful == 2
    assert summary.failed == 1
    err = summary.errors[0]
    assert err.error_type is ErrorType.DATABASE_ERROR
    assert "too long" in err.error_message
    _assert_ledger_matches(store, summary)


def test_unexpected_row_exception_is_critical(make_store, fast_settings, basic_mapping, make_table, caplog):
    store = make_store(ExplodingLookupStore)
    rows = _rows(make_table, 3)
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert (summary.successful, summary.failed) == (2, 1)
    assert summary.errors[0].error_type is ErrorType.CRITICAL_ERROR
    assert summary.errors[0].property_name == "Fazenda 2"
    assert "unexpected error" in caplog.text


# --- duplicates --------------------------------------------------------------


def test_existing_property_is_skipped(store, fast_settings, basic_mapping, make_table):
    seeded = NormalizedProperty(
        name="fazenda 2", cidade="Lapa", owner_name="Outro", latitude=0.0, longitude=0.0,
        cadastro_date=date(2024, 1, 1),
    )
    seed_id = store.seed_property(seeded)
    rows = _rows(make_table, 3)
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert (summary.successful, summary.failed, summary.skipped) == (2, 0, 1)
    skipped = summary.skipped_rows[0]
    assert skipped.row_number == 3
    assert skipped.reference_id == seed_id
    assert "same name" in skipped.reason
    assert summary.errors == []
    _assert_ledger_matches(store, summary)


def test_duplicates_within_the_same_run(store, fast_settings, basic_mapping, make_table):
    rows = make_table(
        [
            HEADER,
            _line(1),
            _line(2, name="FAZENDA 1 "),
            # ~50 m north of row 1
            _line(3, name="Vizinha", coords="-25.00955, -49.00000"),
        ]
    ).rows
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert summary.successful == 1
    assert summary.skipped == 2
    reasons = [s.reason for s in summary.skipped_rows]
    assert "same name" in reasons[0]
    assert "m from 'Fazenda 1'" in reasons[1]


def test_skip_existing_disabled_creates_duplicates(store, fast_settings, basic_mapping, make_table):
    rows = make_table([HEADER, _line(1), _line(2, name="Fazenda 1")]).rows
    summary = ImportOrchestrator(store, settings=fast_settings).run(
        rows, basic_mapping, ImportOptions(skip_existing=False), user_id=OPERATOR_ID
    )
    assert (summary.successful, summary.skipped) == (2, 0)


def test_soft_deleted_properties_do_not_block(store, fast_settings, basic_mapping, make_table):
    first = ImportOrchestrator(store, settings=fast_settings).run(
        _rows(make_table, 2), basic_mapping, user_id=OPERATOR_ID
    )
    store.begin()
    store.soft_delete_session_properties(first.session_id)
    store.commit()
    second = ImportOrchestrator(store, settings=fast_settings).run(
        _rows(make_table, 2), basic_mapping, user_id=OPERATOR_ID
    )
    assert second.successful == 2


# --- batch level failures ----------------------------------------------------


def test_failed_batch_is_rolled_back_and_counted_failed(make_store, fast_settings, basic_mapping, make_table):
    store = make_store(ConnectionDropStore, poison={"Fazenda 4"})
    rows = _rows(make_table, 6, extra=[_line(7, owner="")])
    orch = ImportOrchestrator(store, settings=replace(fast_settings, batch_size=3))
    summary = orch.run(rows, basic_mapping, user_id=OPERATOR_ID)

    assert summary.state is RunState.COMPLETED
    assert summary.failed_batches == [2]
    # batch 2 (rows 4-6) pessimistically failed, row 7 fails on its own
    assert (summary.successful, summary.failed, summary.skipped) == (3, 4, 0)
    assert summary.unverified == 0
    names = sorted(p.prop.name for p in store.active_properties())
    assert names == ["Fazenda 1", "Fazenda 2", "Fazenda 3"]
    batch_errors = [e for e in summary.errors if e.error_type is ErrorType.CRITICAL_ERROR]
    assert [e.row_number for e in batch_errors] == [5, 6, 7]
    assert all("rolled back" in e.error_message for e in batch_errors)
    assert batch_errors[0].property_name == "Fazenda 4"
    _assert_accounted(summary)
    _assert_ledger_matches(store, summary)


def test_rerun_after_failed_batch_creates_only_missing_rows(make_store, fast_settings, basic_mapping, make_table):
    store = make_store(ConnectionDropStore, poison={"Fazenda 4"})
    rows = _rows(make_table, 6)
    settings = replace(fast_settings, batch_size=3)
    first = ImportOrchestrator(store, settings=settings).run(rows, basic_mapping, user_id=OPERATOR_ID)
    assert first.failed_batches == [2]
    assert (first.successful, first.failed) == (3, 3)

    # 接続回復後に同じファイルを再投入
    store.poison = set()
    second = ImportOrchestrator(store, settings=settings).run(
        rows, basic_mapping, ImportOptions(skip_existing=True), user_id=OPERATOR_ID
    )
    assert (second.successful, second.failed, second.skipped) == (3, 0, 3)
    names = [p.prop.name for p in store.active_properties()]
    assert len(names) == 6
    assert len(set(names)) == 6
    _assert_accounted(second)
    _assert_ledger_matches(store, second)


def test_lost_commit_is_reported_failed_and_unverified(make_store, fast_settings, basic_mapping, make_table, caplog):
    store = make_store(LostCommitStore, poison={"Fazenda 3"})
    rows = _rows(make_table, 4)
    orch = ImportOrchestrator(store, settings=replace(fast_settings, batch_size=2))
    summary = orch.run(rows, basic_mapping, user_id=OPERATOR_ID)

    assert (summary.successful, summary.failed) == (2, 2)
    assert summary.unverified == 2
    assert summary.failed_batches == [2]
    assert all(e.error_message == OUTCOME_UNKNOWN_MESSAGE for e in summary.errors)
    # COMMIT landed: the rows exist although they are reported failed
    assert len(store.active_properties()) == 4
    assert "verified manually" in caplog.text
    _assert_accounted(summary)


# --- cancellation, failure, delays -------------------------------------------


def test_cancel_after_first_batch(store, fast_settings, basic_mapping, make_table):
    token = CancellationToken()

    def _on_progress(event):
        if event.message.startswith("Batch 1/"):
            token.cancel()

    orch = ImportOrchestrator(store, settings=replace(fast_settings, batch_size=2), on_progress=_on_progress)
    summary = orch.run(_rows(make_table, 6), basic_mapping, user_id=OPERATOR_ID, cancel_token=token)

    assert summary.state is RunState.CANCELLED
    assert orch.state is RunState.CANCELLED
    assert summary.cancelled
    assert summary.successful == 2
    assert summary.unprocessed == 4
    assert summary.completed_batches == 1
    _assert_accounted(summary)
    session = _assert_ledger_matches(store, summary)
    assert session.status is SessionStatus.COMPLETED


def test_cancel_before_start_processes_nothing(store, fast_settings, basic_mapping, make_table):
    token = CancellationToken()
    token.cancel()
    summary = ImportOrchestrator(store, settings=fast_settings).run(
        _rows(make_table, 3), basic_mapping, user_id=OPERATOR_ID, cancel_token=token
    )
    assert summary.unprocessed == 3
    assert summary.completed_batches == 0
    assert store.active_properties() == []


def test_fatal_error_marks_session_failed(store, fast_settings, basic_mapping, make_table):
    def _on_progress(event):
        if event.batch_number == 2:
            raise RuntimeError("observer exploded")

    orch = ImportOrchestrator(store, settings=replace(fast_settings, batch_size=2), on_progress=_on_progress)
    with pytest.raises(RuntimeError, match="observer exploded"):
        orch.run(_rows(make_table, 4), basic_mapping, user_id=OPERATOR_ID)
    assert orch.state is RunState.FAILED
    session = store.fetch_session(orch.session_id)
    assert session.status is SessionStatus.FAILED
    assert session.success_count == 2
    # the lease was released
    assert store.try_acquire_lock(lock_key("1BPM"))


def test_inter_batch_delay_between_batches_only(store, basic_mapping, make_table):
    slept = []
    settings = ImportSettings(batch_size=2, inter_batch_delay_seconds=0.5, lock_wait_seconds=0)
    ImportOrchestrator(store, settings=settings, sleep=slept.append).run(
        _rows(make_table, 5), basic_mapping, user_id=OPERATOR_ID
    )
    assert slept == [0.5, 0.5]


# --- preconditions -----------------------------------------------------------


def test_invalid_mapping_rejected_before_any_write(store, fast_settings, make_table):
    orch = ImportOrchestrator(store, settings=fast_settings)
    mapping = ColumnMapping.from_dict({"nome": "name", "cidade": "cidade"})
    with pytest.raises(MappingValidationError) as ei:
        orch.run(_rows(make_table, 2), mapping, user_id=OPERATOR_ID)
    assert any("owner_name" in p for p in ei.value.problems)
    assert store.fetch_sessions() == []
    assert orch.state is RunState.IDLE


def test_unknown_user(store, fast_settings, basic_mapping, make_table):
    with pytest.raises(OrchestrationError, match="unknown user"):
        ImportOrchestrator(store, settings=fast_settings).run(
            _rows(make_table, 1), basic_mapping, user_id="ghost"
        )


def test_run_is_single_use(store, fast_settings, basic_mapping, make_table):
    orch = ImportOrchestrator(store, settings=fast_settings)
    rows = _rows(make_table, 1)
    orch.run(rows, basic_mapping, user_id=OPERATOR_ID)
    with pytest.raises(OrchestrationError, match="completed"):
        orch.run(rows, basic_mapping, user_id=OPERATOR_ID)


def test_concurrent_import_in_same_scope_is_refused(store, fast_settings, basic_mapping, make_table):
    other = InMemoryPropertyStore()
    assert other.try_acquire_lock(lock_key("1BPM"))
    try:
        orch = ImportOrchestrator(store, settings=fast_settings)
        with pytest.raises(ImportLockedError, match="1BPM"):
            orch.run(_rows(make_table, 2), basic_mapping, user_id=OPERATOR_ID)
        assert orch.state is RunState.FAILED
        assert store.fetch_sessions() == []

        # a different scope is independent
        summary = ImportOrchestrator(store, settings=fast_settings).run(
            _rows(make_table, 2), basic_mapping, ImportOptions(scope="2BPM"), user_id=OPERATOR_ID
        )
        assert summary.successful == 2
    finally:
        other.close()


def test_unknown_team_only_warns(store, fast_settings, make_table, caplog):
    mapping = ColumnMapping.from_dict(
        {"nome": "name", "coordenadas": "coordinates_combined", "cidade": "cidade",
         "proprietario": "owner_name", "equipe": "equipe"}
    )
    rows = make_table([HEADER + ";equipe", _line(1) + ";Alpha", _line(2) + ";Zulu"]).rows
    caplog.set_level(logging.WARNING, logger="property_import")
    summary = ImportOrchestrator(store, settings=fast_settings).run(rows, mapping, user_id=OPERATOR_ID)
    assert summary.successful == 2
    assert "'Zulu' is not registered" in caplog.text
    assert "'Alpha'" not in caplog.text


def test_row_errors_flushed_to_error_log(store, fast_settings, basic_mapping, make_table, tmp_path):
    buffer = ErrorLogBuffer(tmp_path / "logs")
    rows = _rows(make_table, 1, extra=[_line(2, owner=""), _line(3, coords="x")])
    ImportOrchestrator(store, settings=fast_settings, error_log=buffer).run(
        rows, basic_mapping, user_id=OPERATOR_ID
    )
    lines = buffer.file_path.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["error_type"] == "MISSING_FIELDS"


# --- analyze -----------------------------------------------------------------


def test_analyze_then_run(store, fast_settings, write_csv):
    path = write_csv(
        [
            "Nome,Coordenadas,Cidade,Proprietário,Observações",
            '"Sítio A","-25.1, -49.1",Lapa,Ana,ok',
            '"Sítio B","fora",Lapa,Bia,',
        ]
    )
    orch = ImportOrchestrator(store, settings=fast_settings)
    analysis = orch.analyze(path)
    assert orch.state is RunState.AWAITING_MAPPING
    assert analysis.problems == []
    assert analysis.suggestion.total_rows == 2
    assert analysis.preview.valid == 1
    assert analysis.preview.by_error_type == {"INVALID_COORDINATES": 1}

    summary = orch.run(analysis.table.rows, analysis.suggestion.suggested_mapping, user_id=OPERATOR_ID)
    assert (summary.successful, summary.failed) == (1, 1)


def test_analyze_incomplete_mapping_has_no_preview(store, fast_settings, write_csv):
    path = write_csv(["nome,cidade", "A,B"])
    analysis = ImportOrchestrator(store, settings=fast_settings).analyze(path)
    assert analysis.preview is None
    assert analysis.problems


def test_analyze_missing_file_fails_run(store, fast_settings, temp_workdir):
    orch = ImportOrchestrator(store, settings=fast_settings)
    with pytest.raises(CsvFileError):
        orch.analyze(temp_workdir / "nope.csv")
    assert orch.state is RunState.FAILED


def test_import_file_accepts_suggestion(store, fast_settings, write_csv):
    path = write_csv([HEADER, _line(1), _line(2)])
    summary = ImportOrchestrator(store, settings=fast_settings).import_file(
        path, None, user_id=ADMIN_ID
    )
    assert summary.successful == 2
