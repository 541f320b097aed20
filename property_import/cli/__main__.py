from __future__ import annotations

import argparse
import os
import signal
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from dotenv import load_dotenv

from property_import.config.loader import DEFAULT_CONFIG_PATH, ConfigError, load_config, resolve_dsn
from property_import.csvio.reader import CsvFileError, read_csv_file
from property_import.db.memory_store import InMemoryPropertyStore
from property_import.db.property_store import StoreError, connect
from property_import.logging.error_log import ErrorLogBuffer
from property_import.logging.init import get_logger, log_summary, set_debug, setup_logging
from property_import.models.config_models import ImportConfig, ImportOptions
from property_import.models.mapping import ColumnMapping
from property_import.models.processing_result import RunState, SessionSummary
from property_import.models.property import UserProfile
from property_import.services.column_mapper import (
    MappingValidationError,
    analyze as suggest_mapping,
    dump_mapping_file,
    load_mapping_file,
    validate_mapping,
)
from property_import.services.ledger import ImportSessionLedger, LedgerError
from property_import.services.locks import ImportLockedError
from property_import.services.normalizer import preview, run_date_for
from property_import.services.orchestrator import (
    CancellationToken,
    ImportOrchestrator,
    OrchestrationError,
)
from property_import.services.progress import ProgressTracker
from property_import.services.reports import write_error_report, write_template
from property_import.services.summary import render_summary_line

"""CLI entrypoint.

Subcommands:
- analyze FILE      headers, sample rows, suggested mapping, projected success rate
- import FILE       confirmed import (mapping shown and confirmed first)
- undo SESSION      admin-only undo of one import session
- sessions          import history
- template [OUT]    write the example CSV

Exit codes: 0 success, 2 partial failure (row failures or cancelled), 1 fatal.
``DISABLE_DB_CONNECT=1`` or ``--dry-run`` runs against the in-memory store.
"""

EXIT_SUCCESS_ALL = 0
EXIT_PARTIAL_FAILURE = 2
EXIT_FATAL = 1


def _load_env_file(path: Path, override: bool = True) -> None:
    """Load .env; its values win over the process environment (DB settings first)."""
    if path.exists():
        load_dotenv(dotenv_path=path, override=override)


def _parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        prog="property-import", description="Rural property CSV bulk importer"
    )
    p.add_argument("--config", type=Path, default=DEFAULT_CONFIG_PATH, help="YAML config path")
    p.add_argument("--debug", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("analyze", help="Suggest a column mapping for a CSV")
    a.add_argument("file", type=Path)
    a.add_argument("--mapping", type=Path, help="Check an edited mapping file instead")
    a.add_argument("--write-mapping", type=Path, help="Write the editable mapping YAML")

    i = sub.add_parser("import", help="Import a CSV")
    i.add_argument("file", type=Path)
    i.add_argument("--user", required=True, help="Operator user id")
    i.add_argument("--mapping", type=Path, help="Mapping YAML (default: suggestion)")
    i.add_argument("--no-skip-existing", action="store_true", help="Import duplicates anyway")
    i.add_argument("--batch-size", type=int, help="Override the batch size")
    i.add_argument("--scope", help="Import lock scope (default: user's battalion)")
    i.add_argument("--yes", action="store_true", help="Accept the mapping without prompting")
    i.add_argument("--dry-run", action="store_true", help="Use the in-memory store")
    i.add_argument("--report", type=Path, help="Error report path or directory")

    u = sub.add_parser("undo", help="Undo an import session (admin)")
    u.add_argument("session_id")
    u.add_argument("--user", required=True, help="Acting admin user id")
    u.add_argument("--yes", action="store_true", help="Skip the typed confirmation")

    s = sub.add_parser("sessions", help="List import sessions")
    s.add_argument("--user", help="Only sessions of this user")

    t = sub.add_parser("template", help="Write the CSV template")
    t.add_argument("out", type=Path, nargs="?", default=Path("."))
    return p.parse_args(argv)


def _mock_mode(dry_run: bool = False) -> bool:
    return dry_run or os.getenv("DISABLE_DB_CONNECT") == "1"


@contextmanager
def _open_store(cfg: ImportConfig, *, mock: bool, user_id: str | None = None) -> Iterator:
    """Yield a PropertyStore; the in-memory one knows only the acting user."""
    if mock:
        store = InMemoryPropertyStore()
        if user_id:
            store.add_user(UserProfile(id=user_id, full_name=user_id, role="operator"))
        try:
            yield store
        finally:
            store.close()
        return
    store = connect(resolve_dsn(cfg.database))
    try:
        yield store
    finally:
        store.close()


def _print_mapping(mapping: ColumnMapping, headers: list[str]) -> None:
    width = max((len(h) for h in headers), default=0)
    for h in headers:
        target = mapping.get(h)
        print(f"  {h.ljust(width)} -> {target.value if target is not None else '(ignored)'}")


def _confirm(prompt: str, expected: str = "y") -> bool:
    if not sys.stdin.isatty():
        return False
    answer = input(prompt).strip().lower()
    return answer == expected.lower()


@contextmanager
def _sigint_cancels(token: CancellationToken) -> Iterator[None]:
    """First Ctrl-C stops after the running batch; the previous handler is restored."""
    logger = get_logger()

    def _handler(signum, frame) -> None:
        logger.warning("cancellation requested; finishing the current batch")
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:  # pragma: no cover - not in main thread
        yield
        return
    try:
        yield
    finally:
        signal.signal(signal.SIGINT, previous)


def _cmd_analyze(args: argparse.Namespace, cfg: ImportConfig) -> int:
    logger = get_logger()
    orchestrator = ImportOrchestrator(InMemoryPropertyStore(), settings=cfg.settings)
    try:
        analysis = orchestrator.analyze(args.file)
    except CsvFileError as e:
        logger.error(f"csv: {e}")
        return EXIT_FATAL
    table = analysis.table
    mapping = analysis.suggestion.suggested_mapping
    if args.mapping is not None:
        try:
            mapping = load_mapping_file(args.mapping)
        except MappingValidationError as e:
            logger.error(f"mapping: {e}")
            return EXIT_FATAL

    print(f"FILE: {args.file.name} rows={table.total_rows} separator={table.separator!r}")
    print(f"COLUMNS: {table.columns}")
    for row in table.sample(3):
        print(f"  sample: {row}")
    print("MAPPING:")
    _print_mapping(mapping, table.columns)
    if analysis.suggestion.ambiguous_headers and args.mapping is None:
        print(f"AMBIGUOUS (left unmapped): {list(analysis.suggestion.ambiguous_headers)}")

    if args.write_mapping is not None:
        path = dump_mapping_file(mapping, table.columns, args.write_mapping)
        logger.info(f"mapping written to {path}")

    problems = validate_mapping(mapping, table.columns)
    if problems:
        for problem in problems:
            logger.warning(f"mapping: {problem}")
        return EXIT_PARTIAL_FAILURE

    if args.mapping is not None:
        projected = preview(table.rows, mapping, run_date=run_date_for(cfg.settings.timezone))
    else:
        projected = analysis.preview
    if projected is not None:
        print(
            f"PREVIEW: valid={projected.valid} invalid={projected.invalid} "
            f"projected_success_rate={projected.projected_success_rate}% "
            f"errors={projected.by_error_type}"
        )
    return EXIT_SUCCESS_ALL


def _cmd_import(args: argparse.Namespace, cfg: ImportConfig) -> int:
    logger = get_logger()
    try:
        table = read_csv_file(args.file, max_bytes=cfg.settings.max_file_bytes)
    except CsvFileError as e:
        logger.error(f"csv: {e}")
        return EXIT_FATAL

    if args.mapping is not None:
        try:
            mapping = load_mapping_file(args.mapping)
        except MappingValidationError as e:
            logger.error(f"mapping: {e}")
            return EXIT_FATAL
    else:
        mapping = suggest_mapping(table.columns, table.sample(), table.total_rows).suggested_mapping

    print("MAPPING:")
    _print_mapping(mapping, table.columns)
    problems = validate_mapping(mapping, table.columns)
    if problems:
        for problem in problems:
            logger.error(f"mapping: {problem}")
        return EXIT_FATAL
    if not args.yes and not _confirm(f"Import {table.total_rows} rows with this mapping? [y/N] "):
        logger.error("import not confirmed (pass --yes to skip the prompt)")
        return EXIT_FATAL

    mock = _mock_mode(args.dry_run)
    options = ImportOptions(
        skip_existing=cfg.settings.skip_existing and not args.no_skip_existing,
        batch_size=args.batch_size,
        scope=args.scope,
    )
    token = CancellationToken()
    try:
        with _open_store(cfg, mock=mock, user_id=args.user) as store, \
                ProgressTracker(table.total_rows) as progress, _sigint_cancels(token):
            logger.info(f"mode={'mock' if mock else 'live'} rows={table.total_rows}")
            orchestrator = ImportOrchestrator(
                store,
                settings=cfg.settings,
                on_progress=progress,
                error_log=ErrorLogBuffer(cfg.logs_directory),
            )
            summary = orchestrator.run(
                table.rows, mapping, options, user_id=args.user, cancel_token=token
            )
    except MappingValidationError as e:
        logger.error(f"mapping: {e}")
        return EXIT_FATAL
    except ImportLockedError as e:
        logger.error(f"lock: {e}")
        return EXIT_FATAL
    except (OrchestrationError, LedgerError) as e:
        logger.error(f"import: {e}")
        return EXIT_FATAL
    except StoreError as e:
        logger.error(f"database: {e}")
        return EXIT_FATAL

    return _finish_import(args, cfg, summary)


def _finish_import(args: argparse.Namespace, cfg: ImportConfig, summary: SessionSummary) -> int:
    logger = get_logger()
    if summary.failed_batches:
        logger.warning(f"failed batches: {summary.failed_batches}")
    if summary.unverified:
        logger.warning(f"{summary.unverified} rows have an unknown outcome; verify them manually")
    for s in summary.skipped_rows:
        logger.info(f"row {s.row_number} skipped ({s.name}): {s.reason}")
    if summary.failed > 0:
        target = args.report or Path(cfg.reports_directory)
        write_error_report(summary.errors, target, cfg.settings.timezone)

    log_summary(render_summary_line(summary)[len("SUMMARY "):])
    if summary.failed > 0 or summary.state is RunState.CANCELLED:
        return EXIT_PARTIAL_FAILURE
    return EXIT_SUCCESS_ALL


def _cmd_undo(args: argparse.Namespace, cfg: ImportConfig) -> int:
    logger = get_logger()
    try:
        with _open_store(cfg, mock=_mock_mode(), user_id=args.user) as store:
            ledger = ImportSessionLedger(store)
            preview = ledger.preview_undo(args.session_id)
            print(ledger.confirmation_message(preview))
            if not args.yes:
                expected = str(preview.pending_count)
                if not _confirm(f"Type {expected} to confirm: ", expected):
                    logger.error("undo not confirmed")
                    return EXIT_FATAL
            result = ledger.undo(args.session_id, args.user)
    except (LedgerError, StoreError) as e:
        logger.error(f"undo: {e}")
        return EXIT_FATAL
    logger.info(f"undone_count={result.undone_count} session={result.session_id}")
    return EXIT_SUCCESS_ALL


def _cmd_sessions(args: argparse.Namespace, cfg: ImportConfig) -> int:
    logger = get_logger()
    try:
        with _open_store(cfg, mock=_mock_mode()) as store:
            sessions = ImportSessionLedger(store).list_sessions(args.user)
    except StoreError as e:
        logger.error(f"sessions: {e}")
        return EXIT_FATAL
    if not sessions:
        print("no import sessions")
    for s in sessions:
        print(
            f"{s.session_id} {s.created_at:%Y-%m-%d %H:%M} user={s.user_id} "
            f"total={s.total_properties} ok={s.success_count} failed={s.error_count} "
            f"skipped={s.skipped_count} status={s.status.value}"
        )
    return EXIT_SUCCESS_ALL


def _cmd_template(args: argparse.Namespace, cfg: ImportConfig | None) -> int:
    path = write_template(args.out)
    get_logger().info(f"template written to {path}")
    return EXIT_SUCCESS_ALL


COMMANDS = {
    "analyze": _cmd_analyze,
    "import": _cmd_import,
    "undo": _cmd_undo,
    "sessions": _cmd_sessions,
    "template": _cmd_template,
}


def main(argv: list[str] | None = None) -> int:
    logger = setup_logging()

    # NOTE: [] が渡された場合に sys.argv[1:] を読まないよう None のときのみ参照
    if argv is None:
        argv = sys.argv[1:]
    args = _parse_args(argv)
    _load_env_file(Path(".env"), override=True)

    if args.debug:
        set_debug(True)
        logger.debug("debug mode enabled")

    if args.command == "template":
        return _cmd_template(args, None)

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        logger.error(f"config: {e}")
        return EXIT_FATAL

    return COMMANDS[args.command](args, cfg)


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
