"""Domain models for the rural property CSV importer.

This package contains all domain model classes used throughout the application:
the column mapping, raw and normalized rows, row errors, batch/run results and
the import session ledger.
"""

from .config_models import DatabaseConfig, ImportConfig, ImportOptions, ImportSettings
from .error_record import ErrorType, RowError
from .mapping import ColumnMapping, TargetField
from .processing_result import (
    BatchResult,
    ImportBatch,
    ProgressEvent,
    RowEvent,
    RunState,
    SessionSummary,
    SkippedRow,
)
from .property import ExistingProperty, NormalizedProperty, UserProfile
from .row_data import RawRow
from .session import ImportSession, RowOutcome, SessionStatus, UndoPreview, UndoResult

__all__ = [
    # Configuration models
    "DatabaseConfig",
    "ImportConfig",
    "ImportOptions",
    "ImportSettings",
    # Mapping / rows
    "ColumnMapping",
    "TargetField",
    "RawRow",
    "NormalizedProperty",
    "ExistingProperty",
    "UserProfile",
    "ErrorType",
    "RowError",
    # Processing models
    "BatchResult",
    "ImportBatch",
    "ProgressEvent",
    "RowEvent",
    "RunState",
    "SessionSummary",
    "SkippedRow",
    # Ledger
    "ImportSession",
    "RowOutcome",
    "SessionStatus",
    "UndoPreview",
    "UndoResult",
]
