"""Data models for the migration application."""

from .record import (
    PropertyType,
    PreciseTimestamp,
    TypedValue,
    SourceRecord,
    TargetDocument,
    RecordFailure,
    RecordResult,
    RecordStatus,
)
from .migration import (
    MigrationConfig,
    MigrationStatus,
    RunSummary,
    SourceConfig,
    TargetConfig,
    ExportConfig,
    ImportConfig,
    PersistenceOptions,
    FieldErrorPolicy,
    LockingMode,
)

__all__ = [
    "PropertyType",
    "PreciseTimestamp",
    "TypedValue",
    "SourceRecord",
    "TargetDocument",
    "RecordFailure",
    "RecordResult",
    "RecordStatus",
    "MigrationConfig",
    "MigrationStatus",
    "RunSummary",
    "SourceConfig",
    "TargetConfig",
    "ExportConfig",
    "ImportConfig",
    "PersistenceOptions",
    "FieldErrorPolicy",
    "LockingMode",
]
