"""Migration configuration and run models."""

import json
import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from ..errors import ConfigurationError
from .record import RecordFailure, utcnow


class MigrationStatus(str, Enum):
    """Status of a migration run."""
    PENDING = "pending"
    EXPORTING = "exporting"
    IMPORTING = "importing"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"
    FAILED = "failed"
    CANCELLED = "cancelled"


class FieldErrorPolicy(str, Enum):
    """What the exporter does with a record that has field-level mapping errors."""
    FAIL_RECORD = "fail_record"
    SKIP_FIELD = "skip_field"
    ABORT = "abort"


class LockingMode(str, Enum):
    OPTIMISTIC = "optimistic"
    PESSIMISTIC = "pessimistic"


@dataclass
class RunSummary:
    """Totals and failures of one export or import run."""
    kind: str
    type_name: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: MigrationStatus = MigrationStatus.PENDING
    total: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[RecordFailure] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    @property
    def failed_ids(self) -> List[str]:
        return [f.record_id for f in self.failures]

    def add_failure(self, record_id: str, reason: str, error_type: str, field_name: Optional[str] = None) -> None:
        self.failures.append(
            RecordFailure(record_id=record_id, reason=reason, error_type=error_type, field=field_name)
        )

    def finish(self, status: Optional[MigrationStatus] = None) -> None:
        """Stamp the completion time and settle the final status."""
        self.completed_at = utcnow()
        if status is not None:
            self.status = status
        elif self.failed:
            self.status = MigrationStatus.COMPLETED_WITH_ERRORS
        else:
            self.status = MigrationStatus.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "kind": self.kind,
            "type_name": self.type_name,
            "status": self.status.value,
            "total": self.total,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "failures": [f.to_dict() for f in self.failures],
            "warnings": self.warnings,
            "error": self.error,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class SourceConfig:
    """Connection to the legacy table store."""
    connection_string: Optional[str] = None
    sas_token: Optional[str] = None
    page_size: int = 1000
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
    })
    timeout: float = 30.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "page_size": self.page_size,
            "retry_config": self.retry_config,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SourceConfig":
        return cls(
            connection_string=data.get("connection_string") or os.environ.get("AZURE_STORAGE_CONNECTION_STRING"),
            sas_token=data.get("sas_token"),
            page_size=data.get("page_size", 1000),
            retry_config=data.get("retry_config", {"max_retries": 3, "backoff_factor": 2.0}),
            timeout=data.get("timeout", 30.0),
        )


@dataclass
class TargetConfig:
    """Connection to the Cosmos DB account that receives the documents."""
    endpoint: Optional[str] = None
    key: Optional[str] = None
    database: str = ""
    container: str = ""
    # type name -> container, for types that do not live in the default container
    containers: Dict[str, str] = field(default_factory=dict)
    partition_key_property: str = "id"
    retry_config: Dict[str, Any] = field(default_factory=lambda: {
        "max_retries": 3,
        "backoff_factor": 2.0,
    })
    timeout: float = 30.0

    def container_for(self, type_name: str) -> str:
        container = self.containers.get(type_name, self.container)
        if not container:
            raise ConfigurationError(f"No target container configured for {type_name}")
        return container

    def to_dict(self) -> Dict[str, Any]:
        return {
            "endpoint": self.endpoint,
            "database": self.database,
            "container": self.container,
            "containers": self.containers,
            "partition_key_property": self.partition_key_property,
            "retry_config": self.retry_config,
            "timeout": self.timeout,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TargetConfig":
        return cls(
            endpoint=data.get("endpoint") or os.environ.get("COSMOS_ENDPOINT"),
            key=data.get("key") or os.environ.get("COSMOS_KEY"),
            database=data.get("database") or os.environ.get("COSMOS_DATABASE", ""),
            container=data.get("container") or os.environ.get("COSMOS_CONTAINER", ""),
            containers=data.get("containers", {}),
            partition_key_property=data.get("partition_key_property", "id"),
            retry_config=data.get("retry_config", {"max_retries": 3, "backoff_factor": 2.0}),
            timeout=data.get("timeout", 30.0),
        )


@dataclass
class ExportConfig:
    """What to export and how to map it."""
    type_name: str
    key_property: str
    output_dir: str = "./export"
    type_full_name: Optional[str] = None

    # Mapping options
    type_overrides: Dict[str, str] = field(default_factory=dict)  # property -> PropertyType value
    enum_members: Dict[str, List[str]] = field(default_factory=dict)  # property -> names by ordinal
    excluded_properties: List[str] = field(default_factory=list)
    index_partition_prefix: Optional[str] = "Index_"
    field_error_policy: FieldErrorPolicy = FieldErrorPolicy.FAIL_RECORD

    # Execution options
    parallel_workers: int = 1
    write_retries: int = 3
    write_retry_backoff: float = 0.2
    report_dir: Optional[str] = None

    @property
    def identity_type_name(self) -> str:
        """Type name fed to id derivation; the table name when no full name is known."""
        return self.type_full_name or self.type_name

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type_name": self.type_name,
            "type_full_name": self.type_full_name,
            "key_property": self.key_property,
            "output_dir": self.output_dir,
            "type_overrides": self.type_overrides,
            "enum_members": self.enum_members,
            "excluded_properties": self.excluded_properties,
            "index_partition_prefix": self.index_partition_prefix,
            "field_error_policy": self.field_error_policy.value,
            "parallel_workers": self.parallel_workers,
            "write_retries": self.write_retries,
            "write_retry_backoff": self.write_retry_backoff,
            "report_dir": self.report_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExportConfig":
        if not data.get("type_name") or not data.get("key_property"):
            raise ConfigurationError("export requires type_name and key_property")
        return cls(
            type_name=data["type_name"],
            key_property=data["key_property"],
            output_dir=data.get("output_dir", "./export"),
            type_full_name=data.get("type_full_name"),
            type_overrides=data.get("type_overrides", {}),
            enum_members=data.get("enum_members", {}),
            excluded_properties=data.get("excluded_properties", []),
            index_partition_prefix=data.get("index_partition_prefix", "Index_"),
            field_error_policy=FieldErrorPolicy(data.get("field_error_policy", "fail_record")),
            parallel_workers=data.get("parallel_workers", 1),
            write_retries=data.get("write_retries", 3),
            write_retry_backoff=data.get("write_retry_backoff", 0.2),
            report_dir=data.get("report_dir"),
        )


@dataclass
class ImportConfig:
    """Bulk import of an export tree."""
    input_dir: str = "./export"
    type_names: List[str] = field(default_factory=list)  # empty means every subdirectory
    dry_run: bool = False
    report_dir: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "input_dir": self.input_dir,
            "type_names": self.type_names,
            "dry_run": self.dry_run,
            "report_dir": self.report_dir,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ImportConfig":
        return cls(
            input_dir=data.get("input_dir", "./export"),
            type_names=data.get("type_names", []),
            dry_run=data.get("dry_run", False),
            report_dir=data.get("report_dir"),
        )


@dataclass
class PersistenceOptions:
    """Runtime saga persistence during and after the migration window."""
    migration_mode: bool = False
    locking: LockingMode = LockingMode.OPTIMISTIC
    lock_timeout: float = 10.0
    lease_duration: float = 30.0
    lock_poll_interval: float = 0.05
    # "in_process" locks one process; "lease" coordinates through lease documents
    lock_backend: str = "in_process"
    lease_container: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PersistenceOptions":
        return cls(
            migration_mode=data.get("migration_mode", False),
            locking=LockingMode(data.get("locking", "optimistic")),
            lock_timeout=data.get("lock_timeout", 10.0),
            lease_duration=data.get("lease_duration", 30.0),
            lock_poll_interval=data.get("lock_poll_interval", 0.05),
            lock_backend=data.get("lock_backend", "in_process"),
            lease_container=data.get("lease_container"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "migration_mode": self.migration_mode,
            "locking": self.locking.value,
            "lock_timeout": self.lock_timeout,
            "lease_duration": self.lease_duration,
            "lock_poll_interval": self.lock_poll_interval,
            "lock_backend": self.lock_backend,
            "lease_container": self.lease_container,
        }


@dataclass
class MigrationConfig:
    """Configuration file for the command line and the HTTP API."""
    name: str = "saga-migration"
    source: SourceConfig = field(default_factory=SourceConfig)
    target: TargetConfig = field(default_factory=TargetConfig)
    export: Optional[ExportConfig] = None
    import_: ImportConfig = field(default_factory=ImportConfig)
    persistence: PersistenceOptions = field(default_factory=PersistenceOptions)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation. Secrets are left out."""
        return {
            "name": self.name,
            "source": self.source.to_dict(),
            "target": self.target.to_dict(),
            "export": self.export.to_dict() if self.export else None,
            "import": self.import_.to_dict(),
            "persistence": self.persistence.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        """Create from dictionary representation."""
        export_data = data.get("export")
        return cls(
            name=data.get("name", "saga-migration"),
            source=SourceConfig.from_dict(data.get("source", {})),
            target=TargetConfig.from_dict(data.get("target", {})),
            export=ExportConfig.from_dict(export_data) if export_data else None,
            import_=ImportConfig.from_dict(data.get("import", {})),
            persistence=PersistenceOptions.from_dict(data.get("persistence", {})),
        )

    @classmethod
    def from_json_file(cls, path: str) -> "MigrationConfig":
        with open(path, encoding="utf-8") as f:
            return cls.from_dict(json.load(f))
