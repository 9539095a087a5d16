"""Record models for migration data."""

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from dateutil import parser as date_parser

from ..errors import MappingError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PropertyType(str, Enum):
    """Type tags for source properties and exported fields."""
    STRING = "string"
    INT32 = "int32"
    INT64 = "int64"
    DOUBLE = "double"
    FLOAT32 = "float32"
    BOOLEAN = "boolean"
    BINARY = "binary"
    DATETIME = "datetime"
    GUID = "guid"
    DECIMAL = "decimal"
    ENUM = "enum"
    JSON = "json"  # string property that decoded to a native array/object


class RecordStatus(str, Enum):
    """Status of a record during migration."""
    PENDING = "pending"
    EXPORTED = "exported"
    IMPORTED = "imported"
    FAILED = "failed"
    SKIPPED = "skipped"


_TIMESTAMP_PATTERN = re.compile(
    r"^(?P<base>\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})"
    r"(?:\.(?P<fraction>\d+))?"
    r"(?P<offset>Z|[+-]\d{2}:?\d{2})?$"
)


@dataclass(frozen=True)
class PreciseTimestamp:
    """
    A UTC instant with sub-microsecond precision.

    ``datetime`` stops at microseconds while the legacy store keeps 100ns
    ticks, so the remainder below the microsecond is carried separately.
    """
    value: datetime
    nanoseconds: int = 0

    def __post_init__(self):
        if self.value.tzinfo is None:
            object.__setattr__(self, "value", self.value.replace(tzinfo=timezone.utc))
        elif self.value.utcoffset():
            object.__setattr__(self, "value", self.value.astimezone(timezone.utc))
        if not 0 <= self.nanoseconds <= 999:
            raise ValueError(f"nanoseconds must be in [0, 999], got {self.nanoseconds}")

    @classmethod
    def parse(cls, text: str) -> "PreciseTimestamp":
        """Parse an ISO-8601 timestamp keeping up to nanosecond precision."""
        match = _TIMESTAMP_PATTERN.match(text.strip())
        if not match:
            raise ValueError(f"Not an ISO-8601 timestamp: {text!r}")

        fraction = match.group("fraction") or ""
        if len(fraction) > 9 and int(fraction[9:]) != 0:
            raise ValueError(f"Timestamp finer than a nanosecond: {text!r}")
        fraction = fraction[:9].ljust(9, "0")

        offset = match.group("offset") or "Z"
        parsed = date_parser.isoparse(match.group("base") + offset)
        parsed = parsed.astimezone(timezone.utc).replace(microsecond=int(fraction[:6]))
        return cls(value=parsed, nanoseconds=int(fraction[6:]))

    def isoformat(self) -> str:
        """Render with an explicit +00:00 offset and at least 100ns digits."""
        digits = f"{self.value.microsecond:06d}{self.nanoseconds:03d}"
        if digits.endswith("00"):
            digits = digits[:7]
        return f"{self.value.strftime('%Y-%m-%dT%H:%M:%S')}.{digits}+00:00"

    def __str__(self) -> str:
        return self.isoformat()


@dataclass(frozen=True)
class TypedValue:
    """A source property value together with its type tag."""
    type: PropertyType
    value: Any

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {"type": self.type.value, "value": repr(self.value)}


# Columns maintained by the table service rather than by the application.
SYSTEM_PROPERTIES = frozenset({"PartitionKey", "RowKey", "Timestamp"})


@dataclass
class SourceRecord:
    """A saga row read from the legacy table store."""
    table: str
    partition_key: str
    row_key: str
    properties: Dict[str, TypedValue] = field(default_factory=dict)
    etag: Optional[str] = None
    timestamp: Optional[datetime] = None
    extracted_at: datetime = field(default_factory=utcnow)
    # properties the table payload carried but that could not be decoded
    errors: List[MappingError] = field(default_factory=list)

    @property
    def source_ref(self) -> str:
        """Identifier used for failures that happen before an id is derived."""
        return f"row:{self.partition_key}/{self.row_key}"

    def get(self, name: str) -> Optional[TypedValue]:
        return self.properties.get(name)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "table": self.table,
            "partition_key": self.partition_key,
            "row_key": self.row_key,
            "etag": self.etag,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "extracted_at": self.extracted_at.isoformat(),
            "properties": {k: v.to_dict() for k, v in self.properties.items()},
        }


@dataclass
class TargetDocument:
    """A document ready to be written to the target store."""
    id: str
    partition_key: str
    body: Dict[str, Any]
    field_types: Dict[str, str] = field(default_factory=dict)
    errors: List[MappingError] = field(default_factory=list)
    source_ref: Optional[str] = None

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def to_json_bytes(self) -> bytes:
        """
        Serialize the body as UTF-8 JSON.

        Keys are sorted so that an unchanged record always produces the same
        bytes, whatever order the source returned its properties in.
        """
        text = json.dumps(self.body, sort_keys=True, indent=2, ensure_ascii=False, allow_nan=False)
        return (text + "\n").encode("utf-8")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "id": self.id,
            "partition_key": self.partition_key,
            "body": self.body,
            "field_types": self.field_types,
            "errors": [str(e) for e in self.errors],
            "source_ref": self.source_ref,
        }


@dataclass
class RecordFailure:
    """A record that could not be exported or imported."""
    record_id: str
    reason: str
    error_type: str
    field: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "record_id": self.record_id,
            "reason": self.reason,
            "error_type": self.error_type,
            "field": self.field,
        }


@dataclass
class RecordResult:
    """Outcome of exporting or importing a single record."""
    record_id: str
    status: RecordStatus = RecordStatus.PENDING
    path: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    field_name: Optional[str] = None
    attempts: int = 0
    warnings: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.status in (RecordStatus.EXPORTED, RecordStatus.IMPORTED)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "record_id": self.record_id,
            "status": self.status.value,
            "path": self.path,
            "error": self.error,
            "error_type": self.error_type,
            "field": self.field_name,
            "attempts": self.attempts,
            "warnings": self.warnings,
        }
