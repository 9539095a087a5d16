"""Base interfaces for reading saga rows from the legacy table store."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..models.record import SourceRecord


@dataclass(frozen=True)
class Continuation:
    """Position of the next page of a table query."""
    next_partition_key: Optional[str] = None
    next_row_key: Optional[str] = None


@dataclass
class TablePage:
    """One page of raw OData entities."""
    entities: List[Dict[str, Any]] = field(default_factory=list)
    continuation: Optional[Continuation] = None


class TableSource(ABC):
    """
    Read-only access to a partitioned table store.

    Implementations return raw property bags (OData JSON entities with
    ``@odata.type`` annotations); decoding is left to the extractor so
    every source is interpreted the same way.
    """

    @abstractmethod
    def query_page(
        self,
        table: str,
        continuation: Optional[Continuation] = None,
        page_size: int = 1000
    ) -> TablePage:
        """
        Fetch one page of a full table scan.

        Raises:
            StoreError: the table could not be read
        """
        pass

    @abstractmethod
    def find_by_property(self, table: str, name: str, value: str) -> List[Dict[str, Any]]:
        """
        Return every entity whose property ``name`` equals ``value``.

        A missing table yields an empty list; an unreachable store raises
        StoreError.
        """
        pass

    def close(self) -> None:
        """Release network resources."""


@dataclass
class ExtractionResult:
    """Result of an extraction operation."""
    table: str
    records: List[SourceRecord] = field(default_factory=list)
    total_extracted: int = 0
    pages: int = 0
    skipped: int = 0
    warnings: List[str] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        """Get duration in seconds."""
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "table": self.table,
            "total_extracted": self.total_extracted,
            "pages": self.pages,
            "skipped": self.skipped,
            "warnings": self.warnings,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
        }
