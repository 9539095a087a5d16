"""Streaming extractor for saga tables."""

import logging
from typing import Iterator, List, Optional, Set, Tuple

import requests

from .base import Continuation, ExtractionResult, TableSource
from .odata import parse_entity
from ..errors import ExtractionError, StoreError
from ..models.record import SourceRecord, utcnow

logger = logging.getLogger(__name__)


class TableExtractor:
    """
    Streams every saga row of one table exactly once.

    Pagination is followed transparently. There is no snapshot isolation:
    a row updated during the scan is returned in either its old or its new
    state. Rows of the saga persister's secondary index are skipped.
    """

    def __init__(
        self,
        source: TableSource,
        table: str,
        page_size: int = 1000,
        index_partition_prefix: Optional[str] = "Index_"
    ):
        """
        Initialize the extractor.

        Args:
            source: Table store to read from
            table: Table holding the saga type
            page_size: Entities requested per page
            index_partition_prefix: Partition key prefix of index rows to skip
        """
        self.source = source
        self.table = table
        self.page_size = page_size
        self.index_partition_prefix = index_partition_prefix
        self.pages_read = 0
        self.skipped = 0
        self.warnings: List[str] = []

    def reset(self) -> None:
        """Reset the extractor state."""
        self.pages_read = 0
        self.skipped = 0
        self.warnings = []

    def stream_batches(self) -> Iterator[List[SourceRecord]]:
        """
        Stream records page by page.

        Raises:
            ExtractionError: the table cannot be enumerated
        """
        self.reset()
        continuation: Optional[Continuation] = None
        seen_tokens: Set[Continuation] = set()
        seen_rows: Set[Tuple[str, str]] = set()

        while True:
            try:
                page = self.source.query_page(self.table, continuation, self.page_size)
            except (StoreError, requests.RequestException, ValueError) as e:
                raise ExtractionError(f"Cannot read table {self.table}: {e}") from e

            self.pages_read += 1
            batch = []

            for raw in page.entities:
                record = parse_entity(raw, self.table)
                row = (record.partition_key, record.row_key)

                if self._is_index_row(record):
                    self.skipped += 1
                    logger.debug(f"Skipping index row {record.source_ref}")
                    continue

                if row in seen_rows:
                    self.skipped += 1
                    self._warn(f"{record.source_ref} returned twice, keeping the first copy")
                    continue

                seen_rows.add(row)
                batch.append(record)

            if batch:
                yield batch

            if page.continuation is None:
                break

            if page.continuation == continuation or page.continuation in seen_tokens:
                raise ExtractionError(
                    f"Pagination of {self.table} did not advance past {page.continuation}"
                )

            seen_tokens.add(page.continuation)
            continuation = page.continuation

        logger.info(f"Read {len(seen_rows)} rows from {self.table} in {self.pages_read} pages")

    def stream(self) -> Iterator[SourceRecord]:
        """Stream records one at a time."""
        for batch in self.stream_batches():
            yield from batch

    def extract(self) -> ExtractionResult:
        """Extract the whole table into memory."""
        result = ExtractionResult(table=self.table, started_at=utcnow())
        result.records = list(self.stream())
        result.total_extracted = len(result.records)
        result.pages = self.pages_read
        result.skipped = self.skipped
        result.warnings = list(self.warnings)
        result.completed_at = utcnow()
        return result

    def _is_index_row(self, record: SourceRecord) -> bool:
        return bool(self.index_partition_prefix) and record.partition_key.startswith(
            self.index_partition_prefix
        )

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning(f"Extraction warning: {message}")
