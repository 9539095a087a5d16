"""Exporter - writes one JSON document per saga row for bulk import."""

import logging
import os
import tempfile
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ExtractionError, MappingError, WriteError
from .extractors.base import TableSource
from .extractors.table_extractor import TableExtractor
from .models.migration import ExportConfig, FieldErrorPolicy, MigrationStatus, RunSummary
from .models.record import RecordResult, RecordStatus, SourceRecord, TargetDocument, utcnow
from .reports import save_report
from .services.identity import derive, key_value_to_string
from .services.type_mapper import TypeMapper

logger = logging.getLogger(__name__)


def atomic_write(path: Path, data: bytes) -> None:
    """
    Replace ``path`` with ``data`` so readers see the old or the new file, never a mix.

    The bytes go to a temporary file in the same directory, are flushed to
    disk, and the file is then renamed over the destination.
    """
    tmp = tempfile.NamedTemporaryFile(
        "wb", dir=path.parent, prefix=f".{path.name}.", suffix=".tmp", delete=False
    )
    try:
        with tmp:
            tmp.write(data)
            tmp.flush()
            os.fsync(tmp.fileno())
        os.replace(tmp.name, path)
    except BaseException:
        if os.path.exists(tmp.name):
            os.unlink(tmp.name)
        raise


class Exporter:
    """
    Exports every saga of one type to ``<output_dir>/<type_name>/<id>.json``.

    Handles:
    - Streaming the table page by page
    - Deriving ids and mapping rows to documents
    - Atomic, retried file writes
    - Per-record failure isolation
    - Optional parallelism and cooperative cancellation
    - Run summary and report
    """

    def __init__(
        self,
        source: TableSource,
        config: ExportConfig,
        page_size: int = 1000,
        cancel_event: Optional[threading.Event] = None,
        mapper: Optional[TypeMapper] = None,
        partition_key_property: str = "id"
    ):
        """
        Initialize the exporter.

        Args:
            source: Legacy table store
            config: Export configuration
            page_size: Entities requested per page
            cancel_event: Set to stop after the records already in flight
            mapper: Type mapper, built from the configuration by default
            partition_key_property: Document property holding the partition key
        """
        self.source = source
        self.config = config
        self.page_size = page_size
        self.cancel_event = cancel_event or threading.Event()
        self.mapper = mapper or TypeMapper(
            type_overrides=config.type_overrides,
            enum_members=config.enum_members,
            excluded_properties=config.excluded_properties,
            partition_key_property=partition_key_property,
        )
        self.output_dir = Path(config.output_dir) / config.type_name
        self.summary: Optional[RunSummary] = None

    def run(self, summary: Optional[RunSummary] = None) -> RunSummary:
        """
        Run the export.

        Args:
            summary: Pre-registered summary to fill in, a new one by default

        Returns:
            RunSummary with totals and failed record ids

        Raises:
            ExtractionError: the table could not be enumerated
            MappingError: a field failed to map under the abort policy
        """
        summary = summary or RunSummary(kind="export", type_name=self.config.type_name)
        summary.started_at = utcnow()
        summary.status = MigrationStatus.EXPORTING
        self.summary = summary

        extractor = TableExtractor(
            self.source,
            self.config.type_name,
            page_size=self.page_size,
            index_partition_prefix=self.config.index_partition_prefix,
        )

        try:
            logger.info(f"=== EXPORT {self.config.type_name} -> {self.output_dir} ===")
            self.output_dir.mkdir(parents=True, exist_ok=True)

            if self.config.parallel_workers > 1:
                cancelled = self._run_parallel(extractor, summary)
            else:
                cancelled = self._run_sequential(extractor, summary)

            summary.skipped += extractor.skipped
            summary.warnings.extend(extractor.warnings)

            if cancelled:
                logger.warning(f"Export of {self.config.type_name} cancelled after {summary.total} records")
                summary.finish(MigrationStatus.CANCELLED)
            else:
                summary.finish()
                logger.info(
                    f"Exported {summary.succeeded}/{summary.total} {self.config.type_name} records"
                    f" ({summary.failed} failed)"
                )

        except (ExtractionError, MappingError) as e:
            logger.error(f"Export failed: {e}")
            summary.error = str(e)
            summary.finish(MigrationStatus.FAILED)
            raise

        finally:
            if summary.completed_at is None:
                summary.error = summary.error or "export interrupted"
                summary.finish(MigrationStatus.FAILED)
            if self.config.report_dir:
                save_report(summary, self.config.report_dir)

        return summary

    def _run_sequential(self, extractor: TableExtractor, summary: RunSummary) -> bool:
        for record in extractor.stream():
            if self.cancel_event.is_set():
                return True
            self._record(summary, self.export_record(record))
        return False

    def _run_parallel(self, extractor: TableExtractor, summary: RunSummary) -> bool:
        with ThreadPoolExecutor(max_workers=self.config.parallel_workers) as pool:
            for batch in extractor.stream_batches():
                if self.cancel_event.is_set():
                    return True
                futures = [pool.submit(self.export_record, record) for record in batch]
                for future in futures:
                    self._record(summary, future.result())
        return False

    def _record(self, summary: RunSummary, result: RecordResult) -> None:
        summary.total += 1
        summary.warnings.extend(result.warnings)
        if result.success:
            summary.succeeded += 1
        else:
            summary.failed += 1
            summary.add_failure(result.record_id, result.error or "", result.error_type or "", result.field_name)

    def export_record(self, record: SourceRecord) -> RecordResult:
        """
        Map and write a single record.

        Mapping and write failures are returned as a failed result;
        under the abort policy a mapping failure is raised instead.
        """
        try:
            document = self.map_record(record)
            path, attempts = self.write_document(document)

        except MappingError as e:
            if self.config.field_error_policy == FieldErrorPolicy.ABORT:
                raise
            record_id = e.record_id or record.source_ref
            logger.error(f"Failed to map {record_id}: {e}")
            return RecordResult(
                record_id=record_id,
                status=RecordStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
                field_name=e.field,
            )

        except WriteError as e:
            logger.error(f"Failed to write {e.record_id}: {e}")
            return RecordResult(
                record_id=e.record_id or record.source_ref,
                status=RecordStatus.FAILED,
                error=str(e),
                error_type=type(e).__name__,
                attempts=e.attempts,
            )

        return RecordResult(
            record_id=document.id,
            status=RecordStatus.EXPORTED,
            path=str(path),
            attempts=attempts,
            warnings=[f"{document.id}: dropped {e}" for e in document.errors],
        )

    def map_record(self, record: SourceRecord) -> TargetDocument:
        """
        Derive the record's id and map it to a document.

        Raises:
            MappingError: the key is missing or a field failed under the fail_record policy
        """
        key_property = self.config.key_property
        key = record.get(key_property)
        if key is None or key.value is None:
            raise MappingError("correlation property is missing", field=key_property, record_id=record.source_ref)

        # The id must come from the key as the runtime sees it, after overrides.
        try:
            key = self.mapper.apply_override(key_property, key)
            key_string = key_value_to_string(key)
        except MappingError as e:
            e.field = key_property
            e.record_id = record.source_ref
            raise
        except ValueError as e:
            raise MappingError(
                f"correlation property is not a valid {key.type.value}: {e}",
                field=key_property,
                record_id=record.source_ref,
            ) from e

        type_name = self.config.identity_type_name
        document_id = derive(type_name, key_property, key_string)
        document = self.mapper.to_document(record, document_id, type_name, key_property)

        if document.errors and self.config.field_error_policy != FieldErrorPolicy.SKIP_FIELD:
            raise document.errors[0]
        return document

    def write_document(self, document: TargetDocument) -> Tuple[Path, int]:
        """
        Write a document file, retrying transient filesystem errors.

        Raises:
            WriteError: every attempt failed
        """
        path = self.output_dir / f"{document.id}.json"
        data = document.to_json_bytes()
        attempts = max(1, self.config.write_retries)
        last_error: Optional[OSError] = None

        for attempt in range(1, attempts + 1):
            try:
                atomic_write(path, data)
                return path, attempt
            except OSError as e:
                last_error = e
                logger.warning(f"Write attempt {attempt}/{attempts} for {document.id} failed: {e}")
                if attempt < attempts:
                    time.sleep(self.config.write_retry_backoff * attempt)

        raise WriteError(
            f"Could not write {path} after {attempts} attempts: {last_error}",
            record_id=document.id,
            attempts=attempts,
        )

    def written_files(self) -> List[Path]:
        """Document files currently in the output directory."""
        return sorted(self.output_dir.glob("*.json"))
