"""Bulk import of an export tree into the document store."""

import json
import logging
import threading
from pathlib import Path
from typing import List, Optional

from .base import DocumentStore
from ..errors import ConfigurationError, DocumentImportError, StoreError
from ..models.migration import MigrationStatus, RunSummary, TargetConfig
from ..models.record import RecordResult, RecordStatus, utcnow
from ..reports import save_report

logger = logging.getLogger(__name__)


class DocumentImporter:
    """
    Loads exported documents into their target containers.

    The export root holds one directory per saga type. Each file is named
    after its derived id, which is used as both the document id and the
    partition key. Documents are upserted so a rerun never duplicates.
    """

    def __init__(
        self,
        store: DocumentStore,
        target: TargetConfig,
        dry_run: bool = False,
        cancel_event: Optional[threading.Event] = None,
        report_dir: Optional[str] = None
    ):
        """
        Initialize the importer.

        Args:
            store: Target document store
            target: Container routing and partition key property
            dry_run: If True, validate the files without writing
            cancel_event: Set to stop the run between documents
            report_dir: Directory for JSON run reports
        """
        self.store = store
        self.target = target
        self.dry_run = dry_run
        self.cancel_event = cancel_event or threading.Event()
        self.report_dir = report_dir

    def import_tree(self, root: str, type_names: Optional[List[str]] = None) -> List[RunSummary]:
        """
        Import every type directory below ``root``.

        Args:
            root: Export root directory
            type_names: Types to import; every subdirectory when empty

        Returns:
            One RunSummary per type
        """
        root_path = Path(root)
        if not root_path.is_dir():
            raise ConfigurationError(f"Import root {root} is not a directory")

        if not type_names:
            type_names = sorted(p.name for p in root_path.iterdir() if p.is_dir())

        summaries = []
        for type_name in type_names:
            if self.cancel_event.is_set():
                break
            summaries.append(self.import_type(root_path, type_name))
        return summaries

    def import_type(self, root: Path, type_name: str, summary: Optional[RunSummary] = None) -> RunSummary:
        """Import the documents of one saga type."""
        summary = summary or RunSummary(kind="import", type_name=type_name)
        summary.started_at = utcnow()
        summary.status = MigrationStatus.IMPORTING
        directory = Path(root) / type_name

        try:
            container = self.target.container_for(type_name)
            if not directory.is_dir():
                raise ConfigurationError(f"No export directory for {type_name} in {root}")

            logger.info(f"Importing {type_name} from {directory} into {container}")
            for path in sorted(directory.glob("*.json")):
                if self.cancel_event.is_set():
                    logger.warning(f"Import of {type_name} cancelled")
                    summary.finish(MigrationStatus.CANCELLED)
                    break

                summary.total += 1
                try:
                    result = self.import_document(path, container)
                except DocumentImportError as e:
                    summary.failed += 1
                    summary.add_failure(e.document_id or path.stem, str(e), type(e).__name__)
                    logger.error(f"Failed to import {path.name}: {e}")
                    continue

                if result.status == RecordStatus.SKIPPED:
                    summary.skipped += 1
                else:
                    summary.succeeded += 1

            logger.info(
                f"Imported {summary.succeeded}/{summary.total} {type_name} documents"
                f" ({summary.failed} failed, {summary.skipped} skipped)"
            )

        except ConfigurationError as e:
            logger.error(f"Import of {type_name} failed: {e}")
            summary.error = str(e)
            summary.finish(MigrationStatus.FAILED)

        finally:
            if summary.completed_at is None:
                summary.finish()
            if self.report_dir:
                save_report(summary, self.report_dir)

        return summary

    def import_document(self, path: Path, container: str) -> RecordResult:
        """
        Import a single exported file.

        Raises:
            DocumentImportError: the file is malformed or the store rejected it
        """
        document_id = path.stem
        try:
            raw = path.read_bytes()
        except OSError as e:
            raise DocumentImportError(f"Cannot read {path}: {e}", document_id=document_id)

        try:
            body = json.loads(raw)
        except ValueError as e:
            raise DocumentImportError(f"Not valid JSON: {e}", document_id=document_id)

        if not isinstance(body, dict):
            raise DocumentImportError("Document is not a JSON object", document_id=document_id)
        if body.get("id") != document_id:
            raise DocumentImportError(
                f"Document id {body.get('id')!r} does not match the file name",
                document_id=document_id,
            )
        pk_property = self.target.partition_key_property
        if body.get(pk_property) != document_id:
            raise DocumentImportError(
                f"Partition key {pk_property}={body.get(pk_property)!r} does not match the file name",
                document_id=document_id,
            )

        if self.dry_run:
            logger.debug(f"[DRY RUN] Would upsert {document_id} into {container}")
            return RecordResult(record_id=document_id, status=RecordStatus.SKIPPED, path=str(path))

        try:
            self.store.upsert_item(container, document_id, raw)
        except StoreError as e:
            raise DocumentImportError(str(e), document_id=document_id, status_code=e.status_code) from e

        return RecordResult(
            record_id=document_id,
            status=RecordStatus.IMPORTED,
            path=str(path),
            attempts=1,
        )
