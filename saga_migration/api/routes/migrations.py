"""Export and import run endpoints."""

import logging
import threading
from pathlib import Path

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from ..dependencies import get_document_store, get_table_source, get_target_config
from ..models import ExportRequest, ImportRequest, RunListResponse, RunResponse, StartResponse
from ..storage import run_registry
from ...errors import ConfigurationError, MigrationError
from ...exporter import Exporter
from ...extractors.base import TableSource
from ...loaders.base import DocumentStore
from ...loaders.importer import DocumentImporter
from ...models.migration import ExportConfig, RunSummary, TargetConfig

logger = logging.getLogger(__name__)

router = APIRouter()


def to_response(summary: RunSummary) -> RunResponse:
    return RunResponse(**summary.to_dict())


@router.post("/export", response_model=StartResponse, status_code=202)
async def start_export(
    request: ExportRequest,
    background_tasks: BackgroundTasks,
    source: TableSource = Depends(get_table_source),
    target: TargetConfig = Depends(get_target_config),
):
    """Start exporting one saga table."""
    cancel_event = threading.Event()
    try:
        config = ExportConfig.from_dict(request.model_dump(mode="json"))
        exporter = Exporter(
            source,
            config,
            page_size=request.page_size,
            cancel_event=cancel_event,
            partition_key_property=target.partition_key_property,
        )
    except (ConfigurationError, ValueError) as e:
        source.close()
        raise HTTPException(status_code=400, detail=str(e))

    summary = RunSummary(kind="export", type_name=config.type_name)
    run_registry.register(summary, cancel_event)

    background_tasks.add_task(run_export_task, exporter, summary)
    return StartResponse(status="started", run_ids=[summary.id])


@router.post("/import", response_model=StartResponse, status_code=202)
async def start_import(
    request: ImportRequest,
    background_tasks: BackgroundTasks,
    store: DocumentStore = Depends(get_document_store),
    target: TargetConfig = Depends(get_target_config),
):
    """Start importing an export tree, one run per saga type."""
    root = Path(request.input_dir)
    if not root.is_dir():
        raise HTTPException(status_code=400, detail=f"Import root {request.input_dir} is not a directory")

    type_names = request.type_names or sorted(p.name for p in root.iterdir() if p.is_dir())
    if not type_names:
        raise HTTPException(status_code=400, detail="Nothing to import")

    runs = []
    for type_name in type_names:
        summary = RunSummary(kind="import", type_name=type_name)
        runs.append((summary, run_registry.register(summary)))

    background_tasks.add_task(run_import_task, store, target, root, request.dry_run, runs)
    return StartResponse(status="started", run_ids=[summary.id for summary, _ in runs])


@router.get("", response_model=RunListResponse)
async def list_runs():
    """List all runs."""
    runs = [to_response(summary) for summary in run_registry.list_all()]
    return RunListResponse(runs=runs, total=len(runs))


@router.get("/{run_id}", response_model=RunResponse)
async def get_run(run_id: str):
    """Get a specific run."""
    summary = run_registry.get(run_id)
    if not summary:
        raise HTTPException(status_code=404, detail="Run not found")
    return to_response(summary)


@router.post("/{run_id}/cancel")
async def cancel_run(run_id: str):
    """Cancel a running export or import."""
    if not run_registry.cancel(run_id):
        raise HTTPException(status_code=404, detail="Run not found")
    return {"status": "cancelling", "run_id": run_id}


def run_export_task(exporter: Exporter, summary: RunSummary) -> None:
    """Background task running an export."""
    try:
        exporter.run(summary)
    except MigrationError as e:
        # The summary already carries the failure.
        logger.error(f"Export run {summary.id} failed: {e}")
    finally:
        exporter.source.close()


def run_import_task(
    store: DocumentStore,
    target: TargetConfig,
    root: Path,
    dry_run: bool,
    runs: list,
) -> None:
    """Background task importing each type in turn."""
    try:
        for summary, cancel_event in runs:
            importer = DocumentImporter(store, target, dry_run=dry_run, cancel_event=cancel_event)
            importer.import_type(root, summary.type_name, summary)
    finally:
        store.close()
