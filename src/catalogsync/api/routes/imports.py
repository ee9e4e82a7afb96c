"""Import trigger and status routes."""
import logging
from typing import List

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel import Session

from catalogsync.api.deps import get_import_service
from catalogsync.db.engine import get_session
from catalogsync.errors import (
    ConfigurationError,
    RunInProgressError,
    RunNotFoundError,
    RunStateError,
)
from catalogsync.models.import_run import ImportRun, RunStatus
from catalogsync.sync.import_service import CatalogImportService

logger = logging.getLogger(__name__)

router = APIRouter()


class StartImportRequest(BaseModel):
    integration_id: int


class ImportTriggerResponse(BaseModel):
    message: str
    run_id: int
    status: str


async def _do_continue(service: CatalogImportService, run_id: int) -> None:
    """Background task: one execution context of the import."""
    try:
        await service.continue_run(run_id)
    except Exception as exc:
        logger.error("Import run %s failed in background: %s", run_id, exc)


@router.post("/start", status_code=202, response_model=ImportTriggerResponse)
async def start_import(
    request: StartImportRequest,
    background_tasks: BackgroundTasks,
    service: CatalogImportService = Depends(get_import_service),
):
    """
    Start a catalog import for an integration.
    Returns immediately; the first page runs in the background.
    409 if the integration already has an active run.
    """
    try:
        run = service.admit(request.integration_id)
    except RunInProgressError as exc:
        raise HTTPException(
            status_code=409,
            detail={"message": "Import already in progress", "run_id": exc.run_id},
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=404, detail=str(exc))

    background_tasks.add_task(_do_continue, service, run.id)
    return ImportTriggerResponse(message="Import started", run_id=run.id, status=run.status.value)


@router.post("/{run_id}/resume", status_code=202, response_model=ImportTriggerResponse)
async def resume_import(
    run_id: int,
    service: CatalogImportService = Depends(get_import_service),
):
    """Resume a PARTIAL import from its saved cursor."""
    try:
        run = await service.resume(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Import run not found")
    except RunStateError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return ImportTriggerResponse(message="Import resumed", run_id=run.id, status=run.status.value)


@router.post("/{run_id}/continue", status_code=202, response_model=ImportTriggerResponse)
async def continue_import(
    run_id: int,
    background_tasks: BackgroundTasks,
    service: CatalogImportService = Depends(get_import_service),
):
    """
    Run the next execution context now.
    409 unless the run is PENDING or PARTIAL; a RUNNING run already has a
    context working on it.
    """
    try:
        run = service.ledger.get(run_id)
    except RunNotFoundError:
        raise HTTPException(status_code=404, detail="Import run not found")
    if run.status not in (RunStatus.PENDING, RunStatus.PARTIAL):
        raise HTTPException(
            status_code=409,
            detail=f"Cannot continue import run {run_id} in status {run.status.value}",
        )
    background_tasks.add_task(_do_continue, service, run.id)
    return ImportTriggerResponse(message="Import continuing", run_id=run.id, status=run.status.value)


@router.get("/{run_id}", response_model=ImportRun)
def get_import(run_id: int, session: Session = Depends(get_session)):
    """Status, cursor, counters and error log of one run."""
    run = session.get(ImportRun, run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Import run not found")
    return run


@router.get("/", response_model=List[ImportRun])
def list_imports(
    integration_id: int,
    limit: int = 20,
    service: CatalogImportService = Depends(get_import_service),
):
    """Runs for an integration, newest first."""
    return service.ledger.list_for(integration_id, limit=limit)
