"""
Router for processing run endpoints.

Handles:
- Run listing with usage totals
- Progress counters and the folder aggregate
- Run detail (pages and event log)
- Queueing a file for processing and cancelling its runs
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from ..models import (
    AggregateResponse,
    CancelResponse,
    CreatedRun,
    ProgressSnapshot,
    RunDetail,
    RunListResponse,
)
from ..services.aggregation import aggregate_results_by_folder, get_processing_progress
from ..services.processing_queue import ProcessingQueue
from ..services.processing_service import ProcessingService
from ..services.repositories import Repositories

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/projects/{project_id}", tags=["processing"])


# =============================================================================
# Dependencies
# =============================================================================


def get_repositories(request: Request) -> Repositories:
    return request.app.state.repos


def get_processing_service(request: Request) -> ProcessingService:
    return request.app.state.processing_service


def get_processing_queue(request: Request) -> ProcessingQueue:
    return request.app.state.queue


def require_project(project_id: str, repos: Repositories) -> None:
    if repos.projects.get(project_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Project {project_id} not found",
        )


# =============================================================================
# Read Endpoints
# =============================================================================


@router.get("/processing", response_model=RunListResponse)
async def list_runs(
    project_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    repos: Repositories = Depends(get_repositories),
    service: ProcessingService = Depends(get_processing_service),
) -> RunListResponse:
    """
    List the newest runs of a project.

    Args:
        project_id: Project identifier.
        limit: Maximum number of runs to return (1-100).

    Returns:
        Runs (newest first) plus token/cost totals and the active run count.
    """
    require_project(project_id, repos)
    return service.list_runs_for_project(project_id, limit=limit)


@router.get("/processing/progress", response_model=ProgressSnapshot)
async def get_progress(
    project_id: str,
    repos: Repositories = Depends(get_repositories),
) -> ProgressSnapshot:
    """Completion counters for the project's files."""
    require_project(project_id, repos)
    return get_processing_progress(repos, project_id)


@router.get("/processing/aggregate", response_model=AggregateResponse)
async def get_aggregate(
    project_id: str,
    repos: Repositories = Depends(get_repositories),
) -> AggregateResponse:
    """Folder tree of the latest extracted records per file."""
    require_project(project_id, repos)
    return AggregateResponse(nodes=aggregate_results_by_folder(repos, project_id))


@router.get("/processing/runs/{run_id}", response_model=RunDetail)
async def get_run(
    project_id: str,
    run_id: str,
    repos: Repositories = Depends(get_repositories),
    service: ProcessingService = Depends(get_processing_service),
) -> RunDetail:
    """Run metadata with its ordered pages and event log."""
    require_project(project_id, repos)
    detail = service.get_run_detail(project_id, run_id)
    if detail is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Run {run_id} not found",
        )
    return detail


# =============================================================================
# Commands
# =============================================================================


@router.post(
    "/files/{file_id}/process",
    response_model=CreatedRun,
    status_code=status.HTTP_202_ACCEPTED,
)
async def process_file(
    project_id: str,
    file_id: str,
    service: ProcessingService = Depends(get_processing_service),
    queue: ProcessingQueue = Depends(get_processing_queue),
) -> CreatedRun:
    """
    Create a pending run for a file and hand it to the processing queue.

    Returns:
        The new run id. Processing continues in the background.
    """
    created = service.queue_processing_for_file(project_id, file_id, triggered_by="api")
    if created is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {file_id} not found in project {project_id}",
        )

    queue.enqueue(created.run_id)
    logger.info("Queued run %s for file %s", created.run_id, file_id)
    return created


@router.post("/files/{file_id}/cancel", response_model=CancelResponse)
async def cancel_file_runs(
    project_id: str,
    file_id: str,
    repos: Repositories = Depends(get_repositories),
    service: ProcessingService = Depends(get_processing_service),
) -> CancelResponse:
    """Cancel the pending and running runs of a file that is being removed."""
    require_project(project_id, repos)
    if repos.files.get(project_id, file_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"File {file_id} not found in project {project_id}",
        )
    return CancelResponse(cancelled_run_ids=service.cancel_runs_for_file(file_id))
