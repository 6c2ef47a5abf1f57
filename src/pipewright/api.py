"""Run API: thin HTTP surface over the lifecycle manager.

Endpoints (all under ``/api/v1``):
    - POST /pipelines/{pipeline_id}/runs  create a run
    - GET  /pipelines/{pipeline_id}/runs  recent runs of a pipeline
    - GET  /runs                          filtered, paginated listing
    - GET  /runs/statistics               aggregate counts and durations
    - GET  /runs/{run_id}                 one run
    - GET  /runs/{run_id}/tasks           its task runs
    - POST /runs/{run_id}/cancel          cancel a pending/running run
    - POST /runs/{run_id}/retry           retry a failed/cancelled run

Handlers only translate between HTTP and the manager; domain errors map to
status codes in :func:`_to_http`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, ValidationError

from pipewright.errors import (
    AdmissionDenied,
    BackendUnavailable,
    InvalidStateTransition,
    PipelineInactive,
    PipelineNotFound,
    PipewrightError,
    RunNotFound,
)
from pipewright.models import PipelineRun, RunFilter, RunStatistics, RunStatus, TaskRun, TriggerType

if TYPE_CHECKING:
    from pipewright.lifecycle import RunLifecycleManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["runs"])

_lifecycle: "RunLifecycleManager | None" = None


def configure(lifecycle: "RunLifecycleManager") -> None:
    """Configure the run router with the lifecycle manager."""
    global _lifecycle
    _lifecycle = lifecycle
    logger.info("Run API configured")


def _manager() -> "RunLifecycleManager":
    if _lifecycle is None:
        raise HTTPException(status_code=503, detail="Lifecycle manager not available")
    return _lifecycle


def _to_http(exc: PipewrightError) -> HTTPException:
    if isinstance(exc, (PipelineNotFound, RunNotFound)):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, (PipelineInactive, InvalidStateTransition)):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, AdmissionDenied):
        return HTTPException(status_code=429, detail=str(exc))
    if isinstance(exc, BackendUnavailable):
        return HTTPException(status_code=503, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


# ── Request / Response Bodies ────────────────────────────────────────────────


class CreateRunRequest(BaseModel):
    trigger_type: TriggerType = TriggerType.API
    trigger_by: str | None = None
    trigger_data: dict[str, Any] = {}
    parameters: dict[str, Any] = {}


class CancelRunRequest(BaseModel):
    reason: str | None = None


class RunPage(BaseModel):
    runs: list[PipelineRun]
    total: int
    page: int
    limit: int


# ── Routes ───────────────────────────────────────────────────────────────────


@router.post("/pipelines/{pipeline_id}/runs", status_code=201, response_model=PipelineRun)
async def create_run(pipeline_id: str, body: CreateRunRequest | None = None):
    body = body or CreateRunRequest()
    try:
        return await _manager().create(
            pipeline_id,
            body.trigger_type,
            body.trigger_by,
            body.trigger_data,
            body.parameters,
        )
    except PipewrightError as e:
        raise _to_http(e) from e


@router.get("/pipelines/{pipeline_id}/runs", response_model=list[PipelineRun])
async def list_pipeline_runs(pipeline_id: str, limit: int = Query(default=20, ge=1, le=100)):
    return await _manager().get_by_pipeline(pipeline_id, limit)


@router.get("/runs", response_model=RunPage)
async def list_runs(
    pipeline_id: str | None = None,
    status: RunStatus | None = None,
    trigger_type: TriggerType | None = None,
    trigger_by: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    page: int = 1,
    limit: int = 20,
    sort_by: str = "created_at",
    sort_desc: bool = True,
):
    try:
        run_filter = RunFilter(
            pipeline_id=pipeline_id,
            status=status,
            trigger_type=trigger_type,
            trigger_by=trigger_by,
            start_date=start_date,
            end_date=end_date,
            page=page,
            limit=limit,
            sort_by=sort_by,
            sort_desc=sort_desc,
        )
    except ValidationError as e:
        # ctx can hold the raw ValueError, which is not JSON serialisable
        detail = e.errors(include_url=False, include_context=False)
        raise HTTPException(status_code=422, detail=detail) from e
    runs, total = await _manager().list_runs(run_filter)
    return RunPage(runs=runs, total=total, page=run_filter.page, limit=run_filter.limit)


@router.get("/runs/statistics", response_model=RunStatistics)
async def run_statistics(
    pipeline_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
    group_by: str | None = None,
):
    try:
        return await _manager().get_statistics(
            pipeline_id=pipeline_id, start=start_date, end=end_date, group_by=group_by
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


@router.get("/runs/{run_id}", response_model=PipelineRun)
async def get_run(run_id: str):
    try:
        return await _manager().get_by_id(run_id)
    except PipewrightError as e:
        raise _to_http(e) from e


@router.get("/runs/{run_id}/tasks", response_model=list[TaskRun])
async def get_run_tasks(run_id: str):
    try:
        return await _manager().get_task_runs(run_id)
    except PipewrightError as e:
        raise _to_http(e) from e


@router.post("/runs/{run_id}/cancel", response_model=PipelineRun)
async def cancel_run(run_id: str, body: CancelRunRequest | None = None):
    reason = body.reason if body else None
    try:
        return await _manager().cancel(run_id, reason)
    except PipewrightError as e:
        raise _to_http(e) from e


@router.post("/runs/{run_id}/retry", status_code=201, response_model=PipelineRun)
async def retry_run(run_id: str):
    try:
        return await _manager().retry(run_id)
    except PipewrightError as e:
        raise _to_http(e) from e
