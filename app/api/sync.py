"""Sync API endpoints."""

import logging
from datetime import datetime
from typing import Literal
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field

from app.core.config import get_settings
from app.services.errors import AlreadyRunningError, RunNotFoundError, RunNotResumableError
from app.services.pipeline import SyncPipeline, get_pipeline

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


class SyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["company", "employee", "absenteeism"]
    sync_id: int | None = Field(default=None, alias="syncId")
    resume_from_batch: int | None = Field(default=None, alias="resumeFromBatch", ge=0)
    resume_from_record: int | None = Field(default=None, alias="resumeFromRecord", ge=0)
    parallel: bool | None = None
    batch_size: int | None = Field(default=None, alias="batchSize", ge=1)
    max_concurrent: int | None = Field(default=None, alias="maxConcurrent", ge=1)


class SyncStartResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    sync_id: int = Field(serialization_alias="syncId")
    status: str
    message: str


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sync_id: int = Field(alias="syncId")
    force: bool = False


class CancelResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    sync_id: int = Field(serialization_alias="syncId")
    status: str
    message: str


class ResetResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    message: str
    count: int
    sync_ids: list[int] = Field(serialization_alias="syncIds")


class ClearHistoryResponse(BaseModel):
    success: bool
    message: str
    count: int


class SyncRunResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    kind: str
    owner: str
    status: str
    total_records: int
    processed_records: int
    current_batch_index: int
    total_batches: int
    success_count: int
    failed_count: int
    batch_size: int
    max_concurrent: int
    parallel: bool
    message: str | None
    error_detail: str | None
    parent_run_id: int | None
    root_run_id: int | None
    started_at: datetime
    updated_at: datetime
    completed_at: datetime | None


def get_owner(x_owner_id: str | None = Header(default=None)) -> str:
    """Tenant of the request, from the X-Owner-Id header."""
    return x_owner_id or get_settings().default_owner


@router.post("", response_model=SyncStartResponse)
async def start_sync(
    request: SyncRequest,
    background_tasks: BackgroundTasks,
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """
    Start a sync of one SOC data kind, or resume a pending continuation.

    The run executes after the response is sent; poll GET /api/sync/{id}.
    """
    try:
        run = await pipeline.start(
            owner,
            request.type,
            sync_id=request.sync_id,
            resume_from_batch=request.resume_from_batch,
            resume_from_record=request.resume_from_record,
            parallel=request.parallel,
            batch_size=request.batch_size,
            max_concurrent=request.max_concurrent,
        )
    except AlreadyRunningError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except RunNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RunNotResumableError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    background_tasks.add_task(pipeline.run, run.id)

    resumed = request.sync_id is not None
    logger.info(f"{'Resuming' if resumed else 'Starting'} {request.type} sync run {run.id} for {owner}")
    return SyncStartResponse(
        success=True,
        sync_id=run.id,
        status=run.status,
        message=f"{request.type.capitalize()} sync {'resumed' if resumed else 'started'}",
    )


@router.post("/cancel", response_model=CancelResponse)
async def cancel_sync(
    request: CancelRequest,
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Cancel a run and the active rest of its chain."""
    run, changed = await pipeline.store.cancel_run(request.sync_id, owner, force=request.force)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {request.sync_id} not found")

    message = "Sync cancelled" if changed else f"Sync run already {run.status}"
    return CancelResponse(success=True, sync_id=run.id, status=run.status, message=message)


@router.post("/reset", response_model=ResetResponse)
async def reset_syncs(
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Cancel every active run of the caller, e.g. after a crash left rows behind."""
    ids = await pipeline.store.reset_active(owner)
    return ResetResponse(
        success=True,
        message=f"{len(ids)} active sync(s) cancelled" if ids else "No active syncs",
        count=len(ids),
        sync_ids=ids,
    )


@router.delete("/history", response_model=ClearHistoryResponse)
async def clear_history(
    force: bool = False,
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Delete finished runs. Refused while a sync is active unless force is set."""
    active = await pipeline.store.list_active(owner)
    if active and not force:
        kinds = ", ".join(sorted({run.kind for run in active}))
        raise HTTPException(
            status_code=409,
            detail=f"Syncs still active ({kinds}). Retry with force=true to clear finished runs only.",
        )

    count = await pipeline.store.clear_history(owner)
    return ClearHistoryResponse(success=True, message=f"{count} sync run(s) deleted", count=count)


@router.get("/active", response_model=list[SyncRunResponse])
async def active_syncs(
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Runs currently holding a sync slot."""
    return await pipeline.store.list_active(owner)


@router.get("", response_model=list[SyncRunResponse])
async def sync_history(
    limit: int = Query(default=20, ge=1, le=200),
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Most recent runs first."""
    return await pipeline.store.list_runs(owner, limit)


@router.get("/{sync_id}", response_model=SyncRunResponse)
async def sync_status(
    sync_id: int,
    owner: str = Depends(get_owner),
    pipeline: SyncPipeline = Depends(get_pipeline),
):
    """Progress of one run."""
    run = await pipeline.store.get_run(sync_id, owner)
    if run is None:
        raise HTTPException(status_code=404, detail=f"Sync run {sync_id} not found")
    return run
