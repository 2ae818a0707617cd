from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from storesync.models_sqlalchemy import get_db
from storesync.models_sqlalchemy.sync_jobs import JobKind, JobStatus
from storesync.services.container import ConnectorServices, get_services
from storesync.services.sync_workers import JobNotFoundError, JobStateError
from storesync.services.sync_workers import jobs as job_store
from storesync.utils.logger import logger


router = APIRouter(prefix="/sync/jobs", tags=["sync_jobs"])


class JobProgress(BaseModel):
    current_page: int
    total_pages: int
    total_items: int
    imported: int
    updated: int
    errors: int
    percent: int


class JobErrorEntry(BaseModel):
    page: int
    message: str
    timestamp: str


class JobResponse(BaseModel):
    id: str
    kind: str
    status: str
    progress: JobProgress
    error_log: List[JobErrorEntry] = []
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    resumed_from_job_id: Optional[str] = None
    created_by: Optional[str] = None
    started_at: Optional[str] = None
    paused_at: Optional[str] = None
    completed_at: Optional[str] = None


class StartJobRequest(BaseModel):
    kind: JobKind
    created_by: Optional[str] = None


class StartJobResponse(BaseModel):
    job_id: str
    created: bool
    job: JobResponse


class ResumeJobRequest(BaseModel):
    created_by: Optional[str] = None


class ResumeJobResponse(BaseModel):
    new_job_id: str
    resumed_from_job_id: str
    job: JobResponse


class JobListResponse(BaseModel):
    total: int
    items: List[JobResponse]


def _translate(exc: Exception) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))


@router.post("/start", response_model=StartJobResponse)
async def start_job(
    payload: StartJobRequest,
    services: ConnectorServices = Depends(get_services),
):
    """Start an import job for ``kind``, or return the one already active."""
    result = await services.jobs.start(payload.kind, created_by=payload.created_by)
    logger.info(f"[sync-jobs] start kind={payload.kind.value} job={result.job_id} created={result.created}")
    return StartJobResponse(job_id=result.job_id, created=result.created, job=JobResponse(**result.job))


@router.get("/active", response_model=List[JobResponse])
async def list_active_jobs(
    kind: Optional[JobKind] = Query(None),
    services: ConnectorServices = Depends(get_services),
):
    return [JobResponse(**job) for job in services.jobs.list_active(kind)]


@router.get("/resumable", response_model=List[JobResponse])
async def list_resumable_jobs(
    kind: Optional[JobKind] = Query(None),
    services: ConnectorServices = Depends(get_services),
):
    return [JobResponse(**job) for job in services.jobs.list_resumable(kind)]


@router.get("/stats")
async def job_stats(db: Session = Depends(get_db)) -> Dict[str, Any]:
    return job_store.get_job_stats(db)


@router.delete("/cleanup")
async def cleanup_jobs(
    days: int = Query(30, ge=1, le=365),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    """Delete COMPLETED and CANCELLED jobs older than ``days``."""
    deleted = job_store.delete_old_jobs(db, days)
    return {"deleted": deleted, "days": days}


@router.get("", response_model=JobListResponse)
async def list_jobs(
    kind: Optional[JobKind] = Query(None),
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_db),
):
    items, total = job_store.list_jobs(db, kind=kind, status=status_filter, limit=limit, offset=offset)
    return JobListResponse(total=total, items=[JobResponse(**job_store.serialize_job(job)) for job in items])


@router.get("/{job_id}", response_model=JobResponse)
async def get_job_status(job_id: str, services: ConnectorServices = Depends(get_services)):
    try:
        return JobResponse(**services.jobs.status(job_id))
    except JobNotFoundError as exc:
        raise _translate(exc)


@router.post("/{job_id}/pause", response_model=JobResponse)
async def pause_job(job_id: str, services: ConnectorServices = Depends(get_services)):
    try:
        return JobResponse(**await services.jobs.pause(job_id))
    except (JobNotFoundError, JobStateError) as exc:
        raise _translate(exc)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(job_id: str, services: ConnectorServices = Depends(get_services)):
    try:
        return JobResponse(**await services.jobs.cancel(job_id))
    except (JobNotFoundError, JobStateError) as exc:
        raise _translate(exc)


@router.post("/{job_id}/resume", response_model=ResumeJobResponse)
async def resume_job(
    job_id: str,
    payload: Optional[ResumeJobRequest] = None,
    services: ConnectorServices = Depends(get_services),
):
    try:
        result = await services.jobs.resume(job_id, created_by=payload.created_by if payload else None)
    except (JobNotFoundError, JobStateError) as exc:
        raise _translate(exc)
    return ResumeJobResponse(
        new_job_id=result.job_id,
        resumed_from_job_id=job_id,
        job=JobResponse(**result.job),
    )
