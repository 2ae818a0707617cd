from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.orm import Session

from storesync.config import settings
from storesync.models_sqlalchemy.sync_jobs import (
    ACTIVE_JOB_STATUSES,
    RESUMABLE_JOB_STATUSES,
    JobKind,
    JobStatus,
    SyncJob,
)
from storesync.utils.logger import logger


TERMINAL_STATUSES = (JobStatus.COMPLETED.value, JobStatus.CANCELLED.value)
PROGRESS_FIELDS = (
    "current_page",
    "total_pages",
    "total_items",
    "imported_count",
    "updated_count",
    "error_count",
)


class JobNotFoundError(LookupError):
    pass


class JobStateError(RuntimeError):
    """Requested transition is not allowed from the job's current status."""


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_job_by_id(db: Session, job_id: str) -> Optional[SyncJob]:
    return db.query(SyncJob).filter(SyncJob.id == job_id).first()


def require_job(db: Session, job_id: str) -> SyncJob:
    job = get_job_by_id(db, job_id)
    if job is None:
        raise JobNotFoundError(f"Sync job {job_id} not found")
    return job


def get_active_job(db: Session, kind: JobKind) -> Optional[SyncJob]:
    """Return the RUNNING or PAUSED job for ``kind``, newest first."""

    return (
        db.query(SyncJob)
        .filter(
            SyncJob.kind == JobKind(kind).value,
            SyncJob.status.in_(ACTIVE_JOB_STATUSES),
        )
        .order_by(SyncJob.created_at.desc())
        .first()
    )


def create_job(
    db: Session,
    kind: JobKind,
    *,
    created_by: Optional[str] = None,
    seed: Optional[Dict[str, Any]] = None,
    resumed_from_job_id: Optional[str] = None,
) -> SyncJob:
    job = SyncJob(
        id=str(uuid4()),
        kind=JobKind(kind).value,
        status=JobStatus.RUNNING.value,
        current_page=1,
        total_pages=0,
        total_items=0,
        imported_count=0,
        updated_count=0,
        error_count=0,
        error_log=[],
        started_at=_now_utc(),
        created_by=created_by,
        resumed_from_job_id=resumed_from_job_id,
    )
    for key, value in (seed or {}).items():
        setattr(job, key, value)
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info(f"[jobs] Created sync job id={job.id} kind={job.kind} page={job.current_page}")
    return job


def update_job_progress(db: Session, job: SyncJob, **progress: Any) -> SyncJob:
    for key, value in progress.items():
        if key not in PROGRESS_FIELDS:
            raise ValueError(f"Unknown progress field {key!r}")
        setattr(job, key, value)
    db.commit()
    return job


def append_job_errors(
    db: Session,
    job: SyncJob,
    *,
    page: int,
    messages: List[str],
    limit: Optional[int] = None,
) -> SyncJob:
    """Append to the job's error log, dropping the oldest entries beyond ``limit``."""

    limit = limit if limit is not None else settings.SYNC_ERROR_LOG_LIMIT
    entries = list(job.error_log or [])
    timestamp = _now_utc().isoformat()
    entries.extend({"page": page, "message": message, "timestamp": timestamp} for message in messages)
    if len(entries) > limit:
        entries = entries[-limit:]
    # Reassign so SQLAlchemy sees the JSON column as dirty.
    job.error_log = entries
    db.commit()
    return job


def set_job_status(
    db: Session,
    job: SyncJob,
    status: JobStatus,
    *,
    failure_reason: Optional[str] = None,
    result: Optional[Dict[str, Any]] = None,
) -> SyncJob:
    status = JobStatus(status)
    job.status = status.value
    now = _now_utc()
    if status is JobStatus.PAUSED:
        job.paused_at = now
    elif status in (JobStatus.COMPLETED, JobStatus.CANCELLED, JobStatus.FAILED):
        job.completed_at = now
    if failure_reason is not None:
        job.failure_reason = failure_reason
    if result is not None:
        job.result_json = result
    db.commit()
    logger.info(f"[jobs] Sync job id={job.id} kind={job.kind} -> {job.status}")
    return job


def list_jobs(
    db: Session,
    *,
    kind: Optional[JobKind] = None,
    status: Optional[JobStatus] = None,
    limit: int = 20,
    offset: int = 0,
) -> Tuple[List[SyncJob], int]:
    query = db.query(SyncJob)
    if kind:
        query = query.filter(SyncJob.kind == JobKind(kind).value)
    if status:
        query = query.filter(SyncJob.status == JobStatus(status).value)
    total = query.count()
    jobs = query.order_by(SyncJob.created_at.desc()).offset(offset).limit(limit).all()
    return jobs, total


def get_resumable_jobs(db: Session, kind: Optional[JobKind] = None) -> List[SyncJob]:
    query = db.query(SyncJob).filter(SyncJob.status.in_(RESUMABLE_JOB_STATUSES))
    if kind:
        query = query.filter(SyncJob.kind == JobKind(kind).value)
    return query.order_by(SyncJob.created_at.desc()).all()


def create_resume_job(db: Session, parent_id: str, *, created_by: Optional[str] = None) -> SyncJob:
    """Spawn a RUNNING job carrying the parent's progress and retire the parent.

    The parent is marked COMPLETED so the stream never has two active records.
    """

    parent = require_job(db, parent_id)
    if parent.status not in RESUMABLE_JOB_STATUSES:
        raise JobStateError(f"Job {parent_id} is {parent.status}; only PAUSED or FAILED jobs can be resumed")

    seed = {field: getattr(parent, field) for field in PROGRESS_FIELDS}
    seed["error_log"] = list(parent.error_log or [])

    parent.status = JobStatus.COMPLETED.value
    parent.completed_at = _now_utc()
    db.flush()

    job = create_job(
        db,
        JobKind(parent.kind),
        created_by=created_by or parent.created_by,
        seed=seed,
        resumed_from_job_id=parent.id,
    )
    logger.info(f"[jobs] Resumed job {parent.id} as {job.id} from page {job.current_page}")
    return job


def delete_old_jobs(db: Session, retention_days: Optional[int] = None) -> int:
    """Delete COMPLETED and CANCELLED jobs older than ``retention_days``."""

    retention_days = retention_days if retention_days is not None else settings.SYNC_JOB_RETENTION_DAYS
    cutoff = _now_utc() - timedelta(days=retention_days)
    old_jobs = (
        db.query(SyncJob)
        .filter(SyncJob.status.in_(TERMINAL_STATUSES), SyncJob.created_at < cutoff)
        .all()
    )
    old_ids = {job.id for job in old_jobs}
    if not old_ids:
        return 0
    # Detach resume chains that point at rows about to disappear.
    db.query(SyncJob).filter(SyncJob.resumed_from_job_id.in_(old_ids)).update(
        {SyncJob.resumed_from_job_id: None}, synchronize_session=False
    )
    for job in old_jobs:
        db.delete(job)
    db.commit()
    logger.info(f"[jobs] Deleted {len(old_ids)} sync jobs older than {retention_days} days")
    return len(old_ids)


def get_job_stats(db: Session) -> Dict[str, Any]:
    by_status = {status.value: 0 for status in JobStatus}
    for status, count in db.query(SyncJob.status, func.count(SyncJob.id)).group_by(SyncJob.status).all():
        by_status[status] = count
    by_kind = {kind.value: 0 for kind in JobKind}
    for kind, count in db.query(SyncJob.kind, func.count(SyncJob.id)).group_by(SyncJob.kind).all():
        by_kind[kind] = count
    return {"total": sum(by_status.values()), "by_status": by_status, "by_kind": by_kind}


def progress_percent(job: SyncJob) -> int:
    if not job.total_pages:
        return 0
    return min(100, round(job.current_page / job.total_pages * 100))


def serialize_job(job: SyncJob) -> Dict[str, Any]:
    terminal = job.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value, JobStatus.CANCELLED.value)
    return {
        "id": job.id,
        "kind": job.kind,
        "status": job.status,
        "progress": {
            "current_page": job.current_page,
            "total_pages": job.total_pages,
            "total_items": job.total_items,
            "imported": job.imported_count,
            "updated": job.updated_count,
            "errors": job.error_count,
            "percent": progress_percent(job),
        },
        "error_log": list(job.error_log or []),
        "result": job.result_json if terminal else None,
        "failure_reason": job.failure_reason,
        "resumed_from_job_id": job.resumed_from_job_id,
        "created_by": job.created_by,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "paused_at": job.paused_at.isoformat() if job.paused_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }
