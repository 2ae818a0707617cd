from __future__ import annotations

import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text

from storesync.models_sqlalchemy import Base
from storesync.models_sqlalchemy.types import JSONType


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, enum.Enum):
    CUSTOMERS = "CUSTOMERS"
    PRODUCTS = "PRODUCTS"
    ORDERS = "ORDERS"


class JobStatus(str, enum.Enum):
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ACTIVE_JOB_STATUSES = (JobStatus.RUNNING.value, JobStatus.PAUSED.value)
RESUMABLE_JOB_STATUSES = (JobStatus.PAUSED.value, JobStatus.FAILED.value)


class SyncDirection(str, enum.Enum):
    TO_PLATFORM = "TO_PLATFORM"
    FROM_PLATFORM = "FROM_PLATFORM"


class SyncAction(str, enum.Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    IMPORT = "IMPORT"
    EXPORT = "EXPORT"


class SyncOutcome(str, enum.Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING = "PENDING"


class SyncJob(Base):
    """Resumable paginated import of one entity kind.

    Progress is written after every page so a paused or failed job can be
    continued by a new job that points back at it via ``resumed_from_job_id``.
    Only one job per kind should be RUNNING or PAUSED at a time; this is
    checked before insert, not enforced by a constraint.
    """

    __tablename__ = "sync_jobs"

    id = Column(String(36), primary_key=True)
    kind = Column(String(32), nullable=False, index=True)
    status = Column(String(32), nullable=False, index=True)

    current_page = Column(Integer, nullable=False, default=1)
    total_pages = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=False, default=0)
    imported_count = Column(Integer, nullable=False, default=0)
    updated_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    # [{"page": 3, "message": "...", "timestamp": "..."}], oldest first, bounded
    error_log = Column(JSONType, nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc)
    paused_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    resumed_from_job_id = Column(String(36), ForeignKey("sync_jobs.id", ondelete="SET NULL"), nullable=True)
    created_by = Column(String(255), nullable=True)

    result_json = Column(JSONType, nullable=True)
    failure_reason = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc)


class SyncLogEntry(Base):
    """Append-only audit row for a single sync operation against the remote store."""

    __tablename__ = "sync_log_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    direction = Column(String(16), nullable=False, index=True)
    entity_type = Column(String(32), nullable=False, index=True)
    entity_id = Column(String(64), nullable=True, index=True)
    action = Column(String(16), nullable=False)
    outcome = Column(String(16), nullable=False, index=True)

    request_snapshot = Column(JSONType, nullable=True)
    response_snapshot = Column(JSONType, nullable=True)
    error = Column(Text, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, index=True)
