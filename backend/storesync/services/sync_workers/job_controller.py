from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from sqlalchemy.orm import Session, sessionmaker

from storesync.config import settings
from storesync.models_sqlalchemy.sync_jobs import ACTIVE_JOB_STATUSES, JobKind, JobStatus, SyncJob
from storesync.services.platform_client import PlatformAuthError, PlatformClient, PlatformError
from storesync.services.sync_orchestrator import JOB_KIND_STAGES, STAGE_ENDPOINTS, SyncOrchestrator
from storesync.services.sync_workers import jobs
from storesync.utils.logger import logger


@dataclass
class StartResult:
    job: Dict[str, Any]
    created: bool

    @property
    def job_id(self) -> str:
        return self.job["id"]


class JobController:
    """Runs paginated imports as pausable, cancellable, resumable jobs.

    Each running job owns one asyncio task. The task is registered in
    ``_handles`` while the job may keep going; pause and cancel remove it, and
    the page loop checks for it before every page. A page already in flight
    always finishes and its progress is saved.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        client: PlatformClient,
        *,
        page_size: Optional[int] = None,
        page_delay_seconds: Optional[float] = None,
        error_retry_delay_seconds: Optional[float] = None,
        max_page_failures: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._session_factory = session_factory
        self.client = client
        self.page_size = page_size or settings.SYNC_PAGE_SIZE
        self.page_delay_seconds = (
            page_delay_seconds if page_delay_seconds is not None else settings.SYNC_PAGE_DELAY_SECONDS
        )
        self.error_retry_delay_seconds = (
            error_retry_delay_seconds
            if error_retry_delay_seconds is not None
            else settings.SYNC_ERROR_RETRY_DELAY_SECONDS
        )
        self.max_page_failures = max_page_failures or settings.SYNC_MAX_PAGE_FAILURES
        self._sleep = sleep
        # job_id -> task, only while the job is allowed to continue
        self._handles: Dict[str, asyncio.Task] = {}
        # every task we spawned and that has not finished yet
        self._tasks: Dict[str, asyncio.Task] = {}
        self._started: Set[str] = set()

    def _session(self) -> Session:
        return self._session_factory()

    # ------------------------------------------------------------------
    # Control surface
    # ------------------------------------------------------------------

    async def start(self, kind: JobKind, *, created_by: Optional[str] = None) -> StartResult:
        kind = JobKind(kind)
        db = self._session()
        try:
            existing = jobs.get_active_job(db, kind)
            if existing is not None:
                logger.info(f"[jobs] {kind.value} job already active id={existing.id} status={existing.status}")
                return StartResult(jobs.serialize_job(existing), created=False)

            job = jobs.create_job(db, kind, created_by=created_by)
            endpoint = STAGE_ENDPOINTS[JOB_KIND_STAGES[kind]]
            try:
                total_items = await self.client.count(endpoint)
            except PlatformAuthError as exc:
                jobs.set_job_status(db, job, JobStatus.FAILED, failure_reason=exc.message)
                return StartResult(jobs.serialize_job(job), created=True)
            except PlatformError as exc:
                logger.warning(f"[jobs] Could not count {endpoint}: {exc.message}; progress will be estimated")
                total_items = 0

            jobs.update_job_progress(
                db,
                job,
                total_items=total_items,
                total_pages=math.ceil(total_items / self.page_size) if total_items else 0,
            )
            self._launch(job.id)
            return StartResult(jobs.serialize_job(job), created=True)
        finally:
            db.close()

    async def pause(self, job_id: str) -> Dict[str, Any]:
        db = self._session()
        try:
            job = jobs.require_job(db, job_id)
            if job.status != JobStatus.RUNNING.value:
                raise jobs.JobStateError(f"Job {job_id} is {job.status}; only RUNNING jobs can be paused")
            jobs.set_job_status(db, job, JobStatus.PAUSED)
            self._handles.pop(job_id, None)
            return jobs.serialize_job(job)
        finally:
            db.close()

    async def cancel(self, job_id: str) -> Dict[str, Any]:
        db = self._session()
        try:
            job = jobs.require_job(db, job_id)
            if job.status not in ACTIVE_JOB_STATUSES:
                raise jobs.JobStateError(f"Job {job_id} is {job.status}; only active jobs can be cancelled")
            jobs.set_job_status(db, job, JobStatus.CANCELLED)
            task = self._handles.pop(job_id, None)
            if task is not None and job_id not in self._started:
                # Still queued: nothing has been fetched yet, drop it outright.
                task.cancel()
            return jobs.serialize_job(job)
        finally:
            db.close()

    async def resume(self, job_id: str, *, created_by: Optional[str] = None) -> StartResult:
        if job_id in self._tasks and job_id not in self._handles:
            # Released by pause but still finishing its in-flight page.
            await self.wait(job_id)
        db = self._session()
        try:
            parent = jobs.require_job(db, job_id)
            active = jobs.get_active_job(db, JobKind(parent.kind))
            if active is not None and active.id != parent.id:
                raise jobs.JobStateError(f"Another {parent.kind} job is already active: {active.id}")
            job = jobs.create_resume_job(db, job_id, created_by=created_by)
            self._launch(job.id)
            return StartResult(jobs.serialize_job(job), created=True)
        finally:
            db.close()

    def status(self, job_id: str) -> Dict[str, Any]:
        db = self._session()
        try:
            data = jobs.serialize_job(jobs.require_job(db, job_id))
            data["has_handle"] = job_id in self._handles
            return data
        finally:
            db.close()

    def list_active(self, kind: Optional[JobKind] = None) -> List[Dict[str, Any]]:
        db = self._session()
        try:
            query = db.query(SyncJob).filter(SyncJob.status.in_(ACTIVE_JOB_STATUSES))
            if kind:
                query = query.filter(SyncJob.kind == JobKind(kind).value)
            return [jobs.serialize_job(job) for job in query.order_by(SyncJob.created_at.desc()).all()]
        finally:
            db.close()

    def list_resumable(self, kind: Optional[JobKind] = None) -> List[Dict[str, Any]]:
        db = self._session()
        try:
            return [jobs.serialize_job(job) for job in jobs.get_resumable_jobs(db, kind)]
        finally:
            db.close()

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def recover_orphaned_jobs(self) -> int:
        """Mark RUNNING jobs without a live task (left over from a crash) as PAUSED."""
        db = self._session()
        try:
            orphaned = (
                db.query(SyncJob)
                .filter(SyncJob.status == JobStatus.RUNNING.value, SyncJob.id.notin_(list(self._tasks) or [""]))
                .all()
            )
            for job in orphaned:
                jobs.set_job_status(db, job, JobStatus.PAUSED)
            if orphaned:
                logger.warning(f"[jobs] Paused {len(orphaned)} orphaned sync jobs")
            return len(orphaned)
        finally:
            db.close()

    async def shutdown(self) -> None:
        """Stop all tasks. Jobs that were running are left PAUSED and can be resumed."""
        tasks = dict(self._tasks)
        self._handles.clear()
        for task in tasks.values():
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks.values(), return_exceptions=True)
        db = self._session()
        try:
            for job_id in tasks:
                job = jobs.get_job_by_id(db, job_id)
                if job is not None and job.status == JobStatus.RUNNING.value:
                    jobs.set_job_status(db, job, JobStatus.PAUSED)
        finally:
            db.close()

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _launch(self, job_id: str) -> None:
        task = asyncio.create_task(self._run_job(job_id), name=f"sync-job-{job_id}")
        self._handles[job_id] = task
        self._tasks[job_id] = task
        task.add_done_callback(lambda t, jid=job_id: self._on_done(jid, t))

    def _on_done(self, job_id: str, task: asyncio.Task) -> None:
        if self._handles.get(job_id) is task:
            self._handles.pop(job_id, None)
        if self._tasks.get(job_id) is task:
            self._tasks.pop(job_id, None)
        self._started.discard(job_id)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"[jobs] Job task {job_id} crashed: {task.exception()!r}")

    async def _run_job(self, job_id: str) -> None:
        self._started.add(job_id)
        db = self._session()
        try:
            job = jobs.require_job(db, job_id)
            kind = JobKind(job.kind)
            orchestrator = SyncOrchestrator(db, self.client, page_delay_seconds=0)
            page = job.current_page or 1
            failures = 0
            logger.info(f"[jobs] Job {job_id} ({kind.value}) running from page {page}")

            while True:
                if job_id not in self._handles:
                    self._stop_released(db, job_id)
                    return

                try:
                    result = await orchestrator.import_page(kind, page, self.page_size)
                except PlatformAuthError as exc:
                    db.rollback()
                    job = jobs.require_job(db, job_id)
                    jobs.append_job_errors(db, job, page=page, messages=[exc.message])
                    jobs.set_job_status(db, job, JobStatus.FAILED, failure_reason=exc.message)
                    return
                except Exception as exc:
                    db.rollback()
                    failures += 1
                    job = jobs.require_job(db, job_id)
                    logger.warning(f"[jobs] Job {job_id} page {page} failed (attempt {failures}): {exc}")
                    jobs.append_job_errors(db, job, page=page, messages=[f"{type(exc).__name__}: {exc}"])
                    if failures >= self.max_page_failures:
                        jobs.set_job_status(
                            db,
                            job,
                            JobStatus.FAILED,
                            failure_reason=f"Page {page} failed {failures} times: {exc}",
                        )
                        return
                    await self._sleep(self.error_retry_delay_seconds)
                    continue

                failures = 0
                # Pause/cancel may have changed the row from another session.
                db.refresh(job)
                if result.messages:
                    jobs.append_job_errors(db, job, page=page, messages=result.messages)

                progress = {
                    "imported_count": job.imported_count + result.imported,
                    "updated_count": job.updated_count + result.updated,
                    "error_count": job.error_count + result.errors,
                }
                if result.total_items is not None:
                    progress["total_items"] = result.total_items
                if result.total_pages is not None:
                    progress["total_pages"] = result.total_pages

                if not result.has_more:
                    progress["current_page"] = page
                    jobs.update_job_progress(db, job, **progress)
                    if job.status in (JobStatus.RUNNING.value, JobStatus.PAUSED.value):
                        # A pause during the last page leaves nothing to resume.
                        jobs.set_job_status(db, job, JobStatus.COMPLETED, result=self._summary(job, page))
                    logger.info(
                        f"[jobs] Job {job_id} finished: imported={job.imported_count} "
                        f"updated={job.updated_count} errors={job.error_count}"
                    )
                    return

                page += 1
                progress["current_page"] = page
                jobs.update_job_progress(db, job, **progress)
                logger.info(
                    "[jobs] Job %s page %s/%s done imported=%s updated=%s errors=%s",
                    job_id,
                    page - 1,
                    job.total_pages,
                    job.imported_count,
                    job.updated_count,
                    job.error_count,
                )
                await self._sleep(self.page_delay_seconds)
        finally:
            db.close()

    def _stop_released(self, db: Session, job_id: str) -> None:
        db.expire_all()
        job = jobs.require_job(db, job_id)
        if job.status == JobStatus.CANCELLED.value:
            logger.info(f"[jobs] Job {job_id} cancelled at page {job.current_page}")
        elif job.status == JobStatus.RUNNING.value:
            jobs.set_job_status(db, job, JobStatus.PAUSED)
        else:
            logger.info(f"[jobs] Job {job_id} stopped with status {job.status} at page {job.current_page}")

    @staticmethod
    def _summary(job: SyncJob, last_page: int) -> Dict[str, Any]:
        return {
            "imported": job.imported_count,
            "updated": job.updated_count,
            "errors": job.error_count,
            "pages": last_page,
            "total_items": job.total_items,
        }
