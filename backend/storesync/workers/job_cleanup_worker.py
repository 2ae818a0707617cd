"""
Sync Job Cleanup Worker

Deletes COMPLETED and CANCELLED sync jobs older than the retention period
(SYNC_JOB_RETENTION_DAYS) once per SYNC_CLEANUP_INTERVAL_SECONDS.
"""
import asyncio
from datetime import datetime, timezone

from storesync.config import settings
from storesync.models_sqlalchemy import SessionLocal
from storesync.services.sync_workers.jobs import delete_old_jobs
from storesync.utils.logger import logger


def cleanup_old_jobs(session_factory=SessionLocal, retention_days=None):
    db = session_factory()
    try:
        deleted = delete_old_jobs(db, retention_days)
        return {
            "status": "completed",
            "deleted": deleted,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    except Exception as e:
        db.rollback()
        logger.error(f"[job-cleanup-worker] Exception: {e}", exc_info=True)
        return {
            "status": "error",
            "error": str(e),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        db.close()


async def run_job_cleanup_worker_loop(session_factory=SessionLocal):
    """Run the cleanup once per interval until cancelled."""
    logger.info("Sync job cleanup worker loop started")

    while True:
        result = cleanup_old_jobs(session_factory)
        logger.info(f"Sync job cleanup cycle completed: {result}")
        await asyncio.sleep(settings.SYNC_CLEANUP_INTERVAL_SECONDS)


if __name__ == "__main__":
    asyncio.run(run_job_cleanup_worker_loop())
