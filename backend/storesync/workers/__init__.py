"""
Background workers for the store connector.

Workers:
- job_cleanup_worker: deletes finished sync jobs past the retention period
"""

from storesync.workers.job_cleanup_worker import cleanup_old_jobs, run_job_cleanup_worker_loop
