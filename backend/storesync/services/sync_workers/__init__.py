"""Resumable sync job services.

This package holds the job persistence helpers and the controller that runs
paginated imports from the remote store as pausable, cancellable and
resumable jobs.

Key responsibilities:
- Keep at most one active (RUNNING or PAUSED) job per entity kind.
- Persist page-level progress so a resumed job never repeats finished pages.
- Keep a bounded per-job error log for the admin UI.
- Drop finished jobs after the retention period.
"""

from .jobs import JobNotFoundError, JobStateError
from .job_controller import JobController, StartResult
