"""
Job scheduling for the revenue pipeline.
"""

from .job_scheduler import JobRunRecord, JobScheduler, JobTimer, run_with_retry

__all__ = [
    "JobRunRecord",
    "JobScheduler",
    "JobTimer",
    "run_with_retry",
]
