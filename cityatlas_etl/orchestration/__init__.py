"""
Batch Orchestration Module
"""
from .scheduler import EtlScheduler, ScheduledJob
from .jobs import EtlJobs, JobResult, JobStatus, schedule_jobs

__all__ = [
    "EtlScheduler",
    "ScheduledJob",
    "EtlJobs",
    "JobResult",
    "JobStatus",
    "schedule_jobs",
]
