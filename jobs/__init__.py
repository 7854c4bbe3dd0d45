"""
Jobs Module
Externally triggered, idempotent background work
"""

from jobs.runner import JobRunner, JobReport
from jobs.tasks import ScheduledJobs, JOB_REGISTRY, run_job


__all__ = [
    "JobRunner",
    "JobReport",
    "ScheduledJobs",
    "JOB_REGISTRY",
    "run_job",
]
