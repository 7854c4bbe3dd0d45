"""
Jobs API Router
Trigger endpoint for the external cron
"""

from fastapi import APIRouter, Depends

from api.deps import get_services, verify_job_token
from api.schemas.notification import JobTriggerResponse
from jobs.tasks import ScheduledJobs, run_job
from services.container import ServiceContainer


router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_jobs(services: ServiceContainer = Depends(get_services)) -> ScheduledJobs:
    return ScheduledJobs(services)


@router.post("/{job_name}", response_model=JobTriggerResponse)
async def trigger_job(
    job_name: str,
    _token: str = Depends(verify_job_token),
    jobs: ScheduledJobs = Depends(get_jobs),
):
    """
    Run a scheduled job now

    Requires the **X-Job-Token** header. Safe to call more than once per
    window; completed patient units are skipped.
    """
    report = await run_job(jobs, job_name)
    return {"job_name": job_name, "report": report}
