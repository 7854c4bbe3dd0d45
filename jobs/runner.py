"""
Job Runner
Per-patient isolated, checkpointed and time-budgeted execution of scheduled jobs
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from database import get_db_context
from models import JobRun, JobRunStatus
from tools.time_utils import Clock, utcnow


logger = logging.getLogger(__name__)

PatientUnit = Callable[[Session, str], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class JobReport:
    """Outcome of one job trigger"""
    job_name: str
    window_key: str
    completed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    deferred: List[str] = field(default_factory=list)
    results: Dict[str, Any] = field(default_factory=dict)

    @property
    def budget_exhausted(self) -> bool:
        return bool(self.deferred)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_name": self.job_name,
            "window_key": self.window_key,
            "completed": len(self.completed),
            "skipped": len(self.skipped),
            "failed": self.failed,
            "deferred": len(self.deferred),
            "budget_exhausted": self.budget_exhausted,
            "results": self.results,
        }


class JobRunner:
    """
    Runs one unit of work per patient.

    A unit that completed for (job, window, patient) is never repeated,
    so redelivered triggers are harmless. A unit that fails is logged,
    recorded in job_runs and retried on the next trigger for the window;
    it never stops the other patients. Once the time budget is spent the
    remaining patients are left for the next trigger.
    """

    def __init__(
        self,
        session_factory=get_db_context,
        config=settings,
        clock: Clock = utcnow,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.session_factory = session_factory
        self.config = config
        self.clock = clock
        self.monotonic = monotonic

    def _claim(self, db: Session, job_name: str, window_key: str, patient_id: str) -> Optional[JobRun]:
        """Mark the unit running; None when it already completed."""
        run = db.query(JobRun).filter(
            JobRun.job_name == job_name,
            JobRun.window_key == window_key,
            JobRun.patient_id == patient_id,
        ).first()
        if run is not None and run.status == JobRunStatus.COMPLETED:
            return None
        if run is None:
            run = JobRun(job_name=job_name, window_key=window_key, patient_id=patient_id, attempts=0)
            db.add(run)
        run.status = JobRunStatus.RUNNING
        run.attempts = (run.attempts or 0) + 1
        run.started_at = self.clock()
        run.error = None
        db.commit()
        return run

    def _finish(
        self,
        db: Session,
        job_name: str,
        window_key: str,
        patient_id: str,
        status: JobRunStatus,
        result: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        run = db.query(JobRun).filter(
            JobRun.job_name == job_name,
            JobRun.window_key == window_key,
            JobRun.patient_id == patient_id,
        ).first()
        if run is None:
            return
        run.status = status
        run.result = result or {}
        run.error = error
        run.finished_at = self.clock()
        db.commit()

    async def run(
        self,
        job_name: str,
        window_key: str,
        patient_ids: Iterable[str],
        unit: PatientUnit,
    ) -> JobReport:
        report = JobReport(job_name=job_name, window_key=window_key)
        budget = self.config.JOB_TIME_BUDGET_SECONDS
        started = self.monotonic()
        pending = list(patient_ids)

        logger.info(f"Job {job_name} [{window_key}] starting for {len(pending)} patient(s)")

        for index, patient_id in enumerate(pending):
            if self.monotonic() - started >= budget:
                report.deferred = pending[index:]
                logger.warning(
                    f"Job {job_name} [{window_key}] hit its {budget}s budget; "
                    f"{len(report.deferred)} patient(s) left for the next run"
                )
                break

            try:
                with self.session_factory() as db:
                    claimed = self._claim(db, job_name, window_key, patient_id)
            except IntegrityError:
                # Another worker created the checkpoint first
                logger.info(f"Job {job_name} [{window_key}] unit for {patient_id} claimed elsewhere")
                report.skipped.append(patient_id)
                continue

            if claimed is None:
                report.skipped.append(patient_id)
                continue

            try:
                with self.session_factory() as db:
                    result = await unit(db, patient_id) or {}
                    self._finish(db, job_name, window_key, patient_id, JobRunStatus.COMPLETED, result=result)
            except Exception as e:
                logger.exception(f"Job {job_name} [{window_key}] failed for patient {patient_id}")
                report.failed[patient_id] = str(e)
                with self.session_factory() as db:
                    self._finish(db, job_name, window_key, patient_id, JobRunStatus.FAILED, error=str(e))
                continue

            report.completed.append(patient_id)
            report.results[patient_id] = result

        logger.info(
            f"Job {job_name} [{window_key}] done: {len(report.completed)} completed, "
            f"{len(report.skipped)} skipped, {len(report.failed)} failed, {len(report.deferred)} deferred"
        )
        return report
