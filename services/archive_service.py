"""
Archive Service
Closes out patient-local calendar days into DailySummary documents
"""

import logging
from dataclasses import dataclass
from datetime import datetime, date, timedelta
from typing import List, Optional

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import DailySummary, MedicationCommand, MedicationEvent
from services.analytics_service import compute_metrics
from services.event_service import derive_dose_states
from services.preference_service import PreferenceService
from tools.time_utils import Clock, utcnow, day_bounds, local_date


logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    summary: DailySummary
    created: bool
    archived_count: int = 0


def summary_id(patient_id: str, day: date) -> str:
    return f"{patient_id}_{day.isoformat()}"


class ArchiveService:
    """
    Daily archiver. Archival flips archive status only; events are never deleted.
    """

    def __init__(self, preference_service: PreferenceService, config=settings, clock: Clock = utcnow):
        self.preferences = preference_service
        self.config = config
        self.clock = clock

    def _day_events(self, db: Session, patient_id: str, start: datetime, end: datetime) -> List[MedicationEvent]:
        """Unarchived events whose dose time (or, lacking one, timestamp) falls in [start, end)."""
        return db.query(MedicationEvent).filter(
            MedicationEvent.patient_id == patient_id,
            MedicationEvent.is_archived.is_(False),
            or_(
                and_(MedicationEvent.scheduled_for.isnot(None),
                     MedicationEvent.scheduled_for >= start,
                     MedicationEvent.scheduled_for < end),
                and_(MedicationEvent.scheduled_for.is_(None),
                     MedicationEvent.event_timestamp >= start,
                     MedicationEvent.event_timestamp < end),
            ),
        ).order_by(MedicationEvent.command_id, MedicationEvent.event_version).all()

    async def archive_day(self, db: Session, patient_id: str, day: date) -> ArchiveResult:
        """
        Summarize one local day and mark its events archived.
        Re-running for a day that already has a summary is a no-op.
        """
        existing = db.get(DailySummary, summary_id(patient_id, day))
        if existing is not None:
            logger.debug(f"Daily summary {existing.id} already exists, skipping")
            return ArchiveResult(summary=existing, created=False)

        tz_name = self.preferences.patient_timezone(db, patient_id)
        start, end = day_bounds(day, tz_name)
        events = self._day_events(db, patient_id, start, end)
        states = list(derive_dose_states(events).values())
        metrics = compute_metrics(states, tz_name, [day])

        names = {}
        command_ids = sorted({s.command_id for s in states})
        if command_ids:
            for command in db.query(MedicationCommand).filter(MedicationCommand.id.in_(command_ids)).all():
                names[command.id] = command.name

        breakdown = {}
        for cmd_id in command_ids:
            cmd_metrics = compute_metrics([s for s in states if s.command_id == cmd_id], tz_name, [day])
            breakdown[cmd_id] = {
                "name": names.get(cmd_id),
                "scheduled": cmd_metrics.scheduled,
                "taken": cmd_metrics.taken,
                "missed": cmd_metrics.missed,
                "skipped": cmd_metrics.skipped,
                "adherence_rate": cmd_metrics.adherence_rate,
            }

        now = self.clock()
        summary = DailySummary(
            id=summary_id(patient_id, day),
            patient_id=patient_id,
            summary_date=day.isoformat(),
            timezone=tz_name,
            total_scheduled=metrics.scheduled,
            taken=metrics.taken,
            partial=metrics.partial,
            missed=metrics.missed,
            skipped=metrics.skipped,
            snoozed=metrics.snoozed,
            adherence_rate=metrics.adherence_rate,
            on_time_rate=metrics.on_time_rate,
            average_delay_minutes=metrics.average_delay_minutes,
            medication_breakdown=breakdown,
            archived_event_ids=[e.id for e in events],
            corrections=[],
            created_at=now,
        )

        try:
            db.add(summary)
            db.flush()
            batch_size = self.config.ARCHIVE_BATCH_SIZE
            for offset in range(0, len(events), batch_size):
                for event in events[offset:offset + batch_size]:
                    event.is_archived = True
                    event.archived_at = now
                    event.archive_date = day.isoformat()
                    event.daily_summary_id = summary.id
                db.flush()
            db.commit()
        except IntegrityError:
            # Another run created the same summary first
            db.rollback()
            existing = db.get(DailySummary, summary_id(patient_id, day))
            if existing is None:
                raise
            return ArchiveResult(summary=existing, created=False)

        logger.info(
            f"Archived {len(events)} events for patient {patient_id} on {day} "
            f"(adherence {metrics.adherence_rate}%)"
        )
        return ArchiveResult(summary=summary, created=True, archived_count=len(events))

    async def archive_pending_days(self, db: Session, patient_id: str, now: Optional[datetime] = None) -> List[ArchiveResult]:
        """
        Archive every unsummarized local day up to yesterday, oldest first,
        so a missed trigger is caught up on the next run.
        """
        now = now or self.clock()
        tz_name = self.preferences.patient_timezone(db, patient_id)
        yesterday = local_date(now, tz_name) - timedelta(days=1)

        oldest = db.query(MedicationEvent).filter(
            MedicationEvent.patient_id == patient_id,
            MedicationEvent.is_archived.is_(False),
        ).order_by(func.coalesce(MedicationEvent.scheduled_for, MedicationEvent.event_timestamp)).first()

        first_day = yesterday
        if oldest is not None:
            first_day = min(local_date(oldest.scheduled_for or oldest.event_timestamp, tz_name), yesterday)

        results = []
        day = first_day
        while day <= yesterday:
            results.append(await self.archive_day(db, patient_id, day))
            day += timedelta(days=1)
        return results

    async def list_summaries(
        self,
        db: Session,
        patient_id: str,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> List[DailySummary]:
        query = db.query(DailySummary).filter(DailySummary.patient_id == patient_id)
        if start:
            query = query.filter(DailySummary.summary_date >= start.isoformat())
        if end:
            query = query.filter(DailySummary.summary_date <= end.isoformat())
        return query.order_by(DailySummary.summary_date).all()
