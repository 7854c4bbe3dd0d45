"""
Scheduled Jobs
Idempotent job bodies driven by an external wall-clock trigger
"""

import logging
from datetime import datetime, date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from actions.notification_dispatcher import DispatchRequest, QuietHours
from database import get_db_context
from exceptions import ValidationError
from models import (
    MedicationCommand, MedicationEvent, EventType, Frequency, MedicationStatus,
    NotificationChannel, NotificationPriority,
)
from services.container import ServiceContainer
from services.event_service import derive_dose_states
from jobs.runner import JobReport, JobRunner
from tools.notification_gateways import NotificationTrigger
from tools.time_utils import local_date, get_zone, format_hhmm


logger = logging.getLogger(__name__)

# Outcomes that close a dose slot
RESOLVED_STATUSES = ("taken", "skipped", "missed", "rescheduled")


def hour_key(now: datetime) -> str:
    return now.strftime("%Y-%m-%dT%H")


def quarter_hour_key(now: datetime) -> str:
    return f"{now.strftime('%Y-%m-%dT%H')}:{now.minute // 15 * 15:02d}"


def six_hour_key(now: datetime) -> str:
    return f"{now.strftime('%Y-%m-%d')}T{now.hour // 6 * 6:02d}"


def iso_week_key(now: datetime) -> str:
    year, week, _ = now.isocalendar()
    return f"{year}-W{week:02d}"


def previous_month_key(now: datetime) -> str:
    last_of_previous = now.date().replace(day=1) - timedelta(days=1)
    return last_of_previous.strftime("%Y-%m")


def _local_hhmm(instant: datetime, tz_name: str) -> str:
    local = instant.astimezone(get_zone(tz_name))
    return format_hhmm(local.hour * 60 + local.minute)


def _slot_cutoff(command: MedicationCommand) -> datetime:
    """Slots before creation or the last status change are not owed."""
    cutoff = command.created_at
    if command.status_changed_at and command.status_changed_at > cutoff:
        cutoff = command.status_changed_at
    return cutoff


class ScheduledJobs:
    """
    Job bodies. Each one may be redelivered for the same window without
    double-appending events or double-enqueueing notifications.
    """

    def __init__(self, services: ServiceContainer, runner: Optional[JobRunner] = None, session_factory=get_db_context):
        self.services = services
        self.session_factory = session_factory
        self.runner = runner or JobRunner(
            session_factory=session_factory,
            config=services.config,
            clock=services.clock,
        )

    # ==================== HELPERS ====================

    def _patient_ids(self, active_only: bool = False) -> List[str]:
        with self.session_factory() as db:
            query = db.query(MedicationCommand.patient_id).distinct()
            if active_only:
                query = query.filter(MedicationCommand.status == MedicationStatus.ACTIVE)
            return sorted(row[0] for row in query.all())

    def _active_commands(self, db: Session, patient_id: str) -> List[MedicationCommand]:
        return db.query(MedicationCommand).filter(
            MedicationCommand.patient_id == patient_id,
            MedicationCommand.status == MedicationStatus.ACTIVE,
        ).order_by(MedicationCommand.id).all()

    def _slots(self, db: Session, command: MedicationCommand, now: datetime, days: List[int]) -> List[datetime]:
        """Compiled slots on the given local day offsets from today."""
        tz_name = self.services.preferences.command_timezone(db, command)
        today = local_date(now, tz_name)
        slots = []
        for offset in days:
            slots.extend(self.services.events.compiled_slots(command, today + timedelta(days=offset), tz_name))
        return sorted(slots)

    def _dose_states(self, db: Session, command: MedicationCommand, start: datetime, end: datetime):
        events = db.query(MedicationEvent).filter(
            MedicationEvent.command_id == command.id,
            MedicationEvent.scheduled_for >= start,
            MedicationEvent.scheduled_for < end,
        ).all()
        return derive_dose_states(events), events

    # ==================== DOSE TRACKING ====================

    async def _generate_for_patient(self, db: Session, patient_id: str, now: datetime) -> Dict[str, Any]:
        created = 0
        for command in self._active_commands(db, patient_id):
            slots = self._slots(db, command, now, [0])
            if not slots:
                continue
            existing = {
                e.scheduled_for for e in db.query(MedicationEvent).filter(
                    MedicationEvent.command_id == command.id,
                    MedicationEvent.event_type == EventType.DOSE_SCHEDULED,
                    MedicationEvent.scheduled_for.in_(slots),
                ).all()
            }
            for slot in slots:
                if slot in existing:
                    continue
                await self.services.events.append_event(
                    db,
                    command.id,
                    EventType.DOSE_SCHEDULED,
                    event_data={"local_time": _local_hhmm(slot, self.services.preferences.command_timezone(db, command))},
                    scheduled_for=slot,
                    event_timestamp=now,
                    created_by="system",
                    trigger_source="scheduler",
                )
                created += 1
        return {"dose_scheduled": created}

    async def generate_scheduled_doses(self, now: Optional[datetime] = None) -> JobReport:
        """Append dose_scheduled for every slot of every active medication today (patient-local)."""
        now = now or self.services.clock()

        async def unit(db: Session, patient_id: str):
            return await self._generate_for_patient(db, patient_id, now)

        return await self.runner.run("generate_scheduled_doses", hour_key(now), self._patient_ids(active_only=True), unit)

    async def _missed_for_patient(self, db: Session, patient_id: str, now: datetime) -> Dict[str, Any]:
        events_service = self.services.events
        prefs = self.services.preferences.load(db, patient_id)
        missed = 0

        for command in self._active_commands(db, patient_id):
            if command.frequency == Frequency.AS_NEEDED.value:
                continue
            tz_name = self.services.preferences.command_timezone(db, command)
            cutoff = _slot_cutoff(command)
            slots = [s for s in self._slots(db, command, now, [-1, 0]) if cutoff <= s <= now]
            if not slots:
                continue

            states, _ = self._dose_states(db, command, slots[0], slots[-1] + timedelta(seconds=1))
            for slot in slots:
                state = states.get((command.id, slot))
                if state is not None and state.status in RESOLVED_STATUSES:
                    continue

                grace = events_service.grace_minutes_for(command, slot, prefs, tz_name)
                deadline = slot + timedelta(minutes=grace)
                if state is not None and state.snoozed_until and state.snoozed_until > deadline:
                    deadline = state.snoozed_until
                if deadline > now:
                    continue

                try:
                    await events_service.append_event(
                        db,
                        command.id,
                        EventType.DOSE_MISSED,
                        event_data={"reason": "grace_period_expired", "grace_minutes": grace},
                        scheduled_for=slot,
                        event_timestamp=now,
                        created_by="system",
                        trigger_source="grace_period_expired",
                    )
                except ValidationError as e:
                    logger.warning(f"Skipping missed-dose for {command.id} at {slot.isoformat()}: {e.message}")
                    continue
                missed += 1
                logger.info(f"Dose of {command.name} at {slot.isoformat()} missed past {grace} min grace")
        return {"dose_missed": missed}

    async def detect_missed_doses(self, now: Optional[datetime] = None) -> JobReport:
        """Mark slots whose grace window (or snooze) ran out with no outcome as missed."""
        now = now or self.services.clock()

        async def unit(db: Session, patient_id: str):
            return await self._missed_for_patient(db, patient_id, now)

        return await self.runner.run("detect_missed_doses", quarter_hour_key(now), self._patient_ids(active_only=True), unit)

    async def _reminders_for_patient(self, db: Session, patient_id: str, now: datetime) -> Dict[str, Any]:
        lookback = timedelta(minutes=self.services.config.REMINDER_LOOKBACK_MINUTES)
        patient_tz = self.services.preferences.patient_timezone(db, patient_id)
        enqueued = 0

        for command in self._active_commands(db, patient_id):
            reminders = command.reminders or {}
            offsets = reminders.get("minutes_before") or []
            if not reminders.get("enabled", True) or not offsets:
                continue

            tz_name = self.services.preferences.command_timezone(db, command)
            cutoff = _slot_cutoff(command)
            slots = [s for s in self._slots(db, command, now, [0, 1]) if s >= cutoff]
            if not slots:
                continue
            states, _ = self._dose_states(db, command, slots[0], slots[-1] + timedelta(seconds=1))

            channels = [NotificationChannel(c) for c in reminders.get("channels") or []] or None
            for slot in slots:
                state = states.get((command.id, slot))
                if state is not None and state.status in RESOLVED_STATUSES:
                    continue
                for minutes in offsets:
                    remind_at = slot - timedelta(minutes=minutes)
                    if not (now - lookback < remind_at <= now):
                        continue
                    request = DispatchRequest(
                        patient_id=patient_id,
                        trigger=NotificationTrigger.DOSE_REMINDER,
                        priority=NotificationPriority.NORMAL,
                        dedupe_scope=f"reminder:{command.id}:{slot.isoformat()}:{minutes}",
                        context={
                            "scheduled_time": _local_hhmm(slot, tz_name),
                            "scheduled_for_iso": slot.isoformat(),
                        },
                        command_id=command.id,
                        patient_only=True,
                        channel_override=channels,
                        quiet_hours_override=QuietHours.from_dict(reminders.get("quiet_hours")),
                    )
                    enqueued += len(await self.services.dispatcher.dispatch(db, request, patient_tz=patient_tz))
        return {"reminders_enqueued": enqueued}

    async def send_dose_reminders(self, now: Optional[datetime] = None) -> JobReport:
        """Enqueue patient reminders that came due since the last trigger."""
        now = now or self.services.clock()

        async def unit(db: Session, patient_id: str):
            return await self._reminders_for_patient(db, patient_id, now)

        window = f"{now.strftime('%Y-%m-%dT%H')}:{now.minute // 5 * 5:02d}"
        return await self.runner.run("send_dose_reminders", window, self._patient_ids(active_only=True), unit)

    # ==================== ARCHIVAL & ANALYTICS ====================

    async def daily_archival(self, now: Optional[datetime] = None) -> JobReport:
        """Close out every unsummarized patient-local day up to yesterday."""
        now = now or self.services.clock()

        async def unit(db: Session, patient_id: str):
            results = await self.services.archive.archive_pending_days(db, patient_id, now=now)
            return {
                "summaries_created": sum(1 for r in results if r.created),
                "events_archived": sum(r.archived_count for r in results),
            }

        return await self.runner.run("daily_archival", hour_key(now), self._patient_ids(), unit)

    async def pattern_detection(self, now: Optional[datetime] = None) -> JobReport:
        now = now or self.services.clock()

        async def unit(db: Session, patient_id: str):
            events = await self.services.analytics.detect_patterns(db, patient_id, now=now)
            return {"patterns_detected": len(events)}

        return await self.runner.run("pattern_detection", six_hour_key(now), self._patient_ids(active_only=True), unit)

    async def _summary_unit(
        self,
        db: Session,
        patient_id: str,
        start: date,
        end: date,
        period: str,
        window_key: str,
        trigger: NotificationTrigger,
        now: datetime,
    ) -> Dict[str, Any]:
        rollup = await self.services.analytics.compute_rollup(
            db, patient_id, start, end, period=period, persist=True, now=now
        )
        overall = rollup["overall"]
        rate = overall.get("adherence_rate")
        request = DispatchRequest(
            patient_id=patient_id,
            trigger=trigger,
            priority=NotificationPriority.LOW,
            dedupe_scope=f"{period}_summary:{window_key}:{patient_id}",
            context={
                "adherence_rate": f"{rate}%" if rate is not None else "n/a",
                "taken": overall.get("taken", 0),
                "scheduled": overall.get("scheduled", 0),
                "risk_level": rollup.get("risk_level") or "n/a",
                "window": f"{start.isoformat()} to {end.isoformat()}",
            },
        )
        tz_name = self.services.preferences.patient_timezone(db, patient_id)
        notifications = await self.services.dispatcher.dispatch(db, request, patient_tz=tz_name)
        return {"rollup_id": rollup["id"], "adherence_rate": rate, "notifications": len(notifications)}

    async def weekly_summary(self, now: Optional[datetime] = None) -> JobReport:
        """The seven patient-local days ending yesterday."""
        now = now or self.services.clock()
        window_key = iso_week_key(now)

        async def unit(db: Session, patient_id: str):
            tz_name = self.services.preferences.patient_timezone(db, patient_id)
            end = local_date(now, tz_name) - timedelta(days=1)
            start = end - timedelta(days=6)
            return await self._summary_unit(
                db, patient_id, start, end, "weekly", window_key, NotificationTrigger.WEEKLY_SUMMARY, now
            )

        return await self.runner.run("weekly_summary", window_key, self._patient_ids(), unit)

    async def monthly_summary(self, now: Optional[datetime] = None) -> JobReport:
        """The previous calendar month."""
        now = now or self.services.clock()
        window_key = previous_month_key(now)

        async def unit(db: Session, patient_id: str):
            tz_name = self.services.preferences.patient_timezone(db, patient_id)
            end = local_date(now, tz_name).replace(day=1) - timedelta(days=1)
            start = end.replace(day=1)
            return await self._summary_unit(
                db, patient_id, start, end, "monthly", window_key, NotificationTrigger.MONTHLY_SUMMARY, now
            )

        return await self.runner.run("monthly_summary", window_key, self._patient_ids(), unit)

    # ==================== NOTIFICATION QUEUE ====================

    async def process_notifications(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Recover stuck sends, then deliver whatever is due. Not patient-partitioned."""
        now = now or self.services.clock()
        with self.session_factory() as db:
            recovered = await self.services.dispatcher.recover_stuck(db, now=now)
            stats = await self.services.dispatcher.process_due(db, now=now)
        return {"recovered": recovered, **stats}


# name -> (method, cron in UTC)
JOB_REGISTRY: Dict[str, tuple] = {
    "daily_archival": ("daily_archival", "*/15 * * * *"),
    "pattern_detection": ("pattern_detection", "0 */6 * * *"),
    "weekly_summary": ("weekly_summary", "0 8 * * 0"),
    "monthly_summary": ("monthly_summary", "0 8 1 * *"),
    "generate_scheduled_doses": ("generate_scheduled_doses", "0 * * * *"),
    "detect_missed_doses": ("detect_missed_doses", "*/15 * * * *"),
    "send_dose_reminders": ("send_dose_reminders", "*/5 * * * *"),
    "process_notifications": ("process_notifications", "* * * * *"),
}


async def run_job(jobs: ScheduledJobs, job_name: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Dispatch a job by registry name; returns a JSON-friendly report."""
    if job_name not in JOB_REGISTRY:
        raise ValidationError.for_field("job_name", f"Unknown job '{job_name}'")
    method_name, _ = JOB_REGISTRY[job_name]
    result = await getattr(jobs, method_name)(now=now)
    if isinstance(result, JobReport):
        return result.to_dict()
    return result
