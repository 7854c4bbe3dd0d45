"""
Event Service
Append-only medication event log: versioned appends, classification, undo and replay
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, date, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from exceptions import ValidationError, NotFoundError, ConflictError
from models import (
    MedicationCommand, MedicationEvent, DailySummary, EventType, MedicationStatus,
    Frequency, DOSE_EVENT_TYPES, STATUS_EVENT_TYPES,
)
from services.preference_service import PreferenceService
from tools.event_classifier import classify_timing, classify_dose
from tools.grace_period import GracePolicy, resolve_grace_minutes
from tools.schedule_compiler import TimePreferenceSet
from tools.time_utils import Clock, utcnow, get_zone, local_date, day_bounds, local_instant, format_hhmm


logger = logging.getLogger(__name__)

EventSubscriber = Callable[[Session, MedicationEvent], Awaitable[Any]]

CORRECTED_ACTIONS = ("missed", "skipped", "scheduled")

_STATUS_BY_EVENT = {
    EventType.DOSE_TAKEN: "taken",
    EventType.DOSE_MISSED: "missed",
    EventType.DOSE_SKIPPED: "skipped",
    EventType.DOSE_SNOOZED: "snoozed",
    EventType.DOSE_RESCHEDULED: "rescheduled",
}


# ==================== REPLAY ====================

@dataclass
class DoseState:
    """Derived state of one scheduled dose (command + scheduled instant)"""
    command_id: str
    scheduled_for: datetime
    status: str = "scheduled"
    previous_status: Optional[str] = None
    taken_event_id: Optional[str] = None
    taken_at: Optional[datetime] = None
    minutes_late: Optional[int] = None
    is_on_time: Optional[bool] = None
    timing_category: Optional[str] = None
    dose_category: Optional[str] = None
    dose_percentage: Optional[float] = None
    grace_window_end: Optional[datetime] = None
    snooze_count: int = 0
    snoozed_until: Optional[datetime] = None
    event_ids: List[str] = field(default_factory=list)

    @property
    def is_taken(self) -> bool:
        return self.status == "taken"

    @property
    def is_partial(self) -> bool:
        return self.is_taken and self.dose_category == "partial"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command_id": self.command_id,
            "scheduled_for": self.scheduled_for,
            "status": self.status,
            "taken_event_id": self.taken_event_id,
            "taken_at": self.taken_at,
            "minutes_late": self.minutes_late,
            "is_on_time": self.is_on_time,
            "timing_category": self.timing_category,
            "dose_category": self.dose_category,
            "dose_percentage": self.dose_percentage,
            "grace_window_end": self.grace_window_end,
            "snooze_count": self.snooze_count,
        }


def derive_dose_states(events: Iterable[MedicationEvent]) -> Dict[Tuple[str, datetime], DoseState]:
    """
    Fold events into per-dose state, in event_version order per command.

    An undo restores the dose to its corrected action, or to whatever it
    was before the taken event when no correction was given.
    """
    states: Dict[Tuple[str, datetime], DoseState] = {}
    ordered = sorted(events, key=lambda e: (e.command_id, e.event_version))

    for event in ordered:
        if event.scheduled_for is None:
            continue
        event_type = EventType(event.event_type)
        if event_type not in DOSE_EVENT_TYPES and event_type != EventType.DOSE_TAKEN_UNDONE:
            continue

        key = (event.command_id, event.scheduled_for)
        state = states.get(key)
        if state is None:
            state = DoseState(command_id=event.command_id, scheduled_for=event.scheduled_for)
            states[key] = state
        state.event_ids.append(event.id)
        if event.grace_window_end and state.grace_window_end is None:
            state.grace_window_end = event.grace_window_end

        data = event.event_data or {}

        if event_type == EventType.DOSE_SCHEDULED:
            continue

        if event_type == EventType.DOSE_TAKEN:
            state.previous_status = state.status
            state.status = "taken"
            state.taken_event_id = event.id
            state.taken_at = event.event_timestamp
            state.minutes_late = event.minutes_late
            state.is_on_time = event.is_on_time
            state.timing_category = event.timing_category
            state.dose_category = data.get("dose_category", "full")
            state.dose_percentage = data.get("dose_percentage")
            continue

        if event_type == EventType.DOSE_TAKEN_UNDONE:
            if state.taken_event_id and state.taken_event_id == event.undoes_event_id:
                state.status = data.get("corrected_action") or state.previous_status or "scheduled"
                state.taken_event_id = None
                state.taken_at = None
                state.minutes_late = None
                state.is_on_time = None
                state.timing_category = None
                state.dose_category = None
                state.dose_percentage = None
            continue

        if event_type == EventType.DOSE_SNOOZED:
            state.snooze_count += 1
            minutes = int(data.get("snooze_minutes", 10))
            state.snoozed_until = event.event_timestamp + timedelta(minutes=minutes)

        state.status = _STATUS_BY_EVENT[event_type]

    return states


class EventService:
    """
    Service for the append-only medication event log
    """

    def __init__(
        self,
        preference_service: PreferenceService,
        config=settings,
        clock: Clock = utcnow,
    ):
        self.preferences = preference_service
        self.config = config
        self.clock = clock
        self._subscribers: List[EventSubscriber] = []

    def subscribe(self, subscriber: EventSubscriber) -> None:
        """Register an async callback run after each committed append."""
        self._subscribers.append(subscriber)

    async def _publish(self, db: Session, event: MedicationEvent) -> None:
        for subscriber in self._subscribers:
            try:
                await subscriber(db, event)
            except Exception:
                # Subscribers never undo or fail an append that already committed
                db.rollback()
                logger.exception(f"Event subscriber failed for event {event.id} ({event.event_type.value})")

    # ==================== HELPERS ====================

    def _get_command(self, db: Session, command_id: str) -> MedicationCommand:
        command = db.get(MedicationCommand, command_id)
        if command is None:
            raise NotFoundError(f"Medication {command_id} not found")
        return command

    def next_event_version(self, db: Session, command_id: str) -> int:
        current = db.query(func.max(MedicationEvent.event_version)).filter(
            MedicationEvent.command_id == command_id
        ).scalar()
        return (current or 0) + 1

    def grace_minutes_for(
        self,
        command: MedicationCommand,
        scheduled_for: datetime,
        prefs: TimePreferenceSet,
        tz_name: str,
    ) -> int:
        local = scheduled_for.astimezone(get_zone(tz_name))
        time_slot = prefs.bucket_for_time(format_hhmm(local.hour * 60 + local.minute))
        return resolve_grace_minutes(
            GracePolicy.from_dict(command.grace_period),
            time_slot=time_slot,
            local_day=local.date(),
            holidays=self.config.HOLIDAYS,
        )

    def _validate_append(
        self,
        command: MedicationCommand,
        event_type: EventType,
        scheduled_for: Optional[datetime],
        event_data: Dict[str, Any],
        undoes_event_id: Optional[str] = None,
    ) -> None:
        if command.status == MedicationStatus.DISCONTINUED and event_type not in STATUS_EVENT_TYPES:
            raise ValidationError.for_field(
                "command_id",
                f"Medication {command.id} is discontinued; only status changes may be recorded",
            )

        needs_schedule = event_type in DOSE_EVENT_TYPES or event_type == EventType.DOSE_TAKEN_UNDONE
        if needs_schedule and scheduled_for is None:
            as_needed = command.frequency == Frequency.AS_NEEDED.value
            slotless_taken = as_needed and event_type == EventType.DOSE_TAKEN
            # an undo carries the slot of the dose it reverses, which may have none
            slotless_undo = event_type == EventType.DOSE_TAKEN_UNDONE and undoes_event_id is not None
            if not (slotless_taken or slotless_undo):
                raise ValidationError.for_field("scheduled_for", f"{event_type.value} requires scheduled_for")

        if scheduled_for is not None and scheduled_for.tzinfo is None:
            raise ValidationError.for_field("scheduled_for", "Must include a UTC offset")

        if event_type == EventType.DOSE_RESCHEDULED and not event_data.get("rescheduled_to"):
            raise ValidationError.for_field("event_data.rescheduled_to", "Required for dose_rescheduled")

        if event_type == EventType.DOSE_SNOOZED:
            minutes = event_data.get("snooze_minutes", 10)
            if not isinstance(minutes, int) or minutes <= 0:
                raise ValidationError.for_field("event_data.snooze_minutes", "Must be a positive integer")

    def stage_event(
        self,
        db: Session,
        command: MedicationCommand,
        event_type: EventType,
        event_data: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        event_timestamp: Optional[datetime] = None,
        created_by: Optional[str] = None,
        trigger_source: str = "user",
        undoes_event_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> MedicationEvent:
        """
        Validate, classify and add an event to the session without committing.
        The caller owns the transaction; the flush surfaces version collisions.
        """
        event_type = EventType(event_type)
        event_data = dict(event_data or {})
        event_timestamp = event_timestamp or self.clock()
        if event_timestamp.tzinfo is None:
            raise ValidationError.for_field("event_timestamp", "Must include a UTC offset")

        self._validate_append(command, event_type, scheduled_for, event_data, undoes_event_id)

        event = MedicationEvent(
            command_id=command.id,
            patient_id=command.patient_id,
            event_type=event_type,
            event_version=self.next_event_version(db, command.id),
            scheduled_for=scheduled_for,
            event_timestamp=event_timestamp,
            created_by=created_by,
            trigger_source=trigger_source,
            undoes_event_id=undoes_event_id,
            correlation_id=correlation_id,
            created_at=self.clock(),
        )

        if scheduled_for is not None and event_type in DOSE_EVENT_TYPES:
            prefs = self.preferences.load(db, command.patient_id)
            tz_name = self.preferences.command_timezone(db, command)
            grace = self.grace_minutes_for(command, scheduled_for, prefs, tz_name)
            timing = classify_timing(scheduled_for, event_timestamp, grace)
            event.grace_minutes = timing.grace_minutes
            event.grace_window_end = timing.grace_window_end
            if event_type == EventType.DOSE_TAKEN:
                event.minutes_late = timing.minutes_late
                event.is_on_time = timing.is_on_time
                event.very_late = timing.very_late
                event.timing_category = timing.category

        if event_type == EventType.DOSE_TAKEN:
            dose = classify_dose(
                command.dosage,
                actual=event_data.get("actual_dose"),
                dose_percentage=event_data.get("dose_percentage"),
            )
            event_data["dose_percentage"] = dose.dose_percentage
            event_data["dose_category"] = dose.category

        event.event_data = event_data
        db.add(event)
        db.flush()
        return event

    def _mark_late_correction(self, db: Session, command: MedicationCommand, event: MedicationEvent) -> None:
        """Events landing on an already-archived day are archived with a correction marker."""
        tz_name = self.preferences.command_timezone(db, command)
        when = event.scheduled_for or event.event_timestamp
        day = local_date(when, tz_name).isoformat()
        summary = db.get(DailySummary, f"{command.patient_id}_{day}")
        if summary is None:
            return

        summary.corrections = list(summary.corrections or []) + [{
            "event_id": event.id,
            "event_type": event.event_type.value,
            "command_id": command.id,
            "recorded_at": self.clock().isoformat(),
        }]
        event.is_archived = True
        event.archived_at = self.clock()
        event.archive_date = day
        event.daily_summary_id = summary.id
        db.commit()
        logger.info(f"Late {event.event_type.value} for {day} recorded as correction on {summary.id}")

    # ==================== APPEND ====================

    async def append_event(
        self,
        db: Session,
        command_id: str,
        event_type: EventType,
        event_data: Optional[Dict[str, Any]] = None,
        scheduled_for: Optional[datetime] = None,
        event_timestamp: Optional[datetime] = None,
        created_by: Optional[str] = None,
        trigger_source: str = "user",
        undoes_event_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> MedicationEvent:
        """
        Append one event with the next event_version for its command.

        A concurrent append that takes the same version trips the unique
        (command_id, event_version) constraint; the append is retried with a
        fresh read a bounded number of times.

        Raises:
            NotFoundError: unknown command
            ValidationError: discontinued command or malformed payload
            ConflictError: version contention survived all retries
        """
        attempts = self.config.CONFLICT_MAX_RETRIES + 1
        for attempt in range(1, attempts + 1):
            command = self._get_command(db, command_id)
            try:
                event = self.stage_event(
                    db, command, event_type,
                    event_data=event_data,
                    scheduled_for=scheduled_for,
                    event_timestamp=event_timestamp,
                    created_by=created_by,
                    trigger_source=trigger_source,
                    undoes_event_id=undoes_event_id,
                    correlation_id=correlation_id,
                )
                db.commit()
            except IntegrityError as e:
                db.rollback()
                logger.warning(f"Event version conflict on {command_id} (attempt {attempt}/{attempts}): {e.orig}")
                continue
            except Exception:
                db.rollback()
                raise
            break
        else:
            raise ConflictError(f"Could not append {EventType(event_type).value} to {command_id}: concurrent writes")

        db.refresh(event)
        logger.info(f"Appended {event.event_type.value} v{event.event_version} to medication {command_id}")

        self._mark_late_correction(db, command, event)
        await self._publish(db, event)
        return event

    async def record_dose(
        self,
        db: Session,
        command_id: str,
        event_type: EventType,
        scheduled_for: Optional[datetime],
        event_timestamp: Optional[datetime] = None,
        actor: Optional[str] = None,
        **event_data,
    ) -> MedicationEvent:
        """Convenience wrapper for taken/missed/skipped/snoozed/rescheduled doses."""
        event_type = EventType(event_type)
        if event_type not in DOSE_EVENT_TYPES:
            raise ValidationError.for_field("event_type", f"{event_type.value} is not a dose event")
        return await self.append_event(
            db,
            command_id,
            event_type,
            event_data={k: v for k, v in event_data.items() if v is not None},
            scheduled_for=scheduled_for,
            event_timestamp=event_timestamp,
            created_by=actor,
        )

    async def acknowledge_reminder(
        self,
        db: Session,
        command_id: str,
        scheduled_for: datetime,
        actor: Optional[str] = None,
        notification_id: Optional[str] = None,
    ) -> MedicationEvent:
        event_data = {"notification_id": notification_id} if notification_id else {}
        return await self.append_event(
            db,
            command_id,
            EventType.REMINDER_ACKNOWLEDGED,
            event_data=event_data,
            scheduled_for=scheduled_for,
            created_by=actor,
        )

    async def undo_event(
        self,
        db: Session,
        event_id: str,
        corrected_action: Optional[str] = None,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MedicationEvent:
        """
        Undo a taken dose by appending dose_taken_undone.
        The original event stays in the log untouched.
        """
        original = await self.get_event(db, event_id)
        if original.event_type != EventType.DOSE_TAKEN:
            raise ValidationError.for_field("event_id", "Only dose_taken events can be undone")

        if corrected_action is not None and corrected_action not in CORRECTED_ACTIONS:
            raise ValidationError.for_field(
                "corrected_action", f"Must be one of {', '.join(CORRECTED_ACTIONS)}"
            )

        window = timedelta(hours=self.config.UNDO_WINDOW_HOURS)
        if self.clock() - original.created_at > window:
            raise ValidationError.for_field(
                "event_id", f"Correction window of {self.config.UNDO_WINDOW_HOURS}h has passed"
            )

        already = db.query(MedicationEvent).filter(MedicationEvent.undoes_event_id == original.id).first()
        if already is not None:
            raise ValidationError.for_field("event_id", f"Event {event_id} has already been undone")

        try:
            return await self.append_event(
                db,
                original.command_id,
                EventType.DOSE_TAKEN_UNDONE,
                event_data={
                    "original_event_id": original.id,
                    "corrected_action": corrected_action,
                    "undo_reason": reason,
                },
                scheduled_for=original.scheduled_for,
                created_by=actor,
                undoes_event_id=original.id,
            )
        except ConflictError:
            if db.query(MedicationEvent).filter(MedicationEvent.undoes_event_id == original.id).first():
                raise ValidationError.for_field("event_id", f"Event {event_id} has already been undone")
            raise

    # ==================== QUERIES ====================

    async def get_event(self, db: Session, event_id: str) -> MedicationEvent:
        event = db.get(MedicationEvent, event_id)
        if event is None:
            raise NotFoundError(f"Event {event_id} not found")
        return event

    async def list_events(
        self,
        db: Session,
        command_id: Optional[str] = None,
        patient_id: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        event_types: Optional[List[EventType]] = None,
        include_archived: bool = False,
        limit: Optional[int] = None,
    ) -> List[MedicationEvent]:
        """
        Live events by default; archived ones only on request.
        start/end filter on the scheduled instant, falling back to the event timestamp.
        """
        query = db.query(MedicationEvent)
        if command_id:
            query = query.filter(MedicationEvent.command_id == command_id)
        if patient_id:
            query = query.filter(MedicationEvent.patient_id == patient_id)
        if not include_archived:
            query = query.filter(MedicationEvent.is_archived.is_(False))
        if event_types:
            query = query.filter(MedicationEvent.event_type.in_([EventType(t) for t in event_types]))

        instant = func.coalesce(MedicationEvent.scheduled_for, MedicationEvent.event_timestamp)
        if start:
            query = query.filter(instant >= start)
        if end:
            query = query.filter(instant < end)

        query = query.order_by(MedicationEvent.command_id, MedicationEvent.event_version)
        if limit:
            query = query.limit(limit)
        return query.all()

    async def replay_status(self, db: Session, command_id: str) -> Dict[str, Any]:
        """Reconstruct a command's status purely from its status events."""
        self._get_command(db, command_id)
        events = await self.list_events(db, command_id=command_id, include_archived=True)

        status = None
        for event in events:
            if event.event_type == EventType.MEDICATION_CREATED:
                status = MedicationStatus.ACTIVE.value
            elif event.event_type == EventType.MEDICATION_PAUSED:
                status = MedicationStatus.PAUSED.value
            elif event.event_type == EventType.MEDICATION_HELD:
                status = MedicationStatus.HELD.value
            elif event.event_type == EventType.MEDICATION_RESUMED:
                status = MedicationStatus.ACTIVE.value
            elif event.event_type == EventType.MEDICATION_DISCONTINUED:
                status = MedicationStatus.DISCONTINUED.value
            elif event.event_type == EventType.MEDICATION_UPDATED and (event.event_data or {}).get("new_status"):
                status = event.event_data["new_status"]

        return {
            "command_id": command_id,
            "status": status,
            "event_count": len(events),
            "last_event_version": events[-1].event_version if events else 0,
        }

    def compiled_slots(self, command: MedicationCommand, day: date, tz_name: str) -> List[datetime]:
        """UTC instants a command is due on a patient-local day."""
        schedule = command.schedule or {}
        if command.frequency == Frequency.AS_NEEDED.value:
            return []

        if schedule.get("start_date") and day.isoformat() < schedule["start_date"]:
            return []
        if schedule.get("end_date") and day.isoformat() > schedule["end_date"]:
            return []
        if command.frequency == Frequency.WEEKLY.value:
            days = schedule.get("days_of_week") or []
            if days and day.weekday() not in days:
                return []
        if command.frequency == Frequency.MONTHLY.value:
            day_of_month = schedule.get("day_of_month")
            if day_of_month and day.day != day_of_month:
                return []

        return [local_instant(day, t, tz_name) for t in schedule.get("times", [])]

    async def today_status(self, db: Session, patient_id: str, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Current-day dose states for all active medications of a patient."""
        now = now or self.clock()
        tz_name = self.preferences.patient_timezone(db, patient_id)
        today = local_date(now, tz_name)
        start, end = day_bounds(today, tz_name)

        commands = db.query(MedicationCommand).filter(
            MedicationCommand.patient_id == patient_id,
            MedicationCommand.status == MedicationStatus.ACTIVE,
        ).order_by(MedicationCommand.name).all()

        events = await self.list_events(db, patient_id=patient_id, start=start, end=end, include_archived=True)
        states = derive_dose_states(events)

        result = []
        for command in commands:
            cmd_tz = self.preferences.command_timezone(db, command)
            slots = set(self.compiled_slots(command, today, cmd_tz))
            slots.update(key[1] for key in states if key[0] == command.id)
            for slot in sorted(slots):
                state = states.get((command.id, slot)) or DoseState(command_id=command.id, scheduled_for=slot)
                entry = state.to_dict()
                local = slot.astimezone(get_zone(cmd_tz))
                entry.update({
                    "medication_name": command.name,
                    "dosage": command.dosage,
                    "local_time": format_hhmm(local.hour * 60 + local.minute),
                })
                result.append(entry)

        result.sort(key=lambda e: (e["scheduled_for"], e["medication_name"]))
        return result
