"""
Command Service
Authoritative medication records: creation, optimistic mutation and status lifecycle
"""

import copy
import logging
from datetime import date
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from exceptions import ValidationError, NotFoundError, ConflictError
from models import (
    MedicationCommand, EventType, MedicationStatus, Frequency, RiskClass, NotificationChannel,
)
from services.event_service import EventService
from services.preference_service import PreferenceService
from tools.schedule_compiler import (
    TimePreferenceSet, ScheduleOverrides, CompiledSchedule, compile_schedule, coerce_frequency,
)
from tools.time_utils import Clock, utcnow, is_valid_hhmm, is_valid_timezone


logger = logging.getLogger(__name__)


DESCRIPTOR_FIELDS = ("name", "generic_name", "dosage", "route", "instructions")

# Inputs that change the compiled times
SCHEDULE_INPUT_FIELDS = ("frequency", "times", "flexible")

STATUS_TRANSITIONS = {
    MedicationStatus.ACTIVE: {
        MedicationStatus.PAUSED, MedicationStatus.HELD,
        MedicationStatus.DISCONTINUED, MedicationStatus.COMPLETED,
    },
    MedicationStatus.PAUSED: {
        MedicationStatus.ACTIVE, MedicationStatus.DISCONTINUED, MedicationStatus.COMPLETED,
    },
    MedicationStatus.HELD: {
        MedicationStatus.ACTIVE, MedicationStatus.DISCONTINUED, MedicationStatus.COMPLETED,
    },
    MedicationStatus.DISCONTINUED: set(),
    MedicationStatus.COMPLETED: set(),
}

STATUS_EVENTS = {
    MedicationStatus.PAUSED: EventType.MEDICATION_PAUSED,
    MedicationStatus.HELD: EventType.MEDICATION_HELD,
    MedicationStatus.ACTIVE: EventType.MEDICATION_RESUMED,
    MedicationStatus.DISCONTINUED: EventType.MEDICATION_DISCONTINUED,
    MedicationStatus.COMPLETED: EventType.MEDICATION_UPDATED,
}


def _check_date(value, field: str, errors: list) -> None:
    if value is None:
        return
    try:
        date.fromisoformat(str(value))
    except ValueError:
        errors.append({"field": field, "message": "Expected YYYY-MM-DD"})


def validate_command_fields(data: Dict[str, Any], partial: bool = False) -> None:
    """
    Field-level validation of a command document or patch.

    Raises:
        ValidationError: with one detail entry per offending field
    """
    errors: List[Dict[str, str]] = []

    for required in ("name", "dosage"):
        if required in data or not partial:
            value = data.get(required)
            if not isinstance(value, str) or not value.strip():
                errors.append({"field": required, "message": "Required"})

    schedule = data.get("schedule")
    if schedule is not None:
        if "frequency" in schedule or not partial:
            try:
                Frequency(schedule.get("frequency"))
            except ValueError:
                errors.append({"field": "schedule.frequency", "message": f"Unknown frequency '{schedule.get('frequency')}'"})
        for i, value in enumerate(schedule.get("times") or []):
            if not is_valid_hhmm(value):
                errors.append({"field": f"schedule.times[{i}]", "message": f"'{value}' is not a 24-hour HH:MM time"})
        for i, value in enumerate(schedule.get("days_of_week") or []):
            if not isinstance(value, int) or not 0 <= value <= 6:
                errors.append({"field": f"schedule.days_of_week[{i}]", "message": "Expected 0 (Monday) to 6 (Sunday)"})
        day_of_month = schedule.get("day_of_month")
        if day_of_month is not None and (not isinstance(day_of_month, int) or not 1 <= day_of_month <= 31):
            errors.append({"field": "schedule.day_of_month", "message": "Expected 1 to 31"})
        _check_date(schedule.get("start_date"), "schedule.start_date", errors)
        _check_date(schedule.get("end_date"), "schedule.end_date", errors)
        if schedule.get("start_date") and schedule.get("end_date") and str(schedule["end_date"]) < str(schedule["start_date"]):
            errors.append({"field": "schedule.end_date", "message": "Must not be before start_date"})
        if schedule.get("timezone") and not is_valid_timezone(schedule["timezone"]):
            errors.append({"field": "schedule.timezone", "message": f"Unknown time zone '{schedule['timezone']}'"})
    elif not partial:
        errors.append({"field": "schedule", "message": "Required"})

    reminders = data.get("reminders")
    if reminders:
        for i, value in enumerate(reminders.get("minutes_before") or []):
            if not isinstance(value, int) or value < 0:
                errors.append({"field": f"reminders.minutes_before[{i}]", "message": "Expected a non-negative integer"})
        for i, value in enumerate(reminders.get("channels") or []):
            if value not in {c.value for c in NotificationChannel}:
                errors.append({"field": f"reminders.channels[{i}]", "message": f"Unknown channel '{value}'"})
        quiet = reminders.get("quiet_hours") or {}
        for key in ("start", "end"):
            if key in quiet and not is_valid_hhmm(quiet[key]):
                errors.append({"field": f"reminders.quiet_hours.{key}", "message": "Expected 24-hour HH:MM"})

    grace = data.get("grace_period")
    if grace:
        if "risk_class" in grace:
            try:
                RiskClass(grace["risk_class"])
            except ValueError:
                errors.append({"field": "grace_period.risk_class", "message": f"Unknown risk class '{grace['risk_class']}'"})
        default_minutes = grace.get("default_minutes")
        if default_minutes is not None and (not isinstance(default_minutes, int) or default_minutes < 0):
            errors.append({"field": "grace_period.default_minutes", "message": "Expected a non-negative integer"})
        for key in ("weekend_multiplier", "holiday_multiplier"):
            value = grace.get(key)
            if value is not None and (not isinstance(value, (int, float)) or value < 0):
                errors.append({"field": f"grace_period.{key}", "message": "Expected a non-negative number"})

    if errors:
        raise ValidationError("Invalid medication", details=errors)


class CommandService:
    """
    Service for medication command records
    """

    def __init__(
        self,
        event_service: EventService,
        preference_service: PreferenceService,
        config=settings,
        clock: Clock = utcnow,
    ):
        self.events = event_service
        self.preferences = preference_service
        self.config = config
        self.clock = clock

    # ==================== SCHEDULE ====================

    def build_schedule(self, schedule: Dict[str, Any], prefs: TimePreferenceSet) -> CompiledSchedule:
        """
        Compile a schedule block in place.

        Caller-supplied times become overrides so later recompiles keep them.
        """
        frequency = coerce_frequency(schedule.get("frequency", Frequency.DAILY.value))
        schedule["frequency"] = frequency.value

        flexible = dict(schedule.get("flexible") or {})
        explicit = schedule.pop("times", None)
        if explicit:
            flexible["custom_times"] = list(explicit)
        schedule["flexible"] = flexible

        compiled = compile_schedule(frequency, prefs, ScheduleOverrides.from_schedule(schedule))
        schedule["times"] = compiled.times
        schedule["buckets"] = compiled.buckets
        schedule["strategy"] = compiled.strategy
        return compiled

    @staticmethod
    def _check_times_invariant(schedule: Dict[str, Any], status: MedicationStatus) -> None:
        if status == MedicationStatus.ACTIVE and schedule.get("frequency") != Frequency.AS_NEEDED.value:
            if not schedule.get("times"):
                raise ValidationError.for_field("schedule.times", "An active medication needs at least one time")

    # ==================== CRUD ====================

    async def create_command(
        self,
        db: Session,
        patient_id: str,
        data: Dict[str, Any],
        actor: Optional[str] = None,
    ) -> MedicationCommand:
        """
        Create a medication and its medication_created / schedule_created events.

        Raises:
            ValidationError: missing or malformed fields
        """
        validate_command_fields(data)

        prefs = self.preferences.load(db, patient_id)
        schedule = copy.deepcopy(data["schedule"])
        schedule.setdefault("timezone", prefs.timezone)
        compiled = self.build_schedule(schedule, prefs)
        self._check_times_invariant(schedule, MedicationStatus.ACTIVE)

        grace = dict(data.get("grace_period") or {})
        grace.setdefault("risk_class", RiskClass.STANDARD.value)
        reminders = dict(data.get("reminders") or {})
        reminders.setdefault("enabled", True)
        reminders.setdefault("minutes_before", [])
        reminders.setdefault("channels", [])

        warnings = [w.to_dict() for w in compiled.warnings]
        for warning in compiled.warnings:
            logger.warning(f"Medication '{data['name']}' for patient {patient_id}: {warning.message}")

        now = self.clock()
        command = MedicationCommand(
            patient_id=patient_id,
            name=data["name"].strip(),
            generic_name=data.get("generic_name"),
            dosage=data["dosage"].strip(),
            route=data.get("route") or "oral",
            instructions=data.get("instructions"),
            schedule=schedule,
            reminders=reminders,
            grace_period=grace,
            status=MedicationStatus.ACTIVE,
            status_changed_at=now,
            status_changed_by=actor,
            warnings=warnings,
            created_by=actor,
            updated_by=actor,
            created_at=now,
            updated_at=now,
        )
        try:
            db.add(command)
            db.flush()
            self.events.stage_event(
                db, command, EventType.MEDICATION_CREATED,
                event_data={"name": command.name, "dosage": command.dosage},
                created_by=actor,
            )
            self.events.stage_event(
                db, command, EventType.SCHEDULE_CREATED,
                event_data={
                    "frequency": schedule["frequency"],
                    "times": schedule["times"],
                    "strategy": schedule["strategy"],
                },
                created_by=actor,
            )
            db.commit()
        except Exception:
            db.rollback()
            raise

        db.refresh(command)
        logger.info(f"Created medication {command.id} ({command.name}) for patient {patient_id}")
        return command

    async def get_command(self, db: Session, command_id: str) -> MedicationCommand:
        command = db.get(MedicationCommand, command_id)
        if command is None:
            raise NotFoundError(f"Medication {command_id} not found")
        return command

    async def list_commands(
        self,
        db: Session,
        patient_id: str,
        status: Optional[MedicationStatus] = None,
    ) -> List[MedicationCommand]:
        query = db.query(MedicationCommand).filter(MedicationCommand.patient_id == patient_id)
        if status is not None:
            query = query.filter(MedicationCommand.status == MedicationStatus(status))
        return query.order_by(MedicationCommand.created_at, MedicationCommand.name).all()

    # ==================== MUTATION ====================

    def _apply_patch(
        self,
        db: Session,
        command: MedicationCommand,
        patch: Dict[str, Any],
        actor: Optional[str],
        reason: Optional[str],
    ) -> None:
        """Apply a patch and stage the resulting events; no commit."""
        changed = []
        schedule_event = None
        for name in DESCRIPTOR_FIELDS:
            if name in patch and patch[name] != getattr(command, name):
                setattr(command, name, patch[name].strip() if isinstance(patch[name], str) else patch[name])
                changed.append(name)

        if patch.get("reminders") is not None:
            reminders = dict(command.reminders or {})
            reminders.update(patch["reminders"])
            if reminders != command.reminders:
                command.reminders = reminders
                changed.append("reminders")

        if patch.get("grace_period") is not None:
            grace = dict(command.grace_period or {})
            grace.update(patch["grace_period"])
            if grace != command.grace_period:
                command.grace_period = grace
                changed.append("grace_period")

        schedule_patch = patch.get("schedule")
        if schedule_patch is not None:
            old_schedule = copy.deepcopy(command.schedule or {})
            schedule = copy.deepcopy(old_schedule)
            schedule.update({k: v for k, v in schedule_patch.items() if k != "times"})
            if "flexible" in schedule_patch:
                schedule["flexible"] = dict(schedule_patch["flexible"] or {})
            if "times" in schedule_patch:
                schedule["times"] = schedule_patch["times"]
                if not schedule_patch["times"]:
                    schedule["flexible"] = {
                        k: v for k, v in (schedule.get("flexible") or {}).items() if k != "custom_times"
                    }

            if any(k in schedule_patch for k in SCHEDULE_INPUT_FIELDS):
                if "times" not in schedule_patch:
                    # previously compiled times are output, not overrides
                    schedule.pop("times", None)
                prefs = self.preferences.load(db, command.patient_id)
                compiled = self.build_schedule(schedule, prefs)
                if compiled.warnings:
                    command.warnings = [w.to_dict() for w in compiled.warnings]
                    for warning in compiled.warnings:
                        logger.warning(f"Medication {command.id}: {warning.message}")

            self._check_times_invariant(schedule, command.status)

            if schedule != old_schedule:
                command.schedule = schedule
                changed.append("schedule")
                if schedule.get("times") != old_schedule.get("times") or schedule.get("frequency") != old_schedule.get("frequency"):
                    schedule_event = {
                        "previous_times": old_schedule.get("times", []),
                        "new_times": schedule.get("times", []),
                        "previous_frequency": old_schedule.get("frequency"),
                        "new_frequency": schedule.get("frequency"),
                        "reason": reason,
                    }

        if not changed:
            return

        # every command field is set before the first flush so the row is written once
        command.updated_by = actor
        command.updated_at = self.clock()

        if schedule_event is not None:
            self.events.stage_event(db, command, EventType.SCHEDULE_UPDATED, event_data=schedule_event, created_by=actor)

        descriptive = [c for c in changed if c != "schedule"]
        if descriptive:
            self.events.stage_event(
                db, command, EventType.MEDICATION_UPDATED,
                event_data={"changed_fields": descriptive, "reason": reason},
                created_by=actor,
            )

    async def _mutate(self, db: Session, command_id: str, mutate, expected_version: Optional[int] = None) -> MedicationCommand:
        """
        Read-modify-write under the mapper's version check.
        Stale writes are retried with a fresh read, then surfaced as ConflictError.
        """
        attempts = self.config.CONFLICT_MAX_RETRIES + 1
        for attempt in range(1, attempts + 1):
            command = await self.get_command(db, command_id)
            if expected_version is not None and command.version != expected_version:
                raise ConflictError(
                    f"Medication {command_id} is at version {command.version}, expected {expected_version}"
                )
            try:
                mutate(command)
                db.commit()
            except (StaleDataError, IntegrityError) as e:
                db.rollback()
                logger.warning(f"Concurrent update on medication {command_id} (attempt {attempt}/{attempts}): {e}")
                continue
            except Exception:
                db.rollback()
                raise
            db.refresh(command)
            return command

        raise ConflictError(f"Medication {command_id} was modified concurrently; retry later")

    async def apply_command_mutation(
        self,
        db: Session,
        command_id: str,
        patch: Dict[str, Any],
        actor: Optional[str] = None,
        expected_version: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> MedicationCommand:
        """
        Patch a medication. Changing the frequency, times or bucket inputs
        recompiles the schedule; a changed schedule emits schedule_updated.

        Raises:
            NotFoundError, ValidationError, ConflictError
        """
        validate_command_fields(patch, partial=True)

        existing = await self.get_command(db, command_id)
        if existing.status == MedicationStatus.DISCONTINUED:
            raise ValidationError.for_field("command_id", f"Medication {command_id} is discontinued")

        command = await self._mutate(
            db,
            command_id,
            lambda cmd: self._apply_patch(db, cmd, patch, actor, reason),
            expected_version=expected_version,
        )
        logger.info(f"Updated medication {command_id} (version {command.version})")
        return command

    async def change_status(
        self,
        db: Session,
        command_id: str,
        new_status: MedicationStatus,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MedicationCommand:
        """
        Move a medication through its lifecycle and emit the matching status event.

        Raises:
            ValidationError: transition not allowed from the current status
        """
        new_status = MedicationStatus(new_status)

        def _transition(command: MedicationCommand) -> None:
            current = MedicationStatus(command.status)
            if new_status not in STATUS_TRANSITIONS[current]:
                raise ValidationError.for_field(
                    "status", f"Cannot change status from {current.value} to {new_status.value}"
                )

            if new_status == MedicationStatus.ACTIVE:
                schedule = copy.deepcopy(command.schedule or {})
                if not schedule.get("times") and schedule.get("frequency") != Frequency.AS_NEEDED.value:
                    self.build_schedule(schedule, self.preferences.load(db, command.patient_id))
                    command.schedule = schedule
                self._check_times_invariant(schedule, new_status)

            command.status = new_status
            command.status_reason = reason
            command.status_changed_at = self.clock()
            command.status_changed_by = actor
            command.updated_by = actor
            command.updated_at = self.clock()

            self.events.stage_event(
                db, command, STATUS_EVENTS[new_status],
                event_data={
                    "previous_status": current.value,
                    "new_status": new_status.value,
                    "reason": reason,
                },
                created_by=actor,
            )

        command = await self._mutate(db, command_id, _transition)
        logger.info(f"Medication {command_id} status -> {new_status.value}")
        return command

    async def discontinue(
        self,
        db: Session,
        command_id: str,
        reason: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> MedicationCommand:
        """The delete path: medications are never hard-deleted."""
        return await self.change_status(db, command_id, MedicationStatus.DISCONTINUED, reason=reason, actor=actor)

    async def recompile_for_patient(self, db: Session, patient_id: str, actor: Optional[str] = None) -> List[MedicationCommand]:
        """
        Recompile bucket-driven schedules after the patient's preferences change.
        Medications with explicit custom times are left alone.
        """
        updated = []
        commands = await self.list_commands(db, patient_id)
        for command in commands:
            if command.status in (MedicationStatus.DISCONTINUED, MedicationStatus.COMPLETED):
                continue
            flexible = (command.schedule or {}).get("flexible") or {}
            if flexible.get("custom_times") or command.frequency in (Frequency.AS_NEEDED.value, Frequency.CUSTOM.value):
                continue
            before = list((command.schedule or {}).get("times", []))
            command = await self.apply_command_mutation(
                db, command.id,
                {"schedule": {"frequency": command.frequency}},
                actor=actor,
                reason="time_preferences_updated",
            )
            if command.schedule.get("times") != before:
                updated.append(command)
        return updated
