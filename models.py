"""
Database Models
SQLAlchemy ORM models for DoseLedger
"""

from sqlalchemy import (
    Column, Integer, String, Boolean, Float, ForeignKey, Text, Enum,
    Index, UniqueConstraint, JSON, event, inspect,
)
from sqlalchemy.orm import relationship
from enum import Enum as PyEnum
import uuid

from config import TableNames
from database import Base, UTCDateTime
from tools.time_utils import utcnow


def _new_id() -> str:
    return uuid.uuid4().hex


def _enum(enum_cls):
    """Store enum values (the wire names) rather than member names."""
    return Enum(
        enum_cls,
        native_enum=False,
        length=40,
        values_callable=lambda members: [m.value for m in members],
    )


# ==================== ENUMS ====================

class Frequency(str, PyEnum):
    """Medication dosing frequency"""
    DAILY = "daily"
    TWICE_DAILY = "twice_daily"
    THREE_TIMES_DAILY = "three_times_daily"
    FOUR_TIMES_DAILY = "four_times_daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    AS_NEEDED = "as_needed"
    CUSTOM = "custom"


class MedicationStatus(str, PyEnum):
    """Lifecycle status of a medication command"""
    ACTIVE = "active"
    PAUSED = "paused"
    HELD = "held"
    DISCONTINUED = "discontinued"
    COMPLETED = "completed"


class RiskClass(str, PyEnum):
    """Medication risk class driving the grace period"""
    CRITICAL = "critical"
    STANDARD = "standard"
    VITAMIN = "vitamin"
    PRN = "prn"


class EventType(str, PyEnum):
    """Wire-stable medication event types"""
    MEDICATION_CREATED = "medication_created"
    MEDICATION_UPDATED = "medication_updated"
    MEDICATION_DELETED = "medication_deleted"
    SCHEDULE_CREATED = "schedule_created"
    SCHEDULE_UPDATED = "schedule_updated"
    SCHEDULE_PAUSED = "schedule_paused"
    SCHEDULE_RESUMED = "schedule_resumed"
    DOSE_SCHEDULED = "dose_scheduled"
    DOSE_TAKEN = "dose_taken"
    DOSE_MISSED = "dose_missed"
    DOSE_SKIPPED = "dose_skipped"
    DOSE_SNOOZED = "dose_snoozed"
    DOSE_RESCHEDULED = "dose_rescheduled"
    MEDICATION_PAUSED = "medication_paused"
    MEDICATION_RESUMED = "medication_resumed"
    MEDICATION_HELD = "medication_held"
    MEDICATION_DISCONTINUED = "medication_discontinued"
    REMINDER_SENT = "reminder_sent"
    REMINDER_ACKNOWLEDGED = "reminder_acknowledged"
    ALERT_TRIGGERED = "alert_triggered"
    GRACE_PERIOD_EXPIRED = "grace_period_expired"
    DOSE_TAKEN_UNDONE = "dose_taken_undone"
    PATTERN_DETECTED = "pattern_detected"


DOSE_EVENT_TYPES = frozenset({
    EventType.DOSE_SCHEDULED,
    EventType.DOSE_TAKEN,
    EventType.DOSE_MISSED,
    EventType.DOSE_SKIPPED,
    EventType.DOSE_SNOOZED,
    EventType.DOSE_RESCHEDULED,
})

# Allowed even when the command is discontinued
STATUS_EVENT_TYPES = frozenset({
    EventType.MEDICATION_PAUSED,
    EventType.MEDICATION_RESUMED,
    EventType.MEDICATION_HELD,
    EventType.MEDICATION_DISCONTINUED,
    EventType.MEDICATION_UPDATED,
    EventType.MEDICATION_DELETED,
    EventType.SCHEDULE_PAUSED,
    EventType.SCHEDULE_RESUMED,
})


class FamilyAccessStatus(str, PyEnum):
    ACTIVE = "active"
    PENDING = "pending"
    SUSPENDED = "suspended"
    REVOKED = "revoked"


class NotificationChannel(str, PyEnum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


class NotificationPriority(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class NotificationStatus(str, PyEnum):
    """Per-notification delivery state"""
    PENDING = "pending"
    SENDING = "sending"
    DELIVERED = "delivered"
    RETRYING = "retrying"
    FAILED = "failed"


class NotificationLevel(str, PyEnum):
    ALL = "all"
    EMERGENCY_ONLY = "emergency_only"


class JobRunStatus(str, PyEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# ==================== MODELS ====================

class MedicationCommand(Base):
    """Authoritative, mutable record of one prescribed medication"""
    __tablename__ = TableNames.MEDICATION_COMMANDS

    id = Column(String(32), primary_key=True, default=_new_id)
    patient_id = Column(String(64), nullable=False, index=True)

    # Descriptors
    name = Column(String(255), nullable=False)
    generic_name = Column(String(255))
    dosage = Column(String(100), nullable=False)  # e.g. "500mg"
    route = Column(String(50), default="oral")
    instructions = Column(Text)

    # {frequency, times, days_of_week, day_of_month, start_date, end_date,
    #  timezone, flexible: {buckets, bucket_overrides, custom_times}}
    schedule = Column(JSON, nullable=False, default=dict)
    # {enabled, minutes_before, channels, quiet_hours: {start, end, enabled}}
    reminders = Column(JSON, nullable=False, default=dict)
    # {default_minutes, risk_class, time_slot_overrides,
    #  weekend_multiplier, holiday_multiplier}
    grace_period = Column(JSON, nullable=False, default=dict)

    # Status
    status = Column(_enum(MedicationStatus), nullable=False, default=MedicationStatus.ACTIVE)
    status_reason = Column(Text)
    status_changed_at = Column(UTCDateTime, default=utcnow)
    status_changed_by = Column(String(64))

    # Metadata
    version = Column(Integer, nullable=False, default=1)
    warnings = Column(JSON, default=list)
    created_by = Column(String(64))
    updated_by = Column(String(64))
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    events = relationship("MedicationEvent", back_populates="command", order_by="MedicationEvent.event_version")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_medication_commands_patient_status", "patient_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == MedicationStatus.ACTIVE

    @property
    def frequency(self) -> str:
        return (self.schedule or {}).get("frequency", Frequency.DAILY.value)

    @property
    def risk_class(self) -> str:
        return (self.grace_period or {}).get("risk_class", RiskClass.STANDARD.value)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "name": self.name,
            "generic_name": self.generic_name,
            "dosage": self.dosage,
            "route": self.route,
            "instructions": self.instructions,
            "schedule": self.schedule,
            "reminders": self.reminders,
            "grace_period": self.grace_period,
            "status": {
                "current": self.status.value if self.status else None,
                "is_active": self.is_active,
                "reason": self.status_reason,
                "changed_at": self.status_changed_at,
                "changed_by": self.status_changed_by,
            },
            "metadata": {
                "version": self.version,
                "warnings": self.warnings or [],
                "created_by": self.created_by,
                "updated_by": self.updated_by,
                "created_at": self.created_at,
                "updated_at": self.updated_at,
            },
        }


class MedicationEvent(Base):
    """Immutable record of something that happened to a command"""
    __tablename__ = TableNames.MEDICATION_EVENTS

    id = Column(String(32), primary_key=True, default=_new_id)
    command_id = Column(String(32), ForeignKey(f"{TableNames.MEDICATION_COMMANDS}.id"), nullable=False)
    patient_id = Column(String(64), nullable=False, index=True)

    event_type = Column(_enum(EventType), nullable=False)
    event_version = Column(Integer, nullable=False)
    event_data = Column(JSON, default=dict)

    # Timing
    scheduled_for = Column(UTCDateTime)
    event_timestamp = Column(UTCDateTime, nullable=False, default=utcnow)
    grace_minutes = Column(Integer)
    grace_window_end = Column(UTCDateTime)
    minutes_late = Column(Integer)
    is_on_time = Column(Boolean)
    very_late = Column(Boolean)
    timing_category = Column(String(20))  # early, on_time, late, very_late

    # Undo link
    undoes_event_id = Column(String(32), ForeignKey(f"{TableNames.MEDICATION_EVENTS}.id"), unique=True)

    # Context
    trigger_source = Column(String(50), default="user")  # user, system, job, family
    correlation_id = Column(String(64))
    created_by = Column(String(64))
    created_at = Column(UTCDateTime, default=utcnow)

    # Archive status, the only mutable part of an event
    is_archived = Column(Boolean, nullable=False, default=False)
    archived_at = Column(UTCDateTime)
    archive_date = Column(String(10))
    daily_summary_id = Column(String(100))

    command = relationship("MedicationCommand", back_populates="events")

    __table_args__ = (
        UniqueConstraint("command_id", "event_version", name="uq_event_command_version"),
        Index("ix_medication_events_patient_archived", "patient_id", "is_archived"),
        Index("ix_medication_events_command_scheduled", "command_id", "scheduled_for"),
        Index("ix_medication_events_type", "event_type"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "command_id": self.command_id,
            "patient_id": self.patient_id,
            "event_type": self.event_type.value,
            "event_version": self.event_version,
            "event_data": self.event_data or {},
            "timing": {
                "scheduled_for": self.scheduled_for,
                "event_timestamp": self.event_timestamp,
                "grace_minutes": self.grace_minutes,
                "grace_window_end": self.grace_window_end,
                "minutes_late": self.minutes_late,
                "is_on_time": self.is_on_time,
                "very_late": self.very_late,
                "category": self.timing_category,
            },
            "undoes_event_id": self.undoes_event_id,
            "trigger_source": self.trigger_source,
            "created_by": self.created_by,
            "archive_status": {
                "is_archived": self.is_archived,
                "archived_at": self.archived_at,
                "archive_date": self.archive_date,
                "daily_summary_id": self.daily_summary_id,
            },
        }


ARCHIVE_FIELDS = frozenset({"is_archived", "archived_at", "archive_date", "daily_summary_id"})


@event.listens_for(MedicationEvent, "before_update")
def _reject_event_rewrites(mapper, connection, target):
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if attr.key in ARCHIVE_FIELDS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ValueError(f"MedicationEvent.{attr.key} is write-once")


class PatientTimePreferences(Base):
    """Per-patient time buckets and frequency mapping"""
    __tablename__ = TableNames.PATIENT_TIME_PREFERENCES

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(64), unique=True, nullable=False, index=True)

    # {name: {label, default_time, earliest, latest, is_active}}
    time_buckets = Column(JSON, nullable=False, default=dict)
    frequency_mapping = Column(JSON, nullable=False, default=dict)

    wake_time = Column(String(5), default="07:00")
    bed_time = Column(String(5), default="23:00")
    timezone = Column(String(50), nullable=False)

    version = Column(Integer, nullable=False, default=1)
    warnings = Column(JSON, default=list)
    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "time_buckets": self.time_buckets,
            "frequency_mapping": self.frequency_mapping,
            "wake_time": self.wake_time,
            "bed_time": self.bed_time,
            "timezone": self.timezone,
            "version": self.version,
            "warnings": self.warnings or [],
        }


class DailySummary(Base):
    """Closed-out calendar day for a patient"""
    __tablename__ = TableNames.DAILY_SUMMARIES

    id = Column(String(100), primary_key=True)  # {patient_id}_{YYYY-MM-DD}
    patient_id = Column(String(64), nullable=False, index=True)
    summary_date = Column(String(10), nullable=False)
    timezone = Column(String(50))

    total_scheduled = Column(Integer, default=0)
    taken = Column(Integer, default=0)
    partial = Column(Integer, default=0)
    missed = Column(Integer, default=0)
    skipped = Column(Integer, default=0)
    snoozed = Column(Integer, default=0)
    adherence_rate = Column(Float)  # None when nothing was scheduled
    on_time_rate = Column(Float)
    average_delay_minutes = Column(Float)

    medication_breakdown = Column(JSON, default=dict)
    archived_event_ids = Column(JSON, default=list)
    corrections = Column(JSON, default=list)

    created_by = Column(String(64), default="daily_archiver")
    created_at = Column(UTCDateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("patient_id", "summary_date", name="uq_daily_summary_patient_date"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "date": self.summary_date,
            "timezone": self.timezone,
            "total_scheduled": self.total_scheduled,
            "taken": self.taken,
            "partial": self.partial,
            "missed": self.missed,
            "skipped": self.skipped,
            "snoozed": self.snoozed,
            "adherence_rate": self.adherence_rate,
            "on_time_rate": self.on_time_rate,
            "average_delay_minutes": self.average_delay_minutes,
            "medication_breakdown": self.medication_breakdown or {},
            "archived_events": {
                "total_archived": len(self.archived_event_ids or []),
                "event_ids": self.archived_event_ids or [],
            },
            "corrections": self.corrections or [],
            "created_at": self.created_at,
        }


class FamilyAccess(Base):
    """Capability lookup: what a family member may do for a patient"""
    __tablename__ = TableNames.FAMILY_ACCESS

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    family_member_id = Column(String(64), nullable=False, index=True)
    relationship_label = Column(String(50))

    status = Column(_enum(FamilyAccessStatus), nullable=False, default=FamilyAccessStatus.PENDING)
    can_view_medications = Column(Boolean, default=True)
    can_edit_medications = Column(Boolean, default=False)
    can_receive_notifications = Column(Boolean, default=True)
    is_emergency_contact = Column(Boolean, default=False)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("patient_id", "family_member_id", name="uq_family_access_pair"),
    )

    @property
    def is_active(self) -> bool:
        return self.status == FamilyAccessStatus.ACTIVE


class NotificationContact(Base):
    """Contact data available for a recipient"""
    __tablename__ = TableNames.NOTIFICATION_CONTACTS

    user_id = Column(String(64), primary_key=True)
    display_name = Column(String(200))
    email = Column(String(255))
    phone = Column(String(30))
    push_token = Column(String(500))
    timezone = Column(String(50))
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    def available_channels(self) -> list:
        channels = []
        if self.email:
            channels.append(NotificationChannel.EMAIL)
        if self.phone:
            channels.append(NotificationChannel.SMS)
        if self.push_token:
            channels.append(NotificationChannel.PUSH)
        return channels


class NotificationPreference(Base):
    """A recipient's notification settings for one patient"""
    __tablename__ = TableNames.NOTIFICATION_PREFERENCES

    id = Column(Integer, primary_key=True, index=True)
    patient_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)

    channels = Column(JSON, default=list)
    level = Column(_enum(NotificationLevel), nullable=False, default=NotificationLevel.ALL)
    quiet_hours_enabled = Column(Boolean, default=True)
    quiet_hours_start = Column(String(5), default="22:00")
    quiet_hours_end = Column(String(5), default="07:00")

    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("patient_id", "user_id", name="uq_notification_pref_pair"),
    )

    def to_dict(self) -> dict:
        return {
            "patient_id": self.patient_id,
            "user_id": self.user_id,
            "channels": self.channels or [],
            "level": self.level.value,
            "quiet_hours": {
                "enabled": self.quiet_hours_enabled,
                "start": self.quiet_hours_start,
                "end": self.quiet_hours_end,
            },
        }


class Notification(Base):
    """Durable outgoing notification, one per recipient per channel"""
    __tablename__ = TableNames.NOTIFICATIONS

    id = Column(String(32), primary_key=True, default=_new_id)
    dedupe_key = Column(String(255), unique=True, nullable=False)

    patient_id = Column(String(64), nullable=False, index=True)
    command_id = Column(String(32))
    source_event_id = Column(String(32))
    recipient_id = Column(String(64), nullable=False)
    trigger = Column(String(50), nullable=False)

    channel = Column(_enum(NotificationChannel), nullable=False)
    priority = Column(_enum(NotificationPriority), nullable=False, default=NotificationPriority.NORMAL)
    status = Column(_enum(NotificationStatus), nullable=False, default=NotificationStatus.PENDING)

    address = Column(String(500))
    subject = Column(String(255))
    body = Column(Text, nullable=False)
    payload = Column(JSON, default=dict)

    attempts = Column(Integer, nullable=False, default=0)
    max_retries = Column(Integer, nullable=False, default=3)
    next_attempt_at = Column(UTCDateTime, nullable=False, default=utcnow)
    deferred_reason = Column(String(50))
    sending_started_at = Column(UTCDateTime)
    delivered_at = Column(UTCDateTime)
    message_id = Column(String(255))
    last_error = Column(Text)
    error_history = Column(JSON, default=list)

    created_at = Column(UTCDateTime, default=utcnow)
    updated_at = Column(UTCDateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_notifications_due", "status", "next_attempt_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "recipient_id": self.recipient_id,
            "trigger": self.trigger,
            "channel": self.channel.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_at": self.next_attempt_at,
            "deferred_reason": self.deferred_reason,
            "delivered_at": self.delivered_at,
            "message_id": self.message_id,
            "last_error": self.last_error,
            "subject": self.subject,
            "body": self.body,
        }


class AdherenceRollup(Base):
    """Recomputable analytics document for a patient or medication window"""
    __tablename__ = TableNames.ADHERENCE_ANALYTICS

    id = Column(String(200), primary_key=True)
    patient_id = Column(String(64), nullable=False, index=True)
    command_id = Column(String(32))
    period = Column(String(20), default="custom")  # custom, weekly, monthly
    window_start = Column(String(10), nullable=False)
    window_end = Column(String(10), nullable=False)

    metrics = Column(JSON, default=dict)
    risk_level = Column(String(20))
    patterns = Column(JSON, default=list)
    computed_at = Column(UTCDateTime, default=utcnow)


class JobRun(Base):
    """Per-patient checkpoint for a scheduled job window"""
    __tablename__ = TableNames.JOB_RUNS

    id = Column(Integer, primary_key=True, index=True)
    job_name = Column(String(50), nullable=False)
    window_key = Column(String(50), nullable=False)
    patient_id = Column(String(64), nullable=False)

    status = Column(_enum(JobRunStatus), nullable=False, default=JobRunStatus.RUNNING)
    attempts = Column(Integer, nullable=False, default=0)
    result = Column(JSON, default=dict)
    error = Column(Text)
    started_at = Column(UTCDateTime, default=utcnow)
    finished_at = Column(UTCDateTime)

    __table_args__ = (
        UniqueConstraint("job_name", "window_key", "patient_id", name="uq_job_run_unit"),
    )
