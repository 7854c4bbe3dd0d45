"""
Medication Schemas
Pydantic models for medication commands and their events
"""

from typing import Optional, List, Dict, Any, Literal
from datetime import datetime, date
from pydantic import BaseModel, Field, field_validator

from models import MedicationStatus, RiskClass


def _require_offset(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        raise ValueError("must include a UTC offset")
    return value


# ==================== SCHEDULE / REMINDERS / GRACE ====================

class FlexibleScheduling(BaseModel):
    """Time-bucket driven scheduling inputs"""
    custom_times: Optional[List[str]] = None
    bucket_overrides: Optional[Dict[str, str]] = None
    buckets: Optional[List[str]] = None


class ScheduleInput(BaseModel):
    """Schedule inputs; times are compiled when omitted"""
    frequency: str
    times: Optional[List[str]] = None
    days_of_week: Optional[List[int]] = Field(None, description="0 = Monday ... 6 = Sunday")
    day_of_month: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: Optional[str] = None
    flexible: Optional[FlexibleScheduling] = None


class SchedulePatch(BaseModel):
    frequency: Optional[str] = None
    times: Optional[List[str]] = None
    days_of_week: Optional[List[int]] = None
    day_of_month: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: Optional[str] = None
    flexible: Optional[FlexibleScheduling] = None


class QuietHoursInput(BaseModel):
    enabled: bool = True
    start: str = "22:00"
    end: str = "07:00"


class RemindersInput(BaseModel):
    enabled: bool = True
    minutes_before: List[int] = Field(default_factory=list)
    channels: List[str] = Field(default_factory=list)
    quiet_hours: Optional[QuietHoursInput] = None


class GracePeriodInput(BaseModel):
    default_minutes: Optional[int] = Field(None, ge=0)
    risk_class: RiskClass = RiskClass.STANDARD
    time_slot_overrides: Dict[str, int] = Field(default_factory=dict)
    weekend_multiplier: float = Field(1.0, gt=0)
    holiday_multiplier: float = Field(1.0, gt=0)


# ==================== REQUEST SCHEMAS ====================

class MedicationCreate(BaseModel):
    """Schema for creating a medication command"""
    patient_id: str = Field(..., min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=255)
    dosage: str = Field(..., min_length=1, max_length=100)
    generic_name: Optional[str] = Field(None, max_length=255)
    route: Optional[str] = Field(None, max_length=50)
    instructions: Optional[str] = None
    schedule: ScheduleInput
    reminders: Optional[RemindersInput] = None
    grace_period: Optional[GracePeriodInput] = None


class MedicationUpdate(BaseModel):
    """Partial update; expected_version turns on optimistic checking"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    dosage: Optional[str] = Field(None, min_length=1, max_length=100)
    generic_name: Optional[str] = Field(None, max_length=255)
    route: Optional[str] = Field(None, max_length=50)
    instructions: Optional[str] = None
    schedule: Optional[SchedulePatch] = None
    reminders: Optional[RemindersInput] = None
    grace_period: Optional[GracePeriodInput] = None
    expected_version: Optional[int] = None
    reason: Optional[str] = Field(None, max_length=500)


class StatusChange(BaseModel):
    status: MedicationStatus
    reason: Optional[str] = Field(None, max_length=500)


class DoseEventCreate(BaseModel):
    """A dose outcome recorded against one scheduled slot"""
    event_type: Literal["dose_taken", "dose_missed", "dose_skipped", "dose_snoozed", "dose_rescheduled"]
    scheduled_for: Optional[datetime] = None
    event_timestamp: Optional[datetime] = None
    actual_dose: Optional[str] = None
    dose_percentage: Optional[float] = Field(None, ge=0, le=200)
    skip_reason: Optional[str] = Field(None, max_length=255)
    snooze_minutes: Optional[int] = Field(None, gt=0)
    rescheduled_to: Optional[datetime] = None
    notes: Optional[str] = None

    @field_validator("scheduled_for", "event_timestamp", "rescheduled_to")
    @classmethod
    def check_offsets(cls, value):
        return _require_offset(value)

    def event_data(self) -> Dict[str, Any]:
        data = self.model_dump(
            mode="json",
            exclude={"event_type", "scheduled_for", "event_timestamp"},
            exclude_none=True,
        )
        return data


class ReminderAcknowledge(BaseModel):
    scheduled_for: datetime
    notification_id: Optional[str] = None

    @field_validator("scheduled_for")
    @classmethod
    def check_offset(cls, value):
        return _require_offset(value)


class UndoRequest(BaseModel):
    corrected_action: Optional[Literal["missed", "skipped", "scheduled"]] = None
    reason: Optional[str] = Field(None, max_length=500)


# ==================== RESPONSE SCHEMAS ====================

class StatusInfo(BaseModel):
    current: str
    is_active: bool
    reason: Optional[str] = None
    changed_at: Optional[datetime] = None
    changed_by: Optional[str] = None


class CommandMetadata(BaseModel):
    version: int
    warnings: List[Dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[str] = None
    updated_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class MedicationResponse(BaseModel):
    """Schema for a medication command"""
    id: str
    patient_id: str
    name: str
    generic_name: Optional[str] = None
    dosage: str
    route: Optional[str] = None
    instructions: Optional[str] = None
    schedule: Dict[str, Any]
    reminders: Dict[str, Any] = Field(default_factory=dict)
    grace_period: Dict[str, Any] = Field(default_factory=dict)
    status: StatusInfo
    metadata: CommandMetadata


class MedicationList(BaseModel):
    medications: List[MedicationResponse]
    total: int
    active_count: int


class EventResponse(BaseModel):
    """Schema for a medication event"""
    id: str
    command_id: str
    patient_id: str
    event_type: str
    event_version: int
    event_data: Dict[str, Any] = Field(default_factory=dict)
    timing: Dict[str, Any]
    undoes_event_id: Optional[str] = None
    trigger_source: Optional[str] = None
    created_by: Optional[str] = None
    archive_status: Dict[str, Any]


class EventList(BaseModel):
    events: List[EventResponse]
    total: int


class DoseStatus(BaseModel):
    command_id: str
    medication_name: str
    dosage: str
    scheduled_for: datetime
    local_time: str
    status: str
    taken_event_id: Optional[str] = None
    taken_at: Optional[datetime] = None
    minutes_late: Optional[int] = None
    is_on_time: Optional[bool] = None
    timing_category: Optional[str] = None
    dose_category: Optional[str] = None
    dose_percentage: Optional[float] = None
    grace_window_end: Optional[datetime] = None
    snooze_count: int = 0


class TodayDoses(BaseModel):
    patient_id: str
    doses: List[DoseStatus]
    total: int
    taken: int
    pending: int
