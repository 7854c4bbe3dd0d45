"""
Medications API Router
Endpoints for medication commands, dose events and undo
"""

from typing import Optional, List
from datetime import datetime
from fastapi import APIRouter, Depends, status, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_subject, get_services, authorize
from api.schemas.medication import (
    MedicationCreate,
    MedicationUpdate,
    StatusChange,
    DoseEventCreate,
    ReminderAcknowledge,
    UndoRequest,
    MedicationResponse,
    MedicationList,
    EventResponse,
    EventList,
    TodayDoses,
)
from exceptions import ValidationError
from models import EventType, MedicationStatus
from services.access_service import Permission
from services.container import ServiceContainer


router = APIRouter(prefix="/medications", tags=["medications"])


def _require_offset(name: str, value: Optional[datetime]) -> None:
    if value is not None and value.tzinfo is None:
        raise ValidationError.for_field(name, "Must include a UTC offset")


async def _load_for(db, services, subject, command_id, permission):
    command = await services.commands.get_command(db, command_id)
    await authorize(db, services, subject, command.patient_id, permission)
    return command


# ==================== COMMANDS ====================

@router.post("/", response_model=MedicationResponse, status_code=status.HTTP_201_CREATED)
async def create_medication(
    medication_data: MedicationCreate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Add a medication for a patient

    - **patient_id**: Patient the medication belongs to
    - **name** / **dosage**: Medication descriptors
    - **schedule**: Frequency plus optional times; omitted times are compiled from the patient's time buckets
    """
    await authorize(db, services, subject, medication_data.patient_id, Permission.EDIT)
    data = medication_data.model_dump(mode="json", exclude_none=True, exclude={"patient_id"})
    command = await services.commands.create_command(db, medication_data.patient_id, data, actor=subject)
    return command.to_dict()


@router.get("/", response_model=MedicationList)
async def list_medications(
    patient_id: str = Query(...),
    status_filter: Optional[MedicationStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    commands = await services.commands.list_commands(db, patient_id, status=status_filter)
    return {
        "medications": [c.to_dict() for c in commands],
        "total": len(commands),
        "active_count": sum(1 for c in commands if c.is_active),
    }


@router.get("/today", response_model=TodayDoses)
async def get_today_doses(
    patient_id: str = Query(...),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Today's dose slots (patient-local day) for every active medication"""
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    doses = await services.events.today_status(db, patient_id)
    return {
        "patient_id": patient_id,
        "doses": doses,
        "total": len(doses),
        "taken": sum(1 for d in doses if d["status"] == "taken"),
        "pending": sum(1 for d in doses if d["status"] in ("scheduled", "snoozed")),
    }


@router.get("/{command_id}", response_model=MedicationResponse)
async def get_medication(
    command_id: str,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    command = await _load_for(db, services, subject, command_id, Permission.VIEW)
    return command.to_dict()


@router.patch("/{command_id}", response_model=MedicationResponse)
async def update_medication(
    command_id: str,
    update_data: MedicationUpdate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Patch a medication

    Changing frequency, times or flexible settings recompiles the schedule.
    Pass **expected_version** to fail with 409 if someone else changed it first.
    """
    await _load_for(db, services, subject, command_id, Permission.EDIT)
    patch = update_data.model_dump(mode="json", exclude_none=True, exclude={"expected_version", "reason"})
    command = await services.commands.apply_command_mutation(
        db,
        command_id,
        patch,
        actor=subject,
        expected_version=update_data.expected_version,
        reason=update_data.reason,
    )
    return command.to_dict()


@router.post("/{command_id}/status", response_model=MedicationResponse)
async def change_medication_status(
    command_id: str,
    status_data: StatusChange,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await _load_for(db, services, subject, command_id, Permission.EDIT)
    command = await services.commands.change_status(
        db, command_id, status_data.status, reason=status_data.reason, actor=subject
    )
    return command.to_dict()


@router.delete("/{command_id}", response_model=MedicationResponse)
async def discontinue_medication(
    command_id: str,
    reason: Optional[str] = Query(None, max_length=500),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Medications are never hard-deleted; this discontinues"""
    await _load_for(db, services, subject, command_id, Permission.EDIT)
    command = await services.commands.discontinue(db, command_id, reason=reason, actor=subject)
    return command.to_dict()


# ==================== EVENTS ====================

@router.post("/{command_id}/events", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def record_dose_event(
    command_id: str,
    event_data: DoseEventCreate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Record a dose outcome

    - **dose_taken**: timing is classified against the grace window
    - **dose_snoozed**: optional snooze_minutes (default 10)
    - **dose_rescheduled**: requires rescheduled_to
    """
    await _load_for(db, services, subject, command_id, Permission.EDIT)
    event = await services.events.record_dose(
        db,
        command_id,
        EventType(event_data.event_type),
        scheduled_for=event_data.scheduled_for,
        event_timestamp=event_data.event_timestamp,
        actor=subject,
        **event_data.event_data(),
    )
    return event.to_dict()


@router.post("/{command_id}/reminders/acknowledge", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def acknowledge_reminder(
    command_id: str,
    ack: ReminderAcknowledge,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await _load_for(db, services, subject, command_id, Permission.VIEW)
    event = await services.events.acknowledge_reminder(
        db, command_id, ack.scheduled_for, actor=subject, notification_id=ack.notification_id
    )
    return event.to_dict()


@router.get("/{command_id}/events", response_model=EventList)
async def list_medication_events(
    command_id: str,
    start: Optional[datetime] = Query(None),
    end: Optional[datetime] = Query(None),
    event_type: Optional[List[EventType]] = Query(None),
    include_archived: bool = Query(False),
    limit: int = Query(200, ge=1, le=1000),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Live events by default; pass include_archived=true for the full history"""
    _require_offset("start", start)
    _require_offset("end", end)
    await _load_for(db, services, subject, command_id, Permission.VIEW)
    events = await services.events.list_events(
        db,
        command_id=command_id,
        start=start,
        end=end,
        event_types=event_type,
        include_archived=include_archived,
        limit=limit,
    )
    return {"events": [e.to_dict() for e in events], "total": len(events)}


@router.post("/events/{event_id}/undo", response_model=EventResponse, status_code=status.HTTP_201_CREATED)
async def undo_dose_event(
    event_id: str,
    undo_data: UndoRequest,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Undo a taken dose within the correction window

    The original event is left untouched; a dose_taken_undone event
    referencing it is appended.
    """
    original = await services.events.get_event(db, event_id)
    await authorize(db, services, subject, original.patient_id, Permission.EDIT)
    event = await services.events.undo_event(
        db,
        event_id,
        corrected_action=undo_data.corrected_action,
        reason=undo_data.reason,
        actor=subject,
    )
    return event.to_dict()
