"""
Time Preferences API Router
Endpoints for patient time buckets, schedule preview and current bucket
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_subject, get_services, authorize
from api.schemas.preference import (
    PreferencesUpdate,
    PreferencesResponse,
    CompilePreviewRequest,
    CompilePreviewResponse,
    CurrentBucketResponse,
)
from services.access_service import Permission
from services.container import ServiceContainer
from tools.schedule_compiler import ScheduleOverrides, compile_schedule


router = APIRouter(prefix="/patients/{patient_id}/time-preferences", tags=["time-preferences"])


@router.get("/", response_model=PreferencesResponse)
async def get_time_preferences(
    patient_id: str,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Stored preferences, or the defaults with is_default=true"""
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    return await services.preferences.get_preferences(db, patient_id)


@router.put("/", response_model=PreferencesResponse)
async def update_time_preferences(
    patient_id: str,
    update_data: PreferencesUpdate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Merge bucket, mapping, wake/bed and timezone changes

    Malformed times are rejected; range, overlap and spacing problems are
    stored as warnings. With **recompile_medications** the patient's
    bucket-driven schedules are recompiled against the new preferences.
    """
    await authorize(db, services, subject, patient_id, Permission.EDIT)
    model = await services.preferences.upsert_preferences(
        db,
        patient_id,
        time_buckets=update_data.bucket_changes(),
        frequency_mapping=update_data.mapping_changes(),
        wake_time=update_data.wake_time,
        bed_time=update_data.bed_time,
        timezone=update_data.timezone,
    )
    response = model.to_dict()
    response["is_default"] = False
    if update_data.recompile_medications:
        updated = await services.commands.recompile_for_patient(db, patient_id, actor=subject)
        response["recompiled"] = len(updated)
    return response


@router.post("/compile", response_model=CompilePreviewResponse)
async def preview_schedule(
    patient_id: str,
    request: CompilePreviewRequest,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Compile times for a frequency against the patient's preferences without saving anything"""
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    prefs = services.preferences.load(db, patient_id)
    overrides = ScheduleOverrides(
        custom_times=list(request.times or []),
        bucket_overrides=dict(request.bucket_overrides or {}),
        buckets=list(request.buckets or []),
    )
    return compile_schedule(request.frequency, prefs, overrides).to_dict()


@router.get("/current-bucket", response_model=CurrentBucketResponse)
async def get_current_bucket(
    patient_id: str,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    return await services.preferences.current_bucket(db, patient_id)
