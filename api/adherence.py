"""
Adherence API Router
Endpoints for adherence rollups and archived daily summaries
"""

from typing import Optional
from datetime import date, timedelta
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_subject, get_services, authorize
from api.schemas.adherence import (
    AdherenceRollupResponse,
    DailySummaryList,
)
from exceptions import ValidationError
from services.access_service import Permission
from services.container import ServiceContainer
from tools.time_utils import local_date


router = APIRouter(prefix="/adherence", tags=["adherence"])


@router.get("/{patient_id}", response_model=AdherenceRollupResponse)
async def get_adherence(
    patient_id: str,
    start: Optional[date] = Query(None, description="First local date (inclusive)"),
    end: Optional[date] = Query(None, description="Last local date (inclusive)"),
    days: int = Query(30, ge=1, le=366),
    command_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """
    Adherence metrics for a patient-local date window

    Defaults to the last **days** days ending today. Doses that are not yet
    due are not counted; a window with nothing scheduled reports a null rate.
    """
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    if end is None:
        end = local_date(services.clock(), services.preferences.patient_timezone(db, patient_id))
    if start is None:
        start = end - timedelta(days=days - 1)
    if start > end:
        raise ValidationError.for_field("start", "Must not be after end")

    return await services.analytics.compute_rollup(db, patient_id, start, end, command_id=command_id)


@router.get("/{patient_id}/daily-summaries", response_model=DailySummaryList)
async def get_daily_summaries(
    patient_id: str,
    start: Optional[date] = Query(None),
    end: Optional[date] = Query(None),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """Closed-out days written by the daily archiver"""
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    summaries = await services.archive.list_summaries(db, patient_id, start=start, end=end)
    return {
        "patient_id": patient_id,
        "summaries": [s.to_dict() for s in summaries],
        "total": len(summaries),
    }
