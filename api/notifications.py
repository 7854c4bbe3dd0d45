"""
Notifications API Router
Endpoints for notification preferences, contact details and delivery history
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from api.deps import get_db, get_current_subject, get_services, authorize
from api.schemas.notification import (
    NotificationPreferenceUpdate,
    NotificationPreferenceResponse,
    ContactUpdate,
    ContactResponse,
    NotificationList,
    DeliveryStats,
)
from config import engine_defaults
from models import NotificationContact, NotificationStatus
from services.access_service import Permission
from services.container import ServiceContainer


router = APIRouter(prefix="/notifications", tags=["notifications"])


def _contact_dict(contact: Optional[NotificationContact], user_id: str) -> dict:
    if contact is None:
        return {"user_id": user_id, "channels": []}
    return {
        "user_id": contact.user_id,
        "display_name": contact.display_name,
        "email": contact.email,
        "phone": contact.phone,
        "push_token": contact.push_token,
        "timezone": contact.timezone,
        "channels": [c.value for c in contact.available_channels()],
    }


# ==================== CONTACT ====================

@router.get("/contact", response_model=ContactResponse)
async def get_contact(
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
):
    """The caller's own contact details"""
    return _contact_dict(db.get(NotificationContact, subject), subject)


@router.put("/contact", response_model=ContactResponse)
async def update_contact(
    contact_data: ContactUpdate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    contact = await services.dispatcher.upsert_contact(
        db, subject, **contact_data.model_dump(exclude_unset=True)
    )
    return _contact_dict(contact, subject)


# ==================== PREFERENCES ====================

@router.get("/preferences/{patient_id}", response_model=NotificationPreferenceResponse)
async def get_notification_preferences(
    patient_id: str,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    """The caller's notification settings for a patient, or the defaults"""
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    pref = services.dispatcher.get_preference(db, patient_id, subject)
    if pref is not None:
        return pref.to_dict()
    return {
        "patient_id": patient_id,
        "user_id": subject,
        "channels": list(engine_defaults.NOTIFICATION_CHANNELS),
        "level": "all",
        "quiet_hours": {
            "enabled": True,
            "start": engine_defaults.QUIET_HOURS_START,
            "end": engine_defaults.QUIET_HOURS_END,
        },
    }


@router.put("/preferences/{patient_id}", response_model=NotificationPreferenceResponse)
async def update_notification_preferences(
    patient_id: str,
    pref_data: NotificationPreferenceUpdate,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    pref = await services.dispatcher.upsert_preference(
        db,
        patient_id,
        subject,
        channels=[c.value for c in pref_data.channels] if pref_data.channels is not None else None,
        level=pref_data.level.value if pref_data.level else None,
        quiet_hours=pref_data.quiet_hours.model_dump() if pref_data.quiet_hours else None,
    )
    return pref.to_dict()


# ==================== HISTORY ====================

@router.get("/patients/{patient_id}", response_model=NotificationList)
async def list_notifications(
    patient_id: str,
    recipient_id: Optional[str] = Query(None),
    status_filter: Optional[NotificationStatus] = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    notifications = await services.dispatcher.list_notifications(
        db, patient_id, recipient_id=recipient_id, status=status_filter, limit=limit
    )
    return {
        "notifications": [n.to_dict() for n in notifications],
        "total": len(notifications),
    }


@router.get("/patients/{patient_id}/stats", response_model=DeliveryStats)
async def get_delivery_stats(
    patient_id: str,
    db: Session = Depends(get_db),
    subject: str = Depends(get_current_subject),
    services: ServiceContainer = Depends(get_services),
):
    await authorize(db, services, subject, patient_id, Permission.VIEW)
    return await services.dispatcher.delivery_stats(db, patient_id)
