"""
Notification Schemas
Pydantic models for notification preferences, contacts and delivery records
"""

from typing import Optional, List, Dict, Any
from datetime import datetime
from pydantic import BaseModel, EmailStr, Field

from models import NotificationChannel, NotificationLevel


class QuietHoursSchema(BaseModel):
    enabled: bool = True
    start: str = "22:00"
    end: str = "07:00"


class NotificationPreferenceUpdate(BaseModel):
    """A recipient's settings for one patient"""
    channels: Optional[List[NotificationChannel]] = None
    level: Optional[NotificationLevel] = None
    quiet_hours: Optional[QuietHoursSchema] = None


class NotificationPreferenceResponse(BaseModel):
    patient_id: str
    user_id: str
    channels: List[str]
    level: str
    quiet_hours: QuietHoursSchema


class ContactUpdate(BaseModel):
    display_name: Optional[str] = Field(None, max_length=200)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(None, max_length=30)
    push_token: Optional[str] = Field(None, max_length=500)
    timezone: Optional[str] = Field(None, max_length=50)


class ContactResponse(BaseModel):
    user_id: str
    display_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    push_token: Optional[str] = None
    timezone: Optional[str] = None
    channels: List[str] = Field(default_factory=list)


class NotificationResponse(BaseModel):
    id: str
    patient_id: str
    recipient_id: str
    trigger: str
    channel: str
    priority: str
    status: str
    attempts: int
    next_attempt_at: Optional[datetime] = None
    deferred_reason: Optional[str] = None
    delivered_at: Optional[datetime] = None
    message_id: Optional[str] = None
    last_error: Optional[str] = None
    subject: Optional[str] = None
    body: str


class NotificationList(BaseModel):
    notifications: List[NotificationResponse]
    total: int


class DeliveryStats(BaseModel):
    patient_id: str
    total: int
    by_status: Dict[str, int]
    by_channel: Dict[str, int]
    delivery_rate: Optional[float] = None


class JobTriggerResponse(BaseModel):
    job_name: str
    report: Dict[str, Any]
