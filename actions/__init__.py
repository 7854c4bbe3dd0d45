"""
Actions Module
Outbound side effects driven by the medication event log
"""

from .notification_dispatcher import (
    NotificationDispatcher,
    DispatchRequest,
    Recipient,
    QuietHours,
    TRIGGER_PERMISSIONS,
)


__all__ = [
    "NotificationDispatcher",
    "DispatchRequest",
    "Recipient",
    "QuietHours",
    "TRIGGER_PERMISSIONS",
]
