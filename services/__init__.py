"""
Services Module
Business logic layer for the DoseLedger application
"""

from services.preference_service import PreferenceService
from services.access_service import AccessService, Permission
from services.event_service import EventService, derive_dose_states
from services.command_service import CommandService
from services.analytics_service import AnalyticsService
from services.archive_service import ArchiveService


__all__ = [
    "PreferenceService",
    "AccessService",
    "Permission",
    "EventService",
    "derive_dose_states",
    "CommandService",
    "AnalyticsService",
    "ArchiveService",
]
