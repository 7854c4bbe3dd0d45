"""
Service wiring for the app, the job runner and tests
"""

from dataclasses import dataclass
from typing import Dict, Optional

from config import settings
from models import NotificationChannel
from services.access_service import AccessService
from services.analytics_service import AnalyticsService
from services.archive_service import ArchiveService
from services.command_service import CommandService
from services.event_service import EventService
from services.preference_service import PreferenceService
from tools.notification_gateways import NotificationGateway, build_gateways
from tools.time_utils import Clock, utcnow


@dataclass
class ServiceContainer:
    preferences: PreferenceService
    access: AccessService
    events: EventService
    commands: CommandService
    analytics: AnalyticsService
    archive: ArchiveService
    dispatcher: "NotificationDispatcher"
    config: object
    clock: Clock


def build_services(
    clock: Clock = utcnow,
    gateways: Optional[Dict[NotificationChannel, NotificationGateway]] = None,
    config=settings,
) -> ServiceContainer:
    """Construct every service against one clock and config, and subscribe the dispatcher to the event log."""
    from actions.notification_dispatcher import NotificationDispatcher

    preferences = PreferenceService(config=config, clock=clock)
    access = AccessService()
    events = EventService(preferences, config=config, clock=clock)
    dispatcher = NotificationDispatcher(
        gateways if gateways is not None else build_gateways(config),
        access,
        event_service=events,
        config=config,
        clock=clock,
    )
    events.subscribe(dispatcher.handle_event)

    return ServiceContainer(
        preferences=preferences,
        access=access,
        events=events,
        commands=CommandService(events, preferences, config=config, clock=clock),
        analytics=AnalyticsService(events, preferences, config=config, clock=clock),
        archive=ArchiveService(preferences, config=config, clock=clock),
        dispatcher=dispatcher,
        config=config,
        clock=clock,
    )
