"""
Notification Dispatcher
Turns domain events into permission-filtered, quiet-hours-aware, multi-channel deliveries
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings, engine_defaults
from exceptions import GatewayError, ValidationError
from models import (
    MedicationCommand, MedicationEvent, Notification, NotificationContact, NotificationPreference,
    EventType, NotificationChannel, NotificationPriority, NotificationStatus, NotificationLevel,
)
from services.access_service import AccessService, Permission, has_permission
from tools.notification_gateways import (
    NotificationGateway, NotificationTrigger, OutboundMessage, render_message,
)
from tools.time_utils import Clock, utcnow, quiet_window_end, is_valid_hhmm, get_zone, format_hhmm


logger = logging.getLogger(__name__)


# Family permissions a trigger needs beyond receiving notifications
TRIGGER_PERMISSIONS: Dict[NotificationTrigger, List[Permission]] = {
    NotificationTrigger.MISSED_DOSE: [Permission.VIEW],
    NotificationTrigger.PATTERN_DETECTED: [Permission.VIEW],
    NotificationTrigger.EMERGENCY_ALERT: [Permission.VIEW],
    NotificationTrigger.RESPONSIBILITY_NEEDED: [Permission.EDIT],
    NotificationTrigger.WEEKLY_SUMMARY: [Permission.VIEW],
    NotificationTrigger.MONTHLY_SUMMARY: [Permission.VIEW],
}

EMERGENCY_SEVERITIES = ("critical", "emergency")


@dataclass
class QuietHours:
    enabled: bool = True
    start: str = engine_defaults.QUIET_HOURS_START
    end: str = engine_defaults.QUIET_HOURS_END

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["QuietHours"]:
        if not data:
            return None
        return cls(
            enabled=data.get("enabled", True),
            start=data.get("start", engine_defaults.QUIET_HOURS_START),
            end=data.get("end", engine_defaults.QUIET_HOURS_END),
        )


@dataclass
class Recipient:
    """A resolved notification recipient"""
    user_id: str
    role: str  # patient, family, emergency_contact
    channels: List[NotificationChannel]
    addresses: Dict[NotificationChannel, str]
    quiet_hours: QuietHours
    timezone: str
    display_name: Optional[str] = None


@dataclass
class DispatchRequest:
    """What to send, about whom, and how urgently"""
    patient_id: str
    trigger: NotificationTrigger
    priority: NotificationPriority
    dedupe_scope: str
    context: Dict[str, Any] = field(default_factory=dict)
    command_id: Optional[str] = None
    source_event_id: Optional[str] = None
    patient_only: bool = False
    channel_override: Optional[List[NotificationChannel]] = None
    quiet_hours_override: Optional[QuietHours] = None

    @property
    def is_emergency(self) -> bool:
        return self.priority == NotificationPriority.EMERGENCY


class NotificationDispatcher:
    """
    Durable, at-least-once notification fan-out.

    Lifecycle per notification:
        pending -> sending -> delivered
                           -> retrying (transient failure, linear backoff)
                           -> failed   (terminal, logged, never raised)
    """

    def __init__(
        self,
        gateways: Dict[NotificationChannel, NotificationGateway],
        access_service: AccessService,
        event_service=None,
        config=settings,
        clock: Clock = utcnow,
    ):
        self.gateways = gateways
        self.access = access_service
        self.events = event_service
        self.config = config
        self.clock = clock

    # ==================== PREFERENCES ====================

    def get_preference(self, db: Session, patient_id: str, user_id: str) -> Optional[NotificationPreference]:
        return db.query(NotificationPreference).filter(
            NotificationPreference.patient_id == patient_id,
            NotificationPreference.user_id == user_id,
        ).first()

    async def upsert_preference(
        self,
        db: Session,
        patient_id: str,
        user_id: str,
        channels: Optional[List[str]] = None,
        level: Optional[str] = None,
        quiet_hours: Optional[Dict[str, Any]] = None,
    ) -> NotificationPreference:
        errors = []
        for i, channel in enumerate(channels or []):
            if channel not in {c.value for c in NotificationChannel}:
                errors.append({"field": f"channels[{i}]", "message": f"Unknown channel '{channel}'"})
        if level is not None and level not in {lvl.value for lvl in NotificationLevel}:
            errors.append({"field": "level", "message": f"Unknown level '{level}'"})
        for key in ("start", "end"):
            if quiet_hours and key in quiet_hours and not is_valid_hhmm(quiet_hours[key]):
                errors.append({"field": f"quiet_hours.{key}", "message": "Expected 24-hour HH:MM"})
        if errors:
            raise ValidationError("Invalid notification preferences", details=errors)

        pref = self.get_preference(db, patient_id, user_id)
        if pref is None:
            pref = NotificationPreference(
                patient_id=patient_id,
                user_id=user_id,
                channels=list(engine_defaults.NOTIFICATION_CHANNELS),
            )
            db.add(pref)
        if channels is not None:
            pref.channels = list(channels)
        if level is not None:
            pref.level = NotificationLevel(level)
        if quiet_hours:
            if "enabled" in quiet_hours:
                pref.quiet_hours_enabled = bool(quiet_hours["enabled"])
            pref.quiet_hours_start = quiet_hours.get("start", pref.quiet_hours_start or engine_defaults.QUIET_HOURS_START)
            pref.quiet_hours_end = quiet_hours.get("end", pref.quiet_hours_end or engine_defaults.QUIET_HOURS_END)
        db.commit()
        db.refresh(pref)
        return pref

    async def upsert_contact(self, db: Session, user_id: str, **fields) -> NotificationContact:
        contact = db.get(NotificationContact, user_id)
        if contact is None:
            contact = NotificationContact(user_id=user_id)
            db.add(contact)
        for name in ("display_name", "email", "phone", "push_token", "timezone"):
            if name in fields:
                setattr(contact, name, fields[name])
        db.commit()
        db.refresh(contact)
        return contact

    # ==================== RECIPIENTS ====================

    def _build_recipient(
        self,
        db: Session,
        patient_id: str,
        user_id: str,
        role: str,
        patient_tz: str,
    ) -> Recipient:
        contact = db.get(NotificationContact, user_id)
        pref = self.get_preference(db, patient_id, user_id)

        addresses: Dict[NotificationChannel, str] = {}
        if contact is not None:
            if contact.email:
                addresses[NotificationChannel.EMAIL] = contact.email
            if contact.phone:
                addresses[NotificationChannel.SMS] = contact.phone
            if contact.push_token:
                addresses[NotificationChannel.PUSH] = contact.push_token

        if pref is not None:
            channels = [NotificationChannel(c) for c in (pref.channels or [])]
            quiet = QuietHours(
                enabled=bool(pref.quiet_hours_enabled),
                start=pref.quiet_hours_start or engine_defaults.QUIET_HOURS_START,
                end=pref.quiet_hours_end or engine_defaults.QUIET_HOURS_END,
            )
        else:
            channels = [NotificationChannel(c) for c in engine_defaults.NOTIFICATION_CHANNELS]
            quiet = QuietHours()

        return Recipient(
            user_id=user_id,
            role=role,
            channels=channels,
            addresses=addresses,
            quiet_hours=quiet,
            timezone=(contact.timezone if contact and contact.timezone else patient_tz),
            display_name=contact.display_name if contact else None,
        )

    def resolve_recipients(self, db: Session, request: DispatchRequest, patient_tz: str) -> List[Recipient]:
        """
        The patient, plus active family members holding the trigger's
        permissions. Emergency-only members join only for emergencies,
        and every active emergency contact joins an emergency.
        """
        recipients = [self._build_recipient(db, request.patient_id, request.patient_id, "patient", patient_tz)]
        if request.patient_only:
            return recipients

        required = TRIGGER_PERMISSIONS.get(request.trigger, [Permission.VIEW])
        for access in self.access.list_members(db, request.patient_id):
            member_id = access.family_member_id
            if member_id == request.patient_id:
                continue

            if request.is_emergency and access.is_emergency_contact:
                recipients.append(self._build_recipient(db, request.patient_id, member_id, "emergency_contact", patient_tz))
                continue

            if not has_permission(access, Permission.RECEIVE_NOTIFICATIONS):
                continue
            if not all(has_permission(access, p) for p in required):
                continue

            pref = self.get_preference(db, request.patient_id, member_id)
            if pref is not None and pref.level == NotificationLevel.EMERGENCY_ONLY and not request.is_emergency:
                logger.debug(f"Skipping {member_id}: emergency-only preference")
                continue

            recipients.append(self._build_recipient(db, request.patient_id, member_id, "family", patient_tz))

        return recipients

    def select_channels(self, recipient: Recipient, request: DispatchRequest) -> List[NotificationChannel]:
        """Stated preference intersected with contact data; emergencies use every available channel."""
        available = [c for c in NotificationChannel if c in recipient.addresses]
        if request.is_emergency:
            return available
        wanted = request.channel_override or recipient.channels
        return [c for c in available if c in wanted]

    # ==================== ENQUEUE ====================

    def _patient_context(self, db: Session, request: DispatchRequest) -> Dict[str, Any]:
        contact = db.get(NotificationContact, request.patient_id)
        context = {"patient_name": (contact.display_name if contact and contact.display_name else "the patient")}
        if request.command_id:
            command = db.get(MedicationCommand, request.command_id)
            if command is not None:
                context.setdefault("medication", command.name)
                context.setdefault("dosage", command.dosage)
        context.update(request.context)
        return context

    async def dispatch(self, db: Session, request: DispatchRequest, patient_tz: Optional[str] = None) -> List[Notification]:
        """
        Enqueue one notification per recipient per channel.

        Re-dispatching the same request is a no-op thanks to the dedupe key.
        Sends inside a recipient's quiet hours are deferred to the window end.
        """
        now = self.clock()
        patient_tz = patient_tz or self.config.DEFAULT_TIMEZONE
        context = self._patient_context(db, request)
        created = []

        for recipient in self.resolve_recipients(db, request, patient_tz):
            channels = self.select_channels(recipient, request)
            if not channels:
                logger.warning(
                    f"No deliverable channel for {recipient.user_id} "
                    f"({request.trigger.value}, patient {request.patient_id})"
                )
                continue

            send_at = now
            deferred_reason = None
            quiet = request.quiet_hours_override or recipient.quiet_hours
            if not request.is_emergency and quiet.enabled:
                window_end = quiet_window_end(now, quiet.start, quiet.end, recipient.timezone)
                if window_end is not None:
                    send_at = window_end
                    deferred_reason = "quiet_hours"

            recipient_context = {**context, "recipient_name": recipient.display_name or "there"}

            for channel in channels:
                dedupe_key = f"{request.dedupe_scope}:{recipient.user_id}:{channel.value}"
                exists = db.query(Notification.id).filter(Notification.dedupe_key == dedupe_key).first()
                if exists:
                    continue

                subject, body = render_message(request.trigger, channel, recipient_context)
                notification = Notification(
                    dedupe_key=dedupe_key,
                    patient_id=request.patient_id,
                    command_id=request.command_id,
                    source_event_id=request.source_event_id,
                    recipient_id=recipient.user_id,
                    trigger=request.trigger.value,
                    channel=channel,
                    priority=request.priority,
                    status=NotificationStatus.PENDING,
                    address=recipient.addresses[channel],
                    subject=subject,
                    body=body,
                    payload={
                        "role": recipient.role,
                        "scheduled_for": context.get("scheduled_for_iso"),
                    },
                    max_retries=self.config.NOTIFICATION_MAX_RETRIES,
                    next_attempt_at=send_at,
                    deferred_reason=deferred_reason,
                    created_at=now,
                    updated_at=now,
                )
                db.add(notification)
                created.append(notification)

        try:
            db.commit()
        except IntegrityError:
            # A concurrent redelivery enqueued the same keys
            db.rollback()
            logger.info(f"Notifications for {request.dedupe_scope} already enqueued")
            return []

        for notification in created:
            if notification.deferred_reason:
                logger.info(
                    f"Deferred {notification.channel.value} to {notification.recipient_id} "
                    f"until {notification.next_attempt_at.isoformat()} (quiet hours)"
                )
        logger.info(f"Enqueued {len(created)} notification(s) for {request.trigger.value} ({request.dedupe_scope})")
        return created

    def request_for_event(self, db: Session, event: MedicationEvent, tz_name: str) -> Optional[DispatchRequest]:
        """Map a domain event onto a dispatch request; None for events nobody is told about."""
        data = event.event_data or {}
        context: Dict[str, Any] = {}
        if event.scheduled_for is not None:
            local = event.scheduled_for.astimezone(get_zone(tz_name))
            context["scheduled_time"] = format_hhmm(local.hour * 60 + local.minute)
            context["scheduled_for_iso"] = event.scheduled_for.isoformat()

        if event.event_type == EventType.DOSE_MISSED:
            trigger, priority = NotificationTrigger.MISSED_DOSE, NotificationPriority.HIGH
        elif event.event_type == EventType.PATTERN_DETECTED:
            trigger, priority = NotificationTrigger.PATTERN_DETECTED, NotificationPriority.HIGH
            context["pattern_description"] = data.get("description", data.get("pattern_type", ""))
        elif event.event_type == EventType.ALERT_TRIGGERED:
            if data.get("alert_type") == "responsibility_needed":
                trigger, priority = NotificationTrigger.RESPONSIBILITY_NEEDED, NotificationPriority.HIGH
            else:
                trigger = NotificationTrigger.EMERGENCY_ALERT
                severity = str(data.get("severity", "high")).lower()
                priority = NotificationPriority.EMERGENCY if severity in EMERGENCY_SEVERITIES else NotificationPriority.HIGH
            context["alert_message"] = data.get("message", "A medication alert was raised")
        else:
            return None

        return DispatchRequest(
            patient_id=event.patient_id,
            trigger=trigger,
            priority=priority,
            dedupe_scope=f"event:{event.id}",
            context=context,
            command_id=event.command_id,
            source_event_id=event.id,
        )

    async def handle_event(self, db: Session, event: MedicationEvent) -> List[Notification]:
        """Event-log subscriber."""
        tz_name = self.config.DEFAULT_TIMEZONE
        if self.events is not None:
            tz_name = self.events.preferences.patient_timezone(db, event.patient_id)
        request = self.request_for_event(db, event, tz_name)
        if request is None:
            return []
        return await self.dispatch(db, request, patient_tz=tz_name)

    # ==================== DELIVERY ====================

    def _backoff(self, attempts: int) -> timedelta:
        """Linear: 5, 10, 15 minutes..."""
        return timedelta(minutes=self.config.NOTIFICATION_BACKOFF_MINUTES * attempts)

    def _record_failure(self, notification: Notification, error: str, transient: bool, now: datetime) -> None:
        notification.last_error = error
        notification.error_history = list(notification.error_history or []) + [{
            "attempt": notification.attempts,
            "error": error,
            "at": now.isoformat(),
        }]
        notification.sending_started_at = None
        notification.updated_at = now

        if transient and notification.attempts <= notification.max_retries:
            notification.status = NotificationStatus.RETRYING
            notification.next_attempt_at = now + self._backoff(notification.attempts)
            logger.warning(
                f"Notification {notification.id} ({notification.channel.value}) failed attempt "
                f"{notification.attempts}, retrying at {notification.next_attempt_at.isoformat()}: {error}"
            )
        else:
            notification.status = NotificationStatus.FAILED
            logger.error(
                f"Notification {notification.id} ({notification.channel.value} to {notification.recipient_id}) "
                f"failed permanently after {notification.attempts} attempt(s): {error}"
            )

    async def deliver(self, db: Session, notification: Notification) -> Notification:
        """
        One delivery attempt. The sending mark is committed before the
        gateway call so a crash leaves a recoverable record.
        """
        now = self.clock()
        notification.status = NotificationStatus.SENDING
        notification.sending_started_at = now
        notification.attempts = (notification.attempts or 0) + 1
        notification.updated_at = now
        db.commit()

        gateway = self.gateways.get(notification.channel)
        if gateway is None:
            self._record_failure(notification, f"No gateway for {notification.channel.value}", False, now)
            db.commit()
            return notification

        message = OutboundMessage(
            channel=notification.channel,
            address=notification.address,
            body=notification.body,
            subject=notification.subject,
            data={"notification_id": notification.id, "trigger": notification.trigger},
        )
        try:
            receipt = await gateway.send(message)
        except GatewayError as e:
            self._record_failure(notification, e.message, e.transient, self.clock())
            db.commit()
            return notification
        except Exception as e:
            logger.exception(f"Unexpected gateway error for notification {notification.id}")
            self._record_failure(notification, str(e), True, self.clock())
            db.commit()
            return notification

        notification.status = NotificationStatus.DELIVERED
        notification.delivered_at = receipt.delivered_at
        notification.message_id = receipt.message_id
        notification.sending_started_at = None
        notification.updated_at = self.clock()
        db.commit()
        logger.info(f"Delivered notification {notification.id} via {notification.channel.value} ({receipt.message_id})")

        if notification.trigger == NotificationTrigger.DOSE_REMINDER.value:
            await self._record_reminder_sent(db, notification)
        return notification

    async def _record_reminder_sent(self, db: Session, notification: Notification) -> None:
        if self.events is None or not notification.command_id:
            return
        scheduled_iso = (notification.payload or {}).get("scheduled_for")
        if not scheduled_iso:
            return
        scheduled_for = datetime.fromisoformat(scheduled_iso)
        already = db.query(MedicationEvent.id).filter(
            MedicationEvent.command_id == notification.command_id,
            MedicationEvent.event_type == EventType.REMINDER_SENT,
            MedicationEvent.scheduled_for == scheduled_for,
        ).first()
        if already:
            return
        try:
            await self.events.append_event(
                db,
                notification.command_id,
                EventType.REMINDER_SENT,
                event_data={"notification_id": notification.id, "channel": notification.channel.value},
                scheduled_for=scheduled_for,
                created_by="dispatcher",
                trigger_source="reminder",
            )
        except ValidationError as e:
            logger.warning(f"Could not record reminder_sent for {notification.command_id}: {e.message}")

    async def process_due(self, db: Session, now: Optional[datetime] = None, limit: Optional[int] = None) -> Dict[str, int]:
        """Attempt every pending or retrying notification whose time has come."""
        now = now or self.clock()
        due = db.query(Notification).filter(
            Notification.status.in_([NotificationStatus.PENDING, NotificationStatus.RETRYING]),
            Notification.next_attempt_at <= now,
        ).order_by(Notification.next_attempt_at, Notification.created_at).limit(
            limit or self.config.NOTIFICATION_BATCH_SIZE
        ).all()

        stats = {"attempted": 0, "delivered": 0, "retrying": 0, "failed": 0}
        for notification in due:
            await self.deliver(db, notification)
            stats["attempted"] += 1
            if notification.status == NotificationStatus.DELIVERED:
                stats["delivered"] += 1
            elif notification.status == NotificationStatus.RETRYING:
                stats["retrying"] += 1
            else:
                stats["failed"] += 1

        if due:
            logger.info(f"Processed {stats['attempted']} notification(s): {stats}")
        return stats

    async def recover_stuck(self, db: Session, now: Optional[datetime] = None) -> int:
        """
        Notifications left in sending past the timeout were never confirmed.
        Count the attempt as a transient failure so they retry or fail.
        """
        now = now or self.clock()
        cutoff = now - timedelta(minutes=self.config.NOTIFICATION_SENDING_TIMEOUT_MINUTES)
        stuck = db.query(Notification).filter(
            Notification.status == NotificationStatus.SENDING,
            Notification.sending_started_at < cutoff,
        ).all()

        for notification in stuck:
            self._record_failure(notification, "Delivery not confirmed before timeout", True, now)
        if stuck:
            db.commit()
            logger.warning(f"Recovered {len(stuck)} notification(s) stuck in sending")
        return len(stuck)

    async def delivery_stats(self, db: Session, patient_id: str) -> Dict[str, Any]:
        rows = db.query(
            Notification.status, Notification.channel, func.count(Notification.id)
        ).filter(Notification.patient_id == patient_id).group_by(Notification.status, Notification.channel).all()

        by_status: Dict[str, int] = {}
        by_channel: Dict[str, int] = {}
        total = 0
        for status, channel, count in rows:
            by_status[status.value] = by_status.get(status.value, 0) + count
            by_channel[channel.value] = by_channel.get(channel.value, 0) + count
            total += count

        delivered = by_status.get(NotificationStatus.DELIVERED.value, 0)
        return {
            "patient_id": patient_id,
            "total": total,
            "by_status": by_status,
            "by_channel": by_channel,
            "delivery_rate": round(delivered / total * 100, 1) if total else None,
        }

    async def list_notifications(
        self,
        db: Session,
        patient_id: str,
        recipient_id: Optional[str] = None,
        status: Optional[NotificationStatus] = None,
        limit: int = 50,
    ) -> List[Notification]:
        query = db.query(Notification).filter(Notification.patient_id == patient_id)
        if recipient_id:
            query = query.filter(Notification.recipient_id == recipient_id)
        if status:
            query = query.filter(Notification.status == NotificationStatus(status))
        return query.order_by(Notification.created_at.desc()).limit(limit).all()
