"""
Analytics Service
Adherence rollups, streaks, risk levels and pattern detection over the event log
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field, asdict
from datetime import datetime, date, timedelta
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from config import settings, engine_defaults
from models import (
    MedicationCommand, MedicationEvent, AdherenceRollup, EventType, MedicationStatus,
)
from services.event_service import EventService, DoseState, derive_dose_states
from services.preference_service import PreferenceService
from tools.time_utils import Clock, utcnow, day_bounds, local_date, iter_dates


logger = logging.getLogger(__name__)


def _rate(numerator: int, denominator: int) -> Optional[float]:
    if not denominator:
        return None
    return round(numerator / denominator * 100, 1)


def risk_level_for(adherence_rate: Optional[float]) -> Optional[str]:
    """Fixed thresholds: >=90 low, >=70 medium, >=50 high, else critical."""
    if adherence_rate is None:
        return None
    for threshold, level in engine_defaults.RISK_THRESHOLDS:
        if adherence_rate >= threshold:
            return level
    return "critical"


@dataclass
class AdherenceMetrics:
    """Folded counts and rates for one window"""
    scheduled: int = 0
    taken: int = 0
    partial: int = 0
    missed: int = 0
    skipped: int = 0
    snoozed: int = 0
    pending: int = 0
    on_time: int = 0
    timing_distribution: Dict[str, int] = field(
        default_factory=lambda: {"early": 0, "on_time": 0, "late": 0, "very_late": 0}
    )
    adherence_rate: Optional[float] = None
    on_time_rate: Optional[float] = None
    average_delay_minutes: Optional[float] = None
    longest_streak: int = 0
    current_streak: int = 0
    risk_level: Optional[str] = None
    daily: Dict[str, Dict[str, Any]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _counted(states: Iterable[DoseState]) -> List[DoseState]:
    """Rescheduled doses moved to another slot and are counted there."""
    return [s for s in states if s.status != "rescheduled"]


def compute_metrics(states: Iterable[DoseState], tz_name: str, days: List[date]) -> AdherenceMetrics:
    """
    adherence = (full + partial taken) / scheduled, as a percentage.
    A streak day has at least one scheduled dose and no missed doses.
    """
    metrics = AdherenceMetrics()
    delays = []
    daily = {d: {"scheduled": 0, "taken": 0, "missed": 0} for d in days}

    for state in _counted(states):
        metrics.scheduled += 1
        day = local_date(state.scheduled_for, tz_name)
        bucket = daily.setdefault(day, {"scheduled": 0, "taken": 0, "missed": 0})
        bucket["scheduled"] += 1

        if state.is_taken:
            metrics.taken += 1
            bucket["taken"] += 1
            if state.is_partial:
                metrics.partial += 1
            if state.is_on_time:
                metrics.on_time += 1
            if state.timing_category in metrics.timing_distribution:
                metrics.timing_distribution[state.timing_category] += 1
            if state.minutes_late is not None:
                delays.append(max(state.minutes_late, 0))
        elif state.status == "missed":
            metrics.missed += 1
            bucket["missed"] += 1
        elif state.status == "skipped":
            metrics.skipped += 1
        else:
            metrics.pending += 1
        if state.snooze_count:
            metrics.snoozed += 1

    metrics.adherence_rate = _rate(metrics.taken, metrics.scheduled)
    metrics.on_time_rate = _rate(metrics.on_time, metrics.taken)
    metrics.average_delay_minutes = round(sum(delays) / len(delays), 2) if delays else None
    metrics.risk_level = risk_level_for(metrics.adherence_rate)

    ordered_days = sorted(daily)
    run = 0
    for day in ordered_days:
        info = daily[day]
        if info["scheduled"] and not info["missed"]:
            run += 1
            metrics.longest_streak = max(metrics.longest_streak, run)
        else:
            run = 0

    trailing = list(reversed(ordered_days))
    while trailing and not daily[trailing[0]]["scheduled"]:
        trailing.pop(0)
    for day in trailing:
        info = daily[day]
        if info["scheduled"] and not info["missed"]:
            metrics.current_streak += 1
        else:
            break

    metrics.daily = {
        d.isoformat(): {**info, "adherence_rate": _rate(info["taken"], info["scheduled"])}
        for d, info in sorted(daily.items())
    }
    return metrics


def find_patterns(states: Iterable[DoseState], tz_name: str, days: List[date], config=settings) -> List[Dict[str, Any]]:
    """
    Pattern checks for one medication:
    consecutive missed doses, weekday/weekend gap and a 7-day decline.
    """
    counted = sorted(_counted(states), key=lambda s: s.scheduled_for)
    patterns = []

    longest_run = run = 0
    for state in counted:
        if state.status == "missed":
            run += 1
            longest_run = max(longest_run, run)
        elif state.status in ("taken", "skipped"):
            run = 0
    if longest_run >= config.PATTERN_CONSECUTIVE_MISSED:
        patterns.append({
            "pattern_type": "consecutive_missed",
            "severity": "high",
            "description": f"{longest_run} doses missed in a row",
            "count": longest_run,
        })

    weekday = {"scheduled": 0, "taken": 0}
    weekend = {"scheduled": 0, "taken": 0}
    for state in counted:
        target = weekend if local_date(state.scheduled_for, tz_name).weekday() >= 5 else weekday
        target["scheduled"] += 1
        target["taken"] += int(state.is_taken)
    weekday_rate = _rate(weekday["taken"], weekday["scheduled"])
    weekend_rate = _rate(weekend["taken"], weekend["scheduled"])
    if weekday_rate is not None and weekend_rate is not None:
        gap = round(abs(weekday_rate - weekend_rate), 1)
        if gap > config.PATTERN_WEEKEND_GAP_POINTS:
            lower = "weekends" if weekend_rate < weekday_rate else "weekdays"
            patterns.append({
                "pattern_type": "weekday_weekend_gap",
                "severity": "medium",
                "description": f"Adherence is {gap} points lower on {lower}",
                "weekday_rate": weekday_rate,
                "weekend_rate": weekend_rate,
                "gap": gap,
            })

    recent_days = sorted(days)[-7:]
    per_day = defaultdict(lambda: [0, 0])
    for state in counted:
        day = local_date(state.scheduled_for, tz_name)
        if day in recent_days:
            per_day[day][0] += 1
            per_day[day][1] += int(state.is_taken)
    rates = [per_day[d][1] / per_day[d][0] * 100 for d in recent_days if per_day[d][0]]
    if len(rates) >= 4:
        half = len(rates) // 2
        earlier = sum(rates[:half]) / half
        later = sum(rates[-half:]) / half
        decline = round(earlier - later, 1)
        if decline > config.PATTERN_TREND_DECLINE_POINTS:
            patterns.append({
                "pattern_type": "declining_trend",
                "severity": "medium",
                "description": f"Adherence dropped {decline} points over the last 7 days",
                "earlier_rate": round(earlier, 1),
                "later_rate": round(later, 1),
                "decline": decline,
            })

    return patterns


class AnalyticsService:
    """
    Read-only aggregation over the event log. Every rollup can be
    recomputed from scratch after a correction.
    """

    def __init__(
        self,
        event_service: EventService,
        preference_service: PreferenceService,
        config=settings,
        clock: Clock = utcnow,
    ):
        self.events = event_service
        self.preferences = preference_service
        self.config = config
        self.clock = clock

    async def _load_states(
        self,
        db: Session,
        patient_id: str,
        start: date,
        end: date,
        tz_name: str,
        now: datetime,
        command_id: Optional[str] = None,
    ) -> List[DoseState]:
        window_start, _ = day_bounds(start, tz_name)
        _, window_end = day_bounds(end, tz_name)
        events = await self.events.list_events(
            db,
            patient_id=patient_id,
            command_id=command_id,
            start=window_start,
            end=min(window_end, now + timedelta(seconds=1)),
            include_archived=True,
        )
        return list(derive_dose_states(events).values())

    async def compute_rollup(
        self,
        db: Session,
        patient_id: str,
        start: date,
        end: date,
        command_id: Optional[str] = None,
        period: str = "custom",
        persist: bool = True,
        now: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """
        Per-medication and patient-wide metrics for local dates [start, end].
        Doses scheduled after now are not counted yet.
        """
        now = now or self.clock()
        tz_name = self.preferences.patient_timezone(db, patient_id)
        days = list(iter_dates(start, end))
        states = await self._load_states(db, patient_id, start, end, tz_name, now, command_id=command_id)

        by_command: Dict[str, List[DoseState]] = defaultdict(list)
        for state in states:
            by_command[state.command_id].append(state)

        names = {}
        if by_command:
            for command in db.query(MedicationCommand).filter(MedicationCommand.id.in_(list(by_command))).all():
                names[command.id] = command.name

        medications = {}
        patterns = []
        for cmd_id, cmd_states in sorted(by_command.items()):
            metrics = compute_metrics(cmd_states, tz_name, days)
            found = find_patterns(cmd_states, tz_name, days, self.config)
            medications[cmd_id] = {"name": names.get(cmd_id), **metrics.to_dict(), "patterns": found}
            patterns.extend({**p, "command_id": cmd_id} for p in found)

        overall = compute_metrics(states, tz_name, days)
        rollup_id = f"{patient_id}_{command_id or 'all'}_{period}_{start.isoformat()}_{end.isoformat()}"
        result = {
            "id": rollup_id,
            "patient_id": patient_id,
            "command_id": command_id,
            "period": period,
            "window": {"start": start.isoformat(), "end": end.isoformat(), "timezone": tz_name},
            "overall": overall.to_dict(),
            "medications": medications,
            "patterns": patterns,
            "risk_level": overall.risk_level,
            "computed_at": now,
        }

        if persist:
            rollup = db.get(AdherenceRollup, rollup_id) or AdherenceRollup(id=rollup_id)
            rollup.patient_id = patient_id
            rollup.command_id = command_id
            rollup.period = period
            rollup.window_start = start.isoformat()
            rollup.window_end = end.isoformat()
            rollup.metrics = {"overall": overall.to_dict(), "medications": medications}
            rollup.risk_level = overall.risk_level
            rollup.patterns = patterns
            rollup.computed_at = now
            db.add(rollup)
            db.commit()

        logger.info(
            f"Adherence rollup for patient {patient_id} {start}..{end}: "
            f"{overall.adherence_rate}% ({overall.taken}/{overall.scheduled})"
        )
        return result

    async def detect_patterns(self, db: Session, patient_id: str, now: Optional[datetime] = None) -> List[MedicationEvent]:
        """
        Run pattern checks for each active medication and append a
        pattern_detected event per finding. A finding already reported
        for the same local day is not reported again.
        """
        now = now or self.clock()
        tz_name = self.preferences.patient_timezone(db, patient_id)
        end = local_date(now, tz_name)
        start = end - timedelta(days=self.config.PATTERN_WINDOW_DAYS - 1)
        days = list(iter_dates(start, end))
        window_key = end.isoformat()

        commands = db.query(MedicationCommand).filter(
            MedicationCommand.patient_id == patient_id,
            MedicationCommand.status == MedicationStatus.ACTIVE,
        ).all()

        appended = []
        for command in commands:
            states = await self._load_states(db, patient_id, start, end, tz_name, now, command_id=command.id)
            found = find_patterns(states, tz_name, days, self.config)
            if not found:
                continue

            reported = {
                (e.event_data or {}).get("pattern_type")
                for e in db.query(MedicationEvent).filter(
                    MedicationEvent.command_id == command.id,
                    MedicationEvent.event_type == EventType.PATTERN_DETECTED,
                ).all()
                if (e.event_data or {}).get("window_key") == window_key
            }

            for pattern in found:
                if pattern["pattern_type"] in reported:
                    continue
                event = await self.events.append_event(
                    db,
                    command.id,
                    EventType.PATTERN_DETECTED,
                    event_data={**pattern, "window_key": window_key, "medication_name": command.name},
                    created_by="analytics",
                    trigger_source="analytics",
                )
                appended.append(event)
                logger.info(f"Pattern {pattern['pattern_type']} detected for medication {command.id}")

        return appended
