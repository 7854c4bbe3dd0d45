"""
Grace Period Resolver
Allowed lateness for a dose, from the medication's risk class
"""

from dataclasses import dataclass, field
from datetime import date
from typing import Dict, Iterable, Optional

from config import engine_defaults
from models import RiskClass


@dataclass(frozen=True)
class GracePolicy:
    """A command's grace_period block"""
    risk_class: RiskClass = RiskClass.STANDARD
    default_minutes: Optional[int] = None
    time_slot_overrides: Dict[str, int] = field(default_factory=dict)
    weekend_multiplier: float = 1.0
    holiday_multiplier: float = 1.0

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "GracePolicy":
        data = data or {}
        return cls(
            risk_class=RiskClass(data.get("risk_class", RiskClass.STANDARD.value)),
            default_minutes=data.get("default_minutes"),
            time_slot_overrides=dict(data.get("time_slot_overrides") or {}),
            weekend_multiplier=float(data.get("weekend_multiplier", 1.0)),
            holiday_multiplier=float(data.get("holiday_multiplier", 1.0)),
        )


def base_grace_minutes(risk_class) -> int:
    return engine_defaults.GRACE_MINUTES[RiskClass(risk_class).value]


def resolve_grace_minutes(
    policy: GracePolicy,
    time_slot: Optional[str] = None,
    local_day: Optional[date] = None,
    holidays: Iterable[str] = (),
) -> int:
    """
    Grace minutes for one dose.

    The base is the time-slot override if one exists, else the policy's
    default minutes, else the risk-class table. Weekend and holiday
    multipliers then apply multiplicatively. Rounded, never negative.
    """
    if time_slot and time_slot in policy.time_slot_overrides:
        minutes = float(policy.time_slot_overrides[time_slot])
    elif policy.default_minutes is not None:
        minutes = float(policy.default_minutes)
    else:
        minutes = float(base_grace_minutes(policy.risk_class))

    if local_day is not None:
        if local_day.weekday() >= 5:
            minutes *= policy.weekend_multiplier
        if local_day.isoformat() in set(holidays):
            minutes *= policy.holiday_multiplier

    return max(0, int(round(minutes)))
