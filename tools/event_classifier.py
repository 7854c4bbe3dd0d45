"""
Event Classifier
Timing and dose-amount annotations computed when a dose event is appended
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional


DOSE_AMOUNT_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([a-zA-Z%]*)")


@dataclass(frozen=True)
class TimingClassification:
    minutes_late: int
    is_on_time: bool
    very_late: bool
    category: str  # early, on_time, late, very_late
    grace_minutes: int
    grace_window_end: datetime

    def to_dict(self) -> dict:
        return {
            "minutes_late": self.minutes_late,
            "is_on_time": self.is_on_time,
            "very_late": self.very_late,
            "category": self.category,
            "grace_minutes": self.grace_minutes,
            "grace_window_end": self.grace_window_end.isoformat(),
        }


@dataclass(frozen=True)
class DoseClassification:
    dose_percentage: Optional[float]
    category: str  # full, partial, adjusted


def classify_timing(scheduled_for: datetime, event_timestamp: datetime, grace_minutes: int) -> TimingClassification:
    """
    minutes_late is negative for early doses. A dose exactly at the end of
    the grace window is on time; past twice the grace it is very late.
    """
    delta = event_timestamp - scheduled_for
    grace = timedelta(minutes=grace_minutes)
    minutes_late = int(delta.total_seconds() // 60)

    # judged on the whole minutes that are stored with the event
    is_on_time = minutes_late <= grace_minutes
    very_late = minutes_late > 2 * grace_minutes

    if delta < timedelta(0):
        category = "early"
    elif is_on_time:
        category = "on_time"
    elif very_late:
        category = "very_late"
    else:
        category = "late"

    return TimingClassification(
        minutes_late=minutes_late,
        is_on_time=is_on_time,
        very_late=very_late,
        category=category,
        grace_minutes=grace_minutes,
        grace_window_end=scheduled_for + grace,
    )


def parse_dose_amount(value: Optional[str]):
    """'500mg' -> (500.0, 'mg'); None when there is no leading number."""
    if value is None:
        return None
    match = DOSE_AMOUNT_PATTERN.match(str(value))
    if not match:
        return None
    return float(match.group(1)), match.group(2).lower()


def classify_dose(
    prescribed: str,
    actual: Optional[str] = None,
    dose_percentage: Optional[float] = None,
) -> DoseClassification:
    """
    Classify a taken dose as full, partial or adjusted.

    An explicit percentage wins; otherwise it is derived from actual vs.
    prescribed amounts. Mismatched units cannot be compared and are
    reported as adjusted.
    """
    if dose_percentage is None:
        if actual is None:
            return DoseClassification(100.0, "full")

        prescribed_amount = parse_dose_amount(prescribed)
        actual_amount = parse_dose_amount(actual)
        if not prescribed_amount or not actual_amount or prescribed_amount[0] == 0:
            return DoseClassification(None, "adjusted")
        if actual_amount[1] and prescribed_amount[1] and actual_amount[1] != prescribed_amount[1]:
            return DoseClassification(None, "adjusted")
        dose_percentage = actual_amount[0] / prescribed_amount[0] * 100

    dose_percentage = round(float(dose_percentage), 1)
    if dose_percentage == 100.0:
        category = "full"
    elif dose_percentage < 100.0:
        category = "partial"
    else:
        category = "adjusted"
    return DoseClassification(dose_percentage, category)
