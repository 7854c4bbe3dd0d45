"""
Schedule Compiler
Turns a dosing frequency plus a patient's time buckets into concrete daily HH:MM times.

compile_schedule() is a pure function: no clock, no I/O, no randomness.
Each frequency is dispatched through _COMPILERS to a small branch function.
"""

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from config import engine_defaults
from exceptions import DataIntegrityWarning, ValidationError
from models import Frequency
from tools.time_utils import (
    MINUTES_PER_DAY, format_hhmm, in_clock_window, is_valid_hhmm, parse_hhmm,
)


logger = logging.getLogger(__name__)


DOSES_PER_DAY: Dict[Frequency, Optional[int]] = {
    Frequency.DAILY: 1,
    Frequency.WEEKLY: 1,
    Frequency.MONTHLY: 1,
    Frequency.TWICE_DAILY: 2,
    Frequency.THREE_TIMES_DAILY: 3,
    Frequency.FOUR_TIMES_DAILY: 4,
    Frequency.AS_NEEDED: 0,
    Frequency.CUSTOM: None,
}


@dataclass
class TimePreferenceSet:
    """Snapshot of a patient's time buckets used as compiler input"""
    time_buckets: Dict[str, Dict[str, Any]]
    frequency_mapping: Dict[str, Dict[str, Any]]
    wake_time: str = engine_defaults.WAKE_TIME
    bed_time: str = engine_defaults.BED_TIME
    timezone: str = "UTC"

    @classmethod
    def defaults(cls, timezone: str = "UTC") -> "TimePreferenceSet":
        buckets = copy.deepcopy(engine_defaults.TIME_BUCKETS)
        for bucket in buckets.values():
            bucket.setdefault("is_active", True)
        return cls(
            time_buckets=buckets,
            frequency_mapping=copy.deepcopy(engine_defaults.FREQUENCY_MAPPING),
            timezone=timezone,
        )

    @classmethod
    def from_model(cls, prefs) -> "TimePreferenceSet":
        return cls(
            time_buckets=copy.deepcopy(prefs.time_buckets or {}),
            frequency_mapping=copy.deepcopy(prefs.frequency_mapping or {}),
            wake_time=prefs.wake_time or engine_defaults.WAKE_TIME,
            bed_time=prefs.bed_time or engine_defaults.BED_TIME,
            timezone=prefs.timezone,
        )

    def ordered_bucket_names(self) -> List[str]:
        """Fixed preference order: the standard buckets first, then any custom ones by name."""
        standard = [b for b in engine_defaults.BUCKET_ORDER if b in self.time_buckets]
        extra = sorted(b for b in self.time_buckets if b not in engine_defaults.BUCKET_ORDER)
        return standard + extra

    def is_active(self, bucket: str) -> bool:
        config = self.time_buckets.get(bucket)
        return bool(config) and config.get("is_active", True)

    def active_buckets(self) -> List[str]:
        return [b for b in self.ordered_bucket_names() if self.is_active(b)]

    def mapping_for(self, frequency: Frequency) -> Dict[str, Any]:
        mapping = self.frequency_mapping.get(frequency.value)
        if mapping is None:
            mapping = engine_defaults.FREQUENCY_MAPPING.get(frequency.value, {})
        return mapping

    def bucket_for_time(self, hhmm: str) -> Optional[str]:
        """Name of the first active bucket whose [earliest, latest] range contains the time."""
        minute = parse_hhmm(hhmm)
        for name in self.active_buckets():
            config = self.time_buckets[name]
            earliest, latest = config.get("earliest"), config.get("latest")
            if not (is_valid_hhmm(earliest) and is_valid_hhmm(latest)):
                continue
            if minute == parse_hhmm(latest) or in_clock_window(minute, earliest, latest):
                return name
        return None


@dataclass
class ScheduleOverrides:
    """Per-medication overrides that beat the patient defaults"""
    custom_times: List[str] = field(default_factory=list)
    bucket_overrides: Dict[str, str] = field(default_factory=dict)
    buckets: List[str] = field(default_factory=list)

    @classmethod
    def from_schedule(cls, schedule: Dict[str, Any]) -> "ScheduleOverrides":
        flexible = schedule.get("flexible") or {}
        return cls(
            custom_times=list(flexible.get("custom_times") or []),
            bucket_overrides=dict(flexible.get("bucket_overrides") or {}),
            buckets=list(flexible.get("buckets") or []),
        )


@dataclass
class CompiledSchedule:
    """Compiler output"""
    times: List[str]
    buckets: List[Optional[str]]
    strategy: str
    warnings: List[DataIntegrityWarning] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "times": list(self.times),
            "buckets": list(self.buckets),
            "strategy": self.strategy,
            "warnings": [w.to_dict() for w in self.warnings],
        }


def coerce_frequency(value) -> Frequency:
    try:
        return Frequency(value)
    except ValueError:
        raise ValidationError.for_field("schedule.frequency", f"Unknown frequency '{value}'")


def _normalize_times(times: List[str], field_name: str) -> List[str]:
    """Validate, sort and de-duplicate HH:MM strings."""
    minutes = set()
    for value in times:
        if not is_valid_hhmm(value):
            raise ValidationError.for_field(field_name, f"'{value}' is not a 24-hour HH:MM time")
        minutes.add(parse_hhmm(value))
    return [format_hhmm(m) for m in sorted(minutes)]


def _bucket_time(prefs: TimePreferenceSet, overrides: ScheduleOverrides, bucket: str) -> str:
    value = overrides.bucket_overrides.get(bucket) or prefs.time_buckets[bucket].get("default_time")
    if not is_valid_hhmm(value):
        raise ValidationError.for_field(f"time_buckets.{bucket}", f"'{value}' is not a 24-hour HH:MM time")
    return value


def _min_gap(minutes: List[int]) -> Optional[int]:
    if len(minutes) < 2:
        return None
    return min(b - a for a, b in zip(minutes, minutes[1:]))


def _redistribute(count: int, prefs: TimePreferenceSet, spacing: Dict[str, Any]) -> List[int]:
    """
    Evenly spread doses, starting at wake time:
    preferred spacing if it fits before bed, else even across the waking day,
    else even across 24 hours.
    """
    minimum = int(float(spacing.get("minimum_hours", 0)) * 60)
    preferred = int(float(spacing.get("preferred_hours", 0)) * 60)
    wake = parse_hhmm(prefs.wake_time)
    bed = parse_hhmm(prefs.bed_time)
    if bed <= wake:
        bed += MINUTES_PER_DAY
    span = bed - wake

    candidates = []
    if preferred and preferred >= minimum and preferred * (count - 1) <= span:
        candidates.append([wake + i * preferred for i in range(count)])
    if span // (count - 1) >= minimum:
        candidates.append([wake + (i * span) // (count - 1) for i in range(count)])

    for offsets in candidates:
        result = sorted(m % MINUTES_PER_DAY for m in offsets)
        gap = _min_gap(result)
        if len(set(result)) == count and gap is not None and gap >= minimum:
            return result

    return sorted((wake + (i * MINUTES_PER_DAY) // count) % MINUTES_PER_DAY for i in range(count))


def _compile_as_needed(frequency, prefs, overrides) -> CompiledSchedule:
    return CompiledSchedule(times=[], buckets=[], strategy="as_needed")


def _compile_custom(frequency, prefs, overrides) -> CompiledSchedule:
    times = _normalize_times(overrides.custom_times, "schedule.times")
    if not times:
        raise ValidationError.for_field("schedule.times", "Custom frequency requires at least one time")
    return CompiledSchedule(
        times=times,
        buckets=[prefs.bucket_for_time(t) for t in times],
        strategy="custom",
    )


def _explicit_times(frequency, prefs, overrides) -> CompiledSchedule:
    times = _normalize_times(overrides.custom_times, "schedule.times")
    warnings = []
    expected = DOSES_PER_DAY[frequency]
    if expected is not None and len(times) != expected:
        warnings.append(DataIntegrityWarning(
            "frequency_time_count_mismatch",
            f"{frequency.value} expects {expected} time(s) per day, got {len(times)}",
            field="schedule.times",
        ))
    return CompiledSchedule(
        times=times,
        buckets=[prefs.bucket_for_time(t) for t in times],
        strategy="custom",
        warnings=warnings,
    )


def _compile_single(frequency, prefs, overrides) -> CompiledSchedule:
    mapping = prefs.mapping_for(frequency) or prefs.mapping_for(Frequency.DAILY)
    wanted = overrides.buckets or [mapping.get("preferred_bucket", "morning")]
    candidates = wanted + list(mapping.get("fallback_buckets", [])) + prefs.active_buckets()

    for bucket in candidates:
        if prefs.is_active(bucket):
            return CompiledSchedule(
                times=[_bucket_time(prefs, overrides, bucket)],
                buckets=[bucket],
                strategy="buckets",
            )

    warning = DataIntegrityWarning(
        "no_active_bucket",
        "No active time bucket available, falling back to wake time",
        field="time_buckets",
    )
    return CompiledSchedule(
        times=[prefs.wake_time],
        buckets=[None],
        strategy="redistributed",
        warnings=[warning],
    )


def _compile_multi(frequency, prefs, overrides) -> CompiledSchedule:
    count = DOSES_PER_DAY[frequency]
    mapping = prefs.mapping_for(frequency)
    spacing = mapping.get("spacing", {})
    minimum = int(float(spacing.get("minimum_hours", 0)) * 60)

    wanted = overrides.buckets or list(mapping.get("buckets", []))
    selected = [b for b in wanted if prefs.is_active(b)][:count]
    for bucket in prefs.active_buckets():
        if len(selected) >= count:
            break
        if bucket not in selected:
            selected.append(bucket)

    by_minute: Dict[int, str] = {}
    for bucket in selected:
        by_minute.setdefault(parse_hhmm(_bucket_time(prefs, overrides, bucket)), bucket)
    minutes = sorted(by_minute)

    gap = _min_gap(minutes)
    if len(minutes) == count and gap is not None and gap >= minimum:
        return CompiledSchedule(
            times=[format_hhmm(m) for m in minutes],
            buckets=[by_minute[m] for m in minutes],
            strategy="buckets",
        )

    warnings = []
    if len(minutes) < count:
        reason = f"only {len(minutes)} distinct bucket time(s) available for {count} doses"
    else:
        reason = f"minimum gap {gap} min is below the {minimum} min spacing rule"
    logger.info(f"Redistributing {frequency.value} schedule: {reason}")

    redistributed = _redistribute(count, prefs, spacing)
    if _min_gap(redistributed) < minimum:
        warnings.append(DataIntegrityWarning(
            "spacing_unsatisfiable",
            f"{count} doses cannot be spaced {minimum} minutes apart within a day",
            field="frequency_mapping",
        ))
    times = [format_hhmm(m) for m in redistributed]
    return CompiledSchedule(
        times=times,
        buckets=[prefs.bucket_for_time(t) for t in times],
        strategy="redistributed",
        warnings=warnings,
    )


_COMPILERS = {
    Frequency.DAILY: _compile_single,
    Frequency.WEEKLY: _compile_single,
    Frequency.MONTHLY: _compile_single,
    Frequency.TWICE_DAILY: _compile_multi,
    Frequency.THREE_TIMES_DAILY: _compile_multi,
    Frequency.FOUR_TIMES_DAILY: _compile_multi,
    Frequency.AS_NEEDED: _compile_as_needed,
    Frequency.CUSTOM: _compile_custom,
}


def compile_schedule(
    frequency,
    preferences: TimePreferenceSet,
    overrides: Optional[ScheduleOverrides] = None,
) -> CompiledSchedule:
    """
    Compile the daily dose times for a frequency.

    Explicit custom times win over everything; per-bucket overrides win over
    the patient's bucket defaults. As-needed always compiles to no times.

    Raises:
        ValidationError: unknown frequency, malformed HH:MM, custom without times
    """
    frequency = coerce_frequency(frequency)
    overrides = overrides or ScheduleOverrides()

    for bucket, value in overrides.bucket_overrides.items():
        if not is_valid_hhmm(value):
            raise ValidationError.for_field(
                f"schedule.flexible.bucket_overrides.{bucket}",
                f"'{value}' is not a 24-hour HH:MM time",
            )

    if frequency not in (Frequency.AS_NEEDED, Frequency.CUSTOM) and overrides.custom_times:
        return _explicit_times(frequency, preferences, overrides)

    return _COMPILERS[frequency](frequency, preferences, overrides)
