"""
Preference Service
Time-bucket preference store: per-patient named time windows and frequency mapping
"""

import copy
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from config import settings, engine_defaults
from exceptions import DataIntegrityWarning, ValidationError
from models import PatientTimePreferences, MedicationCommand
from tools.schedule_compiler import TimePreferenceSet, DOSES_PER_DAY, coerce_frequency
from tools.time_utils import (
    Clock, utcnow, is_valid_hhmm, is_valid_timezone, parse_hhmm, in_clock_window,
    get_zone, format_hhmm,
)


logger = logging.getLogger(__name__)


def _range_minutes(earliest: str, latest: str) -> set:
    start, end = parse_hhmm(earliest), parse_hhmm(latest)
    if start < end:
        return set(range(start, end))
    return set()


def validate_preferences(prefs: TimePreferenceSet) -> List[DataIntegrityWarning]:
    """
    Validate a preference set.

    Malformed clock strings and unknown time zones are hard errors. Range,
    default-time, overlap and spacing problems come back as warnings so an
    operator override never blocks scheduling.
    """
    errors = []
    if not is_valid_timezone(prefs.timezone):
        errors.append({"field": "timezone", "message": f"Unknown time zone '{prefs.timezone}'"})
    for name in ("wake_time", "bed_time"):
        if not is_valid_hhmm(getattr(prefs, name)):
            errors.append({"field": name, "message": "Expected 24-hour HH:MM"})

    for bucket, config in prefs.time_buckets.items():
        for key in ("default_time", "earliest", "latest"):
            value = config.get(key)
            if not is_valid_hhmm(value):
                errors.append({
                    "field": f"time_buckets.{bucket}.{key}",
                    "message": f"'{value}' is not a 24-hour HH:MM time",
                })

    if errors:
        raise ValidationError("Invalid time preferences", details=errors)

    warnings: List[DataIntegrityWarning] = []
    active = prefs.active_buckets()

    for bucket in active:
        config = prefs.time_buckets[bucket]
        earliest, latest, default = config["earliest"], config["latest"], config["default_time"]
        if parse_hhmm(earliest) >= parse_hhmm(latest):
            warnings.append(DataIntegrityWarning(
                "invalid_bucket_range",
                f"{bucket}: earliest {earliest} is not before latest {latest}",
                field=f"time_buckets.{bucket}",
            ))
            continue
        default_m = parse_hhmm(default)
        if not (parse_hhmm(earliest) <= default_m <= parse_hhmm(latest)):
            warnings.append(DataIntegrityWarning(
                "default_out_of_range",
                f"{bucket}: default {default} is outside {earliest}-{latest}",
                field=f"time_buckets.{bucket}.default_time",
            ))

    for i, first in enumerate(active):
        for second in active[i + 1:]:
            a, b = prefs.time_buckets[first], prefs.time_buckets[second]
            if _range_minutes(a["earliest"], a["latest"]) & _range_minutes(b["earliest"], b["latest"]):
                warnings.append(DataIntegrityWarning(
                    "overlapping_buckets",
                    f"{first} and {second} have overlapping ranges",
                    field="time_buckets",
                ))

    for frequency_name, mapping in prefs.frequency_mapping.items():
        referenced = list(mapping.get("buckets", []))
        if mapping.get("preferred_bucket"):
            referenced.append(mapping["preferred_bucket"])
        for bucket in referenced:
            if bucket not in prefs.time_buckets:
                warnings.append(DataIntegrityWarning(
                    "unknown_bucket",
                    f"{frequency_name} references undefined bucket '{bucket}'",
                    field=f"frequency_mapping.{frequency_name}",
                ))

        spacing = mapping.get("spacing") or {}
        minimum = float(spacing.get("minimum_hours", 0))
        preferred = float(spacing.get("preferred_hours", minimum))
        if minimum > preferred:
            warnings.append(DataIntegrityWarning(
                "spacing_inverted",
                f"{frequency_name}: minimum spacing {minimum}h exceeds preferred {preferred}h",
                field=f"frequency_mapping.{frequency_name}.spacing",
            ))
        try:
            doses = DOSES_PER_DAY.get(coerce_frequency(frequency_name))
        except ValidationError:
            doses = None
        if doses and doses > 1 and minimum * doses > 24:
            warnings.append(DataIntegrityWarning(
                "spacing_unsatisfiable",
                f"{frequency_name}: {doses} doses cannot be {minimum}h apart in one day",
                field=f"frequency_mapping.{frequency_name}.spacing",
            ))

    return warnings


class PreferenceService:
    """
    Service for patient time-bucket preferences
    """

    def __init__(self, config=settings, clock: Clock = utcnow):
        self.config = config
        self.clock = clock

    def _get_model(self, db: Session, patient_id: str) -> Optional[PatientTimePreferences]:
        return db.query(PatientTimePreferences).filter(
            PatientTimePreferences.patient_id == patient_id
        ).first()

    def load(self, db: Session, patient_id: str) -> TimePreferenceSet:
        """Stored preferences, or the defaults in the configured time zone."""
        model = self._get_model(db, patient_id)
        if model is None:
            return TimePreferenceSet.defaults(timezone=self.config.DEFAULT_TIMEZONE)
        return TimePreferenceSet.from_model(model)

    def patient_timezone(self, db: Session, patient_id: str) -> str:
        model = self._get_model(db, patient_id)
        return model.timezone if model else self.config.DEFAULT_TIMEZONE

    def command_timezone(self, db: Session, command: MedicationCommand) -> str:
        return (command.schedule or {}).get("timezone") or self.patient_timezone(db, command.patient_id)

    async def get_preferences(self, db: Session, patient_id: str) -> Dict[str, Any]:
        """Preference document; is_default tells whether anything was ever stored."""
        model = self._get_model(db, patient_id)
        if model is not None:
            data = model.to_dict()
            data["is_default"] = False
            return data

        prefs = TimePreferenceSet.defaults(timezone=self.config.DEFAULT_TIMEZONE)
        return {
            "patient_id": patient_id,
            "time_buckets": prefs.time_buckets,
            "frequency_mapping": prefs.frequency_mapping,
            "wake_time": prefs.wake_time,
            "bed_time": prefs.bed_time,
            "timezone": prefs.timezone,
            "version": 0,
            "warnings": [],
            "is_default": True,
        }

    async def upsert_preferences(
        self,
        db: Session,
        patient_id: str,
        time_buckets: Optional[Dict[str, Dict[str, Any]]] = None,
        frequency_mapping: Optional[Dict[str, Dict[str, Any]]] = None,
        wake_time: Optional[str] = None,
        bed_time: Optional[str] = None,
        timezone: Optional[str] = None,
    ) -> PatientTimePreferences:
        """
        Merge changes into a patient's preferences.

        Bucket and mapping entries are merged key by key, so a caller can
        move one bucket's default time without restating the rest.

        Raises:
            ValidationError: malformed HH:MM or unknown time zone
        """
        model = self._get_model(db, patient_id)
        current = TimePreferenceSet.from_model(model) if model else TimePreferenceSet.defaults(
            timezone=self.config.DEFAULT_TIMEZONE
        )

        buckets = copy.deepcopy(current.time_buckets)
        for name, changes in (time_buckets or {}).items():
            merged = dict(buckets.get(name, {"label": name.replace("_", " ").title(), "is_active": True}))
            merged.update(changes or {})
            buckets[name] = merged

        mapping = copy.deepcopy(current.frequency_mapping)
        for name, changes in (frequency_mapping or {}).items():
            coerce_frequency(name)
            merged = dict(mapping.get(name, {}))
            merged.update(changes or {})
            mapping[name] = merged

        candidate = TimePreferenceSet(
            time_buckets=buckets,
            frequency_mapping=mapping,
            wake_time=wake_time or current.wake_time,
            bed_time=bed_time or current.bed_time,
            timezone=timezone or current.timezone,
        )
        warnings = validate_preferences(candidate)
        for warning in warnings:
            logger.warning(f"Time preferences for patient {patient_id}: {warning.message}")

        if model is None:
            model = PatientTimePreferences(patient_id=patient_id, version=0)
            db.add(model)

        model.time_buckets = candidate.time_buckets
        model.frequency_mapping = candidate.frequency_mapping
        model.wake_time = candidate.wake_time
        model.bed_time = candidate.bed_time
        model.timezone = candidate.timezone
        model.warnings = [w.to_dict() for w in warnings]
        model.version = (model.version or 0) + 1

        db.commit()
        db.refresh(model)

        logger.info(f"Updated time preferences for patient {patient_id} (version {model.version})")
        return model

    async def current_bucket(self, db: Session, patient_id: str, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Which bucket the patient is in right now, and the next one coming up."""
        prefs = self.load(db, patient_id)
        local_now = (now or self.clock()).astimezone(get_zone(prefs.timezone))
        minute = local_now.hour * 60 + local_now.minute

        current = None
        upcoming = []
        for name in prefs.active_buckets():
            config = prefs.time_buckets[name]
            if in_clock_window(minute, config["earliest"], config["latest"]):
                current = name
            default_m = parse_hhmm(config["default_time"])
            upcoming.append(((default_m - minute) % (24 * 60), name))

        next_bucket = None
        for _, name in sorted(upcoming):
            if name != current:
                next_bucket = name
                break

        return {
            "patient_id": patient_id,
            "local_time": format_hhmm(minute),
            "timezone": prefs.timezone,
            "current_bucket": current,
            "next_bucket": next_bucket,
            "next_bucket_time": prefs.time_buckets[next_bucket]["default_time"] if next_bucket else None,
        }
