"""
Tests for the Analytics Service
Adherence rates, streaks, risk levels and pattern detection
"""

import pytest
from datetime import date, datetime, timezone

from models import AdherenceRollup, EventType, MedicationEvent
from services.analytics_service import risk_level_for, find_patterns
from services.event_service import DoseState
from tests.conftest import PATIENT_ID, at


MONDAY = date(2026, 3, 9)


async def taken(services, db, command_id, slot, at_time, **data):
    return await services.events.record_dose(
        db, command_id, EventType.DOSE_TAKEN, scheduled_for=slot, event_timestamp=at_time, **data
    )


async def missed(services, db, command_id, slot):
    return await services.events.record_dose(db, command_id, EventType.DOSE_MISSED, scheduled_for=slot)


# ==================== RISK LEVEL ====================

class TestRiskLevel:

    @pytest.mark.unit
    @pytest.mark.parametrize("rate,level", [
        (100.0, "low"),
        (90.0, "low"),
        (89.9, "medium"),
        (70.0, "medium"),
        (66.7, "high"),
        (50.0, "high"),
        (49.9, "critical"),
        (0.0, "critical"),
        (None, None),
    ])
    def test_thresholds(self, rate, level):
        assert risk_level_for(rate) == level


# ==================== ROLLUP ====================

class TestComputeRollup:

    @pytest.mark.asyncio
    async def test_one_day_of_doses(self, db_session, services, command):
        await taken(services, db_session, command.id, at(9, 8), at(9, 8, 5))
        await taken(services, db_session, command.id, at(9, 12), at(9, 12, 45))
        await missed(services, db_session, command.id, at(9, 18))

        result = await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY)

        overall = result["overall"]
        assert overall["scheduled"] == 3
        assert overall["taken"] == 2
        assert overall["missed"] == 1
        assert overall["adherence_rate"] == 66.7
        assert overall["on_time_rate"] == 50.0
        assert overall["average_delay_minutes"] == 25.0
        assert overall["timing_distribution"]["late"] == 1
        assert result["risk_level"] == "high"
        assert result["medications"][command.id]["name"] == "Metformin"
        assert result["window"] == {"start": "2026-03-09", "end": "2026-03-09", "timezone": "UTC"}

    @pytest.mark.asyncio
    async def test_nothing_scheduled_has_no_rate(self, db_session, services, command):
        result = await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY)

        assert result["overall"]["scheduled"] == 0
        assert result["overall"]["adherence_rate"] is None
        assert result["risk_level"] is None

    @pytest.mark.asyncio
    async def test_future_slots_are_not_counted(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_SCHEDULED, scheduled_for=at(10, 12))
        today = date(2026, 3, 10)

        before = await services.analytics.compute_rollup(db_session, PATIENT_ID, today, today, persist=False)
        after = await services.analytics.compute_rollup(
            db_session, PATIENT_ID, today, today, persist=False, now=at(10, 13),
        )

        assert before["overall"]["scheduled"] == 0
        assert after["overall"]["scheduled"] == 1
        assert after["overall"]["pending"] == 1
        assert after["overall"]["adherence_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_rescheduled_slot_is_not_counted(self, db_session, services, command):
        await services.events.record_dose(
            db_session, command.id, EventType.DOSE_RESCHEDULED, scheduled_for=at(9, 8),
            rescheduled_to="2026-03-09T09:00:00+00:00",
        )

        result = await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY)

        assert result["overall"]["scheduled"] == 0

    @pytest.mark.asyncio
    async def test_partial_doses_count_as_taken(self, db_session, services, command):
        await taken(services, db_session, command.id, at(9, 8), at(9, 8), actual_dose="250mg")

        overall = (await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY))["overall"]

        assert overall["adherence_rate"] == 100.0
        assert overall["partial"] == 1

    @pytest.mark.asyncio
    async def test_undo_is_reflected(self, db_session, services, command):
        event = await taken(services, db_session, command.id, at(9, 8), at(9, 8))
        await services.events.undo_event(db_session, event.id, corrected_action="missed")

        overall = (await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY))["overall"]

        assert overall["taken"] == 0
        assert overall["missed"] == 1
        assert overall["adherence_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_streaks(self, db_session, services, daily_command):
        for day in range(3, 10):
            if day == 6:
                await missed(services, db_session, daily_command.id, at(day, 8))
            else:
                await taken(services, db_session, daily_command.id, at(day, 8), at(day, 8, 10))

        overall = (await services.analytics.compute_rollup(
            db_session, PATIENT_ID, date(2026, 3, 3), MONDAY
        ))["overall"]

        assert overall["adherence_rate"] == 85.7
        assert overall["longest_streak"] == 3
        assert overall["current_streak"] == 3
        assert overall["daily"]["2026-03-06"]["adherence_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_rollup_is_persisted_and_replaced(self, db_session, services, command):
        await taken(services, db_session, command.id, at(9, 8), at(9, 8))
        first = await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY, period="daily")
        await missed(services, db_session, command.id, at(9, 12))
        await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY, period="daily")

        rollup = db_session.get(AdherenceRollup, first["id"])
        assert first["id"] == f"{PATIENT_ID}_all_daily_2026-03-09_2026-03-09"
        assert rollup.metrics["overall"]["scheduled"] == 2
        assert rollup.risk_level == "high"
        assert db_session.query(AdherenceRollup).count() == 1


# ==================== PATTERNS ====================

def state(day: int, status: str) -> DoseState:
    return DoseState(
        command_id="cmd-1",
        scheduled_for=datetime(2026, 3, day, 8, 0, tzinfo=timezone.utc),
        status=status,
    )


class TestFindPatterns:

    @pytest.mark.unit
    def test_weekend_gap(self, test_settings):
        # Mon 2 .. Sun 8: weekdays taken, weekend missed
        states = [state(d, "taken") for d in range(2, 7)] + [state(7, "missed"), state(8, "missed")]
        days = [date(2026, 3, d) for d in range(2, 9)]

        found = {p["pattern_type"]: p for p in find_patterns(states, "UTC", days, test_settings)}

        assert found["weekday_weekend_gap"]["weekend_rate"] == 0.0
        assert found["weekday_weekend_gap"]["weekday_rate"] == 100.0
        assert "consecutive_missed" not in found

    @pytest.mark.unit
    def test_declining_trend(self, test_settings):
        statuses = ["taken", "taken", "taken", "taken", "missed", "missed"]
        states = [state(d, s) for d, s in zip(range(2, 8), statuses)]
        days = [date(2026, 3, d) for d in range(2, 8)]

        found = [p["pattern_type"] for p in find_patterns(states, "UTC", days, test_settings)]

        assert "declining_trend" in found

    @pytest.mark.unit
    def test_steady_adherence_has_no_patterns(self, test_settings):
        states = [state(d, "taken") for d in range(2, 9)]
        days = [date(2026, 3, d) for d in range(2, 9)]

        assert find_patterns(states, "UTC", days, test_settings) == []


class TestDetectPatterns:

    @pytest.mark.asyncio
    async def test_consecutive_misses_reported_once_per_day(self, db_session, services, daily_command):
        for day in (7, 8, 9):
            await missed(services, db_session, daily_command.id, at(day, 8))

        appended = await services.analytics.detect_patterns(db_session, PATIENT_ID)
        again = await services.analytics.detect_patterns(db_session, PATIENT_ID)

        assert [e.event_data["pattern_type"] for e in appended] == ["consecutive_missed"]
        assert appended[0].event_data["window_key"] == "2026-03-10"
        assert appended[0].event_data["count"] == 3
        assert again == []
        assert db_session.query(MedicationEvent).filter(
            MedicationEvent.event_type == EventType.PATTERN_DETECTED
        ).count() == 1
