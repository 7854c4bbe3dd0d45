"""
Tests for the Archive Service
"""

import pytest
from datetime import date

from models import DailySummary, EventType, MedicationEvent
from tests.conftest import PATIENT_ID, at


MONDAY = date(2026, 3, 9)


class TestArchiveDay:

    @pytest.mark.asyncio
    async def test_summarizes_and_archives(self, db_session, services, command):
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(9, 8), event_timestamp=at(9, 8, 5),
        )
        await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(9, 12))
        today = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        result = await services.archive.archive_day(db_session, PATIENT_ID, MONDAY)

        summary = result.summary
        assert result.created is True
        assert result.archived_count == 2
        assert summary.id == f"{PATIENT_ID}_2026-03-09"
        assert summary.total_scheduled == 2
        assert summary.taken == 1
        assert summary.missed == 1
        assert summary.adherence_rate == 50.0
        assert summary.medication_breakdown[command.id]["name"] == "Metformin"

        assert db_session.get(MedicationEvent, taken.id).is_archived is True
        assert db_session.get(MedicationEvent, taken.id).archive_date == "2026-03-09"
        assert db_session.get(MedicationEvent, today.id).is_archived is False

    @pytest.mark.asyncio
    async def test_rerun_is_a_noop(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(9, 8))
        await services.archive.archive_day(db_session, PATIENT_ID, MONDAY)

        again = await services.archive.archive_day(db_session, PATIENT_ID, MONDAY)

        assert again.created is False
        assert db_session.query(DailySummary).count() == 1

    @pytest.mark.asyncio
    async def test_empty_day(self, db_session, services):
        result = await services.archive.archive_day(db_session, PATIENT_ID, MONDAY)

        assert result.created is True
        assert result.summary.total_scheduled == 0
        assert result.summary.adherence_rate is None

    @pytest.mark.asyncio
    async def test_archived_events_still_count_in_rollups(self, db_session, services, command):
        await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(9, 8), event_timestamp=at(9, 8),
        )
        await services.archive.archive_day(db_session, PATIENT_ID, MONDAY)

        result = await services.analytics.compute_rollup(db_session, PATIENT_ID, MONDAY, MONDAY, persist=False)

        assert result["overall"]["taken"] == 1


class TestArchivePendingDays:

    @pytest.mark.asyncio
    async def test_catches_up_from_oldest_live_event(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(7, 8))

        results = await services.archive.archive_pending_days(db_session, PATIENT_ID)

        assert [r.summary.summary_date for r in results] == ["2026-03-07", "2026-03-08", "2026-03-09"]
        assert all(r.created for r in results)

    @pytest.mark.asyncio
    async def test_yesterday_always_gets_a_summary(self, db_session, services):
        results = await services.archive.archive_pending_days(db_session, PATIENT_ID)

        assert [r.summary.summary_date for r in results] == ["2026-03-09"]

    @pytest.mark.asyncio
    async def test_list_summaries(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(7, 8))
        await services.archive.archive_pending_days(db_session, PATIENT_ID)

        summaries = await services.archive.list_summaries(
            db_session, PATIENT_ID, start=date(2026, 3, 8), end=date(2026, 3, 9)
        )

        assert [s.summary_date for s in summaries] == ["2026-03-08", "2026-03-09"]
