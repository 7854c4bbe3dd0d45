"""
Tests for the Event Service
Versioned appends, classification, undo, corrections and replay
"""

import pytest
from datetime import date, datetime

from exceptions import ValidationError, NotFoundError, ConflictError
from models import EventType, MedicationEvent, DailySummary
from services.event_service import derive_dose_states
from tests.conftest import PATIENT_ID, at


# ==================== APPEND ====================

class TestAppendEvent:
    """Appends get the next version and are classified against the grace window"""

    @pytest.mark.asyncio
    async def test_taken_dose_is_classified(self, db_session, services, command):
        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN,
            scheduled_for=at(10, 8), event_timestamp=at(10, 8, 10), actor=PATIENT_ID,
        )

        assert event.event_version == 3
        assert event.patient_id == PATIENT_ID
        assert event.grace_minutes == 30
        assert event.grace_window_end == at(10, 8, 30)
        assert event.minutes_late == 10
        assert event.is_on_time is True
        assert event.timing_category == "on_time"
        assert event.event_data["dose_category"] == "full"
        assert event.event_data["dose_percentage"] == 100.0

    @pytest.mark.asyncio
    async def test_versions_are_contiguous(self, db_session, services, command):
        for hour in (8, 12, 18):
            await services.events.record_dose(
                db_session, command.id, EventType.DOSE_TAKEN,
                scheduled_for=at(10, hour), event_timestamp=at(10, hour, 5),
            )

        versions = [e.event_version for e in await services.events.list_events(db_session, command_id=command.id)]
        assert versions == [1, 2, 3, 4, 5]

    @pytest.mark.asyncio
    async def test_very_late_dose(self, db_session, services, command):
        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN,
            scheduled_for=at(10, 8), event_timestamp=at(10, 9, 15),
        )

        assert event.is_on_time is False
        assert event.very_late is True
        assert event.timing_category == "very_late"

    @pytest.mark.asyncio
    async def test_partial_dose(self, db_session, services, command):
        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN,
            scheduled_for=at(10, 8), event_timestamp=at(10, 8), actual_dose="250mg",
        )

        assert event.event_data["actual_dose"] == "250mg"
        assert event.event_data["dose_percentage"] == 50.0
        assert event.event_data["dose_category"] == "partial"

    @pytest.mark.asyncio
    async def test_critical_medication_uses_shorter_grace(self, db_session, services):
        command = await services.commands.create_command(db_session, PATIENT_ID, {
            "name": "Warfarin", "dosage": "5mg",
            "schedule": {"frequency": "daily"},
            "grace_period": {"risk_class": "critical"},
        })

        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN,
            scheduled_for=at(10, 8), event_timestamp=at(10, 8, 20),
        )

        assert event.grace_minutes == 15
        assert event.timing_category == "late"

    @pytest.mark.asyncio
    async def test_as_needed_dose_without_slot(self, db_session, services):
        command = await services.commands.create_command(db_session, PATIENT_ID, {
            "name": "Ibuprofen", "dosage": "200mg", "schedule": {"frequency": "as_needed"},
        })

        event = await services.events.record_dose(db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=None)

        assert event.scheduled_for is None
        assert event.minutes_late is None
        assert event.event_data["dose_category"] == "full"

    @pytest.mark.asyncio
    async def test_as_needed_dose_can_be_undone(self, db_session, services):
        command = await services.commands.create_command(db_session, PATIENT_ID, {
            "name": "Ibuprofen", "dosage": "200mg", "schedule": {"frequency": "as_needed"},
        })
        taken = await services.events.record_dose(db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=None)

        undo = await services.events.undo_event(db_session, taken.id, reason="logged twice")

        assert undo.event_type == EventType.DOSE_TAKEN_UNDONE
        assert undo.scheduled_for is None
        assert undo.undoes_event_id == taken.id
        assert undo.event_version == taken.event_version + 1

    @pytest.mark.asyncio
    async def test_undo_type_still_needs_slot_without_original(self, db_session, services, command):
        with pytest.raises(ValidationError):
            await services.events.append_event(db_session, command.id, EventType.DOSE_TAKEN_UNDONE, scheduled_for=None)


class TestAppendValidation:

    @pytest.mark.asyncio
    async def test_scheduled_for_required(self, db_session, services, command):
        with pytest.raises(ValidationError):
            await services.events.record_dose(db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=None)

    @pytest.mark.asyncio
    async def test_naive_datetime_rejected(self, db_session, services, command):
        with pytest.raises(ValidationError) as exc_info:
            await services.events.record_dose(
                db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=datetime(2026, 3, 10, 8, 0),
            )

        assert exc_info.value.details[0]["field"] == "scheduled_for"

    @pytest.mark.asyncio
    async def test_reschedule_needs_target(self, db_session, services, command):
        with pytest.raises(ValidationError):
            await services.events.record_dose(db_session, command.id, EventType.DOSE_RESCHEDULED, scheduled_for=at(10, 8))

    @pytest.mark.asyncio
    async def test_snooze_minutes_must_be_positive(self, db_session, services, command):
        with pytest.raises(ValidationError):
            await services.events.record_dose(
                db_session, command.id, EventType.DOSE_SNOOZED, scheduled_for=at(10, 8), snooze_minutes=0,
            )

    @pytest.mark.asyncio
    async def test_record_dose_rejects_other_types(self, db_session, services, command):
        with pytest.raises(ValidationError):
            await services.events.record_dose(db_session, command.id, EventType.REMINDER_SENT, scheduled_for=at(10, 8))

    @pytest.mark.asyncio
    async def test_unknown_command(self, db_session, services):
        with pytest.raises(NotFoundError):
            await services.events.record_dose(db_session, "missing", EventType.DOSE_TAKEN, scheduled_for=at(10, 8))

    @pytest.mark.asyncio
    async def test_discontinued_command_rejects_doses(self, db_session, services, command):
        await services.commands.discontinue(db_session, command.id)

        with pytest.raises(ValidationError):
            await services.events.record_dose(db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8))


# ==================== IMMUTABILITY & CONCURRENCY ====================

class TestEventLogIntegrity:

    @pytest.mark.asyncio
    async def test_events_cannot_be_rewritten(self, db_session, services, command):
        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8, 10),
        )

        event.minutes_late = 0
        with pytest.raises(ValueError):
            db_session.commit()
        db_session.rollback()

    @pytest.mark.asyncio
    async def test_version_collision_is_retried(self, db_session, services, command, monkeypatch):
        real = services.events.next_event_version
        calls = []

        def colliding(db, command_id):
            calls.append(command_id)
            return 1 if len(calls) == 1 else real(db, command_id)

        monkeypatch.setattr(services.events, "next_event_version", colliding)

        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        assert event.event_version == 3
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_persistent_collision_is_a_conflict(self, db_session, services, command, monkeypatch):
        monkeypatch.setattr(services.events, "next_event_version", lambda db, command_id: 1)

        with pytest.raises(ConflictError):
            await services.events.record_dose(
                db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
            )


# ==================== UNDO ====================

class TestUndoEvent:

    @pytest.mark.asyncio
    async def test_undo_restores_corrected_action(self, db_session, services, command):
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        undo = await services.events.undo_event(
            db_session, taken.id, corrected_action="missed", reason="tapped by mistake", actor=PATIENT_ID,
        )

        assert undo.event_type == EventType.DOSE_TAKEN_UNDONE
        assert undo.undoes_event_id == taken.id
        assert undo.scheduled_for == taken.scheduled_for
        assert undo.event_data["corrected_action"] == "missed"

        events = await services.events.list_events(db_session, command_id=command.id)
        state = derive_dose_states(events)[(command.id, at(10, 8))]
        assert state.status == "missed"
        assert state.taken_event_id is None
        # original stays in the log
        assert db_session.get(MedicationEvent, taken.id).event_type == EventType.DOSE_TAKEN

    @pytest.mark.asyncio
    async def test_undo_without_correction_restores_previous(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_SCHEDULED, scheduled_for=at(10, 8))
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        await services.events.undo_event(db_session, taken.id)

        events = await services.events.list_events(db_session, command_id=command.id)
        assert derive_dose_states(events)[(command.id, at(10, 8))].status == "scheduled"

    @pytest.mark.asyncio
    async def test_second_undo_is_rejected(self, db_session, services, command):
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )
        await services.events.undo_event(db_session, taken.id)

        with pytest.raises(ValidationError):
            await services.events.undo_event(db_session, taken.id)

    @pytest.mark.asyncio
    async def test_undo_window_expires(self, db_session, services, fake_clock, command):
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )
        fake_clock.advance(hours=25)

        with pytest.raises(ValidationError):
            await services.events.undo_event(db_session, taken.id)

    @pytest.mark.asyncio
    async def test_only_taken_doses_can_be_undone(self, db_session, services, command):
        missed = await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(10, 8))

        with pytest.raises(ValidationError):
            await services.events.undo_event(db_session, missed.id)

    @pytest.mark.asyncio
    async def test_invalid_corrected_action(self, db_session, services, command):
        taken = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        with pytest.raises(ValidationError):
            await services.events.undo_event(db_session, taken.id, corrected_action="taken")


# ==================== CORRECTIONS & QUERIES ====================

class TestLateCorrections:

    @pytest.mark.asyncio
    async def test_event_for_archived_day_is_recorded_as_correction(self, db_session, services, command):
        await services.archive.archive_day(db_session, PATIENT_ID, date(2026, 3, 9))

        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(9, 8), event_timestamp=at(9, 8, 5),
        )

        summary = db_session.get(DailySummary, f"{PATIENT_ID}_2026-03-09")
        assert [c["event_id"] for c in summary.corrections] == [event.id]
        assert event.is_archived is True
        assert event.daily_summary_id == summary.id

    @pytest.mark.asyncio
    async def test_event_for_open_day_stays_live(self, db_session, services, command):
        event = await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8),
        )

        assert event.is_archived is False


class TestTodayStatus:

    @pytest.mark.asyncio
    async def test_lists_every_slot_with_state(self, db_session, services, command):
        await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 8), event_timestamp=at(10, 8, 3),
        )

        today = await services.events.today_status(db_session, PATIENT_ID)

        assert [entry["local_time"] for entry in today] == ["08:00", "12:00", "18:00"]
        assert [entry["status"] for entry in today] == ["taken", "scheduled", "scheduled"]
        assert today[0]["medication_name"] == "Metformin"
        assert today[0]["minutes_late"] == 3

    @pytest.mark.asyncio
    async def test_paused_medications_are_left_out(self, db_session, services, command):
        await services.commands.change_status(db_session, command.id, "paused")

        assert await services.events.today_status(db_session, PATIENT_ID) == []


class TestListEvents:

    @pytest.mark.asyncio
    async def test_filters(self, db_session, services, command):
        await services.events.record_dose(db_session, command.id, EventType.DOSE_MISSED, scheduled_for=at(10, 8))
        await services.events.record_dose(
            db_session, command.id, EventType.DOSE_TAKEN, scheduled_for=at(10, 12), event_timestamp=at(10, 12),
        )

        missed = await services.events.list_events(db_session, command_id=command.id, event_types=[EventType.DOSE_MISSED])
        morning = await services.events.list_events(db_session, patient_id=PATIENT_ID, start=at(10, 7), end=at(10, 9))

        assert [e.event_type for e in missed] == [EventType.DOSE_MISSED]
        assert [e.scheduled_for for e in morning] == [at(10, 8)]
