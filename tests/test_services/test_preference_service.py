"""
Tests for the Preference Service
Per-patient time buckets, validation warnings and the current bucket
"""

import pytest

from exceptions import ValidationError
from tests.conftest import PATIENT_ID, at


class TestGetPreferences:

    @pytest.mark.asyncio
    async def test_defaults_when_nothing_stored(self, db_session, services):
        prefs = await services.preferences.get_preferences(db_session, PATIENT_ID)

        assert prefs["is_default"] is True
        assert prefs["version"] == 0
        assert prefs["timezone"] == "UTC"
        assert prefs["time_buckets"]["morning"]["default_time"] == "08:00"

    @pytest.mark.asyncio
    async def test_load_defaults(self, db_session, services):
        prefs = services.preferences.load(db_session, PATIENT_ID)

        assert prefs.active_buckets() == ["morning", "lunch", "evening", "before_bed"]


class TestUpsertPreferences:

    @pytest.mark.asyncio
    async def test_merges_one_bucket(self, db_session, services):
        model = await services.preferences.upsert_preferences(
            db_session, PATIENT_ID, time_buckets={"morning": {"default_time": "07:30"}}
        )

        assert model.version == 1
        assert model.time_buckets["morning"]["default_time"] == "07:30"
        assert model.time_buckets["morning"]["label"] == "Morning"
        assert model.time_buckets["lunch"]["default_time"] == "12:00"
        assert model.warnings == []

    @pytest.mark.asyncio
    async def test_version_increments(self, db_session, services):
        await services.preferences.upsert_preferences(db_session, PATIENT_ID, wake_time="06:30")
        model = await services.preferences.upsert_preferences(db_session, PATIENT_ID, bed_time="22:30")

        assert model.version == 2
        assert model.wake_time == "06:30"
        assert model.bed_time == "22:30"

    @pytest.mark.asyncio
    async def test_malformed_time_is_rejected(self, db_session, services):
        with pytest.raises(ValidationError) as exc_info:
            await services.preferences.upsert_preferences(
                db_session, PATIENT_ID, time_buckets={"morning": {"default_time": "8am"}}
            )

        assert exc_info.value.details[0]["field"] == "time_buckets.morning.default_time"

    @pytest.mark.asyncio
    async def test_unknown_timezone_is_rejected(self, db_session, services):
        with pytest.raises(ValidationError):
            await services.preferences.upsert_preferences(db_session, PATIENT_ID, timezone="Mars/Olympus")

    @pytest.mark.asyncio
    async def test_unknown_frequency_in_mapping_is_rejected(self, db_session, services):
        with pytest.raises(ValidationError):
            await services.preferences.upsert_preferences(
                db_session, PATIENT_ID, frequency_mapping={"hourly": {"buckets": ["morning"]}}
            )

    @pytest.mark.asyncio
    async def test_default_out_of_range_is_a_warning(self, db_session, services):
        model = await services.preferences.upsert_preferences(
            db_session, PATIENT_ID, time_buckets={"morning": {"default_time": "11:30"}}
        )

        assert [w["code"] for w in model.warnings] == ["default_out_of_range"]

    @pytest.mark.asyncio
    async def test_overlapping_buckets_are_a_warning(self, db_session, services):
        model = await services.preferences.upsert_preferences(
            db_session, PATIENT_ID, time_buckets={"lunch": {"earliest": "09:00"}}
        )

        assert "overlapping_buckets" in [w["code"] for w in model.warnings]

    @pytest.mark.asyncio
    async def test_new_custom_bucket(self, db_session, services):
        model = await services.preferences.upsert_preferences(
            db_session, PATIENT_ID,
            time_buckets={"afternoon_snack": {"default_time": "15:30", "earliest": "15:00", "latest": "16:00"}},
        )

        assert model.time_buckets["afternoon_snack"]["label"] == "Afternoon Snack"
        assert model.time_buckets["afternoon_snack"]["is_active"] is True


class TestCurrentBucket:

    @pytest.mark.asyncio
    async def test_inside_a_bucket(self, db_session, services):
        result = await services.preferences.current_bucket(db_session, PATIENT_ID, now=at(10, 8, 30))

        assert result["local_time"] == "08:30"
        assert result["current_bucket"] == "morning"
        assert result["next_bucket"] == "lunch"
        assert result["next_bucket_time"] == "12:00"

    @pytest.mark.asyncio
    async def test_between_buckets(self, db_session, services):
        result = await services.preferences.current_bucket(db_session, PATIENT_ID, now=at(10, 15, 0))

        assert result["current_bucket"] is None
        assert result["next_bucket"] == "evening"

    @pytest.mark.asyncio
    async def test_uses_patient_timezone(self, db_session, services):
        await services.preferences.upsert_preferences(db_session, PATIENT_ID, timezone="America/Chicago")

        # 13:30 UTC is 08:30 CDT
        result = await services.preferences.current_bucket(db_session, PATIENT_ID, now=at(10, 13, 30))

        assert result["timezone"] == "America/Chicago"
        assert result["local_time"] == "08:30"
        assert result["current_bucket"] == "morning"
