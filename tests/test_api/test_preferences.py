"""
Tests for Time Preferences API
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from tests.conftest import PATIENT_ID, VIEWER_ID, auth


BASE_URL = f"/api/v1/patients/{PATIENT_ID}/time-preferences"


class TestGetPreferences:

    @pytest.mark.api
    def test_defaults_when_nothing_stored(self, client: TestClient, patient_headers):
        response = client.get(f"{BASE_URL}/", headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_default"] is True
        assert data["version"] == 0
        assert data["time_buckets"]["morning"]["default_time"] == "08:00"
        assert data["timezone"] == "UTC"

    @pytest.mark.api
    def test_viewer_can_read(self, client: TestClient, family_access):
        response = client.get(f"{BASE_URL}/", headers=auth(VIEWER_ID))

        assert response.status_code == status.HTTP_200_OK


class TestUpdatePreferences:

    @pytest.mark.api
    def test_update_and_recompile(self, client: TestClient, patient_headers, sample_medication_data):
        client.post("/api/v1/medications/", json={"patient_id": PATIENT_ID, **sample_medication_data}, headers=patient_headers)

        response = client.put(f"{BASE_URL}/", json={
            "time_buckets": {"evening": {"default_time": "19:00"}},
            "recompile_medications": True,
        }, headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["is_default"] is False
        assert data["time_buckets"]["evening"]["default_time"] == "19:00"
        assert data["time_buckets"]["evening"]["earliest"] == "17:00"
        assert data["recompiled"] == 1

        medications = client.get("/api/v1/medications/", params={"patient_id": PATIENT_ID}, headers=patient_headers)
        assert medications.json()["medications"][0]["schedule"]["times"] == ["08:00", "12:00", "19:00"]

    @pytest.mark.api
    def test_malformed_time(self, client: TestClient, patient_headers):
        response = client.put(f"{BASE_URL}/", json={"wake_time": "25:00"}, headers=patient_headers)

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "validation_error"

    @pytest.mark.api
    def test_viewer_cannot_edit(self, client: TestClient, family_access):
        response = client.put(f"{BASE_URL}/", json={"timezone": "America/Chicago"}, headers=auth(VIEWER_ID))

        assert response.status_code == status.HTTP_403_FORBIDDEN


class TestSchedulePreview:

    @pytest.mark.api
    def test_buckets(self, client: TestClient, patient_headers):
        response = client.post(f"{BASE_URL}/compile", json={"frequency": "twice_daily"}, headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["times"] == ["08:00", "18:00"]
        assert data["buckets"] == ["morning", "evening"]
        assert data["strategy"] == "buckets"

    @pytest.mark.api
    def test_explicit_times(self, client: TestClient, patient_headers):
        response = client.post(
            f"{BASE_URL}/compile", json={"frequency": "daily", "times": ["21:00"]}, headers=patient_headers
        )

        assert response.json()["times"] == ["21:00"]
        assert response.json()["strategy"] == "custom"

    @pytest.mark.api
    def test_preview_does_not_store(self, client: TestClient, patient_headers):
        client.post(f"{BASE_URL}/compile", json={"frequency": "daily"}, headers=patient_headers)

        assert client.get(f"{BASE_URL}/", headers=patient_headers).json()["is_default"] is True


class TestCurrentBucket:

    @pytest.mark.api
    def test_current_bucket(self, client: TestClient, patient_headers):
        # the test clock sits at 06:00 UTC
        response = client.get(f"{BASE_URL}/current-bucket", headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["local_time"] == "06:00"
        assert data["current_bucket"] == "morning"
        assert data["next_bucket"] == "lunch"
        assert data["next_bucket_time"] == "12:00"
