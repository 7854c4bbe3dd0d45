"""
Tests for Adherence API
========================

Tests adherence rollups and archived daily summaries.
"""

import pytest
from fastapi import status
from fastapi.testclient import TestClient

from tests.conftest import PATIENT_ID, STRANGER_ID, JOB_TOKEN, auth


# ==================== FIXTURES ====================

@pytest.fixture
def medication_with_history(client: TestClient, patient_headers, sample_medication_data):
    """Metformin with one taken and one missed dose on 2026-03-09"""
    medication = client.post(
        "/api/v1/medications/", json={"patient_id": PATIENT_ID, **sample_medication_data}, headers=patient_headers
    ).json()
    url = f"/api/v1/medications/{medication['id']}/events"
    client.post(url, json={
        "event_type": "dose_taken",
        "scheduled_for": "2026-03-09T08:00:00Z",
        "event_timestamp": "2026-03-09T08:05:00Z",
    }, headers=patient_headers)
    client.post(url, json={"event_type": "dose_missed", "scheduled_for": "2026-03-09T12:00:00Z"}, headers=patient_headers)
    return medication


# ==================== ROLLUP TESTS ====================

class TestAdherenceRollup:
    """Tests for the adherence rollup endpoint"""

    @pytest.mark.api
    def test_rollup_for_a_day(self, client: TestClient, patient_headers, medication_with_history):
        response = client.get(
            f"/api/v1/adherence/{PATIENT_ID}",
            params={"start": "2026-03-09", "end": "2026-03-09"},
            headers=patient_headers,
        )

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["id"] == f"{PATIENT_ID}_all_custom_2026-03-09_2026-03-09"
        assert data["window"]["timezone"] == "UTC"
        assert data["overall"]["scheduled"] == 2
        assert data["overall"]["taken"] == 1
        assert data["overall"]["missed"] == 1
        assert data["overall"]["adherence_rate"] == 50.0
        assert data["medications"][medication_with_history["id"]]["name"] == "Metformin"

    @pytest.mark.api
    def test_default_window_ends_today(self, client: TestClient, patient_headers, medication_with_history):
        response = client.get(f"/api/v1/adherence/{PATIENT_ID}", params={"days": 7}, headers=patient_headers)

        assert response.json()["window"] == {"start": "2026-03-04", "end": "2026-03-10", "timezone": "UTC"}
        assert response.json()["overall"]["taken"] == 1

    @pytest.mark.api
    def test_empty_window_has_no_rate(self, client: TestClient, patient_headers):
        response = client.get(f"/api/v1/adherence/{PATIENT_ID}", headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["overall"]["adherence_rate"] is None

    @pytest.mark.api
    def test_start_after_end(self, client: TestClient, patient_headers):
        response = client.get(
            f"/api/v1/adherence/{PATIENT_ID}",
            params={"start": "2026-03-09", "end": "2026-03-01"},
            headers=patient_headers,
        )

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_ENTITY
        assert response.json()["error"] == "validation_error"

    @pytest.mark.api
    def test_stranger_is_rejected(self, client: TestClient):
        response = client.get(f"/api/v1/adherence/{PATIENT_ID}", headers=auth(STRANGER_ID))

        assert response.status_code == status.HTTP_403_FORBIDDEN


# ==================== DAILY SUMMARY TESTS ====================

class TestDailySummaries:

    @pytest.mark.api
    def test_summaries_after_archival(self, client: TestClient, patient_headers, medication_with_history):
        archived = client.post("/api/v1/jobs/daily_archival", headers={"X-Job-Token": JOB_TOKEN})
        assert archived.status_code == status.HTTP_200_OK

        response = client.get(f"/api/v1/adherence/{PATIENT_ID}/daily-summaries", headers=patient_headers)

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["total"] == 1
        [summary] = data["summaries"]
        assert summary["date"] == "2026-03-09"
        assert summary["adherence_rate"] == 50.0
        assert summary["archived_events"]["total_archived"] == 2

    @pytest.mark.api
    def test_no_summaries_yet(self, client: TestClient, patient_headers):
        response = client.get(
            f"/api/v1/adherence/{PATIENT_ID}/daily-summaries",
            params={"start": "2026-03-01", "end": "2026-03-09"},
            headers=patient_headers,
        )

        assert response.json() == {"patient_id": PATIENT_ID, "summaries": [], "total": 0}
