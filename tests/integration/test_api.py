"""Test the HTTP API through FastAPI's TestClient."""
import pytest
from fastapi.testclient import TestClient

from clinic_dispatch.api.dependencies import get_service
from clinic_dispatch.api_server import app

STAFF = {"X-User-ID": "user-reception-1", "X-User-Role": "receptionist"}
PATIENT = {"X-User-ID": "user-pat-1", "X-User-Role": "patient"}


@pytest.fixture
def client(service, doctor, other_doctor, patients):
    """Create FastAPI test client wired to the test service."""
    app.dependency_overrides[get_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()


def _book(client, time="09:00", patient_id="pat-1", **extra):
    payload = {
        "doctor_id": "doc-1",
        "patient_id": patient_id,
        "appointment_date": "2026-10-19",
        "appointment_time": time,
    }
    payload.update(extra)
    return client.post("/api/v1/appointments", json=payload)


def _walk_in(client, patient_id="pat-1", **extra):
    return client.post("/api/v1/queue/walk-in", json={"doctor_id": "doc-1", "patient_id": patient_id, **extra})


def test_health_check_has_request_id(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.headers["x-request-id"].startswith("req-")


class TestAppointmentEndpoints:

    def test_book_appointment(self, client):
        response = _book(client, symptoms="headache")

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "pending"
        assert body["kind"] == "booked"
        assert body["token"] == "001"
        assert body["scheduled_time"] == "09:00"
        assert body["end_time"] == "09:30"

    def test_double_booking_returns_conflict(self, client):
        _book(client)

        response = _book(client, patient_id="pat-2")

        assert response.status_code == 409
        assert response.json()["code"] == "SLOT_CONFLICT"
        assert response.json()["error"] == "Slot Conflict"

    def test_saturday_returns_doctor_unavailable(self, client):
        response = _book(client, appointment_date="2026-10-24")

        assert response.status_code == 409
        assert response.json()["code"] == "DOCTOR_UNAVAILABLE"

    def test_off_grid_time_returns_validation_error(self, client):
        response = _book(client, time="08:30")

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"
        assert "08:30" in response.json()["detail"]

    def test_missing_field_returns_validation_error(self, client):
        response = client.post("/api/v1/appointments", json={"doctor_id": "doc-1"})

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_unknown_doctor_returns_not_found(self, client):
        response = client.post("/api/v1/appointments", json={
            "doctor_id": "doc-404",
            "patient_id": "pat-1",
            "appointment_date": "2026-10-19",
            "appointment_time": "09:00",
        })

        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_get_appointment(self, client):
        entry_id = _book(client).json()["id"]

        response = client.get(f"/api/v1/appointments/{entry_id}")

        assert response.status_code == 200
        assert response.json()["id"] == entry_id

    def test_check_in_then_illegal_transition(self, client):
        entry_id = _book(client).json()["id"]

        confirmed = client.patch(f"/api/v1/appointments/{entry_id}/status", json={"status": "confirmed"})
        illegal = client.patch(f"/api/v1/appointments/{entry_id}/status", json={"status": "completed"})

        assert confirmed.json()["status"] == "confirmed"
        assert illegal.status_code == 409
        assert illegal.json()["code"] == "INVALID_TRANSITION"

    def test_unknown_status_is_rejected(self, client):
        entry_id = _book(client).json()["id"]

        response = client.patch(f"/api/v1/appointments/{entry_id}/status", json={"status": "done"})

        assert response.status_code == 422

    def test_cancel_records_caller(self, client):
        entry_id = _book(client).json()["id"]

        response = client.post(
            f"/api/v1/appointments/{entry_id}/cancel",
            json={"reason": "Feeling better"},
            headers=PATIENT,
        )

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["cancelled_by"] == "user-pat-1"
        assert response.json()["cancellation_reason"] == "Feeling better"

    def test_cancel_without_body(self, client):
        entry_id = _book(client).json()["id"]

        assert client.post(f"/api/v1/appointments/{entry_id}/cancel").json()["status"] == "cancelled"

    def test_payment_update(self, client):
        entry_id = _walk_in(client).json()["id"]

        response = client.patch(f"/api/v1/appointments/{entry_id}/payment", json={"payment_status": "paid"})

        assert response.json()["payment_status"] == "paid"
        assert response.json()["payment_amount"] == 50.0


class TestAppointmentListing:

    def test_requires_staff(self, client):
        assert client.get("/api/v1/appointments").status_code == 401
        assert client.get("/api/v1/appointments", headers=PATIENT).status_code == 403

    def test_filter_and_paginate(self, client):
        _book(client)
        _walk_in(client, patient_id="pat-2")

        pending = client.get("/api/v1/appointments", params={"status": "pending"}, headers=STAFF)
        second_page = client.get("/api/v1/appointments", params={"page": 2, "limit": 1}, headers=STAFF)

        assert pending.status_code == 200
        assert pending.json()["page"] == 1
        assert [item["status"] for item in pending.json()["items"]] == ["pending"]
        assert second_page.json()["limit"] == 1
        assert [item["kind"] for item in second_page.json()["items"]] == ["walk-in"]

    def test_doctor_only_sees_own_queue(self, client):
        _walk_in(client)
        client.post("/api/v1/queue/walk-in", json={"doctor_id": "doc-2", "patient_id": "pat-2"})

        response = client.get(
            "/api/v1/appointments",
            headers={"X-User-ID": "user-doc-2", "X-User-Role": "doctor"},
        )

        assert [item["doctor_id"] for item in response.json()["items"]] == ["doc-2"]

    def test_unknown_status_is_rejected(self, client):
        response = client.get("/api/v1/appointments", params={"status": "done"}, headers=STAFF)

        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestQueueEndpoints:

    def test_walk_in(self, client):
        response = _walk_in(client, symptoms="Critical: high fever")

        assert response.status_code == 201
        assert response.json()["status"] == "confirmed"
        assert response.json()["priority"] == "emergency"
        assert response.json()["kind"] == "walk-in"

    def test_call_next_requires_staff(self, client):
        _walk_in(client)

        assert client.post("/api/v1/doctors/doc-1/call-next").status_code == 401
        assert client.post("/api/v1/doctors/doc-1/call-next", headers=PATIENT).status_code == 403

    def test_call_next_and_complete(self, client):
        _walk_in(client, priority="regular")
        _walk_in(client, patient_id="pat-2", priority="emergency")

        called = client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)
        completed = client.post("/api/v1/doctors/doc-1/complete", headers=STAFF)

        assert called.status_code == 200
        assert called.json()["patient_id"] == "pat-2"
        assert called.json()["called_by"] == "user-reception-1"
        assert completed.json()["status"] == "completed"

    def test_call_next_on_empty_queue(self, client):
        response = client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)

        assert response.status_code == 404
        assert response.json()["code"] == "QUEUE_EMPTY"

    def test_strict_call_next(self, client):
        _walk_in(client)
        _walk_in(client, patient_id="pat-2")
        client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)

        relaxed = client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)
        strict = client.post("/api/v1/doctors/doc-1/call-next?strict=true", headers=STAFF)

        assert relaxed.status_code == 200
        assert relaxed.json()["token"] == "001"
        assert strict.status_code == 409
        assert strict.json()["code"] == "INVALID_TRANSITION"

    def test_doctor_queue(self, client):
        _walk_in(client)
        _walk_in(client, patient_id="pat-2")
        client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)

        body = client.get("/api/v1/doctors/doc-1/queue").json()

        assert body["current"]["token"] == "001"
        assert body["waiting_count"] == 1
        assert [e["token"] for e in body["entries"]] == ["001", "002"]

    def test_all_queues(self, client):
        _walk_in(client)
        client.post("/api/v1/queue/walk-in", json={"doctor_id": "doc-2", "patient_id": "pat-3"})

        body = client.get("/api/v1/queues").json()

        assert body["date"] == "2026-10-19"
        assert set(body["queues"]) == {"doc-1", "doc-2"}

    def test_doctor_statuses(self, client):
        _walk_in(client)
        client.post("/api/v1/doctors/doc-1/call-next", headers=STAFF)

        statuses = {s["doctor_id"]: s["status"] for s in client.get("/api/v1/doctors/status").json()}

        assert statuses == {"doc-1": "busy", "doc-2": "available"}


class TestAvailabilityEndpoints:

    def test_get_availability(self, client):
        _book(client)

        body = client.get("/api/v1/doctors/doc-1/availability?date=2026-10-19&time_of_day=morning").json()

        assert body["is_available"] is True
        assert body["booked_slots"] == ["09:00"]
        assert body["available_slots"][0] == "09:30"
        assert body["available_slots"][-1] == "11:30"

    def test_update_availability(self, client):
        response = client.put(
            "/api/v1/doctors/doc-1/availability",
            json={"working_days": ["monday"], "slot_duration": 15},
            headers=STAFF,
        )

        assert response.status_code == 200
        assert response.json()["working_days"] == ["monday"]
        assert response.json()["slot_duration"] == 15
        assert response.json()["start_time"] == "09:00"

    def test_update_availability_requires_staff(self, client):
        response = client.put("/api/v1/doctors/doc-1/availability", json={"slot_duration": 15})

        assert response.status_code == 401


def test_patient_search(client):
    response = client.get("/api/v1/patients/search?q=0102", headers=STAFF)

    assert response.status_code == 200
    assert response.json() == [{"id": "pat-2", "name": "Patient 2", "phone": "555-0102"}]


def test_event_stream_rejections(client):
    assert client.get("/api/v1/events/stream?mine=true").status_code == 401
    assert client.get("/api/v1/events/stream?doctor_id=doc-404").status_code == 404
