"""
End-to-end scenarios through the HTTP layer: show setup, hold, confirm and the error mapping.
"""

import uuid

import pytest

from app import create_app


@pytest.fixture
def client(settings, db):
    app = create_app(settings, db=db, start_reclaimer=False)
    app.config["TESTING"] = True
    return app.test_client()


@pytest.fixture
def show_id(client):
    resp = client.post("/api/shows", json={
        "name": "Morning Bus to Mumbai",
        "start_time": "2026-12-25T08:00:00Z",
        "total_seats": 3,
    })
    assert resp.status_code == 201
    return resp.get_json()["show"]["id"]


def hold(client, show_id, seats, **extra):
    return client.post("/api/bookings", json={"show_id": show_id, "seat_numbers": seats, **extra})


def test_create_and_list_shows(client, show_id):
    shows = client.get("/api/shows").get_json()
    assert len(shows) == 1
    assert shows[0]["id"] == show_id
    assert shows[0]["available_seats"] == 3
    assert shows[0]["held_seats"] == 0
    assert shows[0]["booked_seats"] == 0

    detail = client.get(f"/api/shows/{show_id}").get_json()
    assert [s["seat_number"] for s in detail["seats"]] == ["1", "2", "3"]
    assert detail["start_time"].startswith("2026-12-25T08:00:00")


@pytest.mark.parametrize("payload", [
    {"start_time": "2026-12-25T08:00:00Z", "total_seats": 3},
    {"name": "x", "start_time": "tomorrow", "total_seats": 3},
    {"name": "x", "start_time": "2026-12-25T08:00:00Z", "total_seats": 0},
    {"name": "x", "start_time": "2026-12-25T08:00:00Z", "total_seats": "3"},
])
def test_create_show_rejects_bad_input(client, payload):
    assert client.post("/api/shows", json=payload).status_code == 400


def test_unknown_show_and_booking_are_404(client):
    assert client.get(f"/api/shows/{uuid.uuid4()}").status_code == 404
    assert client.get("/api/shows/nope").status_code == 404
    assert client.get(f"/api/bookings/{uuid.uuid4()}").status_code == 404
    assert client.post(f"/api/bookings/{uuid.uuid4()}/confirm").status_code == 404


def test_hold_confirm_and_rebook(client, show_id):
    resp = hold(client, show_id, ["2"], user_id="u-1")
    assert resp.status_code == 201
    body = resp.get_json()
    assert body["status"] == "PENDING"
    assert body["seats"] == ["2"]
    assert "expires_at" in body

    booking = client.get(f"/api/bookings/{body['booking_id']}").get_json()
    assert booking["status"] == "PENDING"
    assert booking["seats"][0]["seat_number"] == "2"

    confirm = client.post(f"/api/bookings/{body['booking_id']}/confirm")
    assert confirm.status_code == 200
    assert confirm.get_json()["status"] == "CONFIRMED"

    again = client.post(f"/api/bookings/{body['booking_id']}/confirm")
    assert again.status_code == 409

    rebook = hold(client, show_id, ["2"])
    assert rebook.status_code == 409
    assert rebook.get_json() == {"status": "FAILED", "reason": "Seat already booked"}

    counts = client.get(f"/api/shows/{show_id}").get_json()
    assert (counts["available_seats"], counts["held_seats"], counts["booked_seats"]) == (2, 0, 1)


def test_second_hold_on_same_seat_conflicts(client, show_id):
    assert hold(client, show_id, ["1"]).status_code == 201

    resp = hold(client, show_id, ["1", "3"])
    assert resp.status_code == 409
    assert resp.get_json()["status"] == "FAILED"

    detail = client.get(f"/api/shows/{show_id}").get_json()
    assert {s["seat_number"]: s["status"] for s in detail["seats"]} == {
        "1": "HELD", "2": "AVAILABLE", "3": "AVAILABLE",
    }
    assert "locked_until" in detail["seats"][0]


@pytest.mark.parametrize("payload", [
    {"seat_numbers": ["1"]},
    {"show_id": "x", "seat_numbers": []},
    {"show_id": "x", "seat_numbers": "1"},
])
def test_hold_rejects_bad_shape(client, payload):
    assert client.post("/api/bookings", json=payload).status_code == 400


def test_hold_rejects_malformed_values(client, show_id):
    assert hold(client, "not-a-uuid", ["1"]).status_code == 400
    assert hold(client, show_id, [{"seat": 1}]).status_code == 400
    assert hold(client, show_id, ["1"], user_id=42).status_code == 400
    assert client.post("/api/bookings", data="seats", content_type="text/plain").status_code == 400


def test_exhausted_retries_map_to_503(client, show_id, monkeypatch):
    from booking_service import VersionConflictError

    service = client.application.extensions["booking_service"]

    def always_conflicts(*args):
        raise VersionConflictError("seat changed")

    monkeypatch.setattr(service, "_attempt_reserve", always_conflicts)

    assert hold(client, show_id, ["1"]).status_code == 503


def test_expired_confirmation_maps_to_410(client, show_id, monkeypatch):
    from datetime import datetime, timedelta, timezone

    service = client.application.extensions["booking_service"]
    body = hold(client, show_id, ["3"]).get_json()

    later = datetime.now(timezone.utc) + timedelta(seconds=300)
    monkeypatch.setattr(service, "clock", lambda: later)

    assert client.post(f"/api/bookings/{body['booking_id']}/confirm").status_code == 410


def test_health(client, show_id):
    assert client.get("/health").get_json() == {"status": "healthy", "database": "connected", "shows": 1}
