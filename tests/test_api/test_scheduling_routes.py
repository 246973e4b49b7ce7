"""Integration tests for the scheduling API endpoints."""

import logging
from datetime import datetime, timedelta

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from careslot.api.app import create_app
from careslot.observability import SchedulingEventLogger
from careslot.scheduling.service import SchedulingService

BASE = "/api/v1/scheduling"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(service: SchedulingService):
    app = create_app(service=service)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


def _slot(day: int, hour: int, minute: int = 0, minutes: int = 30) -> dict:
    start = datetime(2026, 3, day, hour, minute)
    return {
        "start": start.isoformat(),
        "end": (start + timedelta(minutes=minutes)).isoformat(),
    }


async def _book(client: AsyncClient, patient_id: str = "pat-1", **slot) -> dict:
    resp = await client.post(
        f"{BASE}/appointments",
        json={"provider_id": "prov-1", "patient_id": patient_id, **(slot or _slot(2, 10))},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


async def _waitlist(client: AsyncClient, patient_id: str, **fields) -> dict:
    resp = await client.post(
        f"{BASE}/waitlist",
        json={"provider_id": "prov-1", "patient_id": patient_id, **fields},
    )
    assert resp.status_code == 201, resp.text
    return resp.json()


# ---------------------------------------------------------------------------
# Providers & availability
# ---------------------------------------------------------------------------

class TestProviders:
    async def test_register_and_get(self, client: AsyncClient):
        body = {
            "id": "prov-2",
            "name": "Dr. Okafor",
            "timezone": "Europe/Berlin",
            "availability": {
                "hours": [{"weekday": "monday", "start": "08:00", "end": "12:00"}],
            },
        }
        resp = await client.post(f"{BASE}/providers", json=body)
        assert resp.status_code == 201

        resp = await client.get(f"{BASE}/providers/prov-2")
        assert resp.status_code == 200
        assert resp.json()["availability"]["hours"][0]["start"] == "08:00:00"

    async def test_unknown_timezone_rejected(self, client: AsyncClient):
        resp = await client.post(f"{BASE}/providers", json={"id": "p", "timezone": "Mars/Olympus"})
        assert resp.status_code == 422

    async def test_missing_provider(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/providers/nobody")
        assert resp.status_code == 404
        assert resp.json()["error"] == "not_found"

    async def test_set_availability_with_block(self, client: AsyncClient):
        body = {
            "hours": [{"weekday": "monday", "start": "09:00", "end": "17:00"}],
            "blocks": [{"weekday": "monday", "start": "12:00", "end": "13:00", "reason": "Lunch"}],
        }
        resp = await client.put(f"{BASE}/providers/prov-1/availability", json=body)
        assert resp.status_code == 200

        resp = await client.get(
            f"{BASE}/providers/prov-1/slots",
            params={"date_from": "2026-03-02", "date_to": "2026-03-08", "duration_minutes": 30},
        )
        assert len(resp.json()) == 14


class TestSlots:
    async def test_week_of_slots(self, client: AsyncClient):
        resp = await client.get(
            f"{BASE}/providers/prov-1/slots",
            params={"date_from": "2026-03-02", "date_to": "2026-03-08", "duration_minutes": 30},
        )
        assert resp.status_code == 200
        slots = resp.json()
        assert len(slots) == 80
        assert slots[0]["start"] == "2026-03-02T09:00:00"

    async def test_inverted_range(self, client: AsyncClient):
        resp = await client.get(
            f"{BASE}/providers/prov-1/slots",
            params={"date_from": "2026-03-06", "date_to": "2026-03-02"},
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_range"


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

class TestAppointments:
    async def test_book_and_fetch(self, client: AsyncClient):
        appt = await _book(client)
        assert appt["status"] == "scheduled"
        resp = await client.get(f"{BASE}/appointments/{appt['id']}")
        assert resp.json()["patient_id"] == "pat-1"

    async def test_double_booking_is_409(self, client: AsyncClient):
        await _book(client)
        resp = await client.post(
            f"{BASE}/appointments",
            json={"provider_id": "prov-1", "patient_id": "pat-2", **_slot(2, 10, 15)},
        )
        assert resp.status_code == 409
        assert resp.json()["error"] == "slot_conflict"

    async def test_outside_hours_is_422(self, client: AsyncClient):
        resp = await client.post(
            f"{BASE}/appointments",
            json={"provider_id": "prov-1", "patient_id": "pat-1", **_slot(2, 18)},
        )
        assert resp.status_code == 422

    async def test_cancel_offers_slot(self, client: AsyncClient):
        appt = await _book(client)
        entry = await _waitlist(client, "pat-9", priority="urgent")

        resp = await client.post(
            f"{BASE}/appointments/{appt['id']}/cancel", json={"reason": "conflict"}
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["appointment"]["status"] == "cancelled"
        assert data["offer"]["entry"]["id"] == entry["id"]
        assert data["offer"]["entry"]["status"] == "notified"

        again = await client.post(f"{BASE}/appointments/{appt['id']}/cancel")
        assert again.status_code == 409
        assert again.json()["error"] == "already_cancelled"

    async def test_complete_and_no_show(self, client: AsyncClient):
        first = await _book(client)
        second = await _book(client, "pat-2", **_slot(2, 11))

        resp = await client.post(f"{BASE}/appointments/{first['id']}/complete")
        assert resp.json()["status"] == "completed"
        resp = await client.post(f"{BASE}/appointments/{second['id']}/no-show")
        assert resp.json()["status"] == "no_show"

        resp = await client.post(f"{BASE}/appointments/{first['id']}/cancel")
        assert resp.status_code == 409
        assert resp.json()["error"] == "appointment_not_scheduled"

    async def test_list_by_status(self, client: AsyncClient):
        await _book(client)
        cancelled = await _book(client, "pat-2", **_slot(3, 10))
        await client.post(f"{BASE}/appointments/{cancelled['id']}/cancel")

        resp = await client.get(
            f"{BASE}/appointments",
            params={
                "provider_id": "prov-1",
                "date_from": "2026-03-02",
                "date_to": "2026-03-06",
                "status": "cancelled",
            },
        )
        assert [a["id"] for a in resp.json()] == [cancelled["id"]]

    async def test_offset_aware_times_are_422(self, client: AsyncClient):
        resp = await client.post(
            f"{BASE}/appointments",
            json={
                "provider_id": "prov-1",
                "patient_id": "pat-1",
                "start": "2026-03-02T10:00:00Z",
                "end": "2026-03-02T10:30:00Z",
            },
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_range"


# ---------------------------------------------------------------------------
# Rescheduling & follow-ups
# ---------------------------------------------------------------------------

class TestReschedule:
    async def test_reschedule_offers_freed_slot(self, client: AsyncClient):
        appt = await _book(client)
        entry = await _waitlist(client, "pat-9", priority="high")

        resp = await client.post(
            f"{BASE}/appointments/{appt['id']}/reschedule", json=_slot(4, 15)
        )
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["previous"]["status"] == "cancelled"
        assert data["previous"]["cancel_reason"] == "rescheduled"
        assert data["appointment"]["rescheduled_from"] == appt["id"]
        assert data["appointment"]["start"] == "2026-03-04T15:00:00"
        assert data["offer"]["entry"]["id"] == entry["id"]

    async def test_reschedule_conflict_is_409(self, client: AsyncClient):
        appt = await _book(client)
        await _book(client, "pat-2", **_slot(2, 11))

        resp = await client.post(
            f"{BASE}/appointments/{appt['id']}/reschedule", json=_slot(2, 11)
        )
        assert resp.status_code == 409
        fetched = await client.get(f"{BASE}/appointments/{appt['id']}")
        assert fetched.json()["status"] == "scheduled"

    async def test_reschedule_slots(self, client: AsyncClient):
        appt = await _book(client)
        resp = await client.get(
            f"{BASE}/appointments/{appt['id']}/reschedule-slots", params={"limit": 2}
        )
        assert resp.status_code == 200
        assert [s["start"] for s in resp.json()] == [
            "2026-03-02T09:00:00",
            "2026-03-02T09:30:00",
        ]

    async def test_follow_up(self, client: AsyncClient):
        appt = await _book(client)
        resp = await client.get(
            f"{BASE}/appointments/{appt['id']}/follow-up",
            params={"interval": 1, "unit": "months"},
        )
        assert resp.status_code == 200
        data = resp.json()
        assert data["suggested_date"] == "2026-04-02"
        assert len(data["slots"]) == 16

        resp = await client.get(
            f"{BASE}/appointments/{appt['id']}/follow-up", params={"interval": 0}
        )
        assert resp.status_code == 422


# ---------------------------------------------------------------------------
# Waitlist
# ---------------------------------------------------------------------------

class TestWaitlist:
    async def test_add_and_list(self, client: AsyncClient, clock):
        await _waitlist(client, "a", priority="low")
        clock.advance(minutes=1)
        await _waitlist(client, "b", priority="high", preferred_weekdays=["tuesday"])

        resp = await client.get(f"{BASE}/waitlist", params={"provider_id": "prov-1"})
        assert [e["patient_id"] for e in resp.json()] == ["b", "a"]

        resp = await client.get(
            f"{BASE}/waitlist", params={"provider_id": "prov-1", "priority": "low"}
        )
        assert [e["patient_id"] for e in resp.json()] == ["a"]

    async def test_matching_and_relaxed_slots(self, client: AsyncClient):
        entry = await _waitlist(client, "a", preferred_time_band="evening")
        params = {"date_from": "2026-03-02", "date_to": "2026-03-06"}

        resp = await client.get(f"{BASE}/waitlist/{entry['id']}/slots", params=params)
        assert resp.json() == []

        resp = await client.get(
            f"{BASE}/waitlist/{entry['id']}/slots",
            params={**params, "ignore_preferences": True},
        )
        assert len(resp.json()) == 80

    async def test_assign_then_reassign(self, client: AsyncClient):
        entry = await _waitlist(client, "a")
        resp = await client.post(f"{BASE}/waitlist/{entry['id']}/assign", json=_slot(3, 9))
        assert resp.status_code == 201
        assert resp.json()["waitlist_entry_id"] == entry["id"]

        resp = await client.post(f"{BASE}/waitlist/{entry['id']}/assign", json=_slot(3, 10))
        assert resp.status_code == 409
        assert resp.json()["error"] == "entry_not_waiting"

    async def test_priority_notify_expire_remove(self, client: AsyncClient):
        entry = await _waitlist(client, "a")

        resp = await client.patch(
            f"{BASE}/waitlist/{entry['id']}/priority", json={"priority": "urgent"}
        )
        assert resp.json()["priority"] == "urgent"

        resp = await client.post(f"{BASE}/waitlist/{entry['id']}/notify")
        assert resp.json()["status"] == "notified"

        resp = await client.post(f"{BASE}/waitlist/{entry['id']}/expire")
        assert resp.json()["status"] == "expired"

        resp = await client.delete(f"{BASE}/waitlist/{entry['id']}")
        assert resp.status_code == 204
        resp = await client.get(f"{BASE}/waitlist/{entry['id']}")
        assert resp.status_code == 404

    async def test_notify_for_slot_is_idempotent(self, client: AsyncClient):
        entry = await _waitlist(client, "a")
        url = f"{BASE}/providers/prov-1/waitlist/notify"

        first = (await client.post(url, json=_slot(2, 14))).json()
        second = (await client.post(url, json=_slot(2, 14))).json()
        assert first["entry"]["id"] == second["entry"]["id"] == entry["id"]
        assert first["already_offered"] is False
        assert second["already_offered"] is True

    async def test_expire_lapsed(self, client: AsyncClient, clock):
        entry = await _waitlist(client, "a")
        await client.post(f"{BASE}/waitlist/{entry['id']}/notify")
        clock.advance(hours=3)

        resp = await client.post(
            f"{BASE}/providers/prov-1/waitlist/expire-lapsed", json={"offer_ttl_minutes": 120}
        )
        assert [e["id"] for e in resp.json()] == [entry["id"]]

    async def test_notify_for_booked_slot_offers_nobody(self, client: AsyncClient):
        await _book(client, **_slot(2, 14))
        entry = await _waitlist(client, "a")

        resp = await client.post(f"{BASE}/providers/prov-1/waitlist/notify", json=_slot(2, 14))
        assert resp.status_code == 200
        assert resp.json()["entry"] is None
        fetched = await client.get(f"{BASE}/waitlist/{entry['id']}")
        assert fetched.json()["status"] == "waiting"

    @pytest.mark.parametrize(
        "slot",
        [
            _slot(7, 10),
            _slot(2, 16, 45),
            {"start": "2026-03-02T14:00:00+01:00", "end": "2026-03-02T14:30:00+01:00"},
        ],
        ids=["saturday", "past-closing", "offset-aware"],
    )
    async def test_notify_for_unbookable_slot_is_422(self, client: AsyncClient, slot):
        await _waitlist(client, "a")
        resp = await client.post(f"{BASE}/providers/prov-1/waitlist/notify", json=slot)
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_range"

    async def test_assign_offset_aware_is_422(self, client: AsyncClient):
        entry = await _waitlist(client, "a")
        resp = await client.post(
            f"{BASE}/waitlist/{entry['id']}/assign",
            json={"start": "2026-03-03T09:00:00Z", "end": "2026-03-03T09:30:00Z"},
        )
        assert resp.status_code == 422
        fetched = await client.get(f"{BASE}/waitlist/{entry['id']}")
        assert fetched.json()["status"] == "waiting"


@pytest.mark.parametrize("path", ["/appointments/missing", "/waitlist/missing"])
async def test_unknown_ids_are_404(client: AsyncClient, path: str):
    resp = await client.get(f"{BASE}{path}")
    assert resp.status_code == 404


class TestRequestId:
    async def test_request_id_echoed(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/providers/prov-1", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"

    async def test_request_id_generated(self, client: AsyncClient):
        resp = await client.get(f"{BASE}/providers/prov-1")
        assert len(resp.headers["X-Request-ID"]) == 8

    async def test_request_id_stamped_on_events(self, client: AsyncClient, service, tmp_path):
        service.event_logger = SchedulingEventLogger(log_dir=tmp_path / "audit")
        await client.post(
            f"{BASE}/appointments",
            json={"provider_id": "prov-1", "patient_id": "pat-1", **_slot(2, 10)},
            headers={"X-Request-ID": "req-7"},
        )
        events = service.event_logger.get_recent_events("appointments")
        assert [e["request_id"] for e in events] == ["req-7"]

    async def test_error_code_logged(self, client: AsyncClient, caplog):
        with caplog.at_level(logging.INFO, logger="careslot.api.middleware"):
            await client.get(f"{BASE}/providers/nobody")
        assert any("not_found" in r.getMessage() for r in caplog.records)
