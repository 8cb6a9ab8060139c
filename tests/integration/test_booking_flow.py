import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from src.api.routes.routes import get_payment_verifier
from src.infrastructure.payments.stripe_gateway import StripeWebhookVerifier
from src.main import app


SLOT_DATE = "2026-03-10"
SLOT_TIME = "17:00"
WEBHOOK_SECRET = "whsec_flow"


def _user(name: str) -> dict:
    return {"user_id": f"user-{name}", "user_name": name.title(), "user_email": f"{name}@example.com"}


@pytest.fixture
def experience_id(client):
    response = client.post(
        "/experiences",
        json={
            "title": "Sunset Kayak Tour",
            "price": "100.00",
            "slots": [{"date": SLOT_DATE, "time": SLOT_TIME, "capacity": 2}],
        },
    )
    assert response.status_code == 200
    assert response.json()["slots"][0]["available"] == 2
    return response.json()["id"]


def _slot(experience_id: str) -> dict:
    return {"experience_id": experience_id, "slot_date": SLOT_DATE, "slot_time": SLOT_TIME}


def _book(client, experience_id, name, quantity, **extra):
    return client.post(
        "/bookings",
        json={**_user(name), **_slot(experience_id), "quantity": quantity, **extra},
    )


def _available(client, experience_id) -> int:
    return client.get(f"/experiences/{experience_id}").json()["slots"][0]["available"]


def test_booking_flow(client, experience_id):
    response = _book(client, experience_id, "ada", 2, idempotency_key="abc123")

    assert response.status_code == 200
    booking_id = response.json()["booking_id"]
    assert response.json()["status"] == "confirmed"
    assert response.json()["payment_status"] == "pending"
    assert Decimal(response.json()["total_price"]) == Decimal("200.00")
    assert _available(client, experience_id) == 0

    full = _book(client, experience_id, "grace", 1)
    assert full.status_code == 409
    assert full.json()["detail"]["error"] == "InsufficientCapacity"

    cancel_response = client.post(f"/bookings/{booking_id}/cancel", json={"user_id": "user-ada"})
    assert cancel_response.status_code == 200
    assert cancel_response.json()["status"] == "cancelled"
    assert _available(client, experience_id) == 2

    again = client.post(f"/bookings/{booking_id}/cancel")
    assert again.status_code == 409
    assert again.json()["detail"]["error"] == "AlreadyCancelled"
    assert _available(client, experience_id) == 2


def test_duplicate_idempotency_key(client, experience_id):
    assert _book(client, experience_id, "ada", 1, idempotency_key="same").status_code == 200

    response = _book(client, experience_id, "ada", 1, idempotency_key="same")

    assert response.status_code == 409
    assert response.json()["detail"]["error"] == "IdempotencyConflict"
    assert _available(client, experience_id) == 1


def test_unknown_slot_and_booking(client, experience_id):
    response = client.post(
        "/bookings",
        json={**_user("ada"), "experience_id": experience_id, "slot_date": "2026-04-01", "slot_time": SLOT_TIME, "quantity": 1},
    )
    assert response.status_code == 404
    assert response.json()["detail"]["error"] == "SlotNotFound"

    assert client.get("/bookings/does-not-exist").status_code == 404


def test_invalid_quantity_is_rejected_by_schema(client, experience_id):
    assert _book(client, experience_id, "ada", 0).status_code == 422


def test_list_bookings_for_user(client, experience_id):
    booking_id = _book(client, experience_id, "ada", 1).json()["booking_id"]

    response = client.get("/bookings", params={"user_id": "user-ada"})

    assert response.status_code == 200
    assert [b["booking_id"] for b in response.json()] == [booking_id]


def test_waitlist_offer_and_accept(client, experience_id):
    booking_id = _book(client, experience_id, "ada", 2).json()["booking_id"]

    joined = client.post("/waitlist", json={**_user("grace"), **_slot(experience_id), "quantity": 1})
    assert joined.status_code == 200
    entry_id = joined.json()["waitlist_id"]
    assert joined.json()["status"] == "waiting"
    assert joined.json()["position"] == 1

    duplicate = client.post("/waitlist", json={**_user("grace"), **_slot(experience_id), "quantity": 1})
    assert duplicate.status_code == 409
    assert duplicate.json()["detail"]["error"] == "AlreadyWaiting"

    client.post(f"/bookings/{booking_id}/cancel")

    offered = client.get(f"/waitlist/{entry_id}").json()
    assert offered["status"] == "offered"
    assert offered["expires_at"] is not None

    accepted = client.post(f"/waitlist/{entry_id}/accept", json={"user_id": "user-grace"})
    assert accepted.status_code == 200
    assert accepted.json()["quantity"] == 1
    assert _available(client, experience_id) == 1
    assert client.get(f"/waitlist/{entry_id}").json()["status"] == "booked"


def test_waitlist_process_and_leave(client, experience_id):
    ada = client.post("/waitlist", json={**_user("ada"), **_slot(experience_id), "quantity": 1}).json()
    grace = client.post(
        "/waitlist",
        json={**_user("grace"), **_slot(experience_id), "quantity": 1, "priority": 1},
    ).json()

    processed = client.post("/waitlist/process", json={**_slot(experience_id), "available_seats": 1})
    assert processed.status_code == 200
    assert processed.json()["processed"] == 1
    assert processed.json()["offered"][0]["waitlist_id"] == grace["waitlist_id"]

    declined = client.post(f"/waitlist/{grace['waitlist_id']}/decline", json={"user_id": "user-grace"})
    assert declined.json()["status"] == "expired"
    assert client.get(f"/waitlist/{ada['waitlist_id']}").json()["status"] == "offered"

    assert client.post("/waitlist/expire").json() == {"expired": 0}

    left = client.delete(f"/waitlist/{ada['waitlist_id']}", params={"user_id": "user-ada"})
    assert left.status_code == 404


def test_group_booking_flow(client):
    experience_id = client.post(
        "/experiences",
        json={
            "title": "Cooking Class",
            "price": "100.00",
            "slots": [{"date": SLOT_DATE, "time": SLOT_TIME, "capacity": 10}],
        },
    ).json()["id"]
    participants = [{"name": f"Guest {i}", "email": f"guest{i}@example.com"} for i in range(5)]

    response = client.post(
        "/group-bookings",
        json={"user_id": "user-org", **_slot(experience_id), "participants": participants},
    )

    assert response.status_code == 200
    body = response.json()
    assert body["discount_applied"] == 10
    assert Decimal(body["total_saved"]) == Decimal("50.00")
    assert Decimal(body["booking"]["total_price"]) == Decimal("450.00")
    assert len(body["booking"]["payment_splits"]) == 5
    booking_id = body["booking"]["booking_id"]

    reminded = client.post(f"/group-bookings/{booking_id}/invite", json={"user_id": "user-org"})
    assert reminded.json()["reminded"] == 4

    listed = client.get("/group-bookings", params={"user_id": "user-org"}).json()
    assert [b["booking_id"] for b in listed] == [booking_id]

    cancelled = client.post(f"/group-bookings/{booking_id}/cancel", json={"user_id": "user-org"})
    assert cancelled.json()["status"] == "cancelled"
    assert _available(client, experience_id) == 10


def test_party_of_one_is_a_regular_booking(client, experience_id):
    response = client.post(
        "/group-bookings",
        json={
            "user_id": "user-solo",
            **_slot(experience_id),
            "participants": [{"name": "Solo", "email": "solo@example.com"}],
        },
    )

    assert response.status_code == 200
    assert response.json()["discount_applied"] == 0
    assert response.json()["booking"]["is_group_booking"] is False
    assert response.json()["booking"]["quantity"] == 1


def test_capacity_update(client, experience_id):
    _book(client, experience_id, "ada", 2)

    too_low = client.put(
        f"/experiences/{experience_id}/slots/capacity",
        json={"date": SLOT_DATE, "time": SLOT_TIME, "capacity": 1},
    )
    assert too_low.status_code == 409
    assert too_low.json()["detail"]["error"] == "CapacityBelowBooked"

    raised = client.put(
        f"/experiences/{experience_id}/slots/capacity",
        json={"date": SLOT_DATE, "time": SLOT_TIME, "capacity": 4},
    )
    assert raised.json()["available"] == 2


def test_stripe_webhook_marks_booking_paid(client, experience_id):
    app.dependency_overrides[get_payment_verifier] = lambda: StripeWebhookVerifier(WEBHOOK_SECRET)
    booking_id = _book(client, experience_id, "ada", 1).json()["booking_id"]
    payload = json.dumps(
        {
            "id": "evt_1",
            "object": "event",
            "type": "checkout.session.completed",
            "data": {"object": {"id": "cs_1", "payment_intent": "pi_1", "metadata": {"booking_id": booking_id}}},
        }
    ).encode("utf-8")
    timestamp = int(time.time())
    signature = hmac.new(
        WEBHOOK_SECRET.encode("utf-8"),
        f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    headers = {"Stripe-Signature": f"t={timestamp},v1={signature}", "Content-Type": "application/json"}

    response = client.post("/webhooks/stripe", content=payload, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"received": True, "booking_id": booking_id, "payment_status": "paid"}

    replay = client.post("/webhooks/stripe", content=payload, headers=headers)
    assert replay.status_code == 200

    forged = client.post("/webhooks/stripe", content=payload, headers={"Stripe-Signature": "t=1,v1=bad"})
    assert forged.status_code == 400
    assert forged.json()["detail"]["error"] == "PaymentVerificationFailed"


def test_outbox_collects_side_effects(client, experience_id, dispatcher):
    booking_id = _book(client, experience_id, "ada", 1).json()["booking_id"]

    events = client.get("/outbox/events").json()
    event_types = [e["event_type"] for e in events]
    assert "BOOKING_CREATED" in event_types
    assert "SLOT_AVAILABILITY_UPDATED" in event_types
    assert dispatcher.names() == ["booking_created", "capacity_changed"]

    created = next(e for e in events if e["event_type"] == "BOOKING_CREATED")
    assert created["aggregate_id"] == booking_id
    published = client.post(f"/outbox/events/{created['id']}/mark-published")
    assert published.json()["status"] == "PUBLISHED"
    assert created["id"] not in [e["id"] for e in client.get("/outbox/events").json()]
