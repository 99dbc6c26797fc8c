"""HTTP surface: identity headers, error mapping and published events."""

import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest

from shared.database import utcnow

from app import publisher as publisher_module
from app.main import app

CLIENT_H = {"X-User-Sub": "client-1", "X-User-Roles": json.dumps(["client"])}
WORKER_H = {"X-User-Sub": "worker-1", "X-User-Roles": json.dumps(["worker"])}
ADMIN_H = {"X-User-Sub": "ops-1", "X-User-Roles": json.dumps(["admin"])}


class RecordingPublisher:
    enabled = True

    def __init__(self):
        self.sent = []

    async def publish(self, routing_key: str, message_body: str):
        self.sent.append((routing_key, json.loads(message_body)))

    @property
    def routing_keys(self) -> list[str]:
        return [rk for rk, _ in self.sent]


@pytest.fixture
def events(monkeypatch) -> RecordingPublisher:
    recorder = RecordingPublisher()
    monkeypatch.setattr(publisher_module, "publisher", recorder)
    return recorder


@pytest.fixture
async def client(schema):
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


async def _top_up(client, headers, amount: str) -> None:
    resp = await client.post("/wallets/me/deposits", json={"amount": amount}, headers=headers)
    assert resp.status_code == 200, resp.text
    reference = resp.json()["reference"]
    resp = await client.post(
        f"/wallets/deposits/{reference}/confirm",
        json={"succeeded": True, "gateway_transaction_id": "gw-1"},
        headers=ADMIN_H,
    )
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "success"


async def _service(client) -> str:
    resp = await client.post(
        "/worker-services",
        json={"service_code": "plumbing", "prices": [{"unit": "HOURLY", "price": "100000", "currency": "VND"}]},
        headers=WORKER_H,
    )
    assert resp.status_code == 200, resp.text
    return resp.json()["worker_service_id"]


def _booking_body(worker_service_id: str, hours_ahead: float = 48) -> dict:
    start = utcnow() + timedelta(hours=hours_ahead)
    return {
        "worker_service_id": worker_service_id,
        "schedule": {"start_time": start.isoformat(), "end_time": (start + timedelta(hours=2)).isoformat()},
        "pricing": {"unit": "HOURLY", "quantity": 2},
        "notes": "gate code 1234",
    }


class TestIdentity:
    async def test_health(self, client) -> None:
        resp = await client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["service"] == "booking-service"

    async def test_missing_caller_is_unauthorized(self, client) -> None:
        resp = await client.get("/wallets/me/balance")
        assert resp.status_code == 401

    async def test_malformed_roles(self, client) -> None:
        resp = await client.get("/wallets/me/balance", headers={"X-User-Sub": "u", "X-User-Roles": "admin"})
        assert resp.status_code == 400


class TestBookingFlow:
    async def test_book_confirm_start_complete(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "250000")

        resp = await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["status"] == "PENDING"
        assert body["payment_status"] == "PAID"
        assert Decimal(body["pricing"]["total_amount"]) == Decimal("204000")
        assert Decimal(body["pricing"]["worker_payout"]) == Decimal("196000")
        assert body["expired"] is False
        booking_id = body["booking_id"]

        resp = await client.get("/wallets/me/balance", headers=CLIENT_H)
        assert Decimal(resp.json()["balance"]) == Decimal("46000")

        for action, status in (("confirm", "CONFIRMED"), ("start", "IN_PROGRESS"), ("complete", "COMPLETED")):
            resp = await client.post(f"/bookings/{booking_id}/actions", json={"action": action}, headers=WORKER_H)
            assert resp.status_code == 200, resp.text
            assert resp.json()["status"] == status

        resp = await client.get("/wallets/me/balance", headers=WORKER_H)
        assert Decimal(resp.json()["balance"]) == Decimal("196000")

        assert "booking.created" in events.routing_keys
        assert "escrow.holding" in events.routing_keys
        assert "booking.completed" in events.routing_keys
        assert "escrow.released" in events.routing_keys
        created = dict(events.sent)["booking.created"]
        assert created["data"]["booking_id"] == booking_id
        assert created["data"]["total_amount"] == "204000.00"

    async def test_insufficient_balance_is_reported(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "100000")

        resp = await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)
        assert resp.status_code == 402
        body = resp.json()
        assert body["error"] == "insufficient_balance"
        assert body["context"]["required"] == "204000.00"

        resp = await client.get("/bookings", headers=CLIENT_H)
        assert resp.json()["total"] == 0
        assert "booking.created" not in events.routing_keys

    async def test_client_cannot_confirm(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "250000")
        booking_id = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()["booking_id"]

        resp = await client.post(f"/bookings/{booking_id}/actions", json={"action": "confirm"}, headers=CLIENT_H)
        assert resp.status_code == 403
        assert resp.json()["error"] == "not_booking_participant"

    async def test_stranger_cannot_read_booking(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "250000")
        booking_id = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()["booking_id"]

        stranger = {"X-User-Sub": "someone"}
        resp = await client.get(f"/bookings/{booking_id}", headers=stranger)
        assert resp.status_code == 403
        assert resp.json()["error"] == "not_booking_participant"
        assert (await client.get(f"/bookings/{booking_id}", headers=ADMIN_H)).status_code == 200
        assert (await client.get("/bookings/nope", headers=CLIENT_H)).status_code == 404

    async def test_parties_edit_a_pending_booking(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "250000")
        booking_id = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()["booking_id"]

        start = utcnow() + timedelta(hours=72)
        schedule = {"start_time": start.isoformat(), "end_time": (start + timedelta(hours=2)).isoformat()}
        resp = await client.patch(
            f"/bookings/{booking_id}", json={"notes": "side door", "schedule": schedule}, headers=CLIENT_H
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["client_notes"] == "side door"
        assert Decimal(body["schedule"]["duration_hours"]) == Decimal("2")
        assert Decimal(body["pricing"]["total_amount"]) == Decimal("204000")
        assert "booking.updated" in events.routing_keys

        resp = await client.patch(f"/bookings/{booking_id}", json={"worker_response": "see you"}, headers=WORKER_H)
        assert resp.status_code == 200, resp.text
        assert resp.json()["worker_response"] == "see you"

        resp = await client.patch(f"/bookings/{booking_id}", json={"notes": "x"}, headers=WORKER_H)
        assert resp.status_code == 403
        resp = await client.patch(f"/bookings/{booking_id}", json={"notes": "x"}, headers={"X-User-Sub": "someone"})
        assert resp.status_code == 403
        assert resp.json()["error"] == "not_booking_participant"

    async def test_worker_cancel_refunds_client(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "204000")
        booking_id = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()["booking_id"]
        await client.post(f"/bookings/{booking_id}/actions", json={"action": "confirm"}, headers=WORKER_H)

        resp = await client.post(
            f"/bookings/{booking_id}/cancel", json={"reason": "emergency", "notes": "sick"}, headers=WORKER_H
        )
        assert resp.status_code == 200, resp.text
        body = resp.json()
        assert body["status"] == "CANCELLED"
        assert body["payment_status"] == "REFUNDED"
        assert body["cancellation"]["cancelled_by"] == "worker"

        resp = await client.get("/wallets/me/balance", headers=CLIENT_H)
        assert Decimal(resp.json()["balance"]) == Decimal("204000")

        resp = await client.get("/escrows", params={"role": "client"}, headers=CLIENT_H)
        items = resp.json()["items"]
        assert len(items) == 1
        assert items[0]["status"] == "REFUNDED"

    async def test_cancel_pending_is_conflict(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "250000")
        booking_id = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()["booking_id"]

        resp = await client.post(f"/bookings/{booking_id}/cancel", json={"reason": "other"}, headers=CLIENT_H)
        assert resp.status_code == 409
        assert resp.json()["error"] == "invalid_booking_state"


class TestWalletAndEscrowAdmin:
    async def test_deposit_confirmation_requires_admin(self, client, events) -> None:
        resp = await client.post("/wallets/me/deposits", json={"amount": "5000"}, headers=CLIENT_H)
        reference = resp.json()["reference"]
        resp = await client.post(f"/wallets/deposits/{reference}/confirm", json={"succeeded": True}, headers=CLIENT_H)
        assert resp.status_code == 403

    async def test_deposit_out_of_range(self, client) -> None:
        resp = await client.post("/wallets/me/deposits", json={"amount": "10"}, headers=CLIENT_H)
        assert resp.status_code == 422
        assert resp.json()["error"] == "invalid_amount"

    async def test_transactions_listing(self, client, events) -> None:
        await _top_up(client, CLIENT_H, "50000")
        resp = await client.post("/wallets/me/withdrawals", json={"amount": "20000"}, headers=CLIENT_H)
        assert resp.status_code == 200, resp.text

        resp = await client.get("/wallets/me/transactions", headers=CLIENT_H)
        body = resp.json()
        assert body["total"] == 2
        assert {t["type"] for t in body["items"]} == {"deposit", "withdraw"}

    async def test_admin_dispute_and_refund(self, client, events) -> None:
        ws_id = await _service(client)
        await _top_up(client, CLIENT_H, "204000")
        booking = (await client.post("/bookings", json=_booking_body(ws_id), headers=CLIENT_H)).json()
        escrow_id = booking["escrow_id"]

        assert (await client.post(f"/escrows/{escrow_id}/dispute", headers=CLIENT_H)).status_code == 403
        resp = await client.post(f"/escrows/{escrow_id}/dispute", headers=ADMIN_H)
        assert resp.json()["status"] == "DISPUTED"

        resp = await client.post(
            f"/escrows/{escrow_id}/refund",
            json={"refund_amount": "100000", "penalty_amount": "0", "reason": "dispute_resolved"},
            headers=ADMIN_H,
        )
        assert resp.status_code == 422
        assert resp.json()["error"] == "refund_amount_mismatch"

        resp = await client.post(
            f"/escrows/{escrow_id}/refund",
            json={"refund_amount": "204000", "penalty_amount": "0", "reason": "dispute_resolved"},
            headers=ADMIN_H,
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "REFUNDED"

        resp = await client.get("/escrows/summary", headers=CLIENT_H)
        summary = resp.json()
        assert summary["count_by_status"]["REFUNDED"] == 1
        assert Decimal(summary["total_refunded"]) == Decimal("204000")
