from decimal import Decimal

import pytest

from shared.database import atomic

from app import consumer, wallet
from app import publisher as publisher_module
from app.constants import TransactionStatus, TransactionType
from app.db import SessionLocal

from conftest import CLIENT


class _Recorder:
    enabled = True

    def __init__(self):
        self.routing_keys = []

    async def publish(self, routing_key: str, message_body: str):
        self.routing_keys.append(routing_key)


@pytest.fixture
def events(monkeypatch) -> _Recorder:
    recorder = _Recorder()
    monkeypatch.setattr(publisher_module, "publisher", recorder)
    return recorder


@pytest.fixture
async def deposit_ref(schema) -> str:
    async with SessionLocal() as s:
        async with atomic(s):
            tx = await wallet.create_deposit(s, CLIENT, Decimal("50000"))
        return tx.reference


def _event(event_id: str, reference: str, succeeded: bool = True) -> dict:
    return {
        "event_id": event_id,
        "event_type": "payment.deposit_succeeded" if succeeded else "payment.deposit_failed",
        "data": {"reference": reference, "gateway_transaction_id": "gw-77"},
    }


async def _deposit(reference: str):
    async with SessionLocal() as s:
        items, _ = await wallet.list_transactions(s, CLIENT, tx_type=TransactionType.DEPOSIT)
    return next(t for t in items if t.reference == reference)


async def test_success_credits_wallet(deposit_ref, balance_of, events) -> None:
    assert await consumer.handle_event(_event("evt-1", deposit_ref)) is True

    assert await balance_of(CLIENT) == Decimal("50000")
    tx = await _deposit(deposit_ref)
    assert tx.status == TransactionStatus.SUCCESS
    assert tx.gateway_transaction_id == "gw-77"
    assert tx.balance_after == Decimal("50000")
    assert events.routing_keys == ["wallet.deposit_success"]


async def test_redelivery_is_ignored(deposit_ref, balance_of, events) -> None:
    assert await consumer.handle_event(_event("evt-1", deposit_ref)) is True
    assert await consumer.handle_event(_event("evt-1", deposit_ref)) is False

    assert await balance_of(CLIENT) == Decimal("50000")
    assert events.routing_keys == ["wallet.deposit_success"]


async def test_second_confirmation_does_not_credit_twice(deposit_ref, balance_of, events) -> None:
    await consumer.handle_event(_event("evt-1", deposit_ref))
    # a different gateway event for a deposit that is already settled
    assert await consumer.handle_event(_event("evt-2", deposit_ref)) is True

    assert await balance_of(CLIENT) == Decimal("50000")


async def test_failed_deposit_leaves_balance(deposit_ref, balance_of, events) -> None:
    assert await consumer.handle_event(_event("evt-9", deposit_ref, succeeded=False)) is True

    assert await balance_of(CLIENT) == Decimal("0")
    tx = await _deposit(deposit_ref)
    assert tx.status == TransactionStatus.FAILED
    assert events.routing_keys == ["wallet.deposit_failed"]

    # late success for a failed deposit changes nothing
    await consumer.handle_event(_event("evt-10", deposit_ref))
    assert await balance_of(CLIENT) == Decimal("0")


async def test_unknown_deposit(schema, events) -> None:
    assert await consumer.handle_event(_event("evt-3", "DEP-missing")) is False
    assert events.routing_keys == []


@pytest.mark.parametrize(
    "payload",
    [
        {},
        {"event_id": "x", "event_type": "payment.refunded", "data": {"reference": "DEP-1"}},
        {"event_id": "x", "event_type": "payment.deposit_succeeded", "data": {}},
        {"event_type": "payment.deposit_succeeded", "data": {"reference": "DEP-1"}},
    ],
)
async def test_malformed_events_are_dropped(schema, events, payload) -> None:
    assert await consumer.handle_event(payload) is False
