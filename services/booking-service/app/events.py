import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum


def build_event(event_type: str, data: dict) -> dict:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": datetime.now(timezone.utc).isoformat(),
        "data": data,
    }


def _default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"{type(value).__name__} is not JSON serializable")


def to_json(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), ensure_ascii=False, default=_default)


def booking_data(booking) -> dict:
    return {
        "booking_id": booking.booking_id,
        "client_id": booking.client_id,
        "worker_id": booking.worker_id,
        "service_code": booking.service_code,
        "status": booking.status,
        "payment_status": booking.payment_status,
        "start_time": booking.start_time,
        "end_time": booking.end_time,
        "total_amount": booking.total_amount,
        "currency": booking.currency,
        "escrow_id": booking.escrow_id,
    }


def escrow_data(escrow) -> dict:
    return {
        "escrow_id": escrow.escrow_id,
        "booking_id": escrow.booking_id,
        "client_id": escrow.client_id,
        "worker_id": escrow.worker_id,
        "status": escrow.status,
        "amount": escrow.amount,
        "refund_amount": escrow.refund_amount,
        "penalty_amount": escrow.penalty_amount,
        "currency": escrow.currency,
    }


def transaction_data(tx) -> dict:
    return {
        "transaction_id": tx.transaction_id,
        "user_id": tx.user_id,
        "type": tx.type,
        "status": tx.status,
        "amount": tx.amount,
        "currency": tx.currency,
        "reference": tx.reference,
        "balance_after": tx.balance_after,
    }
