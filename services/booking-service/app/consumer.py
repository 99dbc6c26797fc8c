import json
import logging

import aio_pika

from shared.database import atomic
from shared.idempotency import is_processed, mark_processed
from shared.rabbitmq import EXCHANGE_NAME, connect

from .config import RABBIT_URL
from .db import SessionLocal
from .errors import DepositNotFound
from .events import transaction_data
from .publisher import publish_event
from .wallet import confirm_deposit

log = logging.getLogger(__name__)

QUEUE_NAME = "booking_service_payment_events"
ROUTING_KEYS = ["payment.deposit_succeeded", "payment.deposit_failed"]


async def handle_event(payload: dict) -> bool:
    """Apply one gateway event. Returns False when it was ignored."""
    event_id = payload.get("event_id")
    event_type = payload.get("event_type")
    data = payload.get("data") or {}
    reference = data.get("reference")

    if event_type not in ROUTING_KEYS or not event_id or not reference:
        log.warning("dropping malformed payment event %r", event_id)
        return False

    async with SessionLocal() as db:
        async with atomic(db):
            if await is_processed(db, event_id):
                return False
            try:
                tx = await confirm_deposit(
                    db,
                    reference,
                    succeeded=event_type == "payment.deposit_succeeded",
                    gateway_transaction_id=data.get("gateway_transaction_id"),
                )
            except DepositNotFound:
                log.warning("payment event %s for unknown deposit %s", event_id, reference)
                await mark_processed(db, event_id, event_type)
                return False
            await mark_processed(db, event_id, event_type)

    await publish_event(f"wallet.deposit_{tx.status.value}", transaction_data(tx))
    return True


async def handle_message(message: aio_pika.abc.AbstractIncomingMessage):
    async with message.process(requeue=False):
        try:
            payload = json.loads(message.body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("dropping undecodable message %s", message.message_id)
            return
        await handle_event(payload)


async def start_consumer():
    conn = await connect(RABBIT_URL)
    channel = await conn.channel()
    await channel.set_qos(prefetch_count=50)

    exchange = await channel.declare_exchange(
        EXCHANGE_NAME, aio_pika.ExchangeType.TOPIC, durable=True
    )

    queue = await channel.declare_queue(QUEUE_NAME, durable=True)
    for rk in ROUTING_KEYS:
        await queue.bind(exchange, routing_key=rk)

    await queue.consume(handle_message)
    log.info("[booking-service] consumer started")
    return conn
