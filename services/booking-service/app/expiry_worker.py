import asyncio
import logging

from . import config
from .bookings import expire_stale_bookings, release_lapsed_escrows
from .db import SessionLocal
from .escrow import get_escrow
from .events import booking_data, escrow_data
from .publisher import publish_event

log = logging.getLogger(__name__)


async def sweep_once() -> int:
    """One pass: expire unanswered bookings, then release lapsed escrow holds."""
    async with SessionLocal() as db:
        expired = [booking_data(b) for b in await expire_stale_bookings(db)]
        completed = []
        for booking in await release_lapsed_escrows(db):
            held = await get_escrow(db, booking.escrow_id)
            completed.append((booking_data(booking), escrow_data(held)))
        await db.commit()

    for data in expired:
        await publish_event("booking.expired", data)
    for data, held in completed:
        await publish_event("booking.completed", data)
        await publish_event("escrow.released", held)
    return len(expired) + len(completed)


async def expiry_loop(stop_event: asyncio.Event, interval: float | None = None):
    interval = interval or config.BOOKING_EXPIRY_SWEEP_SECONDS
    while not stop_event.is_set():
        try:
            await sweep_once()
        except Exception:
            log.exception("booking expiry sweep failed")
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            continue
