"""Booking lifecycle: creation, worker actions, cancellation and disputes.

Each public operation is one database transaction. Status changes are
compare-and-swap updates on the status the booking was loaded with, so of two
concurrent actors exactly one wins and the other gets ``InvalidBookingState``.
Money moves through the wallet ledger and the escrow store in the same
transaction as the status change.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import as_utc, atomic, utcnow

from . import config, escrow as escrow_store, wallet
from .catalog import get_worker_service
from .constants import (
    ACTIVE_BOOKING_STATUSES,
    BookingStatus,
    CancellationReason,
    CancelledBy,
    EscrowStatus,
    PaymentStatus,
    PricingUnit,
    RefundReason,
    ReleaseReason,
    TransactionType,
    WorkerAction,
)
from .errors import (
    InvalidBookingState,
    InvalidEscrowState,
    InvalidPricingInput,
    InvalidSchedule,
    NotBookingParticipant,
    NotFound,
    RefundAmountMismatch,
    ScheduleConflict,
    WorkerServiceUnavailable,
)
from .models import Booking, Escrow
from .policy import CancellationPolicy, default_policy
from .pricing import compute_pricing
from .state_machine import can_transition, sources_for

log = logging.getLogger(__name__)

EXPIRED_RESPONSE = "Expired without a worker response"

# hours covered by one priced unit; a month never fits a single slot
UNIT_HOURS = {PricingUnit.HOURLY: 1, PricingUnit.DAILY: 24}


def validate_schedule(start_time: datetime, end_time: datetime, now: datetime) -> Decimal:
    """Check notice and duration bounds; return the duration in hours (one decimal)."""
    start_time, end_time = as_utc(start_time), as_utc(end_time)
    if end_time <= start_time:
        raise InvalidSchedule("end_time must be after start_time", start_time=start_time, end_time=end_time)

    if start_time - now < timedelta(hours=config.MIN_ADVANCE_HOURS):
        raise InvalidSchedule(
            f"bookings need at least {config.MIN_ADVANCE_HOURS:g} hours notice", start_time=start_time
        )
    if start_time - now > timedelta(days=config.MAX_ADVANCE_DAYS):
        raise InvalidSchedule(
            f"bookings can be made at most {config.MAX_ADVANCE_DAYS:g} days ahead", start_time=start_time
        )

    hours = Decimal((end_time - start_time).total_seconds()) / Decimal(3600)
    if hours < Decimal(str(config.MIN_DURATION_HOURS)) or hours > Decimal(str(config.MAX_DURATION_HOURS)):
        raise InvalidSchedule(
            f"duration must be between {config.MIN_DURATION_HOURS:g} and {config.MAX_DURATION_HOURS:g} hours",
            duration_hours=str(hours.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)),
        )
    return hours.quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)


def validate_quantity(start_time: datetime, end_time: datetime, unit: PricingUnit, quantity: int):
    """The units paid for must cover the booked slot exactly."""
    unit = PricingUnit(unit)
    unit_hours = UNIT_HOURS.get(unit)
    if unit_hours is None:
        raise InvalidSchedule(f"{unit.value} pricing cannot be booked as a single slot", unit=unit)
    if end_time - start_time != timedelta(hours=unit_hours * quantity):
        raise InvalidSchedule(
            "quantity does not match the booked duration",
            unit=unit,
            quantity=quantity,
            duration_hours=str(Decimal((end_time - start_time).total_seconds()) / Decimal(3600)),
        )


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    res = await session.execute(
        select(Booking).where(Booking.booking_id == booking_id).execution_options(populate_existing=True)
    )
    booking = res.scalar_one_or_none()
    if booking is None:
        raise NotFound("Booking not found", booking_id=booking_id)
    return booking


async def _ensure_worker_free(
    session: AsyncSession,
    worker_id: str,
    start_time: datetime,
    end_time: datetime,
    exclude_booking_id: str | None = None,
):
    conditions = [
        Booking.worker_id == worker_id,
        Booking.status.in_(ACTIVE_BOOKING_STATUSES),
        Booking.start_time < end_time,
        Booking.end_time > start_time,
    ]
    if exclude_booking_id is not None:
        conditions.append(Booking.booking_id != exclude_booking_id)
    res = await session.execute(select(Booking.booking_id).where(*conditions).limit(1))
    clash = res.scalar_one_or_none()
    if clash is not None:
        raise ScheduleConflict("Worker already has a booking in this time range", conflicting_booking_id=clash)


async def create_booking(
    session: AsyncSession,
    client_id: str,
    worker_service_id: str,
    start_time: datetime,
    end_time: datetime,
    unit: PricingUnit,
    quantity: int,
    notes: str | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    start_time, end_time = as_utc(start_time), as_utc(end_time)

    async with atomic(session):
        ws = await get_worker_service(session, worker_service_id, for_update=True)
        if not ws.is_active:
            raise WorkerServiceUnavailable("Worker service is not active", worker_service_id=worker_service_id)
        if ws.worker_id == client_id:
            raise WorkerServiceUnavailable("Workers cannot book their own service", worker_service_id=worker_service_id)

        duration_hours = validate_schedule(start_time, end_time, now)

        price = ws.price_for(PricingUnit(unit))
        if price is None:
            raise InvalidPricingInput("Worker service has no price for this unit", unit=unit)
        pricing = compute_pricing(price.price, unit, quantity, config.PLATFORM_FEE_PERCENT, price.currency)
        validate_quantity(start_time, end_time, pricing.unit, pricing.quantity)

        await _ensure_worker_free(session, ws.worker_id, start_time, end_time)

        booking_id = str(uuid.uuid4())
        hold = None
        if pricing.total_amount > 0:
            hold = await wallet.debit(
                session,
                client_id,
                pricing.total_amount,
                TransactionType.PAYMENT,
                currency=pricing.currency,
                reference=f"booking:{booking_id}:payment",
                booking_id=booking_id,
                description=f"Booking {ws.service_code}",
            )

        booking = Booking(
            booking_id=booking_id,
            client_id=client_id,
            worker_id=ws.worker_id,
            worker_service_id=ws.worker_service_id,
            service_code=ws.service_code,
            start_time=start_time,
            end_time=end_time,
            duration_hours=duration_hours,
            pricing_unit=pricing.unit,
            unit_price=pricing.unit_price,
            quantity=pricing.quantity,
            subtotal=pricing.subtotal,
            platform_fee=pricing.platform_fee,
            total_amount=pricing.total_amount,
            worker_payout=pricing.worker_payout,
            currency=pricing.currency,
            status=BookingStatus.PENDING,
            payment_status=PaymentStatus.PAID,
            client_notes=notes,
            hold_transaction_id=hold.transaction_id if hold else None,
            created_at=now,
        )
        session.add(booking)
        await session.flush()

        held = await escrow_store.capture(
            session,
            booking_id,
            pricing.total_amount,
            pricing.worker_payout,
            pricing.platform_fee,
            pricing.currency,
            client_id=client_id,
            worker_id=ws.worker_id,
            now=now,
        )
        booking.escrow_id = held.escrow_id
        await session.flush()

    log.info("booking %s created by %s, total=%s %s", booking_id, client_id, pricing.total_amount, pricing.currency)
    return booking


async def update_booking(
    session: AsyncSession,
    booking_id: str,
    actor_id: str,
    *,
    notes: str | None = None,
    start_time: datetime | None = None,
    end_time: datetime | None = None,
    worker_response: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Edit a booking the worker has not answered yet.

    The client may change the notes or move the slot; the worker may change
    the response. A new slot must cover the same paid units, so the price and
    the escrow stay as they are.
    """
    now = now or utcnow()
    reschedule = start_time is not None or end_time is not None
    if reschedule and (start_time is None or end_time is None):
        raise InvalidSchedule("start_time and end_time must be given together")

    async with atomic(session):
        booking = await get_booking(session, booking_id)
        if actor_id not in (booking.client_id, booking.worker_id):
            raise NotBookingParticipant("Only the client or the worker can edit a booking", booking_id=booking_id)
        if (notes is not None or reschedule) and actor_id != booking.client_id:
            raise NotBookingParticipant("Only the client can change notes or the schedule", booking_id=booking_id)
        if worker_response is not None and actor_id != booking.worker_id:
            raise NotBookingParticipant("Only the worker can change the response", booking_id=booking_id)
        if booking.status != BookingStatus.PENDING:
            raise InvalidBookingState(
                f"Cannot edit a {booking.status.value} booking", booking_id=booking_id, status=booking.status
            )
        _require_not_expired(booking, now)

        values = {}
        if notes is not None:
            values["client_notes"] = notes
        if worker_response is not None:
            values["worker_response"] = worker_response
        if reschedule:
            start_time, end_time = as_utc(start_time), as_utc(end_time)
            values["duration_hours"] = validate_schedule(start_time, end_time, now)
            validate_quantity(start_time, end_time, booking.pricing_unit, booking.quantity)
            await get_worker_service(session, booking.worker_service_id, for_update=True)
            await _ensure_worker_free(session, booking.worker_id, start_time, end_time, exclude_booking_id=booking_id)
            values["start_time"] = start_time
            values["end_time"] = end_time
        if not values:
            return booking

        res = await session.execute(
            update(Booking)
            .where(Booking.booking_id == booking_id, Booking.status == BookingStatus.PENDING)
            .values(**values)
            .returning(Booking),
            execution_options={"synchronize_session": False, "populate_existing": True},
        )
        updated = res.scalar_one_or_none()
        if updated is None:
            raise InvalidBookingState("Booking state changed, please refresh", booking_id=booking_id)

    log.info("booking %s edited by %s: %s", booking_id, actor_id, ", ".join(sorted(values)))
    return updated


async def _transition(session: AsyncSession, booking: Booking, target: BookingStatus, *conditions, **values) -> Booking:
    expected = booking.status
    if not can_transition(expected, target):
        raise InvalidBookingState(
            f"Cannot move booking from {expected.value} to {target.value}",
            booking_id=booking.booking_id,
            status=expected,
            target=target,
        )

    res = await session.execute(
        update(Booking)
        .where(Booking.booking_id == booking.booking_id, Booking.status == expected, *conditions)
        .values(status=target, **values)
        .returning(Booking),
        execution_options={"synchronize_session": False, "populate_existing": True},
    )
    updated = res.scalar_one_or_none()
    if updated is None:
        log.warning("booking %s changed underneath a %s transition", booking.booking_id, target.value)
        raise InvalidBookingState(
            "Booking state changed, please refresh",
            booking_id=booking.booking_id,
            expected=expected,
            target=target,
        )
    log.info("booking %s %s -> %s", booking.booking_id, expected.value, target.value)
    return updated


def _require_worker(booking: Booking, worker_id: str):
    if booking.worker_id != worker_id:
        raise NotBookingParticipant("Only the booked worker can do this", booking_id=booking.booking_id)


def _require_not_expired(booking: Booking, now: datetime):
    if booking.is_expired(now):
        raise InvalidBookingState(
            "Booking start time has passed",
            booking_id=booking.booking_id,
            status=booking.status,
            expired=True,
        )


async def confirm(session: AsyncSession, booking_id: str, worker_id: str, response: str | None = None,
                  now: datetime | None = None) -> Booking:
    now = now or utcnow()
    async with atomic(session):
        booking = await get_booking(session, booking_id)
        _require_worker(booking, worker_id)
        _require_not_expired(booking, now)
        values = {"confirmed_at": now}
        if response is not None:
            values["worker_response"] = response
        booking = await _transition(session, booking, BookingStatus.CONFIRMED, **values)
    return booking


async def reject(session: AsyncSession, booking_id: str, worker_id: str, response: str | None = None,
                 now: datetime | None = None) -> Booking:
    now = now or utcnow()
    async with atomic(session):
        booking = await get_booking(session, booking_id)
        _require_worker(booking, worker_id)
        _require_not_expired(booking, now)
        booking = await _reject(session, booking, response, now)
    return booking


async def _reject(session: AsyncSession, booking: Booking, response: str | None, now: datetime) -> Booking:
    booking = await _transition(
        session,
        booking,
        BookingStatus.REJECTED,
        worker_response=response,
        payment_status=PaymentStatus.REFUNDED,
    )
    if booking.escrow_id:
        await escrow_store.refund(
            session,
            booking.escrow_id,
            booking.total_amount,
            Decimal("0"),
            RefundReason.BOOKING_REJECTED,
            now=now,
        )
    return booking


async def start(session: AsyncSession, booking_id: str, worker_id: str, now: datetime | None = None) -> Booking:
    now = now or utcnow()
    async with atomic(session):
        booking = await get_booking(session, booking_id)
        _require_worker(booking, worker_id)
        _require_not_expired(booking, now)
        if booking.payment_status != PaymentStatus.PAID:
            raise InvalidBookingState(
                "Booking is not paid", booking_id=booking_id, payment_status=booking.payment_status
            )
        booking = await _transition(
            session,
            booking,
            BookingStatus.IN_PROGRESS,
            Booking.payment_status == PaymentStatus.PAID,
            started_at=now,
        )
    return booking


async def complete(session: AsyncSession, booking_id: str, worker_id: str, response: str | None = None,
                   now: datetime | None = None) -> Booking:
    now = now or utcnow()
    async with atomic(session):
        booking = await get_booking(session, booking_id)
        _require_worker(booking, worker_id)
        values = {"completed_at": now}
        if response is not None:
            values["worker_response"] = response
        booking = await _transition(session, booking, BookingStatus.COMPLETED, **values)
        if booking.escrow_id:
            await escrow_store.release(session, booking.escrow_id, ReleaseReason.BOOKING_COMPLETED, now=now)
    return booking


async def worker_action(
    session: AsyncSession,
    booking_id: str,
    worker_id: str,
    action: WorkerAction,
    response: str | None = None,
    now: datetime | None = None,
) -> Booking:
    action = WorkerAction(action)
    if action == WorkerAction.CONFIRM:
        return await confirm(session, booking_id, worker_id, response, now=now)
    if action == WorkerAction.REJECT:
        return await reject(session, booking_id, worker_id, response, now=now)
    if action == WorkerAction.START:
        return await start(session, booking_id, worker_id, now=now)
    return await complete(session, booking_id, worker_id, response, now=now)


def resolve_cancelled_by(booking: Booking, actor_id: str, is_admin: bool = False) -> CancelledBy:
    if actor_id == booking.client_id:
        return CancelledBy.CLIENT
    if actor_id == booking.worker_id:
        return CancelledBy.WORKER
    if is_admin:
        return CancelledBy.ADMIN
    raise NotBookingParticipant("Only the client or the worker can cancel", booking_id=booking.booking_id)


async def cancel(
    session: AsyncSession,
    booking_id: str,
    cancelled_by: CancelledBy,
    reason: CancellationReason,
    notes: str | None = None,
    policy: CancellationPolicy | None = None,
    now: datetime | None = None,
) -> Booking:
    now = now or utcnow()
    policy = policy or default_policy()
    cancelled_by = CancelledBy(cancelled_by)
    reason = CancellationReason(reason)

    async with atomic(session):
        booking = await get_booking(session, booking_id)
        if booking.status not in sources_for(BookingStatus.CANCELLED):
            raise InvalidBookingState(
                f"Cannot cancel a {booking.status.value} booking", booking_id=booking_id, status=booking.status
            )

        split = policy.compute_refund(booking, cancelled_by, reason, now)
        if split.refund_amount + split.penalty_amount != booking.total_amount:
            raise RefundAmountMismatch(
                "Cancellation split does not add up to the booking total",
                booking_id=booking_id,
                total_amount=booking.total_amount,
                refund_amount=split.refund_amount,
                penalty_amount=split.penalty_amount,
            )

        payment_status = PaymentStatus.REFUNDED if split.penalty_amount == 0 else PaymentStatus.PARTIALLY_REFUNDED
        booking = await _transition(
            session,
            booking,
            BookingStatus.CANCELLED,
            payment_status=payment_status,
            cancelled_by=cancelled_by,
            cancellation_reason=reason,
            cancellation_notes=notes,
            cancelled_at=now,
            refund_amount=split.refund_amount,
            penalty_amount=split.penalty_amount,
        )
        if booking.escrow_id:
            await escrow_store.refund(
                session,
                booking.escrow_id,
                split.refund_amount,
                split.penalty_amount,
                RefundReason.BOOKING_CANCELLED,
                now=now,
            )

    log.info(
        "booking %s cancelled by %s (%s): refund=%s penalty=%s",
        booking_id, cancelled_by.value, reason.value, split.refund_amount, split.penalty_amount,
    )
    return booking


async def dispute(session: AsyncSession, booking_id: str, client_id: str, reason: str | None = None,
                  now: datetime | None = None) -> Booking:
    now = now or utcnow()
    async with atomic(session):
        booking = await get_booking(session, booking_id)
        if booking.client_id != client_id:
            raise NotBookingParticipant("Only the client can dispute a booking", booking_id=booking_id)
        window = timedelta(hours=config.DISPUTE_WINDOW_HOURS)
        if booking.completed_at is not None and now > booking.completed_at + window:
            raise InvalidBookingState(
                "Dispute window has closed",
                booking_id=booking_id,
                completed_at=booking.completed_at,
                window_hours=config.DISPUTE_WINDOW_HOURS,
            )
        booking = await _transition(
            session, booking, BookingStatus.DISPUTED, disputed_at=now, dispute_reason=reason
        )
    return booking


async def list_bookings(
    session: AsyncSession,
    user_id: str | None,
    role: str | None = None,
    status: BookingStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Booking], int]:
    conditions = []
    if user_id is not None:
        if role == "client":
            conditions.append(Booking.client_id == user_id)
        elif role == "worker":
            conditions.append(Booking.worker_id == user_id)
        else:
            conditions.append(or_(Booking.client_id == user_id, Booking.worker_id == user_id))
    if status is not None:
        conditions.append(Booking.status == status)

    total = (await session.execute(select(func.count()).select_from(Booking).where(*conditions))).scalar_one()
    res = await session.execute(
        select(Booking)
        .where(*conditions)
        .order_by(Booking.start_time.desc(), Booking.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total


async def expire_stale_bookings(session: AsyncSession, now: datetime | None = None, batch: int = 50) -> list[Booking]:
    """Reject PENDING bookings whose start has passed and refund the client in full.

    Past-due CONFIRMED bookings are left alone; the worker agreed to them, so
    they are settled by a cancellation or an admin decision instead.
    """
    now = now or utcnow()
    res = await session.execute(
        select(Booking.booking_id)
        .where(Booking.status == BookingStatus.PENDING, Booking.start_time <= now)
        .order_by(Booking.start_time)
        .limit(batch)
    )
    booking_ids = list(res.scalars().all())
    await session.commit()

    expired = []
    for booking_id in booking_ids:
        try:
            async with atomic(session):
                booking = await get_booking(session, booking_id)
                if not (booking.status == BookingStatus.PENDING and booking.is_expired(now)):
                    continue
                await _reject(session, booking, EXPIRED_RESPONSE, now)
        except InvalidBookingState:
            # the worker acted on it in the meantime
            continue
        except InvalidEscrowState:
            log.warning("booking %s is past due but its escrow is frozen; left for an admin", booking_id)
            continue
        log.info("booking %s expired without a worker response; client refunded", booking_id)
        expired.append(booking_id)
    # a later rollback in the batch expires rows loaded before it
    return [await get_booking(session, booking_id) for booking_id in expired]


async def release_lapsed_escrows(session: AsyncSession, now: datetime | None = None, batch: int = 50) -> list[Booking]:
    """Complete IN_PROGRESS bookings whose escrow hold has lapsed and pay the worker.

    Only HOLDING escrows qualify, so a dispute keeps the funds frozen.
    """
    now = now or utcnow()
    res = await session.execute(
        select(Booking.booking_id)
        .join(Escrow, Escrow.escrow_id == Booking.escrow_id)
        .where(
            Booking.status == BookingStatus.IN_PROGRESS,
            Escrow.status == EscrowStatus.HOLDING,
            Escrow.expires_at <= now,
        )
        .order_by(Escrow.expires_at)
        .limit(batch)
    )
    booking_ids = list(res.scalars().all())
    await session.commit()

    released = []
    for booking_id in booking_ids:
        try:
            async with atomic(session):
                booking = await get_booking(session, booking_id)
                booking = await _transition(session, booking, BookingStatus.COMPLETED, completed_at=now)
                await escrow_store.release(session, booking.escrow_id, ReleaseReason.AUTO_RELEASE, now=now)
        except (InvalidBookingState, InvalidEscrowState):
            # settled or disputed in the meantime
            continue
        log.info("booking %s auto-completed; escrow hold lapsed", booking_id)
        released.append(booking_id)
    return [await get_booking(session, booking_id) for booking_id in released]
