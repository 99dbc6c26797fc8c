"""Escrow store: funds captured for one booking, held outside every wallet.

Settlement flips the escrow status with a compare-and-swap update and then
credits the wallets, all inside the caller's transaction. Wallet credits carry
``escrow:<id>:<target>:<party>`` references so a replay never pays twice.
"""

import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow

from . import config, wallet
from .constants import EscrowStatus, RefundReason, ReleaseReason, TransactionType
from .errors import EscrowConflict, InvalidAmount, InvalidEscrowState, NotFound, RefundAmountMismatch
from .models import Escrow
from .pricing import HUNDRED, quantize_money

log = logging.getLogger(__name__)

SETTLED = (EscrowStatus.REFUNDED, EscrowStatus.PARTIALLY_RELEASED)


def _settleable(resolve: bool = False):
    if not resolve:
        return Escrow.status == EscrowStatus.HOLDING
    # a dispute raised while the funds were still held
    return or_(
        Escrow.status == EscrowStatus.HOLDING,
        and_(Escrow.status == EscrowStatus.DISPUTED, Escrow.disputed_from == EscrowStatus.HOLDING),
    )


def _is_settleable(escrow: Escrow, resolve: bool = False) -> bool:
    if escrow.status == EscrowStatus.HOLDING:
        return True
    return resolve and escrow.status == EscrowStatus.DISPUTED and escrow.disputed_from == EscrowStatus.HOLDING


async def _claim(session: AsyncSession, escrow_id: str, condition, **values) -> Escrow | None:
    res = await session.execute(
        update(Escrow)
        .where(Escrow.escrow_id == escrow_id, condition)
        .values(**values)
        .returning(Escrow),
        execution_options={"synchronize_session": False, "populate_existing": True},
    )
    return res.scalar_one_or_none()


async def get_escrow(session: AsyncSession, escrow_id: str) -> Escrow:
    stmt = select(Escrow).where(Escrow.escrow_id == escrow_id).execution_options(populate_existing=True)
    escrow = (await session.execute(stmt)).scalar_one_or_none()
    if escrow is None:
        raise NotFound("Escrow not found", escrow_id=escrow_id)
    return escrow


async def get_escrow_for_booking(session: AsyncSession, booking_id: str) -> Escrow | None:
    res = await session.execute(select(Escrow).where(Escrow.booking_id == booking_id))
    return res.scalar_one_or_none()


async def capture(
    session: AsyncSession,
    booking_id: str,
    amount: Decimal,
    worker_payout: Decimal,
    platform_fee: Decimal,
    currency: str,
    *,
    client_id: str,
    worker_id: str,
    now: datetime | None = None,
) -> Escrow:
    amount, worker_payout, platform_fee = (quantize_money(Decimal(v)) for v in (amount, worker_payout, platform_fee))
    if amount < 0 or worker_payout < 0 or platform_fee < 0 or worker_payout > amount:
        raise InvalidAmount(
            "escrow amounts must be non-negative and payout must fit the amount",
            amount=amount,
            worker_payout=worker_payout,
            platform_fee=platform_fee,
        )

    existing = await get_escrow_for_booking(session, booking_id)
    if existing is not None:
        same = (
            quantize_money(existing.amount) == amount
            and quantize_money(existing.worker_payout) == worker_payout
            and quantize_money(existing.platform_fee) == platform_fee
            and existing.currency == currency
        )
        if not same:
            raise EscrowConflict(
                "Booking already has an escrow with different amounts",
                booking_id=booking_id,
                escrow_id=existing.escrow_id,
            )
        return existing

    now = now or utcnow()
    escrow = Escrow(
        escrow_id=str(uuid.uuid4()),
        booking_id=booking_id,
        client_id=client_id,
        worker_id=worker_id,
        amount=amount,
        worker_payout=worker_payout,
        platform_fee=platform_fee,
        currency=currency,
        status=EscrowStatus.HOLDING,
        held_at=now,
        expires_at=now + timedelta(days=config.ESCROW_MAX_HOLD_DAYS),
    )
    session.add(escrow)
    await session.flush()
    log.info("escrow %s holding %s %s for booking %s", escrow.escrow_id, amount, currency, booking_id)
    return escrow


async def _pay(session, escrow: Escrow, user_id: str, amount: Decimal, tx_type: TransactionType, key: str, description: str):
    if amount <= 0:
        return
    await wallet.credit(
        session,
        user_id,
        amount,
        tx_type,
        currency=escrow.currency,
        reference=f"escrow:{escrow.escrow_id}:{key}",
        booking_id=escrow.booking_id,
        escrow_id=escrow.escrow_id,
        description=description,
    )


async def release(
    session: AsyncSession,
    escrow_id: str,
    reason: ReleaseReason = ReleaseReason.BOOKING_COMPLETED,
    now: datetime | None = None,
    *,
    resolve: bool = False,
) -> Escrow:
    """Pay out a held escrow.

    A DISPUTED escrow only moves with ``resolve=True``, which is reserved for
    admin dispute resolution.
    """
    escrow = await get_escrow(session, escrow_id)
    if escrow.status == EscrowStatus.RELEASED:
        return escrow
    if not _is_settleable(escrow, resolve):
        raise InvalidEscrowState(
            "Escrow cannot be released", escrow_id=escrow_id, status=escrow.status
        )

    claimed = await _claim(
        session,
        escrow_id,
        _settleable(resolve),
        status=EscrowStatus.RELEASED,
        release_reason=reason,
        released_at=now or utcnow(),
    )
    if claimed is None:
        current = await get_escrow(session, escrow_id)
        if current.status == EscrowStatus.RELEASED:
            return current
        raise InvalidEscrowState("Escrow cannot be released", escrow_id=escrow_id, status=current.status)

    # whatever the worker does not get is the platform's cut
    platform_share = claimed.amount - claimed.worker_payout
    await _pay(session, claimed, claimed.worker_id, claimed.worker_payout, TransactionType.PAYOUT,
               "released:worker", "Booking payout")
    await _pay(session, claimed, config.PLATFORM_ACCOUNT_ID, platform_share, TransactionType.FEE,
               "released:platform", "Platform fee")
    log.info("escrow %s released: worker=%s platform=%s", escrow_id, claimed.worker_payout, platform_share)
    return claimed


def split_penalty(penalty: Decimal) -> tuple[Decimal, Decimal]:
    """Return (worker_share, platform_share) of a cancellation penalty."""
    platform_share = quantize_money(penalty * config.PENALTY_PLATFORM_SHARE_PERCENT / HUNDRED)
    return penalty - platform_share, platform_share


async def refund(
    session: AsyncSession,
    escrow_id: str,
    refund_amount,
    penalty_amount,
    reason: RefundReason = RefundReason.BOOKING_CANCELLED,
    now: datetime | None = None,
    *,
    resolve: bool = False,
) -> Escrow:
    refund_amount = quantize_money(Decimal(refund_amount))
    penalty_amount = quantize_money(Decimal(penalty_amount))
    if refund_amount < 0 or penalty_amount < 0:
        raise InvalidAmount("refund and penalty must be non-negative",
                            refund_amount=refund_amount, penalty_amount=penalty_amount)

    escrow = await get_escrow(session, escrow_id)
    if refund_amount + penalty_amount != quantize_money(escrow.amount):
        raise RefundAmountMismatch(
            "refund_amount + penalty_amount must equal the escrow amount",
            escrow_id=escrow_id,
            amount=escrow.amount,
            refund_amount=refund_amount,
            penalty_amount=penalty_amount,
        )

    if _already_refunded(escrow, refund_amount, penalty_amount):
        return escrow
    if not _is_settleable(escrow, resolve):
        raise InvalidEscrowState("Escrow cannot be refunded", escrow_id=escrow_id, status=escrow.status)

    target = EscrowStatus.REFUNDED if penalty_amount == 0 else EscrowStatus.PARTIALLY_RELEASED
    claimed = await _claim(
        session,
        escrow_id,
        _settleable(resolve),
        status=target,
        refund_reason=reason,
        refund_amount=refund_amount,
        penalty_amount=penalty_amount,
        refunded_at=now or utcnow(),
    )
    if claimed is None:
        current = await get_escrow(session, escrow_id)
        if _already_refunded(current, refund_amount, penalty_amount):
            return current
        raise InvalidEscrowState("Escrow cannot be refunded", escrow_id=escrow_id, status=current.status)

    worker_share, platform_share = split_penalty(penalty_amount)
    await _pay(session, claimed, claimed.client_id, refund_amount, TransactionType.REFUND,
               "refunded:client", f"Refund ({reason.value})")
    await _pay(session, claimed, claimed.worker_id, worker_share, TransactionType.PAYOUT,
               "refunded:worker", "Cancellation compensation")
    await _pay(session, claimed, config.PLATFORM_ACCOUNT_ID, platform_share, TransactionType.FEE,
               "refunded:platform", "Cancellation penalty share")
    log.info(
        "escrow %s %s: client=%s worker=%s platform=%s",
        escrow_id, target.value, refund_amount, worker_share, platform_share,
    )
    return claimed


def _already_refunded(escrow: Escrow, refund_amount: Decimal, penalty_amount: Decimal) -> bool:
    return (
        escrow.status in SETTLED
        and escrow.refund_amount is not None
        and quantize_money(escrow.refund_amount) == refund_amount
        and quantize_money(escrow.penalty_amount) == penalty_amount
    )


async def mark_disputed(session: AsyncSession, escrow_id: str, now: datetime | None = None) -> Escrow:
    escrow = await get_escrow(session, escrow_id)
    if escrow.status == EscrowStatus.DISPUTED:
        return escrow

    claimed = await _claim(
        session,
        escrow_id,
        Escrow.status.in_((EscrowStatus.HOLDING, EscrowStatus.PARTIALLY_RELEASED)),
        status=EscrowStatus.DISPUTED,
        disputed_from=Escrow.status,
        disputed_at=now or utcnow(),
    )
    if claimed is None:
        current = await get_escrow(session, escrow_id)
        if current.status == EscrowStatus.DISPUTED:
            return current
        raise InvalidEscrowState("Escrow cannot be disputed", escrow_id=escrow_id, status=current.status)
    log.warning("escrow %s disputed (was %s)", escrow_id, claimed.disputed_from.value)
    return claimed


def _visibility(user_id: str | None, role: str | None):
    if user_id is None:
        return []
    if role == "client":
        return [Escrow.client_id == user_id]
    if role == "worker":
        return [Escrow.worker_id == user_id]
    return [or_(Escrow.client_id == user_id, Escrow.worker_id == user_id)]


async def list_escrows(
    session: AsyncSession,
    user_id: str | None,
    role: str | None = None,
    status: EscrowStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[Escrow], int]:
    """Escrows visible to ``user_id`` (all escrows when it is None)."""
    conditions = _visibility(user_id, role)
    if status is not None:
        conditions.append(Escrow.status == status)
    if date_from is not None:
        conditions.append(Escrow.held_at >= date_from)
    if date_to is not None:
        conditions.append(Escrow.held_at <= date_to)

    total = (await session.execute(select(func.count()).select_from(Escrow).where(*conditions))).scalar_one()
    res = await session.execute(
        select(Escrow)
        .where(*conditions)
        .order_by(Escrow.held_at.desc(), Escrow.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total


async def escrow_summary(session: AsyncSession, user_id: str | None, role: str | None = None) -> dict:
    res = await session.execute(
        select(Escrow.status, func.count(), func.sum(Escrow.amount), func.sum(Escrow.refund_amount))
        .where(*_visibility(user_id, role))
        .group_by(Escrow.status)
    )
    summary = {
        "total_holding": Decimal("0.00"),
        "total_released": Decimal("0.00"),
        "total_refunded": Decimal("0.00"),
        "count_by_status": {s: 0 for s in EscrowStatus},
    }
    for status, count, amount, refunded in res.all():
        amount = quantize_money(Decimal(amount or 0))
        summary["count_by_status"][status] = count
        if status in (EscrowStatus.HOLDING, EscrowStatus.DISPUTED):
            summary["total_holding"] += amount
        elif status == EscrowStatus.RELEASED:
            summary["total_released"] += amount
        if refunded is not None:
            summary["total_refunded"] += quantize_money(Decimal(refunded))
    return summary
