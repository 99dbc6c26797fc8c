from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import atomic, utcnow

from . import bookings, catalog, escrow as escrow_store, wallet
from .constants import BookingStatus, EscrowStatus, TransactionStatus, TransactionType
from .db import SessionLocal
from .errors import NotBookingParticipant
from .events import booking_data, escrow_data, transaction_data
from .identity import Actor, get_actor, require_admin
from .publisher import publish_event
from .schemas import (
    BookingListResponse,
    BookingResponse,
    CancelBookingRequest,
    ConfirmDepositRequest,
    CreateBookingRequest,
    CreateWorkerServiceRequest,
    DepositRequest,
    DisputeBookingRequest,
    EscrowListResponse,
    EscrowRefundRequest,
    EscrowReleaseRequest,
    EscrowResponse,
    EscrowSummaryResponse,
    TransactionListResponse,
    TransactionResponse,
    UpdateBookingRequest,
    UpdateWorkerServiceRequest,
    WalletBalanceResponse,
    WorkerActionRequest,
    WithdrawRequest,
    WorkerServiceResponse,
)

router = APIRouter()

Role = Literal["client", "worker"]


async def get_db():
    async with SessionLocal() as session:
        yield session


def _booking_response(booking) -> BookingResponse:
    return BookingResponse.from_booking(booking, utcnow())


def _require_participant(actor: Actor, client_id: str, worker_id: str, **context):
    if actor.is_admin or actor.user_id in (client_id, worker_id):
        return
    raise NotBookingParticipant("Not a participant of this booking", **context)


async def _publish_settlement(db: AsyncSession, booking):
    if not booking.escrow_id:
        return
    held = await escrow_store.get_escrow(db, booking.escrow_id)
    await publish_event(f"escrow.{held.status.value.lower()}", escrow_data(held))


# worker services

@router.post("/worker-services", response_model=WorkerServiceResponse)
async def create_worker_service(
    data: CreateWorkerServiceRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    ws = await catalog.create_worker_service(
        db,
        worker_id=actor.user_id,
        service_code=data.service_code,
        prices=[p.model_dump() for p in data.prices],
        is_active=data.is_active,
    )
    return WorkerServiceResponse.model_validate(ws)


@router.patch("/worker-services/{worker_service_id}", response_model=WorkerServiceResponse)
async def update_worker_service(
    worker_service_id: str,
    data: UpdateWorkerServiceRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    ws = await catalog.update_worker_service(
        db,
        worker_service_id,
        worker_id=None if actor.is_admin else actor.user_id,
        is_active=data.is_active,
        prices=None if data.prices is None else [p.model_dump() for p in data.prices],
    )
    return WorkerServiceResponse.model_validate(ws)


@router.get("/worker-services/{worker_service_id}", response_model=WorkerServiceResponse)
async def get_worker_service(worker_service_id: str, db: AsyncSession = Depends(get_db)):
    ws = await catalog.get_worker_service(db, worker_service_id)
    return WorkerServiceResponse.model_validate(ws)


# bookings

@router.post("/bookings", response_model=BookingResponse)
async def create_booking(
    data: CreateBookingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.create_booking(
        db,
        client_id=actor.user_id,
        worker_service_id=data.worker_service_id,
        start_time=data.schedule.start_time,
        end_time=data.schedule.end_time,
        unit=data.pricing.unit,
        quantity=data.pricing.quantity,
        notes=data.notes,
    )
    await publish_event("booking.created", booking_data(booking))
    await _publish_settlement(db, booking)
    return _booking_response(booking)


@router.get("/bookings", response_model=BookingListResponse)
async def list_bookings(
    role: Role | None = None,
    status: BookingStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    user_id = None if actor.is_admin and role is None else actor.user_id
    items, total = await bookings.list_bookings(db, user_id, role=role, status=status, page=page, limit=limit)
    return BookingListResponse(
        items=[_booking_response(b) for b in items], total=total, page=page, limit=limit
    )


@router.get("/bookings/{booking_id}", response_model=BookingResponse)
async def get_booking(booking_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    booking = await bookings.get_booking(db, booking_id)
    _require_participant(actor, booking.client_id, booking.worker_id, booking_id=booking_id)
    return _booking_response(booking)


@router.patch("/bookings/{booking_id}", response_model=BookingResponse)
async def update_booking(
    booking_id: str,
    data: UpdateBookingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.update_booking(
        db,
        booking_id,
        actor.user_id,
        notes=data.notes,
        start_time=data.schedule.start_time if data.schedule else None,
        end_time=data.schedule.end_time if data.schedule else None,
        worker_response=data.worker_response,
    )
    await publish_event("booking.updated", booking_data(booking))
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/actions", response_model=BookingResponse)
async def worker_action(
    booking_id: str,
    data: WorkerActionRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.worker_action(db, booking_id, actor.user_id, data.action, data.response)
    await publish_event(f"booking.{booking.status.value.lower()}", booking_data(booking))
    if booking.status in (BookingStatus.REJECTED, BookingStatus.COMPLETED):
        await _publish_settlement(db, booking)
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/cancel", response_model=BookingResponse)
async def cancel_booking(
    booking_id: str,
    data: CancelBookingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    current = await bookings.get_booking(db, booking_id)
    cancelled_by = bookings.resolve_cancelled_by(current, actor.user_id, actor.is_admin)
    await db.commit()

    booking = await bookings.cancel(db, booking_id, cancelled_by, data.reason, data.notes)
    await publish_event("booking.cancelled", booking_data(booking))
    await _publish_settlement(db, booking)
    return _booking_response(booking)


@router.post("/bookings/{booking_id}/dispute", response_model=BookingResponse)
async def dispute_booking(
    booking_id: str,
    data: DisputeBookingRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    booking = await bookings.dispute(db, booking_id, actor.user_id, data.reason)
    await publish_event("booking.disputed", booking_data(booking))
    return _booking_response(booking)


# wallets

@router.get("/wallets/me/balance", response_model=WalletBalanceResponse)
async def get_wallet_balance(actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    balance = await wallet.get_balance(db, actor.user_id)
    currency = await wallet.get_wallet_currency(db, actor.user_id)
    return WalletBalanceResponse(user_id=actor.user_id, balance=balance, currency=currency)


@router.get("/wallets/me/transactions", response_model=TransactionListResponse)
async def list_wallet_transactions(
    type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    items, total = await wallet.list_transactions(
        db, actor.user_id, tx_type=type, status=status, page=page, limit=limit
    )
    return TransactionListResponse(
        items=[TransactionResponse.model_validate(t) for t in items], total=total, page=page, limit=limit
    )


@router.post("/wallets/me/deposits", response_model=TransactionResponse)
async def create_deposit(data: DepositRequest, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    async with atomic(db):
        tx = await wallet.create_deposit(db, actor.user_id, data.amount, data.gateway)
    await publish_event("wallet.deposit_requested", transaction_data(tx))
    return TransactionResponse.model_validate(tx)


@router.post("/wallets/deposits/{reference}/confirm", response_model=TransactionResponse)
async def confirm_deposit(
    reference: str,
    data: ConfirmDepositRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    require_admin(actor)
    async with atomic(db):
        tx = await wallet.confirm_deposit(db, reference, data.succeeded, data.gateway_transaction_id)
    await publish_event(f"wallet.deposit_{tx.status.value}", transaction_data(tx))
    return TransactionResponse.model_validate(tx)


@router.post("/wallets/me/withdrawals", response_model=TransactionResponse)
async def withdraw(data: WithdrawRequest, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    async with atomic(db):
        tx = await wallet.withdraw(db, actor.user_id, data.amount, data.description)
    await publish_event("wallet.withdrawn", transaction_data(tx))
    return TransactionResponse.model_validate(tx)


# escrows

@router.get("/escrows", response_model=EscrowListResponse)
async def list_escrows(
    role: Role | None = None,
    status: EscrowStatus | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    user_id = None if actor.is_admin and role is None else actor.user_id
    items, total = await escrow_store.list_escrows(
        db, user_id, role=role, status=status, date_from=date_from, date_to=date_to, page=page, limit=limit
    )
    return EscrowListResponse(
        items=[EscrowResponse.model_validate(e) for e in items], total=total, page=page, limit=limit
    )


@router.get("/escrows/summary", response_model=EscrowSummaryResponse)
async def escrow_summary(
    role: Role | None = None,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    user_id = None if actor.is_admin and role is None else actor.user_id
    return EscrowSummaryResponse(**await escrow_store.escrow_summary(db, user_id, role=role))


@router.get("/escrows/{escrow_id}", response_model=EscrowResponse)
async def get_escrow(escrow_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    held = await escrow_store.get_escrow(db, escrow_id)
    _require_participant(actor, held.client_id, held.worker_id, escrow_id=escrow_id)
    return EscrowResponse.model_validate(held)


@router.post("/escrows/{escrow_id}/release", response_model=EscrowResponse)
async def release_escrow(
    escrow_id: str,
    data: EscrowReleaseRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    require_admin(actor)
    async with atomic(db):
        held = await escrow_store.release(db, escrow_id, data.reason, resolve=True)
    await publish_event("escrow.released", escrow_data(held))
    return EscrowResponse.model_validate(held)


@router.post("/escrows/{escrow_id}/refund", response_model=EscrowResponse)
async def refund_escrow(
    escrow_id: str,
    data: EscrowRefundRequest,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
):
    require_admin(actor)
    async with atomic(db):
        held = await escrow_store.refund(
            db, escrow_id, data.refund_amount, data.penalty_amount, data.reason, resolve=True
        )
    await publish_event(f"escrow.{held.status.value.lower()}", escrow_data(held))
    return EscrowResponse.model_validate(held)


@router.post("/escrows/{escrow_id}/dispute", response_model=EscrowResponse)
async def dispute_escrow(escrow_id: str, actor: Actor = Depends(get_actor), db: AsyncSession = Depends(get_db)):
    require_admin(actor)
    async with atomic(db):
        held = await escrow_store.mark_disputed(db, escrow_id)
    await publish_event("escrow.disputed", escrow_data(held))
    return EscrowResponse.model_validate(held)
