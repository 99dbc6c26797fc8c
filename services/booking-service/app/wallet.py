"""Wallet ledger.

Balances only move through single conditional ``UPDATE ... RETURNING``
statements, and every movement writes exactly one ``WalletTransaction`` in the
same database transaction. Functions here never commit: they join the
caller's transaction (see ``shared.database.atomic``).
"""

import logging
import uuid
from decimal import Decimal, InvalidOperation

from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

from shared.database import utcnow

from . import config
from .constants import TransactionStatus, TransactionType
from .errors import DepositNotFound, InsufficientBalance, InvalidAmount, ReferenceConflict
from .models import Wallet, WalletTransaction
from .pricing import quantize_money

log = logging.getLogger(__name__)

ZERO = Decimal("0.00")

_NO_SYNC = {"synchronize_session": False}


def validate_amount(amount) -> Decimal:
    try:
        value = Decimal(str(amount)) if isinstance(amount, float) else Decimal(amount)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidAmount("amount is not a number", amount=amount)
    if not value.is_finite() or value <= 0:
        raise InvalidAmount("amount must be greater than zero", amount=value)
    value = quantize_money(value)
    if value <= 0:
        raise InvalidAmount("amount rounds to zero", amount=amount)
    return value


def _insert_for(session: AsyncSession):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert
    if dialect == "sqlite":
        return sqlite.insert
    raise RuntimeError(f"wallet upsert not supported on {dialect}")


async def _ensure_wallet(session: AsyncSession, user_id: str, currency: str):
    insert = _insert_for(session)
    now = utcnow()
    stmt = (
        insert(Wallet)
        .values(user_id=user_id, balance=ZERO, currency=currency, created_at=now, updated_at=now)
        .on_conflict_do_nothing(index_elements=["user_id"])
    )
    await session.execute(stmt)


async def _replayed(
    session: AsyncSession, reference: str | None, user_id: str, amount: Decimal, tx_type: TransactionType
) -> WalletTransaction | None:
    if not reference:
        return None
    res = await session.execute(select(WalletTransaction).where(WalletTransaction.reference == reference))
    existing = res.scalar_one_or_none()
    if existing is None:
        return None
    if existing.user_id != user_id or existing.type != tx_type or quantize_money(existing.amount) != amount:
        raise ReferenceConflict(
            "reference already used for a different movement",
            reference=reference,
            user_id=user_id,
            amount=amount,
            type=tx_type,
        )
    return existing


def _record(user_id, tx_type, amount, currency, status, balance_after, **fields) -> WalletTransaction:
    return WalletTransaction(
        transaction_id=str(uuid.uuid4()),
        user_id=user_id,
        type=tx_type,
        amount=amount,
        currency=currency,
        status=status,
        balance_after=balance_after,
        **fields,
    )


async def get_balance(session: AsyncSession, user_id: str) -> Decimal:
    res = await session.execute(select(Wallet.balance).where(Wallet.user_id == user_id))
    balance = res.scalar_one_or_none()
    return ZERO if balance is None else quantize_money(balance)


async def get_wallet_currency(session: AsyncSession, user_id: str) -> str:
    res = await session.execute(select(Wallet.currency).where(Wallet.user_id == user_id))
    return res.scalar_one_or_none() or config.DEFAULT_CURRENCY


async def credit(
    session: AsyncSession,
    user_id: str,
    amount,
    tx_type: TransactionType = TransactionType.DEPOSIT,
    *,
    currency: str | None = None,
    reference: str | None = None,
    booking_id: str | None = None,
    escrow_id: str | None = None,
    description: str | None = None,
) -> WalletTransaction:
    amount = validate_amount(amount)
    currency = currency or config.DEFAULT_CURRENCY

    existing = await _replayed(session, reference, user_id, amount, tx_type)
    if existing is not None:
        log.info("credit replay for reference=%s ignored", reference)
        return existing

    await _ensure_wallet(session, user_id, currency)
    res = await session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id)
        .values(balance=Wallet.balance + amount)
        .returning(Wallet.balance),
        execution_options=_NO_SYNC,
    )
    balance_after = quantize_money(res.scalar_one())

    tx = _record(
        user_id, tx_type, amount, currency, TransactionStatus.SUCCESS, balance_after,
        reference=reference, booking_id=booking_id, escrow_id=escrow_id, description=description,
    )
    session.add(tx)
    await session.flush()
    log.info("credited %s %s to %s (%s), balance=%s", amount, currency, user_id, tx_type.value, balance_after)
    return tx


async def debit(
    session: AsyncSession,
    user_id: str,
    amount,
    tx_type: TransactionType = TransactionType.PAYMENT,
    *,
    currency: str | None = None,
    reference: str | None = None,
    booking_id: str | None = None,
    escrow_id: str | None = None,
    description: str | None = None,
) -> WalletTransaction:
    amount = validate_amount(amount)
    currency = currency or config.DEFAULT_CURRENCY

    existing = await _replayed(session, reference, user_id, amount, tx_type)
    if existing is not None:
        log.info("debit replay for reference=%s ignored", reference)
        return existing

    # check and decrement in one statement; no row back means no cover
    res = await session.execute(
        update(Wallet)
        .where(Wallet.user_id == user_id, Wallet.balance >= amount)
        .values(balance=Wallet.balance - amount)
        .returning(Wallet.balance),
        execution_options=_NO_SYNC,
    )
    balance_after = res.scalar_one_or_none()
    if balance_after is None:
        balance = await get_balance(session, user_id)
        log.warning("debit of %s from %s refused, balance=%s", amount, user_id, balance)
        raise InsufficientBalance(
            "Insufficient wallet balance",
            user_id=user_id,
            balance=balance,
            required=amount,
        )

    tx = _record(
        user_id, tx_type, amount, currency, TransactionStatus.SUCCESS, quantize_money(balance_after),
        reference=reference, booking_id=booking_id, escrow_id=escrow_id, description=description,
    )
    session.add(tx)
    await session.flush()
    log.info("debited %s %s from %s (%s), balance=%s", amount, currency, user_id, tx_type.value, tx.balance_after)
    return tx


async def create_deposit(
    session: AsyncSession,
    user_id: str,
    amount,
    gateway: str | None = None,
    currency: str | None = None,
) -> WalletTransaction:
    """Open a pending top-up; the balance moves only when the gateway confirms it."""
    amount = validate_amount(amount)
    if amount < config.MIN_DEPOSIT or amount > config.MAX_DEPOSIT:
        raise InvalidAmount(
            "deposit amount out of range",
            amount=amount,
            min=config.MIN_DEPOSIT,
            max=config.MAX_DEPOSIT,
        )

    tx = _record(
        user_id,
        TransactionType.DEPOSIT,
        amount,
        currency or config.DEFAULT_CURRENCY,
        TransactionStatus.PENDING,
        None,
        reference=f"DEP-{uuid.uuid4().hex}",
        gateway=gateway or config.DEFAULT_GATEWAY,
        description="Wallet top-up",
    )
    session.add(tx)
    await session.flush()
    log.info("deposit %s opened for %s: %s", tx.reference, user_id, amount)
    return tx


async def confirm_deposit(
    session: AsyncSession,
    reference: str,
    succeeded: bool,
    gateway_transaction_id: str | None = None,
) -> WalletTransaction:
    """Settle a pending deposit once; later confirmations return it unchanged."""
    res = await session.execute(
        select(WalletTransaction).where(
            WalletTransaction.reference == reference,
            WalletTransaction.type == TransactionType.DEPOSIT,
        )
    )
    tx = res.scalar_one_or_none()
    if tx is None:
        raise DepositNotFound("Deposit not found", reference=reference)

    if tx.status != TransactionStatus.PENDING:
        log.info("deposit %s already %s", reference, tx.status.value)
        return tx

    new_status = TransactionStatus.SUCCESS if succeeded else TransactionStatus.FAILED
    res = await session.execute(
        update(WalletTransaction)
        .where(
            WalletTransaction.reference == reference,
            WalletTransaction.status == TransactionStatus.PENDING,
        )
        .values(status=new_status, gateway_transaction_id=gateway_transaction_id)
        .returning(WalletTransaction.id),
        execution_options=_NO_SYNC,
    )
    if res.scalar_one_or_none() is None:
        # another confirmation won the race
        return await _reload_transaction(session, reference)

    if succeeded:
        await _ensure_wallet(session, tx.user_id, tx.currency)
        res = await session.execute(
            update(Wallet)
            .where(Wallet.user_id == tx.user_id)
            .values(balance=Wallet.balance + tx.amount)
            .returning(Wallet.balance),
            execution_options=_NO_SYNC,
        )
        balance_after = quantize_money(res.scalar_one())
        await session.execute(
            update(WalletTransaction)
            .where(WalletTransaction.reference == reference)
            .values(balance_after=balance_after),
            execution_options=_NO_SYNC,
        )
        log.info("deposit %s credited %s to %s", reference, tx.amount, tx.user_id)
    else:
        log.info("deposit %s failed at gateway", reference)

    return await _reload_transaction(session, reference)


async def _reload_transaction(session: AsyncSession, reference: str) -> WalletTransaction:
    res = await session.execute(
        select(WalletTransaction)
        .where(WalletTransaction.reference == reference)
        .execution_options(populate_existing=True)
    )
    return res.scalar_one()


async def withdraw(session: AsyncSession, user_id: str, amount, description: str | None = None) -> WalletTransaction:
    amount = validate_amount(amount)
    if amount < config.MIN_WITHDRAW or amount > config.MAX_WITHDRAW:
        raise InvalidAmount(
            "withdraw amount out of range",
            amount=amount,
            min=config.MIN_WITHDRAW,
            max=config.MAX_WITHDRAW,
        )
    return await debit(
        session,
        user_id,
        amount,
        TransactionType.WITHDRAW,
        currency=await get_wallet_currency(session, user_id),
        description=description or "Wallet withdrawal",
    )


async def list_transactions(
    session: AsyncSession,
    user_id: str,
    tx_type: TransactionType | None = None,
    status: TransactionStatus | None = None,
    page: int = 1,
    limit: int = 20,
) -> tuple[list[WalletTransaction], int]:
    conditions = [WalletTransaction.user_id == user_id]
    if tx_type is not None:
        conditions.append(WalletTransaction.type == tx_type)
    if status is not None:
        conditions.append(WalletTransaction.status == status)

    total = (await session.execute(select(func.count()).select_from(WalletTransaction).where(*conditions))).scalar_one()
    res = await session.execute(
        select(WalletTransaction)
        .where(*conditions)
        .order_by(WalletTransaction.created_at.desc(), WalletTransaction.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    return list(res.scalars().all()), total
