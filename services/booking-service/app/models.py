from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from shared.database import UTCDateTime, utcnow

from .constants import (
    BookingStatus,
    CancellationReason,
    CancelledBy,
    EscrowStatus,
    PaymentStatus,
    PricingUnit,
    RefundReason,
    ReleaseReason,
    TransactionStatus,
    TransactionType,
)
from .db import Base
from .pricing import Pricing
from .schemas import Cancellation, Schedule


def Money(**kw):
    return Column(Numeric(18, 2, asdecimal=True), **kw)


def _enum(enum_cls):
    return Enum(
        enum_cls,
        native_enum=False,
        length=32,
        values_callable=lambda members: [m.value for m in members],
    )


class WorkerService(Base):
    __tablename__ = "worker_services"

    id = Column(Integer, primary_key=True)
    worker_service_id = Column(String, unique=True, nullable=False, index=True)

    worker_id = Column(String, nullable=False, index=True)
    service_code = Column(String, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    prices = relationship(
        "WorkerServicePrice",
        lazy="selectin",
        cascade="all, delete-orphan",
        order_by="WorkerServicePrice.id",
    )

    def price_for(self, unit: PricingUnit) -> "WorkerServicePrice | None":
        for p in self.prices:
            if p.unit == unit:
                return p
        return None


class WorkerServicePrice(Base):
    __tablename__ = "worker_service_prices"
    __table_args__ = (
        UniqueConstraint("worker_service_id", "unit", name="uq_worker_service_prices_unit"),
        CheckConstraint("price >= 0", name="ck_worker_service_prices_price"),
    )

    id = Column(Integer, primary_key=True)
    worker_service_id = Column(
        String, ForeignKey("worker_services.worker_service_id", ondelete="CASCADE"), nullable=False
    )
    unit = Column(_enum(PricingUnit), nullable=False)
    price = Money(nullable=False)
    currency = Column(String(3), nullable=False)


class Booking(Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_bookings_schedule"),
    )

    id = Column(Integer, primary_key=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    client_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=False, index=True)
    worker_service_id = Column(String, nullable=False)
    service_code = Column(String, nullable=False)

    start_time = Column(UTCDateTime(), nullable=False)
    end_time = Column(UTCDateTime(), nullable=False)
    duration_hours = Column(Numeric(6, 1), nullable=False)

    pricing_unit = Column(_enum(PricingUnit), nullable=False)
    unit_price = Money(nullable=False)
    quantity = Column(Integer, nullable=False)
    subtotal = Money(nullable=False)
    platform_fee = Money(nullable=False)
    total_amount = Money(nullable=False)
    worker_payout = Money(nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(_enum(BookingStatus), nullable=False, index=True)
    payment_status = Column(_enum(PaymentStatus), nullable=False)

    client_notes = Column(Text, nullable=True)
    worker_response = Column(Text, nullable=True)
    escrow_id = Column(String, nullable=True)
    hold_transaction_id = Column(String, nullable=True)

    cancelled_by = Column(_enum(CancelledBy), nullable=True)
    cancellation_reason = Column(_enum(CancellationReason), nullable=True)
    cancellation_notes = Column(Text, nullable=True)
    cancelled_at = Column(UTCDateTime(), nullable=True)
    refund_amount = Money(nullable=True)
    penalty_amount = Money(nullable=True)

    dispute_reason = Column(Text, nullable=True)

    confirmed_at = Column(UTCDateTime(), nullable=True)
    started_at = Column(UTCDateTime(), nullable=True)
    completed_at = Column(UTCDateTime(), nullable=True)
    disputed_at = Column(UTCDateTime(), nullable=True)
    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)

    @property
    def schedule(self) -> Schedule:
        return Schedule(
            start_time=self.start_time,
            end_time=self.end_time,
            duration_hours=self.duration_hours,
        )

    @property
    def pricing(self) -> Pricing:
        return Pricing(
            unit=self.pricing_unit,
            unit_price=self.unit_price,
            quantity=self.quantity,
            subtotal=self.subtotal,
            platform_fee=self.platform_fee,
            total_amount=self.total_amount,
            worker_payout=self.worker_payout,
            currency=self.currency,
        )

    @property
    def cancellation(self) -> Cancellation | None:
        if self.cancelled_at is None:
            return None
        return Cancellation(
            cancelled_by=self.cancelled_by,
            reason=self.cancellation_reason,
            notes=self.cancellation_notes,
            cancelled_at=self.cancelled_at,
            refund_amount=self.refund_amount,
            penalty_amount=self.penalty_amount,
        )

    def is_expired(self, now: datetime) -> bool:
        """Past-due PENDING/CONFIRMED bookings no longer offer worker actions."""
        return (
            self.status in (BookingStatus.PENDING, BookingStatus.CONFIRMED)
            and self.start_time <= now
        )


class Escrow(Base):
    __tablename__ = "escrows"
    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_escrows_amount"),
        CheckConstraint("worker_payout <= amount", name="ck_escrows_payout"),
    )

    id = Column(Integer, primary_key=True)
    escrow_id = Column(String, unique=True, nullable=False, index=True)
    booking_id = Column(String, unique=True, nullable=False, index=True)

    client_id = Column(String, nullable=False, index=True)
    worker_id = Column(String, nullable=False, index=True)

    amount = Money(nullable=False)
    worker_payout = Money(nullable=False)
    platform_fee = Money(nullable=False)
    currency = Column(String(3), nullable=False)

    status = Column(_enum(EscrowStatus), nullable=False, index=True)
    disputed_from = Column(_enum(EscrowStatus), nullable=True)

    release_reason = Column(_enum(ReleaseReason), nullable=True)
    refund_reason = Column(_enum(RefundReason), nullable=True)
    refund_amount = Money(nullable=True)
    penalty_amount = Money(nullable=True)

    held_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    released_at = Column(UTCDateTime(), nullable=True)
    refunded_at = Column(UTCDateTime(), nullable=True)
    disputed_at = Column(UTCDateTime(), nullable=True)
    expires_at = Column(UTCDateTime(), nullable=True)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class Wallet(Base):
    __tablename__ = "wallets"
    __table_args__ = (CheckConstraint("balance >= 0", name="ck_wallets_balance"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, unique=True, nullable=False, index=True)
    balance = Money(nullable=False, default=Decimal("0"))
    currency = Column(String(3), nullable=False)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)


class WalletTransaction(Base):
    __tablename__ = "wallet_transactions"
    __table_args__ = (CheckConstraint("amount > 0", name="ck_wallet_transactions_amount"),)

    id = Column(Integer, primary_key=True)
    transaction_id = Column(String, unique=True, nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)

    type = Column(_enum(TransactionType), nullable=False)
    amount = Money(nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(_enum(TransactionStatus), nullable=False, index=True)
    balance_after = Money(nullable=True)

    # idempotency key: replaying a reference never moves money twice
    reference = Column(String, unique=True, nullable=True)
    gateway = Column(String, nullable=True)
    gateway_transaction_id = Column(String, nullable=True)

    booking_id = Column(String, nullable=True, index=True)
    escrow_id = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    created_at = Column(UTCDateTime(), nullable=False, default=utcnow)
    updated_at = Column(UTCDateTime(), nullable=False, default=utcnow, onupdate=utcnow)
