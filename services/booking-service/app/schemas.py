from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

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
    WorkerAction,
)
from .pricing import Pricing


class Schedule(BaseModel):
    model_config = ConfigDict(frozen=True)

    start_time: datetime
    end_time: datetime
    duration_hours: Decimal


class Cancellation(BaseModel):
    model_config = ConfigDict(frozen=True)

    cancelled_by: CancelledBy
    reason: CancellationReason
    notes: str | None = None
    cancelled_at: datetime
    refund_amount: Decimal
    penalty_amount: Decimal


class ScheduleRequest(BaseModel):
    start_time: datetime
    end_time: datetime


class PricingSelection(BaseModel):
    unit: PricingUnit
    quantity: int = Field(ge=1)


class CreateBookingRequest(BaseModel):
    worker_service_id: str
    schedule: ScheduleRequest
    pricing: PricingSelection
    notes: str | None = None


class UpdateBookingRequest(BaseModel):
    notes: str | None = None
    schedule: ScheduleRequest | None = None
    worker_response: str | None = None


class WorkerActionRequest(BaseModel):
    action: WorkerAction
    response: str | None = None


class CancelBookingRequest(BaseModel):
    reason: CancellationReason
    notes: str | None = None


class DisputeBookingRequest(BaseModel):
    reason: str | None = None


class BookingResponse(BaseModel):
    booking_id: str
    client_id: str
    worker_id: str
    worker_service_id: str
    service_code: str
    schedule: Schedule
    pricing: Pricing
    status: BookingStatus
    payment_status: PaymentStatus
    cancellation: Cancellation | None = None
    client_notes: str | None = None
    worker_response: str | None = None
    dispute_reason: str | None = None
    escrow_id: str | None = None
    expired: bool = False
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    disputed_at: datetime | None = None
    created_at: datetime

    @classmethod
    def from_booking(cls, booking, now: datetime) -> "BookingResponse":
        return cls(
            booking_id=booking.booking_id,
            client_id=booking.client_id,
            worker_id=booking.worker_id,
            worker_service_id=booking.worker_service_id,
            service_code=booking.service_code,
            schedule=booking.schedule,
            pricing=booking.pricing,
            status=booking.status,
            payment_status=booking.payment_status,
            cancellation=booking.cancellation,
            client_notes=booking.client_notes,
            worker_response=booking.worker_response,
            dispute_reason=booking.dispute_reason,
            escrow_id=booking.escrow_id,
            expired=booking.is_expired(now),
            confirmed_at=booking.confirmed_at,
            started_at=booking.started_at,
            completed_at=booking.completed_at,
            disputed_at=booking.disputed_at,
            created_at=booking.created_at,
        )


class BookingListResponse(BaseModel):
    items: list[BookingResponse]
    total: int
    page: int
    limit: int


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: str
    booking_id: str
    client_id: str
    worker_id: str
    amount: Decimal
    worker_payout: Decimal
    platform_fee: Decimal
    currency: str
    status: EscrowStatus
    disputed_from: EscrowStatus | None = None
    release_reason: ReleaseReason | None = None
    refund_reason: RefundReason | None = None
    refund_amount: Decimal | None = None
    penalty_amount: Decimal | None = None
    held_at: datetime
    released_at: datetime | None = None
    refunded_at: datetime | None = None
    disputed_at: datetime | None = None
    expires_at: datetime | None = None


class EscrowListResponse(BaseModel):
    items: list[EscrowResponse]
    total: int
    page: int
    limit: int


class EscrowSummaryResponse(BaseModel):
    total_holding: Decimal
    total_released: Decimal
    total_refunded: Decimal
    count_by_status: dict[EscrowStatus, int]


class EscrowReleaseRequest(BaseModel):
    reason: ReleaseReason = ReleaseReason.ADMIN_RELEASE


class EscrowRefundRequest(BaseModel):
    refund_amount: Decimal
    penalty_amount: Decimal = Decimal("0")
    reason: RefundReason = RefundReason.ADMIN_REFUND


class WalletBalanceResponse(BaseModel):
    user_id: str
    balance: Decimal
    currency: str


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    transaction_id: str
    user_id: str
    type: TransactionType
    amount: Decimal
    currency: str
    status: TransactionStatus
    balance_after: Decimal | None = None
    reference: str | None = None
    gateway: str | None = None
    booking_id: str | None = None
    escrow_id: str | None = None
    description: str | None = None
    created_at: datetime


class TransactionListResponse(BaseModel):
    items: list[TransactionResponse]
    total: int
    page: int
    limit: int


class DepositRequest(BaseModel):
    amount: Decimal
    gateway: str | None = None


class ConfirmDepositRequest(BaseModel):
    succeeded: bool
    gateway_transaction_id: str | None = None


class WithdrawRequest(BaseModel):
    amount: Decimal
    description: str | None = None


class WorkerServicePriceIn(BaseModel):
    unit: PricingUnit
    price: Decimal = Field(ge=0)
    currency: str | None = None


class CreateWorkerServiceRequest(BaseModel):
    service_code: str
    prices: list[WorkerServicePriceIn] = Field(min_length=1)
    is_active: bool = True


class UpdateWorkerServiceRequest(BaseModel):
    is_active: bool | None = None
    prices: list[WorkerServicePriceIn] | None = None


class WorkerServicePriceOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    unit: PricingUnit
    price: Decimal
    currency: str


class WorkerServiceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    worker_service_id: str
    worker_id: str
    service_code: str
    is_active: bool
    prices: list[WorkerServicePriceOut]
