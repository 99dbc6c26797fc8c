from enum import Enum


class BookingStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    REJECTED = "REJECTED"
    DISPUTED = "DISPUTED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    PARTIALLY_REFUNDED = "PARTIALLY_REFUNDED"
    REFUNDED = "REFUNDED"


class PricingUnit(str, Enum):
    HOURLY = "HOURLY"
    DAILY = "DAILY"
    MONTHLY = "MONTHLY"


class CancelledBy(str, Enum):
    CLIENT = "client"
    WORKER = "worker"
    ADMIN = "admin"
    SYSTEM = "system"


class CancellationReason(str, Enum):
    CLIENT_REQUEST = "client_request"
    WORKER_UNAVAILABLE = "worker_unavailable"
    SCHEDULE_CONFLICT = "schedule_conflict"
    EMERGENCY = "emergency"
    PAYMENT_FAILED = "payment_failed"
    POLICY_VIOLATION = "policy_violation"
    OTHER = "other"


class WorkerAction(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    START = "start"
    COMPLETE = "complete"


class EscrowStatus(str, Enum):
    HOLDING = "HOLDING"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    PARTIALLY_RELEASED = "PARTIALLY_RELEASED"
    DISPUTED = "DISPUTED"


class ReleaseReason(str, Enum):
    BOOKING_COMPLETED = "booking_completed"
    ADMIN_RELEASE = "admin_release"
    AUTO_RELEASE = "auto_release"


class RefundReason(str, Enum):
    BOOKING_CANCELLED = "booking_cancelled"
    BOOKING_REJECTED = "booking_rejected"
    DISPUTE_RESOLVED = "dispute_resolved"
    ADMIN_REFUND = "admin_refund"
    WORKER_NO_SHOW = "worker_no_show"


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    PAYMENT = "payment"
    REFUND = "refund"
    PAYOUT = "payout"
    FEE = "fee"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


# statuses that occupy the worker's calendar
ACTIVE_BOOKING_STATUSES = (
    BookingStatus.PENDING,
    BookingStatus.CONFIRMED,
    BookingStatus.IN_PROGRESS,
)
