"""Cancellation refund policies.

A policy only does arithmetic: given a booking, who cancels, why, and when,
it splits the booking total into a client refund and a penalty that is kept
back as compensation. Policies never touch storage.
"""

from datetime import datetime
from decimal import Decimal
from typing import Protocol

from pydantic import BaseModel, ConfigDict

from .constants import CancellationReason, CancelledBy
from .pricing import HUNDRED, quantize_money


class RefundSplit(BaseModel):
    model_config = ConfigDict(frozen=True)

    refund_amount: Decimal
    penalty_amount: Decimal


class CancellationPolicy(Protocol):
    def compute_refund(
        self,
        booking,
        cancelled_by: CancelledBy,
        reason: CancellationReason,
        now: datetime,
    ) -> RefundSplit:
        ...


def full_refund(total: Decimal) -> RefundSplit:
    return RefundSplit(refund_amount=total, penalty_amount=Decimal("0.00"))


class WindowedPenaltyPolicy:
    """Free cancellation until ``free_hours`` before start, then a growing penalty.

    Inside the window the penalty scales linearly with lateness and reaches
    ``penalty_percent`` of the total at the start time (and stays there after).
    Anyone other than the client cancelling, or a reason in ``waived_reasons``,
    always gets the client a full refund.
    """

    def __init__(
        self,
        free_hours: float = 24,
        penalty_percent: Decimal = Decimal("20"),
        waived_reasons: frozenset = frozenset(
            {CancellationReason.WORKER_UNAVAILABLE, CancellationReason.PAYMENT_FAILED}
        ),
    ):
        if free_hours <= 0:
            raise ValueError("free_hours must be positive")
        penalty_percent = Decimal(str(penalty_percent))
        if penalty_percent < 0 or penalty_percent > HUNDRED:
            raise ValueError("penalty_percent must be within 0..100")
        self.free_hours = Decimal(str(free_hours))
        self.penalty_percent = penalty_percent
        self.waived_reasons = frozenset(waived_reasons)

    def compute_refund(
        self,
        booking,
        cancelled_by: CancelledBy,
        reason: CancellationReason,
        now: datetime,
    ) -> RefundSplit:
        total = quantize_money(booking.pricing.total_amount)

        if cancelled_by != CancelledBy.CLIENT or reason in self.waived_reasons:
            return full_refund(total)

        hours_before = Decimal(str((booking.schedule.start_time - now).total_seconds())) / Decimal(3600)
        if hours_before > self.free_hours:
            return full_refund(total)

        lateness = (self.free_hours - max(hours_before, Decimal(0))) / self.free_hours
        penalty = quantize_money(total * self.penalty_percent / HUNDRED * lateness)
        penalty = min(max(penalty, Decimal("0.00")), total)
        return RefundSplit(refund_amount=total - penalty, penalty_amount=penalty)


def default_policy() -> WindowedPenaltyPolicy:
    from . import config

    return WindowedPenaltyPolicy(
        free_hours=config.CANCELLATION_FREE_HOURS,
        penalty_percent=config.CANCELLATION_PENALTY_PERCENT,
    )
