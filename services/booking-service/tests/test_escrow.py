"""Escrow store: capture idempotency, settlement and disputes."""

from decimal import Decimal

import pytest
from sqlalchemy import func, select

from shared.database import atomic

from app import config, escrow
from app.constants import EscrowStatus, RefundReason, ReleaseReason
from app.errors import EscrowConflict, InvalidEscrowState, NotFound, RefundAmountMismatch
from app.models import Escrow

AMOUNT = Decimal("204000")
PAYOUT = Decimal("196000")
FEE = Decimal("4000")


async def _capture(session, booking_id: str = "b1", amount=AMOUNT, payout=PAYOUT, fee=FEE):
    async with atomic(session):
        return await escrow.capture(
            session, booking_id, amount, payout, fee, "VND", client_id="c1", worker_id="w1"
        )


class TestCapture:
    async def test_capture_holds_funds(self, session) -> None:
        held = await _capture(session)
        assert held.status == EscrowStatus.HOLDING
        assert held.amount == AMOUNT
        assert held.released_at is None
        assert held.expires_at > held.held_at

    async def test_capture_is_idempotent_per_booking(self, session) -> None:
        first = await _capture(session)
        second = await _capture(session)
        assert second.escrow_id == first.escrow_id
        count = (await session.execute(select(func.count()).select_from(Escrow))).scalar_one()
        assert count == 1

    async def test_capture_with_other_amounts_conflicts(self, session) -> None:
        await _capture(session)
        with pytest.raises(EscrowConflict):
            await _capture(session, amount=Decimal("1000"), payout=Decimal("900"), fee=Decimal("50"))


class TestRelease:
    async def test_release_pays_worker_and_platform(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            done = await escrow.release(session, held.escrow_id)
        assert done.status == EscrowStatus.RELEASED
        assert done.release_reason == ReleaseReason.BOOKING_COMPLETED
        assert done.released_at is not None
        assert await balance_of("w1") == PAYOUT
        # the client-side and worker-side fee both land on the platform account
        assert await balance_of(config.PLATFORM_ACCOUNT_ID) == AMOUNT - PAYOUT

    async def test_release_retry_does_not_pay_twice(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.release(session, held.escrow_id)
        async with atomic(session):
            again = await escrow.release(session, held.escrow_id)
        assert again.status == EscrowStatus.RELEASED
        assert await balance_of("w1") == PAYOUT

    async def test_release_after_refund_is_invalid(self, session) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.refund(session, held.escrow_id, AMOUNT, Decimal("0"))
        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.release(session, held.escrow_id)

    async def test_unknown_escrow(self, session) -> None:
        with pytest.raises(NotFound):
            await escrow.release(session, "missing")


class TestRefund:
    async def test_full_refund(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            done = await escrow.refund(session, held.escrow_id, AMOUNT, Decimal("0"), RefundReason.BOOKING_REJECTED)
        assert done.status == EscrowStatus.REFUNDED
        assert done.refund_reason == RefundReason.BOOKING_REJECTED
        assert await balance_of("c1") == AMOUNT
        assert await balance_of("w1") == Decimal("0")

    async def test_partial_refund_compensates_worker(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            done = await escrow.refund(session, held.escrow_id, Decimal("183600"), Decimal("20400"))
        assert done.status == EscrowStatus.PARTIALLY_RELEASED
        assert await balance_of("c1") == Decimal("183600")
        assert await balance_of("w1") == Decimal("20400")
        assert await balance_of(config.PLATFORM_ACCOUNT_ID) == Decimal("0")

    async def test_platform_share_of_penalty(self, session, balance_of, monkeypatch) -> None:
        monkeypatch.setattr(config, "PENALTY_PLATFORM_SHARE_PERCENT", Decimal("25"))
        held = await _capture(session)
        async with atomic(session):
            await escrow.refund(session, held.escrow_id, Decimal("183600"), Decimal("20400"))
        assert await balance_of("w1") == Decimal("15300")
        assert await balance_of(config.PLATFORM_ACCOUNT_ID) == Decimal("5100")

    async def test_amounts_must_reconcile(self, session, balance_of) -> None:
        held = await _capture(session)
        escrow_id = held.escrow_id
        with pytest.raises(RefundAmountMismatch):
            async with atomic(session):
                await escrow.refund(session, escrow_id, Decimal("100000"), Decimal("0"))
        assert await balance_of("c1") == Decimal("0")
        current = await escrow.get_escrow(session, escrow_id)
        assert current.status == EscrowStatus.HOLDING

    async def test_same_refund_retry_is_a_no_op(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.refund(session, held.escrow_id, AMOUNT, Decimal("0"))
        async with atomic(session):
            again = await escrow.refund(session, held.escrow_id, AMOUNT, Decimal("0"))
        assert again.status == EscrowStatus.REFUNDED
        assert await balance_of("c1") == AMOUNT

    async def test_different_refund_after_settlement_is_invalid(self, session) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.refund(session, held.escrow_id, AMOUNT, Decimal("0"))
        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.refund(session, held.escrow_id, Decimal("200000"), Decimal("4000"))


class TestDisputes:
    async def test_dispute_then_resolve_by_refund(self, session, balance_of) -> None:
        held = await _capture(session)
        async with atomic(session):
            disputed = await escrow.mark_disputed(session, held.escrow_id)
        assert disputed.status == EscrowStatus.DISPUTED
        assert disputed.disputed_from == EscrowStatus.HOLDING
        await session.commit()
        assert await balance_of("c1") == Decimal("0")

        escrow_id = held.escrow_id
        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.refund(session, escrow_id, AMOUNT, Decimal("0"), RefundReason.DISPUTE_RESOLVED)
        async with atomic(session):
            done = await escrow.refund(
                session, escrow_id, AMOUNT, Decimal("0"), RefundReason.DISPUTE_RESOLVED, resolve=True
            )
        assert done.status == EscrowStatus.REFUNDED
        assert await balance_of("c1") == AMOUNT

    async def test_dispute_blocks_plain_release_until_resolved(self, session, balance_of) -> None:
        held = await _capture(session)
        escrow_id = held.escrow_id
        async with atomic(session):
            await escrow.mark_disputed(session, escrow_id)

        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.release(session, escrow_id)
        assert await balance_of("w1") == Decimal("0")

        async with atomic(session):
            done = await escrow.release(session, escrow_id, ReleaseReason.ADMIN_RELEASE, resolve=True)
        assert done.status == EscrowStatus.RELEASED
        assert done.release_reason == ReleaseReason.ADMIN_RELEASE
        assert await balance_of("w1") == PAYOUT

    async def test_dispute_after_partial_release_freezes_funds(self, session) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.refund(session, held.escrow_id, Decimal("183600"), Decimal("20400"))
        async with atomic(session):
            disputed = await escrow.mark_disputed(session, held.escrow_id)
        assert disputed.disputed_from == EscrowStatus.PARTIALLY_RELEASED
        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.release(session, held.escrow_id)

    async def test_released_escrow_cannot_be_disputed(self, session) -> None:
        held = await _capture(session)
        async with atomic(session):
            await escrow.release(session, held.escrow_id)
        with pytest.raises(InvalidEscrowState):
            async with atomic(session):
                await escrow.mark_disputed(session, held.escrow_id)


class TestQueries:
    async def test_list_and_summary(self, session) -> None:
        a = await _capture(session, "b1")
        await _capture(session, "b2")
        async with atomic(session):
            await escrow.release(session, a.escrow_id)

        items, total = await escrow.list_escrows(session, "c1", role="client")
        assert total == 2
        items, total = await escrow.list_escrows(session, "w1", status=EscrowStatus.HOLDING)
        assert total == 1
        assert items[0].booking_id == "b2"
        items, total = await escrow.list_escrows(session, "someone-else")
        assert total == 0

        summary = await escrow.escrow_summary(session, "w1")
        assert summary["total_holding"] == AMOUNT
        assert summary["total_released"] == AMOUNT
        assert summary["count_by_status"][EscrowStatus.RELEASED] == 1
        assert summary["count_by_status"][EscrowStatus.REFUNDED] == 0
