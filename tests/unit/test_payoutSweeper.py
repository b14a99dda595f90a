"""
Unit tests for the periodic payout sweep.

The sweep runs against the file-backed SQLite database through the session
factory, exactly as the background task and the CLI do. Besides payouts it
settles escrow payments whose callback never arrived.
"""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from escrowbook.core.config import settings
from escrowbook.integrations.gateways import TransferStatus
from escrowbook.jobs.payoutSweeper import SweepResult, run_payout_sweep
from escrowbook.models import EscrowStatus, Payout, PayoutStatus
from escrowbook.services import escrowService, payoutScheduler

from tests.conftest import (
    FakeTransferGateway,
    book,
    complete_paid_booking,
    create_category,
    create_provider,
    create_service,
)


pytestmark = pytest.mark.asyncio


@pytest.fixture
async def completed(db, payment_gateway):
    """Two completed, paid bookings by different providers, committed."""
    category = await create_category(db)
    service = await create_service(db, category, price=5000)
    bookings = []
    for name in ("Kamau Electricals", "Njeri Cleaners"):
        provider = await create_provider(db, name)
        bookings.append(await complete_paid_booking(db, service, provider, payment_gateway))
    await db.commit()
    return bookings


async def _statuses(db) -> list[PayoutStatus]:
    statuses = (await db.execute(select(Payout.status))).scalars().all()
    # Release the SQLite write lock before the next sweep opens its sessions
    await db.commit()
    return sorted(statuses, key=lambda s: s.value)


async def _due(db) -> datetime:
    due = max((await db.execute(select(Payout.payout_scheduled_at))).scalars().all())
    await db.commit()
    return due


class TestRunPayoutSweep:

    async def test_nothing_due_before_settlement_delay(self, db, completed, session_factory, transfer_gateway):
        result = await run_payout_sweep(session_factory, transfer_gateway)
        assert result == SweepResult()
        assert transfer_gateway.calls == []

    async def test_promotes_and_pays_due_payouts(self, db, completed, session_factory, transfer_gateway):
        result = await run_payout_sweep(session_factory, transfer_gateway, now=await _due(db))

        assert result.promoted == 2
        assert result.processed == 2
        assert result.completed == 2
        assert len(transfer_gateway.calls) == 2
        assert await _statuses(db) == [PayoutStatus.COMPLETED, PayoutStatus.COMPLETED]

        escrows = [await escrowService.get_escrow_for_booking(db, b.id) for b in completed]
        await db.refresh(escrows[0])
        await db.refresh(escrows[1])
        assert {e.status for e in escrows} == {EscrowStatus.RELEASED}

    async def test_second_sweep_sends_nothing_new(self, db, completed, session_factory, transfer_gateway):
        due = await _due(db)
        await run_payout_sweep(session_factory, transfer_gateway, now=due)
        result = await run_payout_sweep(session_factory, transfer_gateway, now=due)

        assert result.processed == 0
        assert len(transfer_gateway.calls) == 2

    async def test_disputed_payout_is_skipped(self, db, completed, session_factory, transfer_gateway):
        escrow = await escrowService.get_escrow_for_booking(db, completed[0].id)
        await escrowService.dispute_escrow(db, escrow, "Socket sparks")
        await db.commit()

        result = await run_payout_sweep(session_factory, transfer_gateway, now=await _due(db))

        assert result.promoted == 2
        assert result.completed == 1
        assert result.skipped == 1
        payout = await db.scalar(select(Payout.status).where(Payout.booking_id == completed[0].id))
        assert payout == PayoutStatus.READY

    async def test_rejected_transfers_counted_as_failed(self, db, completed, session_factory):
        gateway = FakeTransferGateway(status=TransferStatus.FAILED)
        result = await run_payout_sweep(session_factory, gateway, now=await _due(db))

        assert result.processed == 2
        assert result.failed == 2
        assert await _statuses(db) == [PayoutStatus.FAILED, PayoutStatus.FAILED]

    async def test_reconciles_unknown_outcomes(
        self, db, completed, session_factory, transfer_gateway, monkeypatch
    ):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        transfer_gateway.delay = 1.0

        # The timed-out transfers did land; the same sweep confirms them without resending
        result = await run_payout_sweep(session_factory, transfer_gateway, now=await _due(db))

        assert result.processed == 2
        assert result.completed == 0
        assert result.reconciled == 2
        assert len(transfer_gateway.calls) == 2
        assert len(transfer_gateway.verifications) == 2
        assert await _statuses(db) == [PayoutStatus.COMPLETED, PayoutStatus.COMPLETED]

    async def test_stale_claim_without_transfer_fails(
        self, db, completed, session_factory, transfer_gateway, monkeypatch
    ):
        monkeypatch.setattr(settings, "gateway_timeout_seconds", 0.05)
        due = await _due(db)
        transfer_gateway.delay = 1.0
        transfer_gateway.verify_status = TransferStatus.NOT_FOUND
        first = await run_payout_sweep(session_factory, transfer_gateway, now=due)
        assert (first.processed, first.reconciled) == (2, 0)
        assert await _statuses(db) == [PayoutStatus.PROCESSING, PayoutStatus.PROCESSING]

        early = await run_payout_sweep(session_factory, transfer_gateway, now=due + timedelta(seconds=30))
        assert early.reconciled == 0

        late = await run_payout_sweep(
            session_factory,
            transfer_gateway,
            now=due + timedelta(seconds=settings.payout_claim_timeout_seconds),
        )
        assert late.reconciled == 2
        assert await _statuses(db) == [PayoutStatus.FAILED, PayoutStatus.FAILED]


class TestPayoutStatsAfterSweep:

    async def test_stats_reflect_completed_payouts(self, db, completed, session_factory, transfer_gateway):
        await run_payout_sweep(session_factory, transfer_gateway, now=await _due(db))
        stats = await payoutScheduler.get_payout_stats(db)
        assert stats["completed"] == {"count": 2, "payout_amount": 7000, "commission_amount": 3000}


class TestEscrowSettlement:

    @pytest.fixture
    async def pending_escrow(self, db, payment_gateway):
        """A payment request whose callback never arrived, committed."""
        category = await create_category(db)
        service = await create_service(db, category, price=5000)
        booking = await book(db, service)
        escrow = await escrowService.initiate_escrow(db, payment_gateway, booking, "254712345678")
        await db.commit()
        return escrow

    async def test_overdue_escrow_settled_by_status_query(
        self, db, pending_escrow, session_factory, transfer_gateway, payment_gateway
    ):
        overdue = pending_escrow.created_at + timedelta(seconds=settings.escrow_confirmation_timeout_seconds)

        result = await run_payout_sweep(
            session_factory, transfer_gateway, now=overdue, payment_gateway=payment_gateway
        )

        assert result.escrows_settled == 1
        assert payment_gateway.queries == [pending_escrow.checkout_request_id]
        await db.refresh(pending_escrow)
        assert pending_escrow.status == EscrowStatus.COMPLETED

    async def test_recent_escrow_left_alone(
        self, db, pending_escrow, session_factory, transfer_gateway, payment_gateway
    ):
        result = await run_payout_sweep(
            session_factory,
            transfer_gateway,
            now=pending_escrow.created_at + timedelta(seconds=30),
            payment_gateway=payment_gateway,
        )

        assert result == SweepResult()
        assert payment_gateway.queries == []

    async def test_escrows_skipped_without_payment_gateway(
        self, db, pending_escrow, session_factory, transfer_gateway, payment_gateway
    ):
        overdue = pending_escrow.created_at + timedelta(seconds=settings.escrow_confirmation_timeout_seconds)
        result = await run_payout_sweep(session_factory, transfer_gateway, now=overdue)

        assert result.escrows_settled == 0
        assert payment_gateway.queries == []
