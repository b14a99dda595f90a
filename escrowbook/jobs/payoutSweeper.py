"""
Payout Sweep -- periodic settlement job.

Each sweep:

1. Promotes ``pending`` payouts whose settlement delay has elapsed to
   ``ready`` (readiness is re-checked per row inside ``mark_payout_ready``).
2. Processes ``ready`` payouts through the transfer gateway. A payout claimed
   by another instance is skipped, as is one whose payment is disputed.
3. Reconciles ``processing`` payouts with an unknown outcome or a stale
   claim by asking the gateway for the transfer status.
4. When a payment gateway is given, reconciles ``pending`` escrow payments
   older than ``settings.escrow_confirmation_timeout_seconds`` whose
   callback never arrived.

Every payout is handled in its own session, so one failure never rolls back
another payout's progress. Running several sweeps at once is safe: every
step is a compare-and-swap on the payout's status.

Usage (integrated into the FastAPI app lifespan)::

    from escrowbook.jobs.payoutSweeper import start_payout_sweeper, stop_payout_sweeper

Usage with a simple cron runner::

    python -m escrowbook.jobs.payoutSweeper
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.config import settings
from escrowbook.core.errors import AlreadyProcessingError, DomainError, InvalidStateError
from escrowbook.integrations.gateways import (
    PaymentGateway,
    TransferGateway,
    get_payment_gateway,
    get_transfer_gateway,
)
from escrowbook.models import EscrowPayment, EscrowStatus, Payout, PayoutStatus
from escrowbook.models.base import utcnow
from escrowbook.services.escrowService import reconcile_escrow
from escrowbook.services.payoutScheduler import mark_payout_ready, process_payout, reconcile_payout

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AsyncSession]

# Internal state
_sweeper_task: asyncio.Task | None = None
_running: bool = False


@dataclass
class SweepResult:
    promoted: int = 0
    processed: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    reconciled: int = 0
    escrows_settled: int = 0
    errors: int = 0


# ---------------------------------------------------------------------------
# Core logic
# ---------------------------------------------------------------------------

async def _select_ids(session_factory: SessionFactory, stmt) -> list[uuid.UUID]:
    async with session_factory() as db:
        return list((await db.execute(stmt)).scalars().all())


async def _promote_due(session_factory: SessionFactory, now: datetime, result: SweepResult) -> None:
    ids = await _select_ids(
        session_factory,
        select(Payout.id)
        .where(Payout.status == PayoutStatus.PENDING, Payout.payout_scheduled_at <= now)
        .order_by(Payout.payout_scheduled_at)
        .limit(settings.payout_sweep_batch_size),
    )
    for payout_id in ids:
        async with session_factory() as db:
            payout = await db.get(Payout, payout_id)
            if payout is None:
                continue
            await mark_payout_ready(db, payout, now=now)
            await db.commit()
            if payout.status == PayoutStatus.READY:
                result.promoted += 1


async def _process_ready(
    session_factory: SessionFactory,
    gateway: TransferGateway,
    now: datetime,
    result: SweepResult,
) -> None:
    ids = await _select_ids(
        session_factory,
        select(Payout.id)
        .where(Payout.status == PayoutStatus.READY)
        .order_by(Payout.payout_scheduled_at)
        .limit(settings.payout_sweep_batch_size),
    )
    for payout_id in ids:
        async with session_factory() as db:
            payout = await db.get(Payout, payout_id)
            if payout is None or payout.status != PayoutStatus.READY:
                result.skipped += 1
                continue
            try:
                await process_payout(db, payout, gateway, now=now)
            except AlreadyProcessingError:
                await db.rollback()
                result.skipped += 1
                continue
            except InvalidStateError as exc:
                await db.rollback()
                logger.info("Payout %s skipped: %s", payout_id, exc.message)
                result.skipped += 1
                continue
            except DomainError as exc:
                await db.rollback()
                logger.warning("Payout %s not processed: %s", payout_id, exc.message)
                result.skipped += 1
                continue
            except Exception:
                await db.rollback()
                logger.exception("Unexpected error processing payout %s", payout_id)
                result.errors += 1
                continue

            result.processed += 1
            if payout.status == PayoutStatus.COMPLETED:
                result.completed += 1
            elif payout.status == PayoutStatus.FAILED:
                result.failed += 1


async def _reconcile_stale(
    session_factory: SessionFactory,
    gateway: TransferGateway,
    now: datetime,
    result: SweepResult,
) -> None:
    stale_before = now - timedelta(seconds=settings.payout_claim_timeout_seconds)
    ids = await _select_ids(
        session_factory,
        select(Payout.id)
        .where(
            Payout.status == PayoutStatus.PROCESSING,
            or_(Payout.outcome_unknown.is_(True), Payout.claimed_at <= stale_before),
        )
        .order_by(Payout.claimed_at)
        .limit(settings.payout_sweep_batch_size),
    )
    for payout_id in ids:
        async with session_factory() as db:
            payout = await db.get(Payout, payout_id)
            if payout is None:
                continue
            try:
                await reconcile_payout(db, payout, gateway, now=now)
            except DomainError as exc:
                await db.rollback()
                logger.warning("Reconciliation of payout %s failed: %s", payout_id, exc.message)
                result.errors += 1
                continue
            if payout.status != PayoutStatus.PROCESSING:
                result.reconciled += 1


async def _settle_escrows(
    session_factory: SessionFactory,
    gateway: PaymentGateway,
    now: datetime,
    result: SweepResult,
) -> None:
    overdue_before = now - timedelta(seconds=settings.escrow_confirmation_timeout_seconds)
    ids = await _select_ids(
        session_factory,
        select(EscrowPayment.id)
        .where(EscrowPayment.status == EscrowStatus.PENDING, EscrowPayment.created_at <= overdue_before)
        .order_by(EscrowPayment.created_at)
        .limit(settings.payout_sweep_batch_size),
    )
    for escrow_id in ids:
        async with session_factory() as db:
            escrow = await db.get(EscrowPayment, escrow_id)
            if escrow is None:
                continue
            try:
                await reconcile_escrow(db, gateway, escrow, now=now)
                await db.commit()
            except DomainError as exc:
                await db.rollback()
                logger.warning("Reconciliation of escrow %s failed: %s", escrow_id, exc.message)
                result.errors += 1
                continue
            if escrow.status != EscrowStatus.PENDING:
                result.escrows_settled += 1


async def run_payout_sweep(
    session_factory: SessionFactory,
    gateway: TransferGateway,
    now: datetime | None = None,
    payment_gateway: PaymentGateway | None = None,
) -> SweepResult:
    """Run one promote / process / reconcile pass and return its counts.

    Overdue escrow payments are settled only when ``payment_gateway`` is
    given.
    """
    moment = now or utcnow()
    result = SweepResult()

    await _promote_due(session_factory, moment, result)
    await _process_ready(session_factory, gateway, moment, result)
    await _reconcile_stale(session_factory, gateway, moment, result)
    if payment_gateway is not None:
        await _settle_escrows(session_factory, payment_gateway, moment, result)

    if any(asdict(result).values()):
        logger.info("Payout sweep complete: %s", asdict(result))
    return result


# ---------------------------------------------------------------------------
# Background loop
# ---------------------------------------------------------------------------

async def _sweeper_loop(
    session_factory: SessionFactory,
    gateway: TransferGateway,
    payment_gateway: PaymentGateway,
) -> None:
    logger.info(
        "Payout sweeper started (interval=%ds, batch=%d)",
        settings.payout_sweep_interval_seconds,
        settings.payout_sweep_batch_size,
    )
    while _running:
        try:
            await run_payout_sweep(session_factory, gateway, payment_gateway=payment_gateway)
        except asyncio.CancelledError:
            break
        except Exception:
            logger.exception("Payout sweep failed")
        try:
            await asyncio.sleep(settings.payout_sweep_interval_seconds)
        except asyncio.CancelledError:
            break
    logger.info("Payout sweeper stopped")


async def start_payout_sweeper(
    session_factory: SessionFactory | None = None,
    gateway: TransferGateway | None = None,
    payment_gateway: PaymentGateway | None = None,
) -> None:
    """Start the background sweep loop. Idempotent."""
    global _sweeper_task, _running

    if _sweeper_task is not None and not _sweeper_task.done():
        logger.warning("Payout sweeper is already running")
        return

    if session_factory is None:
        from escrowbook.api.deps import async_session_factory

        session_factory = async_session_factory

    _running = True
    _sweeper_task = asyncio.create_task(
        _sweeper_loop(
            session_factory,
            gateway or get_transfer_gateway(),
            payment_gateway or get_payment_gateway(),
        )
    )


async def stop_payout_sweeper() -> None:
    global _sweeper_task, _running

    _running = False
    if _sweeper_task is not None:
        _sweeper_task.cancel()
        try:
            await _sweeper_task
        except asyncio.CancelledError:
            pass
        _sweeper_task = None


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------

async def _run_once() -> SweepResult:
    from escrowbook.api.deps import async_session_factory, engine

    try:
        return await run_payout_sweep(
            async_session_factory,
            get_transfer_gateway(),
            payment_gateway=get_payment_gateway(),
        )
    finally:
        await engine.dispose()


def main() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    result = asyncio.run(_run_once())
    print(
        "Payout sweep: "
        f"promoted={result.promoted}, processed={result.processed}, "
        f"completed={result.completed}, failed={result.failed}, "
        f"skipped={result.skipped}, reconciled={result.reconciled}, "
        f"escrows_settled={result.escrows_settled}, errors={result.errors}"
    )


if __name__ == "__main__":
    main()
