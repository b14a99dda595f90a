"""
Payout Scheduler
================

Drives the provider payout for a completed booking through its lifecycle::

    awaiting_payment --> pending --> ready --> processing --> completed
                                                   |
                                                   +--> failed --> ready | pending (retry)

    (any non-terminal except processing) --> cancelled

Amounts are computed once at creation: ``commission_amount`` is the booking
total times ``settings.payout_commission_rate`` percent (rounded half-up),
``payout_amount`` is the remainder, and ``payout_scheduled_at`` is the
service completion time plus ``settings.payout_settlement_delay_seconds``.
None of these change afterwards.

``process_payout`` claims the payout (``ready -> processing``) and commits
the claim before calling the transfer gateway, so a concurrent caller sees
``processing`` and gets ``AlreadyProcessingError`` instead of sending a
second transfer. The transfer reference (``PAYOUT-<id>``) is the same on
every attempt. A gateway timeout leaves the payout in ``processing`` with
``outcome_unknown`` set; ``reconcile_payout`` settles it with a status
query, never by sending the transfer again.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    AlreadyProcessingError,
    DuplicatePayoutError,
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
)
from escrowbook.core.ledger import CommissionSplit, split_by_percent
from escrowbook.events.bookingEvents import (
    emit_payout_completed,
    emit_payout_failed,
    emit_payout_scheduled,
)
from escrowbook.integrations.gateways import (
    RecipientDetails,
    TransferCallback,
    TransferGateway,
    TransferResult,
    TransferStatus,
)
from escrowbook.models import (
    Booking,
    BookingProvider,
    BookingStatus,
    EscrowPayment,
    EscrowStatus,
    PaymentStatus,
    Payout,
    PayoutEvent,
    PayoutStatus,
    ProviderProfile,
)
from escrowbook.models.base import utcnow
from escrowbook.services.compareAndSet import compare_and_set

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "PAYOUT-"

TERMINAL_STATUSES: frozenset[PayoutStatus] = frozenset({
    PayoutStatus.COMPLETED,
    PayoutStatus.CANCELLED,
})

CANCELLABLE_STATUSES: frozenset[PayoutStatus] = frozenset({
    PayoutStatus.AWAITING_PAYMENT,
    PayoutStatus.PENDING,
    PayoutStatus.READY,
    PayoutStatus.FAILED,
})

_FUNDED_ESCROW_STATUSES = (EscrowStatus.COMPLETED, EscrowStatus.RELEASED)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def payout_reference(payout_id: uuid.UUID) -> str:
    """Stable transfer reference, identical on every attempt."""
    return f"{REFERENCE_PREFIX}{payout_id}"


def calculate_amounts(total_amount: int, commission_rate: float | None = None) -> CommissionSplit:
    rate = settings.payout_commission_rate if commission_rate is None else commission_rate
    return split_by_percent(total_amount, rate)


def _record_event(
    db: AsyncSession,
    payout: Payout,
    from_status: PayoutStatus | None,
    to_status: PayoutStatus,
    note: str | None = None,
    data: dict[str, Any] | None = None,
) -> None:
    db.add(PayoutEvent(
        payout_id=payout.id,
        from_status=from_status,
        to_status=to_status,
        note=note,
        data=data or {},
    ))


async def get_payout(db: AsyncSession, payout_id: uuid.UUID) -> Payout:
    payout = await db.scalar(select(Payout).where(Payout.id == payout_id))
    if payout is None:
        raise NotFoundError("Payout", payout_id)
    return payout


async def get_payout_for_booking(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Payout]:
    return await db.scalar(select(Payout).where(Payout.booking_id == booking_id))


async def get_payout_events(db: AsyncSession, payout_id: uuid.UUID) -> list[PayoutEvent]:
    result = await db.execute(
        select(PayoutEvent)
        .where(PayoutEvent.payout_id == payout_id)
        .order_by(PayoutEvent.created_at, PayoutEvent.id)
    )
    return list(result.scalars().all())


async def _escrow_for_booking(db: AsyncSession, booking_id: uuid.UUID) -> Optional[EscrowPayment]:
    return await db.scalar(
        select(EscrowPayment)
        .where(EscrowPayment.booking_id == booking_id)
        .order_by(EscrowPayment.created_at.desc())
        .limit(1)
    )


async def get_lead_provider_id(db: AsyncSession, booking_id: uuid.UUID) -> Optional[uuid.UUID]:
    """The earliest-assigned provider receives the booking's payout."""
    return await db.scalar(
        select(BookingProvider.provider_id)
        .where(BookingProvider.booking_id == booking_id)
        .order_by(BookingProvider.assigned_at, BookingProvider.provider_id)
        .limit(1)
    )


# ---------------------------------------------------------------------------
# Creation
# ---------------------------------------------------------------------------

async def create_payout_from_completed_booking(
    db: AsyncSession,
    booking: Booking,
    escrow: EscrowPayment | None = None,
    *,
    now: datetime | None = None,
) -> Payout:
    """Create the single payout for a completed booking.

    The payout starts ``pending`` when the client's money is already held
    (escrow completed or released, or the booking marked paid); otherwise it
    waits in ``awaiting_payment`` until ``activate_awaiting_payout``.

    Raises:
        InvalidStateError: Booking not completed, or no provider assigned.
        DuplicatePayoutError: A payout already exists for this booking.
    """
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidStateError(
            f"Booking {booking.booking_number} must be completed before creating a payout.",
            booking_id=str(booking.id),
            status=booking.status.value,
        )

    provider_id = await get_lead_provider_id(db, booking.id)
    if provider_id is None:
        raise InvalidStateError(
            f"Booking {booking.booking_number} has no assigned provider to pay.",
            booking_id=str(booking.id),
        )
    provider = await db.get(ProviderProfile, provider_id)

    if escrow is None:
        escrow = await _escrow_for_booking(db, booking.id)
    funded = (
        (escrow is not None and escrow.status in _FUNDED_ESCROW_STATUSES)
        or booking.payment_status == PaymentStatus.COMPLETED
    )
    status = PayoutStatus.PENDING if funded else PayoutStatus.AWAITING_PAYMENT

    split = calculate_amounts(booking.total_amount)
    completed_at = booking.ended_at or now or utcnow()
    payout_id = uuid.uuid4()
    payout = Payout(
        id=payout_id,
        booking_id=booking.id,
        provider_id=provider_id,
        client_id=booking.client_id,
        total_amount=split.total,
        commission_amount=split.commission,
        payout_amount=split.provider_share,
        commission_rate=settings.payout_commission_rate,
        currency=booking.currency,
        status=status,
        reference=payout_reference(payout_id),
        recipient=provider.payout_recipient if provider else None,
        service_completed_at=completed_at,
        payout_scheduled_at=completed_at + timedelta(seconds=settings.payout_settlement_delay_seconds),
        metadata_={
            "booking_number": booking.booking_number,
            "escrow_id": str(escrow.id) if escrow else None,
            "payment_reference": escrow.mpesa_receipt_number if escrow else None,
        },
    )

    try:
        async with db.begin_nested():
            db.add(payout)
            await db.flush()
    except IntegrityError as exc:
        logger.warning("Duplicate payout rejected for booking %s", booking.id)
        raise DuplicatePayoutError(
            f"A payout already exists for booking {booking.booking_number}.",
            booking_id=str(booking.id),
        ) from exc

    _record_event(
        db,
        payout,
        None,
        status,
        note="Payout scheduled",
        data={
            "total_amount": split.total,
            "commission_amount": split.commission,
            "payout_amount": split.provider_share,
            "scheduled_at": payout.payout_scheduled_at.isoformat(),
        },
    )
    await db.flush()

    logger.info(
        "Payout %s created for booking %s: status=%s, amount=%d, scheduled=%s",
        payout.id,
        booking.id,
        status.value,
        split.provider_share,
        payout.payout_scheduled_at.isoformat(),
    )
    emit_payout_scheduled(payout.id, booking.id, split.provider_share, payout.payout_scheduled_at)
    return payout


async def activate_awaiting_payout(db: AsyncSession, booking_id: uuid.UUID) -> Optional[Payout]:
    """Move a booking's payout from ``awaiting_payment`` to ``pending``.

    Returns the payout if it was activated, ``None`` otherwise.
    """
    payout = await get_payout_for_booking(db, booking_id)
    if payout is None or payout.status != PayoutStatus.AWAITING_PAYMENT:
        return None

    if not await compare_and_set(
        db, payout, PayoutStatus.AWAITING_PAYMENT, {"status": PayoutStatus.PENDING}
    ):
        return None

    _record_event(db, payout, PayoutStatus.AWAITING_PAYMENT, PayoutStatus.PENDING, note="Client payment received")
    await db.flush()
    logger.info("Payout %s activated for booking %s", payout.id, booking_id)
    return payout


# ---------------------------------------------------------------------------
# Readiness
# ---------------------------------------------------------------------------

def is_payout_ready(payout: Payout, now: datetime | None = None) -> bool:
    """True iff the payout is ``pending`` and its settlement delay has passed."""
    moment = now or utcnow()
    return payout.status == PayoutStatus.PENDING and moment >= payout.payout_scheduled_at


async def mark_payout_ready(db: AsyncSession, payout: Payout, *, now: datetime | None = None) -> Payout:
    """``pending -> ready`` when ready; otherwise a no-op."""
    moment = now or utcnow()
    if not is_payout_ready(payout, moment):
        return payout

    updated = await compare_and_set(
        db,
        payout,
        PayoutStatus.PENDING,
        {"status": PayoutStatus.READY},
        extra_criteria=[Payout.payout_scheduled_at <= moment],
    )
    if updated:
        _record_event(db, payout, PayoutStatus.PENDING, PayoutStatus.READY, note="Settlement delay elapsed")
        await db.flush()
        logger.info("Payout %s marked ready", payout.id)
    return payout


# ---------------------------------------------------------------------------
# Processing
# ---------------------------------------------------------------------------

async def _ensure_escrow_not_disputed(db: AsyncSession, payout: Payout) -> None:
    escrow = await _escrow_for_booking(db, payout.booking_id)
    if escrow is not None and escrow.status == EscrowStatus.DISPUTED:
        raise InvalidStateError(
            "Payout is on hold while the booking's payment is disputed.",
            payout_id=str(payout.id),
            escrow_id=str(escrow.id),
        )


async def _claim(db: AsyncSession, payout: Payout, now: datetime) -> None:
    if payout.status == PayoutStatus.PROCESSING:
        raise AlreadyProcessingError(
            f"Payout {payout.id} is already being processed.", payout_id=str(payout.id)
        )
    if payout.status != PayoutStatus.READY:
        raise InvalidTransitionError(
            f"Cannot process a payout in '{payout.status.value}' status; it must be 'ready'.",
            payout_id=str(payout.id),
        )

    claimed = await compare_and_set(
        db,
        payout,
        PayoutStatus.READY,
        {
            "status": PayoutStatus.PROCESSING,
            "claimed_at": now,
            "payout_processed_at": now,
            "attempt_count": Payout.attempt_count + 1,
            "last_attempt_at": now,
            "outcome_unknown": False,
            "failure_reason": None,
        },
    )
    if not claimed:
        if payout.status == PayoutStatus.PROCESSING:
            raise AlreadyProcessingError(
                f"Payout {payout.id} is already being processed.", payout_id=str(payout.id)
            )
        raise StaleStateError(
            f"Payout {payout.id} left 'ready' before it could be claimed "
            f"(now '{payout.status.value}').",
            payout_id=str(payout.id),
        )

    _record_event(
        db,
        payout,
        PayoutStatus.READY,
        PayoutStatus.PROCESSING,
        note="Transfer claimed",
        data={"attempt": payout.attempt_count, "reference": payout.reference},
    )
    # The claim must be visible to every other worker before money moves.
    await db.commit()


async def _transfer_with_retry(
    db: AsyncSession,
    payout: Payout,
    gateway: TransferGateway,
) -> TransferResult:
    """Call the gateway, retrying only failures that never reached it."""
    backoff = settings.gateway_initial_backoff_seconds
    max_attempts = max(1, settings.gateway_max_retries)

    for attempt in range(1, max_attempts + 1):
        try:
            return await asyncio.wait_for(
                gateway.initiate_transfer(
                    payout.recipient,
                    payout.payout_amount,
                    payout.reference,
                    currency=payout.currency,
                    reason=f"Payout for booking {payout.metadata_.get('booking_number', payout.booking_id)}",
                ),
                timeout=settings.gateway_timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            raise GatewayTimeoutError(
                f"Transfer for payout {payout.id} timed out after "
                f"{settings.gateway_timeout_seconds}s"
            ) from exc
        except GatewayUnavailableError as exc:
            logger.warning(
                "Transient transfer error for payout %s on attempt %d/%d: %s",
                payout.id,
                attempt,
                max_attempts,
                exc.message,
            )
            if attempt == max_attempts:
                raise
            await asyncio.sleep(backoff)
            backoff *= 2
            now = utcnow()
            payout.attempt_count += 1
            payout.last_attempt_at = now
            _record_event(
                db,
                payout,
                PayoutStatus.PROCESSING,
                PayoutStatus.PROCESSING,
                note="Retrying after transient gateway error",
                data={"attempt": payout.attempt_count, "error": exc.message},
            )
            await db.commit()

    raise AssertionError("unreachable")


async def _release_escrow_after_payout(db: AsyncSession, payout: Payout) -> None:
    from escrowbook.services.escrowService import release_escrow

    escrow = await _escrow_for_booking(db, payout.booking_id)
    if escrow is not None and escrow.status == EscrowStatus.COMPLETED:
        await release_escrow(db, escrow, payout_reference=payout.reference)


async def _mark_completed(
    db: AsyncSession,
    payout: Payout,
    from_statuses: tuple[PayoutStatus, ...],
    *,
    transfer_code: str | None,
    transfer_id: str | None,
    note: str,
) -> Payout:
    previous = payout.status
    now = utcnow()
    updated = await compare_and_set(
        db,
        payout,
        from_statuses,
        {
            "status": PayoutStatus.COMPLETED,
            "payout_completed_at": now,
            "transfer_code": transfer_code or payout.transfer_code,
            "transfer_id": transfer_id or payout.transfer_id,
            "claimed_at": None,
            "outcome_unknown": False,
            "failure_reason": None,
        },
    )
    if not updated:
        if payout.status != PayoutStatus.COMPLETED:
            logger.error(
                "Transfer for payout %s succeeded but payout is '%s'; manual review needed",
                payout.id,
                payout.status.value,
            )
        return payout

    _record_event(
        db,
        payout,
        previous,
        PayoutStatus.COMPLETED,
        note=note,
        data={"transfer_code": payout.transfer_code, "transfer_id": payout.transfer_id},
    )
    await _release_escrow_after_payout(db, payout)
    await db.flush()

    logger.info(
        "Payout %s completed: amount=%d, reference=%s, transfer=%s",
        payout.id,
        payout.payout_amount,
        payout.reference,
        payout.transfer_code,
    )
    emit_payout_completed(payout.id, payout.provider_id, payout.payout_amount, payout.reference)
    return payout


async def _mark_failed(
    db: AsyncSession,
    payout: Payout,
    reason: str,
    *,
    transfer_code: str | None = None,
) -> Payout:
    now = utcnow()
    updated = await compare_and_set(
        db,
        payout,
        PayoutStatus.PROCESSING,
        {
            "status": PayoutStatus.FAILED,
            "payout_failed_at": now,
            "failure_reason": reason,
            "transfer_code": transfer_code or payout.transfer_code,
            "claimed_at": None,
            "outcome_unknown": False,
        },
    )
    if not updated:
        logger.warning(
            "Payout %s could not be marked failed; it is now '%s'",
            payout.id,
            payout.status.value,
        )
        return payout

    _record_event(
        db,
        payout,
        PayoutStatus.PROCESSING,
        PayoutStatus.FAILED,
        note="Transfer failed",
        data={"reason": reason, "attempt": payout.attempt_count},
    )
    await db.flush()

    logger.error("Payout %s failed after %d attempt(s): %s", payout.id, payout.attempt_count, reason)
    emit_payout_failed(payout.id, payout.provider_id, reason, payout.attempt_count)
    return payout


async def _mark_outcome_unknown(db: AsyncSession, payout: Payout, detail: str) -> Payout:
    payout.outcome_unknown = True
    _record_event(
        db,
        payout,
        PayoutStatus.PROCESSING,
        PayoutStatus.PROCESSING,
        note="Transfer outcome unknown; awaiting reconciliation",
        data={"detail": detail},
    )
    await db.flush()
    logger.warning("Payout %s transfer outcome unknown: %s", payout.id, detail)
    return payout


async def _apply_transfer_result(
    db: AsyncSession,
    payout: Payout,
    result: TransferResult,
    *,
    reconciling: bool = False,
) -> Payout:
    if result.status is TransferStatus.SUCCESS:
        return await _mark_completed(
            db,
            payout,
            (PayoutStatus.PROCESSING,),
            transfer_code=result.transfer_code,
            transfer_id=result.transfer_id,
            note="Transfer succeeded",
        )
    if result.status is TransferStatus.FAILED:
        return await _mark_failed(
            db,
            payout,
            result.failure_reason or "Transfer failed at gateway",
            transfer_code=result.transfer_code,
        )

    # Accepted but not final: the transfer webhook or reconciliation settles it
    transfer_code = result.transfer_code or payout.transfer_code
    if reconciling and transfer_code == payout.transfer_code:
        logger.debug("Payout %s transfer %s still pending", payout.id, transfer_code)
        return payout

    payout.transfer_code = transfer_code
    payout.transfer_id = result.transfer_id or payout.transfer_id
    _record_event(
        db,
        payout,
        PayoutStatus.PROCESSING,
        PayoutStatus.PROCESSING,
        note="Transfer accepted; awaiting confirmation",
        data={"transfer_code": result.transfer_code},
    )
    await db.flush()
    logger.info("Payout %s transfer %s pending confirmation", payout.id, result.transfer_code)
    return payout


async def _ensure_recipient(db: AsyncSession, payout: Payout, gateway: TransferGateway) -> None:
    """Fill ``payout.recipient``, registering the provider's account if needed.

    The created recipient code is stored on the provider profile so later
    payouts reuse it.
    """
    if payout.recipient:
        return

    provider = await db.get(ProviderProfile, payout.provider_id)
    if provider is None:
        return
    if provider.payout_recipient:
        payout.recipient = provider.payout_recipient
        return
    if not provider.payout_account_number or provider.payout_method is None:
        return

    details = RecipientDetails(
        method=provider.payout_method.value,
        name=provider.payout_account_name or provider.display_name,
        account_number=provider.payout_account_number,
        bank_code=provider.payout_bank_code,
        currency=payout.currency,
    )
    try:
        code = await asyncio.wait_for(
            gateway.create_recipient(details),
            timeout=settings.gateway_timeout_seconds,
        )
    except asyncio.TimeoutError as exc:
        raise GatewayTimeoutError(
            f"Creating a transfer recipient for provider {provider.id} timed out"
        ) from exc

    provider.payout_recipient = code
    payout.recipient = code
    _record_event(
        db,
        payout,
        PayoutStatus.PROCESSING,
        PayoutStatus.PROCESSING,
        note="Transfer recipient created",
        data={"recipient": code, "method": details.method},
    )
    await db.flush()
    logger.info("Created transfer recipient %s for provider %s", code, provider.id)


async def process_payout(
    db: AsyncSession,
    payout: Payout,
    gateway: TransferGateway,
    *,
    now: datetime | None = None,
) -> Payout:
    """Claim a ``ready`` payout and send its transfer.

    A provider with account details but no stored recipient code gets one
    created at the gateway first. Commits the session: once after the claim
    and once after the outcome.

    Raises:
        AlreadyProcessingError: Another caller holds the claim.
        InvalidTransitionError: The payout is not ``ready``.
        InvalidStateError: The booking's payment is disputed.
    """
    moment = now or utcnow()
    await _ensure_escrow_not_disputed(db, payout)
    await _claim(db, payout, moment)

    logger.info(
        "Processing payout %s: amount=%d %s, attempt=%d, gateway=%s",
        payout.id,
        payout.payout_amount,
        payout.currency,
        payout.attempt_count,
        getattr(gateway, "name", type(gateway).__name__),
    )

    try:
        await _ensure_recipient(db, payout, gateway)
    except GatewayError as exc:
        await _mark_failed(db, payout, f"Could not create transfer recipient: {exc.message}")
        await db.commit()
        return payout

    if not payout.recipient:
        await _mark_failed(db, payout, "Provider payout details not configured")
        await db.commit()
        return payout

    try:
        result = await _transfer_with_retry(db, payout, gateway)
    except GatewayTimeoutError as exc:
        await _mark_outcome_unknown(db, payout, exc.message)
    except (GatewayRejectedError, GatewayUnavailableError) as exc:
        await _mark_failed(db, payout, exc.message, transfer_code=None)
    else:
        await _apply_transfer_result(db, payout, result)

    await db.commit()
    return payout


# ---------------------------------------------------------------------------
# Operator actions
# ---------------------------------------------------------------------------

async def retry_payout(
    db: AsyncSession,
    payout: Payout,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
) -> Payout:
    """``failed -> ready`` (or ``pending`` when immediate retries are off).

    ``attempt_count`` is preserved; the schedule is not moved.
    """
    if payout.status != PayoutStatus.FAILED:
        raise InvalidTransitionError(
            f"Only failed payouts can be retried; payout is '{payout.status.value}'.",
            payout_id=str(payout.id),
        )

    target = PayoutStatus.READY if settings.payout_retry_immediately else PayoutStatus.PENDING
    updated = await compare_and_set(
        db,
        payout,
        PayoutStatus.FAILED,
        {"status": target, "notes": reason, "outcome_unknown": False},
    )
    if not updated:
        raise StaleStateError(
            f"Payout {payout.id} is no longer failed (now '{payout.status.value}').",
            payout_id=str(payout.id),
        )

    _record_event(
        db,
        payout,
        PayoutStatus.FAILED,
        target,
        note=reason,
        data={"actor_id": str(actor_id) if actor_id else None, "previous_failure": payout.failure_reason},
    )
    await db.flush()
    logger.info("Payout %s queued for retry -> %s (attempts so far: %d)", payout.id, target.value, payout.attempt_count)
    return payout


async def cancel_payout(
    db: AsyncSession,
    payout: Payout,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
) -> Payout:
    """Cancel a payout that is not terminal and not mid-transfer.

    Raises:
        AlreadyProcessingError: A transfer is in flight.
        InvalidTransitionError: The payout is already completed or cancelled.
    """
    if payout.status == PayoutStatus.PROCESSING:
        raise AlreadyProcessingError(
            f"Payout {payout.id} is being processed and cannot be cancelled.",
            payout_id=str(payout.id),
        )
    if payout.status in TERMINAL_STATUSES:
        raise InvalidTransitionError(
            f"Payout {payout.id} is already '{payout.status.value}'.",
            payout_id=str(payout.id),
        )

    previous = payout.status
    updated = await compare_and_set(
        db,
        payout,
        previous,
        {"status": PayoutStatus.CANCELLED, "notes": reason},
    )
    if not updated:
        if payout.status == PayoutStatus.PROCESSING:
            raise AlreadyProcessingError(
                f"Payout {payout.id} was claimed before it could be cancelled.",
                payout_id=str(payout.id),
            )
        raise StaleStateError(
            f"Payout {payout.id} changed to '{payout.status.value}' before it could be cancelled.",
            payout_id=str(payout.id),
        )

    _record_event(
        db,
        payout,
        previous,
        PayoutStatus.CANCELLED,
        note=reason,
        data={"actor_id": str(actor_id) if actor_id else None},
    )
    await db.flush()
    logger.info("Payout %s cancelled (%s): %s", payout.id, previous.value, reason)
    return payout


# ---------------------------------------------------------------------------
# Gateway callbacks and reconciliation
# ---------------------------------------------------------------------------

async def _find_by_transfer(db: AsyncSession, callback: TransferCallback) -> Optional[Payout]:
    if callback.reference:
        payout = await db.scalar(select(Payout).where(Payout.reference == callback.reference))
        if payout is not None:
            return payout
    if callback.transfer_code:
        return await db.scalar(select(Payout).where(Payout.transfer_code == callback.transfer_code))
    return None


async def handle_transfer_callback(db: AsyncSession, callback: TransferCallback) -> Optional[Payout]:
    """Apply a transfer webhook. Replays are no-ops.

    Returns the payout it applied to, or ``None`` if it is unknown.
    """
    payout = await _find_by_transfer(db, callback)
    if payout is None:
        logger.warning(
            "Transfer callback for unknown payout: reference=%s, code=%s",
            callback.reference,
            callback.transfer_code,
        )
        return None

    if callback.status is TransferStatus.SUCCESS:
        if payout.status == PayoutStatus.COMPLETED:
            logger.info("Duplicate success callback for payout %s ignored", payout.id)
            return payout
        if payout.status == PayoutStatus.FAILED:
            logger.warning("Payout %s was marked failed but the gateway reports success", payout.id)
        if payout.status in (PayoutStatus.PROCESSING, PayoutStatus.FAILED):
            return await _mark_completed(
                db,
                payout,
                (PayoutStatus.PROCESSING, PayoutStatus.FAILED),
                transfer_code=callback.transfer_code,
                transfer_id=callback.transfer_id,
                note="Transfer confirmed by gateway",
            )
        logger.warning(
            "Success callback for payout %s in unexpected status '%s' ignored",
            payout.id,
            payout.status.value,
        )
        return payout

    if callback.status is TransferStatus.FAILED:
        if payout.status == PayoutStatus.PROCESSING:
            return await _mark_failed(
                db,
                payout,
                callback.failure_reason or "Transfer failed at gateway",
                transfer_code=callback.transfer_code,
            )
        logger.info(
            "Failure callback for payout %s in status '%s' ignored",
            payout.id,
            payout.status.value,
        )
        return payout

    return payout


def _claim_is_stale(payout: Payout, now: datetime) -> bool:
    if payout.claimed_at is None:
        return True
    return now - payout.claimed_at >= timedelta(seconds=settings.payout_claim_timeout_seconds)


async def reconcile_payout(
    db: AsyncSession,
    payout: Payout,
    gateway: TransferGateway,
    *,
    now: datetime | None = None,
) -> Payout:
    """Settle a ``processing`` payout by asking the gateway what happened.

    A transfer the gateway has never seen is only failed once the claim is
    older than ``settings.payout_claim_timeout_seconds``, so an in-flight
    transfer is never failed underneath its sender.
    """
    if payout.status != PayoutStatus.PROCESSING:
        return payout

    moment = now or utcnow()
    try:
        result = await asyncio.wait_for(
            gateway.verify_transfer(payout.reference),
            timeout=settings.gateway_timeout_seconds,
        )
    except (asyncio.TimeoutError, GatewayTimeoutError, GatewayUnavailableError) as exc:
        logger.warning("Reconciliation of payout %s deferred: %s", payout.id, exc)
        return payout

    if result.status is TransferStatus.NOT_FOUND:
        if not _claim_is_stale(payout, moment):
            return payout
        await _mark_failed(db, payout, "Transfer not found at gateway after claim timeout")
    else:
        await _apply_transfer_result(db, payout, result, reconciling=True)

    await db.commit()
    return payout


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def get_payout_stats(
    db: AsyncSession,
    provider_id: uuid.UUID | None = None,
) -> dict[str, dict[str, int]]:
    """Count and sum payouts per status, optionally for one provider."""
    stmt = select(
        Payout.status,
        func.count(Payout.id),
        func.coalesce(func.sum(Payout.payout_amount), 0),
        func.coalesce(func.sum(Payout.commission_amount), 0),
    ).group_by(Payout.status)
    if provider_id is not None:
        stmt = stmt.where(Payout.provider_id == provider_id)

    rows = (await db.execute(stmt)).all()
    return {
        status.value: {
            "count": int(count),
            "payout_amount": int(payout_sum),
            "commission_amount": int(commission_sum),
        }
        for status, count, payout_sum, commission_sum in rows
    }
