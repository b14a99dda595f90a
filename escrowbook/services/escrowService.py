"""
Escrow Payment Service
======================

Tracks the client's payment for a booking while it is held by the platform::

    pending --> completed --> released
       |            |
       |            +--> disputed --> completed | failed
       |            +--> cancelled          (refunded on booking cancellation)
       +--> failed | cancelled

Every mutation appends an ``EscrowEvent``. ``commission_amount`` and
``provider_amount`` are recomputed whenever ``amount`` or
``commission_rate`` changes, so ``commission_amount + provider_amount ==
amount`` after every write.

Key functions:
  - initiate_escrow   -- send an STK push and open a pending escrow
  - record_inbound    -- apply the gateway's payment callback (idempotent;
                         late payments are kept with a refund due)
  - reconcile_escrow  -- settle a pending escrow whose callback never came
  - dispute_escrow / resolve_escrow_dispute / release_escrow
  - fail_escrow / cancel_escrow / refund_escrow
  - update_escrow_amount / update_escrow_commission_rate
  - get_provider_earnings / get_company_revenue -- reporting aggregates
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    DuplicateReceiptError,
    GatewayError,
    GatewayTimeoutError,
    InvalidStateError,
    NotFoundError,
)
from escrowbook.core.ledger import split_by_fraction
from escrowbook.events.bookingEvents import emit_dispute_opened, emit_payment_released
from escrowbook.integrations.gateways import PaymentCallback, PaymentGateway
from escrowbook.integrations.mpesa import normalize_phone
from escrowbook.models import (
    Booking,
    EscrowEvent,
    EscrowEventType,
    EscrowPayment,
    EscrowStatus,
    PaymentStatus,
    PayoutStatus,
    ReleaseMethod,
)
from escrowbook.models.base import utcnow
from escrowbook.services.compareAndSet import compare_and_set
from escrowbook.services.payoutScheduler import (
    CANCELLABLE_STATUSES as PAYOUT_CANCELLABLE_STATUSES,
    activate_awaiting_payout,
    cancel_payout,
    get_lead_provider_id,
    get_payout_for_booking,
)

logger = logging.getLogger(__name__)

UNCONFIRMED_PREFIX = "UNCONFIRMED-"

_ADJUSTABLE_STATUSES = (EscrowStatus.PENDING, EscrowStatus.COMPLETED, EscrowStatus.DISPUTED)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _record_event(
    db: AsyncSession,
    escrow: EscrowPayment,
    event_type: EscrowEventType,
    description: str,
    data: dict[str, Any] | None = None,
) -> None:
    db.add(EscrowEvent(
        escrow_id=escrow.id,
        event_type=event_type,
        description=description,
        data=data or {},
    ))


def _split_values(amount: int, rate: Decimal | float) -> dict[str, Any]:
    split = split_by_fraction(amount, rate)
    return {
        "amount": amount,
        "commission_rate": Decimal(str(rate)),
        "commission_amount": split.commission,
        "provider_amount": split.provider_share,
    }


def _require_status(escrow: EscrowPayment, expected: EscrowStatus, action: str) -> None:
    if escrow.status != expected:
        raise InvalidStateError(
            f"Cannot {action} an escrow payment in '{escrow.status.value}' status; "
            f"it must be '{expected.value}'.",
            escrow_id=str(escrow.id),
            status=escrow.status.value,
        )


async def _transition(
    db: AsyncSession,
    escrow: EscrowPayment,
    expected: EscrowStatus,
    values: dict[str, Any],
    action: str,
) -> None:
    """CAS ``expected -> values['status']``; a lost race is an invalid state."""
    _require_status(escrow, expected, action)
    if not await compare_and_set(db, escrow, expected, values):
        raise InvalidStateError(
            f"Cannot {action}: escrow payment moved to '{escrow.status.value}'.",
            escrow_id=str(escrow.id),
            status=escrow.status.value,
        )


async def get_escrow(db: AsyncSession, escrow_id: uuid.UUID) -> EscrowPayment:
    escrow = await db.scalar(select(EscrowPayment).where(EscrowPayment.id == escrow_id))
    if escrow is None:
        raise NotFoundError("EscrowPayment", escrow_id)
    return escrow


async def get_escrow_by_checkout(db: AsyncSession, checkout_request_id: str) -> Optional[EscrowPayment]:
    return await db.scalar(
        select(EscrowPayment).where(EscrowPayment.checkout_request_id == checkout_request_id)
    )


async def get_escrow_for_booking(db: AsyncSession, booking_id: uuid.UUID) -> Optional[EscrowPayment]:
    """Most recent escrow payment for a booking."""
    return await db.scalar(
        select(EscrowPayment)
        .where(EscrowPayment.booking_id == booking_id)
        .order_by(EscrowPayment.created_at.desc())
        .limit(1)
    )


async def get_escrow_events(db: AsyncSession, escrow_id: uuid.UUID) -> list[EscrowEvent]:
    result = await db.execute(
        select(EscrowEvent)
        .where(EscrowEvent.escrow_id == escrow_id)
        .order_by(EscrowEvent.created_at, EscrowEvent.id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Inbound payment
# ---------------------------------------------------------------------------

async def initiate_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    booking: Booking,
    phone: str,
    *,
    amount: int | None = None,
    description: str | None = None,
    metadata: dict[str, Any] | None = None,
) -> EscrowPayment:
    """Request the client's payment and open a ``pending`` escrow record.

    If the gateway does not answer in time the escrow is still opened, with
    ``outcome_unknown`` set: the push may have reached the phone, so the
    paid callback is matched to it later, or ``reconcile_escrow`` fails it
    once ``settings.escrow_confirmation_timeout_seconds`` has passed.

    Raises:
        InvalidStateError: The booking is cancelled, already paid, or has an
            unconfirmed payment request outstanding.
        GatewayRejectedError / GatewayUnavailableError: The charge was refused
            or never reached the gateway.
    """
    if booking.payment_status == PaymentStatus.COMPLETED:
        raise InvalidStateError(
            f"Booking {booking.booking_number} is already paid.", booking_id=str(booking.id)
        )
    if booking.cancelled_at is not None:
        raise InvalidStateError(
            f"Booking {booking.booking_number} is cancelled.", booking_id=str(booking.id)
        )

    if await _unconfirmed_request(db, booking.id) is not None:
        raise InvalidStateError(
            f"A payment request for booking {booking.booking_number} is still awaiting confirmation.",
            booking_id=str(booking.id),
        )

    charge_amount = booking.total_amount if amount is None else amount
    desc = description or f"Booking {booking.booking_number}"
    try:
        charge = await asyncio.wait_for(
            gateway.initiate_charge(phone, charge_amount, booking.booking_number, desc),
            timeout=settings.gateway_timeout_seconds,
        )
    except (asyncio.TimeoutError, GatewayTimeoutError) as exc:
        # The push may still reach the phone; keep a record the callback can match
        logger.warning(
            "Payment request for booking %s timed out; outcome unknown: %s",
            booking.id,
            exc,
        )
        charge = None

    escrow_id = uuid.uuid4()
    escrow = EscrowPayment(
        id=escrow_id,
        checkout_request_id=(
            charge.checkout_request_id if charge else f"{UNCONFIRMED_PREFIX}{escrow_id}"
        ),
        merchant_request_id=charge.merchant_request_id if charge else "",
        outcome_unknown=charge is None,
        phone_number=phone,
        account_reference=booking.booking_number,
        description=desc,
        currency=booking.currency,
        booking_id=booking.id,
        client_id=booking.client_id,
        provider_id=await get_lead_provider_id(db, booking.id),
        service_id=booking.service_id,
        metadata_=metadata or {},
        **_split_values(charge_amount, settings.escrow_commission_rate),
    )
    db.add(escrow)
    await db.flush()
    if charge is None:
        _record_event(
            db,
            escrow,
            EscrowEventType.CREATED,
            "Payment requested from client; gateway response timed out",
            {"checkout_request_id": None, "amount": charge_amount, "outcome_unknown": True},
        )
    else:
        _record_event(
            db,
            escrow,
            EscrowEventType.CREATED,
            "Payment requested from client",
            {"checkout_request_id": charge.checkout_request_id, "amount": charge_amount},
        )
        booking.payment_transaction_id = charge.checkout_request_id

    booking.payment_status = PaymentStatus.PROCESSING
    await db.flush()

    logger.info(
        "Escrow %s opened for booking %s: checkout=%s, amount=%d",
        escrow.id,
        booking.id,
        escrow.checkout_request_id,
        charge_amount,
    )
    return escrow


async def _unconfirmed_request(db: AsyncSession, booking_id: uuid.UUID) -> Optional[EscrowPayment]:
    return await db.scalar(
        select(EscrowPayment)
        .where(
            EscrowPayment.booking_id == booking_id,
            EscrowPayment.status == EscrowStatus.PENDING,
            EscrowPayment.outcome_unknown.is_(True),
        )
        .limit(1)
    )


def _msisdn(phone: str | None) -> str | None:
    if not phone:
        return None
    try:
        return normalize_phone(phone)
    except ValueError:
        return None


async def _claim_unconfirmed(db: AsyncSession, callback: PaymentCallback) -> Optional[EscrowPayment]:
    """Attach a paid callback to a request whose STK push response was lost.

    Matches the oldest unconfirmed escrow with the same amount and payer
    phone, and adopts the callback's checkout id so replays find it directly.
    """
    payer = _msisdn(callback.phone_number)
    if not callback.succeeded or callback.amount is None or payer is None:
        return None

    result = await db.execute(
        select(EscrowPayment)
        .where(
            EscrowPayment.outcome_unknown.is_(True),
            EscrowPayment.status.in_((EscrowStatus.PENDING, EscrowStatus.FAILED)),
            EscrowPayment.amount == callback.amount,
        )
        .order_by(EscrowPayment.created_at)
    )
    for escrow in result.scalars().all():
        if _msisdn(escrow.phone_number) != payer:
            continue
        matched = await compare_and_set(
            db,
            escrow,
            escrow.status,
            {
                "checkout_request_id": callback.checkout_request_id,
                "merchant_request_id": callback.merchant_request_id or "",
                "outcome_unknown": False,
            },
            extra_criteria=[EscrowPayment.outcome_unknown.is_(True)],
        )
        if matched:
            logger.warning(
                "Callback %s matched unconfirmed escrow %s by payer and amount",
                callback.checkout_request_id,
                escrow.id,
            )
            return escrow
    return None


async def _receipt_owner(db: AsyncSession, receipt: str, escrow_id: uuid.UUID) -> Optional[uuid.UUID]:
    return await db.scalar(
        select(EscrowPayment.id).where(
            EscrowPayment.mpesa_receipt_number == receipt,
            EscrowPayment.id != escrow_id,
        )
    )


def _duplicate_receipt(
    db: AsyncSession,
    escrow: EscrowPayment,
    callback: PaymentCallback,
    owner_id: uuid.UUID | None,
) -> DuplicateReceiptError:
    _record_event(
        db,
        escrow,
        EscrowEventType.RECEIPT_CONFLICT,
        "Payment receipt already recorded on another escrow payment",
        {
            "receipt_number": callback.receipt_number,
            "amount": callback.amount,
            "other_escrow_id": str(owner_id) if owner_id else None,
        },
    )
    logger.error(
        "Receipt %s for escrow %s is already recorded on escrow %s; manual review needed",
        callback.receipt_number,
        escrow.id,
        owner_id,
    )
    return DuplicateReceiptError(
        f"Receipt {callback.receipt_number} is already recorded on another escrow payment.",
        escrow_id=str(escrow.id),
        other_escrow_id=str(owner_id) if owner_id else None,
    )


def _is_unrecorded_payment(escrow: EscrowPayment, callback: PaymentCallback) -> bool:
    receipt = callback.receipt_number
    if not callback.succeeded or not receipt or receipt == escrow.mpesa_receipt_number:
        return False
    return receipt not in (escrow.metadata_ or {}).get("late_receipts", [])


async def _record_late_payment(
    db: AsyncSession,
    escrow: EscrowPayment,
    callback: PaymentCallback,
) -> EscrowPayment:
    """Keep a payment that arrived after the escrow left ``pending``.

    The status does not change; the receipt and a refund-due amount are
    recorded for an operator to settle.
    """
    receipt = callback.receipt_number
    amount = callback.amount or 0
    metadata = dict(escrow.metadata_ or {})
    metadata["late_receipts"] = [*metadata.get("late_receipts", []), receipt]
    metadata["refund_due"] = metadata.get("refund_due", 0) + amount
    escrow.metadata_ = metadata
    if escrow.mpesa_receipt_number is None and await _receipt_owner(db, receipt, escrow.id) is None:
        escrow.mpesa_receipt_number = receipt
        escrow.transaction_date = callback.transaction_date

    _record_event(
        db,
        escrow,
        EscrowEventType.LATE_PAYMENT,
        "Payment received after the request was closed; refund due",
        {
            "receipt_number": receipt,
            "amount": amount,
            "transaction_date": callback.transaction_date,
            "payer_phone": callback.phone_number,
            "escrow_status": escrow.status.value,
        },
    )
    await db.flush()

    logger.error(
        "Late payment %s of %d received for escrow %s in '%s' status; refund due",
        receipt,
        amount,
        escrow.id,
        escrow.status.value,
    )
    return escrow


def _awaits_receipt(escrow: EscrowPayment, callback: PaymentCallback) -> bool:
    """Paid by status query, so the callback carries the missing receipt."""
    return (
        callback.succeeded
        and bool(callback.receipt_number)
        and escrow.result_code == 0
        and escrow.mpesa_receipt_number is None
    )


async def _attach_receipt(
    db: AsyncSession,
    escrow: EscrowPayment,
    callback: PaymentCallback,
) -> EscrowPayment:
    owner_id = await _receipt_owner(db, callback.receipt_number, escrow.id)
    if owner_id is not None:
        raise _duplicate_receipt(db, escrow, callback, owner_id)

    escrow.mpesa_receipt_number = callback.receipt_number
    escrow.transaction_date = callback.transaction_date
    escrow.metadata_ = {
        **(escrow.metadata_ or {}),
        "payer_phone": callback.phone_number,
        "paid_amount": callback.amount,
    }
    booking = await db.get(Booking, escrow.booking_id) if escrow.booking_id else None
    if booking is not None:
        booking.payment_transaction_id = callback.receipt_number
    await db.flush()
    logger.info("Receipt %s attached to escrow %s", callback.receipt_number, escrow.id)
    return escrow


async def record_inbound(db: AsyncSession, callback: PaymentCallback) -> EscrowPayment:
    """Apply a payment callback to its escrow record.

    Idempotent on ``checkout_request_id`` and the receipt number: once the
    escrow has left ``pending`` a replayed callback is a no-op. The first
    callback for an escrow settled by status query supplies its receipt.
    Any other paid callback carrying a receipt the escrow has not seen is
    recorded as a late payment with a refund due.

    Raises:
        NotFoundError: No escrow exists for the checkout id.
        DuplicateReceiptError: The receipt belongs to another escrow.
    """
    escrow = await get_escrow_by_checkout(db, callback.checkout_request_id)
    if escrow is None:
        escrow = await _claim_unconfirmed(db, callback)
    if escrow is None:
        raise NotFoundError("EscrowPayment", callback.checkout_request_id)

    if escrow.status != EscrowStatus.PENDING:
        if _awaits_receipt(escrow, callback):
            return await _attach_receipt(db, escrow, callback)
        if _is_unrecorded_payment(escrow, callback):
            return await _record_late_payment(db, escrow, callback)
        logger.info(
            "Replayed payment callback for escrow %s ignored (status=%s)",
            escrow.id,
            escrow.status.value,
        )
        return escrow

    return await _apply_payment_result(db, escrow, callback)


async def _apply_payment_result(
    db: AsyncSession,
    escrow: EscrowPayment,
    callback: PaymentCallback,
) -> EscrowPayment:
    if not callback.succeeded:
        updated = await compare_and_set(
            db,
            escrow,
            EscrowStatus.PENDING,
            {
                "status": EscrowStatus.FAILED,
                "result_code": callback.result_code,
                "result_description": callback.result_description,
            },
        )
        if not updated:
            return escrow
        _record_event(
            db,
            escrow,
            EscrowEventType.FAILED,
            "Payment failed",
            {"result_code": callback.result_code, "reason": callback.result_description},
        )
        await _update_booking_payment(db, escrow, PaymentStatus.FAILED)
        await db.flush()
        logger.warning(
            "Payment failed for escrow %s: %s (code=%s)",
            escrow.id,
            callback.result_description,
            callback.result_code,
        )
        return escrow

    values: dict[str, Any] = {
        "status": EscrowStatus.COMPLETED,
        "mpesa_receipt_number": callback.receipt_number,
        "transaction_date": callback.transaction_date,
        "result_code": callback.result_code,
        "result_description": callback.result_description,
        "metadata_": {
            **(escrow.metadata_ or {}),
            "payer_phone": callback.phone_number,
            "paid_amount": callback.amount,
        },
    }
    previous_amount = escrow.amount
    amount_changed = callback.amount is not None and callback.amount != escrow.amount
    if amount_changed:
        values.update(_split_values(callback.amount, escrow.commission_rate))

    receipt = callback.receipt_number
    if receipt:
        owner_id = await _receipt_owner(db, receipt, escrow.id)
        if owner_id is not None:
            raise _duplicate_receipt(db, escrow, callback, owner_id)

    try:
        async with db.begin_nested():
            updated = await compare_and_set(db, escrow, EscrowStatus.PENDING, values)
    except IntegrityError as exc:
        await db.refresh(escrow)
        owner_id = await _receipt_owner(db, receipt, escrow.id) if receipt else None
        raise _duplicate_receipt(db, escrow, callback, owner_id) from exc
    if not updated:
        return escrow

    if amount_changed:
        _record_event(
            db,
            escrow,
            EscrowEventType.AMOUNT_ADJUSTED,
            "Amount reconciled with the gateway",
            {"previous_amount": previous_amount, "amount": escrow.amount},
        )
    _record_event(
        db,
        escrow,
        EscrowEventType.PAYMENT_RECEIVED,
        "Payment received from client",
        {
            "receipt_number": callback.receipt_number,
            "transaction_date": callback.transaction_date,
            "amount": escrow.amount,
        },
    )

    booking = await _update_booking_payment(
        db, escrow, PaymentStatus.COMPLETED, transaction_id=callback.receipt_number
    )
    if booking is not None:
        await activate_awaiting_payout(db, booking.id)
    await db.flush()

    logger.info(
        "Payment received for escrow %s: receipt=%s, amount=%d",
        escrow.id,
        callback.receipt_number,
        escrow.amount,
    )
    return escrow


async def _update_booking_payment(
    db: AsyncSession,
    escrow: EscrowPayment,
    status: PaymentStatus,
    *,
    transaction_id: str | None = None,
    refund_amount: int | None = None,
) -> Optional[Booking]:
    if escrow.booking_id is None:
        return None
    booking = await db.get(Booking, escrow.booking_id)
    if booking is None:
        return None

    now = utcnow()
    booking.payment_status = status
    if transaction_id:
        booking.payment_transaction_id = transaction_id
    if status == PaymentStatus.COMPLETED:
        booking.paid_at = now
    elif status == PaymentStatus.REFUNDED:
        booking.refunded_at = now
        booking.refund_amount = refund_amount
    return booking


async def reconcile_escrow(
    db: AsyncSession,
    gateway: PaymentGateway,
    escrow: EscrowPayment,
    *,
    now: datetime | None = None,
) -> EscrowPayment:
    """Settle a ``pending`` escrow whose payment callback has not arrived.

    A request with a known checkout id is resolved with an STK push query;
    a query that cannot answer yet leaves it pending. A request whose push
    response was lost cannot be queried, and is failed once it is older
    than ``settings.escrow_confirmation_timeout_seconds``.
    """
    if escrow.status != EscrowStatus.PENDING:
        return escrow

    moment = now or utcnow()
    if escrow.outcome_unknown:
        age = moment - escrow.created_at
        if age >= timedelta(seconds=settings.escrow_confirmation_timeout_seconds):
            await fail_escrow(db, escrow, "Payment request was never confirmed by the gateway")
        return escrow

    try:
        result = await asyncio.wait_for(
            gateway.query_charge(escrow.checkout_request_id),
            timeout=settings.gateway_timeout_seconds,
        )
    except (asyncio.TimeoutError, GatewayError) as exc:
        logger.warning("Reconciliation of escrow %s deferred: %s", escrow.id, exc)
        return escrow

    logger.info(
        "Escrow %s reconciled by status query: result=%d",
        escrow.id,
        result.result_code,
    )
    return await _apply_payment_result(db, escrow, result)


# ---------------------------------------------------------------------------
# Disputes
# ---------------------------------------------------------------------------

async def dispute_escrow(
    db: AsyncSession,
    escrow: EscrowPayment,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
) -> EscrowPayment:
    """``completed -> disputed``. Holds any payout for the booking."""
    now = utcnow()
    await _transition(
        db,
        escrow,
        EscrowStatus.COMPLETED,
        {"status": EscrowStatus.DISPUTED, "dispute_reason": reason, "disputed_at": now},
        "dispute",
    )
    _record_event(
        db,
        escrow,
        EscrowEventType.DISPUTED,
        "Payment disputed",
        {"reason": reason, "actor_id": str(actor_id) if actor_id else None},
    )
    await db.flush()

    logger.info("Escrow %s disputed by %s: %s", escrow.id, actor_id, reason)
    emit_dispute_opened(escrow.id, escrow.booking_id, reason, actor_id)
    return escrow


async def resolve_escrow_dispute(
    db: AsyncSession,
    escrow: EscrowPayment,
    resolution: str,
    *,
    actor_id: uuid.UUID | None = None,
    refund_client: bool = False,
) -> EscrowPayment:
    """``disputed -> completed``, or ``disputed -> failed`` when the client
    is refunded, which also cancels the booking's payout."""
    now = utcnow()
    target = EscrowStatus.FAILED if refund_client else EscrowStatus.COMPLETED
    await _transition(
        db,
        escrow,
        EscrowStatus.DISPUTED,
        {"status": target, "dispute_resolution": resolution, "dispute_resolved_at": now},
        "resolve a dispute on",
    )
    _record_event(
        db,
        escrow,
        EscrowEventType.RESOLVED,
        "Dispute resolved",
        {
            "resolution": resolution,
            "resolved_by": str(actor_id) if actor_id else None,
            "refund_client": refund_client,
        },
    )

    if refund_client:
        await _update_booking_payment(db, escrow, PaymentStatus.REFUNDED, refund_amount=escrow.amount)
        if escrow.booking_id is not None:
            payout = await get_payout_for_booking(db, escrow.booking_id)
            if payout is not None and payout.status in PAYOUT_CANCELLABLE_STATUSES:
                await cancel_payout(
                    db, payout, f"Dispute resolved in client's favour: {resolution}", actor_id=actor_id
                )
    await db.flush()

    logger.info(
        "Escrow %s dispute resolved -> %s by %s",
        escrow.id,
        target.value,
        actor_id,
    )
    return escrow


# ---------------------------------------------------------------------------
# Release / failure / cancellation
# ---------------------------------------------------------------------------

async def release_escrow(
    db: AsyncSession,
    escrow: EscrowPayment,
    *,
    released_by: uuid.UUID | None = None,
    method: ReleaseMethod = ReleaseMethod.MPESA,
    payout_reference: str | None = None,
    rating: int | None = None,
    review: str | None = None,
) -> EscrowPayment:
    """``completed -> released``."""
    if rating is not None and not 1 <= rating <= 5:
        raise ValueError(f"Rating must be between 1 and 5, got {rating}")

    now = utcnow()
    values: dict[str, Any] = {
        "status": EscrowStatus.RELEASED,
        "released_at": now,
        "released_by": released_by,
        "release_method": method,
        "provider_payout_reference": payout_reference,
    }
    if rating is not None:
        values["rating"] = rating
    if review is not None:
        values["review"] = review
    if escrow.provider_id is None and escrow.booking_id is not None:
        values["provider_id"] = await get_lead_provider_id(db, escrow.booking_id)

    await _transition(db, escrow, EscrowStatus.COMPLETED, values, "release")
    _record_event(
        db,
        escrow,
        EscrowEventType.RELEASED,
        "Payment released to provider",
        {
            "released_by": str(released_by) if released_by else None,
            "method": method.value,
            "payout_reference": payout_reference,
            "rating": rating,
            "provider_amount": escrow.provider_amount,
        },
    )
    await db.flush()

    logger.info(
        "Escrow %s released: provider_amount=%d, commission=%d, reference=%s",
        escrow.id,
        escrow.provider_amount,
        escrow.commission_amount,
        payout_reference,
    )
    emit_payment_released(escrow.id, escrow.booking_id, escrow.provider_amount, released_by)
    return escrow


async def fail_escrow(db: AsyncSession, escrow: EscrowPayment, reason: str) -> EscrowPayment:
    """``pending -> failed`` without a gateway callback (e.g. charge expired)."""
    await _transition(
        db,
        escrow,
        EscrowStatus.PENDING,
        {"status": EscrowStatus.FAILED, "result_description": reason},
        "fail",
    )
    _record_event(db, escrow, EscrowEventType.FAILED, "Payment failed", {"reason": reason})
    await _update_booking_payment(db, escrow, PaymentStatus.FAILED)
    await db.flush()
    logger.warning("Escrow %s failed: %s", escrow.id, reason)
    return escrow


async def cancel_escrow(
    db: AsyncSession,
    escrow: EscrowPayment,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
) -> EscrowPayment:
    """``pending -> cancelled``: the payment request is withdrawn."""
    await _transition(
        db,
        escrow,
        EscrowStatus.PENDING,
        {"status": EscrowStatus.CANCELLED, "result_description": reason},
        "cancel",
    )
    _record_event(
        db,
        escrow,
        EscrowEventType.CANCELLED,
        "Payment request cancelled",
        {"reason": reason, "actor_id": str(actor_id) if actor_id else None},
    )
    await db.flush()
    logger.info("Escrow %s cancelled: %s", escrow.id, reason)
    return escrow


async def refund_escrow(
    db: AsyncSession,
    escrow: EscrowPayment,
    refund_amount: int,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
) -> EscrowPayment:
    """``completed -> cancelled``: held funds are returned to the client.

    ``refund_amount`` may be less than the escrowed amount; the remainder is
    retained as a cancellation fee.
    """
    if not 0 <= refund_amount <= escrow.amount:
        raise ValueError(f"Refund amount must be between 0 and {escrow.amount}, got {refund_amount}")

    await _transition(
        db,
        escrow,
        EscrowStatus.COMPLETED,
        {"status": EscrowStatus.CANCELLED},
        "refund",
    )
    _record_event(
        db,
        escrow,
        EscrowEventType.REFUNDED,
        "Held payment refunded to client",
        {
            "reason": reason,
            "refund_amount": refund_amount,
            "retained_amount": escrow.amount - refund_amount,
            "actor_id": str(actor_id) if actor_id else None,
        },
    )
    if refund_amount > 0:
        await _update_booking_payment(db, escrow, PaymentStatus.REFUNDED, refund_amount=refund_amount)
    await db.flush()
    logger.info("Escrow %s refunded %d of %d: %s", escrow.id, refund_amount, escrow.amount, reason)
    return escrow


# ---------------------------------------------------------------------------
# Amount and rate adjustments
# ---------------------------------------------------------------------------

async def _adjust(
    db: AsyncSession,
    escrow: EscrowPayment,
    amount: int,
    rate: Decimal | float,
    actor_id: uuid.UUID | None,
) -> EscrowPayment:
    if amount < 1:
        raise ValueError(f"Escrow amount must be at least 1, got {amount}")

    before = {
        "amount": escrow.amount,
        "commission_rate": str(escrow.commission_rate),
        "commission_amount": escrow.commission_amount,
        "provider_amount": escrow.provider_amount,
    }
    values = _split_values(amount, rate)
    if escrow.status not in _ADJUSTABLE_STATUSES or not await compare_and_set(
        db, escrow, _ADJUSTABLE_STATUSES, values
    ):
        raise InvalidStateError(
            f"Cannot adjust an escrow payment in '{escrow.status.value}' status.",
            escrow_id=str(escrow.id),
        )

    _record_event(
        db,
        escrow,
        EscrowEventType.AMOUNT_ADJUSTED,
        "Amount or commission rate changed",
        {
            "before": before,
            "after": {
                "amount": escrow.amount,
                "commission_rate": str(escrow.commission_rate),
                "commission_amount": escrow.commission_amount,
                "provider_amount": escrow.provider_amount,
            },
            "actor_id": str(actor_id) if actor_id else None,
        },
    )
    await db.flush()
    logger.info(
        "Escrow %s adjusted: amount=%d, rate=%s, commission=%d, provider=%d",
        escrow.id,
        escrow.amount,
        escrow.commission_rate,
        escrow.commission_amount,
        escrow.provider_amount,
    )
    return escrow


async def update_escrow_amount(
    db: AsyncSession,
    escrow: EscrowPayment,
    amount: int,
    *,
    actor_id: uuid.UUID | None = None,
) -> EscrowPayment:
    return await _adjust(db, escrow, amount, escrow.commission_rate, actor_id)


async def update_escrow_commission_rate(
    db: AsyncSession,
    escrow: EscrowPayment,
    rate: Decimal | float,
    *,
    actor_id: uuid.UUID | None = None,
) -> EscrowPayment:
    return await _adjust(db, escrow, escrow.amount, rate, actor_id)


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------

async def get_provider_earnings(
    db: AsyncSession,
    provider_id: uuid.UUID,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, Any]:
    """Released escrow totals for one provider, optionally within a window."""
    stmt = select(
        func.coalesce(func.sum(EscrowPayment.provider_amount), 0),
        func.count(EscrowPayment.id),
        func.avg(EscrowPayment.rating),
    ).where(
        EscrowPayment.provider_id == provider_id,
        EscrowPayment.status == EscrowStatus.RELEASED,
    )
    if start is not None:
        stmt = stmt.where(EscrowPayment.released_at >= start)
    if end is not None:
        stmt = stmt.where(EscrowPayment.released_at <= end)

    total, count, avg_rating = (await db.execute(stmt)).one()
    return {
        "total_earnings": int(total),
        "total_transactions": int(count),
        "average_rating": round(float(avg_rating), 2) if avg_rating is not None else None,
    }


async def get_company_revenue(
    db: AsyncSession,
    start: datetime | None = None,
    end: datetime | None = None,
) -> dict[str, int]:
    """Totals over escrow payments that were received (completed or released)."""
    stmt = select(
        func.coalesce(func.sum(EscrowPayment.amount), 0),
        func.coalesce(func.sum(EscrowPayment.commission_amount), 0),
        func.coalesce(func.sum(EscrowPayment.provider_amount), 0),
        func.count(EscrowPayment.id),
    ).where(EscrowPayment.status.in_((EscrowStatus.COMPLETED, EscrowStatus.RELEASED)))
    if start is not None:
        stmt = stmt.where(EscrowPayment.created_at >= start)
    if end is not None:
        stmt = stmt.where(EscrowPayment.created_at <= end)

    revenue, commission, paid, count = (await db.execute(stmt)).one()
    return {
        "total_revenue": int(revenue),
        "total_commission": int(commission),
        "total_paid_to_providers": int(paid),
        "total_transactions": int(count),
    }
