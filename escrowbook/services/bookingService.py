"""
Booking Service
===============

Business logic for the booking lifecycle. Every status change goes through
``bookingStateManager.validate_transition`` and is then written as a
compare-and-swap on the current status together with a timeline entry, in
the caller's transaction.

Key functions:
  - create_booking           -- pricing, discount redemption, SOL-XXXXXX number
  - transition_booking       -- state machine transition with side effects
  - cancel_booking           -- refund policy, escrow refund/cancel, payout cancel
  - complete_booking         -- completion details then ``completed``
  - resolve_booking_dispute  -- admin resolution of a disputed booking
  - add_booking_message      -- append to the communication log
"""

from __future__ import annotations

import logging
import random
import string
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    DiscountCodeError,
    DuplicatePayoutError,
    InvalidStateError,
    InvalidTransitionError,
    NotFoundError,
    StaleStateError,
)
from escrowbook.events.bookingEvents import emit_booking_confirmed, emit_booking_status_changed
from escrowbook.models import (
    Booking,
    BookingMessage,
    BookingProvider,
    BookingStatus,
    BookingTimelineEntry,
    EscrowStatus,
    MessageType,
    PaymentMethod,
    PaymentStatus,
)
from escrowbook.models.base import utcnow
from escrowbook.services import discountService, escrowService, payoutScheduler
from escrowbook.services.bookingStateManager import ActorType, validate_transition
from escrowbook.services.compareAndSet import compare_and_set
from escrowbook.services.refundPolicy import RefundDecision, RefundPolicy
from escrowbook.services.serviceCatalog import ServiceRef, resolve_service_ref

logger = logging.getLogger(__name__)

_BOOKING_NUMBER_ATTEMPTS = 5


# ---------------------------------------------------------------------------
# Booking number generation
# ---------------------------------------------------------------------------

def generate_booking_number() -> str:
    """Human-readable booking number in SOL-XXXXXX format.

    Collisions are caught by the unique constraint; ``create_booking``
    retries with a fresh number.
    """
    chars = string.ascii_uppercase + string.digits
    return "SOL-" + "".join(random.choices(chars, k=6))


def _charges_total(additional_charges: list[dict[str, Any]]) -> int:
    total = 0
    for charge in additional_charges:
        amount = int(charge.get("amount", 0))
        if amount < 0:
            raise ValueError(f"Additional charge amounts must be non-negative, got {amount}")
        total += amount
    return total


def _add_timeline(
    db: AsyncSession,
    booking: Booking,
    status: BookingStatus,
    actor_id: uuid.UUID | None,
    note: str | None,
) -> None:
    db.add(BookingTimelineEntry(booking_id=booking.id, status=status, actor_id=actor_id, note=note))


# ---------------------------------------------------------------------------
# Creation and lookups
# ---------------------------------------------------------------------------

async def create_booking(
    db: AsyncSession,
    *,
    client_id: uuid.UUID,
    service: ServiceRef,
    scheduled_start: datetime,
    scheduled_end: datetime,
    address: str,
    latitude: Decimal | float,
    longitude: Decimal | float,
    providers_needed: int = 1,
    city: str | None = None,
    state: str | None = None,
    zip_code: str | None = None,
    location_instructions: str | None = None,
    additional_charges: list[dict[str, Any]] | None = None,
    discount_code: str | None = None,
    payment_method: PaymentMethod = PaymentMethod.MPESA,
    client_notes: str | None = None,
) -> Booking:
    """Create a ``pending`` booking priced from the referenced service.

    ``total_amount = base_price + additional charges - discount``. A discount
    code is validated and redeemed in the same transaction as the insert.

    Raises:
        NotFoundError / InvalidStateError: Unknown or inactive service.
        DiscountCodeError: The discount code cannot be applied.
        ValueError: Invalid schedule or slot count.
    """
    if scheduled_end <= scheduled_start:
        raise ValueError("scheduled_end must be after scheduled_start")
    if providers_needed < 1:
        raise ValueError("providers_needed must be at least 1")

    resolved = await resolve_service_ref(db, service)
    charges = list(additional_charges or [])
    subtotal = resolved.price + _charges_total(charges)

    code = None
    discount_amount = 0
    if discount_code:
        code, validation = await discountService.validate_discount_code(
            db, discount_code, client_id, subtotal, resolved.category_id
        )
        if not validation.valid:
            raise DiscountCodeError(validation.reason or "Invalid discount code", code=discount_code)
        discount_amount = discountService.calculate_discount(code, subtotal)

    booking: Booking | None = None
    for attempt in range(_BOOKING_NUMBER_ATTEMPTS):
        candidate = Booking(
            booking_number=generate_booking_number(),
            client_id=client_id,
            service_type=service.service_type,
            service_id=service.id,
            category_id=resolved.category_id,
            status=BookingStatus.PENDING,
            providers_needed=providers_needed,
            providers_assigned=0,
            scheduled_start=scheduled_start,
            scheduled_end=scheduled_end,
            address=address,
            city=city,
            state=state,
            zip_code=zip_code,
            latitude=Decimal(str(latitude)),
            longitude=Decimal(str(longitude)),
            location_instructions=location_instructions,
            base_price=resolved.price,
            additional_charges=charges,
            discount_amount=discount_amount,
            discount_reason=code.description if code else None,
            discount_code_id=code.id if code else None,
            total_amount=subtotal - discount_amount,
            currency=settings.default_currency,
            payment_method=payment_method,
            payment_status=PaymentStatus.PENDING,
            client_notes=client_notes,
        )
        try:
            async with db.begin_nested():
                db.add(candidate)
                await db.flush()
        except IntegrityError:
            logger.warning("Booking number collision on attempt %d, retrying", attempt + 1)
            continue
        booking = candidate
        break

    if booking is None:
        raise RuntimeError("Could not allocate a unique booking number")

    if code is not None:
        await discountService.redeem_discount_code(db, code, client_id, booking.id)

    _add_timeline(db, booking, BookingStatus.PENDING, client_id, "Booking created")
    await db.flush()

    logger.info(
        "Created booking %s (%s): client=%s, total=%d %s, providers_needed=%d",
        booking.id,
        booking.booking_number,
        client_id,
        booking.total_amount,
        booking.currency,
        providers_needed,
    )
    return booking


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = await db.scalar(select(Booking).where(Booking.id == booking_id))
    if booking is None:
        raise NotFoundError("Booking", booking_id)
    return booking


async def get_booking_timeline(db: AsyncSession, booking_id: uuid.UUID) -> list[BookingTimelineEntry]:
    result = await db.execute(
        select(BookingTimelineEntry)
        .where(BookingTimelineEntry.booking_id == booking_id)
        .order_by(BookingTimelineEntry.created_at, BookingTimelineEntry.id)
    )
    return list(result.scalars().all())


async def get_booking_providers(db: AsyncSession, booking_id: uuid.UUID) -> list[BookingProvider]:
    result = await db.execute(
        select(BookingProvider)
        .where(BookingProvider.booking_id == booking_id)
        .order_by(BookingProvider.assigned_at, BookingProvider.provider_id)
    )
    return list(result.scalars().all())


async def get_booking_messages(db: AsyncSession, booking_id: uuid.UUID) -> list[BookingMessage]:
    result = await db.execute(
        select(BookingMessage)
        .where(BookingMessage.booking_id == booking_id)
        .order_by(BookingMessage.created_at, BookingMessage.id)
    )
    return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

async def transition_booking(
    db: AsyncSession,
    booking: Booking,
    new_status: BookingStatus,
    *,
    actor_id: uuid.UUID | None = None,
    actor_type: ActorType = ActorType.SYSTEM,
    note: str | None = None,
    extra_values: dict[str, Any] | None = None,
) -> Booking:
    """Move ``booking`` to ``new_status``.

    The status write and its timeline entry land in the same transaction.
    Entering ``in-progress`` stamps ``started_at`` if absent; entering
    ``completed`` stamps ``ended_at`` and creates the booking's payout.

    Raises:
        InvalidTransitionError: The transition is not allowed for this actor,
            or a booking cannot be confirmed with open slots.
        StaleStateError: The booking changed status concurrently.
    """
    old_status = booking.status
    target = BookingStatus(new_status)

    result = validate_transition(old_status, target, actor_type)
    if not result.allowed:
        raise InvalidTransitionError(
            result.reason or "Transition not allowed.",
            booking_id=str(booking.id),
            from_status=old_status.value,
            to_status=target.value,
        )

    if target == BookingStatus.CONFIRMED and booking.providers_assigned < booking.providers_needed:
        raise InvalidTransitionError(
            f"Booking {booking.booking_number} has {booking.providers_assigned} of "
            f"{booking.providers_needed} providers assigned and cannot be confirmed.",
            booking_id=str(booking.id),
        )

    now = utcnow()
    values: dict[str, Any] = {"status": target}
    if target == BookingStatus.IN_PROGRESS and booking.started_at is None:
        values["started_at"] = now
    elif target == BookingStatus.COMPLETED:
        values["ended_at"] = (extra_values or {}).get("ended_at") or booking.ended_at or now
    if extra_values:
        values.update({k: v for k, v in extra_values.items() if k != "ended_at"})

    extra_criteria = ()
    if target == BookingStatus.CONFIRMED:
        extra_criteria = (Booking.providers_assigned >= Booking.providers_needed,)

    if not await compare_and_set(db, booking, old_status, values, extra_criteria=extra_criteria):
        raise StaleStateError(
            f"Booking {booking.booking_number} changed from '{old_status.value}' to "
            f"'{booking.status.value}' before the transition could be applied.",
            booking_id=str(booking.id),
        )

    _add_timeline(db, booking, target, actor_id, note)
    await db.flush()

    logger.info(
        "Booking %s transitioned: %s -> %s (actor=%s, type=%s)",
        booking.id,
        old_status.value,
        target.value,
        actor_id,
        actor_type.value,
    )

    if target == BookingStatus.COMPLETED:
        try:
            await payoutScheduler.create_payout_from_completed_booking(db, booking, now=now)
        except DuplicatePayoutError:
            logger.warning("Payout already exists for booking %s; not creating another", booking.id)
        except InvalidStateError as exc:
            logger.warning("No payout created for booking %s: %s", booking.id, exc.message)

    emit_booking_status_changed(booking.id, old_status.value, target.value, actor_id)
    if target == BookingStatus.CONFIRMED:
        providers = await get_booking_providers(db, booking.id)
        emit_booking_confirmed(
            booking.id, booking.booking_number, [p.provider_id for p in providers], actor_id
        )

    return booking


async def complete_booking(
    db: AsyncSession,
    booking: Booking,
    *,
    actor_id: uuid.UUID | None = None,
    actor_type: ActorType = ActorType.PROVIDER,
    work_description: str | None = None,
    completion_media: list[dict[str, Any]] | None = None,
    materials_used: list[str] | None = None,
    ended_at: datetime | None = None,
    provider_notes: str | None = None,
) -> Booking:
    """Record completion details and move the booking to ``completed``."""
    extra: dict[str, Any] = {}
    if work_description is not None:
        extra["work_description"] = work_description
    if completion_media is not None:
        extra["completion_media"] = completion_media
    if materials_used is not None:
        extra["materials_used"] = materials_used
    if provider_notes is not None:
        extra["provider_notes"] = provider_notes
    if ended_at is not None:
        extra["ended_at"] = ended_at

    return await transition_booking(
        db,
        booking,
        BookingStatus.COMPLETED,
        actor_id=actor_id,
        actor_type=actor_type,
        note="Service completed",
        extra_values=extra,
    )


async def resolve_booking_dispute(
    db: AsyncSession,
    booking: Booking,
    *,
    refund_client: bool,
    resolution: str,
    actor_id: uuid.UUID | None = None,
    actor_type: ActorType = ActorType.ADMIN,
) -> Booking:
    """Close a disputed booking.

    In the provider's favour the booking completes (creating its payout) and
    a disputed escrow returns to ``completed``. In the client's favour the
    booking is cancelled and a disputed escrow fails, which refunds the
    client and cancels any open payout.
    """
    if booking.status != BookingStatus.DISPUTED:
        raise InvalidStateError(
            f"Booking {booking.booking_number} is not disputed.",
            booking_id=str(booking.id),
            status=booking.status.value,
        )
    target = BookingStatus.CANCELLED if refund_client else BookingStatus.COMPLETED
    check = validate_transition(booking.status, target, actor_type)
    if not check.allowed:
        raise InvalidTransitionError(
            check.reason or "Transition not allowed.",
            booking_id=str(booking.id),
            from_status=booking.status.value,
            to_status=target.value,
        )

    escrow = await escrowService.get_escrow_for_booking(db, booking.id)
    if escrow is not None and escrow.status == EscrowStatus.DISPUTED:
        await escrowService.resolve_escrow_dispute(
            db, escrow, resolution, actor_id=actor_id, refund_client=refund_client
        )

    if refund_client:
        return await transition_booking(
            db,
            booking,
            BookingStatus.CANCELLED,
            actor_id=actor_id,
            actor_type=actor_type,
            note=f"Dispute resolved for client: {resolution}",
            extra_values={
                "cancellation_reason": resolution,
                "cancelled_by": actor_id,
                "cancelled_at": utcnow(),
                "refund_eligible": True,
                "refund_percentage": 100,
                "cancellation_refund_amount": booking.total_amount,
            },
        )
    return await transition_booking(
        db,
        booking,
        BookingStatus.COMPLETED,
        actor_id=actor_id,
        actor_type=actor_type,
        note=f"Dispute resolved for provider: {resolution}",
    )


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

async def cancel_booking(
    db: AsyncSession,
    booking: Booking,
    reason: str,
    *,
    actor_id: uuid.UUID | None = None,
    actor_type: ActorType = ActorType.CLIENT,
    now: datetime | None = None,
    policy: RefundPolicy | None = None,
) -> tuple[Booking, RefundDecision]:
    """Cancel a booking and settle its money.

    The refund is decided by the refund policy from the time left before
    the scheduled start. A held (``completed``) escrow is refunded, a
    ``pending`` one is withdrawn, and a ``disputed`` one is left for the
    dispute resolution. Any open payout is cancelled.

    Raises:
        InvalidTransitionError: The booking is already terminal.
        StaleStateError: The booking changed status concurrently.
        AlreadyProcessingError: The booking's payout is mid-transfer.
    """
    now = now or utcnow()
    policy = policy or RefundPolicy.from_settings()
    decision = policy.evaluate(booking.scheduled_start, now, booking.total_amount)

    await transition_booking(
        db,
        booking,
        BookingStatus.CANCELLED,
        actor_id=actor_id,
        actor_type=actor_type,
        note=reason,
        extra_values={
            "cancellation_reason": reason,
            "cancelled_by": actor_id,
            "cancelled_at": now,
            "refund_eligible": decision.eligible,
            "refund_percentage": decision.percentage,
            "cancellation_refund_amount": decision.amount,
        },
    )

    escrow = await escrowService.get_escrow_for_booking(db, booking.id)
    if escrow is not None:
        if escrow.status == EscrowStatus.PENDING:
            await escrowService.cancel_escrow(db, escrow, f"Booking cancelled: {reason}", actor_id=actor_id)
        elif escrow.status == EscrowStatus.COMPLETED:
            refund = min(decision.amount, escrow.amount)
            await escrowService.refund_escrow(db, escrow, refund, reason, actor_id=actor_id)
        elif escrow.status == EscrowStatus.DISPUTED:
            logger.info("Escrow %s is disputed; refund left to dispute resolution", escrow.id)
    elif decision.amount > 0 and booking.payment_status == PaymentStatus.COMPLETED:
        booking.payment_status = PaymentStatus.REFUNDED
        booking.refunded_at = now
        booking.refund_amount = decision.amount

    payout = await payoutScheduler.get_payout_for_booking(db, booking.id)
    if payout is not None and payout.status not in payoutScheduler.TERMINAL_STATUSES:
        await payoutScheduler.cancel_payout(db, payout, f"Booking cancelled: {reason}", actor_id=actor_id)

    await db.flush()
    logger.info(
        "Booking %s cancelled by %s (%s): refund %d%% = %d",
        booking.id,
        actor_id,
        actor_type.value,
        decision.percentage,
        decision.amount,
    )
    return booking, decision


# ---------------------------------------------------------------------------
# Communication log
# ---------------------------------------------------------------------------

async def add_booking_message(
    db: AsyncSession,
    booking: Booking,
    message: str,
    *,
    sender_id: uuid.UUID | None = None,
    message_type: MessageType = MessageType.MESSAGE,
) -> BookingMessage:
    if not message.strip():
        raise ValueError("Message must not be empty")
    entry = BookingMessage(
        booking_id=booking.id,
        sender_id=sender_id,
        message=message.strip(),
        message_type=message_type,
    )
    db.add(entry)
    await db.flush()
    return entry

