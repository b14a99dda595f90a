"""
Booking API Routes
==================

REST endpoints for the booking lifecycle.

Routes:
  POST   /api/v1/bookings                              -- Create a booking
  GET    /api/v1/bookings/{booking_id}                 -- Booking with timeline and providers
  POST   /api/v1/bookings/{booking_id}/transition      -- Status transition
  POST   /api/v1/bookings/{booking_id}/cancel          -- Cancel with refund policy
  POST   /api/v1/bookings/{booking_id}/complete        -- Record completion
  POST   /api/v1/bookings/{booking_id}/resolve-dispute -- Resolve a disputed booking
  GET    /api/v1/bookings/{booking_id}/messages        -- Communication log
  POST   /api/v1/bookings/{booking_id}/messages        -- Append a message
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.api.deps import DBSession, http_error
from escrowbook.api.schemas.booking import (
    BookingCancelRequest,
    BookingCompleteRequest,
    BookingCreateRequest,
    BookingDetailOut,
    BookingMessageOut,
    BookingMessageRequest,
    BookingOut,
    BookingProviderOut,
    BookingTransitionRequest,
    CancellationOut,
    DisputeResolutionRequest,
    TimelineEntryOut,
)
from escrowbook.core.errors import DomainError
from escrowbook.models import Booking
from escrowbook.services import bookingService
from escrowbook.services.serviceCatalog import make_service_ref

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


async def _detail(db: AsyncSession, booking: Booking) -> BookingDetailOut:
    timeline = await bookingService.get_booking_timeline(db, booking.id)
    providers = await bookingService.get_booking_providers(db, booking.id)
    out = BookingDetailOut.model_validate(booking)
    out.timeline = [TimelineEntryOut.model_validate(t) for t in timeline]
    out.providers = [BookingProviderOut.model_validate(p) for p in providers]
    return out


async def _load(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    try:
        return await bookingService.get_booking(db, booking_id)
    except DomainError as exc:
        raise http_error(exc) from exc


# ---------------------------------------------------------------------------
# POST /api/v1/bookings -- Create a booking
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=BookingDetailOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a booking",
    description=(
        "Creates a pending booking priced from the referenced catalog or "
        "provider service. An optional discount code is validated and "
        "redeemed in the same transaction."
    ),
)
async def create_booking(db: DBSession, body: BookingCreateRequest) -> BookingDetailOut:
    try:
        booking = await bookingService.create_booking(
            db,
            client_id=body.client_id,
            service=make_service_ref(body.service_type, body.service_id),
            scheduled_start=body.scheduled_start,
            scheduled_end=body.scheduled_end,
            address=body.address,
            latitude=body.latitude,
            longitude=body.longitude,
            providers_needed=body.providers_needed,
            city=body.city,
            state=body.state,
            zip_code=body.zip_code,
            location_instructions=body.location_instructions,
            additional_charges=[c.model_dump() for c in body.additional_charges],
            discount_code=body.discount_code,
            payment_method=body.payment_method,
            client_notes=body.client_notes,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    return await _detail(db, booking)


@router.get(
    "/{booking_id}",
    response_model=BookingDetailOut,
    summary="Get a booking",
)
async def get_booking(db: DBSession, booking_id: uuid.UUID) -> BookingDetailOut:
    booking = await _load(db, booking_id)
    return await _detail(db, booking)


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

@router.post(
    "/{booking_id}/transition",
    response_model=BookingDetailOut,
    summary="Transition a booking's status",
    description=(
        "Validated against the booking state machine and applied only if the "
        "booking is still in the status it was read in. Returns 409 on an "
        "invalid or stale transition."
    ),
)
async def transition_booking(
    db: DBSession,
    booking_id: uuid.UUID,
    body: BookingTransitionRequest,
) -> BookingDetailOut:
    booking = await _load(db, booking_id)
    try:
        await bookingService.transition_booking(
            db,
            booking,
            body.status,
            actor_id=body.actor_id,
            actor_type=body.actor_type,
            note=body.note,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, booking)


@router.post(
    "/{booking_id}/cancel",
    response_model=CancellationOut,
    summary="Cancel a booking",
)
async def cancel_booking(
    db: DBSession,
    booking_id: uuid.UUID,
    body: BookingCancelRequest,
) -> CancellationOut:
    booking = await _load(db, booking_id)
    try:
        booking, decision = await bookingService.cancel_booking(
            db,
            booking,
            body.reason,
            actor_id=body.actor_id,
            actor_type=body.actor_type,
        )
    except DomainError as exc:
        raise http_error(exc) from exc

    return CancellationOut(
        booking=BookingOut.model_validate(booking),
        refund_eligible=decision.eligible,
        refund_percentage=decision.percentage,
        refund_amount=decision.amount,
        hours_before_start=decision.hours_before_start,
    )


@router.post(
    "/{booking_id}/complete",
    response_model=BookingDetailOut,
    summary="Mark a booking as completed",
)
async def complete_booking(
    db: DBSession,
    booking_id: uuid.UUID,
    body: BookingCompleteRequest,
) -> BookingDetailOut:
    booking = await _load(db, booking_id)
    try:
        await bookingService.complete_booking(
            db,
            booking,
            actor_id=body.actor_id,
            actor_type=body.actor_type,
            work_description=body.work_description,
            completion_media=body.completion_media,
            materials_used=body.materials_used,
            ended_at=body.ended_at,
            provider_notes=body.provider_notes,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, booking)


@router.post(
    "/{booking_id}/resolve-dispute",
    response_model=BookingDetailOut,
    summary="Resolve a disputed booking",
)
async def resolve_dispute(
    db: DBSession,
    booking_id: uuid.UUID,
    body: DisputeResolutionRequest,
) -> BookingDetailOut:
    booking = await _load(db, booking_id)
    try:
        await bookingService.resolve_booking_dispute(
            db,
            booking,
            refund_client=body.refund_client,
            resolution=body.resolution,
            actor_id=body.actor_id,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, booking)


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------

@router.get(
    "/{booking_id}/messages",
    response_model=list[BookingMessageOut],
    summary="Booking communication log",
)
async def list_messages(db: DBSession, booking_id: uuid.UUID) -> list[BookingMessageOut]:
    booking = await _load(db, booking_id)
    messages = await bookingService.get_booking_messages(db, booking.id)
    return [BookingMessageOut.model_validate(m) for m in messages]


@router.post(
    "/{booking_id}/messages",
    response_model=BookingMessageOut,
    status_code=status.HTTP_201_CREATED,
    summary="Append a message to a booking",
)
async def add_message(
    db: DBSession,
    booking_id: uuid.UUID,
    body: BookingMessageRequest,
) -> BookingMessageOut:
    booking = await _load(db, booking_id)
    try:
        entry = await bookingService.add_booking_message(
            db,
            booking,
            body.message,
            sender_id=body.sender_id,
            message_type=body.message_type,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return BookingMessageOut.model_validate(entry)
