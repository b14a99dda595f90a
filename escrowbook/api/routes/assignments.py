"""
Provider Assignment API Routes
==============================

Routes:
  GET    /api/v1/bookings/{booking_id}/candidates              -- Ranked candidates
  POST   /api/v1/bookings/{booking_id}/providers               -- Assign a provider
  DELETE /api/v1/bookings/{booking_id}/providers               -- Unassign every provider
  DELETE /api/v1/bookings/{booking_id}/providers/{provider_id} -- Unassign one provider
"""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, status

from escrowbook.api.deps import DBSession, http_error
from escrowbook.api.schemas.booking import (
    AssignProviderRequest,
    BookingOut,
    BookingProviderOut,
    CandidateListOut,
    UnassignOut,
)
from escrowbook.core.errors import DomainError
from escrowbook.services import assignmentEngine, bookingService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/bookings", tags=["Assignment"])


@router.get(
    "/{booking_id}/candidates",
    response_model=CandidateListOut,
    summary="List assignment candidates",
    description=(
        "Active, approved providers not yet on the booking, partitioned into "
        "those serving the booking's category and the rest. Each candidate "
        "carries a ranking score and, if busy, a conflict reason."
    ),
)
async def list_candidates(db: DBSession, booking_id: uuid.UUID) -> CandidateListOut:
    try:
        booking = await bookingService.get_booking(db, booking_id)
    except DomainError as exc:
        raise http_error(exc) from exc
    candidates = await assignmentEngine.list_candidates(db, booking)
    return CandidateListOut.model_validate(candidates)


@router.post(
    "/{booking_id}/providers",
    response_model=BookingProviderOut,
    status_code=status.HTTP_201_CREATED,
    summary="Assign a provider",
    description=(
        "Claims one open slot. Returns 409 with error 'slots_full', "
        "'already_assigned' or 'schedule_conflict' when the provider cannot "
        "take the booking."
    ),
)
async def assign_provider(
    db: DBSession,
    booking_id: uuid.UUID,
    body: AssignProviderRequest,
) -> BookingProviderOut:
    try:
        booking = await bookingService.get_booking(db, booking_id)
        assignment = await assignmentEngine.assign_provider(
            db, booking, body.provider_id, service_id=body.service_id, notes=body.notes
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return BookingProviderOut.model_validate(assignment)


async def _unassign(db: DBSession, booking_id: uuid.UUID, provider_id: Optional[uuid.UUID]) -> UnassignOut:
    try:
        booking = await bookingService.get_booking(db, booking_id)
        removed = await assignmentEngine.unassign_provider(db, booking, provider_id)
    except DomainError as exc:
        raise http_error(exc) from exc
    return UnassignOut(booking=BookingOut.model_validate(booking), removed_provider_ids=removed)


@router.delete(
    "/{booking_id}/providers",
    response_model=UnassignOut,
    summary="Unassign every provider",
)
async def unassign_all(db: DBSession, booking_id: uuid.UUID) -> UnassignOut:
    return await _unassign(db, booking_id, None)


@router.delete(
    "/{booking_id}/providers/{provider_id}",
    response_model=UnassignOut,
    summary="Unassign one provider",
)
async def unassign_one(db: DBSession, booking_id: uuid.UUID, provider_id: uuid.UUID) -> UnassignOut:
    return await _unassign(db, booking_id, provider_id)
