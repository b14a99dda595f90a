"""
Escrow Payment API Routes
=========================

Routes:
  POST   /api/v1/escrow                        -- Request the client's payment (STK push)
  GET    /api/v1/escrow/{escrow_id}            -- Escrow record with audit events
  POST   /api/v1/escrow/{escrow_id}/dispute    -- Open a dispute
  POST   /api/v1/escrow/{escrow_id}/resolve    -- Resolve a dispute
  POST   /api/v1/escrow/{escrow_id}/release    -- Release held funds
  POST   /api/v1/escrow/{escrow_id}/reconcile  -- Query the gateway for a missing callback
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.api.deps import DBSession, PaymentGatewayDep, http_error
from escrowbook.api.schemas.escrow import (
    EscrowDetailOut,
    EscrowDisputeRequest,
    EscrowEventOut,
    EscrowInitiateRequest,
    EscrowOut,
    EscrowReleaseRequest,
    EscrowResolveRequest,
)
from escrowbook.core.errors import DomainError
from escrowbook.integrations.mpesa import normalize_phone
from escrowbook.models import EscrowPayment
from escrowbook.services import bookingService, escrowService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/escrow", tags=["Escrow"])


async def _detail(db: AsyncSession, escrow: EscrowPayment) -> EscrowDetailOut:
    events = await escrowService.get_escrow_events(db, escrow.id)
    out = EscrowDetailOut.model_validate(escrow)
    out.events = [EscrowEventOut.model_validate(e) for e in events]
    return out


async def _load(db: AsyncSession, escrow_id: uuid.UUID) -> EscrowPayment:
    try:
        return await escrowService.get_escrow(db, escrow_id)
    except DomainError as exc:
        raise http_error(exc) from exc


@router.post(
    "",
    response_model=EscrowOut,
    status_code=status.HTTP_201_CREATED,
    summary="Request payment for a booking",
    description=(
        "Sends an M-Pesa STK push to the client's phone and opens a pending "
        "escrow record. Funds are confirmed by the gateway callback. If the "
        "gateway does not answer in time the escrow is opened with "
        "outcome_unknown set and settled by the callback or reconciliation."
    ),
)
async def initiate_escrow(
    db: DBSession,
    gateway: PaymentGatewayDep,
    body: EscrowInitiateRequest,
) -> EscrowOut:
    try:
        phone = normalize_phone(body.phone_number)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))

    try:
        booking = await bookingService.get_booking(db, body.booking_id)
        escrow = await escrowService.initiate_escrow(
            db,
            gateway,
            booking,
            phone,
            amount=body.amount,
            description=body.description,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return EscrowOut.model_validate(escrow)


@router.get("/{escrow_id}", response_model=EscrowDetailOut, summary="Get an escrow payment")
async def get_escrow(db: DBSession, escrow_id: uuid.UUID) -> EscrowDetailOut:
    escrow = await _load(db, escrow_id)
    return await _detail(db, escrow)


@router.post("/{escrow_id}/dispute", response_model=EscrowDetailOut, summary="Dispute a payment")
async def dispute_escrow(
    db: DBSession,
    escrow_id: uuid.UUID,
    body: EscrowDisputeRequest,
) -> EscrowDetailOut:
    escrow = await _load(db, escrow_id)
    try:
        await escrowService.dispute_escrow(db, escrow, body.reason, actor_id=body.actor_id)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, escrow)


@router.post("/{escrow_id}/resolve", response_model=EscrowDetailOut, summary="Resolve a dispute")
async def resolve_escrow(
    db: DBSession,
    escrow_id: uuid.UUID,
    body: EscrowResolveRequest,
) -> EscrowDetailOut:
    escrow = await _load(db, escrow_id)
    try:
        await escrowService.resolve_escrow_dispute(
            db,
            escrow,
            body.resolution,
            actor_id=body.actor_id,
            refund_client=body.refund_client,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, escrow)


@router.post("/{escrow_id}/release", response_model=EscrowDetailOut, summary="Release held funds")
async def release_escrow(
    db: DBSession,
    escrow_id: uuid.UUID,
    body: EscrowReleaseRequest,
) -> EscrowDetailOut:
    escrow = await _load(db, escrow_id)
    try:
        await escrowService.release_escrow(
            db,
            escrow,
            released_by=body.released_by,
            method=body.method,
            payout_reference=body.payout_reference,
            rating=body.rating,
            review=body.review,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, escrow)


@router.post(
    "/{escrow_id}/reconcile",
    response_model=EscrowDetailOut,
    summary="Reconcile a pending payment",
    description=(
        "Settles a pending escrow whose callback never arrived: queries the "
        "gateway for the STK push result, or fails a request whose push "
        "response was lost once the confirmation window has passed."
    ),
)
async def reconcile_escrow(
    db: DBSession,
    gateway: PaymentGatewayDep,
    escrow_id: uuid.UUID,
) -> EscrowDetailOut:
    escrow = await _load(db, escrow_id)
    try:
        await escrowService.reconcile_escrow(db, gateway, escrow)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, escrow)
