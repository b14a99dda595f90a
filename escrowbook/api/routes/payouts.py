"""
Payout API Routes
=================

Routes:
  GET    /api/v1/payouts/{payout_id}                 -- Payout with audit events
  GET    /api/v1/payouts/booking/{booking_id}        -- Payout for a booking
  POST   /api/v1/payouts/{payout_id}/process         -- Send the transfer now
  POST   /api/v1/payouts/{payout_id}/retry           -- Requeue a failed payout
  POST   /api/v1/payouts/{payout_id}/cancel          -- Cancel a payout
  POST   /api/v1/payouts/{payout_id}/reconcile       -- Query the gateway for the outcome
"""

from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.api.deps import DBSession, TransferGatewayDep, http_error
from escrowbook.api.schemas.payout import PayoutActionRequest, PayoutDetailOut, PayoutEventOut
from escrowbook.core.errors import DomainError
from escrowbook.models import Payout
from escrowbook.services import payoutScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payouts", tags=["Payouts"])


async def _detail(db: AsyncSession, payout: Payout) -> PayoutDetailOut:
    events = await payoutScheduler.get_payout_events(db, payout.id)
    out = PayoutDetailOut.model_validate(payout)
    out.events = [PayoutEventOut.model_validate(e) for e in events]
    return out


async def _load(db: AsyncSession, payout_id: uuid.UUID) -> Payout:
    try:
        return await payoutScheduler.get_payout(db, payout_id)
    except DomainError as exc:
        raise http_error(exc) from exc


@router.get("/{payout_id}", response_model=PayoutDetailOut, summary="Get a payout")
async def get_payout(db: DBSession, payout_id: uuid.UUID) -> PayoutDetailOut:
    payout = await _load(db, payout_id)
    return await _detail(db, payout)


@router.get("/booking/{booking_id}", response_model=PayoutDetailOut, summary="Get a booking's payout")
async def get_payout_for_booking(db: DBSession, booking_id: uuid.UUID) -> PayoutDetailOut:
    payout = await payoutScheduler.get_payout_for_booking(db, booking_id)
    if payout is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "message": f"No payout for booking '{booking_id}'."},
        )
    return await _detail(db, payout)


@router.post(
    "/{payout_id}/process",
    response_model=PayoutDetailOut,
    summary="Process a ready payout",
    description=(
        "Claims the payout and sends its transfer. A payout already being "
        "processed returns 409 'already_processing'. A gateway timeout leaves "
        "the payout in 'processing' with outcome_unknown set until it is "
        "reconciled."
    ),
)
async def process_payout(
    db: DBSession,
    gateway: TransferGatewayDep,
    payout_id: uuid.UUID,
) -> PayoutDetailOut:
    payout = await _load(db, payout_id)
    try:
        await payoutScheduler.process_payout(db, payout, gateway)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, payout)


@router.post("/{payout_id}/retry", response_model=PayoutDetailOut, summary="Retry a failed payout")
async def retry_payout(
    db: DBSession,
    payout_id: uuid.UUID,
    body: PayoutActionRequest,
) -> PayoutDetailOut:
    payout = await _load(db, payout_id)
    try:
        await payoutScheduler.retry_payout(db, payout, body.reason, actor_id=body.actor_id)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, payout)


@router.post("/{payout_id}/cancel", response_model=PayoutDetailOut, summary="Cancel a payout")
async def cancel_payout(
    db: DBSession,
    payout_id: uuid.UUID,
    body: PayoutActionRequest,
) -> PayoutDetailOut:
    payout = await _load(db, payout_id)
    try:
        await payoutScheduler.cancel_payout(db, payout, body.reason, actor_id=body.actor_id)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, payout)


@router.post(
    "/{payout_id}/reconcile",
    response_model=PayoutDetailOut,
    summary="Reconcile a processing payout",
)
async def reconcile_payout(
    db: DBSession,
    gateway: TransferGatewayDep,
    payout_id: uuid.UUID,
) -> PayoutDetailOut:
    payout = await _load(db, payout_id)
    try:
        await payoutScheduler.reconcile_payout(db, payout, gateway)
    except DomainError as exc:
        raise http_error(exc) from exc
    return await _detail(db, payout)
