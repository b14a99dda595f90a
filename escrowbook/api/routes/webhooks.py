"""
Gateway Webhook Routes
======================

Routes:
  POST   /api/v1/webhooks/mpesa      -- Daraja STK push result callback
  POST   /api/v1/webhooks/paystack   -- Paystack transfer events

Gateways deliver at least once, so both handlers are idempotent on the
gateway's correlation id (checkout request id / transfer reference).
Malformed payloads, unknown correlation ids and replays are acknowledged
and logged so the gateway stops redelivering them; only unexpected server
errors return a 5xx.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Request

from escrowbook.api.deps import DBSession
from escrowbook.core.errors import DomainError
from escrowbook.integrations.mpesa import parse_stk_callback
from escrowbook.integrations.paystack import parse_transfer_event, verify_signature
from escrowbook.services import escrowService, payoutScheduler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

_MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}


@router.post(
    "/mpesa",
    summary="M-Pesa STK push callback",
    description="Always answers with Daraja's 'Accepted' acknowledgement.",
)
async def mpesa_callback(db: DBSession, request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except ValueError:
        logger.warning("M-Pesa callback with a non-JSON body ignored")
        return _MPESA_ACK

    try:
        callback = parse_stk_callback(payload)
    except ValueError as exc:
        logger.warning("Malformed M-Pesa callback ignored: %s", exc)
        return _MPESA_ACK

    try:
        escrow = await escrowService.record_inbound(db, callback)
    except DomainError as exc:
        logger.warning(
            "M-Pesa callback for checkout %s not applied: %s",
            callback.checkout_request_id,
            exc.message,
        )
        return _MPESA_ACK

    logger.info(
        "M-Pesa callback for checkout %s applied: escrow %s is %s",
        callback.checkout_request_id,
        escrow.id,
        escrow.status.value,
    )
    return _MPESA_ACK


@router.post(
    "/paystack",
    summary="Paystack transfer webhook",
    description=(
        "Verifies the x-paystack-signature HMAC and applies transfer.success, "
        "transfer.failed and transfer.reversed events to the matching payout."
    ),
)
async def paystack_webhook(db: DBSession, request: Request) -> dict[str, Any]:
    raw_body = await request.body()
    if not verify_signature(raw_body, request.headers.get("x-paystack-signature")):
        logger.warning("Paystack webhook with an invalid signature ignored")
        return {"status": "ignored", "reason": "invalid signature"}

    try:
        payload = json.loads(raw_body)
    except ValueError:
        logger.warning("Paystack webhook with a non-JSON body ignored")
        return {"status": "ignored", "reason": "malformed body"}

    if not isinstance(payload, dict):
        logger.warning("Paystack webhook with a non-object body ignored")
        return {"status": "ignored", "reason": "malformed body"}

    callback = parse_transfer_event(payload)
    if callback is None:
        logger.info("Paystack event %s ignored", payload.get("event"))
        return {"status": "ignored", "reason": "unhandled event"}

    try:
        payout = await payoutScheduler.handle_transfer_callback(db, callback)
    except DomainError as exc:
        logger.warning("Paystack event for %s not applied: %s", callback.reference, exc.message)
        return {"status": "ignored", "reason": exc.code}

    if payout is None:
        logger.warning("Paystack event for unknown transfer %s ignored", callback.reference)
        return {"status": "ignored", "reason": "unknown transfer"}

    return {"status": "ok", "payout_id": str(payout.id), "payout_status": payout.status.value}
