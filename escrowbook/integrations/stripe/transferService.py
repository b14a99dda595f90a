"""
Stripe Connect Transfer Service
===============================

Alternative transfer gateway: moves the provider share from the platform
balance to the provider's connected Stripe account (``acct_...``).

Every transfer is created with ``idempotency_key`` and ``transfer_group``
set to the payout reference, so a repeated request returns the original
transfer and ``verify_transfer`` can find it again by reference.

The Stripe SDK is synchronous; calls run in a worker thread so the caller's
timeout applies.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import stripe

from escrowbook.core.config import settings
from escrowbook.core.errors import (
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
)
from escrowbook.integrations.gateways import RecipientDetails, TransferResult, TransferStatus

logger = logging.getLogger(__name__)

_SUBUNITS_PER_UNIT = 100


def _handle_stripe_error(exc: stripe.StripeError) -> GatewayError:
    """Convert a Stripe SDK exception into a gateway error."""
    error_body = getattr(exc, "error", None)
    code = getattr(error_body, "code", None) if error_body else None
    error_type = getattr(error_body, "type", None) if error_body else None

    logger.error("Stripe API error: %s (code=%s, type=%s)", str(exc), code, error_type)

    if isinstance(exc, stripe.APIConnectionError):
        if "timed out" in str(exc).lower():
            return GatewayTimeoutError(str(exc), gateway_code=code, raw=error_type)
        return GatewayUnavailableError(str(exc), gateway_code=code, raw=error_type)
    if isinstance(exc, (stripe.RateLimitError, stripe.APIError)):
        return GatewayUnavailableError(str(exc), gateway_code=code, raw=error_type)
    return GatewayRejectedError(str(exc), gateway_code=code, raw=error_type)


def _to_result(reference: str, transfer: Any) -> TransferResult:
    reversed_ = bool(getattr(transfer, "reversed", False))
    return TransferResult(
        reference=reference,
        status=TransferStatus.FAILED if reversed_ else TransferStatus.SUCCESS,
        transfer_code=transfer.id,
        transfer_id=transfer.id,
        failure_reason="Transfer reversed" if reversed_ else None,
    )


class StripeTransferGateway:
    """``TransferGateway`` implementation backed by Stripe Connect."""

    name = "stripe"

    def __init__(self, api_key: str | None = None) -> None:
        self._api_key = api_key if api_key is not None else settings.stripe_secret_key

    async def initiate_transfer(
        self,
        recipient: str,
        amount: int,
        reference: str,
        *,
        currency: str = "KES",
        reason: str | None = None,
    ) -> TransferResult:
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")

        try:
            transfer = await asyncio.to_thread(
                stripe.Transfer.create,
                api_key=self._api_key,
                amount=amount * _SUBUNITS_PER_UNIT,
                currency=currency.lower(),
                destination=recipient,
                transfer_group=reference,
                description=reason or f"Payout {reference}",
                metadata={"reference": reference},
                idempotency_key=reference,
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        logger.info(
            "Stripe transfer created: id=%s, reference=%s, account=%s, amount=%d %s",
            transfer.id,
            reference,
            recipient,
            amount,
            currency,
        )
        return _to_result(reference, transfer)

    async def verify_transfer(self, reference: str) -> TransferResult:
        try:
            transfers = await asyncio.to_thread(
                stripe.Transfer.list,
                api_key=self._api_key,
                transfer_group=reference,
                limit=1,
            )
        except stripe.StripeError as exc:
            raise _handle_stripe_error(exc) from exc

        if not transfers.data:
            return TransferResult(reference=reference, status=TransferStatus.NOT_FOUND)
        return _to_result(reference, transfers.data[0])

    async def create_recipient(self, details: RecipientDetails) -> str:
        """Connected accounts are onboarded through Stripe, not created here.

        Raises:
            GatewayRejectedError: Always.
        """
        raise GatewayRejectedError(
            f"Stripe payouts need a connected account id; cannot create one for {details.name}"
        )
