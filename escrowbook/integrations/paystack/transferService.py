"""
Paystack Transfer Service
=========================

Provider payouts through the Paystack Transfers API (bank accounts and
M-Pesa mobile money recipients in Kenya).

- Transfer initiation keyed by our stable payout reference, so a repeated
  request with the same reference is refused by Paystack instead of paying
  twice.
- Transfer recipient creation from a provider's M-Pesa number or bank
  account, for providers without a stored recipient code.
- Transfer verification by reference, used to reconcile transfers whose
  outcome is unknown.
- Webhook signature verification and ``transfer.*`` event normalization.

Paystack amounts are in the currency subunit; payouts are stored in whole
shillings and multiplied by 100 on the way out.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Optional

import httpx

from escrowbook.core.config import settings
from escrowbook.core.errors import GatewayRejectedError
from escrowbook.integrations.gateways import (
    RecipientDetails,
    TransferCallback,
    TransferResult,
    TransferStatus,
)
from escrowbook.integrations.httpClient import request_json

logger = logging.getLogger(__name__)

_SUBUNITS_PER_UNIT = 100

_STATUS_MAP: dict[str, TransferStatus] = {
    "success": TransferStatus.SUCCESS,
    "failed": TransferStatus.FAILED,
    "reversed": TransferStatus.FAILED,
    "abandoned": TransferStatus.FAILED,
    "rejected": TransferStatus.FAILED,
    "pending": TransferStatus.PENDING,
    "otp": TransferStatus.PENDING,
    "queued": TransferStatus.PENDING,
    "received": TransferStatus.PENDING,
    "processing": TransferStatus.PENDING,
}

_TRANSFER_EVENTS = frozenset({"transfer.success", "transfer.failed", "transfer.reversed"})


def map_status(raw_status: str | None) -> TransferStatus:
    return _STATUS_MAP.get((raw_status or "").lower(), TransferStatus.PENDING)


def verify_signature(raw_body: bytes, signature: str | None, secret: str | None = None) -> bool:
    """Check the ``x-paystack-signature`` header (HMAC-SHA512 of the body)."""
    key = secret if secret is not None else settings.paystack_secret_key
    if not signature or not key:
        return False
    expected = hmac.new(key.encode(), raw_body, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)


def parse_transfer_event(payload: dict[str, Any]) -> Optional[TransferCallback]:
    """Normalize a Paystack ``transfer.*`` webhook event.

    Returns ``None`` for events that are not about transfers.
    """
    event = payload.get("event")
    if event not in _TRANSFER_EVENTS:
        return None

    data = payload.get("data") or {}
    if event == "transfer.success":
        status = TransferStatus.SUCCESS
    else:
        status = TransferStatus.FAILED

    failure_reason = None
    if status is TransferStatus.FAILED:
        failure_reason = data.get("reason") or data.get("failures") or event
        failure_reason = str(failure_reason)

    transfer_id = data.get("id")
    return TransferCallback(
        reference=data.get("reference"),
        transfer_code=data.get("transfer_code"),
        transfer_id=str(transfer_id) if transfer_id is not None else None,
        status=status,
        failure_reason=failure_reason,
        raw=payload,
    )


def _to_result(reference: str, data: dict[str, Any]) -> TransferResult:
    status = map_status(data.get("status"))
    transfer_id = data.get("id")
    return TransferResult(
        reference=data.get("reference") or reference,
        status=status,
        transfer_code=data.get("transfer_code"),
        transfer_id=str(transfer_id) if transfer_id is not None else None,
        failure_reason=data.get("reason") if status is TransferStatus.FAILED else None,
        raw=data,
    )


class PaystackTransferGateway:
    """``TransferGateway`` implementation backed by Paystack Transfers."""

    name = "paystack"

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        secret_key: str | None = None,
    ) -> None:
        self._client = client
        self._secret_key = secret_key if secret_key is not None else settings.paystack_secret_key

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=settings.paystack_base_url)
        return self._client

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret_key}"}

    async def initiate_transfer(
        self,
        recipient: str,
        amount: int,
        reference: str,
        *,
        currency: str = "KES",
        reason: str | None = None,
    ) -> TransferResult:
        """Start a balance transfer of ``amount`` to a Paystack recipient code.

        Raises:
            GatewayRejectedError: Paystack refused the transfer.
            GatewayUnavailableError: Connection failure or 5xx.
            GatewayTimeoutError: No answer in time; outcome unknown.
        """
        if amount <= 0:
            raise ValueError(f"Transfer amount must be positive, got {amount}")

        body = await request_json(
            self._get_client(),
            "POST",
            "/transfer",
            gateway="Paystack",
            headers=self._headers(),
            json_body={
                "source": "balance",
                "amount": amount * _SUBUNITS_PER_UNIT,
                "recipient": recipient,
                "reference": reference,
                "currency": currency,
                "reason": reason or f"Payout {reference}",
            },
        )
        if not body.get("status"):
            raise GatewayRejectedError(
                body.get("message") or "Paystack transfer failed",
                raw=body,
            )

        result = _to_result(reference, body.get("data") or {})
        logger.info(
            "Paystack transfer initiated: reference=%s, code=%s, status=%s, amount=%d %s",
            reference,
            result.transfer_code,
            result.status.value,
            amount,
            currency,
        )
        return result

    async def verify_transfer(self, reference: str) -> TransferResult:
        """Look up a transfer by our reference."""
        try:
            body = await request_json(
                self._get_client(),
                "GET",
                f"/transfer/verify/{reference}",
                gateway="Paystack",
                headers=self._headers(),
                idempotent=True,
            )
        except GatewayRejectedError as exc:
            if exc.gateway_code == "404":
                return TransferResult(reference=reference, status=TransferStatus.NOT_FOUND)
            raise

        return _to_result(reference, body.get("data") or {})

    async def create_recipient(self, details: RecipientDetails) -> str:
        """Register a transfer recipient and return its ``RCP_...`` code.

        M-Pesa numbers become ``mobile_money`` recipients on the M-Pesa bank
        code; bank accounts become ``nuban`` recipients.

        Raises:
            GatewayRejectedError: Paystack refused the account details.
            GatewayUnavailableError: Connection failure or 5xx.
        """
        if details.method == "mpesa":
            payload = {
                "type": "mobile_money",
                "bank_code": settings.paystack_mpesa_bank_code,
            }
        else:
            payload = {"type": "nuban", "bank_code": details.bank_code}
        payload.update(
            name=details.name,
            account_number=details.account_number,
            currency=details.currency,
        )

        body = await request_json(
            self._get_client(),
            "POST",
            "/transferrecipient",
            gateway="Paystack",
            headers=self._headers(),
            json_body=payload,
        )
        recipient_code = (body.get("data") or {}).get("recipient_code")
        if not body.get("status") or not recipient_code:
            raise GatewayRejectedError(
                body.get("message") or "Paystack recipient creation failed",
                raw=body,
            )

        logger.info("Paystack %s recipient created: %s", payload["type"], recipient_code)
        return recipient_code
