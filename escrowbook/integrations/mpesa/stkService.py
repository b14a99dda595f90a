"""
M-Pesa Daraja STK Push Service
==============================

Client-side payment capture through Safaricom's Lipa Na M-Pesa Online
(STK push): the payer receives a prompt on their phone, and Daraja later
POSTs the outcome to ``settings.mpesa_callback_url``.

- OAuth access token (client credentials, cached until expiry)
- STK push initiation -> ``ChargeResult``
- STK push query (result of a request whose callback never arrived)
- Callback normalization -> ``PaymentCallback``

Amounts are whole shillings; Daraja rejects fractional amounts.
"""

from __future__ import annotations

import base64
import logging
import re
import time
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from escrowbook.core.config import settings
from escrowbook.core.errors import GatewayRejectedError
from escrowbook.integrations.gateways import ChargeResult, PaymentCallback
from escrowbook.integrations.httpClient import request_json

logger = logging.getLogger(__name__)

_SANDBOX_URL = "https://sandbox.safaricom.co.ke"
_PRODUCTION_URL = "https://api.safaricom.co.ke"

# Daraja tokens live for 3599s; refresh a minute early
_TOKEN_SAFETY_MARGIN_SECONDS = 60

# Daraja validates the password timestamp against East Africa Time
_NAIROBI = timezone(timedelta(hours=3))


def base_url() -> str:
    if settings.mpesa_environment == "production":
        return _PRODUCTION_URL
    return _SANDBOX_URL


def normalize_phone(phone: str) -> str:
    """Return a Kenyan MSISDN in ``2547XXXXXXXX`` form.

    Accepts ``07..``, ``+2547..``, ``2547..`` and bare ``7..`` inputs.
    """
    digits = re.sub(r"\D", "", phone)
    if digits.startswith("0"):
        digits = "254" + digits[1:]
    if not digits.startswith("254"):
        digits = "254" + digits
    if len(digits) != 12:
        raise ValueError(f"Invalid Kenyan phone number: {phone!r}")
    return digits


def generate_password(now: datetime | None = None) -> tuple[str, str]:
    """Return ``(password, timestamp)`` for an STK push request.

    The password is base64(shortcode + passkey + timestamp) where the
    timestamp is ``YYYYMMDDHHMMSS``.
    """
    moment = (now or datetime.now(timezone.utc)).astimezone(_NAIROBI)
    timestamp = moment.strftime("%Y%m%d%H%M%S")
    raw = f"{settings.mpesa_business_shortcode}{settings.mpesa_passkey}{timestamp}"
    return base64.b64encode(raw.encode()).decode(), timestamp


def _metadata_items(stk_callback: dict[str, Any]) -> dict[str, Any]:
    items = (stk_callback.get("CallbackMetadata") or {}).get("Item") or []
    return {item.get("Name"): item.get("Value") for item in items if "Name" in item}


def parse_stk_callback(payload: dict[str, Any]) -> PaymentCallback:
    """Normalize a Daraja ``Body.stkCallback`` payload.

    Raises:
        ValueError: If the payload does not contain an STK callback.
    """
    try:
        stk_callback = payload["Body"]["stkCallback"]
        checkout_request_id = stk_callback["CheckoutRequestID"]
    except (KeyError, TypeError) as exc:
        raise ValueError("Malformed M-Pesa callback payload") from exc

    result_code = int(stk_callback.get("ResultCode", -1))
    items = _metadata_items(stk_callback) if result_code == 0 else {}
    amount = items.get("Amount")
    transaction_date = items.get("TransactionDate")
    phone_number = items.get("PhoneNumber")

    return PaymentCallback(
        checkout_request_id=checkout_request_id,
        merchant_request_id=stk_callback.get("MerchantRequestID"),
        result_code=result_code,
        result_description=stk_callback.get("ResultDesc"),
        receipt_number=items.get("MpesaReceiptNumber"),
        amount=int(round(float(amount))) if amount is not None else None,
        transaction_date=str(transaction_date) if transaction_date is not None else None,
        phone_number=str(phone_number) if phone_number is not None else None,
        raw=payload,
    )


class MpesaPaymentGateway:
    """``PaymentGateway`` implementation backed by Daraja STK push."""

    name = "mpesa"

    def __init__(self, client: httpx.AsyncClient | None = None) -> None:
        self._client = client
        self._token: str | None = None
        self._token_expires_at: float = 0.0

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=base_url())
        return self._client

    async def get_access_token(self) -> str:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token

        credentials = f"{settings.mpesa_consumer_key}:{settings.mpesa_consumer_secret}"
        auth = base64.b64encode(credentials.encode()).decode()
        client = await self._get_client()
        data = await request_json(
            client,
            "GET",
            "/oauth/v1/generate",
            gateway="M-Pesa",
            headers={"Authorization": f"Basic {auth}"},
            params={"grant_type": "client_credentials"},
            idempotent=True,
        )
        self._token = data["access_token"]
        expires_in = int(data.get("expires_in", 3599))
        self._token_expires_at = time.monotonic() + expires_in - _TOKEN_SAFETY_MARGIN_SECONDS
        return self._token

    async def initiate_charge(
        self,
        phone: str,
        amount: int,
        reference: str,
        description: str,
    ) -> ChargeResult:
        """Send an STK push prompt for ``amount`` to ``phone``.

        Raises:
            GatewayRejectedError: If Daraja refuses the request.
            GatewayUnavailableError: On connection failure or 5xx.
            GatewayTimeoutError: If Daraja did not answer in time.
        """
        if amount < 1:
            raise ValueError(f"Charge amount must be at least 1, got {amount}")

        msisdn = normalize_phone(phone)
        token = await self.get_access_token()
        password, timestamp = generate_password()
        payload = {
            "BusinessShortCode": settings.mpesa_business_shortcode,
            "Password": password,
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": int(amount),
            "PartyA": msisdn,
            "PartyB": settings.mpesa_business_shortcode,
            "PhoneNumber": msisdn,
            "CallBackURL": settings.mpesa_callback_url,
            "AccountReference": reference[:12],
            "TransactionDesc": description[:13],
        }

        client = await self._get_client()
        data = await request_json(
            client,
            "POST",
            "/mpesa/stkpush/v1/processrequest",
            gateway="M-Pesa",
            headers={"Authorization": f"Bearer {token}"},
            json_body=payload,
        )

        if str(data.get("ResponseCode")) != "0":
            raise GatewayRejectedError(
                data.get("ResponseDescription") or "STK push failed",
                gateway_code=str(data.get("ResponseCode")),
                raw=data,
            )

        logger.info(
            "STK push initiated: checkout=%s, phone=%s, amount=%d",
            data["CheckoutRequestID"],
            msisdn,
            amount,
        )
        return ChargeResult(
            checkout_request_id=data["CheckoutRequestID"],
            merchant_request_id=data["MerchantRequestID"],
            response_description=data.get("ResponseDescription"),
            customer_message=data.get("CustomerMessage"),
        )

    async def query_charge(self, checkout_request_id: str) -> PaymentCallback:
        """Ask Daraja for the result of an STK push (STK Push Query).

        Daraja answers HTTP 500 while the payer has not responded yet; that
        surfaces as ``GatewayUnavailableError`` and the caller asks again
        later. A successful query carries no receipt number.

        Raises:
            GatewayRejectedError: Daraja refused the query.
            GatewayUnavailableError: Still processing, or Daraja unreachable.
        """
        token = await self.get_access_token()
        password, timestamp = generate_password()
        client = await self._get_client()
        data = await request_json(
            client,
            "POST",
            "/mpesa/stkpushquery/v1/query",
            gateway="M-Pesa",
            headers={"Authorization": f"Bearer {token}"},
            json_body={
                "BusinessShortCode": settings.mpesa_business_shortcode,
                "Password": password,
                "Timestamp": timestamp,
                "CheckoutRequestID": checkout_request_id,
            },
            idempotent=True,
        )

        if str(data.get("ResponseCode")) != "0":
            raise GatewayRejectedError(
                data.get("ResponseDescription") or "STK push query failed",
                gateway_code=str(data.get("ResponseCode")),
                raw=data,
            )

        result_code = int(data.get("ResultCode", -1))
        logger.info("STK push query: checkout=%s, result=%d", checkout_request_id, result_code)
        return PaymentCallback(
            checkout_request_id=checkout_request_id,
            merchant_request_id=data.get("MerchantRequestID"),
            result_code=result_code,
            result_description=data.get("ResultDesc"),
            raw=data,
        )
