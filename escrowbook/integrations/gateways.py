"""
Gateway contracts -- payment (inbound) and transfer (outbound) boundaries.

The services only talk to these protocols. Concrete adapters live in
``integrations.mpesa`` (payments), ``integrations.paystack`` and
``integrations.stripe`` (transfers).

Adapters raise from the ``GatewayError`` family in ``core.errors``:

* ``GatewayUnavailableError`` -- the request never reached the gateway
  (connection refused, 5xx before acceptance); safe to retry.
* ``GatewayRejectedError`` -- the gateway answered and refused.
* ``GatewayTimeoutError`` -- the request may have been accepted; the
  outcome is unknown and must be reconciled with ``verify_transfer`` or
  ``query_charge``.

Webhook payloads are normalized by the module-level parsers of each
adapter package, since each webhook route belongs to one gateway.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from escrowbook.core.config import settings
from escrowbook.core.errors import GatewayError


class TransferStatus(str, enum.Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    NOT_FOUND = "not_found"


# ---------------------------------------------------------------------------
# Normalized results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ChargeResult:
    """Accepted charge request (STK push sent to the payer's phone)."""
    checkout_request_id: str
    merchant_request_id: str
    response_description: str | None = None
    customer_message: str | None = None


@dataclass(frozen=True)
class PaymentCallback:
    """Gateway payment confirmation, normalized."""
    checkout_request_id: str
    merchant_request_id: str | None
    result_code: int
    result_description: str | None = None
    receipt_number: str | None = None
    amount: int | None = None
    transaction_date: str | None = None
    phone_number: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code == 0


@dataclass(frozen=True)
class TransferResult:
    """Outcome of an initiate or verify call for a single transfer."""
    reference: str
    status: TransferStatus
    transfer_code: str | None = None
    transfer_id: str | None = None
    failure_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class RecipientDetails:
    """Provider account a transfer recipient is registered for."""
    method: str
    name: str
    account_number: str
    bank_code: str | None = None
    currency: str = "KES"


@dataclass(frozen=True)
class TransferCallback:
    """Gateway transfer notification, normalized."""
    reference: str | None
    transfer_code: str | None
    transfer_id: str | None
    status: TransferStatus
    failure_reason: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

@runtime_checkable
class PaymentGateway(Protocol):
    async def initiate_charge(
        self,
        phone: str,
        amount: int,
        reference: str,
        description: str,
    ) -> ChargeResult: ...

    async def query_charge(self, checkout_request_id: str) -> PaymentCallback: ...


@runtime_checkable
class TransferGateway(Protocol):
    name: str

    async def initiate_transfer(
        self,
        recipient: str,
        amount: int,
        reference: str,
        *,
        currency: str = "KES",
        reason: str | None = None,
    ) -> TransferResult: ...

    async def verify_transfer(self, reference: str) -> TransferResult: ...

    async def create_recipient(self, details: RecipientDetails) -> str: ...


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------

def get_transfer_gateway(name: str | None = None) -> TransferGateway:
    """Return the transfer gateway selected by ``settings.transfer_gateway``."""
    selected = (name or settings.transfer_gateway).lower()
    if selected == "paystack":
        from escrowbook.integrations.paystack import PaystackTransferGateway

        return PaystackTransferGateway()
    if selected == "stripe":
        from escrowbook.integrations.stripe import StripeTransferGateway

        return StripeTransferGateway()
    raise GatewayError(f"Unknown transfer gateway '{selected}'")


def get_payment_gateway() -> PaymentGateway:
    from escrowbook.integrations.mpesa import MpesaPaymentGateway

    return MpesaPaymentGateway()
