"""
Domain error taxonomy shared by the booking, assignment, escrow and payout
services.

Every error carries a machine-readable ``code`` and an ``http_status`` hint
used by the API layer when translating to ``HTTPException``. None of these
are fatal: each one maps to a terminal or retryable entity state, or to a
client-visible rejection.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    """Base class for all escrowbook domain errors."""

    code: str = "domain_error"
    http_status: int = 400

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def __repr__(self) -> str:
        return f"{type(self).__name__}(message={self.message!r}, context={self.context!r})"


class NotFoundError(DomainError):
    code = "not_found"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any) -> None:
        super().__init__(f"{entity} with id '{entity_id}' not found.", entity=entity, id=str(entity_id))


# ---------------------------------------------------------------------------
# State machine errors
# ---------------------------------------------------------------------------

class InvalidTransitionError(DomainError):
    """Target status is not reachable from the current status."""

    code = "invalid_transition"
    http_status = 409


class StaleStateError(InvalidTransitionError):
    """The record left the expected status before the write landed."""

    code = "stale_state"


class InvalidStateError(DomainError):
    """Operation is not valid for the record's current status."""

    code = "invalid_state"
    http_status = 409


# ---------------------------------------------------------------------------
# Assignment contention
# ---------------------------------------------------------------------------

class SlotsFullError(DomainError):
    code = "slots_full"
    http_status = 409


class AlreadyAssignedError(DomainError):
    code = "already_assigned"
    http_status = 409


class ScheduleConflictError(DomainError):
    code = "schedule_conflict"
    http_status = 409


# ---------------------------------------------------------------------------
# Inbound payments
# ---------------------------------------------------------------------------

class DuplicateReceiptError(DomainError):
    """The gateway receipt is already recorded against another escrow."""

    code = "duplicate_receipt"
    http_status = 409


# ---------------------------------------------------------------------------
# Payout concurrency guards
# ---------------------------------------------------------------------------

class DuplicatePayoutError(DomainError):
    code = "duplicate_payout"
    http_status = 409


class AlreadyProcessingError(DomainError):
    code = "already_processing"
    http_status = 409


# ---------------------------------------------------------------------------
# Discount codes
# ---------------------------------------------------------------------------

class DiscountCodeError(DomainError):
    code = "discount_code_invalid"
    http_status = 422


# ---------------------------------------------------------------------------
# Gateway errors
# ---------------------------------------------------------------------------

class GatewayError(DomainError):
    """Base class for payment/transfer gateway failures."""

    code = "gateway_error"
    http_status = 502

    def __init__(self, message: str, *, gateway_code: str | None = None, raw: Any = None) -> None:
        super().__init__(message, gateway_code=gateway_code)
        self.gateway_code = gateway_code
        self.raw = raw


class GatewayTimeoutError(GatewayError):
    """The call timed out; the outcome is unknown and must be reconciled."""

    code = "gateway_timeout"
    http_status = 504


class GatewayRejectedError(GatewayError):
    """The gateway refused the request. Hard failure, operator-retryable."""

    code = "gateway_rejected"
    http_status = 402


class GatewayUnavailableError(GatewayError):
    """Transient failure before the gateway accepted the request."""

    code = "gateway_unavailable"
    http_status = 503
