"""
Booking & Settlement Domain Events
==================================

Events emitted by the booking, escrow and payout services. An external
notifier (email, SMS, push, webhooks) subscribes with ``subscribe`` and
receives every ``DomainEvent`` of that type; the core never formats or sends
messages itself.

Handlers run synchronously inside ``emit``. A handler that raises is logged
and skipped so that a broken notifier can never undo or block money
movement.

Events emitted:
  - booking.confirmed
  - booking.status_changed
  - escrow.dispute_opened
  - escrow.payment_released
  - payout.scheduled
  - payout.completed
  - payout.failed
"""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)


BOOKING_CONFIRMED = "booking.confirmed"
BOOKING_STATUS_CHANGED = "booking.status_changed"
DISPUTE_OPENED = "escrow.dispute_opened"
PAYMENT_RELEASED = "escrow.payment_released"
PAYOUT_SCHEDULED = "payout.scheduled"
PAYOUT_COMPLETED = "payout.completed"
PAYOUT_FAILED = "payout.failed"


@dataclass(frozen=True)
class DomainEvent:
    event_type: str
    subject_id: str
    actor_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type,
            "subject_id": self.subject_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp,
            "data": self.data,
        }


EventHandler = Callable[[DomainEvent], Any]

_subscribers: dict[str, list[EventHandler]] = defaultdict(list)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

def subscribe(event_type: str, handler: EventHandler) -> None:
    """Register ``handler`` for ``event_type``. Use ``"*"`` for every event."""
    _subscribers[event_type].append(handler)


def unsubscribe(event_type: str, handler: EventHandler) -> None:
    handlers = _subscribers.get(event_type, [])
    if handler in handlers:
        handlers.remove(handler)


def clear_subscribers() -> None:
    _subscribers.clear()


def emit(event: DomainEvent) -> DomainEvent:
    """Deliver ``event`` to its subscribers and return it."""
    logger.info("Event emitted: %s for %s", event.event_type, event.subject_id)
    for handler in [*_subscribers.get(event.event_type, []), *_subscribers.get("*", [])]:
        try:
            handler(event)
        except Exception:
            logger.exception(
                "Event handler %r failed for %s (%s)",
                handler,
                event.event_type,
                event.subject_id,
            )
    return event


def _build_event(
    event_type: str,
    subject_id: uuid.UUID,
    *,
    data: dict[str, Any] | None = None,
    actor_id: uuid.UUID | None = None,
) -> DomainEvent:
    return DomainEvent(
        event_type=event_type,
        subject_id=str(subject_id),
        actor_id=str(actor_id) if actor_id else None,
        data=data or {},
    )


# ---------------------------------------------------------------------------
# Booking events
# ---------------------------------------------------------------------------

def emit_booking_confirmed(
    booking_id: uuid.UUID,
    booking_number: str,
    provider_ids: list[uuid.UUID],
    actor_id: uuid.UUID | None = None,
) -> DomainEvent:
    """Emit event when every provider slot of a booking is filled."""
    return emit(_build_event(
        BOOKING_CONFIRMED,
        booking_id,
        actor_id=actor_id,
        data={
            "booking_number": booking_number,
            "provider_ids": [str(p) for p in provider_ids],
        },
    ))


def emit_booking_status_changed(
    booking_id: uuid.UUID,
    old_status: str,
    new_status: str,
    actor_id: uuid.UUID | None = None,
) -> DomainEvent:
    return emit(_build_event(
        BOOKING_STATUS_CHANGED,
        booking_id,
        actor_id=actor_id,
        data={"old_status": old_status, "new_status": new_status},
    ))


# ---------------------------------------------------------------------------
# Escrow events
# ---------------------------------------------------------------------------

def emit_dispute_opened(
    escrow_id: uuid.UUID,
    booking_id: uuid.UUID | None,
    reason: str,
    actor_id: uuid.UUID | None = None,
) -> DomainEvent:
    return emit(_build_event(
        DISPUTE_OPENED,
        escrow_id,
        actor_id=actor_id,
        data={
            "booking_id": str(booking_id) if booking_id else None,
            "reason": reason,
        },
    ))


def emit_payment_released(
    escrow_id: uuid.UUID,
    booking_id: uuid.UUID | None,
    provider_amount: int,
    actor_id: uuid.UUID | None = None,
) -> DomainEvent:
    """Emit event when escrowed funds are released to the provider."""
    return emit(_build_event(
        PAYMENT_RELEASED,
        escrow_id,
        actor_id=actor_id,
        data={
            "booking_id": str(booking_id) if booking_id else None,
            "provider_amount": provider_amount,
        },
    ))


# ---------------------------------------------------------------------------
# Payout events
# ---------------------------------------------------------------------------

def emit_payout_scheduled(
    payout_id: uuid.UUID,
    booking_id: uuid.UUID,
    payout_amount: int,
    scheduled_at: datetime,
) -> DomainEvent:
    return emit(_build_event(
        PAYOUT_SCHEDULED,
        payout_id,
        data={
            "booking_id": str(booking_id),
            "payout_amount": payout_amount,
            "scheduled_at": scheduled_at.isoformat(),
        },
    ))


def emit_payout_completed(
    payout_id: uuid.UUID,
    provider_id: uuid.UUID,
    payout_amount: int,
    reference: str,
) -> DomainEvent:
    return emit(_build_event(
        PAYOUT_COMPLETED,
        payout_id,
        data={
            "provider_id": str(provider_id),
            "payout_amount": payout_amount,
            "reference": reference,
        },
    ))


def emit_payout_failed(
    payout_id: uuid.UUID,
    provider_id: uuid.UUID,
    reason: str,
    attempt_count: int,
) -> DomainEvent:
    return emit(_build_event(
        PAYOUT_FAILED,
        payout_id,
        data={
            "provider_id": str(provider_id),
            "reason": reason,
            "attempt_count": attempt_count,
        },
    ))
