"""
Booking State Manager
=====================

Finite state machine governing all valid booking status transitions. Every
status change MUST go through ``validate_transition`` before being persisted.

State machine overview::

    pending --> confirmed --> in-progress --> completed

    confirmed --> pending                  (slot freed; system only)

    (pending | confirmed | in-progress) --> cancelled
    (pending | confirmed | in-progress) --> disputed

    disputed --> completed | cancelled     (resolution; admin or system)

``completed`` and ``cancelled`` are terminal.

Guards enforce that only the correct actor type can trigger certain
transitions.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from escrowbook.models.booking import BookingStatus


# ---------------------------------------------------------------------------
# Actor types for guard enforcement
# ---------------------------------------------------------------------------

class ActorType(str, enum.Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    SYSTEM = "system"
    ADMIN = "admin"


# ---------------------------------------------------------------------------
# Transition guard result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.PENDING: {
        BookingStatus.CONFIRMED,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.CONFIRMED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.PENDING,  # a provider dropped out, slots open again
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.DISPUTED,
    },
    BookingStatus.DISPUTED: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
}

TERMINAL_STATUSES: frozenset[BookingStatus] = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
})

_STAFF = (ActorType.SYSTEM, ActorType.ADMIN)


# ---------------------------------------------------------------------------
# Guard functions
# ---------------------------------------------------------------------------

def _guard_revert_to_pending(actor_type: ActorType) -> TransitionResult:
    """Only the assignment engine reopens a confirmed booking."""
    if actor_type is not ActorType.SYSTEM:
        return TransitionResult(
            allowed=False,
            reason="A confirmed booking returns to 'pending' only when a provider is unassigned.",
        )
    return TransitionResult(allowed=True)


def _guard_resolve_dispute(actor_type: ActorType) -> TransitionResult:
    if actor_type not in _STAFF:
        return TransitionResult(
            allowed=False,
            reason="Only an admin can resolve a disputed booking.",
        )
    return TransitionResult(allowed=True)


def _guard_start_work(actor_type: ActorType) -> TransitionResult:
    """Only a provider (or staff on their behalf) can start work."""
    if actor_type is ActorType.CLIENT:
        return TransitionResult(
            allowed=False,
            reason="Only a provider can start work on a booking.",
        )
    return TransitionResult(allowed=True)


def _guard_complete(actor_type: ActorType) -> TransitionResult:
    if actor_type is ActorType.CLIENT:
        return TransitionResult(
            allowed=False,
            reason="Only a provider or admin can mark a booking as completed.",
        )
    return TransitionResult(allowed=True)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: BookingStatus,
    new_status: BookingStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> TransitionResult:
    """Validate whether a booking status transition is allowed.

    Checks two layers:
    1. Is the transition structurally valid per the state machine?
    2. Does the actor have permission for this specific transition (guards)?
    """
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status not in allowed_targets:
        return TransitionResult(
            allowed=False,
            reason=(
                f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
                f"Allowed transitions from '{current_status.value}': "
                f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
            ),
        )

    if current_status == BookingStatus.CONFIRMED and new_status == BookingStatus.PENDING:
        return _guard_revert_to_pending(actor_type)

    if current_status == BookingStatus.DISPUTED:
        return _guard_resolve_dispute(actor_type)

    if new_status == BookingStatus.IN_PROGRESS:
        return _guard_start_work(actor_type)

    if new_status == BookingStatus.COMPLETED:
        return _guard_complete(actor_type)

    return TransitionResult(allowed=True)


def get_valid_transitions(
    current_status: BookingStatus,
    actor_type: ActorType = ActorType.SYSTEM,
) -> list[BookingStatus]:
    """Return the statuses the given actor can move a booking to."""
    candidates = VALID_TRANSITIONS.get(current_status, set())
    valid: list[BookingStatus] = []
    for target in candidates:
        if validate_transition(current_status, target, actor_type).allowed:
            valid.append(target)
    return sorted(valid, key=lambda s: s.value)


def is_terminal(status: BookingStatus) -> bool:
    return status in TERMINAL_STATUSES
