"""
Provider Assignment Engine
==========================

Fills a booking's ``providers_needed`` slots without double-booking anyone.

Assignment checks, in order:
  1. Slots full       -> SlotsFullError
  2. Already assigned -> AlreadyAssignedError  (unique booking/provider row)
  3. Schedule clash   -> ScheduleConflictError (another non-cancelled booking
                         overlapping the window)

The slot counter is only ever changed by a conditional UPDATE
(``providers_assigned < providers_needed``), so two concurrent assignments
cannot overfill a booking. Filling the last slot confirms the booking;
freeing a slot on a confirmed booking reverts it to ``pending``.

Key functions:
  - list_candidates   -- ranked candidates, partitioned by category match
  - assign_provider   -- claim one slot
  - unassign_provider -- release one or all slots
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.algorithms.providerRanking import RankingCandidate, rank_providers
from escrowbook.core.errors import (
    AlreadyAssignedError,
    InvalidStateError,
    NotFoundError,
    ScheduleConflictError,
    SlotsFullError,
    StaleStateError,
)
from escrowbook.models import Booking, BookingProvider, BookingStatus, ProviderProfile
from escrowbook.services import bookingService
from escrowbook.services.bookingStateManager import ActorType
from escrowbook.services.compareAndSet import compare_and_set

logger = logging.getLogger(__name__)

_ASSIGNABLE_STATUSES = (BookingStatus.PENDING, BookingStatus.CONFIRMED)


@dataclass
class Candidate:
    provider_id: uuid.UUID
    display_name: str
    category_match: bool
    available: bool
    score: float
    rating: float
    completed_jobs: int
    conflict_reason: Optional[str] = None


@dataclass
class CandidateList:
    matching: list[Candidate] = field(default_factory=list)
    other: list[Candidate] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Schedule checks
# ---------------------------------------------------------------------------

async def find_schedule_conflict(
    db: AsyncSession,
    booking: Booking,
    provider_id: uuid.UUID,
) -> Optional[Booking]:
    """Another non-cancelled booking of ``provider_id`` overlapping ``booking``'s window."""
    return await db.scalar(
        select(Booking)
        .join(BookingProvider, BookingProvider.booking_id == Booking.id)
        .where(
            BookingProvider.provider_id == provider_id,
            Booking.id != booking.id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.scheduled_start < booking.scheduled_end,
            Booking.scheduled_end > booking.scheduled_start,
        )
        .order_by(Booking.scheduled_start)
        .limit(1)
    )


async def _busy_provider_ids(db: AsyncSession, booking: Booking) -> dict[uuid.UUID, str]:
    """Provider id -> number of the first booking that clashes with ``booking``."""
    result = await db.execute(
        select(BookingProvider.provider_id, Booking.booking_number)
        .join(Booking, BookingProvider.booking_id == Booking.id)
        .where(
            Booking.id != booking.id,
            Booking.status != BookingStatus.CANCELLED,
            Booking.scheduled_start < booking.scheduled_end,
            Booking.scheduled_end > booking.scheduled_start,
        )
        .order_by(Booking.scheduled_start)
    )
    busy: dict[uuid.UUID, str] = {}
    for provider_id, booking_number in result.all():
        busy.setdefault(provider_id, booking_number)
    return busy


# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------

async def list_candidates(db: AsyncSession, booking: Booking) -> CandidateList:
    """Active, approved providers not yet on ``booking``, ranked.

    ``matching`` holds providers serving the booking's category, ``other``
    everyone else. Within each list available providers come first, in
    ranking order; unavailable ones carry a ``conflict_reason``.
    """
    assigned = set(
        (await db.execute(
            select(BookingProvider.provider_id).where(BookingProvider.booking_id == booking.id)
        )).scalars().all()
    )
    providers = (await db.execute(
        select(ProviderProfile).where(
            ProviderProfile.is_active.is_(True),
            ProviderProfile.is_approved.is_(True),
        )
    )).scalars().all()
    providers = [p for p in providers if p.id not in assigned]
    busy = await _busy_provider_ids(db, booking)

    ranked = rank_providers([
        RankingCandidate(provider_id=p.id, rating=float(p.rating), completed_jobs=p.completed_jobs)
        for p in providers
    ])
    by_id = {p.id: p for p in providers}

    candidates = CandidateList()
    ordered: list[Candidate] = []
    for r in ranked:
        provider = by_id[r.provider_id]
        clash = busy.get(provider.id)
        ordered.append(
            Candidate(
                provider_id=provider.id,
                display_name=provider.display_name,
                category_match=any(c.id == booking.category_id for c in provider.categories),
                available=clash is None,
                score=r.score,
                rating=r.rating,
                completed_jobs=r.completed_jobs,
                conflict_reason=f"Already booked for {clash} in this time window" if clash else None,
            )
        )
    ordered.sort(key=lambda c: not c.available)

    for candidate in ordered:
        (candidates.matching if candidate.category_match else candidates.other).append(candidate)

    logger.info(
        "Candidates for booking %s: %d matching, %d other, %d busy",
        booking.id,
        len(candidates.matching),
        len(candidates.other),
        sum(1 for c in ordered if not c.available),
    )
    return candidates


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

def _slots_full(booking: Booking) -> SlotsFullError:
    return SlotsFullError(
        f"Booking {booking.booking_number} already has all {booking.providers_needed} "
        "providers assigned.",
        booking_id=str(booking.id),
    )


async def assign_provider(
    db: AsyncSession,
    booking: Booking,
    provider_id: uuid.UUID,
    service_id: uuid.UUID | None = None,
    notes: str | None = None,
) -> BookingProvider:
    """Assign ``provider_id`` to one of ``booking``'s open slots.

    Raises:
        SlotsFullError: No open slot, including when a concurrent assignment
            took the last one.
        AlreadyAssignedError: The provider is already on this booking.
        ScheduleConflictError: The provider is booked elsewhere in the window.
        InvalidStateError: Booking not assignable or provider inactive.
        NotFoundError: Unknown provider.
    """
    if booking.providers_assigned >= booking.providers_needed:
        raise _slots_full(booking)
    if booking.status not in _ASSIGNABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot assign providers to a '{booking.status.value}' booking.",
            booking_id=str(booking.id),
        )

    provider = await db.get(ProviderProfile, provider_id)
    if provider is None:
        raise NotFoundError("ProviderProfile", provider_id)
    if not provider.is_active or not provider.is_approved:
        raise InvalidStateError(
            f"Provider {provider.display_name} is not active and approved.",
            provider_id=str(provider_id),
        )

    existing = await db.scalar(
        select(BookingProvider.id).where(
            BookingProvider.booking_id == booking.id,
            BookingProvider.provider_id == provider_id,
        )
    )
    if existing is not None:
        raise AlreadyAssignedError(
            f"Provider {provider.display_name} is already assigned to booking {booking.booking_number}.",
            booking_id=str(booking.id),
            provider_id=str(provider_id),
        )

    clash = await find_schedule_conflict(db, booking, provider_id)
    if clash is not None:
        raise ScheduleConflictError(
            f"Provider {provider.display_name} is already booked for {clash.booking_number} "
            "in this time window.",
            booking_id=str(booking.id),
            provider_id=str(provider_id),
            conflicting_booking_id=str(clash.id),
        )

    assignment = BookingProvider(
        booking_id=booking.id,
        provider_id=provider_id,
        service_id=service_id,
        notes=notes,
    )
    try:
        async with db.begin_nested():
            db.add(assignment)
            await db.flush()
            claimed = await compare_and_set(
                db,
                booking,
                _ASSIGNABLE_STATUSES,
                {"providers_assigned": Booking.providers_assigned + 1},
                extra_criteria=(Booking.providers_assigned < Booking.providers_needed,),
            )
            if not claimed:
                raise _slots_full(booking)
    except IntegrityError as exc:
        raise AlreadyAssignedError(
            f"Provider {provider.display_name} is already assigned to booking {booking.booking_number}.",
            booking_id=str(booking.id),
            provider_id=str(provider_id),
        ) from exc
    await db.refresh(booking)

    logger.info(
        "Provider %s assigned to booking %s (%d/%d)",
        provider_id,
        booking.id,
        booking.providers_assigned,
        booking.providers_needed,
    )

    if booking.status == BookingStatus.PENDING and booking.providers_assigned >= booking.providers_needed:
        await bookingService.transition_booking(
            db,
            booking,
            BookingStatus.CONFIRMED,
            actor_type=ActorType.SYSTEM,
            note="All provider slots filled",
        )

    return assignment


async def unassign_provider(
    db: AsyncSession,
    booking: Booking,
    provider_id: uuid.UUID | None = None,
) -> list[uuid.UUID]:
    """Remove one provider, or every provider when ``provider_id`` is None.

    A confirmed booking left with open slots reverts to ``pending``.

    Returns:
        Ids of the providers removed.

    Raises:
        NotFoundError: ``provider_id`` is not assigned to the booking.
        InvalidStateError: Work has started or the booking is terminal.
    """
    if booking.status not in _ASSIGNABLE_STATUSES:
        raise InvalidStateError(
            f"Cannot unassign providers from a '{booking.status.value}' booking.",
            booking_id=str(booking.id),
        )

    criteria = [BookingProvider.booking_id == booking.id]
    if provider_id is not None:
        criteria.append(BookingProvider.provider_id == provider_id)
    removed = list(
        (await db.execute(select(BookingProvider.provider_id).where(*criteria))).scalars().all()
    )
    if not removed:
        if provider_id is not None:
            raise NotFoundError("BookingProvider", provider_id)
        return []

    await db.execute(delete(BookingProvider).where(*criteria))
    updated = await compare_and_set(
        db,
        booking,
        _ASSIGNABLE_STATUSES,
        {"providers_assigned": Booking.providers_assigned - len(removed)},
        extra_criteria=(Booking.providers_assigned >= len(removed),),
    )
    if not updated:
        raise StaleStateError(
            f"Booking {booking.booking_number} changed before providers could be unassigned.",
            booking_id=str(booking.id),
        )

    logger.info(
        "Unassigned %d provider(s) from booking %s (%d/%d)",
        len(removed),
        booking.id,
        booking.providers_assigned,
        booking.providers_needed,
    )

    if booking.status == BookingStatus.CONFIRMED and booking.providers_assigned < booking.providers_needed:
        await bookingService.transition_booking(
            db,
            booking,
            BookingStatus.PENDING,
            actor_type=ActorType.SYSTEM,
            note="Provider slot reopened",
        )

    return removed
