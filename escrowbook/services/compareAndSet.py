"""
Status compare-and-swap for booking, escrow and payout rows.

Every status change is a single ``UPDATE ... WHERE id = :id AND status IN
(:expected)``. If another request, the sweep or a webhook moved the row
first, no row matches and the caller decides what the lost race means.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession


async def compare_and_set(
    db: AsyncSession,
    obj: Any,
    expected: enum.Enum | Iterable[enum.Enum],
    values: dict[str, Any],
    *,
    extra_criteria: Iterable[Any] = (),
) -> bool:
    """Apply ``values`` to ``obj``'s row only while its status is ``expected``.

    Returns ``True`` if the row was updated. ``obj`` is refreshed either way,
    so the caller always sees the row's current state.
    """
    model = type(obj)
    statuses = [expected] if isinstance(expected, enum.Enum) else list(expected)
    stmt = (
        update(model)
        .where(model.id == obj.id, model.status.in_(statuses), *extra_criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    await db.refresh(obj)
    return result.rowcount == 1
