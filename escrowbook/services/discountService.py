"""
Discount code validation, pricing and redemption.

Validation (``is_valid``) is a pure check over a loaded ``DiscountCode``.
Redemption is what actually consumes a use: it appends a per-user
``DiscountRedemption`` row and bumps ``used_count`` with a conditional
UPDATE, so two concurrent bookings cannot both take the last use.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from escrowbook.core.errors import DiscountCodeError, NotFoundError
from escrowbook.models import DiscountCode, DiscountRedemption, DiscountType
from escrowbook.models.base import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DiscountValidation:
    valid: bool
    reason: str | None = None


def normalize_code(code: str) -> str:
    return code.strip().upper()


def is_valid(
    code: DiscountCode,
    user_id: uuid.UUID,
    order_amount: int,
    category_id: uuid.UUID | None = None,
    now: datetime | None = None,
    *,
    user_redemptions: int = 0,
) -> DiscountValidation:
    """Check whether ``user_id`` may apply ``code`` to an order.

    ``user_redemptions`` is how many times this user has already redeemed
    the code. Checks run in a fixed order and the first failure is reported.
    """
    now = now or utcnow()

    if not code.is_active:
        return DiscountValidation(False, "This discount code is no longer active")
    if now < code.valid_from:
        return DiscountValidation(False, "This discount code is not yet active")
    if now > code.valid_until:
        return DiscountValidation(False, "This discount code has expired")
    if code.usage_limit is not None and code.used_count >= code.usage_limit:
        return DiscountValidation(False, "This discount code has reached its usage limit")
    if order_amount < code.min_order_amount:
        return DiscountValidation(
            False, f"Minimum order amount of KES {code.min_order_amount} required"
        )
    if code.per_user_limit is not None and user_redemptions >= code.per_user_limit:
        return DiscountValidation(False, "You have already used this discount code")
    if code.applicable_categories and (
        category_id is None or str(category_id) not in code.applicable_categories
    ):
        return DiscountValidation(False, "This discount code is not applicable for this service category")

    return DiscountValidation(True)


def calculate_discount(code: DiscountCode, amount: int) -> int:
    """Whole-unit discount for ``amount``; never more than the amount itself."""
    if code.discount_type == DiscountType.PERCENTAGE:
        raw = Decimal(amount) * Decimal(code.discount_value) / Decimal(100)
        discount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        if code.max_discount is not None:
            discount = min(discount, code.max_discount)
    else:
        discount = int(Decimal(code.discount_value).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(discount, amount))


async def get_discount_code(db: AsyncSession, code: str) -> Optional[DiscountCode]:
    return await db.scalar(select(DiscountCode).where(DiscountCode.code == normalize_code(code)))


async def count_user_redemptions(db: AsyncSession, code_id: uuid.UUID, user_id: uuid.UUID) -> int:
    count = await db.scalar(
        select(func.count(DiscountRedemption.id)).where(
            DiscountRedemption.code_id == code_id,
            DiscountRedemption.user_id == user_id,
        )
    )
    return int(count or 0)


async def validate_discount_code(
    db: AsyncSession,
    code: str,
    user_id: uuid.UUID,
    order_amount: int,
    category_id: uuid.UUID | None = None,
    now: datetime | None = None,
) -> tuple[Optional[DiscountCode], DiscountValidation]:
    """Look up ``code`` and validate it for this user and order."""
    discount = await get_discount_code(db, code)
    if discount is None:
        return None, DiscountValidation(False, "Invalid discount code")
    redemptions = await count_user_redemptions(db, discount.id, user_id)
    return discount, is_valid(
        discount, user_id, order_amount, category_id, now, user_redemptions=redemptions
    )


async def redeem_discount_code(
    db: AsyncSession,
    code: DiscountCode,
    user_id: uuid.UUID,
    booking_id: uuid.UUID | None = None,
) -> DiscountRedemption:
    """Consume one use of ``code`` for ``user_id``.

    Raises:
        DiscountCodeError: The per-user limit or the global usage limit has
            been reached, possibly by a concurrent redemption.
    """
    used = await count_user_redemptions(db, code.id, user_id)
    if code.per_user_limit is not None and used >= code.per_user_limit:
        raise DiscountCodeError("You have already used this discount code", code=code.code)

    redemption = DiscountRedemption(
        code_id=code.id,
        user_id=user_id,
        booking_id=booking_id,
        sequence=used + 1,
    )
    try:
        async with db.begin_nested():
            db.add(redemption)
            await db.flush()
    except IntegrityError as exc:
        raise DiscountCodeError("You have already used this discount code", code=code.code) from exc

    result = await db.execute(
        update(DiscountCode)
        .where(
            DiscountCode.id == code.id,
            or_(DiscountCode.usage_limit.is_(None), DiscountCode.used_count < DiscountCode.usage_limit),
        )
        .values(used_count=DiscountCode.used_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.delete(redemption)
        await db.flush()
        await db.refresh(code)
        raise DiscountCodeError("This discount code has reached its usage limit", code=code.code)
    await db.refresh(code)

    logger.info(
        "Discount code %s redeemed by user %s (booking=%s, used=%d/%s)",
        code.code,
        user_id,
        booking_id,
        code.used_count,
        code.usage_limit,
    )
    return redemption


async def create_discount_code(
    db: AsyncSession,
    *,
    code: str,
    description: str,
    discount_type: DiscountType,
    discount_value: Decimal | float,
    valid_until: datetime,
    valid_from: datetime | None = None,
    min_order_amount: int = 0,
    max_discount: int | None = None,
    usage_limit: int | None = None,
    per_user_limit: int | None = 1,
    applicable_categories: list[uuid.UUID] | None = None,
    is_festive: bool = False,
    created_by: uuid.UUID | None = None,
) -> DiscountCode:
    normalized = normalize_code(code)
    if not normalized:
        raise ValueError("Discount code must not be empty")
    value = Decimal(str(discount_value))
    if value < 0 or (discount_type == DiscountType.PERCENTAGE and value > 100):
        raise ValueError(f"Invalid discount value {value} for {discount_type.value} code")
    valid_from = valid_from or utcnow()
    if valid_until <= valid_from:
        raise ValueError("valid_until must be after valid_from")

    if await get_discount_code(db, normalized) is not None:
        raise DiscountCodeError(f"Discount code {normalized} already exists", code=normalized)

    discount = DiscountCode(
        code=normalized,
        description=description,
        discount_type=discount_type,
        discount_value=value,
        min_order_amount=min_order_amount,
        max_discount=max_discount,
        valid_from=valid_from,
        valid_until=valid_until,
        usage_limit=usage_limit,
        used_count=0,
        per_user_limit=per_user_limit,
        applicable_categories=[str(c) for c in applicable_categories or []],
        is_active=True,
        is_festive=is_festive,
        created_by=created_by,
    )
    db.add(discount)
    await db.flush()
    logger.info("Discount code %s created (%s %s)", normalized, discount_type.value, value)
    return discount


async def get_festive_codes(db: AsyncSession, now: datetime | None = None) -> list[DiscountCode]:
    """Active festive codes whose validity window contains ``now``."""
    now = now or utcnow()
    result = await db.execute(
        select(DiscountCode)
        .where(
            DiscountCode.is_festive.is_(True),
            DiscountCode.is_active.is_(True),
            DiscountCode.valid_from <= now,
            DiscountCode.valid_until >= now,
        )
        .order_by(DiscountCode.valid_until)
    )
    return list(result.scalars().all())


async def get_discount_code_or_404(db: AsyncSession, code: str) -> DiscountCode:
    discount = await get_discount_code(db, code)
    if discount is None:
        raise NotFoundError("DiscountCode", normalize_code(code))
    return discount
