"""
SQLAlchemy models for discount_codes and discount_redemptions.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, enum_column_type, utcnow


class DiscountType(str, enum.Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class DiscountCode(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "discount_codes"
    __table_args__ = (
        CheckConstraint("discount_value >= 0", name="ck_discount_codes_value_non_negative"),
        CheckConstraint("used_count >= 0", name="ck_discount_codes_used_count_non_negative"),
        Index("ix_discount_codes_validity", "valid_from", "valid_until"),
    )

    # Stored upper-cased and trimmed
    code: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    discount_type: Mapped[DiscountType] = mapped_column(
        enum_column_type(DiscountType, "discount_type"),
        nullable=False,
        default=DiscountType.PERCENTAGE,
    )
    discount_value: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    min_order_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    max_discount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    valid_from: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    valid_until: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Usage (NULL limit means unlimited)
    usage_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    used_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    per_user_limit: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, default=1)

    # Empty list means every category
    applicable_categories: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, index=True)
    is_festive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    def __repr__(self) -> str:
        return (
            f"<DiscountCode(code={self.code}, type={self.discount_type}, "
            f"used={self.used_count}/{self.usage_limit})>"
        )


class DiscountRedemption(Base):
    """One successful use of a code by a user.

    ``sequence`` is the user's ordinal for this code (1, 2, ...); the unique
    constraint makes two concurrent redemptions claiming the same ordinal
    collide instead of both landing.
    """

    __tablename__ = "discount_redemptions"
    __table_args__ = (
        UniqueConstraint(
            "code_id", "user_id", "sequence", name="uq_discount_redemptions_code_user_sequence"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    code_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("discount_codes.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    used_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<DiscountRedemption(code={self.code_id}, user={self.user_id}, seq={self.sequence})>"
