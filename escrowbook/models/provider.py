"""
SQLAlchemy models for provider_profiles and the provider_categories
association table.
"""

import enum
import uuid
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    Boolean,
    Column,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, TimestampMixin, UUIDPrimaryKeyMixin, enum_column_type
from .catalog import ServiceCategory


class PayoutMethod(str, enum.Enum):
    BANK = "bank"
    MPESA = "mpesa"
    STRIPE = "stripe"


provider_categories = Table(
    "provider_categories",
    Base.metadata,
    Column(
        "provider_id",
        Uuid,
        ForeignKey("provider_profiles.id", ondelete="CASCADE"),
        primary_key=True,
    ),
    Column(
        "category_id",
        Uuid,
        ForeignKey("service_categories.id", ondelete="CASCADE"),
        primary_key=True,
    ),
)


class ProviderProfile(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "provider_profiles"

    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    display_name: Mapped[str] = mapped_column(String(200), nullable=False)

    # Eligibility
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Reputation (ranking inputs)
    rating: Mapped[Decimal] = mapped_column(Numeric(3, 2), nullable=False, default=Decimal("0"))
    completed_jobs: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Payout destination
    payout_method: Mapped[Optional[PayoutMethod]] = mapped_column(
        enum_column_type(PayoutMethod, "payout_method"), nullable=True
    )
    payout_recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Account the recipient is created from; the M-Pesa number for mpesa
    payout_account_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    payout_account_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    payout_bank_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    categories: Mapped[list[ServiceCategory]] = relationship(
        ServiceCategory, secondary=provider_categories, lazy="selectin"
    )

    def __repr__(self) -> str:
        return (
            f"<ProviderProfile(id={self.id}, name={self.display_name}, "
            f"rating={self.rating}, jobs={self.completed_jobs})>"
        )
