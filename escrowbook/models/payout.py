"""
SQLAlchemy models for payouts and payout_events.

One payout per booking, enforced by the unique ``booking_id``. The amount
columns and ``payout_scheduled_at`` are written once at creation.
"""

import enum
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

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
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, enum_column_type, utcnow


class PayoutStatus(str, enum.Enum):
    AWAITING_PAYMENT = "awaiting_payment"  # client has not paid into escrow yet
    PENDING = "pending"                    # settlement delay running
    READY = "ready"
    PROCESSING = "processing"              # claimed, transfer in flight
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Payout(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "payouts"
    __table_args__ = (
        CheckConstraint(
            "payout_amount = total_amount - commission_amount",
            name="ck_payouts_payout_amount",
        ),
        CheckConstraint("commission_amount >= 0", name="ck_payouts_commission_non_negative"),
        CheckConstraint("payout_amount >= 0", name="ck_payouts_payout_non_negative"),
        Index("ix_payouts_status_scheduled", "status", "payout_scheduled_at"),
        Index("ix_payouts_provider_status", "provider_id", "status"),
    )

    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Amounts
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    payout_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal("30")
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    status: Mapped[PayoutStatus] = mapped_column(
        enum_column_type(PayoutStatus, "payout_status"),
        nullable=False,
        default=PayoutStatus.PENDING,
    )

    # Transfer gateway
    reference: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    recipient: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transfer_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    outcome_unknown: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timeline
    service_completed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payout_scheduled_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payout_processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payout_completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    payout_failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Attempts
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<Payout(id={self.id}, booking={self.booking_id}, status={self.status}, "
            f"amount={self.payout_amount}, attempts={self.attempt_count})>"
        )


class PayoutEvent(Base):
    """Append-only audit entry for a payout state change or attempt."""

    __tablename__ = "payout_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payout_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("payouts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[Optional[PayoutStatus]] = mapped_column(
        enum_column_type(PayoutStatus, "payout_status"), nullable=True
    )
    to_status: Mapped[PayoutStatus] = mapped_column(
        enum_column_type(PayoutStatus, "payout_status"), nullable=False
    )
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<PayoutEvent(payout={self.payout_id}, {self.from_status} -> {self.to_status})>"
