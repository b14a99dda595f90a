"""
SQLAlchemy models for escrow_payments and escrow_events.

``commission_amount`` and ``provider_amount`` are derived columns, written
only by ``escrowService`` together with ``amount`` and ``commission_rate``.
``outcome_unknown`` marks a payment request whose gateway response never
arrived; its ``checkout_request_id`` is a placeholder until a callback or
reconciliation settles it.
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
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, enum_column_type, utcnow


class EscrowStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"
    RELEASED = "released"


class ReleaseMethod(str, enum.Enum):
    MPESA = "mpesa"
    BANK_TRANSFER = "bank_transfer"
    MANUAL = "manual"


class EscrowEventType(str, enum.Enum):
    CREATED = "created"
    PAYMENT_RECEIVED = "payment_received"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    RELEASED = "released"
    FAILED = "failed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    AMOUNT_ADJUSTED = "amount_adjusted"
    LATE_PAYMENT = "late_payment"
    RECEIPT_CONFLICT = "receipt_conflict"


class EscrowPayment(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "escrow_payments"
    __table_args__ = (
        CheckConstraint("amount >= 1", name="ck_escrow_payments_amount_positive"),
        CheckConstraint(
            "commission_rate >= 0 AND commission_rate <= 1",
            name="ck_escrow_payments_commission_rate_range",
        ),
        CheckConstraint(
            "commission_amount + provider_amount = amount",
            name="ck_escrow_payments_split_sums",
        ),
    )

    # Gateway correlation
    checkout_request_id: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    merchant_request_id: Mapped[str] = mapped_column(String(100), nullable=False)
    # NULLs never collide in a unique index, so this is unique once issued
    mpesa_receipt_number: Mapped[Optional[str]] = mapped_column(
        String(50), unique=True, nullable=True
    )

    # Payment details
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[str] = mapped_column(String(255), nullable=False)

    status: Mapped[EscrowStatus] = mapped_column(
        enum_column_type(EscrowStatus, "escrow_status"),
        nullable=False,
        default=EscrowStatus.PENDING,
        index=True,
    )
    outcome_unknown: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    result_code: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    result_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    transaction_date: Mapped[Optional[str]] = mapped_column(String(14), nullable=True)

    # Parties
    booking_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="SET NULL"), nullable=True, index=True
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    # Commission split
    commission_rate: Mapped[Decimal] = mapped_column(
        Numeric(5, 4), nullable=False, default=Decimal("0.10")
    )
    commission_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    provider_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Release
    released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    released_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    release_method: Mapped[Optional[ReleaseMethod]] = mapped_column(
        enum_column_type(ReleaseMethod, "release_method"), nullable=True
    )
    provider_payout_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Dispute
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    disputed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    dispute_resolved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    dispute_resolution: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Review
    rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    review: Mapped[Optional[str]] = mapped_column(String(1000), nullable=True)

    metadata_: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowPayment(id={self.id}, checkout={self.checkout_request_id}, "
            f"status={self.status}, amount={self.amount})>"
        )


class EscrowEvent(Base):
    """Append-only audit entry for an escrow payment."""

    __tablename__ = "escrow_events"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    escrow_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_payments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[EscrowEventType] = mapped_column(
        enum_column_type(EscrowEventType, "escrow_event_type"), nullable=False
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<EscrowEvent(escrow={self.escrow_id}, type={self.event_type})>"
