"""
SQLAlchemy models for bookings, booking_providers, booking_timeline and
booking_messages.

Timeline and message rows are append-only; nothing in the service layer
updates or deletes them.
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
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base, JSONType, TimestampMixin, UTCDateTime, UUIDPrimaryKeyMixin, enum_column_type, utcnow
from .catalog import ServiceType


class BookingStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    DISPUTED = "disputed"


class PaymentMethod(str, enum.Enum):
    CARD = "card"
    MPESA = "mpesa"
    CASH = "cash"
    BANK_TRANSFER = "bank-transfer"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"


class MessageType(str, enum.Enum):
    MESSAGE = "message"
    SYSTEM = "system"
    STATUS_UPDATE = "status-update"


class Booking(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    __tablename__ = "bookings"
    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_bookings_total_amount_non_negative"),
        CheckConstraint("providers_needed >= 1", name="ck_bookings_providers_needed_positive"),
        CheckConstraint(
            "providers_assigned >= 0 AND providers_assigned <= providers_needed",
            name="ck_bookings_providers_assigned_range",
        ),
        CheckConstraint(
            "rating IS NULL OR (rating >= 1 AND rating <= 5)",
            name="ck_bookings_rating_range",
        ),
        Index("ix_bookings_client_created", "client_id", "created_at"),
        Index("ix_bookings_status", "status"),
        Index("ix_bookings_scheduled_start", "scheduled_start"),
    )

    booking_number: Mapped[str] = mapped_column(String(20), unique=True, nullable=False)
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)

    # Polymorphic service reference (see serviceCatalog.ServiceRef)
    service_type: Mapped[ServiceType] = mapped_column(
        enum_column_type(ServiceType, "service_type"),
        nullable=False,
        default=ServiceType.PROVIDER,
    )
    service_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    category_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_categories.id", ondelete="RESTRICT"), nullable=False
    )

    status: Mapped[BookingStatus] = mapped_column(
        enum_column_type(BookingStatus, "booking_status"),
        nullable=False,
        default=BookingStatus.PENDING,
    )

    # Capacity
    providers_needed: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    providers_assigned: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Scheduling window
    scheduled_start: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    scheduled_end: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    # Location
    address: Mapped[str] = mapped_column(Text, nullable=False)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    zip_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    latitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    longitude: Mapped[Decimal] = mapped_column(Numeric(10, 7), nullable=False)
    location_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Pricing (whole currency units)
    base_price: Mapped[int] = mapped_column(BigInteger, nullable=False)
    additional_charges: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    discount_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    discount_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    discount_code_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("discount_codes.id", ondelete="SET NULL"), nullable=True
    )
    total_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="KES")

    # Payment
    payment_method: Mapped[PaymentMethod] = mapped_column(
        enum_column_type(PaymentMethod, "payment_method"), nullable=False
    )
    payment_status: Mapped[PaymentStatus] = mapped_column(
        enum_column_type(PaymentStatus, "payment_status"),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refund_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    # Notes
    client_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    internal_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Completion details
    started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    work_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completion_media: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    materials_used: Mapped[list[str]] = mapped_column(JSONType, nullable=False, default=list)

    # Cancellation
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refund_eligible: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    refund_percentage: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    cancellation_refund_amount: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    # Review
    rating: Mapped[Optional[int]] = mapped_column(SmallInteger, nullable=True)
    review_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)

    @property
    def duration_hours(self) -> Optional[float]:
        if self.started_at and self.ended_at:
            return round((self.ended_at - self.started_at).total_seconds() / 3600, 2)
        return None

    def __repr__(self) -> str:
        return (
            f"<Booking(id={self.id}, number={self.booking_number}, "
            f"status={self.status}, assigned={self.providers_assigned}/{self.providers_needed})>"
        )


class BookingProvider(Base):
    """A provider occupying one slot of a booking."""

    __tablename__ = "booking_providers"
    __table_args__ = (
        UniqueConstraint("booking_id", "provider_id", name="uq_booking_providers_booking_provider"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    service_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    assigned_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BookingProvider(booking={self.booking_id}, provider={self.provider_id})>"


class BookingTimelineEntry(Base):
    __tablename__ = "booking_timeline"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[BookingStatus] = mapped_column(
        enum_column_type(BookingStatus, "booking_status"), nullable=False
    )
    actor_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BookingTimelineEntry(booking={self.booking_id}, status={self.status})>"


class BookingMessage(Base):
    __tablename__ = "booking_messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("bookings.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sender_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    message_type: Mapped[MessageType] = mapped_column(
        enum_column_type(MessageType, "message_type"),
        nullable=False,
        default=MessageType.MESSAGE,
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<BookingMessage(booking={self.booking_id}, type={self.message_type})>"
