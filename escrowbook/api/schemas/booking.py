"""
Pydantic v2 schemas for the Booking and Assignment API.

These schemas define the public API contract for booking creation, status
transitions, cancellation, completion, messages and provider assignment.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from escrowbook.models import BookingStatus, MessageType, PaymentMethod, PaymentStatus, ServiceType
from escrowbook.services.bookingStateManager import ActorType


# ---------------------------------------------------------------------------
# Booking creation
# ---------------------------------------------------------------------------

class AdditionalCharge(BaseModel):
    description: str = Field(min_length=1, max_length=200)
    amount: int = Field(ge=0, description="Whole KES")


class BookingCreateRequest(BaseModel):
    """Request body for creating a new booking."""

    client_id: uuid.UUID
    service_type: ServiceType = Field(description="Which catalog service_id refers to")
    service_id: uuid.UUID
    scheduled_start: datetime
    scheduled_end: datetime
    providers_needed: int = Field(default=1, ge=1, le=20)

    address: str = Field(min_length=1, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    zip_code: Optional[str] = Field(default=None, max_length=20)
    latitude: Decimal = Field(ge=-90, le=90)
    longitude: Decimal = Field(ge=-180, le=180)
    location_instructions: Optional[str] = None

    additional_charges: list[AdditionalCharge] = Field(default_factory=list)
    discount_code: Optional[str] = Field(default=None, max_length=50)
    payment_method: PaymentMethod = PaymentMethod.MPESA
    client_notes: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self) -> "BookingCreateRequest":
        if self.scheduled_end <= self.scheduled_start:
            raise ValueError("scheduled_end must be after scheduled_start")
        return self


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class BookingTransitionRequest(BaseModel):
    status: BookingStatus
    actor_id: Optional[uuid.UUID] = None
    actor_type: ActorType = ActorType.SYSTEM
    note: Optional[str] = Field(default=None, max_length=1000)


class BookingCancelRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    actor_id: Optional[uuid.UUID] = None
    actor_type: ActorType = ActorType.CLIENT


class BookingCompleteRequest(BaseModel):
    actor_id: Optional[uuid.UUID] = None
    actor_type: ActorType = ActorType.PROVIDER
    work_description: Optional[str] = None
    completion_media: list[dict[str, Any]] = Field(default_factory=list)
    materials_used: list[str] = Field(default_factory=list)
    ended_at: Optional[datetime] = None
    provider_notes: Optional[str] = None


class DisputeResolutionRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)
    refund_client: bool = False
    actor_id: Optional[uuid.UUID] = None


class BookingMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=5000)
    sender_id: Optional[uuid.UUID] = None
    message_type: MessageType = MessageType.MESSAGE


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TimelineEntryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    status: BookingStatus
    actor_id: Optional[uuid.UUID] = None
    note: Optional[str] = None
    created_at: datetime


class BookingProviderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: uuid.UUID
    service_id: Optional[uuid.UUID] = None
    notes: Optional[str] = None
    assigned_at: datetime


class BookingMessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    sender_id: Optional[uuid.UUID] = None
    message: str
    message_type: MessageType
    created_at: datetime


class BookingOut(BaseModel):
    """Full booking representation returned by the API."""

    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    booking_number: str
    client_id: uuid.UUID
    service_type: ServiceType
    service_id: uuid.UUID
    category_id: uuid.UUID
    status: BookingStatus
    providers_needed: int
    providers_assigned: int

    scheduled_start: datetime
    scheduled_end: datetime
    address: str
    city: Optional[str] = None
    latitude: Decimal
    longitude: Decimal

    base_price: int
    additional_charges: list[dict[str, Any]]
    discount_amount: int
    total_amount: int
    currency: str

    payment_method: PaymentMethod
    payment_status: PaymentStatus
    paid_at: Optional[datetime] = None
    refund_amount: Optional[int] = None

    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    work_description: Optional[str] = None

    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[uuid.UUID] = None
    cancelled_at: Optional[datetime] = None
    refund_eligible: Optional[bool] = None
    refund_percentage: int = 0
    cancellation_refund_amount: int = 0

    created_at: datetime
    updated_at: datetime


class BookingDetailOut(BookingOut):
    timeline: list[TimelineEntryOut] = Field(default_factory=list)
    providers: list[BookingProviderOut] = Field(default_factory=list)


class CancellationOut(BaseModel):
    booking: BookingOut
    refund_eligible: bool
    refund_percentage: int
    refund_amount: int
    hours_before_start: float


# ---------------------------------------------------------------------------
# Assignment
# ---------------------------------------------------------------------------

class AssignProviderRequest(BaseModel):
    provider_id: uuid.UUID
    service_id: Optional[uuid.UUID] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class CandidateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    provider_id: uuid.UUID
    display_name: str
    category_match: bool
    available: bool
    conflict_reason: Optional[str] = None
    score: float
    rating: float
    completed_jobs: int


class CandidateListOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    matching: list[CandidateOut]
    other: list[CandidateOut]


class UnassignOut(BaseModel):
    booking: BookingOut
    removed_provider_ids: list[uuid.UUID]
