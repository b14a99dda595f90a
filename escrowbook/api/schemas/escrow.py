"""
Pydantic v2 schemas for the Escrow Payment API.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from escrowbook.models import EscrowEventType, EscrowStatus, ReleaseMethod


class EscrowInitiateRequest(BaseModel):
    booking_id: uuid.UUID
    phone_number: str = Field(min_length=9, max_length=20, description="Client's M-Pesa number")
    amount: Optional[int] = Field(default=None, ge=1, description="Defaults to the booking total")
    description: Optional[str] = Field(default=None, max_length=200)


class EscrowDisputeRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)
    actor_id: Optional[uuid.UUID] = None


class EscrowResolveRequest(BaseModel):
    resolution: str = Field(min_length=1, max_length=2000)
    refund_client: bool = False
    actor_id: Optional[uuid.UUID] = None


class EscrowReleaseRequest(BaseModel):
    released_by: Optional[uuid.UUID] = None
    method: ReleaseMethod = ReleaseMethod.MPESA
    payout_reference: Optional[str] = Field(default=None, max_length=100)
    rating: Optional[int] = Field(default=None, ge=1, le=5)
    review: Optional[str] = Field(default=None, max_length=2000)


class EscrowEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    event_type: EscrowEventType
    description: Optional[str] = None
    data: dict
    created_at: datetime


class EscrowOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    checkout_request_id: str
    merchant_request_id: Optional[str] = None
    mpesa_receipt_number: Optional[str] = None
    amount: int
    currency: str
    commission_rate: Decimal
    commission_amount: int
    provider_amount: int
    status: EscrowStatus
    outcome_unknown: bool = False
    phone_number: str
    booking_id: Optional[uuid.UUID] = None
    client_id: Optional[uuid.UUID] = None
    provider_id: Optional[uuid.UUID] = None
    result_description: Optional[str] = None
    released_at: Optional[datetime] = None
    release_method: Optional[ReleaseMethod] = None
    provider_payout_reference: Optional[str] = None
    dispute_reason: Optional[str] = None
    disputed_at: Optional[datetime] = None
    dispute_resolution: Optional[str] = None
    rating: Optional[int] = None
    created_at: datetime
    updated_at: datetime


class EscrowDetailOut(EscrowOut):
    events: list[EscrowEventOut] = Field(default_factory=list)
