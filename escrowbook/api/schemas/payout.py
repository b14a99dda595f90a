"""
Pydantic v2 schemas for the Payout API.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from escrowbook.models import PayoutStatus


class PayoutActionRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=1000)
    actor_id: Optional[uuid.UUID] = None


class PayoutEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: Optional[PayoutStatus] = None
    to_status: PayoutStatus
    note: Optional[str] = None
    data: dict
    created_at: datetime


class PayoutOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    booking_id: uuid.UUID
    provider_id: uuid.UUID
    total_amount: int
    commission_amount: int
    payout_amount: int
    commission_rate: Decimal
    currency: str
    status: PayoutStatus
    reference: str
    transfer_code: Optional[str] = None
    outcome_unknown: bool
    failure_reason: Optional[str] = None
    payout_scheduled_at: datetime
    payout_processed_at: Optional[datetime] = None
    payout_completed_at: Optional[datetime] = None
    payout_failed_at: Optional[datetime] = None
    attempt_count: int
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PayoutDetailOut(PayoutOut):
    events: list[PayoutEventOut] = Field(default_factory=list)
