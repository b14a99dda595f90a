"""
Pydantic v2 schemas for the Discount Code API.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from escrowbook.models import DiscountType


class DiscountValidateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    user_id: uuid.UUID
    order_amount: int = Field(ge=0)
    category_id: Optional[uuid.UUID] = None


class DiscountValidateOut(BaseModel):
    valid: bool
    reason: Optional[str] = None
    code: Optional[str] = None
    discount_amount: int = 0
    final_amount: int


class DiscountCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=50)
    description: str = Field(min_length=1)
    discount_type: DiscountType
    discount_value: Decimal = Field(ge=0)
    min_order_amount: int = Field(default=0, ge=0)
    max_discount: Optional[int] = Field(default=None, ge=0)
    valid_from: Optional[datetime] = None
    valid_until: datetime
    usage_limit: Optional[int] = Field(default=None, ge=1)
    per_user_limit: Optional[int] = Field(default=1, ge=1)
    applicable_categories: list[uuid.UUID] = Field(default_factory=list)
    is_festive: bool = False
    created_by: Optional[uuid.UUID] = None

    @model_validator(mode="after")
    def _check_value(self) -> "DiscountCreateRequest":
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discounts cannot exceed 100")
        return self


class DiscountCodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    code: str
    description: str
    discount_type: DiscountType
    discount_value: Decimal
    min_order_amount: int
    max_discount: Optional[int] = None
    valid_from: datetime
    valid_until: datetime
    usage_limit: Optional[int] = None
    used_count: int
    per_user_limit: Optional[int] = None
    applicable_categories: list[str]
    is_active: bool
    is_festive: bool
