"""
Discount Code API Routes
========================

Routes:
  POST   /api/v1/discounts/validate   -- Check a code against an order
  POST   /api/v1/discounts            -- Create a code
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException, status

from escrowbook.api.deps import DBSession, http_error
from escrowbook.api.schemas.discount import (
    DiscountCodeOut,
    DiscountCreateRequest,
    DiscountValidateOut,
    DiscountValidateRequest,
)
from escrowbook.core.errors import DomainError
from escrowbook.services import discountService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/discounts", tags=["Discounts"])


@router.post(
    "/validate",
    response_model=DiscountValidateOut,
    summary="Validate a discount code",
    description="Validation only; the code is consumed when a booking is created with it.",
)
async def validate_code(db: DBSession, body: DiscountValidateRequest) -> DiscountValidateOut:
    code, validation = await discountService.validate_discount_code(
        db, body.code, body.user_id, body.order_amount, body.category_id
    )
    if code is None or not validation.valid:
        return DiscountValidateOut(
            valid=False,
            reason=validation.reason,
            code=code.code if code else None,
            final_amount=body.order_amount,
        )

    discount = discountService.calculate_discount(code, body.order_amount)
    return DiscountValidateOut(
        valid=True,
        code=code.code,
        discount_amount=discount,
        final_amount=body.order_amount - discount,
    )


@router.post(
    "",
    response_model=DiscountCodeOut,
    status_code=status.HTTP_201_CREATED,
    summary="Create a discount code",
)
async def create_code(db: DBSession, body: DiscountCreateRequest) -> DiscountCodeOut:
    try:
        code = await discountService.create_discount_code(
            db,
            code=body.code,
            description=body.description,
            discount_type=body.discount_type,
            discount_value=body.discount_value,
            valid_from=body.valid_from,
            valid_until=body.valid_until,
            min_order_amount=body.min_order_amount,
            max_discount=body.max_discount,
            usage_limit=body.usage_limit,
            per_user_limit=body.per_user_limit,
            applicable_categories=body.applicable_categories,
            is_festive=body.is_festive,
            created_by=body.created_by,
        )
    except DomainError as exc:
        raise http_error(exc) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    return DiscountCodeOut.model_validate(code)
