"""
Cancellation refund policy.

The refund percentage depends on how far ahead of the scheduled start a
booking is cancelled. Tiers come from ``settings.refund_tiers``: the tier
with the highest ``min_hours_before_start`` that the cancellation still
satisfies wins; cancelling after every threshold has passed refunds nothing.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from escrowbook.core.config import RefundTier, settings


@dataclass(frozen=True)
class RefundDecision:
    eligible: bool
    percentage: int
    amount: int
    hours_before_start: float


class RefundPolicy:
    def __init__(self, tiers: list[RefundTier]) -> None:
        for tier in tiers:
            if not 0 <= tier.percentage <= 100:
                raise ValueError(f"Refund percentage must be 0-100, got {tier.percentage}")
        self.tiers = sorted(tiers, key=lambda t: t.min_hours_before_start, reverse=True)

    @classmethod
    def from_settings(cls) -> RefundPolicy:
        return cls(list(settings.refund_tiers))

    def percentage_for(self, hours_before_start: float) -> int:
        for tier in self.tiers:
            if hours_before_start >= tier.min_hours_before_start:
                return tier.percentage
        return 0

    def evaluate(self, scheduled_start: datetime, cancelled_at: datetime, amount: int) -> RefundDecision:
        hours = (scheduled_start - cancelled_at).total_seconds() / 3600
        percentage = self.percentage_for(hours)
        refund = int(
            (Decimal(amount) * Decimal(percentage) / Decimal(100)).quantize(
                Decimal("1"), rounding=ROUND_HALF_UP
            )
        )
        return RefundDecision(
            eligible=percentage > 0,
            percentage=percentage,
            amount=refund,
            hours_before_start=round(hours, 2),
        )
