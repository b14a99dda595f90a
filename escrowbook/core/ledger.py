"""
Ledger value objects: money amounts and commission splits.

Amounts are whole units of the settlement currency (KES shillings, the
smallest unit M-Pesa accepts). Commission is always rounded half-up to a
whole unit and the provider share is the remainder, so
``commission + provider_share == total`` holds by construction.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal


@dataclass(frozen=True)
class Money:
    amount: int
    currency: str = "KES"

    def __post_init__(self) -> None:
        if self.amount < 0:
            raise ValueError(f"Money amount cannot be negative, got {self.amount}")

    def __add__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    def _check_currency(self, other: Money) -> None:
        if other.currency != self.currency:
            raise ValueError(f"Currency mismatch: {self.currency} vs {other.currency}")


@dataclass(frozen=True)
class CommissionSplit:
    """Platform commission and provider share of a total amount."""

    total: int
    commission: int
    provider_share: int

    def __post_init__(self) -> None:
        if self.commission + self.provider_share != self.total:
            raise ValueError("Commission split does not add up to the total")


def _round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def split_by_fraction(amount: int, rate: Decimal | float | str) -> CommissionSplit:
    """Split ``amount`` with a commission rate expressed as a fraction (0.10)."""
    rate_dec = Decimal(str(rate))
    if not Decimal("0") <= rate_dec <= Decimal("1"):
        raise ValueError(f"Commission rate must be between 0 and 1, got {rate}")
    commission = _round_half_up(Decimal(amount) * rate_dec)
    return CommissionSplit(total=amount, commission=commission, provider_share=amount - commission)


def split_by_percent(amount: int, rate_percent: Decimal | float | str) -> CommissionSplit:
    """Split ``amount`` with a commission rate expressed in percent (30)."""
    pct = Decimal(str(rate_percent))
    if not Decimal("0") <= pct <= Decimal("100"):
        raise ValueError(f"Commission percentage must be between 0 and 100, got {rate_percent}")
    return split_by_fraction(amount, pct / Decimal("100"))
