"""
Money policy for tuition pricing.

Amounts are integer minor units of the order currency (VND has no minor unit,
so one unit is one dong). Nothing here touches floats.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from domain.billing.exceptions import InvalidAmountException


@dataclass(frozen=True)
class ScholarshipTerms:
    """Student scholarship resolved once at call time and passed explicitly."""

    percent: int = 0
    type: Optional[str] = None

    def __post_init__(self) -> None:
        _check_percent(self.percent)


@dataclass(frozen=True)
class Pricing:
    base: int
    percent: int
    discount: int
    final: int

    @property
    def fully_discounted(self) -> bool:
        return self.final == 0


def _check_non_negative(value: int, field: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmountException(field, value, reason="must be an integer amount")
    if value < 0:
        raise InvalidAmountException(field, value)


def _check_percent(percent: int) -> None:
    _check_non_negative(percent, "scholarship_percent")
    if percent > 100:
        raise InvalidAmountException("scholarship_percent", percent, reason="must be between 0 and 100")


def compute_discount(base: int, percent: int) -> int:
    """floor(base * percent / 100) with integer arithmetic."""
    _check_non_negative(base, "base_amount")
    _check_percent(percent)
    return (base * percent) // 100


def compute_final(base: int, discount: int) -> int:
    _check_non_negative(base, "base_amount")
    _check_non_negative(discount, "discount_amount")
    return max(base - discount, 0)


def price(base: int, percent: int) -> Pricing:
    discount = compute_discount(base, percent)
    return Pricing(base=base, percent=percent, discount=discount, final=compute_final(base, discount))


def line_discount_bounds(base: int, percent: int) -> tuple[int, int]:
    """A split line may carry floor or ceil of base*percent/100."""
    low = compute_discount(base, percent)
    return low, low + (1 if (base * percent) % 100 else 0)


def split_pricing(bases: Sequence[int], percent: int) -> list[Pricing]:
    """Price lines so they add up exactly to ``price(sum(bases), percent)``.

    Each line starts at its floored discount; the units lost to flooring go
    to the lines with the largest remainders (ties by position).
    """
    total_discount = compute_discount(sum(bases), percent)
    discounts = [compute_discount(b, percent) for b in bases]
    leftover = total_discount - sum(discounts)
    ranked = sorted(range(len(bases)), key=lambda i: (-((bases[i] * percent) % 100), i))
    for i in ranked[:leftover]:
        discounts[i] += 1
    return [
        Pricing(base=b, percent=percent, discount=d, final=compute_final(b, d))
        for b, d in zip(bases, discounts)
    ]


def join_subjects(subjects: Iterable[Optional[str]]) -> str:
    """De-duplicated, order independent display string for a set of subjects."""
    cleaned = {s.strip() for s in subjects if s and s.strip()}
    return ", ".join(sorted(cleaned))
