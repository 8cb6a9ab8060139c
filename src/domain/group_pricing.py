# src/domain/group_pricing.py

from dataclasses import dataclass
from decimal import Decimal, ROUND_DOWN, ROUND_HALF_UP

CENT = Decimal("0.01")

# Inclusive thresholds, checked from the largest group down.
GROUP_DISCOUNT_TIERS: tuple[tuple[int, int], ...] = (
    (10, 15),
    (5, 10),
    (3, 5),
)


@dataclass(frozen=True)
class GroupQuote:
    quantity: int
    unit_price: Decimal
    discount_percentage: int
    discount_amount: Decimal
    base_total: Decimal
    final_total: Decimal


def to_money(value) -> Decimal:
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def discount_percentage_for(quantity: int) -> int:
    for threshold, percentage in GROUP_DISCOUNT_TIERS:
        if quantity >= threshold:
            return percentage
    return 0


def quote_group(quantity: int, unit_price) -> GroupQuote:
    """
    discount_amount = unit_price * quantity * pct / 100
    final_total = unit_price * quantity - discount_amount
    """
    price = Decimal(str(unit_price))
    percentage = discount_percentage_for(quantity)
    base_total = price * quantity
    discount_amount = to_money(base_total * percentage / Decimal(100))
    return GroupQuote(
        quantity=quantity,
        unit_price=to_money(price),
        discount_percentage=percentage,
        discount_amount=discount_amount,
        base_total=to_money(base_total),
        final_total=to_money(base_total) - discount_amount,
    )


def split_evenly(total: Decimal, parts: int) -> list[Decimal]:
    """
    Equal split in whole cents. Leftover cents from rounding go to the
    first share (the organizer) so the shares always sum to ``total``.
    """
    if parts < 1:
        raise ValueError("parts must be >= 1")
    share = (total / parts).quantize(CENT, rounding=ROUND_DOWN)
    remainder = total - share * parts
    return [share + remainder] + [share] * (parts - 1)
