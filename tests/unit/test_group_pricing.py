from decimal import Decimal

import pytest

from src.domain.group_pricing import discount_percentage_for, quote_group, split_evenly


@pytest.mark.parametrize(
    "quantity, expected",
    [(1, 0), (2, 0), (3, 5), (4, 5), (5, 10), (9, 10), (10, 15), (40, 15)],
)
def test_discount_tiers_are_inclusive(quantity, expected):
    assert discount_percentage_for(quantity) == expected


def test_five_people_at_one_hundred():
    quote = quote_group(5, Decimal("100.00"))

    assert quote.discount_percentage == 10
    assert quote.base_total == Decimal("500.00")
    assert quote.discount_amount == Decimal("50.00")
    assert quote.final_total == Decimal("450.00")


def test_pair_gets_no_discount():
    quote = quote_group(2, Decimal("49.99"))

    assert quote.discount_amount == Decimal("0.00")
    assert quote.final_total == Decimal("99.98")


def test_discount_rounds_to_cents():
    # 3 * 33.33 = 99.99, 5% = 4.9995
    quote = quote_group(3, Decimal("33.33"))

    assert quote.discount_amount == Decimal("5.00")
    assert quote.final_total == Decimal("94.99")


def test_split_evenly_gives_leftover_to_first_share():
    shares = split_evenly(Decimal("100.00"), 3)

    assert shares == [Decimal("33.34"), Decimal("33.33"), Decimal("33.33")]
    assert sum(shares) == Decimal("100.00")


def test_split_evenly_exact():
    assert split_evenly(Decimal("450.00"), 5) == [Decimal("90.00")] * 5


def test_split_evenly_rejects_zero_parts():
    with pytest.raises(ValueError):
        split_evenly(Decimal("10.00"), 0)
