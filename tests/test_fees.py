from decimal import Decimal

import pytest

from app.services.payments import compute_fees, format_money, to_money
from app.services.psp_stripe import from_minor_units, to_minor_units


@pytest.mark.parametrize(
    "amount, fee, provider",
    [
        ("500.00", "50.00", "450.00"),
        ("100.00", "10.00", "90.00"),
        ("0.05", "0.01", "0.04"),
        ("33.33", "3.33", "30.00"),
        ("70.00", "7.00", "63.00"),
    ],
)
def test_fee_split_always_adds_up(amount, fee, provider):
    platform_fee, provider_amount = compute_fees(Decimal(amount), Decimal("0.10"))
    assert platform_fee == Decimal(fee)
    assert provider_amount == Decimal(provider)
    assert platform_fee + provider_amount == Decimal(amount)


def test_fee_rate_defaults_to_settings():
    fee, provider_amount = compute_fees(Decimal("200"))
    assert fee == Decimal("20.00")
    assert provider_amount == Decimal("180.00")


def test_money_rounds_half_up():
    assert to_money("10.005") == Decimal("10.01")
    assert to_money(3) == Decimal("3.00")


def test_minor_unit_conversion():
    assert to_minor_units(Decimal("12.345")) == 1235
    assert to_minor_units("0.10") == 10
    assert from_minor_units(7000) == Decimal("70.00")


def test_format_money_uses_currency_symbol():
    assert format_money(Decimal("40"), "MYR") == "RM40.00"
    assert format_money(Decimal("40"), "usd") == "40.00 USD"
