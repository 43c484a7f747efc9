"""Tests for commission tiers, rounding and seller payout."""

from __future__ import annotations

from decimal import Decimal

import pytest

from plate_auction.auction.models import parse_money, to_minor_units
from plate_auction.settlement.billing import calculate_sale, commission_rate_for


class TestCommissionTiers:
    @pytest.mark.parametrize(
        "amount,rate,commission",
        [
            ("500", "10", "50"),
            ("4999", "10", "500"),
            ("5000", "8", "400"),
            ("9999", "8", "800"),
            ("10000", "7", "700"),
            ("24999", "7", "1750"),
            ("25000", "6", "1500"),
            ("49999", "6", "3000"),
            ("50000", "5", "2500"),
            ("120000", "5", "6000"),
        ],
    )
    def test_tier_boundaries(self, amount, rate, commission):
        sale = calculate_sale(Decimal(amount))
        assert sale.commission_rate == Decimal(rate)
        assert sale.commission_amount == Decimal(commission)
        assert sale.seller_payout == Decimal(amount) - Decimal(commission)

    def test_commission_rounds_half_up_to_whole_pounds(self):
        assert calculate_sale(Decimal("1005")).commission_amount == Decimal("101")
        assert calculate_sale(Decimal("1004")).commission_amount == Decimal("100")

    def test_rate_lookup_uses_inclusive_upper_bounds(self):
        assert commission_rate_for(Decimal("4999.99")) == Decimal("8")


class TestSaleBreakdown:
    def test_buyer_pays_transfer_fee_on_top(self):
        sale = calculate_sale(Decimal("7500"))
        assert sale.transfer_fee == Decimal("80")
        assert sale.buyer_total == Decimal("7580")
        assert to_minor_units(sale.buyer_total) == 758000

    def test_listing_override_rate_wins(self):
        sale = calculate_sale(Decimal("1000"), rate_override=Decimal("12"))
        assert sale.commission_rate == Decimal("12")
        assert sale.commission_amount == Decimal("120")

    def test_zero_override_falls_back_to_tiers(self):
        sale = calculate_sale(Decimal("1000"), rate_override=Decimal("0"))
        assert sale.commission_rate == Decimal("10")

    def test_listing_fee_deducted_from_payout(self):
        sale = calculate_sale(Decimal("1000"), listing_fee=Decimal("25"))
        assert sale.seller_payout == Decimal("875")

    def test_custom_transfer_fee(self):
        sale = calculate_sale(Decimal("1000"), transfer_fee=Decimal("0"))
        assert sale.buyer_total == Decimal("1000")

    @pytest.mark.parametrize("amount", ["0", "-10"])
    def test_non_positive_price_rejected(self, amount):
        with pytest.raises(ValueError):
            calculate_sale(Decimal(amount))


class TestMoneyParsing:
    @pytest.mark.parametrize("value,expected", [(7500, "7500"), ("7500.50", "7500.50"), (" 12 ", "12")])
    def test_numbers_and_numeric_strings(self, value, expected):
        assert parse_money(value) == Decimal(expected)

    @pytest.mark.parametrize("value", [True, "twelve", float("nan"), [1]])
    def test_rejects_non_numeric(self, value):
        with pytest.raises(ValueError):
            parse_money(value)

    def test_minor_units_round_half_up(self):
        assert to_minor_units(Decimal("10.005")) == 1001
