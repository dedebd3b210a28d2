"""
Fee and amount helper tests
"""

from decimal import Decimal
from unittest.mock import patch

import pytest

from config import Config
from utils.fee_calculator import FeeCalculator
from utils.helpers import (
    extract_wallet_address, generate_deal_code, is_deal_code, normalize_deal_code,
    normalize_handle, parse_amount, validate_username,
)


class TestFeeCalculator:

    @pytest.mark.parametrize("amount,fee,payout", [
        (Decimal("50"), Decimal("0.5"), Decimal("49.5")),
        (Decimal("1"), Decimal("0.01"), Decimal("0.99")),
        (Decimal("12.345678"), Decimal("0.123457"), Decimal("12.222221")),
    ])
    def test_release_split(self, amount, fee, payout):
        assert FeeCalculator.calculate_release_split(amount) == (fee, payout)

    def test_split_always_adds_up(self):
        for raw in ("0.000001", "3.333333", "499.999999", "250"):
            amount = Decimal(raw)
            fee, payout = FeeCalculator.calculate_release_split(amount)
            assert fee + payout == amount

    def test_fee_follows_configuration(self):
        with patch.object(Config, "ESCROW_FEE_PERCENTAGE", Decimal("2.5")):
            assert FeeCalculator.calculate_platform_fee(Decimal("100")) == Decimal("2.5")

    def test_token_units(self):
        assert FeeCalculator.to_token_units(Decimal("50")) == 50_000_000
        assert FeeCalculator.to_token_units(Decimal("0.0000005")) == 1

    def test_format_amount(self):
        assert FeeCalculator.format_amount(Decimal("50.000000")) == "50 USDC"
        assert FeeCalculator.format_amount(Decimal("12.5")) == "12.5 USDC"


class TestHelpers:

    def test_deal_codes(self):
        code = generate_deal_code()
        assert is_deal_code(code)
        assert not any(c in code[3:] for c in "01IO")
        assert normalize_deal_code(" dp-ab12 ") == "DP-AB12"
        assert is_deal_code("dp-ab12")
        assert not is_deal_code("DP-AB123")
        assert not is_deal_code("XX-AB12")

    def test_handles(self):
        assert normalize_handle("@Bob_Buyer") == "bob_buyer"
        assert normalize_handle(None) == ""
        assert validate_username("@bob_buyer")
        assert not validate_username("bob")
        assert not validate_username("1bob_buyer")

    def test_wallet_extraction(self):
        address = "0x" + "Ab" * 20
        assert extract_wallet_address(f"/wallet {address}") == address.lower()
        assert extract_wallet_address("/wallet 0x123") is None
        assert extract_wallet_address(None) is None

    @pytest.mark.parametrize("raw,expected", [
        ("50", Decimal("50")),
        ("$12.5", Decimal("12.5")),
        ("1,000", Decimal("1000")),
        ("abc", None),
        ("NaN", None),
        ("", None),
    ])
    def test_parse_amount(self, raw, expected):
        assert parse_amount(raw) == expected
