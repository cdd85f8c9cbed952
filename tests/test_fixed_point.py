"""
Tests for fixed-point helpers and JSON encoding of ledger values.
"""

from decimal import Decimal

import pytest

from velto.core.fixed_point import (
    MAX_UINT256,
    calculate_leverage,
    calculate_pnl_percentage,
    format_price,
    format_usdc,
    from_decimal,
    parse_units,
    parse_usdc,
    to_decimal,
    usdc_to_wad,
    wad_to_usdc,
)
from velto.core.json_utils import dumps, loads


class TestParseFormat:
    def test_parse_usdc(self):
        assert parse_usdc("1.5") == 1_500_000
        assert parse_usdc(Decimal("100")) == 100_000_000
        assert parse_usdc("0.000001") == 1

    def test_parse_truncates_extra_digits(self):
        assert parse_usdc("1.0000009") == 1_000_000

    def test_parse_negative_and_exponent(self):
        assert parse_units("-2.5", 18) == -2_500_000_000_000_000_000
        assert parse_units("1e-6", 6) == 1

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_units("abc", 6)

    def test_format_truncates(self):
        assert format_usdc(1_999_999) == "1.99"
        assert format_price(123_456_789_000_000_000_000) == "123.4567"
        assert format_usdc(-1_500_000) == "-1.50"


class TestConversions:
    def test_decimal_roundtrip_exact(self):
        raw = 123_456_789_012_345_678_901
        assert from_decimal(to_decimal(raw)) == raw

    def test_from_decimal_truncates(self):
        assert from_decimal(Decimal("1.9"), 0) == 1
        assert from_decimal(Decimal("-1.9"), 0) == -1

    def test_usdc_wad_scaling(self):
        assert usdc_to_wad(1_000_000) == 10**18
        assert wad_to_usdc(10**18) == 1_000_000

    def test_wad_to_usdc_round_up_covers_shortfall(self):
        shortfall = 10**12 + 1
        assert wad_to_usdc(shortfall) == 1
        assert wad_to_usdc(shortfall, round_up=True) == 2
        assert wad_to_usdc(10**12, round_up=True) == 1

    def test_leverage_and_pnl_percentage(self):
        assert calculate_leverage(100, 500) == 5.0
        assert calculate_leverage(0, 500) == 0.0
        assert calculate_pnl_percentage(25, 100) == 25.0
        assert calculate_pnl_percentage(-25, 100) == -25.0


class TestJsonUtils:
    def test_decimal_and_bytes(self):
        out = loads(dumps({"price": Decimal("1.25"), "sig": b"\x01\x02"}))
        assert out == {"price": "1.25", "sig": "0x0102"}

    def test_uint256_values_are_stringified(self):
        out = loads(dumps({"value": MAX_UINT256, "small": 7}))
        assert out["value"] == str(MAX_UINT256)
        assert out["small"] == 7
