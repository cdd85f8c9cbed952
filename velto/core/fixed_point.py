"""
Fixed-point helpers for ledger integers.

Collateral (USDC) uses 6 decimals. AMM reserves, prices, position sizes and
the engine's internal wallet balance use 18 decimals. Values stay as raw
integers until the display boundary; formatting truncates, it never rounds up.
"""

from __future__ import annotations

from decimal import Decimal, ROUND_DOWN, localcontext

USDC_DECIMALS = 6
WAD_DECIMALS = 18
WAD = 10**WAD_DECIMALS
MAX_UINT256 = 2**256 - 1

# Internal balances are 18-decimal, deposits are 6-decimal.
USDC_TO_INTERNAL = 10 ** (WAD_DECIMALS - USDC_DECIMALS)


def parse_units(amount: str | int | Decimal, decimals: int) -> int:
    """Parse a human amount ("1.5") into a raw integer at ``decimals``.

    Extra fractional digits beyond ``decimals`` are truncated.
    """
    text = str(amount).strip()
    negative = text.startswith("-")
    if negative:
        text = text[1:]
    if "e" in text.lower():
        text = format(Decimal(text), "f")
    whole, _, frac = text.partition(".")
    if not whole:
        whole = "0"
    if not whole.isdigit() or (frac and not frac.isdigit()):
        raise ValueError(f"Invalid amount: {amount!r}")
    frac = frac.ljust(decimals, "0")[:decimals]
    raw = int(whole) * 10**decimals + (int(frac) if frac else 0)
    return -raw if negative else raw


def format_units(raw: int, decimals: int, places: int | None = None) -> str:
    """Format a raw integer as a decimal string.

    ``places`` truncates the fractional part; ``None`` keeps every digit.
    """
    negative = raw < 0
    raw = abs(int(raw))
    whole, frac = divmod(raw, 10**decimals)
    frac_str = str(frac).rjust(decimals, "0")
    if places is not None:
        frac_str = frac_str[:places]
    text = f"{whole}.{frac_str}" if frac_str else str(whole)
    return f"-{text}" if negative else text


def to_decimal(raw: int, decimals: int = WAD_DECIMALS) -> Decimal:
    """Exact Decimal view of a raw integer."""
    with localcontext() as ctx:
        ctx.prec = 80
        return Decimal(int(raw)).scaleb(-decimals)


def from_decimal(value: Decimal | int | str, decimals: int = WAD_DECIMALS) -> int:
    """Raw integer from a Decimal, truncating toward zero."""
    with localcontext() as ctx:
        ctx.prec = 80
        scaled = Decimal(value).scaleb(decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))


def parse_usdc(amount: str | int | Decimal) -> int:
    return parse_units(amount, USDC_DECIMALS)


def format_usdc(raw: int, places: int = 2) -> str:
    return format_units(raw, USDC_DECIMALS, places)


def format_price(raw: int, places: int = 4) -> str:
    return format_units(raw, WAD_DECIMALS, places)


def usdc_to_wad(raw_usdc: int) -> int:
    return int(raw_usdc) * USDC_TO_INTERNAL


def wad_to_usdc(raw_wad: int, round_up: bool = False) -> int:
    """Convert an internal 18-decimal amount to collateral units.

    ``round_up`` is used for deposit shortfalls so the deposit always covers
    the gap.
    """
    q, r = divmod(int(raw_wad), USDC_TO_INTERNAL)
    if round_up and r:
        q += 1
    return q


def calculate_leverage(margin: int, notional: int) -> float:
    """Leverage from raw margin and notional, two decimal places."""
    if margin == 0:
        return 0.0
    return (notional * 100 // margin) / 100


def calculate_pnl_percentage(pnl: int, margin: int) -> float:
    """PnL as a percentage of margin, two decimal places."""
    if margin == 0:
        return 0.0
    sign = -1 if (pnl < 0) != (margin < 0) else 1
    return sign * (abs(pnl) * 10000 // abs(margin)) / 100
