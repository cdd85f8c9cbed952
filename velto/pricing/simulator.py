"""
PricingSimulator: client-side mirror of the vAMM constant-product curve.

Used for pre-trade slippage previews only. The ledger's own simulate* calls
are authoritative and may differ from this mirror by rounding.

Conventions (reserves B base, Q quote, k = B*Q, mark = Q/B):
- open long, notional N:   (Q + N)(B - baseOut) = k, avg = N / baseOut
- open short, quoteOut N:  (Q - N)(B + baseIn) = k,  avg = N / baseIn
- close long, size S:      (B + S)(Q - quoteOut) = k
- close short, size S:     (B - S)(Q + quoteIn) = k

slippage = (avg - mark) / mark. A long paying above mark is positive.
unfavorable_slippage flips the sign for sells so that positive always means
the trader got a worse price than mark.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from typing import Optional

from velto.core.errors import DecodedError, ErrorCode, TradeRejected
from velto.core.json_utils import dumps
from velto.core.types import MarketState, Side

log = logging.getLogger("velto")

_PREC = 60


@dataclass(frozen=True)
class SimulatedFill:
    """One side of a simulated swap against the curve."""
    base_amount: Decimal
    quote_amount: Decimal
    avg_price: Decimal
    new_base_reserve: Decimal
    new_quote_reserve: Decimal

    @property
    def new_mark(self) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PREC
            return self.new_quote_reserve / self.new_base_reserve


@dataclass(frozen=True)
class SlippageQuote:
    side: Side
    notional: Decimal
    mark_price: Decimal
    avg_price: Decimal
    base_amount: Decimal
    slippage: Decimal
    price_after: Decimal

    @property
    def slippage_pct(self) -> Decimal:
        return self.slippage * 100

    @property
    def unfavorable_slippage(self) -> Decimal:
        return self.slippage if self.side.is_long else -self.slippage


def _insufficient_liquidity(detail: str) -> TradeRejected:
    return TradeRejected(DecodedError(
        message=f"Insufficient liquidity: {detail}",
        code=ErrorCode.INSUFFICIENT_LIQUIDITY,
    ))


def _check_reserves(base: Decimal, quote: Decimal) -> None:
    if base <= 0 or quote <= 0:
        raise _insufficient_liquidity("reserves must be positive")


def simulate_open_long(base: Decimal, quote: Decimal, notional: Decimal) -> SimulatedFill:
    _check_reserves(base, quote)
    if notional <= 0:
        raise ValueError("notional must be positive")
    with localcontext() as ctx:
        ctx.prec = _PREC
        k = base * quote
        new_quote = quote + notional
        new_base = k / new_quote
        base_out = base - new_base
        avg = notional / base_out
    return SimulatedFill(base_out, notional, avg, new_base, new_quote)


def simulate_open_short(base: Decimal, quote: Decimal, quote_out: Decimal) -> SimulatedFill:
    _check_reserves(base, quote)
    if quote_out <= 0:
        raise ValueError("notional must be positive")
    if quote_out >= quote:
        raise _insufficient_liquidity("short notional exceeds quote reserve")
    with localcontext() as ctx:
        ctx.prec = _PREC
        k = base * quote
        new_quote = quote - quote_out
        new_base = k / new_quote
        base_in = new_base - base
        avg = quote_out / base_in
    return SimulatedFill(base_in, quote_out, avg, new_base, new_quote)


def simulate_close_long(base: Decimal, quote: Decimal, size: Decimal) -> SimulatedFill:
    _check_reserves(base, quote)
    if size <= 0:
        raise ValueError("size must be positive")
    with localcontext() as ctx:
        ctx.prec = _PREC
        k = base * quote
        new_base = base + size
        new_quote = k / new_base
        quote_out = quote - new_quote
        avg = quote_out / size
    return SimulatedFill(size, quote_out, avg, new_base, new_quote)


def simulate_close_short(base: Decimal, quote: Decimal, size: Decimal) -> SimulatedFill:
    _check_reserves(base, quote)
    if size <= 0:
        raise ValueError("size must be positive")
    if size >= base:
        raise _insufficient_liquidity("close size exceeds base reserve")
    with localcontext() as ctx:
        ctx.prec = _PREC
        k = base * quote
        new_base = base - size
        new_quote = k / new_base
        quote_in = new_quote - quote
        avg = quote_in / size
    return SimulatedFill(size, quote_in, avg, new_base, new_quote)


class PricingSimulator:
    """
    Slippage previews against a market snapshot.

    Usage:
        sim = PricingSimulator()
        quote = sim.preview(state, Side.LONG, Decimal("100"))
        quote.slippage_pct  # ~10 for B=Q=1000
    """

    def __init__(self, invariant_tolerance: Decimal = Decimal("0.000001")) -> None:
        self._tolerance = invariant_tolerance

    def preview(self, state: MarketState, side: Side, notional: Decimal) -> SlippageQuote:
        base, quote = state.base, state.quote
        return self.preview_reserves(base, quote, side, notional)

    def preview_reserves(self, base: Decimal, quote: Decimal, side: Side, notional: Decimal) -> SlippageQuote:
        if side.is_long:
            fill = simulate_open_long(base, quote, notional)
        else:
            fill = simulate_open_short(base, quote, notional)
        with localcontext() as ctx:
            ctx.prec = _PREC
            mark = quote / base
            slippage = (fill.avg_price - mark) / mark
        return SlippageQuote(
            side=side,
            notional=notional,
            mark_price=mark,
            avg_price=fill.avg_price,
            base_amount=fill.base_amount,
            slippage=slippage,
            price_after=fill.new_mark,
        )

    def preview_close(self, state: MarketState, side: Side, size: Decimal) -> SimulatedFill:
        if side.is_long:
            return simulate_close_long(state.base, state.quote, size)
        return simulate_close_short(state.base, state.quote, size)

    def post_trade_reserves(self, state: MarketState, side: Side, notional: Decimal) -> tuple[Decimal, Decimal]:
        fill = simulate_open_long(state.base, state.quote, notional) if side.is_long else \
            simulate_open_short(state.base, state.quote, notional)
        return fill.new_base_reserve, fill.new_quote_reserve

    def check_invariant(self, state: MarketState, previous: Optional[MarketState] = None, market: str = "") -> bool:
        """
        Advisory checks: mark == Q/B, and k unchanged against ``previous``.

        Violations are logged, never raised; the ledger is authoritative.
        """
        if state.base_reserve == 0:
            return False
        ok = True
        with localcontext() as ctx:
            ctx.prec = _PREC
            implied = state.quote / state.base
            mark = state.mark
            if mark > 0 and abs(implied - mark) / mark > self._tolerance:
                ok = False
                log.warning(dumps({
                    "event": "vamm_mark_mismatch",
                    "market": market,
                    "mark": mark,
                    "implied": implied,
                }))
            if previous is not None and previous.base_reserve and previous.quote_reserve:
                k_prev = previous.base * previous.quote
                k_now = state.base * state.quote
                if abs(k_now - k_prev) / k_prev > self._tolerance:
                    ok = False
                    log.warning(dumps({
                        "event": "vamm_k_drift",
                        "market": market,
                        "k_prev": k_prev,
                        "k_now": k_now,
                    }))
        return ok
