"""
Risk calculator for leveraged vAMM positions.

All arithmetic is Decimal so boundary cases (distance exactly at a bucket
threshold) resolve the same way every time.

Formulas:
- liquidation price:  long  entry * (1 - 1/leverage)
                      short entry * (1 + 1/leverage)
  Accrued funding is ignored; the ledger's liquidation check is authoritative.
- unrealized pnl:     sign * (mark - entry) * base_size * leverage
- pnl percent:        pnl / (entry * base_size) * 100
- distance:           long  (mark - liq) / liq * 100
                      short (liq - mark) / mark * 100
- bucket:             distance < high_pct -> high, < medium_pct -> medium, else low
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal, localcontext
from enum import Enum
from typing import Optional

from velto.core.errors import DecodedError, ErrorCode, TradeRejected
from velto.core.types import MarketState, Position, Side

logger = logging.getLogger(__name__)

_PREC = 60

DEFAULT_HIGH_PCT = Decimal("5")
DEFAULT_MEDIUM_PCT = Decimal("15")


class RiskBucket(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class RiskAssessment:
    """Unrealized figures for one position at one mark price."""
    position_id: int
    side: Side
    mark_price: Decimal
    entry_price: Decimal
    leverage: Decimal
    liquidation_price: Decimal
    distance_pct: Decimal
    bucket: RiskBucket
    unrealized_pnl: Decimal
    pnl_percent: Decimal

    @property
    def is_profit(self) -> bool:
        return self.unrealized_pnl >= 0

    def to_dict(self) -> dict:
        return {
            "position_id": self.position_id,
            "side": self.side.value,
            "mark_price": self.mark_price,
            "entry_price": self.entry_price,
            "leverage": self.leverage,
            "liquidation_price": self.liquidation_price,
            "distance_pct": self.distance_pct,
            "bucket": self.bucket.value,
            "unrealized_pnl": self.unrealized_pnl,
            "pnl_percent": self.pnl_percent,
        }


def _d(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


def liquidation_price(entry: Decimal, leverage: Decimal, side: Side) -> Decimal:
    entry, leverage = _d(entry), _d(leverage)
    if leverage <= 0:
        raise ValueError("leverage must be positive")
    with localcontext() as ctx:
        ctx.prec = _PREC
        step = Decimal(1) / leverage
        if side.is_long:
            return entry * (Decimal(1) - step)
        return entry * (Decimal(1) + step)


def leverage(entry_notional: Decimal, margin: Decimal) -> Decimal:
    entry_notional, margin = _d(entry_notional), _d(margin)
    if margin == 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = _PREC
        return entry_notional / margin


def unrealized_pnl(side: Side, entry: Decimal, mark: Decimal, base_size: Decimal, lev: Decimal) -> Decimal:
    with localcontext() as ctx:
        ctx.prec = _PREC
        return side.sign * (_d(mark) - _d(entry)) * _d(base_size) * _d(lev)


def pnl_percent(pnl: Decimal, entry: Decimal, base_size: Decimal) -> Decimal:
    entry, base_size = _d(entry), _d(base_size)
    investment = entry * base_size
    if investment == 0:
        return Decimal(0)
    with localcontext() as ctx:
        ctx.prec = _PREC
        return _d(pnl) / investment * 100


def distance_to_liquidation(side: Side, mark: Decimal, liq: Decimal) -> Decimal:
    mark, liq = _d(mark), _d(liq)
    with localcontext() as ctx:
        ctx.prec = _PREC
        if side.is_long:
            if liq == 0:
                # 1x long never liquidates by price
                return Decimal("Infinity")
            return (mark - liq) / liq * 100
        if mark == 0:
            return Decimal(0)
        return (liq - mark) / mark * 100


def risk_bucket(distance_pct: Decimal, high_pct: Decimal = DEFAULT_HIGH_PCT,
                medium_pct: Decimal = DEFAULT_MEDIUM_PCT) -> RiskBucket:
    distance_pct = _d(distance_pct)
    if distance_pct < _d(high_pct):
        return RiskBucket.HIGH
    if distance_pct < _d(medium_pct):
        return RiskBucket.MEDIUM
    return RiskBucket.LOW


class RiskCalculator:
    """
    Position risk figures and pre-trade leverage validation.

    Usage:
        calc = RiskCalculator(min_leverage=1, max_leverage=10)
        calc.validate_leverage(Decimal("5"))
        assessment = calc.assess(position, mark=Decimal("84"))
    """

    def __init__(
        self,
        min_leverage: Decimal | float = 1,
        max_leverage: Decimal | float = 10,
        high_pct: Decimal | float = DEFAULT_HIGH_PCT,
        medium_pct: Decimal | float = DEFAULT_MEDIUM_PCT,
    ) -> None:
        self.min_leverage = _d(min_leverage)
        self.max_leverage = _d(max_leverage)
        self.high_pct = _d(high_pct)
        self.medium_pct = _d(medium_pct)

    liquidation_price = staticmethod(liquidation_price)
    leverage = staticmethod(leverage)
    unrealized_pnl = staticmethod(unrealized_pnl)
    pnl_percent = staticmethod(pnl_percent)
    distance_to_liquidation = staticmethod(distance_to_liquidation)

    def risk_bucket(self, distance_pct: Decimal) -> RiskBucket:
        return risk_bucket(distance_pct, self.high_pct, self.medium_pct)

    def validate_leverage(self, lev: Decimal) -> Decimal:
        """Reject leverage outside configured bounds before anything is sent."""
        lev = _d(lev)
        if lev < self.min_leverage or lev > self.max_leverage:
            raise TradeRejected(DecodedError(
                message=f"Leverage {lev}x outside allowed range {self.min_leverage}x-{self.max_leverage}x",
                code=ErrorCode.INVALID_LEVERAGE,
            ))
        return lev

    def assess(self, position: Position, mark: Decimal, lev: Optional[Decimal] = None) -> RiskAssessment:
        entry = position.entry
        if lev is None:
            lev = position.leverage if position.leverage > 0 else leverage(
                Decimal(position.entry_notional), Decimal(position.margin)
            )
        if lev <= 0:
            lev = Decimal(1)
        liq = position.liquidation_price if position.liquidation_price > 0 else liquidation_price(
            entry, lev, position.side
        )
        distance = distance_to_liquidation(position.side, mark, liq)
        pnl = unrealized_pnl(position.side, entry, mark, position.size, lev)
        return RiskAssessment(
            position_id=position.id,
            side=position.side,
            mark_price=_d(mark),
            entry_price=entry,
            leverage=lev,
            liquidation_price=liq,
            distance_pct=distance,
            bucket=self.risk_bucket(distance),
            unrealized_pnl=pnl,
            pnl_percent=pnl_percent(pnl, entry, position.size),
        )

    @staticmethod
    def net_open_interest(state: MarketState) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = _PREC
            return (Decimal(state.long_oi) - Decimal(state.short_oi)).scaleb(-18)

    @staticmethod
    def open_interest_skew(state: MarketState) -> Decimal:
        """(long - short) / (long + short), 0 when there is no open interest."""
        total = state.long_oi + state.short_oi
        if total == 0:
            return Decimal(0)
        with localcontext() as ctx:
            ctx.prec = _PREC
            return Decimal(state.long_oi - state.short_oi) / Decimal(total)
