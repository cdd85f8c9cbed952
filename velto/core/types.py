"""
Domain types for markets, positions and trade execution.

Ledger quantities are kept as raw integers (18 decimals for prices, sizes,
reserves and internal balances; 6 decimals for collateral). Decimal views are
derived on demand and only rounded at the display boundary.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum, IntEnum
from typing import Optional

from velto.core.errors import DecodedError
from velto.core.fixed_point import WAD_DECIMALS, to_decimal


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @property
    def is_long(self) -> bool:
        return self is Side.LONG

    @property
    def sign(self) -> int:
        return 1 if self is Side.LONG else -1

    @classmethod
    def parse(cls, value: "str | bool | Side") -> "Side":
        if isinstance(value, Side):
            return value
        if isinstance(value, bool):
            return cls.LONG if value else cls.SHORT
        return cls(str(value).lower())


class PositionStatus(IntEnum):
    """Registry status codes."""
    NONE = 0
    OPEN = 1
    CLOSED = 2
    LIQUIDATED = 3

    @property
    def label(self) -> str:
        return self.name.lower()


class FundingSource(str, Enum):
    """Hint for where the trade amount comes from."""
    AUTO = "auto"
    INTERNAL_BALANCE = "internal_balance"
    WALLET_DEPOSIT = "wallet_deposit"


class ExecutionStatus(str, Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"          # reverted on-chain or otherwise failed after submission
    REJECTED = "rejected"      # pre-flight: validation or simulated revert, nothing sent
    CANCELLED = "cancelled"    # user declined a signature
    PENDING = "pending"        # submitted, confirmation not observed in time


@dataclass(frozen=True)
class MarketMetadata:
    id: str
    slug: str
    name: str
    description: str = ""
    logo_url: str = ""
    industry_id: Optional[str] = None


@dataclass(frozen=True)
class ContractInfo:
    market_id: str
    engine: str
    vamm: str
    position_registry: str
    chain_id: int
    deployment_block: int = 0


@dataclass(frozen=True)
class MarketState:
    """Ledger snapshot of one vAMM, raw 18-decimal integers."""
    mark_price: int
    base_reserve: int
    quote_reserve: int
    long_oi: int
    short_oi: int
    fetched_at: float = field(default_factory=time.time)

    @property
    def mark(self) -> Decimal:
        return to_decimal(self.mark_price, WAD_DECIMALS)

    @property
    def base(self) -> Decimal:
        return to_decimal(self.base_reserve, WAD_DECIMALS)

    @property
    def quote(self) -> Decimal:
        return to_decimal(self.quote_reserve, WAD_DECIMALS)

    @property
    def net_oi(self) -> int:
        return abs(self.long_oi - self.short_oi)

    def age_sec(self, now: Optional[float] = None) -> float:
        return (now if now is not None else time.time()) - self.fetched_at


@dataclass(frozen=True)
class FundBalances:
    trade_fund: int
    insurance_fund: int
    protocol_fees: int


@dataclass(frozen=True)
class MarketStats24h:
    engine: str
    high_24h: float = 0.0
    low_24h: float = 0.0
    volume_24h: float = 0.0
    change_24h: float = 0.0


@dataclass
class Market:
    metadata: MarketMetadata
    contracts: Optional[ContractInfo] = None
    state: Optional[MarketState] = None

    @property
    def slug(self) -> str:
        return self.metadata.slug

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def is_tradable(self) -> bool:
        return self.contracts is not None


@dataclass(frozen=True)
class Position:
    """A registry position; never mutated client-side."""
    id: int
    market_slug: str
    owner: str
    side: Side
    entry_price: int
    base_size: int
    margin: int
    entry_notional: int
    carry_snapshot: int
    open_block: int
    status: PositionStatus
    realized_pnl: int
    leverage: Decimal = Decimal(0)
    liquidation_price: Decimal = Decimal(0)

    @property
    def entry(self) -> Decimal:
        return to_decimal(self.entry_price, WAD_DECIMALS)

    @property
    def size(self) -> Decimal:
        return to_decimal(self.base_size, WAD_DECIMALS)

    @property
    def is_open(self) -> bool:
        return self.status is PositionStatus.OPEN


@dataclass(frozen=True)
class TradeIntent:
    market_slug: str
    side: Side
    amount: Decimal
    leverage: Decimal
    funding_source: FundingSource = FundingSource.AUTO


@dataclass
class ExecutionResult:
    status: ExecutionStatus
    tx_hash: Optional[str] = None
    position_id: Optional[int] = None
    realized_pnl: Optional[int] = None
    path: Optional[str] = None
    error: Optional[DecodedError] = None

    @property
    def ok(self) -> bool:
        return self.status is ExecutionStatus.CONFIRMED

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "tx_hash": self.tx_hash,
            "position_id": self.position_id,
            "realized_pnl": self.realized_pnl,
            "path": self.path,
            "error": self.error.to_dict() if self.error else None,
        }
