"""
Core utilities package.

This package contains the domain types, error taxonomy, fixed-point helpers,
trade context and JSON utilities.
"""

from velto.core.errors import (
    ConnectivityError,
    DecodedError,
    ErrorCode,
    MarketNotFound,
    SignatureCancelled,
    TradeRejected,
    UnsupportedOperation,
    VeltoError,
)
from velto.core.trade_context import TradeContext
from velto.core.types import (
    ContractInfo,
    ExecutionResult,
    ExecutionStatus,
    FundBalances,
    FundingSource,
    Market,
    MarketMetadata,
    MarketState,
    MarketStats24h,
    Position,
    PositionStatus,
    Side,
    TradeIntent,
)

__all__ = [
    "ConnectivityError",
    "DecodedError",
    "ErrorCode",
    "MarketNotFound",
    "SignatureCancelled",
    "TradeRejected",
    "UnsupportedOperation",
    "VeltoError",
    "TradeContext",
    "ContractInfo",
    "ExecutionResult",
    "ExecutionStatus",
    "FundBalances",
    "FundingSource",
    "Market",
    "MarketMetadata",
    "MarketState",
    "MarketStats24h",
    "Position",
    "PositionStatus",
    "Side",
    "TradeIntent",
]
