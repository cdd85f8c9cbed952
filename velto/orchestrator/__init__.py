"""
Orchestrator package - Composition layer over the ledger and off-chain sources.

This package contains the trade orchestrator (views and open/close flows),
the market poller and the TTL view cache.
"""

from velto.orchestrator.market_poller import MarketPoller, MarketPollerConfig, PollCycleResult
from velto.orchestrator.trade_orchestrator import (
    AllowanceDeposit,
    BalanceView,
    DirectBalance,
    ExecutionPlan,
    MarketView,
    OrchestratorConfig,
    PermitDeposit,
    PositionView,
    TradeOrchestrator,
    TradePreview,
)
from velto.orchestrator.view_cache import ViewCache

__all__ = [
    "MarketPoller",
    "MarketPollerConfig",
    "PollCycleResult",
    "AllowanceDeposit",
    "BalanceView",
    "DirectBalance",
    "ExecutionPlan",
    "MarketView",
    "OrchestratorConfig",
    "PermitDeposit",
    "PositionView",
    "TradeOrchestrator",
    "TradePreview",
    "ViewCache",
]
