"""
Pytest configuration and shared fixtures.
Adds the repo root to sys.path so tests can import velto without installing it.
"""

import sys
from pathlib import Path

import pytest
from prometheus_client import CollectorRegistry

repo_root = Path(__file__).parent.parent
if str(repo_root) not in sys.path:
    sys.path.insert(0, str(repo_root))

from velto.core.types import ContractInfo, MarketState  # noqa: E402
from velto.monitoring.metrics import TradingMetrics  # noqa: E402

WAD = 10**18

ENGINE = "0x1111111111111111111111111111111111111111"
VAMM = "0x2222222222222222222222222222222222222222"
REGISTRY = "0x3333333333333333333333333333333333333333"
TOKEN = "0x4444444444444444444444444444444444444444"
USER = "0x5555555555555555555555555555555555555555"
OTHER = "0x6666666666666666666666666666666666666666"


def make_state(base=1000, quote=1000, mark=None, long_oi=0, short_oi=0) -> MarketState:
    """Snapshot from human reserve values; mark defaults to quote/base."""
    base_raw = int(base * WAD)
    quote_raw = int(quote * WAD)
    mark_raw = int(mark * WAD) if mark is not None else quote_raw * WAD // base_raw
    return MarketState(
        mark_price=mark_raw,
        base_reserve=base_raw,
        quote_reserve=quote_raw,
        long_oi=int(long_oi * WAD),
        short_oi=int(short_oi * WAD),
    )


def registry_tuple(pid=1, user=USER, is_long=True, base_size=5, entry_price=100,
                   entry_notional=500, margin=100, status=1, realized_pnl=0):
    """getPosition output in registry field order."""
    return (
        pid,
        user,
        is_long,
        int(base_size * WAD),
        int(entry_price * WAD),
        int(entry_notional * WAD),
        int(margin * WAD),
        0,
        123,
        status,
        realized_pnl,
    )


def log_entry(pid, user=USER):
    return {"args": {"positionId": pid, "user": user}}


@pytest.fixture
def contracts() -> ContractInfo:
    return ContractInfo(
        market_id="m-1",
        engine=ENGINE,
        vamm=VAMM,
        position_registry=REGISTRY,
        chain_id=84532,
        deployment_block=100,
    )


@pytest.fixture
def metrics() -> TradingMetrics:
    return TradingMetrics(registry=CollectorRegistry())
