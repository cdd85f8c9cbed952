"""
Tests for ledger reads: market snapshots, fan-out isolation, log scans.
"""

from dataclasses import replace
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import USER, WAD
from velto.core.errors import UnsupportedOperation
from velto.core.types import MarketState, Side
from velto.ledger.reader import LedgerReader


def fn_returning(value):
    fn = MagicMock()
    fn.return_value.call = AsyncMock(return_value=value)
    return fn


def make_session(values=None, fail_vamm=None, token="0x4444444444444444444444444444444444444444"):
    values = values or {
        "getMarkPrice": 2 * WAD,
        "baseReserve": 1000 * WAD,
        "quoteReserve": 2000 * WAD,
        "longOpenInterest": 3 * WAD,
        "shortOpenInterest": WAD,
    }

    def contract(address, abi):
        c = MagicMock()
        for name, value in values.items():
            setattr(c.functions, name, fn_returning(value))
        if fail_vamm and address == fail_vamm:
            failing = MagicMock()
            failing.return_value.call = AsyncMock(side_effect=ConnectionError("rpc down"))
            c.functions.getMarkPrice = failing
        return c

    session = MagicMock()
    session.contract.side_effect = contract
    session.require_collateral_token.return_value = token
    if token is None:
        session.require_collateral_token.side_effect = UnsupportedOperation("no token")
    return session


class TestMarketState:
    @pytest.mark.asyncio
    async def test_snapshot(self, contracts):
        reader = LedgerReader(make_session(), log_event_callback=lambda *a, **k: None)
        state = await reader.get_market_state(contracts)

        assert isinstance(state, MarketState)
        assert state.mark == 2
        assert state.base_reserve == 1000 * WAD
        assert state.long_oi == 3 * WAD

    @pytest.mark.asyncio
    async def test_fan_out_isolates_failing_market(self, contracts, metrics):
        broken = replace(contracts, vamm="0x" + "7" * 40)
        events = []
        reader = LedgerReader(
            make_session(fail_vamm=broken.vamm),
            metrics=metrics,
            log_event_callback=lambda e, **k: events.append((e, k.get("market"))),
        )
        states = await reader.get_market_states({"acme": contracts, "broken": broken})

        assert isinstance(states["acme"], MarketState)
        assert isinstance(states["broken"], ConnectionError)
        assert ("market_read_failed", "broken") in events


class TestBalancesAndSimulation:
    @pytest.mark.asyncio
    async def test_simulate_open_picks_side(self, contracts):
        session = make_session(values={"simulateOpenShort": (5 * WAD, WAD)})
        reader = LedgerReader(session)
        base, avg = await reader.simulate_open(contracts, Side.SHORT, 100 * WAD)
        assert (base, avg) == (5 * WAD, WAD)

    @pytest.mark.asyncio
    async def test_collateral_reads_need_token(self):
        reader = LedgerReader(make_session(token=None))
        with pytest.raises(UnsupportedOperation):
            await reader.get_collateral_balance(USER)

    @pytest.mark.asyncio
    async def test_wallet_balance(self, contracts):
        reader = LedgerReader(make_session(values={"getWalletBalance": 42}))
        assert await reader.get_wallet_balance(contracts.engine, USER) == 42


class TestLogs:
    @pytest.mark.asyncio
    async def test_scan_from_deployment_block_with_user_filter(self, contracts):
        event = MagicMock()
        event.get_logs = AsyncMock(return_value=[{"args": {"positionId": 1}}])
        contract = MagicMock()
        contract.events.PositionOpened = event
        session = MagicMock()
        session.contract.return_value = contract

        logs = await LedgerReader(session).get_logs(contracts, "PositionOpened", user=USER)

        assert logs == [{"args": {"positionId": 1}}]
        event.get_logs.assert_awaited_once_with(
            argument_filters={"user": USER}, from_block=100, to_block="latest"
        )

    @pytest.mark.asyncio
    async def test_unknown_event(self, contracts):
        with pytest.raises(ValueError):
            await LedgerReader(MagicMock()).get_logs(contracts, "Transfer")
