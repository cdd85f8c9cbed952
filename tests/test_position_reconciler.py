"""
Tests for open-position derivation from lifecycle logs.
"""

from dataclasses import replace
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import OTHER, USER, log_entry, registry_tuple
from velto.core.types import PositionStatus, Side
from velto.positions.reconciler import (
    PositionReconciler,
    derive_open_ids,
    position_from_registry,
)


def make_reader(opened, closed=(), liquidated=(), records=None):
    records = records or {}
    reader = MagicMock()

    async def get_logs(contracts, event_name, user=None, from_block=None):
        return {
            "PositionOpened": list(opened),
            "PositionClosed": list(closed),
            "PositionLiquidated": list(liquidated),
        }[event_name]

    async def get_position(contracts, pid):
        return records.get(pid, registry_tuple(pid=pid))

    reader.get_logs = AsyncMock(side_effect=get_logs)
    reader.get_position = AsyncMock(side_effect=get_position)
    return reader


class TestDeriveOpenIds:
    def test_set_difference(self):
        opened = [log_entry(1), log_entry(2), log_entry(3)]
        assert derive_open_ids(opened, [log_entry(2)], [log_entry(3)]) == [1]

    def test_duplicates_collapse_in_first_seen_order(self):
        opened = [log_entry(5), log_entry(2), log_entry(5)]
        assert derive_open_ids(opened, [], []) == [5, 2]

    def test_idempotent(self):
        opened = [log_entry(1), log_entry(2)]
        closed = [log_entry(1)]
        assert derive_open_ids(opened, closed, []) == derive_open_ids(opened, closed, [])


class TestPositionFromRegistry:
    def test_tuple_mapping(self):
        position = position_from_registry(registry_tuple(pid=7, is_long=False), "acme")
        assert position.id == 7
        assert position.side is Side.SHORT
        assert position.status is PositionStatus.OPEN
        assert position.leverage == Decimal(5)
        assert position.liquidation_price == Decimal(120)
        assert position.entry == Decimal(100)

    def test_mapping_input(self):
        names = ["id", "user", "isLong", "baseSize", "entryPrice", "entryNotional", "margin",
                 "carrySnapshot", "openBlock", "status", "realizedPnl"]
        raw = dict(zip(names, registry_tuple(pid=9)))
        position = position_from_registry(raw, "acme")
        assert position.id == 9
        assert position.owner == USER

    def test_zero_margin_has_no_liquidation_price(self):
        position = position_from_registry(registry_tuple(margin=0), "acme")
        assert position.leverage == 0
        assert position.liquidation_price == 0


class TestPositionReconciler:
    @pytest.mark.asyncio
    async def test_fetches_only_open_ids(self, contracts, metrics):
        reader = make_reader(
            opened=[log_entry(1), log_entry(2), log_entry(3)],
            closed=[log_entry(2)],
            liquidated=[log_entry(3)],
        )
        reconciler = PositionReconciler(reader, metrics=metrics, log_event_callback=lambda *a, **k: None)
        result = await reconciler.reconcile("acme", contracts, user=USER)

        assert result.open_ids == [1]
        assert [p.id for p in result.positions] == [1]
        assert result.closed_ids == {2, 3}
        reader.get_position.assert_awaited_once_with(contracts, 1)
        for call in reader.get_logs.await_args_list:
            assert call.kwargs["user"] == USER

        registry = metrics.get_registry()
        assert registry.get_sample_value("open_positions", {"market": "acme"}) == 1.0
        assert registry.get_sample_value("reconcile_ms_count", {"market": "acme"}) == 1.0

    @pytest.mark.asyncio
    async def test_drops_records_no_longer_open(self, contracts):
        events = []
        reader = make_reader(
            opened=[log_entry(1), log_entry(2)],
            records={2: registry_tuple(pid=2, status=PositionStatus.CLOSED)},
        )
        reconciler = PositionReconciler(reader, log_event_callback=lambda e, **k: events.append(e))
        positions = await reconciler.get_user_open_positions("acme", contracts, USER)

        assert [p.id for p in positions] == [1]
        assert "position_status_mismatch" in events

    @pytest.mark.asyncio
    async def test_market_scan_has_no_user_filter(self, contracts):
        reader = make_reader(opened=[log_entry(1, OTHER)], records={1: registry_tuple(pid=1, user=OTHER)})
        reconciler = PositionReconciler(reader, log_event_callback=lambda *a, **k: None)
        positions = await reconciler.get_market_open_positions("acme", contracts)

        assert positions[0].owner == OTHER
        for call in reader.get_logs.await_args_list:
            assert call.kwargs["user"] is None

    @pytest.mark.asyncio
    async def test_all_markets_isolates_failures(self, contracts):
        good = make_reader(opened=[log_entry(4)])
        reconciler = PositionReconciler(good, log_event_callback=lambda *a, **k: None)

        broken = replace(contracts, engine="0x" + "9" * 40)

        async def get_logs(c, event_name, user=None, from_block=None):
            if c.engine == broken.engine:
                raise ConnectionError("rpc down")
            return [log_entry(4)] if event_name == "PositionOpened" else []

        good.get_logs = AsyncMock(side_effect=get_logs)
        by_market = await reconciler.get_user_open_positions_all_markets(
            {"acme": contracts, "broken": broken}, USER
        )

        assert [p.id for p in by_market["acme"]] == [4]
        assert by_market["broken"] == []

    @pytest.mark.asyncio
    async def test_get_position_returns_none_on_failure(self, contracts):
        reader = MagicMock()
        reader.get_position = AsyncMock(side_effect=ConnectionError("rpc down"))
        reconciler = PositionReconciler(reader, log_event_callback=lambda *a, **k: None)
        assert await reconciler.get_position("acme", contracts, 1) is None
