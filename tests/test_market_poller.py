"""
Tests for the market poller and the TTL view cache.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import make_state
from velto.orchestrator.market_poller import MarketPoller, MarketPollerConfig
from velto.orchestrator.view_cache import ViewCache


def quiet_config(interval=0.01):
    return MarketPollerConfig(poll_interval_sec=interval, log_event_callback=lambda *a, **k: None)


class TestMarketPoller:
    @pytest.mark.asyncio
    async def test_failed_market_keeps_previous_state(self, contracts, metrics):
        first = make_state(1000, 1000)
        reader = MagicMock()
        reader.get_market_states = AsyncMock(side_effect=[
            {"acme": first, "beta": make_state(500, 500)},
            {"acme": ConnectionError("rpc down"), "beta": make_state(500, 1000)},
        ])
        updates = []
        poller = MarketPoller(reader, on_update=lambda s, st: updates.append(s), metrics=metrics,
                              config=quiet_config())
        poller.set_visible({"acme": contracts, "beta": contracts})

        await poller.poll_once()
        result = await poller.poll_once()

        assert "acme" in result.failures
        assert poller.latest("acme") is first
        assert poller.latest("beta").quote_reserve == make_state(500, 1000).quote_reserve
        assert updates == ["acme", "beta", "beta"]

    @pytest.mark.asyncio
    async def test_response_after_visibility_change_is_discarded(self, contracts, metrics):
        gate = asyncio.Event()

        async def slow_read(markets):
            await gate.wait()
            return {slug: make_state() for slug in markets}

        reader = MagicMock()
        reader.get_market_states = AsyncMock(side_effect=slow_read)
        updates = []
        poller = MarketPoller(reader, on_update=lambda s, st: updates.append(s), metrics=metrics,
                              config=quiet_config())
        poller.set_visible({"acme": contracts})

        pending = asyncio.create_task(poller.poll_once())
        await asyncio.sleep(0)
        poller.set_visible({"beta": contracts})
        gate.set()
        result = await pending

        assert result.discarded
        assert updates == []
        assert poller.snapshot() == {}

    @pytest.mark.asyncio
    async def test_visibility_change_inside_handler_stops_the_cycle(self, contracts, metrics):
        reader = MagicMock()
        reader.get_market_states = AsyncMock(return_value={"acme": make_state(), "beta": make_state()})
        updates = []
        poller = None

        async def on_update(slug, state):
            updates.append(slug)
            poller.set_visible({"acme": contracts, "beta": contracts})

        poller = MarketPoller(reader, on_update=on_update, metrics=metrics, config=quiet_config())
        poller.set_visible({"acme": contracts, "beta": contracts})
        result = await poller.poll_once()

        assert result.discarded
        assert updates == ["acme"]
        assert poller.latest("beta") is None
        assert metrics.get_registry().get_sample_value("stale_responses_dropped_total") == 1.0

    @pytest.mark.asyncio
    async def test_async_update_handler_and_invariant_check(self, contracts):
        reader = MagicMock()
        reader.get_market_states = AsyncMock(return_value={"acme": make_state()})
        simulator = MagicMock()
        seen = []

        async def on_update(slug, state):
            seen.append(slug)

        poller = MarketPoller(reader, on_update=on_update, simulator=simulator, config=quiet_config())
        poller.set_visible({"acme": contracts})
        await poller.poll_once()

        assert seen == ["acme"]
        simulator.check_invariant.assert_called_once()

    @pytest.mark.asyncio
    async def test_start_and_stop(self, contracts):
        reader = MagicMock()
        reader.get_market_states = AsyncMock(return_value={"acme": make_state()})
        poller = MarketPoller(reader, config=quiet_config())
        poller.set_visible({"acme": contracts})

        poller.start()
        await asyncio.sleep(0.05)
        await poller.stop()

        assert not poller.is_running
        assert reader.get_market_states.await_count >= 1
        calls = reader.get_market_states.await_count
        await asyncio.sleep(0.03)
        assert reader.get_market_states.await_count == calls

    @pytest.mark.asyncio
    async def test_nothing_visible(self):
        reader = MagicMock()
        reader.get_market_states = AsyncMock()
        result = await MarketPoller(reader, config=quiet_config()).poll_once()
        assert result.states == {}
        reader.get_market_states.assert_not_awaited()


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestViewCache:
    def test_entries_expire(self):
        clock = FakeClock()
        cache = ViewCache(default_ttl_sec=3.0, clock=clock)
        cache.put("market:acme", "view")
        clock.now = 2.9
        assert cache.get("market:acme") == "view"
        clock.now = 3.0
        assert cache.get("market:acme") is None

    def test_invalidate_for_trade(self):
        cache = ViewCache()
        user = "0xAbC"
        cache.put(cache.positions_key(user, "acme"), 1)
        cache.put(cache.positions_key(user), 2)
        cache.put(cache.balance_key(user, "acme"), 3)
        cache.put(cache.market_key("acme"), 4)
        cache.put(cache.market_key("beta"), 5)

        assert cache.invalidate_for_trade("0xabc", "acme") == 4
        assert cache.get(cache.market_key("beta")) == 5

    @pytest.mark.asyncio
    async def test_invalidate_after_confirm_runs_hook_first(self):
        cache = ViewCache()
        cache.put(cache.market_key("acme"), 1)
        order = []

        async def hook():
            order.append(("hook", len(cache)))

        dropped = await cache.invalidate_after_confirm("0xabc", "acme", grace_sec=0, before_invalidate=hook)
        assert order == [("hook", 1)]
        assert dropped == 1
        assert len(cache) == 0

    @pytest.mark.asyncio
    async def test_invalidate_after_confirm_survives_failing_hook(self, caplog):
        cache = ViewCache()
        cache.put(cache.positions_key("0xabc", "acme"), "stale", ttl_sec=3600)
        hook = AsyncMock(side_effect=RuntimeError("boom"))

        logging.getLogger("velto").propagate = True
        with caplog.at_level(logging.WARNING, logger="velto"):
            dropped = await cache.invalidate_after_confirm("0xabc", "acme", grace_sec=0, before_invalidate=hook)

        hook.assert_awaited_once()
        assert dropped == 1
        assert cache.get(cache.positions_key("0xabc", "acme")) is None
        assert "pre_invalidate_hook_failed" in caplog.text
