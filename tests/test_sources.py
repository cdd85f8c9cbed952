"""
Tests for the metadata store and history index facades over PostgREST.
"""

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from velto.sources.history_index import HistoryIndex, MarketRanking, PeriodStats
from velto.sources.metadata_store import MetadataStore
from velto.sources.postgrest import PostgrestClient

BASE_URL = "https://meta.example"

STARTUP = {"id": 7, "slug": "acme", "name": "Acme", "description": "", "logo_url": None, "industry_id": None}
CONTRACT_ROW = {
    "startup_id": 7,
    "perp_engine_address": "0x1111111111111111111111111111111111111111",
    "perp_market_address": "0x2222222222222222222222222222222222222222",
    "position_manager_address": "0x3333333333333333333333333333333333333333",
    "chain_id": 84532,
    "deployment_block": 100,
}


def make_client(handler) -> PostgrestClient:
    transport = httpx.MockTransport(handler)
    http = httpx.AsyncClient(base_url=BASE_URL, transport=transport)
    return PostgrestClient(BASE_URL, api_key="anon", client=http)


def quiet(*args, **kwargs):
    pass


class TestPostgrestClient:
    @pytest.mark.asyncio
    async def test_select_sends_filters_and_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["slug"] = request.url.params.get("slug")
            seen["apikey"] = request.headers.get("apikey")
            return httpx.Response(200, json=[STARTUP])

        rows = await make_client(handler).select("startups", {"slug": "eq.acme"})
        assert rows == [STARTUP]
        assert seen == {"path": "/rest/v1/startups", "slug": "eq.acme", "apikey": "anon"}

    @pytest.mark.asyncio
    async def test_shared_client_is_not_closed(self):
        http = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(lambda r: httpx.Response(200)))
        client = PostgrestClient(BASE_URL, client=http)
        await client.close()
        assert not http.is_closed
        await http.aclose()


class TestMetadataStore:
    @pytest.mark.asyncio
    async def test_market_with_contracts(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/startups"):
                return httpx.Response(200, json=[STARTUP])
            assert request.url.params.get("is_active") == "eq.true"
            return httpx.Response(200, json=[CONTRACT_ROW])

        store = MetadataStore(make_client(handler), log_event_callback=quiet)
        market = await store.get_market("acme")

        assert market.slug == "acme"
        assert market.is_tradable
        assert market.contracts.engine == CONTRACT_ROW["perp_engine_address"]
        assert market.contracts.deployment_block == 100

    @pytest.mark.asyncio
    async def test_undeployed_market_has_no_contracts(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/startups"):
                return httpx.Response(200, json=[STARTUP])
            return httpx.Response(200, json=[])

        store = MetadataStore(make_client(handler), log_event_callback=quiet)
        market = await store.get_market("acme")
        assert market is not None
        assert not market.is_tradable
        assert await store.get_market_contract_info_by_slug("acme") is None

    @pytest.mark.asyncio
    async def test_unavailable_store_degrades(self, metrics):
        events = []
        store = MetadataStore(
            make_client(lambda r: httpx.Response(503)),
            metrics=metrics,
            log_event_callback=lambda e, **k: events.append(e),
        )
        assert await store.get_market("acme") is None
        assert await store.get_all_markets() == []
        assert "metadata_unavailable" in events

    @pytest.mark.asyncio
    async def test_no_client_configured(self):
        store = MetadataStore(None)
        assert not store.available
        assert await store.get_all_markets() == []

    @pytest.mark.asyncio
    async def test_markets_by_industry(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            if request.url.path.endswith("/industries"):
                assert request.url.params.get("slug") == "eq.ai"
                return httpx.Response(200, json=[{"id": 3}])
            assert request.url.params.get("industry_id") == "eq.3"
            return httpx.Response(200, json=[STARTUP, {"name": "broken"}])

        store = MetadataStore(make_client(handler), log_event_callback=quiet)
        markets = await store.get_markets_by_industry("ai")

        assert [m.slug for m in markets] == ["acme"]
        assert seen == ["/rest/v1/industries", "/rest/v1/startups"]

    @pytest.mark.asyncio
    async def test_unknown_industry_skips_market_query(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.url.path)
            return httpx.Response(200, json=[])

        store = MetadataStore(make_client(handler), log_event_callback=quiet)
        assert await store.get_markets_by_industry("nope") == []
        assert seen == ["/rest/v1/industries"]


class TestHistoryIndex:
    @pytest.mark.asyncio
    async def test_stats_when_ready(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=[{"engine": "0xe", "high_24h": "12.5", "low_24h": 10,
                                               "volume_24h": 1000, "change_24h": -2.5}])

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        stats = await index.get_market_stats_24h("0xe")
        assert stats.high_24h == 12.5
        assert stats.change_24h == -2.5

    @pytest.mark.asyncio
    async def test_not_ready_returns_empty(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request.url.path)
            return httpx.Response(404, json={"message": "relation does not exist"})

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        assert await index.get_market_stats_24h("0xe") is None
        assert await index.get_user_trades("0xABC") == []
        assert not await index.is_ready()
        # readiness is cached, so only the first check hits the endpoint
        assert calls == ["/rest/v1/market_stats_24h"]

    @pytest.mark.asyncio
    async def test_ohlcv_candles(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/daily_stats"):
                return httpx.Response(200, json=[
                    {"bucket": "2026-01-01T00:00:00Z", "open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 10},
                    {"open": 1},
                ])
            return httpx.Response(200, json=[])

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        candles = await index.get_ohlcv("0xe", "1d")
        assert len(candles) == 1
        assert candles[0].timestamp == datetime(2026, 1, 1, tzinfo=timezone.utc)
        assert candles[0].close == 1.5

    @pytest.mark.asyncio
    async def test_ohlcv_rejects_unknown_interval(self):
        index = HistoryIndex(None)
        with pytest.raises(ValueError):
            await index.get_ohlcv("0xe", "3m")

    @pytest.mark.asyncio
    async def test_trigger_sync(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path))
            return httpx.Response(200, json={"ok": True})

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        assert await index.trigger_sync() is True
        assert seen == [("POST", "/functions/v1/sync-data")]

    @pytest.mark.asyncio
    async def test_trigger_sync_failure_is_swallowed(self):
        index = HistoryIndex(make_client(lambda r: httpx.Response(500)), log_event_callback=quiet)
        assert await index.trigger_sync() is False

    @pytest.mark.asyncio
    async def test_period_stats_call_stored_function(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            if request.method == "POST":
                seen["path"] = request.url.path
                seen["body"] = json.loads(request.content)
                return httpx.Response(200, json=[{"high": 3, "low": "1.5", "volume": 40, "change_pct": 12.5}])
            return httpx.Response(200, json=[])

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        stats = await index.get_period_stats("0xe", "W")

        assert stats == PeriodStats(high=3.0, low=1.5, volume=40.0, change_pct=12.5)
        assert seen == {"path": "/rest/v1/rpc/get_period_stats", "body": {"p_engine": "0xe", "p_interval": "W"}}

    @pytest.mark.asyncio
    async def test_period_stats_rejects_unknown_range(self):
        with pytest.raises(ValueError):
            await HistoryIndex(None).get_period_stats("0xe", "2W")

    @pytest.mark.asyncio
    async def test_7d_trend_backfills_window_start(self):
        first = datetime.now(timezone.utc) - timedelta(days=2)

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/hourly_ohlcv"):
                return httpx.Response(200, json=[
                    {"bucket": first.isoformat(), "close": 4},
                    {"bucket": (first + timedelta(hours=1)).isoformat(), "close": 5},
                ])
            return httpx.Response(200, json=[])

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        points = await index.get_7d_trend("0xe")

        assert [p.price for p in points] == [4.0, 4.0, 5.0]
        assert points[0].timestamp < first
        assert first - points[0].timestamp > timedelta(days=4)

    @pytest.mark.asyncio
    async def test_market_rankings(self):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/market_rankings"):
                return httpx.Response(200, json=[{"engine": "0xa", "total_change": "7.5"}, {"total_change": 1}])
            return httpx.Response(200, json=[])

        index = HistoryIndex(make_client(handler), log_event_callback=quiet)
        assert await index.get_market_rankings() == [MarketRanking(engine="0xa", total_change=7.5)]
