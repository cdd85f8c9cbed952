"""
Tests for settings loading, logging helpers, nonce allocation, trace context
and metrics registration.
"""

import asyncio
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest
from prometheus_client import CollectorRegistry
from web3 import Web3

from velto.config.config import PRODUCTION_PERMIT_DEADLINE_SEC, TESTNET_PERMIT_DEADLINE_SEC, Settings
from velto.core.errors import ConnectivityError
from velto.core.json_utils import loads
from velto.core.trade_context import TradeContext
from velto.infra.logging_cfg import JsonFormatter, ThrottledFilter
from velto.infra.nonce import NonceCoordinator
from velto.ledger.session import SessionContext
from velto.monitoring.metrics import TradingMetrics

TEST_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"


@pytest.fixture
def clean_env(monkeypatch):
    for key in ("VELTO_PRODUCTION", "VELTO_PERMIT_DEADLINE_SEC", "VELTO_PRIVATE_KEY", "VELTO_USER_ADDRESS",
                "VELTO_MIN_LEVERAGE", "VELTO_MAX_LEVERAGE", "VELTO_METADATA_KEY", "VELTO_POLL_INTERVAL_SEC",
                "VELTO_RISK_HIGH_PCT", "VELTO_RISK_MEDIUM_PCT"):
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


class TestSettings:
    def test_defaults(self, clean_env):
        cfg = Settings.load()
        assert cfg.permit_deadline_sec == TESTNET_PERMIT_DEADLINE_SEC
        assert cfg.min_leverage == 1.0 and cfg.max_leverage == 10.0
        assert cfg.private_key is None

    def test_production_deadline(self, clean_env):
        clean_env.setenv("VELTO_PRODUCTION", "true")
        assert Settings.load().permit_deadline_sec == PRODUCTION_PERMIT_DEADLINE_SEC

    def test_invalid_leverage_bounds(self, clean_env):
        clean_env.setenv("VELTO_MIN_LEVERAGE", "5")
        clean_env.setenv("VELTO_MAX_LEVERAGE", "2")
        with pytest.raises(ValueError):
            Settings.load()

    def test_invalid_risk_thresholds(self, clean_env):
        clean_env.setenv("VELTO_RISK_HIGH_PCT", "20")
        with pytest.raises(ValueError):
            Settings.load()

    def test_secrets_masked_and_account_resolved(self, clean_env):
        clean_env.setenv("VELTO_PRIVATE_KEY", TEST_KEY)
        clean_env.setenv("VELTO_METADATA_KEY", "anon-key")
        cfg = Settings.load()
        dumped = cfg.dump()
        assert dumped["private_key"] == "***"
        assert dumped["metadata_key"] == "***"
        assert cfg.resolve_account().startswith("0x")
        assert cfg.resolve_signer().address == cfg.resolve_account()

    def test_read_only_account_requires_address(self, clean_env):
        with pytest.raises(RuntimeError):
            Settings.load().resolve_account()


class TestSessionContext:
    def test_read_only_session_uses_checksummed_address(self, clean_env):
        clean_env.setenv("VELTO_USER_ADDRESS", "0x" + "ab" * 20)
        session = SessionContext.from_settings(Settings.load())

        assert session.signer is None
        assert session.require_account() == Web3.to_checksum_address("0x" + "ab" * 20)
        with pytest.raises(ConnectivityError):
            session.require_signer()

    @pytest.mark.asyncio
    async def test_unreachable_rpc_reports_disconnected(self):
        w3 = MagicMock()
        w3.is_connected = AsyncMock(side_effect=ConnectionError("rpc down"))
        assert await SessionContext(w3, 84532).is_connected() is False


class TestLogging:
    def _record(self, msg):
        return logging.LogRecord("velto", logging.WARNING, __file__, 1, msg, None, None)

    def test_throttles_repeated_events_per_market(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = '{"event": "market_read_failed", "market": "acme"}'
        assert f.filter(self._record(msg)) is True
        assert f.filter(self._record(msg)) is False
        assert f.filter(self._record('{"event": "market_read_failed", "market": "beta"}')) is True

    def test_other_events_pass(self):
        f = ThrottledFilter(cooldown_sec=60.0)
        msg = '{"event": "tx_confirmed"}'
        assert f.filter(self._record(msg)) and f.filter(self._record(msg))
        assert f.filter(self._record("plain text"))

    def test_json_formatter(self):
        out = loads(JsonFormatter().format(self._record("hello")))
        assert out["level"] == "WARNING"
        assert out["msg"] == "hello"


class TestTradeContext:
    def test_child_carries_flow_fields(self, caplog):
        logger = logging.getLogger("trade_ctx_test")
        ctx = TradeContext("open", "acme", user="0xabc", logger=logger)
        ctx.path = "permit_deposit"
        child = ctx.child("permit")
        with caplog.at_level(logging.INFO, logger="trade_ctx_test"):
            child.info("permit_signed", nonce=1)
        payload = loads(caplog.records[-1].getMessage())
        assert payload["event"] == "permit_signed"
        assert payload["parent_trace_id"] == ctx.trace_id
        assert payload["trace_id"] != ctx.trace_id
        assert payload["step"] == "permit"
        assert payload["op"] == "open"
        assert payload["path"] == "permit_deposit"
        assert payload["nonce"] == 1

    def test_unset_fields_are_omitted(self):
        ctx = TradeContext("close", None)
        assert ctx.fields() == {"trace_id": ctx.trace_id, "op": "close"}

    def test_disabled_level_emits_nothing(self, caplog):
        logger = logging.getLogger("trade_ctx_quiet")
        with caplog.at_level(logging.ERROR, logger="trade_ctx_quiet"):
            TradeContext("open", "acme", logger=logger).info("ignored")
        assert caplog.records == []


def test_allocations_serialize_per_account():
    async def inner():
        coord = NonceCoordinator()
        pending = AsyncMock(return_value=3)
        order = []

        async def send(account):
            async with coord.allocate(account, pending) as nonce:
                order.append((account, nonce))
                await asyncio.sleep(0)

        await asyncio.gather(send("0xAbC"), send("0xabc"), send("0xdef"))
        same_account = sorted(n for a, n in order if a.lower() == "0xabc")
        assert same_account == [3, 4]
        assert ("0xdef", 3) in order

    asyncio.run(inner())


def test_node_ahead_of_local_mark_wins():
    async def inner():
        coord = NonceCoordinator()
        async with coord.allocate("0xabc", AsyncMock(return_value=3)):
            pass
        async with coord.allocate("0xabc", AsyncMock(return_value=10)) as nonce:
            assert nonce == 10

    asyncio.run(inner())


def test_failure_inside_block_forgets_local_mark():
    async def inner():
        coord = NonceCoordinator()
        async with coord.allocate("0xabc", AsyncMock(return_value=3)):
            pass
        with pytest.raises(RuntimeError):
            async with coord.allocate("0xabc", AsyncMock(return_value=3)) as nonce:
                assert nonce == 4
                raise RuntimeError("broadcast failed")
        async with coord.allocate("0xabc", AsyncMock(return_value=3)) as nonce:
            assert nonce == 3

    asyncio.run(inner())


def test_metrics_use_injected_registry():
    registry = CollectorRegistry()
    metrics = TradingMetrics(registry=registry)
    metrics.execution_path.labels(path="permit_deposit").inc()
    metrics.tx_failed.labels(function="openPosition", code="TX_REVERTED").inc(2)

    assert metrics.get_registry() is registry
    assert registry.get_sample_value("execution_path_total", {"path": "permit_deposit"}) == 1.0
    assert registry.get_sample_value("tx_failed_total", {"function": "openPosition", "code": "TX_REVERTED"}) == 2.0
