"""
HistoryIndex: best-effort facade over the historical indexing service.

The index trails the ledger and may report itself "not ready". When it is
not ready, or a request fails, every query returns an empty list or None
instead of raising, so the views built on top keep working.

Readiness is checked with a one-row query and cached for ready_ttl_sec.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, TYPE_CHECKING

import httpx

from velto.core.json_utils import dumps
from velto.core.types import MarketStats24h
from velto.sources.postgrest import PostgrestClient

if TYPE_CHECKING:
    from velto.monitoring.metrics import TradingMetrics

log = logging.getLogger("velto")

OHLCV_TABLES = {
    "5m": "ohlcv_5min",
    "1h": "hourly_ohlcv",
    "1d": "daily_stats",
}

SYNC_FUNCTION = "sync-data"
PERIOD_STATS_FUNCTION = "get_period_stats"
PERIOD_INTERVALS = ("D", "W", "M", "3M", "Y", "ALL")


@dataclass(frozen=True)
class PricePoint:
    timestamp: datetime
    price: float


@dataclass(frozen=True)
class Candle:
    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


@dataclass(frozen=True)
class PeriodStats:
    high: float
    low: float
    volume: float
    change_pct: float


@dataclass(frozen=True)
class MarketRanking:
    engine: str
    total_change: float

def _parse_ts(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    ts = datetime.fromisoformat(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _num(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class HistoryIndex:
    def __init__(
        self,
        client: Optional[PostgrestClient],
        metrics: Optional["TradingMetrics"] = None,
        ready_ttl_sec: float = 30.0,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._client = client
        self._metrics = metrics
        self._ready_ttl = ready_ttl_sec
        self._ready: Optional[bool] = None
        self._ready_checked_at = 0.0
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.warning(dumps(payload))

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()

    def _degraded(self, context: str, exc: BaseException) -> None:
        self._log_event("index_query_failed", context=context, error=str(exc))
        if self._metrics:
            self._metrics.source_errors.labels(source="history").inc()

    async def is_ready(self) -> bool:
        if self._client is None:
            return False
        now = time.monotonic()
        if self._ready is not None and now - self._ready_checked_at < self._ready_ttl:
            return self._ready
        try:
            await self._client.select("market_stats_24h", {"select": "engine", "limit": 1})
            self._ready = True
        except (httpx.HTTPError, ValueError) as exc:
            self._ready = False
            self._log_event("index_not_ready", error=str(exc))
        self._ready_checked_at = now
        return self._ready

    async def _select(self, table: str, params: Dict[str, Any], context: str) -> List[Dict[str, Any]]:
        if not await self.is_ready():
            return []
        try:
            return await self._client.select(table, params)
        except (httpx.HTTPError, ValueError) as exc:
            self._degraded(context, exc)
            return []

    async def _rpc(self, function: str, params: Dict[str, Any], context: str) -> List[Dict[str, Any]]:
        if not await self.is_ready():
            return []
        try:
            return await self._client.rpc(function, params)
        except (httpx.HTTPError, ValueError) as exc:
            self._degraded(context, exc)
            return []

    async def get_market_stats_24h(self, engine: str) -> Optional[MarketStats24h]:
        rows = await self._select("market_stats_24h", {"select": "*", "engine": f"eq.{engine}", "limit": 1}, engine)
        if not rows:
            return None
        row = rows[0]
        return MarketStats24h(
            engine=engine,
            high_24h=_num(row.get("high_24h")),
            low_24h=_num(row.get("low_24h")),
            volume_24h=_num(row.get("volume_24h")),
            change_24h=_num(row.get("change_24h")),
        )

    async def get_price_history(self, engine: str, since: Optional[datetime] = None) -> List[PricePoint]:
        since = since or datetime.now(timezone.utc) - timedelta(days=7)
        rows = await self._select(
            "hourly_ohlcv",
            {
                "select": "bucket,close",
                "engine": f"eq.{engine}",
                "bucket": f"gte.{since.isoformat()}",
                "order": "bucket.asc",
            },
            engine,
        )
        out: List[PricePoint] = []
        for row in rows:
            try:
                out.append(PricePoint(timestamp=_parse_ts(row["bucket"]), price=_num(row.get("close"))))
            except (KeyError, ValueError):
                continue
        return out

    async def get_period_stats(self, engine: str, interval: str = "D") -> Optional[PeriodStats]:
        """High/low/volume/change over a chart range (D, W, M, 3M, Y or ALL)."""
        if interval not in PERIOD_INTERVALS:
            raise ValueError(f"Unsupported period {interval!r}; expected one of {PERIOD_INTERVALS}")
        rows = await self._rpc(PERIOD_STATS_FUNCTION, {"p_engine": engine, "p_interval": interval}, engine)
        if not rows:
            return None
        row = rows[0]
        return PeriodStats(
            high=_num(row.get("high")),
            low=_num(row.get("low")),
            volume=_num(row.get("volume")),
            change_pct=_num(row.get("change_pct")),
        )

    async def get_7d_trend(self, engine: str) -> List[PricePoint]:
        """Hourly closes over the last 7 days, backfilled to the window start."""
        since = datetime.now(timezone.utc) - timedelta(days=7)
        points = await self.get_price_history(engine, since=since)
        if points and points[0].timestamp > since:
            points.insert(0, PricePoint(timestamp=since, price=points[0].price))
        return points

    async def get_market_rankings(self) -> List[MarketRanking]:
        rows = await self._select("market_rankings", {"select": "engine,total_change"}, "rankings")
        return [
            MarketRanking(engine=row["engine"], total_change=_num(row.get("total_change")))
            for row in rows
            if row.get("engine")
        ]

    async def get_ohlcv(self, engine: str, interval: str = "1h", since: Optional[datetime] = None) -> List[Candle]:
        table = OHLCV_TABLES.get(interval)
        if table is None:
            raise ValueError(f"Unsupported interval {interval!r}; expected one of {sorted(OHLCV_TABLES)}")
        since = since or datetime.fromtimestamp(0, tz=timezone.utc)
        rows = await self._select(
            table,
            {
                "select": "bucket,open,high,low,close,volume",
                "engine": f"eq.{engine}",
                "bucket": f"gte.{since.isoformat()}",
                "order": "bucket.asc",
            },
            engine,
        )
        out: List[Candle] = []
        for row in rows:
            try:
                ts = _parse_ts(row["bucket"])
            except (KeyError, ValueError):
                continue
            out.append(Candle(
                timestamp=ts,
                open=_num(row.get("open")),
                high=_num(row.get("high")),
                low=_num(row.get("low")),
                close=_num(row.get("close")),
                volume=_num(row.get("volume")),
            ))
        return out

    async def get_user_trades(self, user: str, limit: int = 50) -> List[Dict[str, Any]]:
        return await self._select(
            "trades",
            {"select": "*", "user_address": f"eq.{user.lower()}", "order": "timestamp.desc", "limit": limit},
            user,
        )

    async def get_wallet_portfolio(self, user: str) -> Optional[Dict[str, Any]]:
        rows = await self._select(
            "wallet_portfolio",
            {"select": "*", "wallet_address": f"eq.{user.lower()}", "limit": 1},
            user,
        )
        return rows[0] if rows else None

    async def trigger_sync(self) -> bool:
        """Ask the indexing service to pull the latest ledger events. Best effort."""
        if self._client is None:
            return False
        try:
            await self._client.invoke(SYNC_FUNCTION)
            return True
        except (httpx.HTTPError, ValueError) as exc:
            self._degraded("trigger_sync", exc)
            return False
