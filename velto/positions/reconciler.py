"""
PositionReconciler: derive open positions from ledger event logs.

Algorithm per market:
    opened  = PositionOpened ids (optionally filtered by user)
    closed  = PositionClosed ids | PositionLiquidated ids
    open    = opened - closed
    fetch full registry records for the open ids only

Architecture:
    The three event scans run concurrently from the market's deployment block
    to latest. Scans are not paginated, so very old markets pay a growing scan
    cost. Record fetches for open ids also run concurrently. A duplicated
    opened id is fetched once (last log wins), and a record whose registry
    status is no longer open is dropped.

    Results are never cached here; callers re-derive after a confirmed
    transaction. Deriving twice from the same logs yields the same set.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, TYPE_CHECKING

from velto.core.json_utils import dumps
from velto.core.types import ContractInfo, Position, PositionStatus, Side
from velto.risk.calculator import leverage as compute_leverage
from velto.risk.calculator import liquidation_price

if TYPE_CHECKING:
    from velto.ledger.reader import LedgerReader
    from velto.monitoring.metrics import TradingMetrics

log = logging.getLogger("velto")


@dataclass
class ReconcileResult:
    """Outcome of one open-set derivation."""
    market: str
    opened_ids: List[int] = field(default_factory=list)
    closed_ids: Set[int] = field(default_factory=set)
    open_ids: List[int] = field(default_factory=list)
    positions: List[Position] = field(default_factory=list)
    duration_ms: float = 0.0


def _field(raw: Any, name: str, index: int) -> Any:
    if isinstance(raw, Mapping):
        return raw[name]
    return raw[index]


def _event_position_id(entry: Any) -> int:
    args = entry["args"]
    return int(args["positionId"])


def position_from_registry(raw: Sequence[Any] | Mapping[str, Any], market_slug: str) -> Position:
    """Map a registry getPosition tuple to a Position with derived leverage and liquidation price."""
    is_long = bool(_field(raw, "isLong", 2))
    entry_price = int(_field(raw, "entryPrice", 4))
    entry_notional = int(_field(raw, "entryNotional", 5))
    margin = int(_field(raw, "margin", 6))
    side = Side.parse(is_long)

    lev = compute_leverage(Decimal(entry_notional), Decimal(margin))
    liq = liquidation_price(Decimal(entry_price).scaleb(-18), lev, side) if lev > 0 else Decimal(0)

    return Position(
        id=int(_field(raw, "id", 0)),
        market_slug=market_slug,
        owner=str(_field(raw, "user", 1)),
        side=side,
        entry_price=entry_price,
        base_size=int(_field(raw, "baseSize", 3)),
        margin=margin,
        entry_notional=entry_notional,
        carry_snapshot=int(_field(raw, "carrySnapshot", 7)),
        open_block=int(_field(raw, "openBlock", 8)),
        status=PositionStatus(int(_field(raw, "status", 9))),
        realized_pnl=int(_field(raw, "realizedPnl", 10)),
        leverage=lev,
        liquidation_price=liq,
    )


def derive_open_ids(opened: Iterable[Any], closed: Iterable[Any], liquidated: Iterable[Any]) -> List[int]:
    """opened - (closed | liquidated), first-seen order, duplicates collapsed."""
    opened_ids: Dict[int, None] = {}
    for entry in opened:
        opened_ids[_event_position_id(entry)] = None
    closed_ids = {_event_position_id(e) for e in closed} | {_event_position_id(e) for e in liquidated}
    return [pid for pid in opened_ids if pid not in closed_ids]


class PositionReconciler:
    """
    Open-position derivation from Opened/Closed/Liquidated logs.

    Usage:
        reconciler = PositionReconciler(reader)
        positions = await reconciler.get_user_open_positions("acme", contracts, user)
        by_market = await reconciler.get_user_open_positions_all_markets(markets, user)
    """

    def __init__(
        self,
        reader: "LedgerReader",
        metrics: Optional["TradingMetrics"] = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self.reader = reader
        self.metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(dumps(payload))

    async def reconcile(self, market_slug: str, contracts: ContractInfo, user: Optional[str] = None) -> ReconcileResult:
        """Derive the open set for one market; ledger errors propagate."""
        started = time.monotonic()
        opened, closed, liquidated = await asyncio.gather(
            self.reader.get_logs(contracts, "PositionOpened", user=user),
            self.reader.get_logs(contracts, "PositionClosed", user=user),
            self.reader.get_logs(contracts, "PositionLiquidated", user=user),
        )
        open_ids = derive_open_ids(opened, closed, liquidated)

        raw_records = await asyncio.gather(*(self.reader.get_position(contracts, pid) for pid in open_ids))
        positions: List[Position] = []
        for pid, raw in zip(open_ids, raw_records):
            position = position_from_registry(raw, market_slug)
            if not position.is_open:
                # Closed between the event scan and the record fetch.
                self._log_event("position_status_mismatch", market=market_slug, position_id=pid,
                                status=position.status.label)
                continue
            positions.append(position)

        result = ReconcileResult(
            market=market_slug,
            opened_ids=[_event_position_id(e) for e in opened],
            closed_ids={_event_position_id(e) for e in closed} | {_event_position_id(e) for e in liquidated},
            open_ids=open_ids,
            positions=positions,
            duration_ms=(time.monotonic() - started) * 1000.0,
        )
        if self.metrics:
            self.metrics.reconcile_ms.labels(market=market_slug).observe(result.duration_ms)
            if user:
                self.metrics.open_positions.labels(market=market_slug).set(len(positions))
        self._log_event(
            "positions_reconciled",
            market=market_slug,
            user=user,
            opened=len(result.opened_ids),
            closed=len(result.closed_ids),
            open=len(positions),
            duration_ms=round(result.duration_ms, 1),
        )
        return result

    async def get_user_open_positions(self, market_slug: str, contracts: ContractInfo, user: str) -> List[Position]:
        result = await self.reconcile(market_slug, contracts, user=user)
        return result.positions

    async def get_market_open_positions(self, market_slug: str, contracts: ContractInfo) -> List[Position]:
        result = await self.reconcile(market_slug, contracts, user=None)
        return result.positions

    async def get_user_open_positions_all_markets(
        self,
        markets: Mapping[str, ContractInfo],
        user: str,
    ) -> Dict[str, List[Position]]:
        """Fan out over markets; a failing market yields an empty list and a log line."""
        slugs = list(markets.keys())
        results = await asyncio.gather(
            *(self.get_user_open_positions(slug, markets[slug], user) for slug in slugs),
            return_exceptions=True,
        )
        out: Dict[str, List[Position]] = {}
        for slug, res in zip(slugs, results):
            if isinstance(res, BaseException):
                self._log_event("market_read_failed", market=slug, error=str(res), stage="positions")
                out[slug] = []
            else:
                out[slug] = res
        return out

    async def get_position(self, market_slug: str, contracts: ContractInfo, position_id: int) -> Optional[Position]:
        """One registry record, or None if the read fails."""
        try:
            raw = await self.reader.get_position(contracts, position_id)
        except Exception as exc:
            self._log_event("position_read_failed", market=market_slug, position_id=position_id, error=str(exc))
            return None
        return position_from_registry(raw, market_slug)
