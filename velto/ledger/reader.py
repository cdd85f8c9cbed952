"""
LedgerReader: read-only ledger queries for markets, balances and positions.

Architecture:
    Every read goes through SessionContext.contract(...).functions.X(...).call().
    A market snapshot is five concurrent calls against the vAMM; fan-out over
    many markets isolates failures per market so one bad market never blocks
    the others. There is no retry here; the poll loop is the retry policy.

Usage:
    reader = LedgerReader(session, metrics=metrics)
    state = await reader.get_market_state(contracts)
    states = await reader.get_market_states({"acme": contracts, ...})
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, TYPE_CHECKING

from velto.core.json_utils import dumps
from velto.core.types import ContractInfo, FundBalances, MarketState, Side
from velto.ledger.abi import (
    ERC20_PERMIT_ABI,
    PERP_ENGINE_ABI,
    PERP_MARKET_ABI,
    POSITION_REGISTRY_ABI,
)

if TYPE_CHECKING:
    from velto.ledger.session import SessionContext
    from velto.monitoring.metrics import TradingMetrics

log = logging.getLogger("velto")

POSITION_EVENTS = ("PositionOpened", "PositionClosed", "PositionLiquidated")


class LedgerReader:
    def __init__(
        self,
        session: "SessionContext",
        metrics: Optional["TradingMetrics"] = None,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._session = session
        self._metrics = metrics
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(dumps(payload))

    async def _call(self, address: str, abi: List[Dict[str, Any]], fn_name: str, *args: Any) -> Any:
        contract = self._session.contract(address, abi)
        return await getattr(contract.functions, fn_name)(*args).call()

    # ------------------------------------------------------------------
    # Market state
    # ------------------------------------------------------------------
    async def get_market_state(self, contracts: ContractInfo) -> MarketState:
        """Five concurrent vAMM reads; any failure fails this market only."""
        vamm = contracts.vamm
        mark, base, quote, long_oi, short_oi = await asyncio.gather(
            self._call(vamm, PERP_MARKET_ABI, "getMarkPrice"),
            self._call(vamm, PERP_MARKET_ABI, "baseReserve"),
            self._call(vamm, PERP_MARKET_ABI, "quoteReserve"),
            self._call(vamm, PERP_MARKET_ABI, "longOpenInterest"),
            self._call(vamm, PERP_MARKET_ABI, "shortOpenInterest"),
        )
        return MarketState(
            mark_price=int(mark),
            base_reserve=int(base),
            quote_reserve=int(quote),
            long_oi=int(long_oi),
            short_oi=int(short_oi),
            fetched_at=time.time(),
        )

    async def get_market_states(
        self,
        markets: Mapping[str, ContractInfo],
    ) -> Dict[str, "MarketState | BaseException"]:
        """
        Fan out snapshot reads over many markets.

        Returns a mapping of slug to either a MarketState or the exception that
        market raised. No global concurrency cap is applied.
        """
        slugs = list(markets.keys())
        results = await asyncio.gather(
            *(self.get_market_state(markets[slug]) for slug in slugs),
            return_exceptions=True,
        )
        out: Dict[str, "MarketState | BaseException"] = {}
        for slug, res in zip(slugs, results):
            out[slug] = res
            if isinstance(res, BaseException):
                self._log_event("market_read_failed", market=slug, error=str(res))
                if self._metrics:
                    self._metrics.ledger_read_failures.labels(market=slug).inc()
            elif self._metrics:
                self._metrics.ledger_reads.labels(market=slug).inc()
                self._metrics.mark_price.labels(market=slug).set(float(res.mark))
        return out

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------
    async def get_wallet_balance(self, engine: str, user: str) -> int:
        """Internal engine balance, 18 decimals."""
        return int(await self._call(engine, PERP_ENGINE_ABI, "getWalletBalance", user))

    async def get_collateral_balance(self, user: str) -> int:
        """Collateral token balance, 6 decimals."""
        token = self._session.require_collateral_token()
        return int(await self._call(token, ERC20_PERMIT_ABI, "balanceOf", user))

    async def get_allowance(self, owner: str, spender: str) -> int:
        token = self._session.require_collateral_token()
        return int(await self._call(token, ERC20_PERMIT_ABI, "allowance", owner, spender))

    async def get_fund_balances(self, engine: str) -> FundBalances:
        trade, insurance, protocol = await self._call(engine, PERP_ENGINE_ABI, "getFundBalances")
        return FundBalances(trade_fund=int(trade), insurance_fund=int(insurance), protocol_fees=int(protocol))

    async def get_market_info(self, engine: str) -> Dict[str, Any]:
        engine_addr, vamm, registry, chain_id, deploy_block = await self._call(
            engine, PERP_ENGINE_ABI, "getMarketInfo"
        )
        return {
            "engine": engine_addr,
            "vamm": vamm,
            "position_registry": registry,
            "chain_id": int(chain_id),
            "deployment_block": int(deploy_block),
        }

    # ------------------------------------------------------------------
    # Simulations (authoritative)
    # ------------------------------------------------------------------
    async def simulate_open(self, contracts: ContractInfo, side: Side, notional: int) -> Tuple[int, int]:
        """Ledger simulation of an open: (base amount, average price), 18 decimals."""
        fn_name = "simulateOpenLong" if side.is_long else "simulateOpenShort"
        base, avg = await self._call(contracts.vamm, PERP_MARKET_ABI, fn_name, notional)
        return int(base), int(avg)

    async def simulate_close(self, contracts: ContractInfo, side: Side, base_size: int) -> Tuple[int, int]:
        """Ledger simulation of a close: (quote amount, average price), 18 decimals."""
        fn_name = "simulateCloseLong" if side.is_long else "simulateCloseShort"
        quote, avg = await self._call(contracts.vamm, PERP_MARKET_ABI, fn_name, base_size)
        return int(quote), int(avg)

    # ------------------------------------------------------------------
    # Positions and events
    # ------------------------------------------------------------------
    async def get_position(self, contracts: ContractInfo, position_id: int) -> Tuple[Any, ...]:
        """Raw registry tuple for one position id."""
        return tuple(await self._call(contracts.position_registry, POSITION_REGISTRY_ABI, "getPosition", position_id))

    async def get_logs(
        self,
        contracts: ContractInfo,
        event_name: str,
        user: Optional[str] = None,
        from_block: Optional[int] = None,
    ) -> List[Any]:
        """
        Scan one lifecycle event from the deployment block to latest.

        The range is not paginated.
        """
        if event_name not in POSITION_EVENTS:
            raise ValueError(f"Unknown position event: {event_name}")
        contract = self._session.contract(contracts.engine, PERP_ENGINE_ABI)
        event = getattr(contract.events, event_name)
        filters = {"user": user} if user else None
        start = contracts.deployment_block if from_block is None else from_block
        logs = await event.get_logs(argument_filters=filters, from_block=start, to_block="latest")
        return list(logs)

    # ------------------------------------------------------------------
    # Collateral token (permit support)
    # ------------------------------------------------------------------
    async def get_permit_nonce(self, owner: str) -> int:
        token = self._session.require_collateral_token()
        return int(await self._call(token, ERC20_PERMIT_ABI, "nonces", owner))

    async def get_token_name(self) -> str:
        token = self._session.require_collateral_token()
        return str(await self._call(token, ERC20_PERMIT_ABI, "name"))
