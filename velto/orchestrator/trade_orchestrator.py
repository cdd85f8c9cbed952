"""
TradeOrchestrator: unified market/position views and the open/close flows.

This module composes the metadata store, ledger reader/writer, permit signer,
position reconciler, pricing simulator, risk calculator and history index.

Architecture:
    Views:
    - get_market_view joins metadata, contract addresses, a ledger snapshot and
      24h index stats. Each source degrades independently; a missing ledger
      snapshot marks the view stale instead of failing it.
    - get_user_positions derives open positions from event logs and attaches
      unrealized figures at the current mark.

    Open flow:
    1. client-side validation (amount, leverage bounds), nothing read yet
    2. resolve contracts through the metadata store
    3. plan_execution reads balance/allowance once and returns exactly one
       ExecutionPlan variant:
         DirectBalance     internal balance covers the amount -> openPosition
         AllowanceDeposit  allowance covers the shortfall     -> depositAndOpenPosition
         PermitDeposit     otherwise, sign a permit           -> depositAndOpenPositionWithPermit
    4. execute the plan; parse the position id from the PositionOpened log
    5. after confirmation: grace delay, index sync nudge, cache invalidation

    Error boundary:
    Every flow failure leaves as an ExecutionResult with a DecodedError.
    Pre-flight failures are REJECTED, declined signatures CANCELLED, on-chain
    reverts FAILED, confirmation timeouts PENDING. Views that cannot degrade
    (preview, balances) raise a VeltoError; raw web3 or transport errors
    never leave this module.

Thread Safety:
    No lock is held across concurrent open/close calls for the same user.
    Callers keep single-action semantics. Nonce allocation inside the writer
    is serialized per account.

Usage:
    orchestrator = TradeOrchestrator.from_settings(cfg)
    view = await orchestrator.get_market_view("acme")
    result = await orchestrator.open_position(TradeIntent("acme", Side.LONG, Decimal("100"), Decimal("5")))
    await orchestrator.aclose()
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, ClassVar, Dict, List, Optional, Set, Union, TYPE_CHECKING

from velto.core.errors import (
    ConnectivityError,
    DecodedError,
    ErrorCode,
    MarketNotFound,
    SignatureCancelled,
    TradeRejected,
    UnsupportedOperation,
    VeltoError,
)
from velto.core.fixed_point import MAX_UINT256, WAD_DECIMALS, from_decimal, parse_usdc, to_decimal, wad_to_usdc
from velto.core.json_utils import dumps
from velto.core.trade_context import TradeContext
from velto.core.types import (
    ContractInfo,
    ExecutionResult,
    ExecutionStatus,
    FundingSource,
    Market,
    MarketState,
    MarketStats24h,
    Position,
    PositionStatus,
    TradeIntent,
)
from velto.ledger.error_decoder import decode_contract_error
from velto.ledger.permit import permit_deadline
from velto.ledger.writer import TxOutcome, parse_closed_pnl, parse_opened_position_id
from velto.pricing.simulator import SlippageQuote
from velto.risk.calculator import RiskAssessment

if TYPE_CHECKING:
    from velto.config.config import Settings
    from velto.ledger.permit import PermitSigner
    from velto.ledger.reader import LedgerReader
    from velto.ledger.session import SessionContext
    from velto.ledger.writer import LedgerWriter
    from velto.monitoring.metrics import TradingMetrics
    from velto.orchestrator.view_cache import ViewCache
    from velto.positions.reconciler import PositionReconciler
    from velto.pricing.simulator import PricingSimulator
    from velto.risk.calculator import RiskCalculator
    from velto.sources.history_index import HistoryIndex
    from velto.sources.metadata_store import MetadataStore

log = logging.getLogger("velto")


# ----------------------------------------------------------------------
# Execution plan (tagged variant)
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class DirectBalance:
    """Internal balance covers the amount: no token movement."""
    kind: ClassVar[str] = "direct_balance"
    engine: str
    is_long: bool
    total_to_use: int
    leverage: int
    internal_balance: int


@dataclass(frozen=True)
class AllowanceDeposit:
    """Existing allowance covers the shortfall: composite deposit-and-open, no signature."""
    kind: ClassVar[str] = "allowance_deposit"
    engine: str
    is_long: bool
    total_to_use: int
    leverage: int
    deposit_usdc: int
    allowance: int


@dataclass(frozen=True)
class PermitDeposit:
    """Allowance short: sign a permit and call the permit-aware composite entrypoint."""
    kind: ClassVar[str] = "permit_deposit"
    engine: str
    is_long: bool
    total_to_use: int
    leverage: int
    deposit_usdc: int
    permit_value: int
    deadline: int


ExecutionPlan = Union[DirectBalance, AllowanceDeposit, PermitDeposit]


# ----------------------------------------------------------------------
# Views
# ----------------------------------------------------------------------
@dataclass
class MarketView:
    market: Market
    state: Optional[MarketState] = None
    stats_24h: Optional[MarketStats24h] = None
    stale: bool = False
    open_interest_skew: Decimal = Decimal(0)

    @property
    def slug(self) -> str:
        return self.market.slug

    @property
    def mark_price(self) -> Optional[Decimal]:
        return self.state.mark if self.state is not None else None

    def to_dict(self) -> dict:
        state = self.state
        return {
            "slug": self.market.slug,
            "name": self.market.name,
            "tradable": self.market.is_tradable,
            "engine": self.market.contracts.engine if self.market.contracts else None,
            "mark_price": state.mark if state else None,
            "base_reserve": state.base if state else None,
            "quote_reserve": state.quote if state else None,
            "long_oi": to_decimal(state.long_oi) if state else None,
            "short_oi": to_decimal(state.short_oi) if state else None,
            "open_interest_skew": self.open_interest_skew,
            "stats_24h": self.stats_24h.__dict__ if self.stats_24h else None,
            "stale": self.stale,
        }


@dataclass
class PositionView:
    position: Position
    mark_price: Optional[Decimal] = None
    risk: Optional[RiskAssessment] = None

    def to_dict(self) -> dict:
        p = self.position
        return {
            "id": p.id,
            "market": p.market_slug,
            "side": p.side.value,
            "entry_price": p.entry,
            "size": p.size,
            "margin": to_decimal(p.margin),
            "leverage": p.leverage,
            "liquidation_price": p.liquidation_price,
            "mark_price": self.mark_price,
            "risk": self.risk.to_dict() if self.risk else None,
        }


@dataclass
class TradePreview:
    intent: TradeIntent
    notional: Decimal
    quote: SlippageQuote
    est_liquidation_price: Decimal
    ledger_base_amount: Optional[Decimal] = None
    ledger_avg_price: Optional[Decimal] = None

    def to_dict(self) -> dict:
        return {
            "market": self.intent.market_slug,
            "side": self.intent.side.value,
            "margin": self.intent.amount,
            "leverage": self.intent.leverage,
            "notional": self.notional,
            "mark_price": self.quote.mark_price,
            "avg_price": self.quote.avg_price,
            "base_amount": self.quote.base_amount,
            "slippage_pct": self.quote.slippage_pct,
            "price_after": self.quote.price_after,
            "est_liquidation_price": self.est_liquidation_price,
            "ledger_base_amount": self.ledger_base_amount,
            "ledger_avg_price": self.ledger_avg_price,
        }


@dataclass
class BalanceView:
    internal: int
    wallet_usdc: Optional[int] = None
    allowance: Optional[int] = None


@dataclass
class OrchestratorConfig:
    """Configuration for TradeOrchestrator."""
    min_leverage: Decimal = Decimal(1)
    max_leverage: Decimal = Decimal(10)

    # Permit value is unlimited outside production, exact deposit in production
    production: bool = False
    permit_deadline_sec: Optional[int] = None

    # Post-confirm invalidation
    invalidation_grace_sec: float = 1.0
    trigger_sync_after_confirm: bool = True

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None

    @classmethod
    def from_settings(cls, cfg: "Settings") -> "OrchestratorConfig":
        return cls(
            min_leverage=Decimal(str(cfg.min_leverage)),
            max_leverage=Decimal(str(cfg.max_leverage)),
            production=cfg.production,
            permit_deadline_sec=cfg.permit_deadline_sec,
            invalidation_grace_sec=cfg.invalidation_grace_sec,
        )


def _rejected(message: str, code: ErrorCode) -> TradeRejected:
    return TradeRejected(DecodedError(message=message, code=code))


def _read_failure(exc: BaseException) -> VeltoError:
    """Translate a raw ledger read failure into the client taxonomy."""
    if isinstance(exc, VeltoError):
        return exc
    decoded = decode_contract_error(exc)
    if decoded.code in (ErrorCode.RPC_UNAVAILABLE, ErrorCode.UNKNOWN):
        return ConnectivityError(f"Ledger read failed: {decoded.message}", ErrorCode.RPC_UNAVAILABLE)
    return TradeRejected(decoded)


class TradeOrchestrator:
    def __init__(
        self,
        session: "SessionContext",
        metadata: "MetadataStore",
        reader: "LedgerReader",
        writer: "LedgerWriter",
        permit_signer: "PermitSigner",
        reconciler: "PositionReconciler",
        simulator: "PricingSimulator",
        risk: "RiskCalculator",
        cache: "ViewCache",
        history: Optional["HistoryIndex"] = None,
        metrics: Optional["TradingMetrics"] = None,
        config: Optional[OrchestratorConfig] = None,
    ) -> None:
        self.session = session
        self.metadata = metadata
        self.reader = reader
        self.writer = writer
        self.permit_signer = permit_signer
        self.reconciler = reconciler
        self.simulator = simulator
        self.risk = risk
        self.cache = cache
        self.history = history
        self.metrics = metrics
        self.config = config or OrchestratorConfig()

        self._background: Set[asyncio.Task] = set()
        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(dumps(payload))

    @classmethod
    def from_settings(cls, cfg: "Settings", metrics: Optional["TradingMetrics"] = None) -> "TradeOrchestrator":
        from velto.ledger.permit import PermitSigner
        from velto.ledger.reader import LedgerReader
        from velto.ledger.session import SessionContext
        from velto.ledger.writer import LedgerWriter
        from velto.orchestrator.view_cache import ViewCache
        from velto.positions.reconciler import PositionReconciler
        from velto.pricing.simulator import PricingSimulator
        from velto.risk.calculator import RiskCalculator
        from velto.sources.history_index import HistoryIndex
        from velto.sources.metadata_store import MetadataStore
        from velto.sources.postgrest import PostgrestClient

        session = SessionContext.from_settings(cfg)
        reader = LedgerReader(session, metrics=metrics)
        metadata_client = (
            PostgrestClient(cfg.metadata_url, cfg.metadata_key, timeout=cfg.http_timeout)
            if cfg.metadata_url else None
        )
        index_url = cfg.indexer_url or cfg.metadata_url
        index_client = (
            PostgrestClient(index_url, cfg.metadata_key, timeout=cfg.http_timeout)
            if index_url else None
        )
        return cls(
            session=session,
            metadata=MetadataStore(metadata_client, metrics=metrics),
            reader=reader,
            writer=LedgerWriter(session, metrics=metrics, confirm_timeout_sec=cfg.tx_confirm_timeout_sec),
            permit_signer=PermitSigner(session, reader),
            reconciler=PositionReconciler(reader, metrics=metrics),
            simulator=PricingSimulator(),
            risk=RiskCalculator(
                min_leverage=Decimal(str(cfg.min_leverage)),
                max_leverage=Decimal(str(cfg.max_leverage)),
                high_pct=Decimal(str(cfg.risk_high_pct)),
                medium_pct=Decimal(str(cfg.risk_medium_pct)),
            ),
            cache=ViewCache(default_ttl_sec=cfg.poll_interval_sec),
            history=HistoryIndex(index_client, metrics=metrics),
            metrics=metrics,
            config=OrchestratorConfig.from_settings(cfg),
        )

    async def aclose(self) -> None:
        """Wait for pending post-confirm work, then release HTTP and RPC sessions."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self.metadata.close()
        if self.history is not None:
            await self.history.close()
        await self.session.close()

    # ------------------------------------------------------------------
    # Market views
    # ------------------------------------------------------------------
    async def _require_contracts(self, slug: str) -> ContractInfo:
        contracts = await self.metadata.get_market_contract_info_by_slug(slug)
        if contracts is None:
            raise MarketNotFound(slug)
        return contracts

    async def _safe_state(self, slug: str, contracts: ContractInfo) -> Optional[MarketState]:
        try:
            return await self.reader.get_market_state(contracts)
        except Exception as exc:
            self._log_event("market_read_failed", market=slug, error=str(exc))
            if self.metrics:
                self.metrics.ledger_read_failures.labels(market=slug).inc()
            return None

    async def _safe_stats(self, contracts: ContractInfo) -> Optional[MarketStats24h]:
        if self.history is None:
            return None
        return await self.history.get_market_stats_24h(contracts.engine)

    async def get_market_view(self, slug: str) -> Optional[MarketView]:
        """Merged view for one market, or None when the slug is unknown."""
        key = self.cache.market_key(slug)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        market = await self.metadata.get_market(slug)
        if market is None:
            return None

        view = MarketView(market=market)
        if market.contracts is not None:
            state, stats = await asyncio.gather(
                self._safe_state(slug, market.contracts),
                self._safe_stats(market.contracts),
            )
            view.state = state
            view.stats_24h = stats
            view.stale = state is None
            if state is not None:
                market.state = state
                view.open_interest_skew = self.risk.open_interest_skew(state)
                if self.metrics:
                    self.metrics.mark_price.labels(market=slug).set(float(state.mark))
                    self.metrics.open_interest_skew.labels(market=slug).set(float(view.open_interest_skew))
        else:
            view.stale = True

        if not view.stale:
            self.cache.put(key, view)
        return view

    async def get_market_views(self, slugs: List[str]) -> List[MarketView]:
        views = await asyncio.gather(*(self.get_market_view(s) for s in slugs))
        return [v for v in views if v is not None]

    async def list_markets(self) -> List[MarketView]:
        """All markets with metadata and addresses; ledger state is not read here."""
        cached = self.cache.get("markets")
        if cached is not None:
            return cached
        markets = await self.metadata.get_all_markets()
        views = [MarketView(market=m, stale=True) for m in markets]
        if views:
            self.cache.put("markets", views, ttl_sec=60.0)
        return views

    async def tradable_markets(self) -> Dict[str, ContractInfo]:
        markets = await self.metadata.get_all_markets()
        return {m.slug: m.contracts for m in markets if m.contracts is not None}

    # ------------------------------------------------------------------
    # Position views
    # ------------------------------------------------------------------
    async def get_user_positions(self, user: Optional[str] = None, slug: Optional[str] = None) -> List[PositionView]:
        """
        Open positions for ``user`` (default: the session account) with risk at mark.

        All tradable markets are scanned when ``slug`` is None. A market whose
        reads fail contributes no positions instead of failing the view.
        """
        user = user or self.session.require_account()
        key = self.cache.positions_key(user, slug)
        cached = self.cache.get(key)
        if cached is not None:
            return cached

        if slug is not None:
            contracts = await self._require_contracts(slug)
            markets = {slug: contracts}
            try:
                by_market = {slug: await self.reconciler.get_user_open_positions(slug, contracts, user)}
            except Exception as exc:
                self._log_event("market_read_failed", market=slug, error=decode_contract_error(exc).message)
                if self.metrics:
                    self.metrics.ledger_read_failures.labels(market=slug).inc()
                return []
        else:
            markets = await self.tradable_markets()
            by_market = await self.reconciler.get_user_open_positions_all_markets(markets, user)

        active = [s for s, positions in by_market.items() if positions]
        states = await asyncio.gather(*(self._safe_state(s, markets[s]) for s in active))
        marks = {s: st.mark for s, st in zip(active, states) if st is not None}

        views: List[PositionView] = []
        for market_slug in active:
            mark = marks.get(market_slug)
            for position in by_market[market_slug]:
                assessment = self.risk.assess(position, mark) if mark is not None else None
                views.append(PositionView(position=position, mark_price=mark, risk=assessment))

        self.cache.put(key, views)
        return views

    async def get_balances(self, slug: str, user: Optional[str] = None) -> BalanceView:
        user = user or self.session.require_account()
        key = self.cache.balance_key(user, slug)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        contracts = await self._require_contracts(slug)
        try:
            internal = await self.reader.get_wallet_balance(contracts.engine, user)
            view = BalanceView(internal=internal)
            if self.session.collateral_token:
                view.wallet_usdc, view.allowance = await asyncio.gather(
                    self.reader.get_collateral_balance(user),
                    self.reader.get_allowance(user, contracts.engine),
                )
        except Exception as exc:
            raise _read_failure(exc) from exc
        self.cache.put(key, view)
        return view

    # ------------------------------------------------------------------
    # Trade preview
    # ------------------------------------------------------------------
    def _validate_intent(self, intent: TradeIntent) -> None:
        if intent.amount <= 0:
            raise _rejected("Amount must be greater than zero", ErrorCode.INVALID_AMOUNT)
        self.risk.validate_leverage(intent.leverage)

    async def preview_trade(self, intent: TradeIntent) -> TradePreview:
        """
        Client-side slippage quote plus, when reachable, the ledger's own simulation.

        The simulated notional is amount * leverage.

        Raises:
            TradeRejected: invalid intent, or the quote cannot be filled
            ConnectivityError: the market snapshot could not be read
        """
        self._validate_intent(intent)
        contracts = await self._require_contracts(intent.market_slug)
        try:
            state = await self.reader.get_market_state(contracts)
        except Exception as exc:
            raise _read_failure(exc) from exc
        notional = intent.amount * intent.leverage
        quote = self.simulator.preview(state, intent.side, notional)
        preview = TradePreview(
            intent=intent,
            notional=notional,
            quote=quote,
            est_liquidation_price=self.risk.liquidation_price(quote.avg_price, intent.leverage, intent.side),
        )
        try:
            base, avg = await self.reader.simulate_open(contracts, intent.side, from_decimal(notional, WAD_DECIMALS))
            preview.ledger_base_amount = to_decimal(base)
            preview.ledger_avg_price = to_decimal(avg)
        except Exception as exc:
            self._log_event("ledger_simulation_unavailable", market=intent.market_slug,
                            error=decode_contract_error(exc).message)
        return preview

    # ------------------------------------------------------------------
    # Execution planning
    # ------------------------------------------------------------------
    async def plan_execution(self, intent: TradeIntent, contracts: ContractInfo, user: str) -> ExecutionPlan:
        """
        Pick exactly one execution path from balance and allowance.

        Raises:
            TradeRejected: insufficient total funds
        """
        engine = contracts.engine
        is_long = intent.side.is_long
        total_to_use = from_decimal(intent.amount, WAD_DECIMALS)
        leverage = from_decimal(intent.leverage, WAD_DECIMALS)

        internal = await self.reader.get_wallet_balance(engine, user)

        if intent.funding_source is not FundingSource.WALLET_DEPOSIT and internal >= total_to_use:
            return DirectBalance(engine, is_long, total_to_use, leverage, internal_balance=internal)

        if intent.funding_source is FundingSource.INTERNAL_BALANCE:
            raise _rejected(
                f"Internal balance {to_decimal(internal)} below requested {intent.amount}",
                ErrorCode.INSUFFICIENT_BALANCE,
            )

        shortfall = total_to_use if intent.funding_source is FundingSource.WALLET_DEPOSIT else total_to_use - internal
        deposit_usdc = wad_to_usdc(shortfall, round_up=True)

        allowance, wallet_usdc = await asyncio.gather(
            self.reader.get_allowance(user, engine),
            self.reader.get_collateral_balance(user),
        )
        if wallet_usdc < deposit_usdc:
            raise _rejected(
                f"Insufficient funds: need {deposit_usdc} collateral units, wallet holds {wallet_usdc}",
                ErrorCode.INSUFFICIENT_BALANCE,
            )

        if allowance >= deposit_usdc:
            return AllowanceDeposit(engine, is_long, total_to_use, leverage,
                                    deposit_usdc=deposit_usdc, allowance=allowance)

        permit_value = deposit_usdc if self.config.production else MAX_UINT256
        deadline = permit_deadline(self.config.permit_deadline_sec, production=self.config.production)
        return PermitDeposit(engine, is_long, total_to_use, leverage,
                             deposit_usdc=deposit_usdc, permit_value=permit_value, deadline=deadline)

    async def _execute_plan(self, plan: ExecutionPlan, ctx: TradeContext) -> TxOutcome:
        if isinstance(plan, DirectBalance):
            return await self.writer.open_position(plan.engine, plan.is_long, plan.total_to_use, plan.leverage)
        if isinstance(plan, AllowanceDeposit):
            return await self.writer.deposit_and_open(
                plan.engine, plan.deposit_usdc, plan.is_long, plan.total_to_use, plan.leverage
            )
        permit = await self.permit_signer.sign(plan.engine, plan.permit_value, plan.deadline)
        ctx.child("permit").info("permit_signed", nonce=permit.nonce, deadline=permit.deadline)
        return await self.writer.deposit_and_open_with_permit(
            plan.engine, plan.deposit_usdc, permit, plan.is_long, plan.total_to_use, plan.leverage
        )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------
    def _result_from_error(self, exc: BaseException, ctx: TradeContext, path: Optional[str] = None) -> ExecutionResult:
        if isinstance(exc, SignatureCancelled):
            status = ExecutionStatus.CANCELLED
            if self.metrics:
                self.metrics.signatures_cancelled.inc()
        elif isinstance(exc, (TradeRejected, ConnectivityError, MarketNotFound, UnsupportedOperation)):
            status = ExecutionStatus.REJECTED
        else:
            status = ExecutionStatus.FAILED
        decoded = decode_contract_error(exc)
        ctx.warning("trade_not_executed", status=status.value, code=decoded.code.value, error=decoded.message)
        return ExecutionResult(status=status, path=path, error=decoded)

    def _result_from_outcome(self, outcome: TxOutcome, path: str) -> ExecutionResult:
        return ExecutionResult(status=outcome.status, tx_hash=outcome.tx_hash, path=path, error=outcome.error)

    def _schedule_after_confirm(self, user: str, slug: str) -> None:
        async def _sync() -> None:
            if self.history is not None and self.config.trigger_sync_after_confirm:
                await self.history.trigger_sync()

        task = asyncio.create_task(self.cache.invalidate_after_confirm(
            user, slug, grace_sec=self.config.invalidation_grace_sec, before_invalidate=_sync,
        ))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def open_position(self, intent: TradeIntent) -> ExecutionResult:
        """Validate, plan and execute a position open. Never raises for ledger or signing failures."""
        ctx = TradeContext("open", intent.market_slug)
        path: Optional[str] = None
        try:
            self._validate_intent(intent)
            signer = self.session.require_signer()
            ctx.user = signer.address
            contracts = await self._require_contracts(intent.market_slug)

            plan = await self.plan_execution(intent, contracts, signer.address)
            path = ctx.path = plan.kind
            if self.metrics:
                self.metrics.execution_path.labels(path=path).inc()
            ctx.info("plan_selected", side=intent.side.value, amount=intent.amount,
                     leverage=intent.leverage, deposit_usdc=getattr(plan, "deposit_usdc", 0))

            outcome = await self._execute_plan(plan, ctx)
        except Exception as exc:
            return self._result_from_error(exc, ctx, path)

        result = self._result_from_outcome(outcome, path)
        if outcome.confirmed:
            result.position_id = parse_opened_position_id(outcome.receipt, contracts.engine)
            if result.position_id is None:
                result.status = ExecutionStatus.FAILED
                result.error = DecodedError(
                    message="Confirmed receipt has no PositionOpened event",
                    code=ErrorCode.UNKNOWN,
                )
                ctx.error("position_opened_event_missing", hash=outcome.tx_hash)
            self._schedule_after_confirm(signer.address, intent.market_slug)
        ctx.info("open_finished", status=result.status.value, hash=result.tx_hash, position_id=result.position_id)
        return result

    async def close_position(self, position_id: int, market_slug: Optional[str] = None) -> ExecutionResult:
        """
        Close ``position_id`` in ``market_slug``.

        Position ids are only unique per market, so a missing slug is rejected
        with MISSING_MARKET_CONTEXT.
        """
        ctx = TradeContext("close", market_slug)
        try:
            if not market_slug:
                raise UnsupportedOperation(
                    "Closing a position requires its market; position ids are not unique across markets",
                    ErrorCode.MISSING_MARKET_CONTEXT,
                )
            signer = self.session.require_signer()
            ctx.user = signer.address
            contracts = await self._require_contracts(market_slug)

            position = await self.reconciler.get_position(market_slug, contracts, position_id)
            if position is not None:
                if position.status is PositionStatus.NONE:
                    raise _rejected(f"Position {position_id} does not exist", ErrorCode.POSITION_NOT_FOUND)
                if position.owner.lower() != signer.address.lower():
                    raise _rejected(f"Position {position_id} is not owned by {signer.address}",
                                    ErrorCode.NOT_POSITION_OWNER)
                if not position.is_open:
                    raise _rejected(f"Position {position_id} is {position.status.label}",
                                    ErrorCode.POSITION_NOT_OPEN)

            outcome = await self.writer.close_position(contracts.engine, position_id)
        except Exception as exc:
            return self._result_from_error(exc, ctx, "close")

        result = self._result_from_outcome(outcome, "close")
        result.position_id = position_id
        if outcome.confirmed:
            result.realized_pnl = parse_closed_pnl(outcome.receipt, contracts.engine)
            self._schedule_after_confirm(signer.address, market_slug)
        ctx.info("close_finished", status=result.status.value, hash=result.tx_hash, realized_pnl=result.realized_pnl)
        return result

    async def deposit(self, market_slug: str, amount: Decimal) -> ExecutionResult:
        """Deposit collateral into the market's engine, approving first when the allowance is short."""
        ctx = TradeContext("deposit", market_slug)
        try:
            if amount <= 0:
                raise _rejected("Amount must be greater than zero", ErrorCode.INVALID_AMOUNT)
            signer = self.session.require_signer()
            ctx.user = signer.address
            contracts = await self._require_contracts(market_slug)
            amount_usdc = parse_usdc(amount)
            allowance = await self.reader.get_allowance(signer.address, contracts.engine)
            path = "deposit"
            if allowance < amount_usdc:
                path = ctx.path = "approve_deposit"
                ctx.child("approve").info("allowance_short", allowance=allowance, amount_usdc=amount_usdc)
                approval = await self.writer.approve(contracts.engine, amount_usdc)
                if not approval.confirmed:
                    return self._result_from_outcome(approval, path)
            outcome = await self.writer.deposit(contracts.engine, amount_usdc)
        except Exception as exc:
            return self._result_from_error(exc, ctx, "deposit")
        if outcome.confirmed:
            self._schedule_after_confirm(signer.address, market_slug)
        return self._result_from_outcome(outcome, path)

    async def withdraw(self, market_slug: str, amount: Decimal) -> ExecutionResult:
        """Withdraw ``amount`` from the internal engine balance."""
        ctx = TradeContext("withdraw", market_slug)
        try:
            if amount <= 0:
                raise _rejected("Amount must be greater than zero", ErrorCode.INVALID_AMOUNT)
            signer = self.session.require_signer()
            ctx.user = signer.address
            contracts = await self._require_contracts(market_slug)
            outcome = await self.writer.withdraw(contracts.engine, from_decimal(amount, WAD_DECIMALS))
        except Exception as exc:
            return self._result_from_error(exc, ctx, "withdraw")
        if outcome.confirmed:
            self._schedule_after_confirm(signer.address, market_slug)
        return self._result_from_outcome(outcome, "withdraw")
