"""
MarketPoller: fixed-interval refresh of every visible market's ledger snapshot.

Architecture:
    One asyncio task wakes every poll_interval_sec and fans out snapshot reads
    to all visible markets through LedgerReader.get_market_states (five reads
    per market, no global cap). A failed market keeps its previous snapshot and
    is reported; the others update normally.

    In-flight reads are never aborted. Each cycle captures the generation
    counter before reading; stop() and set_visible() bump it, so responses
    that arrive after teardown or a visibility change are discarded.

Usage:
    poller = MarketPoller(reader, on_update=render)
    poller.set_visible({"acme": contracts})
    poller.start()
    ...
    await poller.stop()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional, TYPE_CHECKING

from velto.core.json_utils import dumps
from velto.core.types import ContractInfo, MarketState

if TYPE_CHECKING:
    from velto.ledger.reader import LedgerReader
    from velto.monitoring.metrics import TradingMetrics
    from velto.pricing.simulator import PricingSimulator

import logging

log = logging.getLogger("velto")


@dataclass
class MarketPollerConfig:
    """Configuration for MarketPoller."""
    poll_interval_sec: float = 3.0

    # Logging callback
    log_event_callback: Optional[Callable[..., None]] = None


@dataclass
class PollCycleResult:
    """Result of one poll cycle."""
    generation: int
    states: Dict[str, MarketState] = field(default_factory=dict)
    failures: Dict[str, str] = field(default_factory=dict)
    discarded: bool = False
    duration_ms: float = 0.0


class MarketPoller:
    def __init__(
        self,
        reader: "LedgerReader",
        on_update: Optional[Callable[[str, MarketState], Any]] = None,
        simulator: Optional["PricingSimulator"] = None,
        metrics: Optional["TradingMetrics"] = None,
        config: Optional[MarketPollerConfig] = None,
    ) -> None:
        self.reader = reader
        self.on_update = on_update
        self.simulator = simulator
        self.metrics = metrics
        self.config = config or MarketPollerConfig()

        self._visible: Dict[str, ContractInfo] = {}
        self._latest: Dict[str, MarketState] = {}
        self._generation = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

        self._log_event = self.config.log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(dumps(payload))

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_running(self) -> bool:
        return self._running

    def set_visible(self, markets: Mapping[str, ContractInfo]) -> None:
        """Replace the visible set; in-flight responses for the old set are discarded."""
        self._visible = dict(markets)
        self._generation += 1
        for slug in list(self._latest):
            if slug not in self._visible:
                del self._latest[slug]

    def latest(self, slug: str) -> Optional[MarketState]:
        return self._latest.get(slug)

    def snapshot(self) -> Dict[str, MarketState]:
        return dict(self._latest)

    def _discard(self, result: PollCycleResult) -> PollCycleResult:
        result.discarded = True
        if self.metrics:
            self.metrics.stale_responses_dropped.inc()
        self._log_event("poll_response_discarded", generation=result.generation, current=self._generation)
        return result

    async def poll_once(self) -> PollCycleResult:
        generation = self._generation
        visible = dict(self._visible)
        started = time.monotonic()
        result = PollCycleResult(generation=generation)
        if not visible:
            return result

        states = await self.reader.get_market_states(visible)
        result.duration_ms = (time.monotonic() - started) * 1000.0

        if generation != self._generation:
            return self._discard(result)

        for slug, res in states.items():
            # An awaited handler may have stopped the poller or changed the visible set.
            if generation != self._generation:
                return self._discard(result)
            if isinstance(res, BaseException):
                result.failures[slug] = str(res)
                continue
            previous = self._latest.get(slug)
            self._latest[slug] = res
            result.states[slug] = res
            if self.simulator is not None:
                self.simulator.check_invariant(res, previous=previous, market=slug)
            if self.on_update is not None:
                try:
                    maybe = self.on_update(slug, res)
                    if asyncio.iscoroutine(maybe):
                        await maybe
                except Exception as exc:
                    self._log_event("poll_update_handler_error", market=slug, error=str(exc))

        if self.metrics:
            self.metrics.poll_cycles.inc()
            self.metrics.poll_cycle_ms.observe(result.duration_ms)
        return result

    async def _run(self) -> None:
        while self._running:
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                self._log_event("poll_error", error=str(exc))
            await asyncio.sleep(self.config.poll_interval_sec)

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run(), name="market-poller")
        self._log_event("poller_started", markets=sorted(self._visible), interval_sec=self.config.poll_interval_sec)

    async def stop(self) -> None:
        """Tear down the timer; responses still in flight are discarded."""
        self._running = False
        self._generation += 1
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._log_event("poller_stopped")
