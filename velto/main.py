"""
Command-line entry point wiring all components.

    velto markets
    velto market acme
    velto positions [--market acme] [--user 0x..]
    velto preview acme long 100 5
    velto open acme long 100 5 [--funding auto|internal_balance|wallet_deposit]
    velto close acme 42
    velto deposit acme 250
    velto withdraw acme 250
    velto watch [acme ...]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from rich.console import Console
from rich.table import Table

from velto.config.config import Settings
from velto.core.errors import VeltoError
from velto.core.json_utils import dumps
from velto.core.types import FundingSource, MarketState, Side, TradeIntent
from velto.infra.logging_cfg import build_logger, log_event
from velto.monitoring.metrics import TradingMetrics
from velto.orchestrator.market_poller import MarketPoller, MarketPollerConfig
from velto.orchestrator.trade_orchestrator import TradeOrchestrator

console = Console()


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value!r}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="velto", description="vAMM perpetuals trading client")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("markets", help="list markets with deployed contracts")

    p = sub.add_parser("market", help="merged view of one market")
    p.add_argument("slug")

    p = sub.add_parser("positions", help="open positions with risk at mark")
    p.add_argument("--market", dest="slug")
    p.add_argument("--user")

    for name, help_text in (("preview", "quote a trade without sending it"), ("open", "open a position")):
        p = sub.add_parser(name, help=help_text)
        p.add_argument("slug")
        p.add_argument("side", choices=[s.value for s in Side])
        p.add_argument("amount", type=_decimal, help="margin in collateral units")
        p.add_argument("leverage", type=_decimal)
        p.add_argument("--funding", choices=[f.value for f in FundingSource], default=FundingSource.AUTO.value)

    p = sub.add_parser("close", help="close a position")
    p.add_argument("slug")
    p.add_argument("position_id", type=int)

    for name in ("deposit", "withdraw"):
        p = sub.add_parser(name, help=f"{name} collateral")
        p.add_argument("slug")
        p.add_argument("amount", type=_decimal)

    p = sub.add_parser("watch", help="poll market snapshots until interrupted")
    p.add_argument("slugs", nargs="*")
    return parser


def _print_json(payload) -> None:
    console.print_json(dumps(payload))


async def _cmd_markets(orch: TradeOrchestrator) -> int:
    views = await orch.list_markets()
    table = Table(title="Markets")
    for col in ("slug", "name", "engine", "tradable"):
        table.add_column(col)
    for v in views:
        engine = v.market.contracts.engine if v.market.contracts else "-"
        table.add_row(v.slug, v.market.name, engine, "yes" if v.market.is_tradable else "no")
    console.print(table)
    return 0


async def _cmd_market(orch: TradeOrchestrator, slug: str) -> int:
    view = await orch.get_market_view(slug)
    if view is None:
        console.print(f"unknown market {slug}")
        return 1
    _print_json(view.to_dict())
    return 0


async def _cmd_positions(orch: TradeOrchestrator, slug: Optional[str], user: Optional[str]) -> int:
    views = await orch.get_user_positions(user=user, slug=slug)
    table = Table(title="Open positions")
    for col in ("market", "id", "side", "entry", "mark", "lev", "liq", "pnl", "risk"):
        table.add_column(col)
    for v in views:
        p, r = v.position, v.risk
        table.add_row(
            p.market_slug,
            str(p.id),
            p.side.value,
            f"{p.entry:.4f}",
            f"{v.mark_price:.4f}" if v.mark_price is not None else "-",
            f"{p.leverage:.2f}x",
            f"{p.liquidation_price:.4f}",
            f"{r.unrealized_pnl:.2f}" if r else "-",
            r.bucket.value if r else "stale",
        )
    console.print(table)
    return 0


def _intent(args) -> TradeIntent:
    return TradeIntent(
        market_slug=args.slug,
        side=Side.parse(args.side),
        amount=args.amount,
        leverage=args.leverage,
        funding_source=FundingSource(args.funding),
    )


async def _cmd_watch(orch: TradeOrchestrator, cfg: Settings, metrics: TradingMetrics, slugs: List[str]) -> int:
    markets = await orch.tradable_markets()
    if slugs:
        markets = {s: c for s, c in markets.items() if s in slugs}
    if not markets:
        console.print("no tradable markets to watch")
        return 1

    def on_update(slug: str, state: MarketState) -> None:
        console.print(f"{slug:<16} mark={state.mark:.6f} base={state.base:.4f} quote={state.quote:.4f}")

    poller = MarketPoller(
        orch.reader,
        on_update=on_update,
        simulator=orch.simulator,
        metrics=metrics,
        config=MarketPollerConfig(poll_interval_sec=cfg.poll_interval_sec),
    )
    poller.set_visible(markets)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    poller.start()
    try:
        await stop.wait()
    finally:
        await poller.stop()
    return 0


async def run(args: argparse.Namespace) -> int:
    cfg = Settings.load()
    log = build_logger("velto", level=cfg.log_level, file_path=cfg.log_file)
    metrics = TradingMetrics()
    if cfg.metrics_port > 0:
        metrics.serve(cfg.metrics_port)
        log_event(log, "metrics_server_started", port=cfg.metrics_port)

    orch = TradeOrchestrator.from_settings(cfg, metrics=metrics)
    try:
        if not await orch.session.is_connected():
            log_event(log, "rpc_unreachable", level=logging.WARNING, rpc_url=cfg.rpc_url)
        cmd = args.command
        if cmd == "markets":
            return await _cmd_markets(orch)
        if cmd == "market":
            return await _cmd_market(orch, args.slug)
        if cmd == "positions":
            return await _cmd_positions(orch, args.slug, args.user)
        if cmd == "preview":
            preview = await orch.preview_trade(_intent(args))
            _print_json(preview.to_dict())
            return 0
        if cmd == "watch":
            return await _cmd_watch(orch, cfg, metrics, args.slugs)

        if cmd == "open":
            result = await orch.open_position(_intent(args))
        elif cmd == "close":
            result = await orch.close_position(args.position_id, args.slug)
        elif cmd == "deposit":
            result = await orch.deposit(args.slug, args.amount)
        else:
            result = await orch.withdraw(args.slug, args.amount)
        _print_json(result.to_dict())
        return 0 if result.ok else 2
    except VeltoError as exc:
        _print_json({"error": exc.decoded.to_dict()})
        return 1
    finally:
        await orch.aclose()
        log_event(log, "shutdown_complete")


def cli(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        code = asyncio.run(run(args))
    except KeyboardInterrupt:
        code = 130
    sys.exit(code)


if __name__ == "__main__":
    cli()
