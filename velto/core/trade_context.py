"""
Per-flow logging context for open/close/deposit/withdraw.

A TradeContext is created at the start of one orchestrator flow and threaded
through its steps. Every line it emits is one JSON object carrying the same
trace_id plus the flow's operation, market, account and, once chosen, the
execution path. Sub-steps (permit signing, approval) get a child context whose
parent_trace_id points back at the flow.

Usage:
    ctx = TradeContext("open", "acme", user=signer.address)
    ctx.path = plan.kind
    ctx.info("plan_selected", deposit_usdc=plan.deposit_usdc)
    ctx.child("permit").info("permit_signed", nonce=permit.nonce)
"""

from __future__ import annotations

import logging
import time
import uuid
from typing import Any, Dict, Optional

from velto.core.json_utils import dumps


class TradeContext:
    """Trace-correlated structured logger for a single trade flow."""

    def __init__(
        self,
        op: str,
        market: Optional[str],
        user: Optional[str] = None,
        parent_trace_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.op = op
        self.market = market
        self.user = user
        self.path: Optional[str] = None
        self.step: Optional[str] = None
        self.trace_id = uuid.uuid4().hex
        self.parent_trace_id = parent_trace_id
        self.logger = logger or logging.getLogger("velto")
        self._started = time.monotonic()

    def elapsed_ms(self) -> float:
        return (time.monotonic() - self._started) * 1000.0

    def fields(self) -> Dict[str, Any]:
        """Correlation fields stamped on every line; unset ones are omitted."""
        out: Dict[str, Any] = {"trace_id": self.trace_id, "op": self.op}
        for key in ("parent_trace_id", "step", "market", "user", "path"):
            value = getattr(self, key)
            if value is not None:
                out[key] = value
        return out

    def emit(self, level: int, event: str, **data: Any) -> None:
        if not self.logger.isEnabledFor(level):
            return
        payload = {"event": event, **self.fields(), "elapsed_ms": round(self.elapsed_ms(), 1), **data}
        self.logger.log(level, dumps(payload))

    def info(self, event: str, **data: Any) -> None:
        self.emit(logging.INFO, event, **data)

    def warning(self, event: str, **data: Any) -> None:
        self.emit(logging.WARNING, event, **data)

    def error(self, event: str, **data: Any) -> None:
        self.emit(logging.ERROR, event, **data)

    def child(self, step: str) -> TradeContext:
        """Context for a sub-step of this flow; keeps op, market, user and path."""
        child = TradeContext(self.op, self.market, user=self.user, parent_trace_id=self.trace_id, logger=self.logger)
        child.path = self.path
        child.step = step
        return child
