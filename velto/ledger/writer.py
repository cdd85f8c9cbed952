"""
LedgerWriter: simulate -> sign -> submit -> confirm pipeline for engine calls.

Architecture:
    execute() runs one contract write end to end:
    1. require a signer (connectivity errors fail fast, no retry)
    2. eth_call simulation; a revert here raises TradeRejected and nothing is sent
    3. under the account's nonce lock: allocate nonce, build, sign, broadcast
    4. wait for the receipt with a bounded timeout

    A receipt with status 0 becomes a failed TxOutcome, not an exception. A
    confirmation timeout becomes a PENDING outcome carrying TX_TIMEOUT; the
    transaction may still land.

Thread Safety:
    The nonce lock covers nonce allocation and broadcast only. Concurrent
    open/close flows from the same account are not serialized.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TYPE_CHECKING

from web3 import Web3
from web3.exceptions import TimeExhausted

from velto.core.errors import DecodedError, ErrorCode, SignatureCancelled, TradeRejected
from velto.core.json_utils import dumps
from velto.core.types import ExecutionStatus
from velto.ledger.abi import (
    ERC20_PERMIT_ABI,
    PERP_ENGINE_ABI,
    POSITION_CLOSED_TOPIC,
    POSITION_OPENED_TOPIC,
)
from velto.ledger.error_decoder import decode_contract_error

if TYPE_CHECKING:
    from velto.ledger.permit import PermitSignature
    from velto.ledger.session import SessionContext
    from velto.monitoring.metrics import TradingMetrics

log = logging.getLogger("velto")

DEFAULT_CONFIRM_TIMEOUT_SEC = 120.0


@dataclass
class TxOutcome:
    """Result of one submitted transaction."""
    tx_hash: str
    status: ExecutionStatus
    receipt: Optional[Any] = None
    error: Optional[DecodedError] = None

    @property
    def confirmed(self) -> bool:
        return self.status is ExecutionStatus.CONFIRMED


def _hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return Web3.to_hex(value).lower()


def _as_bytes(data: Any) -> bytes:
    if isinstance(data, str):
        return Web3.to_bytes(hexstr=data)
    return bytes(data)


def _logs(receipt: Any) -> List[Any]:
    if receipt is None:
        return []
    return list(receipt.get("logs") or [])


def _find_engine_log(receipt: Any, engine: str, topic: str) -> Optional[Any]:
    engine_lc = engine.lower()
    for entry in _logs(receipt):
        if str(entry["address"]).lower() != engine_lc:
            continue
        topics = entry["topics"]
        if topics and _hex(topics[0]) == topic:
            return entry
    return None


def parse_opened_position_id(receipt: Any, engine: str) -> Optional[int]:
    """Position id from the first PositionOpened log emitted by ``engine`` (indexed topic 1)."""
    entry = _find_engine_log(receipt, engine, POSITION_OPENED_TOPIC)
    if entry is None or len(entry["topics"]) < 2:
        return None
    return int(_hex(entry["topics"][1]), 16)


def parse_closed_pnl(receipt: Any, engine: str) -> Optional[int]:
    """Signed realized PnL (first int256 data word) from the PositionClosed log."""
    entry = _find_engine_log(receipt, engine, POSITION_CLOSED_TOPIC)
    if entry is None:
        return None
    data = _as_bytes(entry["data"])
    if len(data) < 32:
        return None
    return int.from_bytes(data[:32], "big", signed=True)


class LedgerWriter:
    def __init__(
        self,
        session: "SessionContext",
        metrics: Optional["TradingMetrics"] = None,
        confirm_timeout_sec: float = DEFAULT_CONFIRM_TIMEOUT_SEC,
        log_event_callback: Optional[Callable[..., None]] = None,
    ) -> None:
        self._session = session
        self._metrics = metrics
        self._confirm_timeout = confirm_timeout_sec
        self._log_event = log_event_callback or self._default_log

    def _default_log(self, event: str, **kwargs: Any) -> None:
        payload = {"event": event, **kwargs}
        log.info(dumps(payload))

    def _count_failure(self, fn_name: str, code: ErrorCode) -> None:
        if self._metrics:
            self._metrics.tx_failed.labels(function=fn_name, code=code.value).inc()

    async def execute(
        self,
        address: str,
        abi: List[Dict[str, Any]],
        fn_name: str,
        args: Sequence[Any] = (),
    ) -> TxOutcome:
        """
        Run one contract write through simulate -> sign -> submit -> confirm.

        Raises:
            ConnectivityError: no signer attached
            TradeRejected: simulation, gas estimation or broadcast failed
            SignatureCancelled: the signer declined
        """
        signer = self._session.require_signer()
        w3 = self._session.w3
        contract = self._session.contract(address, abi)
        fn = getattr(contract.functions, fn_name)(*args)

        try:
            await fn.call({"from": signer.address})
        except Exception as exc:
            decoded = decode_contract_error(exc)
            self._log_event("tx_simulation_failed", function=fn_name, code=decoded.code.value, error=decoded.message)
            self._count_failure(fn_name, decoded.code)
            raise TradeRejected(decoded) from exc

        try:
            async with self._session.nonces.allocate(
                signer.address, lambda: w3.eth.get_transaction_count(signer.address, "pending")
            ) as nonce:
                tx = await fn.build_transaction({
                    "from": signer.address,
                    "nonce": nonce,
                    "chainId": self._session.chain_id,
                })
                signed = signer.sign_transaction(tx)
                raw_hash = await w3.eth.send_raw_transaction(signed.raw_transaction)
        except Exception as exc:
            decoded = decode_contract_error(exc)
            self._count_failure(fn_name, decoded.code)
            if decoded.code is ErrorCode.USER_REJECTED:
                raise SignatureCancelled() from exc
            self._log_event("tx_submit_failed", function=fn_name, code=decoded.code.value, error=decoded.message)
            raise TradeRejected(decoded) from exc

        tx_hash = _hex(raw_hash)
        submitted_at = time.monotonic()
        if self._metrics:
            self._metrics.tx_submitted.labels(function=fn_name).inc()
        self._log_event("tx_submitted", function=fn_name, hash=tx_hash, nonce=nonce)

        try:
            receipt = await w3.eth.wait_for_transaction_receipt(raw_hash, timeout=self._confirm_timeout)
        except TimeExhausted as exc:
            decoded = decode_contract_error(exc)
            self._log_event("tx_confirm_timeout", function=fn_name, hash=tx_hash, timeout_sec=self._confirm_timeout)
            self._count_failure(fn_name, decoded.code)
            return TxOutcome(tx_hash=tx_hash, status=ExecutionStatus.PENDING, error=decoded)

        if self._metrics:
            self._metrics.tx_confirm_latency_ms.labels(function=fn_name).observe(
                (time.monotonic() - submitted_at) * 1000.0
            )

        if int(receipt["status"]) != 1:
            decoded = DecodedError(message="Transaction reverted on-chain", code=ErrorCode.TX_REVERTED, raw=receipt)
            self._log_event("tx_reverted", function=fn_name, hash=tx_hash, block=receipt.get("blockNumber"))
            self._count_failure(fn_name, decoded.code)
            return TxOutcome(tx_hash=tx_hash, status=ExecutionStatus.FAILED, receipt=receipt, error=decoded)

        if self._metrics:
            self._metrics.tx_confirmed.labels(function=fn_name).inc()
        self._log_event("tx_confirmed", function=fn_name, hash=tx_hash, block=receipt.get("blockNumber"))
        return TxOutcome(tx_hash=tx_hash, status=ExecutionStatus.CONFIRMED, receipt=receipt)

    # ------------------------------------------------------------------
    # Engine entrypoints
    # ------------------------------------------------------------------
    async def deposit(self, engine: str, amount_usdc: int) -> TxOutcome:
        return await self.execute(engine, PERP_ENGINE_ABI, "deposit", [amount_usdc])

    async def withdraw(self, engine: str, amount: int) -> TxOutcome:
        """Withdraw from the internal balance; ``amount`` is 18-decimal."""
        return await self.execute(engine, PERP_ENGINE_ABI, "withdraw", [amount])

    async def approve(self, spender: str, amount_usdc: int) -> TxOutcome:
        token = self._session.require_collateral_token()
        return await self.execute(token, ERC20_PERMIT_ABI, "approve", [Web3.to_checksum_address(spender), amount_usdc])

    async def open_position(self, engine: str, is_long: bool, total_to_use: int, leverage: int) -> TxOutcome:
        return await self.execute(engine, PERP_ENGINE_ABI, "openPosition", [is_long, total_to_use, leverage])

    async def deposit_and_open(
        self,
        engine: str,
        deposit_usdc: int,
        is_long: bool,
        total_to_use: int,
        leverage: int,
    ) -> TxOutcome:
        return await self.execute(
            engine,
            PERP_ENGINE_ABI,
            "depositAndOpenPosition",
            [deposit_usdc, is_long, total_to_use, leverage],
        )

    async def deposit_and_open_with_permit(
        self,
        engine: str,
        deposit_usdc: int,
        permit: "PermitSignature",
        is_long: bool,
        total_to_use: int,
        leverage: int,
    ) -> TxOutcome:
        return await self.execute(
            engine,
            PERP_ENGINE_ABI,
            "depositAndOpenPositionWithPermit",
            [
                deposit_usdc,
                permit.value,
                is_long,
                total_to_use,
                leverage,
                permit.deadline,
                permit.v,
                Web3.to_bytes(hexstr=permit.r),
                Web3.to_bytes(hexstr=permit.s),
            ],
        )

    async def close_position(self, engine: str, position_id: int) -> TxOutcome:
        return await self.execute(engine, PERP_ENGINE_ABI, "closePosition", [position_id])
