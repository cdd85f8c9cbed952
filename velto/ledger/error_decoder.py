"""
Decode raw web3 / signing failures into a DecodedError.

Resolution order:
1. Errors already in the client taxonomy pass through.
2. Custom-error revert data is matched against the known 4-byte selectors.
3. web3 revert exceptions and node messages are string-matched for a reason
   string, a custom error name or a user rejection.
"""

from __future__ import annotations

import asyncio
import re
from typing import Any, Optional

from web3.exceptions import ContractCustomError, ContractLogicError, TimeExhausted

from velto.core.errors import CONTRACT_ERROR_CODES, DecodedError, ErrorCode, VeltoError
from velto.ledger.abi import ERROR_SELECTORS

_REASON_RE = re.compile(r"reverted with reason string ['\"](.+?)['\"]")
_CUSTOM_RE = re.compile(r"reverted with custom error ['\"](\w+)(?:\(.*?\))?['\"]")
_EXECUTION_REVERTED_RE = re.compile(r"execution reverted:?\s*(.*)", re.IGNORECASE)
_SELECTOR_RE = re.compile(r"0x[0-9a-fA-F]{8}")
_REJECTION_PHRASES = ("user rejected", "user denied", "rejected by user")


def _from_contract_error_name(name: str, raw: Any) -> DecodedError:
    return DecodedError(
        message=f"Contract Error: {name}",
        code=CONTRACT_ERROR_CODES.get(name, ErrorCode.TX_REVERTED),
        contract_error=name,
        raw=raw,
    )


def _selector_name(data: Any) -> Optional[str]:
    if data is None:
        return None
    if isinstance(data, (bytes, bytearray)):
        text = "0x" + bytes(data).hex()
    else:
        text = str(data)
    match = _SELECTOR_RE.search(text)
    if not match:
        return None
    return ERROR_SELECTORS.get(match.group(0).lower())


def is_user_rejection(exc: BaseException) -> bool:
    text = str(exc).lower()
    return any(phrase in text for phrase in _REJECTION_PHRASES)


def decode_contract_error(exc: BaseException) -> DecodedError:
    """Map any exception raised by a ledger call or signature request to a DecodedError."""
    if isinstance(exc, VeltoError):
        return exc.decoded

    if isinstance(exc, TimeExhausted):
        return DecodedError(
            message="Transaction not confirmed before timeout",
            code=ErrorCode.TX_TIMEOUT,
            raw=exc,
        )

    if isinstance(exc, ContractCustomError):
        name = _selector_name(getattr(exc, "data", None)) or _selector_name(str(exc))
        if name:
            return _from_contract_error_name(name, exc)
        return DecodedError(message=f"Contract Error: {exc}", code=ErrorCode.TX_REVERTED, raw=exc)

    message = str(getattr(exc, "message", None) or exc)

    if is_user_rejection(exc):
        return DecodedError(message="Transaction rejected by user", code=ErrorCode.USER_REJECTED, raw=exc)

    match = _REASON_RE.search(message)
    if match:
        return DecodedError(message=f"Revert: {match.group(1)}", code=ErrorCode.TX_REVERTED, raw=exc)

    match = _CUSTOM_RE.search(message)
    if match:
        return _from_contract_error_name(match.group(1), exc)

    if isinstance(exc, ContractLogicError):
        name = _selector_name(getattr(exc, "data", None))
        if name:
            return _from_contract_error_name(name, exc)
        reason = ""
        match = _EXECUTION_REVERTED_RE.search(message)
        if match:
            reason = match.group(1).strip()
        return DecodedError(
            message=f"Revert: {reason}" if reason else "Transaction reverted",
            code=ErrorCode.TX_REVERTED,
            raw=exc,
        )

    if isinstance(exc, (ConnectionError, asyncio.TimeoutError, OSError)):
        return DecodedError(message=f"Ledger RPC unavailable: {message}", code=ErrorCode.RPC_UNAVAILABLE, raw=exc)

    return DecodedError(message=message or "Unknown contract error", code=ErrorCode.UNKNOWN, raw=exc)
