"""
Fast JSON utilities for structured logging and HTTP payloads.

Usage:
    from velto.core.json_utils import dumps, loads

    log.info(dumps({"event": "tx_confirmed", "hash": tx_hash}))
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

import orjson

_INT64_MAX = 2**63 - 1


def _default(obj: Any) -> Any:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, Mapping):
        return dict(obj)
    if isinstance(obj, (set, frozenset, tuple)):
        return list(obj)
    raise TypeError(f"Type is not JSON serializable: {type(obj).__name__}")


def _widen(obj: Any) -> Any:
    """Stringify integers outside orjson's 64-bit range (18-decimal ledger values)."""
    if isinstance(obj, bool):
        return obj
    if isinstance(obj, int):
        return str(obj) if abs(obj) > _INT64_MAX else obj
    if isinstance(obj, Mapping):
        return {str(k): _widen(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_widen(v) for v in obj]
    return obj


def dumps_bytes(obj: Any) -> bytes:
    """Fast JSON encode to bytes."""
    try:
        return orjson.dumps(obj, default=_default)
    except orjson.JSONEncodeError:
        return orjson.dumps(_widen(obj), default=_default)


def dumps(obj: Any) -> str:
    """Fast JSON encode to string."""
    return dumps_bytes(obj).decode("utf-8")


def loads(s: str | bytes) -> Any:
    """Fast JSON decode."""
    return orjson.loads(s)
