"""
Minimal contract ABIs for the engine, vAMM, position registry and collateral token.

Only the entries the client calls or decodes are listed.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from eth_utils import event_abi_to_log_topic, function_signature_to_4byte_selector


def _params(items: Sequence[Tuple[str, str]]) -> List[Dict[str, Any]]:
    return [{"name": name, "type": typ} for name, typ in items]


def _fn(
    name: str,
    inputs: Sequence[Tuple[str, str]] = (),
    outputs: Sequence[Tuple[str, str]] = (),
    mutability: str = "view",
) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": _params(inputs),
        "outputs": _params(outputs),
        "stateMutability": mutability,
    }


def _event(name: str, fields: Sequence[Tuple[str, str, bool]]) -> Dict[str, Any]:
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in fields],
    }


def _error(name: str) -> Dict[str, Any]:
    return {"type": "error", "name": name, "inputs": []}


CUSTOM_ERRORS = (
    "InsufficientBalance",
    "InvalidAmount",
    "InvalidLeverage",
    "NotLiquidatable",
    "NotPositionOwner",
    "PositionNotFound",
    "PositionNotOpen",
    "InsufficientLiquidity",
    "Unauthorized",
)

POSITION_OPENED = _event("PositionOpened", [
    ("positionId", "uint256", True),
    ("user", "address", True),
    ("isLong", "bool", True),
    ("totalToUse", "uint256", False),
    ("margin", "uint256", False),
    ("fee", "uint256", False),
    ("leverage", "uint256", False),
    ("baseSize", "uint256", False),
    ("entryPrice", "uint256", False),
])

POSITION_CLOSED = _event("PositionClosed", [
    ("positionId", "uint256", True),
    ("user", "address", True),
    ("totalPnl", "int256", False),
    ("avgClosePrice", "uint256", False),
])

POSITION_LIQUIDATED = _event("PositionLiquidated", [
    ("positionId", "uint256", True),
    ("user", "address", True),
    ("liquidator", "address", True),
    ("liqFee", "uint256", False),
])

PERP_ENGINE_ABI: List[Dict[str, Any]] = [
    _fn("deposit", [("amount", "uint256")], mutability="nonpayable"),
    _fn("withdraw", [("amount", "uint256")], mutability="nonpayable"),
    _fn(
        "openPosition",
        [("isLong", "bool"), ("totalToUse", "uint256"), ("leverage", "uint256")],
        [("positionId", "uint256")],
        mutability="nonpayable",
    ),
    _fn(
        "depositAndOpenPosition",
        [
            ("depositAmount", "uint256"),
            ("isLong", "bool"),
            ("totalToUse", "uint256"),
            ("leverage", "uint256"),
        ],
        [("positionId", "uint256")],
        mutability="nonpayable",
    ),
    _fn(
        "depositAndOpenPositionWithPermit",
        [
            ("depositAmount", "uint256"),
            ("permitAmount", "uint256"),
            ("isLong", "bool"),
            ("totalToUse", "uint256"),
            ("leverage", "uint256"),
            ("deadline", "uint256"),
            ("v", "uint8"),
            ("r", "bytes32"),
            ("s", "bytes32"),
        ],
        [("positionId", "uint256")],
        mutability="nonpayable",
    ),
    _fn("closePosition", [("positionId", "uint256")], [("totalPnl", "int256")], mutability="nonpayable"),
    _fn("getWalletBalance", [("user", "address")], [("", "uint256")]),
    _fn("getFundBalances", outputs=[("trade", "uint256"), ("insurance", "uint256"), ("protocol", "uint256")]),
    _fn(
        "getMarketInfo",
        outputs=[
            ("perpEngine", "address"),
            ("perpMarket", "address"),
            ("positionMgr", "address"),
            ("chainId", "uint256"),
            ("deployBlock", "uint256"),
        ],
    ),
    POSITION_OPENED,
    POSITION_CLOSED,
    POSITION_LIQUIDATED,
] + [_error(name) for name in CUSTOM_ERRORS]

PERP_MARKET_ABI: List[Dict[str, Any]] = [
    _fn("getMarkPrice", outputs=[("", "uint256")]),
    _fn("baseReserve", outputs=[("", "uint256")]),
    _fn("quoteReserve", outputs=[("", "uint256")]),
    _fn("longOpenInterest", outputs=[("", "uint256")]),
    _fn("shortOpenInterest", outputs=[("", "uint256")]),
    _fn("simulateOpenLong", [("quoteIn", "uint256")], [("baseOut", "uint256"), ("avgPrice", "uint256")]),
    _fn("simulateOpenShort", [("quoteOut", "uint256")], [("baseIn", "uint256"), ("avgPrice", "uint256")]),
    _fn("simulateCloseLong", [("baseSize", "uint256")], [("quoteOut", "uint256"), ("avgPrice", "uint256")]),
    _fn("simulateCloseShort", [("baseSize", "uint256")], [("quoteIn", "uint256"), ("avgPrice", "uint256")]),
] + [_error(name) for name in CUSTOM_ERRORS]

POSITION_REGISTRY_ABI: List[Dict[str, Any]] = [
    {
        "type": "function",
        "name": "getPosition",
        "inputs": [{"name": "positionId", "type": "uint256"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": _params([
                ("id", "uint256"),
                ("user", "address"),
                ("isLong", "bool"),
                ("baseSize", "uint256"),
                ("entryPrice", "uint256"),
                ("entryNotional", "uint256"),
                ("margin", "uint256"),
                ("carrySnapshot", "int256"),
                ("openBlock", "uint256"),
                ("status", "uint8"),
                ("realizedPnl", "int256"),
            ]),
        }],
        "stateMutability": "view",
    },
] + [_error(name) for name in CUSTOM_ERRORS]

ERC20_PERMIT_ABI: List[Dict[str, Any]] = [
    _fn("name", outputs=[("", "string")]),
    _fn("decimals", outputs=[("", "uint8")]),
    _fn("balanceOf", [("owner", "address")], [("", "uint256")]),
    _fn("allowance", [("owner", "address"), ("spender", "address")], [("", "uint256")]),
    _fn("nonces", [("owner", "address")], [("", "uint256")]),
    _fn("approve", [("spender", "address"), ("value", "uint256")], [("", "bool")], mutability="nonpayable"),
    _fn(
        "permit",
        [
            ("owner", "address"),
            ("spender", "address"),
            ("value", "uint256"),
            ("deadline", "uint256"),
            ("v", "uint8"),
            ("r", "bytes32"),
            ("s", "bytes32"),
        ],
        mutability="nonpayable",
    ),
]

# keccak topics of the position lifecycle events
POSITION_OPENED_TOPIC = "0x" + event_abi_to_log_topic(POSITION_OPENED).hex()
POSITION_CLOSED_TOPIC = "0x" + event_abi_to_log_topic(POSITION_CLOSED).hex()
POSITION_LIQUIDATED_TOPIC = "0x" + event_abi_to_log_topic(POSITION_LIQUIDATED).hex()

# 4-byte selector -> custom error name
ERROR_SELECTORS: Dict[str, str] = {
    "0x" + function_signature_to_4byte_selector(f"{name}()").hex(): name
    for name in CUSTOM_ERRORS
}
