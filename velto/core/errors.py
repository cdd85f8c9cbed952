"""
Error taxonomy shared by the ledger, facade and orchestrator layers.

Every raw web3/signing/HTTP failure is translated into one of these before it
leaves the TradeOrchestrator:

- connectivity (no signer attached, RPC unreachable): ConnectivityError
- pre-flight rejection (client validation or simulated revert): TradeRejected
- user-cancelled signature: SignatureCancelled
- post-submission revert: a failed ExecutionResult, never an exception
- metadata/index unavailability: empty/default values, never an exception
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


class ErrorCode(str, Enum):
    NO_SIGNER = "NO_SIGNER"
    RPC_UNAVAILABLE = "RPC_UNAVAILABLE"
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    INVALID_LEVERAGE = "INVALID_LEVERAGE"
    NOT_POSITION_OWNER = "NOT_POSITION_OWNER"
    POSITION_NOT_OPEN = "POSITION_NOT_OPEN"
    POSITION_NOT_FOUND = "POSITION_NOT_FOUND"
    INSUFFICIENT_LIQUIDITY = "INSUFFICIENT_LIQUIDITY"
    USER_REJECTED = "USER_REJECTED"
    TX_REVERTED = "TX_REVERTED"
    TX_TIMEOUT = "TX_TIMEOUT"
    MARKET_NOT_FOUND = "MARKET_NOT_FOUND"
    MISSING_MARKET_CONTEXT = "MISSING_MARKET_CONTEXT"
    UNKNOWN = "UNKNOWN"


# Custom error names emitted by the engine, registry and vAMM contracts.
CONTRACT_ERROR_CODES = {
    "InsufficientBalance": ErrorCode.INSUFFICIENT_BALANCE,
    "InvalidAmount": ErrorCode.INVALID_AMOUNT,
    "InvalidLeverage": ErrorCode.INVALID_LEVERAGE,
    "NotPositionOwner": ErrorCode.NOT_POSITION_OWNER,
    "PositionNotOpen": ErrorCode.POSITION_NOT_OPEN,
    "PositionNotFound": ErrorCode.POSITION_NOT_FOUND,
    "InsufficientLiquidity": ErrorCode.INSUFFICIENT_LIQUIDITY,
}


@dataclass(frozen=True)
class DecodedError:
    """A ledger or signing error reduced to a user-facing message and a code."""
    message: str
    code: ErrorCode = ErrorCode.UNKNOWN
    contract_error: Optional[str] = None
    raw: Any = None

    def to_dict(self) -> dict:
        return {
            "message": self.message,
            "code": self.code.value,
            "contract_error": self.contract_error,
        }


class VeltoError(Exception):
    """Base class for errors raised inside the client."""

    def __init__(self, message: str, code: ErrorCode = ErrorCode.UNKNOWN) -> None:
        super().__init__(message)
        self.code = code

    @property
    def decoded(self) -> DecodedError:
        return DecodedError(message=str(self), code=self.code, raw=self)


class ConnectivityError(VeltoError):
    """No signing key attached or the ledger endpoint is unreachable. Never retried."""

    def __init__(self, message: str = "No account connected", code: ErrorCode = ErrorCode.NO_SIGNER) -> None:
        super().__init__(message, code)


class TradeRejected(VeltoError):
    """Pre-flight rejection, either from client-side validation or a simulated revert."""

    def __init__(self, error: DecodedError) -> None:
        super().__init__(error.message, error.code)
        self.error = error

    @property
    def decoded(self) -> DecodedError:
        return self.error


class SignatureCancelled(VeltoError):
    """The signer declined a permit or transaction signature."""

    def __init__(self, message: str = "Signature request rejected by user") -> None:
        super().__init__(message, ErrorCode.USER_REJECTED)


class MarketNotFound(VeltoError):
    def __init__(self, slug: str) -> None:
        super().__init__(f"Market {slug} does not have contracts deployed", ErrorCode.MARKET_NOT_FOUND)
        self.slug = slug


class UnsupportedOperation(VeltoError):
    """An operation called without the context it needs (e.g. close without a market)."""
