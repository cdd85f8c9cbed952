"""
EIP-2612 permit signing for the collateral token.

The signature authorizes the engine to pull collateral without a separate
approve transaction. The token nonce is read immediately before signing; a
permit is single-use because the token increments that nonce on use.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, TYPE_CHECKING

from web3 import Web3

from velto.config.config import PRODUCTION_PERMIT_DEADLINE_SEC, TESTNET_PERMIT_DEADLINE_SEC
from velto.core.errors import ErrorCode, SignatureCancelled
from velto.core.json_utils import dumps
from velto.ledger.error_decoder import decode_contract_error

if TYPE_CHECKING:
    from velto.ledger.reader import LedgerReader
    from velto.ledger.session import SessionContext

log = logging.getLogger("velto")

PERMIT_VERSION = "1"

PERMIT_TYPES = {
    "Permit": [
        {"name": "owner", "type": "address"},
        {"name": "spender", "type": "address"},
        {"name": "value", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "deadline", "type": "uint256"},
    ]
}


@dataclass(frozen=True)
class PermitSignature:
    v: int
    r: str
    s: str
    deadline: int
    owner: str
    spender: str
    value: int
    nonce: int
    chain_id: int


def permit_deadline(buffer_sec: Optional[int] = None, production: bool = False, now: Optional[float] = None) -> int:
    """Unix deadline for a permit: now + buffer (30 days testnet, 1 hour production by default)."""
    if buffer_sec is None:
        buffer_sec = PRODUCTION_PERMIT_DEADLINE_SEC if production else TESTNET_PERMIT_DEADLINE_SEC
    return int(now if now is not None else time.time()) + int(buffer_sec)


def split_signature(signature: bytes | str) -> Tuple[int, str, str]:
    """Split a 65-byte r||s||v signature into (v, r, s)."""
    raw = Web3.to_bytes(hexstr=signature) if isinstance(signature, str) else bytes(signature)
    if len(raw) != 65:
        raise ValueError(f"Expected 65-byte signature, got {len(raw)}")
    r = "0x" + raw[0:32].hex()
    s = "0x" + raw[32:64].hex()
    v = raw[64]
    if v < 27:
        v += 27
    return v, r, s


def build_permit_typed_data(
    token_name: str,
    token: str,
    chain_id: int,
    owner: str,
    spender: str,
    value: int,
    nonce: int,
    deadline: int,
) -> Tuple[Dict[str, Any], Dict[str, Any], Dict[str, Any]]:
    """Return (domain, types, message) for an EIP-2612 permit."""
    domain = {
        "name": token_name,
        "version": PERMIT_VERSION,
        "chainId": chain_id,
        "verifyingContract": Web3.to_checksum_address(token),
    }
    message = {
        "owner": Web3.to_checksum_address(owner),
        "spender": Web3.to_checksum_address(spender),
        "value": int(value),
        "nonce": int(nonce),
        "deadline": int(deadline),
    }
    return domain, PERMIT_TYPES, message


class PermitSigner:
    def __init__(self, session: "SessionContext", reader: "LedgerReader") -> None:
        self._session = session
        self._reader = reader

    async def sign(self, spender: str, value: int, deadline: int) -> PermitSignature:
        """
        Sign a permit letting ``spender`` pull ``value`` collateral until ``deadline``.

        Raises:
            ConnectivityError: no signer attached
            SignatureCancelled: the signer declined
        """
        signer = self._session.require_signer()
        token = self._session.require_collateral_token()
        chain_id = self._session.chain_id

        token_name = await self._reader.get_token_name()
        # Nonce last, right before signing.
        nonce = await self._reader.get_permit_nonce(signer.address)

        domain, types, message = build_permit_typed_data(
            token_name=token_name,
            token=token,
            chain_id=chain_id,
            owner=signer.address,
            spender=spender,
            value=value,
            nonce=nonce,
            deadline=deadline,
        )

        try:
            signed = signer.sign_typed_data(domain_data=domain, message_types=types, message_data=message)
        except Exception as exc:
            decoded = decode_contract_error(exc)
            if decoded.code is ErrorCode.USER_REJECTED:
                raise SignatureCancelled("Permit signature rejected by user") from exc
            raise

        v, r, s = split_signature(signed.signature)
        log.info(dumps({
            "event": "permit_signed",
            "owner": signer.address,
            "spender": spender,
            "nonce": nonce,
            "deadline": deadline,
            "unlimited": value >= 2**255,
        }))
        return PermitSignature(
            v=v,
            r=r,
            s=s,
            deadline=deadline,
            owner=signer.address,
            spender=spender,
            value=value,
            nonce=nonce,
            chain_id=chain_id,
        )
