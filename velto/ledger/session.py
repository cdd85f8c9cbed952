"""
SessionContext: the ledger connection shared by every reader, writer and signer.

Constructed once at startup and passed explicitly to the components that need
it. Holds the async web3 client, the optional local signer, chain id,
collateral token address and the per-account nonce coordinator.

Usage:
    session = SessionContext.from_settings(cfg)
    reader = LedgerReader(session)
    ...
    await session.close()
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from eth_account.signers.local import LocalAccount
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3

from velto.config.config import Settings
from velto.core.errors import ConnectivityError, ErrorCode, UnsupportedOperation
from velto.infra.nonce import NonceCoordinator

log = logging.getLogger("velto")


class SessionContext:
    def __init__(
        self,
        w3: AsyncWeb3,
        chain_id: int,
        signer: Optional[LocalAccount] = None,
        account: Optional[str] = None,
        collateral_token: Optional[str] = None,
        nonces: Optional[NonceCoordinator] = None,
        production: bool = False,
    ) -> None:
        self.w3 = w3
        self.chain_id = chain_id
        self.signer = signer
        # Read-only sessions may still carry an address for position/balance views.
        self.account = signer.address if signer is not None else account
        self.collateral_token = Web3.to_checksum_address(collateral_token) if collateral_token else None
        self.nonces = nonces or NonceCoordinator()
        self.production = production

    @classmethod
    def from_settings(cls, cfg: Settings) -> "SessionContext":
        provider = AsyncHTTPProvider(cfg.rpc_url, request_kwargs={"timeout": cfg.http_timeout})
        w3 = AsyncWeb3(provider)
        signer = cfg.resolve_signer() if cfg.private_key else None
        account = None
        if signer is None and cfg.user_address:
            account = Web3.to_checksum_address(cfg.resolve_account())
        return cls(
            w3=w3,
            chain_id=cfg.chain_id,
            signer=signer,
            account=account,
            collateral_token=cfg.collateral_token,
            production=cfg.production,
        )

    def require_signer(self) -> LocalAccount:
        """Return the signer or fail immediately; connectivity errors are never retried."""
        if self.signer is None:
            raise ConnectivityError("No account connected", ErrorCode.NO_SIGNER)
        return self.signer

    def require_account(self) -> str:
        if not self.account:
            raise ConnectivityError("No account address configured", ErrorCode.NO_SIGNER)
        return self.account

    def require_collateral_token(self) -> str:
        if not self.collateral_token:
            raise UnsupportedOperation("Collateral token address not configured (VELTO_COLLATERAL_TOKEN)")
        return self.collateral_token

    def contract(self, address: str, abi: List[Dict[str, Any]]):
        return self.w3.eth.contract(address=Web3.to_checksum_address(address), abi=abi)

    async def is_connected(self) -> bool:
        try:
            return bool(await self.w3.is_connected())
        except Exception as exc:
            log.warning(f"RPC connectivity check failed: {exc}")
            return False

    async def close(self) -> None:
        provider = self.w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
