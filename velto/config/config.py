"""
Environment-driven configuration with validation.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from velto.core.json_utils import dumps

load_dotenv()

# Permit lifetime when VELTO_PERMIT_DEADLINE_SEC is unset.
TESTNET_PERMIT_DEADLINE_SEC = 30 * 24 * 3600
PRODUCTION_PERMIT_DEADLINE_SEC = 3600


def env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key)
    if val is None:
        return default
    return val.lower() in {"1", "true", "yes", "y"}


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    chain_id: int
    private_key: Optional[str]
    user_address: Optional[str]
    collateral_token: Optional[str]
    metadata_url: Optional[str]
    metadata_key: Optional[str]
    indexer_url: Optional[str]
    http_timeout: float
    poll_interval_sec: float
    min_leverage: float
    max_leverage: float
    production: bool
    permit_deadline_sec: int
    invalidation_grace_sec: float
    tx_confirm_timeout_sec: float
    risk_high_pct: float
    risk_medium_pct: float
    log_file: Optional[str]
    log_level: str
    metrics_port: int

    def dump(self) -> dict:
        """Return a dict of settings for sanity checks/logging (secrets masked)."""
        data = self.__dict__.copy()
        for key in ("private_key", "metadata_key"):
            if data.get(key):
                data[key] = "***"
        return data

    @classmethod
    def load(cls) -> "Settings":
        def _int_env(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return int(raw)

        def _float_env(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == "":
                return default
            return float(raw)

        production = env_bool("VELTO_PRODUCTION", False)
        default_deadline = PRODUCTION_PERMIT_DEADLINE_SEC if production else TESTNET_PERMIT_DEADLINE_SEC

        cfg = cls(
            rpc_url=os.getenv("VELTO_RPC_URL", "http://127.0.0.1:8545"),
            chain_id=_int_env("VELTO_CHAIN_ID", 31337),
            private_key=os.getenv("VELTO_PRIVATE_KEY") or None,
            user_address=os.getenv("VELTO_USER_ADDRESS") or None,
            collateral_token=os.getenv("VELTO_COLLATERAL_TOKEN") or None,
            metadata_url=os.getenv("VELTO_METADATA_URL") or None,
            metadata_key=os.getenv("VELTO_METADATA_KEY") or None,
            indexer_url=os.getenv("VELTO_INDEXER_URL") or None,
            http_timeout=_float_env("VELTO_HTTP_TIMEOUT", 5.0),
            poll_interval_sec=_float_env("VELTO_POLL_INTERVAL_SEC", 3.0),
            min_leverage=_float_env("VELTO_MIN_LEVERAGE", 1.0),
            max_leverage=_float_env("VELTO_MAX_LEVERAGE", 10.0),
            production=production,
            permit_deadline_sec=_int_env("VELTO_PERMIT_DEADLINE_SEC", default_deadline),
            invalidation_grace_sec=_float_env("VELTO_INVALIDATION_GRACE_SEC", 1.0),
            tx_confirm_timeout_sec=_float_env("VELTO_TX_CONFIRM_TIMEOUT_SEC", 120.0),
            risk_high_pct=_float_env("VELTO_RISK_HIGH_PCT", 5.0),
            risk_medium_pct=_float_env("VELTO_RISK_MEDIUM_PCT", 15.0),
            log_file=os.getenv("VELTO_LOG_FILE") or None,
            log_level=os.getenv("VELTO_LOG_LEVEL", "INFO"),
            metrics_port=_int_env("VELTO_METRICS_PORT", 0),
        )
        _sanity_check(cfg)
        cfg._validate()
        return cfg

    def resolve_account(self) -> str:
        if self.private_key:
            from eth_account import Account

            return Account.from_key(self.private_key).address
        if self.user_address:
            return self.user_address
        raise RuntimeError("Missing VELTO_USER_ADDRESS or VELTO_PRIVATE_KEY")

    def resolve_signer(self):
        from eth_account import Account

        if self.private_key:
            return Account.from_key(self.private_key)
        raise RuntimeError("Missing credentials: set VELTO_PRIVATE_KEY")

    def _validate(self) -> None:
        if self.poll_interval_sec <= 0:
            raise ValueError("VELTO_POLL_INTERVAL_SEC must be > 0")
        if self.http_timeout <= 0:
            raise ValueError("VELTO_HTTP_TIMEOUT must be > 0")
        if self.min_leverage < 1:
            raise ValueError("VELTO_MIN_LEVERAGE must be >= 1")
        if self.min_leverage > self.max_leverage:
            raise ValueError("VELTO_MIN_LEVERAGE must be <= VELTO_MAX_LEVERAGE")
        if self.permit_deadline_sec <= 0:
            raise ValueError("VELTO_PERMIT_DEADLINE_SEC must be > 0")
        if self.invalidation_grace_sec < 0:
            raise ValueError("VELTO_INVALIDATION_GRACE_SEC must be >= 0")
        if self.tx_confirm_timeout_sec <= 0:
            raise ValueError("VELTO_TX_CONFIRM_TIMEOUT_SEC must be > 0")
        if self.risk_high_pct <= 0 or self.risk_medium_pct <= self.risk_high_pct:
            raise ValueError("Risk thresholds must satisfy 0 < HIGH < MEDIUM")

        logger = logging.getLogger("velto")
        if self.max_leverage > 20:
            logger.warning(
                f"WARNING: VELTO_MAX_LEVERAGE is {self.max_leverage}x. "
                "Liquidation distance at this leverage is under 5%."
            )
        if self.production and not self.private_key:
            logger.warning(
                "WARNING: VELTO_PRODUCTION set without VELTO_PRIVATE_KEY. "
                "Only read-only views will be available."
            )
        if self.production and self.permit_deadline_sec > PRODUCTION_PERMIT_DEADLINE_SEC:
            logger.warning(
                f"WARNING: VELTO_PERMIT_DEADLINE_SEC={self.permit_deadline_sec} in production. "
                "Consider a deadline of one hour or less."
            )


def _sanity_check(cfg: Settings) -> None:
    """
    Log critical settings once at startup so overrides are obvious.
    """
    logger = logging.getLogger("velto")
    payload = {
        "event": "config_loaded",
        "rpc_url": cfg.rpc_url,
        "chain_id": cfg.chain_id,
        "poll_interval_sec": cfg.poll_interval_sec,
        "leverage_bounds": [cfg.min_leverage, cfg.max_leverage],
        "production": cfg.production,
        "has_signer": bool(cfg.private_key),
    }
    logger.info(dumps(payload))
