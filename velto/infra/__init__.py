"""
Infrastructure package.

This package contains logging configuration and nonce coordination.
"""

from velto.infra.logging_cfg import build_logger, log_event
from velto.infra.nonce import NonceCoordinator

__all__ = [
    "build_logger",
    "log_event",
    "NonceCoordinator",
]
