"""
Configuration package.

This package contains environment-driven settings loading and validation.
"""

from velto.config.config import Settings, env_bool

__all__ = [
    "Settings",
    "env_bool",
]
