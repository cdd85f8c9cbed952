"""
Monitoring package.

This package contains Prometheus metrics.
"""

from velto.monitoring.metrics import TradingMetrics

__all__ = [
    "TradingMetrics",
]
