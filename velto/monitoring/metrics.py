"""
Prometheus metrics for the trading client.

Organized into: ledger reads, polling, execution, positions, sources.
"""

from prometheus_client import Counter, Gauge, Histogram, CollectorRegistry, start_http_server
from typing import Optional


class TradingMetrics:
    """Client metrics in an injectable registry."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        reg = registry or CollectorRegistry()

        # === Ledger Read Metrics ===
        self.ledger_reads = Counter(
            'ledger_reads_total',
            'Market snapshot reads against the ledger',
            labelnames=['market'],
            registry=reg
        )
        self.ledger_read_failures = Counter(
            'ledger_read_failures_total',
            'Market snapshot reads that failed',
            labelnames=['market'],
            registry=reg
        )
        self.mark_price = Gauge(
            'mark_price',
            'Last observed vAMM mark price',
            labelnames=['market'],
            registry=reg
        )
        self.open_interest_skew = Gauge(
            'open_interest_skew',
            'Long OI share minus short OI share (-1..1)',
            labelnames=['market'],
            registry=reg
        )

        # === Polling Metrics ===
        self.poll_cycles = Counter(
            'poll_cycles_total',
            'Market poll cycles executed',
            registry=reg
        )
        self.poll_cycle_ms = Histogram(
            'poll_cycle_ms',
            'Duration of one poll cycle across visible markets (milliseconds)',
            buckets=[10, 50, 100, 250, 500, 1000, 2500, 5000],
            registry=reg
        )
        self.stale_responses_dropped = Counter(
            'stale_responses_dropped_total',
            'Poll responses discarded after teardown or visibility change',
            registry=reg
        )

        # === Execution Metrics ===
        self.tx_submitted = Counter(
            'tx_submitted_total',
            'Transactions broadcast',
            labelnames=['function'],
            registry=reg
        )
        self.tx_confirmed = Counter(
            'tx_confirmed_total',
            'Transactions confirmed with success status',
            labelnames=['function'],
            registry=reg
        )
        self.tx_failed = Counter(
            'tx_failed_total',
            'Transactions rejected pre-flight or reverted on-chain',
            labelnames=['function', 'code'],
            registry=reg
        )
        self.tx_confirm_latency_ms = Histogram(
            'tx_confirm_latency_ms',
            'Time from broadcast to receipt (milliseconds)',
            labelnames=['function'],
            buckets=[500, 1000, 2000, 5000, 10000, 30000, 60000, 120000],
            registry=reg
        )
        self.execution_path = Counter(
            'execution_path_total',
            'Open-position execution path selections',
            labelnames=['path'],
            registry=reg
        )
        self.signatures_cancelled = Counter(
            'signatures_cancelled_total',
            'Signature requests declined by the user',
            registry=reg
        )

        # === Position Metrics ===
        self.open_positions = Gauge(
            'open_positions',
            'Open positions for the session account',
            labelnames=['market'],
            registry=reg
        )
        self.reconcile_ms = Histogram(
            'reconcile_ms',
            'Open-position derivation from event logs (milliseconds)',
            labelnames=['market'],
            buckets=[50, 100, 250, 500, 1000, 2500, 5000, 10000],
            registry=reg
        )

        # === Source Metrics ===
        self.source_errors = Counter(
            'source_errors_total',
            'Metadata/index requests that degraded to empty results',
            labelnames=['source'],
            registry=reg
        )

        self.registry = reg

    def get_registry(self):
        """Return the Prometheus registry for export."""
        return self.registry

    def serve(self, port: int) -> None:
        """Expose the registry over HTTP on ``port``."""
        start_http_server(port, registry=self.registry)
