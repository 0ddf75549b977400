"""
Defines and manages Prometheus metrics for lookupguard.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Dict

from prometheus_client import REGISTRY as _PROM_REGISTRY
from prometheus_client import Counter as _OrigCounter
from prometheus_client import Gauge as _OrigGauge
from prometheus_client import Histogram as _OrigHistogram
from prometheus_client import start_http_server

if TYPE_CHECKING:
    from lookupguard.config.config import MonitoringConfig

# ---------------------------------------------------------------------------
# Duplicate-safe Prometheus metric wrappers
# ---------------------------------------------------------------------------
# Collectors are registered once per process; re-importing this module (as the
# test suite does) returns the already registered collector.


def _duplicate_safe_factory(metric_cls):
    """Return a factory that reuses an existing collector if already present."""

    def _factory(name: str, documentation: str, *args, **kwargs):  # type: ignore[override]
        existing = _PROM_REGISTRY._names_to_collectors.get(name)
        if existing is not None:
            return existing  # type: ignore[return-value]

        try:
            return metric_cls(name, documentation, *args, **kwargs)  # type: ignore[call-arg]
        except ValueError:
            # Registration lost the race, fall back to the now-existing collector.
            return _PROM_REGISTRY._names_to_collectors[name]  # type: ignore[return-value]

    return _factory


Counter = _duplicate_safe_factory(_OrigCounter)  # type: ignore[assignment]
Gauge = _duplicate_safe_factory(_OrigGauge)  # type: ignore[assignment]
Histogram = _duplicate_safe_factory(_OrigHistogram)  # type: ignore[assignment]


def _create_metrics() -> Dict[str, Any]:
    return {
        "batches_processed": Counter(
            "lookupguard_batches_processed_total",
            "Total number of batches run through the adaptive controller",
        ),
        "items_processed": Counter(
            "lookupguard_items_processed_total",
            "Work items processed, by outcome",
            ["outcome"],
        ),
        "batch_size_current": Gauge(
            "lookupguard_batch_size_current",
            "Current adaptive batch-size ceiling",
        ),
        "batch_duration_seconds": Histogram(
            "lookupguard_batch_duration_seconds",
            "Time taken to process one batch, excluding the inter-batch delay",
        ),
        "bot_signals_detected": Counter(
            "lookupguard_bot_signals_detected_total",
            "Bot signals detected, by detection method",
            ["method"],
        ),
        "retry_enqueued": Counter(
            "lookupguard_retry_enqueued_total",
            "Items written to the retry queue, by item type",
            ["item_type"],
        ),
        "retry_outcomes": Counter(
            "lookupguard_retry_outcomes_total",
            "Processed retry items, by status",
            ["status"],
        ),
    }


METRICS: Dict[str, Any] = _create_metrics()


def start_metrics_server(config: MonitoringConfig) -> bool:
    """Expose the registry over HTTP when a port is configured."""
    if config.prometheus_port is None:
        return False
    start_http_server(config.prometheus_port)
    return True
