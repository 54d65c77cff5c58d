"""
Prometheus metrics for the live-sync services.
"""
from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "lt_provider_requests_total",
    "Total provider HTTP requests",
    ["provider", "endpoint", "status"],
)
RECONCILE_OUTCOMES = Counter(
    "lt_reconcile_outcomes_total",
    "Per-subject reconciliation outcomes",
    ["outcome"],
)
SCHEDULER_TICKS = Counter(
    "lt_scheduler_ticks_total",
    "Scheduler ticks by result (ran or skip reason)",
    ["result"],
)
FANOUT_PUBLISHES = Counter(
    "lt_fanout_publishes_total",
    "Live-state changes published to the fan-out channel",
    ["op"],
)
WS_MESSAGES = Counter(
    "lt_ws_messages_total",
    "Total WebSocket messages",
    ["direction"],
)

# ── Histograms ──────────────────────────────────────────────────────────
PROVIDER_LATENCY = Histogram(
    "lt_provider_latency_seconds",
    "Provider request latency in seconds",
    ["provider"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
TICK_DURATION = Histogram(
    "lt_scheduler_tick_seconds",
    "Wall-clock time of a scheduler tick that reached the provider",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# ── Gauges ──────────────────────────────────────────────────────────────
LIVE_ROWS = Gauge(
    "lt_live_rows",
    "Subjects with a live/halftime row after the last tick",
)
WS_CONNECTIONS = Gauge(
    "lt_ws_connections_active",
    "Currently connected viewers",
)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
