"""Prometheus metrics definitions for the Order Lifecycle Service.

Usage:
    from apps.order_lifecycle import metrics

    metrics.instructions_total.labels(outcome="success").inc()
    metrics.active_supervisions.inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Business Metrics
# ============================================================================

instructions_total = Counter(
    "order_lifecycle_instructions_total",
    "Total number of instructions processed",
    # outcome: success, invalid_input, market_closed, broker_rejected,
    # broker_unavailable, fill_timeout, partial_exit
    ["outcome"],
)

entry_fill_wait_seconds = Histogram(
    "order_lifecycle_entry_fill_wait_seconds",
    "Time from entry submission until fill confirmation or timeout",
    ["outcome"],  # filled, timeout, error
)

exit_placements_total = Counter(
    "order_lifecycle_exit_placements_total",
    "Exit pair placements",
    ["strategy", "outcome"],  # outcome: placed, partial, failed
)

supervisions_total = Counter(
    "order_lifecycle_supervisions_total",
    "Finished OCO supervisions by final state",
    ["state"],  # target_won, stop_won, abandoned
)

active_supervisions = Gauge(
    "order_lifecycle_active_supervisions",
    "OCO supervisions currently running",
)

sibling_cancel_failures_total = Counter(
    "order_lifecycle_sibling_cancel_failures_total",
    "Sibling cancels that could not be confirmed after retries",
)

# ============================================================================
# Broker Metrics
# ============================================================================

broker_errors_total = Counter(
    "order_lifecycle_broker_errors_total",
    "Broker errors by operation and kind",
    ["operation", "kind"],  # kind: rejected, unavailable
)
