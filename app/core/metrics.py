"""Application metrics using the Prometheus client library.

This module defines all metrics in one place: a single inventory of
everything the progress core measures.  Services import specific metrics
and increment/observe them at the point of action.  The worker exposes
them with ``prometheus_client.start_http_server``.

Counters answer "how often" (ledger events, certificates issued), the
histogram answers "how long" (analytics computation), and the gauge
answers "how full" (task queue depth).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# Progress pipeline
# ---------------------------------------------------------------------------

LEDGER_EVENTS = Counter(
    "ledger_events_total",
    "Lesson completion submissions by outcome",
    ["result"],  # "recorded" or "duplicate"
)

PROGRESS_RECOMPUTES = Counter(
    "progress_recomputes_total",
    "Enrollment progress recomputations by outcome",
    ["outcome"],  # "updated" | "unchanged" | "completed" | "skipped"
)

CERTIFICATES = Counter(
    "certificates_total",
    "Certificate issuance attempts by result",
    ["result"],  # "issued" | "already_issued"
)

CERTIFICATE_CODE_COLLISIONS = Counter(
    "certificate_code_collisions_total",
    "Generated certificate codes that collided with an existing code",
)

STORE_RETRIES = Counter(
    "store_retries_total",
    "Units of work retried after a timeout or transient store error",
    ["operation"],
)

# ---------------------------------------------------------------------------
# Analytics
# ---------------------------------------------------------------------------

ANALYTICS_REQUESTS = Counter(
    "analytics_requests_total",
    "Metric reads by source",
    ["metric_type", "source"],  # source: "live" | "cached" | "stale"
)

ANALYTICS_COMPUTE_DURATION = Histogram(
    "analytics_compute_duration_seconds",
    "Time spent computing a metric from authoritative tables",
    ["metric_type"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

# ---------------------------------------------------------------------------
# Background work
# ---------------------------------------------------------------------------

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "analytics_refresh", "progress_recompute", ...
)
