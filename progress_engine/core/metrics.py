"""Prometheus metric inventory for progress-engine.

Every metric the service exposes is declared here; the modules that
own the behaviour import and increment them at the point of action.
Label values are small closed sets (results, modes, outcomes) so the
series count stays bounded.  Learner and course ids are never labels.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# ---------------------------------------------------------------------------
# HTTP metrics (populated by the MetricsMiddleware)
# ---------------------------------------------------------------------------

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests by method, endpoint, and status code",
    ["method", "endpoint", "status_code"],
)

REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
)

ACTIVE_REQUESTS = Gauge(
    "http_active_requests",
    "Number of HTTP requests currently being processed",
)

# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------

LEDGER_APPENDS = Counter(
    "ledger_appends_total",
    "Ledger append attempts by result",
    # accepted|duplicate|stale|invalid_transition|structure_unavailable|timeout
    ["result"],
)

LEDGER_APPEND_DURATION = Histogram(
    "ledger_append_duration_seconds",
    "Time spent in ProgressLedger.append, lock wait included",
    # The top bucket sits on the default 2s append timeout.
    buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0],
)

# ---------------------------------------------------------------------------
# Aggregation, sync, analytics
# ---------------------------------------------------------------------------

SNAPSHOT_RECOMPUTES = Counter(
    "snapshot_recomputes_total",
    "Snapshot computations by mode",
    ["mode"],  # "full" or "incremental"
)

SYNC_EVENTS = Counter(
    "sync_events_total",
    "Events seen by the sync reconciler by outcome",
    ["outcome"],  # accepted|duplicate|conflict|retry
)

ANALYTICS_QUERIES = Counter(
    "analytics_queries_total",
    "Cohort analytics queries by result",
    ["result"],  # ok|cohort_too_small|cancelled
)

CACHE_OPERATIONS = Counter(
    "cache_operations_total",
    "Cache get operations by result",
    ["operation"],  # "hit" or "miss"
)

QUEUE_DEPTH = Gauge(
    "task_queue_depth",
    "Number of tasks waiting in a queue",
    ["queue_name"],  # "progress_sync", "snapshot_refresh"
)
