"""Prometheus metrics for run orchestration.

Module-level collectors registered on the default registry and served by
``GET /metrics``.
"""

from prometheus_client import Counter, Gauge, Histogram

# ── Admission ────────────────────────────────────────────────────────────────

runs_admitted_total = Counter(
    "pipewright_runs_admitted_total",
    "Run creations admitted by the concurrency gate",
)

runs_denied_total = Counter(
    "pipewright_runs_denied_total",
    "Run creations rejected by the concurrency gate",
)

active_runs = Gauge(
    "pipewright_active_runs",
    "Admission permits currently held (pending or running runs)",
)

# ── Lifecycle ────────────────────────────────────────────────────────────────

submission_failures_total = Counter(
    "pipewright_submission_failures_total",
    "Runs failed because the execution backend rejected submission",
)

status_transitions_total = Counter(
    "pipewright_status_transitions_total",
    "Applied run status transitions by target status",
    ["status"],
)

run_duration_seconds = Histogram(
    "pipewright_run_duration_seconds",
    "Duration of runs that reached a terminal status",
    ["status"],
    buckets=(10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0, 3600.0, 7200.0),
)

# ── Reconciliation ───────────────────────────────────────────────────────────

watch_events_total = Counter(
    "pipewright_watch_events_total",
    "Backend change events received by the watcher",
    ["outcome"],
)

watch_resyncs_total = Counter(
    "pipewright_watch_resyncs_total",
    "Full relists performed by the watcher",
)

orphaned_runs_total = Counter(
    "pipewright_orphaned_runs_total",
    "Active runs failed because the backend had no record of them",
)

# ── Retention ────────────────────────────────────────────────────────────────

sweep_deleted_total = Counter(
    "pipewright_sweep_deleted_total",
    "Rows deleted by the retention sweeper",
    ["kind"],
)
