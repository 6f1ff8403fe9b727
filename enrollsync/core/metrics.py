"""Application metrics using the Prometheus client library.

One inventory of everything the engine measures.  Modules import the
metric they own and increment/observe it at the point of action; the
/metrics endpoint exposes the lot for scraping.

What to watch:

  enrollsync_operations_total{outcome="lock_contention"} rising
    → hot student+course pairs, or a lock timeout that is too short.

  enrollsync_degradations_total
    → the lock or idempotency subsystem is unreachable and operations are
      running without that guarantee (fail-open policy).  Should be 0.

  enrollsync_event_handler_failures_total
    → a subscriber (e.g. the Redis relay) is failing; real-time sync
      consumers are missing updates.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram

# ---------------------------------------------------------------------------
# Orchestrated operations
# ---------------------------------------------------------------------------

OPERATIONS = Counter(
    "enrollsync_operations_total",
    "Orchestrated operations by name and outcome",
    # outcome: committed|replayed|validation_failed|lock_contention|
    #          transaction_aborted|infrastructure_unavailable|internal_error
    ["operation", "outcome"],
)

OPERATION_DURATION = Histogram(
    "enrollsync_operation_duration_seconds",
    "Wall time of one orchestrated operation, lock wait included",
    ["operation"],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Lock manager
# ---------------------------------------------------------------------------

LOCK_ACQUISITIONS = Counter(
    "enrollsync_lock_acquisitions_total",
    "Advisory lock acquisition attempts by mode and result",
    ["mode", "result"],  # mode: try|wait   result: acquired|contended|degraded
)

LOCK_WAIT = Histogram(
    "enrollsync_lock_wait_seconds",
    "Time spent waiting to acquire an advisory lock",
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 2.5, 5.0, 10.0],
)

# ---------------------------------------------------------------------------
# Idempotency store
# ---------------------------------------------------------------------------

IDEMPOTENCY_CHECKS = Counter(
    "enrollsync_idempotency_checks_total",
    "Idempotency lookups by result",
    ["result"],  # hit|miss
)

# ---------------------------------------------------------------------------
# Events and degradation
# ---------------------------------------------------------------------------

EVENTS_EMITTED = Counter(
    "enrollsync_events_emitted_total",
    "Domain events emitted on the in-process bus",
    ["event_type"],
)

EVENT_HANDLER_FAILURES = Counter(
    "enrollsync_event_handler_failures_total",
    "Subscriber exceptions caught by the event bus",
    ["event_type"],
)

DEGRADATIONS = Counter(
    "enrollsync_degradations_total",
    "Infrastructure failures absorbed by the fail-open policy",
    ["subsystem"],  # lock|idempotency
)
