# -*- coding: utf-8 -*-
"""
Prometheus Metrics - Traceability Ledger

14 Prometheus metrics for traceability ledger monitoring.

Metrics:
    1.  at_ledger_identifiers_created_total (Counter)
    2.  at_ledger_events_appended_total (Counter)
    3.  at_ledger_append_rejections_total (Counter)
    4.  at_ledger_harvest_transitions_total (Counter)
    5.  at_ledger_orphaned_identifiers (Gauge)
    6.  at_ledger_history_requests_total (Counter)
    7.  at_ledger_history_events (Histogram)
    8.  at_ledger_actor_lookup_batches_total (Counter)
    9.  at_ledger_unknown_actors_total (Counter)
    10. at_ledger_anomaly_checks_total (Counter)
    11. at_ledger_anomaly_flags_total (Counter)
    12. at_ledger_anomaly_checks_pending (Gauge)
    13. at_ledger_operation_duration_seconds (Histogram)
    14. at_ledger_reconciliations_total (Counter)

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging

from prometheus_client import Counter, Gauge, Histogram

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

# 1. Identifiers minted
ledger_identifiers_created_total = Counter(
    "at_ledger_identifiers_created_total",
    "Total batch identifiers created",
    labelnames=["identifier_type"],
)

# 2. Events appended
ledger_events_appended_total = Counter(
    "at_ledger_events_appended_total",
    "Total events appended to the ledger",
    labelnames=["event_type", "phase"],
)

# 3. Rejected appends
ledger_append_rejections_total = Counter(
    "at_ledger_append_rejections_total",
    "Total event appends rejected before write",
    labelnames=["reason"],
)

# 4. Harvest transitions by outcome
ledger_harvest_transitions_total = Counter(
    "at_ledger_harvest_transitions_total",
    "Total harvest transitions by result",
    labelnames=["result"],
)

# 5. Orphaned identifiers currently known
ledger_orphaned_identifiers = Gauge(
    "at_ledger_orphaned_identifiers",
    "Identifiers left without a HARVESTED event",
)

# 6. History reconstructions
ledger_history_requests_total = Counter(
    "at_ledger_history_requests_total",
    "Total history reconstruction requests by result",
    labelnames=["result"],
)

# 7. Events per reconstructed history
ledger_history_events = Histogram(
    "at_ledger_history_events",
    "Number of events in a reconstructed history",
    buckets=(0, 1, 2, 5, 10, 20, 50, 100, 250, 500),
)

# 8. Profile store lookups
ledger_actor_lookup_batches_total = Counter(
    "at_ledger_actor_lookup_batches_total",
    "Total profile store chunk lookups by result",
    labelnames=["result"],
)

# 9. Sentinel resolutions
ledger_unknown_actors_total = Counter(
    "at_ledger_unknown_actors_total",
    "Total actor ids resolved to the unknown sentinel",
)

# 10. Anomaly checks by outcome
ledger_anomaly_checks_total = Counter(
    "at_ledger_anomaly_checks_total",
    "Total anomaly checks by result",
    labelnames=["result"],
)

# 11. Anomalies flagged
ledger_anomaly_flags_total = Counter(
    "at_ledger_anomaly_flags_total",
    "Total anomaly annotations written",
)

# 12. Checks queued or running
ledger_anomaly_checks_pending = Gauge(
    "at_ledger_anomaly_checks_pending",
    "Anomaly checks queued or in flight",
)

# 13. Operation duration
ledger_operation_duration_seconds = Histogram(
    "at_ledger_operation_duration_seconds",
    "Traceability ledger operation duration in seconds",
    labelnames=["operation"],
    buckets=(0.0005, 0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# 14. Reconciliation outcomes
ledger_reconciliations_total = Counter(
    "at_ledger_reconciliations_total",
    "Transition intents handled by reconciliation, by outcome",
    labelnames=["outcome"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_identifier_created(identifier_type: str) -> None:
    """Record a newly minted identifier.

    Args:
        identifier_type: Identifier classification tag.
    """
    ledger_identifiers_created_total.labels(
        identifier_type=identifier_type,
    ).inc()


def record_event_appended(event_type: str, pre_harvest: bool) -> None:
    """Record a successful append.

    Args:
        event_type: Event type tag.
        pre_harvest: True for field-plot events without an identifier.
    """
    phase = "pre_harvest" if pre_harvest else "post_harvest"
    ledger_events_appended_total.labels(
        event_type=event_type, phase=phase,
    ).inc()


def record_append_rejected(reason: str) -> None:
    """Record an append rejected by validation or integrity checks.

    Args:
        reason: ``validation``, ``referential_integrity`` or
            ``duplicate_harvest``.
    """
    ledger_append_rejections_total.labels(reason=reason).inc()


def record_harvest_transition(result: str) -> None:
    """Record a harvest transition outcome.

    Args:
        result: ``completed``, ``partial_failure`` or ``failed``.
    """
    ledger_harvest_transitions_total.labels(result=result).inc()


def update_orphaned_identifiers(delta: int) -> None:
    """Adjust the orphaned identifier gauge by ``delta``."""
    if delta >= 0:
        ledger_orphaned_identifiers.inc(delta)
    else:
        ledger_orphaned_identifiers.dec(abs(delta))


def record_history_request(result: str, event_count: int = 0) -> None:
    """Record a history reconstruction.

    Args:
        result: ``success`` or ``not_found``.
        event_count: Number of events returned on success.
    """
    ledger_history_requests_total.labels(result=result).inc()
    if result == "success":
        ledger_history_events.observe(event_count)


def record_actor_lookup(result: str) -> None:
    """Record one chunked profile lookup (``success`` or ``failure``)."""
    ledger_actor_lookup_batches_total.labels(result=result).inc()


def record_unknown_actors(count: int) -> None:
    """Record actor ids that fell back to the unknown sentinel."""
    if count > 0:
        ledger_unknown_actors_total.inc(count)


def record_anomaly_check(result: str) -> None:
    """Record an anomaly check outcome.

    Args:
        result: ``clean``, ``flagged`` or ``error``.
    """
    ledger_anomaly_checks_total.labels(result=result).inc()
    if result == "flagged":
        ledger_anomaly_flags_total.inc()


def update_pending_anomaly_checks(delta: int) -> None:
    """Adjust the pending anomaly check gauge by ``delta``."""
    if delta >= 0:
        ledger_anomaly_checks_pending.inc(delta)
    else:
        ledger_anomaly_checks_pending.dec(abs(delta))


def record_operation(operation: str, duration_seconds: float) -> None:
    """Record the duration of a ledger operation.

    Args:
        operation: Operation name (create_identifier, append_event, ...).
        duration_seconds: Wall time in seconds.
    """
    ledger_operation_duration_seconds.labels(
        operation=operation,
    ).observe(duration_seconds)


def record_reconciliation(outcome: str) -> None:
    """Record how reconciliation handled one intent."""
    ledger_reconciliations_total.labels(outcome=outcome).inc()


__all__ = [
    # Metric objects
    "ledger_identifiers_created_total",
    "ledger_events_appended_total",
    "ledger_append_rejections_total",
    "ledger_harvest_transitions_total",
    "ledger_orphaned_identifiers",
    "ledger_history_requests_total",
    "ledger_history_events",
    "ledger_actor_lookup_batches_total",
    "ledger_unknown_actors_total",
    "ledger_anomaly_checks_total",
    "ledger_anomaly_flags_total",
    "ledger_anomaly_checks_pending",
    "ledger_operation_duration_seconds",
    "ledger_reconciliations_total",
    # Helper functions
    "record_identifier_created",
    "record_event_appended",
    "record_append_rejected",
    "record_harvest_transition",
    "update_orphaned_identifiers",
    "record_history_request",
    "record_actor_lookup",
    "record_unknown_actors",
    "record_anomaly_check",
    "update_pending_anomaly_checks",
    "record_operation",
    "record_reconciliation",
]
