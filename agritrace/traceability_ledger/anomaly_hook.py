# -*- coding: utf-8 -*-
"""
Anomaly Notification Hook - Traceability Ledger

Background handler that runs after every successful append of an event
carrying a batch identifier. It asks an external anomaly scorer about the
batch and, when the scorer flags it, writes an append-only
AnomalyAnnotation keyed by the triggering event id. The stored event is
never touched: history readers join the annotation on, exposing
``payload.isAnomaly`` and ``payload.anomalyReason``.

Checks run on a thread pool, so the caller of ``append`` has its result
before the scorer is even called. Scorer, annotation and emitter
failures are logged as DownstreamFailureError, counted and dropped; they
never affect the append that triggered them.

Scorers:
    - HttpAnomalyScorer: POSTs ``{"vtiId": ...}`` and expects
      ``{"isAnomaly": bool, "reason": str?}``
    - NullAnomalyScorer: never flags (no scorer configured)
    - FunctionAnomalyScorer: wraps an in-process callable

Example:
    >>> hook = AnomalyNotificationHook(ledger, scorer=NullAnomalyScorer())
    >>> hook.attach()
    >>> ledger.append(post_harvest_event)
    >>> hook.flush(timeout=5)

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import requests

from agritrace.exceptions import DownstreamFailureError
from agritrace.traceability_ledger.metrics import (
    record_anomaly_check,
    record_operation,
    update_pending_anomaly_checks,
)
from agritrace.traceability_ledger.models import (
    AnomalyAnnotation,
    AnomalyVerdict,
    TraceEvent,
)
from agritrace.traceability_ledger.provenance import compute_hash
from agritrace.traceability_ledger.stores import (
    AnnotationStore,
    InMemoryAnnotationStore,
)

logger = logging.getLogger(__name__)

_COMPONENT = "AnomalyNotificationHook"

NotificationEmitter = Callable[[AnomalyAnnotation, TraceEvent], None]


# ==============================================================================
# Scorers
# ==============================================================================


class AnomalyScorer(ABC):
    """Contract of the external anomaly-scoring function."""

    @abstractmethod
    def score(self, vti_id: str) -> AnomalyVerdict:
        """Score the event history of one batch identifier."""


class NullAnomalyScorer(AnomalyScorer):
    """Scorer that never reports an anomaly."""

    def score(self, vti_id: str) -> AnomalyVerdict:
        return AnomalyVerdict(is_anomaly=False)


class FunctionAnomalyScorer(AnomalyScorer):
    """Adapts a plain callable returning a verdict or a verdict mapping."""

    def __init__(self, func: Callable[[str], Any]) -> None:
        self._func = func

    def score(self, vti_id: str) -> AnomalyVerdict:
        result = self._func(vti_id)
        if isinstance(result, AnomalyVerdict):
            return result
        return AnomalyVerdict.model_validate(result)


class HttpAnomalyScorer(AnomalyScorer):
    """Remote scorer reached over HTTP.

    Attributes:
        url: Scoring endpoint.
        timeout: Request timeout in seconds.
    """

    def __init__(
        self,
        url: str,
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ) -> None:
        if not url:
            raise ValueError("HttpAnomalyScorer requires a URL")
        self.url = url
        self.timeout = timeout
        self._session = session or requests.Session()

    def score(self, vti_id: str) -> AnomalyVerdict:
        response = self._session.post(
            self.url,
            json={"vtiId": vti_id},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return AnomalyVerdict.model_validate(response.json())

    def close(self) -> None:
        """Close the underlying HTTP session."""
        self._session.close()


# ==============================================================================
# AnomalyNotificationHook
# ==============================================================================


class AnomalyNotificationHook:
    """Asynchronous post-append anomaly checker.

    Attributes:
        _ledger: EventLedgerEngine the hook subscribes to.
        _scorer: AnomalyScorer implementation.
        _annotations: AnnotationStore receiving verdicts.
        _emitters: Downstream callbacks for flagged events.
        _executor: Worker pool running checks.
        _pending: Futures not yet finished, for ``flush``.
    """

    def __init__(
        self,
        ledger: Any,
        scorer: Optional[AnomalyScorer] = None,
        annotation_store: Optional[AnnotationStore] = None,
        config: Any = None,
        provenance: Any = None,
    ) -> None:
        """Initialize AnomalyNotificationHook.

        Args:
            ledger: Event ledger to subscribe to.
            scorer: Anomaly scorer; NullAnomalyScorer when omitted.
            annotation_store: Annotation store; in-memory when omitted.
            config: Optional TraceabilityLedgerConfig.
            provenance: Optional ProvenanceTracker instance.
        """
        self._ledger = ledger
        self._scorer = scorer if scorer is not None else NullAnomalyScorer()
        self._annotations = (
            annotation_store if annotation_store is not None
            else InMemoryAnnotationStore()
        )
        self._config = config
        self._provenance = provenance
        self._enabled = getattr(config, "anomaly_hook_enabled", True)
        workers = max(1, getattr(config, "anomaly_worker_count", 2))

        self._executor = ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="anomaly-hook",
        )
        self._emitters: List[NotificationEmitter] = []
        self._pending: Set[Future] = set()
        self._lock = threading.Lock()
        self._closed = False
        self._attached = False

        logger.info(
            "AnomalyNotificationHook initialized: enabled=%s, workers=%d, "
            "scorer=%s",
            self._enabled, workers, type(self._scorer).__name__,
        )

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Subscribe to the ledger's post-append notifications."""
        if not self._attached:
            self._ledger.subscribe(self.on_event_appended)
            self._attached = True

    def detach(self) -> None:
        """Stop receiving ledger notifications."""
        if self._attached:
            self._ledger.unsubscribe(self.on_event_appended)
            self._attached = False

    def add_emitter(self, emitter: NotificationEmitter) -> None:
        """Register a downstream callback for flagged events."""
        with self._lock:
            self._emitters.append(emitter)

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def on_event_appended(self, event: TraceEvent) -> None:
        """Ledger subscriber: queue a check for post-harvest events."""
        if not self._enabled or event.identifier_ref is None:
            return
        with self._lock:
            if self._closed:
                logger.debug(
                    "Hook shut down; skipping anomaly check for %s",
                    event.event_id,
                )
                return
            future = self._executor.submit(self._run_check, event)
            self._pending.add(future)
        update_pending_anomaly_checks(1)
        future.add_done_callback(self._on_done)

    def check_event(self, event: TraceEvent) -> Optional[AnomalyAnnotation]:
        """Score one event's batch and annotate it when flagged.

        Runs synchronously on the calling thread.

        Returns:
            The written annotation, or None when clean or on failure.
        """
        if event.identifier_ref is None:
            return None
        start_time = time.monotonic()
        vti_id = event.identifier_ref

        try:
            verdict = self._scorer.score(vti_id)
        except Exception as exc:
            self._downstream_failure("anomaly_scorer", event, exc)
            return None

        if not verdict.is_anomaly:
            record_anomaly_check("clean")
            record_operation("anomaly_check", time.monotonic() - start_time)
            logger.debug("Batch %s scored clean (event %s)", vti_id, event.event_id)
            return None

        annotation = AnomalyAnnotation(
            event_id=event.event_id,
            identifier_id=vti_id,
            is_anomaly=True,
            reason=verdict.reason,
        )
        try:
            annotation = self._annotations.append(annotation)
        except Exception as exc:
            self._downstream_failure("annotation_store", event, exc)
            return None

        if self._provenance is not None:
            self._provenance.record(
                entity_type="annotation",
                entity_id=annotation.annotation_id,
                action="annotate",
                data_hash=compute_hash(annotation),
                metadata={"event_id": event.event_id, "identifier_id": vti_id},
            )

        record_anomaly_check("flagged")
        record_operation("anomaly_check", time.monotonic() - start_time)
        logger.warning(
            "Anomaly flagged on batch %s (event %s): %s",
            vti_id, event.event_id, verdict.reason,
        )

        self._emit(annotation, event)
        return annotation

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued checks to finish.

        Returns:
            True if nothing is left pending.
        """
        with self._lock:
            pending = list(self._pending)
        if not pending:
            return True
        _, not_done = wait(pending, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        """Stop accepting checks and shut the worker pool down."""
        with self._lock:
            self._closed = True
        self.detach()
        self._executor.shutdown(wait=wait_for_pending)
        logger.info("AnomalyNotificationHook shut down")

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_annotations(
        self, event_ids: Iterable[str],
    ) -> Dict[str, List[AnomalyAnnotation]]:
        """Annotations for ``event_ids`` grouped by event."""
        return self._annotations.list_for_events(event_ids)

    @property
    def pending_count(self) -> int:
        """Checks queued or running."""
        return len(self._pending)

    @property
    def annotation_count(self) -> int:
        """Annotations written so far."""
        return self._annotations.count()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run_check(self, event: TraceEvent) -> None:
        self.check_event(event)

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)
        update_pending_anomaly_checks(-1)

    def _emit(self, annotation: AnomalyAnnotation, event: TraceEvent) -> None:
        with self._lock:
            emitters = list(self._emitters)
        for emitter in emitters:
            try:
                emitter(annotation, event)
            except Exception as exc:
                self._downstream_failure(
                    "notification_emitter", event, exc, count=False,
                )

    def _downstream_failure(
        self,
        collaborator: str,
        event: TraceEvent,
        exc: Exception,
        count: bool = True,
    ) -> None:
        error = DownstreamFailureError(
            f"{collaborator} failed for event {event.event_id}",
            component=_COMPONENT,
            collaborator=collaborator,
            cause=exc,
            context={
                "event_id": event.event_id,
                "identifier_id": event.identifier_ref,
            },
        )
        if count:
            record_anomaly_check("error")
        logger.error("%s", error, exc_info=exc)


def build_scorer(config: Any) -> AnomalyScorer:
    """Pick the scorer implied by ``config.anomaly_scorer_url``."""
    url = getattr(config, "anomaly_scorer_url", "")
    if url:
        return HttpAnomalyScorer(
            url, timeout=getattr(config, "anomaly_scorer_timeout_seconds", 10.0),
        )
    return NullAnomalyScorer()


__all__ = [
    "AnomalyScorer",
    "NullAnomalyScorer",
    "FunctionAnomalyScorer",
    "HttpAnomalyScorer",
    "AnomalyNotificationHook",
    "NotificationEmitter",
    "build_scorer",
]
