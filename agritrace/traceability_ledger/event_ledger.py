# -*- coding: utf-8 -*-
"""
Event Ledger Engine - Traceability Ledger

Append-only store of lifecycle events. An event belongs to a field plot
(pre-harvest: planting, input application, observation) or to a batch
identifier (harvest and everything after), and may carry both for
cross-reference.

Append pipeline:
    1. Validate the request shape (event type, actor, coordinates,
       at least one reference, no client timestamp)
    2. Check that a referenced identifier exists in the registry
    3. Stamp a server timestamp from a strictly increasing UTC clock
    4. Hash the record content (SHA-256) and write it
    5. Record provenance and metrics
    6. Notify subscribers; their failures never reach the caller

Stored events are never modified. Reads return copies ordered by
``(timestamp, sequence)``.

``append_first_harvest`` is the conditional write for a batch's HARVESTED
event: an identifier never ends up with two.

Example:
    >>> from agritrace.traceability_ledger.event_ledger import EventLedgerEngine
    >>> ledger = EventLedgerEngine(registry)
    >>> event = ledger.append({
    ...     "event_type": "PLANTED",
    ...     "actor_ref": "farmer-1",
    ...     "field_plot_ref": "plot-7",
    ...     "payload": {"seedVariety": "Maize H614"},
    ... })
    >>> assert event.identifier_ref is None

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from agritrace.exceptions import (
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from agritrace.traceability_ledger.metrics import (
    record_append_rejected,
    record_event_appended,
    record_operation,
)
from agritrace.traceability_ledger.models import (
    AppendEventRequest,
    TraceEvent,
    TraceEventType,
)
from agritrace.traceability_ledger.provenance import compute_hash
from agritrace.traceability_ledger.stores import EventStore, InMemoryEventStore

logger = logging.getLogger(__name__)

_COMPONENT = "EventLedger"

EventSubscriber = Callable[[TraceEvent], None]


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


class MonotonicUtcClock:
    """UTC wall clock that never returns the same instant twice.

    If the system clock stalls or steps backwards, the previous value is
    advanced by one microsecond instead.
    """

    def __init__(self, source: Optional[Callable[[], datetime]] = None) -> None:
        self._source = source or (lambda: datetime.now(timezone.utc))
        self._last: Optional[datetime] = None
        self._lock = threading.Lock()

    def __call__(self) -> datetime:
        with self._lock:
            now = self._source()
            if now.tzinfo is None:
                now = now.replace(tzinfo=timezone.utc)
            if self._last is not None and now <= self._last:
                now = self._last + timedelta(microseconds=1)
            self._last = now
            return now


def content_hash(event: TraceEvent) -> str:
    """SHA-256 over the event content, excluding store-assigned fields."""
    return compute_hash(
        event.model_dump(mode="json", exclude={"sequence", "data_hash"}),
    )


def _pydantic_errors(exc: PydanticValidationError) -> Dict[str, str]:
    fields: Dict[str, str] = {}
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "__root__"
        fields[loc] = err.get("msg", "invalid")
    return fields


# ---------------------------------------------------------------------------
# EventLedgerEngine
# ---------------------------------------------------------------------------


class EventLedgerEngine:
    """Append-only ledger of lifecycle events.

    Attributes:
        _registry: IdentifierRegistryEngine used for integrity checks.
        _store: Event store handle.
        _config: TraceabilityLedgerConfig or None for defaults.
        _provenance: Optional ProvenanceTracker.
        _clock: Strictly increasing timestamp source.
        _subscribers: Post-append callbacks.
    """

    def __init__(
        self,
        registry: Any,
        store: Optional[EventStore] = None,
        config: Any = None,
        provenance: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize EventLedgerEngine.

        Args:
            registry: Identifier registry used for the existence check.
            store: Event store; in-memory when omitted.
            config: Optional TraceabilityLedgerConfig.
            provenance: Optional ProvenanceTracker instance.
            clock: Timestamp source; wrapped so it is strictly increasing.
        """
        self._registry = registry
        self._store = store if store is not None else InMemoryEventStore()
        self._config = config
        self._provenance = provenance
        self._clock = clock if isinstance(clock, MonotonicUtcClock) else (
            MonotonicUtcClock(clock)
        )
        self._subscribers: List[EventSubscriber] = []
        self._subscribers_lock = threading.Lock()
        self._public_default = getattr(config, "events_public_by_default", True)

        logger.info("EventLedgerEngine initialized")

    # ------------------------------------------------------------------
    # Write path
    # ------------------------------------------------------------------

    def append(
        self,
        request: Union[AppendEventRequest, Mapping[str, Any]],
    ) -> TraceEvent:
        """Validate and append an event.

        Args:
            request: AppendEventRequest or an equivalent mapping.

        Returns:
            The stored TraceEvent with server timestamp and sequence.

        Raises:
            ValidationError: If the request is missing or malformed.
            ReferentialIntegrityError: If identifier_ref is unknown.
        """
        start_time = time.monotonic()
        req = self._coerce_request(request)
        return self._write(req, start_time, self._store.append)

    def append_first_harvest(
        self,
        request: Union[AppendEventRequest, Mapping[str, Any]],
    ) -> Optional[TraceEvent]:
        """Append a batch's HARVESTED event unless it already has one.

        The store checks and writes in one step, so two callers racing to
        harvest the same identifier leave exactly one HARVESTED event.

        Returns:
            The stored event, or None when the identifier already carried
            a HARVESTED event. Subscribers are only notified on a write.

        Raises:
            ValidationError: If the request is malformed, is not HARVESTED
                or has no identifier_ref.
            ReferentialIntegrityError: If identifier_ref is unknown.
        """
        start_time = time.monotonic()
        req = self._coerce_request(request)
        if (
            req.event_type != TraceEventType.HARVESTED
            or req.identifier_ref is None
        ):
            record_append_rejected("validation")
            raise ValidationError(
                "append_first_harvest needs a HARVESTED event with an "
                "identifier_ref",
                component=_COMPONENT,
                invalid_fields={"event_type": req.event_type.value},
            )
        return self._write(req, start_time, self._store.append_first_harvest)

    def _write(
        self,
        req: AppendEventRequest,
        start_time: float,
        writer: Callable[[TraceEvent], Optional[TraceEvent]],
    ) -> Optional[TraceEvent]:
        """Integrity check, stamp, hash, store via ``writer``, then notify."""
        if req.identifier_ref is not None and not self._registry.exists(
            req.identifier_ref,
        ):
            record_append_rejected("referential_integrity")
            raise ReferentialIntegrityError(
                f"Identifier {req.identifier_ref} not found",
                component=_COMPONENT,
                resource_type="identifier",
                resource_id=req.identifier_ref,
                context={"event_type": req.event_type.value},
            )

        event = TraceEvent(
            identifier_ref=req.identifier_ref,
            field_plot_ref=req.field_plot_ref,
            event_type=req.event_type,
            actor_ref=req.actor_ref,
            geo_location=req.geo_location,
            payload=dict(req.payload),
            timestamp=self._clock(),
            is_public_traceable=(
                self._public_default
                if req.is_public_traceable is None
                else req.is_public_traceable
            ),
        )
        event.data_hash = content_hash(event)

        stored = writer(event)
        if stored is None:
            record_append_rejected("duplicate_harvest")
            logger.info(
                "Skipped HARVESTED for identifier %s: already harvested",
                req.identifier_ref,
            )
            return None

        if self._provenance is not None:
            self._provenance.record(
                entity_type="event",
                entity_id=stored.event_id,
                action="append",
                data_hash=stored.data_hash,
                actor=stored.actor_ref,
                metadata={
                    "event_type": stored.event_type.value,
                    "identifier_ref": stored.identifier_ref,
                    "field_plot_ref": stored.field_plot_ref,
                },
            )

        elapsed = time.monotonic() - start_time
        record_event_appended(stored.event_type.value, stored.is_pre_harvest)
        record_operation("append_event", elapsed)

        logger.info(
            "Appended event %s #%d: type=%s, identifier=%s, field_plot=%s "
            "(%.1f ms)",
            stored.event_id, stored.sequence, stored.event_type.value,
            stored.identifier_ref, stored.field_plot_ref, elapsed * 1000,
        )

        self._notify(stored)
        return stored

    def subscribe(self, callback: EventSubscriber) -> None:
        """Register a callback invoked after every successful append."""
        with self._subscribers_lock:
            if callback not in self._subscribers:
                self._subscribers.append(callback)

    def unsubscribe(self, callback: EventSubscriber) -> None:
        """Remove a previously registered callback."""
        with self._subscribers_lock:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

    # ------------------------------------------------------------------
    # Read path
    # ------------------------------------------------------------------

    def get_event(self, event_id: str) -> TraceEvent:
        """Return a stored event.

        Raises:
            NotFoundError: If the event does not exist.
        """
        event = self._store.get(event_id)
        if event is None:
            raise NotFoundError(
                f"Event {event_id} not found",
                component=_COMPONENT,
                resource_type="event",
                resource_id=event_id,
            )
        return event

    def list_by_field_plot(
        self,
        field_plot_id: str,
        identifier_is_null: Optional[bool] = None,
    ) -> List[TraceEvent]:
        """Events carrying ``field_plot_id``, oldest first.

        Args:
            field_plot_id: Field plot reference.
            identifier_is_null: True restricts to pre-harvest events.
        """
        return self._store.list_by_field_plot(field_plot_id, identifier_is_null)

    def list_by_identifier(self, identifier_id: str) -> List[TraceEvent]:
        """Events referencing ``identifier_id``, oldest first."""
        return self._store.list_by_identifier(identifier_id)

    def find_first(
        self,
        identifier_id: str,
        event_type: Union[TraceEventType, str],
    ) -> Optional[TraceEvent]:
        """Oldest event of ``event_type`` on an identifier, or None."""
        wanted = TraceEventType(event_type)
        for event in self._store.list_by_identifier(identifier_id):
            if event.event_type == wanted:
                return event
        return None

    def verify_event(self, event_id: str) -> bool:
        """Recompute an event's content hash and compare with the stored one."""
        event = self.get_event(event_id)
        return content_hash(event) == event.data_hash

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _coerce_request(
        self,
        request: Union[AppendEventRequest, Mapping[str, Any]],
    ) -> AppendEventRequest:
        if isinstance(request, AppendEventRequest):
            return request
        if not isinstance(request, Mapping):
            record_append_rejected("validation")
            raise ValidationError(
                "event must be a mapping or AppendEventRequest",
                component=_COMPONENT,
                invalid_fields={"event": type(request).__name__},
            )
        if "timestamp" in request:
            record_append_rejected("validation")
            raise ValidationError(
                "timestamp is assigned by the ledger and cannot be supplied",
                component=_COMPONENT,
                invalid_fields={"timestamp": "client-supplied"},
            )
        try:
            return AppendEventRequest.model_validate(dict(request))
        except PydanticValidationError as exc:
            record_append_rejected("validation")
            invalid = _pydantic_errors(exc)
            raise ValidationError(
                f"Invalid event: {', '.join(sorted(invalid))}",
                component=_COMPONENT,
                invalid_fields=invalid,
            ) from exc

    def _notify(self, event: TraceEvent) -> None:
        with self._subscribers_lock:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event.model_copy(deep=True))
            except Exception:
                logger.exception(
                    "Event subscriber %r failed for event %s",
                    callback, event.event_id,
                )

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @property
    def event_count(self) -> int:
        """Return the total number of stored events."""
        return self._store.count()

    @property
    def subscriber_count(self) -> int:
        """Return the number of registered subscribers."""
        return len(self._subscribers)


__all__ = [
    "EventLedgerEngine",
    "EventSubscriber",
    "MonotonicUtcClock",
    "content_hash",
]
