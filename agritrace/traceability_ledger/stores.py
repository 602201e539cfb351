# -*- coding: utf-8 -*-
"""
Traceability Ledger Stores

Storage interfaces for the four logical collections behind the ledger
plus their in-memory implementations:

    - IdentifierStore: batch identifiers keyed by id
    - EventStore: append-only events, queryable by field plot or identifier
    - AnnotationStore: append-only anomaly annotations keyed by event id
    - TransitionJournal: harvest transition intents

Engines receive store handles through their constructors; nothing in this
module is a process-wide singleton. The in-memory stores guard their
dicts with a lock and hand out deep copies, so callers can never change a
stored record by mutating what they were given.

Example:
    >>> from agritrace.traceability_ledger.stores import InMemoryEventStore
    >>> store = InMemoryEventStore()
    >>> stored = store.append(event)
    >>> assert stored.sequence == 1

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from agritrace.traceability_ledger.models import (
    AnomalyAnnotation,
    IdentifierRecord,
    IdentifierStatus,
    TraceEvent,
    TraceEventType,
    TransitionIntent,
    TransitionState,
    _utcnow,
)

logger = logging.getLogger(__name__)


def _event_sort_key(event: TraceEvent) -> Any:
    return (event.timestamp, event.sequence)


# ==============================================================================
# Interfaces
# ==============================================================================


class IdentifierStore(ABC):
    """Durable key-value store of batch identifiers."""

    @abstractmethod
    def insert_if_absent(self, record: IdentifierRecord) -> bool:
        """Insert ``record`` unless its id is already taken.

        Returns:
            True if inserted, False if the id already existed.
        """

    @abstractmethod
    def get(self, identifier_id: str) -> Optional[IdentifierRecord]:
        """Return the record or None."""

    @abstractmethod
    def exists(self, identifier_id: str) -> bool:
        """Return True if the identifier is stored."""

    @abstractmethod
    def add_link(self, identifier_id: str, target_id: str) -> IdentifierRecord:
        """Append ``target_id`` to the record's links (no-op if present)."""

    @abstractmethod
    def set_status(
        self, identifier_id: str, status: IdentifierStatus,
    ) -> IdentifierRecord:
        """Replace the record's status."""

    @abstractmethod
    def list_public(self, limit: int) -> List[IdentifierRecord]:
        """Return up to ``limit`` public identifiers, newest first."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored identifiers."""


class EventStore(ABC):
    """Append-only event log.

    Every query returns events ordered by ``(timestamp, sequence)``.
    """

    @abstractmethod
    def append(self, event: TraceEvent) -> TraceEvent:
        """Persist ``event``, assigning the next sequence number.

        An identifier holds at most one HARVESTED event; a second one is
        rejected with an error.

        Returns:
            The stored event, including its sequence.
        """

    @abstractmethod
    def append_first_harvest(self, event: TraceEvent) -> Optional[TraceEvent]:
        """Persist a HARVESTED ``event`` unless its identifier has one.

        The check and the write are a single atomic step, so concurrent
        callers can never store two HARVESTED events for one identifier.

        Returns:
            The stored event, or None when the identifier already had a
            HARVESTED event and nothing was written.
        """

    @abstractmethod
    def get(self, event_id: str) -> Optional[TraceEvent]:
        """Return the event or None."""

    @abstractmethod
    def list_by_field_plot(
        self,
        field_plot_id: str,
        identifier_is_null: Optional[bool] = None,
    ) -> List[TraceEvent]:
        """Events carrying ``field_plot_id``.

        Args:
            field_plot_id: Field plot reference.
            identifier_is_null: True for pre-harvest events only, False for
                events that also carry an identifier, None for both.
        """

    @abstractmethod
    def list_by_identifier(self, identifier_id: str) -> List[TraceEvent]:
        """Events referencing ``identifier_id``."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored events."""


class AnnotationStore(ABC):
    """Append-only anomaly annotations."""

    @abstractmethod
    def append(self, annotation: AnomalyAnnotation) -> AnomalyAnnotation:
        """Persist ``annotation``."""

    @abstractmethod
    def list_for_events(
        self, event_ids: Iterable[str],
    ) -> Dict[str, List[AnomalyAnnotation]]:
        """Annotations grouped by event id, oldest first within a group."""

    @abstractmethod
    def count(self) -> int:
        """Return the number of stored annotations."""


class TransitionJournal(ABC):
    """Intent records for harvest transitions."""

    @abstractmethod
    def create(self, intent: TransitionIntent) -> TransitionIntent:
        """Persist a new intent."""

    @abstractmethod
    def update(self, intent_id: str, **changes: Any) -> TransitionIntent:
        """Apply ``changes`` to an intent and bump ``updated_at``."""

    @abstractmethod
    def get(self, intent_id: str) -> Optional[TransitionIntent]:
        """Return the intent or None."""

    @abstractmethod
    def list_by_state(
        self, states: Iterable[TransitionState],
    ) -> List[TransitionIntent]:
        """Intents in any of ``states``, oldest first."""


# ==============================================================================
# In-memory implementations
# ==============================================================================


class InMemoryIdentifierStore(IdentifierStore):
    """Dict-backed identifier store."""

    def __init__(self) -> None:
        self._records: Dict[str, IdentifierRecord] = {}
        self._lock = threading.Lock()

    def insert_if_absent(self, record: IdentifierRecord) -> bool:
        with self._lock:
            if record.identifier_id in self._records:
                return False
            self._records[record.identifier_id] = record.model_copy(deep=True)
            return True

    def get(self, identifier_id: str) -> Optional[IdentifierRecord]:
        with self._lock:
            record = self._records.get(identifier_id)
            return record.model_copy(deep=True) if record else None

    def exists(self, identifier_id: str) -> bool:
        with self._lock:
            return identifier_id in self._records

    def add_link(self, identifier_id: str, target_id: str) -> IdentifierRecord:
        with self._lock:
            record = self._require(identifier_id)
            if target_id not in record.linked_identifiers:
                record.linked_identifiers.append(target_id)
            return record.model_copy(deep=True)

    def set_status(
        self, identifier_id: str, status: IdentifierStatus,
    ) -> IdentifierRecord:
        with self._lock:
            record = self._require(identifier_id)
            record.status = status
            return record.model_copy(deep=True)

    def list_public(self, limit: int) -> List[IdentifierRecord]:
        with self._lock:
            # Reversed so creation-time ties list the latest insert first.
            public = [
                r for r in reversed(list(self._records.values()))
                if r.is_public_traceable
            ]
            public.sort(key=lambda r: r.creation_time, reverse=True)
            return [r.model_copy(deep=True) for r in public[:limit]]

    def count(self) -> int:
        return len(self._records)

    def _require(self, identifier_id: str) -> IdentifierRecord:
        record = self._records.get(identifier_id)
        if record is None:
            raise KeyError(identifier_id)
        return record


class InMemoryEventStore(EventStore):
    """List-backed event log with field plot and identifier indexes.

    Attributes:
        _events: event_id -> stored event.
        _idx_field_plot: field_plot_id -> event ids.
        _idx_identifier: identifier_id -> event ids.
        _sequence: Last assigned sequence number.
    """

    def __init__(self) -> None:
        self._events: Dict[str, TraceEvent] = {}
        self._idx_field_plot: Dict[str, List[str]] = {}
        self._idx_identifier: Dict[str, List[str]] = {}
        self._sequence = 0
        self._lock = threading.Lock()
        self._harvest_lock = threading.Lock()

    def append(self, event: TraceEvent) -> TraceEvent:
        with self._lock:
            if event.event_id in self._events:
                raise ValueError(f"Event {event.event_id} already stored")
            if (
                event.event_type == TraceEventType.HARVESTED
                and self._harvested_locked(event.identifier_ref) is not None
            ):
                raise ValueError(
                    f"Identifier {event.identifier_ref} already has a "
                    f"HARVESTED event"
                )
            self._sequence += 1
            stored = event.model_copy(deep=True, update={
                "sequence": self._sequence,
            })
            self._events[stored.event_id] = stored
            if stored.field_plot_ref is not None:
                self._idx_field_plot.setdefault(
                    stored.field_plot_ref, [],
                ).append(stored.event_id)
            if stored.identifier_ref is not None:
                self._idx_identifier.setdefault(
                    stored.identifier_ref, [],
                ).append(stored.event_id)
            return stored.model_copy(deep=True)

    def append_first_harvest(self, event: TraceEvent) -> Optional[TraceEvent]:
        with self._harvest_lock:
            with self._lock:
                if self._harvested_locked(event.identifier_ref) is not None:
                    return None
            return self.append(event)

    def get(self, event_id: str) -> Optional[TraceEvent]:
        with self._lock:
            event = self._events.get(event_id)
            return event.model_copy(deep=True) if event else None

    def list_by_field_plot(
        self,
        field_plot_id: str,
        identifier_is_null: Optional[bool] = None,
    ) -> List[TraceEvent]:
        with self._lock:
            events = [
                self._events[eid]
                for eid in self._idx_field_plot.get(field_plot_id, [])
            ]
        if identifier_is_null is True:
            events = [e for e in events if e.identifier_ref is None]
        elif identifier_is_null is False:
            events = [e for e in events if e.identifier_ref is not None]
        return [e.model_copy(deep=True) for e in sorted(events, key=_event_sort_key)]

    def list_by_identifier(self, identifier_id: str) -> List[TraceEvent]:
        with self._lock:
            events = [
                self._events[eid]
                for eid in self._idx_identifier.get(identifier_id, [])
            ]
        return [e.model_copy(deep=True) for e in sorted(events, key=_event_sort_key)]

    def count(self) -> int:
        return len(self._events)

    def _harvested_locked(self, identifier_id: Optional[str]) -> Optional[str]:
        """Id of the HARVESTED event on ``identifier_id``; caller holds the lock."""
        if identifier_id is None:
            return None
        for eid in self._idx_identifier.get(identifier_id, []):
            if self._events[eid].event_type == TraceEventType.HARVESTED:
                return eid
        return None


class InMemoryAnnotationStore(AnnotationStore):
    """Dict-of-lists annotation store keyed by event id."""

    def __init__(self) -> None:
        self._by_event: Dict[str, List[AnomalyAnnotation]] = {}
        self._count = 0
        self._lock = threading.Lock()

    def append(self, annotation: AnomalyAnnotation) -> AnomalyAnnotation:
        with self._lock:
            self._by_event.setdefault(annotation.event_id, []).append(
                annotation.model_copy(deep=True),
            )
            self._count += 1
        return annotation.model_copy(deep=True)

    def list_for_events(
        self, event_ids: Iterable[str],
    ) -> Dict[str, List[AnomalyAnnotation]]:
        result: Dict[str, List[AnomalyAnnotation]] = {}
        with self._lock:
            for event_id in event_ids:
                found = self._by_event.get(event_id)
                if found:
                    result[event_id] = [a.model_copy(deep=True) for a in found]
        return result

    def count(self) -> int:
        return self._count


class InMemoryTransitionJournal(TransitionJournal):
    """Dict-backed transition journal."""

    def __init__(self) -> None:
        self._intents: Dict[str, TransitionIntent] = {}
        self._lock = threading.Lock()

    def create(self, intent: TransitionIntent) -> TransitionIntent:
        with self._lock:
            self._intents[intent.intent_id] = intent.model_copy(deep=True)
        return intent.model_copy(deep=True)

    def update(self, intent_id: str, **changes: Any) -> TransitionIntent:
        with self._lock:
            intent = self._intents.get(intent_id)
            if intent is None:
                raise KeyError(intent_id)
            changes["updated_at"] = _utcnow()
            # Round-trip through validation so enum/str inputs are coerced.
            updated = TransitionIntent.model_validate(
                {**intent.model_dump(), **changes},
            )
            self._intents[intent_id] = updated
            return updated.model_copy(deep=True)

    def get(self, intent_id: str) -> Optional[TransitionIntent]:
        with self._lock:
            intent = self._intents.get(intent_id)
            return intent.model_copy(deep=True) if intent else None

    def list_by_state(
        self, states: Iterable[TransitionState],
    ) -> List[TransitionIntent]:
        wanted = {TransitionState(s) for s in states}
        with self._lock:
            found = [i for i in self._intents.values() if i.state in wanted]
        found.sort(key=lambda i: i.created_at)
        return [i.model_copy(deep=True) for i in found]


__all__ = [
    "IdentifierStore",
    "EventStore",
    "AnnotationStore",
    "TransitionJournal",
    "InMemoryIdentifierStore",
    "InMemoryEventStore",
    "InMemoryAnnotationStore",
    "InMemoryTransitionJournal",
]
