# -*- coding: utf-8 -*-
"""
Harvest Transition Handler - Traceability Ledger

Turns the output of a field plot into a traceable batch. A transition is
two writes that cannot share a transaction:

    1. mint a batch identifier whose metadata carries ``farmFieldId``
    2. append the batch's first event, HARVESTED, against that identifier

Each transition is journalled as a TransitionIntent before the first
write and advanced after each one (pending -> identifier_created ->
completed). If the second write fails, the identifier is left orphaned,
the intent is marked ``failed`` and PartialFailureError is raised to the
caller. Nothing is retried automatically. ``reconcile()`` is the explicit
sweep that finishes or closes interrupted transitions without ever
writing a second HARVESTED event for the same identifier.

Step two and the sweep take a per-identifier lock and write HARVESTED
through the ledger's conditional ``append_first_harvest``, so a sweep
that overlaps a running transition cannot duplicate the event. The sweep
also leaves young in-flight intents alone.

Example:
    >>> handler = HarvestTransitionHandler(registry, ledger)
    >>> vti = handler.transition(
    ...     field_plot_id="plot-7",
    ...     batch_metadata={"cropType": "Maize"},
    ...     harvest_payload={"yieldKg": 1200},
    ...     actor_ref="farmer-1",
    ... )

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from datetime import timedelta
from typing import Any, Dict, Generator, Iterable, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from agritrace.exceptions import (
    NotFoundError,
    PartialFailureError,
    ValidationError,
)
from agritrace.traceability_ledger.event_ledger import _pydantic_errors
from agritrace.traceability_ledger.metrics import (
    record_harvest_transition,
    record_operation,
    record_reconciliation,
    update_orphaned_identifiers,
)
from agritrace.traceability_ledger.models import (
    AppendEventRequest,
    GeoLocation,
    ReconciliationReport,
    TraceEventType,
    TransitionIntent,
    TransitionState,
    _utcnow,
)
from agritrace.traceability_ledger.provenance import compute_hash
from agritrace.traceability_ledger.stores import (
    InMemoryTransitionJournal,
    TransitionJournal,
)

logger = logging.getLogger(__name__)

_COMPONENT = "HarvestTransition"

_OPEN_STATES = (
    TransitionState.PENDING,
    TransitionState.IDENTIFIER_CREATED,
    TransitionState.FAILED,
)

# States a running transition may still advance.
_IN_FLIGHT_STATES = (
    TransitionState.PENDING,
    TransitionState.IDENTIFIER_CREATED,
)


class HarvestTransitionHandler:
    """Orchestrates identifier creation plus the first HARVESTED event.

    Attributes:
        _registry: IdentifierRegistryEngine.
        _ledger: EventLedgerEngine.
        _journal: TransitionJournal holding intents.
        _config: TraceabilityLedgerConfig or None for defaults.
        _provenance: Optional ProvenanceTracker.
        _identifier_locks: identifier_id -> [lock, holders] for step two
            and reconciliation.
    """

    def __init__(
        self,
        registry: Any,
        ledger: Any,
        journal: Optional[TransitionJournal] = None,
        config: Any = None,
        provenance: Any = None,
    ) -> None:
        """Initialize HarvestTransitionHandler.

        Args:
            registry: Identifier registry engine.
            ledger: Event ledger engine.
            journal: Transition journal; in-memory when omitted.
            config: Optional TraceabilityLedgerConfig.
            provenance: Optional ProvenanceTracker instance.
        """
        self._registry = registry
        self._ledger = ledger
        self._journal = (
            journal if journal is not None else InMemoryTransitionJournal()
        )
        self._config = config
        self._provenance = provenance
        self._default_batch_type = getattr(
            config, "default_batch_type", "farm_batch",
        )
        self._default_min_age = float(getattr(
            config, "reconcile_min_age_seconds", 300.0,
        ))
        self._identifier_locks: Dict[str, List[Any]] = {}
        self._identifier_locks_guard = threading.Lock()
        logger.info(
            "HarvestTransitionHandler initialized: batch_type=%s",
            self._default_batch_type,
        )

    # ------------------------------------------------------------------
    # Transition
    # ------------------------------------------------------------------

    def transition(
        self,
        field_plot_id: str,
        batch_metadata: Optional[Mapping[str, Any]] = None,
        harvest_payload: Optional[Mapping[str, Any]] = None,
        actor_ref: str = "system",
        geo_location: Any = None,
        batch_type: Optional[str] = None,
        is_public_traceable: Optional[bool] = None,
    ) -> str:
        """Mint a batch identifier for a field plot and log HARVESTED.

        Args:
            field_plot_id: Field plot being harvested.
            batch_metadata: Extra identifier metadata. ``farmFieldId`` is
                always set to ``field_plot_id``.
            harvest_payload: Payload of the HARVESTED event.
            actor_ref: Acting party.
            geo_location: Optional coordinates (GeoLocation or mapping).
            batch_type: Identifier type; config default when None.
            is_public_traceable: Identifier visibility.

        Returns:
            The new identifier id.

        Raises:
            ValidationError: If any input is malformed (nothing written).
            PartialFailureError: If the identifier was created but the
                HARVESTED append failed.
        """
        start_time = time.monotonic()
        batch_type = batch_type or self._default_batch_type

        geo = self._validate_inputs(
            field_plot_id, batch_metadata, harvest_payload, actor_ref,
            geo_location, batch_type,
        )

        pre_harvest = self._ledger.list_by_field_plot(
            field_plot_id, identifier_is_null=True,
        )
        metadata: Dict[str, Any] = dict(batch_metadata or {})
        metadata["linkedPreHarvestEvents"] = [e.event_id for e in pre_harvest]
        metadata["farmFieldId"] = field_plot_id

        intent = self._journal.create(TransitionIntent(
            field_plot_id=field_plot_id,
            actor_ref=actor_ref,
            batch_type=batch_type,
            batch_metadata=metadata,
            harvest_payload=dict(harvest_payload or {}),
            geo_location=geo,
        ))
        self._record_intent(intent)

        # Step 1: mint the identifier
        try:
            vti_id = self._registry.create(
                batch_type,
                metadata=metadata,
                is_public_traceable=is_public_traceable,
                actor=actor_ref,
            )
        except Exception as exc:
            self._mark(intent.intent_id, TransitionState.ABANDONED, error=str(exc))
            record_harvest_transition("failed")
            logger.error(
                "Harvest transition %s for field plot %s failed before any "
                "identifier was created: %s",
                intent.intent_id, field_plot_id, exc,
            )
            raise

        # Step 2: first event on the new identifier
        with self._identifier_lock(vti_id):
            self._mark(
                intent.intent_id, TransitionState.IDENTIFIER_CREATED,
                identifier_id=vti_id,
            )
            try:
                event = self._ledger.append_first_harvest(
                    self._harvest_request(intent, vti_id),
                )
            except Exception as exc:
                self._mark(
                    intent.intent_id, TransitionState.FAILED, error=str(exc),
                )
                update_orphaned_identifiers(1)
                record_harvest_transition("partial_failure")
                logger.error(
                    "Orphaned identifier %s: HARVESTED append failed for field "
                    "plot %s (intent %s): %s",
                    vti_id, field_plot_id, intent.intent_id, exc,
                )
                raise PartialFailureError(
                    f"Identifier {vti_id} was created but its HARVESTED event "
                    f"could not be written",
                    identifier_id=vti_id,
                    component=_COMPONENT,
                    intent_id=intent.intent_id,
                    cause=exc,
                ) from exc
            if event is None:
                event = self._ledger.find_first(vti_id, TraceEventType.HARVESTED)

            self._mark(
                intent.intent_id, TransitionState.COMPLETED,
                harvest_event_id=event.event_id,
            )

        elapsed = time.monotonic() - start_time
        record_harvest_transition("completed")
        record_operation("harvest_transition", elapsed)
        logger.info(
            "Harvest transition %s: field_plot=%s -> identifier=%s, "
            "pre_harvest_events=%d (%.1f ms)",
            intent.intent_id, field_plot_id, vti_id, len(pre_harvest),
            elapsed * 1000,
        )
        return vti_id

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(
        self,
        complete_orphans: bool = True,
        min_age_seconds: Optional[float] = None,
    ) -> ReconciliationReport:
        """Finish or close interrupted transitions.

        For every open intent:
            - identifier already has a HARVESTED event: mark completed
            - identifier without HARVESTED: append it from the journalled
              payload when ``complete_orphans``, else leave it orphaned
            - no identifier recorded: mark abandoned

        Pending and identifier_created intents updated within the last
        ``min_age_seconds`` (config ``reconcile_min_age_seconds`` when
        None) are skipped so transitions still in flight are not touched.
        Failed intents are always examined.

        Returns:
            ReconciliationReport summarising the sweep.
        """
        start_time = time.monotonic()
        report = ReconciliationReport()
        if min_age_seconds is None:
            min_age_seconds = self._default_min_age
        min_age_seconds = max(0.0, min_age_seconds)
        cutoff = _utcnow() - timedelta(seconds=min_age_seconds)

        for intent in self._journal.list_by_state(_OPEN_STATES):
            if (
                min_age_seconds > 0
                and intent.state in _IN_FLIGHT_STATES
                and intent.updated_at > cutoff
            ):
                continue
            report.examined += 1
            outcome = self._reconcile_one(intent, complete_orphans)
            if outcome == "abandoned":
                report.abandoned += 1
            elif outcome in ("completed", "already_completed"):
                report.completed += 1
            else:
                report.still_orphaned += 1
            record_reconciliation(outcome)
            report.details.append({
                "intent_id": intent.intent_id,
                "identifier_id": intent.identifier_id,
                "previous_state": intent.state.value,
                "outcome": outcome,
            })

        logger.info(
            "Reconciliation: examined=%d, completed=%d, abandoned=%d, "
            "still_orphaned=%d (%.1f ms)",
            report.examined, report.completed, report.abandoned,
            report.still_orphaned, (time.monotonic() - start_time) * 1000,
        )
        return report

    def get_intent(self, intent_id: str) -> TransitionIntent:
        """Return a journalled intent.

        Raises:
            NotFoundError: If the intent does not exist.
        """
        intent = self._journal.get(intent_id)
        if intent is None:
            raise NotFoundError(
                f"Transition intent {intent_id} not found",
                component=_COMPONENT,
                resource_type="transition_intent",
                resource_id=intent_id,
            )
        return intent

    def list_intents(
        self,
        states: Optional[Iterable[TransitionState]] = None,
    ) -> List[TransitionIntent]:
        """Intents in any of ``states`` (all states when None)."""
        return self._journal.list_by_state(
            states if states is not None else list(TransitionState),
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reconcile_one(
        self, intent: TransitionIntent, complete_orphans: bool,
    ) -> str:
        if intent.identifier_id is None:
            self._mark(
                intent.intent_id, TransitionState.ABANDONED,
                error=intent.error or "no identifier recorded",
            )
            return "abandoned"

        with self._identifier_lock(intent.identifier_id):
            # The transition or another sweep may have moved it meanwhile.
            current = self._journal.get(intent.intent_id) or intent
            if current.state not in _OPEN_STATES:
                return "already_completed"
            return self._complete_locked(current, complete_orphans)

    def _complete_locked(
        self, intent: TransitionIntent, complete_orphans: bool,
    ) -> str:
        was_failed = intent.state == TransitionState.FAILED

        existing = self._ledger.find_first(
            intent.identifier_id, TraceEventType.HARVESTED,
        )
        if existing is not None:
            self._mark(
                intent.intent_id, TransitionState.COMPLETED,
                harvest_event_id=existing.event_id,
            )
            if was_failed:
                update_orphaned_identifiers(-1)
            return "already_completed"

        if not complete_orphans:
            return "orphaned"

        try:
            event = self._ledger.append_first_harvest(
                self._harvest_request(intent, intent.identifier_id),
            )
        except Exception as exc:
            logger.error(
                "Reconciliation could not complete identifier %s "
                "(intent %s): %s",
                intent.identifier_id, intent.intent_id, exc,
            )
            self._mark(intent.intent_id, TransitionState.FAILED, error=str(exc))
            if not was_failed:
                update_orphaned_identifiers(1)
            return "orphaned"

        outcome = "completed"
        if event is None:
            # Written elsewhere between the lookup and the append.
            event = self._ledger.find_first(
                intent.identifier_id, TraceEventType.HARVESTED,
            )
            outcome = "already_completed"

        self._mark(
            intent.intent_id, TransitionState.COMPLETED,
            harvest_event_id=event.event_id,
        )
        if was_failed:
            update_orphaned_identifiers(-1)
        logger.info(
            "Reconciliation %s identifier %s with event %s",
            outcome, intent.identifier_id, event.event_id,
        )
        return outcome

    @contextmanager
    def _identifier_lock(
        self, identifier_id: str,
    ) -> Generator[None, None, None]:
        """Serialize HARVESTED writers for one identifier in this process."""
        with self._identifier_locks_guard:
            entry = self._identifier_locks.get(identifier_id)
            if entry is None:
                entry = [threading.Lock(), 0]
                self._identifier_locks[identifier_id] = entry
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._identifier_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._identifier_locks[identifier_id]

    def _harvest_request(
        self, intent: TransitionIntent, vti_id: str,
    ) -> AppendEventRequest:
        return AppendEventRequest(
            event_type=TraceEventType.HARVESTED,
            actor_ref=intent.actor_ref,
            identifier_ref=vti_id,
            field_plot_ref=intent.field_plot_id,
            geo_location=intent.geo_location,
            payload=dict(intent.harvest_payload),
        )

    def _validate_inputs(
        self,
        field_plot_id: Any,
        batch_metadata: Any,
        harvest_payload: Any,
        actor_ref: Any,
        geo_location: Any,
        batch_type: Any,
    ) -> Optional[GeoLocation]:
        invalid: Dict[str, str] = {}
        if not isinstance(field_plot_id, str) or not field_plot_id.strip():
            invalid["field_plot_id"] = "must be a non-empty string"
        if not isinstance(batch_type, str) or not batch_type.strip():
            invalid["batch_type"] = "must be a non-empty string"
        if batch_metadata is not None and not isinstance(batch_metadata, Mapping):
            invalid["batch_metadata"] = "must be a mapping"
        if harvest_payload is not None and not isinstance(harvest_payload, Mapping):
            invalid["harvest_payload"] = "must be a mapping"
        if invalid:
            raise ValidationError(
                f"Invalid harvest transition: {', '.join(sorted(invalid))}",
                component=_COMPONENT,
                invalid_fields=invalid,
            )

        # Validate the HARVESTED event shape before anything is written.
        try:
            harvest_check = AppendEventRequest.model_validate({
                "event_type": TraceEventType.HARVESTED,
                "actor_ref": actor_ref,
                "field_plot_ref": field_plot_id,
                "geo_location": geo_location,
                "payload": dict(harvest_payload or {}),
            })
        except PydanticValidationError as exc:
            invalid = _pydantic_errors(exc)
            raise ValidationError(
                f"Invalid harvest event: {', '.join(sorted(invalid))}",
                component=_COMPONENT,
                invalid_fields=invalid,
            ) from exc
        return harvest_check.geo_location

    def _mark(
        self, intent_id: str, state: TransitionState, **changes: Any,
    ) -> None:
        """Advance an intent; journal failures are logged, not raised."""
        try:
            intent = self._journal.update(intent_id, state=state, **changes)
        except Exception:
            logger.exception(
                "Could not move transition intent %s to %s",
                intent_id, state.value,
            )
            return
        self._record_intent(intent)

    def _record_intent(self, intent: TransitionIntent) -> None:
        if self._provenance is None:
            return
        self._provenance.record(
            entity_type="transition",
            entity_id=intent.intent_id,
            action=intent.state.value,
            data_hash=compute_hash(intent),
            actor=intent.actor_ref,
            metadata={"identifier_id": intent.identifier_id},
        )


__all__ = [
    "HarvestTransitionHandler",
]
