# -*- coding: utf-8 -*-
"""
Traceability Ledger Service Facade

Provides the main service class and FastAPI integration functions:
- TraceabilityLedgerService: Composes the registry, ledger, harvest
  transition handler, history service, actor helper and anomaly hook
  into a single facade with caller checks
- configure_traceability_ledger(app): Register service on FastAPI app
- get_traceability_ledger(app): Retrieve service from app state
- get_router(): Return FastAPI router for mounting

Store handles are passed in explicitly. Anything not supplied is built
from the configured storage backend (``memory`` or ``sql``).

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from agritrace.exceptions import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from agritrace.traceability_ledger.actor_resolution import (
    ActorResolutionHelper,
    ProfileStore,
)
from agritrace.traceability_ledger.anomaly_hook import (
    AnomalyNotificationHook,
    AnomalyScorer,
    build_scorer,
)
from agritrace.traceability_ledger.config import (
    TraceabilityLedgerConfig,
    get_config,
)
from agritrace.traceability_ledger.event_ledger import (
    EventLedgerEngine,
    _pydantic_errors,
)
from agritrace.traceability_ledger.harvest_transition import (
    HarvestTransitionHandler,
)
from agritrace.traceability_ledger.history_reconstruction import (
    HistoryReconstructionService,
)
from agritrace.traceability_ledger.identifier_registry import (
    IdentifierRegistryEngine,
)
from agritrace.traceability_ledger.models import (
    PRE_HARVEST_EVENT_TYPES,
    CallerIdentity,
    EnrichedTraceEvent,
    HarvestRequest,
    IdentifierRecord,
    InputApplicationRequest,
    ObservationRequest,
    PublicBatchSummary,
    ReconciliationReport,
    TraceEvent,
    TraceEventType,
    TraceHistory,
    TransitionState,
)
from agritrace.traceability_ledger.provenance import ProvenanceTracker
from agritrace.traceability_ledger.stores import (
    AnnotationStore,
    EventStore,
    IdentifierStore,
    InMemoryAnnotationStore,
    InMemoryEventStore,
    InMemoryIdentifierStore,
    InMemoryTransitionJournal,
    TransitionJournal,
)

logger = logging.getLogger(__name__)

_COMPONENT = "TraceabilityLedgerService"

_MEMORY_STORES: Dict[str, Callable[[], Any]] = {
    "identifier_store": InMemoryIdentifierStore,
    "event_store": InMemoryEventStore,
    "annotation_store": InMemoryAnnotationStore,
    "transition_journal": InMemoryTransitionJournal,
}

_OPEN_TRANSITION_STATES = (
    TransitionState.PENDING,
    TransitionState.IDENTIFIER_CREATED,
    TransitionState.FAILED,
)


class TraceabilityLedgerService:
    """Facade composing all Traceability Ledger engines.

    Every write requires an authenticated ``CallerIdentity``; history
    lookup and the public batch listing also accept anonymous callers,
    who only see public identifiers and events.

    Attributes:
        config: TraceabilityLedgerConfig instance.
        provenance: ProvenanceTracker, or None when disabled.
        registry: IdentifierRegistryEngine instance.
        ledger: EventLedgerEngine instance.
        harvest: HarvestTransitionHandler instance.
        actors: ActorResolutionHelper instance.
        history: HistoryReconstructionService instance.
        anomaly_hook: AnomalyNotificationHook instance.

    Example:
        >>> service = TraceabilityLedgerService()
        >>> farmer = CallerIdentity(user_id="farmer-1", roles=["farmer"])
        >>> service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")
        >>> vti = service.transition_to_vti(farmer, "plot-7", {"yieldKg": 900})
        >>> len(service.get_history(vti).events)
        2
    """

    def __init__(
        self,
        config: Optional[TraceabilityLedgerConfig] = None,
        identifier_store: Optional[IdentifierStore] = None,
        event_store: Optional[EventStore] = None,
        annotation_store: Optional[AnnotationStore] = None,
        transition_journal: Optional[TransitionJournal] = None,
        profile_store: Optional[ProfileStore] = None,
        scorer: Optional[AnomalyScorer] = None,
        id_factory: Optional[Callable[[], str]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        """Initialize the Traceability Ledger Service with all engines.

        Args:
            config: TraceabilityLedgerConfig instance. If None, loads from env.
            identifier_store: Identifier store override.
            event_store: Event store override.
            annotation_store: Anomaly annotation store override.
            transition_journal: Harvest transition journal override.
            profile_store: External profile store for actor display data.
            scorer: Anomaly scorer; derived from config when None.
            id_factory: Identifier id generator override.
            clock: Event timestamp source override.
        """
        self.config = config or get_config()
        self._apply_log_level()

        self.database = None
        stores = self._build_stores({
            "identifier_store": identifier_store,
            "event_store": event_store,
            "annotation_store": annotation_store,
            "transition_journal": transition_journal,
        })
        identifier_store = stores["identifier_store"]
        event_store = stores["event_store"]
        annotation_store = stores["annotation_store"]
        transition_journal = stores["transition_journal"]

        self.provenance = (
            ProvenanceTracker() if self.config.enable_provenance else None
        )

        self.registry = IdentifierRegistryEngine(
            store=identifier_store,
            config=self.config,
            provenance=self.provenance,
            id_factory=id_factory,
        )
        self.ledger = EventLedgerEngine(
            self.registry,
            store=event_store,
            config=self.config,
            provenance=self.provenance,
            clock=clock,
        )
        self.harvest = HarvestTransitionHandler(
            self.registry,
            self.ledger,
            journal=transition_journal,
            config=self.config,
            provenance=self.provenance,
        )
        self.actors = ActorResolutionHelper(profile_store, config=self.config)
        self.history = HistoryReconstructionService(
            self.registry,
            self.ledger,
            actor_helper=self.actors,
            annotation_store=annotation_store,
            config=self.config,
        )
        self.anomaly_hook = AnomalyNotificationHook(
            self.ledger,
            scorer=scorer if scorer is not None else build_scorer(self.config),
            annotation_store=annotation_store,
            config=self.config,
            provenance=self.provenance,
        )
        self.anomaly_hook.attach()

        logger.info(
            "TraceabilityLedgerService initialized: backend=%s",
            self.config.storage_backend,
        )

    # =========================================================================
    # Identifier Registry
    # =========================================================================

    def create_identifier(
        self,
        caller: Optional[CallerIdentity],
        identifier_type: Optional[str] = None,
        linked_identifiers: Optional[List[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        is_public_traceable: Optional[bool] = None,
    ) -> IdentifierRecord:
        """Mint a standalone identifier (e.g. a split or merged batch).

        Returns:
            The stored IdentifierRecord.
        """
        caller = self._require_caller(caller)
        vti_id = self.registry.create(
            identifier_type or self.config.default_batch_type,
            linked_identifiers=linked_identifiers,
            metadata=metadata,
            is_public_traceable=is_public_traceable,
            actor=caller.user_id,
        )
        return self.registry.get(vti_id)

    def get_identifier(
        self,
        vti_id: str,
        caller: Optional[CallerIdentity] = None,
    ) -> IdentifierRecord:
        """Return an identifier record; anonymous callers see public ones only."""
        record = self.registry.get(vti_id)
        if caller is None and not record.is_public_traceable:
            raise NotFoundError(
                f"Identifier {vti_id} not found",
                component=_COMPONENT,
                resource_type="identifier",
                resource_id=vti_id,
            )
        return record

    def link_identifiers(
        self,
        caller: Optional[CallerIdentity],
        source_id: str,
        target_id: str,
    ) -> IdentifierRecord:
        """Record that ``source_id`` derives from ``target_id``."""
        caller = self._require_caller(caller)
        return self.registry.link_identifiers(
            source_id, target_id, actor=caller.user_id,
        )

    # =========================================================================
    # Pre-harvest events
    # =========================================================================

    def log_pre_harvest_event(
        self,
        caller: Optional[CallerIdentity],
        field_plot_id: str,
        event_type: Union[TraceEventType, str],
        actor_ref: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        geo_location: Any = None,
        is_public_traceable: Optional[bool] = None,
    ) -> TraceEvent:
        """Append a field-plot event that predates any batch identifier.

        Args:
            caller: Authenticated caller.
            field_plot_id: Field plot the event happened on.
            event_type: PLANTED, INPUT_APPLIED or OBSERVED.
            actor_ref: Acting party; the caller when omitted.
            payload: Event-specific data.
            geo_location: Optional coordinates.
            is_public_traceable: Event visibility.

        Raises:
            ValidationError: If the type is not a pre-harvest type or the
                event is malformed.
            AuthorizationError: If an INPUT_APPLIED caller holds none of
                ``input_allowed_roles``.
        """
        caller = self._require_caller(caller)
        kind = self._event_type(event_type)
        if kind not in PRE_HARVEST_EVENT_TYPES:
            raise ValidationError(
                f"{kind.value} is not a pre-harvest event type",
                component=_COMPONENT,
                invalid_fields={"event_type": kind.value},
            )
        if kind == TraceEventType.INPUT_APPLIED:
            self._require_role(
                caller, self.config.input_roles, "log_input_application",
            )
        return self.ledger.append(self._request(
            kind,
            actor_ref or caller.user_id,
            field_plot_ref=field_plot_id,
            payload=payload,
            geo_location=geo_location,
            is_public_traceable=is_public_traceable,
        ))

    def log_input_application(
        self,
        caller: Optional[CallerIdentity],
        field_plot_id: str,
        request: Union[InputApplicationRequest, Mapping[str, Any]],
        actor_ref: Optional[str] = None,
        geo_location: Any = None,
    ) -> TraceEvent:
        """Log a fertiliser/pesticide application as INPUT_APPLIED.

        Only callers holding one of ``input_allowed_roles`` may log inputs.
        """
        caller = self._require_caller(caller)
        self._require_role(
            caller, self.config.input_roles, "log_input_application",
        )
        application = self._parse(InputApplicationRequest, request)
        return self.log_pre_harvest_event(
            caller, field_plot_id, TraceEventType.INPUT_APPLIED,
            actor_ref=actor_ref,
            payload=application.to_payload(),
            geo_location=geo_location,
        )

    def log_observation(
        self,
        caller: Optional[CallerIdentity],
        field_plot_id: str,
        request: Union[ObservationRequest, Mapping[str, Any]],
        actor_ref: Optional[str] = None,
        geo_location: Any = None,
    ) -> TraceEvent:
        """Log a crop observation as OBSERVED."""
        observation = self._parse(ObservationRequest, request)
        return self.log_pre_harvest_event(
            caller, field_plot_id, TraceEventType.OBSERVED,
            actor_ref=actor_ref,
            payload=observation.to_payload(),
            geo_location=geo_location,
        )

    # =========================================================================
    # Harvest transition
    # =========================================================================

    def transition_to_vti(
        self,
        caller: Optional[CallerIdentity],
        field_plot_id: str,
        harvest_payload: Optional[Mapping[str, Any]] = None,
        actor_ref: Optional[str] = None,
        geo_location: Any = None,
        batch_metadata: Optional[Mapping[str, Any]] = None,
        harvest: Optional[Union[HarvestRequest, Mapping[str, Any]]] = None,
        batch_type: Optional[str] = None,
        is_public_traceable: Optional[bool] = None,
    ) -> str:
        """Mint a batch identifier for a field plot and log HARVESTED.

        ``harvest`` fills in crop type, yield and grade on both the batch
        metadata and the event payload; explicit ``batch_metadata`` and
        ``harvest_payload`` keys take precedence.

        Returns:
            The new identifier id.

        Raises:
            AuthorizationError: If the caller holds no harvest role.
            PartialFailureError: If the identifier exists but HARVESTED
                could not be written.
        """
        caller = self._require_caller(caller)
        self._require_role(caller, self.config.harvest_roles, "transition_to_vti")

        metadata: Dict[str, Any] = {}
        payload: Dict[str, Any] = {}
        if harvest is not None:
            details = self._parse(HarvestRequest, harvest)
            metadata.update(details.to_batch_metadata())
            payload.update(details.to_payload())
        if batch_metadata is not None:
            self._require_mapping("batch_metadata", batch_metadata)
            metadata.update(batch_metadata)
        if harvest_payload is not None:
            self._require_mapping("harvest_payload", harvest_payload)
            payload.update(harvest_payload)

        return self.harvest.transition(
            field_plot_id,
            batch_metadata=metadata,
            harvest_payload=payload,
            actor_ref=actor_ref or caller.user_id,
            geo_location=geo_location,
            batch_type=batch_type,
            is_public_traceable=is_public_traceable,
        )

    def reconcile_transitions(
        self,
        caller: Optional[CallerIdentity],
        complete_orphans: bool = True,
        min_age_seconds: Optional[float] = None,
    ) -> ReconciliationReport:
        """Sweep the transition journal for interrupted transitions.

        ``min_age_seconds`` defaults to ``reconcile_min_age_seconds``.
        """
        caller = self._require_caller(caller)
        self._require_role(
            caller, self.config.reconcile_roles, "reconcile_transitions",
        )
        logger.info("Reconciliation requested by %s", caller.user_id)
        return self.harvest.reconcile(
            complete_orphans=complete_orphans,
            min_age_seconds=min_age_seconds,
        )

    # =========================================================================
    # Post-harvest events
    # =========================================================================

    def log_post_harvest_event(
        self,
        caller: Optional[CallerIdentity],
        vti_id: str,
        event_type: Union[TraceEventType, str],
        actor_ref: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        geo_location: Any = None,
        is_public_traceable: Optional[bool] = None,
    ) -> TraceEvent:
        """Append an event to a batch after harvest.

        Raises:
            ValidationError: For HARVESTED (written only by the transition)
                or a pre-harvest type.
            ReferentialIntegrityError: If ``vti_id`` is unknown.
        """
        caller = self._require_caller(caller)
        kind = self._event_type(event_type)
        if kind == TraceEventType.HARVESTED:
            raise ValidationError(
                "HARVESTED is written by the harvest transition only",
                component=_COMPONENT,
                invalid_fields={"event_type": kind.value},
            )
        if kind in PRE_HARVEST_EVENT_TYPES:
            raise ValidationError(
                f"{kind.value} is a pre-harvest event type",
                component=_COMPONENT,
                invalid_fields={"event_type": kind.value},
            )
        return self.ledger.append(self._request(
            kind,
            actor_ref or caller.user_id,
            identifier_ref=vti_id,
            payload=payload,
            geo_location=geo_location,
            is_public_traceable=is_public_traceable,
        ))

    # =========================================================================
    # Reads
    # =========================================================================

    def get_history(
        self,
        vti_id: str,
        caller: Optional[CallerIdentity] = None,
    ) -> TraceHistory:
        """Full ordered history of a batch. Public."""
        return self.history.get_history(
            vti_id, include_private=caller is not None,
        )

    def list_recent_public_batches(
        self,
        limit: Optional[int] = None,
    ) -> List[PublicBatchSummary]:
        """Newest public batches. Public."""
        return self.history.list_recent_public_batches(limit)

    def list_field_plot_events(
        self,
        caller: Optional[CallerIdentity],
        field_plot_id: str,
    ) -> List[EnrichedTraceEvent]:
        """Every event recorded on a field plot, oldest first."""
        self._require_caller(caller)
        return self.history.list_field_plot_events(field_plot_id)

    # =========================================================================
    # Statistics and lifecycle
    # =========================================================================

    def get_statistics(self) -> Dict[str, Any]:
        """Aggregate counters across engines."""
        stats: Dict[str, Any] = {
            "storage_backend": self.config.storage_backend,
            "identifiers": self.registry.identifier_count,
            "events": self.ledger.event_count,
            "anomaly_annotations": self.anomaly_hook.annotation_count,
            "pending_anomaly_checks": self.anomaly_hook.pending_count,
            "open_transitions": len(self.harvest.list_intents(
                states=_OPEN_TRANSITION_STATES,
            )),
        }
        if self.provenance is not None:
            stats["provenance_entries"] = self.provenance.entry_count
            stats["provenance_chain_valid"] = self.provenance.verify_chain()
        return stats

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued anomaly checks to finish."""
        return self.anomaly_hook.flush(timeout=timeout)

    def shutdown(self) -> None:
        """Stop the anomaly hook and release database connections."""
        self.anomaly_hook.shutdown()
        if self.database is not None:
            self.database.dispose()
        logger.info("TraceabilityLedgerService shut down")

    # =========================================================================
    # Internal helpers
    # =========================================================================

    def _apply_log_level(self) -> None:
        level = getattr(logging, str(self.config.log_level).upper(), None)
        if isinstance(level, int):
            logging.getLogger("agritrace").setLevel(level)
        else:
            logger.warning("Ignoring unknown log level %r", self.config.log_level)

    def _build_stores(
        self, supplied: Dict[str, Optional[Any]],
    ) -> Dict[str, Any]:
        """Fill in the stores the caller did not inject."""
        backend = str(self.config.storage_backend).lower()
        if backend not in ("memory", "sql"):
            raise ValueError(f"Unknown storage backend: {backend}")
        stores = dict(supplied)
        missing = [name for name, store in supplied.items() if store is None]
        if not missing:
            return stores
        if backend == "sql":
            from agritrace.traceability_ledger.sql_stores import LedgerDatabase

            self.database = LedgerDatabase(self.config.database_url)
            self.database.create_all()
            built = self.database.build_stores()
            for name in missing:
                stores[name] = built[name]
            return stores
        for name in missing:
            stores[name] = _MEMORY_STORES[name]()
        return stores

    @staticmethod
    def _require_caller(caller: Optional[CallerIdentity]) -> CallerIdentity:
        if caller is None:
            raise AuthenticationError(
                "An authenticated caller is required",
                component=_COMPONENT,
            )
        return caller

    @staticmethod
    def _require_role(
        caller: CallerIdentity, roles: List[str], operation: str,
    ) -> None:
        if not caller.has_any_role(roles):
            logger.warning(
                "Caller %s (roles=%s) denied %s", caller.user_id,
                caller.roles, operation,
            )
            raise AuthorizationError(
                f"Caller {caller.user_id} may not perform {operation}",
                component=_COMPONENT,
                context={"operation": operation},
                required_roles=roles,
            )

    @staticmethod
    def _event_type(value: Union[TraceEventType, str]) -> TraceEventType:
        try:
            return TraceEventType(value)
        except ValueError:
            raise ValidationError(
                f"Unknown event type: {value!r}",
                component=_COMPONENT,
                invalid_fields={"event_type": str(value)},
            ) from None

    @staticmethod
    def _require_mapping(name: str, value: Any) -> None:
        if not isinstance(value, Mapping):
            raise ValidationError(
                f"{name} must be a mapping",
                component=_COMPONENT,
                invalid_fields={name: type(value).__name__},
            )

    @staticmethod
    def _parse(model: Any, value: Any) -> Any:
        if isinstance(value, model):
            return value
        if not isinstance(value, Mapping):
            raise ValidationError(
                f"{model.__name__} must be a mapping",
                component=_COMPONENT,
                invalid_fields={"request": type(value).__name__},
            )
        try:
            return model.model_validate(dict(value))
        except PydanticValidationError as exc:
            invalid = _pydantic_errors(exc)
            raise ValidationError(
                f"Invalid {model.__name__}: {', '.join(sorted(invalid))}",
                component=_COMPONENT,
                invalid_fields=invalid,
            ) from exc

    @staticmethod
    def _request(
        event_type: TraceEventType,
        actor_ref: str,
        identifier_ref: Optional[str] = None,
        field_plot_ref: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        geo_location: Any = None,
        is_public_traceable: Optional[bool] = None,
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "event_type": event_type,
            "actor_ref": actor_ref,
            "identifier_ref": identifier_ref,
            "field_plot_ref": field_plot_ref,
            "payload": payload if payload is not None else {},
            "geo_location": geo_location,
        }
        if is_public_traceable is not None:
            request["is_public_traceable"] = is_public_traceable
        return request


# =============================================================================
# FastAPI Integration
# =============================================================================

_SERVICE_KEY = "traceability_ledger_service"


def configure_traceability_ledger(
    app: Any,
    service: Optional[TraceabilityLedgerService] = None,
) -> TraceabilityLedgerService:
    """Register the Traceability Ledger Service on a FastAPI application.

    Creates the service (unless one is given), attaches it to app.state,
    and includes the API router.

    Args:
        app: FastAPI application instance.
        service: Pre-built service, e.g. with injected stores.

    Returns:
        Configured TraceabilityLedgerService instance.
    """
    service = service or TraceabilityLedgerService()
    setattr(app.state, _SERVICE_KEY, service)

    from agritrace.traceability_ledger.api.router import router
    app.include_router(router)

    logger.info("Traceability Ledger Service configured on FastAPI app")
    return service


def get_traceability_ledger(app: Any) -> TraceabilityLedgerService:
    """Retrieve the Traceability Ledger Service from a FastAPI application.

    Raises:
        RuntimeError: If service not configured.
    """
    service = getattr(app.state, _SERVICE_KEY, None)
    if service is None:
        raise RuntimeError(
            "Traceability Ledger Service not configured. "
            "Call configure_traceability_ledger(app) first."
        )
    return service


def get_router() -> Any:
    """Return the FastAPI router for the Traceability Ledger Service."""
    from agritrace.traceability_ledger.api.router import router
    return router


__all__ = [
    "TraceabilityLedgerService",
    "configure_traceability_ledger",
    "get_traceability_ledger",
    "get_router",
]
