# -*- coding: utf-8 -*-
"""
AgriTrace Traceability Ledger SDK
=================================

Field-to-market traceability for agricultural batches. The ledger keeps
an append-only record of what happened on a field plot before harvest
and to each harvested batch afterwards, and reconstructs the combined
history on demand. It supports:

- Verifiable Traceability Identifiers (VTIs) with collision-checked
  creation and cycle-free lineage links
- Append-only lifecycle events with server timestamps, referential
  integrity checks and SHA-256 content hashes
- Journalled harvest transitions (identifier + HARVESTED event) with
  partial-failure reporting and explicit reconciliation
- Chronological history reconstruction with parallel fetches
- Chunked actor display-data resolution with sentinel fallbacks
- Asynchronous anomaly scoring with append-only annotations
- In-memory and SQLAlchemy storage backends
- SHA-256 provenance chain tracking for complete audit trails
- Prometheus metrics for observability
- FastAPI REST API with bearer-JWT caller identity
- Thread-safe configuration with AGRITRACE_LEDGER_ env prefix

Key Components:
    - config: TraceabilityLedgerConfig with AGRITRACE_LEDGER_ env prefix
    - models: Pydantic v2 models for all data structures
    - stores / sql_stores: storage interfaces and backends
    - identifier_registry: VTI creation and lineage engine
    - event_ledger: append-only event engine
    - harvest_transition: harvest saga and reconciliation
    - history_reconstruction: batch timeline and public listing
    - actor_resolution: chunked profile lookup
    - anomaly_hook: post-append anomaly scoring
    - provenance: SHA-256 chain-hashed audit trails
    - metrics: Prometheus metrics
    - api: FastAPI HTTP service
    - setup: TraceabilityLedgerService facade

Example:
    >>> from agritrace.traceability_ledger import TraceabilityLedgerService
    >>> service = TraceabilityLedgerService()
    >>> history = service.get_history(vti_id)
    >>> [e.event_type.value for e in history.events]
    ['PLANTED', 'HARVESTED', 'TRANSPORTED']
"""

__version__ = "1.0.0"

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.config import (
    TraceabilityLedgerConfig,
    get_config,
    set_config,
    reset_config,
)

# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.models import (
    # Enumerations
    TraceEventType,
    IdentifierStatus,
    TransitionState,
    PRE_HARVEST_EVENT_TYPES,
    # Core models
    GeoLocation,
    IdentifierRecord,
    TraceEvent,
    AnomalyVerdict,
    AnomalyAnnotation,
    TransitionIntent,
    # Read models
    ActorInfo,
    EnrichedTraceEvent,
    TraceHistory,
    PublicBatchSummary,
    ReconciliationReport,
    # Identity
    CallerIdentity,
    # Requests
    AppendEventRequest,
    InputApplicationRequest,
    ObservationRequest,
    HarvestRequest,
)

# ---------------------------------------------------------------------------
# Stores
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.stores import (
    IdentifierStore,
    EventStore,
    AnnotationStore,
    TransitionJournal,
    InMemoryIdentifierStore,
    InMemoryEventStore,
    InMemoryAnnotationStore,
    InMemoryTransitionJournal,
)

# ---------------------------------------------------------------------------
# Engines
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.identifier_registry import (
    IdentifierRegistryEngine,
)
from agritrace.traceability_ledger.event_ledger import (
    EventLedgerEngine,
    MonotonicUtcClock,
)
from agritrace.traceability_ledger.harvest_transition import (
    HarvestTransitionHandler,
)
from agritrace.traceability_ledger.actor_resolution import (
    ActorResolutionHelper,
    ProfileStore,
    InMemoryProfileStore,
)
from agritrace.traceability_ledger.history_reconstruction import (
    HistoryReconstructionService,
)
from agritrace.traceability_ledger.anomaly_hook import (
    AnomalyNotificationHook,
    AnomalyScorer,
    NullAnomalyScorer,
    FunctionAnomalyScorer,
    HttpAnomalyScorer,
)

# ---------------------------------------------------------------------------
# Provenance
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.provenance import (
    ProvenanceEntry,
    ProvenanceTracker,
)

# ---------------------------------------------------------------------------
# Service facade
# ---------------------------------------------------------------------------
from agritrace.traceability_ledger.setup import (
    TraceabilityLedgerService,
    configure_traceability_ledger,
    get_traceability_ledger,
    get_router,
)

__all__ = [
    "__version__",
    # Configuration
    "TraceabilityLedgerConfig",
    "get_config",
    "set_config",
    "reset_config",
    # Enumerations
    "TraceEventType",
    "IdentifierStatus",
    "TransitionState",
    "PRE_HARVEST_EVENT_TYPES",
    # Models
    "GeoLocation",
    "IdentifierRecord",
    "TraceEvent",
    "AnomalyVerdict",
    "AnomalyAnnotation",
    "TransitionIntent",
    "ActorInfo",
    "EnrichedTraceEvent",
    "TraceHistory",
    "PublicBatchSummary",
    "ReconciliationReport",
    "CallerIdentity",
    "AppendEventRequest",
    "InputApplicationRequest",
    "ObservationRequest",
    "HarvestRequest",
    # Stores
    "IdentifierStore",
    "EventStore",
    "AnnotationStore",
    "TransitionJournal",
    "InMemoryIdentifierStore",
    "InMemoryEventStore",
    "InMemoryAnnotationStore",
    "InMemoryTransitionJournal",
    # Engines
    "IdentifierRegistryEngine",
    "EventLedgerEngine",
    "MonotonicUtcClock",
    "HarvestTransitionHandler",
    "ActorResolutionHelper",
    "ProfileStore",
    "InMemoryProfileStore",
    "HistoryReconstructionService",
    "AnomalyNotificationHook",
    "AnomalyScorer",
    "NullAnomalyScorer",
    "FunctionAnomalyScorer",
    "HttpAnomalyScorer",
    # Provenance
    "ProvenanceEntry",
    "ProvenanceTracker",
    # Service facade
    "TraceabilityLedgerService",
    "configure_traceability_ledger",
    "get_traceability_ledger",
    "get_router",
]
