# -*- coding: utf-8 -*-
"""Pytest configuration and shared fixtures for the Traceability Ledger."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from agritrace.traceability_ledger.actor_resolution import (
    ActorResolutionHelper,
    InMemoryProfileStore,
)
from agritrace.traceability_ledger.config import (
    TraceabilityLedgerConfig,
    reset_config,
)
from agritrace.traceability_ledger.event_ledger import EventLedgerEngine
from agritrace.traceability_ledger.harvest_transition import (
    HarvestTransitionHandler,
)
from agritrace.traceability_ledger.history_reconstruction import (
    HistoryReconstructionService,
)
from agritrace.traceability_ledger.identifier_registry import (
    IdentifierRegistryEngine,
)
from agritrace.traceability_ledger.models import CallerIdentity
from agritrace.traceability_ledger.provenance import ProvenanceTracker
from agritrace.traceability_ledger.setup import TraceabilityLedgerService
from agritrace.traceability_ledger.stores import (
    InMemoryAnnotationStore,
    InMemoryEventStore,
    InMemoryIdentifierStore,
    InMemoryTransitionJournal,
)


BASE_TIME = datetime(2026, 3, 1, 6, 0, tzinfo=timezone.utc)


class StepClock:
    """Deterministic clock advancing one minute per call."""

    def __init__(self, start=BASE_TIME, step=timedelta(minutes=1)):
        self._next = start
        self._step = step
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            now = self._next
            self._next = now + self._step
            return now


@pytest.fixture(autouse=True)
def _reset_ledger_config():
    """Keep the config singleton from leaking between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def config():
    """Default in-memory configuration with a single anomaly worker."""
    return TraceabilityLedgerConfig(anomaly_worker_count=1)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def provenance():
    return ProvenanceTracker()


@pytest.fixture
def identifier_store():
    return InMemoryIdentifierStore()


@pytest.fixture
def event_store():
    return InMemoryEventStore()


@pytest.fixture
def annotation_store():
    return InMemoryAnnotationStore()


@pytest.fixture
def journal():
    return InMemoryTransitionJournal()


@pytest.fixture
def registry(identifier_store, config, provenance):
    return IdentifierRegistryEngine(
        store=identifier_store, config=config, provenance=provenance,
    )


@pytest.fixture
def ledger(registry, event_store, config, provenance, clock):
    return EventLedgerEngine(
        registry,
        store=event_store,
        config=config,
        provenance=provenance,
        clock=clock,
    )


@pytest.fixture
def harvest_handler(registry, ledger, journal, config, provenance):
    return HarvestTransitionHandler(
        registry, ledger, journal=journal, config=config, provenance=provenance,
    )


@pytest.fixture
def profile_store():
    """Profile store holding a farmer and a transporter."""
    store = InMemoryProfileStore()
    store.add_profile(
        "farmer-1", "Amina Njoroge", "farmer",
        avatar_url="https://cdn.example.org/avatars/farmer-1.png",
    )
    store.add_profile("transporter-1", "Kofi Mensah", "transporter")
    return store


@pytest.fixture
def actor_helper(profile_store, config):
    return ActorResolutionHelper(profile_store, config=config)


@pytest.fixture
def history_service(registry, ledger, actor_helper, annotation_store, config):
    return HistoryReconstructionService(
        registry,
        ledger,
        actor_helper=actor_helper,
        annotation_store=annotation_store,
        config=config,
    )


@pytest.fixture
def farmer():
    return CallerIdentity(user_id="farmer-1", roles=["farmer"])


@pytest.fixture
def transporter():
    return CallerIdentity(user_id="transporter-1", roles=["transporter"])


@pytest.fixture
def admin():
    return CallerIdentity(user_id="admin-1", roles=["admin"])


@pytest.fixture
def service(config, profile_store, clock):
    """Fully wired in-memory service."""
    svc = TraceabilityLedgerService(
        config=config, profile_store=profile_store, clock=clock,
    )
    yield svc
    svc.shutdown()
