"""Tests for TraceabilityLedgerService (the facade).

Covers:
- Caller identity and role checks on protected operations
- Pre-/post-harvest event type rules
- Typed input, observation and harvest requests
- Anonymous versus authenticated reads
- Store injection and the SQL backend
"""

import pytest

from agritrace.exceptions import (
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from agritrace.traceability_ledger.anomaly_hook import FunctionAnomalyScorer
from agritrace.traceability_ledger.config import TraceabilityLedgerConfig
from agritrace.traceability_ledger.models import (
    InputApplicationRequest,
    TraceEventType,
)
from agritrace.traceability_ledger.setup import TraceabilityLedgerService
from agritrace.traceability_ledger.stores import (
    InMemoryAnnotationStore,
    InMemoryEventStore,
    InMemoryIdentifierStore,
    InMemoryTransitionJournal,
)


# ==============================================================================
# Caller checks
# ==============================================================================

class TestCallerChecks:
    """Writes need an identity; some need a role."""

    def test_anonymous_write_rejected(self, service):
        with pytest.raises(AuthenticationError):
            service.log_pre_harvest_event(None, "plot-7", "PLANTED")
        with pytest.raises(AuthenticationError):
            service.create_identifier(None)
        assert service.ledger.event_count == 0

    def test_transition_requires_harvest_role(self, service, transporter):
        with pytest.raises(AuthorizationError) as exc_info:
            service.transition_to_vti(transporter, "plot-7")

        assert exc_info.value.context["required_roles"] == [
            "farmer", "admin", "system",
        ]
        assert exc_info.value.context["operation"] == "transition_to_vti"
        assert service.registry.identifier_count == 0

    def test_reconcile_requires_admin(self, service, farmer, admin):
        with pytest.raises(AuthorizationError):
            service.reconcile_transitions(farmer)

        report = service.reconcile_transitions(admin)
        assert report.examined == 0

    def test_input_application_requires_input_role(
        self, service, transporter, admin,
    ):
        application = {
            "input_id": "npk-17", "quantity": 50, "unit": "kg",
            "application_date": "2026-03-10",
        }
        with pytest.raises(AuthorizationError) as exc_info:
            service.log_input_application(transporter, "plot-7", application)
        with pytest.raises(AuthorizationError):
            service.log_pre_harvest_event(transporter, "plot-7", "INPUT_APPLIED")

        assert exc_info.value.context["operation"] == "log_input_application"
        assert exc_info.value.context["required_roles"] == [
            "farmer", "admin", "system",
        ]
        assert service.ledger.event_count == 0

        service.log_input_application(admin, "plot-7", application)
        service.log_pre_harvest_event(transporter, "plot-7", "OBSERVED")
        assert service.ledger.event_count == 2

    def test_actor_defaults_to_caller(self, service, farmer):
        event = service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")
        assert event.actor_ref == "farmer-1"

        other = service.log_pre_harvest_event(
            farmer, "plot-7", "OBSERVED", actor_ref="agronomist-3",
        )
        assert other.actor_ref == "agronomist-3"


# ==============================================================================
# Event type rules
# ==============================================================================

class TestEventTypes:
    """Which event types each logging operation accepts."""

    @pytest.mark.parametrize("event_type", ["HARVESTED", "TRANSPORTED", "BOGUS"])
    def test_pre_harvest_rejects(self, service, farmer, event_type):
        with pytest.raises(ValidationError):
            service.log_pre_harvest_event(farmer, "plot-7", event_type)

    @pytest.mark.parametrize("event_type", ["HARVESTED", "PLANTED", "BOGUS"])
    def test_post_harvest_rejects(self, service, farmer, event_type):
        vti = service.create_identifier(farmer).identifier_id
        with pytest.raises(ValidationError):
            service.log_post_harvest_event(farmer, vti, event_type)

    def test_post_harvest_unknown_batch(self, service, transporter):
        with pytest.raises(ReferentialIntegrityError):
            service.log_post_harvest_event(transporter, "ghost", "TRANSPORTED")

    def test_input_application(self, service, farmer):
        event = service.log_input_application(farmer, "plot-7", {
            "input_id": "npk-17",
            "quantity": 50,
            "unit": "kg",
            "application_date": "2026-03-10",
            "method": "broadcast",
        })

        assert event.event_type == TraceEventType.INPUT_APPLIED
        assert event.payload == {
            "inputId": "npk-17",
            "quantity": 50.0,
            "unit": "kg",
            "applicationDate": "2026-03-10",
            "method": "broadcast",
        }

    def test_input_application_model_accepted(self, service, farmer):
        request = InputApplicationRequest(
            input_id="urea", quantity=10, unit="kg",
            application_date="2026-03-11",
        )
        event = service.log_input_application(farmer, "plot-7", request)
        assert "method" not in event.payload

    def test_invalid_input_application(self, service, farmer):
        with pytest.raises(ValidationError) as exc_info:
            service.log_input_application(farmer, "plot-7", {
                "input_id": "npk-17", "quantity": -1, "unit": "kg",
                "application_date": "2026-03-10",
            })
        assert "quantity" in exc_info.value.context["invalid_fields"]

    def test_observation(self, service, farmer):
        event = service.log_observation(farmer, "plot-7", {
            "observation_type": "pest_scouting",
            "observation_date": "2026-04-02",
            "details": "Fall armyworm on 5% of plants",
            "media_urls": ["https://cdn.example.org/obs/1.jpg"],
        })

        assert event.event_type == TraceEventType.OBSERVED
        assert event.payload["observationType"] == "pest_scouting"
        assert event.payload["aiAnalysis"] == "Pending analysis"


# ==============================================================================
# Harvest and reads
# ==============================================================================

class TestHarvestAndReads:
    """Transitions through the facade and visibility of reads."""

    def test_harvest_request_merged(self, service, farmer):
        vti = service.transition_to_vti(
            farmer,
            "plot-7",
            harvest={"crop_type": "Coffee", "yield_kg": 310, "quality_grade": "AA"},
            harvest_payload={"yieldKg": 305},
            batch_metadata={"cooperative": "Nyeri Growers"},
        )

        record = service.get_identifier(vti, farmer)
        assert record.metadata["cropType"] == "Coffee"
        assert record.metadata["initialQualityGrade"] == "AA"
        assert record.metadata["cooperative"] == "Nyeri Growers"
        assert record.farm_field_id == "plot-7"

        [harvested] = service.ledger.list_by_identifier(vti)
        assert harvested.payload == {
            "cropType": "Coffee", "yieldKg": 305, "qualityGrade": "AA",
        }
        assert harvested.actor_ref == "farmer-1"

    def test_invalid_harvest_request(self, service, farmer):
        with pytest.raises(ValidationError):
            service.transition_to_vti(farmer, "plot-7", harvest={"crop_type": ""})
        with pytest.raises(ValidationError):
            service.transition_to_vti(farmer, "plot-7", harvest_payload=[1, 2])
        assert service.registry.identifier_count == 0

    def test_end_to_end_history(self, service, farmer, transporter):
        service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")
        vti = service.transition_to_vti(farmer, "plot-7", {"yieldKg": 900})
        service.log_post_harvest_event(
            transporter, vti, "TRANSPORTED", payload={"vehicle": "KDA 123X"},
        )

        history = service.get_history(vti)

        assert [e.event_type for e in history.events] == [
            TraceEventType.PLANTED,
            TraceEventType.HARVESTED,
            TraceEventType.TRANSPORTED,
        ]
        assert history.events[-1].actor.name == "Kofi Mensah"

    def test_anonymous_reads(self, service, farmer):
        private = service.create_identifier(
            farmer, is_public_traceable=False,
        ).identifier_id
        public = service.create_identifier(farmer).identifier_id
        service.log_post_harvest_event(
            farmer, public, "SOLD", payload={"priceKes": 42000},
            is_public_traceable=False,
        )

        with pytest.raises(NotFoundError):
            service.get_identifier(private)
        with pytest.raises(NotFoundError):
            service.get_history(private)
        assert service.get_identifier(private, farmer).identifier_id == private

        assert service.get_history(public).events == []
        assert len(service.get_history(public, farmer).events) == 1
        assert [b.identifier_id for b in service.list_recent_public_batches()] == [
            public,
        ]

    def test_field_plot_events_need_caller(self, service, farmer):
        service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")

        with pytest.raises(AuthenticationError):
            service.list_field_plot_events(None, "plot-7")
        assert len(service.list_field_plot_events(farmer, "plot-7")) == 1

    def test_link_identifiers(self, service, farmer):
        parent = service.create_identifier(farmer).identifier_id
        child = service.create_identifier(
            farmer, identifier_type="processed_lot",
        ).identifier_id

        record = service.link_identifiers(farmer, child, parent)

        assert record.linked_identifiers == [parent]

    def test_statistics(self, service, farmer):
        service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")
        service.transition_to_vti(farmer, "plot-7")

        stats = service.get_statistics()

        assert stats["storage_backend"] == "memory"
        assert stats["identifiers"] == 1
        assert stats["events"] == 2
        assert stats["open_transitions"] == 0
        assert stats["provenance_chain_valid"] is True

    def test_unknown_backend(self):
        with pytest.raises(ValueError):
            TraceabilityLedgerService(
                config=TraceabilityLedgerConfig(storage_backend="cassandra"),
            )

    def test_injected_stores_skip_database(self):
        service = TraceabilityLedgerService(
            config=TraceabilityLedgerConfig(
                storage_backend="sql", anomaly_worker_count=1,
            ),
            identifier_store=InMemoryIdentifierStore(),
            event_store=InMemoryEventStore(),
            annotation_store=InMemoryAnnotationStore(),
            transition_journal=InMemoryTransitionJournal(),
        )
        try:
            assert service.database is None
        finally:
            service.shutdown()

    def test_missing_stores_built_for_backend(self, farmer):
        event_store = InMemoryEventStore()
        service = TraceabilityLedgerService(
            config=TraceabilityLedgerConfig(
                storage_backend="sql", anomaly_worker_count=1,
            ),
            event_store=event_store,
        )
        try:
            assert service.database is not None
            vti = service.create_identifier(farmer).identifier_id
            service.log_post_harvest_event(farmer, vti, "TRANSPORTED")

            assert event_store.count() == 1
            assert service.get_statistics()["identifiers"] == 1
        finally:
            service.shutdown()


# ==============================================================================
# Anomaly flags through the facade
# ==============================================================================

def test_flagged_batch_shows_in_history(profile_store, clock, farmer, transporter):
    service = TraceabilityLedgerService(
        config=TraceabilityLedgerConfig(anomaly_worker_count=1),
        profile_store=profile_store,
        scorer=FunctionAnomalyScorer(
            lambda vti: {"isAnomaly": True, "reason": "Transit exceeded 72h"},
        ),
        clock=clock,
    )
    try:
        vti = service.transition_to_vti(farmer, "plot-7")
        service.log_post_harvest_event(transporter, vti, "TRANSPORTED")
        assert service.flush(timeout=5)

        events = service.get_history(vti).events
        assert all(e.payload["isAnomaly"] is True for e in events)
        assert events[-1].payload["anomalyReason"] == "Transit exceeded 72h"
        assert service.get_statistics()["anomaly_annotations"] == 2
    finally:
        service.shutdown()


# ==============================================================================
# SQL backend
# ==============================================================================

def test_sql_backend_end_to_end(profile_store, clock, farmer, transporter):
    service = TraceabilityLedgerService(
        config=TraceabilityLedgerConfig(
            storage_backend="sql", anomaly_worker_count=1,
        ),
        profile_store=profile_store,
        clock=clock,
    )
    try:
        assert service.database is not None
        service.log_pre_harvest_event(farmer, "plot-7", "PLANTED")
        service.log_input_application(farmer, "plot-7", {
            "input_id": "npk-17", "quantity": 50, "unit": "kg",
            "application_date": "2026-03-10",
        })
        vti = service.transition_to_vti(
            farmer, "plot-7", harvest={"crop_type": "Maize"},
        )
        service.log_post_harvest_event(transporter, vti, "TRANSPORTED")

        history = service.get_history(vti)

        assert [e.event_type for e in history.events] == [
            TraceEventType.PLANTED,
            TraceEventType.INPUT_APPLIED,
            TraceEventType.HARVESTED,
            TraceEventType.TRANSPORTED,
        ]
        assert history.pre_harvest_count == 2
        assert service.list_recent_public_batches()[0].product_name == "Maize"
        assert service.get_statistics()["storage_backend"] == "sql"
    finally:
        service.shutdown()
