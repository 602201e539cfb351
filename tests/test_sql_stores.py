"""Tests for the SQLAlchemy ledger stores on in-memory SQLite."""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError

from agritrace.traceability_ledger.event_ledger import EventLedgerEngine
from agritrace.traceability_ledger.harvest_transition import (
    HarvestTransitionHandler,
)
from agritrace.traceability_ledger.identifier_registry import (
    IdentifierRegistryEngine,
)
from agritrace.traceability_ledger.models import (
    AnomalyAnnotation,
    IdentifierRecord,
    IdentifierStatus,
    TraceEventType,
    TransitionIntent,
    TransitionState,
)
from agritrace.traceability_ledger.sql_stores import LedgerDatabase


@pytest.fixture
def database():
    db = LedgerDatabase("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def sql_stores(database):
    return database.build_stores()


@pytest.fixture
def sql_registry(sql_stores, config):
    return IdentifierRegistryEngine(
        store=sql_stores["identifier_store"], config=config,
    )


@pytest.fixture
def sql_ledger(sql_registry, sql_stores, config, clock):
    return EventLedgerEngine(
        sql_registry, store=sql_stores["event_store"], config=config, clock=clock,
    )


def record(identifier_id, **overrides):
    fields = {
        "identifier_id": identifier_id,
        "identifier_type": "farm_batch",
        "metadata": {"farmFieldId": "plot-7"},
    }
    fields.update(overrides)
    return IdentifierRecord(**fields)


class TestSqlIdentifierStore:

    def test_insert_if_absent(self, sql_stores):
        store = sql_stores["identifier_store"]

        assert store.insert_if_absent(record("vti-1")) is True
        assert store.insert_if_absent(record("vti-1", identifier_type="x")) is False

        stored = store.get("vti-1")
        assert stored.identifier_type == "farm_batch"
        assert stored.farm_field_id == "plot-7"
        assert stored.creation_time.tzinfo is not None
        assert store.count() == 1

    def test_constraint_failure_is_not_a_collision(self, sql_stores):
        store = sql_stores["identifier_store"]
        broken = record("vti-9").model_copy(update={"identifier_type": None})

        with pytest.raises(IntegrityError):
            store.insert_if_absent(broken)
        assert store.exists("vti-9") is False

    def test_links_and_status(self, sql_stores):
        store = sql_stores["identifier_store"]
        store.insert_if_absent(record("vti-1"))
        store.insert_if_absent(record("vti-2"))

        store.add_link("vti-2", "vti-1")
        updated = store.add_link("vti-2", "vti-1")
        assert updated.linked_identifiers == ["vti-1"]

        recalled = store.set_status("vti-1", IdentifierStatus.RECALLED)
        assert recalled.status == IdentifierStatus.RECALLED

        with pytest.raises(KeyError):
            store.add_link("missing", "vti-1")

    def test_list_public_newest_first(self, sql_stores):
        store = sql_stores["identifier_store"]
        for day, public in ((1, True), (2, False), (3, True)):
            store.insert_if_absent(record(
                f"vti-{day}",
                creation_time=datetime(2026, 3, day, tzinfo=timezone.utc),
                is_public_traceable=public,
            ))

        assert [r.identifier_id for r in store.list_public(10)] == [
            "vti-3", "vti-1",
        ]
        assert len(store.list_public(1)) == 1


class TestSqlEventLedger:

    def test_append_and_queries(self, sql_registry, sql_ledger):
        planted = sql_ledger.append({
            "event_type": "PLANTED",
            "actor_ref": "farmer-1",
            "field_plot_ref": "plot-7",
            "geo_location": {"lat": -0.42, "lng": 36.95},
            "payload": {"seedVariety": "Maize H614"},
        })
        vti = sql_registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        sql_ledger.append({
            "event_type": "HARVESTED",
            "actor_ref": "farmer-1",
            "identifier_ref": vti,
            "field_plot_ref": "plot-7",
        })

        pre = sql_ledger.list_by_field_plot("plot-7", identifier_is_null=True)
        assert [e.event_id for e in pre] == [planted.event_id]
        assert pre[0].geo_location.lat == -0.42
        assert pre[0].sequence is not None
        assert sql_ledger.find_first(vti, TraceEventType.HARVESTED) is not None
        assert sql_ledger.verify_event(planted.event_id) is True
        assert sql_ledger.event_count == 2

    def test_one_harvest_per_identifier(self, sql_registry, sql_ledger):
        vti = sql_registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        harvested = {
            "event_type": "HARVESTED",
            "actor_ref": "farmer-1",
            "identifier_ref": vti,
            "field_plot_ref": "plot-7",
        }

        first = sql_ledger.append_first_harvest(harvested)
        assert sql_ledger.append_first_harvest(harvested) is None
        with pytest.raises(IntegrityError):
            sql_ledger.append(harvested)

        for _ in range(2):
            sql_ledger.append({
                "event_type": "TRANSPORTED",
                "actor_ref": "transporter-1",
                "identifier_ref": vti,
            })
        events = sql_ledger.list_by_identifier(vti)
        assert [e.event_type for e in events] == [
            TraceEventType.HARVESTED,
            TraceEventType.TRANSPORTED,
            TraceEventType.TRANSPORTED,
        ]
        assert events[0].event_id == first.event_id

    def test_reads_are_stable(self, sql_ledger):
        event = sql_ledger.append({
            "event_type": "OBSERVED",
            "actor_ref": "farmer-1",
            "field_plot_ref": "plot-7",
            "payload": {"notes": ["leaf rust"]},
        })

        first = sql_ledger.get_event(event.event_id).model_dump_json()
        second = sql_ledger.get_event(event.event_id).model_dump_json()

        assert first == second == event.model_dump_json()


class TestSqlAnnotationsAndJournal:

    def test_annotations(self, sql_stores):
        store = sql_stores["annotation_store"]
        store.append(AnomalyAnnotation(
            event_id="evt-1", identifier_id="vti-1", reason="first",
        ))
        store.append(AnomalyAnnotation(
            event_id="evt-1", identifier_id="vti-1", reason="second",
        ))

        grouped = store.list_for_events(["evt-1", "evt-2"])

        assert [a.reason for a in grouped["evt-1"]] == ["first", "second"]
        assert "evt-2" not in grouped
        assert store.list_for_events([]) == {}
        assert store.count() == 2

    def test_journal_updates(self, sql_stores):
        journal = sql_stores["transition_journal"]
        intent = journal.create(TransitionIntent(
            field_plot_id="plot-7",
            actor_ref="farmer-1",
            batch_type="farm_batch",
            harvest_payload={"yieldKg": 800},
        ))

        journal.update(
            intent.intent_id,
            state=TransitionState.IDENTIFIER_CREATED,
            identifier_id="vti-1",
        )

        stored = journal.get(intent.intent_id)
        assert stored.state == TransitionState.IDENTIFIER_CREATED
        assert stored.identifier_id == "vti-1"
        assert stored.harvest_payload == {"yieldKg": 800}
        assert [i.intent_id for i in journal.list_by_state(
            [TransitionState.IDENTIFIER_CREATED],
        )] == [intent.intent_id]

        with pytest.raises(ValueError):
            journal.update(intent.intent_id, field_plot_id="plot-8")
        with pytest.raises(KeyError):
            journal.update("missing", state=TransitionState.FAILED)

    def test_harvest_transition_on_sql(self, sql_registry, sql_ledger, sql_stores):
        handler = HarvestTransitionHandler(
            sql_registry, sql_ledger, journal=sql_stores["transition_journal"],
        )

        vti = handler.transition(
            "plot-7", batch_metadata={"cropType": "Maize"}, actor_ref="farmer-1",
        )

        assert sql_registry.get(vti).metadata["cropType"] == "Maize"
        assert [i.state for i in handler.list_intents()] == [
            TransitionState.COMPLETED,
        ]
