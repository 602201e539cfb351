"""Tests for EventLedgerEngine and MonotonicUtcClock.

Covers:
- Validation of appended events (shape, coordinates, references)
- Referential integrity against the identifier registry
- Server-assigned timestamps and ordering
- Immutability of stored events and content hashes
- Subscriber notification and isolation
- Conditional first HARVESTED append
"""

from datetime import datetime, timedelta, timezone

import pytest

from agritrace.exceptions import (
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from agritrace.traceability_ledger.config import TraceabilityLedgerConfig
from agritrace.traceability_ledger.event_ledger import (
    EventLedgerEngine,
    MonotonicUtcClock,
)
from agritrace.traceability_ledger.models import (
    AppendEventRequest,
    GeoLocation,
    TraceEventType,
)


def planted(field_plot="plot-7", **overrides):
    event = {
        "event_type": "PLANTED",
        "actor_ref": "farmer-1",
        "field_plot_ref": field_plot,
        "payload": {"seedVariety": "Maize H614", "areaHa": 1.5},
    }
    event.update(overrides)
    return event


# ==============================================================================
# Validation
# ==============================================================================

class TestAppendValidation:
    """Malformed events are rejected before anything is written."""

    def test_missing_references(self, ledger):
        with pytest.raises(ValidationError):
            ledger.append({"event_type": "PLANTED", "actor_ref": "farmer-1"})
        assert ledger.event_count == 0

    def test_unknown_event_type(self, ledger):
        with pytest.raises(ValidationError) as exc_info:
            ledger.append(planted(event_type="TELEPORTED"))
        assert "event_type" in exc_info.value.context["invalid_fields"]

    def test_blank_actor(self, ledger):
        with pytest.raises(ValidationError):
            ledger.append(planted(actor_ref="  "))

    def test_blank_field_plot(self, ledger):
        with pytest.raises(ValidationError):
            ledger.append(planted(field_plot=""))

    @pytest.mark.parametrize(
        "geo",
        [
            {"lat": "north", "lng": 36.8},
            {"lat": 91.0, "lng": 36.8},
            {"lat": -1.29, "lng": 181.0},
            {"lat": True, "lng": 36.8},
            {"lat": -1.29},
        ],
    )
    def test_malformed_coordinates(self, ledger, geo):
        with pytest.raises(ValidationError):
            ledger.append(planted(geo_location=geo))
        assert ledger.event_count == 0

    def test_client_timestamp_rejected(self, ledger):
        with pytest.raises(ValidationError) as exc_info:
            ledger.append(planted(timestamp="2020-01-01T00:00:00Z"))
        assert "timestamp" in exc_info.value.context["invalid_fields"]

    def test_non_mapping_rejected(self, ledger):
        with pytest.raises(ValidationError):
            ledger.append(["PLANTED", "farmer-1"])

    def test_accepts_request_model(self, ledger):
        request = AppendEventRequest(
            event_type=TraceEventType.OBSERVED,
            actor_ref="farmer-1",
            field_plot_ref="plot-7",
            geo_location=GeoLocation(lat=-1.29, lng=36.82),
        )
        event = ledger.append(request)
        assert event.geo_location == GeoLocation(lat=-1.29, lng=36.82)


# ==============================================================================
# Referential integrity
# ==============================================================================

class TestReferentialIntegrity:
    """Events referencing an identifier need that identifier to exist."""

    def test_unknown_identifier_rejected(self, ledger):
        with pytest.raises(ReferentialIntegrityError) as exc_info:
            ledger.append({
                "event_type": "TRANSPORTED",
                "actor_ref": "transporter-1",
                "identifier_ref": "ghost",
            })
        assert exc_info.value.resource_id == "ghost"
        assert ledger.event_count == 0

    def test_known_identifier_accepted(self, registry, ledger):
        vti = registry.create("farm_batch")
        event = ledger.append({
            "event_type": "TRANSPORTED",
            "actor_ref": "transporter-1",
            "identifier_ref": vti,
            "payload": {"vehicle": "KDA 123X"},
        })

        assert event.identifier_ref == vti
        assert event.is_pre_harvest is False
        assert registry.exists(event.identifier_ref)


# ==============================================================================
# Timestamps and reads
# ==============================================================================

class TestTimestampsAndReads:
    """Server timestamps, ordering and immutability."""

    def test_server_assigns_timestamp_and_sequence(self, ledger):
        first = ledger.append(planted())
        second = ledger.append(planted(event_type="OBSERVED"))

        assert first.timestamp < second.timestamp
        assert first.sequence < second.sequence
        assert first.timestamp.tzinfo is not None

    def test_pre_harvest_query(self, registry, ledger):
        ledger.append(planted())
        vti = registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        ledger.append({
            "event_type": "HARVESTED",
            "actor_ref": "farmer-1",
            "identifier_ref": vti,
            "field_plot_ref": "plot-7",
        })
        ledger.append(planted(field_plot="plot-8"))

        all_events = ledger.list_by_field_plot("plot-7")
        pre_harvest = ledger.list_by_field_plot("plot-7", identifier_is_null=True)

        assert [e.event_type for e in all_events] == [
            TraceEventType.PLANTED, TraceEventType.HARVESTED,
        ]
        assert [e.event_type for e in pre_harvest] == [TraceEventType.PLANTED]
        assert ledger.find_first(vti, "HARVESTED").identifier_ref == vti
        assert ledger.find_first(vti, TraceEventType.SOLD) is None

    def test_repeated_reads_identical(self, ledger):
        event = ledger.append(planted())
        first = ledger.get_event(event.event_id).model_dump_json()

        ledger.get_event(event.event_id).payload["seedVariety"] = "tampered"
        ledger.list_by_field_plot("plot-7")[0].payload.clear()

        assert ledger.get_event(event.event_id).model_dump_json() == first
        assert ledger.verify_event(event.event_id) is True

    def test_get_unknown_event(self, ledger):
        with pytest.raises(NotFoundError):
            ledger.get_event("missing")

    def test_visibility_default(self, registry, event_store):
        ledger = EventLedgerEngine(
            registry,
            store=event_store,
            config=TraceabilityLedgerConfig(events_public_by_default=False),
        )
        private = ledger.append(planted())
        public = ledger.append(planted(is_public_traceable=True))

        assert private.is_public_traceable is False
        assert public.is_public_traceable is True

    def test_provenance_recorded(self, ledger, provenance):
        event = ledger.append(planted())
        entries = provenance.get_chain(event.event_id)
        assert entries[0].action == "append"
        assert entries[0].data_hash == event.data_hash


# ==============================================================================
# First HARVESTED event
# ==============================================================================

class TestFirstHarvest:
    """At most one HARVESTED event per identifier."""

    def harvested(self, vti):
        return {
            "event_type": "HARVESTED",
            "actor_ref": "farmer-1",
            "identifier_ref": vti,
            "field_plot_ref": "plot-7",
        }

    def test_second_conditional_append_is_skipped(self, registry, ledger):
        vti = registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        calls = []
        ledger.subscribe(calls.append)

        first = ledger.append_first_harvest(self.harvested(vti))
        second = ledger.append_first_harvest(self.harvested(vti))

        assert first.event_type == TraceEventType.HARVESTED
        assert second is None
        assert [e.event_id for e in ledger.list_by_identifier(vti)] == [
            first.event_id,
        ]
        assert [e.event_id for e in calls] == [first.event_id]

    def test_plain_append_rejects_second_harvest(self, registry, ledger):
        vti = registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        ledger.append(self.harvested(vti))

        with pytest.raises(ValueError):
            ledger.append(self.harvested(vti))
        assert ledger.event_count == 1

    @pytest.mark.parametrize("overrides", [
        {"event_type": "TRANSPORTED"},
        {"identifier_ref": None},
    ])
    def test_only_batch_harvests_accepted(self, registry, ledger, overrides):
        vti = registry.create("farm_batch", metadata={"farmFieldId": "plot-7"})
        request = self.harvested(vti)
        request.update(overrides)

        with pytest.raises(ValidationError):
            ledger.append_first_harvest(request)
        assert ledger.event_count == 0

    def test_unknown_identifier_rejected(self, ledger):
        with pytest.raises(ReferentialIntegrityError):
            ledger.append_first_harvest(self.harvested("ghost"))


# ==============================================================================
# Subscribers
# ==============================================================================

class TestSubscribers:
    """Post-append notifications."""

    def test_subscriber_receives_copy(self, ledger):
        seen = []

        def callback(event):
            event.payload["mutated"] = True
            seen.append(event)

        ledger.subscribe(callback)
        stored = ledger.append(planted())

        assert seen[0].event_id == stored.event_id
        assert "mutated" not in ledger.get_event(stored.event_id).payload

    def test_failing_subscriber_does_not_fail_append(self, ledger):
        def broken(event):
            raise RuntimeError("boom")

        ledger.subscribe(broken)
        event = ledger.append(planted())

        assert ledger.get_event(event.event_id).event_id == event.event_id

    def test_subscribe_twice_and_unsubscribe(self, ledger):
        calls = []
        ledger.subscribe(calls.append)
        ledger.subscribe(calls.append)
        assert ledger.subscriber_count == 1

        ledger.unsubscribe(calls.append)
        ledger.append(planted())
        assert calls == []


# ==============================================================================
# Clock
# ==============================================================================

class TestMonotonicUtcClock:
    """The ledger clock never repeats or goes backwards."""

    def test_stalled_source(self):
        frozen = datetime(2026, 3, 1, tzinfo=timezone.utc)
        clock = MonotonicUtcClock(lambda: frozen)

        values = [clock() for _ in range(3)]

        assert values[0] == frozen
        assert values[1] == frozen + timedelta(microseconds=1)
        assert values[2] == frozen + timedelta(microseconds=2)

    def test_backwards_source(self):
        times = iter([
            datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2026, 3, 1, 11, 0, tzinfo=timezone.utc),
        ])
        clock = MonotonicUtcClock(lambda: next(times))

        first, second = clock(), clock()
        assert second > first

    def test_naive_source_treated_as_utc(self):
        clock = MonotonicUtcClock(lambda: datetime(2026, 3, 1, 12, 0))
        assert clock().tzinfo == timezone.utc
