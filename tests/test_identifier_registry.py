"""Tests for IdentifierRegistryEngine.

Covers:
- Creation, validation and immutability of identifier records
- Uniqueness under parallel creation and id collisions
- Lineage links, cycle rejection and lineage traversal
- Status changes and the public listing
"""

import uuid
from concurrent.futures import ThreadPoolExecutor
from itertools import chain, repeat

import pytest

from agritrace.exceptions import (
    IdentifierCollisionError,
    LineageCycleError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from agritrace.traceability_ledger.config import TraceabilityLedgerConfig
from agritrace.traceability_ledger.identifier_registry import (
    IdentifierRegistryEngine,
)
from agritrace.traceability_ledger.models import IdentifierStatus
from agritrace.traceability_ledger.stores import InMemoryIdentifierStore


# ==============================================================================
# Creation
# ==============================================================================

class TestCreate:
    """Tests for IdentifierRegistryEngine.create."""

    def test_create_and_get(self, registry):
        vti = registry.create(
            "farm_batch", metadata={"farmFieldId": "plot-7", "cropType": "Maize"},
        )
        record = registry.get(vti)

        assert record.identifier_id == vti
        assert record.identifier_type == "farm_batch"
        assert record.status == IdentifierStatus.ACTIVE
        assert record.farm_field_id == "plot-7"
        assert record.linked_identifiers == []
        assert record.derived_metrics == {"carbon_footprint_kgco2e": 0.0}
        assert record.is_public_traceable is True

    def test_visibility_default_from_config(self, identifier_store):
        registry = IdentifierRegistryEngine(
            store=identifier_store,
            config=TraceabilityLedgerConfig(identifiers_public_by_default=False),
        )
        vti = registry.create("farm_batch")
        assert registry.get(vti).is_public_traceable is False

    @pytest.mark.parametrize("identifier_type", ["", "   ", None, 42])
    def test_blank_type_rejected(self, registry, identifier_type):
        with pytest.raises(ValidationError):
            registry.create(identifier_type)
        assert registry.identifier_count == 0

    def test_metadata_must_be_mapping(self, registry):
        with pytest.raises(ValidationError):
            registry.create("farm_batch", metadata=["farmFieldId", "plot-1"])

    def test_unknown_link_rejected(self, registry):
        with pytest.raises(ReferentialIntegrityError):
            registry.create("processed_lot", linked_identifiers=["ghost"])
        assert registry.identifier_count == 0

    def test_metadata_is_copied(self, registry):
        """Mutating the caller's dict or a returned record changes nothing."""
        metadata = {"cropType": "Beans"}
        vti = registry.create("farm_batch", metadata=metadata)
        metadata["cropType"] = "Coffee"
        registry.get(vti).metadata["cropType"] = "Tea"

        assert registry.get(vti).metadata == {"cropType": "Beans"}

    def test_get_unknown_raises_not_found(self, registry):
        with pytest.raises(NotFoundError) as exc_info:
            registry.get("no-such-id")
        assert exc_info.value.resource_id == "no-such-id"

    def test_exists(self, registry):
        vti = registry.create("farm_batch")
        assert registry.exists(vti) is True
        assert registry.exists("no-such-id") is False
        assert registry.exists("") is False

    def test_provenance_recorded(self, registry, provenance):
        vti = registry.create("farm_batch")
        chain_ = provenance.get_chain(vti)
        assert [e.action for e in chain_] == ["create"]
        assert provenance.verify_chain() is True


# ==============================================================================
# Uniqueness
# ==============================================================================

class TestUniqueness:
    """Identifiers never collide, even under parallel creation."""

    def test_parallel_creation_unique(self, registry):
        with ThreadPoolExecutor(max_workers=16) as pool:
            ids = list(pool.map(
                lambda _: registry.create("farm_batch"), range(500),
            ))

        assert len(set(ids)) == 500
        assert registry.identifier_count == 500
        for vti in ids[:50]:
            assert registry.get(vti).identifier_id == vti

    def test_collision_is_retried(self):
        """A taken id is replaced by a fresh draw."""
        ids = chain(["dup", "dup", "fresh"], repeat("unused"))
        registry = IdentifierRegistryEngine(id_factory=lambda: next(ids))

        assert registry.create("farm_batch") == "dup"
        assert registry.create("farm_batch") == "fresh"

    def test_collision_budget_exhausted(self):
        store = InMemoryIdentifierStore()
        registry = IdentifierRegistryEngine(
            store=store,
            config=TraceabilityLedgerConfig(id_generation_max_attempts=3),
            id_factory=lambda: "always-the-same",
        )
        registry.create("farm_batch")

        with pytest.raises(IdentifierCollisionError) as exc_info:
            registry.create("farm_batch")
        assert exc_info.value.context["attempts"] == 3
        assert store.count() == 1


# ==============================================================================
# Lineage
# ==============================================================================

class TestLineage:
    """Tests for lineage links."""

    def test_lineage_lists_linked_ids(self, registry):
        parent = registry.create("farm_batch")
        child = registry.create("processed_lot", linked_identifiers=[parent])

        lineage = registry.get_lineage(child)

        assert lineage == [parent]
        assert uuid.UUID(lineage[0]).version == 4

    def test_link_and_traverse(self, registry):
        origin = registry.create("farm_batch")
        washed = registry.create("processed_lot", linked_identifiers=[origin])
        roasted = registry.create("processed_lot")
        registry.link_identifiers(roasted, washed)

        assert registry.get(roasted).linked_identifiers == [washed]
        assert registry.get_lineage(roasted) == [washed, origin]

    def test_duplicate_link_is_noop(self, registry, provenance):
        a = registry.create("farm_batch")
        b = registry.create("farm_batch")
        registry.link_identifiers(a, b)
        registry.link_identifiers(a, b)

        assert registry.get(a).linked_identifiers == [b]
        assert [e.action for e in provenance.get_chain(a)] == ["create", "link"]

    def test_cycle_rejected(self, registry):
        a = registry.create("farm_batch")
        b = registry.create("processed_lot", linked_identifiers=[a])
        c = registry.create("processed_lot", linked_identifiers=[b])

        with pytest.raises(LineageCycleError) as exc_info:
            registry.link_identifiers(a, c)

        assert exc_info.value.context["cycle"] == [a, c, b, a]
        assert registry.get(a).linked_identifiers == []

    def test_self_link_rejected(self, registry):
        a = registry.create("farm_batch")
        with pytest.raises(LineageCycleError):
            registry.link_identifiers(a, a)

    def test_link_to_unknown_rejected(self, registry):
        a = registry.create("farm_batch")
        with pytest.raises(NotFoundError):
            registry.link_identifiers(a, "ghost")
        with pytest.raises(NotFoundError):
            registry.link_identifiers("ghost", a)


# ==============================================================================
# Status and listing
# ==============================================================================

class TestStatusAndListing:
    """Tests for set_status and list_recent_public."""

    def test_set_status(self, registry):
        vti = registry.create("farm_batch")
        updated = registry.set_status(vti, "recalled")

        assert updated.status == IdentifierStatus.RECALLED
        assert registry.get(vti).status == IdentifierStatus.RECALLED

    def test_set_unknown_status(self, registry):
        vti = registry.create("farm_batch")
        with pytest.raises(ValidationError):
            registry.set_status(vti, "lost")

    def test_list_recent_public(self, registry):
        first = registry.create("farm_batch")
        registry.create("farm_batch", is_public_traceable=False)
        third = registry.create("farm_batch")

        recent = [r.identifier_id for r in registry.list_recent_public(10)]
        assert recent == [third, first]
        assert len(registry.list_recent_public(1)) == 1

    def test_statistics(self, registry):
        registry.create("farm_batch")
        stats = registry.get_statistics()
        assert stats["identifiers"] == 1
        assert stats["max_id_attempts"] == 5
