# -*- coding: utf-8 -*-
"""
Identifier Registry Engine - Traceability Ledger

Mints and serves Verifiable Traceability Identifiers (VTIs) for harvested
batches. Identifiers are opaque random UUIDs. Every new id is checked for
non-existence before it is written: the store insert is conditional, and a
taken id is replaced by a fresh draw up to a configured number of attempts.

Lineage between identifiers (splits, merges, derivations) is kept as an
append-only edge list on the source identifier. Edges are validated at
write time so the lineage graph stays acyclic.

Guarantees:
    - id, type, creation time and metadata never change after creation
    - linked identifiers must exist when the edge is written
    - SHA-256 provenance hashes on every registry write

Example:
    >>> from agritrace.traceability_ledger.identifier_registry import (
    ...     IdentifierRegistryEngine,
    ... )
    >>> registry = IdentifierRegistryEngine()
    >>> vti = registry.create("farm_batch", metadata={"farmFieldId": "plot-1"})
    >>> assert registry.get(vti).metadata["farmFieldId"] == "plot-1"

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from agritrace.exceptions import (
    IdentifierCollisionError,
    LineageCycleError,
    NotFoundError,
    ReferentialIntegrityError,
    ValidationError,
)
from agritrace.traceability_ledger.metrics import (
    record_identifier_created,
    record_operation,
)
from agritrace.traceability_ledger.models import (
    IdentifierRecord,
    IdentifierStatus,
    _utcnow,
)
from agritrace.traceability_ledger.provenance import compute_hash
from agritrace.traceability_ledger.stores import (
    IdentifierStore,
    InMemoryIdentifierStore,
)

logger = logging.getLogger(__name__)

_COMPONENT = "IdentifierRegistry"


def _default_id_factory() -> str:
    return str(uuid.uuid4())


class IdentifierRegistryEngine:
    """Batch identifier registry.

    Attributes:
        _store: Identifier store handle.
        _config: TraceabilityLedgerConfig or None for defaults.
        _provenance: Optional ProvenanceTracker.
        _id_factory: Callable producing candidate ids.
        _link_lock: Serializes lineage writes so two concurrent edges
            cannot close a cycle between them.

    Example:
        >>> registry = IdentifierRegistryEngine()
        >>> parent = registry.create("farm_batch")
        >>> child = registry.create("processed_lot", linked_identifiers=[parent])
        >>> assert registry.get_lineage(child) == [parent]
    """

    def __init__(
        self,
        store: Optional[IdentifierStore] = None,
        config: Any = None,
        provenance: Any = None,
        id_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        """Initialize IdentifierRegistryEngine.

        Args:
            store: Identifier store; in-memory when omitted.
            config: Optional TraceabilityLedgerConfig.
            provenance: Optional ProvenanceTracker instance.
            id_factory: Candidate id generator (uuid4 by default).
        """
        self._store = store if store is not None else InMemoryIdentifierStore()
        self._config = config
        self._provenance = provenance
        self._id_factory = id_factory or _default_id_factory
        self._link_lock = threading.Lock()

        self._max_attempts = max(
            1, getattr(config, "id_generation_max_attempts", 5),
        )
        self._public_default = getattr(
            config, "identifiers_public_by_default", True,
        )

        logger.info(
            "IdentifierRegistryEngine initialized: max_attempts=%d",
            self._max_attempts,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def create(
        self,
        identifier_type: str,
        linked_identifiers: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        is_public_traceable: Optional[bool] = None,
        actor: str = "system",
    ) -> str:
        """Mint a new identifier and return its id.

        Args:
            identifier_type: Classification tag (e.g. ``farm_batch``).
            linked_identifiers: Existing identifiers this one derives from.
            metadata: Free-form metadata, frozen at creation.
            is_public_traceable: Visibility; config default when None.
            actor: Actor reference recorded in provenance.

        Returns:
            The new identifier id.

        Raises:
            ValidationError: If the type or metadata is malformed.
            ReferentialIntegrityError: If a linked identifier is unknown.
            IdentifierCollisionError: If every drawn id was already taken.
        """
        start_time = time.monotonic()

        if not isinstance(identifier_type, str) or not identifier_type.strip():
            raise ValidationError(
                "identifier_type must be a non-empty string",
                component=_COMPONENT,
                invalid_fields={"identifier_type": "missing or blank"},
            )
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError(
                "metadata must be a mapping",
                component=_COMPONENT,
                invalid_fields={"metadata": type(metadata).__name__},
            )

        links = self._check_links_exist(linked_identifiers or [])
        public = (
            self._public_default
            if is_public_traceable is None else bool(is_public_traceable)
        )

        record = None
        for attempt in range(1, self._max_attempts + 1):
            candidate = IdentifierRecord(
                identifier_id=self._id_factory(),
                identifier_type=identifier_type,
                creation_time=_utcnow(),
                status=IdentifierStatus.ACTIVE,
                linked_identifiers=links,
                metadata=dict(metadata or {}),
                is_public_traceable=public,
            )
            if self._store.insert_if_absent(candidate):
                record = candidate
                break
            logger.warning(
                "Identifier id collision on attempt %d/%d: %s",
                attempt, self._max_attempts, candidate.identifier_id,
            )

        if record is None:
            raise IdentifierCollisionError(
                f"No unused identifier after {self._max_attempts} attempts",
                component=_COMPONENT,
                context={"attempts": self._max_attempts},
            )

        if self._provenance is not None:
            self._provenance.record(
                entity_type="identifier",
                entity_id=record.identifier_id,
                action="create",
                data_hash=compute_hash(record),
                actor=actor,
            )

        elapsed = time.monotonic() - start_time
        record_identifier_created(identifier_type)
        record_operation("create_identifier", elapsed)

        logger.info(
            "Created identifier %s: type=%s, links=%d, public=%s (%.1f ms)",
            record.identifier_id, identifier_type, len(links), public,
            elapsed * 1000,
        )
        return record.identifier_id

    def get(self, identifier_id: str) -> IdentifierRecord:
        """Return the identifier record.

        Raises:
            NotFoundError: If the identifier does not exist.
        """
        record = self._store.get(identifier_id)
        if record is None:
            raise NotFoundError(
                f"Identifier {identifier_id} not found",
                component=_COMPONENT,
                resource_type="identifier",
                resource_id=identifier_id,
            )
        return record

    def exists(self, identifier_id: str) -> bool:
        """Return True if ``identifier_id`` is registered."""
        if not identifier_id:
            return False
        return self._store.exists(identifier_id)

    def link_identifiers(
        self,
        source_id: str,
        target_id: str,
        actor: str = "system",
    ) -> IdentifierRecord:
        """Add a lineage edge ``source_id -> target_id``.

        Linking an existing edge again is a no-op.

        Raises:
            NotFoundError: If either identifier is unknown.
            LineageCycleError: If the edge would close a cycle.
        """
        with self._link_lock:
            source = self.get(source_id)
            self.get(target_id)

            if target_id in source.linked_identifiers:
                return source

            path = self._find_path(target_id, source_id)
            if path is not None:
                cycle = [source_id] + path
                raise LineageCycleError(
                    f"Linking {source_id} -> {target_id} would create a cycle",
                    component=_COMPONENT,
                    context={"cycle": cycle},
                )

            updated = self._store.add_link(source_id, target_id)

        if self._provenance is not None:
            self._provenance.record(
                entity_type="identifier",
                entity_id=source_id,
                action="link",
                data_hash=compute_hash(updated),
                actor=actor,
                metadata={"target_id": target_id},
            )

        logger.info("Linked identifier %s -> %s", source_id, target_id)
        return updated

    def get_lineage(self, identifier_id: str) -> List[str]:
        """Return every identifier reachable through lineage links.

        Breadth-first, nearest first, without duplicates.

        Raises:
            NotFoundError: If the identifier does not exist.
        """
        root = self.get(identifier_id)
        seen = {identifier_id}
        order: List[str] = []
        frontier = list(root.linked_identifiers)
        while frontier:
            next_frontier: List[str] = []
            for node in frontier:
                if node in seen:
                    continue
                seen.add(node)
                order.append(node)
                record = self._store.get(node)
                if record is not None:
                    next_frontier.extend(record.linked_identifiers)
            frontier = next_frontier
        return order

    def set_status(
        self,
        identifier_id: str,
        status: Any,
        actor: str = "system",
    ) -> IdentifierRecord:
        """Change the lifecycle status of an identifier.

        Raises:
            ValidationError: If ``status`` is not a known status.
            NotFoundError: If the identifier does not exist.
        """
        try:
            new_status = IdentifierStatus(status)
        except ValueError:
            raise ValidationError(
                f"Unknown identifier status: {status!r}",
                component=_COMPONENT,
                invalid_fields={"status": str(status)},
            ) from None

        self.get(identifier_id)
        updated = self._store.set_status(identifier_id, new_status)

        if self._provenance is not None:
            self._provenance.record(
                entity_type="identifier",
                entity_id=identifier_id,
                action="status",
                data_hash=compute_hash(updated),
                actor=actor,
                metadata={"status": new_status.value},
            )

        logger.info(
            "Identifier %s status -> %s", identifier_id, new_status.value,
        )
        return updated

    def list_recent_public(self, limit: int) -> List[IdentifierRecord]:
        """Return up to ``limit`` public identifiers, newest first."""
        return self._store.list_public(max(0, int(limit)))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _check_links_exist(self, linked_identifiers: Iterable[str]) -> List[str]:
        links: List[str] = []
        for link in linked_identifiers:
            if not isinstance(link, str) or not link.strip():
                raise ValidationError(
                    "linked identifiers must be non-empty strings",
                    component=_COMPONENT,
                    invalid_fields={"linked_identifiers": repr(link)},
                )
            if link in links:
                continue
            if not self._store.exists(link):
                raise ReferentialIntegrityError(
                    f"Linked identifier {link} not found",
                    component=_COMPONENT,
                    resource_type="identifier",
                    resource_id=link,
                )
            links.append(link)
        return links

    def _find_path(self, start: str, goal: str) -> Optional[List[str]]:
        """Depth-first search for a lineage path ``start -> ... -> goal``."""
        stack: List[List[str]] = [[start]]
        visited = set()
        while stack:
            path = stack.pop()
            node = path[-1]
            if node == goal:
                return path
            if node in visited:
                continue
            visited.add(node)
            record = self._store.get(node)
            if record is None:
                continue
            for child in record.linked_identifiers:
                if child not in visited:
                    stack.append(path + [child])
        return None

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    @property
    def identifier_count(self) -> int:
        """Return the total number of registered identifiers."""
        return self._store.count()

    def get_statistics(self) -> Dict[str, Any]:
        """Return registry statistics."""
        return {
            "identifiers": self.identifier_count,
            "max_id_attempts": self._max_attempts,
        }


__all__ = [
    "IdentifierRegistryEngine",
]
