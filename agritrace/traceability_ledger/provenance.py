# -*- coding: utf-8 -*-
"""
Traceability Ledger Provenance Tracker

SHA-256 chain-hashed audit trail over every ledger write: identifier
creation, lineage links, status changes, event appends, anomaly
annotations and harvest transition state changes. Each entry hashes its
own content together with the previous entry's chain hash, so editing or
dropping any entry breaks verification from that point on.

The tracker is shared by every engine of one ledger service and is safe
to call from concurrent writers.

Example:
    >>> from agritrace.traceability_ledger.provenance import ProvenanceTracker
    >>> tracker = ProvenanceTracker()
    >>> tracker.record("event", "evt-1", "append", compute_hash({"a": 1}))
    >>> assert tracker.verify_chain()

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def compute_hash(data: Any) -> str:
    """Compute a deterministic SHA-256 hash of a model or plain data.

    Args:
        data: Pydantic model, dict, list or scalar.

    Returns:
        SHA-256 hex digest string.
    """
    if hasattr(data, "model_dump"):
        serializable = data.model_dump(mode="json")
    else:
        serializable = data
    raw = json.dumps(serializable, sort_keys=True, default=str)
    return hashlib.sha256(raw.encode()).hexdigest()


# ---------------------------------------------------------------------------
# ProvenanceEntry model
# ---------------------------------------------------------------------------


class ProvenanceEntry(BaseModel):
    """A single link in the ledger audit chain."""

    model_config = ConfigDict(extra="forbid")

    entry_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique provenance entry ID",
    )
    entity_type: str = Field(
        ...,
        description="identifier, event, annotation or transition",
    )
    entity_id: str = Field(..., description="ID of the entity")
    action: str = Field(
        ...,
        description="create, link, status, append, annotate or a saga state",
    )
    data_hash: str = Field(..., description="SHA-256 of the entity data")
    previous_hash: str = Field(..., description="Previous chain hash")
    timestamp: datetime = Field(default_factory=_utcnow)
    actor: str = Field(default="system", description="Acting party")
    chain_hash: str = Field(default="", description="Chain hash of this entry")
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# ProvenanceTracker
# ---------------------------------------------------------------------------


class ProvenanceTracker:
    """Tamper-evident audit log for ledger writes.

    Attributes:
        _entries: Ordered list of provenance entries.
        _last_chain_hash: Most recent chain hash for linking.
        _entity_index: entity_id -> positions in ``_entries``.
        _lock: Serializes appends so the chain stays linear.
    """

    _GENESIS_HASH = hashlib.sha256(b"agritrace-ledger-genesis").hexdigest()

    def __init__(self) -> None:
        """Initialize ProvenanceTracker."""
        self._entries: List[ProvenanceEntry] = []
        self._last_chain_hash: str = self._GENESIS_HASH
        self._entity_index: Dict[str, List[int]] = {}
        self._lock = threading.Lock()
        logger.info("ProvenanceTracker initialized")

    def record(
        self,
        entity_type: str,
        entity_id: str,
        action: str,
        data_hash: str,
        actor: str = "system",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an entry to the audit chain.

        Args:
            entity_type: Kind of entity written.
            entity_id: ID of the entity.
            action: What happened to it.
            data_hash: SHA-256 of the entity data after the write.
            actor: Actor reference responsible for the write.
            metadata: Optional extra context.

        Returns:
            The entry_id of the new provenance entry.
        """
        with self._lock:
            entry = ProvenanceEntry(
                entity_type=entity_type,
                entity_id=entity_id,
                action=action,
                data_hash=data_hash,
                previous_hash=self._last_chain_hash,
                actor=actor,
                metadata=metadata or {},
            )
            entry.chain_hash = self._chain_hash_for(entry)

            self._entity_index.setdefault(entity_id, []).append(
                len(self._entries),
            )
            self._entries.append(entry)
            self._last_chain_hash = entry.chain_hash

        logger.debug(
            "Recorded provenance: %s %s %s -> %s",
            entity_type, action, entity_id, entry.entry_id,
        )
        return entry.entry_id

    def get_chain(self, entity_id: str) -> List[ProvenanceEntry]:
        """Return every entry recorded for ``entity_id``, oldest first."""
        with self._lock:
            indices = list(self._entity_index.get(entity_id, []))
            return [self._entries[i] for i in indices]

    def verify_chain(self, entity_id: Optional[str] = None) -> bool:
        """Verify chain integrity.

        Without ``entity_id`` the whole chain is replayed from genesis.
        With it, only that entity's entries are checked against their
        recorded previous hash.

        Returns:
            True if intact, False if any entry was altered.
        """
        if entity_id is not None:
            for entry in self.get_chain(entity_id):
                if entry.chain_hash != self._chain_hash_for(entry):
                    logger.warning(
                        "Chain verification failed for entity %s at entry %s",
                        entity_id, entry.entry_id,
                    )
                    return False
            return True

        with self._lock:
            entries = list(self._entries)

        current_hash = self._GENESIS_HASH
        for entry in entries:
            if entry.previous_hash != current_hash:
                logger.warning(
                    "Chain link broken at entry %s", entry.entry_id,
                )
                return False
            if entry.chain_hash != self._chain_hash_for(entry):
                logger.warning(
                    "Chain verification failed at entry %s", entry.entry_id,
                )
                return False
            current_hash = entry.chain_hash
        return True

    def get_all_entries(self, limit: int = 100) -> List[ProvenanceEntry]:
        """Return up to ``limit`` entries, newest first."""
        with self._lock:
            return list(reversed(self._entries))[:limit]

    def export_json(self) -> str:
        """Export all provenance records as a JSON string."""
        with self._lock:
            records = [e.model_dump(mode="json") for e in self._entries]
        return json.dumps(records, indent=2, default=str)

    @property
    def entry_count(self) -> int:
        """Return the number of provenance entries."""
        return len(self._entries)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _chain_hash_for(entry: ProvenanceEntry) -> str:
        entry_hash = compute_hash({
            "entity_type": entry.entity_type,
            "entity_id": entry.entity_id,
            "action": entry.action,
            "data_hash": entry.data_hash,
            "previous_hash": entry.previous_hash,
            "timestamp": entry.timestamp.isoformat(),
            "actor": entry.actor,
        })
        combined = f"{entry.previous_hash}:{entry_hash}"
        return hashlib.sha256(combined.encode()).hexdigest()


__all__ = [
    "ProvenanceEntry",
    "ProvenanceTracker",
    "compute_hash",
]
