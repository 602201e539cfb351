# -*- coding: utf-8 -*-
"""
Actor Resolution Helper - Traceability Ledger

Batched lookup of display data (name, role, avatar) for event actors.
The external profile store accepts a bounded number of keys per lookup,
so the helper splits the distinct actor ids into chunks, issues one
lookup per chunk and merges the results.

Resolution never fails the caller:
    - ids with no profile resolve to "Unknown Actor" / "Unknown Role"
    - the ``system`` sentinel and empty refs resolve to "System" / "Platform"
    - a chunk whose lookup raises resolves every id in it to the unknown
      sentinel and logs a warning

Example:
    >>> store = InMemoryProfileStore({"u1": {"displayName": "Amina"}})
    >>> helper = ActorResolutionHelper(store)
    >>> helper.resolve(["u1", "ghost"])["ghost"].name
    'Unknown Actor'

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Mapping, Optional

from agritrace.traceability_ledger.metrics import (
    record_actor_lookup,
    record_unknown_actors,
)
from agritrace.traceability_ledger.models import ActorInfo

logger = logging.getLogger(__name__)

SYSTEM_ACTOR_REF = "system"

UNKNOWN_ACTOR_NAME = "Unknown Actor"
UNKNOWN_ACTOR_ROLE = "Unknown Role"
SYSTEM_ACTOR_NAME = "System"
SYSTEM_ACTOR_ROLE = "Platform"


def unknown_actor(actor_id: str) -> ActorInfo:
    """Sentinel for an actor without a profile."""
    return ActorInfo(
        actor_id=actor_id,
        name=UNKNOWN_ACTOR_NAME,
        role=UNKNOWN_ACTOR_ROLE,
        is_resolved=False,
    )


def system_actor(actor_id: str = SYSTEM_ACTOR_REF) -> ActorInfo:
    """Sentinel for platform-initiated events."""
    return ActorInfo(
        actor_id=actor_id,
        name=SYSTEM_ACTOR_NAME,
        role=SYSTEM_ACTOR_ROLE,
        is_resolved=False,
    )


# ==============================================================================
# Profile stores
# ==============================================================================


class ProfileStore(ABC):
    """Read-only view of the external user profile store."""

    #: Largest number of ids accepted by one ``get_many`` call.
    max_batch_size: int = 30

    @abstractmethod
    def get_many(self, actor_ids: List[str]) -> Dict[str, Mapping[str, Any]]:
        """
        Look up profiles for up to ``max_batch_size`` actor ids.

        Args:
            actor_ids: Actor ids to look up.

        Returns:
            Mapping of found actor id -> profile fields
            (``displayName``, ``primaryRole``, ``avatarUrl``). Ids without
            a profile are simply absent.
        """


class InMemoryProfileStore(ProfileStore):
    """Dict-backed profile store that enforces the batch bound."""

    def __init__(
        self,
        profiles: Optional[Mapping[str, Mapping[str, Any]]] = None,
        max_batch_size: int = 30,
    ) -> None:
        self._profiles: Dict[str, Dict[str, Any]] = {
            k: dict(v) for k, v in (profiles or {}).items()
        }
        self.max_batch_size = max_batch_size
        self.lookup_calls: List[List[str]] = []
        self._lock = threading.Lock()

    def add_profile(
        self,
        actor_id: str,
        display_name: str,
        primary_role: str,
        avatar_url: Optional[str] = None,
    ) -> None:
        """Add or replace one profile."""
        with self._lock:
            self._profiles[actor_id] = {
                "displayName": display_name,
                "primaryRole": primary_role,
                "avatarUrl": avatar_url,
            }

    def get_many(self, actor_ids: List[str]) -> Dict[str, Mapping[str, Any]]:
        if len(actor_ids) > self.max_batch_size:
            raise ValueError(
                f"Profile lookup accepts at most {self.max_batch_size} ids, "
                f"got {len(actor_ids)}"
            )
        with self._lock:
            self.lookup_calls.append(list(actor_ids))
            return {
                aid: dict(self._profiles[aid])
                for aid in actor_ids if aid in self._profiles
            }


# ==============================================================================
# ActorResolutionHelper
# ==============================================================================


class ActorResolutionHelper:
    """Chunked actor display-data resolver.

    Attributes:
        _profile_store: External profile store.
        _chunk_size: Ids per lookup, capped by the store's bound.
    """

    def __init__(
        self,
        profile_store: Optional[ProfileStore] = None,
        config: Any = None,
    ) -> None:
        """Initialize ActorResolutionHelper.

        Args:
            profile_store: Profile store; an empty in-memory store when None,
                so every actor resolves to a sentinel.
            config: Optional TraceabilityLedgerConfig.
        """
        self._profile_store = (
            profile_store if profile_store is not None
            else InMemoryProfileStore()
        )
        chunk = getattr(config, "actor_lookup_chunk_size", 30)
        store_bound = getattr(self._profile_store, "max_batch_size", chunk)
        self._chunk_size = max(1, min(chunk, store_bound))
        logger.info(
            "ActorResolutionHelper initialized: chunk_size=%d",
            self._chunk_size,
        )

    @property
    def chunk_size(self) -> int:
        """Ids sent per profile lookup."""
        return self._chunk_size

    def resolve(self, actor_ids: Iterable[Optional[str]]) -> Dict[str, ActorInfo]:
        """Resolve display data for a set of actor ids.

        Args:
            actor_ids: Actor refs; duplicates and order do not matter.

        Returns:
            Mapping of every distinct input ref -> ActorInfo.
        """
        result: Dict[str, ActorInfo] = {}
        to_lookup: List[str] = []
        seen = set()

        for actor_id in actor_ids:
            key = actor_id or ""
            if key in seen:
                continue
            seen.add(key)
            if not key.strip() or key.strip().lower() == SYSTEM_ACTOR_REF:
                result[key] = system_actor(key)
            else:
                to_lookup.append(key)

        unknown = 0
        for chunk in self._chunks(to_lookup):
            try:
                profiles = self._profile_store.get_many(chunk)
                record_actor_lookup("success")
            except Exception as exc:
                record_actor_lookup("failure")
                logger.warning(
                    "Profile lookup failed for %d actors, using sentinels: %s",
                    len(chunk), exc,
                )
                profiles = {}

            for actor_id in chunk:
                profile = profiles.get(actor_id)
                if profile is None:
                    result[actor_id] = unknown_actor(actor_id)
                    unknown += 1
                else:
                    result[actor_id] = self._to_actor_info(actor_id, profile)

        record_unknown_actors(unknown)
        if unknown:
            logger.warning(
                "%d of %d actors resolved to the unknown sentinel",
                unknown, len(to_lookup),
            )
        return result

    def resolve_one(self, actor_id: Optional[str]) -> ActorInfo:
        """Resolve a single actor ref."""
        return self.resolve([actor_id])[actor_id or ""]

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _chunks(self, ids: List[str]) -> Iterable[List[str]]:
        for start in range(0, len(ids), self._chunk_size):
            yield ids[start:start + self._chunk_size]

    @staticmethod
    def _to_actor_info(actor_id: str, profile: Mapping[str, Any]) -> ActorInfo:
        return ActorInfo(
            actor_id=actor_id,
            name=profile.get("displayName") or UNKNOWN_ACTOR_NAME,
            role=profile.get("primaryRole") or UNKNOWN_ACTOR_ROLE,
            avatar_url=profile.get("avatarUrl"),
            is_resolved=True,
        )


__all__ = [
    "SYSTEM_ACTOR_REF",
    "UNKNOWN_ACTOR_NAME",
    "UNKNOWN_ACTOR_ROLE",
    "SYSTEM_ACTOR_NAME",
    "SYSTEM_ACTOR_ROLE",
    "ProfileStore",
    "InMemoryProfileStore",
    "ActorResolutionHelper",
    "unknown_actor",
    "system_actor",
]
