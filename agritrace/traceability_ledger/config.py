# -*- coding: utf-8 -*-
"""
Traceability Ledger Service Configuration

Centralized configuration for the Traceability Ledger SDK covering:
- Storage: backend selection (memory / sql) and database URL
- Identifiers: default batch type, id generation attempt budget, visibility
- Events: default public-traceability flag
- Actor resolution: profile lookup chunk size
- History: parallel fetch workers, recent batch listing limits
- Anomaly hook: enable flag, worker count, remote scorer URL and timeout
- Harvest transitions: roles allowed to mint batch identifiers
- Auth: JWT secret and algorithm for the HTTP layer
- Provenance toggle and logging level

All settings can be overridden via environment variables with the
``AGRITRACE_LEDGER_`` prefix (e.g. ``AGRITRACE_LEDGER_ACTOR_LOOKUP_CHUNK_SIZE``).

Example:
    >>> from agritrace.traceability_ledger.config import get_config
    >>> cfg = get_config()
    >>> print(cfg.storage_backend, cfg.actor_lookup_chunk_size)

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, List, Optional

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Environment variable prefix
# ---------------------------------------------------------------------------

_ENV_PREFIX = "AGRITRACE_LEDGER_"


# ---------------------------------------------------------------------------
# TraceabilityLedgerConfig
# ---------------------------------------------------------------------------


@dataclass
class TraceabilityLedgerConfig:
    """Complete configuration for the AgriTrace Traceability Ledger SDK.

    All attributes can be overridden via environment variables using the
    ``AGRITRACE_LEDGER_`` prefix.

    Attributes:
        storage_backend: ``memory`` for in-process stores, ``sql`` for SQLAlchemy.
        database_url: SQLAlchemy URL used when storage_backend is ``sql``.
        default_batch_type: Identifier type minted by harvest transitions.
        id_generation_max_attempts: Fresh ids drawn before giving up on collisions.
        identifiers_public_by_default: Default isPublicTraceable for identifiers.
        events_public_by_default: Default isPublicTraceable for events.
        actor_lookup_chunk_size: Max actor ids per profile store lookup.
        history_fetch_workers: Threads used to fetch pre/post-harvest events.
        recent_batches_default_limit: Default size of the public batch listing.
        recent_batches_max_limit: Upper bound on the public batch listing.
        anomaly_hook_enabled: Whether post-harvest appends trigger scoring.
        anomaly_worker_count: Threads running anomaly checks.
        anomaly_scorer_url: Remote scorer endpoint; empty disables remote scoring.
        anomaly_scorer_timeout_seconds: Timeout for remote scorer calls.
        reconcile_min_age_seconds: Default age an in-flight transition intent
            must reach before a reconciliation sweep touches it.
        harvest_allowed_roles: Comma-separated roles allowed to run transitions.
        input_allowed_roles: Comma-separated roles allowed to log input
            applications.
        reconcile_allowed_roles: Comma-separated roles allowed to reconcile.
        jwt_secret: Secret used to verify bearer tokens.
        jwt_algorithm: JWT signing algorithm.
        enable_provenance: Whether to record SHA-256 provenance entries.
        log_level: Logging level for the ledger package.
    """

    # -- Storage -------------------------------------------------------------
    storage_backend: str = "memory"
    database_url: str = "sqlite://"

    # -- Identifiers ---------------------------------------------------------
    default_batch_type: str = "farm_batch"
    id_generation_max_attempts: int = 5
    identifiers_public_by_default: bool = True

    # -- Events --------------------------------------------------------------
    events_public_by_default: bool = True

    # -- Actor resolution ----------------------------------------------------
    actor_lookup_chunk_size: int = 30

    # -- History -------------------------------------------------------------
    history_fetch_workers: int = 2
    recent_batches_default_limit: int = 10
    recent_batches_max_limit: int = 100

    # -- Anomaly hook --------------------------------------------------------
    anomaly_hook_enabled: bool = True
    anomaly_worker_count: int = 2
    anomaly_scorer_url: str = ""
    anomaly_scorer_timeout_seconds: float = 10.0

    # -- Harvest transitions -------------------------------------------------
    reconcile_min_age_seconds: float = 300.0

    # -- Roles ---------------------------------------------------------------
    harvest_allowed_roles: str = "farmer,admin,system"
    input_allowed_roles: str = "farmer,admin,system"
    reconcile_allowed_roles: str = "admin,system"

    # -- Auth ----------------------------------------------------------------
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"

    # -- Provenance ----------------------------------------------------------
    enable_provenance: bool = True

    # -- Logging -------------------------------------------------------------
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _split_roles(raw: str) -> List[str]:
        return [r.strip().lower() for r in raw.split(",") if r.strip()]

    @property
    def harvest_roles(self) -> List[str]:
        """Roles allowed to run a harvest transition, lower-cased."""
        return self._split_roles(self.harvest_allowed_roles)

    @property
    def input_roles(self) -> List[str]:
        """Roles allowed to log input applications, lower-cased."""
        return self._split_roles(self.input_allowed_roles)

    @property
    def reconcile_roles(self) -> List[str]:
        """Roles allowed to run the reconciliation sweep, lower-cased."""
        return self._split_roles(self.reconcile_allowed_roles)

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_env(cls) -> TraceabilityLedgerConfig:
        """Build a TraceabilityLedgerConfig from environment variables.

        Every field can be overridden via ``AGRITRACE_LEDGER_<FIELD_UPPER>``.
        Boolean values accept ``true/1/yes`` (case-insensitive).
        Integer values are parsed via ``int()``.
        Float values are parsed via ``float()``.

        Returns:
            Populated TraceabilityLedgerConfig instance.
        """
        prefix = _ENV_PREFIX

        def _env(name: str, default: Any = None) -> Optional[str]:
            return os.environ.get(f"{prefix}{name}", default)

        def _bool(name: str, default: bool) -> bool:
            val = _env(name)
            if val is None:
                return default
            return val.lower() in ("true", "1", "yes")

        def _int(name: str, default: int) -> int:
            val = _env(name)
            if val is None:
                return default
            try:
                return int(val)
            except ValueError:
                logger.warning(
                    "Invalid integer for %s%s=%s, using default %d",
                    prefix, name, val, default,
                )
                return default

        def _float(name: str, default: float) -> float:
            val = _env(name)
            if val is None:
                return default
            try:
                return float(val)
            except ValueError:
                logger.warning(
                    "Invalid float for %s%s=%s, using default %f",
                    prefix, name, val, default,
                )
                return default

        def _str(name: str, default: str) -> str:
            val = _env(name)
            if val is None:
                return default
            return val

        config = cls(
            storage_backend=_str("STORAGE_BACKEND", cls.storage_backend),
            database_url=_str("DATABASE_URL", cls.database_url),
            default_batch_type=_str(
                "DEFAULT_BATCH_TYPE", cls.default_batch_type,
            ),
            id_generation_max_attempts=_int(
                "ID_GENERATION_MAX_ATTEMPTS", cls.id_generation_max_attempts,
            ),
            identifiers_public_by_default=_bool(
                "IDENTIFIERS_PUBLIC_BY_DEFAULT",
                cls.identifiers_public_by_default,
            ),
            events_public_by_default=_bool(
                "EVENTS_PUBLIC_BY_DEFAULT", cls.events_public_by_default,
            ),
            actor_lookup_chunk_size=_int(
                "ACTOR_LOOKUP_CHUNK_SIZE", cls.actor_lookup_chunk_size,
            ),
            history_fetch_workers=_int(
                "HISTORY_FETCH_WORKERS", cls.history_fetch_workers,
            ),
            recent_batches_default_limit=_int(
                "RECENT_BATCHES_DEFAULT_LIMIT",
                cls.recent_batches_default_limit,
            ),
            recent_batches_max_limit=_int(
                "RECENT_BATCHES_MAX_LIMIT", cls.recent_batches_max_limit,
            ),
            anomaly_hook_enabled=_bool(
                "ANOMALY_HOOK_ENABLED", cls.anomaly_hook_enabled,
            ),
            anomaly_worker_count=_int(
                "ANOMALY_WORKER_COUNT", cls.anomaly_worker_count,
            ),
            anomaly_scorer_url=_str(
                "ANOMALY_SCORER_URL", cls.anomaly_scorer_url,
            ),
            anomaly_scorer_timeout_seconds=_float(
                "ANOMALY_SCORER_TIMEOUT_SECONDS",
                cls.anomaly_scorer_timeout_seconds,
            ),
            reconcile_min_age_seconds=_float(
                "RECONCILE_MIN_AGE_SECONDS", cls.reconcile_min_age_seconds,
            ),
            harvest_allowed_roles=_str(
                "HARVEST_ALLOWED_ROLES", cls.harvest_allowed_roles,
            ),
            input_allowed_roles=_str(
                "INPUT_ALLOWED_ROLES", cls.input_allowed_roles,
            ),
            reconcile_allowed_roles=_str(
                "RECONCILE_ALLOWED_ROLES", cls.reconcile_allowed_roles,
            ),
            jwt_secret=_str("JWT_SECRET", cls.jwt_secret),
            jwt_algorithm=_str("JWT_ALGORITHM", cls.jwt_algorithm),
            enable_provenance=_bool(
                "ENABLE_PROVENANCE", cls.enable_provenance,
            ),
            log_level=_str("LOG_LEVEL", cls.log_level),
        )

        logger.info(
            "TraceabilityLedgerConfig loaded: backend=%s, batch_type=%s, "
            "id_attempts=%d, actor_chunk=%d, history_workers=%d, "
            "anomaly_hook=%s, anomaly_workers=%d, remote_scorer=%s, "
            "provenance=%s",
            config.storage_backend,
            config.default_batch_type,
            config.id_generation_max_attempts,
            config.actor_lookup_chunk_size,
            config.history_fetch_workers,
            config.anomaly_hook_enabled,
            config.anomaly_worker_count,
            bool(config.anomaly_scorer_url),
            config.enable_provenance,
        )
        return config


# ---------------------------------------------------------------------------
# Thread-safe singleton accessor
# ---------------------------------------------------------------------------

_config_instance: Optional[TraceabilityLedgerConfig] = None
_config_lock = threading.Lock()


def get_config() -> TraceabilityLedgerConfig:
    """Return the singleton TraceabilityLedgerConfig, creating from env if needed.

    Returns:
        TraceabilityLedgerConfig singleton instance.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = TraceabilityLedgerConfig.from_env()
    return _config_instance


def set_config(config: TraceabilityLedgerConfig) -> None:
    """Replace the singleton TraceabilityLedgerConfig (useful for testing).

    Args:
        config: New configuration to install.
    """
    global _config_instance
    with _config_lock:
        _config_instance = config
    logger.info("TraceabilityLedgerConfig replaced programmatically")


def reset_config() -> None:
    """Reset the singleton (primarily for test teardown)."""
    global _config_instance
    with _config_lock:
        _config_instance = None


__all__ = [
    "TraceabilityLedgerConfig",
    "get_config",
    "set_config",
    "reset_config",
]
