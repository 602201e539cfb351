# -*- coding: utf-8 -*-
"""
Traceability Ledger Data Models

Pydantic v2 data models for the Traceability Ledger SDK. Defines all
enumerations, core records, read-side projections, saga journal records
and request wrappers required to track a crop from field plot to
harvested batch and onward to market.

Models:
    - Enumerations: TraceEventType, IdentifierStatus, TransitionState
    - Core models: GeoLocation, IdentifierRecord, TraceEvent,
        AnomalyVerdict, AnomalyAnnotation, TransitionIntent
    - Read models: ActorInfo, EnrichedTraceEvent, TraceHistory,
        PublicBatchSummary, ReconciliationReport
    - Identity: CallerIdentity
    - Request models: AppendEventRequest, InputApplicationRequest,
        ObservationRequest, HarvestRequest

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationInfo,
    field_validator,
    model_validator,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    """Return current UTC datetime."""
    return datetime.now(timezone.utc)


def _require_text(name: str, v: Optional[str]) -> Optional[str]:
    if v is not None and not v.strip():
        raise ValueError(f"{name} must be non-empty")
    return v


# =============================================================================
# Enumerations
# =============================================================================


class TraceEventType(str, Enum):
    """Lifecycle event tags recorded on the ledger.

    PLANTED, INPUT_APPLIED and OBSERVED happen on a field plot before any
    batch identifier exists. HARVESTED is the first event of every batch;
    the rest follow the batch to market.
    """

    PLANTED = "PLANTED"
    INPUT_APPLIED = "INPUT_APPLIED"
    OBSERVED = "OBSERVED"
    HARVESTED = "HARVESTED"
    TRANSPORTED = "TRANSPORTED"
    PROCESSED = "PROCESSED"
    PACKAGED = "PACKAGED"
    SHIPPED = "SHIPPED"
    RECEIVED = "RECEIVED"
    SOLD = "SOLD"
    CONSUMED = "CONSUMED"


PRE_HARVEST_EVENT_TYPES = frozenset({
    TraceEventType.PLANTED,
    TraceEventType.INPUT_APPLIED,
    TraceEventType.OBSERVED,
})


class IdentifierStatus(str, Enum):
    """Lifecycle flag of a batch identifier."""

    ACTIVE = "active"
    CONSUMED = "consumed"
    RECALLED = "recalled"
    ARCHIVED = "archived"


class TransitionState(str, Enum):
    """State of a harvest transition in the intent journal.

    pending -> identifier_created -> completed is the happy path.
    ``failed`` marks an orphaned identifier (the HARVESTED append failed),
    ``abandoned`` marks a transition that never produced an identifier.
    """

    PENDING = "pending"
    IDENTIFIER_CREATED = "identifier_created"
    COMPLETED = "completed"
    FAILED = "failed"
    ABANDONED = "abandoned"


# =============================================================================
# Core Data Models
# =============================================================================


class GeoLocation(BaseModel):
    """Coordinate pair attached to an event.

    Attributes:
        lat: Latitude in decimal degrees (WGS84).
        lng: Longitude in decimal degrees (WGS84).
    """

    model_config = ConfigDict(from_attributes=True)

    lat: float = Field(
        ...,
        ge=-90.0,
        le=90.0,
        description="Latitude in decimal degrees (WGS84)",
    )
    lng: float = Field(
        ...,
        ge=-180.0,
        le=180.0,
        description="Longitude in decimal degrees (WGS84)",
    )

    @field_validator("lat", "lng", mode="before")
    @classmethod
    def validate_numeric(cls, v: Any) -> Any:
        """Reject anything that is not an int or float (bools included)."""
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("coordinate must be numeric")
        return v


class IdentifierRecord(BaseModel):
    """A Verifiable Traceability Identifier (VTI) for a harvested batch.

    ``identifier_id``, ``identifier_type``, ``creation_time`` and
    ``metadata`` are fixed at creation. ``linked_identifiers`` only grows
    and ``status`` follows later business events.

    Attributes:
        identifier_id: Opaque random identifier.
        identifier_type: Classification tag such as ``farm_batch``.
        creation_time: Server-assigned creation timestamp.
        status: Lifecycle flag.
        linked_identifiers: Lineage edges to other identifiers.
        metadata: Free-form map; harvest batches carry ``farmFieldId``.
        derived_metrics: Aggregates computed from the batch history.
        is_public_traceable: Whether anonymous callers may look it up.
    """

    model_config = ConfigDict(from_attributes=True)

    identifier_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Opaque, globally unique batch identifier",
    )
    identifier_type: str = Field(
        ...,
        description="Classification tag (e.g. farm_batch)",
    )
    creation_time: datetime = Field(
        default_factory=_utcnow,
        description="Server-assigned creation timestamp (UTC)",
    )
    status: IdentifierStatus = Field(
        default=IdentifierStatus.ACTIVE,
        description="Lifecycle flag of the identifier",
    )
    linked_identifiers: List[str] = Field(
        default_factory=list,
        description="Lineage edges to other identifiers (append-only)",
    )
    metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Free-form metadata; harvest batches carry farmFieldId",
    )
    derived_metrics: Dict[str, float] = Field(
        default_factory=lambda: {"carbon_footprint_kgco2e": 0.0},
        description="Aggregates derived from the batch history",
    )
    is_public_traceable: bool = Field(
        default=True,
        description="Whether unauthenticated lookup is allowed",
    )

    @field_validator("identifier_type")
    @classmethod
    def validate_identifier_type(cls, v: str) -> str:
        """Validate identifier_type is non-empty."""
        if not v or not v.strip():
            raise ValueError("identifier_type must be non-empty")
        return v

    @property
    def farm_field_id(self) -> Optional[str]:
        """Originating field plot, if the batch came from a harvest."""
        value = self.metadata.get("farmFieldId")
        return str(value) if value else None


class TraceEvent(BaseModel):
    """An immutable lifecycle event on the ledger.

    Attributes:
        event_id: Unique event identifier.
        sequence: Ledger-wide append number, breaks timestamp ties.
        identifier_ref: Batch identifier; None for pre-harvest events.
        field_plot_ref: Field plot; required when identifier_ref is None.
        event_type: Lifecycle tag.
        actor_ref: Acting party or the ``system`` sentinel.
        geo_location: Optional coordinate pair.
        payload: Event-type-specific data.
        timestamp: Server-assigned write time (UTC).
        is_public_traceable: Visibility gate for anonymous readers.
        data_hash: SHA-256 of the record content at write time.
    """

    model_config = ConfigDict(from_attributes=True)

    event_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique event identifier",
    )
    sequence: int = Field(
        default=0,
        ge=0,
        description="Ledger-wide append sequence number",
    )
    identifier_ref: Optional[str] = Field(
        None,
        description="Batch identifier; null for pre-harvest events",
    )
    field_plot_ref: Optional[str] = Field(
        None,
        description="Field plot reference",
    )
    event_type: TraceEventType = Field(
        ...,
        description="Lifecycle event tag",
    )
    actor_ref: str = Field(
        ...,
        description="Reference to the acting party",
    )
    geo_location: Optional[GeoLocation] = Field(
        None,
        description="Optional coordinate pair",
    )
    payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Event-type-specific structured data",
    )
    timestamp: datetime = Field(
        default_factory=_utcnow,
        description="Server-assigned write timestamp (UTC)",
    )
    is_public_traceable: bool = Field(
        default=True,
        description="Visibility gate for anonymous readers",
    )
    data_hash: str = Field(
        default="",
        description="SHA-256 hash of the record content at write time",
    )

    @property
    def is_pre_harvest(self) -> bool:
        """True for field-plot events that predate any batch identifier."""
        return self.identifier_ref is None


class AnomalyVerdict(BaseModel):
    """Result returned by an anomaly scorer."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    is_anomaly: bool = Field(
        default=False,
        alias="isAnomaly",
        description="Whether the batch history looks irregular",
    )
    reason: Optional[str] = Field(
        None,
        description="Human-readable explanation when flagged",
    )


class AnomalyAnnotation(BaseModel):
    """Append-only anomaly verdict keyed by the triggering event.

    Stored beside the event rather than inside it, so the event itself
    stays byte-identical across reads.
    """

    model_config = ConfigDict(from_attributes=True)

    annotation_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique annotation identifier",
    )
    event_id: str = Field(
        ...,
        description="Event whose append triggered the check",
    )
    identifier_id: str = Field(
        ...,
        description="Batch identifier that was scored",
    )
    is_anomaly: bool = Field(
        default=True,
        description="Scorer verdict",
    )
    reason: Optional[str] = Field(
        None,
        description="Scorer explanation",
    )
    created_at: datetime = Field(
        default_factory=_utcnow,
        description="When the annotation was written",
    )


class TransitionIntent(BaseModel):
    """Journal record for one harvest transition.

    Written before the identifier is minted and advanced after each of
    the two writes, so that an interrupted transition can be found and
    finished by reconciliation.
    """

    model_config = ConfigDict(from_attributes=True)

    intent_id: str = Field(
        default_factory=lambda: str(uuid.uuid4()),
        description="Unique intent identifier",
    )
    field_plot_id: str = Field(..., description="Field plot being harvested")
    actor_ref: str = Field(..., description="Actor running the harvest")
    batch_type: str = Field(..., description="Identifier type to mint")
    batch_metadata: Dict[str, Any] = Field(
        default_factory=dict,
        description="Metadata written on the new identifier",
    )
    harvest_payload: Dict[str, Any] = Field(
        default_factory=dict,
        description="Payload of the HARVESTED event",
    )
    geo_location: Optional[GeoLocation] = Field(
        None,
        description="Coordinates for the HARVESTED event",
    )
    state: TransitionState = Field(
        default=TransitionState.PENDING,
        description="Current saga state",
    )
    identifier_id: Optional[str] = Field(
        None,
        description="Identifier minted by step one",
    )
    harvest_event_id: Optional[str] = Field(
        None,
        description="HARVESTED event appended by step two",
    )
    error: Optional[str] = Field(
        None,
        description="Last failure message",
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


# =============================================================================
# Read Models
# =============================================================================


class ActorInfo(BaseModel):
    """Display data for an event actor.

    Attributes:
        actor_id: Actor reference as recorded on the event.
        name: Display name, or a sentinel when unresolved.
        role: Display role, or a sentinel when unresolved.
        avatar_url: Optional avatar.
        is_resolved: False for sentinel records.
    """

    model_config = ConfigDict(from_attributes=True)

    actor_id: str = Field(..., description="Actor reference")
    name: str = Field(..., description="Display name")
    role: str = Field(..., description="Display role")
    avatar_url: Optional[str] = Field(None, description="Avatar URL")
    is_resolved: bool = Field(
        default=True,
        description="False when a sentinel stands in for the profile",
    )


class EnrichedTraceEvent(TraceEvent):
    """A ledger event joined with its actor and anomaly annotation.

    ``payload`` carries ``isAnomaly`` and ``anomalyReason`` when an
    annotation exists; the stored event is left untouched.
    """

    actor: ActorInfo = Field(..., description="Resolved actor display data")
    anomaly: Optional[AnomalyAnnotation] = Field(
        None,
        description="Latest anomaly annotation for this event",
    )


class TraceHistory(BaseModel):
    """Full provenance of one batch, oldest event first."""

    model_config = ConfigDict(from_attributes=True)

    identifier: IdentifierRecord
    events: List[EnrichedTraceEvent] = Field(default_factory=list)
    pre_harvest_count: int = Field(default=0, ge=0)
    post_harvest_count: int = Field(default=0, ge=0)


class PublicBatchSummary(BaseModel):
    """Row of the public recent-batches listing."""

    model_config = ConfigDict(from_attributes=True)

    identifier_id: str
    product_name: str
    producer_name: str
    harvest_date: datetime


class ReconciliationReport(BaseModel):
    """Outcome of one reconciliation sweep over the transition journal."""

    model_config = ConfigDict(from_attributes=True)

    examined: int = 0
    completed: int = 0
    abandoned: int = 0
    still_orphaned: int = 0
    details: List[Dict[str, Any]] = Field(default_factory=list)


# =============================================================================
# Identity
# =============================================================================


class CallerIdentity(BaseModel):
    """Authenticated caller as supplied by the external auth collaborator."""

    model_config = ConfigDict(from_attributes=True)

    user_id: str = Field(..., description="Authenticated user id")
    roles: List[str] = Field(
        default_factory=list,
        description="Roles granted to the caller",
    )

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, v: str) -> str:
        """Validate user_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("user_id must be non-empty")
        return v

    @field_validator("roles")
    @classmethod
    def normalize_roles(cls, v: List[str]) -> List[str]:
        """Lower-case roles so checks are case-insensitive."""
        return [r.strip().lower() for r in v if r and r.strip()]

    def has_any_role(self, roles: List[str]) -> bool:
        """Return True if the caller holds at least one of ``roles``."""
        wanted = {r.lower() for r in roles}
        return any(r in wanted for r in self.roles)


# =============================================================================
# Request Models
# =============================================================================


class AppendEventRequest(BaseModel):
    """Everything a producer may supply when appending an event.

    Has no timestamp field since the ledger assigns it. Extra keys are
    forbidden, so a client-supplied timestamp is rejected.
    """

    model_config = ConfigDict(extra="forbid")

    event_type: TraceEventType = Field(..., description="Lifecycle tag")
    actor_ref: str = Field(..., description="Acting party")
    identifier_ref: Optional[str] = Field(None, description="Batch identifier")
    field_plot_ref: Optional[str] = Field(None, description="Field plot")
    geo_location: Optional[GeoLocation] = Field(None, description="Coordinates")
    payload: Dict[str, Any] = Field(default_factory=dict)
    is_public_traceable: Optional[bool] = Field(
        None,
        description="Visibility; ledger default applies when omitted",
    )

    @field_validator("actor_ref")
    @classmethod
    def validate_actor_ref(cls, v: str) -> str:
        """Validate actor_ref is non-empty."""
        if not v or not v.strip():
            raise ValueError("actor_ref must be non-empty")
        return v

    @field_validator("identifier_ref", "field_plot_ref")
    @classmethod
    def validate_refs(
        cls, v: Optional[str], info: ValidationInfo,
    ) -> Optional[str]:
        """Blank references are treated as malformed, not as null."""
        return _require_text(info.field_name, v)

    @model_validator(mode="after")
    def validate_has_reference(self) -> AppendEventRequest:
        """At least one of identifier_ref / field_plot_ref must be set."""
        if self.identifier_ref is None and self.field_plot_ref is None:
            raise ValueError(
                "either identifier_ref or field_plot_ref must be set"
            )
        return self


class InputApplicationRequest(BaseModel):
    """Typed payload for an INPUT_APPLIED event (fertiliser, pesticide...).

    Attributes:
        input_id: Catalogue id of the applied input.
        quantity: Applied quantity, non-negative.
        unit: Unit of ``quantity``.
        application_date: Day the input was applied.
        method: Optional application method.
        notes: Optional free text.
    """

    model_config = ConfigDict(extra="forbid")

    input_id: str = Field(..., description="Catalogue id of the input")
    quantity: float = Field(..., ge=0.0, description="Applied quantity")
    unit: str = Field(..., description="Unit of quantity")
    application_date: date = Field(..., description="Day of application")
    method: Optional[str] = Field(None, description="Application method")
    notes: Optional[str] = Field(None, description="Free-text notes")

    @field_validator("input_id")
    @classmethod
    def validate_input_id(cls, v: str) -> str:
        """Validate input_id is non-empty."""
        if not v or not v.strip():
            raise ValueError("input_id must be non-empty")
        return v

    @field_validator("unit")
    @classmethod
    def validate_unit(cls, v: str) -> str:
        """Validate unit is non-empty."""
        if not v or not v.strip():
            raise ValueError("unit must be non-empty")
        return v

    def to_payload(self) -> Dict[str, Any]:
        """Render the ledger payload for this application."""
        payload: Dict[str, Any] = {
            "inputId": self.input_id,
            "quantity": self.quantity,
            "unit": self.unit,
            "applicationDate": self.application_date.isoformat(),
        }
        if self.method:
            payload["method"] = self.method
        if self.notes:
            payload["notes"] = self.notes
        return payload


class ObservationRequest(BaseModel):
    """Typed payload for an OBSERVED event (crop scouting, photos)."""

    model_config = ConfigDict(extra="forbid")

    observation_type: str = Field(..., description="Kind of observation")
    observation_date: date = Field(..., description="Day of observation")
    details: str = Field(default="", description="Free-text details")
    media_urls: List[str] = Field(default_factory=list)
    ai_analysis: Optional[str] = Field(
        None,
        description="Automated image analysis summary, if any",
    )

    @field_validator("observation_type")
    @classmethod
    def validate_observation_type(cls, v: str) -> str:
        """Validate observation_type is non-empty."""
        if not v or not v.strip():
            raise ValueError("observation_type must be non-empty")
        return v

    def to_payload(self) -> Dict[str, Any]:
        """Render the ledger payload for this observation."""
        return {
            "observationType": self.observation_type,
            "observationDate": self.observation_date.isoformat(),
            "details": self.details,
            "mediaUrls": list(self.media_urls),
            "aiAnalysis": self.ai_analysis or "Pending analysis",
        }


class HarvestRequest(BaseModel):
    """Typed harvest details used to build batch metadata and payload.

    Attributes:
        crop_type: Crop harvested; becomes the batch product name.
        yield_kg: Optional initial yield in kilograms.
        quality_grade: Optional initial quality grade.
        extra_metadata: Additional batch metadata.
    """

    model_config = ConfigDict(extra="forbid")

    crop_type: str = Field(..., description="Crop harvested")
    yield_kg: Optional[float] = Field(None, ge=0.0)
    quality_grade: Optional[str] = Field(None)
    extra_metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("crop_type")
    @classmethod
    def validate_crop_type(cls, v: str) -> str:
        """Validate crop_type is non-empty."""
        if not v or not v.strip():
            raise ValueError("crop_type must be non-empty")
        return v

    def to_batch_metadata(self) -> Dict[str, Any]:
        """Metadata written onto the minted identifier."""
        metadata: Dict[str, Any] = dict(self.extra_metadata)
        metadata["cropType"] = self.crop_type
        if self.yield_kg is not None:
            metadata["initialYieldKg"] = self.yield_kg
        if self.quality_grade:
            metadata["initialQualityGrade"] = self.quality_grade
        return metadata

    def to_payload(self) -> Dict[str, Any]:
        """Payload of the HARVESTED event."""
        payload: Dict[str, Any] = {"cropType": self.crop_type}
        if self.yield_kg is not None:
            payload["yieldKg"] = self.yield_kg
        if self.quality_grade:
            payload["qualityGrade"] = self.quality_grade
        return payload


__all__ = [
    # Enumerations
    "TraceEventType",
    "IdentifierStatus",
    "TransitionState",
    # Constants
    "PRE_HARVEST_EVENT_TYPES",
    # Core data models
    "GeoLocation",
    "IdentifierRecord",
    "TraceEvent",
    "AnomalyVerdict",
    "AnomalyAnnotation",
    "TransitionIntent",
    # Read models
    "ActorInfo",
    "EnrichedTraceEvent",
    "TraceHistory",
    "PublicBatchSummary",
    "ReconciliationReport",
    # Identity
    "CallerIdentity",
    # Request models
    "AppendEventRequest",
    "InputApplicationRequest",
    "ObservationRequest",
    "HarvestRequest",
]
