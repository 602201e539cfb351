# -*- coding: utf-8 -*-
"""
Traceability Ledger REST API Router

Exposes the ledger operations at prefix ``/api/v1/traceability``:

    POST /identifiers                          create standalone identifier
    GET  /identifiers/{vti_id}                 identifier record (public)
    POST /identifiers/{vti_id}/links           add lineage edge
    POST /field-plots/{field_plot_id}/events   pre-harvest event
    POST /field-plots/{field_plot_id}/inputs   input application
    POST /field-plots/{field_plot_id}/observations  crop observation
    GET  /field-plots/{field_plot_id}/events   field plot events
    POST /field-plots/{field_plot_id}/harvest  harvest transition
    POST /batches/{vti_id}/events              post-harvest event
    GET  /batches/{vti_id}/history             batch history (public)
    GET  /batches/recent                       recent public batches (public)
    POST /transitions/reconcile                reconcile interrupted harvests
    GET  /statistics                           service statistics
    GET  /health                               liveness

Ledger errors map to 400 (validation), 401, 403, 404, 409 (lineage
cycle), 500 (partial failure, body carries the orphaned identifier id),
502 (downstream) and 503 (identifier collision).

Author: AgriTrace Platform Team
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, ConfigDict, Field

from agritrace.exceptions import (
    AuthenticationError,
    AuthorizationError,
    DownstreamFailureError,
    IdentifierCollisionError,
    LineageCycleError,
    NotFoundError,
    PartialFailureError,
    TraceabilityException,
    ValidationError,
)
from agritrace.traceability_ledger.api.dependencies import (
    get_current_caller,
    get_optional_caller,
    get_service,
)
from agritrace.traceability_ledger.models import (
    CallerIdentity,
    EnrichedTraceEvent,
    GeoLocation,
    HarvestRequest,
    IdentifierRecord,
    InputApplicationRequest,
    ObservationRequest,
    PublicBatchSummary,
    ReconciliationReport,
    TraceEvent,
    TraceHistory,
)
from agritrace.traceability_ledger.setup import TraceabilityLedgerService

logger = logging.getLogger(__name__)


# =============================================================================
# Request bodies
# =============================================================================


class CreateIdentifierBody(BaseModel):
    """Body of POST /identifiers."""

    model_config = ConfigDict(extra="forbid")

    identifier_type: Optional[str] = None
    linked_identifiers: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)
    is_public_traceable: Optional[bool] = None


class LinkIdentifierBody(BaseModel):
    """Body of POST /identifiers/{vti_id}/links."""

    model_config = ConfigDict(extra="forbid")

    target_id: str


class EventBody(BaseModel):
    """Body of the pre- and post-harvest event routes."""

    model_config = ConfigDict(extra="forbid")

    event_type: str
    actor_ref: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    geo_location: Optional[GeoLocation] = None
    is_public_traceable: Optional[bool] = None


class HarvestTransitionBody(BaseModel):
    """Body of POST /field-plots/{field_plot_id}/harvest."""

    model_config = ConfigDict(extra="forbid")

    harvest: Optional[HarvestRequest] = None
    harvest_payload: Dict[str, Any] = Field(default_factory=dict)
    batch_metadata: Dict[str, Any] = Field(default_factory=dict)
    actor_ref: Optional[str] = None
    geo_location: Optional[GeoLocation] = None
    batch_type: Optional[str] = None
    is_public_traceable: Optional[bool] = None


class HarvestTransitionResponse(BaseModel):
    """Identifier minted by a harvest transition."""

    vti_id: str


class ReconcileBody(BaseModel):
    """Body of POST /transitions/reconcile."""

    model_config = ConfigDict(extra="forbid")

    complete_orphans: bool = True
    min_age_seconds: Optional[float] = Field(default=None, ge=0.0)


# =============================================================================
# Error mapping
# =============================================================================

_STATUS_BY_ERROR = (
    (AuthenticationError, status.HTTP_401_UNAUTHORIZED),
    (AuthorizationError, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (LineageCycleError, status.HTTP_409_CONFLICT),
    (IdentifierCollisionError, status.HTTP_503_SERVICE_UNAVAILABLE),
    (DownstreamFailureError, status.HTTP_502_BAD_GATEWAY),
    (PartialFailureError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def _http_error(exc: TraceabilityException) -> HTTPException:
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            status_code = code
            break

    detail: Dict[str, Any] = {
        "error_code": exc.error_code,
        "message": exc.message,
        "context": exc.context,
    }
    if isinstance(exc, PartialFailureError):
        detail["identifier_id"] = exc.identifier_id

    headers = None
    if status_code == status.HTTP_401_UNAUTHORIZED:
        headers = {"WWW-Authenticate": "Bearer"}
    return HTTPException(status_code=status_code, detail=detail, headers=headers)


def _geo(value: Optional[GeoLocation]) -> Optional[Dict[str, float]]:
    return value.model_dump() if value is not None else None


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(
    prefix="/api/v1/traceability",
    tags=["traceability-ledger"],
)


@router.post(
    "/identifiers",
    response_model=IdentifierRecord,
    status_code=status.HTTP_201_CREATED,
)
def post_create_identifier(
    body: CreateIdentifierBody,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> IdentifierRecord:
    """Mint a standalone identifier, e.g. for a split or merged batch."""
    try:
        return service.create_identifier(
            caller,
            identifier_type=body.identifier_type,
            linked_identifiers=body.linked_identifiers,
            metadata=body.metadata,
            is_public_traceable=body.is_public_traceable,
        )
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.get("/identifiers/{vti_id}", response_model=IdentifierRecord)
def get_identifier(
    vti_id: str,
    caller: Optional[CallerIdentity] = Depends(get_optional_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> IdentifierRecord:
    """Fetch an identifier record."""
    try:
        return service.get_identifier(vti_id, caller=caller)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post("/identifiers/{vti_id}/links", response_model=IdentifierRecord)
def post_link_identifier(
    vti_id: str,
    body: LinkIdentifierBody,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> IdentifierRecord:
    """Record that ``vti_id`` derives from ``body.target_id``."""
    try:
        return service.link_identifiers(caller, vti_id, body.target_id)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post(
    "/field-plots/{field_plot_id}/events",
    response_model=TraceEvent,
    status_code=status.HTTP_201_CREATED,
)
def post_pre_harvest_event(
    field_plot_id: str,
    body: EventBody,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> TraceEvent:
    """Log a PLANTED, INPUT_APPLIED or OBSERVED event on a field plot."""
    try:
        return service.log_pre_harvest_event(
            caller,
            field_plot_id,
            body.event_type,
            actor_ref=body.actor_ref,
            payload=body.payload,
            geo_location=_geo(body.geo_location),
            is_public_traceable=body.is_public_traceable,
        )
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post(
    "/field-plots/{field_plot_id}/inputs",
    response_model=TraceEvent,
    status_code=status.HTTP_201_CREATED,
)
def post_input_application(
    field_plot_id: str,
    body: InputApplicationRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> TraceEvent:
    """Log a fertiliser or pesticide application."""
    try:
        return service.log_input_application(caller, field_plot_id, body)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post(
    "/field-plots/{field_plot_id}/observations",
    response_model=TraceEvent,
    status_code=status.HTTP_201_CREATED,
)
def post_observation(
    field_plot_id: str,
    body: ObservationRequest,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> TraceEvent:
    """Log a crop observation."""
    try:
        return service.log_observation(caller, field_plot_id, body)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.get(
    "/field-plots/{field_plot_id}/events",
    response_model=List[EnrichedTraceEvent],
)
def get_field_plot_events(
    field_plot_id: str,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> List[EnrichedTraceEvent]:
    """Every event recorded on a field plot, oldest first."""
    try:
        return service.list_field_plot_events(caller, field_plot_id)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post(
    "/field-plots/{field_plot_id}/harvest",
    response_model=HarvestTransitionResponse,
    status_code=status.HTTP_201_CREATED,
)
def post_harvest_transition(
    field_plot_id: str,
    body: HarvestTransitionBody,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> HarvestTransitionResponse:
    """Turn a field plot's harvest into a new batch identifier."""
    try:
        vti_id = service.transition_to_vti(
            caller,
            field_plot_id,
            harvest_payload=body.harvest_payload,
            actor_ref=body.actor_ref,
            geo_location=_geo(body.geo_location),
            batch_metadata=body.batch_metadata,
            harvest=body.harvest,
            batch_type=body.batch_type,
            is_public_traceable=body.is_public_traceable,
        )
    except TraceabilityException as exc:
        raise _http_error(exc) from exc
    return HarvestTransitionResponse(vti_id=vti_id)


@router.post(
    "/batches/{vti_id}/events",
    response_model=TraceEvent,
    status_code=status.HTTP_201_CREATED,
)
def post_post_harvest_event(
    vti_id: str,
    body: EventBody,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> TraceEvent:
    """Log a transport, processing, sale or other post-harvest event."""
    try:
        return service.log_post_harvest_event(
            caller,
            vti_id,
            body.event_type,
            actor_ref=body.actor_ref,
            payload=body.payload,
            geo_location=_geo(body.geo_location),
            is_public_traceable=body.is_public_traceable,
        )
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.get("/batches/recent", response_model=List[PublicBatchSummary])
def get_recent_batches(
    limit: Optional[int] = Query(default=None),
    service: TraceabilityLedgerService = Depends(get_service),
) -> List[PublicBatchSummary]:
    """Newest public batches for the consumer-facing feed."""
    return service.list_recent_public_batches(limit)


@router.get("/batches/{vti_id}/history", response_model=TraceHistory)
def get_batch_history(
    vti_id: str,
    caller: Optional[CallerIdentity] = Depends(get_optional_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> TraceHistory:
    """Full field-to-market history of a batch."""
    try:
        return service.get_history(vti_id, caller=caller)
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.post("/transitions/reconcile", response_model=ReconciliationReport)
def post_reconcile(
    body: Optional[ReconcileBody] = None,
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> ReconciliationReport:
    """Finish or close interrupted harvest transitions."""
    body = body or ReconcileBody()
    try:
        return service.reconcile_transitions(
            caller,
            complete_orphans=body.complete_orphans,
            min_age_seconds=body.min_age_seconds,
        )
    except TraceabilityException as exc:
        raise _http_error(exc) from exc


@router.get("/statistics")
def get_statistics(
    caller: CallerIdentity = Depends(get_current_caller),
    service: TraceabilityLedgerService = Depends(get_service),
) -> Dict[str, Any]:
    """Aggregate counters across the ledger engines."""
    return service.get_statistics()


@router.get("/health")
def get_health() -> Dict[str, str]:
    """Liveness check."""
    return {"status": "healthy", "service": "traceability-ledger"}


__all__ = [
    "router",
    "CreateIdentifierBody",
    "LinkIdentifierBody",
    "EventBody",
    "HarvestTransitionBody",
    "HarvestTransitionResponse",
    "ReconcileBody",
]
