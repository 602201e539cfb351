# -*- coding: utf-8 -*-
"""
SQLAlchemy-backed Traceability Ledger Stores

Relational implementations of the ledger store interfaces. Each store
write runs in its own committed transaction, which gives the
single-record write atomicity the ledger relies on; no write spans two
collections.

Tables:
    - ledger_identifiers
    - ledger_events
    - ledger_anomaly_annotations
    - ledger_transition_intents

Example:
    >>> from agritrace.traceability_ledger.sql_stores import LedgerDatabase
    >>> db = LedgerDatabase("sqlite://")
    >>> db.create_all()
    >>> stores = db.build_stores()

Author: AgriTrace Platform Team
Status: Production Ready
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, Iterable, List, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from agritrace.traceability_ledger.models import (
    AnomalyAnnotation,
    GeoLocation,
    IdentifierRecord,
    IdentifierStatus,
    TraceEvent,
    TraceEventType,
    TransitionIntent,
    TransitionState,
    _utcnow,
)
from agritrace.traceability_ledger.stores import (
    AnnotationStore,
    EventStore,
    IdentifierStore,
    TransitionJournal,
)

logger = logging.getLogger(__name__)

LedgerBase = declarative_base()


def _to_db_time(value: datetime) -> datetime:
    """Store timestamps as naive UTC so every backend sorts them alike."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ==============================================================================
# Table models
# ==============================================================================


class IdentifierRow(LedgerBase):
    """Batch identifier row."""

    __tablename__ = "ledger_identifiers"

    identifier_id = Column(String(64), primary_key=True)
    identifier_type = Column(String(64), nullable=False, index=True)
    creation_time = Column(DateTime, nullable=False, index=True)
    status = Column(String(32), nullable=False)
    linked_identifiers = Column(JSON, nullable=False, default=list)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    derived_metrics = Column(JSON, nullable=False, default=dict)
    is_public_traceable = Column(Boolean, nullable=False, default=True)


class EventRow(LedgerBase):
    """Ledger event row; ``sequence`` doubles as the append order."""

    __tablename__ = "ledger_events"
    __table_args__ = (
        # One HARVESTED event per identifier.
        Index(
            "uq_ledger_events_first_harvest",
            "identifier_ref",
            unique=True,
            sqlite_where=text("event_type = 'HARVESTED'"),
            postgresql_where=text("event_type = 'HARVESTED'"),
        ),
    )

    sequence = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(64), nullable=False, unique=True)
    identifier_ref = Column(String(64), nullable=True, index=True)
    field_plot_ref = Column(String(128), nullable=True, index=True)
    event_type = Column(String(32), nullable=False)
    actor_ref = Column(String(128), nullable=False)
    geo_lat = Column(Float, nullable=True)
    geo_lng = Column(Float, nullable=True)
    payload = Column(JSON, nullable=False, default=dict)
    timestamp = Column(DateTime, nullable=False, index=True)
    is_public_traceable = Column(Boolean, nullable=False, default=True)
    data_hash = Column(String(64), nullable=False)


class AnnotationRow(LedgerBase):
    """Anomaly annotation row."""

    __tablename__ = "ledger_anomaly_annotations"

    annotation_id = Column(String(64), primary_key=True)
    event_id = Column(String(64), nullable=False, index=True)
    identifier_id = Column(String(64), nullable=False, index=True)
    is_anomaly = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)


class TransitionIntentRow(LedgerBase):
    """Harvest transition journal row."""

    __tablename__ = "ledger_transition_intents"

    intent_id = Column(String(64), primary_key=True)
    field_plot_id = Column(String(128), nullable=False)
    actor_ref = Column(String(128), nullable=False)
    batch_type = Column(String(64), nullable=False)
    batch_metadata = Column(JSON, nullable=False, default=dict)
    harvest_payload = Column(JSON, nullable=False, default=dict)
    geo_location = Column(JSON, nullable=True)
    state = Column(String(32), nullable=False, index=True)
    identifier_id = Column(String(64), nullable=True)
    harvest_event_id = Column(String(64), nullable=True)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


# ==============================================================================
# Database handle
# ==============================================================================


class LedgerDatabase:
    """Engine and session factory for one ledger database.

    In-memory SQLite shares a single connection across threads, so
    sessions against it are serialized with a lock.
    """

    def __init__(self, database_url: str = "sqlite://", echo: bool = False):
        """Initialize LedgerDatabase.

        Args:
            database_url: SQLAlchemy database URL.
            echo: Log emitted SQL.
        """
        self.database_url = database_url
        engine_config: Dict[str, Any] = {"echo": echo}
        self._serialize = database_url.startswith("sqlite")
        if self._serialize:
            engine_config["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                engine_config["poolclass"] = StaticPool
        self.engine: Engine = create_engine(database_url, **engine_config)
        self._session_factory = sessionmaker(
            autocommit=False, autoflush=False, bind=self.engine,
            expire_on_commit=False,
        )
        self._lock = threading.RLock()
        logger.info("LedgerDatabase initialized: %s", self.engine.url.drivername)

    def create_all(self) -> None:
        """Create the ledger tables if they do not exist."""
        LedgerBase.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop the ledger tables."""
        LedgerBase.metadata.drop_all(bind=self.engine)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Transactional session: commit on success, roll back on error."""
        if self._serialize:
            self._lock.acquire()
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
            if self._serialize:
                self._lock.release()

    def build_stores(self) -> Dict[str, Any]:
        """Build one store of each kind bound to this database."""
        return {
            "identifier_store": SqlIdentifierStore(self),
            "event_store": SqlEventStore(self),
            "annotation_store": SqlAnnotationStore(self),
            "transition_journal": SqlTransitionJournal(self),
        }

    def dispose(self) -> None:
        """Release pooled connections."""
        self.engine.dispose()


# ==============================================================================
# Row <-> model conversion
# ==============================================================================


def _identifier_from_row(row: IdentifierRow) -> IdentifierRecord:
    return IdentifierRecord(
        identifier_id=row.identifier_id,
        identifier_type=row.identifier_type,
        creation_time=_from_db_time(row.creation_time),
        status=IdentifierStatus(row.status),
        linked_identifiers=list(row.linked_identifiers or []),
        metadata=dict(row.metadata_ or {}),
        derived_metrics=dict(row.derived_metrics or {}),
        is_public_traceable=row.is_public_traceable,
    )


def _event_from_row(row: EventRow) -> TraceEvent:
    geo = None
    if row.geo_lat is not None and row.geo_lng is not None:
        geo = GeoLocation(lat=row.geo_lat, lng=row.geo_lng)
    return TraceEvent(
        event_id=row.event_id,
        sequence=row.sequence,
        identifier_ref=row.identifier_ref,
        field_plot_ref=row.field_plot_ref,
        event_type=TraceEventType(row.event_type),
        actor_ref=row.actor_ref,
        geo_location=geo,
        payload=dict(row.payload or {}),
        timestamp=_from_db_time(row.timestamp),
        is_public_traceable=row.is_public_traceable,
        data_hash=row.data_hash,
    )


def _annotation_from_row(row: AnnotationRow) -> AnomalyAnnotation:
    return AnomalyAnnotation(
        annotation_id=row.annotation_id,
        event_id=row.event_id,
        identifier_id=row.identifier_id,
        is_anomaly=row.is_anomaly,
        reason=row.reason,
        created_at=_from_db_time(row.created_at),
    )


def _intent_from_row(row: TransitionIntentRow) -> TransitionIntent:
    return TransitionIntent(
        intent_id=row.intent_id,
        field_plot_id=row.field_plot_id,
        actor_ref=row.actor_ref,
        batch_type=row.batch_type,
        batch_metadata=dict(row.batch_metadata or {}),
        harvest_payload=dict(row.harvest_payload or {}),
        geo_location=row.geo_location,
        state=TransitionState(row.state),
        identifier_id=row.identifier_id,
        harvest_event_id=row.harvest_event_id,
        error=row.error,
        created_at=_from_db_time(row.created_at),
        updated_at=_from_db_time(row.updated_at),
    )


# ==============================================================================
# Stores
# ==============================================================================


class SqlIdentifierStore(IdentifierStore):
    """Identifier store over ``ledger_identifiers``."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def insert_if_absent(self, record: IdentifierRecord) -> bool:
        row = IdentifierRow(
            identifier_id=record.identifier_id,
            identifier_type=record.identifier_type,
            creation_time=_to_db_time(record.creation_time),
            status=record.status.value,
            linked_identifiers=list(record.linked_identifiers),
            metadata_=record.model_dump(mode="json")["metadata"],
            derived_metrics=dict(record.derived_metrics),
            is_public_traceable=record.is_public_traceable,
        )
        try:
            with self._db.session() as session:
                session.add(row)
        except IntegrityError:
            # Only an existing primary key is a collision.
            if self.exists(record.identifier_id):
                return False
            raise
        return True

    def get(self, identifier_id: str) -> Optional[IdentifierRecord]:
        with self._db.session() as session:
            row = session.get(IdentifierRow, identifier_id)
            return _identifier_from_row(row) if row else None

    def exists(self, identifier_id: str) -> bool:
        with self._db.session() as session:
            return session.get(IdentifierRow, identifier_id) is not None

    def add_link(self, identifier_id: str, target_id: str) -> IdentifierRecord:
        with self._db.session() as session:
            row = session.execute(
                select(IdentifierRow)
                .where(IdentifierRow.identifier_id == identifier_id)
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                raise KeyError(identifier_id)
            links = list(row.linked_identifiers or [])
            if target_id not in links:
                links.append(target_id)
                row.linked_identifiers = links
            session.flush()
            return _identifier_from_row(row)

    def set_status(
        self, identifier_id: str, status: IdentifierStatus,
    ) -> IdentifierRecord:
        with self._db.session() as session:
            row = session.get(IdentifierRow, identifier_id)
            if row is None:
                raise KeyError(identifier_id)
            row.status = IdentifierStatus(status).value
            session.flush()
            return _identifier_from_row(row)

    def list_public(self, limit: int) -> List[IdentifierRecord]:
        with self._db.session() as session:
            rows = session.execute(
                select(IdentifierRow)
                .where(IdentifierRow.is_public_traceable.is_(True))
                .order_by(IdentifierRow.creation_time.desc())
                .limit(limit)
            ).scalars().all()
            return [_identifier_from_row(r) for r in rows]

    def count(self) -> int:
        with self._db.session() as session:
            return session.scalar(
                select(func.count()).select_from(IdentifierRow)
            )


class SqlEventStore(EventStore):
    """Event store over ``ledger_events``."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def append(self, event: TraceEvent) -> TraceEvent:
        row = EventRow(
            event_id=event.event_id,
            identifier_ref=event.identifier_ref,
            field_plot_ref=event.field_plot_ref,
            event_type=event.event_type.value,
            actor_ref=event.actor_ref,
            geo_lat=event.geo_location.lat if event.geo_location else None,
            geo_lng=event.geo_location.lng if event.geo_location else None,
            payload=event.model_dump(mode="json")["payload"],
            timestamp=_to_db_time(event.timestamp),
            is_public_traceable=event.is_public_traceable,
            data_hash=event.data_hash,
        )
        with self._db.session() as session:
            session.add(row)
            session.flush()
            return _event_from_row(row)

    def append_first_harvest(self, event: TraceEvent) -> Optional[TraceEvent]:
        try:
            return self.append(event)
        except IntegrityError:
            if self._first_harvest_id(event.identifier_ref) is None:
                raise
            logger.info(
                "Identifier %s already has a HARVESTED event; %s not written",
                event.identifier_ref, event.event_id,
            )
            return None

    def get(self, event_id: str) -> Optional[TraceEvent]:
        with self._db.session() as session:
            row = session.execute(
                select(EventRow).where(EventRow.event_id == event_id)
            ).scalar_one_or_none()
            return _event_from_row(row) if row else None

    def list_by_field_plot(
        self,
        field_plot_id: str,
        identifier_is_null: Optional[bool] = None,
    ) -> List[TraceEvent]:
        query = select(EventRow).where(EventRow.field_plot_ref == field_plot_id)
        if identifier_is_null is True:
            query = query.where(EventRow.identifier_ref.is_(None))
        elif identifier_is_null is False:
            query = query.where(EventRow.identifier_ref.is_not(None))
        return self._fetch(query)

    def list_by_identifier(self, identifier_id: str) -> List[TraceEvent]:
        return self._fetch(
            select(EventRow).where(EventRow.identifier_ref == identifier_id)
        )

    def count(self) -> int:
        with self._db.session() as session:
            return session.scalar(
                select(func.count()).select_from(EventRow)
            )

    def _first_harvest_id(self, identifier_id: Optional[str]) -> Optional[str]:
        with self._db.session() as session:
            return session.scalar(
                select(EventRow.event_id)
                .where(EventRow.identifier_ref == identifier_id)
                .where(EventRow.event_type == TraceEventType.HARVESTED.value)
            )

    def _fetch(self, query: Any) -> List[TraceEvent]:
        query = query.order_by(EventRow.timestamp.asc(), EventRow.sequence.asc())
        with self._db.session() as session:
            rows = session.execute(query).scalars().all()
            return [_event_from_row(r) for r in rows]


class SqlAnnotationStore(AnnotationStore):
    """Annotation store over ``ledger_anomaly_annotations``."""

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def append(self, annotation: AnomalyAnnotation) -> AnomalyAnnotation:
        with self._db.session() as session:
            session.add(AnnotationRow(
                annotation_id=annotation.annotation_id,
                event_id=annotation.event_id,
                identifier_id=annotation.identifier_id,
                is_anomaly=annotation.is_anomaly,
                reason=annotation.reason,
                created_at=_to_db_time(annotation.created_at),
            ))
        return annotation

    def list_for_events(
        self, event_ids: Iterable[str],
    ) -> Dict[str, List[AnomalyAnnotation]]:
        ids = list(event_ids)
        if not ids:
            return {}
        result: Dict[str, List[AnomalyAnnotation]] = {}
        with self._db.session() as session:
            rows = session.execute(
                select(AnnotationRow)
                .where(AnnotationRow.event_id.in_(ids))
                .order_by(AnnotationRow.created_at.asc())
            ).scalars().all()
            for row in rows:
                result.setdefault(row.event_id, []).append(
                    _annotation_from_row(row),
                )
        return result

    def count(self) -> int:
        with self._db.session() as session:
            return session.scalar(
                select(func.count()).select_from(AnnotationRow)
            )


class SqlTransitionJournal(TransitionJournal):
    """Transition journal over ``ledger_transition_intents``."""

    _MUTABLE = frozenset({
        "state", "identifier_id", "harvest_event_id", "error",
    })

    def __init__(self, db: LedgerDatabase) -> None:
        self._db = db

    def create(self, intent: TransitionIntent) -> TransitionIntent:
        data = intent.model_dump(mode="json")
        with self._db.session() as session:
            session.add(TransitionIntentRow(
                intent_id=intent.intent_id,
                field_plot_id=intent.field_plot_id,
                actor_ref=intent.actor_ref,
                batch_type=intent.batch_type,
                batch_metadata=data["batch_metadata"],
                harvest_payload=data["harvest_payload"],
                geo_location=data["geo_location"],
                state=intent.state.value,
                identifier_id=intent.identifier_id,
                harvest_event_id=intent.harvest_event_id,
                error=intent.error,
                created_at=_to_db_time(intent.created_at),
                updated_at=_to_db_time(intent.updated_at),
            ))
        return intent

    def update(self, intent_id: str, **changes: Any) -> TransitionIntent:
        unknown = set(changes) - self._MUTABLE
        if unknown:
            raise ValueError(f"Cannot update intent fields: {sorted(unknown)}")
        with self._db.session() as session:
            row = session.get(TransitionIntentRow, intent_id)
            if row is None:
                raise KeyError(intent_id)
            for key, value in changes.items():
                if key == "state":
                    value = TransitionState(value).value
                setattr(row, key, value)
            row.updated_at = _to_db_time(_utcnow())
            session.flush()
            return _intent_from_row(row)

    def get(self, intent_id: str) -> Optional[TransitionIntent]:
        with self._db.session() as session:
            row = session.get(TransitionIntentRow, intent_id)
            return _intent_from_row(row) if row else None

    def list_by_state(
        self, states: Iterable[TransitionState],
    ) -> List[TransitionIntent]:
        wanted = [TransitionState(s).value for s in states]
        with self._db.session() as session:
            rows = session.execute(
                select(TransitionIntentRow)
                .where(TransitionIntentRow.state.in_(wanted))
                .order_by(TransitionIntentRow.created_at.asc())
            ).scalars().all()
            return [_intent_from_row(r) for r in rows]


__all__ = [
    "LedgerBase",
    "LedgerDatabase",
    "IdentifierRow",
    "EventRow",
    "AnnotationRow",
    "TransitionIntentRow",
    "SqlIdentifierStore",
    "SqlEventStore",
    "SqlAnnotationStore",
    "SqlTransitionJournal",
]
