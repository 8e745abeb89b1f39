"""
Database layer for the Governance Engine.

Tables:
- actions: remediation Actions (state owned by ApprovalGate)
- audit_entries / audit_entity_refs: append-only audit trail
- documents: JSON documents served by SQLDocumentDataSource

The store is an explicitly constructed ``Database`` (create -> use ->
dispose) passed to the components that need it; there is no module-level
engine.
"""

from __future__ import annotations

import json
from contextlib import contextmanager
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any, Iterator, Optional

from sqlalchemy import (
    DDL,
    JSON,
    Column,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import Session, declarative_base, relationship, sessionmaker

from governance_engine.errors import AuditImmutableError
from governance_engine.schemas import ActionKind, ActionState, AuditEventType, Severity

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(UTC)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class ActionModel(Base):
    """Remediation Action row; state transitions go through ApprovalGate."""
    __tablename__ = "actions"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    kind = Column(SQLEnum(ActionKind), nullable=False)
    target_ref = Column(String, nullable=False)
    payload = Column(JSON, nullable=False, default=dict)
    state = Column(SQLEnum(ActionState), nullable=False, index=True)
    rule_id = Column(String, nullable=True, index=True)
    entity_refs = Column(JSON, nullable=False, default=list)
    summary = Column(Text, nullable=False, default="")
    severity = Column(SQLEnum(Severity), nullable=True)
    retry_of = Column(String, nullable=True)
    result = Column(JSON, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    last_transition_at = Column(DateTime, nullable=False, default=utcnow, index=True)

    __table_args__ = (
        {"sqlite_autoincrement": True},
    )


class AuditEntryModel(Base):
    """Audit entry row (append-only)."""
    __tablename__ = "audit_entries"

    entry_id = Column(Integer, primary_key=True, autoincrement=True)
    actor_id = Column(String, nullable=False)
    action_id = Column(String, nullable=True, index=True)
    event_type = Column(SQLEnum(AuditEventType), nullable=False, index=True)
    before_state = Column(SQLEnum(ActionState), nullable=True)
    after_state = Column(SQLEnum(ActionState), nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)
    rule_id = Column(String, nullable=True)
    detail = Column(JSON, nullable=False, default=dict)

    entity_refs = relationship(
        "AuditEntityRefModel",
        order_by="AuditEntityRefModel.position",
        lazy="selectin",
    )

    __table_args__ = (
        Index("idx_audit_entries_order", "timestamp", "entry_id"),
        {"sqlite_autoincrement": True},
    )


class AuditEntityRefModel(Base):
    __tablename__ = "audit_entity_refs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entry_id = Column(Integer, ForeignKey("audit_entries.entry_id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    entity_ref = Column(String, nullable=False, index=True)


class DocumentModel(Base):
    """Document store for SQLDocumentDataSource."""
    __tablename__ = "documents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    collection = Column(String, nullable=False, index=True)
    doc_key = Column(String, nullable=False)
    body = Column(JSON, nullable=False)

    __table_args__ = (
        UniqueConstraint("collection", "doc_key", name="uq_documents_collection_key"),
    )


# Append-only enforcement, ORM level
def _reject_mutation(mapper, connection, target) -> None:
    raise AuditImmutableError(f"{mapper.class_.__tablename__} rows are append-only")


for _model in (AuditEntryModel, AuditEntityRefModel):
    event.listen(_model, "before_update", _reject_mutation)
    event.listen(_model, "before_delete", _reject_mutation)


# Append-only enforcement, SQLite level (covers bulk UPDATE/DELETE statements)
for _table in ("audit_entries", "audit_entity_refs"):
    for _op in ("UPDATE", "DELETE"):
        event.listen(
            Base.metadata.tables[_table],
            "after_create",
            DDL(
                f"CREATE TRIGGER IF NOT EXISTS {_table}_no_{_op.lower()} "
                f"BEFORE {_op} ON {_table} "
                f"BEGIN SELECT RAISE(ABORT, '{_table} is append-only'); END;"
            ).execute_if(dialect="sqlite"),
        )


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _json_dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default)


class Database:
    """Explicit store handle: create -> use -> dispose."""

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.engine = create_engine(
            url,
            connect_args={"check_same_thread": False} if url.startswith("sqlite") else {},
            echo=echo,
            json_serializer=_json_dumps,
        )
        self.SessionLocal = sessionmaker(autoflush=False, bind=self.engine)

    @classmethod
    def from_settings(cls, settings) -> "Database":
        return cls(settings.database_url, echo=settings.database_echo)

    def create_all(self) -> None:
        """Create all tables (idempotent)."""
        Base.metadata.create_all(bind=self.engine)

    def session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session that commits on success and rolls back on any error."""
        db = self.SessionLocal()
        try:
            yield db
            db.commit()
        except BaseException:
            db.rollback()
            raise
        finally:
            db.close()

    def dispose(self) -> None:
        self.engine.dispose()
