"""
AuditLog - append-only record of every governance event.

- append(): one atomic insert; joins the caller's transaction when a session
  is passed so a state change and its entry commit together
- query(): read-only, ordered by timestamp then entry_id
- There is no update or delete path; db.py additionally rejects both at the
  ORM and SQLite level
"""

from __future__ import annotations

import logging
from typing import List, Optional

from sqlalchemy.orm import Session

from governance_engine.db import AuditEntityRefModel, AuditEntryModel, Database, as_utc, utcnow
from governance_engine.schemas import AuditEntry, AuditFilter, NewAuditEntry

logger = logging.getLogger(__name__)


class AuditLog:
    """Append-only audit store."""

    def __init__(self, database: Database):
        self.database = database

    def append(self, entry: NewAuditEntry, session: Optional[Session] = None) -> AuditEntry:
        """
        Append one entry.

        Args:
            entry: entry to record
            session: caller's open session; the entry is flushed into it and
                commits (or rolls back) with the caller's transaction

        Returns:
            The stored entry with its assigned ``entry_id`` and ``timestamp``
        """
        if session is not None:
            return self._insert(session, entry)

        with self.database.transaction() as db:
            return self._insert(db, entry)

    def _insert(self, db: Session, entry: NewAuditEntry) -> AuditEntry:
        model = AuditEntryModel(
            actor_id=entry.actor_id,
            action_id=entry.action_id,
            event_type=entry.event_type,
            before_state=entry.before_state,
            after_state=entry.after_state,
            timestamp=utcnow(),
            rule_id=entry.rule_id,
            detail=dict(entry.detail),
        )
        model.entity_refs = [
            AuditEntityRefModel(position=i, entity_ref=ref) for i, ref in enumerate(entry.entity_refs)
        ]
        db.add(model)
        db.flush()

        logger.debug(
            "Audit %s action=%s %s -> %s by %s",
            entry.event_type.value, entry.action_id,
            entry.before_state.value if entry.before_state else None,
            entry.after_state.value if entry.after_state else None,
            entry.actor_id,
        )
        return self._to_entry(model)

    def query(self, filter: Optional[AuditFilter] = None) -> List[AuditEntry]:
        """Entries matching ``filter``, oldest first (ties by entry_id)."""
        filter = filter or AuditFilter()
        with self.database.transaction() as db:
            query = db.query(AuditEntryModel)

            if filter.action_id:
                query = query.filter(AuditEntryModel.action_id == filter.action_id)
            if filter.entity_ref:
                query = query.filter(
                    AuditEntryModel.entity_refs.any(AuditEntityRefModel.entity_ref == filter.entity_ref)
                )
            if filter.event_types:
                query = query.filter(AuditEntryModel.event_type.in_(filter.event_types))
            if filter.since:
                query = query.filter(AuditEntryModel.timestamp >= as_utc(filter.since))
            if filter.until:
                query = query.filter(AuditEntryModel.timestamp <= as_utc(filter.until))

            query = query.order_by(AuditEntryModel.timestamp.asc(), AuditEntryModel.entry_id.asc())
            if filter.limit:
                query = query.limit(filter.limit)

            return [self._to_entry(model) for model in query.all()]

    def history(self, action_id: str) -> List[AuditEntry]:
        """Full trail of one Action."""
        return self.query(AuditFilter(action_id=action_id))

    @staticmethod
    def _to_entry(model: AuditEntryModel) -> AuditEntry:
        return AuditEntry(
            entry_id=model.entry_id,
            actor_id=model.actor_id,
            action_id=model.action_id,
            event_type=model.event_type,
            before_state=model.before_state,
            after_state=model.after_state,
            timestamp=as_utc(model.timestamp),
            rule_id=model.rule_id,
            entity_refs=tuple(ref.entity_ref for ref in model.entity_refs),
            detail=dict(model.detail or {}),
        )
