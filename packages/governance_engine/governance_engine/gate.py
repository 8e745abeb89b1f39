"""
ApprovalGate - the state machine that gates every side-effecting Action.

State Flow:
    PROPOSED → APPROVED → EXECUTING → EXECUTED
        ↘ REJECTED          ↘ FAILED

Key Principles:
- Every transition is a conditional UPDATE guarded by the current state, so
  concurrent callers (threads, processes, engine instances) cannot both win
- The AuditEntry is written in the same transaction as the state change
- A refused transition raises InvalidTransitionError and leaves a
  transition_denied entry; it never changes state
- EXECUTED / REJECTED / FAILED are terminal; nothing returns to PROPOSED
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError

from governance_engine.audit import AuditLog
from governance_engine.db import ActionModel, Database, as_utc, utcnow
from governance_engine.errors import InvalidInputError, InvalidTransitionError, UnknownActionError
from governance_engine.schemas import (
    Action,
    ActionState,
    AuditEventType,
    ExecutionOutcome,
    Finding,
    NewAuditEntry,
)

logger = logging.getLogger(__name__)

SYSTEM_ACTOR = "system"


class ApprovalGate:
    """Owns Action state; the only component allowed to change it."""

    VALID_TRANSITIONS = {
        ActionState.PROPOSED: {ActionState.APPROVED, ActionState.REJECTED},
        ActionState.APPROVED: {ActionState.EXECUTING},
        ActionState.EXECUTING: {ActionState.EXECUTED, ActionState.FAILED},
        ActionState.REJECTED: set(),  # Terminal
        ActionState.EXECUTED: set(),  # Terminal
        ActionState.FAILED: set(),  # Terminal
    }

    def __init__(
        self,
        database: Database,
        audit_log: AuditLog,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.database = database
        self.audit_log = audit_log
        self._clock = clock

    # ==================== Proposals ====================

    def submit(self, action: Action, actor_id: str, finding: Optional[Finding] = None) -> Action:
        """
        Persist a proposed Action and record a ``proposed`` entry.

        With ``finding``, a ``detected`` entry is written first in the same
        transaction, so a refused or lost submit leaves neither entry behind.

        Submitting an id that already exists returns the stored Action
        unchanged and appends nothing (re-detection is idempotent).
        """
        if action.state != ActionState.PROPOSED:
            raise InvalidInputError(f"Only proposed actions can be submitted, got {action.state.value}")

        existing = self.find(action.id)
        if existing is not None:
            logger.info("Action %s already submitted (state=%s)", action.id, existing.state.value)
            return existing

        if action.retry_of:
            previous = self.get(action.retry_of)
            if previous.state != ActionState.FAILED:
                raise InvalidTransitionError(action.retry_of, previous.state.value, "re-propose")

        now = self._clock()
        try:
            with self.database.transaction() as db:
                model = ActionModel(
                    id=action.id,
                    kind=action.kind,
                    target_ref=action.target_ref,
                    payload=dict(action.payload),
                    state=ActionState.PROPOSED,
                    rule_id=action.rule_id,
                    entity_refs=list(action.entity_refs),
                    summary=action.summary,
                    severity=action.severity,
                    retry_of=action.retry_of,
                    created_at=now,
                    last_transition_at=now,
                )
                db.add(model)
                db.flush()
                if finding is not None:
                    self.audit_log.append(self._detected_entry(action, finding, actor_id), session=db)
                self.audit_log.append(
                    NewAuditEntry(
                        actor_id=actor_id,
                        event_type=AuditEventType.PROPOSED,
                        action_id=action.id,
                        before_state=None,
                        after_state=ActionState.PROPOSED,
                        rule_id=action.rule_id,
                        entity_refs=list(action.entity_refs),
                        detail={
                            "kind": action.kind.value,
                            "target_ref": action.target_ref,
                            "summary": action.summary,
                            "retry_of": action.retry_of,
                        },
                    ),
                    session=db,
                )
                stored = self._to_action(model)
        except IntegrityError:
            # Lost a concurrent submit of the same id
            logger.info("Action %s submitted concurrently; returning stored copy", action.id)
            return self.get(action.id)

        logger.info("Action %s proposed by %s (%s -> %s)", action.id, actor_id, action.kind.value, action.target_ref)
        return stored

    @staticmethod
    def _detected_entry(action: Action, finding: Finding, actor_id: str) -> NewAuditEntry:
        return NewAuditEntry(
            actor_id=actor_id,
            event_type=AuditEventType.DETECTED,
            action_id=action.id,
            rule_id=finding.rule_id,
            entity_refs=list(finding.entity_refs),
            detail={
                "summary": finding.summary,
                "severity": finding.severity.value,
                "detected_at": finding.detected_at.isoformat(),
            },
        )

    # ==================== Transitions ====================

    def approve(self, action_id: str, actor_id: str) -> Action:
        """PROPOSED -> APPROVED."""
        return self._transition(
            action_id, actor_id,
            from_state=ActionState.PROPOSED,
            to_state=ActionState.APPROVED,
            event_type=AuditEventType.APPROVED,
            attempted="approve",
        )

    def reject(self, action_id: str, actor_id: str, reason: str = "") -> Action:
        """PROPOSED -> REJECTED (terminal)."""
        return self._transition(
            action_id, actor_id,
            from_state=ActionState.PROPOSED,
            to_state=ActionState.REJECTED,
            event_type=AuditEventType.REJECTED,
            attempted="reject",
            detail={"reason": reason},
        )

    def begin_execution(self, action_id: str, actor_id: str = SYSTEM_ACTOR) -> Action:
        """
        APPROVED -> EXECUTING, as one atomic compare-and-set.

        Exactly one caller wins for a given Action; every other caller gets
        InvalidTransitionError and must not execute the side effect.
        """
        return self._transition(
            action_id, actor_id,
            from_state=ActionState.APPROVED,
            to_state=ActionState.EXECUTING,
            event_type=AuditEventType.EXECUTION_STARTED,
            attempted="begin execution of",
        )

    def complete_execution(
        self,
        action_id: str,
        outcome: ExecutionOutcome,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Action:
        """EXECUTING -> EXECUTED on success, EXECUTING -> FAILED otherwise."""
        result = outcome.model_dump(mode="json")
        if outcome.success:
            to_state, event_type = ActionState.EXECUTED, AuditEventType.EXECUTED
        else:
            to_state, event_type = ActionState.FAILED, AuditEventType.EXECUTION_FAILED

        return self._transition(
            action_id, actor_id,
            from_state=ActionState.EXECUTING,
            to_state=to_state,
            event_type=event_type,
            attempted="complete execution of",
            detail=result,
            values={"result": result},
        )

    def fail_stale_executions(self, max_age_seconds: float, actor_id: str = SYSTEM_ACTOR) -> List[Action]:
        """
        Resolve Actions stuck in EXECUTING longer than ``max_age_seconds`` to FAILED.

        Covers instances that died between begin_execution and
        complete_execution. Actions completed concurrently are left alone.
        """
        cutoff = self._clock() - timedelta(seconds=max_age_seconds)
        with self.database.transaction() as db:
            stale_ids = [
                row[0]
                for row in db.query(ActionModel.id)
                .filter(
                    and_(
                        ActionModel.state == ActionState.EXECUTING,
                        ActionModel.last_transition_at < cutoff,
                    )
                )
                .order_by(ActionModel.seq.asc())
                .all()
            ]

        outcome = ExecutionOutcome(
            success=False,
            message=f"execution did not complete within {max_age_seconds}s lease",
            error_code="ExecutionLeaseExpired",
            retryable=True,
        )
        resolved = []
        for action_id in stale_ids:
            action = self._transition(
                action_id, actor_id,
                from_state=ActionState.EXECUTING,
                to_state=ActionState.FAILED,
                event_type=AuditEventType.EXECUTION_FAILED,
                attempted="expire",
                detail=outcome.model_dump(mode="json"),
                values={"result": outcome.model_dump(mode="json")},
                guard=ActionModel.last_transition_at < cutoff,
                record_denial=False,
            )
            if action is not None:
                logger.warning("Action %s execution lease expired; marked failed", action_id)
                resolved.append(action)
        return resolved

    def _transition(
        self,
        action_id: str,
        actor_id: str,
        *,
        from_state: ActionState,
        to_state: ActionState,
        event_type: AuditEventType,
        attempted: str,
        detail: Optional[Dict[str, Any]] = None,
        values: Optional[Dict[str, Any]] = None,
        guard=None,
        record_denial: bool = True,
    ) -> Optional[Action]:
        if to_state not in self.VALID_TRANSITIONS[from_state]:
            raise InvalidTransitionError(action_id, from_state.value, attempted)
        now = self._clock()

        conditions = [ActionModel.id == action_id, ActionModel.state == from_state]
        if guard is not None:
            conditions.append(guard)

        with self.database.transaction() as db:
            # Atomic conditional update: only succeeds if state is still from_state
            stmt = (
                update(ActionModel)
                .where(and_(*conditions))
                .values(state=to_state, last_transition_at=now, **(values or {}))
                .execution_options(synchronize_session=False)
            )
            result = db.execute(stmt)

            if result.rowcount == 1:
                model = db.query(ActionModel).filter(ActionModel.id == action_id).one()
                self.audit_log.append(
                    NewAuditEntry(
                        actor_id=actor_id,
                        event_type=event_type,
                        action_id=action_id,
                        before_state=from_state,
                        after_state=to_state,
                        rule_id=model.rule_id,
                        entity_refs=list(model.entity_refs or []),
                        detail=detail or {},
                    ),
                    session=db,
                )
                action = self._to_action(model)
                logger.info(
                    "Action %s %s -> %s by %s", action_id, from_state.value, to_state.value, actor_id
                )
                return action

        if not record_denial:
            return None

        current = self._record_denial(action_id, actor_id, attempted, to_state)
        raise InvalidTransitionError(action_id, current.value, attempted)

    def _record_denial(
        self,
        action_id: str,
        actor_id: str,
        attempted: str,
        to_state: ActionState,
    ) -> ActionState:
        with self.database.transaction() as db:
            model = db.query(ActionModel).filter(ActionModel.id == action_id).first()
            if model is None:
                raise UnknownActionError(action_id)
            current = model.state
            self.audit_log.append(
                NewAuditEntry(
                    actor_id=actor_id,
                    event_type=AuditEventType.TRANSITION_DENIED,
                    action_id=action_id,
                    before_state=current,
                    after_state=current,
                    rule_id=model.rule_id,
                    entity_refs=list(model.entity_refs or []),
                    detail={"attempted": attempted, "requested_state": to_state.value},
                ),
                session=db,
            )
        logger.warning("Refused to %s action %s in state %s (actor=%s)", attempted, action_id, current.value, actor_id)
        return current

    # ==================== Queries ====================

    def get(self, action_id: str) -> Action:
        action = self.find(action_id)
        if action is None:
            raise UnknownActionError(action_id)
        return action

    def list(self, state: Optional[ActionState] = None, limit: int = 100) -> List[Action]:
        """Actions in submission order."""
        with self.database.transaction() as db:
            query = db.query(ActionModel)
            if state:
                query = query.filter(ActionModel.state == state)
            rows = query.order_by(ActionModel.seq.asc()).limit(limit).all()
            return [self._to_action(row) for row in rows]

    def find(self, action_id: str) -> Optional[Action]:
        with self.database.transaction() as db:
            model = db.query(ActionModel).filter(ActionModel.id == action_id).first()
            return self._to_action(model) if model else None

    @staticmethod
    def _to_action(model: ActionModel) -> Action:
        return Action(
            id=model.id,
            kind=model.kind,
            target_ref=model.target_ref,
            payload=dict(model.payload or {}),
            state=model.state,
            rule_id=model.rule_id,
            entity_refs=tuple(model.entity_refs or ()),
            summary=model.summary or "",
            severity=model.severity,
            retry_of=model.retry_of,
            result=model.result,
            created_at=as_utc(model.created_at),
            last_transition_at=as_utc(model.last_transition_at),
        )
