from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from governance_engine.errors import ExecutionError, GovernanceError


class Severity(str, Enum):
    """Rule severity."""
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class ActionKind(str, Enum):
    """Remediation connector kinds."""
    CREATE_TICKET = "create_ticket"
    UPDATE_DOCUMENT = "update_document"


class ActionState(str, Enum):
    """Action lifecycle states."""
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"


TERMINAL_STATES = frozenset({ActionState.REJECTED, ActionState.EXECUTED, ActionState.FAILED})


class AuditEventType(str, Enum):
    """Audit event types."""
    DETECTED = "detected"
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTION_STARTED = "execution_started"
    EXECUTED = "executed"
    EXECUTION_FAILED = "execution_failed"
    TRANSITION_DENIED = "transition_denied"


class Finding(BaseModel):
    """A single detected policy violation. Never persisted on its own."""
    model_config = ConfigDict(frozen=True)

    rule_id: str
    entity_refs: Tuple[str, ...]
    # Raw identifier values parallel to entity_refs; used to build match filters
    entity_keys: Tuple[Any, ...] = ()
    detected_at: datetime
    summary: str
    severity: Severity


class ActionTemplate(BaseModel):
    """How to turn a Finding into an Action.

    ``target_ref`` defaults to the finding's first entity ref. For
    ``update_document`` the payload carries ``collection``, ``filter`` and
    ``patch``; for ``create_ticket`` it carries ``project_key`` and optionally
    ``summary``/``description`` (filled from the finding when absent).
    """
    model_config = ConfigDict(frozen=True)

    kind: ActionKind
    target_ref: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


class Action(BaseModel):
    """Snapshot of a remediation Action; the ApprovalGate owns its state."""
    model_config = ConfigDict(frozen=True)

    id: str
    kind: ActionKind
    target_ref: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    state: ActionState
    rule_id: Optional[str] = None
    entity_refs: Tuple[str, ...] = ()
    summary: str = ""
    severity: Optional[Severity] = None
    retry_of: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    created_at: datetime
    last_transition_at: datetime


class ExecutionOutcome(BaseModel):
    """Single resolved result of one connector invocation."""
    success: bool
    result: Dict[str, Any] = Field(default_factory=dict)
    message: str = ""
    error_code: Optional[str] = None
    retryable: Optional[bool] = None

    @classmethod
    def from_error(cls, error: ExecutionError) -> "ExecutionOutcome":
        return cls(
            success=False,
            message=error.detail,
            error_code=error.code,
            retryable=error.retryable,
            result={"status_code": error.status_code} if error.status_code is not None else {},
        )


class AuditEntry(BaseModel):
    """Immutable audit record."""
    model_config = ConfigDict(frozen=True)

    entry_id: int
    actor_id: str
    action_id: Optional[str] = None
    event_type: AuditEventType
    before_state: Optional[ActionState] = None
    after_state: Optional[ActionState] = None
    timestamp: datetime
    rule_id: Optional[str] = None
    entity_refs: Tuple[str, ...] = ()
    detail: Dict[str, Any] = Field(default_factory=dict)


class NewAuditEntry(BaseModel):
    """Audit record before the log assigns ``entry_id`` and ``timestamp``."""
    actor_id: str
    event_type: AuditEventType
    action_id: Optional[str] = None
    before_state: Optional[ActionState] = None
    after_state: Optional[ActionState] = None
    rule_id: Optional[str] = None
    entity_refs: List[str] = Field(default_factory=list)
    detail: Dict[str, Any] = Field(default_factory=dict)


class AuditFilter(BaseModel):
    action_id: Optional[str] = None
    entity_ref: Optional[str] = None
    event_types: Optional[List[AuditEventType]] = None
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    limit: Optional[int] = Field(None, ge=1)


class UpdateResult(BaseModel):
    matched_count: int
    modified_count: int = 0


class Outcome(BaseModel):
    """Typed result returned across the core boundary."""
    ok: bool
    code: Optional[str] = None
    message: str = ""
    data: Any = None
    retryable: Optional[bool] = None

    @classmethod
    def success(cls, data: Any = None, message: str = "") -> "Outcome":
        return cls(ok=True, data=data, message=message)

    @classmethod
    def failure(cls, error: GovernanceError, data: Any = None) -> "Outcome":
        return cls(
            ok=False,
            code=error.code,
            message=error.detail or str(error),
            data=data,
            retryable=getattr(error, "retryable", None),
        )
