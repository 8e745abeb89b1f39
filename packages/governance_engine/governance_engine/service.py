"""
GovernanceService - the core boundary.

Wires RuleRegistry, GovernanceEngine, ApprovalGate, connectors, runner and
AuditLog together. Every public method returns an ``Outcome``; a
GovernanceError raised inside the core becomes ``Outcome(ok=False, code=...)``
so callers render results without catching anything. A failing
Action/audit store comes back the same way, as ``StorageUnavailable``.

Flow:
    evaluate -> propose/submit (PROPOSED) -> approve | reject
    -> execute (APPROVED -> EXECUTING -> EXECUTED | FAILED)
"""

from __future__ import annotations

import functools
import logging
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.exc import SQLAlchemyError

from governance_engine.adapters import DataSourceAdapter
from governance_engine.audit import AuditLog
from governance_engine.config import Settings
from governance_engine.db import Database
from governance_engine.engine import EvaluationResult, GovernanceEngine
from governance_engine.errors import (
    ConnectorUnconfiguredError,
    GovernanceError,
    InvalidInputError,
    StorageUnavailableError,
)
from governance_engine.executors import (
    ConnectorRegistry,
    DirectMutationConnector,
    TicketConnector,
)
from governance_engine.gate import SYSTEM_ACTOR, ApprovalGate
from governance_engine.rules import RuleRegistry, default_registry
from governance_engine.runner import ExecutionRunner
from governance_engine.schemas import (
    Action,
    ActionKind,
    ActionState,
    ActionTemplate,
    AuditFilter,
    Finding,
    Outcome,
)

logger = logging.getLogger(__name__)

DRIFT_RULE_ID = "detect_drift"
RECONCILE_ACTIONS = ("update_docs", "revert_status")
DECISIONS = ("approve", "reject")


def _boundary(func):
    """Convert GovernanceError and store failures raised by ``func`` into a failed Outcome."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs) -> Outcome:
        try:
            return await func(self, *args, **kwargs)
        except GovernanceError as e:
            logger.info("%s -> %s: %s", func.__name__, e.code, e.detail)
            return Outcome.failure(e)
        except SQLAlchemyError as e:
            logger.error("%s: governance store error: %s", func.__name__, e)
            return Outcome.failure(StorageUnavailableError(f"governance store error: {type(e).__name__}: {e}"))

    return wrapper


class GovernanceService:
    """Closed-loop governance: detect, propose, gate, execute, audit."""

    def __init__(
        self,
        engine: GovernanceEngine,
        gate: ApprovalGate,
        audit_log: AuditLog,
        connectors: ConnectorRegistry,
        runner: ExecutionRunner,
        data_source: DataSourceAdapter,
    ):
        self.engine = engine
        self.gate = gate
        self.audit_log = audit_log
        self.connectors = connectors
        self.runner = runner
        self.data_source = data_source

    @classmethod
    def create(
        cls,
        settings: Settings,
        database: Database,
        data_source: DataSourceAdapter,
        registry: Optional[RuleRegistry] = None,
        jira_transport=None,
    ) -> "GovernanceService":
        """Standard wiring: built-in rules, Jira tickets, direct document updates."""
        registry = registry or default_registry(settings.thresholds)
        audit_log = AuditLog(database)
        gate = ApprovalGate(database, audit_log)

        connectors = ConnectorRegistry()
        connectors.register(
            ActionKind.CREATE_TICKET,
            TicketConnector(settings.jira, timeout=settings.connector_timeout_seconds, transport=jira_transport),
        )
        connectors.register(ActionKind.UPDATE_DOCUMENT, DirectMutationConnector(data_source))

        return cls(
            engine=GovernanceEngine(registry, query_timeout=settings.query_timeout_seconds),
            gate=gate,
            audit_log=audit_log,
            connectors=connectors,
            runner=ExecutionRunner(gate, timeout=settings.connector_timeout_seconds),
            data_source=data_source,
        )

    # ==================== Detection ====================

    @_boundary
    async def evaluate(self, rule_id: str) -> Outcome:
        """Outcome.data: EvaluationResult."""
        result = await self.engine.evaluate(rule_id, self.data_source)
        message = f"{len(result.findings)} finding(s) for {rule_id}"
        if result.degraded:
            message += f"; {len(result.skipped)} record(s) skipped"
        return Outcome.success(result, message=message)

    @_boundary
    async def detect_and_propose(
        self,
        rule_id: str,
        template: ActionTemplate,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Outcome:
        """
        Evaluate ``rule_id`` and submit one proposal per Finding.

        Outcome.data: {"evaluation": EvaluationResult, "actions": [Action]}.
        Findings already proposed keep their existing Action.
        """
        result = await self.engine.evaluate(rule_id, self.data_source)
        actions = [self._submit(finding, template, actor_id) for finding in result.findings]
        return Outcome.success(
            {"evaluation": result, "actions": actions},
            message=f"{len(actions)} action(s) proposed for {rule_id}",
        )

    @_boundary
    async def propose(
        self,
        finding: Finding,
        template: ActionTemplate,
        actor_id: str = SYSTEM_ACTOR,
        retry_of: Optional[str] = None,
    ) -> Outcome:
        """Outcome.data: the submitted Action."""
        action = self._submit(finding, template, actor_id, retry_of=retry_of)
        return Outcome.success(action, message=f"Action {action.id} is {action.state.value}")

    def _submit(
        self,
        finding: Finding,
        template: ActionTemplate,
        actor_id: str,
        retry_of: Optional[str] = None,
    ) -> Action:
        action = self.engine.propose(finding, template, retry_of=retry_of)
        return self.gate.submit(action, actor_id, finding=finding)

    # ==================== Decisions ====================

    @_boundary
    async def approve(self, action_id: str, actor_id: str) -> Outcome:
        action = self.gate.approve(action_id, actor_id)
        return Outcome.success(action, message=f"Action {action_id} approved by {actor_id}")

    @_boundary
    async def reject(self, action_id: str, actor_id: str, reason: str = "") -> Outcome:
        action = self.gate.reject(action_id, actor_id, reason)
        return Outcome.success(action, message=f"Action {action_id} rejected by {actor_id}")

    async def decide(self, action_id: str, decision: str, actor_id: str, reason: str = "") -> Outcome:
        if decision == "approve":
            return await self.approve(action_id, actor_id)
        if decision == "reject":
            return await self.reject(action_id, actor_id, reason)
        return Outcome.failure(
            InvalidInputError(f"decision must be one of {', '.join(DECISIONS)}, got {decision!r}")
        )

    # ==================== Execution ====================

    @_boundary
    async def execute(self, action_id: str, actor_id: str = SYSTEM_ACTOR) -> Outcome:
        """
        Run an approved Action's side effect.

        An unconfigured connector is reported before the Action is claimed:
        it stays APPROVED and nothing claims execution in the audit log.
        """
        action = self.gate.get(action_id)
        executor = self.connectors.get(action.kind)

        if action.state == ActionState.APPROVED:
            missing = executor.missing_configuration()
            if missing:
                error = ConnectorUnconfiguredError(executor.name, missing)
                logger.warning("Not executing action %s: %s", action_id, error.detail)
                return Outcome.failure(error, data=action)

        completed, outcome = await self.runner.run(action_id, executor, actor_id)
        if outcome.success:
            return Outcome.success(completed, message=outcome.message)
        return Outcome(
            ok=False,
            code=outcome.error_code,
            message=outcome.message,
            data=completed,
            retryable=outcome.retryable,
        )

    @_boundary
    async def expire_stale_executions(self, max_age_seconds: float, actor_id: str = SYSTEM_ACTOR) -> Outcome:
        """Resolve Actions stuck in EXECUTING past their lease to FAILED."""
        expired = self.gate.fail_stale_executions(max_age_seconds, actor_id)
        return Outcome.success(expired, message=f"{len(expired)} stale execution(s) marked failed")

    # ==================== Queries ====================

    @_boundary
    async def get_action(self, action_id: str) -> Outcome:
        return Outcome.success(self.gate.get(action_id))

    @_boundary
    async def list_actions(self, state: Optional[ActionState] = None, limit: int = 100) -> Outcome:
        return Outcome.success(self.gate.list(state=state, limit=limit))

    @_boundary
    async def audit_trail(self, filter: Optional[AuditFilter] = None) -> Outcome:
        entries = self.audit_log.query(filter)
        return Outcome.success(entries, message=f"{len(entries)} audit entr{'y' if len(entries) == 1 else 'ies'}")

    # ==================== Remediation requests ====================

    @_boundary
    async def reconcile_drift(self, project_id: str, action: str, actor_id: str = SYSTEM_ACTOR) -> Outcome:
        """
        Propose remediation for a drifted project.

        - revert_status: set the project's status to needs_review
        - update_docs: open a ticket asking for the missing audit documentation

        The proposal still needs approval before anything changes.
        """
        if action not in RECONCILE_ACTIONS:
            raise InvalidInputError(f"action must be one of {', '.join(RECONCILE_ACTIONS)}, got {action!r}")

        finding = await self._open_finding(DRIFT_RULE_ID, project_id)
        if action == "revert_status":
            template = ActionTemplate(
                kind=ActionKind.UPDATE_DOCUMENT,
                target_ref=project_id,
                payload={
                    "patch": {"$set": {"status": "needs_review"}},
                    "timestamp_field": "status_updated_at",
                },
            )
        else:
            template = ActionTemplate(
                kind=ActionKind.CREATE_TICKET,
                target_ref=project_id,
                payload={
                    "summary": f"Update design documentation for {project_id}",
                    "description": (
                        f"Project {project_id} is deployed without an audit log. "
                        "Update its design documentation and audit log to match the deployed code."
                    ),
                },
            )

        proposed = self._submit(finding, template, actor_id)
        return Outcome.success(
            proposed,
            message=f"Remediation '{action}' for project '{project_id}' proposed as {proposed.id} ({proposed.state.value}).",
        )

    @_boundary
    async def request_ticket(
        self,
        project_key: str,
        issue_description: str,
        actor_id: str = SYSTEM_ACTOR,
        rule_id: str = DRIFT_RULE_ID,
    ) -> Outcome:
        """Propose a ticket for an open finding on ``project_key``; executes only after approval."""
        if not issue_description or not issue_description.strip():
            raise InvalidInputError("issue_description is required")

        finding = await self._open_finding(rule_id, project_key)
        template = ActionTemplate(
            kind=ActionKind.CREATE_TICKET,
            target_ref=project_key,
            payload={
                "project_key": project_key,
                "summary": None,
                "description": issue_description,
            },
        )
        proposed = self._submit(finding, template, actor_id)
        return Outcome.success(
            proposed,
            message=f"Ticket for '{project_key}' proposed as {proposed.id} ({proposed.state.value}).",
        )

    async def _open_finding(self, rule_id: str, entity_ref: str) -> Finding:
        result: EvaluationResult = await self.engine.evaluate(rule_id, self.data_source)
        for finding in result.findings:
            if entity_ref in finding.entity_refs:
                return finding
        raise InvalidInputError(f"No open {rule_id} finding for '{entity_ref}'")

    # ==================== Catalog ====================

    def rules(self) -> List[Dict[str, Any]]:
        return [
            {"id": rule.id, "kind": rule.kind, "scope": rule.scope,
             "severity": rule.severity.value, "description": rule.description}
            for rule in self.engine.registry.list()
        ]

    async def close(self) -> None:
        await self.data_source.close()


def outcome_payload(outcome: Outcome) -> Mapping[str, Any]:
    """JSON-friendly view of an Outcome's data."""
    data = outcome.data
    if isinstance(data, EvaluationResult):
        data = data.to_dict()
    elif isinstance(data, dict) and isinstance(data.get("evaluation"), EvaluationResult):
        data = {
            "evaluation": data["evaluation"].to_dict(),
            "actions": [a.model_dump(mode="json") for a in data["actions"]],
        }
    elif hasattr(data, "model_dump"):
        data = data.model_dump(mode="json")
    elif isinstance(data, list):
        data = [item.model_dump(mode="json") if hasattr(item, "model_dump") else item for item in data]
    return {
        "ok": outcome.ok,
        "code": outcome.code,
        "message": outcome.message,
        "retryable": outcome.retryable,
        "data": data,
    }
