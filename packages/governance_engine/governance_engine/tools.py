"""Tool catalog: named governance operations with declared input schemas, rendered as text."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from governance_engine.engine import EvaluationResult
from governance_engine.gate import SYSTEM_ACTOR
from governance_engine.rules import DocumentRule, Rule
from governance_engine.schemas import AuditEntry, AuditFilter, Outcome
from governance_engine.service import GovernanceService, outcome_payload

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    model_config = ConfigDict(extra="forbid")


class EmptyInput(ToolInput):
    pass


class ReconcileDriftInput(ToolInput):
    project_id: str = Field(..., min_length=1, description="The project_id to reconcile.")
    action: Literal["update_docs", "revert_status"] = Field(
        ..., description="update_docs opens a documentation ticket; revert_status sets status to needs_review."
    )
    actor_id: str = SYSTEM_ACTOR


class DecideActionInput(ToolInput):
    action_id: str = Field(..., min_length=1)
    decision: Literal["approve", "reject"]
    actor_id: str = Field(..., min_length=1)
    reason: Optional[str] = None


class ExecuteActionInput(ToolInput):
    action_id: str = Field(..., min_length=1)
    actor_id: str = SYSTEM_ACTOR


class CreateTicketInput(ToolInput):
    project_id: str = Field(..., min_length=1, description="Project with an open drift finding.")
    issue_description: str = Field(..., min_length=1)
    actor_id: str = SYSTEM_ACTOR


class AuditTrailInput(ToolInput):
    action_id: Optional[str] = None
    entity_ref: Optional[str] = None
    limit: Optional[int] = Field(None, ge=1)


@dataclass
class ToolSpec:
    """Tool metadata: name, description, input model, side_effects."""

    name: str
    description: str
    input_model: Type[ToolInput]
    side_effects: bool = False

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.input_model.model_json_schema()


@dataclass
class ToolResult:
    text: str
    data: Any = None
    is_error: bool = False


Handler = Callable[[ToolInput], Awaitable[ToolResult]]


def _error_result(outcome: Outcome, prefix: str = "Error") -> ToolResult:
    text = f"{prefix}: {outcome.message}"
    if outcome.code:
        text = f"{prefix} [{outcome.code}]: {outcome.message}"
    if outcome.retryable:
        text += " (retryable)"
    return ToolResult(text=text, data=outcome_payload(outcome), is_error=True)


def render_evaluation(rule: Rule, result: EvaluationResult) -> str:
    if isinstance(rule, DocumentRule):
        if result.findings:
            bullets = "\n".join(f"• {finding.summary}" for finding in result.findings)
            text = f"{rule.violation_heading}\n{bullets}"
        else:
            text = rule.clean_message
    elif result.findings:
        text = "\n".join(finding.summary for finding in result.findings)
    else:
        text = rule.clean_message.format(count=result.observations.get("count", 0))

    if result.degraded:
        notes = "\n".join(f"- {note}" for note in result.degradation_notes())
        text += f"\n\nWarning: {len(result.skipped)} record(s) could not be evaluated:\n{notes}"
    return text


def render_audit_entry(entry: AuditEntry) -> str:
    transition = ""
    if entry.before_state or entry.after_state:
        before = entry.before_state.value if entry.before_state else "-"
        after = entry.after_state.value if entry.after_state else "-"
        transition = f" {before} -> {after}"
    return (
        f"#{entry.entry_id} {entry.timestamp.isoformat()} {entry.event_type.value}"
        f" {entry.action_id or '-'}{transition} by {entry.actor_id}"
    )


class GovernanceToolset:
    """Exposes GovernanceService as tools; knows nothing about the transport."""

    def __init__(self, service: GovernanceService):
        self.service = service
        self._specs: Dict[str, ToolSpec] = {}
        self._handlers: Dict[str, Handler] = {}

        for rule in service.engine.registry.list():
            self._add(
                ToolSpec(name=rule.id, description=rule.description, input_model=EmptyInput),
                self._detect_handler(rule),
            )
        self._add(
            ToolSpec(
                name="reconcile_drift",
                description=(
                    "Propose a fix for Design-Code Drift: update the docs (ticket) or revert the "
                    "project status to needs_review. Takes effect only after approval."
                ),
                input_model=ReconcileDriftInput,
            ),
            self._reconcile_drift,
        )
        self._add(
            ToolSpec(
                name="decide_action",
                description="Approve or reject a proposed remediation action.",
                input_model=DecideActionInput,
            ),
            self._decide_action,
        )
        self._add(
            ToolSpec(
                name="execute_action",
                description="Execute an approved remediation action exactly once.",
                input_model=ExecuteActionInput,
                side_effects=True,
            ),
            self._execute_action,
        )
        self._add(
            ToolSpec(
                name="create_jira_ticket",
                description="Propose a Jira ticket for a project with detected drift. Created after approval.",
                input_model=CreateTicketInput,
            ),
            self._create_jira_ticket,
        )
        self._add(
            ToolSpec(
                name="audit_trail",
                description="List audit entries for an action or an entity.",
                input_model=AuditTrailInput,
            ),
            self._audit_trail,
        )

    def _add(self, spec: ToolSpec, handler: Handler) -> None:
        self._specs[spec.name] = spec
        self._handlers[spec.name] = handler

    def list_tools(self) -> List[ToolSpec]:
        return list(self._specs.values())

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._specs.get(name)

    async def invoke(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        spec = self._specs.get(name)
        if spec is None:
            return ToolResult(text=f"Unknown tool: {name}", is_error=True)

        try:
            params = spec.input_model.model_validate(arguments or {})
        except ValidationError as e:
            logger.info("Invalid arguments for %s: %s", name, e)
            return ToolResult(
                text=f"Invalid arguments for {name}: {e.error_count()} error(s)",
                data={"errors": e.errors(include_url=False)},
                is_error=True,
            )

        logger.debug("Invoking tool %s", name)
        return await self._handlers[name](params)

    def invoke_sync(self, name: str, arguments: Optional[Dict[str, Any]] = None) -> ToolResult:
        """Blocking variant for callers without a running event loop."""
        return asyncio.run(self.invoke(name, arguments))

    # ==================== Handlers ====================

    def _detect_handler(self, rule: Rule) -> Handler:
        async def handler(params: ToolInput) -> ToolResult:
            outcome = await self.service.evaluate(rule.id)
            if not outcome.ok:
                return _error_result(outcome, prefix=f"Error running {rule.id}")
            result: EvaluationResult = outcome.data
            return ToolResult(text=render_evaluation(rule, result), data=result.to_dict())

        return handler

    async def _reconcile_drift(self, params: ReconcileDriftInput) -> ToolResult:
        outcome = await self.service.reconcile_drift(params.project_id, params.action, params.actor_id)
        if not outcome.ok:
            return _error_result(outcome, prefix="Error reconciling drift")
        return ToolResult(
            text=f"{outcome.message} Approve it with decide_action, then run execute_action.",
            data=outcome_payload(outcome),
        )

    async def _decide_action(self, params: DecideActionInput) -> ToolResult:
        outcome = await self.service.decide(
            params.action_id, params.decision, params.actor_id, params.reason or ""
        )
        if not outcome.ok:
            return _error_result(outcome)
        return ToolResult(text=outcome.message, data=outcome_payload(outcome))

    async def _execute_action(self, params: ExecuteActionInput) -> ToolResult:
        outcome = await self.service.execute(params.action_id, params.actor_id)
        if not outcome.ok:
            return _error_result(outcome, prefix=f"Action {params.action_id} not executed")
        return ToolResult(text=outcome.message, data=outcome_payload(outcome))

    async def _create_jira_ticket(self, params: CreateTicketInput) -> ToolResult:
        outcome = await self.service.request_ticket(params.project_id, params.issue_description, params.actor_id)
        if not outcome.ok:
            return _error_result(outcome, prefix="Error creating Jira ticket")
        return ToolResult(
            text=f"{outcome.message} The ticket is created once the action is approved and executed.",
            data=outcome_payload(outcome),
        )

    async def _audit_trail(self, params: AuditTrailInput) -> ToolResult:
        outcome = await self.service.audit_trail(
            AuditFilter(action_id=params.action_id, entity_ref=params.entity_ref, limit=params.limit)
        )
        if not outcome.ok:
            return _error_result(outcome)
        entries: List[AuditEntry] = outcome.data
        if not entries:
            return ToolResult(text="No audit entries found.", data=[])
        lines = "\n".join(render_audit_entry(entry) for entry in entries)
        return ToolResult(text=f"{outcome.message}:\n{lines}", data=outcome_payload(outcome)["data"])
