"""
Governance error taxonomy.

Every error carries a stable ``code`` (rendered by the tool layer) and a
``detail`` string. Errors are raised inside the core and converted to
``Outcome`` objects by ``GovernanceService``; nothing here is meant to cross
the core boundary as an exception.
"""

from __future__ import annotations

from typing import Optional


class GovernanceError(Exception):
    """Base class; error.code = GovernanceError."""

    code: str = "GovernanceError"

    def __init__(self, detail: str = "") -> None:
        self.detail = detail
        super().__init__(detail or self.code)


class ConfigurationError(GovernanceError):
    """A required setting is missing or invalid."""

    code: str = "ConfigurationError"


class ConnectorUnconfiguredError(ConfigurationError):
    """Connector credentials are absent; no side effect was attempted."""

    code: str = "ConnectorUnconfigured"

    def __init__(self, connector: str, missing: Optional[list] = None) -> None:
        self.connector = connector
        self.missing = list(missing or [])
        detail = f"{connector} connector is not configured"
        if self.missing:
            detail += f"; missing: {', '.join(self.missing)}"
        super().__init__(detail)


class InvalidInputError(GovernanceError):
    code: str = "InvalidInput"


class DataSourceUnavailableError(GovernanceError):
    """Query or update could not reach or complete against the store."""

    code: str = "DataSourceUnavailable"


class RuleExecutionError(GovernanceError):
    """Predicate or render failed on a single record; the record is skipped."""

    code: str = "RuleExecutionError"

    def __init__(self, rule_id: str, entity_ref: Optional[str], detail: str = "") -> None:
        self.rule_id = rule_id
        self.entity_ref = entity_ref
        super().__init__(f"rule {rule_id} failed on {entity_ref or '<unidentified record>'}: {detail}")


class DuplicateRuleError(GovernanceError):
    code: str = "DuplicateRule"

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule already registered: {rule_id}")


class UnknownRuleError(GovernanceError):
    code: str = "UnknownRule"

    def __init__(self, rule_id: str) -> None:
        self.rule_id = rule_id
        super().__init__(f"Rule not found: {rule_id}")


class RegistryFrozenError(GovernanceError):
    code: str = "RegistryFrozen"


class UnknownActionError(GovernanceError):
    code: str = "UnknownAction"

    def __init__(self, action_id: str) -> None:
        self.action_id = action_id
        super().__init__(f"Action not found: {action_id}")


class InvalidTransitionError(GovernanceError):
    """State machine misuse: double approval, approving a rejected action, losing an execution race."""

    code: str = "InvalidTransition"

    def __init__(self, action_id: str, current_state: Optional[str], attempted: str) -> None:
        self.action_id = action_id
        self.current_state = current_state
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} action {action_id} from state {current_state or '<missing>'}"
        )


class ExecutionError(GovernanceError):
    """Connector call failed; ``retryable`` is advisory, the core never retries."""

    code: str = "ExecutionError"

    def __init__(self, detail: str = "", retryable: bool = False, status_code: Optional[int] = None) -> None:
        self.retryable = retryable
        self.status_code = status_code
        super().__init__(detail or "Execution failed")


class AuditImmutableError(GovernanceError):
    code: str = "AuditImmutable"


class StorageUnavailableError(GovernanceError):
    """The Action/audit store failed (locked, unreachable, constraint abort)."""

    code: str = "StorageUnavailable"
