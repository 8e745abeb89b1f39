"""
Governance Engine Package

Closed-loop data governance: detect policy violations, propose remediation,
gate it behind human approval, execute it exactly once, and audit every step.

Components:
- rules: Rule variants (DocumentRule / ThresholdRule) and RuleRegistry
- engine: GovernanceEngine (evaluate rules, propose Actions)
- gate: ApprovalGate (Action state machine, atomic transitions)
- executors: ticket and direct-mutation connectors
- runner: ExecutionRunner (bounded, at-most-once execution)
- audit: AuditLog (append-only)
- service: GovernanceService (typed Outcome boundary)
- tools: GovernanceToolset (named operations with input schemas)

Philosophy:
- Engine = Detector, not Executor
- No side effect without an APPROVED Action
- Every state change and its audit entry commit together
"""

__version__ = "0.1.0"

from .adapters import DataSourceAdapter, InMemoryDataSource, SQLDocumentDataSource

from .audit import AuditLog

from .config import JiraSettings, RuleThresholds, Settings, load_policy_file

from .db import Database

from .engine import EvaluationResult, GovernanceEngine, compute_action_id

from .errors import (
    AuditImmutableError,
    ConfigurationError,
    ConnectorUnconfiguredError,
    DataSourceUnavailableError,
    DuplicateRuleError,
    ExecutionError,
    GovernanceError,
    InvalidInputError,
    InvalidTransitionError,
    RegistryFrozenError,
    RuleExecutionError,
    StorageUnavailableError,
    UnknownActionError,
    UnknownRuleError,
)

from .executors import (
    ActionExecutor,
    ConnectorRegistry,
    DirectMutationConnector,
    TicketConnector,
)

from .gate import SYSTEM_ACTOR, ApprovalGate

from .rules import DocumentRule, Rule, RuleRegistry, ThresholdRule, builtin_rules, default_registry

from .runner import ExecutionRunner

from .schemas import (
    Action,
    ActionKind,
    ActionState,
    ActionTemplate,
    AuditEntry,
    AuditEventType,
    AuditFilter,
    ExecutionOutcome,
    Finding,
    NewAuditEntry,
    Outcome,
    Severity,
    UpdateResult,
)

from .service import GovernanceService

from .tools import GovernanceToolset, ToolResult, ToolSpec

__all__ = [
    # Schemas
    "Action",
    "ActionKind",
    "ActionState",
    "ActionTemplate",
    "AuditEntry",
    "AuditEventType",
    "AuditFilter",
    "ExecutionOutcome",
    "Finding",
    "NewAuditEntry",
    "Outcome",
    "Severity",
    "UpdateResult",
    # Rules
    "DocumentRule",
    "ThresholdRule",
    "Rule",
    "RuleRegistry",
    "builtin_rules",
    "default_registry",
    # Core
    "GovernanceEngine",
    "EvaluationResult",
    "compute_action_id",
    "ApprovalGate",
    "SYSTEM_ACTOR",
    "ExecutionRunner",
    "AuditLog",
    "GovernanceService",
    "GovernanceToolset",
    "ToolSpec",
    "ToolResult",
    # Connectors
    "ActionExecutor",
    "ConnectorRegistry",
    "DirectMutationConnector",
    "TicketConnector",
    # Data
    "DataSourceAdapter",
    "InMemoryDataSource",
    "SQLDocumentDataSource",
    "Database",
    # Config
    "Settings",
    "JiraSettings",
    "RuleThresholds",
    "load_policy_file",
    # Errors
    "GovernanceError",
    "ConfigurationError",
    "ConnectorUnconfiguredError",
    "DataSourceUnavailableError",
    "StorageUnavailableError",
    "RuleExecutionError",
    "InvalidTransitionError",
    "ExecutionError",
    "DuplicateRuleError",
    "UnknownRuleError",
    "RegistryFrozenError",
    "UnknownActionError",
    "AuditImmutableError",
    "InvalidInputError",
]
