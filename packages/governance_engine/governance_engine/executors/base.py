"""ActionExecutor protocol and ConnectorRegistry."""

from __future__ import annotations

import logging
from typing import Dict, List, Protocol

from governance_engine.errors import ConnectorUnconfiguredError
from governance_engine.schemas import Action, ActionKind, ExecutionOutcome

logger = logging.getLogger(__name__)


class ActionExecutor(Protocol):
    """
    One implementation per connector type.

    execute() is called at most once per successful begin_execution; it
    raises ExecutionError (with a retryable flag) on transport failure and
    ConnectorUnconfiguredError before any network call when settings are
    missing. Successful outcomes carry identifying information (ticket key,
    matched count) so duplicates can be traced afterwards.
    """

    name: str

    @property
    def configured(self) -> bool:
        ...

    def missing_configuration(self) -> List[str]:
        ...

    async def execute(self, action: Action) -> ExecutionOutcome:
        ...


class ConnectorRegistry:
    """Maps ActionKind -> executor."""

    def __init__(self):
        self._executors: Dict[ActionKind, ActionExecutor] = {}

    def register(self, kind: ActionKind, executor: ActionExecutor) -> None:
        self._executors[kind] = executor
        logger.debug("Connector %s registered for %s", executor.name, kind.value)

    def get(self, kind: ActionKind) -> ActionExecutor:
        try:
            return self._executors[kind]
        except KeyError:
            raise ConnectorUnconfiguredError(kind.value, ["no connector registered"]) from None

    def kinds(self) -> List[ActionKind]:
        return list(self._executors)
