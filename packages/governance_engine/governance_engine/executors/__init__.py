from governance_engine.executors.base import ActionExecutor, ConnectorRegistry
from governance_engine.executors.mutation import DirectMutationConnector
from governance_engine.executors.ticket import TicketConnector, build_issue

__all__ = [
    "ActionExecutor",
    "ConnectorRegistry",
    "DirectMutationConnector",
    "TicketConnector",
    "build_issue",
]
