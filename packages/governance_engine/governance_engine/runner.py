"""
ExecutionRunner - drives one approved Action through its side effect.

    begin_execution (atomic claim) -> executor.execute (bounded) -> complete_execution

Every path that got past begin_execution ends in complete_execution:
success, connector error, timeout, unexpected exception, or cancellation.
An Action is never left in EXECUTING by this runner.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Tuple

from governance_engine.errors import ExecutionError, GovernanceError
from governance_engine.executors.base import ActionExecutor
from governance_engine.gate import SYSTEM_ACTOR, ApprovalGate
from governance_engine.schemas import Action, ExecutionOutcome

logger = logging.getLogger(__name__)


class ExecutionRunner:
    def __init__(self, gate: ApprovalGate, timeout: float = 15.0):
        self.gate = gate
        self.timeout = timeout

    async def run(
        self,
        action_id: str,
        executor: ActionExecutor,
        actor_id: str = SYSTEM_ACTOR,
    ) -> Tuple[Action, ExecutionOutcome]:
        """
        Execute an approved Action at most once.

        Raises:
            InvalidTransitionError: the Action is not APPROVED (already
                claimed by another caller, rejected, or finished)
            asyncio.CancelledError: after recording the Action as FAILED
        """
        action = self.gate.begin_execution(action_id, actor_id)
        logger.info("Executing action %s via %s", action_id, executor.name)

        try:
            outcome = await asyncio.wait_for(executor.execute(action), timeout=self.timeout)
        except asyncio.CancelledError:
            # complete_execution is synchronous: the terminal write cannot be interrupted
            outcome = ExecutionOutcome(
                success=False,
                message="execution cancelled before completion was confirmed",
                error_code="ExecutionCancelled",
                retryable=True,
            )
            self.gate.complete_execution(action_id, outcome, actor_id)
            logger.error("Action %s cancelled mid-execution; marked failed", action_id)
            raise
        except asyncio.TimeoutError:
            outcome = ExecutionOutcome.from_error(
                ExecutionError(f"{executor.name} did not respond within {self.timeout}s", retryable=True)
            )
        except ExecutionError as e:
            outcome = ExecutionOutcome.from_error(e)
        except GovernanceError as e:
            outcome = ExecutionOutcome(success=False, message=e.detail, error_code=e.code, retryable=False)
        except Exception as e:
            logger.exception("Unexpected error executing action %s", action_id)
            outcome = ExecutionOutcome(
                success=False,
                message=f"{type(e).__name__}: {e}",
                error_code="UnexpectedError",
                retryable=False,
            )

        completed = self.gate.complete_execution(action_id, outcome, actor_id)
        if outcome.success:
            logger.info("Action %s executed: %s", action_id, outcome.message)
        else:
            logger.error(
                "Action %s failed (%s, retryable=%s): %s",
                action_id, outcome.error_code, outcome.retryable, outcome.message,
            )
        return completed, outcome
