"""
Tests for ApprovalGate

Validates:
- Idempotent submission
- Legal transitions and their audit entries
- Refused transitions raise and are recorded (reconciliation scenario)
- At most one caller wins begin_execution (asyncio and threads)
- Re-proposal only after failure
- Stale execution reaper
- Detection and proposal are recorded together
"""

import asyncio
import threading

import pytest

from governance_engine.engine import GovernanceEngine
from governance_engine.errors import InvalidInputError, InvalidTransitionError, UnknownActionError
from governance_engine.rules import default_registry
from governance_engine.schemas import ActionState, AuditEventType, ExecutionOutcome

from governance_fixtures import TICKET_TEMPLATE, make_finding


def _proposed(gate, entity="project-delta", retry_of=None):
    engine = GovernanceEngine(default_registry())
    action = engine.propose(make_finding(entity), TICKET_TEMPLATE, retry_of=retry_of)
    return gate.submit(action, "detector")


def _events(audit_log, action_id):
    return [e.event_type for e in audit_log.history(action_id)]


def test_submit_persists_proposed(gate, audit_log):
    action = _proposed(gate)
    assert action.state == ActionState.PROPOSED
    assert gate.get(action.id) == action
    assert _events(audit_log, action.id) == [AuditEventType.PROPOSED]


def test_submit_is_idempotent(gate, audit_log):
    first = _proposed(gate)
    second = _proposed(gate)
    assert first.id == second.id
    assert len(gate.list()) == 1
    assert _events(audit_log, first.id) == [AuditEventType.PROPOSED]


def test_submit_requires_proposed_state(gate):
    engine = GovernanceEngine(default_registry())
    action = engine.propose(make_finding(), TICKET_TEMPLATE).model_copy(update={"state": ActionState.APPROVED})
    with pytest.raises(InvalidInputError):
        gate.submit(action, "detector")


def test_full_lifecycle(gate, audit_log):
    action = _proposed(gate)

    approved = gate.approve(action.id, "alice")
    assert approved.state == ActionState.APPROVED

    executing = gate.begin_execution(action.id)
    assert executing.state == ActionState.EXECUTING

    done = gate.complete_execution(action.id, ExecutionOutcome(success=True, result={"ticket_key": "GOV-1"}))
    assert done.state == ActionState.EXECUTED
    assert done.result["result"] == {"ticket_key": "GOV-1"}

    history = audit_log.history(action.id)
    assert [e.event_type for e in history] == [
        AuditEventType.PROPOSED,
        AuditEventType.APPROVED,
        AuditEventType.EXECUTION_STARTED,
        AuditEventType.EXECUTED,
    ]
    assert history[1].actor_id == "alice"
    assert (history[1].before_state, history[1].after_state) == (ActionState.PROPOSED, ActionState.APPROVED)
    assert all(e.entity_refs == ("project-delta",) for e in history)


def test_failed_execution(gate):
    action = _proposed(gate)
    gate.approve(action.id, "alice")
    gate.begin_execution(action.id)
    failed = gate.complete_execution(
        action.id, ExecutionOutcome(success=False, message="boom", error_code="ExecutionError", retryable=True)
    )
    assert failed.state == ActionState.FAILED
    assert failed.result["retryable"] is True


def test_reconciliation_scenario(gate, audit_log):
    action = _proposed(gate)
    gate.reject(action.id, "bob", reason="docs are being rewritten")

    with pytest.raises(InvalidTransitionError) as exc_info:
        gate.approve(action.id, "alice")
    assert exc_info.value.current_state == "rejected"

    assert gate.get(action.id).state == ActionState.REJECTED
    history = audit_log.history(action.id)
    assert [e.event_type for e in history] == [
        AuditEventType.PROPOSED,
        AuditEventType.REJECTED,
        AuditEventType.TRANSITION_DENIED,
    ]
    assert history[1].detail == {"reason": "docs are being rewritten"}
    denied = history[2]
    assert denied.actor_id == "alice"
    assert denied.before_state == denied.after_state == ActionState.REJECTED
    assert denied.detail["attempted"] == "approve"


def test_double_approval_refused(gate):
    action = _proposed(gate)
    gate.approve(action.id, "alice")
    with pytest.raises(InvalidTransitionError):
        gate.approve(action.id, "alice")


def test_execute_requires_approval(gate):
    action = _proposed(gate)
    with pytest.raises(InvalidTransitionError):
        gate.begin_execution(action.id)
    assert gate.get(action.id).state == ActionState.PROPOSED


def test_unknown_action(gate):
    with pytest.raises(UnknownActionError):
        gate.approve("act_missing", "alice")
    with pytest.raises(UnknownActionError):
        gate.get("act_missing")


def test_begin_execution_single_winner_async(gate):
    action = _proposed(gate)
    gate.approve(action.id, "alice")

    async def claim():
        try:
            gate.begin_execution(action.id, "worker")
            return True
        except InvalidTransitionError:
            return False

    async def run():
        return await asyncio.gather(*[claim() for _ in range(5)])

    results = asyncio.run(run())
    assert results.count(True) == 1
    assert gate.get(action.id).state == ActionState.EXECUTING


def test_begin_execution_single_winner_threads(gate, audit_log):
    action = _proposed(gate)
    gate.approve(action.id, "alice")

    wins = []
    losses = []
    barrier = threading.Barrier(4)

    def claim(worker):
        barrier.wait()
        try:
            gate.begin_execution(action.id, worker)
            wins.append(worker)
        except InvalidTransitionError:
            losses.append(worker)

    threads = [threading.Thread(target=claim, args=(f"worker-{i}",)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(wins) == 1
    assert len(losses) == 3
    started = [e for e in audit_log.history(action.id) if e.event_type == AuditEventType.EXECUTION_STARTED]
    assert len(started) == 1
    assert started[0].actor_id == wins[0]


def test_terminal_states_are_final(gate):
    action = _proposed(gate)
    gate.reject(action.id, "bob")
    for attempt in (
        lambda: gate.approve(action.id, "alice"),
        lambda: gate.reject(action.id, "bob"),
        lambda: gate.begin_execution(action.id),
        lambda: gate.complete_execution(action.id, ExecutionOutcome(success=True)),
    ):
        with pytest.raises(InvalidTransitionError):
            attempt()
    assert gate.get(action.id).state == ActionState.REJECTED


def test_reproposal_only_after_failure(gate):
    original = _proposed(gate)
    with pytest.raises(InvalidTransitionError):
        _proposed(gate, retry_of=original.id)

    gate.approve(original.id, "alice")
    gate.begin_execution(original.id)
    gate.complete_execution(original.id, ExecutionOutcome(success=False, message="timeout", retryable=True))

    retry = _proposed(gate, retry_of=original.id)
    assert retry.id != original.id
    assert retry.state == ActionState.PROPOSED
    assert gate.get(original.id).state == ActionState.FAILED


def test_list_in_submission_order(gate):
    ids = [_proposed(gate, entity).id for entity in ("project-orion", "project-delta", "project-atlas")]
    assert [a.id for a in gate.list()] == ids

    gate.approve(ids[1], "alice")
    assert [a.id for a in gate.list(state=ActionState.APPROVED)] == [ids[1]]


def test_stale_executions_are_failed(gate, clock, audit_log):
    stuck = _proposed(gate, "project-delta")
    fresh = _proposed(gate, "project-orion")
    for action in (stuck, fresh):
        gate.approve(action.id, "alice")

    gate.begin_execution(stuck.id)
    clock.advance(600)
    gate.begin_execution(fresh.id)
    clock.advance(10)

    expired = gate.fail_stale_executions(max_age_seconds=300)

    assert [a.id for a in expired] == [stuck.id]
    assert gate.get(stuck.id).state == ActionState.FAILED
    assert gate.get(stuck.id).result["error_code"] == "ExecutionLeaseExpired"
    assert gate.get(fresh.id).state == ActionState.EXECUTING
    assert _events(audit_log, stuck.id)[-1] == AuditEventType.EXECUTION_FAILED


def test_submit_records_detection_with_proposal(gate, audit_log):
    finding = make_finding("project-orion")
    action = GovernanceEngine(default_registry()).propose(finding, TICKET_TEMPLATE)

    gate.submit(action, "detector", finding=finding)
    gate.submit(action, "detector", finding=finding)

    entries = audit_log.history(action.id)
    assert [e.event_type for e in entries] == [AuditEventType.DETECTED, AuditEventType.PROPOSED]
    assert entries[0].detail["summary"] == "project-orion"


def test_transition_outside_state_machine_is_refused(gate):
    action = _proposed(gate)
    with pytest.raises(InvalidTransitionError):
        gate._transition(
            action.id,
            "alice",
            from_state=ActionState.PROPOSED,
            to_state=ActionState.EXECUTED,
            event_type=AuditEventType.EXECUTED,
            attempted="complete",
        )
    assert gate.get(action.id).state == ActionState.PROPOSED
