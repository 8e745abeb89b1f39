"""
Tests for GovernanceService (core boundary)

Validates:
- Errors come back as typed Outcomes, never raised
- detect_and_propose records detection and is idempotent
- End-to-end: drift -> revert_status -> approve -> execute
- Degraded connector: no credentials, Action stays approved, nothing executed
- Ticket requests go through approval
- Numeric document ids survive detect -> propose -> execute
- Adapter and store failures become Outcomes
"""

import asyncio

import httpx
from sqlalchemy.exc import OperationalError

from governance_engine.adapters import InMemoryDataSource
from governance_engine.errors import DataSourceUnavailableError
from governance_engine.schemas import ActionKind, ActionState, ActionTemplate, AuditEventType, AuditFilter
from governance_engine.service import GovernanceService, outcome_payload

from governance_fixtures import PROJECTS, TICKET_TEMPLATE, make_finding


def _service(settings, database, source=None, transport=None):
    return GovernanceService.create(
        settings,
        database,
        source or InMemoryDataSource({"projects": PROJECTS}),
        jira_transport=transport,
    )


def _event_types(service, **filter):
    outcome = asyncio.run(service.audit_trail(AuditFilter(**filter)))
    return [e.event_type for e in outcome.data]


def test_evaluate_outcome(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)
    outcome = asyncio.run(service.evaluate("detect_drift"))

    assert outcome.ok
    assert [f.entity_refs[0] for f in outcome.data.findings] == ["project-delta", "project-orion"]
    assert outcome_payload(outcome)["data"]["findings"][0]["rule_id"] == "detect_drift"


def test_errors_become_outcomes(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)

    unknown = asyncio.run(service.evaluate("detect_nothing"))
    assert not unknown.ok
    assert unknown.code == "UnknownRule"

    missing = asyncio.run(service.approve("act_missing", "alice"))
    assert missing.code == "UnknownAction"

    bad = asyncio.run(service.decide("act_missing", "maybe", "alice"))
    assert bad.code == "InvalidInput"


def test_unavailable_store_outcome(unconfigured_settings, temp_database):
    class DownSource(InMemoryDataSource):
        async def query(self, collection, filter, projection=None):
            raise DataSourceUnavailableError("cluster unreachable")

    service = _service(unconfigured_settings, temp_database, source=DownSource())
    outcome = asyncio.run(service.evaluate("detect_drift"))
    assert not outcome.ok
    assert outcome.code == "DataSourceUnavailable"
    assert "cluster unreachable" in outcome.message


def test_detect_and_propose_is_idempotent(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)

    first = asyncio.run(service.detect_and_propose("detect_drift", TICKET_TEMPLATE, "detector"))
    second = asyncio.run(service.detect_and_propose("detect_drift", TICKET_TEMPLATE, "detector"))

    assert first.ok and second.ok
    assert [a.id for a in first.data["actions"]] == [a.id for a in second.data["actions"]]
    assert len(asyncio.run(service.list_actions()).data) == 2
    assert _event_types(service, entity_ref="project-delta") == [
        AuditEventType.DETECTED,
        AuditEventType.PROPOSED,
    ]


def test_revert_status_end_to_end(unconfigured_settings, temp_database):
    source = InMemoryDataSource({"projects": PROJECTS})
    service = _service(unconfigured_settings, temp_database, source=source)

    proposed = asyncio.run(service.reconcile_drift("project-delta", "revert_status", "detector"))
    assert proposed.ok
    action = proposed.data
    assert action.kind == ActionKind.UPDATE_DOCUMENT
    assert action.state == ActionState.PROPOSED

    # Nothing changes before approval
    assert asyncio.run(service.execute(action.id, "alice")).code == "InvalidTransition"
    delta = asyncio.run(source.query("projects", {"project_id": "project-delta"}))[0]
    assert delta["status"] == "deployed"

    assert asyncio.run(service.approve(action.id, "alice")).ok
    executed = asyncio.run(service.execute(action.id, "alice"))
    assert executed.ok
    assert executed.data.state == ActionState.EXECUTED

    delta = asyncio.run(source.query("projects", {"project_id": "project-delta"}))[0]
    assert delta["status"] == "needs_review"
    assert "status_updated_at" in delta

    again = asyncio.run(service.execute(action.id, "alice"))
    assert not again.ok
    assert again.code == "InvalidTransition"

    # Drift is resolved for delta only
    remaining = asyncio.run(service.evaluate("detect_drift")).data.findings
    assert [f.entity_refs[0] for f in remaining] == ["project-orion"]


def test_reconcile_requires_open_drift(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)

    atlas = asyncio.run(service.reconcile_drift("project-atlas", "revert_status"))
    assert not atlas.ok
    assert atlas.code == "InvalidInput"

    bad_action = asyncio.run(service.reconcile_drift("project-delta", "delete_project"))
    assert bad_action.code == "InvalidInput"


def test_reconciliation_scenario(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)
    action = asyncio.run(service.reconcile_drift("project-delta", "update_docs")).data

    rejected = asyncio.run(service.decide(action.id, "reject", "bob", "out of scope"))
    assert rejected.ok

    approved = asyncio.run(service.decide(action.id, "approve", "alice"))
    assert not approved.ok
    assert approved.code == "InvalidTransition"

    assert _event_types(service, action_id=action.id) == [
        AuditEventType.DETECTED,
        AuditEventType.PROPOSED,
        AuditEventType.REJECTED,
        AuditEventType.TRANSITION_DENIED,
    ]


def test_degraded_connector_scenario(unconfigured_settings, temp_database):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(201, json={"key": "GOV-1"})

    service = _service(unconfigured_settings, temp_database, transport=httpx.MockTransport(handler))
    action = asyncio.run(service.reconcile_drift("project-orion", "update_docs")).data
    asyncio.run(service.approve(action.id, "alice"))

    outcome = asyncio.run(service.execute(action.id, "alice"))

    assert not outcome.ok
    assert outcome.code == "ConnectorUnconfigured"
    assert "JIRA_API_TOKEN" in outcome.message
    assert calls == []
    assert asyncio.run(service.get_action(action.id)).data.state == ActionState.APPROVED
    events = _event_types(service, action_id=action.id)
    assert AuditEventType.EXECUTED not in events
    assert AuditEventType.EXECUTION_STARTED not in events


def test_ticket_request_needs_approval(jira_settings, temp_database):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(201, json={"id": "10001", "key": "DELTA-9"})

    service = _service(jira_settings, temp_database, transport=httpx.MockTransport(handler))
    proposed = asyncio.run(
        service.request_ticket("project-delta", "Audit log missing for deployed service\nSee drift report.")
    )
    assert proposed.ok
    assert calls == []

    asyncio.run(service.approve(proposed.data.id, "alice"))
    executed = asyncio.run(service.execute(proposed.data.id, "alice"))

    assert executed.ok
    assert executed.data.result["result"]["ticket_key"] == "DELTA-9"
    assert len(calls) == 1


def test_failed_execution_outcome_is_retryable(jira_settings, temp_database):
    def handler(request):
        return httpx.Response(503, text="maintenance")

    service = _service(jira_settings, temp_database, transport=httpx.MockTransport(handler))
    action = asyncio.run(service.reconcile_drift("project-delta", "update_docs")).data
    asyncio.run(service.approve(action.id, "alice"))

    outcome = asyncio.run(service.execute(action.id, "alice"))

    assert not outcome.ok
    assert outcome.retryable is True
    assert outcome.data.state == ActionState.FAILED


def test_request_ticket_requires_description(jira_settings, temp_database):
    service = _service(jira_settings, temp_database)
    outcome = asyncio.run(service.request_ticket("project-delta", "   "))
    assert outcome.code == "InvalidInput"


def test_numeric_ids_reach_the_document(unconfigured_settings, temp_database):
    source = InMemoryDataSource({
        "sample_analytics.customers": [
            {"_id": 42, "name": "Elizabeth Ray", "accounts": []},
            {"_id": 7, "name": "Katherine David", "accounts": [371138]},
        ]
    })
    service = _service(unconfigured_settings, temp_database, source=source)
    template = ActionTemplate(kind=ActionKind.UPDATE_DOCUMENT, payload={"patch": {"$set": {"flagged": True}}})

    proposed = asyncio.run(service.detect_and_propose("audit_orphaned_accounts", template, "detector"))
    assert proposed.ok
    [action] = proposed.data["actions"]
    assert action.entity_refs == ("42",)
    assert action.payload["filter"] == {"_id": 42}
    assert asyncio.run(service.get_action(action.id)).data.payload["filter"] == {"_id": 42}

    assert asyncio.run(service.approve(action.id, "alice")).ok
    executed = asyncio.run(service.execute(action.id, "alice"))
    assert executed.ok, executed.message
    assert executed.data.state == ActionState.EXECUTED

    customer = asyncio.run(source.query("sample_analytics.customers", {"_id": 42}))[0]
    assert customer["flagged"] is True


def test_refused_retry_leaves_no_detection_entry(unconfigured_settings, temp_database):
    service = _service(unconfigured_settings, temp_database)
    original = asyncio.run(service.propose(make_finding(), TICKET_TEMPLATE, "detector")).data

    # Original is still PROPOSED, so a retry is refused
    retry = asyncio.run(service.propose(make_finding(), TICKET_TEMPLATE, "detector", retry_of=original.id))
    assert not retry.ok
    assert retry.code == "InvalidTransition"

    stored = {a.id for a in asyncio.run(service.list_actions()).data}
    assert stored == {original.id}
    detected = asyncio.run(service.audit_trail(AuditFilter(event_types=[AuditEventType.DETECTED]))).data
    assert [e.action_id for e in detected] == [original.id]


def test_adapter_failure_outcome(unconfigured_settings, temp_database):
    class RejectingSource(InMemoryDataSource):
        async def query(self, collection, filter, projection=None):
            raise RuntimeError("authentication failed")

    service = _service(unconfigured_settings, temp_database, source=RejectingSource())
    outcome = asyncio.run(service.evaluate("detect_drift"))
    assert not outcome.ok
    assert outcome.code == "DataSourceUnavailable"
    assert "authentication failed" in outcome.message


def test_store_failure_outcome(unconfigured_settings, temp_database, monkeypatch):
    service = _service(unconfigured_settings, temp_database)
    action = asyncio.run(service.propose(make_finding(), TICKET_TEMPLATE, "detector")).data

    def locked(action_id, actor_id):
        raise OperationalError("UPDATE actions", {}, Exception("database is locked"))

    monkeypatch.setattr(service.gate, "approve", locked)
    outcome = asyncio.run(service.approve(action.id, "alice"))
    assert not outcome.ok
    assert outcome.code == "StorageUnavailable"
    assert "database is locked" in outcome.message
