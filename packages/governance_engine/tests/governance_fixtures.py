"""Test data and helpers shared across governance engine tests."""

from datetime import datetime, timedelta, UTC

from governance_engine.schemas import ActionKind, ActionTemplate, Finding, Severity


PROJECTS = [
    {"_id": 1, "project_id": "project-atlas", "status": "deployed", "has_audit_log": True},
    {"_id": 2, "project_id": "project-orion", "status": "deployed", "has_audit_log": False},
    {"_id": 3, "project_id": "project-delta", "status": "deployed", "has_audit_log": False},
]

TICKET_TEMPLATE = ActionTemplate(kind=ActionKind.CREATE_TICKET, payload={"project_key": "GOV"})


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start=None):
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=UTC)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def make_finding(entity="project-delta", rule_id="detect_drift", detected_at=None):
    return Finding(
        rule_id=rule_id,
        entity_refs=(entity,),
        detected_at=detected_at or datetime(2026, 1, 15, 9, 0, tzinfo=UTC),
        summary=entity,
        severity=Severity.CRITICAL,
    )
