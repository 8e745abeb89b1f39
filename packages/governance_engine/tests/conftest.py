"""
Shared fixtures for governance engine tests.

Every test gets its own temp-file SQLite database; the in-memory data source
is seeded with the project fixtures used by the drift scenarios.
"""

import os
import tempfile

import pytest

from governance_engine.adapters import InMemoryDataSource
from governance_engine.audit import AuditLog
from governance_engine.config import JiraSettings, Settings
from governance_engine.db import Database
from governance_engine.gate import ApprovalGate

from governance_fixtures import PROJECTS, FakeClock


@pytest.fixture
def temp_database():
    """Temp-file SQLite Database with all tables created."""
    fd, db_path = tempfile.mkstemp(suffix=".db")
    os.close(fd)

    database = Database(f"sqlite:///{db_path}")
    database.create_all()

    yield database

    database.dispose()
    try:
        os.unlink(db_path)
    except (PermissionError, OSError):
        pass


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def audit_log(temp_database):
    return AuditLog(temp_database)


@pytest.fixture
def gate(temp_database, audit_log, clock):
    return ApprovalGate(temp_database, audit_log, clock=clock)


@pytest.fixture
def projects_source():
    return InMemoryDataSource({"projects": PROJECTS})


@pytest.fixture
def unconfigured_settings():
    return Settings(jira=JiraSettings())


@pytest.fixture
def jira_settings():
    return Settings(
        jira=JiraSettings(
            base_url="https://example.atlassian.net",
            identity="governance@example.com",
            credential="token-123",
        )
    )
