"""
Governance Engine configuration.

Settings come from the environment; rule thresholds may additionally come
from a YAML policy file (GOVERNANCE_POLICY_FILE). Nothing is read at import
time: call ``Settings.from_env()`` at the boundary that needs it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from governance_engine.errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./governance.db"
DEFAULT_QUERY_TIMEOUT_SECONDS = 10.0
DEFAULT_CONNECTOR_TIMEOUT_SECONDS = 15.0
DEFAULT_EXECUTION_LEASE_SECONDS = 300


@dataclass(frozen=True)
class RuleThresholds:
    """Cutoffs used by the built-in rules."""
    zombie_cutoff: date = date(2019, 1, 1)
    unverified_after_year: int = 2015
    bottleneck_document_count: int = 5000
    legacy_store_location: str = "Denver"

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RuleThresholds":
        """Build thresholds from a policy mapping; unknown keys are ignored."""
        defaults = cls()
        try:
            cutoff = data.get("zombie_cutoff", defaults.zombie_cutoff)
            if isinstance(cutoff, datetime):
                cutoff = cutoff.date()
            elif isinstance(cutoff, str):
                cutoff = date.fromisoformat(cutoff)
            return cls(
                zombie_cutoff=cutoff,
                unverified_after_year=int(data.get("unverified_after_year", defaults.unverified_after_year)),
                bottleneck_document_count=int(
                    data.get("bottleneck_document_count", defaults.bottleneck_document_count)
                ),
                legacy_store_location=str(data.get("legacy_store_location", defaults.legacy_store_location)),
            )
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid rule thresholds: {e}") from e


@dataclass(frozen=True)
class JiraSettings:
    """Ticket connector settings (JIRA_BASE_URL, JIRA_EMAIL, JIRA_API_TOKEN)."""
    base_url: Optional[str] = None
    identity: Optional[str] = None
    credential: Optional[str] = None
    issue_type: str = "Task"

    def missing(self) -> List[str]:
        names = []
        if not self.base_url:
            names.append("JIRA_BASE_URL")
        if not self.identity:
            names.append("JIRA_EMAIL")
        if not self.credential:
            names.append("JIRA_API_TOKEN")
        return names

    @property
    def configured(self) -> bool:
        return not self.missing()


@dataclass(frozen=True)
class Settings:
    database_url: str = DEFAULT_DATABASE_URL
    database_echo: bool = False
    query_timeout_seconds: float = DEFAULT_QUERY_TIMEOUT_SECONDS
    connector_timeout_seconds: float = DEFAULT_CONNECTOR_TIMEOUT_SECONDS
    execution_lease_seconds: int = DEFAULT_EXECUTION_LEASE_SECONDS
    jira: JiraSettings = field(default_factory=JiraSettings)
    thresholds: RuleThresholds = field(default_factory=RuleThresholds)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if environ is None else environ

        thresholds = RuleThresholds()
        policy_file = env.get("GOVERNANCE_POLICY_FILE")
        if policy_file:
            policies = load_policy_file(Path(policy_file))
            thresholds = RuleThresholds.from_mapping(policies.get("thresholds") or {})

        return cls(
            database_url=env.get("GOVERNANCE_DB_URL", DEFAULT_DATABASE_URL),
            database_echo=env.get("GOVERNANCE_DB_ECHO", "").lower() == "true",
            query_timeout_seconds=_positive_float(
                env, "GOVERNANCE_QUERY_TIMEOUT_SECONDS", DEFAULT_QUERY_TIMEOUT_SECONDS
            ),
            connector_timeout_seconds=_positive_float(
                env, "GOVERNANCE_CONNECTOR_TIMEOUT_SECONDS", DEFAULT_CONNECTOR_TIMEOUT_SECONDS
            ),
            execution_lease_seconds=int(
                _positive_float(env, "GOVERNANCE_EXECUTION_LEASE_SECONDS", DEFAULT_EXECUTION_LEASE_SECONDS)
            ),
            jira=JiraSettings(
                base_url=(env.get("JIRA_BASE_URL") or "").rstrip("/") or None,
                identity=env.get("JIRA_EMAIL") or None,
                credential=env.get("JIRA_API_TOKEN") or None,
                issue_type=env.get("JIRA_ISSUE_TYPE", "Task"),
            ),
            thresholds=thresholds,
        )

    def with_thresholds(self, thresholds: RuleThresholds) -> "Settings":
        return replace(self, thresholds=thresholds)


def load_policy_file(path: Path) -> Dict[str, Any]:
    """Load a policy YAML file; multiple ``---`` documents are merged in order."""
    if not path.exists():
        raise ConfigurationError(f"Policy file not found: {path}")

    try:
        documents = [doc for doc in yaml.safe_load_all(path.read_text(encoding="utf-8")) if doc]
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Policy file {path} is not valid YAML: {e}") from e

    merged: Dict[str, Any] = {}
    for doc in documents:
        if isinstance(doc, dict):
            merged.update(doc)
        else:
            logger.warning("Ignoring non-mapping document in policy file %s", path)
    return merged


def _positive_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return float(default)
    try:
        value = float(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {raw!r}")
    return value
