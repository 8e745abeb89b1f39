"""
Rule model and RuleRegistry.

A Rule is one of two tagged variants evaluated by a single generic path in
GovernanceEngine:

- DocumentRule ("document"): every matching document is a violation.
  ``filter`` is pushed to the data source; ``predicate`` optionally refines
  per document; ``render`` describes one match.
- ThresholdRule ("threshold"): the collection as a whole violates when the
  number of matching documents exceeds ``threshold``.

Rules are immutable once registered; the registry itself is frozen after
startup.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Callable, ClassVar, Dict, List, Mapping, Optional, Tuple, Union

from governance_engine.config import RuleThresholds
from governance_engine.errors import DuplicateRuleError, RegistryFrozenError, UnknownRuleError
from governance_engine.schemas import Severity

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass(frozen=True, eq=False)
class DocumentRule:
    id: str
    scope: str
    severity: Severity
    render: Callable[[Document], str]
    filter: Mapping[str, Any] = field(default_factory=dict)
    predicate: Optional[Callable[[Document], bool]] = None
    entity_field: str = "_id"
    projection: Optional[Tuple[str, ...]] = None
    description: str = ""
    violation_heading: str = ""
    clean_message: str = ""

    kind: ClassVar[str] = "document"


@dataclass(frozen=True, eq=False)
class ThresholdRule:
    id: str
    scope: str
    severity: Severity
    threshold: int
    render: Callable[[int, int], str]
    filter: Mapping[str, Any] = field(default_factory=dict)
    description: str = ""
    clean_message: str = ""

    kind: ClassVar[str] = "threshold"


Rule = Union[DocumentRule, ThresholdRule]


class RuleRegistry:
    """Known Rules keyed by id, in registration order."""

    def __init__(self, rules: Optional[List[Rule]] = None):
        self._rules: "OrderedDict[str, Rule]" = OrderedDict()
        self._frozen = False
        for rule in rules or []:
            self.register(rule)

    def register(self, rule: Rule) -> None:
        if self._frozen:
            raise RegistryFrozenError(f"Cannot register {rule.id}: registry is frozen")
        if rule.id in self._rules:
            raise DuplicateRuleError(rule.id)
        self._rules[rule.id] = rule
        logger.debug("Registered rule %s (%s, scope=%s)", rule.id, rule.kind, rule.scope)

    def get(self, rule_id: str) -> Rule:
        try:
            return self._rules[rule_id]
        except KeyError:
            raise UnknownRuleError(rule_id) from None

    def list(self) -> List[Rule]:
        return list(self._rules.values())

    def freeze(self) -> "RuleRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, rule_id: object) -> bool:
        return rule_id in self._rules

    def __len__(self) -> int:
        return len(self._rules)


# ==================== Built-in policy catalog ====================

def _date_part(value: Any) -> str:
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, str):
        return value.split("T")[0]
    return str(value)


def _render_zombie(doc: Document) -> str:
    scraped = doc.get("last_scraped")
    if scraped is None:
        return str(doc["_id"])
    return f"{doc['_id']} (last_scraped: {_date_part(scraped)})"


def builtin_rules(thresholds: Optional[RuleThresholds] = None) -> List[Rule]:
    """The standard governance checks; every cutoff comes from ``thresholds``."""
    t = thresholds or RuleThresholds()
    cutoff = t.zombie_cutoff.isoformat()

    return [
        DocumentRule(
            id="detect_drift",
            scope="projects",
            severity=Severity.CRITICAL,
            filter={"status": "deployed", "has_audit_log": False},
            entity_field="project_id",
            projection=("project_id", "status", "has_audit_log"),
            render=lambda doc: str(doc["project_id"]),
            description="Detect projects marked as deployed without audit logs (Design-Code Drift).",
            violation_heading="Design-Code Drift detected in the following projects:",
            clean_message="No SDLC drift detected. All deployed projects have audit logs.",
        ),
        DocumentRule(
            id="detect_pii_violations",
            scope="sample_mflix.users",
            severity=Severity.CRITICAL,
            filter={"email": {"$exists": True}},
            render=lambda doc: str(doc["_id"]),
            description="Detect PII violations by finding users in sample_mflix.users that have an email field.",
            violation_heading="Documents with PII (email field) in sample_mflix.users:",
            clean_message="No PII violations detected in sample_mflix.users.",
        ),
        DocumentRule(
            id="detect_zombie_assets",
            scope="sample_airbnb.listingsAndReviews",
            severity=Severity.WARNING,
            filter={"last_scraped": {"$lt": t.zombie_cutoff}},
            projection=("last_scraped",),
            render=_render_zombie,
            description=f"Detect zombie Airbnb listings (last_scraped older than {cutoff}).",
            violation_heading=f"Zombie Airbnb listings (last_scraped < {cutoff}):",
            clean_message="No zombie Airbnb listings detected.",
        ),
        DocumentRule(
            id="detect_unverified_deployments",
            scope="sample_mflix.movies",
            severity=Severity.WARNING,
            filter={"year": {"$gt": t.unverified_after_year}, "tomatoes.viewer.numReviews": 0},
            projection=("title",),
            render=lambda doc: str(doc.get("title") or doc["_id"]),
            description=(
                f"Detect movies from year > {t.unverified_after_year} in sample_mflix.movies "
                "with zero viewer reviews."
            ),
            violation_heading=(
                f"Unverified deployments (movies from >{t.unverified_after_year} with zero viewer reviews):"
            ),
            clean_message="No unverified movie deployments detected.",
        ),
        ThresholdRule(
            id="detect_performance_bottlenecks",
            scope="sample_weatherdata.data",
            severity=Severity.WARNING,
            threshold=t.bottleneck_document_count,
            render=lambda count, threshold: (
                f"Performance bottleneck detected: sample_weatherdata.data contains {count} documents "
                f"which exceeds the {threshold:,} document threshold."
            ),
            description="Detect performance bottlenecks by counting documents in sample_weatherdata.data.",
            clean_message="No performance bottleneck detected: sample_weatherdata.data contains {count} documents.",
        ),
        DocumentRule(
            id="detect_legacy_config",
            scope="sample_supplies.sales",
            severity=Severity.INFO,
            filter={"storeLocation": t.legacy_store_location},
            render=lambda doc: str(doc["_id"]),
            description=(
                "Detect legacy configuration entries in sample_supplies.sales where "
                f"storeLocation is '{t.legacy_store_location}'."
            ),
            violation_heading=(
                f"Legacy configuration entries detected (storeLocation '{t.legacy_store_location}'):"
            ),
            clean_message="No legacy configuration entries detected in sample_supplies.sales.",
        ),
        DocumentRule(
            id="audit_orphaned_accounts",
            scope="sample_analytics.customers",
            severity=Severity.WARNING,
            filter={"accounts": {"$size": 0}},
            projection=("name",),
            render=lambda doc: str(doc.get("name") or doc["_id"]),
            description=(
                "Audit for orphaned customer accounts in sample_analytics.customers "
                "where the accounts array is empty."
            ),
            violation_heading="Orphaned customer accounts detected (no associated accounts):",
            clean_message="No orphaned customer accounts detected.",
        ),
    ]


def default_registry(thresholds: Optional[RuleThresholds] = None) -> RuleRegistry:
    """Registry holding the built-in rules, frozen."""
    return RuleRegistry(builtin_rules(thresholds)).freeze()
