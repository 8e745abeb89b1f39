"""
GovernanceEngine - turns raw data into Findings and Findings into proposals.

Philosophy: the engine is the DETECTOR, not the EXECUTOR.
- evaluate(): read-only; runs a Rule's scoped query and shapes matches into
  Findings, ordered by entity identifier
- propose(): pure transform Finding -> unsaved Action (state=proposed)
- One malformed record never masks other violations: it is skipped and
  reported as a degradation note on the result
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from governance_engine.adapters import DataSourceAdapter, get_path, _MISSING
from governance_engine.db import utcnow
from governance_engine.errors import (
    DataSourceUnavailableError,
    GovernanceError,
    InvalidInputError,
    RuleExecutionError,
)
from governance_engine.rules import DocumentRule, Rule, RuleRegistry, ThresholdRule
from governance_engine.schemas import Action, ActionKind, ActionState, ActionTemplate, Finding

logger = logging.getLogger(__name__)


@dataclass
class EvaluationResult:
    """Findings of one evaluation plus the records that had to be skipped."""
    rule_id: str
    findings: List[Finding]
    evaluated_at: datetime
    skipped: List[RuleExecutionError] = field(default_factory=list)
    observations: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return bool(self.skipped)

    def degradation_notes(self) -> List[str]:
        return [error.detail for error in self.skipped]

    def to_dict(self) -> dict:
        return {
            "rule_id": self.rule_id,
            "evaluated_at": self.evaluated_at.isoformat(),
            "findings": [f.model_dump(mode="json") for f in self.findings],
            "degraded": self.degraded,
            "degradation_notes": self.degradation_notes(),
            "observations": self.observations,
        }


def entity_sort_key(value: Any) -> Tuple[int, Any]:
    """Numbers sort numerically, everything else by its string form."""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return (0, value)
    return (1, str(value))


def compute_action_id(finding: Finding, kind: ActionKind, target_ref: str,
                      payload: Dict[str, Any], retry_of: Optional[str]) -> str:
    """Deterministic Action id: same finding + template -> same id."""
    canonical = json.dumps(
        {
            "rule_id": finding.rule_id,
            "entity_refs": list(finding.entity_refs),
            "kind": kind.value,
            "target_ref": target_ref,
            "payload": payload,
            "retry_of": retry_of,
        },
        sort_keys=True,
        default=str,
    )
    return "act_" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:20]


def _entity_key(finding: Finding, target_ref: str) -> Any:
    """Raw identifier for ``target_ref`` so filters match the stored type."""
    for ref, key in zip(finding.entity_refs, finding.entity_keys):
        if ref == target_ref:
            return key
    return target_ref


class GovernanceEngine:
    """
    Rule evaluation pipeline.

    Flow:
        1. registry.get(rule_id)
        2. scoped query / count against the data source (bounded by timeout)
        3. predicate + render per document -> Finding
        4. sort by entity identifier
    """

    def __init__(
        self,
        registry: RuleRegistry,
        query_timeout: float = 10.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.registry = registry
        self.query_timeout = query_timeout
        self._clock = clock

    async def evaluate(self, rule_id: str, data_source: DataSourceAdapter) -> EvaluationResult:
        """
        Evaluate one rule against ``data_source``.

        Raises:
            UnknownRuleError: rule_id not registered
            DataSourceUnavailableError: query timed out or the store failed
        """
        rule = self.registry.get(rule_id)
        evaluated_at = self._clock()

        if isinstance(rule, DocumentRule):
            result = await self._evaluate_documents(rule, data_source, evaluated_at)
        elif isinstance(rule, ThresholdRule):
            result = await self._evaluate_threshold(rule, data_source, evaluated_at)
        else:
            raise InvalidInputError(f"Unsupported rule variant: {type(rule).__name__}")

        if result.degraded:
            logger.warning(
                "Rule %s evaluated with %d skipped record(s): %s",
                rule_id, len(result.skipped), "; ".join(result.degradation_notes()),
            )
        logger.info("Rule %s produced %d finding(s)", rule_id, len(result.findings))
        return result

    async def _evaluate_documents(
        self,
        rule: DocumentRule,
        data_source: DataSourceAdapter,
        evaluated_at: datetime,
    ) -> EvaluationResult:
        projection = None
        if rule.projection:
            projection = list(dict.fromkeys([*rule.projection, rule.entity_field]))

        documents = await self._bounded(
            data_source.query(rule.scope, rule.filter, projection), rule, "query"
        )

        matches: List[Tuple[Any, str]] = []
        skipped: List[RuleExecutionError] = []
        for doc in documents:
            entity = get_path(doc, rule.entity_field)
            if entity is _MISSING or entity is None:
                skipped.append(RuleExecutionError(rule.id, None, f"missing entity field '{rule.entity_field}'"))
                continue
            try:
                if rule.predicate is not None and not rule.predicate(doc):
                    continue
                summary = rule.render(doc)
            except Exception as e:
                skipped.append(RuleExecutionError(rule.id, str(entity), f"{type(e).__name__}: {e}"))
                continue
            matches.append((entity, summary))

        matches.sort(key=lambda m: (entity_sort_key(m[0]), m[1]))
        findings = [
            Finding(
                rule_id=rule.id,
                entity_refs=(str(entity),),
                entity_keys=(entity,),
                detected_at=evaluated_at,
                summary=summary,
                severity=rule.severity,
            )
            for entity, summary in matches
        ]
        return EvaluationResult(
            rule_id=rule.id,
            findings=findings,
            evaluated_at=evaluated_at,
            skipped=skipped,
            observations={"scanned": len(documents)},
        )

    async def _evaluate_threshold(
        self,
        rule: ThresholdRule,
        data_source: DataSourceAdapter,
        evaluated_at: datetime,
    ) -> EvaluationResult:
        count = await self._bounded(data_source.count(rule.scope, rule.filter), rule, "count")
        result = EvaluationResult(
            rule_id=rule.id,
            findings=[],
            evaluated_at=evaluated_at,
            observations={"count": count, "threshold": rule.threshold},
        )
        if count <= rule.threshold:
            return result

        try:
            summary = rule.render(count, rule.threshold)
        except Exception as e:
            result.skipped.append(RuleExecutionError(rule.id, rule.scope, f"{type(e).__name__}: {e}"))
            return result

        result.findings.append(
            Finding(
                rule_id=rule.id,
                entity_refs=(rule.scope,),
                detected_at=evaluated_at,
                summary=summary,
                severity=rule.severity,
            )
        )
        return result

    async def _bounded(self, awaitable, rule: Rule, operation: str):
        try:
            return await asyncio.wait_for(awaitable, timeout=self.query_timeout)
        except asyncio.TimeoutError:
            raise DataSourceUnavailableError(
                f"{operation} on {rule.scope} for rule {rule.id} timed out after {self.query_timeout}s"
            ) from None
        except GovernanceError:
            raise
        except Exception as e:
            # Any other adapter failure (driver, auth) means the store is unavailable
            logger.error("%s on %s for rule %s failed: %s", operation, rule.scope, rule.id, e)
            raise DataSourceUnavailableError(
                f"{operation} on {rule.scope} failed: {type(e).__name__}: {e}"
            ) from e

    def propose(
        self,
        finding: Finding,
        template: ActionTemplate,
        retry_of: Optional[str] = None,
    ) -> Action:
        """
        Pure transform: Finding + template -> unsaved Action (state=proposed).

        Re-running with the same inputs yields the same Action id, so
        re-detecting an unchanged violation never creates a second proposal.
        ``retry_of`` marks a deliberate re-proposal of a failed Action.
        """
        if not finding.entity_refs and not template.target_ref:
            raise InvalidInputError("Finding has no entity refs and template has no target_ref")
        target_ref = template.target_ref or finding.entity_refs[0]

        if template.kind == ActionKind.CREATE_TICKET:
            payload = {
                "project_key": target_ref,
                "summary": finding.summary,
                "description": (
                    f"[{finding.severity.value}] {finding.rule_id}: {finding.summary}\n"
                    f"Entities: {', '.join(finding.entity_refs)}"
                ),
                **template.payload,
            }
        elif template.kind == ActionKind.UPDATE_DOCUMENT:
            payload = dict(template.payload)
            if "patch" not in payload:
                raise InvalidInputError("update_document template requires a 'patch'")
            rule = self.registry.get(finding.rule_id) if finding.rule_id in self.registry else None
            payload.setdefault("collection", rule.scope if rule else None)
            if payload["collection"] is None:
                raise InvalidInputError("update_document template requires a 'collection'")
            if "filter" not in payload:
                if not isinstance(rule, DocumentRule):
                    raise InvalidInputError("update_document template requires a 'filter'")
                payload["filter"] = {rule.entity_field: _entity_key(finding, target_ref)}
        else:
            raise InvalidInputError(f"Unsupported action kind: {template.kind}")

        action_id = compute_action_id(finding, template.kind, target_ref, payload, retry_of)
        return Action(
            id=action_id,
            kind=template.kind,
            target_ref=target_ref,
            payload=payload,
            state=ActionState.PROPOSED,
            rule_id=finding.rule_id,
            entity_refs=finding.entity_refs,
            summary=finding.summary,
            severity=finding.severity,
            retry_of=retry_of,
            created_at=finding.detected_at,
            last_transition_at=finding.detected_at,
        )
