"""TicketConnector: Jira REST v3 issue creation (POST /rest/api/3/issue, basic auth)."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from governance_engine.config import JiraSettings
from governance_engine.errors import ConnectorUnconfiguredError, ExecutionError, InvalidInputError
from governance_engine.schemas import Action, ExecutionOutcome

logger = logging.getLogger(__name__)

ISSUE_PATH = "/rest/api/3/issue"
SUMMARY_MAX_LENGTH = 100
ERROR_TEXT_TRUNCATE = 300


def build_issue(project_key: str, summary: Optional[str], description: str, issue_type: str = "Task") -> Dict[str, Any]:
    """Jira issue body; summary falls back to the description's first line."""
    title = (summary or description.split("\n")[0]).strip()[:SUMMARY_MAX_LENGTH]
    return {
        "fields": {
            "project": {"key": project_key},
            "summary": title or f"Governance issue for {project_key}",
            "description": description,
            "issuetype": {"name": issue_type},
        }
    }


class TicketConnector:
    """Creates one Jira issue per executed Action."""

    name = "jira"

    def __init__(
        self,
        settings: JiraSettings,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.settings = settings
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return self.settings.configured

    def missing_configuration(self) -> List[str]:
        return self.settings.missing()

    async def create_ticket(self, project_key: str, summary: Optional[str], description: str) -> Dict[str, Any]:
        """
        Create the issue.

        Returns:
            {"ticket_key", "ticket_id", "url"}

        Raises:
            ConnectorUnconfiguredError: settings missing (no request is sent)
            ExecutionError: timeout, network failure, non-2xx or malformed response
        """
        missing = self.missing_configuration()
        if missing:
            raise ConnectorUnconfiguredError(self.name, missing)
        if not project_key:
            raise InvalidInputError("project_key is required")

        body = build_issue(project_key, summary, description, self.settings.issue_type)
        try:
            async with httpx.AsyncClient(
                base_url=self.settings.base_url,
                auth=httpx.BasicAuth(self.settings.identity, self.settings.credential),
                timeout=self.timeout,
                transport=self._transport,
            ) as client:
                response = await client.post(
                    ISSUE_PATH,
                    json=body,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as e:
            logger.warning("jira request timeout project=%s: %s", project_key, e)
            raise ExecutionError(f"Jira request timed out: {e}", retryable=True) from e
        except httpx.RequestError as e:
            logger.warning("jira network error project=%s: %s", project_key, e)
            raise ExecutionError(f"Jira request failed: {e}", retryable=True) from e

        if not response.is_success:
            text = (response.text or "")[:ERROR_TEXT_TRUNCATE]
            retryable = response.status_code >= 500 or response.status_code == 429
            logger.warning(
                "jira create issue failed project=%s status=%s retryable=%s",
                project_key, response.status_code, retryable,
            )
            raise ExecutionError(
                f"Failed to create Jira ticket: {response.status_code} {response.reason_phrase}. {text}".strip(),
                retryable=retryable,
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ExecutionError("Jira returned a non-JSON response", status_code=response.status_code) from e

        ticket_key = (data.get("key") or data.get("id")) if isinstance(data, dict) else None
        if not ticket_key:
            raise ExecutionError("Jira response has no issue key", status_code=response.status_code)

        logger.info("jira ticket created project=%s key=%s", project_key, ticket_key)
        return {
            "ticket_key": str(ticket_key),
            "ticket_id": data.get("id"),
            "url": f"{self.settings.base_url}/browse/{ticket_key}",
        }

    async def execute(self, action: Action) -> ExecutionOutcome:
        payload = action.payload
        result = await self.create_ticket(
            project_key=payload.get("project_key") or action.target_ref,
            summary=payload.get("summary"),
            description=payload.get("description") or action.summary,
        )
        return ExecutionOutcome(
            success=True,
            result=result,
            message=f"Jira ticket created successfully: {result['ticket_key']}.",
        )
