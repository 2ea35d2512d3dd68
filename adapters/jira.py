from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from adapters.base import ToolCaller, as_obj, first_str, origin
from orchestrator.models import ArtifactKind, ArtifactReference
from rpc.errors import ValidationError
from schemas import (
    CreateIssueArgs,
    LinkToEpicArgs,
    RemoteIssueLinkArgs,
    SearchIssuesArgs,
    UpdateIssueArgs,
    tool_args,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RemoteLink:
    url: str
    title: str
    relationship: str = "Wiki Page"


@dataclass(frozen=True)
class OpenTicket:
    reference: ArtifactReference
    description: str


class TicketAdapter:
    """Jira tools behind the transport: search, create, update description, remote links, epic link."""

    def __init__(self, transport: ToolCaller) -> None:
        self.transport = transport

    def create_ticket(
        self,
        *,
        project_key: str,
        summary: str,
        description: str = "",
        issue_type: str = "Task",
        assignee: Optional[str] = None,
        additional_fields: Optional[Dict[str, Any]] = None,
    ) -> ArtifactReference:
        args = tool_args(
            CreateIssueArgs,
            project_key=project_key,
            summary=summary,
            description=description,
            issue_type=issue_type,
            assignee=assignee,
            additional_fields=additional_fields or {},
        )
        logger.info("Creating ticket in %s: %s", project_key, summary)
        result = self.transport.call_tool("jira_create_issue", args)
        ref = parse_ticket(result, summary=summary)
        logger.info("Ticket created: %s", ref.key)
        return ref

    def find_open_ticket(self, project_key: str, summary: str) -> Optional[OpenTicket]:
        """First not-done ticket in `project_key` whose summary matches `summary` as a phrase."""
        phrase = summary.replace("\\", "\\\\").replace('"', '\\"')
        jql = f'project = "{project_key}" AND summary ~ "\\"{phrase}\\"" AND statusCategory != Done'
        result = self.transport.call_tool("jira_search", tool_args(SearchIssuesArgs, jql=jql, limit=1))

        issues = as_obj(result).get("issues")
        if not isinstance(issues, list) or not issues:
            return None
        issue = as_obj(issues[0])
        ref = parse_ticket(issue, summary=summary)
        description = as_obj(issue.get("fields")).get("description")
        return OpenTicket(reference=ref, description=description if isinstance(description, str) else "")

    def update_description(self, ticket_key: str, description: str) -> None:
        self.transport.call_tool(
            "jira_update_issue",
            tool_args(UpdateIssueArgs, issue_key=ticket_key, fields={"description": description}),
        )

    def add_remote_links(self, ticket_key: str, links: List[RemoteLink]) -> None:
        for link in links:
            logger.info("Linking %s to %s", ticket_key, link.title)
            self.transport.call_tool(
                "jira_create_remote_issue_link",
                tool_args(
                    RemoteIssueLinkArgs,
                    issue_key=ticket_key,
                    url=link.url,
                    title=link.title,
                    relationship=link.relationship,
                ),
            )

    def link_to_epic(self, ticket_key: str, epic_key: str) -> None:
        self.transport.call_tool(
            "jira_link_to_epic",
            tool_args(LinkToEpicArgs, issue_key=ticket_key, epic_key=epic_key),
        )


def parse_ticket(result: Any, *, summary: Optional[str] = None) -> ArtifactReference:
    """
    Accepts {"issue": {...}} or a bare issue object.
    Browse URLs are preferred; REST API URLs are rewritten to <origin>/browse/<KEY>.
    """
    body = as_obj(result)
    issue = as_obj(body.get("issue")) or body

    key = first_str(issue.get("key"))
    if key is None:
        raise ValidationError("Ticket response is missing 'key'", details={"body": result})

    self_url = first_str(issue.get("self"))
    url = first_str(issue.get("url"), issue.get("browse_url"), body.get("url"))

    if url and "/rest/api/" in url:
        url = f"{origin(url)}/browse/{key}"
    if not url and self_url:
        url = f"{origin(self_url)}/browse/{key}"
    if not url:
        raise ValidationError(f"Ticket response for {key} has no usable URL", details={"body": result})

    return ArtifactReference(
        kind=ArtifactKind.TICKET,
        id=first_str(issue.get("id")),
        key=key,
        url=url,
        title=first_str(as_obj(issue.get("fields")).get("summary"), issue.get("summary"), summary),
        self_url=self_url,
    )
