from __future__ import annotations

import logging
import re
from typing import Any, Optional

from adapters.base import ToolCaller, as_obj, first_str
from orchestrator.models import ArtifactKind, ArtifactReference
from rpc.errors import ValidationError
from schemas import CreateBranchArgs, tool_args

logger = logging.getLogger(__name__)


class BranchAdapter:
    def __init__(self, transport: ToolCaller) -> None:
        self.transport = transport

    def create_branch(self, repo_target: Optional[str], branch_name: str) -> ArtifactReference:
        logger.info("Creating branch %s", branch_name)
        result = self.transport.call_tool(
            "git_create_branch",
            tool_args(CreateBranchArgs, name=branch_name, repository_path=repo_target),
        )
        return parse_branch(result, branch_name=branch_name)


def branch_name_for(component_name: str, prefix: str = "feature") -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", component_name.lower()).strip("-")
    if not slug:
        raise ValueError(f"Cannot derive a branch name from {component_name!r}")
    return f"{prefix}/{slug}"


def parse_branch(result: Any, *, branch_name: str) -> ArtifactReference:
    """
    Git tool servers answer either with an object ({"name"|"branch"|"ref", "sha", "url"})
    or with a confirmation sentence that names the branch.
    """
    if isinstance(result, str):
        if branch_name not in result:
            raise ValidationError("Branch response does not mention the branch", details={"body": result})
        return ArtifactReference(kind=ArtifactKind.BRANCH, id=branch_name, key=branch_name, url=None)

    body = as_obj(result)
    branch = as_obj(body.get("branch")) or body
    name = first_str(branch.get("name"), body.get("branch"), branch.get("ref"))
    if name is None:
        raise ValidationError("Branch response is missing the branch name", details={"body": result})
    if name.startswith("refs/heads/"):
        name = name[len("refs/heads/"):]

    commit = as_obj(branch.get("commit"))
    return ArtifactReference(
        kind=ArtifactKind.BRANCH,
        id=first_str(branch.get("sha"), commit.get("sha"), name),
        key=name,
        url=first_str(branch.get("url"), branch.get("web_url"), branch.get("html_url")),
    )
