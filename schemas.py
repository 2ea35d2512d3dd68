# schemas.py

from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class CreateIssueArgs(BaseModel):
    project_key: str
    summary: str
    description: str = ""
    issue_type: str = Field(default="Task")
    assignee: Optional[str] = None
    additional_fields: Dict[str, Any] = Field(default_factory=dict)


class SearchIssuesArgs(BaseModel):
    jql: str
    limit: int = 1
    fields: str = Field(default="summary,status,description")


class UpdateIssueArgs(BaseModel):
    issue_key: str
    fields: Dict[str, Any]


class GetIssueArgs(BaseModel):
    issue_key: str


class LinkToEpicArgs(BaseModel):
    issue_key: str
    epic_key: str


class RemoteIssueLinkArgs(BaseModel):
    issue_key: str
    url: str
    title: str
    relationship: str = Field(default="Wiki Page")


class AddIssueAttachmentArgs(BaseModel):
    issue_key: str
    file_path: str


class CreatePageArgs(BaseModel):
    title: str
    space_key: str
    content: str
    parent_id: Optional[str] = None
    content_format: str = Field(default="markdown")


class UpdatePageArgs(BaseModel):
    page_id: str
    title: str
    content: str
    # Rejected by some servers; stripped per target by the transport shims.
    version: Optional[int] = None
    content_format: Optional[str] = Field(default="markdown")


class GetPageArgs(BaseModel):
    title: Optional[str] = None
    space_key: Optional[str] = None
    page_id: Optional[str] = None


class AddPageAttachmentArgs(BaseModel):
    page_id: str
    file_path: str


class CreateBranchArgs(BaseModel):
    name: str
    repository_path: Optional[str] = None


def tool_args(model: type[BaseModel], **kwargs: Any) -> Dict[str, Any]:
    """Validate arguments through `model` and dump them without empty optionals."""
    return model(**kwargs).model_dump(exclude_none=True)
