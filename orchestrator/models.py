from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import config
from rpc.errors import RpcError

JsonObj = Dict[str, Any]


class StepId(str, Enum):
    TICKET = "A"
    IMPL_PLAN = "B"
    QA_PLAN = "E"
    CROSS_LINK = "C"
    BRANCH = "D"


class StepStatus(str, Enum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    FAILED = "failed"


class ArtifactKind(str, Enum):
    TICKET = "ticket"
    IMPL_PLAN = "implPlan"
    QA_PLAN = "qaPlan"
    BRANCH = "branch"


@dataclass(frozen=True)
class ArtifactReference:
    kind: ArtifactKind
    id: Optional[str]
    key: Optional[str]
    url: Optional[str]
    title: Optional[str] = None
    self_url: Optional[str] = None  # native REST link, used for direct uploads

    def to_dict(self) -> JsonObj:
        out: JsonObj = {"kind": self.kind.value}
        for name in ("id", "key", "url", "title"):
            value = getattr(self, name)
            if value is not None:
                out[name] = value
        return out


@dataclass(frozen=True)
class ErrorInfo:
    type: str
    message: str
    code: Optional[int] = None
    details: JsonObj = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        if isinstance(exc, RpcError):
            return cls(type=exc.error_type, message=exc.message, code=exc.code, details=dict(exc.details))
        return cls(type="UNEXPECTED_ERROR", message=f"{type(exc).__name__}: {exc}")

    def to_dict(self) -> JsonObj:
        out: JsonObj = {"type": self.type, "message": self.message}
        if self.code is not None:
            out["code"] = self.code
        if self.details:
            out["details"] = self.details
        return out


@dataclass(frozen=True)
class StepResult:
    step: StepId
    status: StepStatus
    reference: Optional[ArtifactReference] = None
    error: Optional[ErrorInfo] = None
    details: JsonObj = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status is StepStatus.SUCCESS

    @classmethod
    def success(cls, step: StepId, reference: Optional[ArtifactReference] = None, **details: Any) -> "StepResult":
        return cls(step=step, status=StepStatus.SUCCESS, reference=reference, details=details)

    @classmethod
    def failed(cls, step: StepId, exc: BaseException, **details: Any) -> "StepResult":
        return cls(step=step, status=StepStatus.FAILED, error=ErrorInfo.from_exception(exc), details=details)

    @classmethod
    def skipped(cls, step: StepId, reason: str) -> "StepResult":
        return cls(step=step, status=StepStatus.SKIPPED, details={"reason": reason})


@dataclass(frozen=True)
class ContentPayload:
    """
    Pre-rendered artifact content. Generated elsewhere; this package only adds
    cross-links to it.
    """
    ticket_title: Optional[str] = None
    ticket_description: str = ""
    issue_type: str = "Task"
    assignee: Optional[str] = None
    epic_key: Optional[str] = None
    additional_fields: JsonObj = field(default_factory=dict)
    impl_plan_title: Optional[str] = None
    impl_plan_body: str = ""
    qa_plan_title: Optional[str] = None
    qa_plan_body: Optional[str] = None
    branch_name: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ContentPayload":
        data = dict(data or {})
        ticket = dict(data.get("ticket") or {})
        impl = dict(data.get("impl_plan") or {})
        qa = dict(data.get("qa_plan") or {})
        return cls(
            ticket_title=ticket.get("title"),
            ticket_description=str(ticket.get("description") or ""),
            issue_type=str(ticket.get("issue_type") or "Task"),
            assignee=ticket.get("assignee"),
            epic_key=ticket.get("epic_key"),
            additional_fields=dict(ticket.get("additional_fields") or {}),
            impl_plan_title=impl.get("title"),
            impl_plan_body=str(impl.get("body") or ""),
            qa_plan_title=qa.get("title"),
            qa_plan_body=qa.get("body"),
            branch_name=data.get("branch_name"),
        )


@dataclass(frozen=True)
class WorkItemRequest:
    component_name: str
    content: ContentPayload = field(default_factory=ContentPayload)
    project_key: str = config.JIRA_PROJECT_KEY
    wiki_space_key: str = config.CONFLUENCE_SPACE_KEY
    wiki_parent_id: Optional[str] = None
    image: Optional[str] = None  # data URL, base64, http(s) URL or local path
    design_url: Optional[str] = None
    enable_active_creation: bool = False

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkItemRequest":
        name = str(data.get("component_name") or "").strip()
        if not name:
            raise ValueError("component_name is required")
        return cls(
            component_name=name,
            content=ContentPayload.from_dict(data.get("content")),
            project_key=str(data.get("project_key") or config.JIRA_PROJECT_KEY),
            wiki_space_key=str(data.get("wiki_space_key") or config.CONFLUENCE_SPACE_KEY),
            wiki_parent_id=(data.get("wiki_parent_id") or config.CONFLUENCE_PARENT_ID or None),
            image=data.get("image"),
            design_url=data.get("design_url"),
            enable_active_creation=bool(data.get("enable_active_creation", False)),
        )


@dataclass(frozen=True)
class OrchestrationResult:
    """
    Terminal snapshot handed back to the caller. Always carries all four entries.
    `steps` keeps every recorded StepResult, including the cross-link step.
    """
    jira: StepResult
    wiki: StepResult
    qa: StepResult
    git: StepResult
    steps: Dict[StepId, StepResult] = field(default_factory=dict)

    def to_dict(self) -> JsonObj:
        jira = _entry(self.jira)
        links = self.steps.get(StepId.CROSS_LINK)
        if links is not None:
            jira["links"] = _entry(links)

        qa = _entry(self.qa)
        if "backpatched" in self.qa.details:
            qa["backpatched"] = bool(self.qa.details["backpatched"])

        return {
            "jira": jira,
            "wiki": _entry(self.wiki),
            "qa": qa,
            "git": _entry(self.git),
        }

    def as_metadata(self) -> JsonObj:
        return {"metadata": {"orchestration": self.to_dict()}}


def _entry(result: StepResult) -> JsonObj:
    out: JsonObj = {"status": result.status.value}
    ref = result.reference
    if ref is not None:
        if ref.url:
            out["url"] = ref.url
        if ref.key:
            out["key"] = ref.key
        if ref.id:
            out["id"] = ref.id
        if ref.title:
            out["title"] = ref.title
    if result.error is not None:
        out["error"] = result.error.to_dict()
    if "reason" in result.details:
        out["reason"] = result.details["reason"]
    if result.details.get("existing"):
        out["existing"] = True
    if "attachment" in result.details:
        out["attachment"] = result.details["attachment"]
    return out
