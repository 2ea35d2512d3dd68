from __future__ import annotations

import base64
import logging

from adapters.confluence import WikiAdapter
from adapters.git import BranchAdapter
from adapters.jira import TicketAdapter
from attachments.attacher import AssetAttacher
from attachments.cache import ImageCache
from orchestrator.models import ContentPayload, StepId, StepStatus, WorkItemRequest
from orchestrator.orchestrator import OrchestratorPolicy, WorkItemOrchestrator
from rpc.errors import NetworkError, ToolError
from rpc.targets import TargetsConfig
from schemas import CreateIssueArgs

PNG = b"\x89PNG\r\n\x1a\nfake-image"


def make_orchestrator(transport, targets, *, attacher=None, policy=None) -> WorkItemOrchestrator:
    return WorkItemOrchestrator(
        targets=targets,
        tickets=TicketAdapter(transport),
        wiki=WikiAdapter(transport),
        branches=BranchAdapter(transport),
        attacher=attacher,
        policy=policy or OrchestratorPolicy(),
    )


def make_request(**overrides) -> WorkItemRequest:
    fields = dict(
        component_name="Primary Button",
        content=ContentPayload(ticket_description="Build it", impl_plan_body="## Steps\n1. Do it"),
        project_key="DS",
        wiki_space_key="DCUX",
        enable_active_creation=True,
    )
    fields.update(overrides)
    return WorkItemRequest(**fields)


def without_git(targets: TargetsConfig) -> TargetsConfig:
    return TargetsConfig(jira=targets.jira, confluence=targets.confluence, git=None)


def test_inactive_request_makes_no_calls(transport, all_targets):
    orch = make_orchestrator(transport, all_targets)

    result = orch.run(make_request(enable_active_creation=False)).to_dict()

    assert transport.calls == []
    assert set(result) == {"jira", "wiki", "qa", "git"}
    for entry in result.values():
        assert entry == {"status": "skipped", "reason": "active creation disabled"}


def test_full_run_creates_and_links_everything(transport, stub_store, all_targets):
    result = make_orchestrator(transport, all_targets).run(make_request())
    out = result.to_dict()

    assert [out[k]["status"] for k in ("jira", "wiki", "qa", "git")] == ["success"] * 4
    assert out["jira"]["key"] == "DS-1"
    assert out["jira"]["url"] == "http://stub.local/browse/DS-1"
    assert out["jira"]["links"]["status"] == "success"
    assert out["git"]["key"] == "feature/primary-button"
    assert out["qa"]["backpatched"] is True

    impl_body = stub_store.pages[out["wiki"]["id"]]["content"]
    assert "**Related Work:** [DS-1](http://stub.local/browse/DS-1)" in impl_body
    assert f"**QA Test Plan:** [QA Test Plan: Primary Button]({out['qa']['url']})" in impl_body
    assert "## Steps" in impl_body

    qa_body = stub_store.pages[out["qa"]["id"]]["content"]
    assert "**Ticket:** [DS-1](http://stub.local/browse/DS-1)" in qa_body
    assert f"**Implementation Plan:** [Implementation Plan: Primary Button]({out['wiki']['url']})" in qa_body
    assert "- [ ] Keyboard navigation" in qa_body

    description = stub_store.issues["DS-1"]["fields"]["description"]
    assert description.startswith("Build it")
    assert f"* Implementation Plan: [Implementation Plan: Primary Button|{out['wiki']['url']}]" in description
    assert f"* QA Test Plan: [QA Test Plan: Primary Button|{out['qa']['url']}]" in description
    assert [link["url"] for link in stub_store.remote_links] == [out["wiki"]["url"], out["qa"]["url"]]

    assert result.as_metadata() == {"metadata": {"orchestration": out}}


def test_missing_git_target_skips_branch_quietly(transport, all_targets, caplog):
    with caplog.at_level(logging.DEBUG):
        out = make_orchestrator(transport, without_git(all_targets)).run(make_request()).to_dict()

    assert out["git"]["status"] == "skipped"
    assert "error" not in out["git"]
    assert transport.tool_calls("git_create_branch") == []
    assert not [r for r in caplog.records if r.levelno >= logging.ERROR]
    assert out["jira"]["status"] == "success"


def test_ticket_failure_skips_cross_link_and_leaves_tbd(transport, stub_store, all_targets):
    transport.fail("jira_create_issue", ToolError("project DS does not exist"))

    result = make_orchestrator(transport, all_targets).run(make_request())
    out = result.to_dict()

    assert out["jira"]["status"] == "failed"
    assert out["jira"]["error"]["type"] == "TOOL_ERROR"
    assert out["jira"]["links"]["status"] == "skipped"
    assert result.steps[StepId.CROSS_LINK].status is StepStatus.SKIPPED
    assert transport.tool_calls("jira_update_issue") == []
    assert transport.tool_calls("jira_create_remote_issue_link") == []

    assert out["wiki"]["status"] == "success"
    impl_body = stub_store.pages[out["wiki"]["id"]]["content"]
    assert "**Related Work:** TBD" in impl_body
    assert "**Ticket:** TBD" in stub_store.pages[out["qa"]["id"]]["content"]


def test_qa_failure_still_links_ticket_with_tbd(transport, stub_store, all_targets):
    transport.fail_when(
        "confluence_create_page",
        lambda args: args["title"].startswith("QA Test Plan"),
        ToolError("space is read-only"),
    )

    out = make_orchestrator(transport, all_targets).run(make_request()).to_dict()

    assert out["qa"]["status"] == "failed"
    assert out["jira"]["status"] == "success"
    assert out["jira"]["links"]["status"] == "success"

    description = stub_store.issues["DS-1"]["fields"]["description"]
    assert f"* Implementation Plan: [Implementation Plan: Primary Button|{out['wiki']['url']}]" in description
    assert "* QA Test Plan: TBD" in description
    assert [link["url"] for link in stub_store.remote_links] == [out["wiki"]["url"]]
    assert "QA Test Plan" not in stub_store.pages[out["wiki"]["id"]]["content"]


def test_backpatch_failure_does_not_fail_qa_step(transport, all_targets):
    transport.fail_when("confluence_update_page", lambda args: True, NetworkError("wiki down"))

    result = make_orchestrator(transport, all_targets).run(make_request())
    out = result.to_dict()

    assert out["qa"]["status"] == "success"
    assert out["qa"]["backpatched"] is False
    assert result.qa.details["backpatch_error"]["type"] == "NETWORK_ERROR"


def test_everything_failing_still_returns_four_failed_entries(transport, all_targets):
    for tool in ("jira_create_issue", "confluence_create_page", "git_create_branch"):
        transport.fail_when(tool, lambda args: True, NetworkError("connection refused"))

    out = make_orchestrator(transport, all_targets).run(make_request()).to_dict()

    assert set(out) == {"jira", "wiki", "qa", "git"}
    for key in ("jira", "wiki", "qa", "git"):
        assert out[key]["status"] == "failed"
        assert out[key]["error"]["type"] == "NETWORK_ERROR"


def test_unexpected_exception_is_isolated_to_its_step(transport, all_targets):
    transport.fail("git_create_branch", RuntimeError("bug in branch tool"))

    out = make_orchestrator(transport, all_targets).run(make_request()).to_dict()

    assert out["git"]["status"] == "failed"
    assert out["git"]["error"]["type"] == "UNEXPECTED_ERROR"
    assert out["jira"]["status"] == "success"
    assert out["qa"]["status"] == "success"


def test_sequential_policy_runs_branch_last(transport, all_targets):
    policy = OrchestratorPolicy(parallel_branch=False)

    make_orchestrator(transport, all_targets, policy=policy).run(make_request())

    assert transport.calls[-1][0] == "git_create_branch"


def test_branch_name_and_repo_path_from_request(transport, all_targets):
    request = make_request(content=ContentPayload(branch_name="feat/custom"))

    out = make_orchestrator(transport, all_targets).run(request).to_dict()

    assert out["git"]["key"] == "feat/custom"
    assert transport.tool_calls("git_create_branch") == [
        {"name": "feat/custom", "repository_path": "/repos/design-system"}
    ]


def test_epic_link_failure_is_not_fatal(transport, stub_store, all_targets):
    transport.fail("jira_link_to_epic", ToolError("epic not found"))
    request = make_request(content=ContentPayload(epic_key="DS-100"))

    out = make_orchestrator(transport, all_targets).run(request).to_dict()

    assert out["jira"]["status"] == "success"
    assert stub_store.epic_links == {}


class RejectingHttp:
    """Direct uploads always answer 401."""

    def post(self, url, headers=None, files=None, timeout=None):
        return _Unauthorized()


class _Unauthorized:
    status_code = 401
    text = "Unauthorized"

    def close(self) -> None:
        pass


def test_image_attached_through_fallback_and_embedded(transport, stub_store, all_targets):
    attacher = AssetAttacher(transport, ImageCache(ttl_s=300), all_targets, http=RejectingHttp())
    image = "data:image/png;base64," + base64.b64encode(PNG).decode()

    out = make_orchestrator(transport, all_targets, attacher=attacher).run(make_request(image=image)).to_dict()

    assert out["jira"]["status"] == "success"
    assert out["jira"]["attachment"] == {"attached": True, "method": "fallback", "filename": "preview-primary-button.png"}
    description = stub_store.issues["DS-1"]["fields"]["description"]
    assert "!preview-primary-button.png|thumbnail!" in description
    assert "h2. Related Resources" in description

    impl_body = stub_store.pages[out["wiki"]["id"]]["content"]
    assert "![Design Preview](preview-primary-button.png)" in impl_body
    assert "**QA Test Plan:**" in impl_body
    assert len(stub_store.attachments) == 3


def test_trace_lines_follow_policy(transport, all_targets, caplog):
    with caplog.at_level(logging.INFO, logger="orchestrator.orchestrator"):
        make_orchestrator(transport, all_targets, policy=OrchestratorPolicy(trace=True)).run(make_request())
    assert any(r.getMessage().startswith("[ORCH] wave:") for r in caplog.records)

    caplog.clear()
    quiet = make_orchestrator(transport, all_targets, policy=OrchestratorPolicy(trace=False))
    with caplog.at_level(logging.INFO, logger="orchestrator.orchestrator"):
        quiet.run(make_request(component_name="Card"))
    assert not any(r.getMessage().startswith("[ORCH]") for r in caplog.records)


def seed_ticket(store, summary: str, description: str = "") -> str:
    return store.create_issue(CreateIssueArgs(project_key="DS", summary=summary, description=description))["issue"]["key"]


def test_open_ticket_with_same_summary_is_reused(transport, stub_store, all_targets):
    key = seed_ticket(stub_store, "Implement Primary Button", "Written by hand")
    attacher = AssetAttacher(transport, ImageCache(ttl_s=300), all_targets, http=RejectingHttp())
    request = make_request(
        content=ContentPayload(ticket_description="Build it", epic_key="DS-100"),
        image="data:image/png;base64," + base64.b64encode(PNG).decode(),
    )

    out = make_orchestrator(transport, all_targets, attacher=attacher).run(request).to_dict()

    assert out["jira"]["status"] == "success"
    assert out["jira"]["key"] == key
    assert out["jira"]["existing"] is True
    assert "attachment" not in out["jira"]
    assert transport.tool_calls("jira_create_issue") == []
    assert transport.tool_calls("jira_link_to_epic") == []
    assert 'summary ~ "\\"Implement Primary Button\\""' in transport.tool_calls("jira_search")[0]["jql"]

    description = stub_store.issues[key]["fields"]["description"]
    assert description.startswith("Written by hand\n\nh2. Related Resources\n")
    assert "**Related Work:** [DS-1]" in stub_store.pages[out["wiki"]["id"]]["content"]


def test_done_ticket_is_not_reused(transport, stub_store, all_targets):
    old = seed_ticket(stub_store, "Implement Primary Button")
    stub_store.issues[old]["fields"]["status"] = {"name": "Done", "statusCategory": {"key": "done", "name": "Done"}}

    out = make_orchestrator(transport, all_targets).run(make_request()).to_dict()

    assert out["jira"]["key"] != old
    assert "existing" not in out["jira"]
    assert len(transport.tool_calls("jira_create_issue")) == 1


def test_failed_duplicate_check_still_creates_ticket(transport, all_targets, caplog):
    transport.fail("jira_search", NetworkError("search unavailable"))

    with caplog.at_level(logging.WARNING):
        out = make_orchestrator(transport, all_targets).run(make_request()).to_dict()

    assert out["jira"]["status"] == "success"
    assert len(transport.tool_calls("jira_create_issue")) == 1
    assert any("Duplicate ticket check failed" in r.getMessage() for r in caplog.records)


def test_cross_link_keeps_authored_description_sections(transport, stub_store, all_targets):
    authored = (
        "Intro\n\n"
        "h2. Related Resources\n* Figma spec: [Button|https://figma/file/1]\n\n"
        "h2. Acceptance Criteria\n* Must work"
    )
    request = make_request(content=ContentPayload(ticket_description=authored))

    out = make_orchestrator(transport, all_targets).run(request).to_dict()

    description = stub_store.issues[out["jira"]["key"]]["fields"]["description"]
    assert description.startswith(authored)
    assert "h2. Acceptance Criteria\n* Must work" in description
    assert f"* QA Test Plan: [QA Test Plan: Primary Button|{out['qa']['url']}]" in description
