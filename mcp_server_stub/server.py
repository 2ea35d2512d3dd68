from __future__ import annotations

import itertools
import json
import re
import threading
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from fastapi import FastAPI, Response
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from schemas import (
    AddIssueAttachmentArgs,
    AddPageAttachmentArgs,
    CreateBranchArgs,
    CreateIssueArgs,
    CreatePageArgs,
    GetIssueArgs,
    GetPageArgs,
    LinkToEpicArgs,
    RemoteIssueLinkArgs,
    SearchIssuesArgs,
    UpdateIssueArgs,
    UpdatePageArgs,
)

JsonObj = Dict[str, Any]

PROTOCOL_VERSION = "2024-11-05"
BASE_URL = "http://stub.local"

_JQL_PROJECT = re.compile(r'project\s*=\s*"([^"]+)"')
_JQL_SUMMARY = re.compile(r'summary\s*~\s*"\\"((?:[^"\\]|\\.)*)\\""')


def _jql_unescape(text: str) -> str:
    return re.sub(r"\\(.)", r"\1", text)


# ---- JSON-RPC models ----

class JsonRpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: Optional[Union[str, int]] = None
    method: str
    params: Dict[str, Any] = Field(default_factory=dict)


class ToolDef(BaseModel):
    name: str
    description: str = ""
    inputSchema: Dict[str, Any]


class StubToolError(Exception):
    pass


# ---- In-memory systems ----

class StubStore:
    """
    Jira, Confluence and git in memory. Artifacts stay readable so tests can
    re-read what the orchestrator wrote.
    """

    def __init__(self, base_url: str = BASE_URL) -> None:
        self.base_url = base_url
        self.issues: Dict[str, JsonObj] = {}
        self.pages: Dict[str, JsonObj] = {}
        self.branches: Dict[str, JsonObj] = {}
        self.remote_links: List[JsonObj] = []
        self.epic_links: Dict[str, str] = {}
        self.attachments: List[JsonObj] = []
        self.calls: List[Tuple[str, JsonObj]] = []
        self._ids = itertools.count(10001)
        self.lock = threading.Lock()

    # -- jira --

    def create_issue(self, args: CreateIssueArgs) -> JsonObj:
        issue_id = str(next(self._ids))
        key = f"{args.project_key}-{len(self.issues) + 1}"
        issue = {
            "id": issue_id,
            "key": key,
            "self": f"{self.base_url}/rest/api/2/issue/{issue_id}",
            "fields": {
                "summary": args.summary,
                "description": args.description,
                "issuetype": {"name": args.issue_type},
                "status": {"name": "To Do", "statusCategory": {"key": "new", "name": "To Do"}},
            },
        }
        self.issues[key] = issue
        return {"issue": {**issue, "url": f"{self.base_url}/browse/{key}"}}

    def update_issue(self, args: UpdateIssueArgs) -> JsonObj:
        issue = self._issue(args.issue_key)
        issue["fields"].update(args.fields)
        return {"issue": issue}

    def get_issue(self, args: GetIssueArgs) -> JsonObj:
        return {"issue": self._issue(args.issue_key)}

    def search_issues(self, args: SearchIssuesArgs) -> JsonObj:
        # understands the project / summary phrase / statusCategory clauses only
        project = _JQL_PROJECT.search(args.jql)
        phrase = _JQL_SUMMARY.search(args.jql)
        skip_done = "statuscategory != done" in args.jql.lower()

        found = []
        for issue in self.issues.values():
            fields = issue["fields"]
            if project and not issue["key"].startswith(project.group(1) + "-"):
                continue
            if phrase and _jql_unescape(phrase.group(1)).lower() not in str(fields.get("summary", "")).lower():
                continue
            if skip_done and fields["status"]["statusCategory"]["key"] == "done":
                continue
            found.append({**issue, "url": f"{self.base_url}/browse/{issue['key']}"})
        return {"total": len(found), "issues": found[: args.limit]}

    def link_to_epic(self, args: LinkToEpicArgs) -> JsonObj:
        self._issue(args.issue_key)
        self.epic_links[args.issue_key] = args.epic_key
        return {"success": True}

    def create_remote_link(self, args: RemoteIssueLinkArgs) -> JsonObj:
        self._issue(args.issue_key)
        link = args.model_dump()
        self.remote_links.append(link)
        return {"success": True, "link": link}

    def add_issue_attachment(self, args: AddIssueAttachmentArgs) -> JsonObj:
        self._issue(args.issue_key)
        return self._attach("issue", args.issue_key, args.file_path)

    # -- confluence --

    def create_page(self, args: CreatePageArgs) -> JsonObj:
        if self._find_page(args.space_key, args.title) is not None:
            raise StubToolError(f"A page with this title already exists: {args.title}")
        page_id = str(next(self._ids))
        page = {
            "id": page_id,
            "title": args.title,
            "space_key": args.space_key,
            "parent_id": args.parent_id,
            "content": args.content,
            "version": {"number": 1},
            "url": f"{self.base_url}/wiki/spaces/{args.space_key}/pages/{page_id}",
            "_links": {"self": f"{self.base_url}/wiki/rest/api/content/{page_id}"},
        }
        self.pages[page_id] = page
        return {"page": page}

    def update_page(self, args: UpdatePageArgs) -> JsonObj:
        # Mirrors a server that rejects these two optional fields outright.
        rejected = [f for f in ("version", "content_format") if f in args.model_fields_set]
        if rejected:
            raise StubToolError(f"Unsupported parameters: {rejected}")
        page = self._page(args.page_id)
        page.update(title=args.title, content=args.content)
        page["version"] = {"number": page["version"]["number"] + 1}
        return {"page": page}

    def get_page(self, args: GetPageArgs) -> JsonObj:
        if args.page_id:
            return {"page": self._page(args.page_id)}
        page = self._find_page(args.space_key or "", args.title or "")
        if page is None:
            raise StubToolError(f"Page not found: {args.title}")
        return {"page": page}

    def add_page_attachment(self, args: AddPageAttachmentArgs) -> JsonObj:
        self._page(args.page_id)
        return self._attach("page", args.page_id, args.file_path)

    # -- git --

    def create_branch(self, args: CreateBranchArgs) -> JsonObj:
        if args.name in self.branches:
            raise StubToolError(f"Branch already exists: {args.name}")
        branch = {
            "name": args.name,
            "sha": uuid.uuid4().hex[:12],
            "url": f"{self.base_url}/git/tree/{args.name}",
        }
        self.branches[args.name] = branch
        return {"branch": branch}

    # -- helpers --

    def _issue(self, key: str) -> JsonObj:
        issue = self.issues.get(key)
        if issue is None:
            raise StubToolError(f"Issue does not exist: {key}")
        return issue

    def _page(self, page_id: str) -> JsonObj:
        page = self.pages.get(str(page_id))
        if page is None:
            raise StubToolError(f"Page not found: {page_id}")
        return page

    def _find_page(self, space_key: str, title: str) -> Optional[JsonObj]:
        for page in self.pages.values():
            if page["space_key"] == space_key and page["title"] == title:
                return page
        return None

    def _attach(self, kind: str, owner: str, file_path: str) -> JsonObj:
        path = Path(file_path)
        if not path.is_file():
            raise StubToolError(f"File not found: {file_path}")
        entry = {"kind": kind, "owner": owner, "filename": path.name, "size": path.stat().st_size}
        self.attachments.append(entry)
        return {"success": True, "attachment": entry}


ToolFn = Callable[[StubStore, Any], JsonObj]

TOOLS: Dict[str, Tuple[str, Type[BaseModel], ToolFn]] = {
    "jira_create_issue": ("Create a Jira issue.", CreateIssueArgs, StubStore.create_issue),
    "jira_update_issue": ("Update fields of a Jira issue.", UpdateIssueArgs, StubStore.update_issue),
    "jira_get_issue": ("Read a Jira issue.", GetIssueArgs, StubStore.get_issue),
    "jira_search": ("Search issues with a small JQL subset.", SearchIssuesArgs, StubStore.search_issues),
    "jira_link_to_epic": ("Link an issue to an epic.", LinkToEpicArgs, StubStore.link_to_epic),
    "jira_create_remote_issue_link": (
        "Add a remote link to an issue.",
        RemoteIssueLinkArgs,
        StubStore.create_remote_link,
    ),
    "jira_add_attachment": ("Attach a file to an issue.", AddIssueAttachmentArgs, StubStore.add_issue_attachment),
    "confluence_create_page": ("Create a Confluence page.", CreatePageArgs, StubStore.create_page),
    "confluence_update_page": ("Replace the body of a Confluence page.", UpdatePageArgs, StubStore.update_page),
    "confluence_get_page": ("Read a page by id or by title and space.", GetPageArgs, StubStore.get_page),
    "confluence_create_attachment": (
        "Attach a file to a page.",
        AddPageAttachmentArgs,
        StubStore.add_page_attachment,
    ),
    "git_create_branch": ("Create a git branch.", CreateBranchArgs, StubStore.create_branch),
}


def create_app(store: Optional[StubStore] = None, *, stream: bool = False) -> FastAPI:
    """
    stream=True answers every request as an event stream: a progress
    notification first, then the response spread over several data lines.
    """
    store = store or StubStore()
    app = FastAPI(title="MCP Work Item Stub Server", version="0.1")
    app.state.store = store

    @app.get("/mcp")
    def mcp_root():
        return {"ok": True, "service": "mcp", "tools": len(TOOLS)}

    @app.post("/mcp/")
    def rpc(req: JsonRpcRequest):
        if req.id is None:
            # notifications get no response body
            return Response(status_code=202)

        headers: Dict[str, str] = {}
        if req.method == "initialize":
            headers["mcp-session-id"] = uuid.uuid4().hex
            message = _ok(req.id, {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {"listChanged": False}},
                "serverInfo": {"name": "workitem-stub", "version": "0.1"},
            })
        elif req.method == "tools/list":
            message = _ok(req.id, {"tools": [t.model_dump() for t in _tool_defs()]})
        elif req.method == "tools/call":
            message = _call_tool(store, req)
        else:
            message = _err(req.id, -32601, f"Method not found: {req.method}")

        if stream:
            return StreamingResponse(_event_stream(message), media_type="text/event-stream", headers=headers)
        return JSONResponse(message, headers=headers)

    return app


def _tool_defs() -> List[ToolDef]:
    return [
        ToolDef(name=name, description=desc, inputSchema=model.model_json_schema())
        for name, (desc, model, _fn) in TOOLS.items()
    ]


def _call_tool(store: StubStore, req: JsonRpcRequest) -> JsonObj:
    name = req.params.get("name")
    args = req.params.get("arguments") or {}
    entry = TOOLS.get(str(name))
    if entry is None:
        return _err(req.id, -32602, f"Unknown tool: {name}")

    _desc, model, fn = entry
    with store.lock:
        store.calls.append((str(name), dict(args)))
        try:
            result = fn(store, model(**args))
        except StubToolError as e:
            return _ok(req.id, {"isError": True, "content": [{"type": "text", "text": str(e)}]})
        except Exception as e:
            return _ok(req.id, {"isError": True, "content": [{"type": "text", "text": f"Invalid arguments: {e}"}]})

    return _ok(req.id, {"content": [{"type": "text", "text": json.dumps(result)}]})


def _ok(request_id: Any, result: Any) -> JsonObj:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def _err(request_id: Any, code: int, message: str) -> JsonObj:
    return {"jsonrpc": "2.0", "id": request_id, "error": {"code": code, "message": message}}


def _event_stream(message: JsonObj):
    progress = {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}}
    yield f"event: message\ndata: {json.dumps(progress)}\n\n"
    data = "\n".join(f"data: {line}" for line in json.dumps(message, indent=2).splitlines())
    yield f": keep-alive\nevent: message\n{data}\n\n"


app = create_app()
