from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Any, Dict, List

from adapters.confluence import WikiAdapter
from adapters.jira import TicketAdapter
from attachments.attacher import AssetAttacher
from attachments.cache import ImageCache
from orchestrator.models import ArtifactKind, ArtifactReference
from rpc.errors import NetworkError
from rpc.targets import TargetsConfig

PNG = b"\x89PNG\r\n\x1a\nfake-image"
IMAGE = "data:image/png;base64," + base64.b64encode(PNG).decode()


class FakeUploadResponse:
    def __init__(self, status_code: int, text: str = "") -> None:
        self.status_code = status_code
        self.text = text

    def close(self) -> None:
        pass


class FakeHttp:
    """Direct-upload endpoint double; answers every POST with `status_code`."""

    def __init__(self, status_code: int = 200) -> None:
        self.status_code = status_code
        self.posts: List[Dict[str, Any]] = []
        self.gets: List[str] = []

    def post(self, url, headers=None, files=None, timeout=None):
        self.posts.append({"url": url, "headers": headers, "files": files})
        return FakeUploadResponse(self.status_code, "Unauthorized" if self.status_code == 401 else "")

    def get(self, url, timeout=None):
        self.gets.append(url)
        return _Download()


class _Download:
    content = PNG

    def raise_for_status(self) -> None:
        pass


def make_attacher(transport, targets, http) -> AssetAttacher:
    return AssetAttacher(transport, ImageCache(ttl_s=300), targets, http=http)


def test_direct_upload_to_ticket_self_link(transport, all_targets):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    http = FakeHttp(200)

    outcome = make_attacher(transport, all_targets, http).attach_image(ticket, IMAGE, component_name="Button")

    assert outcome.attached is True
    assert outcome.method == "direct"
    assert outcome.filename == "preview-button.png"
    post = http.posts[0]
    assert post["url"] == f"{ticket.self_url}/attachments"
    assert post["headers"]["X-Atlassian-Token"] == "no-check"
    assert post["files"]["file"][0] == "preview-button.png"
    assert post["files"]["file"][1] == PNG
    assert post["files"]["file"][2] == "image/png"
    assert transport.tool_calls("jira_add_attachment") == []


def test_direct_401_falls_back_to_attachment_tool(transport, stub_store, all_targets):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    http = FakeHttp(401)

    outcome = make_attacher(transport, all_targets, http).attach_image(ticket, IMAGE, component_name="Button")

    assert outcome.attached is True
    assert outcome.method == "fallback"
    assert stub_store.attachments == [
        {"kind": "issue", "owner": ticket.key, "filename": "preview-button.png", "size": len(PNG)}
    ]
    # the temporary file is gone afterwards
    tmp_file = transport.tool_calls("jira_add_attachment")[0]["file_path"]
    assert not Path(tmp_file).exists()


def test_page_upload_uses_child_attachment_and_page_tool(transport, stub_store, all_targets):
    page = WikiAdapter(transport).create_page("DCUX", None, "Plan", "body")
    http = FakeHttp(500)

    outcome = make_attacher(transport, all_targets, http).attach_image(page, IMAGE, component_name="Card")

    assert http.posts[0]["url"] == f"{page.self_url}/child/attachment"
    assert outcome.method == "fallback"
    assert stub_store.attachments[0]["owner"] == page.id


def test_rest_base_url_used_without_self_link(transport, all_targets):
    ref = ArtifactReference(kind=ArtifactKind.TICKET, id="1", key="DS-7", url="http://stub.local/browse/DS-7")
    http = FakeHttp(200)

    outcome = make_attacher(transport, all_targets, http).attach_image(ref, IMAGE, component_name="X")

    assert outcome.method == "direct"
    assert http.posts[0]["url"] == "http://stub.local/rest/api/2/issue/DS-7/attachments"


def test_both_paths_failing_is_not_fatal(transport, all_targets, caplog):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    transport.fail("jira_add_attachment", NetworkError("down"))

    with caplog.at_level(logging.WARNING):
        outcome = make_attacher(transport, all_targets, FakeHttp(401)).attach_image(
            ticket, IMAGE, component_name="Button"
        )

    assert outcome.attached is False
    assert outcome.method == "none"
    assert "down" in outcome.error
    assert any("could not be attached" in r.getMessage() for r in caplog.records)


def test_unconfigured_target_goes_straight_to_fallback(transport):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    http = FakeHttp(200)

    outcome = make_attacher(transport, TargetsConfig(), http).attach_image(ticket, IMAGE, component_name="B")

    assert http.posts == []
    assert outcome.method == "fallback"


def test_bad_image_source_makes_no_calls(transport, all_targets):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    calls_before = len(transport.calls)
    http = FakeHttp(200)

    outcome = make_attacher(transport, all_targets, http).attach_image(ticket, "%%%", component_name="B")

    assert outcome.attached is False
    assert outcome.method == "none"
    assert http.posts == []
    assert len(transport.calls) == calls_before


def test_image_url_fetched_once_across_artifacts(transport, all_targets):
    tickets = TicketAdapter(transport)
    first = tickets.create_ticket(project_key="DS", summary="A")
    second = tickets.create_ticket(project_key="DS", summary="B")
    http = FakeHttp(200)
    attacher = make_attacher(transport, all_targets, http)

    attacher.attach_image(first, "https://cdn.example.com/shot.png", component_name="B")
    attacher.attach_image(second, "https://cdn.example.com/shot.png", component_name="B")

    assert http.gets == ["https://cdn.example.com/shot.png"]
    assert len(http.posts) == 2


def test_jpeg_data_url_uploads_with_its_own_type(transport, all_targets):
    ticket = TicketAdapter(transport).create_ticket(project_key="DS", summary="S")
    jpeg = b"\xff\xd8\xff\xe0fake-jpeg"
    http = FakeHttp(200)

    outcome = make_attacher(transport, all_targets, http).attach_image(
        ticket, "data:image/jpeg;base64," + base64.b64encode(jpeg).decode(), component_name="Button"
    )

    assert outcome.filename == "preview-button.jpg"
    assert http.posts[0]["files"]["file"] == ("preview-button.jpg", jpeg, "image/jpeg")
