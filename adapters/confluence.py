from __future__ import annotations

import logging
import time
from typing import Any, Callable, Optional

import config
from adapters.base import ToolCaller, as_obj, first_str
from orchestrator.models import ArtifactKind, ArtifactReference
from rpc.errors import NetworkError, ProtocolError, RpcError, ValidationError
from schemas import CreatePageArgs, GetPageArgs, UpdatePageArgs, tool_args

logger = logging.getLogger(__name__)

MAX_TITLE_LEN = 200
_CONFLICT_MARKERS = ("exist", "conflict", "unique")


class WikiAdapter:
    """
    Confluence tools behind the transport.

    Page creation tries the full body first. Some servers time out on large
    bodies, so on failure a short stub page is created and then updated with
    the full body; the update path tolerates large payloads.
    """

    def __init__(
        self,
        transport: ToolCaller,
        *,
        max_title_checks: int = config.WIKI_TITLE_MAX_CHECKS,
        max_create_attempts: int = config.WIKI_CREATE_MAX_ATTEMPTS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.max_title_checks = max_title_checks
        self.max_create_attempts = max_create_attempts
        self._clock = clock

    def create_page(
        self,
        space_key: str,
        parent_id: Optional[str],
        title: str,
        body: str,
        *,
        kind: ArtifactKind = ArtifactKind.IMPL_PLAN,
    ) -> ArtifactReference:
        logger.info("Creating wiki page %r in %s (%d chars)", title, space_key, len(body))
        try:
            result = self.transport.call_tool(
                "confluence_create_page",
                tool_args(CreatePageArgs, title=title, space_key=space_key, content=body, parent_id=parent_id),
            )
            return parse_page(result, kind=kind, title=title)
        except RpcError as first_error:
            logger.warning("Full-content page creation failed (%s); trying stub then update", first_error)

        stub = f"# {title}\n\n_Generating content, please wait..._\n"
        result = self.transport.call_tool(
            "confluence_create_page",
            tool_args(CreatePageArgs, title=title, space_key=space_key, content=stub, parent_id=parent_id),
        )
        ref = parse_page(result, kind=kind, title=title)

        try:
            self.update_page_body(ref.id, body, title=title)
        except RpcError as e:
            logger.warning("Stub page %s created but content update failed: %s", ref.id, e)
        return ref

    def update_page_body(self, page_id: str, new_body: str, *, title: str) -> None:
        logger.info("Updating wiki page %s", page_id)
        self.transport.call_tool(
            "confluence_update_page",
            tool_args(UpdatePageArgs, page_id=page_id, title=title, content=new_body),
        )

    def find_available_title(self, base_title: str, space_key: str) -> str:
        """Look for an unused title: base, then "base (1)", "base (2)", ... then a timestamp."""
        base_title = base_title[:MAX_TITLE_LEN]
        for counter in range(self.max_title_checks):
            candidate = base_title if counter == 0 else f"{base_title} ({counter})"
            try:
                found = self.transport.call_tool(
                    "confluence_get_page", tool_args(GetPageArgs, title=candidate, space_key=space_key)
                )
            except RpcError as e:
                # A failed lookup usually means "not found"; creation will tell us otherwise.
                logger.debug("Title lookup for %r failed (%s); treating as free", candidate, e)
                return candidate
            if not _page_exists(found):
                return candidate
            logger.info("Wiki page %r already exists, trying next title", candidate)
        return f"{base_title} ({int(self._clock())})"

    def create_unique_page(
        self,
        space_key: str,
        parent_id: Optional[str],
        base_title: str,
        body: str,
        *,
        kind: ArtifactKind = ArtifactKind.IMPL_PLAN,
    ) -> ArtifactReference:
        title = self.find_available_title(base_title, space_key)
        attempt = 0
        while True:
            attempt += 1
            try:
                return self.create_page(space_key, parent_id, title, body, kind=kind)
            except (ProtocolError, NetworkError) as e:
                if not is_title_conflict(e) or attempt >= self.max_create_attempts:
                    raise
                title = f"{base_title[:MAX_TITLE_LEN]} ({str(int(self._clock() * 1000))[-4:]})"
                logger.warning("Title conflict on attempt %d (%s); retrying as %r", attempt, e, title)


def is_title_conflict(error: RpcError) -> bool:
    """
    Title clashes come back as tool errors mentioning the clash, or as a bare
    HTTP 500 when the title is held by a page in the trash.
    """
    msg = error.message.lower()
    if any(marker in msg for marker in _CONFLICT_MARKERS):
        return True
    return error.code == 500 or "internal server error" in msg


def parse_page(result: Any, *, kind: ArtifactKind, title: Optional[str] = None) -> ArtifactReference:
    body = as_obj(result)
    page = as_obj(body.get("page")) or body

    page_id = first_str(page.get("id"), body.get("id"))
    if page_id is None:
        raise ValidationError("Page response is missing 'id'", details={"body": result})

    url = first_str(page.get("url"), body.get("url")) or _links_url(page) or _links_url(body)
    if not url:
        raise ValidationError(f"Page response for {page_id} has no usable URL", details={"body": result})

    links = as_obj(page.get("_links")) or as_obj(body.get("_links"))
    return ArtifactReference(
        kind=kind,
        id=page_id,
        key=page_id,
        url=url,
        title=first_str(page.get("title"), title),
        self_url=first_str(links.get("self")),
    )


def _links_url(obj: Any) -> Optional[str]:
    links = as_obj(as_obj(obj).get("_links"))
    base = first_str(links.get("base"))
    webui = first_str(links.get("webui"))
    if base and webui:
        return base.rstrip("/") + webui
    return None


def _page_exists(result: Any) -> bool:
    if isinstance(result, list):
        return len(result) > 0
    body = as_obj(result)
    if not body:
        return False
    if first_str(body.get("id")) or as_obj(body.get("page")) or first_str(as_obj(body.get("metadata")).get("id")):
        return True
    results = body.get("results")
    if isinstance(results, list) and results:
        return True
    size = body.get("size")
    return isinstance(size, int) and size > 0
