from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import requests

import config
from adapters.base import ToolCaller
from attachments.cache import ImageCache
from attachments.images import PreparedImage, image_mime_type, load_image_bytes, preview_filename
from orchestrator.models import ArtifactKind, ArtifactReference
from rpc.targets import CONFLUENCE, JIRA, TargetConfig, TargetsConfig
from schemas import AddIssueAttachmentArgs, AddPageAttachmentArgs, tool_args

logger = logging.getLogger(__name__)

DIRECT = "direct"
FALLBACK = "fallback"
NONE = "none"


class AttachmentError(Exception):
    pass


@dataclass(frozen=True)
class AttachmentOutcome:
    attached: bool
    method: str  # direct | fallback | none
    filename: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"attached": self.attached, "method": self.method}
        if self.filename:
            out["filename"] = self.filename
        if self.error:
            out["error"] = self.error
        return out


class AssetAttacher:
    """
    Attaches a preview image to an already-created ticket or page.

    1) direct multipart upload to the artifact's native REST API
    2) on any failure, the attachment tool of the same target
    3) on failure of both, attached=False; never raises
    """

    def __init__(
        self,
        transport: ToolCaller,
        cache: ImageCache,
        targets: TargetsConfig,
        *,
        http: Optional[requests.Session] = None,
        upload_timeout_s: float = config.ATTACHMENT_UPLOAD_TIMEOUT_S,
    ) -> None:
        self.transport = transport
        self.cache = cache
        self.targets = targets
        self.http = http or requests.Session()
        self.upload_timeout_s = upload_timeout_s

    def attach_image(self, ref: ArtifactReference, image_source: str, *, component_name: str) -> AttachmentOutcome:
        try:
            content = self.cache.get_or_load(image_source, lambda s: load_image_bytes(s, self.http))
        except Exception as e:
            logger.warning("Could not load image for %s %s: %s", ref.kind.value, ref.key, e)
            return AttachmentOutcome(
                attached=False, method=NONE, filename=preview_filename(component_name), error=str(e)
            )

        mime_type = image_mime_type(image_source, content)
        filename = preview_filename(component_name, mime_type)
        image = PreparedImage(filename=filename, content=content, mime_type=mime_type)

        try:
            self._upload_direct(ref, image)
            logger.info("Attached %s to %s %s (direct upload)", filename, ref.kind.value, ref.key)
            return AttachmentOutcome(attached=True, method=DIRECT, filename=filename)
        except Exception as e:
            logger.warning("Direct upload to %s %s failed (%s); trying attachment tool", ref.kind.value, ref.key, e)

        try:
            self._upload_via_tool(ref, image)
            logger.info("Attached %s to %s %s (attachment tool)", filename, ref.kind.value, ref.key)
            return AttachmentOutcome(attached=True, method=FALLBACK, filename=filename)
        except Exception as e:
            logger.warning("Image could not be attached to %s %s: %s", ref.kind.value, ref.key, e)
            return AttachmentOutcome(attached=False, method=NONE, filename=filename, error=str(e))

    # ---------------- direct upload ----------------

    def _upload_direct(self, ref: ArtifactReference, image: PreparedImage) -> None:
        target = self._target_for(ref)
        url = _direct_upload_url(ref, target)

        headers = {"X-Atlassian-Token": "no-check"}
        if target.auth:
            headers["Authorization"] = target.auth

        logger.debug("Uploading %s to %s", image.filename, url)
        resp = self.http.post(
            url,
            headers=headers,
            files={"file": (image.filename, image.content, image.mime_type)},
            timeout=self.upload_timeout_s,
        )
        try:
            if resp.status_code >= 400:
                raise AttachmentError(f"Upload failed: HTTP {resp.status_code} {(resp.text or '')[:200]}")
        finally:
            resp.close()

    def _target_for(self, ref: ArtifactReference) -> TargetConfig:
        name = JIRA if ref.kind is ArtifactKind.TICKET else CONFLUENCE
        if ref.kind is ArtifactKind.BRANCH:
            raise AttachmentError("Branches do not take attachments")
        target = self.targets.get(name)
        if target is None:
            raise AttachmentError(f"Target {name!r} is not configured")
        return target

    # ---------------- tool fallback ----------------

    def _upload_via_tool(self, ref: ArtifactReference, image: PreparedImage) -> None:
        with tempfile.TemporaryDirectory(prefix="workitem-attach-") as tmp:
            path = Path(tmp) / image.filename
            path.write_bytes(image.content)

            if ref.kind is ArtifactKind.TICKET:
                self.transport.call_tool(
                    "jira_add_attachment",
                    tool_args(AddIssueAttachmentArgs, issue_key=_required(ref.key, "key"), file_path=str(path)),
                )
            elif ref.kind in (ArtifactKind.IMPL_PLAN, ArtifactKind.QA_PLAN):
                self.transport.call_tool(
                    "confluence_create_attachment",
                    tool_args(AddPageAttachmentArgs, page_id=_required(ref.id, "id"), file_path=str(path)),
                )
            else:
                raise AttachmentError(f"No attachment tool for {ref.kind.value}")


def _direct_upload_url(ref: ArtifactReference, target: TargetConfig) -> str:
    if ref.kind is ArtifactKind.TICKET:
        if ref.self_url:
            return f"{ref.self_url.rstrip('/')}/attachments"
        if target.rest_base_url:
            return f"{target.rest_base_url.rstrip('/')}/rest/api/2/issue/{_required(ref.key, 'key')}/attachments"
    else:
        if ref.self_url:
            return f"{ref.self_url.rstrip('/')}/child/attachment"
        if target.rest_base_url:
            return f"{target.rest_base_url.rstrip('/')}/rest/api/content/{_required(ref.id, 'id')}/child/attachment"
    raise AttachmentError(f"No REST self link or base URL for {target.name}; cannot upload directly")


def _required(value: Optional[str], name: str) -> str:
    if not value:
        raise AttachmentError(f"Artifact reference has no {name}")
    return value
