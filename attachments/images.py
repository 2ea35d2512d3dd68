from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

import config


class ImageSourceError(Exception):
    pass


@dataclass(frozen=True)
class PreparedImage:
    filename: str
    content: bytes
    mime_type: str = "image/png"


_DATA_URL = re.compile(r"^data:(?P<mime>[\w/+.-]+)?(?:;[\w=-]+)*;base64,(?P<data>.*)$", re.DOTALL)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}


def preview_filename(component_name: str, mime_type: str = "image/png") -> str:
    safe = re.sub(r"[^a-z0-9]+", "-", component_name.lower()).strip("-") or "component"
    return f"preview-{safe}.{_EXTENSIONS.get(mime_type, 'png')}"


def image_mime_type(source: str, content: bytes) -> str:
    """MIME type declared by a data URL, else sniffed from the bytes; PNG when unknown."""
    m = _DATA_URL.match(source.strip())
    if m and (m.group("mime") or "").startswith("image/"):
        return m.group("mime")
    if content.startswith(b"\xff\xd8\xff"):
        return "image/jpeg"
    if content.startswith((b"GIF87a", b"GIF89a")):
        return "image/gif"
    if content[:4] == b"RIFF" and content[8:12] == b"WEBP":
        return "image/webp"
    return "image/png"


def load_image_bytes(source: str, http: Optional[requests.Session] = None) -> bytes:
    """
    Accepts a data URL, an http(s) URL, a local file path or a bare base64 string.
    """
    source = source.strip()
    if not source:
        raise ImageSourceError("Empty image source")

    m = _DATA_URL.match(source)
    if m:
        return _b64decode(m.group("data"))

    if source.startswith(("http://", "https://")):
        session = http or requests.Session()
        try:
            resp = session.get(source, timeout=config.IMAGE_DOWNLOAD_TIMEOUT_S)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ImageSourceError(f"Image download failed: {e}") from e
        return resp.content

    if len(source) < 1024 and _is_file(source):
        return Path(source).read_bytes()

    return _b64decode(source)


def _is_file(source: str) -> bool:
    # long base64 runs overflow the OS name limit
    try:
        return Path(source).is_file()
    except (OSError, ValueError):
        return False


def _b64decode(data: str) -> bytes:
    try:
        content = base64.b64decode(re.sub(r"\s+", "", data), validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageSourceError("Image source is neither a URL, a file nor valid base64") from e
    if not content:
        raise ImageSourceError("Image source decoded to zero bytes")
    return content
