from __future__ import annotations

from attachments.attacher import AssetAttacher, AttachmentOutcome
from attachments.cache import ImageCache
from attachments.images import ImageSourceError, PreparedImage

__all__ = [
    "AssetAttacher",
    "AttachmentOutcome",
    "ImageCache",
    "ImageSourceError",
    "PreparedImage",
]
