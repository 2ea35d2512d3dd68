from __future__ import annotations

from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit

JsonObj = Dict[str, Any]


class ToolCaller(Protocol):
    def call_tool(self, tool_name: str, arguments: JsonObj) -> Any: ...


def as_obj(value: Any) -> JsonObj:
    return value if isinstance(value, dict) else {}


def first_str(*values: Any) -> Optional[str]:
    """First non-empty value, stringified (ids often come back as ints)."""
    for v in values:
        if isinstance(v, bool) or v is None:
            continue
        if isinstance(v, (str, int)):
            s = str(v).strip()
            if s:
                return s
    return None


def origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"
