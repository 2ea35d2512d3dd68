# rpc/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

JsonObj = Dict[str, Any]


class RpcError(Exception):
    """
    Base class for everything the transport and the adapters raise.

    Carries a stable `error_type` string so the orchestrator can surface
    failures as plain dicts without inspecting exception classes.
    """

    error_type = "RPC_ERROR"
    retryable = False

    def __init__(self, message: str, *, code: Optional[int] = None, details: Optional[JsonObj] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}

    def to_dict(self) -> JsonObj:
        out: JsonObj = {"type": self.error_type, "message": self.message}
        if self.code is not None:
            out["code"] = self.code
        if self.details:
            out["details"] = self.details
        return out


class NetworkError(RpcError):
    """Timeouts, refused connections and 5xx responses."""

    error_type = "NETWORK_ERROR"
    retryable = True


class ProtocolError(RpcError):
    """The remote answered with a JSON-RPC error object (or a non-retryable HTTP status)."""

    error_type = "PROTOCOL_ERROR"


class ToolError(ProtocolError):
    """A tools/call result flagged with isError."""

    error_type = "TOOL_ERROR"


class ValidationError(RpcError):
    """A response is missing fields the caller needs."""

    error_type = "VALIDATION_ERROR"


class TargetNotConfigured(RpcError):
    error_type = "TARGET_NOT_CONFIGURED"
