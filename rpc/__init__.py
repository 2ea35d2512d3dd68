from __future__ import annotations

from rpc.client import McpTransport
from rpc.errors import (
    NetworkError,
    ProtocolError,
    RpcError,
    TargetNotConfigured,
    ToolError,
    ValidationError,
)
from rpc.shims import ShimRule, ShimTable
from rpc.targets import TargetConfig, TargetsConfig

__all__ = [
    "McpTransport",
    "NetworkError",
    "ProtocolError",
    "RpcError",
    "ShimRule",
    "ShimTable",
    "TargetConfig",
    "TargetNotConfigured",
    "TargetsConfig",
    "ToolError",
    "ValidationError",
]
