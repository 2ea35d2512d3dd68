from __future__ import annotations

from typing import Any, Callable, Dict, List, Tuple

import pytest

import config
from mcp_server_stub.server import TOOLS, StubStore, StubToolError
from rpc.errors import ToolError
from rpc.shims import ShimTable
from rpc.targets import TargetConfig, TargetsConfig


class InMemoryTransport:
    """
    Stands in for McpTransport: routes tool calls straight into a StubStore,
    applying the configured argument shims. Failures can be queued per tool.
    """

    def __init__(self, store: StubStore | None = None) -> None:
        self.store = store or StubStore()
        self.shims = ShimTable.from_config()
        self.calls: List[Tuple[str, Dict[str, Any]]] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.rules: List[Tuple[str, Callable[[Dict[str, Any]], bool], Exception]] = []

    def fail(self, tool_name: str, exc: Exception, times: int = 1) -> None:
        self.failures.setdefault(tool_name, []).extend([exc] * times)

    def fail_when(self, tool_name: str, predicate: Callable[[Dict[str, Any]], bool], exc: Exception) -> None:
        """Fail every call of `tool_name` whose arguments match `predicate`."""
        self.rules.append((tool_name, predicate, exc))

    def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        target = config.TOOL_ROUTES[tool_name]
        args = self.shims.apply(target, tool_name, {k: v for k, v in arguments.items() if v is not None})
        self.calls.append((tool_name, args))

        pending = self.failures.get(tool_name)
        if pending:
            raise pending.pop(0)
        for name, predicate, exc in self.rules:
            if name == tool_name and predicate(args):
                raise exc

        _desc, model, fn = TOOLS[tool_name]
        try:
            return fn(self.store, model(**args))
        except StubToolError as e:
            raise ToolError(str(e), details={"tool": tool_name}) from e

    def tool_calls(self, tool_name: str) -> List[Dict[str, Any]]:
        return [args for name, args in self.calls if name == tool_name]


@pytest.fixture
def stub_store() -> StubStore:
    return StubStore()


@pytest.fixture
def transport(stub_store: StubStore) -> InMemoryTransport:
    return InMemoryTransport(stub_store)


@pytest.fixture
def all_targets() -> TargetsConfig:
    return TargetsConfig(
        jira=TargetConfig(name="jira", url="http://jira-mcp/mcp/", rest_base_url="http://stub.local"),
        confluence=TargetConfig(name="confluence", url="http://wiki-mcp/mcp/", rest_base_url="http://stub.local/wiki"),
        git=TargetConfig(name="git", url="http://git-mcp/mcp/", repo_path="/repos/design-system"),
    )
