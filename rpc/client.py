# rpc/client.py
from __future__ import annotations

import json
import logging
import threading
import time
import uuid
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import requests

import config
from rpc.errors import (
    NetworkError,
    ProtocolError,
    RpcError,
    TargetNotConfigured,
    ToolError,
    ValidationError,
)
from rpc.shims import ShimTable
from rpc.targets import TargetConfig, TargetsConfig

logger = logging.getLogger(__name__)

JsonObj = Dict[str, Any]

EVENT_STREAM = "text/event-stream"


class McpTransport:
    """
    JSON-RPC 2.0 over HTTP, one instance per orchestration setup.

    - call(target, method, params): envelope + correlation id, single JSON body
      or event-stream response, bounded retry on transient failures
    - call_tool(tool, args): routes a tool to its target and unwraps the
      tools/call result
    - per-target argument shims are applied to every tools/call before the
      request is serialized

    Holds no global state: the only thing cached is the per-target session id.
    """

    def __init__(
        self,
        targets: TargetsConfig,
        *,
        routes: Optional[Mapping[str, str]] = None,
        shims: Optional[ShimTable] = None,
        session: Optional[requests.Session] = None,
        timeout_s: Optional[float] = None,
        max_retries: Optional[int] = None,
        backoff_s: Optional[float] = None,
        handshake: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.targets = targets
        self.routes = dict(config.TOOL_ROUTES if routes is None else routes)
        self.shims = shims if shims is not None else ShimTable.from_config()
        self.http = session or requests.Session()
        self.timeout_s = config.RPC_TIMEOUT_S if timeout_s is None else timeout_s
        self.max_retries = config.RPC_MAX_RETRIES if max_retries is None else max_retries
        self.backoff_s = config.RPC_RETRY_BACKOFF_S if backoff_s is None else backoff_s
        self.handshake = handshake
        self._sleep = sleep

        self._sessions: Dict[str, str] = {}
        self._lock = threading.Lock()
        self._target_locks: Dict[str, threading.Lock] = {}

    # ---------------- public API ----------------

    def route(self, tool_name: str) -> str:
        target = self.routes.get(tool_name)
        if target is None:
            raise TargetNotConfigured(f"No route configured for tool {tool_name!r}", details={"tool": tool_name})
        return target

    def call(self, target: str, method: str, params: Optional[JsonObj] = None) -> Any:
        cfg = self._target(target)
        params = dict(params or {})

        if method == "tools/call" and isinstance(params.get("arguments"), dict):
            params["arguments"] = self.shims.apply(cfg.name, str(params.get("name")), params["arguments"])

        session_id = self._ensure_session(cfg)
        result, _headers = self._request(cfg, method, params, session_id)
        return result

    def call_tool(self, tool_name: str, arguments: JsonObj) -> Any:
        target = self.route(tool_name)
        args = {k: v for k, v in arguments.items() if v is not None}

        logger.debug("tools/call %s -> %s args=%s", tool_name, target, json.dumps(args, default=str)[:2000])
        result = self.call(target, "tools/call", {"name": tool_name, "arguments": args})
        return unwrap_tool_result(tool_name, result)

    def list_tools(self, target: str) -> List[JsonObj]:
        result = self.call(target, "tools/list", {})
        tools = result.get("tools") if isinstance(result, dict) else None
        if not isinstance(tools, list):
            raise ValidationError(
                "Invalid tools/list response: missing or non-list 'tools'",
                details={"target": target, "body": result},
            )
        return tools

    def close(self) -> None:
        self.http.close()

    # ---------------- session handshake ----------------

    def _ensure_session(self, cfg: TargetConfig) -> str:
        with self._lock:
            if cfg.name in self._sessions:
                return self._sessions[cfg.name]
            target_lock = self._target_locks.setdefault(cfg.name, threading.Lock())

        with target_lock:
            with self._lock:
                if cfg.name in self._sessions:
                    return self._sessions[cfg.name]

            session_id = f"{config.MCP_CLIENT_NAME}-{uuid.uuid4().hex[:12]}"
            if self.handshake:
                session_id = self._initialize(cfg, session_id)

            with self._lock:
                self._sessions[cfg.name] = session_id
            return session_id

    def _initialize(self, cfg: TargetConfig, client_session_id: str) -> str:
        params = {
            "protocolVersion": config.MCP_PROTOCOL_VERSION,
            "capabilities": {"roots": {"listChanged": True}},
            "clientInfo": {"name": config.MCP_CLIENT_NAME, "version": config.MCP_CLIENT_VERSION},
        }
        try:
            _result, headers = self._request(cfg, "initialize", params, client_session_id)
        except RpcError as e:
            # Some stateless proxies reject initialize but still accept tool calls.
            logger.warning("MCP initialize failed for %s (%s); proceeding without handshake", cfg.name, e)
            return client_session_id

        server_session_id = headers.get("mcp-session-id")
        session_id = server_session_id or client_session_id
        if not server_session_id:
            logger.debug("No mcp-session-id from %s, using client id %s", cfg.name, session_id)

        self._notify(cfg, "notifications/initialized", {}, session_id)
        logger.info("MCP session established with %s", cfg.name)
        return session_id

    def _notify(self, cfg: TargetConfig, method: str, params: JsonObj, session_id: str) -> None:
        envelope = {"jsonrpc": "2.0", "method": method, "params": params}
        try:
            resp = self.http.post(
                cfg.endpoint(),
                params={"sessionId": session_id},
                data=json.dumps(envelope),
                headers=_headers(cfg, session_id),
                timeout=self.timeout_s,
            )
            resp.close()
        except requests.RequestException as e:
            logger.warning("MCP notification %s to %s failed: %s", method, cfg.name, e)

    # ---------------- request / retry ----------------

    def _target(self, name: str) -> TargetConfig:
        cfg = self.targets.get(name)
        if cfg is None:
            raise TargetNotConfigured(f"Target {name!r} is not configured", details={"target": name})
        return cfg

    def _request(self, cfg: TargetConfig, method: str, params: JsonObj, session_id: str) -> Tuple[Any, Mapping[str, str]]:
        request_id = uuid.uuid4().hex
        envelope = {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
        body = json.dumps(envelope)

        attempt = 0
        while True:
            attempt += 1
            try:
                return self._post_once(cfg, body, request_id, session_id)
            except RpcError as e:
                if not e.retryable:
                    raise
                if attempt > self.max_retries:
                    logger.error("%s %s failed after %d attempts: %s", cfg.name, method, attempt, e)
                    raise
                backoff = self.backoff_s * attempt
                logger.warning(
                    "%s %s attempt %d failed (%s); retrying in %.2fs", cfg.name, method, attempt, e, backoff
                )
                self._sleep(backoff)

    def _post_once(self, cfg: TargetConfig, body: str, request_id: str, session_id: str) -> Tuple[Any, Mapping[str, str]]:
        try:
            resp = self.http.post(
                cfg.endpoint(),
                params={"sessionId": session_id},
                data=body,
                headers=_headers(cfg, session_id),
                timeout=self.timeout_s,
                stream=True,
            )
        except requests.Timeout as e:
            raise NetworkError(f"Timeout calling {cfg.name}: {e}", details={"target": cfg.name}) from e
        except requests.RequestException as e:
            raise NetworkError(f"Transport error calling {cfg.name}: {e}", details={"target": cfg.name}) from e

        try:
            message = _read_message(cfg, resp, request_id)
            return _unwrap_message(cfg, message, request_id), resp.headers
        except requests.RequestException as e:
            raise NetworkError(f"Transport error reading {cfg.name} response: {e}", details={"target": cfg.name}) from e
        finally:
            resp.close()


# ---------------- response parsing ----------------


def _read_message(cfg: TargetConfig, resp: Any, request_id: str) -> Optional[JsonObj]:
    status = int(resp.status_code)
    content_type = str(resp.headers.get("content-type", "")).lower()

    if status >= 500:
        raise NetworkError(
            f"HTTP {status} from {cfg.name}",
            code=status,
            details={"target": cfg.name, "body": _safe_text(resp)[:500]},
        )

    if EVENT_STREAM in content_type:
        message = read_event_stream(resp.iter_lines(), request_id)
    else:
        text = resp.text or ""
        if _looks_like_event_stream(text):
            message = read_event_stream(text.splitlines(), request_id)
        else:
            message = _parse_json_body(cfg, text, status)

    if status >= 400 and not (isinstance(message, dict) and isinstance(message.get("error"), dict)):
        raise ProtocolError(
            f"HTTP {status} from {cfg.name}",
            code=status,
            details={"target": cfg.name, "body": message},
        )
    return message


def _parse_json_body(cfg: TargetConfig, text: str, status: int) -> Optional[JsonObj]:
    if not text.strip():
        return None
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError as e:
        if status >= 400:
            return {"_raw": text[:500]}
        raise ValidationError(
            f"Invalid JSON response from {cfg.name}: {text[:100]}",
            details={"target": cfg.name},
        ) from e
    if not isinstance(parsed, dict):
        return {"_raw": parsed}
    return parsed


def read_event_stream(lines: Iterable[Any], request_id: str) -> JsonObj:
    """
    Reassemble a server-sent event stream and return the JSON-RPC message whose id
    matches `request_id`. Notifications and progress events are skipped.
    """
    data_lines: List[str] = []

    for raw in lines:
        line = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw)
        line = line.rstrip("\r")

        if line == "":
            message = _dispatch_event(data_lines)
            data_lines = []
            if _matches(message, request_id):
                return message
            continue

        if line.startswith(":"):
            continue

        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "data":
            data_lines.append(value)

    message = _dispatch_event(data_lines)
    if _matches(message, request_id):
        return message

    raise ValidationError(
        "Event stream ended without a response for the request",
        details={"request_id": request_id},
    )


def _dispatch_event(data_lines: List[str]) -> Optional[JsonObj]:
    if not data_lines:
        return None
    payload = "\n".join(data_lines)
    try:
        parsed = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug("Skipping non-JSON event payload: %s", payload[:200])
        return None
    return parsed if isinstance(parsed, dict) else None


def _matches(message: Optional[JsonObj], request_id: str) -> bool:
    return isinstance(message, dict) and message.get("id") == request_id


def _unwrap_message(cfg: TargetConfig, message: Optional[JsonObj], request_id: str) -> Any:
    if message is None:
        raise ValidationError(f"Empty response from {cfg.name}", details={"target": cfg.name})

    msg_id = message.get("id")
    err = message.get("error")

    if isinstance(err, dict):
        if msg_id not in (None, request_id):
            raise ValidationError(
                f"Response id mismatch from {cfg.name}",
                details={"target": cfg.name, "expected": request_id, "got": msg_id},
            )
        code = err.get("code")
        raise ProtocolError(
            str(err.get("message") or "Unknown JSON-RPC error"),
            code=code if isinstance(code, int) else None,
            details={"target": cfg.name, "data": err.get("data")} if err.get("data") is not None else {"target": cfg.name},
        )

    if msg_id != request_id:
        raise ValidationError(
            f"Response id mismatch from {cfg.name}",
            details={"target": cfg.name, "expected": request_id, "got": msg_id},
        )

    if "result" not in message:
        raise ValidationError(
            f"Invalid JSON-RPC response from {cfg.name}: missing 'result'",
            details={"target": cfg.name, "body": message},
        )
    return message["result"]


def unwrap_tool_result(tool_name: str, result: Any) -> Any:
    """
    tools/call results carry a content list. Structured content wins; otherwise the
    first text item is JSON-decoded when it holds JSON, or returned as text.
    """
    if not isinstance(result, dict):
        return result

    if result.get("isError"):
        texts = [
            c.get("text")
            for c in (result.get("content") or [])
            if isinstance(c, dict) and isinstance(c.get("text"), str) and c.get("text")
        ]
        raise ToolError(" | ".join(texts) or "Unknown tool error", details={"tool": tool_name})

    structured = result.get("structuredContent")
    if isinstance(structured, dict):
        return structured

    content = result.get("content")
    if isinstance(content, list) and content:
        first = content[0]
        if isinstance(first, dict) and isinstance(first.get("text"), str):
            text = first["text"]
            try:
                return json.loads(text)
            except json.JSONDecodeError:
                return text

    return result


def _headers(cfg: TargetConfig, session_id: str) -> Dict[str, str]:
    headers = {
        "Content-Type": "application/json",
        "Accept": f"application/json, {EVENT_STREAM}",
        "X-Session-ID": session_id,
        "mcp-session-id": session_id,
    }
    if cfg.auth:
        headers["Authorization"] = cfg.auth
    return headers


def _looks_like_event_stream(text: str) -> bool:
    head = text.lstrip()[:6]
    return head.startswith("data:") or head.startswith("event:")


def _safe_text(resp: Any) -> str:
    try:
        return resp.text or ""
    except Exception:
        return ""
