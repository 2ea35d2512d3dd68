# rpc/targets.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

JsonObj = Dict[str, Any]

JIRA = "jira"
CONFLUENCE = "confluence"
GIT = "git"


@dataclass(frozen=True)
class TargetConfig:
    name: str
    url: str  # e.g. "https://mcp-jira.example.com/mcp/"
    auth: Optional[str] = None
    rest_base_url: Optional[str] = None  # native REST API, used for direct uploads
    repo_path: Optional[str] = None

    def endpoint(self) -> str:
        return self.url if self.url.endswith("/") else self.url + "/"


@dataclass(frozen=True)
class TargetsConfig:
    """
    One optional TargetConfig per remote system.

    `None` means "not configured". Callers branch on presence only.
    """
    jira: Optional[TargetConfig] = None
    confluence: Optional[TargetConfig] = None
    git: Optional[TargetConfig] = None

    @classmethod
    def from_config(cls, targets_cfg: Optional[Mapping[str, JsonObj]] = None) -> "TargetsConfig":
        if targets_cfg is None:
            import config

            targets_cfg = config.MCP_TARGETS

        return cls(
            jira=_target_from_dict(JIRA, targets_cfg.get(JIRA)),
            confluence=_target_from_dict(CONFLUENCE, targets_cfg.get(CONFLUENCE)),
            git=_target_from_dict(GIT, targets_cfg.get(GIT)),
        )

    def get(self, name: str) -> Optional[TargetConfig]:
        if name not in (JIRA, CONFLUENCE, GIT):
            raise KeyError(f"Unknown target: {name!r}")
        return getattr(self, name)


def format_auth(token: Optional[str]) -> Optional[str]:
    """
    Normalize a credential into an Authorization header value.
    Raw keys get a "Token " prefix; unresolved "${input:...}" placeholders count as no credential.
    """
    token = (token or "").strip()
    if not token or "${input" in token:
        return None
    if token.startswith("Token ") or token.startswith("Bearer "):
        return token
    return f"Token {token}"


def _target_from_dict(name: str, cfg: Optional[JsonObj]) -> Optional[TargetConfig]:
    if not cfg:
        return None

    url = str(cfg.get("url") or "").strip()
    if not url:
        return None

    return TargetConfig(
        name=name,
        url=url,
        auth=format_auth(cfg.get("auth")),
        rest_base_url=(str(cfg.get("rest_base_url") or "").strip() or None),
        repo_path=(str(cfg.get("repo_path") or "").strip() or None),
    )
