# rpc/shims.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

JsonObj = Dict[str, Any]

ANY_TOOL = "*"


@dataclass(frozen=True)
class ShimRule:
    tool: str
    drop: Tuple[str, ...] = ()
    rename: Dict[str, str] = field(default_factory=dict)

    def matches(self, tool_name: str) -> bool:
        return self.tool == ANY_TOOL or self.tool == tool_name


class ShimTable:
    """
    Declarative per-target argument rewrites.

    Some servers reject optional fields other servers accept; the rules for
    each target live in config.TARGET_PARAM_SHIMS, not in adapter code.
    """

    def __init__(self, rules: Optional[Mapping[str, List[ShimRule]]] = None) -> None:
        self.rules: Dict[str, List[ShimRule]] = {k: list(v) for k, v in (rules or {}).items()}

    @classmethod
    def from_config(cls, shims_cfg: Optional[Mapping[str, List[JsonObj]]] = None) -> "ShimTable":
        if shims_cfg is None:
            import config

            shims_cfg = config.TARGET_PARAM_SHIMS

        rules: Dict[str, List[ShimRule]] = {}
        for target, entries in shims_cfg.items():
            parsed: List[ShimRule] = []
            for entry in entries or []:
                tool = entry.get("tool")
                if not isinstance(tool, str) or not tool:
                    raise ValueError(f"Shim rule for target {target!r} is missing 'tool': {entry!r}")
                parsed.append(
                    ShimRule(
                        tool=tool,
                        drop=tuple(entry.get("drop") or ()),
                        rename=dict(entry.get("rename") or {}),
                    )
                )
            rules[str(target)] = parsed
        return cls(rules)

    def apply(self, target: str, tool_name: str, args: JsonObj) -> JsonObj:
        """Return a rewritten copy of `args`; the input dict is never mutated."""
        out = dict(args)
        for rule in self.rules.get(target, []):
            if not rule.matches(tool_name):
                continue
            for key in rule.drop:
                out.pop(key, None)
            for old, new in rule.rename.items():
                if old in out:
                    out[new] = out.pop(old)
        return out
