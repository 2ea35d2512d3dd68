# main.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List

from orchestrator.models import WorkItemRequest
from orchestrator.orchestrator import OrchestratorPolicy, WorkItemOrchestrator
from orchestrator.steps import StepSpec, build_work_item_steps
from rpc.client import McpTransport
from rpc.errors import RpcError
from rpc.targets import TargetsConfig


def describe_steps(steps: List[StepSpec]) -> str:
    """Human-friendly view of the step graph. No remote calls."""
    lines: List[str] = ["Work item steps:"]
    for i, spec in enumerate(steps, 1):
        extra = []
        if spec.requires:
            extra.append(f"requires={[s.value for s in spec.requires]}")
        if spec.uses:
            extra.append(f"uses={[s.value for s in spec.uses]}")
        if spec.needs_git_target:
            extra.append("only with a git target")
        lines.append(f"  {i}) {spec.step.value}: {spec.description}" + (f" ({', '.join(extra)})" if extra else ""))
    return "\n".join(lines)


def cmd_run(args: argparse.Namespace) -> int:
    data = json.loads(Path(args.request).read_text(encoding="utf-8"))
    if args.active:
        data["enable_active_creation"] = True
    request = WorkItemRequest.from_dict(data)

    policy = OrchestratorPolicy(parallel_branch=not args.sequential, trace=not args.quiet)
    orch = WorkItemOrchestrator.from_config(policy=policy)
    result = orch.run(request)
    print(json.dumps(result.as_metadata(), indent=2, sort_keys=True))
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    print(describe_steps(build_work_item_steps()))
    return 0


def cmd_tools(args: argparse.Namespace) -> int:
    transport = McpTransport(TargetsConfig.from_config())
    try:
        tools = transport.list_tools(args.target)
    except RpcError as e:
        print(json.dumps({"error": e.to_dict()}, indent=2), file=sys.stderr)
        return 1
    finally:
        transport.close()
    for tool in tools:
        print(f"{tool.get('name')}: {tool.get('description', '')}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create linked work item artifacts through MCP tool servers")
    parser.add_argument("--log-level", default="INFO")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run the orchestrator for one request JSON file")
    run.add_argument("request", help="Path to a work item request (JSON)")
    run.add_argument("--active", action="store_true", help="Force enable_active_creation on")
    run.add_argument("--sequential", action="store_true", help="Create the branch after the other steps")
    run.add_argument("--quiet", action="store_true", help="Step trace at DEBUG instead of INFO")
    run.set_defaults(func=cmd_run)

    plan = sub.add_parser("plan", help="Print the step graph")
    plan.set_defaults(func=cmd_plan)

    tools = sub.add_parser("tools", help="List the tools a target exposes")
    tools.add_argument("target", choices=["jira", "confluence", "git"])
    tools.set_defaults(func=cmd_tools)

    return parser


def main(argv: List[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
