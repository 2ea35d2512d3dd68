from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List

from orchestrator.models import StepId


@dataclass(frozen=True)
class StepSpec:
    step: StepId
    description: str
    # must have succeeded, otherwise the step is skipped
    requires: List[StepId] = field(default_factory=list)
    # read if present; the step degrades when they failed
    uses: List[StepId] = field(default_factory=list)
    # run only when the git target is configured
    needs_git_target: bool = False

    @property
    def depends_on(self) -> List[StepId]:
        return list(self.requires) + [s for s in self.uses if s not in self.requires]


def build_work_item_steps() -> List[StepSpec]:
    """
    Fixed step graph for one work item:

      A ticket -> B implementation plan -> E QA plan (+ back-patch B) -> C cross-link A
      D branch (independent)
    """
    return [
        StepSpec(step=StepId.TICKET, description="create ticket"),
        StepSpec(
            step=StepId.IMPL_PLAN,
            description="create implementation-plan page",
            uses=[StepId.TICKET],
        ),
        StepSpec(
            step=StepId.QA_PLAN,
            description="create QA test-plan page and back-patch the implementation plan",
            uses=[StepId.TICKET, StepId.IMPL_PLAN],
        ),
        StepSpec(
            step=StepId.CROSS_LINK,
            description="link ticket to plan pages",
            requires=[StepId.TICKET],
            uses=[StepId.IMPL_PLAN, StepId.QA_PLAN],
        ),
        StepSpec(
            step=StepId.BRANCH,
            description="create branch",
            needs_git_target=True,
        ),
    ]


def validate_steps(steps: List[StepSpec]) -> None:
    """Every dependency must appear earlier in the list; each step appears once."""
    seen: Dict[StepId, int] = {}
    for idx, spec in enumerate(steps):
        if spec.step in seen:
            raise ValueError(f"Duplicate step in graph: {spec.step.value}")
        missing = [d.value for d in spec.depends_on if d not in seen]
        if missing:
            raise ValueError(f"Step {spec.step.value} depends on steps that do not run before it: {missing}")
        seen[spec.step] = idx
