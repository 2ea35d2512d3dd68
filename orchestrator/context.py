from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Dict, Optional

from orchestrator.models import ArtifactReference, StepId, StepResult


@dataclass
class StepContext:
    """
    Orchestrator-owned, append-only record of step results for a single run.
    Each step writes exactly once; later steps read what earlier steps produced.
    """
    results: Dict[StepId, StepResult] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record(self, result: StepResult) -> None:
        with self._lock:
            if result.step in self.results:
                raise ValueError(f"Step result already recorded: {result.step.value}")
            self.results[result.step] = result

    def get(self, step: StepId) -> Optional[StepResult]:
        return self.results.get(step)

    def reference(self, step: StepId) -> Optional[ArtifactReference]:
        """The artifact a step produced, or None if it did not succeed."""
        result = self.results.get(step)
        if result is None or not result.ok:
            return None
        return result.reference

    def snapshot(self) -> Dict[StepId, StepResult]:
        with self._lock:
            return dict(self.results)
