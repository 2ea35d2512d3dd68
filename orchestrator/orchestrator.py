# orchestrator/orchestrator.py

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import config
from adapters.confluence import WikiAdapter
from adapters.git import BranchAdapter, branch_name_for
from adapters.jira import OpenTicket, RemoteLink, TicketAdapter
from attachments.attacher import AssetAttacher, AttachmentOutcome
from attachments.cache import ImageCache
from orchestrator import linking
from orchestrator.context import StepContext
from orchestrator.models import (
    ArtifactKind,
    ArtifactReference,
    ErrorInfo,
    OrchestrationResult,
    StepId,
    StepResult,
    WorkItemRequest,
)
from orchestrator.steps import StepSpec, build_work_item_steps, validate_steps
from rpc.client import McpTransport
from rpc.errors import NetworkError, RpcError
from rpc.targets import TargetsConfig

logger = logging.getLogger(__name__)

REASON_INACTIVE = "active creation disabled"
REASON_NO_GIT_TARGET = "git target not configured"


@dataclass
class OrchestratorPolicy:
    """
    per_step_timeout_s: a step still running after this long is recorded as a
    failed NETWORK_ERROR and later waves go ahead. Its worker thread is not
    cancelled: it keeps running next to the later waves, its late result is
    dropped, and run() only returns once that thread has finished.
    """
    parallel_branch: bool = True  # run D alongside the A -> B -> E -> C chain
    per_step_timeout_s: Optional[float] = None
    trace: bool = True


class WorkItemOrchestrator:
    """
    Runs the work item step graph for one request:

      A ticket -> B implementation plan -> E QA plan (+ back-patch B) -> C cross-link A
      D branch, independent, skipped cleanly without a git target

    A reuses an open ticket with the same summary instead of creating a duplicate.

    Steps run in waves: every step whose dependencies are recorded is ready.
    Each step is isolated; its error becomes its StepResult and the run goes on.
    Always returns a fully populated OrchestrationResult.
    """

    def __init__(
        self,
        *,
        targets: TargetsConfig,
        tickets: TicketAdapter,
        wiki: WikiAdapter,
        branches: BranchAdapter,
        attacher: Optional[AssetAttacher] = None,
        policy: Optional[OrchestratorPolicy] = None,
        steps: Optional[List[StepSpec]] = None,
    ) -> None:
        self.targets = targets
        self.tickets = tickets
        self.wiki = wiki
        self.branches = branches
        self.attacher = attacher
        self.policy = policy or OrchestratorPolicy()

        self.steps = steps if steps is not None else build_work_item_steps()
        validate_steps(self.steps)

        self._handlers: Dict[StepId, Callable[[WorkItemRequest, StepContext], StepResult]] = {
            StepId.TICKET: self._create_ticket,
            StepId.IMPL_PLAN: self._create_impl_plan,
            StepId.QA_PLAN: self._create_qa_plan,
            StepId.CROSS_LINK: self._cross_link_ticket,
            StepId.BRANCH: self._create_branch,
        }
        unknown = [s.step.value for s in self.steps if s.step not in self._handlers]
        if unknown:
            raise ValueError(f"No handler for steps: {unknown}")

    @classmethod
    def from_config(cls, policy: Optional[OrchestratorPolicy] = None) -> "WorkItemOrchestrator":
        targets = TargetsConfig.from_config()
        transport = McpTransport(targets)
        return cls(
            targets=targets,
            tickets=TicketAdapter(transport),
            wiki=WikiAdapter(transport),
            branches=BranchAdapter(transport),
            attacher=AssetAttacher(transport, ImageCache(config.IMAGE_CACHE_TTL_S), targets),
            policy=policy,
        )

    # ---------------- run ----------------

    def run(self, request: WorkItemRequest) -> OrchestrationResult:
        return asyncio.run(self.arun(request))

    async def arun(self, request: WorkItemRequest) -> OrchestrationResult:
        if not request.enable_active_creation:
            logger.info("Active creation disabled for %s; nothing to create", request.component_name)
            return _inactive_result()

        self._trace("[ORCH] run: %s steps=%s", request.component_name, [s.step.value for s in self.steps])

        ctx = StepContext()
        remaining = list(self.steps)

        while remaining:
            ready = _select_ready(remaining, ctx)
            if not ready:
                # validate_steps rules this out; reaching it is a control-flow defect
                raise RuntimeError(f"No runnable steps left: {[s.step.value for s in remaining]}")

            if not self.policy.parallel_branch:
                ready = ready[:1]

            self._trace("[ORCH] wave: %s", [s.step.value for s in ready])

            results = await asyncio.gather(*(self._run_step_async(spec, request, ctx) for spec in ready))
            for result in results:
                ctx.record(result)

            done = {s.step for s in ready}
            remaining = [s for s in remaining if s.step not in done]

        return _build_result(ctx)

    async def _run_step_async(self, spec: StepSpec, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        call = asyncio.to_thread(self._run_step, spec, request, ctx)
        if self.policy.per_step_timeout_s is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.policy.per_step_timeout_s)
        except asyncio.TimeoutError:
            logger.error("[ORCH] step %s timed out after %.1fs", spec.step.value, self.policy.per_step_timeout_s)
            return StepResult.failed(
                spec.step, NetworkError(f"Step {spec.step.value} timed out after {self.policy.per_step_timeout_s}s")
            )

    def _run_step(self, spec: StepSpec, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        if spec.needs_git_target and self.targets.git is None:
            logger.info("[ORCH] step %s skipped: %s", spec.step.value, REASON_NO_GIT_TARGET)
            return StepResult.skipped(spec.step, REASON_NO_GIT_TARGET)

        missing = [d.value for d in spec.requires if ctx.reference(d) is None]
        if missing:
            reason = f"required step(s) {missing} did not succeed"
            self._trace("[ORCH] step %s skipped: %s", spec.step.value, reason)
            return StepResult.skipped(spec.step, reason)

        self._trace("[ORCH] step %s: %s", spec.step.value, spec.description)
        try:
            result = self._handlers[spec.step](request, ctx)
        except RpcError as e:
            logger.error("[ORCH] step %s failed (%s): %s", spec.step.value, e.error_type, e)
            return StepResult.failed(spec.step, e)
        except Exception as e:
            logger.exception("[ORCH] step %s failed unexpectedly", spec.step.value)
            return StepResult.failed(spec.step, e)

        self._trace("[ORCH] step %s done: %s", spec.step.value, result.status.value)
        return result

    def _trace(self, msg: str, *args: Any) -> None:
        logger.log(logging.INFO if self.policy.trace else logging.DEBUG, msg, *args)

    # ---------------- step handlers ----------------

    def _create_ticket(self, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        content = request.content
        summary = content.ticket_title or linking.default_ticket_title(request.component_name)

        existing = self._find_open_ticket(request.project_key, summary)
        if existing is not None:
            logger.info("Reusing open ticket %s for %r", existing.reference.key, summary)
            return StepResult.success(
                StepId.TICKET, existing.reference, existing=True, description=existing.description
            )

        description = content.ticket_description
        ref = self.tickets.create_ticket(
            project_key=request.project_key,
            summary=summary,
            description=description,
            issue_type=content.issue_type,
            assignee=content.assignee,
            additional_fields=content.additional_fields,
        )
        details: Dict[str, Any] = {}

        if content.epic_key:
            try:
                self.tickets.link_to_epic(ref.key, content.epic_key)
                details["epic_key"] = content.epic_key
            except RpcError as e:
                logger.warning("Could not link %s to epic %s: %s", ref.key, content.epic_key, e)

        outcome = self._attach(ref, request)
        if outcome is not None:
            details["attachment"] = outcome.to_dict()
            if outcome.attached and outcome.filename:
                embedded = linking.embed_ticket_image(description, outcome.filename)
                try:
                    self.tickets.update_description(ref.key, embedded)
                    description = embedded
                except RpcError as e:
                    logger.warning("Image attached to %s but embedding it failed: %s", ref.key, e)

        details["description"] = description
        return StepResult.success(StepId.TICKET, ref, **details)

    def _create_impl_plan(self, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        content = request.content
        title = content.impl_plan_title or linking.default_impl_plan_title(request.component_name)
        body = linking.render_impl_plan(content.impl_plan_body, ctx.reference(StepId.TICKET), request.design_url)

        ref = self.wiki.create_unique_page(
            request.wiki_space_key, request.wiki_parent_id, title, body, kind=ArtifactKind.IMPL_PLAN
        )
        return self._finish_page(StepId.IMPL_PLAN, ref, body, request)

    def _create_qa_plan(self, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        content = request.content
        title = content.qa_plan_title or linking.default_qa_plan_title(request.component_name)
        impl_result = ctx.get(StepId.IMPL_PLAN)
        impl_ref = ctx.reference(StepId.IMPL_PLAN)

        body = linking.render_qa_plan(
            request.component_name, content.qa_plan_body, ctx.reference(StepId.TICKET), impl_ref
        )
        ref = self.wiki.create_unique_page(
            request.wiki_space_key, request.wiki_parent_id, title, body, kind=ArtifactKind.QA_PLAN
        )
        result = self._finish_page(StepId.QA_PLAN, ref, body, request)

        details = dict(result.details)
        details["backpatched"] = False
        if impl_ref is not None and impl_result is not None:
            try:
                patched = linking.backpatch_qa_link(impl_result.details["body"], ref)
                self.wiki.update_page_body(impl_ref.id, patched, title=impl_ref.title or title)
                details["backpatched"] = True
                logger.info("Back-patched %s with QA plan link %s", impl_ref.id, ref.url)
            except (RpcError, ValueError, KeyError) as e:
                logger.warning("Back-patching implementation plan %s failed: %s", impl_ref.id, e)
                details["backpatch_error"] = ErrorInfo.from_exception(e).to_dict()
        return StepResult.success(StepId.QA_PLAN, ref, **details)

    def _cross_link_ticket(self, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        ticket = ctx.reference(StepId.TICKET)
        ticket_result = ctx.get(StepId.TICKET)
        if ticket is None or ticket_result is None:
            raise RuntimeError("cross-link ran without a ticket")

        impl_ref = ctx.reference(StepId.IMPL_PLAN)
        qa_ref = ctx.reference(StepId.QA_PLAN)

        links = [
            RemoteLink(url=ref.url, title=ref.title or label)
            for ref, label in (
                (impl_ref, linking.default_impl_plan_title(request.component_name)),
                (qa_ref, linking.default_qa_plan_title(request.component_name)),
            )
            if ref is not None and ref.url
        ]
        if links:
            self.tickets.add_remote_links(ticket.key, links)

        section = linking.render_related_resources(impl_ref, qa_ref)
        description = linking.with_related_resources(ticket_result.details.get("description", ""), section)
        self.tickets.update_description(ticket.key, description)

        return StepResult.success(StepId.CROSS_LINK, ticket, remote_links=len(links), description=description)

    def _create_branch(self, request: WorkItemRequest, ctx: StepContext) -> StepResult:
        git = self.targets.git
        if git is None:
            raise RuntimeError("branch step ran without a git target")
        name = request.content.branch_name or branch_name_for(request.component_name)
        ref = self.branches.create_branch(git.repo_path, name)
        return StepResult.success(StepId.BRANCH, ref, branch_name=name)

    # ---------------- shared helpers ----------------

    def _finish_page(self, step: StepId, ref: ArtifactReference, body: str, request: WorkItemRequest) -> StepResult:
        """Attach the preview image to a fresh page and embed it; `body` ends up as what the page holds."""
        details: Dict[str, Any] = {}
        outcome = self._attach(ref, request)
        if outcome is not None:
            details["attachment"] = outcome.to_dict()
            if outcome.attached and outcome.filename:
                embedded = linking.embed_page_image(body, outcome.filename)
                try:
                    self.wiki.update_page_body(ref.id, embedded, title=ref.title or "")
                    body = embedded
                except RpcError as e:
                    logger.warning("Image attached to page %s but embedding it failed: %s", ref.id, e)
        details["body"] = body
        return StepResult.success(step, ref, **details)

    def _find_open_ticket(self, project_key: str, summary: str) -> Optional[OpenTicket]:
        try:
            return self.tickets.find_open_ticket(project_key, summary)
        except RpcError as e:
            logger.warning("Duplicate ticket check failed, creating a new ticket: %s", e)
            return None

    def _attach(self, ref: ArtifactReference, request: WorkItemRequest) -> Optional[AttachmentOutcome]:
        if not request.image or self.attacher is None:
            return None
        return self.attacher.attach_image(ref, request.image, component_name=request.component_name)


def _select_ready(remaining: List[StepSpec], ctx: StepContext) -> List[StepSpec]:
    return [spec for spec in remaining if all(ctx.get(dep) is not None for dep in spec.depends_on)]


def _build_result(ctx: StepContext) -> OrchestrationResult:
    steps = ctx.snapshot()

    def entry(step: StepId) -> StepResult:
        return steps.get(step) or StepResult.skipped(step, "step not in graph")

    return OrchestrationResult(
        jira=entry(StepId.TICKET),
        wiki=entry(StepId.IMPL_PLAN),
        qa=entry(StepId.QA_PLAN),
        git=entry(StepId.BRANCH),
        steps=steps,
    )


def _inactive_result() -> OrchestrationResult:
    steps = {
        step: StepResult.skipped(step, REASON_INACTIVE)
        for step in (StepId.TICKET, StepId.IMPL_PLAN, StepId.QA_PLAN, StepId.BRANCH)
    }
    return OrchestrationResult(
        jira=steps[StepId.TICKET],
        wiki=steps[StepId.IMPL_PLAN],
        qa=steps[StepId.QA_PLAN],
        git=steps[StepId.BRANCH],
        steps=steps,
    )
