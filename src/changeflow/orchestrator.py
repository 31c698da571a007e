from __future__ import annotations

import asyncio
import logging
import re
import shlex
import subprocess
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from changeflow.agents.ci_watcher import CIWatcherAgent
from changeflow.agents.implementer import ImplementerAgent, plan_deviation
from changeflow.agents.planner import Discovery, PlannerAgent
from changeflow.capabilities import ROLE_PHASES, Action, CapabilityGate, Phase, Role
from changeflow.ci import CIOutcome, CIWatcher, RunStatus, watch_ci
from changeflow.compensation import CompensationLedger
from changeflow.config import ChangeflowConfig
from changeflow.errors import (
    AmbiguityError,
    HandoffError,
    PolicyViolation,
    VerificationFailure,
)
from changeflow.handoff import HandoffMessage, HandoffProtocol
from changeflow.phases import PhaseStateMachine
from changeflow.plan import MarkerKind, Plan, PlanDocument, PlanMarker, Step, Task
from changeflow.review.fanout import ChangesetSnapshot, Reviewer
from changeflow.review.models import Coverage, SynthesizedReport
from changeflow.review.pipeline import run_review
from changeflow.scheduler import StepScheduler
from changeflow.state.store import WorkflowStore
from changeflow.todo import TodoStatus, TodoTracker

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
HANDOFF_DIRECTIVE = "Implement the approved plan step by step, verifying after each step."
MAX_ALIGNMENT_ROUNDS = 3
MAX_DRAFT_ATTEMPTS = 2
STATE_PREFIX = ".changeflow/"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class PlanVerdict(StrEnum):
    APPROVE = "approve"
    REVISE = "revise"
    ALTERNATIVE = "alternative"


@dataclass(frozen=True, slots=True)
class PlanDecision:
    verdict: PlanVerdict
    feedback: str = ""


class Collaborator(ABC):
    """The human on the other side of alignment and refinement."""

    @abstractmethod
    def answer(self, questions: list[str]) -> dict[str, str]:
        """Return answers keyed by question; blank answers leave a question open."""

    @abstractmethod
    def review_plan(self, plan: Plan) -> PlanDecision:
        """Approve the plan, ask for a revision, or propose an alternative."""


@dataclass(slots=True)
class CheckResult:
    passed: bool
    output: str = ""
    commands: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class RunSummary:
    workflow_id: str
    plan_id: str
    status: str
    completed_steps: list[str] = field(default_factory=list)
    handoff_id: str | None = None
    report: SynthesizedReport | None = None
    ci: CIOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "plan_id": self.plan_id,
            "status": self.status,
            "completed_steps": list(self.completed_steps),
            "handoff_id": self.handoff_id,
            "report": self.report.to_dict() if self.report is not None else None,
            "ci": self.ci.to_dict() if self.ci is not None else None,
        }


def run_command(command: str, cwd: Path) -> dict[str, Any]:
    command_text = command.strip()
    if not command_text:
        return {
            "command": command,
            "exit_code": 1,
            "stdout_tail": "",
            "stderr_tail": "Command is empty.",
            "used_shell": False,
        }

    used_shell = bool(SHELL_REQUIRED_PATTERN.search(command_text))
    command_payload: str | list[str] = command_text
    if not used_shell:
        try:
            command_payload = shlex.split(command_text)
        except ValueError:
            used_shell = True
            command_payload = command_text

    try:
        proc = subprocess.run(
            command_payload,
            cwd=cwd,
            shell=used_shell,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError as exc:
        return {
            "command": command,
            "exit_code": 127,
            "stdout_tail": "",
            "stderr_tail": str(exc),
            "used_shell": used_shell,
        }
    return {
        "command": command,
        "exit_code": proc.returncode,
        "stdout_tail": proc.stdout.strip()[-1000:],
        "stderr_tail": proc.stderr.strip()[-1000:],
        "used_shell": used_shell,
    }


def _run_git(repo_root: Path, *args: str) -> subprocess.CompletedProcess[str] | None:
    try:
        return subprocess.run(
            ["git", "--no-pager", *args],
            cwd=repo_root,
            text=True,
            capture_output=True,
        )
    except FileNotFoundError:
        return None


def git_changeset(repo_root: Path, plan: Plan | None) -> ChangesetSnapshot:
    """Snapshot uncommitted changes, falling back to the plan's footprint outside git."""
    files: dict[str, str] = {}
    names = _run_git(repo_root, "diff", "--name-only", "HEAD")
    if names is not None and names.returncode == 0:
        untracked = _run_git(repo_root, "ls-files", "--others", "--exclude-standard")
        paths = names.stdout.splitlines()
        if untracked is not None and untracked.returncode == 0:
            paths += untracked.stdout.splitlines()
        for path in sorted({item.strip() for item in paths if item.strip()}):
            if path.startswith(STATE_PREFIX):
                continue
            diff = _run_git(repo_root, "diff", "HEAD", "--", path)
            if diff is not None and diff.stdout:
                files[path] = diff.stdout
            elif (repo_root / path).is_file():
                files[path] = (repo_root / path).read_text(encoding="utf-8", errors="replace")
    elif plan is not None:
        for step in plan.steps:
            for path in step.footprint:
                target = repo_root / path
                if target.is_file():
                    files[path] = target.read_text(encoding="utf-8", errors="replace")
    context: dict[str, Any] = {}
    if plan is not None:
        context = {
            "plan_id": plan.plan_id,
            "task": plan.task.description,
            "steps": [step.title for step in plan.steps],
        }
    return ChangesetSnapshot.capture(files, context)


class Orchestrator:
    """Drives one change from task intake to reviewed, verified completion."""

    def __init__(
        self,
        *,
        repo_root: Path,
        config: ChangeflowConfig,
        store: WorkflowStore,
        planner: PlannerAgent,
        implementer: ImplementerAgent,
        collaborator: Collaborator,
        reviewers: Sequence[Reviewer] = (),
        gate: CapabilityGate | None = None,
        plan_document: PlanDocument | None = None,
        ci_watcher: CIWatcher | None = None,
        ci_agent: CIWatcherAgent | None = None,
        checker: Callable[[], CheckResult] | None = None,
        changeset_provider: Callable[[Plan | None], ChangesetSnapshot] | None = None,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.config = config
        self.store = store
        self.planner = planner
        self.implementer = implementer
        self.collaborator = collaborator
        self.reviewers = list(reviewers)
        self.gate = gate or CapabilityGate(config.project.plan_path)
        self.plan_document = plan_document or PlanDocument(
            self.repo_root, config.project.plan_path
        )
        self.todos = TodoTracker(store)
        self.scheduler = StepScheduler(config.workflow.max_parallel_steps)
        self.ci_watcher = ci_watcher
        self.ci_agent = ci_agent
        self.checker = checker or self.run_checks
        self.changeset_provider = changeset_provider or (
            lambda plan: git_changeset(self.repo_root, plan)
        )

    # Workflow record

    def _workflow(self) -> dict[str, Any]:
        return self.store.get_workflow()

    def _update_workflow(self, **updates: Any) -> dict[str, Any]:
        def _updater(payload: Any) -> dict[str, Any]:
            workflow = payload if isinstance(payload, dict) else {}
            workflow.update(updates)
            workflow["updated_at"] = _utcnow_iso()
            return workflow

        return self.store.update_json("workflow", _updater, default={})

    def _machine(self, role: Role, workflow_id: str) -> PhaseStateMachine:
        def _on_transition(event: dict[str, Any]) -> None:
            self.store.add_history({**event, "workflow_id": workflow_id})

        return PhaseStateMachine(role, on_transition=_on_transition)

    def _protocol(self, workflow_id: str) -> HandoffProtocol:
        return HandoffProtocol(
            self.store, self.plan_document, self.gate, workflow_id=workflow_id
        )

    def _record_decision(self, topic: str, decided_by: Role, decision: str, **extra: Any) -> None:
        self.store.add_decision(
            {
                "id": f"dec-{topic}-{uuid4().hex[:8]}",
                "topic": topic,
                "decided_by": str(decided_by),
                "decision": decision[:4000],
                "created_at": _utcnow_iso(),
                **extra,
            }
        )

    # Planning

    async def plan(self, goal: str) -> RunSummary:
        task = Task.accept(goal)
        workflow_id = f"wf-{uuid4().hex[:8]}"
        self.store.set_workflow(
            {
                "workflow_id": workflow_id,
                "task_id": task.task_id,
                "task": task.description,
                "status": "planning",
                "plan_id": None,
                "started_at": _utcnow_iso(),
                "step_snapshots": {},
            }
        )
        # A new workflow owns a fresh checklist.
        self.store.set_todos({})
        planner = self._machine(Role.PLANNER, workflow_id)
        plan = await self._run_planner(task, planner)
        self._update_workflow(status="planned", plan_id=plan.plan_id)

        auto_start = self.config.workflow.auto_start_handoff
        implementer = self._machine(Role.IMPLEMENTER, workflow_id)
        receipt = self._protocol(workflow_id).transfer(
            HandoffMessage(Role.PLANNER, Role.IMPLEMENTER, plan, HANDOFF_DIRECTIVE, auto_start),
            source=planner,
            target=implementer,
        )
        self.store.increment_metric("handoffs")
        if not auto_start:
            self._update_workflow(status="awaiting_handoff", handoff_id=receipt.handoff_id)
            logger.info(
                "Plan %s approved; handoff %s awaits a start", plan.plan_id, receipt.handoff_id
            )
            return RunSummary(workflow_id, plan.plan_id, "awaiting_handoff", [], receipt.handoff_id)
        return await self._implement(plan, implementer, workflow_id, receipt.handoff_id)

    async def _run_planner(self, task: Task, machine: PhaseStateMachine) -> Plan:
        answers: dict[str, str] = {}
        unanswered_rounds = 0
        machine.start()
        while True:
            discovery = await self.planner.discover(task, answers)
            machine.context.open_questions = [q for q in discovery.questions if q not in answers]
            machine.satisfy()
            machine.advance(reason="discovery recorded")

            if machine.context.open_questions:
                questions = list(machine.context.open_questions)
                replies = self.collaborator.answer(questions)
                answers.update({q: a.strip() for q, a in replies.items() if a and a.strip()})
                machine.context.open_questions = [q for q in questions if q not in answers]
                if machine.context.open_questions:
                    unanswered_rounds += 1
                    if unanswered_rounds >= MAX_ALIGNMENT_ROUNDS:
                        raise AmbiguityError(
                            "Clarification questions remain unanswered.",
                            questions=list(machine.context.open_questions),
                            role=str(Role.PLANNER),
                            phase=str(Phase.ALIGNMENT),
                        )
                    machine.transition(Phase.DISCOVERY, reason="new unknowns surfaced")
                    continue
            machine.satisfy()
            machine.advance(reason="no open questions")

            plan = await self._draft(task, discovery, answers, "", Phase.DESIGN, None)
            machine.satisfy()
            machine.advance(reason=f"plan {plan.plan_id} drafted")

            while True:
                decision = self.collaborator.review_plan(plan)
                self._record_decision(
                    "plan_review",
                    Role.PLANNER,
                    decision.feedback or str(decision.verdict),
                    verdict=str(decision.verdict),
                    plan_id=plan.plan_id,
                )
                if decision.verdict is PlanVerdict.APPROVE:
                    plan = replace(plan, approved=True)
                    self.gate.guard(
                        Role.PLANNER,
                        Phase.REFINEMENT,
                        Action.WRITE_PLAN,
                        self.plan_document.relative_path,
                        self.plan_document.save,
                        plan,
                    )
                    machine.satisfy()
                    logger.info("Plan %s approved with %d steps", plan.plan_id, len(plan.steps))
                    return plan
                if decision.verdict is PlanVerdict.REVISE:
                    self.store.increment_metric("plan_revisions")
                    machine.transition(Phase.REFINEMENT, reason="revision requested")
                    plan = await self._draft(
                        task, discovery, answers, decision.feedback, Phase.REFINEMENT, plan.plan_id
                    )
                    continue
                break

            answers["alternative proposal"] = decision.feedback
            machine.transition(Phase.DISCOVERY, reason="alternative proposed")

    async def _draft(
        self,
        task: Task,
        discovery: Discovery,
        answers: dict[str, str],
        feedback: str,
        phase: Phase,
        plan_id: str | None,
    ) -> Plan:
        problems: list[str] = []
        for _ in range(MAX_DRAFT_ATTEMPTS):
            plan = await self.planner.draft(
                task,
                discovery.notes,
                answers=answers,
                feedback=feedback,
                plan_id=plan_id,
                phase=phase,
            )
            problems = plan.problems()
            if not problems:
                break
            logger.warning("Draft plan rejected: %s", "; ".join(problems))
            feedback = "Fix these plan problems: " + "; ".join(problems)
        else:
            raise AmbiguityError(
                "Planner could not produce a decision-complete plan.",
                questions=problems,
                role=str(Role.PLANNER),
                phase=str(phase),
            )
        self.gate.guard(
            Role.PLANNER,
            phase,
            Action.WRITE_PLAN,
            self.plan_document.relative_path,
            self.plan_document.save,
            plan,
        )
        self.todos.mirror(plan, writer=Role.PLANNER)
        return plan

    # Implementation

    def _pending_handoff(self, plan_id: str) -> dict[str, Any] | None:
        for record in reversed(self.store.get_handoffs()):
            if record.get("artifact_id") == plan_id:
                return record if record.get("status") == "pending" else None
        return None

    def _restored_planner(self, plan: Plan, workflow_id: str) -> PhaseStateMachine:
        machine = self._machine(Role.PLANNER, workflow_id)
        satisfied = set(ROLE_PHASES[Role.PLANNER])
        if not plan.approved:
            satisfied.discard(Phase.REFINEMENT)
        machine.restore(
            {
                "current": Phase.REFINEMENT,
                "terminated": False,
                "satisfied": satisfied,
                "history_length": 0,
            }
        )
        return machine

    async def implement(self, *, override: bool = False) -> RunSummary:
        """Start implementing the persisted plan.

        A pending handoff is accepted as-is. Otherwise the plan is handed over again,
        which is refused for a completed plan unless `override` is set.
        """
        plan = self.plan_document.load()
        workflow = self._workflow()
        if workflow.get("status") == "aborted":
            raise HandoffError(
                "Workflow was aborted; plan again to start a new one.",
                role=str(Role.IMPLEMENTER),
                artifact_id=plan.plan_id,
                action="implement",
            )
        workflow_id = workflow.get("workflow_id") or f"wf-{uuid4().hex[:8]}"
        implementer = self._machine(Role.IMPLEMENTER, workflow_id)
        protocol = self._protocol(workflow_id)

        pending = self._pending_handoff(plan.plan_id)
        if pending is not None and not plan.complete:
            protocol.accept_pending(str(pending["id"]), implementer)
            self.plan_document.transfer_ownership(Role.IMPLEMENTER)
            handoff_id = str(pending["id"])
        else:
            receipt = protocol.transfer(
                HandoffMessage(Role.PLANNER, Role.IMPLEMENTER, plan, HANDOFF_DIRECTIVE, True),
                source=self._restored_planner(plan, workflow_id),
                target=implementer,
                override=override,
            )
            self.store.increment_metric("handoffs")
            handoff_id = receipt.handoff_id
            plan = self.plan_document.load()
        return await self._implement(plan, implementer, workflow_id, handoff_id)

    async def _implement(
        self,
        plan: Plan,
        machine: PhaseStateMachine,
        workflow_id: str,
        handoff_id: str,
    ) -> RunSummary:
        self._update_workflow(
            workflow_id=workflow_id,
            status="implementing",
            plan_id=plan.plan_id,
            handoff_id=handoff_id,
        )
        self.todos.transfer_ownership(Role.IMPLEMENTER)
        self.todos.mirror(plan, writer=Role.IMPLEMENTER)
        machine.context.data["plan_id"] = plan.plan_id
        machine.satisfy()
        machine.advance(reason="plan loaded")

        await self._execute_steps(plan, machine, workflow_id)
        completed = [item.step_id for item in self.todos.items() if item.status is TodoStatus.DONE]
        await self._finish(plan, machine, completed, workflow_id)

        report: SynthesizedReport | None = None
        if self.reviewers:
            machine.advance(reason="post-completion review")
            report = await self._review(plan, workflow_id)
            machine.satisfy()
            if self.config.workflow.apply_fixes and report.entries:
                machine.transition(Phase.IMPLEMENTATION, reason="applying review fixes")

                async def _apply(feedback: str) -> None:
                    await self.implementer.apply_fixes(plan, report, feedback=feedback)

                await self._build_and_verify(machine, _apply, label="review fixes")
                machine.satisfy()
                await self._finish(plan, machine, completed, workflow_id)
        machine.terminate()

        self.plan_document.transfer_ownership(Role.PLANNER)
        self.todos.transfer_ownership(Role.PLANNER)
        self._update_workflow(status="complete", completed_steps=completed, ended_at=_utcnow_iso())
        self.store.increment_metric("workflows_completed")
        logger.info("Workflow %s complete: %d steps", workflow_id, len(completed))

        outcome: CIOutcome | None = None
        if self.config.ci.enabled and self.ci_watcher is not None:
            branch = self._current_branch()
            if branch is None:
                logger.warning("CI watch skipped: no current branch")
            else:
                outcome = await self.watch(branch)
        return RunSummary(
            workflow_id, plan.plan_id, "complete", completed, handoff_id, report, outcome
        )

    async def _execute_steps(
        self, plan: Plan, machine: PhaseStateMachine, workflow_id: str
    ) -> None:
        done = {item.step_id for item in self.todos.items() if item.status is TodoStatus.DONE}
        batches = [
            batch
            for batch in self.scheduler.batches(plan)
            if not all(step.step_id in done for step in batch)
        ]
        if not batches:

            async def _nothing(_feedback: str) -> None:
                return None

            await self._build_and_verify(machine, _nothing, label="resumed plan")
        for index, batch in enumerate(batches):
            if index:
                machine.transition(Phase.IMPLEMENTATION, reason="next step")

            async def _work(feedback: str, batch: tuple[Step, ...] = batch) -> None:
                await self.scheduler.run_batch(
                    batch, lambda step: self._run_step(plan, step, feedback, workflow_id)
                )

            label = ", ".join(step.step_id for step in batch)
            await self._build_and_verify(machine, _work, label=label)
            for step in batch:
                self.todos.mark(step.step_id, TodoStatus.DONE, writer=Role.IMPLEMENTER)
        machine.satisfy()

    async def _build_and_verify(
        self,
        machine: PhaseStateMachine,
        work: Callable[[str], Awaitable[None]],
        *,
        label: str,
    ) -> None:
        """Run `work` in implementation, then verify; loops back until checks pass.

        Leaves the machine in verification with the checks green.
        """
        attempts = max(1, self.config.workflow.max_verification_attempts)
        feedback = ""
        failure: VerificationFailure | None = None
        for attempt in range(1, attempts + 1):
            await work(feedback)
            machine.satisfy()
            machine.advance(reason=f"{label} executed")
            result = self.checker()
            if result.passed:
                return
            self.store.increment_metric("verification_failures")
            failure = VerificationFailure(
                f"Checks failed after {label} (attempt {attempt}/{attempts}).",
                step_id=label,
                output=result.output,
                role=str(Role.IMPLEMENTER),
                phase=str(Phase.VERIFICATION),
            )
            logger.warning("%s", failure)
            feedback = result.output
            if attempt < attempts:
                machine.transition(Phase.IMPLEMENTATION, reason="failed check")
        raise AmbiguityError(
            f"Checks for {label} still fail after {attempts} attempts; a decision is needed.",
            questions=[f"How should {label} proceed given the failing checks?"],
            role=str(Role.IMPLEMENTER),
            phase=str(Phase.VERIFICATION),
        ) from failure

    def _safe_path(self, path: str) -> Path:
        target = (self.repo_root / path).resolve()
        if not target.is_relative_to(self.repo_root):
            raise PolicyViolation(
                f"Footprint path escapes the repository: {path}",
                role=str(Role.IMPLEMENTER),
                artifact_id=path,
                action=str(Action.MODIFY),
            )
        return target

    def _capture_step_snapshot(self, step: Step) -> None:
        files: dict[str, str | None] = {}
        for path in step.footprint:
            target = self._safe_path(path)
            files[path] = target.read_text(encoding="utf-8") if target.is_file() else None

        def _updater(payload: Any) -> dict[str, Any]:
            workflow = payload if isinstance(payload, dict) else {}
            snapshots = workflow.setdefault("step_snapshots", {})
            # Retries keep the content from before the first attempt.
            snapshots.setdefault(step.step_id, files)
            return workflow

        self.store.update_json("workflow", _updater, default={})

    async def _run_step(self, plan: Plan, step: Step, feedback: str, workflow_id: str) -> None:
        for path in step.footprint:
            self.gate.require(Role.IMPLEMENTER, Phase.IMPLEMENTATION, Action.MODIFY, path)
        self._capture_step_snapshot(step)
        self.todos.mark(step.step_id, TodoStatus.IN_PROGRESS, writer=Role.IMPLEMENTER)
        response = await self.implementer.execute_step(plan, step, feedback=feedback)
        deviation = plan_deviation(response)
        if deviation is not None:
            self.todos.mark(
                step.step_id, TodoStatus.BLOCKED, writer=Role.IMPLEMENTER, note=deviation
            )
            raise AmbiguityError(
                f"Step {step.step_id} cannot be completed as planned: {deviation}",
                questions=[deviation],
                role=str(Role.IMPLEMENTER),
                phase=str(Phase.IMPLEMENTATION),
                artifact_id=plan.plan_id,
                action=step.step_id,
            )
        self._record_decision(
            "implementation",
            Role.IMPLEMENTER,
            response.content,
            plan_id=plan.plan_id,
            step_id=step.step_id,
            workflow_id=workflow_id,
        )
        self.store.increment_metric("steps_executed")

    def run_checks(self) -> CheckResult:
        self.gate.require(Role.IMPLEMENTER, Phase.VERIFICATION, Action.EXECUTE_READONLY)
        commands = [
            command
            for command in (self.config.project.test_command, self.config.project.lint_command)
            if command.strip()
        ]
        results = [run_command(command, self.repo_root) for command in commands]
        failed = [result for result in results if result["exit_code"] != 0]
        output = "\n\n".join(
            f"$ {result['command']}\n{result['stdout_tail']}\n{result['stderr_tail']}".strip()
            for result in failed
        )
        return CheckResult(passed=not failed, output=output, commands=results)

    async def _finish(
        self,
        plan: Plan,
        machine: PhaseStateMachine,
        completed: list[str],
        workflow_id: str,
    ) -> None:
        machine.advance(reason="all steps verified")
        await self.implementer.document(plan, completed)
        machine.satisfy()
        machine.advance(reason="documentation recorded")
        current = self.plan_document.load()
        if not current.complete:
            marker = PlanMarker(
                kind=MarkerKind.COMPLETE,
                revision=current.revision,
                by=str(Role.IMPLEMENTER),
                note=workflow_id,
            )
            self.gate.guard(
                Role.IMPLEMENTER,
                Phase.COMPLETION,
                Action.WRITE_PLAN,
                self.plan_document.relative_path,
                self.plan_document.prepend_marker,
                marker,
                writer=Role.IMPLEMENTER,
            )
        machine.satisfy()

    # Review, CI, status

    async def _review(self, plan: Plan | None, workflow_id: str) -> SynthesizedReport:
        snapshot = self.changeset_provider(plan)
        machine = self._machine(Role.REVIEWER, workflow_id)
        machine.start()
        report = await run_review(
            snapshot,
            self.reviewers,
            reviewer_timeout_seconds=self.config.review.reviewer_timeout_seconds,
            crossgrade_timeout_seconds=self.config.review.crossgrade_timeout_seconds,
            threshold=self.config.review.similarity_threshold,
            adjacency=self.config.review.line_adjacency,
            machine=machine,
        )
        self.store.add_review(
            {
                "workflow_id": workflow_id,
                "plan_id": plan.plan_id if plan is not None else None,
                "created_at": _utcnow_iso(),
                **report.to_dict(),
            }
        )
        self.store.increment_metric("reviews")
        if report.coverage is Coverage.PARTIAL:
            self.store.increment_metric("partial_reviews")
        return report

    async def review(self) -> SynthesizedReport:
        if not self.reviewers:
            raise AmbiguityError("No reviewers are configured.", role=str(Role.REVIEWER))
        plan = self.plan_document.load() if self.plan_document.exists() else None
        workflow_id = self._workflow().get("workflow_id") or f"wf-{uuid4().hex[:8]}"
        return await self._review(plan, workflow_id)

    def _current_branch(self) -> str | None:
        proc = _run_git(self.repo_root, "rev-parse", "--abbrev-ref", "HEAD")
        if proc is None or proc.returncode != 0:
            return None
        branch = proc.stdout.strip()
        return branch if branch and branch != "HEAD" else None

    async def watch(self, branch_ref: str) -> CIOutcome:
        if self.ci_watcher is None:
            raise AmbiguityError("No CI watcher is configured.", role=str(Role.CI_WATCHER))
        workflow_id = self._workflow().get("workflow_id") or f"wf-{uuid4().hex[:8]}"
        machine = self._machine(Role.CI_WATCHER, workflow_id)
        machine.start()
        outcome = await asyncio.to_thread(
            watch_ci,
            self.ci_watcher,
            branch_ref,
            timeout_seconds=self.config.ci.watch_timeout_seconds,
            gate=self.gate,
        )
        machine.satisfy()
        machine.terminate()
        self._update_workflow(ci=outcome.to_dict())
        self.store.increment_metric(f"ci_{outcome.status}")
        if outcome.status is RunStatus.FAILED and self.ci_agent is not None:
            triage = await self.ci_agent.triage(outcome)
            self._record_decision(
                "ci_triage", Role.CI_WATCHER, triage.content, run_ref=outcome.run_ref
            )
        return outcome

    def status(self, verbose: bool = False) -> dict[str, Any]:
        workflow = self._workflow()
        if not verbose:
            workflow = {key: value for key, value in workflow.items() if key != "step_snapshots"}
        plan_payload: dict[str, Any] | None = None
        if self.plan_document.exists():
            plan = self.plan_document.load()
            plan_payload = {
                "plan_id": plan.plan_id,
                "task": plan.task.description,
                "approved": plan.approved,
                "complete": plan.complete,
                "revision": plan.revision,
                "steps": len(plan.steps),
            }
        reviews = self.store.get_reviews()
        payload: dict[str, Any] = {
            "workflow": workflow,
            "plan": plan_payload,
            "todos": self.todos.summary(),
            "handoffs": self.store.get_handoffs()[-5:],
            "latest_review": reviews[-1] if reviews else None,
            "metrics": self.store.get_metrics(),
        }
        if verbose:
            payload["todo_items"] = [
                {"step_id": item.step_id, "title": item.title, "status": str(item.status)}
                for item in self.todos.items()
            ]
            payload["history"] = self.store.get_history()
            payload["decisions"] = self.store.get_decisions()
        return payload

    # Abort

    def _restore_files(self, files: dict[str, str | None]) -> None:
        for path, content in files.items():
            self.gate.require(Role.IMPLEMENTER, Phase.IMPLEMENTATION, Action.MODIFY, path)
            target = self._safe_path(path)
            if content is None:
                target.unlink(missing_ok=True)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(content, encoding="utf-8")

    def abort(self, *, rollback: bool = False) -> dict[str, Any]:
        workflow = self._workflow()
        status = workflow.get("status")
        if status in {"planning", "planned", "awaiting_handoff"}:
            pending = self._pending_handoff(str(workflow.get("plan_id", "")))
            if pending is not None:
                self.store.add_handoff(
                    {**pending, "status": "cancelled", "cancelled_at": _utcnow_iso()}
                )
            self._update_workflow(status="aborted", aborted_at=_utcnow_iso())
            logger.info("Workflow %s aborted before implementation", workflow.get("workflow_id"))
            return {"status": "aborted", "side_effects": "none"}
        # An implementation stopped earlier without rollback can still be rolled back.
        stopped_mid_implementation = status == "aborted" and workflow.get("aborted_from") == (
            "implementing"
        )
        if status not in {"implementing", "rollback_incomplete"} and not (
            rollback and stopped_mid_implementation
        ):
            return {"status": status or "idle", "action": "none"}

        snapshots: dict[str, dict[str, str | None]] = workflow.get("step_snapshots", {})
        items = self.todos.items()
        partial_state = {
            "completed": [item.step_id for item in items if item.status is TodoStatus.DONE],
            "unfinished": [item.step_id for item in items if item.status is not TodoStatus.DONE],
            "touched": sorted({path for files in snapshots.values() for path in files}),
        }
        if not rollback:
            self._update_workflow(
                status="aborted", aborted_from="implementing", aborted_at=_utcnow_iso()
            )
            return {"status": "aborted", "rolled_back": False, "partial_state": partial_state}

        ledger = CompensationLedger(str(workflow.get("workflow_id", "")))
        for step_id, files in snapshots.items():
            ledger.record(
                step_id,
                f"restore:{step_id}",
                lambda _key, files=files: self._restore_files(files),
            )
        report = ledger.rollback()
        final_status = "rolled_back" if report.clean else "rollback_incomplete"
        self._update_workflow(status=final_status, aborted_at=_utcnow_iso())
        logger.info(
            "Workflow %s %s: %s", workflow.get("workflow_id"), final_status, report.compensated
        )
        return {
            "status": final_status,
            "rolled_back": True,
            "compensated": report.compensated,
            "errors": report.errors,
            "partial_state": partial_state,
        }
