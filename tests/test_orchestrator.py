import asyncio
import json
from collections.abc import AsyncIterator, Callable, Sequence
from pathlib import Path
from typing import Any

import pytest

from changeflow.agents import CIWatcherAgent, ImplementerAgent, PlannerAgent
from changeflow.backends.base import AgentBackend
from changeflow.capabilities import CapabilityGate
from changeflow.ci import CIWatcher, RunStatus
from changeflow.config import ChangeflowConfig
from changeflow.errors import AlreadyCompletedError, AmbiguityError, HandoffError
from changeflow.orchestrator import (
    CheckResult,
    Collaborator,
    Orchestrator,
    PlanDecision,
    PlanVerdict,
)
from changeflow.plan import MarkerKind, Plan, PlanDocument
from changeflow.review.fanout import ChangesetSnapshot, Reviewer
from changeflow.review.models import Finding, GradeSubmission, ReviewBatch, Severity
from changeflow.state import WorkflowStore
from changeflow.todo import TodoStatus

PLAN_REPLY = "\n".join(
    [
        '{"assumption": "SQLite is available"}',
        '{"step_id": "s1", "title": "Add model", "footprint": ["app/model.py"]}',
        '{"step_id": "s2", "title": "Add route", "depends_on": ["s1"],'
        ' "footprint": ["app/routes.py"]}',
    ]
)


class ScriptedBackend(AgentBackend):
    """Answers by instruction prefix; step runs write their footprint like a real agent."""

    def __init__(self, repo_root: Path, questions: Sequence[str] = ()) -> None:
        self.repo_root = repo_root
        self.questions = list(questions)
        self.deviate_on: str | None = None
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _reply(self, user_prompt: str, context: dict[str, Any]) -> str:
        if user_prompt.startswith("Investigate"):
            return "\n".join(json.dumps({"question": question}) for question in self.questions)
        if user_prompt.startswith("Write a decision-complete"):
            return PLAN_REPLY
        if user_prompt.startswith("Implement step"):
            step = context["step"]
            if step["step_id"] == self.deviate_on:
                return '{"plan_deviation": "the target module was removed"}'
            for path in step["footprint"]:
                target = self.repo_root / path
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_text(f"# written by {step['step_id']}\n", encoding="utf-8")
            return f"Implemented {step['step_id']}"
        if user_prompt.startswith("Explain why CI run"):
            return "The login test fails because the fixture user is missing."
        return "ok"

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, tools
        self.calls.append((user_prompt, context))
        yield self._reply(user_prompt, context)

    def prompts(self, prefix: str) -> list[dict[str, Any]]:
        return [context for prompt, context in self.calls if prompt.startswith(prefix)]


class FakeCollaborator(Collaborator):
    def __init__(
        self, answers: dict[str, str] | None = None, decisions: Sequence[PlanDecision] = ()
    ) -> None:
        self.answers = answers or {}
        self.decisions = list(decisions)
        self.asked: list[list[str]] = []
        self.reviewed: list[Plan] = []

    def answer(self, questions: list[str]) -> dict[str, str]:
        self.asked.append(list(questions))
        return {question: self.answers.get(question, "") for question in questions}

    def review_plan(self, plan: Plan) -> PlanDecision:
        self.reviewed.append(plan)
        if self.decisions:
            return self.decisions.pop(0)
        return PlanDecision(PlanVerdict.APPROVE)


class FakeReviewer(Reviewer):
    def __init__(self, reviewer_id: str, findings: Sequence[Finding] = ()) -> None:
        self.reviewer_id = reviewer_id
        self.findings = list(findings)

    async def review(self, snapshot: ChangesetSnapshot) -> Sequence[Finding]:
        return self.findings

    async def cross_grade(
        self, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> GradeSubmission:
        return GradeSubmission()


class FakeWatcher(CIWatcher):
    def discover(self, branch_ref: str) -> str:
        return "run-1"

    def watch(self, run_ref: str, timeout_seconds: float) -> RunStatus:
        return RunStatus.FAILED

    def fetch_failure_excerpt(self, run_ref: str) -> str:
        return "FAILED tests/test_login.py"


def _passing() -> CheckResult:
    return CheckResult(passed=True)


def _build(
    tmp_path: Path,
    *,
    backend: ScriptedBackend | None = None,
    collaborator: FakeCollaborator | None = None,
    checker: Callable[[], CheckResult] = _passing,
    reviewers: Sequence[Reviewer] = (),
    config: ChangeflowConfig | None = None,
    **kwargs: Any,
) -> tuple[Orchestrator, ScriptedBackend, WorkflowStore]:
    config = config or ChangeflowConfig()
    backend = backend or ScriptedBackend(tmp_path)
    store = WorkflowStore(tmp_path)
    gate = CapabilityGate(config.project.plan_path)
    orchestrator = Orchestrator(
        repo_root=tmp_path,
        config=config,
        store=store,
        planner=PlannerAgent(backend, gate),
        implementer=ImplementerAgent(backend, gate),
        collaborator=collaborator or FakeCollaborator(),
        reviewers=reviewers,
        gate=gate,
        checker=checker,
        changeset_provider=lambda plan: ChangesetSnapshot.capture({"app/model.py": "x = 1\n"}),
        **kwargs,
    )
    return orchestrator, backend, store


def test_plan_to_completion_marks_the_plan_complete(tmp_path: Path) -> None:
    backend = ScriptedBackend(tmp_path, questions=["Which database?"])
    collaborator = FakeCollaborator(
        answers={"Which database?": "SQLite"},
        decisions=[
            PlanDecision(PlanVerdict.REVISE, "Split the route step"),
            PlanDecision(PlanVerdict.APPROVE),
        ],
    )
    orchestrator, _, store = _build(tmp_path, backend=backend, collaborator=collaborator)

    summary = asyncio.run(orchestrator.plan("Add a notes API"))

    plan = PlanDocument(tmp_path).load()
    assert summary.status == "complete"
    assert summary.completed_steps == ["s1", "s2"]
    assert plan.approved and plan.complete
    assert plan.markers[0].note == summary.workflow_id
    assert (tmp_path / "app" / "routes.py").read_text(encoding="utf-8") == "# written by s2\n"
    assert collaborator.asked == [["Which database?"]]
    assert backend.prompts("Write a decision-complete")[1]["feedback"] == "Split the route step"
    assert store.get_metrics()["plan_revisions"] == 1
    assert store.get_metrics()["steps_executed"] == 2
    assert store.get_workflow()["status"] == "complete"
    assert store.get_todos()["owner"] == "planner"


def test_completed_plan_cannot_be_implemented_again_without_override(tmp_path: Path) -> None:
    orchestrator, _, store = _build(tmp_path)
    asyncio.run(orchestrator.plan("Add a notes API"))
    handoffs_before = store.get_handoffs()

    with pytest.raises(AlreadyCompletedError):
        asyncio.run(orchestrator.implement())
    assert store.get_handoffs() == handoffs_before

    summary = asyncio.run(orchestrator.implement(override=True))

    markers = PlanDocument(tmp_path).load().markers
    assert summary.status == "complete"
    assert [marker.kind for marker in markers] == [
        MarkerKind.COMPLETE,
        MarkerKind.REVISION,
        MarkerKind.COMPLETE,
    ]
    assert markers[0].revision == 2


def test_manual_handoff_waits_for_implement(tmp_path: Path) -> None:
    config = ChangeflowConfig()
    config.workflow.auto_start_handoff = False
    orchestrator, backend, store = _build(tmp_path, config=config)

    planned = asyncio.run(orchestrator.plan("Add a notes API"))

    assert planned.status == "awaiting_handoff"
    assert store.get_handoffs()[-1]["status"] == "pending"
    assert backend.prompts("Implement step") == []

    summary = asyncio.run(orchestrator.implement())

    assert summary.handoff_id == planned.handoff_id
    assert summary.status == "complete"


def test_unanswered_questions_escalate_after_three_rounds(tmp_path: Path) -> None:
    backend = ScriptedBackend(tmp_path, questions=["Which tenant model?"])
    collaborator = FakeCollaborator()
    orchestrator, _, _ = _build(tmp_path, backend=backend, collaborator=collaborator)

    with pytest.raises(AmbiguityError) as excinfo:
        asyncio.run(orchestrator.plan("Add multi-tenancy"))

    assert excinfo.value.questions == ["Which tenant model?"]
    assert len(collaborator.asked) == 3
    assert not PlanDocument(tmp_path).exists()


def test_alternative_proposal_restarts_discovery(tmp_path: Path) -> None:
    collaborator = FakeCollaborator(
        decisions=[PlanDecision(PlanVerdict.ALTERNATIVE, "Use a key-value store instead")]
    )
    orchestrator, backend, _ = _build(tmp_path, collaborator=collaborator)

    asyncio.run(orchestrator.plan("Add caching"))

    discoveries = backend.prompts("Investigate")
    assert len(discoveries) == 2
    assert discoveries[1]["answers"] == {"alternative proposal": "Use a key-value store instead"}


def test_failing_checks_escalate_with_feedback(tmp_path: Path) -> None:
    config = ChangeflowConfig()
    config.workflow.max_verification_attempts = 2
    orchestrator, backend, store = _build(
        tmp_path,
        config=config,
        checker=lambda: CheckResult(passed=False, output="E   assert 500 == 200"),
    )

    with pytest.raises(AmbiguityError) as excinfo:
        asyncio.run(orchestrator.plan("Add a notes API"))

    step_runs = backend.prompts("Implement step")
    assert [run["verification_feedback"] for run in step_runs] == ["", "E   assert 500 == 200"]
    assert excinfo.value.phase == "verification"
    assert excinfo.value.__cause__ is not None
    assert store.get_metrics()["verification_failures"] == 2
    assert store.get_workflow()["status"] == "implementing"


def test_plan_deviation_blocks_the_step(tmp_path: Path) -> None:
    backend = ScriptedBackend(tmp_path)
    backend.deviate_on = "s1"
    orchestrator, _, _ = _build(tmp_path, backend=backend)

    with pytest.raises(AmbiguityError, match="cannot be completed as planned"):
        asyncio.run(orchestrator.plan("Add a notes API"))

    items = {item.step_id: item for item in orchestrator.todos.items()}
    assert items["s1"].status is TodoStatus.BLOCKED
    assert items["s1"].note == "the target module was removed"


def test_abort_before_implementation_has_no_side_effects(tmp_path: Path) -> None:
    config = ChangeflowConfig()
    config.workflow.auto_start_handoff = False
    orchestrator, _, store = _build(tmp_path, config=config)
    asyncio.run(orchestrator.plan("Add a notes API"))

    result = orchestrator.abort(rollback=True)

    assert result == {"status": "aborted", "side_effects": "none"}
    assert store.get_workflow()["status"] == "aborted"
    assert not (tmp_path / "app").exists()


def test_aborted_plan_cannot_be_implemented_afterwards(tmp_path: Path) -> None:
    config = ChangeflowConfig()
    config.workflow.auto_start_handoff = False
    orchestrator, _, store = _build(tmp_path, config=config)
    asyncio.run(orchestrator.plan("Add a notes API"))
    orchestrator.abort()

    assert store.get_handoffs()[-1]["status"] == "cancelled"
    with pytest.raises(HandoffError, match="aborted"):
        asyncio.run(orchestrator.implement())

    assert store.get_workflow()["status"] == "aborted"
    assert not (tmp_path / "app").exists()


def test_abort_with_rollback_restores_touched_files(tmp_path: Path) -> None:
    (tmp_path / "app").mkdir()
    (tmp_path / "app" / "model.py").write_text("original\n", encoding="utf-8")
    results = iter([True, False])
    config = ChangeflowConfig()
    config.workflow.max_verification_attempts = 1
    orchestrator, _, store = _build(
        tmp_path, config=config, checker=lambda: CheckResult(passed=next(results))
    )
    with pytest.raises(AmbiguityError):
        asyncio.run(orchestrator.plan("Add a notes API"))

    stopped = orchestrator.abort()
    assert stopped["rolled_back"] is False
    assert stopped["partial_state"] == {
        "completed": ["s1"],
        "unfinished": ["s2"],
        "touched": ["app/model.py", "app/routes.py"],
    }

    result = orchestrator.abort(rollback=True)

    assert result["status"] == "rolled_back"
    assert result["compensated"] == ["restore:s2", "restore:s1"]
    assert (tmp_path / "app" / "model.py").read_text(encoding="utf-8") == "original\n"
    assert not (tmp_path / "app" / "routes.py").exists()
    assert store.get_workflow()["status"] == "rolled_back"


def test_completion_runs_review_and_records_the_report(tmp_path: Path) -> None:
    finding = Finding(
        finding_id="",
        reviewer_id="r1",
        severity=Severity.MAJOR,
        path="app/model.py",
        line_start=1,
        line_end=1,
        description="Missing validation",
    )
    reviewers = [FakeReviewer("r1", [finding]), FakeReviewer("r2")]
    orchestrator, _, store = _build(tmp_path, reviewers=reviewers)

    summary = asyncio.run(orchestrator.plan("Add a notes API"))

    assert summary.report is not None
    assert [entry.finding.finding_id for entry in summary.report.entries] == ["r1#1"]
    assert store.get_reviews()[-1]["workflow_id"] == summary.workflow_id
    assert store.get_metrics()["reviews"] == 1
    assert orchestrator.status()["latest_review"] is not None


def test_failed_ci_run_is_triaged(tmp_path: Path) -> None:
    backend = ScriptedBackend(tmp_path)
    gate = CapabilityGate(".changeflow/PLAN.md")
    orchestrator, _, store = _build(
        tmp_path,
        backend=backend,
        ci_watcher=FakeWatcher(),
        ci_agent=CIWatcherAgent(backend, gate),
    )

    outcome = asyncio.run(orchestrator.watch("feature/login"))

    assert outcome.status is RunStatus.FAILED
    assert store.get_metrics()["ci_failed"] == 1
    assert store.get_decisions()[-1]["topic"] == "ci_triage"
    assert "fixture user" in store.get_decisions()[-1]["decision"]


def test_status_hides_snapshots_unless_verbose(tmp_path: Path) -> None:
    orchestrator, _, _ = _build(tmp_path)
    asyncio.run(orchestrator.plan("Add a notes API"))

    brief = orchestrator.status()
    verbose = orchestrator.status(verbose=True)

    assert "step_snapshots" not in brief["workflow"]
    assert brief["plan"]["complete"] is True
    assert brief["todos"]["done"] == 2
    assert "step_snapshots" in verbose["workflow"]
    assert [item["status"] for item in verbose["todo_items"]] == ["done", "done"]
    assert any(event["phase"] == "completion" for event in verbose["history"])
