from __future__ import annotations

import asyncio
import json
import logging
import tomllib
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import click

from changeflow.agents import (
    CIWatcherAgent,
    ImplementerAgent,
    PlannerAgent,
    ReviewerAgent,
    SpecialistReviewer,
)
from changeflow.backends import (
    ClaudeCodeBackend,
    CodexBackend,
    ResilientBackend,
    RetryPolicy,
)
from changeflow.capabilities import CapabilityGate
from changeflow.ci import GhCliWatcher, RunStatus
from changeflow.config import (
    DEFAULT_CONFIG_FILE,
    BackendName,
    ChangeflowConfig,
    load_config,
    save_config,
)
from changeflow.errors import AmbiguityError, ChangeflowError, CompensationFailed
from changeflow.orchestrator import (
    Collaborator,
    Orchestrator,
    PlanDecision,
    PlanVerdict,
    RunSummary,
)
from changeflow.plan import Plan
from changeflow.state import WorkflowStore

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: ChangeflowConfig
    store: WorkflowStore
    orchestrator: Orchestrator


class ClickCollaborator(Collaborator):
    """Asks the person at the terminal."""

    def answer(self, questions: list[str]) -> dict[str, str]:
        click.echo("The planner needs answers before it can design a plan.")
        return {
            question: click.prompt(question, default="", show_default=False)
            for question in questions
        }

    def review_plan(self, plan: Plan) -> PlanDecision:
        click.echo(plan.render_body())
        choice = click.prompt(
            "Approve, revise, or propose an alternative?",
            type=click.Choice([str(verdict) for verdict in PlanVerdict]),
            default=str(PlanVerdict.APPROVE),
        )
        verdict = PlanVerdict(choice)
        if verdict is PlanVerdict.APPROVE:
            return PlanDecision(verdict)
        return PlanDecision(verdict, click.prompt("Feedback"))


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _load_config(config_path: Path) -> ChangeflowConfig:
    try:
        return load_config(config_path)
    except (TypeError, tomllib.TOMLDecodeError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc


def _configure_logging(level: str) -> None:
    logging.basicConfig(format=LOG_FORMAT)
    logging.getLogger("changeflow").setLevel(level.upper())


def _build_single_backend(
    backend_name: BackendName, repo_root: Path
) -> CodexBackend | ClaudeCodeBackend:
    if backend_name == "codex":
        return CodexBackend(working_directory=repo_root)
    return ClaudeCodeBackend(working_directory=repo_root)


def _record_backend_event(store: WorkflowStore, event: dict[str, Any]) -> None:
    def _updater(payload: Any) -> dict[str, Any]:
        metrics = payload if isinstance(payload, dict) else {}
        events = metrics.get("backend_events", [])
        if not isinstance(events, list):
            events = []
        events.append({**event, "at": datetime.now(UTC).replace(microsecond=0).isoformat()})
        metrics["backend_events"] = events[-200:]
        if event.get("event") == "backend_retry":
            metrics["backend_retry_count"] = int(metrics.get("backend_retry_count", 0)) + 1
        if event.get("event") == "backend_fallback_success":
            metrics["backend_fallback_count"] = int(metrics.get("backend_fallback_count", 0)) + 1
        return metrics

    store.update_json("metrics", _updater, default={})


def _build_backend(
    config: ChangeflowConfig, repo_root: Path, store: WorkflowStore
) -> ResilientBackend:
    primary_name = config.backend.primary
    fallback_name = config.backend.fallback
    policy = RetryPolicy(
        max_retries=max(0, int(config.backend.max_retries)),
        backoff_seconds=max(0.0, float(config.backend.retry_backoff_seconds)),
        timeout_seconds=max(5.0, float(config.backend.timeout_seconds)),
    )
    return ResilientBackend(
        primary_name=primary_name,
        primary_backend=_build_single_backend(primary_name, repo_root),
        fallback_name=fallback_name,
        fallback_backend=_build_single_backend(fallback_name, repo_root),
        retry_policy=policy,
        event_hook=lambda event: _record_backend_event(store, event),
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = _load_config(config_path)
    ctx = click.get_current_context(silent=True)
    _configure_logging((ctx.obj if ctx is not None else None) or config.logging.level)
    store = WorkflowStore(repo_root)
    gate = CapabilityGate(config.project.plan_path)
    backend = _build_backend(config, repo_root, store)
    model = config.agents.model or None
    reviewers = [
        SpecialistReviewer(f"reviewer-{index}", ReviewerAgent(backend, gate, model=model))
        for index in range(1, max(0, config.review.reviewers) + 1)
    ]
    orchestrator = Orchestrator(
        repo_root=repo_root,
        config=config,
        store=store,
        gate=gate,
        planner=PlannerAgent(backend, gate, model=model),
        implementer=ImplementerAgent(backend, gate, model=model),
        reviewers=reviewers,
        collaborator=ClickCollaborator(),
        ci_watcher=GhCliWatcher(
            repo_root, poll_interval_seconds=config.ci.poll_interval_seconds
        ),
        ci_agent=CIWatcherAgent(backend, gate, model=model),
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        store=store,
        orchestrator=orchestrator,
    )


def _runtime(config_value: str) -> Runtime:
    repo_root = Path.cwd().resolve()
    return _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))


def _fail(exc: ChangeflowError) -> click.ClickException:
    message = str(exc)
    if isinstance(exc, AmbiguityError) and exc.questions:
        message += "\n" + "\n".join(f"  - {question}" for question in exc.questions)
    if isinstance(exc, CompensationFailed):
        message += "\n" + "\n".join(
            f"  - not undone: {item['name']} ({item['error']})" for item in exc.report.errors
        )
    return click.ClickException(message)


def _echo_summary(summary: RunSummary) -> None:
    click.echo(f"Workflow: {summary.workflow_id}")
    click.echo(f"Plan: {summary.plan_id}")
    click.echo(f"Status: {summary.status}")
    if summary.handoff_id:
        click.echo(f"Handoff: {summary.handoff_id}")
    if summary.completed_steps:
        click.echo(f"Steps: {', '.join(summary.completed_steps)}")
    if summary.report is not None:
        counts = ", ".join(f"{key}={value}" for key, value in summary.report.counts().items())
        click.echo(f"Review ({summary.report.coverage}): {counts}")
    if summary.ci is not None:
        click.echo(f"CI {summary.ci.run_ref}: {summary.ci.status}")


@click.group()
@click.option("--log-level", default=None, help="Override the configured log level.")
@click.pass_context
def cli(ctx: click.Context, log_level: str | None) -> None:
    """Changeflow CLI."""
    ctx.obj = log_level


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    if backend:
        config.backend.primary = backend  # type: ignore[assignment]
    save_config(config_path, config)

    store = WorkflowStore(repo_root)
    if not store.get_workflow():
        store.set_workflow({"status": "idle"})

    click.echo(f"Initialized Changeflow in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Backend: {config.backend.primary} (fallback {config.backend.fallback})")
    click.echo(f"Plan: {config.project.plan_path}")


@cli.command("plan")
@click.argument("goal")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def plan_command(goal: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.orchestrator.plan(goal))
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    except ValueError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary)


@cli.command("implement")
@click.option("--override", is_flag=True, default=False, help="Revise a completed plan.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def implement_command(override: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        summary = asyncio.run(runtime.orchestrator.implement(override=override))
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    _echo_summary(summary)


@cli.command("review")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def review_command(config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        report = asyncio.run(runtime.orchestrator.review())
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    click.echo(json.dumps(report.to_dict(), ensure_ascii=False, indent=2))


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.orchestrator.status(verbose=verbose)
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("ci")
@click.argument("branch")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def ci_command(branch: str, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        outcome = asyncio.run(runtime.orchestrator.watch(branch))
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    click.echo(f"CI run {outcome.run_ref} on {outcome.branch_ref}: {outcome.status}")
    if outcome.excerpt:
        click.echo(outcome.excerpt)
    if outcome.status is not RunStatus.SUCCEEDED:
        raise click.ClickException(f"CI run {outcome.run_ref} {outcome.status}.")


@cli.command("abort")
@click.option("--rollback", is_flag=True, default=False, help="Undo files changed by steps.")
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def abort_command(rollback: bool, config_value: str) -> None:
    runtime = _runtime(config_value)
    try:
        payload = runtime.orchestrator.abort(rollback=rollback)
    except ChangeflowError as exc:
        raise _fail(exc) from exc
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("backend")
@click.argument("backend_name", type=click.Choice(["codex", "claude"]))
@click.option("--config", "config_value", default=DEFAULT_CONFIG_FILE, show_default=True)
def backend_command(backend_name: str, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    config = _load_config(config_path)
    config.backend.primary = backend_name  # type: ignore[assignment]
    save_config(config_path, config)
    click.echo(f"Primary backend set to {backend_name}")
