from __future__ import annotations

import json
import os
import re
import tempfile
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path
from typing import Any
from uuid import uuid4

from changeflow.capabilities import Role
from changeflow.errors import PolicyViolation, StateStoreError

DEFAULT_PLAN_PATH = ".changeflow/PLAN.md"
MARKER_PATTERN = re.compile(
    r"^<!-- changeflow:plan-(?P<kind>complete|revision) "
    r"revision=(?P<revision>\d+) by=(?P<by>\S+) at=(?P<at>\S+)(?: note=(?P<note>.*?))? -->$"
)
BODY_JSON_PATTERN = re.compile(r"```json\n(?P<payload>.*?)\n```", re.DOTALL)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Task:
    task_id: str
    description: str
    accepted_at: str

    @classmethod
    def accept(cls, description: str) -> Task:
        text = description.strip()
        if not text:
            raise ValueError("Task description must not be empty.")
        return cls(task_id=f"task-{uuid4().hex[:8]}", description=text, accepted_at=_utcnow_iso())


@dataclass(frozen=True, slots=True)
class Assumption:
    text: str
    source: str = "planner"


@dataclass(frozen=True, slots=True)
class Step:
    step_id: str
    title: str
    detail: str = ""
    depends_on: tuple[str, ...] = ()
    footprint: tuple[str, ...] = ()
    independent: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "step_id": self.step_id,
            "title": self.title,
            "detail": self.detail,
            "depends_on": list(self.depends_on),
            "footprint": list(self.footprint),
            "independent": self.independent,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Step:
        return cls(
            step_id=str(payload["step_id"]),
            title=str(payload["title"]),
            detail=str(payload.get("detail", "")),
            depends_on=tuple(str(item) for item in payload.get("depends_on", [])),
            footprint=tuple(str(item) for item in payload.get("footprint", [])),
            independent=bool(payload.get("independent", False)),
        )


class MarkerKind(StrEnum):
    COMPLETE = "complete"
    REVISION = "revision"


@dataclass(frozen=True, slots=True)
class PlanMarker:
    kind: MarkerKind
    revision: int
    by: str
    at: str = field(default_factory=_utcnow_iso)
    note: str = ""

    def render(self) -> str:
        line = (
            f"<!-- changeflow:plan-{self.kind} revision={self.revision} "
            f"by={self.by} at={self.at}"
        )
        if self.note:
            line += f" note={self.note.replace('-->', '').strip()}"
        return line + " -->"

    @classmethod
    def parse(cls, line: str) -> PlanMarker | None:
        match = MARKER_PATTERN.match(line.strip())
        if match is None:
            return None
        return cls(
            kind=MarkerKind(match.group("kind")),
            revision=int(match.group("revision")),
            by=match.group("by"),
            at=match.group("at"),
            note=(match.group("note") or "").strip(),
        )


@dataclass(frozen=True, slots=True)
class Plan:
    plan_id: str
    task: Task
    steps: tuple[Step, ...]
    assumptions: tuple[Assumption, ...] = ()
    approved: bool = False
    # Newest first, mirroring the order they appear at the top of the document.
    markers: tuple[PlanMarker, ...] = ()

    @property
    def complete(self) -> bool:
        return bool(self.markers) and self.markers[0].kind is MarkerKind.COMPLETE

    @property
    def revision(self) -> int:
        return 1 + sum(1 for marker in self.markers if marker.kind is MarkerKind.REVISION)

    def step(self, step_id: str) -> Step:
        for step in self.steps:
            if step.step_id == step_id:
                return step
        raise KeyError(step_id)

    def with_marker(self, marker: PlanMarker) -> Plan:
        return replace(self, markers=(marker, *self.markers))

    def problems(self) -> list[str]:
        issues: list[str] = []
        if not self.steps:
            issues.append("Plan has no steps.")
        seen: set[str] = set()
        for step in self.steps:
            if step.step_id in seen:
                issues.append(f"Duplicate step id: {step.step_id}")
            seen.add(step.step_id)
        for step in self.steps:
            for dep in step.depends_on:
                if dep not in seen:
                    issues.append(f"Step {step.step_id} depends on unknown step {dep}")
        if not issues:
            try:
                self.ordered_steps()
            except ValueError as exc:
                issues.append(str(exc))
        return issues

    def ordered_steps(self) -> list[Step]:
        """Dependency order, stable with respect to the declared step order."""
        remaining = list(self.steps)
        done: set[str] = set()
        ordered: list[Step] = []
        while remaining:
            ready = [step for step in remaining if set(step.depends_on) <= done]
            if not ready:
                pending = ", ".join(step.step_id for step in remaining)
                raise ValueError(f"Plan steps contain a dependency cycle: {pending}")
            for step in ready:
                ordered.append(step)
                done.add(step.step_id)
            remaining = [step for step in remaining if step.step_id not in done]
        return ordered

    def body_payload(self) -> dict[str, Any]:
        return {
            "plan_id": self.plan_id,
            "task": {
                "task_id": self.task.task_id,
                "description": self.task.description,
                "accepted_at": self.task.accepted_at,
            },
            "approved": self.approved,
            "assumptions": [
                {"text": item.text, "source": item.source} for item in self.assumptions
            ],
            "steps": [step.to_dict() for step in self.steps],
        }

    def render_body(self) -> str:
        lines = [f"# Plan {self.plan_id}", "", f"Task: {self.task.description}", ""]
        if self.assumptions:
            lines.append("## Assumptions")
            lines.extend(f"- {item.text}" for item in self.assumptions)
            lines.append("")
        lines.append("## Steps")
        for index, step in enumerate(self.steps, start=1):
            suffix = f" (after {', '.join(step.depends_on)})" if step.depends_on else ""
            lines.append(f"{index}. [{step.step_id}] {step.title}{suffix}")
        lines.extend(
            [
                "",
                "```json",
                json.dumps(self.body_payload(), ensure_ascii=False, indent=2, sort_keys=True),
                "```",
                "",
            ]
        )
        return "\n".join(lines)

    @classmethod
    def from_body(cls, body: str, markers: tuple[PlanMarker, ...] = ()) -> Plan:
        match = BODY_JSON_PATTERN.search(body)
        if match is None:
            raise StateStoreError("Plan document has no machine-readable body.")
        try:
            payload = json.loads(match.group("payload"))
            task_payload = payload["task"]
            return cls(
                plan_id=str(payload["plan_id"]),
                task=Task(
                    task_id=str(task_payload["task_id"]),
                    description=str(task_payload["description"]),
                    accepted_at=str(task_payload["accepted_at"]),
                ),
                steps=tuple(Step.from_dict(item) for item in payload.get("steps", [])),
                assumptions=tuple(
                    Assumption(text=str(item["text"]), source=str(item.get("source", "planner")))
                    for item in payload.get("assumptions", [])
                ),
                approved=bool(payload.get("approved", False)),
                markers=markers,
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise StateStoreError(f"Plan document body is malformed: {exc}") from exc


class PlanDocument:
    """The single plan file, mutated in place under single-writer discipline."""

    def __init__(self, repo_root: Path, relative_path: str = DEFAULT_PLAN_PATH) -> None:
        self.repo_root = repo_root.resolve()
        self.relative_path = relative_path
        self.path = self.repo_root / relative_path
        self.owner: Role = Role.PLANNER

    def exists(self) -> bool:
        return self.path.exists()

    def _check_writer(self, writer: Role) -> None:
        if writer != self.owner:
            raise PolicyViolation(
                f"Plan is owned by {self.owner}; {writer} may not write it.",
                role=str(writer),
                artifact_id=self.relative_path,
                action="write_plan",
            )

    def _split(self, text: str) -> tuple[tuple[PlanMarker, ...], str]:
        markers: list[PlanMarker] = []
        lines = text.splitlines(keepends=True)
        index = 0
        while index < len(lines):
            marker = PlanMarker.parse(lines[index])
            if marker is None:
                break
            markers.append(marker)
            index += 1
        return tuple(markers), "".join(lines[index:])

    def _write_atomic(self, text: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".plan-", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(text)
            os.replace(tmp_name, self.path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def read_text(self) -> str:
        return self.path.read_text(encoding="utf-8")

    def load(self) -> Plan:
        if not self.path.exists():
            raise StateStoreError(f"No plan document at {self.relative_path}.")
        markers, body = self._split(self.read_text())
        return Plan.from_body(body, markers)

    def save(self, plan: Plan, *, writer: Role = Role.PLANNER) -> None:
        """Write the plan body; existing markers are kept at the top."""
        self._check_writer(writer)
        if writer is not Role.PLANNER:
            raise PolicyViolation(
                "Only the planner may write plan content.",
                role=str(writer),
                artifact_id=self.relative_path,
                action="write_plan",
            )
        existing_markers: tuple[PlanMarker, ...] = ()
        if self.path.exists():
            existing_markers, body = self._split(self.read_text())
            try:
                same_plan = Plan.from_body(body).plan_id == plan.plan_id
            except StateStoreError:
                same_plan = False
            # Markers belong to one plan's history; a new plan starts clean.
            if not same_plan:
                existing_markers = ()
        header = "".join(f"{marker.render()}\n" for marker in existing_markers)
        self._write_atomic(header + plan.render_body())

    def prepend_marker(self, marker: PlanMarker, *, writer: Role) -> Plan:
        self._check_writer(writer)
        text = self.read_text()
        _, body_before = self._split(text)
        self._write_atomic(f"{marker.render()}\n{text}")
        markers, body_after = self._split(self.read_text())
        if body_after != body_before:
            raise StateStoreError("Plan body changed while prepending a marker.")
        return Plan.from_body(body_after, markers)

    def restore(self, text: str) -> None:
        self._write_atomic(text)

    def transfer_ownership(self, role: Role) -> None:
        self.owner = role
