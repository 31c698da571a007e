from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from changeflow.capabilities import ROLE_PHASES, Phase, Role
from changeflow.errors import InvalidTransition

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class EdgeKind(StrEnum):
    FORWARD = "forward"
    LOOP_BACK = "loop_back"
    STAY = "stay"


@dataclass(frozen=True, slots=True)
class Edge:
    source: Phase
    target: Phase
    kind: EdgeKind
    label: str = ""


@dataclass(frozen=True, slots=True)
class PhaseTable:
    role: Role
    phases: tuple[Phase, ...]
    edges: tuple[Edge, ...]
    terminal: frozenset[Phase]

    @property
    def initial(self) -> Phase:
        return self.phases[0]

    def edge(self, source: Phase, target: Phase) -> Edge | None:
        for edge in self.edges:
            if edge.source == source and edge.target == target:
                return edge
        return None

    def later_or_equal(self, phase: Phase) -> tuple[Phase, ...]:
        return self.phases[self.phases.index(phase) :]


def _forward_chain(phases: tuple[Phase, ...]) -> tuple[Edge, ...]:
    return tuple(
        Edge(source, target, EdgeKind.FORWARD)
        for source, target in zip(phases, phases[1:], strict=False)
    )


PLANNER_TABLE = PhaseTable(
    role=Role.PLANNER,
    phases=ROLE_PHASES[Role.PLANNER],
    edges=(
        *_forward_chain(ROLE_PHASES[Role.PLANNER]),
        Edge(Phase.ALIGNMENT, Phase.DISCOVERY, EdgeKind.LOOP_BACK, "new unknowns surfaced"),
        Edge(Phase.REFINEMENT, Phase.DISCOVERY, EdgeKind.LOOP_BACK, "alternative proposed"),
        Edge(Phase.REFINEMENT, Phase.REFINEMENT, EdgeKind.STAY, "revision requested"),
    ),
    terminal=frozenset({Phase.REFINEMENT}),
)

IMPLEMENTER_TABLE = PhaseTable(
    role=Role.IMPLEMENTER,
    phases=ROLE_PHASES[Role.IMPLEMENTER],
    edges=(
        *_forward_chain(ROLE_PHASES[Role.IMPLEMENTER]),
        Edge(
            Phase.VERIFICATION,
            Phase.IMPLEMENTATION,
            EdgeKind.LOOP_BACK,
            "next step or failed check",
        ),
        Edge(Phase.REVIEW, Phase.IMPLEMENTATION, EdgeKind.LOOP_BACK, "applying review fixes"),
    ),
    terminal=frozenset({Phase.COMPLETION, Phase.REVIEW}),
)

REVIEWER_TABLE = PhaseTable(
    role=Role.REVIEWER,
    phases=ROLE_PHASES[Role.REVIEWER],
    edges=_forward_chain(ROLE_PHASES[Role.REVIEWER]),
    terminal=frozenset({Phase.CROSS_GRADE}),
)

CI_WATCHER_TABLE = PhaseTable(
    role=Role.CI_WATCHER,
    phases=ROLE_PHASES[Role.CI_WATCHER],
    edges=(),
    terminal=frozenset({Phase.WATCH}),
)

PHASE_TABLES: dict[Role, PhaseTable] = {
    Role.PLANNER: PLANNER_TABLE,
    Role.IMPLEMENTER: IMPLEMENTER_TABLE,
    Role.REVIEWER: REVIEWER_TABLE,
    Role.CI_WATCHER: CI_WATCHER_TABLE,
}


@dataclass(slots=True)
class PhaseContext:
    """Facts the exit conditions are evaluated against."""

    satisfied: set[Phase] = field(default_factory=set)
    open_questions: list[str] = field(default_factory=list)
    data: dict[str, Any] = field(default_factory=dict)

    def satisfy(self, phase: Phase) -> None:
        self.satisfied.add(phase)


@dataclass(frozen=True, slots=True)
class ExitCondition:
    description: str
    predicate: Callable[[PhaseContext], bool]

    def __call__(self, context: PhaseContext) -> bool:
        return bool(self.predicate(context))


def _satisfied(phase: Phase, description: str) -> ExitCondition:
    return ExitCondition(description, lambda context: phase in context.satisfied)


DEFAULT_EXIT_CONDITIONS: dict[Phase, ExitCondition] = {
    Phase.DISCOVERY: _satisfied(Phase.DISCOVERY, "discovery findings recorded"),
    Phase.ALIGNMENT: ExitCondition(
        "no open clarification questions remain",
        lambda context: Phase.ALIGNMENT in context.satisfied and not context.open_questions,
    ),
    Phase.DESIGN: _satisfied(Phase.DESIGN, "plan drafted with at least one step"),
    Phase.REFINEMENT: _satisfied(Phase.REFINEMENT, "plan explicitly approved"),
    Phase.PREPARATION: _satisfied(Phase.PREPARATION, "plan and context loaded"),
    Phase.IMPLEMENTATION: _satisfied(Phase.IMPLEMENTATION, "scheduled steps executed"),
    Phase.VERIFICATION: _satisfied(Phase.VERIFICATION, "checks passed for every step"),
    Phase.DOCUMENTATION: _satisfied(Phase.DOCUMENTATION, "documentation impact recorded"),
    Phase.COMPLETION: _satisfied(Phase.COMPLETION, "completion marker recorded"),
    Phase.REVIEW: _satisfied(Phase.REVIEW, "review report synthesized"),
    Phase.CROSS_GRADE: _satisfied(Phase.CROSS_GRADE, "cross-grades submitted"),
    Phase.WATCH: _satisfied(Phase.WATCH, "CI run reached a terminal status"),
}

EntryAction = Callable[[PhaseContext], None]
TransitionHook = Callable[[dict[str, Any]], None]


class PhaseStateMachine:
    def __init__(
        self,
        role: Role,
        *,
        context: PhaseContext | None = None,
        entry_actions: Mapping[Phase, EntryAction] | None = None,
        exit_conditions: Mapping[Phase, ExitCondition] | None = None,
        on_transition: TransitionHook | None = None,
    ) -> None:
        self.role = role
        self.table = PHASE_TABLES[role]
        self.context = context or PhaseContext()
        self.entry_actions = dict(entry_actions or {})
        self.exit_conditions = {**DEFAULT_EXIT_CONDITIONS, **dict(exit_conditions or {})}
        self.on_transition = on_transition
        self.current: Phase | None = None
        self.terminated = False
        self.history: list[dict[str, Any]] = []

    def _record(self, phase: Phase, status: str, **extra: Any) -> None:
        event = {"role": str(self.role), "phase": str(phase), "status": status, "at": _utcnow_iso()}
        event.update(extra)
        self.history.append(event)
        if self.on_transition is not None:
            self.on_transition(event)

    def _enter(self, phase: Phase) -> None:
        for later in self.table.later_or_equal(phase):
            self.context.satisfied.discard(later)
        self.current = phase
        entry = self.entry_actions.get(phase)
        if entry is not None:
            entry(self.context)
        self._record(phase, "entered")
        logger.info("%s entered %s", self.role, phase)

    def _require_active(self) -> Phase:
        if self.current is None:
            raise InvalidTransition(
                f"{self.role} workflow has not started.", role=str(self.role)
            )
        if self.terminated:
            raise InvalidTransition(
                f"{self.role} workflow already terminated in {self.current}.",
                role=str(self.role),
                phase=str(self.current),
            )
        return self.current

    def start(self) -> Phase:
        if self.current is not None:
            raise InvalidTransition(
                f"{self.role} workflow already started.",
                role=str(self.role),
                phase=str(self.current),
            )
        self._enter(self.table.initial)
        return self.table.initial

    def snapshot(self) -> dict[str, Any]:
        return {
            "current": self.current,
            "terminated": self.terminated,
            "satisfied": set(self.context.satisfied),
            "history_length": len(self.history),
        }

    def restore(self, snapshot: dict[str, Any]) -> None:
        self.current = snapshot["current"]
        self.terminated = snapshot["terminated"]
        self.context.satisfied = set(snapshot["satisfied"])
        del self.history[snapshot["history_length"] :]

    def exit_condition(self, phase: Phase | None = None) -> ExitCondition:
        return self.exit_conditions[phase or self._require_active()]

    def can_exit(self) -> bool:
        current = self._require_active()
        return self.exit_conditions[current](self.context)

    def satisfy(self) -> None:
        self.context.satisfy(self._require_active())

    def transition(self, target: Phase, *, reason: str = "") -> Phase:
        source = self._require_active()
        edge = self.table.edge(source, target)
        if edge is None:
            self._record(source, "rejected", target=str(target), reason="no such edge")
            raise InvalidTransition(
                f"{self.role} cannot move from {source} to {target}.",
                role=str(self.role),
                phase=str(source),
                action=f"transition:{target}",
            )
        if edge.kind is EdgeKind.FORWARD:
            condition = self.exit_conditions[source]
            if not condition(self.context):
                self._record(source, "rejected", target=str(target), reason=condition.description)
                raise InvalidTransition(
                    f"Exit condition for {source} is not met: {condition.description}.",
                    role=str(self.role),
                    phase=str(source),
                    action=f"transition:{target}",
                )
        self._record(source, "exited", target=str(target), edge=str(edge.kind), reason=reason)
        self._enter(target)
        return target

    def advance(self, *, reason: str = "") -> Phase:
        source = self._require_active()
        for edge in self.table.edges:
            if edge.source == source and edge.kind is EdgeKind.FORWARD:
                return self.transition(edge.target, reason=reason)
        raise InvalidTransition(
            f"{source} has no forward successor for {self.role}.",
            role=str(self.role),
            phase=str(source),
        )

    def terminate(self) -> None:
        current = self._require_active()
        if current not in self.table.terminal:
            raise InvalidTransition(
                f"{current} is not a terminal phase for {self.role}.",
                role=str(self.role),
                phase=str(current),
            )
        condition = self.exit_conditions[current]
        if not condition(self.context):
            raise InvalidTransition(
                f"Exit condition for {current} is not met: {condition.description}.",
                role=str(self.role),
                phase=str(current),
                action="terminate",
            )
        self.terminated = True
        self._record(current, "terminated")
        logger.info("%s terminated in %s", self.role, current)
