from __future__ import annotations

import logging
import posixpath
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TypeVar

from changeflow.errors import PolicyViolation

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Role(StrEnum):
    PLANNER = "planner"
    IMPLEMENTER = "implementer"
    REVIEWER = "reviewer"
    CI_WATCHER = "ci_watcher"


class Phase(StrEnum):
    DISCOVERY = "discovery"
    ALIGNMENT = "alignment"
    DESIGN = "design"
    REFINEMENT = "refinement"
    PREPARATION = "preparation"
    IMPLEMENTATION = "implementation"
    VERIFICATION = "verification"
    DOCUMENTATION = "documentation"
    COMPLETION = "completion"
    REVIEW = "review"
    CROSS_GRADE = "cross_grade"
    WATCH = "watch"


class Action(StrEnum):
    SEARCH = "search"
    READ = "read"
    EXECUTE_READONLY = "execute_readonly"
    WRITE_PLAN = "write_plan"
    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"
    EXECUTE_MUTATING = "execute_mutating"


MUTATING_ACTIONS = frozenset(
    {Action.CREATE, Action.MODIFY, Action.DELETE, Action.EXECUTE_MUTATING}
)


@dataclass(frozen=True, slots=True)
class Toolset:
    name: str
    actions: frozenset[Action]
    tool_names: tuple[str, ...]

    @property
    def mutating(self) -> bool:
        return bool(self.actions & MUTATING_ACTIONS)

    def permits(self, action: Action) -> bool:
        return action in self.actions


READ_ONLY_TOOLSET = Toolset(
    name="ReadOnlyToolset",
    actions=frozenset({Action.SEARCH, Action.READ, Action.EXECUTE_READONLY}),
    tool_names=("read_file", "run_readonly_command", "search"),
)

WRITE_TOOLSET = Toolset(
    name="WriteToolset",
    actions=READ_ONLY_TOOLSET.actions | MUTATING_ACTIONS,
    tool_names=(
        "delete_file",
        "edit_file",
        "read_file",
        "run_command",
        "run_readonly_command",
        "search",
        "write_file",
    ),
)

ROLE_PHASES: dict[Role, tuple[Phase, ...]] = {
    Role.PLANNER: (Phase.DISCOVERY, Phase.ALIGNMENT, Phase.DESIGN, Phase.REFINEMENT),
    Role.IMPLEMENTER: (
        Phase.PREPARATION,
        Phase.IMPLEMENTATION,
        Phase.VERIFICATION,
        Phase.DOCUMENTATION,
        Phase.COMPLETION,
        Phase.REVIEW,
    ),
    Role.REVIEWER: (Phase.REVIEW, Phase.CROSS_GRADE),
    Role.CI_WATCHER: (Phase.WATCH,),
}

POLICY: dict[tuple[Role, Phase], Toolset] = {
    (Role.PLANNER, Phase.DISCOVERY): READ_ONLY_TOOLSET,
    (Role.PLANNER, Phase.ALIGNMENT): READ_ONLY_TOOLSET,
    (Role.PLANNER, Phase.DESIGN): READ_ONLY_TOOLSET,
    (Role.PLANNER, Phase.REFINEMENT): READ_ONLY_TOOLSET,
    (Role.IMPLEMENTER, Phase.PREPARATION): READ_ONLY_TOOLSET,
    (Role.IMPLEMENTER, Phase.IMPLEMENTATION): WRITE_TOOLSET,
    (Role.IMPLEMENTER, Phase.VERIFICATION): READ_ONLY_TOOLSET,
    (Role.IMPLEMENTER, Phase.DOCUMENTATION): WRITE_TOOLSET,
    (Role.IMPLEMENTER, Phase.COMPLETION): READ_ONLY_TOOLSET,
    (Role.IMPLEMENTER, Phase.REVIEW): READ_ONLY_TOOLSET,
    (Role.REVIEWER, Phase.REVIEW): READ_ONLY_TOOLSET,
    (Role.REVIEWER, Phase.CROSS_GRADE): READ_ONLY_TOOLSET,
    (Role.CI_WATCHER, Phase.WATCH): READ_ONLY_TOOLSET,
}

# Phases allowed to persist the single designated plan artifact.
PLAN_WRITER_PHASES = frozenset(
    {
        (Role.PLANNER, Phase.DESIGN),
        (Role.PLANNER, Phase.REFINEMENT),
        (Role.IMPLEMENTER, Phase.COMPLETION),
    }
)


def _normalize_target(target: str) -> str:
    normalized = posixpath.normpath(str(target).replace("\\", "/"))
    return normalized.removeprefix("./")


@dataclass(frozen=True, slots=True)
class GateDecision:
    allowed: bool
    role: Role
    phase: Phase
    action: Action
    target: str | None = None
    violation: PolicyViolation | None = None


class CapabilityGate:
    def __init__(
        self,
        plan_path: str,
        *,
        policy: Mapping[tuple[Role, Phase], Toolset] | None = None,
        plan_writers: frozenset[tuple[Role, Phase]] = PLAN_WRITER_PHASES,
    ) -> None:
        self.plan_path = _normalize_target(plan_path)
        self.policy = dict(POLICY if policy is None else policy)
        self.plan_writers = plan_writers

    def toolset_for(self, role: Role, phase: Phase) -> Toolset:
        toolset = self.policy.get((role, phase))
        if toolset is None:
            raise PolicyViolation(
                f"No capability scope is bound to role '{role}' in phase '{phase}'.",
                role=str(role),
                phase=str(phase),
            )
        return toolset

    def _deny(
        self,
        reason: str,
        role: Role,
        phase: Phase,
        action: Action,
        target: str | None,
    ) -> GateDecision:
        violation = PolicyViolation(
            reason,
            role=str(role),
            phase=str(phase),
            artifact_id=target,
            action=str(action),
        )
        logger.warning(
            "Denied %s for %s in %s (target=%s): %s", action, role, phase, target, reason
        )
        return GateDecision(False, role, phase, action, target, violation)

    def authorize(
        self,
        role: Role,
        phase: Phase,
        action: Action,
        target: str | None = None,
    ) -> GateDecision:
        normalized_target = _normalize_target(target) if target is not None else None
        toolset = self.policy.get((role, phase))
        if toolset is None:
            return self._deny(
                f"Phase '{phase}' is not part of the {role} workflow.",
                role,
                phase,
                action,
                normalized_target,
            )

        if action is Action.WRITE_PLAN:
            if (role, phase) not in self.plan_writers:
                return self._deny(
                    f"{role} may not persist the plan during {phase}.",
                    role,
                    phase,
                    action,
                    normalized_target,
                )
            if normalized_target != self.plan_path:
                return self._deny(
                    f"Plan writes are limited to '{self.plan_path}'.",
                    role,
                    phase,
                    action,
                    normalized_target,
                )
            return GateDecision(True, role, phase, action, normalized_target)

        if not toolset.permits(action):
            return self._deny(
                f"{toolset.name} does not permit '{action}'.",
                role,
                phase,
                action,
                normalized_target,
            )
        return GateDecision(True, role, phase, action, normalized_target)

    def require(
        self,
        role: Role,
        phase: Phase,
        action: Action,
        target: str | None = None,
    ) -> None:
        decision = self.authorize(role, phase, action, target)
        if decision.violation is not None:
            raise decision.violation

    def guard(
        self,
        role: Role,
        phase: Phase,
        action: Action,
        target: str | None,
        fn: Callable[..., T],
        *args: Any,
        **kwargs: Any,
    ) -> T:
        self.require(role, phase, action, target)
        return fn(*args, **kwargs)
