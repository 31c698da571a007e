from __future__ import annotations

import asyncio
import logging
import posixpath
from collections.abc import Awaitable, Callable, Iterable, Sequence
from pathlib import PurePosixPath
from typing import TypeVar

from changeflow.errors import ResourceConflictError
from changeflow.plan import Plan, Step

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _footprint(step: Step) -> set[str]:
    return {posixpath.normpath(item.replace("\\", "/")) for item in step.footprint}


def targets_overlap(left: str, right: str) -> bool:
    """True when the targets are equal or one is a directory containing the other."""
    left_parts = PurePosixPath(left).parts
    right_parts = PurePosixPath(right).parts
    shorter = min(len(left_parts), len(right_parts))
    return left_parts[:shorter] == right_parts[:shorter]


def _overlapping(claimed: Iterable[str], targets: Iterable[str]) -> set[str]:
    found: set[str] = set()
    for target in targets:
        for other in claimed:
            if targets_overlap(target, other):
                found.update({target, other})
    return found


def check_disjoint(steps: Sequence[Step]) -> None:
    """Reject a concurrent group whose declared write targets overlap or are unknown."""
    if len(steps) < 2:
        return
    undeclared = [step.step_id for step in steps if not step.footprint]
    if undeclared:
        raise ResourceConflictError(
            "Steps without a declared footprint cannot run concurrently: "
            + ", ".join(sorted(undeclared)),
            overlapping=[],
            action="schedule",
        )
    claimed: set[str] = set()
    overlapping: set[str] = set()
    for step in steps:
        targets = _footprint(step)
        overlapping |= _overlapping(claimed, targets)
        claimed |= targets
    if overlapping:
        raise ResourceConflictError(
            "Concurrent steps write the same targets: " + ", ".join(sorted(overlapping)),
            overlapping=sorted(overlapping),
            action="schedule",
        )


async def _awaited(awaitable: Awaitable[T]) -> T:
    return await awaitable


class StepScheduler:
    def __init__(self, max_parallel: int = 1) -> None:
        self.max_parallel = max(1, int(max_parallel))

    def batches(self, plan: Plan) -> list[tuple[Step, ...]]:
        """Group ready steps; only independent steps with disjoint footprints share a batch."""
        ordered = plan.ordered_steps()
        done: set[str] = set()
        batches: list[tuple[Step, ...]] = []
        while len(done) < len(ordered):
            ready = [
                step
                for step in ordered
                if step.step_id not in done and set(step.depends_on) <= done
            ]
            first = ready[0]
            batch = [first]
            if first.independent and first.footprint:
                claimed = _footprint(first)
                for step in ready[1:]:
                    if len(batch) >= self.max_parallel:
                        break
                    if not step.independent or not step.footprint:
                        continue
                    if _overlapping(claimed, _footprint(step)):
                        continue
                    batch.append(step)
                    claimed |= _footprint(step)
            batches.append(tuple(batch))
            done.update(step.step_id for step in batch)
        return batches

    async def run_batch(
        self, steps: Sequence[Step], run_step: Callable[[Step], Awaitable[T]]
    ) -> list[T]:
        check_disjoint(steps)
        if len(steps) > self.max_parallel:
            raise ResourceConflictError(
                f"Batch of {len(steps)} steps exceeds max_parallel_steps={self.max_parallel}.",
                action="schedule",
            )
        if len(steps) == 1:
            return [await run_step(steps[0])]
        logger.info("Running steps concurrently: %s", ", ".join(step.step_id for step in steps))
        try:
            async with asyncio.TaskGroup() as group:
                tasks = [group.create_task(_awaited(run_step(step))) for step in steps]
        except ExceptionGroup as grouped:
            # Siblings are already cancelled; surface the failing step's own error.
            raise grouped.exceptions[0]
        return [task.result() for task in tasks]
