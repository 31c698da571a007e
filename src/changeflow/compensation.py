from __future__ import annotations

import hashlib
import inspect
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from changeflow.errors import CompensationFailed

logger = logging.getLogger(__name__)

Forward = Callable[[str], Any]
Compensate = Callable[[str], Any]


def idempotency_key(workflow_id: str, step_id: str, action: str) -> str:
    """Key for externally side-effecting calls; stable across retries of the same step."""
    material = f"{workflow_id}:{step_id}:{action}".encode()
    return hashlib.sha256(material).hexdigest()[:32]


@dataclass(frozen=True, slots=True)
class ForwardAction:
    step_id: str
    name: str
    run: Forward
    compensate: Compensate | None = None


@dataclass(frozen=True, slots=True)
class LedgerEntry:
    step_id: str
    name: str
    key: str
    compensate: Compensate | None


@dataclass(slots=True)
class RollbackReport:
    compensated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.errors


class CompensationLedger:
    """Records successful forward actions so they can be undone in reverse order."""

    def __init__(self, workflow_id: str) -> None:
        self.workflow_id = workflow_id
        self._entries: list[LedgerEntry] = []

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def entries(self) -> list[LedgerEntry]:
        return list(self._entries)

    def key_for(self, step_id: str, name: str) -> str:
        return idempotency_key(self.workflow_id, step_id, name)

    def record(self, step_id: str, name: str, compensate: Compensate | None) -> LedgerEntry:
        entry = LedgerEntry(step_id, name, self.key_for(step_id, name), compensate)
        self._entries.append(entry)
        return entry

    def execute(self, action: ForwardAction) -> Any:
        key = self.key_for(action.step_id, action.name)
        result = action.run(key)
        self.record(action.step_id, action.name, action.compensate)
        return result

    async def execute_async(self, action: ForwardAction) -> Any:
        key = self.key_for(action.step_id, action.name)
        result = action.run(key)
        if inspect.isawaitable(result):
            result = await result
        self.record(action.step_id, action.name, action.compensate)
        return result

    def rollback(self) -> RollbackReport:
        report = RollbackReport()
        while self._entries:
            entry = self._entries.pop()
            if entry.compensate is None:
                report.skipped.append(entry.name)
                continue
            try:
                outcome = entry.compensate(entry.key)
                if inspect.isawaitable(outcome):
                    raise TypeError("Use rollback_async for asynchronous compensations.")
            except Exception as exc:
                logger.error("Compensation for %s (%s) failed: %s", entry.name, entry.step_id, exc)
                report.errors.append(
                    {"name": entry.name, "step_id": entry.step_id, "error": str(exc)}
                )
                continue
            report.compensated.append(entry.name)
        return report

    async def rollback_async(self) -> RollbackReport:
        report = RollbackReport()
        while self._entries:
            entry = self._entries.pop()
            if entry.compensate is None:
                report.skipped.append(entry.name)
                continue
            try:
                outcome = entry.compensate(entry.key)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as exc:
                logger.error("Compensation for %s (%s) failed: %s", entry.name, entry.step_id, exc)
                report.errors.append(
                    {"name": entry.name, "step_id": entry.step_id, "error": str(exc)}
                )
                continue
            report.compensated.append(entry.name)
        return report

    def run_all(self, actions: list[ForwardAction]) -> list[Any]:
        """Run actions in order; on failure undo the earlier ones in reverse and re-raise."""
        results: list[Any] = []
        for action in actions:
            try:
                results.append(self.execute(action))
            except Exception as exc:
                report = self.rollback()
                logger.warning(
                    "Forward action %s failed; compensated %s", action.name, report.compensated
                )
                if not report.clean:
                    raise CompensationFailed(
                        f"Forward action {action.name} failed and rollback was incomplete.",
                        report=report,
                        artifact_id=action.step_id,
                        action=action.name,
                    ) from exc
                raise
        return results


async def run_all_async(
    ledger: CompensationLedger, actions: list[ForwardAction]
) -> list[Any]:
    results: list[Any] = []
    for action in actions:
        try:
            results.append(await ledger.execute_async(action))
        except Exception as exc:
            report = await ledger.rollback_async()
            if not report.clean:
                raise CompensationFailed(
                    f"Forward action {action.name} failed and rollback was incomplete.",
                    report=report,
                    artifact_id=action.step_id,
                    action=action.name,
                ) from exc
            raise
    return results

