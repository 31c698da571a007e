from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from changeflow.capabilities import Role
from changeflow.errors import PolicyViolation, StateStoreError
from changeflow.plan import Plan
from changeflow.state.store import WorkflowStore

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class TodoStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"


@dataclass(slots=True)
class TodoItem:
    step_id: str
    title: str
    status: TodoStatus = TodoStatus.PENDING
    note: str = ""
    updated_at: str | None = None

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TodoItem:
        return cls(
            step_id=str(payload["step_id"]),
            title=str(payload.get("title", "")),
            status=TodoStatus(payload.get("status", TodoStatus.PENDING)),
            note=str(payload.get("note", "")),
            updated_at=payload.get("updated_at"),
        )


class TodoTracker:
    """Checklist mirroring the plan steps; one writer at a time, like the plan itself."""

    def __init__(self, store: WorkflowStore) -> None:
        self.store = store

    def _payload(self) -> dict[str, Any]:
        return self.store.get_todos()

    @property
    def owner(self) -> Role:
        return Role(self._payload().get("owner", Role.PLANNER))

    @property
    def plan_id(self) -> str | None:
        value = self._payload().get("plan_id")
        return str(value) if value else None

    def items(self) -> list[TodoItem]:
        raw_items = self._payload().get("items", [])
        if not isinstance(raw_items, list):
            return []
        return [TodoItem.from_dict(item) for item in raw_items if isinstance(item, dict)]

    def _check_writer(self, writer: Role) -> None:
        owner = self.owner
        if writer != owner:
            raise PolicyViolation(
                f"Todo checklist is owned by {owner}; {writer} may not write it.",
                role=str(writer),
                artifact_id="todos",
                action="write_todos",
            )

    def _persist(self, items: list[TodoItem], *, owner: Role, plan_id: str | None) -> None:
        self.store.set_todos(
            {
                "owner": str(owner),
                "plan_id": plan_id,
                "items": [asdict(item) for item in items],
            }
        )

    def mirror(self, plan: Plan, *, writer: Role = Role.PLANNER) -> list[TodoItem]:
        """Rebuild the checklist from the plan in dependency order, keeping known statuses."""
        self._check_writer(writer)
        previous = {item.step_id: item for item in self.items()}
        items: list[TodoItem] = []
        for step in plan.ordered_steps():
            known = previous.get(step.step_id)
            if known is not None:
                known.title = step.title
                items.append(known)
            else:
                items.append(TodoItem(step_id=step.step_id, title=step.title))
        self._persist(items, owner=self.owner, plan_id=plan.plan_id)
        return items

    def mark(
        self, step_id: str, status: TodoStatus, *, writer: Role, note: str = ""
    ) -> TodoItem:
        self._check_writer(writer)
        items = self.items()
        for item in items:
            if item.step_id == step_id:
                item.status = status
                item.note = note
                item.updated_at = _utcnow_iso()
                self._persist(items, owner=self.owner, plan_id=self.plan_id)
                logger.info("Todo %s -> %s", step_id, status)
                return item
        raise StateStoreError(f"No todo item for step {step_id}.", action="write_todos")

    def transfer_ownership(self, role: Role) -> None:
        self._persist(self.items(), owner=role, plan_id=self.plan_id)

    def pending(self) -> list[TodoItem]:
        return [item for item in self.items() if item.status is not TodoStatus.DONE]

    def summary(self) -> dict[str, int]:
        counts = {str(status): 0 for status in TodoStatus}
        for item in self.items():
            counts[str(item.status)] += 1
        return counts
