from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from changeflow.capabilities import Action, CapabilityGate, Role
from changeflow.compensation import CompensationLedger, ForwardAction
from changeflow.errors import AlreadyCompletedError, HandoffError
from changeflow.phases import PhaseStateMachine
from changeflow.plan import MarkerKind, Plan, PlanDocument, PlanMarker
from changeflow.state.store import WorkflowStore

logger = logging.getLogger(__name__)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class HandoffMessage:
    source_role: Role
    target_role: Role
    artifact: Any
    directive: str
    auto_start: bool = False

    @property
    def artifact_id(self) -> str:
        for attribute in ("plan_id", "report_id", "artifact_id"):
            value = getattr(self.artifact, attribute, None)
            if isinstance(value, str) and value:
                return value
        return type(self.artifact).__name__


@dataclass(frozen=True, slots=True)
class HandoffReceipt:
    handoff_id: str
    message: HandoffMessage
    status: str
    accepted_at: str = field(default_factory=_utcnow_iso)
    override: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.handoff_id,
            "source_role": str(self.message.source_role),
            "target_role": str(self.message.target_role),
            "artifact_id": self.message.artifact_id,
            "directive": self.message.directive,
            "auto_start": self.message.auto_start,
            "status": self.status,
            "override": self.override,
            "accepted_at": self.accepted_at,
        }


class HandoffProtocol:
    def __init__(
        self,
        store: WorkflowStore,
        plan_document: PlanDocument,
        gate: CapabilityGate,
        *,
        workflow_id: str,
    ) -> None:
        self.store = store
        self.plan_document = plan_document
        self.gate = gate
        self.workflow_id = workflow_id

    def _validate(
        self,
        message: HandoffMessage,
        source: PhaseStateMachine,
        target: PhaseStateMachine,
        override: bool,
    ) -> Plan | None:
        if source.role != message.source_role or target.role != message.target_role:
            raise HandoffError(
                "Handoff roles do not match the supplied state machines.",
                role=str(message.source_role),
                artifact_id=message.artifact_id,
                action="handoff",
            )
        if not message.directive.strip():
            raise HandoffError(
                "Handoff directive must not be empty.",
                role=str(message.source_role),
                artifact_id=message.artifact_id,
                action="handoff",
            )
        phase = source.current
        if phase is None or source.terminated or phase not in source.table.terminal:
            raise HandoffError(
                f"{source.role} is not in a handoff-ready phase (current: {phase}).",
                role=str(source.role),
                phase=str(phase) if phase else None,
                artifact_id=message.artifact_id,
                action="handoff",
            )
        if not source.can_exit():
            raise HandoffError(
                f"Exit condition for {phase} is not met: {source.exit_condition().description}.",
                role=str(source.role),
                phase=str(phase),
                artifact_id=message.artifact_id,
                action="handoff",
            )
        if target.current is not None:
            raise HandoffError(
                f"{target.role} workflow is already running in {target.current}.",
                role=str(target.role),
                phase=str(target.current),
                artifact_id=message.artifact_id,
                action="handoff",
            )

        if not isinstance(message.artifact, Plan):
            return None
        plan = message.artifact
        if not plan.approved:
            raise HandoffError(
                "Plan has not been approved; it is not ready for handoff.",
                role=str(source.role),
                phase=str(phase),
                artifact_id=plan.plan_id,
                action="handoff",
            )
        problems = plan.problems()
        if problems:
            raise HandoffError(
                "Plan is not decision-complete: " + "; ".join(problems),
                role=str(source.role),
                phase=str(phase),
                artifact_id=plan.plan_id,
                action="handoff",
            )
        persisted = self.plan_document.load()
        if persisted.plan_id != plan.plan_id:
            raise HandoffError(
                f"Plan {plan.plan_id} is not the persisted plan ({persisted.plan_id}).",
                role=str(source.role),
                phase=str(phase),
                artifact_id=plan.plan_id,
                action="handoff",
            )
        if persisted.complete and not override:
            raise AlreadyCompletedError(
                f"Plan {plan.plan_id} is already marked complete; pass override to revise it.",
                role=str(source.role),
                phase=str(phase),
                artifact_id=plan.plan_id,
                action="handoff",
            )
        if persisted.complete:
            self.gate.require(
                source.role, phase, Action.WRITE_PLAN, self.plan_document.relative_path
            )
        return persisted

    def transfer(
        self,
        message: HandoffMessage,
        *,
        source: PhaseStateMachine,
        target: PhaseStateMachine,
        override: bool = False,
    ) -> HandoffReceipt:
        """Transfer the artifact and directive; either every effect lands or none does."""
        persisted = self._validate(message, source, target, override)
        receipt = HandoffReceipt(
            handoff_id=f"handoff-{uuid4().hex[:8]}",
            message=message,
            status="started" if message.auto_start else "pending",
            override=override,
        )
        ledger = CompensationLedger(self.workflow_id)
        actions: list[ForwardAction] = []

        if persisted is not None and persisted.complete:
            previous_text = self.plan_document.read_text()
            marker = PlanMarker(
                kind=MarkerKind.REVISION,
                revision=persisted.revision + 1,
                by=str(source.role),
                note=f"override via {receipt.handoff_id}",
            )
            actions.append(
                ForwardAction(
                    step_id=receipt.handoff_id,
                    name="prepend_revision_marker",
                    run=lambda _key: self.plan_document.prepend_marker(marker, writer=source.role),
                    compensate=lambda _key: self.plan_document.restore(previous_text),
                )
            )

        if persisted is not None:
            previous_owner = self.plan_document.owner
            actions.append(
                ForwardAction(
                    step_id=receipt.handoff_id,
                    name="transfer_plan_ownership",
                    run=lambda _key: self.plan_document.transfer_ownership(message.target_role),
                    compensate=lambda _key: self.plan_document.transfer_ownership(previous_owner),
                )
            )

        source_snapshot = source.snapshot()
        actions.append(
            ForwardAction(
                step_id=receipt.handoff_id,
                name="terminate_source",
                run=lambda _key: source.terminate(),
                compensate=lambda _key: source.restore(source_snapshot),
            )
        )
        if message.auto_start:
            target_snapshot = target.snapshot()
            actions.append(
                ForwardAction(
                    step_id=receipt.handoff_id,
                    name="start_target",
                    run=lambda _key: target.start(),
                    compensate=lambda _key: target.restore(target_snapshot),
                )
            )
        actions.append(
            ForwardAction(
                step_id=receipt.handoff_id,
                name="record_handoff",
                run=lambda _key: self.store.add_handoff(receipt.to_dict()),
            )
        )

        ledger.run_all(actions)
        logger.info(
            "Handoff %s: %s -> %s (%s, override=%s)",
            receipt.handoff_id,
            message.source_role,
            message.target_role,
            receipt.status,
            override,
        )
        return receipt

    def accept_pending(self, handoff_id: str, target: PhaseStateMachine) -> dict[str, Any]:
        """Start the target of a handoff that was surfaced for a human decision."""
        records = self.store.get_handoffs()
        record = next((item for item in reversed(records) if item.get("id") == handoff_id), None)
        if record is None:
            raise HandoffError(f"Handoff not found: {handoff_id}", action="accept_handoff")
        if record.get("status") != "pending":
            raise HandoffError(
                f"Handoff {handoff_id} is {record.get('status')}, not pending.",
                artifact_id=str(record.get("artifact_id")),
                action="accept_handoff",
            )
        if str(target.role) != record.get("target_role"):
            raise HandoffError(
                f"Handoff {handoff_id} targets {record.get('target_role')}, not {target.role}.",
                role=str(target.role),
                action="accept_handoff",
            )
        target.start()
        accepted = {**record, "status": "started", "started_at": _utcnow_iso()}
        self.store.add_handoff(accepted)
        return accepted
