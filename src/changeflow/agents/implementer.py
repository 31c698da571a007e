from __future__ import annotations

from changeflow.agents.base import AgentResponse, RoleAgent, extract_json_objects
from changeflow.capabilities import Phase, Role
from changeflow.plan import Plan, Step
from changeflow.review.models import SynthesizedReport


def plan_deviation(response: AgentResponse) -> str | None:
    """Return the reason if the implementer says the step cannot be done as planned."""
    for payload in extract_json_objects(response.content):
        reason = payload.get("plan_deviation")
        if isinstance(reason, str) and reason.strip():
            return reason.strip()
    return None


class ImplementerAgent(RoleAgent):
    role = Role.IMPLEMENTER
    system_prompt = """
You are the Implementer. Implement exactly what the plan says, one step at a time,
matching repository conventions. Never edit the plan.
If a step cannot be completed without departing from the plan, stop and emit
{"plan_deviation": "<reason>"} on its own line.
""".strip()

    async def execute_step(self, plan: Plan, step: Step, *, feedback: str = "") -> AgentResponse:
        return await self.run(
            Phase.IMPLEMENTATION,
            f"Implement step {step.step_id}: {step.title}",
            {
                "plan_id": plan.plan_id,
                "task": plan.task.description,
                "step": step.to_dict(),
                "verification_feedback": feedback,
            },
        )

    async def document(self, plan: Plan, completed: list[str]) -> AgentResponse:
        return await self.run(
            Phase.DOCUMENTATION,
            "Update user-facing documentation and the changelog for the completed steps.",
            {"plan_id": plan.plan_id, "task": plan.task.description, "completed": completed},
        )

    async def apply_fixes(
        self, plan: Plan, report: SynthesizedReport, *, feedback: str = ""
    ) -> AgentResponse:
        return await self.run(
            Phase.IMPLEMENTATION,
            "Apply the ranked review fixes, highest severity first.",
            {
                "plan_id": plan.plan_id,
                "report": report.to_dict(),
                "verification_feedback": feedback,
            },
        )
