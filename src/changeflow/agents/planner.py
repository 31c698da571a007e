from __future__ import annotations

import re
from dataclasses import dataclass
from uuid import uuid4

from changeflow.agents.base import RoleAgent, extract_json_objects
from changeflow.capabilities import Phase, Role
from changeflow.plan import Assumption, Plan, Step, Task

BULLET_PATTERN = re.compile(r"^(?:[-*]|\d+[.)])\s+(.+)$")


@dataclass(slots=True)
class Discovery:
    notes: str
    questions: list[str]


def parse_questions(content: str) -> list[str]:
    questions: list[str] = []
    for payload in extract_json_objects(content):
        question = payload.get("question")
        if isinstance(question, str) and question.strip() and question.strip() not in questions:
            questions.append(question.strip())
    return questions


def parse_plan(content: str, task: Task, *, plan_id: str | None = None) -> Plan:
    steps: list[Step] = []
    assumptions: list[Assumption] = []
    for payload in extract_json_objects(content):
        if isinstance(payload.get("assumption"), str):
            assumptions.append(Assumption(payload["assumption"].strip(), source="planner"))
            continue
        if "title" in payload:
            payload.setdefault("step_id", f"s{len(steps) + 1}")
            steps.append(Step.from_dict(payload))
    if not steps:
        # Plain bullet lists become a linear chain of steps.
        titles = [
            match.group(1).strip()
            for match in (BULLET_PATTERN.match(line.strip()) for line in content.splitlines())
            if match
        ]
        for index, title in enumerate(titles[:24], start=1):
            depends_on = (f"s{index - 1}",) if index > 1 else ()
            steps.append(Step(step_id=f"s{index}", title=title, depends_on=depends_on))
    return Plan(
        plan_id=plan_id or f"plan-{uuid4().hex[:8]}",
        task=task,
        steps=tuple(steps),
        assumptions=tuple(assumptions),
    )


class PlannerAgent(RoleAgent):
    role = Role.PLANNER
    system_prompt = """
You are the Planner. You read and search the repository; you never modify it.
Report unknowns as JSON lines {"question": "..."}.
Record assumptions as {"assumption": "..."}.
Describe each step as {"step_id": "s1", "title": "...", "detail": "...",
"depends_on": [], "footprint": ["path/written"], "independent": false}.
You produce plans, not code.
""".strip()

    async def discover(self, task: Task, answers: dict[str, str]) -> Discovery:
        response = await self.run(
            Phase.DISCOVERY,
            "Investigate the repository for this task and list open clarification questions.",
            {"task": task.description, "answers": answers},
        )
        return Discovery(notes=response.content, questions=parse_questions(response.content))

    async def draft(
        self,
        task: Task,
        notes: str,
        *,
        answers: dict[str, str],
        feedback: str = "",
        plan_id: str | None = None,
        phase: Phase = Phase.DESIGN,
    ) -> Plan:
        response = await self.run(
            phase,
            "Write a decision-complete, dependency-ordered implementation plan.",
            {
                "task": task.description,
                "discovery": notes,
                "answers": answers,
                "feedback": feedback,
            },
        )
        return parse_plan(response.content, task, plan_id=plan_id)
