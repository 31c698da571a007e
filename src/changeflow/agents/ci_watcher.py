from __future__ import annotations

from changeflow.agents.base import AgentResponse, RoleAgent
from changeflow.capabilities import Phase, Role
from changeflow.ci import CIOutcome


class CIWatcherAgent(RoleAgent):
    role = Role.CI_WATCHER
    system_prompt = """
You are the CI Watcher. Read the failing CI log excerpt and explain the most likely
root cause and the smallest fix, citing file paths where possible.
""".strip()

    async def triage(self, outcome: CIOutcome) -> AgentResponse:
        return await self.run(
            Phase.WATCH,
            f"Explain why CI run {outcome.run_ref} on {outcome.branch_ref} failed.",
            {"excerpt": outcome.excerpt or ""},
        )
