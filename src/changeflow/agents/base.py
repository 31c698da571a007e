from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from changeflow.backends.base import AgentBackend
from changeflow.capabilities import CapabilityGate, Phase, Role
from changeflow.errors import PolicyViolation

logger = logging.getLogger(__name__)


def extract_json_objects(raw_text: str) -> list[dict[str, Any]]:
    """Pick the one-object-per-line JSON payloads out of free-form agent output."""
    payloads: list[dict[str, Any]] = []
    for raw_line in raw_text.splitlines():
        line = raw_line.strip().removeprefix("- ").strip()
        if not (line.startswith("{") and line.endswith("}")):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(parsed, dict):
            payloads.append(parsed)
    return payloads


@dataclass(slots=True)
class AgentResponse:
    role: Role
    phase: Phase
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


class RoleAgent:
    """A stateless agent bound to one role; its tools come from the gate, per phase."""

    role: Role
    system_prompt: str = "You are a software specialist."

    def __init__(
        self, backend: AgentBackend, gate: CapabilityGate, *, model: str | None = None
    ) -> None:
        self.backend = backend
        self.gate = gate
        self.model = model

    def _tools(self, phase: Phase, requested: list[str] | None) -> list[str]:
        toolset = self.gate.toolset_for(self.role, phase)
        if requested is None:
            return list(toolset.tool_names)
        normalized = sorted({str(tool).strip() for tool in requested if str(tool).strip()})
        outside = [tool for tool in normalized if tool not in toolset.tool_names]
        if outside:
            raise PolicyViolation(
                f"{toolset.name} does not include: {', '.join(outside)}",
                role=str(self.role),
                phase=str(phase),
                action="run_agent",
            )
        return normalized

    async def run(
        self,
        phase: Phase,
        instruction: str,
        context: dict[str, Any],
        allowed_tools: list[str] | None = None,
    ) -> AgentResponse:
        tools = self._tools(phase, allowed_tools)
        toolset = self.gate.toolset_for(self.role, phase)
        run_context = dict(context)
        run_context.update(
            {
                "role": str(self.role),
                "phase": str(phase),
                "toolset": toolset.name,
                "mutating": toolset.mutating,
            }
        )
        if self.model:
            run_context["model"] = self.model
        content = await self.backend.collect(self.system_prompt, instruction, run_context, tools)
        logger.debug("%s agent finished %s (%d chars)", self.role, phase, len(content))
        return AgentResponse(
            role=self.role,
            phase=phase,
            content=content,
            metadata={
                "instruction": instruction,
                "toolset": toolset.name,
                "allowed_tools": tools,
            },
        )
