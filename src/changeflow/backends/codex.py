from __future__ import annotations

import json
from pathlib import Path
from typing import Any

from changeflow.backends.process import CliBackend, render_user_prompt


class CodexBackend(CliBackend):
    name = "codex"

    def __init__(self, binary: str = "codex", working_directory: Path | None = None) -> None:
        super().__init__(binary, working_directory)

    def build_command(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> list[str]:
        command = [
            self.binary,
            "exec",
            "--json",
            "-c",
            f"instructions={json.dumps(system_prompt, ensure_ascii=False)}",
        ]
        # Read-only scopes run inside the CLI's own read-only sandbox as well.
        sandbox = "workspace-write" if context.get("mutating") else "read-only"
        command.extend(["--sandbox", sandbox])
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["-m", model.strip()])
        command.append(render_user_prompt(user_prompt, context, tools))
        return command
