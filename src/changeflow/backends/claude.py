from __future__ import annotations

from pathlib import Path
from typing import Any

from changeflow.backends.process import CliBackend, render_user_prompt

READ_ONLY_DENIED = ("Edit", "Write", "NotebookEdit", "Bash")


class ClaudeCodeBackend(CliBackend):
    name = "claude"

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
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
            "-p",
            render_user_prompt(user_prompt, context, tools),
            "--output-format",
            "stream-json",
            "--verbose",
        ]
        if system_prompt:
            command.extend(["--append-system-prompt", system_prompt])
        # Read-only scopes cannot reach the editing or shell tools at all.
        if context.get("mutating"):
            command.extend(["--permission-mode", "acceptEdits"])
        else:
            command.extend(["--permission-mode", "plan", "--disallowedTools", *READ_ONLY_DENIED])
        model = context.get("model")
        if isinstance(model, str) and model.strip():
            command.extend(["--model", model.strip()])
        return command
