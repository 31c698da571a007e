import asyncio
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

import pytest

from changeflow.backends import RetryPolicy
from changeflow.backends.base import AgentBackend, BackendExecutionError
from changeflow.backends.claude import ClaudeCodeBackend
from changeflow.backends.codex import CodexBackend
from changeflow.backends.process import extract_content
from changeflow.backends.resilient import ResilientBackend


class AlwaysFailBackend(AgentBackend):
    def __init__(self, *, retriable: bool = True) -> None:
        self.retriable = retriable
        self.calls = 0

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        self.calls += 1
        raise BackendExecutionError("boom", backend="fake", retriable=self.retriable)
        yield ""  # pragma: no cover


class SlowBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        await asyncio.sleep(1.0)
        yield "late"


class SuccessBackend(AgentBackend):
    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        _ = system_prompt, user_prompt, context, tools
        yield "ok"


def _resilient(primary: AgentBackend, fallback: AgentBackend, events: list, timeout: float = 5.0):
    return ResilientBackend(
        primary_name="primary",
        primary_backend=primary,
        fallback_name="fallback",
        fallback_backend=fallback,
        retry_policy=RetryPolicy(max_retries=1, backoff_seconds=0.0, timeout_seconds=timeout),
        event_hook=events.append,
    )


def test_codex_build_command_shape() -> None:
    backend = CodexBackend(binary="codex", working_directory=Path("."))
    command = backend.build_command(
        system_prompt="system",
        user_prompt="implement feature",
        context={"goal": "x", "model": "gpt-5-codex", "mutating": True},
        tools=["read", "modify"],
    )

    assert command[0:2] == ["codex", "exec"]
    assert "--json" in command
    assert command[command.index("--sandbox") + 1] == "workspace-write"
    assert "gpt-5-codex" in command
    assert any(part.startswith("instructions=") for part in command)
    assert "implement feature" in command[-1]
    assert "Context JSON:" in command[-1]
    assert "Allowed tools:" in command[-1]


def test_codex_read_only_scope_uses_read_only_sandbox() -> None:
    command = CodexBackend().build_command("system", "review", context={})

    assert command[command.index("--sandbox") + 1] == "read-only"


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude", working_directory=Path("."))
    command = backend.build_command("system", "implement feature", context={"model": "opus"})

    assert command[0:2] == ["claude", "-p"]
    assert "stream-json" in command
    assert command[command.index("--append-system-prompt") + 1] == "system"
    assert command[command.index("--model") + 1] == "opus"


def test_claude_read_only_scope_denies_editing_tools() -> None:
    command = ClaudeCodeBackend().build_command(
        "system", "review", context={"mutating": False}, tools=["read_file", "search"]
    )

    assert command[command.index("--permission-mode") + 1] == "plan"
    denied = command[command.index("--disallowedTools") + 1 :]
    assert {"Edit", "Write", "NotebookEdit", "Bash"} <= set(denied)


def test_claude_write_scope_accepts_edits() -> None:
    command = ClaudeCodeBackend().build_command(
        "system", "implement", context={"mutating": True}, tools=["edit_file"]
    )

    assert command[command.index("--permission-mode") + 1] == "acceptEdits"
    assert "--disallowedTools" not in command


def test_extract_content_handles_event_shapes() -> None:
    assert extract_content({"content": "a"}) == "a"
    assert extract_content({"content": [{"text": "b"}, {"image": "x"}, {"text": "c"}]}) == "bc"
    assert extract_content({"delta": "d"}) == "d"
    assert extract_content({"message": {"content": "e"}}) == "e"
    assert extract_content({"type": "response.completed"}) == ""


def test_resilient_backend_fallback_and_retry_events() -> None:
    events: list[dict[str, Any]] = []
    backend = _resilient(AlwaysFailBackend(), SuccessBackend(), events)

    output = asyncio.run(backend.collect("system", "user", context={}))

    assert output == "ok"
    event_names = [event["event"] for event in events]
    assert "backend_retry" in event_names
    assert "backend_failover_start" in event_names
    assert "backend_fallback_success" in event_names


def test_non_retriable_failure_skips_straight_to_fallback() -> None:
    events: list[dict[str, Any]] = []
    primary = AlwaysFailBackend(retriable=False)
    backend = _resilient(primary, SuccessBackend(), events)

    assert asyncio.run(backend.collect("system", "user", context={})) == "ok"
    assert primary.calls == 1
    assert "backend_retry" not in [event["event"] for event in events]


def test_timeout_counts_as_a_retriable_failure() -> None:
    events: list[dict[str, Any]] = []
    backend = _resilient(SlowBackend(), SuccessBackend(), events, timeout=0.01)

    assert asyncio.run(backend.collect("system", "user", context={})) == "ok"
    failures = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert len(failures) == 2
    assert all("timed out" in event["error"] for event in failures)


def test_exhausted_attempts_raise() -> None:
    backend = _resilient(AlwaysFailBackend(), AlwaysFailBackend(), [])

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(backend.collect("system", "user", context={}))

    assert not excinfo.value.retriable
    assert "All backend attempts failed" in str(excinfo.value)


class FakeStdout:
    def __init__(self, lines: list[bytes]) -> None:
        self._lines = lines
        self._index = 0

    def __aiter__(self) -> "FakeStdout":
        return self

    async def __anext__(self) -> bytes:
        if self._index >= len(self._lines):
            raise StopAsyncIteration
        line = self._lines[self._index]
        self._index += 1
        return line


class FakeStderr:
    async def read(self) -> bytes:
        return b"quota exceeded"


class FakeProcess:
    def __init__(self, lines: list[bytes], return_code: int = 0) -> None:
        self.stdout = FakeStdout(lines)
        self.stderr = FakeStderr()
        self.return_code = return_code

    async def wait(self) -> int:
        return self.return_code


def _patch_process(monkeypatch: pytest.MonkeyPatch, process: FakeProcess) -> dict[str, Any]:
    captured: dict[str, Any] = {}

    async def fake_create_subprocess_exec(*args: Any, **kwargs: Any) -> FakeProcess:
        captured["args"] = args
        captured["cwd"] = kwargs.get("cwd")
        return process

    monkeypatch.setattr(asyncio, "create_subprocess_exec", fake_create_subprocess_exec)
    return captured


def test_cli_backend_streams_json_events(monkeypatch: pytest.MonkeyPatch) -> None:
    lines = [
        b'{"type":"response.output_text.delta","content":"hel',
        b'lo"}\n',
        b"noise-before-json\n",
        b'{"type":"response.completed"}\n',
    ]
    captured = _patch_process(monkeypatch, FakeProcess(lines))
    backend = CodexBackend(working_directory=Path("/work"))

    async def _run() -> list[str]:
        return [chunk async for chunk in backend.execute("system", "user", context={})]

    assert asyncio.run(_run()) == ["hello", "noise-before-json"]
    assert captured["args"][0] == "codex"
    assert captured["cwd"] == "/work"


def test_cli_backend_non_zero_exit_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    _patch_process(monkeypatch, FakeProcess([b'{"content":"partial"}\n'], return_code=2))

    with pytest.raises(BackendExecutionError) as excinfo:
        asyncio.run(ClaudeCodeBackend().collect("system", "user", context={}))

    assert excinfo.value.exit_code == 2
    assert "quota exceeded" in str(excinfo.value)
