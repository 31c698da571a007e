from __future__ import annotations

import json
import logging
import subprocess
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import Any

from changeflow.capabilities import Action, CapabilityGate, Phase, Role
from changeflow.errors import CIError

logger = logging.getLogger(__name__)

CommandRunner = Callable[[list[str]], subprocess.CompletedProcess[str]]


class RunStatus(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMEOUT = "timeout"


class CIWatcher(ABC):
    """The three calls the workflow consumes from a CI provider."""

    @abstractmethod
    def discover(self, branch_ref: str) -> str:
        """Return a reference to the latest run for the branch."""

    @abstractmethod
    def watch(self, run_ref: str, timeout_seconds: float) -> RunStatus:
        """Block until the run is terminal or the bound is exceeded."""

    @abstractmethod
    def fetch_failure_excerpt(self, run_ref: str) -> str:
        """Return log text explaining a failed run."""


@dataclass(frozen=True, slots=True)
class CIOutcome:
    branch_ref: str
    run_ref: str
    status: RunStatus
    excerpt: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "branch_ref": self.branch_ref,
            "run_ref": self.run_ref,
            "status": str(self.status),
            "excerpt": self.excerpt,
        }


def watch_ci(
    watcher: CIWatcher,
    branch_ref: str,
    *,
    timeout_seconds: float,
    gate: CapabilityGate | None = None,
) -> CIOutcome:
    if gate is not None:
        gate.require(Role.CI_WATCHER, Phase.WATCH, Action.EXECUTE_READONLY, branch_ref)
    run_ref = watcher.discover(branch_ref)
    status = watcher.watch(run_ref, timeout_seconds)
    excerpt = watcher.fetch_failure_excerpt(run_ref) if status is RunStatus.FAILED else None
    logger.info("CI run %s on %s finished: %s", run_ref, branch_ref, status)
    return CIOutcome(branch_ref=branch_ref, run_ref=run_ref, status=status, excerpt=excerpt)


class GhCliWatcher(CIWatcher):
    """GitHub Actions through the `gh` CLI."""

    def __init__(
        self,
        repo_root: Path,
        *,
        binary: str = "gh",
        poll_interval_seconds: float = 10.0,
        excerpt_lines: int = 80,
        runner: CommandRunner | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.repo_root = repo_root.resolve()
        self.binary = binary
        self.poll_interval_seconds = poll_interval_seconds
        self.excerpt_lines = excerpt_lines
        self.runner = runner or self._run
        self.clock = clock
        self.sleep = sleep

    def _run(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        try:
            return subprocess.run(
                args, cwd=self.repo_root, text=True, capture_output=True, check=False
            )
        except FileNotFoundError as exc:
            raise CIError(f"CI binary not found: {self.binary}", action="ci") from exc

    def _gh(self, *args: str) -> subprocess.CompletedProcess[str]:
        return self.runner([self.binary, *args])

    def discover(self, branch_ref: str) -> str:
        proc = self._gh(
            "run", "list", "--branch", branch_ref, "--limit", "1", "--json", "databaseId"
        )
        if proc.returncode != 0:
            raise CIError(
                f"Could not list CI runs for {branch_ref}: {proc.stderr.strip()}",
                artifact_id=branch_ref,
                action="discover",
            )
        try:
            runs = json.loads(proc.stdout or "[]")
        except json.JSONDecodeError as exc:
            raise CIError(
                "CI run listing was not valid JSON.", artifact_id=branch_ref, action="discover"
            ) from exc
        if not runs:
            raise CIError(
                f"No CI runs found for {branch_ref}.", artifact_id=branch_ref, action="discover"
            )
        return str(runs[0]["databaseId"])

    def _poll(self, run_ref: str) -> dict[str, Any] | None:
        proc = self._gh("run", "view", run_ref, "--json", "status,conclusion")
        if proc.returncode != 0:
            logger.warning("CI poll for %s failed: %s", run_ref, proc.stderr.strip())
            return None
        try:
            payload = json.loads(proc.stdout)
        except json.JSONDecodeError:
            logger.warning("CI poll for %s returned unreadable output", run_ref)
            return None
        return payload if isinstance(payload, dict) else None

    def watch(self, run_ref: str, timeout_seconds: float) -> RunStatus:
        deadline = self.clock() + timeout_seconds
        while True:
            payload = self._poll(run_ref)
            if payload is not None and payload.get("status") == "completed":
                if payload.get("conclusion") == "success":
                    return RunStatus.SUCCEEDED
                return RunStatus.FAILED
            if self.clock() >= deadline:
                logger.warning("CI run %s still running after %.0fs", run_ref, timeout_seconds)
                return RunStatus.TIMEOUT
            self.sleep(self.poll_interval_seconds)

    def fetch_failure_excerpt(self, run_ref: str) -> str:
        proc = self._gh("run", "view", run_ref, "--log-failed")
        text = proc.stdout.strip() or proc.stderr.strip()
        if not text:
            return f"Run {run_ref} failed without log output."
        return "\n".join(text.splitlines()[-self.excerpt_lines :])
