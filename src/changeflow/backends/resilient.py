from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from changeflow.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Primary/fallback backends with per-attempt timeout, exponential retry and failover."""

    def __init__(
        self,
        primary_name: str,
        primary_backend: AgentBackend,
        fallback_name: str,
        fallback_backend: AgentBackend,
        retry_policy: RetryPolicy,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.attempts: list[tuple[str, AgentBackend]] = [(primary_name, primary_backend)]
        if fallback_name != primary_name:
            self.attempts.append((fallback_name, fallback_backend))
        self.primary_name = primary_name
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: str, **fields: Any) -> None:
        payload = {"event": event, **fields}
        if event == "backend_attempt_failed":
            logger.warning(
                "Backend %s attempt %s failed: %s",
                fields.get("backend"),
                fields.get("attempt"),
                fields.get("error"),
            )
        if self.event_hook is not None:
            self.event_hook(payload)

    async def _run_once(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None,
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [
                chunk
                async for chunk in backend.execute(system_prompt, user_prompt, context, tools)
            ]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
        tools: list[str] | None = None,
    ) -> AsyncIterator[str]:
        errors: list[str] = []
        for backend_name, backend in self.attempts:
            if backend_name != self.primary_name:
                self._emit("backend_failover_start", backend=backend_name, errors=len(errors))
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay(attempt)
                    self._emit(
                        "backend_retry", backend=backend_name, attempt=attempt, delay_seconds=delay
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._run_once(
                        backend, system_prompt, user_prompt, context, tools
                    )
                except BackendExecutionError as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        "backend_attempt_failed",
                        backend=backend_name,
                        attempt=attempt,
                        error=str(exc),
                        retriable=exc.retriable,
                    )
                    if not exc.retriable:
                        break
                    continue
                except Exception as exc:
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                    self._emit(
                        "backend_attempt_failed",
                        backend=backend_name,
                        attempt=attempt,
                        error=str(exc),
                        retriable=True,
                    )
                    continue
                if backend_name != self.primary_name:
                    self._emit("backend_fallback_success", backend=backend_name, attempt=attempt)
                for chunk in chunks:
                    yield chunk
                return

        raise BackendExecutionError(
            "All backend attempts failed. " + "; ".join(errors[-6:]),
            retriable=False,
        )
