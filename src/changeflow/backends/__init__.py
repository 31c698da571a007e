from changeflow.backends.base import (
    AgentBackend,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)
from changeflow.backends.claude import ClaudeCodeBackend
from changeflow.backends.codex import CodexBackend
from changeflow.backends.process import CliBackend
from changeflow.backends.resilient import ResilientBackend, RetryPolicy

__all__ = [
    "AgentBackend",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "ClaudeCodeBackend",
    "CliBackend",
    "CodexBackend",
    "ResilientBackend",
    "RetryPolicy",
]
