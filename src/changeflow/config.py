from __future__ import annotations

import json
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

from changeflow.plan import DEFAULT_PLAN_PATH
from changeflow.review.synthesis import LINE_ADJACENCY, SIMILARITY_THRESHOLD

BackendName = Literal["claude", "codex"]
DEFAULT_CONFIG_FILE = "changeflow.toml"


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    plan_path: str = DEFAULT_PLAN_PATH
    test_command: str = "pytest -q"
    lint_command: str = ""


@dataclass(slots=True)
class BackendConfig:
    primary: BackendName = "claude"
    fallback: BackendName = "codex"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300.0


@dataclass(slots=True)
class AgentsConfig:
    model: str = ""


@dataclass(slots=True)
class ReviewConfig:
    reviewers: int = 3
    reviewer_timeout_seconds: float = 300.0
    crossgrade_timeout_seconds: float = 180.0
    similarity_threshold: float = SIMILARITY_THRESHOLD
    line_adjacency: int = LINE_ADJACENCY


@dataclass(slots=True)
class WorkflowConfig:
    max_verification_attempts: int = 3
    auto_start_handoff: bool = True
    max_parallel_steps: int = 1
    apply_fixes: bool = False


@dataclass(slots=True)
class CIConfig:
    enabled: bool = False
    watch_timeout_seconds: float = 1800.0
    poll_interval_seconds: float = 15.0


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class ChangeflowConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    review: ReviewConfig = field(default_factory=ReviewConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    ci: CIConfig = field(default_factory=CIConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict) -> ChangeflowConfig:
        return cls(
            project=ProjectConfig(**data.get("project", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            review=ReviewConfig(**data.get("review", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            ci=CIConfig(**data.get("ci", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return asdict(self)


SECTION_ORDER = ("project", "backend", "agents", "review", "workflow", "ci", "logging")


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ChangeflowConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in SECTION_ORDER:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ChangeflowConfig:
    if not path.exists():
        return ChangeflowConfig()
    return ChangeflowConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ChangeflowConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
