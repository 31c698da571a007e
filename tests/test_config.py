import tomllib
from pathlib import Path

import pytest

from changeflow import __version__
from changeflow.config import ChangeflowConfig, dumps_toml, load_config, save_config


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "changeflow.toml"
    config = ChangeflowConfig()
    config.project.name = "changeflow-test"
    config.project.lint_command = "ruff check src"
    config.backend.primary = "codex"
    config.backend.fallback = "claude"
    config.backend.max_retries = 3
    config.review.reviewers = 5
    config.review.similarity_threshold = 0.75
    config.workflow.max_parallel_steps = 2
    config.workflow.auto_start_handoff = False
    config.ci.enabled = True
    config.logging.level = "DEBUG"

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded == config
    assert loaded.workflow.max_verification_attempts == 3


def test_missing_file_yields_defaults(tmp_path: Path) -> None:
    assert load_config(tmp_path / "absent.toml") == ChangeflowConfig()


def test_unknown_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "changeflow.toml"
    config_path.write_text("[workflow]\nmax_patches = 4\n", encoding="utf-8")

    with pytest.raises(TypeError):
        load_config(config_path)


def test_toml_dump_contains_every_section() -> None:
    rendered = dumps_toml(ChangeflowConfig())

    for section in ("project", "backend", "agents", "review", "workflow", "ci", "logging"):
        assert f"[{section}]" in rendered
    assert "similarity_threshold = 0.6" in rendered
    assert "auto_start_handoff = true" in rendered
    assert 'plan_path = ".changeflow/PLAN.md"' in rendered


def test_package_version_constant_matches_pyproject() -> None:
    project_root = Path(__file__).resolve().parents[1]
    pyproject = tomllib.loads((project_root / "pyproject.toml").read_text(encoding="utf-8"))

    assert __version__ == pyproject["project"]["version"]
