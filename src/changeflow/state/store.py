from __future__ import annotations

import json
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from changeflow.errors import StateStoreError

logger = logging.getLogger(__name__)


class WorkflowStore:
    NAMESPACES = {"workflow", "history", "handoffs", "todos", "decisions", "reviews", "metrics"}
    SCHEMA_VERSION = 1

    def __init__(self, repo_root: Path, *, state_dir: str = ".changeflow/state") -> None:
        self.repo_root = repo_root.resolve()
        self.state_dir = self.repo_root / state_dir
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in WorkflowStore.NAMESPACES:
            raise StateStoreError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0) -> Iterator[None]:
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateStoreError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", path)
            return None

    def _write_raw(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(
            json.dumps(payload, ensure_ascii=False, separators=(",", ":")), encoding="utf-8"
        )
        os.replace(tmp_path, path)

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        raw = self._read_raw(namespace)
        if isinstance(raw, dict) and {"schema_version", "revision", "data"} <= raw.keys():
            return {
                "schema_version": int(raw.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw.get("revision") or 1),
                "updated_at": raw.get("updated_at") or self._utcnow_iso(),
                "data": raw.get("data", default_value),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default_value if raw is None else raw,
        }

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateStoreError(
                    f"Concurrent state update detected for namespace '{namespace}'."
                )
            self._write_raw(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateStoreError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateStoreError(str(last_error) if last_error else "State update failed.")

    def _append(self, namespace: str, key: str, item: dict[str, Any], keep: int = 500) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            items = result.get(key)
            if not isinstance(items, list):
                items = []
            items.append(item)
            result[key] = items[-keep:]
            return result

        self.update_json(namespace, _updater, default={key: []})

    def _list(self, namespace: str, key: str) -> list[dict[str, Any]]:
        payload = self.get_json(namespace, default={key: []})
        if not isinstance(payload, dict):
            return []
        items = payload.get(key, [])
        return items if isinstance(items, list) else []

    def get_workflow(self) -> dict[str, Any]:
        workflow = self.get_json("workflow", default={})
        return workflow if isinstance(workflow, dict) else {}

    def set_workflow(self, workflow: dict[str, Any]) -> None:
        self.set_json("workflow", workflow)

    def get_history(self) -> list[dict[str, Any]]:
        return self._list("history", "events")

    def add_history(self, event: dict[str, Any]) -> None:
        self._append("history", "events", event, keep=1000)

    def get_handoffs(self) -> list[dict[str, Any]]:
        return self._list("handoffs", "handoffs")

    def add_handoff(self, handoff: dict[str, Any]) -> None:
        self._append("handoffs", "handoffs", handoff)

    def get_decisions(self) -> list[dict[str, Any]]:
        return self._list("decisions", "decisions")

    def add_decision(self, decision: dict[str, Any]) -> None:
        self._append("decisions", "decisions", decision)

    def get_reviews(self) -> list[dict[str, Any]]:
        return self._list("reviews", "reviews")

    def add_review(self, review: dict[str, Any]) -> None:
        self._append("reviews", "reviews", review, keep=50)

    def get_todos(self) -> dict[str, Any]:
        todos = self.get_json("todos", default={})
        return todos if isinstance(todos, dict) else {}

    def set_todos(self, todos: dict[str, Any]) -> None:
        self.set_json("todos", todos)

    def get_metrics(self) -> dict[str, Any]:
        metrics = self.get_json("metrics", default={})
        return metrics if isinstance(metrics, dict) else {}

    def set_metrics(self, metrics: dict[str, Any]) -> None:
        self.set_json("metrics", metrics)

    def increment_metric(self, key: str, value: int = 1) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            metrics = payload if isinstance(payload, dict) else {}
            metrics[key] = int(metrics.get(key, 0)) + value
            return metrics

        self.update_json("metrics", _updater, default={})
