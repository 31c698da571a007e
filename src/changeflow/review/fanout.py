from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace
from types import MappingProxyType
from typing import Any

from changeflow.errors import ReviewerFailure, ReviewerTimeout
from changeflow.review.models import (
    Finding,
    GradeSubmission,
    ReviewBatch,
    ReviewerResult,
    ReviewerStatus,
)

logger = logging.getLogger(__name__)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({str(key): _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple, set, frozenset)):
        items = sorted(value, key=str) if isinstance(value, (set, frozenset)) else value
        return tuple(_freeze(item) for item in items)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


@dataclass(frozen=True, slots=True)
class ChangesetSnapshot:
    """Read-only view of a changeset handed identically to every reviewer."""

    changeset_id: str
    files: Mapping[str, str]
    context: Mapping[str, Any]

    @classmethod
    def capture(
        cls,
        files: Mapping[str, str],
        context: Mapping[str, Any] | None = None,
        *,
        changeset_id: str | None = None,
    ) -> ChangesetSnapshot:
        frozen_files = MappingProxyType({str(path): str(text) for path, text in files.items()})
        if changeset_id is None:
            digest = hashlib.sha256()
            for path in sorted(frozen_files):
                digest.update(path.encode("utf-8"))
                digest.update(b"\0")
                digest.update(frozen_files[path].encode("utf-8"))
                digest.update(b"\0")
            changeset_id = f"cs-{digest.hexdigest()[:12]}"
        return cls(
            changeset_id=changeset_id, files=frozen_files, context=_freeze(context or {})
        )

    def to_payload(self) -> dict[str, Any]:
        return {
            "changeset_id": self.changeset_id,
            "files": dict(self.files),
            "context": _thaw(self.context),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_payload(), ensure_ascii=False, indent=2, sort_keys=True)


class Reviewer(ABC):
    """One independent review participant. Implementations must not mutate the snapshot."""

    reviewer_id: str

    @abstractmethod
    async def review(self, snapshot: ChangesetSnapshot) -> Sequence[Finding]:
        """Return first-pass findings for the snapshot."""

    @abstractmethod
    async def cross_grade(
        self, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> GradeSubmission:
        """Return verdicts on foreign findings plus any newly discovered issues."""


def stamp_findings(
    reviewer_id: str, findings: Sequence[Finding], *, start: int = 1
) -> tuple[Finding, ...]:
    """Assign stable `<reviewer>#<n>` ids and the true origin to reviewer output."""
    return tuple(
        replace(finding, finding_id=f"{reviewer_id}#{index}", reviewer_id=reviewer_id)
        for index, finding in enumerate(findings, start=start)
    )


def ensure_unique_ids(reviewers: Sequence[Reviewer]) -> None:
    seen: set[str] = set()
    for reviewer in reviewers:
        if reviewer.reviewer_id in seen:
            raise ValueError(f"Duplicate reviewer id: {reviewer.reviewer_id}")
        seen.add(reviewer.reviewer_id)


class ReviewFanout:
    def __init__(self, reviewers: Sequence[Reviewer], *, timeout_seconds: float) -> None:
        ensure_unique_ids(reviewers)
        self.reviewers = list(reviewers)
        self.timeout_seconds = timeout_seconds

    async def _run_one(self, reviewer: Reviewer, snapshot: ChangesetSnapshot) -> ReviewerResult:
        try:
            findings = await asyncio.wait_for(
                reviewer.review(snapshot), timeout=self.timeout_seconds
            )
        except TimeoutError:
            error = ReviewerTimeout(
                f"Reviewer {reviewer.reviewer_id} did not respond within "
                f"{self.timeout_seconds:.1f}s.",
                reviewer_id=reviewer.reviewer_id,
                artifact_id=snapshot.changeset_id,
                action="review",
            )
            logger.warning("%s", error)
            return ReviewerResult(reviewer.reviewer_id, ReviewerStatus.TIMEOUT, error=str(error))
        except Exception as exc:
            error = ReviewerFailure(
                f"Reviewer {reviewer.reviewer_id} failed: {exc}",
                reviewer_id=reviewer.reviewer_id,
                artifact_id=snapshot.changeset_id,
                action="review",
            )
            logger.warning("%s", error)
            return ReviewerResult(reviewer.reviewer_id, ReviewerStatus.FAILURE, error=str(error))
        return ReviewerResult(
            reviewer.reviewer_id,
            ReviewerStatus.OK,
            findings=stamp_findings(reviewer.reviewer_id, list(findings)),
        )

    async def dispatch(self, snapshot: ChangesetSnapshot) -> ReviewBatch:
        """Run every reviewer concurrently; each is bounded by its own timeout."""
        results = await asyncio.gather(
            *(self._run_one(reviewer, snapshot) for reviewer in self.reviewers)
        )
        batch = ReviewBatch(changeset_id=snapshot.changeset_id, results=tuple(results))
        logger.info(
            "Review fan-out for %s: %d/%d responded",
            snapshot.changeset_id,
            len(batch.responding),
            len(self.reviewers),
        )
        return batch
