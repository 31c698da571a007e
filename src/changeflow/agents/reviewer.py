from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from changeflow.agents.base import RoleAgent, extract_json_objects
from changeflow.capabilities import Phase, Role
from changeflow.review.fanout import ChangesetSnapshot, Reviewer
from changeflow.review.models import (
    Finding,
    GradeSubmission,
    ReviewBatch,
    Severity,
    Verdict,
    VerdictKind,
)

logger = logging.getLogger(__name__)


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _line_range(payload: dict[str, Any]) -> tuple[int | None, int | None]:
    raw = payload.get("line_start", payload.get("line", payload.get("lines")))
    if isinstance(raw, str) and "-" in raw.strip().lstrip("-"):
        first, _, last = raw.strip().partition("-")
        start, end = _int_or_none(first), _int_or_none(last)
    else:
        start, end = _int_or_none(raw), _int_or_none(payload.get("line_end"))
    if start is None:
        return end, end
    if end is None:
        return start, start
    return min(start, end), max(start, end)


def parse_finding(payload: dict[str, Any], reviewer_id: str) -> Finding | None:
    path = payload.get("path") or payload.get("file")
    description = payload.get("description") or payload.get("message")
    severity_label = payload.get("severity")
    if not isinstance(path, str) or not isinstance(description, str):
        return None
    try:
        severity = Severity.parse(str(severity_label))
    except ValueError:
        logger.debug("Unknown severity %r from %s", severity_label, reviewer_id)
        return None
    line_start, line_end = _line_range(payload)
    suggestion = payload.get("suggestion") or payload.get("fix") or ""
    return Finding(
        finding_id="",
        reviewer_id=reviewer_id,
        severity=severity,
        path=path.strip(),
        line_start=line_start,
        line_end=line_end,
        description=description.strip(),
        suggestion=str(suggestion).strip(),
    )


def parse_verdict(payload: dict[str, Any], grader_id: str) -> Verdict | None:
    finding_id = payload.get("finding_id")
    label = payload.get("verdict")
    if not isinstance(finding_id, str) or not isinstance(label, str):
        return None
    try:
        kind = VerdictKind(label.strip().lower().replace("-", "_").replace(" ", "_"))
    except ValueError:
        return None
    duplicate_of = payload.get("duplicate_of")
    if kind is VerdictKind.DUPLICATE_OF and not isinstance(duplicate_of, str):
        return None
    return Verdict(
        grader_id=grader_id,
        finding_id=finding_id,
        kind=kind,
        duplicate_of=duplicate_of if kind is VerdictKind.DUPLICATE_OF else None,
    )


class ReviewerAgent(RoleAgent):
    role = Role.REVIEWER
    system_prompt = """
You are a code Reviewer. You read the changeset; you never modify anything.
Report each issue as one JSON line:
{"severity": "critical|major|minor|nit", "path": "...", "line_start": 1, "line_end": 1,
"description": "...", "suggestion": "..."}
When grading other reviewers, emit one line per foreign finding:
{"finding_id": "...", "verdict": "valid|false_positive|duplicate_of", "duplicate_of": "..."}
""".strip()


class SpecialistReviewer(Reviewer):
    """Adapts a reviewer agent to the fan-out and cross-grade interface."""

    def __init__(self, reviewer_id: str, agent: ReviewerAgent) -> None:
        self.reviewer_id = reviewer_id
        self.agent = agent

    async def review(self, snapshot: ChangesetSnapshot) -> Sequence[Finding]:
        response = await self.agent.run(
            Phase.REVIEW,
            "Review this changeset for correctness, security and maintainability issues.",
            {"reviewer_id": self.reviewer_id, "changeset": snapshot.to_payload()},
        )
        findings = [
            finding
            for payload in extract_json_objects(response.content)
            if (finding := parse_finding(payload, self.reviewer_id)) is not None
        ]
        return findings

    async def cross_grade(
        self, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> GradeSubmission:
        response = await self.agent.run(
            Phase.CROSS_GRADE,
            "Grade every finding not written by you, then report anything all reviewers missed.",
            {
                "reviewer_id": self.reviewer_id,
                "changeset": snapshot.to_payload(),
                "findings": [finding.to_dict() for finding in batch.findings()],
            },
        )
        verdicts: list[Verdict] = []
        additional: list[Finding] = []
        for payload in extract_json_objects(response.content):
            if "verdict" in payload:
                verdict = parse_verdict(payload, self.reviewer_id)
                if verdict is not None:
                    verdicts.append(verdict)
                continue
            finding = parse_finding(payload, self.reviewer_id)
            if finding is not None:
                additional.append(finding)
        return GradeSubmission(verdicts=tuple(verdicts), additional=tuple(additional))
