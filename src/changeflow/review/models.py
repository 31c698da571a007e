from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import Any


class Severity(StrEnum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    NIT = "nit"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]

    @classmethod
    def parse(cls, label: str) -> Severity:
        normalized = str(label).strip().lower()
        if normalized in _SEVERITY_ALIASES:
            return _SEVERITY_ALIASES[normalized]
        return cls(normalized)


_SEVERITY_RANK = {Severity.CRITICAL: 3, Severity.MAJOR: 2, Severity.MINOR: 1, Severity.NIT: 0}
# Labels reviewers commonly emit for the same four buckets.
_SEVERITY_ALIASES = {
    "blocker": Severity.CRITICAL,
    "high": Severity.MAJOR,
    "medium": Severity.MINOR,
    "low": Severity.NIT,
    "suggestion": Severity.NIT,
    "info": Severity.NIT,
}


class ReviewerStatus(StrEnum):
    OK = "ok"
    TIMEOUT = "timeout"
    FAILURE = "failure"


class Coverage(StrEnum):
    FULL = "full"
    PARTIAL = "partial"


@dataclass(frozen=True, slots=True)
class Finding:
    finding_id: str
    reviewer_id: str
    severity: Severity
    path: str
    line_start: int | None
    line_end: int | None
    description: str
    suggestion: str = ""

    @property
    def last_line(self) -> int | None:
        return self.line_end if self.line_end is not None else self.line_start

    def sort_key(self) -> tuple[Any, ...]:
        return (
            -self.severity.rank,
            self.path,
            -1 if self.line_start is None else self.line_start,
            -1 if self.last_line is None else self.last_line,
            self.finding_id,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.finding_id,
            "reviewer": self.reviewer_id,
            "severity": str(self.severity),
            "path": self.path,
            "line_start": self.line_start,
            "line_end": self.line_end,
            "description": self.description,
            "suggestion": self.suggestion,
        }


class VerdictKind(StrEnum):
    VALID = "valid"
    FALSE_POSITIVE = "false_positive"
    DUPLICATE_OF = "duplicate_of"


@dataclass(frozen=True, slots=True)
class Verdict:
    grader_id: str
    finding_id: str
    kind: VerdictKind
    duplicate_of: str | None = None


@dataclass(frozen=True, slots=True)
class GradeSubmission:
    """What one reviewer hands back during cross-grading."""

    verdicts: tuple[Verdict, ...] = ()
    additional: tuple[Finding, ...] = ()


@dataclass(frozen=True, slots=True)
class ReviewerResult:
    reviewer_id: str
    status: ReviewerStatus
    findings: tuple[Finding, ...] = ()
    error: str = ""


@dataclass(frozen=True, slots=True)
class ReviewBatch:
    changeset_id: str
    results: tuple[ReviewerResult, ...]

    @property
    def reviewer_ids(self) -> tuple[str, ...]:
        return tuple(result.reviewer_id for result in self.results)

    @property
    def responding(self) -> tuple[str, ...]:
        return tuple(
            result.reviewer_id for result in self.results if result.status is ReviewerStatus.OK
        )

    @property
    def missing(self) -> tuple[str, ...]:
        return tuple(
            sorted(
                result.reviewer_id
                for result in self.results
                if result.status is not ReviewerStatus.OK
            )
        )

    @property
    def coverage(self) -> Coverage:
        return Coverage.PARTIAL if self.missing else Coverage.FULL

    def findings(self) -> list[Finding]:
        return [
            finding
            for result in self.results
            if result.status is ReviewerStatus.OK
            for finding in result.findings
        ]


@dataclass(frozen=True, slots=True)
class CrossGrade:
    grader_id: str
    status: ReviewerStatus
    verdicts: tuple[Verdict, ...] = ()
    additional: tuple[Finding, ...] = ()
    error: str = ""


@dataclass(frozen=True, slots=True)
class SynthesizedEntry:
    finding: Finding
    contributors: tuple[str, ...]
    merged_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        payload = self.finding.to_dict()
        payload["contributors"] = list(self.contributors)
        payload["merged_ids"] = list(self.merged_ids)
        return payload


@dataclass(frozen=True, slots=True)
class SynthesizedReport:
    changeset_id: str
    entries: tuple[SynthesizedEntry, ...]
    coverage: Coverage
    missing_reviewers: tuple[str, ...] = ()
    dismissed: tuple[str, ...] = ()

    @property
    def findings(self) -> list[Finding]:
        return [entry.finding for entry in self.entries]

    def counts(self) -> dict[str, int]:
        counts = {str(severity): 0 for severity in Severity}
        for entry in self.entries:
            counts[str(entry.finding.severity)] += 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "changeset_id": self.changeset_id,
            "coverage": str(self.coverage),
            "missing_reviewers": list(self.missing_reviewers),
            "dismissed": list(self.dismissed),
            "counts": self.counts(),
            "entries": [entry.to_dict() for entry in self.entries],
        }
