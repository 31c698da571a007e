import asyncio
from collections.abc import Sequence

import pytest

from changeflow.capabilities import Phase, Role
from changeflow.phases import PhaseStateMachine
from changeflow.review import (
    ChangesetSnapshot,
    Coverage,
    CrossGrade,
    CrossGrader,
    Finding,
    GradeSubmission,
    ReviewBatch,
    Reviewer,
    ReviewerResult,
    ReviewerStatus,
    ReviewFanout,
    Severity,
    Verdict,
    VerdictKind,
    run_review,
    synthesize,
)
from changeflow.review.synthesis import description_similarity, merge_suggestions


def _finding(
    path: str,
    line: int | None,
    description: str,
    *,
    severity: str = "major",
    suggestion: str = "",
    reviewer_id: str = "draft",
    finding_id: str = "draft",
) -> Finding:
    return Finding(
        finding_id=finding_id,
        reviewer_id=reviewer_id,
        severity=Severity.parse(severity),
        path=path,
        line_start=line,
        line_end=line,
        description=description,
        suggestion=suggestion,
    )


class FakeReviewer(Reviewer):
    def __init__(
        self,
        reviewer_id: str,
        findings: Sequence[Finding] = (),
        *,
        submission: GradeSubmission | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.reviewer_id = reviewer_id
        self.findings = list(findings)
        self.submission = submission or GradeSubmission()
        self.delay = delay
        self.error = error
        self.seen: list[ChangesetSnapshot] = []
        self.graded: list[ReviewBatch] = []

    async def review(self, snapshot: ChangesetSnapshot) -> Sequence[Finding]:
        self.seen.append(snapshot)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.findings

    async def cross_grade(
        self, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> GradeSubmission:
        _ = snapshot
        self.graded.append(batch)
        return self.submission


def _snapshot() -> ChangesetSnapshot:
    return ChangesetSnapshot.capture(
        {"file.ts": "const value = maybe.value;\n"}, {"task": "add lookup"}
    )


def _stamped(reviewer_id: str, index: int, finding: Finding) -> Finding:
    return Finding(
        finding_id=f"{reviewer_id}#{index}",
        reviewer_id=reviewer_id,
        severity=finding.severity,
        path=finding.path,
        line_start=finding.line_start,
        line_end=finding.line_end,
        description=finding.description,
        suggestion=finding.suggestion,
    )


def test_fanout_gives_every_reviewer_the_same_snapshot_and_stamps_ids() -> None:
    reviewers = [
        FakeReviewer("r1", [_finding("a.py", 3, "off by one"), _finding("b.py", 9, "typo")]),
        FakeReviewer("r2", [_finding("a.py", 3, "loop bound is wrong")]),
    ]
    snapshot = _snapshot()

    batch = asyncio.run(ReviewFanout(reviewers, timeout_seconds=1.0).dispatch(snapshot))

    assert all(reviewer.seen == [snapshot] for reviewer in reviewers)
    assert batch.coverage is Coverage.FULL
    assert [finding.finding_id for finding in batch.findings()] == ["r1#1", "r1#2", "r2#1"]
    assert {finding.reviewer_id for finding in batch.findings()} == {"r1", "r2"}


def test_fanout_timeout_and_failure_yield_partial_coverage() -> None:
    reviewers = [
        FakeReviewer("fast", [_finding("a.py", 1, "unused import")]),
        FakeReviewer("slow", delay=1.0),
        FakeReviewer("broken", error=RuntimeError("model unavailable")),
    ]

    batch = asyncio.run(ReviewFanout(reviewers, timeout_seconds=0.05).dispatch(_snapshot()))

    statuses = {result.reviewer_id: result.status for result in batch.results}
    assert statuses == {
        "fast": ReviewerStatus.OK,
        "slow": ReviewerStatus.TIMEOUT,
        "broken": ReviewerStatus.FAILURE,
    }
    assert batch.coverage is Coverage.PARTIAL
    assert batch.missing == ("broken", "slow")
    assert len(batch.findings()) == 1


def test_fanout_rejects_duplicate_reviewer_ids() -> None:
    with pytest.raises(ValueError):
        ReviewFanout([FakeReviewer("r1"), FakeReviewer("r1")], timeout_seconds=1.0)


def test_snapshot_is_read_only() -> None:
    snapshot = _snapshot()

    with pytest.raises(TypeError):
        snapshot.files["file.ts"] = "mutated"  # type: ignore[index]
    assert snapshot.to_payload()["context"] == {"task": "add lookup"}
    assert snapshot.changeset_id == _snapshot().changeset_id


def test_crossgrade_drops_self_unknown_and_repeated_verdicts() -> None:
    batch = ReviewBatch(
        changeset_id="cs-1",
        results=(
            ReviewerResult("r1", ReviewerStatus.OK, (_stamped("r1", 1, _finding("a.py", 1, "x")),)),
            ReviewerResult("r2", ReviewerStatus.OK, (_stamped("r2", 1, _finding("a.py", 8, "y")),)),
        ),
    )
    grader = FakeReviewer(
        "r1",
        submission=GradeSubmission(
            verdicts=(
                Verdict("spoofed", "r1#1", VerdictKind.FALSE_POSITIVE),
                Verdict("r1", "r2#1", VerdictKind.VALID),
                Verdict("r1", "r2#1", VerdictKind.FALSE_POSITIVE),
                Verdict("r1", "r9#1", VerdictKind.VALID),
            ),
            additional=(_finding("c.py", 2, "missed race"),),
        ),
    )

    (grade,) = asyncio.run(CrossGrader([grader], timeout_seconds=1.0).grade(_snapshot(), batch))

    assert grade.status is ReviewerStatus.OK
    assert grade.verdicts == (Verdict("r1", "r2#1", VerdictKind.VALID),)
    assert [finding.finding_id for finding in grade.additional] == ["r1#2"]


def test_crossgrade_only_uses_reviewers_that_responded() -> None:
    responsive = FakeReviewer("r1", [_finding("a.py", 1, "x")])
    silent = FakeReviewer("r2", delay=1.0)
    snapshot = _snapshot()

    batch = asyncio.run(ReviewFanout([responsive, silent], timeout_seconds=0.05).dispatch(snapshot))
    grades = asyncio.run(
        CrossGrader([responsive, silent], timeout_seconds=1.0).grade(snapshot, batch)
    )

    assert [grade.grader_id for grade in grades] == ["r1"]
    assert silent.graded == []
    assert responsive.graded == [batch]


def test_duplicate_verdict_merges_findings_with_different_wording() -> None:
    r1 = FakeReviewer("r1", [_finding("file.ts", 42, "missing null check", severity="major")])
    r2 = FakeReviewer(
        "r2",
        [_finding("file.ts", 42, "unchecked optional access", severity="minor")],
        submission=GradeSubmission(verdicts=(Verdict("r2", "r1#1", VerdictKind.VALID),)),
    )
    r3 = FakeReviewer(
        "r3",
        submission=GradeSubmission(
            verdicts=(Verdict("r3", "r2#1", VerdictKind.DUPLICATE_OF, duplicate_of="r1#1"),)
        ),
    )
    assert description_similarity("missing null check", "unchecked optional access") < 0.6

    report = asyncio.run(
        run_review(
            _snapshot(),
            [r1, r2, r3],
            reviewer_timeout_seconds=1.0,
            crossgrade_timeout_seconds=1.0,
        )
    )

    (entry,) = report.entries
    assert entry.finding.finding_id == "r1#1"
    assert entry.finding.severity is Severity.MAJOR
    assert entry.contributors == ("r1", "r2")
    assert entry.merged_ids == ("r1#1", "r2#1")
    assert report.coverage is Coverage.FULL


def test_without_duplicate_verdict_dissimilar_findings_stay_apart() -> None:
    batch = ReviewBatch(
        changeset_id="cs-1",
        results=(
            ReviewerResult(
                "r1",
                ReviewerStatus.OK,
                (_stamped("r1", 1, _finding("file.ts", 42, "missing null check")),),
            ),
            ReviewerResult(
                "r2",
                ReviewerStatus.OK,
                (_stamped("r2", 1, _finding("file.ts", 42, "unchecked optional access")),),
            ),
        ),
    )

    report = synthesize(batch)

    assert [entry.merged_ids for entry in report.entries] == [("r1#1",), ("r2#1",)]


def test_similar_adjacent_findings_merge_and_keep_highest_severity() -> None:
    batch = ReviewBatch(
        changeset_id="cs-1",
        results=(
            ReviewerResult(
                "r1",
                ReviewerStatus.OK,
                (
                    _stamped(
                        "r1",
                        1,
                        _finding(
                            "api.py",
                            10,
                            "SQL query built from user input",
                            severity="minor",
                            suggestion="Use bound parameters",
                        ),
                    ),
                ),
            ),
            ReviewerResult(
                "r2",
                ReviewerStatus.OK,
                (
                    _stamped(
                        "r2",
                        1,
                        _finding(
                            "api.py",
                            11,
                            "SQL query is built from raw user input",
                            severity="critical",
                            suggestion="Use bound parameters in the query",
                        ),
                    ),
                    _stamped("r2", 2, _finding("api.py", 40, "SQL query built from user input")),
                ),
            ),
        ),
    )

    report = synthesize(batch)

    assert len(report.entries) == 2
    top = report.entries[0]
    assert top.finding.finding_id == "r2#1"
    assert top.finding.severity is Severity.CRITICAL
    assert top.contributors == ("r1", "r2")
    assert top.finding.suggestion == "Use bound parameters in the query"
    assert report.entries[1].merged_ids == ("r2#2",)


def test_synthesis_is_idempotent_and_order_independent() -> None:
    results = (
        ReviewerResult(
            "r1",
            ReviewerStatus.OK,
            (
                _stamped(
                    "r1", 1, _finding("a.py", 5, "possible division by zero", suggestion="guard")
                ),
                _stamped("r1", 2, _finding("b.py", None, "module lacks tests", severity="nit")),
            ),
        ),
        ReviewerResult(
            "r2",
            ReviewerStatus.OK,
            (
                _stamped(
                    "r2", 1, _finding("a.py", 6, "division by zero possible", suggestion="check")
                ),
            ),
        ),
        ReviewerResult("r3", ReviewerStatus.TIMEOUT),
    )
    forward = synthesize(ReviewBatch("cs-1", results))
    backward = synthesize(ReviewBatch("cs-1", tuple(reversed(results))))

    assert forward == backward
    assert synthesize(forward) == forward
    assert forward.coverage is Coverage.PARTIAL
    assert forward.missing_reviewers == ("r3",)


def test_false_positive_majority_dismisses_a_finding() -> None:
    batch = ReviewBatch(
        changeset_id="cs-1",
        results=(
            ReviewerResult(
                "r1", ReviewerStatus.OK, (_stamped("r1", 1, _finding("a.py", 1, "bad name")),)
            ),
            ReviewerResult(
                "r2", ReviewerStatus.OK, (_stamped("r2", 1, _finding("b.py", 1, "leak")),)
            ),
            ReviewerResult("r3", ReviewerStatus.OK),
        ),
    )
    grades = (
        CrossGrade("r2", ReviewerStatus.OK, (Verdict("r2", "r1#1", VerdictKind.FALSE_POSITIVE),)),
        CrossGrade("r3", ReviewerStatus.OK, (Verdict("r3", "r1#1", VerdictKind.FALSE_POSITIVE),)),
        CrossGrade("r1", ReviewerStatus.TIMEOUT),
    )

    report = synthesize(batch, grades)

    assert report.dismissed == ("r1#1",)
    assert [entry.finding.finding_id for entry in report.entries] == ["r2#1"]
    with pytest.raises(ValueError):
        synthesize(report, grades)


def test_merge_suggestions_drops_contained_wording() -> None:
    merged = merge_suggestions(["Add a guard", "add a guard before the loop", "", "Log it"])

    assert merged == "add a guard before the loop\nLog it"


def test_run_review_walks_the_reviewer_phases() -> None:
    machine = PhaseStateMachine(Role.REVIEWER)
    machine.start()

    asyncio.run(
        run_review(
            _snapshot(),
            [FakeReviewer("r1", [_finding("a.py", 1, "x")])],
            reviewer_timeout_seconds=1.0,
            crossgrade_timeout_seconds=1.0,
            machine=machine,
        )
    )

    assert machine.current is Phase.CROSS_GRADE
    assert machine.terminated is True
    assert [event["status"] for event in machine.history] == [
        "entered",
        "exited",
        "entered",
        "terminated",
    ]
