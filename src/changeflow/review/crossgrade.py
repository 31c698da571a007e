from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace

from changeflow.errors import ReviewerFailure, ReviewerTimeout
from changeflow.review.fanout import (
    ChangesetSnapshot,
    Reviewer,
    ensure_unique_ids,
    stamp_findings,
)
from changeflow.review.models import (
    CrossGrade,
    GradeSubmission,
    ReviewBatch,
    ReviewerStatus,
    Verdict,
    VerdictKind,
)

logger = logging.getLogger(__name__)


def admissible_verdicts(
    grader_id: str, verdicts: Sequence[Verdict], batch: ReviewBatch
) -> tuple[Verdict, ...]:
    """Keep one verdict per foreign finding; self-grades and unknown ids are dropped."""
    known = {finding.finding_id: finding for finding in batch.findings()}
    accepted: dict[str, Verdict] = {}
    for verdict in verdicts:
        finding = known.get(verdict.finding_id)
        if finding is None or finding.reviewer_id == grader_id:
            logger.debug("Ignoring verdict from %s on %s", grader_id, verdict.finding_id)
            continue
        if verdict.kind is VerdictKind.DUPLICATE_OF and (
            verdict.duplicate_of not in known or verdict.duplicate_of == verdict.finding_id
        ):
            logger.debug(
                "Ignoring duplicate-of verdict from %s on %s", grader_id, verdict.finding_id
            )
            continue
        accepted.setdefault(verdict.finding_id, replace(verdict, grader_id=grader_id))
    return tuple(accepted[finding_id] for finding_id in sorted(accepted))


class CrossGrader:
    """All-to-all peer grading; starts only once the first-pass batch is fully resolved."""

    def __init__(self, reviewers: Sequence[Reviewer], *, timeout_seconds: float) -> None:
        ensure_unique_ids(reviewers)
        self.reviewers = {reviewer.reviewer_id: reviewer for reviewer in reviewers}
        self.timeout_seconds = timeout_seconds

    async def _grade_one(
        self, reviewer: Reviewer, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> CrossGrade:
        grader_id = reviewer.reviewer_id
        try:
            submission: GradeSubmission = await asyncio.wait_for(
                reviewer.cross_grade(snapshot, batch), timeout=self.timeout_seconds
            )
        except TimeoutError:
            error = ReviewerTimeout(
                f"Reviewer {grader_id} did not cross-grade within {self.timeout_seconds:.1f}s.",
                reviewer_id=grader_id,
                artifact_id=batch.changeset_id,
                action="cross_grade",
            )
            logger.warning("%s", error)
            return CrossGrade(grader_id, ReviewerStatus.TIMEOUT, error=str(error))
        except Exception as exc:
            error = ReviewerFailure(
                f"Reviewer {grader_id} failed to cross-grade: {exc}",
                reviewer_id=grader_id,
                artifact_id=batch.changeset_id,
                action="cross_grade",
            )
            logger.warning("%s", error)
            return CrossGrade(grader_id, ReviewerStatus.FAILURE, error=str(error))

        own_count = sum(1 for finding in batch.findings() if finding.reviewer_id == grader_id)
        return CrossGrade(
            grader_id=grader_id,
            status=ReviewerStatus.OK,
            verdicts=admissible_verdicts(grader_id, submission.verdicts, batch),
            additional=stamp_findings(grader_id, submission.additional, start=own_count + 1),
        )

    async def grade(
        self, snapshot: ChangesetSnapshot, batch: ReviewBatch
    ) -> tuple[CrossGrade, ...]:
        graders = [
            self.reviewers[reviewer_id]
            for reviewer_id in batch.responding
            if reviewer_id in self.reviewers
        ]
        grades = await asyncio.gather(
            *(self._grade_one(reviewer, snapshot, batch) for reviewer in graders)
        )
        logger.info(
            "Cross-grading for %s: %d graders, %d verdicts",
            batch.changeset_id,
            len(grades),
            sum(len(grade.verdicts) for grade in grades),
        )
        return tuple(grades)
