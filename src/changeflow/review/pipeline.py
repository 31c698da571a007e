from __future__ import annotations

import logging
from collections.abc import Sequence

from changeflow.phases import PhaseStateMachine
from changeflow.review.crossgrade import CrossGrader
from changeflow.review.fanout import ChangesetSnapshot, Reviewer, ReviewFanout
from changeflow.review.models import SynthesizedReport
from changeflow.review.synthesis import LINE_ADJACENCY, SIMILARITY_THRESHOLD, synthesize

logger = logging.getLogger(__name__)


async def run_review(
    snapshot: ChangesetSnapshot,
    reviewers: Sequence[Reviewer],
    *,
    reviewer_timeout_seconds: float,
    crossgrade_timeout_seconds: float,
    threshold: float = SIMILARITY_THRESHOLD,
    adjacency: int = LINE_ADJACENCY,
    machine: PhaseStateMachine | None = None,
) -> SynthesizedReport:
    """Fan out, cross-grade the responders, then synthesize one ranked report.

    When a started reviewer-role machine is passed, it is moved from review to
    cross-grading at the barrier and terminated once every grade is in.
    """
    batch = await ReviewFanout(reviewers, timeout_seconds=reviewer_timeout_seconds).dispatch(
        snapshot
    )
    if machine is not None:
        machine.satisfy()
        machine.advance(reason=f"{len(batch.responding)} first-pass results")
    grades = await CrossGrader(reviewers, timeout_seconds=crossgrade_timeout_seconds).grade(
        snapshot, batch
    )
    if machine is not None:
        machine.satisfy()
        machine.terminate()
    report = synthesize(batch, grades, threshold=threshold, adjacency=adjacency)
    logger.info(
        "Synthesized %d entries for %s (%s coverage, %d dismissed)",
        len(report.entries),
        report.changeset_id,
        report.coverage,
        len(report.dismissed),
    )
    return report
