from changeflow.review.crossgrade import CrossGrader
from changeflow.review.fanout import ChangesetSnapshot, Reviewer, ReviewFanout
from changeflow.review.models import (
    Coverage,
    CrossGrade,
    Finding,
    GradeSubmission,
    ReviewBatch,
    ReviewerResult,
    ReviewerStatus,
    Severity,
    SynthesizedEntry,
    SynthesizedReport,
    Verdict,
    VerdictKind,
)
from changeflow.review.pipeline import run_review
from changeflow.review.synthesis import SIMILARITY_THRESHOLD, synthesize

__all__ = [
    "SIMILARITY_THRESHOLD",
    "ChangesetSnapshot",
    "Coverage",
    "CrossGrade",
    "CrossGrader",
    "Finding",
    "GradeSubmission",
    "ReviewBatch",
    "ReviewFanout",
    "Reviewer",
    "ReviewerResult",
    "ReviewerStatus",
    "Severity",
    "SynthesizedEntry",
    "SynthesizedReport",
    "Verdict",
    "VerdictKind",
    "run_review",
    "synthesize",
]
