"""Deterministic merge of reviewer findings into one ranked fix list.

Two findings describe the same issue when they sit in the same file on
overlapping or adjacent lines (at most ``LINE_ADJACENCY`` lines apart) and
their descriptions score at least ``SIMILARITY_THRESHOLD``. The score is the
larger of the token Jaccard index and the ``difflib`` sequence ratio over the
normalised words. A cross-grade ``duplicate_of`` verdict joins two findings
regardless of either test. Classes are the transitive closure of these links.

Nothing here reads the clock or depends on input order, and feeding a
synthesized report back in returns it unchanged.
"""

from __future__ import annotations

import re
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, replace
from difflib import SequenceMatcher

from changeflow.review.models import (
    CrossGrade,
    Finding,
    ReviewBatch,
    ReviewerStatus,
    SynthesizedEntry,
    SynthesizedReport,
    VerdictKind,
)

SIMILARITY_THRESHOLD = 0.6
LINE_ADJACENCY = 1

_WORD_PATTERN = re.compile(r"[a-z0-9]+")


def _words(text: str) -> list[str]:
    return _WORD_PATTERN.findall(text.lower())


def description_similarity(left: str, right: str) -> float:
    left_words, right_words = _words(left), _words(right)
    if not left_words and not right_words:
        return 1.0
    if not left_words or not right_words:
        return 0.0
    left_set, right_set = set(left_words), set(right_words)
    jaccard = len(left_set & right_set) / len(left_set | right_set)
    ratio = SequenceMatcher(None, " ".join(left_words), " ".join(right_words)).ratio()
    return max(jaccard, ratio)


def located_together(left: Finding, right: Finding, adjacency: int = LINE_ADJACENCY) -> bool:
    if left.path != right.path:
        return False
    if left.line_start is None or right.line_start is None:
        # File-level findings only group with other file-level findings.
        return left.line_start is None and right.line_start is None
    left_end = left.last_line if left.last_line is not None else left.line_start
    right_end = right.last_line if right.last_line is not None else right.line_start
    return left.line_start <= right_end + adjacency and right.line_start <= left_end + adjacency


def merge_suggestions(suggestions: Iterable[str]) -> str:
    """Join distinct suggestions, dropping any whose wording is contained in another."""
    cleaned: list[tuple[str, str]] = []
    for suggestion in suggestions:
        text = suggestion.strip()
        key = " ".join(_words(text))
        if text and key and all(key != existing for existing, _ in cleaned):
            cleaned.append((key, text))
    kept = [
        text
        for key, text in cleaned
        if not any(key != other and key in other for other, _ in cleaned)
    ]
    return "\n".join(kept)


@dataclass(slots=True)
class _Candidate:
    finding: Finding
    contributors: frozenset[str]
    merged_ids: frozenset[str]


class _UnionFind:
    def __init__(self, keys: Iterable[str]) -> None:
        self.parent = {key: key for key in keys}

    def find(self, key: str) -> str:
        root = key
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[key] != root:
            self.parent[key], key = root, self.parent[key]
        return root

    def union(self, left: str, right: str) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root != right_root:
            # Smaller id wins so the structure does not depend on call order.
            low, high = sorted((left_root, right_root))
            self.parent[high] = low


def _tally_dismissed(candidates: dict[str, _Candidate], grades: Sequence[CrossGrade]) -> set[str]:
    valid: dict[str, int] = defaultdict(int)
    false_positive: dict[str, int] = defaultdict(int)
    for grade in grades:
        if grade.status is not ReviewerStatus.OK:
            continue
        for verdict in grade.verdicts:
            if verdict.kind is VerdictKind.FALSE_POSITIVE:
                false_positive[verdict.finding_id] += 1
            else:
                valid[verdict.finding_id] += 1
    return {
        finding_id
        for finding_id in candidates
        if false_positive[finding_id] > valid[finding_id]
    }


def _candidates_from_batch(
    batch: ReviewBatch, grades: Sequence[CrossGrade]
) -> list[_Candidate]:
    findings = list(batch.findings())
    for grade in grades:
        if grade.status is ReviewerStatus.OK:
            findings.extend(grade.additional)
    return [
        _Candidate(finding, frozenset({finding.reviewer_id}), frozenset({finding.finding_id}))
        for finding in findings
    ]


def _candidates_from_report(report: SynthesizedReport) -> list[_Candidate]:
    return [
        _Candidate(entry.finding, frozenset(entry.contributors), frozenset(entry.merged_ids))
        for entry in report.entries
    ]


def synthesize(
    source: ReviewBatch | SynthesizedReport,
    grades: Sequence[CrossGrade] = (),
    *,
    threshold: float = SIMILARITY_THRESHOLD,
    adjacency: int = LINE_ADJACENCY,
) -> SynthesizedReport:
    if isinstance(source, SynthesizedReport):
        if grades:
            raise ValueError("Cross-grades apply to a review batch, not a synthesized report.")
        candidates = _candidates_from_report(source)
        coverage, missing = source.coverage, source.missing_reviewers
        previously_dismissed = set(source.dismissed)
    else:
        candidates = _candidates_from_batch(source, grades)
        coverage, missing = source.coverage, source.missing
        previously_dismissed = set()

    by_id = {
        candidate.finding.finding_id: candidate
        for candidate in sorted(candidates, key=lambda item: item.finding.sort_key())
    }
    dismissed = _tally_dismissed(by_id, grades)
    live = sorted(
        (by_id[finding_id] for finding_id in by_id if finding_id not in dismissed),
        key=lambda item: item.finding.sort_key(),
    )

    classes = _UnionFind(candidate.finding.finding_id for candidate in live)
    for index, left in enumerate(live):
        for right in live[index + 1 :]:
            if located_together(left.finding, right.finding, adjacency) and (
                description_similarity(left.finding.description, right.finding.description)
                >= threshold
            ):
                classes.union(left.finding.finding_id, right.finding.finding_id)
    for grade in grades:
        if grade.status is not ReviewerStatus.OK:
            continue
        for verdict in grade.verdicts:
            target = verdict.duplicate_of
            if verdict.kind is not VerdictKind.DUPLICATE_OF or target is None:
                continue
            if verdict.finding_id in classes.parent and target in classes.parent:
                classes.union(verdict.finding_id, target)

    members: dict[str, list[_Candidate]] = defaultdict(list)
    for candidate in live:
        members[classes.find(candidate.finding.finding_id)].append(candidate)

    entries: list[SynthesizedEntry] = []
    for group in members.values():
        # `live` is sorted, so the first member carries the highest severity.
        representative = group[0].finding
        merged = replace(
            representative,
            suggestion=merge_suggestions(item.finding.suggestion for item in group),
        )
        entries.append(
            SynthesizedEntry(
                finding=merged,
                contributors=tuple(sorted(set().union(*(item.contributors for item in group)))),
                merged_ids=tuple(sorted(set().union(*(item.merged_ids for item in group)))),
            )
        )
    entries.sort(key=lambda entry: entry.finding.sort_key())

    return SynthesizedReport(
        changeset_id=source.changeset_id,
        entries=tuple(entries),
        coverage=coverage,
        missing_reviewers=tuple(missing),
        dismissed=tuple(sorted(previously_dismissed | dismissed)),
    )
