"""
Score Aggregator: continuity health derived from open issues.

    score = max(0, 100 - sum(weight(severity) * sqrt(count(severity))))

The square root keeps many repetitions of one systemic problem from
collapsing the score to zero. Scores are never stored as a source of truth;
the aggregator only caches the value for a given set of counts.
"""

import logging
import math
from typing import Iterable

from .checking import is_closed_thread
from .config import ScoreWeights
from .issues import IssueLifecycleManager
from .models import (
    CHARACTER_CATEGORIES,
    AnalysisStats,
    ConsistencyIssue,
    ContinuityAnalysis,
    FactCategory,
    IssueStatus,
    IssueType,
    ScoreBreakdown,
    Severity,
    SeverityCounts,
    UnresolvedThread,
    normalize_subject,
)
from .store import FactStore

logger = logging.getLogger("continuity-guardian")

TOP_ISSUE_COUNT = 5

AREA_TYPES: dict[str, frozenset[IssueType]] = {
    "character_consistency": frozenset({
        IssueType.TRAIT_INCONSISTENCY,
        IssueType.CHARACTER_KNOWLEDGE,
        IssueType.LOCATION_IMPOSSIBLE,
    }),
    "timeline_accuracy": frozenset({
        IssueType.TIMELINE_CONFLICT,
        IssueType.ANACHRONISM,
    }),
    "plot_coherence": frozenset({
        IssueType.UNRESOLVED_THREAD,
        IssueType.FORGOTTEN_ELEMENT,
        IssueType.LOGIC_ERROR,
    }),
    "world_consistency": frozenset({
        IssueType.CONTRADICTION,
    }),
}


def count_by_severity(issues: Iterable[ConsistencyIssue]) -> SeverityCounts:
    counts = SeverityCounts()
    for issue in issues:
        setattr(counts, issue.severity.value, counts.get(issue.severity) + 1)
    return counts


def compute_score(counts: SeverityCounts, weights: ScoreWeights | None = None) -> float:
    """Continuity score for the given open-issue counts, rounded to one decimal."""
    weights = weights or ScoreWeights()
    penalty = sum(
        getattr(weights, severity.value) * math.sqrt(counts.get(severity))
        for severity in Severity
    )
    return round(max(0.0, 100.0 - penalty), 1)


class ScoreAggregator:
    """
    Computes scores and analyses, caching scores by issue counts.

    Attributes:
        weights: Severity weights
    """

    def __init__(self, weights: ScoreWeights | None = None) -> None:
        self.weights = weights or ScoreWeights()
        self._cache: dict[tuple[int, int, int], float] = {}

    def score(self, counts: SeverityCounts) -> float:
        key = (counts.critical, counts.warning, counts.suggestion)
        if key not in self._cache:
            self._cache[key] = compute_score(counts, self.weights)
        return self._cache[key]

    def breakdown(self, issues: list[ConsistencyIssue]) -> ScoreBreakdown:
        values = {}
        for area, types in AREA_TYPES.items():
            values[area] = self.score(count_by_severity(i for i in issues if i.type in types))
        return ScoreBreakdown(**values)

    def analyze(self, store: FactStore, lifecycle: IssueLifecycleManager) -> ContinuityAnalysis:
        """
        Build a fresh ContinuityAnalysis from the store and the issues.

        Only open issues count against the score. Acknowledged issues are
        still listed among the top issues but no longer penalize the book.
        """
        active = lifecycle.active()
        open_issues = [i for i in active if i.status == IssueStatus.OPEN]
        counts = count_by_severity(open_issues)

        facts = store.active_facts()
        events = store.get_all_events()
        characters = {
            normalize_subject(f.subject) for f in facts if f.category in CHARACTER_CATEGORIES
        }
        for event in events:
            characters.update(normalize_subject(store.aliases.resolve(name)) for name in event.characters)
        chapters = {f.established_in.chapter_id for f in facts} | {e.chapter_id for e in events}

        top = sorted(active, key=lambda i: (-i.severity.rank, i.detected_at))[:TOP_ISSUE_COUNT]

        analysis = ContinuityAnalysis(
            book_id=store.book_id,
            chapters_analyzed=len(chapters),
            stats=AnalysisStats(
                total_facts=store.fact_count,
                total_events=store.event_count,
                total_characters=len(characters),
                issues_found=counts.total,
                critical_issues=counts.critical,
                warning_issues=counts.warning,
                suggestion_issues=counts.suggestion,
            ),
            open_counts=counts,
            continuity_score=self.score(counts),
            score_breakdown=self.breakdown(open_issues),
            top_issues=[i.model_copy(deep=True) for i in top],
            unresolved_threads=unresolved_threads(store),
        )
        logger.debug(f"Analysis for book {store.book_id}: score {analysis.continuity_score}")
        return analysis


def unresolved_threads(store: FactStore) -> list[UnresolvedThread]:
    """Plot threads whose current value is not a closing state."""
    facts = store.active_facts()
    indices = [f.established_in.chapter_index for f in facts if f.established_in.chapter_index is not None]
    indices.extend(e.chapter_index for e in store.get_all_events() if e.chapter_index is not None)
    latest_index = max(indices, default=None)

    threads = []
    for fact in store.get_facts_by_category(FactCategory.PLOT_THREAD):
        if is_closed_thread(fact.current_value):
            continue
        sightings = [p for p, _ in fact.value_timeline()] + list(fact.mentions)
        first = min(sightings, key=lambda p: p.sequence_key)
        last = max(sightings, key=lambda p: p.sequence_key)
        since = 0
        if latest_index is not None and last.chapter_index is not None:
            since = max(0, latest_index - last.chapter_index)
        threads.append(UnresolvedThread(
            thread=fact.subject,
            introduced_in=first.chapter_title or first.chapter_id,
            last_mentioned_in=last.chapter_title or last.chapter_id,
            chapters_since=since,
        ))
    return threads


__all__ = [
    "AREA_TYPES",
    "TOP_ISSUE_COUNT",
    "ScoreAggregator",
    "compute_score",
    "count_by_severity",
    "unresolved_threads",
]
