"""
Tests for the Score Aggregator.
"""

import math

import pytest

from continuity_guardian.config import ContinuityConfig, ScoreWeights
from continuity_guardian.issues import IssueLifecycleManager
from continuity_guardian.models import (
    CandidateFact,
    ConsistencyIssue,
    FactCategory,
    IssueType,
    Provenance,
    ResolutionMethod,
    Severity,
    SeverityCounts,
    StoryTime,
    TimelineEvent,
)
from continuity_guardian.scoring import (
    ScoreAggregator,
    compute_score,
    count_by_severity,
    unresolved_threads,
)
from continuity_guardian.store import FactStore


def make_issue(severity: Severity, key: str, issue_type: IssueType = IssueType.CONTRADICTION) -> ConsistencyIssue:
    return ConsistencyIssue(
        book_id="book",
        type=issue_type,
        severity=severity,
        title=key,
        description=key,
        dedup_key=key,
    )


def add_fact(store: FactStore, subject: str, attribute: str, value: str, chapter: int,
             category: FactCategory = FactCategory.CHARACTER_TRAIT) -> None:
    store.upsert_candidate_fact(CandidateFact(
        category=category,
        subject=subject,
        attribute=attribute,
        value=value,
        established_in=Provenance(chapter_id=f"ch{chapter}", chapter_title=f"Chapter {chapter}",
                                  chapter_index=chapter - 1, excerpt=value),
    ))


class TestComputeScore:
    """Test the score formula."""

    def test_no_issues_is_perfect(self):
        assert compute_score(SeverityCounts()) == 100.0

    def test_formula(self):
        counts = SeverityCounts(critical=1, warning=4, suggestion=9)
        expected = round(100 - (8 * 1 + 3 * 2 + 1 * 3), 1)
        assert compute_score(counts) == expected

    def test_square_root_dampens_repetition(self):
        assert compute_score(SeverityCounts(warning=100)) == pytest.approx(100 - 3 * math.sqrt(100))

    def test_never_negative(self):
        assert compute_score(SeverityCounts(critical=1000)) == 0.0

    def test_custom_weights(self):
        assert compute_score(SeverityCounts(warning=1), ScoreWeights(warning=10.0)) == 90.0

    def test_count_by_severity(self):
        counts = count_by_severity([
            make_issue(Severity.CRITICAL, "a"),
            make_issue(Severity.WARNING, "b"),
            make_issue(Severity.WARNING, "c"),
        ])
        assert (counts.critical, counts.warning, counts.suggestion) == (1, 2, 0)


class TestAnalyze:
    """Test the book analysis."""

    def test_analysis(self):
        store = FactStore("book")
        add_fact(store, "Marcus", "eye_color", "blue", 1)
        add_fact(store, "The ledger", "state", "stolen", 2, FactCategory.PLOT_THREAD)
        store.add_event(TimelineEvent(
            description="Elena arrives", story_time=StoryTime(value="dawn"),
            characters=["Elena"], chapter_id="ch4", chapter_index=3,
        ))
        lifecycle = IssueLifecycleManager("book", ContinuityConfig())
        lifecycle.register_many([
            make_issue(Severity.WARNING, "w", IssueType.TRAIT_INCONSISTENCY),
            make_issue(Severity.CRITICAL, "c", IssueType.TIMELINE_CONFLICT),
        ])

        analysis = ScoreAggregator().analyze(store, lifecycle)

        assert analysis.continuity_score == 100 - 8 - 3
        assert analysis.stats.total_facts == 2
        assert analysis.stats.total_events == 1
        assert analysis.stats.total_characters == 2
        assert analysis.stats.critical_issues == 1
        assert analysis.chapters_analyzed == 3
        assert analysis.score_breakdown.character_consistency == 97.0
        assert analysis.score_breakdown.timeline_accuracy == 92.0
        assert analysis.score_breakdown.world_consistency == 100.0
        assert [i.dedup_key for i in analysis.top_issues] == ["c", "w"]
        assert len(analysis.unresolved_threads) == 1

    def test_closed_issues_do_not_count(self):
        store = FactStore("book")
        lifecycle = IssueLifecycleManager("book", ContinuityConfig())
        issue = lifecycle.register(make_issue(Severity.CRITICAL, "c")).issue
        aggregator = ScoreAggregator()

        before = aggregator.analyze(store, lifecycle).continuity_score
        lifecycle.resolve(issue.id, ResolutionMethod.FIXED)
        after = aggregator.analyze(store, lifecycle).continuity_score
        lifecycle.reopen(issue.id)
        reopened = aggregator.analyze(store, lifecycle).continuity_score

        assert before == 92.0
        assert after == 100.0
        assert reopened == before

    def test_acknowledged_issues_do_not_count(self):
        store = FactStore("book")
        lifecycle = IssueLifecycleManager("book", ContinuityConfig())
        issue = lifecycle.register(make_issue(Severity.WARNING, "w")).issue
        lifecycle.register(make_issue(Severity.SUGGESTION, "s"))
        lifecycle.acknowledge(issue.id)

        analysis = ScoreAggregator().analyze(store, lifecycle)

        assert analysis.continuity_score == 99.0
        assert analysis.open_counts.warning == 0
        assert analysis.open_counts.suggestion == 1
        assert [i.id for i in analysis.top_issues][0] == issue.id

    def test_top_issues_limited_to_five(self):
        lifecycle = IssueLifecycleManager("book", ContinuityConfig())
        lifecycle.register_many([make_issue(Severity.SUGGESTION, f"s{i}") for i in range(8)])
        analysis = ScoreAggregator().analyze(FactStore("book"), lifecycle)
        assert len(analysis.top_issues) == 5


class TestUnresolvedThreads:
    """Test open plot thread reporting."""

    def test_chapters_since_last_mention(self):
        store = FactStore("book")
        add_fact(store, "The ledger", "state", "stolen", 2, FactCategory.PLOT_THREAD)
        add_fact(store, "The duel", "state", "resolved", 3, FactCategory.PLOT_THREAD)
        add_fact(store, "Marcus", "eye_color", "blue", 7)
        ledger = store.get_active_value("The ledger", "state")
        store.record_mention(ledger.id, Provenance(chapter_id="ch4", chapter_title="Chapter 4", chapter_index=3))

        threads = unresolved_threads(store)

        assert len(threads) == 1
        thread = threads[0]
        assert thread.thread == "The ledger"
        assert thread.introduced_in == "Chapter 2"
        assert thread.last_mentioned_in == "Chapter 4"
        assert thread.chapters_since == 3
