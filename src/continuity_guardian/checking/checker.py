"""
Consistency Checker: compares candidate facts and events with the Fact Store.

Checking runs in two steps. ``merge`` offers every candidate to the store
(new keys are accepted, agreeing values are recorded as mentions, differing
values come back as conflicts). ``judge`` turns conflicts into issues through
the configured contradiction strategy. Incremental checks run both steps on
one span; a batch scan merges every chapter first and then judges, adding
the timeline checks.
"""

import hashlib
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Optional

from ..config import ContinuityConfig
from ..models import (
    CandidateFact,
    CheckResult,
    ConsistencyIssue,
    FactCategory,
    Importance,
    IssueLocation,
    IssueSuggestion,
    IssueType,
    Severity,
    StoryFact,
    TimelineEvent,
    make_dedup_key,
    normalize_value,
)
from ..store import CompactionReport, FactStore, UpsertOutcome
from .contradiction import ContradictionStrategy, RuleBasedStrategy
from .timeline import check_timeline

logger = logging.getLogger("continuity-guardian")

SEVERITY_BY_IMPORTANCE = {
    Importance.CRITICAL: Severity.CRITICAL,
    Importance.SIGNIFICANT: Severity.WARNING,
    Importance.MINOR: Severity.SUGGESTION,
}

ISSUE_TYPE_BY_CATEGORY = {
    FactCategory.CHARACTER_TRAIT: IssueType.TRAIT_INCONSISTENCY,
    FactCategory.CHARACTER_KNOWLEDGE: IssueType.CHARACTER_KNOWLEDGE,
    FactCategory.TIMELINE: IssueType.TIMELINE_CONFLICT,
}

CLOSED_THREAD_WORDS = frozenset({
    "resolved", "closed", "concluded", "complete", "completed", "answered",
    "solved", "finished", "ended", "settled", "revealed",
})

_CACHE_SIZE = 256


def is_closed_thread(value: str) -> bool:
    """Whether a plot_thread value describes a closed thread."""
    return bool(set(normalize_value(value).split()) & CLOSED_THREAD_WORDS)


def text_hash(text: str, chapter_id: Optional[str]) -> str:
    """Cache key for an incremental check input."""
    return hashlib.sha256(f"{chapter_id or ''}\x00{text}".encode("utf-8")).hexdigest()


@dataclass
class MergeOutcome:
    """Result of offering candidates to a store."""
    accepted: list[StoryFact] = field(default_factory=list)
    conflicts: list[tuple[StoryFact, CandidateFact]] = field(default_factory=list)
    candidates_offered: int = 0
    events_added: int = 0

    def extend(self, other: "MergeOutcome") -> None:
        self.accepted.extend(other.accepted)
        self.conflicts.extend(other.conflicts)
        self.candidates_offered += other.candidates_offered
        self.events_added += other.events_added


class ConsistencyChecker:
    """
    Compares candidates against a Fact Store and emits ConsistencyIssues.

    The checker keeps no per-book state apart from the incremental result
    cache, which is keyed by book, input hash and store revision.

    Attributes:
        strategy: Contradiction judgement strategy
        config: Engine configuration
    """

    def __init__(
        self,
        strategy: ContradictionStrategy | None = None,
        config: ContinuityConfig | None = None,
    ) -> None:
        self.strategy = strategy or RuleBasedStrategy()
        self.config = config or ContinuityConfig()
        self._cache: OrderedDict[tuple[str, str, int], CheckResult] = OrderedDict()

    # ------------------------------------------------------------------
    # Merge and judge
    # ------------------------------------------------------------------

    def merge(
        self,
        store: FactStore,
        facts: list[CandidateFact],
        events: list[TimelineEvent],
    ) -> MergeOutcome:
        """Offer candidates to ``store``. Conflicting values are not written."""
        outcome = MergeOutcome(candidates_offered=len(facts))
        for candidate in facts:
            result = store.upsert_candidate_fact(candidate)
            if result.outcome == UpsertOutcome.ACCEPTED:
                outcome.accepted.append(result.fact)
            elif result.outcome == UpsertOutcome.CONFLICT:
                outcome.conflicts.append((result.fact, candidate))
        for event in events:
            if store.add_event(event):
                outcome.events_added += 1
        return outcome

    async def judge(
        self,
        store: FactStore,
        book_id: str,
        outcome: MergeOutcome,
    ) -> list[ConsistencyIssue]:
        """Turn a merge outcome into issues."""
        issues: list[ConsistencyIssue] = []
        for fact, candidate in outcome.conflicts:
            verdict = await self.strategy.judge(fact, candidate)
            if verdict.contradicts:
                issues.append(self.contradiction_issue(book_id, fact, candidate, verdict.reason))
            else:
                store.record_mention(fact.id, candidate.established_in)

        for fact in outcome.accepted:
            if fact.category == FactCategory.PLOT_THREAD and not is_closed_thread(fact.current_value):
                issues.append(self.unresolved_thread_issue(book_id, fact))
        return issues

    def timeline_issues(self, store: FactStore, book_id: str) -> list[ConsistencyIssue]:
        return check_timeline(store, book_id, check_time_of_day=self.config.check_time_of_day)

    def compaction_issues(self, book_id: str, report: CompactionReport) -> list[ConsistencyIssue]:
        """Issues for facts that compaction joined with differing values."""
        issues = []
        for conflict in report.conflicts:
            folded = conflict.folded
            candidate = CandidateFact(
                category=folded.category,
                subject=conflict.kept.subject,
                attribute=folded.attribute,
                value=folded.current_value,
                importance=folded.importance,
                established_in=folded.established_in,
            )
            issues.append(self.contradiction_issue(
                book_id, conflict.kept, candidate, "found while merging aliased entities"
            ))
        return issues

    # ------------------------------------------------------------------
    # Issue construction
    # ------------------------------------------------------------------

    def contradiction_issue(
        self,
        book_id: str,
        fact: StoryFact,
        candidate: CandidateFact,
        reason: str = "",
    ) -> ConsistencyIssue:
        issue_type = ISSUE_TYPE_BY_CATEGORY.get(fact.category, IssueType.CONTRADICTION)
        attribute = fact.attribute.replace("_", " ")
        where = candidate.established_in
        origin = fact.established_in
        origin_name = origin.chapter_title or origin.chapter_id

        description = (
            f"{fact.subject}'s {attribute} was established as '{fact.current_value}' in "
            f"{origin_name}, but this passage says '{candidate.value}'."
        )
        if reason:
            description += f" ({reason})"

        return ConsistencyIssue(
            book_id=book_id,
            type=issue_type,
            severity=SEVERITY_BY_IMPORTANCE[fact.importance],
            title=f"{fact.subject}: {attribute} changed from '{fact.current_value}' to '{candidate.value}'",
            description=description,
            locations=[
                IssueLocation(
                    chapter_id=where.chapter_id,
                    chapter_title=where.chapter_title,
                    excerpt=where.excerpt,
                    position=where.position,
                ),
                IssueLocation(
                    chapter_id=origin.chapter_id,
                    chapter_title=origin.chapter_title,
                    excerpt=origin.excerpt,
                    position=origin.position,
                ),
            ],
            suggestions=[
                IssueSuggestion(
                    approach="Keep the established value",
                    description=f"Change the passage to use '{fact.current_value}' as established in {origin_name}.",
                    affected_chapters=[where.chapter_id],
                ),
                IssueSuggestion(
                    approach="Make the change intentional",
                    description=(
                        f"Resolve as intentional so '{candidate.value}' becomes canonical "
                        f"from {where.chapter_title or where.chapter_id} on."
                    ),
                    affected_chapters=[where.chapter_id],
                ),
            ],
            related_fact_ids=[fact.id],
            fact_key=fact.key,
            conflicting_value=candidate.value,
            conflicting_provenance=where,
            dedup_key=make_dedup_key(issue_type, fact.subject, fact.attribute, where.chapter_id),
        )

    def unresolved_thread_issue(self, book_id: str, fact: StoryFact) -> ConsistencyIssue:
        where = fact.established_in
        return ConsistencyIssue(
            book_id=book_id,
            type=IssueType.UNRESOLVED_THREAD,
            severity=Severity.SUGGESTION,
            title=f"Open plot thread: {fact.subject}",
            description=f"'{fact.subject}' is introduced as '{fact.current_value}' and not yet resolved.",
            locations=[IssueLocation(
                chapter_id=where.chapter_id,
                chapter_title=where.chapter_title,
                excerpt=where.excerpt,
                position=where.position,
            )],
            suggestions=[IssueSuggestion(
                approach="Plan a payoff",
                description=f"Resolve or revisit '{fact.subject}' in a later chapter.",
            )],
            related_fact_ids=[fact.id],
            fact_key=fact.key,
            dedup_key=make_dedup_key(IssueType.UNRESOLVED_THREAD, fact.subject, fact.attribute, where.chapter_id),
        )

    # ------------------------------------------------------------------
    # Tie-break and filtering
    # ------------------------------------------------------------------

    def finalize(self, issues: list[ConsistencyIssue], report_minor: bool = True) -> list[ConsistencyIssue]:
        """
        Merge duplicates and drop suggestions when not wanted.

        Issues with the same dedup key, or the same excerpt and fact key, are
        merged into the most severe one; suggestions, locations and related
        facts are combined.
        """
        groups: list[ConsistencyIssue] = []
        slots: dict[tuple, int] = {}
        for issue in issues:
            keys: list[tuple] = [("dedup", issue.dedup_key)]
            if issue.fact_key is not None:
                keys.append(("span", normalize_value(issue.primary_excerpt), issue.fact_key))
            slot = next((slots[k] for k in keys if k in slots), None)
            if slot is None:
                slot = len(groups)
                groups.append(issue)
            elif issue.severity.rank > groups[slot].severity.rank:
                self._absorb(issue, groups[slot])
                groups[slot] = issue
            else:
                self._absorb(groups[slot], issue)
            for k in keys:
                slots[k] = slot

        if not (report_minor and self.config.report_minor_issues):
            groups = [i for i in groups if i.severity != Severity.SUGGESTION]
        return groups

    @staticmethod
    def _absorb(winner: ConsistencyIssue, loser: ConsistencyIssue) -> None:
        for suggestion in loser.suggestions:
            if suggestion not in winner.suggestions:
                winner.suggestions.append(suggestion)
        for location in loser.locations:
            if location not in winner.locations:
                winner.locations.append(location)
        for fact_id in loser.related_fact_ids:
            if fact_id not in winner.related_fact_ids:
                winner.related_fact_ids.append(fact_id)

    # ------------------------------------------------------------------
    # Incremental path
    # ------------------------------------------------------------------

    async def evaluate(
        self,
        store: FactStore,
        book_id: str,
        facts: list[CandidateFact],
        events: list[TimelineEvent],
        report_minor: bool = True,
    ) -> tuple[MergeOutcome, list[ConsistencyIssue]]:
        """Merge and judge one span's candidates against ``store``."""
        outcome = self.merge(store, facts, events)
        issues = await self.judge(store, book_id, outcome)
        return outcome, self.finalize(issues, report_minor=report_minor)

    def cached(self, book_id: str, digest: str, revision: int) -> Optional[CheckResult]:
        """Previously computed result for this input and store revision."""
        key = (book_id, digest, revision)
        result = self._cache.get(key)
        if result is not None:
            self._cache.move_to_end(key)
        return result

    def remember(self, book_id: str, digest: str, revision: int, result: CheckResult) -> None:
        self._cache[(book_id, digest, revision)] = result
        self._cache.move_to_end((book_id, digest, revision))
        while len(self._cache) > _CACHE_SIZE:
            self._cache.popitem(last=False)

    def forget(self, book_id: str) -> None:
        """Drop cached results for a book."""
        for key in [k for k in self._cache if k[0] == book_id]:
            del self._cache[key]


__all__ = [
    "SEVERITY_BY_IMPORTANCE",
    "ISSUE_TYPE_BY_CATEGORY",
    "CLOSED_THREAD_WORDS",
    "MergeOutcome",
    "ConsistencyChecker",
    "is_closed_thread",
    "text_hash",
]
