"""
ContinuityEngine: the per-book service facade.

Every operation takes ``book_id`` explicitly; books share no state. The
engine wires the Fact Extractor, Consistency Checker, Scan Orchestrator,
Issue Lifecycle Manager, Score Aggregator and the incremental check
scheduler together.

Writes to a book's Fact Store happen under that book's lock. A batch scan
holds it for its merge and commit; an incremental check extracts and
judges on a snapshot without it, then takes it only to commit, starting
over if the store changed in the meantime.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from .book import BookState
from .checking import ConsistencyChecker, create_strategy, text_hash
from .config import ContinuityConfig
from .exceptions import CheckFailedError, ExtractionError
from .extraction import ExtractionCapability, FactExtractor, LLMExtractionCapability
from .filters import FactFilter, IssueFilter
from .llm_client import create_llm_client
from .models import (
    CandidateFact,
    Chapter,
    CheckResult,
    ConsistencyIssue,
    ContinuityAnalysis,
    DetectedBy,
    FactCategory,
    FactSource,
    Importance,
    IssueStatus,
    Provenance,
    ResolutionMethod,
    ScanOptions,
    ScanStatus,
    StoryFact,
    TimelineEvent,
)
from .scan import ScanHandle, ScanOrchestrator
from .scheduler import CheckOutcome, IncrementalCheckScheduler
from .scoring import ScoreAggregator
from .store import CompactionReport, UpsertOutcome, UpsertResult

logger = logging.getLogger("continuity-guardian")

COMMIT_ATTEMPTS = 3


class ContinuityEngine:
    """
    Continuity service for any number of books.

    Args:
        config: Engine configuration (defaults when None)
        capability: Extraction capability; built from the LLM client when None
        llm: MultiModelClient with "extractor" and "judge" roles; built from
            config when needed and not given
        data_dir: Directory for JSON snapshots; in-memory when None
    """

    def __init__(
        self,
        config: ContinuityConfig | None = None,
        capability: ExtractionCapability | None = None,
        llm: Any = None,
        data_dir: Optional[Path] = None,
    ) -> None:
        self.config = config or ContinuityConfig()
        self.data_dir = Path(data_dir) if data_dir is not None else None

        if capability is None or (self.config.contradiction_strategy == "llm" and llm is None):
            llm = llm or create_llm_client(self.config)
        if capability is None:
            capability = LLMExtractionCapability(llm.get_client("extractor"), self.config)

        self.extractor = FactExtractor(capability, self.config)
        self.checker = ConsistencyChecker(create_strategy(self.config, llm), self.config)
        self.scanner = ScanOrchestrator(self.extractor, self.checker, self.config)
        self.aggregator = ScoreAggregator(self.config.score_weights)
        self.scheduler = IncrementalCheckScheduler(self._scheduled_check, self.config)
        self._books: dict[str, BookState] = {}

        logger.info(
            f"Continuity engine ready (strategy={self.config.contradiction_strategy}, "
            f"data_dir={self.data_dir})"
        )

    # ------------------------------------------------------------------
    # Books
    # ------------------------------------------------------------------

    def book(self, book_id: str) -> BookState:
        """State for ``book_id``, created (or loaded) on first use."""
        if not book_id or not book_id.strip():
            raise ValueError("book_id must be non-empty")
        state = self._books.get(book_id)
        if state is None:
            state = BookState.open(book_id, self.config, self.data_dir)
            self._books[book_id] = state
        return state

    def _persist(self, state: BookState) -> None:
        state.save()

    # ------------------------------------------------------------------
    # Batch scans
    # ------------------------------------------------------------------

    async def start_scan(
        self,
        book_id: str,
        chapters: list[Chapter],
        options: ScanOptions | None = None,
    ) -> ScanHandle:
        """
        Start a batch scan of ``chapters``.

        Raises:
            ScanInProgressError: If this book is already being scanned
        """
        return self.scanner.start(self.book(book_id), chapters, options, on_commit=self._persist)

    def scan_status(self, book_id: str) -> ScanStatus:
        return self.book(book_id).scan_status

    def cancel_scan(self, book_id: str) -> bool:
        """Cancel the running scan. Returns False if none is running."""
        handle = self.book(book_id).scan_handle
        return handle.cancel() if handle is not None else False

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def facts(self, book_id: str, fact_filter: FactFilter | None = None) -> list[StoryFact]:
        return self.book(book_id).store.query_facts(fact_filter)

    def events(self, book_id: str) -> list[TimelineEvent]:
        return self.book(book_id).store.get_all_events()

    def issues(self, book_id: str, issue_filter: IssueFilter | None = None) -> list[ConsistencyIssue]:
        return self.book(book_id).lifecycle.query(issue_filter)

    def analysis(self, book_id: str) -> ContinuityAnalysis:
        state = self.book(book_id)
        return self.aggregator.analyze(state.store, state.lifecycle)

    # ------------------------------------------------------------------
    # Incremental checks
    # ------------------------------------------------------------------

    async def check(
        self,
        book_id: str,
        text: str,
        chapter_id: Optional[str] = None,
        chapter_title: str = "",
        chapter_index: Optional[int] = None,
    ) -> CheckResult:
        """
        Check the trailing window of ``text`` against the book's facts.

        Identical input against an unchanged store returns the cached
        result. New facts are committed; conflicting values never are.
        ``facts_checked_count`` is the number of active facts the text was
        checked against.

        Raises:
            CheckFailedError: If extraction or contradiction judgement failed
                or timed out; nothing is committed
        """
        state = self.book(book_id)
        chapter_id = chapter_id or "draft"
        digest = text_hash(text, chapter_id)

        cached = self._cached_result(state, digest)
        if cached is not None:
            return cached

        try:
            extraction = await self.extractor.extract_window(
                text,
                state.store.summary(self.config.fact_context_limit),
                chapter_id=chapter_id,
                chapter_title=chapter_title,
                chapter_index=chapter_index,
            )
        except ExtractionError as e:
            raise CheckFailedError(
                f"Check failed: {e.message}",
                details={"book_id": book_id, "chapter_id": chapter_id},
            ) from e

        # Judging runs on a snapshot without the lock; the commit only
        # happens if the store did not move underneath it.
        for _ in range(COMMIT_ATTEMPTS):
            source = state.store
            revision_before = source.revision
            staged = source.snapshot()
            try:
                _, detected = await self.checker.evaluate(staged, book_id, extraction.facts, extraction.events)
            except ExtractionError as e:
                raise CheckFailedError(
                    f"Check failed: {e.message}",
                    details={"book_id": book_id, "chapter_id": chapter_id},
                ) from e

            async with state.lock:
                cached = self._cached_result(state, digest)
                if cached is not None:
                    return cached
                if state.store is not source or state.store.revision != revision_before:
                    logger.debug(f"Store for {book_id} changed during check, re-evaluating")
                    continue

                state.store = staged
                visible = state.lifecycle.register_many(detected)
                result = CheckResult(
                    issues=[i.model_copy(deep=True) for i in visible],
                    facts_checked_count=source.fact_count,
                    text_hash=digest,
                )
                self.checker.remember(book_id, digest, revision_before, result)
                self.checker.remember(book_id, digest, state.store.revision, result)
                if state.store.revision != revision_before or visible:
                    self._persist(state)

            logger.debug(
                f"Checked {len(text)} chars of {chapter_id} against {result.facts_checked_count} facts: "
                f"{len(result.issues)} issues"
            )
            return result

        raise CheckFailedError(
            f"Check failed: the fact store kept changing during {COMMIT_ATTEMPTS} attempts",
            details={"book_id": book_id, "chapter_id": chapter_id},
        )

    def _cached_result(self, state: BookState, digest: str) -> Optional[CheckResult]:
        cached = self.checker.cached(state.book_id, digest, state.store.revision)
        if cached is None:
            return None
        # Issues closed since the result was computed would not be re-raised
        current = []
        for issue in cached.issues:
            live = state.lifecycle.get(issue.id)
            if live.status in (IssueStatus.OPEN, IssueStatus.ACKNOWLEDGED):
                current.append(live.model_copy(deep=True))
        return cached.model_copy(update={"issues": current, "cached": True})

    async def _scheduled_check(self, book_id: str, text: str, chapter_id: Optional[str]) -> CheckResult:
        return await self.check(book_id, text, chapter_id)

    def schedule_check(self, book_id: str, session_id: str, text: str, chapter_id: Optional[str] = None):
        """Debounced check for an editing session; returns the task."""
        return self.scheduler.schedule(book_id, session_id, text, chapter_id)

    async def fire_check(
        self,
        book_id: str,
        session_id: str,
        text: str,
        chapter_id: Optional[str] = None,
    ) -> CheckOutcome:
        """Immediate (throttled) check for an editing session."""
        return await self.scheduler.fire(book_id, session_id, text, chapter_id)

    # ------------------------------------------------------------------
    # Issue lifecycle
    # ------------------------------------------------------------------

    async def resolve_issue(
        self,
        book_id: str,
        issue_id: str,
        method: ResolutionMethod,
        notes: str = "",
    ) -> ConsistencyIssue:
        """
        Resolve an issue. ``intentional`` makes the conflicting value canonical.

        Raises:
            IssueNotFoundError, InvalidTransitionError, FactNotFoundError
        """
        state = self.book(book_id)
        async with state.lock:
            issue = state.lifecycle.resolve(issue_id, method, notes, store=state.store)
            self._persist(state)
        return issue

    def acknowledge_issue(self, book_id: str, issue_id: str, notes: str = "") -> ConsistencyIssue:
        state = self.book(book_id)
        issue = state.lifecycle.acknowledge(issue_id, notes)
        self._persist(state)
        return issue

    def dismiss_issue(self, book_id: str, issue_id: str, notes: str = "") -> ConsistencyIssue:
        state = self.book(book_id)
        issue = state.lifecycle.dismiss(issue_id, notes)
        self._persist(state)
        return issue

    def reopen_issue(self, book_id: str, issue_id: str, reason: str = "") -> ConsistencyIssue:
        state = self.book(book_id)
        issue = state.lifecycle.reopen(issue_id, reason)
        self._persist(state)
        return issue

    # ------------------------------------------------------------------
    # Store maintenance and manual facts
    # ------------------------------------------------------------------

    async def register_alias(self, book_id: str, alias: str, canonical: str) -> CompactionReport:
        """
        Register an entity alias and merge the facts it joins.

        Differing values joined by the alias are raised as issues.
        """
        state = self.book(book_id)
        async with state.lock:
            staged = state.store.snapshot()
            report = staged.register_alias(alias, canonical)
            issues = self.checker.finalize(self.checker.compaction_issues(book_id, report))
            state.store = staged
            state.lifecycle.register_many(issues)
            self._persist(state)
        logger.info(f"Alias '{alias}' -> '{canonical}' registered for book {book_id}")
        return report

    async def add_user_fact(
        self,
        book_id: str,
        category: FactCategory,
        subject: str,
        attribute: str,
        value: str,
        chapter_id: str,
        chapter_title: str = "",
        chapter_index: Optional[int] = None,
        excerpt: str = "",
        importance: Importance = Importance.SIGNIFICANT,
    ) -> UpsertResult:
        """
        Record a fact entered by the author.

        Goes through the same rules as extracted facts: a value that
        conflicts with the active fact is raised as an issue, not written.
        """
        candidate = CandidateFact(
            category=category,
            subject=subject,
            attribute=attribute,
            value=value,
            importance=importance,
            source=FactSource.USER,
            established_in=Provenance(
                chapter_id=chapter_id,
                chapter_title=chapter_title,
                chapter_index=chapter_index,
                excerpt=excerpt,
            ),
        )
        state = self.book(book_id)
        async with state.lock:
            result = state.store.upsert_candidate_fact(candidate)
            if result.outcome == UpsertOutcome.CONFLICT:
                issue = self.checker.contradiction_issue(book_id, result.fact, candidate, "entered by the author")
                issue.detected_by = DetectedBy.USER
                state.lifecycle.register(issue)
            self._persist(state)
        return result

    async def close(self) -> None:
        """Cancel pending checks and running scans."""
        await self.scheduler.shutdown()
        for state in self._books.values():
            if state.scan_handle is not None and state.scan_handle.cancel():
                await state.scan_handle.wait()


__all__ = ["ContinuityEngine"]
