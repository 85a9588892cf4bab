"""
Scan Orchestrator: full-book batch scans.

State machine:
    idle -> extracting -> building_timeline -> detecting_issues -> complete
    error      only when every selected chapter fails extraction
    cancelled  when the caller cancels; nothing is committed

Chapters are extracted concurrently through a bounded pool without holding
the book's lock. A chapter that still fails after its retries is marked
stale and the scan goes on in degraded mode. Merging, detection and
compaction run under the lock on a staged copy of the Fact Store, which
replaces the live store only when the scan completes.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from .book import BookState
from .checking import ConsistencyChecker, MergeOutcome
from .config import ContinuityConfig
from .exceptions import ExtractionError, ScanInProgressError
from .extraction import ExtractionResult, FactExtractor
from .models import Chapter, ScanOptions, ScanPhase, ScanStatus

logger = logging.getLogger("continuity-guardian")

# Share of the progress bar covered by extraction
EXTRACTION_SHARE = 70


class ScanHandle:
    """
    Handle on a running batch scan.

    Attributes:
        book_id: Book being scanned
        status: Live, pollable status of the scan
        task: The asyncio task running the scan
    """

    def __init__(self, book_id: str, status: ScanStatus) -> None:
        self.book_id = book_id
        self.status = status
        self.task: Optional[asyncio.Task] = None

    @property
    def done(self) -> bool:
        return self.task is not None and self.task.done()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the scan already finished."""
        if self.task is None or self.task.done():
            return False
        return self.task.cancel()

    async def wait(self) -> ScanStatus:
        """
        Wait for the scan to finish and return its final status.

        Raises:
            Exception: Whatever unexpected error ended the scan
        """
        if self.task is None:
            return self.status
        await asyncio.wait({self.task})
        if not self.task.cancelled() and self.task.exception() is not None:
            raise self.task.exception()
        return self.status

    def _finish(self, task: asyncio.Task) -> None:
        if task.cancelled():
            if not self.status.phase.is_terminal:
                self.status.phase = ScanPhase.CANCELLED
                self.status.message = "Scan cancelled; no changes were saved"
                self.status.completed_at = datetime.now(timezone.utc)
            return
        # Mark the exception as retrieved; wait() re-raises it
        task.exception()


class ScanOrchestrator:
    """
    Runs batch scans for any book.

    Attributes:
        extractor: Fact Extractor used for every chapter
        checker: Consistency Checker used for merge and detection
        config: Engine configuration (concurrency, retries, backoff)
    """

    def __init__(
        self,
        extractor: FactExtractor,
        checker: ConsistencyChecker,
        config: ContinuityConfig | None = None,
    ) -> None:
        self.extractor = extractor
        self.checker = checker
        self.config = config or ContinuityConfig()

    def start(
        self,
        state: BookState,
        chapters: list[Chapter],
        options: ScanOptions | None = None,
        on_commit: Optional[Callable[[BookState], None]] = None,
    ) -> ScanHandle:
        """
        Start a scan in the background.

        Must be called from a running event loop.

        Raises:
            ScanInProgressError: If a scan of this book is still running
        """
        if state.scan_handle is not None and not state.scan_handle.done:
            raise ScanInProgressError(
                f"A scan of book '{state.book_id}' is already running",
                details={"book_id": state.book_id},
            )

        status = ScanStatus(book_id=state.book_id)
        state.scan_status = status
        handle = ScanHandle(state.book_id, status)
        handle.task = asyncio.create_task(
            self.run(state, chapters, options or ScanOptions(), status, on_commit),
            name=f"scan-{state.book_id}",
        )
        handle.task.add_done_callback(handle._finish)
        state.scan_handle = handle
        return handle

    async def run(
        self,
        state: BookState,
        chapters: list[Chapter],
        options: ScanOptions,
        status: ScanStatus,
        on_commit: Optional[Callable[[BookState], None]] = None,
    ) -> ScanStatus:
        """Run one scan to completion, updating ``status`` as it goes."""
        status.started_at = datetime.now(timezone.utc)
        try:
            selected = self._select(chapters, options)
            status.chapters_total = len(selected)
            logger.info(f"Scan of book {state.book_id} started ({len(selected)} chapters)")

            results, stale = await self._extract_all(state, selected, status)
            status.stale_chapters = stale
            status.degraded = bool(stale)

            if selected and not results:
                status.phase = ScanPhase.ERROR
                status.message = f"Extraction failed for all {len(selected)} chapters"
                status.completed_at = datetime.now(timezone.utc)
                logger.error(f"Scan of book {state.book_id} failed: {status.message}")
                return status

            await self._commit(state, selected, results, options, status, on_commit)

        except asyncio.CancelledError:
            status.phase = ScanPhase.CANCELLED
            status.message = "Scan cancelled; no changes were saved"
            status.completed_at = datetime.now(timezone.utc)
            logger.info(f"Scan of book {state.book_id} cancelled")
            raise
        except Exception as e:
            status.phase = ScanPhase.ERROR
            status.message = str(e)
            status.completed_at = datetime.now(timezone.utc)
            logger.error(f"Scan of book {state.book_id} aborted: {e}")
            raise

        status.phase = ScanPhase.COMPLETE
        status.percent = 100
        status.completed_at = datetime.now(timezone.utc)
        status.message = (
            f"Completed with {len(status.stale_chapters)} stale chapter(s)"
            if status.degraded else "Completed"
        )
        logger.info(
            f"Scan of book {state.book_id} complete: {status.facts_added} facts, "
            f"{status.events_added} events, {status.issues_raised} issues"
            + (f", stale: {status.stale_chapters}" if status.degraded else "")
        )
        return status

    @staticmethod
    def _select(chapters: list[Chapter], options: ScanOptions) -> list[Chapter]:
        selected = chapters
        if options.chapter_ids is not None:
            wanted = set(options.chapter_ids)
            selected = [c for c in chapters if c.id in wanted]
        return sorted(selected, key=lambda c: c.index)

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------

    async def _extract_all(
        self,
        state: BookState,
        chapters: list[Chapter],
        status: ScanStatus,
    ) -> tuple[dict[str, ExtractionResult], list[str]]:
        status.phase = ScanPhase.EXTRACTING
        status.percent = 0
        if not chapters:
            return {}, []

        fact_context = state.store.summary(self.config.fact_context_limit)
        semaphore = asyncio.Semaphore(self.config.scan_concurrency)

        async def worker(chapter: Chapter) -> ExtractionResult:
            try:
                async with semaphore:
                    return await self._extract_with_retry(chapter, fact_context)
            finally:
                status.chapters_extracted += 1
                status.percent = EXTRACTION_SHARE * status.chapters_extracted // len(chapters)

        outcomes = await asyncio.gather(*(worker(c) for c in chapters), return_exceptions=True)

        results: dict[str, ExtractionResult] = {}
        stale: list[str] = []
        for chapter, outcome in zip(chapters, outcomes):
            if isinstance(outcome, ExtractionError):
                stale.append(chapter.id)
                logger.warning(f"Chapter {chapter.id} marked stale: {outcome.message}")
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                results[chapter.id] = outcome
        return results, stale

    async def _extract_with_retry(self, chapter: Chapter, fact_context: str) -> ExtractionResult:
        """Extract a chapter, retrying with backoff on extraction errors."""
        attempts = self.config.extraction_attempts
        attempt = 1
        while True:
            try:
                return await self.extractor.extract_chapter(chapter, fact_context)
            except ExtractionError as e:
                if attempt >= attempts:
                    logger.warning(f"Chapter {chapter.id} failed after {attempts} attempt(s)")
                    raise
                delay = self.config.retry_delay(attempt)
                logger.info(f"Retrying chapter {chapter.id} in {delay}s after: {e.message}")
                await asyncio.sleep(delay)
                attempt += 1

    # ------------------------------------------------------------------
    # Merge, detect, commit
    # ------------------------------------------------------------------

    async def _commit(
        self,
        state: BookState,
        chapters: list[Chapter],
        results: dict[str, ExtractionResult],
        options: ScanOptions,
        status: ScanStatus,
        on_commit: Optional[Callable[[BookState], None]],
    ) -> None:
        async with state.lock:
            staged = state.store.snapshot()

            status.phase = ScanPhase.BUILDING_TIMELINE
            status.percent = 75
            merged = MergeOutcome()
            for chapter in chapters:
                result = results.get(chapter.id)
                if result is not None:
                    merged.extend(self.checker.merge(staged, result.facts, result.events))
            status.facts_added = len(merged.accepted)
            status.events_added = merged.events_added

            status.phase = ScanPhase.DETECTING_ISSUES
            status.percent = 85
            issues = await self.checker.judge(staged, state.book_id, merged)
            if options.check_timeline:
                issues.extend(self.checker.timeline_issues(staged, state.book_id))
            report = staged.compact()
            issues.extend(self.checker.compaction_issues(state.book_id, report))
            issues = self.checker.finalize(issues, report_minor=options.report_minor_issues)

            # Nothing below awaits, so the swap and registration are atomic
            state.store = staged
            visible = state.lifecycle.register_many(issues)
            status.issues_raised = len(visible)
            if on_commit is not None:
                on_commit(state)


__all__ = ["EXTRACTION_SHARE", "ScanHandle", "ScanOrchestrator"]
