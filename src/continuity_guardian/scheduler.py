"""
Incremental check scheduling per editing session.

Each check is a cancellable asyncio task. A new edit for the same
(book, session) cancels the previous task, whether it is still waiting out
its debounce or already running, before the new one is scheduled. Executed
checks are throttled per session; a throttled check is a no-op that reports
``skipped``. A failed check reports ``failed`` and leaves the last
known-good result in place.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from .config import ContinuityConfig
from .exceptions import CheckFailedError
from .models import CheckResult

logger = logging.getLogger("continuity-guardian")

CheckFunction = Callable[[str, str, Optional[str]], Awaitable[CheckResult]]
SessionKey = tuple[str, str]


class CheckState(str, Enum):
    """Outcome of one scheduled check."""
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class CheckOutcome:
    """Result of a scheduled or fired check."""
    state: CheckState
    result: Optional[CheckResult] = None
    error: Optional[str] = None
    last_good: Optional[CheckResult] = None

    @property
    def issues(self):
        """Issues to display: this result, or the last known-good one."""
        shown = self.result if self.result is not None else self.last_good
        return shown.issues if shown is not None else []


@dataclass
class _Session:
    task: Optional[asyncio.Task] = None
    last_started: Optional[float] = None
    last_good: Optional[CheckResult] = None
    history: list[CheckState] = field(default_factory=list)


class IncrementalCheckScheduler:
    """
    Debounced, throttled, cancellable incremental checks.

    Args:
        check: Coroutine function ``check(book_id, text, chapter_id)``
        config: Provides ``debounce_seconds`` and ``throttle_seconds``
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        check: CheckFunction,
        config: ContinuityConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._check = check
        self.config = config or ContinuityConfig()
        self._clock = clock
        self._sessions: dict[SessionKey, _Session] = {}

    def _session(self, book_id: str, session_id: str) -> _Session:
        return self._sessions.setdefault((book_id, session_id), _Session())

    def _supersede(self, session: _Session) -> None:
        if session.task is not None and not session.task.done():
            session.task.cancel()
            logger.debug("Cancelled superseded incremental check")

    def schedule(
        self,
        book_id: str,
        session_id: str,
        text: str,
        chapter_id: Optional[str] = None,
    ) -> asyncio.Task:
        """
        Schedule a check after the debounce delay.

        Cancels the session's previous task first. Returns the new task; it
        resolves to a CheckOutcome, or is cancelled if a newer edit arrives.
        """
        session = self._session(book_id, session_id)
        self._supersede(session)
        task = asyncio.create_task(
            self._debounced(session, book_id, text, chapter_id),
            name=f"check-{book_id}-{session_id}",
        )
        session.task = task
        return task

    async def fire(
        self,
        book_id: str,
        session_id: str,
        text: str,
        chapter_id: Optional[str] = None,
    ) -> CheckOutcome:
        """Run a check now (still throttled), cancelling any pending one."""
        session = self._session(book_id, session_id)
        self._supersede(session)
        task = asyncio.create_task(self._execute(session, book_id, text, chapter_id))
        session.task = task
        return await task

    async def _debounced(
        self,
        session: _Session,
        book_id: str,
        text: str,
        chapter_id: Optional[str],
    ) -> CheckOutcome:
        await asyncio.sleep(self.config.debounce_seconds)
        return await self._execute(session, book_id, text, chapter_id)

    async def _execute(
        self,
        session: _Session,
        book_id: str,
        text: str,
        chapter_id: Optional[str],
    ) -> CheckOutcome:
        now = self._clock()
        if session.last_started is not None and now - session.last_started < self.config.throttle_seconds:
            logger.debug(f"Check for book {book_id} throttled")
            session.history.append(CheckState.SKIPPED)
            return CheckOutcome(CheckState.SKIPPED, last_good=session.last_good)

        session.last_started = now
        try:
            result = await self._check(book_id, text, chapter_id)
        except CheckFailedError as e:
            logger.warning(f"Incremental check for book {book_id} failed: {e.message}")
            session.history.append(CheckState.FAILED)
            return CheckOutcome(CheckState.FAILED, error=e.message, last_good=session.last_good)

        session.last_good = result
        session.history.append(CheckState.COMPLETED)
        return CheckOutcome(CheckState.COMPLETED, result=result, last_good=result)

    def last_result(self, book_id: str, session_id: str) -> Optional[CheckResult]:
        """Last known-good result for a session."""
        session = self._sessions.get((book_id, session_id))
        return session.last_good if session else None

    def history(self, book_id: str, session_id: str) -> list[CheckState]:
        session = self._sessions.get((book_id, session_id))
        return list(session.history) if session else []

    async def shutdown(self) -> None:
        """Cancel every pending check and wait for the tasks to finish."""
        tasks = [s.task for s in self._sessions.values() if s.task is not None and not s.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.wait(tasks)


__all__ = [
    "CheckState",
    "CheckOutcome",
    "IncrementalCheckScheduler",
]
