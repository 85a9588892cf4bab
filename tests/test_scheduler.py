"""
Tests for the incremental check scheduler.

Tests cover:
- Throttling (two checks one second apart run once)
- Debounce with cancellation of superseded edits
- Cancelling a check that is already running
- Failed checks keeping the last known-good result
- Shutdown
"""

import asyncio

import pytest

from continuity_guardian.config import ContinuityConfig
from continuity_guardian.exceptions import CheckFailedError
from continuity_guardian.models import CheckResult, ConsistencyIssue, IssueType, Severity
from continuity_guardian.scheduler import CheckState, IncrementalCheckScheduler


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class RecordingCheck:
    """Check function that records calls and can be told to fail or stall."""

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: list[str] = []
        self.fail_next = False

    @property
    def call_count(self) -> int:
        return len(self.calls)

    async def __call__(self, book_id: str, text: str, chapter_id):
        self.calls.append(text)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_next:
            self.fail_next = False
            raise CheckFailedError("Check failed: extraction timed out")
        issue = ConsistencyIssue(
            book_id=book_id,
            type=IssueType.CONTRADICTION,
            severity=Severity.WARNING,
            title=text,
            description=text,
            dedup_key=text,
        )
        return CheckResult(issues=[issue], facts_checked_count=1, text_hash=text)


class TestThrottle:
    """Test per-session throttling."""

    @pytest.mark.anyio
    async def test_two_checks_one_second_apart_run_once(self):
        check = RecordingCheck()
        clock = FakeClock()
        scheduler = IncrementalCheckScheduler(check, ContinuityConfig(throttle_seconds=3.0), clock=clock)

        first = await scheduler.fire("book", "session", "edit one")
        clock.now = 1.0
        second = await scheduler.fire("book", "session", "edit two")

        assert first.state == CheckState.COMPLETED
        assert second.state == CheckState.SKIPPED
        assert check.call_count == 1
        assert second.issues == first.result.issues

    @pytest.mark.anyio
    async def test_runs_again_after_throttle_window(self):
        check = RecordingCheck()
        clock = FakeClock()
        scheduler = IncrementalCheckScheduler(check, ContinuityConfig(throttle_seconds=3.0), clock=clock)

        await scheduler.fire("book", "session", "edit one")
        clock.now = 3.5
        outcome = await scheduler.fire("book", "session", "edit two")

        assert outcome.state == CheckState.COMPLETED
        assert check.call_count == 2

    @pytest.mark.anyio
    async def test_sessions_throttled_independently(self):
        check = RecordingCheck()
        scheduler = IncrementalCheckScheduler(check, ContinuityConfig(throttle_seconds=3.0), clock=FakeClock())

        await scheduler.fire("book", "one", "a")
        outcome = await scheduler.fire("book", "two", "b")

        assert outcome.state == CheckState.COMPLETED
        assert check.call_count == 2


class TestDebounce:
    """Test debounced scheduling."""

    @pytest.mark.anyio
    async def test_new_edit_cancels_pending_check(self):
        check = RecordingCheck()
        config = ContinuityConfig(debounce_seconds=0.05, throttle_seconds=0.0)
        scheduler = IncrementalCheckScheduler(check, config)

        first = scheduler.schedule("book", "session", "draft one")
        second = scheduler.schedule("book", "session", "draft two")
        outcome = await second

        await asyncio.sleep(0)
        assert first.cancelled()
        assert outcome.state == CheckState.COMPLETED
        assert check.calls == ["draft two"]

    @pytest.mark.anyio
    async def test_new_edit_cancels_running_check(self):
        check = RecordingCheck(delay=0.5)
        config = ContinuityConfig(debounce_seconds=0.0, throttle_seconds=0.0)
        scheduler = IncrementalCheckScheduler(check, config)

        first = scheduler.schedule("book", "session", "draft one")
        await asyncio.sleep(0.05)
        assert check.calls == ["draft one"]

        check.delay = 0.0
        outcome = await scheduler.schedule("book", "session", "draft two")

        assert first.cancelled()
        assert outcome.state == CheckState.COMPLETED
        assert scheduler.last_result("book", "session").text_hash == "draft two"


class TestFailures:
    """Test failed checks."""

    @pytest.mark.anyio
    async def test_failure_keeps_last_good(self):
        check = RecordingCheck()
        clock = FakeClock()
        scheduler = IncrementalCheckScheduler(check, ContinuityConfig(throttle_seconds=3.0), clock=clock)

        good = await scheduler.fire("book", "session", "good text")
        clock.now = 10.0
        check.fail_next = True
        failed = await scheduler.fire("book", "session", "bad text")

        assert failed.state == CheckState.FAILED
        assert "timed out" in failed.error
        assert failed.last_good is good.result
        assert failed.issues == good.result.issues
        assert scheduler.last_result("book", "session") is good.result
        assert scheduler.history("book", "session") == [CheckState.COMPLETED, CheckState.FAILED]

    @pytest.mark.anyio
    async def test_unknown_session(self):
        scheduler = IncrementalCheckScheduler(RecordingCheck())
        assert scheduler.last_result("book", "nobody") is None
        assert scheduler.history("book", "nobody") == []


class TestShutdown:
    """Test shutdown."""

    @pytest.mark.anyio
    async def test_shutdown_cancels_pending(self):
        check = RecordingCheck()
        scheduler = IncrementalCheckScheduler(check, ContinuityConfig(debounce_seconds=5.0))

        task = scheduler.schedule("book", "session", "draft")
        await scheduler.shutdown()

        assert task.cancelled()
        assert check.call_count == 0
