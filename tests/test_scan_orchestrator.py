"""
Tests for the Scan Orchestrator.

Tests cover:
- Full scans through every phase
- Degraded mode with stale chapters after retries
- Error when every chapter fails
- Cancellation without partial commits
- One scan per book at a time
- Scan options
"""

import asyncio

import pytest

from continuity_guardian.book import BookState
from continuity_guardian.checking import ConsistencyChecker, RuleBasedStrategy
from continuity_guardian.config import ContinuityConfig
from continuity_guardian.exceptions import ExtractionError, ScanInProgressError
from continuity_guardian.extraction import FactExtractor
from continuity_guardian.models import Chapter, IssueType, ScanOptions, ScanPhase
from continuity_guardian.scan import ScanOrchestrator


def fact_record(subject: str, attribute: str, value: str, excerpt: str, category: str = "character_trait") -> dict:
    return {
        "kind": "fact",
        "category": category,
        "subject": subject,
        "attribute": attribute,
        "value": value,
        "excerpt": excerpt,
    }


CHAPTERS = [
    Chapter(id="ch1", title="Chapter 1", index=0, content="CH1. Marcus's blue eyes scanned the room."),
    Chapter(id="ch2", title="Chapter 2", index=1, content="CH2. Elena kept the ledger in the library."),
    Chapter(id="ch3", title="Chapter 3", index=2, content="CH3. The storm broke over the harbor."),
    Chapter(id="ch4", title="Chapter 4", index=3, content="CH4. Marcus's green eyes narrowed."),
]

SCRIPT = {
    "CH1": [fact_record("Marcus", "eye color", "blue", "Marcus's blue eyes scanned the room.")],
    "CH2": [fact_record("Ledger", "location", "library", "kept the ledger in the library", "object")],
    "CH3": [fact_record("Harbor", "weather", "stormy", "The storm broke over the harbor.", "location")],
    "CH4": [fact_record("Marcus", "eye color", "green", "Marcus's green eyes narrowed.")],
}


@pytest.fixture
def scan_config() -> ContinuityConfig:
    return ContinuityConfig(llm_provider="mock", retry_delays=[0.0, 0.0])


@pytest.fixture
def state(scan_config) -> BookState:
    return BookState.open("book", scan_config)


def orchestrator(capability, config: ContinuityConfig) -> ScanOrchestrator:
    return ScanOrchestrator(
        FactExtractor(capability, config),
        ConsistencyChecker(RuleBasedStrategy(), config),
        config,
    )


class TestFullScan:
    """Test a scan that runs to completion."""

    @pytest.mark.anyio
    async def test_complete_scan(self, capability, scan_config, state):
        capability.script.update(SCRIPT)
        commits = []

        handle = orchestrator(capability, scan_config).start(state, CHAPTERS, on_commit=commits.append)
        status = await handle.wait()

        assert status.phase == ScanPhase.COMPLETE
        assert status.percent == 100
        assert not status.degraded
        assert status.chapters_extracted == 4
        assert status.facts_added == 3
        assert status.issues_raised == 1
        assert commits == [state]
        assert state.store.get_active_value("Marcus", "eye_color").current_value == "blue"
        [issue] = state.lifecycle.query()
        assert issue.type == IssueType.TRAIT_INCONSISTENCY
        assert issue.primary_chapter_id == "ch4"

    @pytest.mark.anyio
    async def test_chapters_merged_in_manuscript_order(self, capability, scan_config, state):
        """Chapter order decides which value is established, not completion order."""
        capability.script.update(SCRIPT)
        shuffled = [CHAPTERS[3], CHAPTERS[1], CHAPTERS[0], CHAPTERS[2]]

        await orchestrator(capability, scan_config).start(state, shuffled).wait()

        fact = state.store.get_active_value("Marcus", "eye_color")
        assert fact.current_value == "blue"
        assert fact.established_in.chapter_id == "ch1"

    @pytest.mark.anyio
    async def test_chapter_selection(self, capability, scan_config, state):
        capability.script.update(SCRIPT)
        options = ScanOptions(chapter_ids=["ch1", "ch2"])

        status = await orchestrator(capability, scan_config).start(state, CHAPTERS, options).wait()

        assert status.chapters_total == 2
        assert capability.call_count == 2
        assert state.store.get_active_value("Harbor", "weather") is None

    @pytest.mark.anyio
    async def test_empty_book_completes(self, capability, scan_config, state):
        status = await orchestrator(capability, scan_config).start(state, []).wait()
        assert status.phase == ScanPhase.COMPLETE


class TestDegradedMode:
    """Test stale chapters."""

    @pytest.mark.anyio
    async def test_failing_chapter_marked_stale(self, capability, scan_config, state):
        capability.script.update(SCRIPT)
        capability.script["CH3"] = ExtractionError("service unavailable")

        status = await orchestrator(capability, scan_config).start(state, CHAPTERS).wait()

        assert status.phase == ScanPhase.COMPLETE
        assert status.degraded
        assert status.stale_chapters == ["ch3"]
        assert capability.calls_for("CH3") == 2
        assert state.store.get_active_value("Marcus", "eye_color") is not None
        assert state.store.get_active_value("Ledger", "location") is not None
        assert state.store.get_active_value("Harbor", "weather") is None

    @pytest.mark.anyio
    async def test_chapter_failing_twice_is_stale_with_defaults(self, state):
        """Two failed calls exhaust a chapter even if a third would succeed."""
        class FailsTwice:
            def __init__(self):
                self.failures = {"CH3": 2}
                self.calls: list[str] = []

            async def extract(self, text, fact_context):
                marker = text.split(".")[0]
                self.calls.append(marker)
                if self.failures.get(marker, 0) > 0:
                    self.failures[marker] -= 1
                    raise ExtractionError("simulated outage")
                return SCRIPT[marker]

        config = ContinuityConfig(llm_provider="mock", retry_delays=[0.0])
        capability = FailsTwice()

        status = await orchestrator(capability, config).start(state, CHAPTERS).wait()

        assert status.phase == ScanPhase.COMPLETE
        assert status.degraded
        assert status.stale_chapters == ["ch3"]
        assert capability.calls.count("CH3") == 2
        assert state.store.get_active_value("Marcus", "eye_color") is not None
        assert state.store.get_active_value("Ledger", "location") is not None
        assert state.store.get_active_value("Harbor", "weather") is None

    @pytest.mark.anyio
    async def test_retry_succeeds(self, scan_config, state):
        class FlakyCapability:
            def __init__(self):
                self.calls = 0

            async def extract(self, text, fact_context):
                self.calls += 1
                if self.calls == 1:
                    raise ExtractionError("transient")
                return SCRIPT["CH1"]

        capability = FlakyCapability()
        status = await orchestrator(capability, scan_config).start(state, CHAPTERS[:1]).wait()

        assert not status.degraded
        assert capability.calls == 2
        assert state.store.fact_count == 1

    @pytest.mark.anyio
    async def test_all_chapters_failing_is_error(self, capability, scan_config, state):
        for marker in SCRIPT:
            capability.script[marker] = ExtractionError("down")

        status = await orchestrator(capability, scan_config).start(state, CHAPTERS).wait()

        assert status.phase == ScanPhase.ERROR
        assert state.store.fact_count == 0


class TestCancellation:
    """Test cancellation and exclusivity."""

    @pytest.mark.anyio
    async def test_cancel_commits_nothing(self, capability, scan_config, state):
        capability.script.update(SCRIPT)
        capability.delay = 5.0

        handle = orchestrator(capability, scan_config).start(state, CHAPTERS)
        await asyncio.sleep(0.05)
        assert handle.cancel()
        status = await handle.wait()

        assert status.phase == ScanPhase.CANCELLED
        assert state.store.fact_count == 0
        assert len(state.lifecycle) == 0
        assert not handle.cancel()

    @pytest.mark.anyio
    async def test_cancel_before_start(self, capability, scan_config, state):
        handle = orchestrator(capability, scan_config).start(state, CHAPTERS)
        handle.cancel()
        status = await handle.wait()
        assert status.phase == ScanPhase.CANCELLED

    @pytest.mark.anyio
    async def test_second_scan_rejected(self, capability, scan_config, state):
        capability.delay = 5.0
        scanner = orchestrator(capability, scan_config)
        handle = scanner.start(state, CHAPTERS)

        with pytest.raises(ScanInProgressError):
            scanner.start(state, CHAPTERS)

        handle.cancel()
        await handle.wait()
        capability.delay = 0.0
        status = await scanner.start(state, CHAPTERS).wait()
        assert status.phase == ScanPhase.COMPLETE


class TestTimelineOption:
    """Test the timeline toggle."""

    @pytest.mark.anyio
    async def test_timeline_checks_toggle(self, capability, scan_config):
        capability.script["CH1"] = [{
            "kind": "event",
            "description": "Marcus dies",
            "story_time": "night",
            "characters": ["Marcus"],
            "excerpt": "CH1.",
        }]
        capability.script["CH2"] = [{
            "kind": "event",
            "description": "Marcus reads the ledger",
            "story_time": "morning",
            "characters": ["Marcus"],
            "excerpt": "CH2.",
        }]
        chapters = CHAPTERS[:2]

        without = BookState.open("a", scan_config)
        await orchestrator(capability, scan_config).start(without, chapters, ScanOptions(check_timeline=False)).wait()
        assert len(without.lifecycle) == 0

        with_timeline = BookState.open("b", scan_config)
        status = await orchestrator(capability, scan_config).start(with_timeline, chapters).wait()
        assert status.events_added == 2
        [issue] = with_timeline.lifecycle.query()
        assert issue.type == IssueType.TIMELINE_CONFLICT
