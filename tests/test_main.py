"""
Unit tests for the MCP tools.

Tests cover:
- Starting a scan from chapter files and reading its status
- Checking text and resolving the issue it raises
- Listing facts, events and issues with filters
- Issue lifecycle tools and error messages
- The analysis report
"""

import pytest

import continuity_guardian.main as m
from continuity_guardian.chapters import chapters_dir
from continuity_guardian.engine import ContinuityEngine

CHAPTER_ONE = "# The Arrival\n\nCH1. Marcus's blue eyes scanned the room."

SCRIPT = {
    "CH1": [
        {
            "kind": "fact",
            "category": "character_trait",
            "subject": "Marcus",
            "attribute": "eye color",
            "value": "blue",
            "excerpt": "Marcus's blue eyes scanned the room.",
        },
        {
            "kind": "event",
            "description": "Marcus arrives at the inn",
            "story_time": {"value": "evening", "day_number": 1},
            "characters": ["Marcus"],
            "excerpt": "Marcus's blue eyes scanned the room.",
        },
    ],
    "narrowed": [
        {
            "kind": "fact",
            "category": "character_trait",
            "subject": "Marcus",
            "attribute": "eye color",
            "value": "green",
            "excerpt": "Marcus's green eyes narrowed.",
        },
    ],
}


@pytest.fixture
def engine(config, capability, tmp_path, monkeypatch) -> ContinuityEngine:
    """Install an engine with a scripted capability into the server module."""
    capability.script.update(SCRIPT)
    engine = ContinuityEngine(config, capability=capability, data_dir=tmp_path)
    monkeypatch.setattr(m, "_engine", engine)
    monkeypatch.setattr(m, "data_path", tmp_path)
    directory = chapters_dir(tmp_path, "book")
    directory.mkdir(parents=True)
    (directory / "01-arrival.md").write_text(CHAPTER_ONE, encoding="utf-8")
    return engine


async def scanned(engine: ContinuityEngine) -> ContinuityEngine:
    result = await m.scan_book.fn(book_id="book")
    assert "Scan started" in result
    await engine.book("book").scan_handle.wait()
    return engine


async def raise_issue() -> str:
    await m.check_text.fn(book_id="book", text="Marcus's green eyes narrowed.", chapter_id="ch2")
    return m.get_engine().issues("book")[0].id


class TestScanTools:
    """Test scan tools."""

    @pytest.mark.anyio
    async def test_scan_and_status(self, engine):
        await scanned(engine)

        status = m.get_scan_status.fn(book_id="book")

        assert "complete" in status
        assert "Chapters extracted: 1/1" in status
        assert "Facts added: 1" in status

    @pytest.mark.anyio
    async def test_scan_without_chapters(self, engine):
        result = await m.scan_book.fn(book_id="unknown")
        assert result.startswith("❌")

    @pytest.mark.anyio
    async def test_cancel_when_idle(self, engine):
        assert "No scan" in m.cancel_scan.fn(book_id="book")


class TestFactTools:
    """Test fact and event tools."""

    @pytest.mark.anyio
    async def test_list_facts_and_events(self, engine):
        await scanned(engine)

        facts = m.list_facts.fn(book_id="book")
        events = m.list_events.fn(book_id="book")

        assert "**Marcus** · eye color: blue" in facts
        assert "The Arrival" in facts
        assert "Day 1, evening: Marcus arrives at the inn with Marcus" in events

    @pytest.mark.anyio
    async def test_list_facts_filtered(self, engine):
        await scanned(engine)
        assert m.list_facts.fn(book_id="book", category="location").startswith("No facts")
        assert "Marcus" in m.list_facts.fn(book_id="book", subject="marcus")

    @pytest.mark.anyio
    async def test_add_fact_and_conflict(self, engine):
        added = await m.add_fact.fn(
            book_id="book", category="object", subject="Ledger", attribute="location",
            value="library", chapter_id="ch1",
        )
        conflict = await m.add_fact.fn(
            book_id="book", category="object", subject="Ledger", attribute="location",
            value="cellar", chapter_id="ch2",
        )

        assert added.startswith("✅")
        assert conflict.startswith("⚠️")
        assert "'library'" in conflict
        assert len(engine.issues("book")) == 1

    @pytest.mark.anyio
    async def test_register_alias(self, engine):
        await m.add_fact.fn(
            book_id="book", category="character_trait", subject="Marcus Webb",
            attribute="height", value="tall", chapter_id="ch1",
        )
        result = await m.register_alias.fn(book_id="book", alias="Marcus", canonical="Marcus Webb")
        assert "'Marcus' now refers to 'Marcus Webb'" in result


class TestCheckAndIssues:
    """Test checks and the issue lifecycle tools."""

    @pytest.mark.anyio
    async def test_check_text_reports_issue(self, engine):
        await scanned(engine)

        result = await m.check_text.fn(book_id="book", text="Marcus's green eyes narrowed.", chapter_id="ch2")

        assert "1 issue(s) found (checked against 1 facts)" in result
        assert "Marcus's green eyes narrowed." in result
        assert "blue" in result

    @pytest.mark.anyio
    async def test_clean_check(self, engine):
        result = await m.check_text.fn(book_id="book", text="Nothing to see.", chapter_id="ch3")
        assert result.startswith("✅ No continuity issues")

    @pytest.mark.anyio
    async def test_resolve_intentional(self, engine):
        await scanned(engine)
        issue_id = await raise_issue()

        result = await m.resolve_issue.fn(book_id="book", issue_id=issue_id, method="intentional")

        assert "'green' is now canonical" in result
        assert "previously: blue" in m.list_facts.fn(book_id="book")

    @pytest.mark.anyio
    async def test_lifecycle_tools(self, engine):
        await scanned(engine)
        issue_id = await raise_issue()

        assert m.acknowledge_issue.fn(book_id="book", issue_id=issue_id).startswith("👀")
        assert "acknowledged" in m.list_issues.fn(book_id="book", status="acknowledged")
        assert m.dismiss_issue.fn(book_id="book", issue_id=issue_id, notes="dream").startswith("🗑️")
        assert m.reopen_issue.fn(book_id="book", issue_id=issue_id).startswith("↩️")
        assert m.list_issues.fn(book_id="book", severity="critical").startswith("No issues")

    @pytest.mark.anyio
    async def test_invalid_transition_message(self, engine):
        await scanned(engine)
        issue_id = await raise_issue()
        await m.resolve_issue.fn(book_id="book", issue_id=issue_id, method="fixed")

        assert m.dismiss_issue.fn(book_id="book", issue_id=issue_id).startswith("❌")

    @pytest.mark.anyio
    async def test_unknown_issue(self, engine):
        result = await m.resolve_issue.fn(book_id="book", issue_id="issue_nope", method="fixed")
        assert result.startswith("❌")

    @pytest.mark.anyio
    async def test_list_issues_detailed(self, engine):
        await scanned(engine)
        await raise_issue()

        result = m.list_issues.fn(book_id="book", detailed=True)

        assert "🟡" in result
        assert "💡" in result


class TestAnalysis:
    """Test the analysis report."""

    @pytest.mark.anyio
    async def test_analysis_report(self, engine):
        await scanned(engine)
        await raise_issue()

        report = m.get_analysis.fn(book_id="book")

        assert report.startswith("# Continuity of 'book': 97.0/100")
        assert "## Top issues" in report
