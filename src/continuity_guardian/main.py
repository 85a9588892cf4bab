"""
Continuity Guardian MCP Server
Exposes the continuity engine (fact store, checks, scans, issues) as FastMCP tools.
"""

import logging
import os
from pathlib import Path
from typing import Annotated, Literal

from dotenv import load_dotenv
from fastmcp import FastMCP
from pydantic import Field

from .chapters import load_chapters
from .config import ContinuityConfig
from .engine import ContinuityEngine
from .exceptions import ContinuityError
from .filters import FactFilter, IssueFilter
from .models import (
    ConsistencyIssue,
    FactCategory,
    Importance,
    IssueStatus,
    IssueType,
    ResolutionMethod,
    ScanOptions,
    ScanPhase,
    Severity,
    StoryFact,
)

logger = logging.getLogger("continuity-guardian")

logging.basicConfig(level=logging.INFO)

if not load_dotenv():
    logger.warning("❌ .env file invalid or not found! Using environment variables and defaults.")

data_path = Path(os.getenv("CONTINUITY_STORAGE_DIR", "")).resolve()
logger.debug(f"📂 Data path: {data_path}")

mcp = FastMCP(
    name="continuity-guardian"
)

_engine: ContinuityEngine | None = None


def get_engine() -> ContinuityEngine:
    """The server's engine, created on first use from the environment."""
    global _engine
    if _engine is None:
        config_path = data_path / "continuity_config.json"
        config = ContinuityConfig.load(config_path) if config_path.exists() else ContinuityConfig.from_env()
        _engine = ContinuityEngine(config, data_dir=data_path)
        logger.debug("✅ Continuity engine initialized")
    return _engine


SEVERITY_ICONS = {
    Severity.CRITICAL: "🔴",
    Severity.WARNING: "🟡",
    Severity.SUGGESTION: "🔵",
}

CategoryName = Literal[
    "character_trait", "character_knowledge", "character_status", "timeline",
    "location", "object", "world_rule", "relationship", "plot_thread",
]
SeverityName = Literal["critical", "warning", "suggestion"]
StatusName = Literal["open", "acknowledged", "resolved", "dismissed"]
IssueTypeName = Literal[
    "contradiction", "timeline_conflict", "character_knowledge", "location_impossible",
    "trait_inconsistency", "unresolved_thread", "forgotten_element", "anachronism", "logic_error",
]


def _format_fact(fact: StoryFact) -> str:
    origin = fact.established_in.chapter_title or fact.established_in.chapter_id
    line = f"- **{fact.subject}** · {fact.attribute.replace('_', ' ')}: {fact.current_value} ({fact.importance.value}, {origin})"
    if fact.history:
        previous = ", ".join(change.previous_value for change in fact.history)
        line += f"; previously: {previous}"
    return line


def _format_issue(issue: ConsistencyIssue, detailed: bool = False) -> str:
    icon = SEVERITY_ICONS[issue.severity]
    lines = [f"{icon} **{issue.title}** `{issue.id}` [{issue.type.value}, {issue.status.value}]"]
    if detailed:
        lines.append(f"  {issue.description}")
        for location in issue.locations:
            where = location.chapter_title or location.chapter_id
            lines.append(f"  > {where}: \"{location.excerpt}\"")
        for suggestion in issue.suggestions:
            lines.append(f"  💡 {suggestion.approach}: {suggestion.description}")
    return "\n".join(lines)


# ----------------------------------------------------------------------
# Tools
# ----------------------------------------------------------------------

# Batch scans
@mcp.tool
async def scan_book(
    book_id: Annotated[str, Field(description="Book identifier (directory under books/)")],
    chapter_ids: Annotated[list[str] | None, Field(description="Only scan these chapters")] = None,
    check_timeline: Annotated[bool, Field(description="Run timeline checks")] = True,
    report_minor_issues: Annotated[bool, Field(description="Keep suggestion-level issues")] = True,
) -> str:
    """Start a full consistency scan of a book's chapter files."""
    chapters = load_chapters(data_path, book_id)
    if not chapters:
        return f"❌ No chapter files found for book '{book_id}'."
    options = ScanOptions(
        chapter_ids=chapter_ids,
        check_timeline=check_timeline,
        report_minor_issues=report_minor_issues,
    )
    try:
        await get_engine().start_scan(book_id, chapters, options)
    except ContinuityError as e:
        return f"❌ {e.message}"
    return f"🔍 Scan started for '{book_id}' ({len(chapters)} chapters). Use `get_scan_status` to follow progress."


@mcp.tool
def get_scan_status(
    book_id: Annotated[str, Field(description="Book identifier")],
) -> str:
    """Get the progress of the current or last scan."""
    status = get_engine().scan_status(book_id)
    lines = [f"**Scan of '{book_id}':** {status.phase.value} ({status.percent}%)"]
    if status.chapters_total:
        lines.append(f"Chapters extracted: {status.chapters_extracted}/{status.chapters_total}")
    if status.phase == ScanPhase.COMPLETE:
        lines.append(
            f"Facts added: {status.facts_added} · Events added: {status.events_added} · "
            f"Issues raised: {status.issues_raised}"
        )
    if status.degraded:
        lines.append(f"⚠️ Degraded: stale chapters {', '.join(status.stale_chapters)}")
    if status.message:
        lines.append(status.message)
    return "\n".join(lines)


@mcp.tool
def cancel_scan(
    book_id: Annotated[str, Field(description="Book identifier")],
) -> str:
    """Cancel a running scan. Nothing from the scan is saved."""
    if get_engine().cancel_scan(book_id):
        return f"🛑 Cancelling scan of '{book_id}'."
    return f"No scan of '{book_id}' is running."


# Facts and events
@mcp.tool
def list_facts(
    book_id: Annotated[str, Field(description="Book identifier")],
    category: Annotated[CategoryName | None, Field(description="Filter by category")] = None,
    importance: Annotated[Literal["minor", "significant", "critical"] | None, Field(description="Filter by importance")] = None,
    subject: Annotated[str | None, Field(description="Filter by entity name (aliases resolve)")] = None,
    chapter_id: Annotated[str | None, Field(description="Filter by establishing chapter")] = None,
) -> str:
    """List the canonical facts of a book."""
    fact_filter = FactFilter(
        category=FactCategory(category) if category else None,
        importance=Importance(importance) if importance else None,
        subject=subject,
        chapter_id=chapter_id,
    )
    facts = get_engine().facts(book_id, fact_filter)
    if not facts:
        return f"No facts recorded for '{book_id}'."
    return f"**Facts for '{book_id}' ({len(facts)}):**\n" + "\n".join(_format_fact(f) for f in facts)


@mcp.tool
def list_events(
    book_id: Annotated[str, Field(description="Book identifier")],
) -> str:
    """List timeline events in story order."""
    events = get_engine().events(book_id)
    if not events:
        return f"No timeline events recorded for '{book_id}'."
    lines = [f"**Timeline for '{book_id}' ({len(events)} events):**"]
    for event in events:
        when = event.story_time.value or "(unspecified time)"
        if event.story_time.day_number is not None:
            when = f"Day {event.story_time.day_number}, {when}"
        who = f" with {', '.join(event.characters)}" if event.characters else ""
        lines.append(f"- {when}: {event.description}{who} ({event.chapter_title or event.chapter_id})")
    return "\n".join(lines)


@mcp.tool
async def add_fact(
    book_id: Annotated[str, Field(description="Book identifier")],
    category: Annotated[CategoryName, Field(description="Fact category")],
    subject: Annotated[str, Field(description="Entity the fact is about")],
    attribute: Annotated[str, Field(description="Attribute, e.g. 'eye color'")],
    value: Annotated[str, Field(description="Value of the attribute")],
    chapter_id: Annotated[str, Field(description="Chapter that establishes the fact")],
    importance: Annotated[Literal["minor", "significant", "critical"], Field(description="How much the fact matters")] = "significant",
    excerpt: Annotated[str, Field(description="Supporting text")] = "",
) -> str:
    """Record a fact by hand. Conflicts with existing facts are raised as issues."""
    result = await get_engine().add_user_fact(
        book_id,
        category=FactCategory(category),
        subject=subject,
        attribute=attribute,
        value=value,
        chapter_id=chapter_id,
        excerpt=excerpt,
        importance=Importance(importance),
    )
    if result.is_conflict:
        return (
            f"⚠️ {result.fact.subject}'s {result.fact.attribute.replace('_', ' ')} is already "
            f"'{result.fact.current_value}'. An issue was raised instead of overwriting it."
        )
    return f"✅ Recorded {result.fact.subject} · {result.fact.attribute.replace('_', ' ')}: {result.fact.current_value}"


@mcp.tool
async def register_alias(
    book_id: Annotated[str, Field(description="Book identifier")],
    alias: Annotated[str, Field(description="Alternative name, e.g. 'Marcus'")],
    canonical: Annotated[str, Field(description="Canonical name, e.g. 'Marcus Webb'")],
) -> str:
    """Declare that two names refer to the same entity and merge their facts."""
    try:
        report = await get_engine().register_alias(book_id, alias, canonical)
    except ValueError as e:
        return f"❌ {str(e)}"
    message = f"🔗 '{alias}' now refers to '{canonical}'. Merged {len(report.merged)} fact(s)."
    if report.conflicts:
        message += f" ⚠️ {len(report.conflicts)} conflicting value(s) raised as issues."
    return message


# Incremental checks
@mcp.tool
async def check_text(
    book_id: Annotated[str, Field(description="Book identifier")],
    text: Annotated[str, Field(description="Text being written; only the end is checked")],
    chapter_id: Annotated[str, Field(description="Chapter the text belongs to; each chapter keeps its own check history")],
    chapter_title: Annotated[str, Field(description="Chapter title")] = "",
) -> str:
    """Check new text against the book's established facts."""
    try:
        result = await get_engine().check(book_id, text, chapter_id=chapter_id, chapter_title=chapter_title)
    except ContinuityError as e:
        return f"❌ {e.message}"
    if not result.issues:
        return f"✅ No continuity issues (checked against {result.facts_checked_count} facts)."
    lines = [f"**{len(result.issues)} issue(s) found (checked against {result.facts_checked_count} facts):**"]
    lines.extend(_format_issue(i, detailed=True) for i in result.issues)
    return "\n".join(lines)


# Issues
@mcp.tool
def list_issues(
    book_id: Annotated[str, Field(description="Book identifier")],
    severity: Annotated[SeverityName | None, Field(description="Filter by severity")] = None,
    status: Annotated[StatusName | None, Field(description="Filter by status")] = None,
    issue_type: Annotated[IssueTypeName | None, Field(description="Filter by issue type")] = None,
    chapter_id: Annotated[str | None, Field(description="Filter by chapter")] = None,
    detailed: Annotated[bool, Field(description="Include descriptions and suggestions")] = False,
) -> str:
    """List consistency issues of a book."""
    issue_filter = IssueFilter(
        severity=Severity(severity) if severity else None,
        status=IssueStatus(status) if status else None,
        type=IssueType(issue_type) if issue_type else None,
        chapter_id=chapter_id,
    )
    issues = get_engine().issues(book_id, issue_filter)
    if not issues:
        return f"No issues found for '{book_id}'."
    return f"**Issues for '{book_id}' ({len(issues)}):**\n" + "\n".join(
        _format_issue(i, detailed=detailed) for i in issues
    )


@mcp.tool
async def resolve_issue(
    book_id: Annotated[str, Field(description="Book identifier")],
    issue_id: Annotated[str, Field(description="Issue identifier")],
    method: Annotated[Literal["fixed", "intentional", "wont_fix"], Field(description="""
        How the issue was resolved. 'intentional' makes the new value canonical for future checks.
        """)],
    notes: Annotated[str, Field(description="Resolution notes")] = "",
) -> str:
    """Resolve a consistency issue."""
    try:
        issue = await get_engine().resolve_issue(book_id, issue_id, ResolutionMethod(method), notes)
    except ContinuityError as e:
        return f"❌ {e.message}"
    message = f"✅ Resolved `{issue.id}` as {method}."
    if method == "intentional" and issue.conflicting_value:
        message += f" '{issue.conflicting_value}' is now canonical."
    return message


@mcp.tool
def acknowledge_issue(
    book_id: Annotated[str, Field(description="Book identifier")],
    issue_id: Annotated[str, Field(description="Issue identifier")],
    notes: Annotated[str, Field(description="Notes")] = "",
) -> str:
    """Mark an issue as seen without resolving it."""
    try:
        issue = get_engine().acknowledge_issue(book_id, issue_id, notes)
    except ContinuityError as e:
        return f"❌ {e.message}"
    return f"👀 Acknowledged `{issue.id}`."


@mcp.tool
def dismiss_issue(
    book_id: Annotated[str, Field(description="Book identifier")],
    issue_id: Annotated[str, Field(description="Issue identifier")],
    notes: Annotated[str, Field(description="Why the issue is not a problem")] = "",
) -> str:
    """Dismiss an issue. It will not be raised again by later scans."""
    try:
        issue = get_engine().dismiss_issue(book_id, issue_id, notes)
    except ContinuityError as e:
        return f"❌ {e.message}"
    return f"🗑️ Dismissed `{issue.id}`."


@mcp.tool
def reopen_issue(
    book_id: Annotated[str, Field(description="Book identifier")],
    issue_id: Annotated[str, Field(description="Issue identifier")],
    reason: Annotated[str, Field(description="Why the issue is reopened")] = "",
) -> str:
    """Reopen a resolved or dismissed issue."""
    try:
        issue = get_engine().reopen_issue(book_id, issue_id, reason)
    except ContinuityError as e:
        return f"❌ {e.message}"
    return f"↩️ Reopened `{issue.id}`."


# Analysis
@mcp.tool
def get_analysis(
    book_id: Annotated[str, Field(description="Book identifier")],
) -> str:
    """Get the continuity score and a summary of open problems."""
    analysis = get_engine().analysis(book_id)
    stats = analysis.stats
    breakdown = analysis.score_breakdown
    lines = [
        f"# Continuity of '{book_id}': {analysis.continuity_score}/100",
        "",
        f"**Facts:** {stats.total_facts} · **Events:** {stats.total_events} · "
        f"**Characters:** {stats.total_characters} · **Chapters:** {analysis.chapters_analyzed}",
        f"**Open issues:** {SEVERITY_ICONS[Severity.CRITICAL]} {stats.critical_issues} · "
        f"{SEVERITY_ICONS[Severity.WARNING]} {stats.warning_issues} · "
        f"{SEVERITY_ICONS[Severity.SUGGESTION]} {stats.suggestion_issues}",
        "",
        "## Breakdown",
        f"- Characters: {breakdown.character_consistency}",
        f"- Timeline: {breakdown.timeline_accuracy}",
        f"- Plot: {breakdown.plot_coherence}",
        f"- World: {breakdown.world_consistency}",
    ]
    if analysis.top_issues:
        lines.extend(["", "## Top issues"])
        lines.extend(_format_issue(i) for i in analysis.top_issues)
    if analysis.unresolved_threads:
        lines.extend(["", "## Unresolved threads"])
        for thread in analysis.unresolved_threads:
            lines.append(
                f"- {thread.thread}: introduced in {thread.introduced_in}, last seen in "
                f"{thread.last_mentioned_in} ({thread.chapters_since} chapters ago)"
            )
    return "\n".join(lines)


def main() -> None:
    """Main entry point for the Continuity Guardian MCP Server."""
    mcp.run()

if __name__ == "__main__":
    main()
