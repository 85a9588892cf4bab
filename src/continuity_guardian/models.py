"""
Core data models for the Continuity Guardian engine.

Key components:
- StoryFact: a single attribute value about an entity, with provenance and history
- TimelineEvent: something that happened at a story time, with participants
- ConsistencyIssue: a detected contradiction or risk, with lifecycle state
- ContinuityAnalysis: derived health snapshot for a book
- ScanStatus: pollable progress of a batch scan
"""

import hashlib
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field
from shortuuid import random as shortuuid_random


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Vocabularies
# ============================================================================

class FactCategory(str, Enum):
    """What kind of story element a fact describes."""
    CHARACTER_TRAIT = "character_trait"
    CHARACTER_KNOWLEDGE = "character_knowledge"
    CHARACTER_STATUS = "character_status"
    TIMELINE = "timeline"
    LOCATION = "location"
    OBJECT = "object"
    WORLD_RULE = "world_rule"
    RELATIONSHIP = "relationship"
    PLOT_THREAD = "plot_thread"


CHARACTER_CATEGORIES = frozenset({
    FactCategory.CHARACTER_TRAIT,
    FactCategory.CHARACTER_KNOWLEDGE,
    FactCategory.CHARACTER_STATUS,
})


class Importance(str, Enum):
    """How much a fact matters to the story."""
    MINOR = "minor"
    SIGNIFICANT = "significant"
    CRITICAL = "critical"


class Confidence(str, Enum):
    """How directly the text states a fact."""
    EXPLICIT = "explicit"
    IMPLIED = "implied"
    INFERRED = "inferred"


class FactSource(str, Enum):
    """Where a fact came from."""
    EXTRACTED = "extracted"
    USER = "user"


class ChangeType(str, Enum):
    """Why a fact's value changed."""
    UPDATE = "update"
    CONTRADICTION = "contradiction"
    RESOLUTION = "resolution"


class Severity(str, Enum):
    """Issue severity, driving display and score weighting."""
    CRITICAL = "critical"
    WARNING = "warning"
    SUGGESTION = "suggestion"

    @property
    def rank(self) -> int:
        """Numeric rank, higher is more severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    Severity.CRITICAL: 3,
    Severity.WARNING: 2,
    Severity.SUGGESTION: 1,
}


class IssueType(str, Enum):
    """Classification of a consistency issue."""
    CONTRADICTION = "contradiction"
    TIMELINE_CONFLICT = "timeline_conflict"
    CHARACTER_KNOWLEDGE = "character_knowledge"
    LOCATION_IMPOSSIBLE = "location_impossible"
    TRAIT_INCONSISTENCY = "trait_inconsistency"
    UNRESOLVED_THREAD = "unresolved_thread"
    FORGOTTEN_ELEMENT = "forgotten_element"
    ANACHRONISM = "anachronism"
    LOGIC_ERROR = "logic_error"


class IssueStatus(str, Enum):
    """Lifecycle state of an issue."""
    OPEN = "open"
    ACKNOWLEDGED = "acknowledged"
    RESOLVED = "resolved"
    DISMISSED = "dismissed"


class ResolutionMethod(str, Enum):
    """How the author closed an issue."""
    FIXED = "fixed"
    INTENTIONAL = "intentional"
    WONT_FIX = "wont_fix"


class DetectedBy(str, Enum):
    """Who raised an issue."""
    AUTO = "auto"
    USER = "user"


class StoryTimeKind(str, Enum):
    """Whether a story time is a calendar point or relative to another event."""
    ABSOLUTE = "absolute"
    RELATIVE = "relative"


# ============================================================================
# Normalization helpers
# ============================================================================

_WS_RE = re.compile(r"\s+")
_PUNCT_RE = re.compile(r"[^\w\s]")
_ARTICLES = ("the ", "a ", "an ")


def normalize_subject(subject: str) -> str:
    """Normalize an entity name for key lookup ("Marcus's " -> "marcus")."""
    text = _WS_RE.sub(" ", subject).strip()
    text = re.sub(r"['’]s$", "", text)
    return text.casefold()


def normalize_attribute(attribute: str) -> str:
    """Normalize an attribute name ("Eye Color" -> "eye_color")."""
    text = _WS_RE.sub(" ", attribute).strip().casefold()
    return re.sub(r"[\s\-]+", "_", text)


def normalize_value(value: str) -> str:
    """Normalize a fact value for comparison."""
    text = _PUNCT_RE.sub(" ", value.casefold())
    text = _WS_RE.sub(" ", text).strip()
    for article in _ARTICLES:
        if text.startswith(article):
            text = text[len(article):]
            break
    return text


FactKey = tuple[str, str]


def make_dedup_key(issue_type: "IssueType | str", subject: str, attribute: str, chapter_id: str) -> str:
    """Hash of (issue type, normalized subject/attribute, chapter id)."""
    type_value = issue_type.value if isinstance(issue_type, IssueType) else str(issue_type)
    raw = "|".join([
        type_value,
        normalize_subject(subject),
        normalize_attribute(attribute),
        chapter_id,
    ])
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


# ============================================================================
# Facts
# ============================================================================

class Provenance(BaseModel):
    """Where in the manuscript a fact or value was established."""
    chapter_id: str = Field(description="Chapter identifier")
    chapter_title: str = Field(default="", description="Chapter title for display")
    chapter_index: Optional[int] = Field(
        default=None,
        description="Position of the chapter in the book, used for ordering"
    )
    excerpt: str = Field(default="", description="Text that establishes the value")
    position: int = Field(default=0, ge=0, description="Character offset in the chapter")

    @property
    def sequence_key(self) -> tuple[int, int]:
        """Manuscript order; chapters without an index sort last."""
        index = self.chapter_index if self.chapter_index is not None else 1_000_000
        return (index, self.position)


class FactChange(BaseModel):
    """A prior value of a fact, kept when the fact is superseded."""
    previous_value: str
    new_value: str
    changed_in: Provenance = Field(description="Where the new value was established")
    previous_established_in: Optional[Provenance] = Field(
        default=None,
        description="Where the previous value had been established"
    )
    previous_mentions: list[Provenance] = Field(default_factory=list)
    change_type: ChangeType = ChangeType.UPDATE
    notes: Optional[str] = None
    timestamp: datetime = Field(default_factory=_utcnow)


class StoryFact(BaseModel):
    """A canonical fact about a story entity."""
    id: str = Field(default_factory=lambda: f"fact_{shortuuid_random(length=10)}")
    book_id: str
    category: FactCategory
    subject: str = Field(description="Canonical entity name")
    attribute: str = Field(description="Normalized attribute name")
    current_value: str
    importance: Importance = Importance.SIGNIFICANT
    confidence: Confidence = Confidence.EXPLICIT
    source: FactSource = FactSource.EXTRACTED
    established_in: Provenance
    history: list[FactChange] = Field(default_factory=list)
    mentions: list[Provenance] = Field(
        default_factory=list,
        description="Redundant sightings of the current value, folded by compaction"
    )
    merged_into: Optional[str] = Field(
        default=None,
        description="Id of the fact this one was folded into by compaction"
    )
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def key(self) -> FactKey:
        return (normalize_subject(self.subject), normalize_attribute(self.attribute))

    @property
    def is_active(self) -> bool:
        return self.merged_into is None

    def value_timeline(self) -> list[tuple[Provenance, str]]:
        """Every value this fact has held, with where it was established."""
        entries = [
            (change.previous_established_in, change.previous_value)
            for change in self.history
            if change.previous_established_in is not None
        ]
        entries.append((self.established_in, self.current_value))
        return entries

    def accepts_value(self, value: str, at: Provenance) -> bool:
        """
        Whether ``value`` is consistent with this fact at manuscript point ``at``.

        The current value is always accepted. A prior value is accepted in the
        chapter that established it, and in later chapters up to the next
        change, so rescanning early chapters after a deliberate change does
        not raise the old value as a contradiction.
        """
        wanted = normalize_value(value)
        if normalize_value(self.current_value) == wanted:
            return True

        timeline = self.value_timeline()
        for established, held in timeline:
            if established.chapter_id == at.chapter_id and normalize_value(held) == wanted:
                return True

        if at.chapter_index is None:
            return False
        indexed = sorted(
            (entry for entry in timeline if entry[0].chapter_index is not None),
            key=lambda entry: entry[0].sequence_key,
        )
        in_effect = None
        for established, held in indexed:
            if established.chapter_index <= at.chapter_index:
                in_effect = held
        return in_effect is not None and normalize_value(in_effect) == wanted


class CandidateFact(BaseModel):
    """A fact proposed by extraction, not yet reconciled with the store."""
    category: FactCategory
    subject: str
    attribute: str
    value: str
    importance: Importance = Importance.SIGNIFICANT
    confidence: Confidence = Confidence.EXPLICIT
    source: FactSource = FactSource.EXTRACTED
    established_in: Provenance


# ============================================================================
# Timeline
# ============================================================================

class StoryTime(BaseModel):
    """When something happens in story time."""
    value: str = Field(description="Freeform description, e.g. 'March 15, 3pm'")
    kind: StoryTimeKind = StoryTimeKind.ABSOLUTE
    day_number: Optional[int] = Field(
        default=None,
        description="Normalized day number for ordering, when known"
    )


class TimelineEvent(BaseModel):
    """An event on the book's story timeline."""
    id: str = Field(default_factory=lambda: f"evt_{shortuuid_random(length=10)}")
    book_id: str = ""
    description: str
    story_time: StoryTime
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    deaths: list[str] = Field(
        default_factory=list,
        description="Characters who die in this event"
    )
    chapter_id: str
    chapter_title: str = ""
    chapter_index: Optional[int] = None
    position: int = Field(default=0, ge=0)
    importance: Importance = Importance.SIGNIFICANT
    excerpt: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def sequence_key(self) -> tuple[int, int]:
        """Manuscript order; chapters without an index sort last."""
        index = self.chapter_index if self.chapter_index is not None else 1_000_000
        return (index, self.position)

    @property
    def identity(self) -> tuple[str, str]:
        """Chapter plus normalized description, used to skip re-extracted events."""
        return (self.chapter_id, normalize_value(self.description))


# ============================================================================
# Issues
# ============================================================================

class IssueLocation(BaseModel):
    """A place in the manuscript an issue refers to."""
    chapter_id: str
    chapter_title: str = ""
    excerpt: str = ""
    position: int = 0


class IssueSuggestion(BaseModel):
    """A candidate fix for an issue."""
    approach: str
    description: str
    affected_chapters: list[str] = Field(default_factory=list)


class Resolution(BaseModel):
    """How and when an issue was closed."""
    method: ResolutionMethod
    notes: str = ""
    resolved_at: datetime = Field(default_factory=_utcnow)


class StatusChange(BaseModel):
    """One entry of an issue's status audit trail."""
    from_status: IssueStatus
    to_status: IssueStatus
    reason: str = ""
    at: datetime = Field(default_factory=_utcnow)


class ConsistencyIssue(BaseModel):
    """A detected contradiction or continuity risk."""
    id: str = Field(default_factory=lambda: f"issue_{shortuuid_random(length=10)}")
    book_id: str
    type: IssueType
    severity: Severity
    title: str
    description: str
    locations: list[IssueLocation] = Field(default_factory=list)
    suggestions: list[IssueSuggestion] = Field(default_factory=list)
    status: IssueStatus = IssueStatus.OPEN
    related_fact_ids: list[str] = Field(default_factory=list)
    fact_key: Optional[tuple[str, str]] = Field(
        default=None,
        description="(subject, attribute) of the fact in conflict, if any"
    )
    conflicting_value: Optional[str] = Field(
        default=None,
        description="Value found in the offending text"
    )
    conflicting_provenance: Optional[Provenance] = None
    dedup_key: str = ""
    resolution: Optional[Resolution] = None
    detected_at: datetime = Field(default_factory=_utcnow)
    last_detected_at: datetime = Field(default_factory=_utcnow)
    detected_by: DetectedBy = DetectedBy.AUTO
    recurrence_count: int = Field(default=0, ge=0)
    status_history: list[StatusChange] = Field(default_factory=list)

    @property
    def is_open(self) -> bool:
        return self.status == IssueStatus.OPEN

    @property
    def primary_excerpt(self) -> str:
        return self.locations[0].excerpt if self.locations else ""

    @property
    def primary_chapter_id(self) -> str:
        return self.locations[0].chapter_id if self.locations else ""


# ============================================================================
# Analysis
# ============================================================================

class SeverityCounts(BaseModel):
    """Issue counts per severity tier."""
    critical: int = 0
    warning: int = 0
    suggestion: int = 0

    @property
    def total(self) -> int:
        return self.critical + self.warning + self.suggestion

    def get(self, severity: Severity) -> int:
        return getattr(self, severity.value)


class AnalysisStats(BaseModel):
    """Summary numbers for a book."""
    total_facts: int = 0
    total_events: int = 0
    total_characters: int = 0
    issues_found: int = 0
    critical_issues: int = 0
    warning_issues: int = 0
    suggestion_issues: int = 0


class ScoreBreakdown(BaseModel):
    """Continuity score per area of the story."""
    character_consistency: float = 100.0
    timeline_accuracy: float = 100.0
    plot_coherence: float = 100.0
    world_consistency: float = 100.0


class UnresolvedThread(BaseModel):
    """A plot thread that has been opened and not closed."""
    thread: str
    introduced_in: str
    last_mentioned_in: str
    chapters_since: int = 0


class ContinuityAnalysis(BaseModel):
    """Derived health snapshot; always regenerated, never edited."""
    book_id: str
    analyzed_at: datetime = Field(default_factory=_utcnow)
    chapters_analyzed: int = 0
    stats: AnalysisStats = Field(default_factory=AnalysisStats)
    open_counts: SeverityCounts = Field(default_factory=SeverityCounts)
    continuity_score: float = Field(ge=0.0, le=100.0)
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    top_issues: list[ConsistencyIssue] = Field(default_factory=list)
    unresolved_threads: list[UnresolvedThread] = Field(default_factory=list)


# ============================================================================
# Scanning and checking
# ============================================================================

class Chapter(BaseModel):
    """Chapter text handed to the engine by its caller."""
    id: str
    title: str = ""
    index: int = Field(ge=0, description="Order of the chapter in the book")
    content: str = ""


class ScanOptions(BaseModel):
    """Caller-selected scope of a batch scan."""
    chapter_ids: Optional[list[str]] = Field(
        default=None,
        description="Restrict the scan to these chapters (all when None)"
    )
    check_timeline: bool = True
    report_minor_issues: bool = True


class ScanPhase(str, Enum):
    """States of the batch scan state machine."""
    IDLE = "idle"
    EXTRACTING = "extracting"
    BUILDING_TIMELINE = "building_timeline"
    DETECTING_ISSUES = "detecting_issues"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ScanPhase.COMPLETE, ScanPhase.ERROR, ScanPhase.CANCELLED)


class ScanStatus(BaseModel):
    """Pollable progress of a batch scan."""
    book_id: str
    phase: ScanPhase = ScanPhase.IDLE
    percent: int = Field(default=0, ge=0, le=100)
    degraded: bool = False
    stale_chapters: list[str] = Field(default_factory=list)
    chapters_total: int = 0
    chapters_extracted: int = 0
    facts_added: int = 0
    events_added: int = 0
    issues_raised: int = 0
    message: str = ""
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class CheckResult(BaseModel):
    """Outcome of an incremental check."""
    issues: list[ConsistencyIssue] = Field(default_factory=list)
    facts_checked_count: int = 0
    text_hash: str = ""
    cached: bool = False


__all__ = [
    "FactCategory",
    "CHARACTER_CATEGORIES",
    "Importance",
    "Confidence",
    "FactSource",
    "ChangeType",
    "Severity",
    "IssueType",
    "IssueStatus",
    "ResolutionMethod",
    "DetectedBy",
    "StoryTimeKind",
    "FactKey",
    "normalize_subject",
    "normalize_attribute",
    "normalize_value",
    "make_dedup_key",
    "Provenance",
    "FactChange",
    "StoryFact",
    "CandidateFact",
    "StoryTime",
    "TimelineEvent",
    "IssueLocation",
    "IssueSuggestion",
    "Resolution",
    "StatusChange",
    "ConsistencyIssue",
    "SeverityCounts",
    "AnalysisStats",
    "ScoreBreakdown",
    "UnresolvedThread",
    "ContinuityAnalysis",
    "Chapter",
    "ScanOptions",
    "ScanPhase",
    "ScanStatus",
    "CheckResult",
]
