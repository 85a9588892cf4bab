"""
Fact Extractor: wraps the extraction capability and normalizes its output.

Every record the capability returns is validated before it becomes a
CandidateFact or TimelineEvent. A record that is missing required fields,
names an unknown category, or quotes an excerpt that does not occur in the
input text is dropped with a warning. Dropping is normal operation, not an
error.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from ..config import ContinuityConfig
from ..exceptions import ExtractionError, ExtractionTimeoutError
from ..models import (
    CandidateFact,
    Chapter,
    Confidence,
    FactCategory,
    Importance,
    Provenance,
    StoryTime,
    StoryTimeKind,
    TimelineEvent,
)
from .capability import ExtractionCapability

logger = logging.getLogger("continuity-guardian")

_QUOTE_TABLE = str.maketrans({
    "“": '"', "”": '"', "„": '"',
    "‘": "'", "’": "'", "‚": "'",
    "–": "-", "—": "-",
    " ": " ",
})


# ---------------------------------------------------------------------------
# Raw record schemas
# ---------------------------------------------------------------------------


def _enum_token(value: Any) -> Any:
    if isinstance(value, str):
        return value.strip().lower().replace(" ", "_").replace("-", "_")
    return value


class RawFactRecord(BaseModel):
    """A fact record as returned by the capability."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    category: FactCategory
    subject: str = Field(min_length=1)
    attribute: str = Field(min_length=1)
    value: str = Field(min_length=1)
    importance: Importance = Importance.SIGNIFICANT
    confidence: Confidence = Confidence.EXPLICIT
    excerpt: str = Field(min_length=1)

    @field_validator("category", mode="before")
    @classmethod
    def _category_token(cls, value: Any) -> Any:
        return _enum_token(value)

    @field_validator("importance", mode="before")
    @classmethod
    def _importance_or_default(cls, value: Any) -> Any:
        token = _enum_token(value)
        return token if token in {i.value for i in Importance} else Importance.SIGNIFICANT

    @field_validator("confidence", mode="before")
    @classmethod
    def _confidence_or_default(cls, value: Any) -> Any:
        token = _enum_token(value)
        return token if token in {c.value for c in Confidence} else Confidence.EXPLICIT

    @field_validator("value", mode="before")
    @classmethod
    def _scalar_value(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


class RawEventRecord(BaseModel):
    """An event record as returned by the capability."""
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    description: str = Field(min_length=1)
    story_time: str = ""
    time_kind: StoryTimeKind = StoryTimeKind.ABSOLUTE
    day_number: Optional[int] = None
    characters: list[str] = Field(default_factory=list)
    locations: list[str] = Field(default_factory=list)
    deaths: list[str] = Field(default_factory=list)
    importance: Importance = Importance.SIGNIFICANT
    excerpt: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _flatten_story_time(cls, data: Any) -> Any:
        if isinstance(data, dict) and isinstance(data.get("story_time"), dict):
            story_time = data["story_time"]
            data = {**data, "story_time": story_time.get("value", "")}
            data.setdefault("day_number", story_time.get("day_number"))
            if "kind" in story_time:
                data.setdefault("time_kind", story_time["kind"])
        return data

    @field_validator("time_kind", mode="before")
    @classmethod
    def _kind_or_default(cls, value: Any) -> Any:
        token = _enum_token(value)
        return token if token in {k.value for k in StoryTimeKind} else StoryTimeKind.ABSOLUTE

    @field_validator("importance", mode="before")
    @classmethod
    def _importance_or_default(cls, value: Any) -> Any:
        token = _enum_token(value)
        return token if token in {i.value for i in Importance} else Importance.SIGNIFICANT

    @field_validator("characters", "locations", "deaths", mode="before")
    @classmethod
    def _name_list(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        return value

    @field_validator("characters", "locations", "deaths")
    @classmethod
    def _drop_blank_names(cls, value: list[str]) -> list[str]:
        return [name.strip() for name in value if name and name.strip()]


# ---------------------------------------------------------------------------
# Excerpt verification
# ---------------------------------------------------------------------------


def _normalize_with_offsets(text: str) -> tuple[str, list[int]]:
    """Collapse whitespace and unify quote style, keeping original offsets."""
    chars: list[str] = []
    offsets: list[int] = []
    previous_space = False
    for index, char in enumerate(text.translate(_QUOTE_TABLE)):
        if char.isspace():
            if previous_space:
                continue
            char = " "
            previous_space = True
        else:
            previous_space = False
        chars.append(char)
        offsets.append(index)
    return "".join(chars), offsets


def locate_excerpt(text: str, excerpt: str) -> Optional[int]:
    """
    Find ``excerpt`` in ``text``.

    Whitespace runs and curly/straight quote styles are treated as equal.

    Returns:
        Character offset of the excerpt in ``text``, or None if absent
    """
    excerpt = excerpt.strip()
    if not excerpt:
        return None
    position = text.find(excerpt)
    if position >= 0:
        return position

    haystack, offsets = _normalize_with_offsets(text)
    needle, _ = _normalize_with_offsets(excerpt)
    position = haystack.find(needle.strip())
    if position < 0:
        return None
    return offsets[position]


def split_chunks(text: str, max_chars: int) -> list[tuple[int, str]]:
    """
    Split ``text`` at paragraph boundaries into chunks of at most ``max_chars``.

    A single paragraph longer than ``max_chars`` is split hard.

    Returns:
        List of (offset, chunk) pairs
    """
    if len(text) <= max_chars:
        return [(0, text)]

    chunks: list[tuple[int, str]] = []
    start = 0
    cursor = 0
    while cursor < len(text):
        boundary = text.find("\n\n", cursor)
        end = len(text) if boundary < 0 else boundary + 2
        if end - start > max_chars and cursor > start:
            chunks.append((start, text[start:cursor]))
            start = cursor
            continue
        while end - start > max_chars:
            chunks.append((start, text[start:start + max_chars]))
            start += max_chars
        cursor = end
    if start < len(text):
        chunks.append((start, text[start:]))
    return chunks


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


@dataclass
class ExtractionResult:
    """Normalized output of one extraction."""
    facts: list[CandidateFact] = field(default_factory=list)
    events: list[TimelineEvent] = field(default_factory=list)
    dropped: int = 0

    def extend(self, other: "ExtractionResult") -> None:
        self.facts.extend(other.facts)
        self.events.extend(other.events)
        self.dropped += other.dropped


class FactExtractor:
    """
    Invokes the extraction capability and validates its records.

    Attributes:
        capability: The external text-to-records capability
        config: Engine configuration (timeouts, window and chunk sizes)
    """

    def __init__(self, capability: ExtractionCapability, config: ContinuityConfig | None = None) -> None:
        self.capability = capability
        self.config = config or ContinuityConfig()

    async def extract(
        self,
        text: str,
        existing_fact_summary: str,
        chapter_id: str,
        chapter_title: str = "",
        chapter_index: Optional[int] = None,
        offset: int = 0,
    ) -> ExtractionResult:
        """
        Extract candidate facts and events from ``text``.

        Args:
            text: Span of prose to extract from
            existing_fact_summary: Fact context passed to the capability
            chapter_id: Chapter the span belongs to
            chapter_title: Chapter title for provenance
            chapter_index: Chapter order in the book, if known
            offset: Offset of ``text`` within the chapter

        Returns:
            ExtractionResult with validated candidates

        Raises:
            ExtractionTimeoutError: If the capability exceeds ``extraction_timeout``
            ExtractionError: If the capability fails
        """
        if not text.strip():
            return ExtractionResult()

        timeout = self.config.extraction_timeout
        try:
            records = await asyncio.wait_for(
                self.capability.extract(text, existing_fact_summary),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"Extraction for chapter {chapter_id} timed out after {timeout}s")
            raise ExtractionTimeoutError(
                f"Extraction timed out after {timeout}s",
                operation="extract",
                timeout_seconds=timeout,
                chapter_id=chapter_id,
            ) from e
        except ExtractionError:
            raise
        except Exception as e:
            logger.error(f"Extraction for chapter {chapter_id} failed: {e}")
            raise ExtractionError(f"Extraction failed: {e}", chapter_id=chapter_id) from e

        if not isinstance(records, list):
            logger.warning(
                f"Extraction for chapter {chapter_id} returned {type(records).__name__}, expected a list"
            )
            return ExtractionResult(dropped=1)

        return self.normalize(records, text, chapter_id, chapter_title, chapter_index, offset)

    async def extract_chapter(self, chapter: Chapter, fact_context: str) -> ExtractionResult:
        """Extract a whole chapter, one capability call per chunk."""
        result = ExtractionResult()
        for offset, chunk in split_chunks(chapter.content, self.config.max_chunk_chars):
            result.extend(await self.extract(
                chunk,
                fact_context,
                chapter_id=chapter.id,
                chapter_title=chapter.title,
                chapter_index=chapter.index,
                offset=offset,
            ))
        logger.debug(
            f"Chapter {chapter.id}: {len(result.facts)} facts, {len(result.events)} events, "
            f"{result.dropped} dropped"
        )
        return result

    async def extract_window(
        self,
        text: str,
        fact_context: str,
        chapter_id: str,
        chapter_title: str = "",
        chapter_index: Optional[int] = None,
    ) -> ExtractionResult:
        """Extract only the trailing ``incremental_window_chars`` of ``text``."""
        window_size = self.config.incremental_window_chars
        window = text[-window_size:]
        return await self.extract(
            window,
            fact_context,
            chapter_id=chapter_id,
            chapter_title=chapter_title,
            chapter_index=chapter_index,
            offset=len(text) - len(window),
        )

    def normalize(
        self,
        records: list[Any],
        text: str,
        chapter_id: str,
        chapter_title: str = "",
        chapter_index: Optional[int] = None,
        offset: int = 0,
    ) -> ExtractionResult:
        """Validate raw records into candidates, dropping anything malformed."""
        result = ExtractionResult()
        for record in records:
            if not isinstance(record, dict):
                logger.warning(f"Dropping non-object extraction record: {record!r}")
                result.dropped += 1
                continue

            kind = str(record.get("kind", "fact")).strip().lower()
            try:
                if kind == "event":
                    event = self._to_event(RawEventRecord.model_validate(record), text,
                                           chapter_id, chapter_title, chapter_index, offset)
                    if event is None:
                        result.dropped += 1
                    else:
                        result.events.append(event)
                elif kind == "fact":
                    fact = self._to_fact(RawFactRecord.model_validate(record), text,
                                         chapter_id, chapter_title, chapter_index, offset)
                    if fact is None:
                        result.dropped += 1
                    else:
                        result.facts.append(fact)
                else:
                    logger.warning(f"Dropping extraction record of unknown kind '{kind}'")
                    result.dropped += 1
            except ValidationError as e:
                logger.warning(
                    f"Dropping malformed {kind} record from chapter {chapter_id}: "
                    f"{e.error_count()} validation error(s)"
                )
                result.dropped += 1
        return result

    def _to_fact(
        self,
        raw: RawFactRecord,
        text: str,
        chapter_id: str,
        chapter_title: str,
        chapter_index: Optional[int],
        offset: int,
    ) -> Optional[CandidateFact]:
        position = locate_excerpt(text, raw.excerpt)
        if position is None:
            logger.warning(
                f"Dropping fact {raw.subject}.{raw.attribute}: excerpt not found in chapter {chapter_id} "
                f"('{raw.excerpt[:60]}')"
            )
            return None
        return CandidateFact(
            category=raw.category,
            subject=raw.subject,
            attribute=raw.attribute,
            value=raw.value,
            importance=raw.importance,
            confidence=raw.confidence,
            established_in=Provenance(
                chapter_id=chapter_id,
                chapter_title=chapter_title,
                chapter_index=chapter_index,
                excerpt=raw.excerpt,
                position=offset + position,
            ),
        )

    def _to_event(
        self,
        raw: RawEventRecord,
        text: str,
        chapter_id: str,
        chapter_title: str,
        chapter_index: Optional[int],
        offset: int,
    ) -> Optional[TimelineEvent]:
        position = 0
        if raw.excerpt:
            found = locate_excerpt(text, raw.excerpt)
            if found is None:
                logger.warning(
                    f"Dropping event '{raw.description[:40]}': excerpt not found in chapter {chapter_id}"
                )
                return None
            position = found
        return TimelineEvent(
            description=raw.description,
            story_time=StoryTime(
                value=raw.story_time,
                kind=raw.time_kind,
                day_number=raw.day_number,
            ),
            characters=raw.characters,
            locations=raw.locations,
            deaths=raw.deaths,
            chapter_id=chapter_id,
            chapter_title=chapter_title,
            chapter_index=chapter_index,
            position=offset + position,
            importance=raw.importance,
            excerpt=raw.excerpt,
        )


__all__ = [
    "RawFactRecord",
    "RawEventRecord",
    "ExtractionResult",
    "FactExtractor",
    "locate_excerpt",
    "split_chunks",
]
