"""
Timeline consistency checks for batch scans.

Key components:
- find_post_death_appearances: characters acting after their death
- find_location_conflicts: one character in two places at the same story time
- find_time_of_day_mismatches: low-confidence light/darkness heuristic

Events with a day number and events without one are checked in separate
domains. A day-number contradiction is critical; a contradiction that only
follows from manuscript order is a warning, since flashbacks are common.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from ..models import (
    ConsistencyIssue,
    FactCategory,
    IssueLocation,
    IssueSuggestion,
    IssueType,
    Severity,
    TimelineEvent,
    make_dedup_key,
    normalize_subject,
    normalize_value,
)
from ..store import FactStore

logger = logging.getLogger("continuity-guardian")

# Time of day descriptions by hour range
TIME_OF_DAY = {
    (0, 5): "deep night",
    (5, 7): "dawn",
    (7, 12): "morning",
    (12, 14): "midday",
    (14, 17): "afternoon",
    (17, 19): "evening",
    (19, 21): "dusk",
    (21, 24): "night",
}

DAYLIGHT_PERIODS = frozenset({"morning", "midday", "afternoon"})
NIGHT_PERIODS = frozenset({"deep night", "night"})

DEATH_VALUES = frozenset({"dead", "deceased", "killed", "died", "murdered", "executed", "slain"})
DEATH_VERBS = re.compile(r"\b(dies|died|is killed|was killed|is murdered|was murdered|is slain|was slain)\b", re.IGNORECASE)
# Events that may name a dead character without them acting
POSTHUMOUS_WORDS = re.compile(
    r"\b(funeral|grave|burial|buried|corpse|body|memory|memories|remember|remembers|remembered|"
    r"mourn|mourns|mourned|ghost|portrait|eulogy|wake|tomb)\b",
    re.IGNORECASE,
)
DARKNESS_WORDS = re.compile(
    r"\b(darkness|pitch[- ]black|moonlight|moonlit|starlight|starlit|under the stars|night sky)\b",
    re.IGNORECASE,
)
SUNLIGHT_WORDS = re.compile(
    r"\b(sunlight|sunshine|sunlit|blazing sun|midday sun|noonday sun|bright daylight)\b",
    re.IGNORECASE,
)
_CLOCK_RE = re.compile(r"\b(\d{1,2})(?::(\d{2}))?\s*(a\.?m\.?|p\.?m\.?)?(?![\d])", re.IGNORECASE)


@dataclass
class DeathRecord:
    """Where and when a character died."""
    character: str
    sequence_key: tuple[int, int]
    day_number: Optional[int]
    chapter_id: str
    chapter_title: str
    excerpt: str
    event_id: Optional[str] = None


def _period(hour: int) -> str:
    for (start, end), description in TIME_OF_DAY.items():
        if start <= hour < end:
            return description
    return "night"


def parse_hour(story_time: str) -> Optional[int]:
    """
    Extract an hour (0-23) from a freeform story time.

    Understands "3pm", "3:30 p.m.", "15:00", "noon" and "midnight". Bare
    numbers without a colon or am/pm are ignored (they are usually dates).
    """
    lowered = story_time.lower()
    if "midnight" in lowered:
        return 0
    if "noon" in lowered and "afternoon" not in lowered:
        return 12

    for match in _CLOCK_RE.finditer(story_time):
        hour = int(match.group(1))
        minutes = match.group(2)
        meridiem = (match.group(3) or "").lower().replace(".", "")
        if not meridiem and minutes is None:
            continue
        if meridiem:
            if not 1 <= hour <= 12:
                continue
            if meridiem == "pm" and hour != 12:
                hour += 12
            elif meridiem == "am" and hour == 12:
                hour = 0
        if 0 <= hour <= 23:
            return hour
    return None


def _location(event: TimelineEvent) -> IssueLocation:
    return IssueLocation(
        chapter_id=event.chapter_id,
        chapter_title=event.chapter_title,
        excerpt=event.excerpt or event.description,
        position=event.position,
    )


def collect_deaths(store: FactStore) -> dict[str, DeathRecord]:
    """
    Find the earliest recorded death of each character.

    Deaths come from events (``deaths`` field, or a death verb next to the
    only participant) and from character_status facts with a death value.
    """
    deaths: dict[str, DeathRecord] = {}

    def consider(record: DeathRecord) -> None:
        key = normalize_subject(store.aliases.resolve(record.character))
        known = deaths.get(key)
        if known is None or record.sequence_key < known.sequence_key:
            deaths[key] = record

    for event in store.get_all_events():
        names = list(event.deaths)
        if not names and len(event.characters) == 1 and DEATH_VERBS.search(event.description):
            names = list(event.characters)
        for name in names:
            consider(DeathRecord(
                character=store.aliases.resolve(name),
                sequence_key=event.sequence_key,
                day_number=event.story_time.day_number,
                chapter_id=event.chapter_id,
                chapter_title=event.chapter_title,
                excerpt=event.excerpt or event.description,
                event_id=event.id,
            ))

    for fact in store.get_facts_by_category(FactCategory.CHARACTER_STATUS):
        if set(normalize_value(fact.current_value).split()) & DEATH_VALUES:
            consider(DeathRecord(
                character=fact.subject,
                sequence_key=fact.established_in.sequence_key,
                day_number=None,
                chapter_id=fact.established_in.chapter_id,
                chapter_title=fact.established_in.chapter_title,
                excerpt=fact.established_in.excerpt,
            ))
    return deaths


def find_post_death_appearances(store: FactStore, book_id: str) -> list[ConsistencyIssue]:
    """Raise an issue for every event a character takes part in after dying."""
    deaths = collect_deaths(store)
    if not deaths:
        return []

    issues: list[ConsistencyIssue] = []
    for event in store.get_all_events():
        if POSTHUMOUS_WORDS.search(event.description):
            continue
        for name in event.characters:
            canonical = store.aliases.resolve(name)
            death = deaths.get(normalize_subject(canonical))
            if death is None or death.event_id == event.id:
                continue

            event_day = event.story_time.day_number
            if death.day_number is not None and event_day is not None:
                if event_day <= death.day_number:
                    continue
                severity = Severity.CRITICAL
                when = f"on day {event_day}, after dying on day {death.day_number}"
            elif event.sequence_key > death.sequence_key:
                severity = Severity.WARNING
                when = "in a later chapter than their death"
            else:
                continue

            issues.append(ConsistencyIssue(
                book_id=book_id,
                type=IssueType.TIMELINE_CONFLICT,
                severity=severity,
                title=f"{canonical} appears after their death",
                description=(
                    f"{canonical} takes part in \"{event.description}\" {when} "
                    f"({death.chapter_title or death.chapter_id})."
                ),
                locations=[
                    _location(event),
                    IssueLocation(
                        chapter_id=death.chapter_id,
                        chapter_title=death.chapter_title,
                        excerpt=death.excerpt,
                    ),
                ],
                suggestions=[
                    IssueSuggestion(
                        approach="Remove the appearance",
                        description=f"Rewrite the scene without {canonical}.",
                        affected_chapters=[event.chapter_id],
                    ),
                    IssueSuggestion(
                        approach="Mark it as a flashback",
                        description="Make clear that the scene happens before the death.",
                        affected_chapters=[event.chapter_id],
                    ),
                ],
                fact_key=(normalize_subject(canonical), "status"),
                dedup_key=make_dedup_key(IssueType.TIMELINE_CONFLICT, canonical, "status", event.chapter_id),
            ))
    return issues


def find_location_conflicts(store: FactStore, book_id: str) -> list[ConsistencyIssue]:
    """Raise an issue when a character is in two places at the same story time."""
    dated, _ = store.timeline_domains()
    slots: dict[tuple[int, str], list[TimelineEvent]] = {}
    for event in dated:
        if len(event.locations) != 1 or not event.story_time.value.strip():
            continue
        slots.setdefault((event.story_time.day_number, normalize_value(event.story_time.value)), []).append(event)

    issues: list[ConsistencyIssue] = []
    for (day_number, _), events in slots.items():
        if len(events) < 2:
            continue
        seen: dict[str, TimelineEvent] = {}
        for event in events:
            place = normalize_value(event.locations[0])
            for name in event.characters:
                canonical = store.aliases.resolve(name)
                key = normalize_subject(canonical)
                first = seen.get(key)
                if first is None:
                    seen[key] = event
                    continue
                if normalize_value(first.locations[0]) == place:
                    continue
                attribute = f"location_day_{day_number}"
                issues.append(ConsistencyIssue(
                    book_id=book_id,
                    type=IssueType.LOCATION_IMPOSSIBLE,
                    severity=Severity.WARNING,
                    title=f"{canonical} is in two places at once",
                    description=(
                        f"At {event.story_time.value} (day {day_number}) {canonical} is in "
                        f"{first.locations[0]} and in {event.locations[0]}."
                    ),
                    locations=[_location(event), _location(first)],
                    suggestions=[
                        IssueSuggestion(
                            approach="Adjust the time",
                            description="Move one of the scenes to a different time.",
                            affected_chapters=sorted({event.chapter_id, first.chapter_id}),
                        ),
                        IssueSuggestion(
                            approach="Add travel",
                            description=f"Show how {canonical} gets from one place to the other.",
                            affected_chapters=[event.chapter_id],
                        ),
                    ],
                    fact_key=(key, attribute),
                    dedup_key=make_dedup_key(IssueType.LOCATION_IMPOSSIBLE, canonical, attribute, event.chapter_id),
                ))
    return issues


def find_time_of_day_mismatches(events: Iterable[TimelineEvent], book_id: str) -> list[ConsistencyIssue]:
    """Suggest a review when light in a scene does not match its clock time."""
    issues: list[ConsistencyIssue] = []
    for event in events:
        hour = parse_hour(event.story_time.value)
        if hour is None:
            continue
        period = _period(hour)
        text = f"{event.description} {event.excerpt or ''}"
        if period in DAYLIGHT_PERIODS and DARKNESS_WORDS.search(text):
            problem = f"darkness at {event.story_time.value} ({period})"
        elif period in NIGHT_PERIODS and SUNLIGHT_WORDS.search(text):
            problem = f"sunlight at {event.story_time.value} ({period})"
        else:
            continue
        issues.append(ConsistencyIssue(
            book_id=book_id,
            type=IssueType.LOGIC_ERROR,
            severity=Severity.SUGGESTION,
            title="Light does not match the time of day",
            description=f"The scene describes {problem}. Check the time or the lighting.",
            locations=[_location(event)],
            suggestions=[IssueSuggestion(
                approach="Check the scene",
                description="Change the stated time or the description of the light.",
                affected_chapters=[event.chapter_id],
            )],
            dedup_key=make_dedup_key(IssueType.LOGIC_ERROR, event.description, "time_of_day", event.chapter_id),
        ))
    return issues


def check_timeline(store: FactStore, book_id: str, check_time_of_day: bool = True) -> list[ConsistencyIssue]:
    """Run every timeline check against the store's events."""
    issues = find_post_death_appearances(store, book_id)
    issues.extend(find_location_conflicts(store, book_id))
    if check_time_of_day:
        issues.extend(find_time_of_day_mismatches(store.get_all_events(), book_id))
    logger.debug(f"Timeline checks for book {book_id} raised {len(issues)} issues")
    return issues


__all__ = [
    "TIME_OF_DAY",
    "DeathRecord",
    "parse_hour",
    "collect_deaths",
    "find_post_death_appearances",
    "find_location_conflicts",
    "find_time_of_day_mismatches",
    "check_timeline",
]
