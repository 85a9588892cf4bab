"""
Canonical, versioned fact store for one book.

The FactStore owns every StoryFact and TimelineEvent extracted for a book.
It enforces one active fact per (subject, attribute) key: a candidate that
disagrees with the active value is reported back as a conflict and never
written. Only ``supersede`` changes an active value, and it keeps the old
value in the fact's history.

Key components:
- UpsertOutcome / UpsertResult: result of offering a candidate fact
- CompactionReport: what ``compact`` merged and which values disagreed
- FactStore: the store itself, with JSON persistence
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from ..exceptions import FactNotFoundError, StoreCorruptionError
from ..filters import FactFilter
from ..models import (
    CandidateFact,
    ChangeType,
    FactCategory,
    FactChange,
    FactKey,
    Importance,
    Provenance,
    StoryFact,
    TimelineEvent,
    normalize_attribute,
    normalize_subject,
    normalize_value,
)
from .aliases import AliasRegistry

logger = logging.getLogger("continuity-guardian")

_IMPORTANCE_ORDER = {
    Importance.CRITICAL: 0,
    Importance.SIGNIFICANT: 1,
    Importance.MINOR: 2,
}


class UpsertOutcome(str, Enum):
    """What happened to a candidate fact."""
    ACCEPTED = "accepted"          # new key, fact created
    CORROBORATED = "corroborated"  # same value as the active fact
    CONFLICT = "conflict"          # differs from the active fact, nothing written


@dataclass
class UpsertResult:
    """Result of ``FactStore.upsert_candidate_fact``."""
    outcome: UpsertOutcome
    fact: StoryFact

    @property
    def is_conflict(self) -> bool:
        return self.outcome == UpsertOutcome.CONFLICT


@dataclass
class CompactionConflict:
    """Two facts that joined under one key with different values."""
    kept: StoryFact
    folded: StoryFact


@dataclass
class CompactionReport:
    """Result of ``FactStore.compact``."""
    merged: list[tuple[str, str]] = field(default_factory=list)  # (kept_id, folded_id)
    conflicts: list[CompactionConflict] = field(default_factory=list)
    mentions_folded: int = 0
    provenance_moved: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.merged or self.mentions_folded or self.provenance_moved)


class FactStore:
    """
    Canonical fact and timeline store for one book.

    Attributes:
        book_id: Book this store belongs to
        aliases: Entity alias registry used to resolve subjects
        revision: Incremented on every mutation
        _facts: All facts by id, including retired ones
        _active: Active fact id per resolved (subject, attribute) key
        _events: Timeline events in insertion order
    """

    def __init__(self, book_id: str, aliases: AliasRegistry | None = None) -> None:
        self.book_id = book_id
        self.aliases = aliases or AliasRegistry()
        self.revision = 0
        self._facts: dict[str, StoryFact] = {}
        self._active: dict[FactKey, str] = {}
        self._events: list[TimelineEvent] = []
        self._event_identities: set[tuple[str, str]] = set()

    # ------------------------------------------------------------------
    # Keys and lookups
    # ------------------------------------------------------------------

    def resolve_key(self, subject: str, attribute: str) -> FactKey:
        """Resolve aliases and normalize into a store key."""
        return (normalize_subject(self.aliases.resolve(subject)), normalize_attribute(attribute))

    def get_active_value(self, subject: str, attribute: str) -> Optional[StoryFact]:
        """Return the active fact for (subject, attribute), or None."""
        fact_id = self._active.get(self.resolve_key(subject, attribute))
        return self._facts.get(fact_id) if fact_id else None

    def get_fact(self, fact_id: str) -> Optional[StoryFact]:
        """Return any fact by id, active or retired."""
        return self._facts.get(fact_id)

    def get_facts_by_category(self, category: FactCategory) -> list[StoryFact]:
        """Active facts in ``category``, in manuscript order."""
        return [f for f in self.active_facts() if f.category == category]

    def active_facts(self) -> list[StoryFact]:
        """All active facts in manuscript order."""
        facts = [self._facts[fact_id] for fact_id in self._active.values()]
        return sorted(facts, key=lambda f: (f.established_in.sequence_key, f.subject, f.attribute))

    def query_facts(self, fact_filter: FactFilter | None = None) -> list[StoryFact]:
        """Active facts matching ``fact_filter`` (all when None)."""
        facts = self.active_facts()
        if fact_filter is None:
            return facts
        if fact_filter.subject is not None:
            canonical = self.aliases.resolve(fact_filter.subject)
            fact_filter = fact_filter.model_copy(update={"subject": canonical})
        return [f for f in facts if fact_filter.matches(f)]

    @property
    def fact_count(self) -> int:
        return len(self._active)

    @property
    def event_count(self) -> int:
        return len(self._events)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _touch(self) -> None:
        self.revision += 1

    def upsert_candidate_fact(self, candidate: CandidateFact) -> UpsertResult:
        """
        Offer a candidate fact to the store.

        A new key creates a fact. A value the active fact accepts at the
        candidate's position (see ``StoryFact.accepts_value``) is recorded as
        a mention. Any other value is returned as a conflict and the active
        fact is left untouched.

        Args:
            candidate: Normalized candidate from the extractor or the user

        Returns:
            UpsertResult with the outcome and the created or existing fact
        """
        key = self.resolve_key(candidate.subject, candidate.attribute)
        existing_id = self._active.get(key)

        if existing_id is None:
            fact = StoryFact(
                book_id=self.book_id,
                category=candidate.category,
                subject=self.aliases.resolve(candidate.subject),
                attribute=normalize_attribute(candidate.attribute),
                current_value=candidate.value.strip(),
                importance=candidate.importance,
                confidence=candidate.confidence,
                source=candidate.source,
                established_in=candidate.established_in,
            )
            self._facts[fact.id] = fact
            self._active[key] = fact.id
            self._touch()
            logger.debug(f"Accepted fact {fact.id}: {fact.subject}.{fact.attribute} = '{fact.current_value}'")
            return UpsertResult(UpsertOutcome.ACCEPTED, fact)

        existing = self._facts[existing_id]
        if existing.accepts_value(candidate.value, candidate.established_in):
            self.record_mention(existing.id, candidate.established_in)
            return UpsertResult(UpsertOutcome.CORROBORATED, existing)

        logger.debug(
            f"Conflict on {existing.subject}.{existing.attribute}: "
            f"active '{existing.current_value}', candidate '{candidate.value}'"
        )
        return UpsertResult(UpsertOutcome.CONFLICT, existing)

    def record_mention(self, fact_id: str, provenance: Provenance) -> bool:
        """
        Record a redundant sighting of a fact's value.

        Returns:
            True if the mention was new, False if already recorded
        """
        fact = self._facts.get(fact_id)
        if fact is None:
            raise FactNotFoundError(f"Fact '{fact_id}' not found", details={"book_id": self.book_id})

        sighting = (provenance.chapter_id, provenance.excerpt, provenance.position)
        known = {(p.chapter_id, p.excerpt, p.position) for p in fact.mentions}
        known.add((fact.established_in.chapter_id, fact.established_in.excerpt, fact.established_in.position))
        if sighting in known:
            return False

        fact.mentions.append(provenance)
        fact.updated_at = datetime.now(timezone.utc)
        self._touch()
        return True

    def supersede(
        self,
        fact_key: FactKey,
        new_value: str,
        established_in: Provenance,
        notes: str | None = None,
        change_type: ChangeType = ChangeType.RESOLUTION,
    ) -> StoryFact:
        """
        Replace the active value for ``fact_key``, keeping the old one in history.

        Args:
            fact_key: (subject, attribute); aliases are resolved
            new_value: Value that becomes canonical
            established_in: Where the new value is established
            notes: Optional author notes recorded on the change
            change_type: Reason for the change

        Returns:
            The updated fact

        Raises:
            FactNotFoundError: If no active fact exists for the key
        """
        subject, attribute = fact_key
        fact = self.get_active_value(subject, attribute)
        if fact is None:
            raise FactNotFoundError(
                f"No active fact for {subject}.{attribute}",
                details={"book_id": self.book_id, "fact_key": list(fact_key)},
            )

        if normalize_value(fact.current_value) == normalize_value(new_value):
            logger.debug(f"Supersede of {fact.id} with identical value ignored")
            return fact

        fact.history.append(FactChange(
            previous_value=fact.current_value,
            new_value=new_value,
            changed_in=established_in,
            previous_established_in=fact.established_in,
            previous_mentions=list(fact.mentions),
            change_type=change_type,
            notes=notes,
        ))
        fact.current_value = new_value
        fact.established_in = established_in
        fact.mentions = []
        fact.updated_at = datetime.now(timezone.utc)
        self._touch()

        logger.info(
            f"Superseded {fact.subject}.{fact.attribute}: "
            f"'{fact.history[-1].previous_value}' -> '{new_value}'"
        )
        return fact

    def add_event(self, event: TimelineEvent) -> bool:
        """
        Add a timeline event.

        An event with the same chapter and normalized description as a known
        one is a re-extraction and is skipped.

        Returns:
            True if the event was added
        """
        if event.identity in self._event_identities:
            return False
        event.book_id = self.book_id
        self._events.append(event)
        self._event_identities.add(event.identity)
        self._touch()
        return True

    def get_all_events(self) -> list[TimelineEvent]:
        """
        All events in timeline order.

        Events with a day number come first, ordered by day then manuscript
        position; events without one follow in manuscript order. The two
        groups are never compared by day number.
        """
        dated, undated = self.timeline_domains()
        return dated + undated

    def timeline_domains(self) -> tuple[list[TimelineEvent], list[TimelineEvent]]:
        """Split events into (day-numbered, sequence-only), each sorted."""
        dated = sorted(
            (e for e in self._events if e.story_time.day_number is not None),
            key=lambda e: (e.story_time.day_number, e.sequence_key),
        )
        undated = sorted(
            (e for e in self._events if e.story_time.day_number is None),
            key=lambda e: e.sequence_key,
        )
        return dated, undated

    def register_alias(self, alias: str, canonical: str) -> CompactionReport:
        """
        Register an alias and fold facts that now share a key.

        Returns:
            The compaction report (its conflicts should be raised as issues)
        """
        self.aliases.register(alias, canonical)
        self._touch()
        return self.compact()

    # ------------------------------------------------------------------
    # Compaction and invariants
    # ------------------------------------------------------------------

    def compact(self) -> CompactionReport:
        """
        Merge redundant facts and fold mentions.

        Facts whose subjects now resolve to the same entity are grouped by
        key. The fact established earliest is kept; a fact with the same
        value is folded into it, a fact with a different value is also
        folded (retired, not deleted) and reported as a conflict. Each kept
        fact's provenance is moved to its earliest sighting.

        Returns:
            CompactionReport describing the changes
        """
        report = CompactionReport()
        groups: dict[FactKey, list[StoryFact]] = {}
        for fact in self._facts.values():
            if not fact.is_active:
                continue
            key = self.resolve_key(fact.subject, fact.attribute)
            groups.setdefault(key, []).append(fact)

        new_active: dict[FactKey, str] = {}
        for key, facts in groups.items():
            facts.sort(key=lambda f: (f.established_in.sequence_key, f.created_at))
            kept = facts[0]
            canonical = self.aliases.resolve(kept.subject)
            if canonical != kept.subject:
                kept.subject = canonical

            for other in facts[1:]:
                other.merged_into = kept.id
                other.updated_at = datetime.now(timezone.utc)
                report.merged.append((kept.id, other.id))
                if normalize_value(other.current_value) == normalize_value(kept.current_value):
                    kept.mentions.append(other.established_in)
                    kept.mentions.extend(other.mentions)
                else:
                    report.conflicts.append(CompactionConflict(kept=kept, folded=other))
                    logger.warning(
                        f"Compaction joined {kept.subject}.{kept.attribute} with differing values "
                        f"'{kept.current_value}' / '{other.current_value}'"
                    )

            report.mentions_folded += self._fold_mentions(kept, report)
            new_active[key] = kept.id

        self._active = new_active
        if report.changed:
            self._touch()
        self.assert_consistent()

        logger.info(
            f"Compacted book {self.book_id}: {len(report.merged)} merged, "
            f"{report.mentions_folded} mentions folded, {len(report.conflicts)} conflicts"
        )
        return report

    def _fold_mentions(self, fact: StoryFact, report: CompactionReport) -> int:
        """Deduplicate mentions and keep the earliest sighting as provenance."""
        if not fact.mentions:
            return 0

        before = len(fact.mentions)
        seen: set[tuple[str, str, int]] = set()
        unique: list[Provenance] = []
        for mention in sorted(fact.mentions, key=lambda p: p.sequence_key):
            ident = (mention.chapter_id, mention.excerpt, mention.position)
            if ident in seen:
                continue
            seen.add(ident)
            unique.append(mention)

        earliest = unique[0]
        if earliest.sequence_key < fact.established_in.sequence_key:
            unique[0] = fact.established_in
            fact.established_in = earliest
            unique.sort(key=lambda p: p.sequence_key)
            report.provenance_moved += 1

        established = (fact.established_in.chapter_id, fact.established_in.excerpt, fact.established_in.position)
        fact.mentions = [
            m for m in unique
            if (m.chapter_id, m.excerpt, m.position) != established
        ]
        return before - len(fact.mentions)

    def assert_consistent(self) -> None:
        """
        Verify one active fact per resolved key.

        Raises:
            StoreCorruptionError: If two active facts share a key
        """
        seen: dict[FactKey, str] = {}
        for fact in self._facts.values():
            if not fact.is_active:
                continue
            key = self.resolve_key(fact.subject, fact.attribute)
            if key in seen:
                raise StoreCorruptionError(
                    f"Two active facts for {key[0]}.{key[1]} in book {self.book_id}",
                    fact_key=key,
                    fact_ids=[seen[key], fact.id],
                )
            seen[key] = fact.id

    # ------------------------------------------------------------------
    # Copies, summaries and persistence
    # ------------------------------------------------------------------

    def snapshot(self) -> "FactStore":
        """Independent deep copy, used to stage batch scan writes."""
        clone = FactStore(self.book_id, self.aliases.copy())
        clone.revision = self.revision
        clone._facts = {fid: f.model_copy(deep=True) for fid, f in self._facts.items()}
        clone._active = dict(self._active)
        clone._events = [e.model_copy(deep=True) for e in self._events]
        clone._event_identities = set(self._event_identities)
        return clone

    def summary(self, limit: int = 100) -> str:
        """
        Render active facts as extractor context, most important first.

        Args:
            limit: Maximum number of facts to include
        """
        if limit <= 0:
            return ""
        facts = sorted(
            self.active_facts(),
            key=lambda f: (_IMPORTANCE_ORDER[f.importance], f.established_in.sequence_key),
        )[:limit]
        lines = []
        for fact in facts:
            origin = fact.established_in.chapter_title or fact.established_in.chapter_id
            lines.append(f'{fact.subject}: {fact.attribute} = "{fact.current_value}" (from {origin})')
        return "\n".join(lines)

    def to_dict(self) -> dict:
        return {
            "version": "1.0",
            "book_id": self.book_id,
            "revision": self.revision,
            "aliases": self.aliases.to_dict(),
            "facts": [f.model_dump(mode="json") for f in self._facts.values()],
            "events": [e.model_dump(mode="json") for e in self._events],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FactStore":
        store = cls(data["book_id"], AliasRegistry(data.get("aliases", {})))
        for fact_data in data.get("facts", []):
            fact = StoryFact.model_validate(fact_data)
            store._facts[fact.id] = fact
            if fact.is_active:
                key = store.resolve_key(fact.subject, fact.attribute)
                if key in store._active:
                    raise StoreCorruptionError(
                        f"Two active facts for {key[0]}.{key[1]} in saved book {store.book_id}",
                        fact_key=key,
                        fact_ids=[store._active[key], fact.id],
                    )
                store._active[key] = fact.id
        for event_data in data.get("events", []):
            store.add_event(TimelineEvent.model_validate(event_data))
        store.revision = data.get("revision", 0)
        return store

    def save(self, path: Path) -> None:
        """Persist facts, events and aliases as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.to_dict(), f, indent=2, ensure_ascii=False)
        logger.info(f"Saved {self.fact_count} facts and {self.event_count} events to {path}")

    @classmethod
    def load(cls, book_id: str, path: Path) -> "FactStore":
        """
        Load a store from JSON.

        A missing file gives an empty store. An unreadable file is logged and
        also gives an empty store; a file that breaks the one-active-fact
        invariant raises StoreCorruptionError.
        """
        path = Path(path)
        if not path.exists():
            logger.debug(f"No saved facts at {path}, starting empty")
            return cls(book_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            if not isinstance(data, dict) or "facts" not in data:
                raise ValueError("Invalid fact store structure")
            data.setdefault("book_id", book_id)
            store = cls.from_dict(data)
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            logger.error(f"Failed to load facts from {path}: {e}")
            logger.warning("Starting with an empty fact store")
            return cls(book_id)
        logger.info(f"Loaded {store.fact_count} facts and {store.event_count} events from {path}")
        return store

    def iter_all_facts(self) -> Iterable[StoryFact]:
        """Every fact, including retired ones."""
        return iter(self._facts.values())


__all__ = [
    "UpsertOutcome",
    "UpsertResult",
    "CompactionConflict",
    "CompactionReport",
    "FactStore",
]
