"""
Tests for the continuity data model.

Tests cover:
- Subject, attribute and value normalization
- Dedup key stability
- Provenance ordering
- StoryFact value acceptance across history
- Issue and scan helpers
"""

from continuity_guardian.models import (
    ChangeType,
    ConsistencyIssue,
    FactCategory,
    FactChange,
    IssueLocation,
    IssueType,
    Provenance,
    ScanPhase,
    Severity,
    SeverityCounts,
    StoryFact,
    StoryTime,
    TimelineEvent,
    make_dedup_key,
    normalize_attribute,
    normalize_subject,
    normalize_value,
)


def _fact(value: str = "blue", chapter_id: str = "ch1", index: int | None = 0) -> StoryFact:
    return StoryFact(
        book_id="book",
        category=FactCategory.CHARACTER_TRAIT,
        subject="Marcus",
        attribute="eye_color",
        current_value=value,
        established_in=Provenance(chapter_id=chapter_id, chapter_index=index, excerpt=f"{value} eyes"),
    )


class TestNormalization:
    """Test key and value normalization."""

    def test_subject_strips_possessive_and_case(self):
        assert normalize_subject("Marcus's") == "marcus"
        assert normalize_subject("  Marcus   Webb ") == "marcus webb"
        assert normalize_subject("Marcus’s") == "marcus"

    def test_attribute_snake_case(self):
        assert normalize_attribute("Eye Color") == "eye_color"
        assert normalize_attribute("eye-color") == "eye_color"
        assert normalize_attribute("eye_color") == "eye_color"

    def test_value_drops_punctuation_and_article(self):
        assert normalize_value("The Blue!") == "blue"
        assert normalize_value("a  dark   brown") == "dark brown"
        assert normalize_value("Blue") == normalize_value("blue.")


class TestDedupKey:
    """Test dedup key construction."""

    def test_same_inputs_same_key(self):
        a = make_dedup_key(IssueType.CONTRADICTION, "Marcus", "Eye Color", "ch5")
        b = make_dedup_key("contradiction", "marcus", "eye_color", "ch5")
        assert a == b

    def test_chapter_changes_key(self):
        a = make_dedup_key(IssueType.CONTRADICTION, "Marcus", "eye_color", "ch5")
        b = make_dedup_key(IssueType.CONTRADICTION, "Marcus", "eye_color", "ch6")
        assert a != b

    def test_type_changes_key(self):
        a = make_dedup_key(IssueType.CONTRADICTION, "Marcus", "eye_color", "ch5")
        b = make_dedup_key(IssueType.TRAIT_INCONSISTENCY, "Marcus", "eye_color", "ch5")
        assert a != b


class TestProvenance:
    """Test manuscript ordering."""

    def test_sequence_key_orders_by_chapter_then_position(self):
        early = Provenance(chapter_id="ch1", chapter_index=0, position=500)
        later = Provenance(chapter_id="ch2", chapter_index=1, position=10)
        assert early.sequence_key < later.sequence_key

    def test_unindexed_sorts_last(self):
        indexed = Provenance(chapter_id="ch9", chapter_index=9)
        draft = Provenance(chapter_id="draft")
        assert indexed.sequence_key < draft.sequence_key


class TestStoryFact:
    """Test StoryFact helpers."""

    def test_key_is_normalized(self):
        fact = _fact()
        assert fact.key == ("marcus", "eye_color")

    def test_new_fact_is_active(self):
        assert _fact().is_active
        assert not _fact().model_copy(update={"merged_into": "fact_x"}).is_active

    def test_accepts_current_value(self):
        fact = _fact()
        assert fact.accepts_value("Blue", Provenance(chapter_id="ch7", chapter_index=6))

    def test_rejects_other_value(self):
        fact = _fact()
        assert not fact.accepts_value("green", Provenance(chapter_id="ch7", chapter_index=6))

    def test_accepts_prior_value_in_its_era(self):
        """A superseded value is still valid where it was in effect."""
        fact = _fact(value="green", chapter_id="ch5", index=4)
        fact.history.append(FactChange(
            previous_value="blue",
            new_value="green",
            changed_in=fact.established_in,
            previous_established_in=Provenance(chapter_id="ch1", chapter_index=0),
            change_type=ChangeType.RESOLUTION,
        ))

        assert fact.accepts_value("blue", Provenance(chapter_id="ch1", chapter_index=0))
        assert fact.accepts_value("blue", Provenance(chapter_id="ch3", chapter_index=2))
        assert not fact.accepts_value("blue", Provenance(chapter_id="ch6", chapter_index=5))
        assert fact.accepts_value("green", Provenance(chapter_id="ch6", chapter_index=5))

    def test_value_timeline(self):
        fact = _fact(value="green", chapter_id="ch5", index=4)
        fact.history.append(FactChange(
            previous_value="blue",
            new_value="green",
            changed_in=fact.established_in,
            previous_established_in=Provenance(chapter_id="ch1", chapter_index=0),
        ))
        values = [value for _, value in fact.value_timeline()]
        assert values == ["blue", "green"]


class TestTimelineEvent:
    """Test event helpers."""

    def test_identity_ignores_case_and_punctuation(self):
        a = TimelineEvent(description="Marcus leaves.", story_time=StoryTime(value="dawn"), chapter_id="ch1")
        b = TimelineEvent(description="marcus leaves", story_time=StoryTime(value="noon"), chapter_id="ch1")
        assert a.identity == b.identity


class TestIssueHelpers:
    """Test ConsistencyIssue and analysis helpers."""

    def test_primary_location(self):
        issue = ConsistencyIssue(
            book_id="book",
            type=IssueType.CONTRADICTION,
            severity=Severity.WARNING,
            title="t",
            description="d",
            locations=[
                IssueLocation(chapter_id="ch5", excerpt="green eyes"),
                IssueLocation(chapter_id="ch1", excerpt="blue eyes"),
            ],
        )
        assert issue.is_open
        assert issue.primary_excerpt == "green eyes"
        assert issue.primary_chapter_id == "ch5"

    def test_severity_rank(self):
        assert Severity.CRITICAL.rank > Severity.WARNING.rank > Severity.SUGGESTION.rank

    def test_severity_counts(self):
        counts = SeverityCounts(critical=1, warning=2)
        assert counts.total == 3
        assert counts.get(Severity.WARNING) == 2

    def test_terminal_phases(self):
        assert ScanPhase.COMPLETE.is_terminal
        assert ScanPhase.CANCELLED.is_terminal
        assert not ScanPhase.EXTRACTING.is_terminal
