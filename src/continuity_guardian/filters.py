"""
Typed query filters for facts and issues.

Each filter dimension is a closed vocabulary (an Enum from ``models``), and
unknown keys are rejected, so an invalid filter cannot be constructed.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from .models import (
    ConsistencyIssue,
    FactCategory,
    Importance,
    IssueStatus,
    IssueType,
    Severity,
    StoryFact,
    normalize_subject,
)


class FactFilter(BaseModel):
    """Filter for fact queries. Unset fields match everything."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    category: Optional[FactCategory] = None
    importance: Optional[Importance] = None
    subject: Optional[str] = None
    chapter_id: Optional[str] = None

    def matches(self, fact: StoryFact) -> bool:
        if self.category is not None and fact.category != self.category:
            return False
        if self.importance is not None and fact.importance != self.importance:
            return False
        if self.subject is not None and normalize_subject(fact.subject) != normalize_subject(self.subject):
            return False
        if self.chapter_id is not None and fact.established_in.chapter_id != self.chapter_id:
            return False
        return True


class IssueFilter(BaseModel):
    """Filter for issue queries. Unset fields match everything."""
    model_config = ConfigDict(frozen=True, extra="forbid")

    severity: Optional[Severity] = None
    status: Optional[IssueStatus] = None
    type: Optional[IssueType] = None
    chapter_id: Optional[str] = None

    def matches(self, issue: ConsistencyIssue) -> bool:
        if self.severity is not None and issue.severity != self.severity:
            return False
        if self.status is not None and issue.status != self.status:
            return False
        if self.type is not None and issue.type != self.type:
            return False
        if self.chapter_id is not None and all(
            loc.chapter_id != self.chapter_id for loc in issue.locations
        ):
            return False
        return True


__all__ = ["FactFilter", "IssueFilter"]
