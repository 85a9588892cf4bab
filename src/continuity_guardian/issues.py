"""
Issue Lifecycle Manager.

Owns every ConsistencyIssue of one book: registration with deduplication,
status transitions, resolution and persistence.

Transitions:
    open         -> acknowledged | resolved | dismissed
    acknowledged -> resolved | dismissed
    resolved     -> open   (reopen only)
    dismissed    -> open   (reopen only)
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Optional

from .config import ContinuityConfig
from .exceptions import InvalidTransitionError, IssueNotFoundError
from .filters import IssueFilter
from .models import (
    ConsistencyIssue,
    IssueStatus,
    Resolution,
    ResolutionMethod,
    StatusChange,
)
from .store import FactStore

logger = logging.getLogger("continuity-guardian")

ALLOWED_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.OPEN: frozenset({IssueStatus.ACKNOWLEDGED, IssueStatus.RESOLVED, IssueStatus.DISMISSED}),
    IssueStatus.ACKNOWLEDGED: frozenset({IssueStatus.RESOLVED, IssueStatus.DISMISSED}),
    IssueStatus.RESOLVED: frozenset(),
    IssueStatus.DISMISSED: frozenset(),
}

ACTIVE_STATUSES = frozenset({IssueStatus.OPEN, IssueStatus.ACKNOWLEDGED})


class RegistrationOutcome(str, Enum):
    """What happened to a detected issue."""
    CREATED = "created"
    REFRESHED = "refreshed"
    SUPPRESSED = "suppressed"
    RECURRED = "recurred"
    REOPENED = "reopened"


@dataclass
class Registration:
    outcome: RegistrationOutcome
    issue: ConsistencyIssue

    @property
    def visible(self) -> bool:
        """Whether the detection should be shown to the author."""
        return self.outcome in (
            RegistrationOutcome.CREATED,
            RegistrationOutcome.REFRESHED,
            RegistrationOutcome.REOPENED,
        )


class IssueLifecycleManager:
    """
    Issue registry for one book.

    Attributes:
        book_id: Book the issues belong to
        config: Engine configuration (``reraise_suppressed``)
        _issues: Issues by id, in detection order
        _by_key: Issue id per dedup key
    """

    def __init__(self, book_id: str, config: ContinuityConfig | None = None) -> None:
        self.book_id = book_id
        self.config = config or ContinuityConfig()
        self._issues: dict[str, ConsistencyIssue] = {}
        self._by_key: dict[str, str] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, detected: ConsistencyIssue) -> Registration:
        """
        Register a detection, deduplicating by ``dedup_key``.

        - no issue with the key: created
        - open or acknowledged issue: refreshed in place
        - dismissed, or resolved as won't fix: suppressed
        - resolved as fixed or intentional: counted as a recurrence
        With ``reraise_suppressed`` the last two reopen the issue instead.
        """
        existing_id = self._by_key.get(detected.dedup_key)
        if existing_id is None:
            detected.book_id = self.book_id
            self._issues[detected.id] = detected
            self._by_key[detected.dedup_key] = detected.id
            logger.debug(f"New issue {detected.id} ({detected.type.value}, {detected.severity.value})")
            return Registration(RegistrationOutcome.CREATED, detected)

        issue = self._issues[existing_id]
        now = datetime.now(timezone.utc)
        issue.last_detected_at = now

        if issue.status in ACTIVE_STATUSES:
            self._refresh(issue, detected)
            return Registration(RegistrationOutcome.REFRESHED, issue)

        if self.config.reraise_suppressed:
            self._refresh(issue, detected)
            self._apply(issue, IssueStatus.OPEN, "detected again")
            issue.resolution = None
            logger.info(f"Re-raised closed issue {issue.id}")
            return Registration(RegistrationOutcome.REOPENED, issue)

        suppressed = issue.status == IssueStatus.DISMISSED or (
            issue.resolution is not None and issue.resolution.method == ResolutionMethod.WONT_FIX
        )
        if suppressed:
            logger.debug(f"Suppressed re-detection of {issue.status.value} issue {issue.id}")
            return Registration(RegistrationOutcome.SUPPRESSED, issue)

        issue.recurrence_count += 1
        logger.warning(
            f"Resolved issue {issue.id} detected again (recurrence {issue.recurrence_count})"
        )
        return Registration(RegistrationOutcome.RECURRED, issue)

    def register_many(self, detected: list[ConsistencyIssue]) -> list[ConsistencyIssue]:
        """Register detections and return the visible issues, without duplicates."""
        visible: list[ConsistencyIssue] = []
        seen: set[str] = set()
        for issue in detected:
            registration = self.register(issue)
            if registration.visible and registration.issue.id not in seen:
                seen.add(registration.issue.id)
                visible.append(registration.issue)
        return visible

    @staticmethod
    def _refresh(issue: ConsistencyIssue, detected: ConsistencyIssue) -> None:
        issue.title = detected.title
        issue.description = detected.description
        issue.locations = detected.locations
        issue.suggestions = detected.suggestions
        issue.severity = detected.severity
        issue.conflicting_value = detected.conflicting_value
        issue.conflicting_provenance = detected.conflicting_provenance
        for fact_id in detected.related_fact_ids:
            if fact_id not in issue.related_fact_ids:
                issue.related_fact_ids.append(fact_id)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def get(self, issue_id: str) -> ConsistencyIssue:
        issue = self._issues.get(issue_id)
        if issue is None:
            raise IssueNotFoundError(
                f"Issue '{issue_id}' not found",
                details={"book_id": self.book_id, "issue_id": issue_id},
            )
        return issue

    def _check(self, issue: ConsistencyIssue, target: IssueStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[issue.status]:
            raise InvalidTransitionError(
                f"Cannot move issue {issue.id} from {issue.status.value} to {target.value}",
                current_status=issue.status.value,
                requested_status=target.value,
                details={"issue_id": issue.id},
            )

    @staticmethod
    def _apply(issue: ConsistencyIssue, target: IssueStatus, reason: str) -> None:
        issue.status_history.append(StatusChange(
            from_status=issue.status,
            to_status=target,
            reason=reason,
        ))
        issue.status = target

    def acknowledge(self, issue_id: str, notes: str = "") -> ConsistencyIssue:
        issue = self.get(issue_id)
        self._check(issue, IssueStatus.ACKNOWLEDGED)
        self._apply(issue, IssueStatus.ACKNOWLEDGED, notes)
        logger.info(f"Acknowledged issue {issue_id}")
        return issue

    def dismiss(self, issue_id: str, notes: str = "") -> ConsistencyIssue:
        issue = self.get(issue_id)
        self._check(issue, IssueStatus.DISMISSED)
        self._apply(issue, IssueStatus.DISMISSED, notes)
        logger.info(f"Dismissed issue {issue_id}")
        return issue

    def resolve(
        self,
        issue_id: str,
        method: ResolutionMethod,
        notes: str = "",
        store: Optional[FactStore] = None,
    ) -> ConsistencyIssue:
        """
        Resolve an issue.

        With ``method=intentional`` the value found in the offending text
        becomes canonical: ``store.supersede`` is called with the issue's
        conflicting value and provenance.

        Raises:
            IssueNotFoundError: Unknown issue id
            InvalidTransitionError: Issue is already closed
            FactNotFoundError: The fact the issue refers to no longer exists
        """
        issue = self.get(issue_id)
        self._check(issue, IssueStatus.RESOLVED)

        if (
            method == ResolutionMethod.INTENTIONAL
            and issue.fact_key is not None
            and issue.conflicting_value
            and issue.conflicting_provenance is not None
        ):
            if store is None:
                raise ValueError("Resolving an issue as intentional needs the book's fact store")
            store.supersede(
                issue.fact_key,
                issue.conflicting_value,
                issue.conflicting_provenance,
                notes=notes or None,
            )

        issue.resolution = Resolution(method=method, notes=notes)
        self._apply(issue, IssueStatus.RESOLVED, f"{method.value}: {notes}" if notes else method.value)
        logger.info(f"Resolved issue {issue_id} as {method.value}")
        return issue

    def reopen(self, issue_id: str, reason: str = "") -> ConsistencyIssue:
        issue = self.get(issue_id)
        if issue.status not in (IssueStatus.RESOLVED, IssueStatus.DISMISSED):
            raise InvalidTransitionError(
                f"Only resolved or dismissed issues can be reopened (issue {issue_id} is {issue.status.value})",
                current_status=issue.status.value,
                requested_status=IssueStatus.OPEN.value,
                details={"issue_id": issue_id},
            )
        self._apply(issue, IssueStatus.OPEN, reason or "reopened")
        issue.resolution = None
        logger.info(f"Reopened issue {issue_id}")
        return issue

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, issue_filter: IssueFilter | None = None) -> list[ConsistencyIssue]:
        issues = list(self._issues.values())
        if issue_filter is not None:
            issues = [i for i in issues if issue_filter.matches(i)]
        return issues

    def active(self) -> list[ConsistencyIssue]:
        """Open and acknowledged issues."""
        return [i for i in self._issues.values() if i.status in ACTIVE_STATUSES]

    def __len__(self) -> int:
        return len(self._issues)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def save(self, path: Path) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "version": "1.0",
            "book_id": self.book_id,
            "issues": [i.model_dump(mode="json") for i in self._issues.values()],
        }
        with open(path, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        logger.info(f"Saved {len(self._issues)} issues to {path}")

    @classmethod
    def load(cls, book_id: str, path: Path, config: ContinuityConfig | None = None) -> "IssueLifecycleManager":
        """Load issues from JSON; a missing or unreadable file gives an empty registry."""
        manager = cls(book_id, config)
        path = Path(path)
        if not path.exists():
            return manager
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            for issue_data in data.get("issues", []):
                issue = ConsistencyIssue.model_validate(issue_data)
                manager._issues[issue.id] = issue
                manager._by_key[issue.dedup_key] = issue.id
        except (json.JSONDecodeError, ValueError, TypeError, AttributeError) as e:
            logger.error(f"Failed to load issues from {path}: {e}")
            logger.warning("Starting with an empty issue list")
            return cls(book_id, config)
        logger.info(f"Loaded {len(manager)} issues from {path}")
        return manager


__all__ = [
    "ALLOWED_TRANSITIONS",
    "ACTIVE_STATUSES",
    "RegistrationOutcome",
    "Registration",
    "IssueLifecycleManager",
]
