"""
Per-book engine state and its on-disk layout.

Each book gets its own Fact Store, issue registry, write lock and scan
status. Nothing is shared between books.

On-disk layout (when the engine has a data directory):
    <data_dir>/books/<book_id>/facts.json
    <data_dir>/books/<book_id>/issues.json
    <data_dir>/books/<book_id>/chapters/*.md|*.txt
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from .config import ContinuityConfig
from .issues import IssueLifecycleManager
from .models import ScanStatus
from .store import FactStore

if TYPE_CHECKING:
    from .scan import ScanHandle

logger = logging.getLogger("continuity-guardian")


def book_dir(data_dir: Path, book_id: str) -> Path:
    return Path(data_dir) / "books" / book_id


@dataclass
class BookState:
    """Everything the engine holds for one book."""
    book_id: str
    store: FactStore
    lifecycle: IssueLifecycleManager
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    scan_status: Optional[ScanStatus] = None
    scan_handle: Optional["ScanHandle"] = None
    data_dir: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.scan_status is None:
            self.scan_status = ScanStatus(book_id=self.book_id)

    @property
    def directory(self) -> Optional[Path]:
        return book_dir(self.data_dir, self.book_id) if self.data_dir is not None else None

    @classmethod
    def open(cls, book_id: str, config: ContinuityConfig, data_dir: Optional[Path] = None) -> "BookState":
        """Create the state for a book, loading saved data when available."""
        if data_dir is None:
            return cls(book_id, FactStore(book_id), IssueLifecycleManager(book_id, config))

        directory = book_dir(data_dir, book_id)
        store = FactStore.load(book_id, directory / "facts.json")
        lifecycle = IssueLifecycleManager.load(book_id, directory / "issues.json", config)
        logger.debug(f"Opened book {book_id} from {directory}")
        return cls(book_id, store, lifecycle, data_dir=Path(data_dir))

    def save(self) -> None:
        """Persist facts and issues. A no-op for in-memory books."""
        directory = self.directory
        if directory is None:
            return
        self.store.save(directory / "facts.json")
        self.lifecycle.save(directory / "issues.json")


__all__ = ["BookState", "book_dir"]
