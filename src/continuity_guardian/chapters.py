"""
Chapter loading from a book directory.

Chapters are Markdown or plain-text files under
``<data_dir>/books/<book_id>/chapters``, read in file-name order. The title
is the first Markdown heading when there is one, otherwise the file stem.
"""

import logging
import re
from pathlib import Path

from .book import book_dir
from .models import Chapter

logger = logging.getLogger("continuity-guardian")

CHAPTER_SUFFIXES = (".md", ".markdown", ".txt")
_HEADING_RE = re.compile(r"^\s{0,3}#{1,6}\s+(.+?)\s*#*\s*$", re.MULTILINE)


def chapters_dir(data_dir: Path, book_id: str) -> Path:
    return book_dir(data_dir, book_id) / "chapters"


def read_chapter(path: Path, index: int) -> Chapter:
    """Read one chapter file."""
    path = Path(path)
    content = path.read_text(encoding="utf-8")
    match = _HEADING_RE.search(content)
    title = match.group(1) if match else path.stem.replace("_", " ").replace("-", " ").strip()
    return Chapter(id=path.stem, title=title, index=index, content=content)


def load_chapters(data_dir: Path, book_id: str) -> list[Chapter]:
    """
    Load every chapter file of a book.

    Returns:
        Chapters in file-name order, indexed from 0 (empty if the directory
        does not exist)
    """
    directory = chapters_dir(data_dir, book_id)
    if not directory.is_dir():
        logger.warning(f"No chapters directory at {directory}")
        return []
    files = sorted(
        p for p in directory.iterdir()
        if p.is_file() and p.suffix.lower() in CHAPTER_SUFFIXES
    )
    chapters = [read_chapter(path, index) for index, path in enumerate(files)]
    logger.debug(f"Loaded {len(chapters)} chapters for book {book_id}")
    return chapters


__all__ = ["CHAPTER_SUFFIXES", "chapters_dir", "read_chapter", "load_chapters"]
