"""
Per-book storage of facts, timeline events and entity aliases.
"""

from .aliases import AliasRegistry
from .fact_store import (
    CompactionConflict,
    CompactionReport,
    FactStore,
    UpsertOutcome,
    UpsertResult,
)

__all__ = [
    "AliasRegistry",
    "CompactionConflict",
    "CompactionReport",
    "FactStore",
    "UpsertOutcome",
    "UpsertResult",
]
