"""
Continuity Guardian - story fact tracking and consistency checking for long-form writing, served over FastMCP.
"""

from .config import ContinuityConfig
from .engine import ContinuityEngine
from .exceptions import ContinuityError
from .filters import FactFilter, IssueFilter
from .models import *
from .store import FactStore

try:
    from importlib.metadata import version as _get_version
    __version__ = _get_version("continuity-guardian")
except Exception:
    __version__ = "0.1.0"  # Fallback if metadata unavailable
__all__ = [
    "ContinuityConfig",
    "ContinuityEngine",
    "ContinuityError",
    "FactFilter",
    "FactStore",
    "IssueFilter",
]
