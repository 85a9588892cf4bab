"""
Pytest configuration and fixtures for continuity-guardian tests.
"""

import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

# Add src directory to Python path to allow importing continuity_guardian
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

from continuity_guardian.config import ContinuityConfig  # noqa: E402


# Configure anyio to only use asyncio (not trio)
@pytest.fixture
def anyio_backend():
    return "asyncio"


class ScriptedCapability:
    """
    Extraction capability that answers by text marker.

    ``script`` maps a marker to the records (or exception) returned for any
    text containing it. Markers are tried in insertion order; text matching
    no marker yields no records.
    """

    def __init__(self, script: dict[str, Any] | None = None, delay: float = 0.0) -> None:
        self.script = dict(script or {})
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    @property
    def call_count(self) -> int:
        return len(self.calls)

    def calls_for(self, marker: str) -> int:
        return sum(1 for text, _ in self.calls if marker in text)

    async def extract(self, text: str, fact_context: str) -> list[dict]:
        self.calls.append((text, fact_context))
        if self.delay:
            await asyncio.sleep(self.delay)
        for marker, answer in self.script.items():
            if marker in text:
                if isinstance(answer, BaseException):
                    raise answer
                return [dict(record) for record in answer]
        return []


@pytest.fixture
def config() -> ContinuityConfig:
    """Config with mock LLM and no waiting."""
    return ContinuityConfig(
        llm_provider="mock",
        retry_delays=[0.0, 0.0],
        debounce_seconds=0.0,
        throttle_seconds=0.0,
    )


@pytest.fixture
def capability() -> ScriptedCapability:
    return ScriptedCapability()
