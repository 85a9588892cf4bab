"""
Extraction capability: text in, structured records out.

The engine treats extraction as an external capability with the contract
``extract(text, fact_context) -> list[dict]``. Each record is a dict with a
``kind`` of "fact" or "event"; the Fact Extractor validates them.

LLMExtractionCapability implements the contract on top of an LLM client.
"""

import json
import logging
from typing import Any, Protocol

from ..config import ContinuityConfig

logger = logging.getLogger("continuity-guardian")


class ExtractionCapability(Protocol):
    """Anything that turns prose into fact and event records."""

    async def extract(self, text: str, fact_context: str) -> list[dict[str, Any]]:
        ...


EXTRACTION_PROMPT = """You are a continuity editor reading part of a novel.

Extract every concrete story fact and timeline event stated in the passage.

## Facts already established
{fact_context}

## Passage
{text}

## Output format
Respond with ONLY a JSON array. Each element is one record.

Fact record:
{{"kind": "fact", "category": "<category>", "subject": "<entity name>",
  "attribute": "<attribute, e.g. eye color>", "value": "<value>",
  "importance": "minor|significant|critical",
  "confidence": "explicit|implied|inferred",
  "excerpt": "<exact quote from the passage>"}}

Categories: character_trait, character_knowledge, character_status, timeline,
location, object, world_rule, relationship, plot_thread.

Event record:
{{"kind": "event", "description": "<what happened>",
  "story_time": "<when, as written>", "time_kind": "absolute|relative",
  "day_number": <integer day of the story, or null>,
  "characters": ["<name>"], "locations": ["<place>"],
  "deaths": ["<name of anyone who dies in this event>"],
  "importance": "minor|significant|critical",
  "excerpt": "<exact quote from the passage>"}}

Rules:
- Every excerpt must be copied verbatim from the passage.
- Use the same entity names and attribute names as the established facts when
  the passage refers to the same thing.
- Do not invent facts the passage does not support.
"""


def strip_code_fences(response: str) -> str:
    """Remove a markdown code fence around an LLM reply."""
    response = response.strip()
    if response.startswith("```json"):
        response = response[7:]
    if response.startswith("```"):
        response = response[3:]
    if response.endswith("```"):
        response = response[:-3]
    return response.strip()


def parse_extraction_response(response: str) -> list[dict[str, Any]]:
    """
    Parse an LLM reply into raw records.

    Accepts a bare JSON array or an object with "facts" and/or "events"
    arrays. Anything else is malformed output and yields no records.
    """
    try:
        data = json.loads(strip_code_fences(response))
    except json.JSONDecodeError as e:
        logger.warning(f"Extraction reply is not valid JSON, dropping it: {e}")
        return []

    if isinstance(data, list):
        return [record for record in data if isinstance(record, dict)]

    if isinstance(data, dict):
        records: list[dict[str, Any]] = []
        for kind, key in (("fact", "facts"), ("event", "events")):
            for record in data.get(key) or []:
                if isinstance(record, dict):
                    records.append({"kind": kind, **record})
        return records

    logger.warning(f"Extraction reply has unexpected type {type(data).__name__}, dropping it")
    return []


class LLMExtractionCapability:
    """
    Extraction capability backed by an LLM client.

    Args:
        client: Object with ``async generate(prompt, max_tokens)``
        config: Engine configuration (response budget)
    """

    def __init__(self, client: Any, config: ContinuityConfig | None = None) -> None:
        self.client = client
        self.config = config or ContinuityConfig()

    def build_prompt(self, text: str, fact_context: str) -> str:
        return EXTRACTION_PROMPT.format(
            fact_context=fact_context or "(none yet)",
            text=text,
        )

    async def extract(self, text: str, fact_context: str) -> list[dict[str, Any]]:
        prompt = self.build_prompt(text, fact_context)
        response = await self.client.generate(prompt, max_tokens=self.config.max_tokens)
        records = parse_extraction_response(response)
        logger.debug(f"LLM extraction returned {len(records)} records for {len(text)} chars")
        return records


__all__ = [
    "ExtractionCapability",
    "EXTRACTION_PROMPT",
    "LLMExtractionCapability",
    "parse_extraction_response",
    "strip_code_fences",
]
