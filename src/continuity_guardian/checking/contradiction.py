"""
Contradiction judgement strategies.

Deciding whether a candidate value contradicts a stored value is pluggable:
- RuleBasedStrategy compares normalized values, tolerating refinements
  ("brown" vs "dark brown") and flagging negations ("alive" vs "not alive")
- LLMJudgeStrategy asks an LLM, falling back to the rules when the client
  is unavailable or the reply is unusable. A judgement that exceeds its
  timeout, or fails in any other way, raises ExtractionError.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Protocol

from ..config import ContinuityConfig
from ..exceptions import ExtractionError, ExtractionTimeoutError
from ..extraction.capability import strip_code_fences
from ..llm_client import LLMClientError
from ..models import CandidateFact, StoryFact, normalize_value

logger = logging.getLogger("continuity-guardian")

NEGATIONS = frozenset({"not", "no", "never", "none", "without", "nobody", "nothing", "isn", "wasn", "doesn", "didn"})


@dataclass
class Judgement:
    """Verdict of a contradiction strategy."""
    contradicts: bool
    reason: str = ""


class ContradictionStrategy(Protocol):
    """Decides whether a candidate value contradicts an active fact."""

    async def judge(self, fact: StoryFact, candidate: CandidateFact) -> Judgement:
        ...


class RuleBasedStrategy:
    """Normalized value comparison."""

    async def judge(self, fact: StoryFact, candidate: CandidateFact) -> Judgement:
        return self.compare(fact.current_value, candidate.value)

    @staticmethod
    def compare(established: str, candidate: str) -> Judgement:
        a = normalize_value(established)
        b = normalize_value(candidate)
        if a == b:
            return Judgement(False, "identical values")

        tokens_a = set(a.split())
        tokens_b = set(b.split())
        if bool(tokens_a & NEGATIONS) != bool(tokens_b & NEGATIONS):
            return Judgement(True, "one value negates the other")

        if tokens_a and tokens_b and (tokens_a <= tokens_b or tokens_b <= tokens_a):
            return Judgement(False, "one value refines the other")

        return Judgement(True)


JUDGE_PROMPT = """You check a novel for continuity errors.

Established fact about {subject} ({attribute}): "{established}"
Established by: "{established_excerpt}"

New passage states: "{candidate}"
New passage: "{candidate_excerpt}"

Do these two statements contradict each other, or can both be true in the
same story (a refinement, a paraphrase, or a compatible detail)?

Respond with ONLY JSON: {{"contradicts": true|false, "reason": "<one sentence>"}}
"""


class LLMJudgeStrategy:
    """
    Delegates the judgement to an LLM client.

    Args:
        client: Object with ``async generate(prompt, max_tokens)``
        timeout: Seconds before one judgement is abandoned
        max_tokens: Response budget for one judgement
    """

    def __init__(self, client: Any, timeout: float = 20.0, max_tokens: int = 300) -> None:
        self.client = client
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._fallback = RuleBasedStrategy()

    async def judge(self, fact: StoryFact, candidate: CandidateFact) -> Judgement:
        prompt = JUDGE_PROMPT.format(
            subject=fact.subject,
            attribute=fact.attribute.replace("_", " "),
            established=fact.current_value,
            established_excerpt=fact.established_in.excerpt,
            candidate=candidate.value,
            candidate_excerpt=candidate.established_in.excerpt,
        )
        try:
            response = await asyncio.wait_for(
                self.client.generate(prompt, max_tokens=self.max_tokens),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error(f"LLM judgement of {fact.subject}.{fact.attribute} timed out after {self.timeout}s")
            raise ExtractionTimeoutError(
                f"Contradiction judgement timed out after {self.timeout}s",
                operation="judge",
                timeout_seconds=self.timeout,
                chapter_id=candidate.established_in.chapter_id,
            ) from e
        except LLMClientError as e:
            logger.warning(f"LLM judge unavailable ({e}), using rule-based comparison")
            return await self._fallback.judge(fact, candidate)
        except Exception as e:
            logger.error(f"LLM judgement of {fact.subject}.{fact.attribute} failed: {e}")
            raise ExtractionError(
                f"Contradiction judgement failed: {e}",
                chapter_id=candidate.established_in.chapter_id,
            ) from e

        verdict = self._parse(response)
        if verdict is None:
            logger.warning("LLM judge reply unusable, using rule-based comparison")
            return await self._fallback.judge(fact, candidate)
        return verdict

    @staticmethod
    def _parse(response: str) -> Judgement | None:
        try:
            data = json.loads(strip_code_fences(response))
        except json.JSONDecodeError:
            return None
        if not isinstance(data, dict) or not isinstance(data.get("contradicts"), bool):
            return None
        return Judgement(data["contradicts"], str(data.get("reason", "")))


def create_strategy(config: ContinuityConfig, llm: Any = None) -> ContradictionStrategy:
    """
    Build the strategy named by ``config.contradiction_strategy``.

    Args:
        config: Engine configuration
        llm: MultiModelClient providing a "judge" role, required for "llm"
    """
    if config.contradiction_strategy == "llm":
        if llm is None or not llm.has_role("judge"):
            raise ValueError("contradiction_strategy 'llm' needs an LLM client with a 'judge' role")
        return LLMJudgeStrategy(llm.get_client("judge"), timeout=config.judge_timeout)
    return RuleBasedStrategy()


__all__ = [
    "Judgement",
    "ContradictionStrategy",
    "RuleBasedStrategy",
    "LLMJudgeStrategy",
    "JUDGE_PROMPT",
    "NEGATIONS",
    "create_strategy",
]
