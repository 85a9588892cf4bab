"""
Configuration for the Continuity Guardian engine.

All tunables live on one validated pydantic model. ``from_env`` builds a
config from ``CONTINUITY_*`` environment variables (the server loads a ``.env``
file first), and ``load``/``save`` persist it as JSON next to book data.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("continuity-guardian")

ENV_PREFIX = "CONTINUITY_"


class ScoreWeights(BaseModel):
    """Penalty weight per severity tier."""
    critical: float = Field(default=8.0, ge=0.0)
    warning: float = Field(default=3.0, ge=0.0)
    suggestion: float = Field(default=1.0, ge=0.0)


class ContinuityConfig(BaseModel):
    """
    Engine-wide settings.

    Attributes:
        llm_provider: Backend for extraction and judgement ("anthropic" or "mock")
        llm_model: Model identifier passed to the provider
        temperature: Sampling temperature for extraction calls
        max_tokens: Response budget per extraction call
        extraction_timeout: Seconds before an extraction call is abandoned
        extraction_attempts: Calls made for one chapter in a batch scan before it is marked stale
        retry_delays: Backoff delays in seconds, one per retry
        judge_timeout: Seconds before an LLM contradiction judgement is abandoned
        incremental_window_chars: Trailing characters examined by an incremental check
        max_chunk_chars: Largest span sent to the extractor in one call
        fact_context_limit: Number of existing facts summarized for the extractor
        scan_concurrency: Chapter extractions running at once during a scan
        debounce_seconds: Quiet period after an edit before a check runs
        throttle_seconds: Minimum spacing between executed checks per session
        reraise_suppressed: Re-open dismissed / won't-fix issues when detected again
        contradiction_strategy: "rules" for value comparison, "llm" to delegate
        check_time_of_day: Run the low-confidence time-of-day heuristic
        report_minor_issues: Keep suggestion-tier issues
        score_weights: Severity weights for the continuity score
    """
    llm_provider: Literal["anthropic", "mock"] = "anthropic"
    llm_model: str = "claude-sonnet-4-5-20250929"
    temperature: float = Field(default=0.0, ge=0.0, le=2.0)
    max_tokens: int = Field(default=4000, ge=256)

    extraction_timeout: float = Field(default=30.0, gt=0.0)
    extraction_attempts: int = Field(default=2, ge=1, le=6)
    retry_delays: list[float] = Field(default_factory=lambda: [1.0])
    judge_timeout: float = Field(default=20.0, gt=0.0)

    incremental_window_chars: int = Field(default=2000, ge=100)
    max_chunk_chars: int = Field(default=15000, ge=500)
    fact_context_limit: int = Field(default=100, ge=0)

    scan_concurrency: int = Field(default=4, ge=1, le=16)
    debounce_seconds: float = Field(default=2.0, ge=0.0)
    throttle_seconds: float = Field(default=3.0, ge=0.0)

    reraise_suppressed: bool = False
    contradiction_strategy: Literal["rules", "llm"] = "rules"
    check_time_of_day: bool = True
    report_minor_issues: bool = True

    score_weights: ScoreWeights = Field(default_factory=ScoreWeights)

    @field_validator("retry_delays")
    @classmethod
    def _non_negative_delays(cls, value: list[float]) -> list[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("retry_delays must be non-negative")
        return value

    def retry_delay(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (1-based)."""
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ContinuityConfig":
        """
        Build a config from ``CONTINUITY_<FIELD>`` environment variables.

        Unknown variables are ignored; values are validated by the model.
        ``CONTINUITY_RETRY_DELAYS`` is a comma-separated list of seconds.

        Args:
            environ: Mapping to read instead of ``os.environ``

        Returns:
            Validated ContinuityConfig
        """
        env = os.environ if environ is None else environ
        overrides: dict[str, Any] = {}
        for name in cls.model_fields:
            if name == "score_weights":
                continue
            raw = env.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if name == "retry_delays":
                overrides[name] = [float(part) for part in raw.split(",") if part.strip()]
            else:
                overrides[name] = raw
        return cls.model_validate(overrides)

    @classmethod
    def load(cls, path: Path) -> "ContinuityConfig":
        """Load a config from JSON, falling back to defaults if missing."""
        path = Path(path)
        if not path.exists():
            logger.debug(f"No config at {path}, using defaults")
            return cls()
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return cls.model_validate(data)

    def save(self, path: Path) -> None:
        """Persist the config as JSON."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self.model_dump(mode="json"), f, indent=2)
        logger.info(f"Saved continuity config to {path}")


__all__ = ["ContinuityConfig", "ScoreWeights", "ENV_PREFIX"]
