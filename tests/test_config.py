"""
Tests for ContinuityConfig.
"""

import json

import pytest
from pydantic import ValidationError

from continuity_guardian.config import ContinuityConfig, ScoreWeights


class TestDefaults:
    """Test default values."""

    def test_defaults(self):
        config = ContinuityConfig()
        assert config.extraction_timeout == 30.0
        assert config.extraction_attempts == 2
        assert config.judge_timeout == 20.0
        assert config.incremental_window_chars == 2000
        assert config.debounce_seconds == 2.0
        assert config.throttle_seconds == 3.0
        assert config.contradiction_strategy == "rules"
        assert config.score_weights == ScoreWeights(critical=8.0, warning=3.0, suggestion=1.0)

    def test_retry_delay_per_attempt(self):
        config = ContinuityConfig(retry_delays=[1.0, 2.0])
        assert config.retry_delay(1) == 1.0
        assert config.retry_delay(2) == 2.0
        assert config.retry_delay(5) == 2.0

    def test_retry_delay_without_delays(self):
        assert ContinuityConfig(retry_delays=[]).retry_delay(1) == 0.0


class TestValidation:
    """Test field validation."""

    def test_negative_delay_rejected(self):
        with pytest.raises(ValidationError):
            ContinuityConfig(retry_delays=[1.0, -1.0])

    def test_at_least_one_attempt(self):
        with pytest.raises(ValidationError):
            ContinuityConfig(extraction_attempts=0)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            ContinuityConfig(contradiction_strategy="vibes")

    def test_zero_concurrency_rejected(self):
        with pytest.raises(ValidationError):
            ContinuityConfig(scan_concurrency=0)


class TestFromEnv:
    """Test environment loading."""

    def test_reads_prefixed_variables(self):
        config = ContinuityConfig.from_env({
            "CONTINUITY_LLM_PROVIDER": "mock",
            "CONTINUITY_EXTRACTION_TIMEOUT": "12.5",
            "CONTINUITY_RERAISE_SUPPRESSED": "true",
            "CONTINUITY_RETRY_DELAYS": "0.5, 1.5",
            "UNRELATED": "x",
        })
        assert config.llm_provider == "mock"
        assert config.extraction_timeout == 12.5
        assert config.reraise_suppressed is True
        assert config.retry_delays == [0.5, 1.5]

    def test_empty_environment_gives_defaults(self):
        assert ContinuityConfig.from_env({}) == ContinuityConfig()

    def test_invalid_value_rejected(self):
        with pytest.raises(ValidationError):
            ContinuityConfig.from_env({"CONTINUITY_SCAN_CONCURRENCY": "zero"})


class TestPersistence:
    """Test JSON save/load."""

    def test_round_trip(self, tmp_path):
        path = tmp_path / "continuity_config.json"
        config = ContinuityConfig(throttle_seconds=5.0, score_weights=ScoreWeights(critical=10.0))
        config.save(path)

        assert json.loads(path.read_text())["throttle_seconds"] == 5.0
        assert ContinuityConfig.load(path) == config

    def test_missing_file_gives_defaults(self, tmp_path):
        assert ContinuityConfig.load(tmp_path / "missing.json") == ContinuityConfig()
