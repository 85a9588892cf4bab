"""
Tests for the LLM clients.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from continuity_guardian import llm_client
from continuity_guardian.config import ContinuityConfig
from continuity_guardian.llm_client import (
    AnthropicLLMClient,
    LLMAPIError,
    LLMConfigurationError,
    LLMDependencyError,
    MockLLMClient,
    MultiModelClient,
    create_llm_client,
)


class TestMockLLMClient:
    """Test the mock client."""

    @pytest.mark.anyio
    async def test_cycles_responses(self):
        client = MockLLMClient(responses=["one", "two"])
        assert await client.generate("a") == "one"
        assert await client.generate("b") == "two"
        assert await client.generate("c") == "one"
        assert client.call_count == 3
        assert client.calls[1]["prompt"] == "b"

    @pytest.mark.anyio
    async def test_default_response(self):
        client = MockLLMClient(default_response="[]")
        assert await client.generate("a", max_tokens=10) == "[]"
        assert client.calls[0]["max_tokens"] == 10

    @pytest.mark.anyio
    async def test_error(self):
        client = MockLLMClient(error=LLMAPIError("down"))
        with pytest.raises(LLMAPIError):
            await client.generate("a")
        assert client.call_count == 1

    @pytest.mark.anyio
    async def test_reset(self):
        client = MockLLMClient()
        await client.generate("a")
        client.reset()
        assert client.call_count == 0
        assert client.calls == []


class TestMultiModelClient:
    """Test role routing."""

    def test_get_client(self):
        extractor = MockLLMClient()
        multi = MultiModelClient({"extractor": extractor})
        assert multi.get_client("extractor") is extractor
        assert multi.has_role("extractor")
        assert not multi.has_role("judge")

    def test_unknown_role(self):
        multi = MultiModelClient({"extractor": MockLLMClient()})
        with pytest.raises(LLMConfigurationError, match="judge"):
            multi.get_client("judge")

    def test_create_mock_client(self):
        multi = create_llm_client(ContinuityConfig(llm_provider="mock"))
        assert isinstance(multi.get_client("extractor"), MockLLMClient)
        assert multi.get_client("judge") is multi.get_client("extractor")


class TestAnthropicLLMClient:
    """Test the Anthropic client with the SDK patched out."""

    def test_missing_dependency(self):
        with patch.object(llm_client, "_HAS_ANTHROPIC", False):
            with pytest.raises(LLMDependencyError):
                AnthropicLLMClient(api_key="key")

    @pytest.mark.anyio
    async def test_generate_joins_text_blocks(self):
        message = MagicMock()
        message.content = [MagicMock(text="[{"), MagicMock(text="}]")]
        message.usage.input_tokens = 10
        message.usage.output_tokens = 2
        sdk_client = MagicMock()
        sdk_client.messages.create = AsyncMock(return_value=message)

        with patch.object(llm_client, "_HAS_ANTHROPIC", True), \
                patch.object(llm_client, "AsyncAnthropic", MagicMock(return_value=sdk_client)), \
                patch.object(llm_client, "_anthropic_module", MagicMock()):
            client = AnthropicLLMClient(api_key="key", model="test-model")
            text = await client.generate("prompt", max_tokens=100)

        assert text == "[{}]"
        kwargs = sdk_client.messages.create.call_args.kwargs
        assert kwargs["model"] == "test-model"
        assert kwargs["max_tokens"] == 100
        assert kwargs["messages"] == [{"role": "user", "content": "prompt"}]
