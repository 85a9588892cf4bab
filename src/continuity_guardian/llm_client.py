"""
LLM clients used by the extraction capability and the LLM contradiction judge.

Provides one small async protocol, ``generate(prompt, max_tokens) -> str``,
with three implementations:
- MockLLMClient: canned responses and call recording for tests
- AnthropicLLMClient: the Anthropic Messages API via the official SDK
- MultiModelClient: per-role routing ("extractor", "judge")
"""

import logging
import os
from typing import Any, Protocol

from .config import ContinuityConfig

logger = logging.getLogger("continuity-guardian")

# Optional dependency; kept at module level so tests can patch it
try:
    from anthropic import AsyncAnthropic
    import anthropic as _anthropic_module
    _HAS_ANTHROPIC = True
except ImportError:
    AsyncAnthropic = None  # type: ignore[assignment,misc]
    _anthropic_module = None  # type: ignore[assignment]
    _HAS_ANTHROPIC = False


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------


class LLMClientError(Exception):
    """Base exception for LLM client errors."""
    pass


class LLMConfigurationError(LLMClientError):
    """Raised when an LLM client is misconfigured."""
    pass


class LLMAPIError(LLMClientError):
    """Raised when the provider API returns an error."""
    pass


class LLMRateLimitError(LLMClientError):
    """Raised when the provider rate limit is exceeded."""
    pass


class LLMDependencyError(LLMClientError):
    """Raised when the provider SDK is not installed."""
    pass


class LLMClient(Protocol):
    """Anything that turns a prompt into text."""

    async def generate(self, prompt: str, max_tokens: int | None = None) -> str:
        ...


# ---------------------------------------------------------------------------
# Mock client
# ---------------------------------------------------------------------------


class MockLLMClient:
    """Mock LLM client for tests.

    Args:
        responses: Responses returned in order, cycling when exhausted.
        default_response: Returned when ``responses`` is empty.
        error: Exception raised by every call instead of responding.

    Example:
        >>> mock = MockLLMClient(responses=['{"facts": []}'])
        >>> await mock.generate("prompt")
        '{"facts": []}'
    """

    def __init__(
        self,
        responses: list[str] | None = None,
        default_response: str = "{}",
        error: Exception | None = None,
    ) -> None:
        self.responses = responses or []
        self.default_response = default_response
        self.error = error
        self.call_count = 0
        self.calls: list[dict[str, Any]] = []

    async def generate(self, prompt: str, max_tokens: int | None = None) -> str:
        self.calls.append({"prompt": prompt, "max_tokens": max_tokens})
        self.call_count += 1

        if self.error is not None:
            raise self.error

        if not self.responses:
            return self.default_response

        return self.responses[(self.call_count - 1) % len(self.responses)]

    def reset(self) -> None:
        """Reset call history."""
        self.call_count = 0
        self.calls.clear()


# ---------------------------------------------------------------------------
# Anthropic client
# ---------------------------------------------------------------------------


class AnthropicLLMClient:
    """Anthropic Messages API client.

    Args:
        api_key: API key. If None, reads ANTHROPIC_API_KEY.
        model: Model identifier.
        temperature: Sampling temperature (0.0-2.0).
        default_max_tokens: Used when ``generate`` gets no max_tokens.

    Raises:
        LLMDependencyError: If the anthropic package is not installed.
        LLMConfigurationError: If no API key is available.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str = "claude-sonnet-4-5-20250929",
        temperature: float = 0.0,
        default_max_tokens: int = 4000,
    ) -> None:
        if not _HAS_ANTHROPIC:
            raise LLMDependencyError(
                "The 'anthropic' package is required to use AnthropicLLMClient. "
                "Install it with: pip install continuity-guardian[anthropic]"
            )

        self._anthropic_module = _anthropic_module

        self.api_key = api_key or os.getenv("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise LLMConfigurationError(
                "Anthropic API key is required. Provide it via the 'api_key' parameter "
                "or set the ANTHROPIC_API_KEY environment variable."
            )

        self.model = model
        self.temperature = temperature
        self.default_max_tokens = default_max_tokens
        self.client = AsyncAnthropic(api_key=self.api_key)

        logger.info(
            f"Initialized AnthropicLLMClient with model={model}, "
            f"temperature={temperature}, default_max_tokens={default_max_tokens}"
        )

    async def generate(self, prompt: str, max_tokens: int | None = None) -> str:
        """Send one user message and return the concatenated text blocks.

        Raises:
            LLMRateLimitError: If the rate limit is exceeded.
            LLMAPIError: For any other provider error.
        """
        if max_tokens is None:
            max_tokens = self.default_max_tokens

        try:
            message = await self.client.messages.create(
                model=self.model,
                max_tokens=max_tokens,
                temperature=self.temperature,
                messages=[{"role": "user", "content": prompt}],
            )
        except self._anthropic_module.RateLimitError as e:
            logger.error(f"Rate limit exceeded: {e}")
            raise LLMRateLimitError(f"Rate limit exceeded: {e}") from e
        except self._anthropic_module.APIError as e:
            logger.error(f"Anthropic API error: {e}")
            raise LLMAPIError(f"API error: {e}") from e

        text = "".join(block.text for block in message.content if hasattr(block, "text"))
        logger.debug(
            f"Generated {len(text)} chars with model {self.model} "
            f"(tokens: {message.usage.input_tokens} in, {message.usage.output_tokens} out)"
        )
        return text


# ---------------------------------------------------------------------------
# Multi-model client
# ---------------------------------------------------------------------------


class MultiModelClient:
    """Routes roles ("extractor", "judge") to their own clients.

    Args:
        clients: Mapping of role name to client.
    """

    def __init__(self, clients: dict[str, Any]) -> None:
        self.clients = clients
        logger.info(f"Initialized MultiModelClient with roles: {list(clients.keys())}")

    def get_client(self, role: str) -> Any:
        """Return the client for ``role``.

        Raises:
            LLMConfigurationError: If the role is not configured.
        """
        if role not in self.clients:
            raise LLMConfigurationError(
                f"No LLM client configured for role '{role}'. "
                f"Available roles: {list(self.clients.keys())}"
            )
        return self.clients[role]

    def has_role(self, role: str) -> bool:
        return role in self.clients


def create_llm_client(config: ContinuityConfig) -> MultiModelClient:
    """Build the per-role clients described by ``config``.

    Both roles share one client; the judge is only used when
    ``contradiction_strategy`` is "llm".
    """
    if config.llm_provider == "mock":
        client: Any = MockLLMClient()
    else:
        client = AnthropicLLMClient(
            model=config.llm_model,
            temperature=config.temperature,
            default_max_tokens=config.max_tokens,
        )
    return MultiModelClient({"extractor": client, "judge": client})


__all__ = [
    "LLMClient",
    "LLMClientError",
    "LLMConfigurationError",
    "LLMAPIError",
    "LLMRateLimitError",
    "LLMDependencyError",
    "MockLLMClient",
    "AnthropicLLMClient",
    "MultiModelClient",
    "create_llm_client",
]
