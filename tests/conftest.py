"""Shared pytest fixtures."""

from collections.abc import Iterable
from typing import Any
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, ProviderConfig, RetryConfig, RoleConfig, StreamingConfig
from llm_dispatch.orchestrator import ServiceOrchestrator
from llm_dispatch.providers.base import AIProvider, CallParams, ProviderResponse, StreamHandle, TokenUsage
from llm_dispatch.providers.capabilities import Capabilities
from llm_dispatch.usage import ModelPricing


def _provider_config(name: str, capabilities: Capabilities | None = None) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        sdk="test",
        api_key_env=None,
        timeout_sec=30,
        requires_api_key=False,
        capabilities=capabilities or Capabilities(),
    )


@pytest.fixture
def sample_app_config() -> AppConfig:
    """main -> alpha, fallback -> beta, research -> gamma; no keys, no delays."""
    return AppConfig(
        roles={
            "main": RoleConfig(provider="alpha", model="alpha-large", max_tokens=1024, temperature=0.2),
            "fallback": RoleConfig(provider="beta", model="beta-medium", max_tokens=1024),
            "research": RoleConfig(provider="gamma", model="gamma-online", max_tokens=512),
        },
        providers={name: _provider_config(name) for name in ("alpha", "beta", "gamma")},
        retry=RetryConfig(max_retries=2, base_delay_ms=1000),
        streaming=StreamingConfig(max_buffer_bytes=1024 * 1024, flush_wait_ms=0, timeout_sec=5, usage_timeout_ms=50),
        pricing={"alpha": {"alpha-large": ModelPricing(input_per_1m=3.0, output_per_1m=15.0)}},
        available_providers={"alpha", "beta", "gamma"},
    )


class MockProvider(AIProvider):
    """Test double AIProvider."""

    def __init__(self, provider_name: str = "mock", response_content: str = "Mock response") -> None:
        self._name = provider_name
        self._response_content = response_content
        # Shadow the class methods with AsyncMocks at the instance level.
        # ABC check passes because they are defined in the class body below.
        usage = TokenUsage(input_units=10, output_units=5)
        self.generate_text = AsyncMock(  # type: ignore[method-assign]
            return_value=ProviderResponse(text=response_content, usage=usage)
        )
        self.generate_object = AsyncMock(  # type: ignore[method-assign]
            return_value=ProviderResponse(object={"answer": response_content}, usage=usage)
        )
        self.stream_text = AsyncMock(  # type: ignore[method-assign]
            return_value=text_stream_handle([response_content])
        )

    def name(self) -> str:
        return self._name

    async def generate_text(self, params: CallParams) -> ProviderResponse:
        """Default implementation; replaced by AsyncMock in __init__."""
        return ProviderResponse(text=self._response_content)

    async def generate_object(self, params: CallParams) -> ProviderResponse:
        """Default implementation; replaced by AsyncMock in __init__."""
        return ProviderResponse(object={"answer": self._response_content})

    async def stream_text(self, params: CallParams) -> StreamHandle:
        """Default implementation; replaced by AsyncMock in __init__."""
        return text_stream_handle([self._response_content])

    def call_count(self) -> int:
        return self.generate_text.await_count + self.generate_object.await_count + self.stream_text.await_count


async def _achunks(chunks: Iterable[Any]):
    for chunk in chunks:
        yield chunk


def text_stream_handle(chunks: Iterable[Any], usage: TokenUsage | None = None) -> StreamHandle:
    """A StreamHandle whose ``text_stream`` yields ``chunks``."""

    async def _usage() -> TokenUsage | None:
        return usage

    return StreamHandle(text_stream=_achunks(list(chunks)), usage=_usage)


def async_chunks(chunks: Iterable[Any]):
    return _achunks(list(chunks))


@pytest.fixture
def mock_providers() -> dict[str, MockProvider]:
    return {
        "alpha": MockProvider("alpha", "Response from alpha"),
        "beta": MockProvider("beta", "Response from beta"),
        "gamma": MockProvider("gamma", "Response from gamma"),
    }


@pytest.fixture
def no_sleep() -> AsyncMock:
    return AsyncMock(return_value=None)


@pytest.fixture
def orchestrator(sample_app_config, mock_providers, no_sleep) -> ServiceOrchestrator:
    return ServiceOrchestrator(sample_app_config, mock_providers, env={}, sleep=no_sleep)
