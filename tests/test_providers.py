"""Unit tests for the provider contract and adapter helpers — no real API calls."""

import asyncio
from types import SimpleNamespace

import pytest

from llm_dispatch.models import ServiceKind
from llm_dispatch.providers import anthropic as anthropic_provider
from llm_dispatch.providers import openai_provider
from llm_dispatch.providers.anthropic import AnthropicProvider
from llm_dispatch.providers.base import CallParams, ProviderError, StreamHandle, TokenUsage, UsageTracker, guarded_call
from llm_dispatch.providers.capabilities import Capabilities
from llm_dispatch.providers.gemini import GeminiProvider
from llm_dispatch.providers.openai_provider import OpenAIProvider

from tests.conftest import MockProvider, async_chunks

SCHEMA = {"type": "object", "properties": {"answer": {"type": "string"}}}


def _params(**overrides) -> CallParams:
    defaults = {
        "api_key": "sk-test",
        "model_id": "test-model",
        "messages": [
            {"role": "system", "content": "Be brief.\n\nAlways respond in English."},
            {"role": "user", "content": "Hi"},
        ],
        "max_tokens": 256,
        "temperature": 0.5,
    }
    defaults.update(overrides)
    return CallParams(**defaults)


# --- base contract ---


@pytest.mark.parametrize("provider_cls", [AnthropicProvider, OpenAIProvider, GeminiProvider])
def test_sdk_client_is_reused_per_key(provider_cls):
    provider = provider_cls("backend")

    first = provider._client(_params())
    again = provider._client(_params(messages=[{"role": "user", "content": "Another"}]))
    other_key = provider._client(_params(api_key="sk-other"))

    assert again is first
    assert other_key is not first


def test_call_params_split_system_prompt():
    params = _params()
    assert params.system_prompt == "Be brief.\n\nAlways respond in English."
    assert params.chat_messages == [{"role": "user", "content": "Hi"}]


def test_provider_error_message_and_status():
    err = ProviderError("xai", "API call failed: overloaded", status=529)
    assert str(err) == "[xai] API call failed: overloaded"
    assert err.status == 529
    assert err.provider_name == "xai"


async def test_invoke_dispatches_by_kind():
    provider = MockProvider("alpha")
    params = _params()

    await provider.invoke(ServiceKind.TEXT, params)
    await provider.invoke("object", params)
    await provider.invoke(ServiceKind.STREAM_OBJECT, params)

    provider.generate_text.assert_awaited_once_with(params)
    provider.generate_object.assert_awaited_once_with(params)
    # stream_object defaults to the text stream.
    provider.stream_text.assert_awaited_once_with(params)


async def test_guarded_call_wraps_timeout():
    async def _hang():
        await asyncio.sleep(5)

    with pytest.raises(ProviderError, match=r"\[alpha\] Request timeout after 0.01s"):
        await guarded_call("alpha", _hang(), 0.01)


async def test_guarded_call_wraps_sdk_errors_with_status():
    class _SDKError(Exception):
        status_code = 503

    async def _fail():
        raise _SDKError("upstream unavailable")

    with pytest.raises(ProviderError) as exc_info:
        await guarded_call("alpha", _fail(), 5)

    assert "API call failed: upstream unavailable" in str(exc_info.value)
    assert exc_info.value.status == 503


async def test_usage_tracker_reports_after_drain():
    tracker = UsageTracker()
    tracker.record(input_units=12)
    tracker.record(output_units=34)
    tracker.mark_drained()
    assert await tracker.wait() == TokenUsage(12, 34)


async def test_usage_tracker_without_reports_is_none():
    tracker = UsageTracker()
    tracker.mark_drained()
    assert await tracker.wait() is None


async def test_stream_handle_without_usage():
    assert await StreamHandle(text_stream=async_chunks([])).get_usage() is None


# --- anthropic ---


def test_anthropic_request_moves_system_prompt():
    request = AnthropicProvider()._request(_params())
    assert request["system"] == "Be brief.\n\nAlways respond in English."
    assert request["messages"] == [{"role": "user", "content": "Hi"}]
    assert request["max_tokens"] == 256
    assert request["temperature"] == 0.5


def test_anthropic_request_respects_capabilities():
    params = _params(max_tokens=None, capabilities=Capabilities(supports_temperature=False))
    request = AnthropicProvider()._request(params)
    assert request["max_tokens"] == 4096
    assert "temperature" not in request


def test_anthropic_tool_overrides_force_tool():
    overrides = AnthropicProvider()._tool_overrides(_params(schema=SCHEMA, object_name="answer_obj"))
    assert overrides["tools"][0]["input_schema"] == SCHEMA
    assert overrides["tool_choice"] == {"type": "tool", "name": "answer_obj"}


def test_anthropic_object_without_schema_fails():
    with pytest.raises(ProviderError, match="requires a schema"):
        AnthropicProvider()._tool_overrides(_params())


async def test_anthropic_deltas_yield_text_and_record_usage():
    events = [
        SimpleNamespace(type="message_start", message=SimpleNamespace(usage=SimpleNamespace(input_tokens=40))),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="text_delta", text="Hel")),
        SimpleNamespace(type="content_block_delta", delta=SimpleNamespace(type="input_json_delta", partial_json='{"a"')),
        SimpleNamespace(type="message_delta", usage=SimpleNamespace(output_tokens=7)),
        SimpleNamespace(type="message_stop"),
    ]
    tracker = UsageTracker()

    chunks = [c async for c in anthropic_provider._deltas(async_chunks(events), tracker)]

    assert chunks == ["Hel", '{"a"']
    assert await tracker.wait() == TokenUsage(40, 7)


# --- openai ---


def test_openai_object_overrides_tool_mode():
    overrides = OpenAIProvider()._object_overrides(_params(schema=SCHEMA))
    assert overrides["tools"][0]["function"]["parameters"] == SCHEMA
    assert overrides["tool_choice"]["function"]["name"] == "generated_object"


def test_openai_object_overrides_json_mode():
    params = _params(schema=SCHEMA, capabilities=Capabilities(needs_explicit_json_schema=True))
    overrides = OpenAIProvider("ollama")._object_overrides(params)
    assert overrides["response_format"]["type"] == "json_schema"
    assert overrides["response_format"]["json_schema"]["schema"] == SCHEMA


def test_openai_request_keeps_system_message():
    request = OpenAIProvider("xai")._request(_params(extra={"seed": 7}))
    assert request["messages"][0]["role"] == "system"
    assert request["seed"] == 7


async def test_openai_deltas_yield_content_and_tool_arguments():
    def _chunk(content=None, arguments=None, usage=None):
        tool_calls = [SimpleNamespace(function=SimpleNamespace(arguments=arguments))] if arguments else None
        choices = [SimpleNamespace(delta=SimpleNamespace(content=content, tool_calls=tool_calls))]
        return SimpleNamespace(choices=choices if (content or arguments) else [], usage=usage)

    stream = [
        _chunk(content="Hello"),
        _chunk(arguments='{"answer":'),
        _chunk(arguments=' "42"}'),
        _chunk(usage=SimpleNamespace(prompt_tokens=9, completion_tokens=3)),
    ]
    tracker = UsageTracker()

    chunks = [c async for c in openai_provider._deltas(async_chunks(stream), tracker)]

    assert chunks == ["Hello", '{"answer":', ' "42"}']
    assert await tracker.wait() == TokenUsage(9, 3)


# --- gemini ---


def test_gemini_contents_map_roles():
    params = _params(
        messages=[
            {"role": "system", "content": "sys"},
            {"role": "user", "content": "q1"},
            {"role": "assistant", "content": "a1"},
        ]
    )
    contents = GeminiProvider._contents(params)
    assert [c["role"] for c in contents] == ["user", "model"]
    assert contents[1]["parts"] == [{"text": "a1"}]


def test_gemini_json_config_uses_schema():
    config = GeminiProvider()._config(_params(schema=SCHEMA), as_json=True)
    assert config.response_mime_type == "application/json"
    assert config.max_output_tokens == 256
    assert config.temperature == 0.5


def test_gemini_object_without_schema_fails():
    with pytest.raises(ProviderError, match="requires a schema"):
        GeminiProvider()._config(_params(), as_json=True)
