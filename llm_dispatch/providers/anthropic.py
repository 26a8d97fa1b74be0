"""Anthropic Claude provider using anthropic SDK with native async."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic as anthropic_sdk

from llm_dispatch.providers.base import (
    AIProvider,
    CallParams,
    ProviderError,
    ProviderResponse,
    StreamHandle,
    TokenUsage,
    UsageTracker,
    guarded_call,
)
from llm_dispatch.providers.capabilities import generation_kwargs

logger = logging.getLogger(__name__)

_DEFAULT_MAX_TOKENS = 4096


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK.

    Structured output is produced by forcing a single tool call whose input
    schema is the requested structure.
    """

    def __init__(self, backend_id: str = "anthropic") -> None:
        self._name = backend_id
        self._clients: dict[tuple[str | None, str | None], anthropic_sdk.AsyncAnthropic] = {}

    def name(self) -> str:
        return self._name

    def _client(self, params: CallParams) -> anthropic_sdk.AsyncAnthropic:
        key = (params.api_key, params.base_url)
        if key not in self._clients:
            self._clients[key] = anthropic_sdk.AsyncAnthropic(api_key=params.api_key, base_url=params.base_url)
        return self._clients[key]

    def _request(self, params: CallParams, **overrides: Any) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": params.model_id,
            "messages": params.chat_messages,
            **generation_kwargs(params.capabilities, params.max_tokens or _DEFAULT_MAX_TOKENS, params.temperature),
            **params.extra,
        }
        if params.system_prompt:
            request["system"] = params.system_prompt
        request.update(overrides)
        return request

    def _tool_overrides(self, params: CallParams) -> dict[str, Any]:
        if params.schema is None:
            raise ProviderError(self._name, "Object generation requires a schema")
        return {
            "tools": [
                {
                    "name": params.object_name,
                    "description": f"Respond with a {params.object_name} object.",
                    "input_schema": params.schema,
                }
            ],
            "tool_choice": {"type": "tool", "name": params.object_name},
        }

    async def generate_text(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).messages.create(**self._request(params)),
            params.timeout_sec,
        )

        text_blocks = [b.text for b in response.content if b.type == "text"]
        if not text_blocks:
            raise ProviderError(self._name, "No text blocks in response")

        usage = _usage(response)
        logger.info("Anthropic text: %.2fs, %s", time.monotonic() - start, usage)
        return ProviderResponse(text="\n".join(text_blocks), usage=usage)

    async def generate_object(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).messages.create(**self._request(params, **self._tool_overrides(params))),
            params.timeout_sec,
        )

        tool_inputs = [b.input for b in response.content if b.type == "tool_use"]
        if not tool_inputs:
            raise ProviderError(self._name, "No tool_use block in response")

        usage = _usage(response)
        logger.info("Anthropic object: %.2fs, %s", time.monotonic() - start, usage)
        return ProviderResponse(object=tool_inputs[0], usage=usage)

    async def stream_text(self, params: CallParams) -> StreamHandle:
        stream = await guarded_call(
            self._name,
            self._client(params).messages.create(**self._request(params, stream=True)),
            params.timeout_sec,
        )
        tracker = UsageTracker()
        return StreamHandle(text_stream=_deltas(stream, tracker), usage=tracker.wait)

    async def stream_object(self, params: CallParams) -> StreamHandle:
        """Stream the forced tool call's input JSON as it is generated."""
        stream = await guarded_call(
            self._name,
            self._client(params).messages.create(
                **self._request(params, stream=True, **self._tool_overrides(params))
            ),
            params.timeout_sec,
        )
        tracker = UsageTracker()
        return StreamHandle(text_stream=_deltas(stream, tracker), usage=tracker.wait)


def _usage(response: Any) -> TokenUsage | None:
    if not response.usage:
        return None
    return TokenUsage(input_units=response.usage.input_tokens, output_units=response.usage.output_tokens)


async def _deltas(stream: Any, tracker: UsageTracker) -> AsyncIterator[str]:
    try:
        async for event in stream:
            if event.type == "message_start":
                tracker.record(input_units=event.message.usage.input_tokens)
            elif event.type == "message_delta":
                tracker.record(output_units=event.usage.output_tokens)
            elif event.type == "content_block_delta":
                if event.delta.type == "text_delta":
                    yield event.delta.text
                elif event.delta.type == "input_json_delta":
                    yield event.delta.partial_json
    finally:
        tracker.mark_drained()
