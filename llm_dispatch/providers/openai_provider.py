"""OpenAI provider using openai SDK with native async.

Also serves OpenAI-compatible endpoints (xAI, Ollama, ...) through the
role's or provider's ``base_url``.
"""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from openai import AsyncOpenAI

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
from llm_dispatch.providers.capabilities import generation_kwargs, structured_output_mode
from llm_dispatch.reconciliation import strip_code_fence

logger = logging.getLogger(__name__)


class OpenAIProvider(AIProvider):
    """OpenAI (or OpenAI-compatible) provider via openai SDK."""

    def __init__(self, backend_id: str = "openai") -> None:
        self._name = backend_id
        self._clients: dict[tuple[str | None, str | None], AsyncOpenAI] = {}

    def name(self) -> str:
        return self._name

    def _client(self, params: CallParams) -> AsyncOpenAI:
        key = (params.api_key, params.base_url)
        if key not in self._clients:
            # Keyless local servers still need a non-empty api_key for the SDK.
            self._clients[key] = AsyncOpenAI(api_key=params.api_key or "not-needed", base_url=params.base_url)
        return self._clients[key]

    def _request(self, params: CallParams, **overrides: Any) -> dict[str, Any]:
        request: dict[str, Any] = {
            "model": params.model_id,
            "messages": params.messages,
            **generation_kwargs(params.capabilities, params.max_tokens, params.temperature),
            **params.extra,
        }
        request.update(overrides)
        return request

    def _object_overrides(self, params: CallParams) -> dict[str, Any]:
        if params.schema is None:
            raise ProviderError(self._name, "Object generation requires a schema")
        if structured_output_mode(params.capabilities) == "json":
            return {
                "response_format": {
                    "type": "json_schema",
                    "json_schema": {"name": params.object_name, "schema": params.schema},
                }
            }
        return {
            "tools": [
                {
                    "type": "function",
                    "function": {"name": params.object_name, "parameters": params.schema},
                }
            ],
            "tool_choice": {"type": "function", "function": {"name": params.object_name}},
        }

    async def generate_text(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).chat.completions.create(**self._request(params)),
            params.timeout_sec,
        )

        choice = response.choices[0] if response.choices else None
        if not choice or not choice.message.content:
            raise ProviderError(self._name, "Empty response content")

        usage = _usage(response.usage)
        logger.info("OpenAI text (%s): %.2fs, %s", self._name, time.monotonic() - start, usage)
        return ProviderResponse(text=choice.message.content, usage=usage)

    async def generate_object(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).chat.completions.create(**self._request(params, **self._object_overrides(params))),
            params.timeout_sec,
        )

        choice = response.choices[0] if response.choices else None
        if not choice:
            raise ProviderError(self._name, "Empty response")
        if choice.message.tool_calls:
            raw = choice.message.tool_calls[0].function.arguments
        else:
            raw = choice.message.content or ""
        try:
            obj = json.loads(strip_code_fence(raw))
        except json.JSONDecodeError as exc:
            raise ProviderError(self._name, f"Invalid JSON in object response: {exc}") from exc

        usage = _usage(response.usage)
        logger.info("OpenAI object (%s): %.2fs, %s", self._name, time.monotonic() - start, usage)
        return ProviderResponse(object=obj, usage=usage)

    async def stream_text(self, params: CallParams) -> StreamHandle:
        stream = await guarded_call(
            self._name,
            self._client(params).chat.completions.create(
                **self._request(params, stream=True, stream_options={"include_usage": True})
            ),
            params.timeout_sec,
        )
        tracker = UsageTracker()
        return StreamHandle(text_stream=_deltas(stream, tracker), usage=tracker.wait)

    async def stream_object(self, params: CallParams) -> StreamHandle:
        """Stream the object's JSON text, from content or tool-call arguments."""
        stream = await guarded_call(
            self._name,
            self._client(params).chat.completions.create(
                **self._request(
                    params,
                    stream=True,
                    stream_options={"include_usage": True},
                    **self._object_overrides(params),
                )
            ),
            params.timeout_sec,
        )
        tracker = UsageTracker()
        return StreamHandle(text_stream=_deltas(stream, tracker), usage=tracker.wait)


def _usage(usage: Any) -> TokenUsage | None:
    if not usage:
        return None
    return TokenUsage(input_units=usage.prompt_tokens, output_units=usage.completion_tokens)


async def _deltas(stream: Any, tracker: UsageTracker) -> AsyncIterator[str]:
    try:
        async for chunk in stream:
            if chunk.usage:
                tracker.record(chunk.usage.prompt_tokens, chunk.usage.completion_tokens)
            if not chunk.choices:
                continue
            delta = chunk.choices[0].delta
            if delta.content:
                yield delta.content
            for tool_call in delta.tool_calls or []:
                if tool_call.function and tool_call.function.arguments:
                    yield tool_call.function.arguments
    finally:
        tracker.mark_drained()
