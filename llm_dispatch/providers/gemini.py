"""Gemini provider using google-genai SDK with native async."""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from google import genai
from google.genai import types as genai_types

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
from llm_dispatch.reconciliation import strip_code_fence

logger = logging.getLogger(__name__)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK.

    Structured output uses a JSON response mime type constrained by the
    request's schema.
    """

    def __init__(self, backend_id: str = "google") -> None:
        self._name = backend_id
        self._clients: dict[tuple[str | None, str | None], genai.Client] = {}

    def name(self) -> str:
        return self._name

    def _client(self, params: CallParams) -> genai.Client:
        key = (params.api_key, params.base_url)
        if key not in self._clients:
            http_options = genai_types.HttpOptions(base_url=params.base_url) if params.base_url else None
            self._clients[key] = genai.Client(api_key=params.api_key, http_options=http_options)
        return self._clients[key]

    def _config(self, params: CallParams, as_json: bool = False) -> genai_types.GenerateContentConfig:
        sampling = generation_kwargs(params.capabilities, params.max_tokens, params.temperature)
        config: dict[str, Any] = {
            "system_instruction": params.system_prompt or None,
            "max_output_tokens": sampling.get("max_tokens"),
            "temperature": sampling.get("temperature"),
        }
        if as_json:
            if params.schema is None:
                raise ProviderError(self._name, "Object generation requires a schema")
            config["response_mime_type"] = "application/json"
            config["response_json_schema"] = params.schema
        return genai_types.GenerateContentConfig(**config)

    @staticmethod
    def _contents(params: CallParams) -> list[dict[str, Any]]:
        return [
            {"role": "model" if m["role"] == "assistant" else "user", "parts": [{"text": m["content"]}]}
            for m in params.chat_messages
        ]

    async def generate_text(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).aio.models.generate_content(
                model=params.model_id,
                contents=self._contents(params),
                config=self._config(params),
            ),
            params.timeout_sec,
        )

        if not response.text:
            raise ProviderError(self._name, "Empty response text")

        usage = _usage(response.usage_metadata)
        logger.info("Gemini text: %.2fs, %s", time.monotonic() - start, usage)
        return ProviderResponse(text=response.text, usage=usage)

    async def generate_object(self, params: CallParams) -> ProviderResponse:
        start = time.monotonic()
        response = await guarded_call(
            self._name,
            self._client(params).aio.models.generate_content(
                model=params.model_id,
                contents=self._contents(params),
                config=self._config(params, as_json=True),
            ),
            params.timeout_sec,
        )

        if not response.text:
            raise ProviderError(self._name, "Empty response text")
        try:
            obj = json.loads(strip_code_fence(response.text))
        except json.JSONDecodeError as exc:
            raise ProviderError(self._name, f"Invalid JSON in object response: {exc}") from exc

        usage = _usage(response.usage_metadata)
        logger.info("Gemini object: %.2fs, %s", time.monotonic() - start, usage)
        return ProviderResponse(object=obj, usage=usage)

    async def _stream(self, params: CallParams, as_json: bool) -> StreamHandle:
        stream = await guarded_call(
            self._name,
            self._client(params).aio.models.generate_content_stream(
                model=params.model_id,
                contents=self._contents(params),
                config=self._config(params, as_json=as_json),
            ),
            params.timeout_sec,
        )
        tracker = UsageTracker()
        return StreamHandle(text_stream=_deltas(stream, tracker), usage=tracker.wait)

    async def stream_text(self, params: CallParams) -> StreamHandle:
        return await self._stream(params, as_json=False)

    async def stream_object(self, params: CallParams) -> StreamHandle:
        return await self._stream(params, as_json=True)


def _usage(metadata: Any) -> TokenUsage | None:
    if not metadata:
        return None
    return TokenUsage(
        input_units=metadata.prompt_token_count or 0,
        output_units=metadata.candidates_token_count or 0,
    )


async def _deltas(stream: Any, tracker: UsageTracker) -> AsyncIterator[str]:
    try:
        async for chunk in stream:
            if chunk.usage_metadata:
                usage = _usage(chunk.usage_metadata)
                tracker.record(usage.input_units, usage.output_units)
            if chunk.text:
                yield chunk.text
    finally:
        tracker.mark_drained()
