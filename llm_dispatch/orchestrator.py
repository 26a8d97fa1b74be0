"""Role-sequenced dispatch: resolve a backend per role, retry, fail over.

Roles are tried strictly one after another; a request never has two
backend calls in flight. Each role attempt yields a tagged outcome that
``ServiceOrchestrator.run`` interprets: return on success, move to the
next role on failure, stop everything on a capability mismatch.
"""

import asyncio
import logging
import os
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any

from config.config_loader import AppConfig
from llm_dispatch.errors import AIServiceError, CapabilityMismatchError, StreamingError, extract_error_message
from llm_dispatch.models import (
    BackendConfig,
    ExtractionResult,
    RequestResult,
    ServiceKind,
    ServiceRequest,
)
from llm_dispatch.providers.base import AIProvider, CallParams, ProviderResponse, StreamHandle, TokenUsage
from llm_dispatch.retry import call_with_retries
from llm_dispatch.roles import Role, role_sequence
from llm_dispatch.stream_parser import StreamParserConfig, extract_items, parse_stream
from llm_dispatch.timeouts import with_hard_timeout, with_soft_timeout
from llm_dispatch.usage import build_usage_info, log_usage

logger = logging.getLogger(__name__)

_DEFAULT_FAILURE = "AI service call failed for all configured roles."

_CAPABILITY_MISMATCH_PATTERNS: tuple[str, ...] = (
    "no endpoints found that support tool use",
    "does not support tool_use",
    "tool use is not supported",
    "tools are not supported",
    "function calling is not supported",
)


@dataclass(frozen=True)
class RoleSucceeded:
    result: RequestResult


@dataclass(frozen=True)
class RoleFailed:
    message: str


@dataclass(frozen=True)
class SequenceAborted:
    error: AIServiceError


RoleOutcome = RoleSucceeded | RoleFailed | SequenceAborted


def is_capability_mismatch(message: str) -> bool:
    lowered = message.lower()
    return any(pattern in lowered for pattern in _CAPABILITY_MISMATCH_PATTERNS)


def build_messages(system_prompt: str, prompt: str, response_language: str) -> list[dict[str, str]]:
    if not prompt:
        raise ValueError("User prompt content is missing.")
    system = f"{system_prompt}\n\nAlways respond in {response_language}.".strip()
    return [
        {"role": "system", "content": system},
        {"role": "user", "content": prompt},
    ]


class ServiceOrchestrator:
    """Dispatches requests across the main/research/fallback roles.

    Args:
        config: Loaded application config (roles, providers, retry, streaming).
        providers: Backend id -> provider adapter.
        env: Where API keys are looked up; defaults to ``os.environ``.
        sleep: Awaitable used between retries.
    """

    def __init__(
        self,
        config: AppConfig,
        providers: Mapping[str, AIProvider],
        *,
        env: Mapping[str, str] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._config = config
        self._providers = dict(providers)
        self._env = env if env is not None else os.environ
        self._sleep = sleep

    def resolve_backend(self, role: Role) -> BackendConfig:
        """Backend, model and generation parameters configured for ``role``.

        Raises:
            ValueError: If the role has no provider/model or the provider is
                not registered.
        """
        role_cfg = self._config.roles.get(role.value)
        provider_name = role_cfg.provider if role_cfg else None
        model_id = role_cfg.model if role_cfg else None
        if role_cfg is None or not provider_name or not model_id:
            raise ValueError(
                f"Configuration missing for role '{role.value}'. Provider: {provider_name}, Model: {model_id}"
            )

        backend_id = provider_name.lower()
        provider_cfg = self._config.providers.get(backend_id)
        if provider_cfg is None or backend_id not in self._providers:
            raise ValueError(f"Unsupported provider configured: {provider_name}")

        return BackendConfig(
            backend_id=backend_id,
            model_id=model_id,
            max_tokens=role_cfg.max_tokens,
            temperature=role_cfg.temperature,
            base_url=role_cfg.base_url or provider_cfg.base_url,
            api_key_env=provider_cfg.api_key_env,
            requires_api_key=provider_cfg.requires_api_key,
            timeout_sec=provider_cfg.timeout_sec,
            capabilities=provider_cfg.capabilities,
        )

    def provider_for(self, backend: BackendConfig) -> AIProvider:
        return self._providers[backend.backend_id]

    def resolve_api_key(self, backend: BackendConfig) -> str | None:
        if not backend.api_key_env:
            return None
        api_key = self._env.get(backend.api_key_env, "").strip()
        if not api_key and backend.requires_api_key:
            raise ValueError(
                f"Required API key {backend.api_key_env} for provider '{backend.backend_id}' "
                "is not set in environment or .env file."
            )
        return api_key or None

    def build_call_params(self, backend: BackendConfig, kind: ServiceKind, request: ServiceRequest) -> CallParams:
        params = CallParams(
            api_key=self.resolve_api_key(backend),
            model_id=backend.model_id,
            messages=build_messages(request.system_prompt, request.prompt, self._config.response_language),
            max_tokens=backend.max_tokens,
            temperature=backend.temperature,
            base_url=backend.base_url,
            timeout_sec=backend.timeout_sec,
            capabilities=backend.capabilities,
            extra=dict(request.extra_params),
        )
        if kind.produces_object or request.structure is not None:
            params.schema = request.structure
            params.object_name = request.object_name
        return params

    async def run(self, kind: ServiceKind | str, request: ServiceRequest) -> RequestResult:
        """Run ``request`` against each role in turn until one succeeds.

        Raises:
            ValueError: If the request is malformed (no prompt, or no
                structure for an object-producing kind).
            CapabilityMismatchError: If the backend cannot produce the
                structured output an object request needs.
            AIServiceError: With the last role's error once every role failed.
        """
        kind = ServiceKind(kind)
        if not request.prompt:
            raise ValueError("User prompt content is missing.")
        if kind.produces_object and request.structure is None:
            raise ValueError(f"A structure description is required for '{kind.value}' requests")

        logger.debug("%s requested for %s (role %s)", kind.value, request.command_label, request.role)
        sequence = role_sequence(request.role)
        last_message = _DEFAULT_FAILURE

        for role in sequence:
            outcome = await self._attempt_role(role, kind, request)
            if isinstance(outcome, RoleSucceeded):
                return outcome.result
            if isinstance(outcome, SequenceAborted):
                raise outcome.error
            last_message = outcome.message

        logger.error("All roles in the sequence [%s] failed.", ", ".join(r.value for r in sequence))
        raise AIServiceError(last_message)

    async def _attempt_role(self, role: Role, kind: ServiceKind, request: ServiceRequest) -> RoleOutcome:
        logger.debug("New AI service call with role: %s", role.value)
        try:
            backend = self.resolve_backend(role)
        except ValueError as exc:
            logger.warning("Skipping role '%s': %s", role.value, exc)
            return RoleFailed(str(exc))

        if kind.produces_object and not backend.capabilities.supports_structured_output:
            return self._abort_for_capability(backend, role)

        try:
            params = self.build_call_params(backend, kind, request)
            payload, usage = await self._invoke(self.provider_for(backend), backend, role, kind, request, params)
        except Exception as exc:
            message = extract_error_message(exc)
            logger.error(
                "Service call failed for role %s (Provider: %s, Model: %s): %s",
                role.value,
                backend.backend_id,
                backend.model_id,
                message,
            )
            if kind.produces_object and is_capability_mismatch(message):
                return self._abort_for_capability(backend, role)
            return RoleFailed(message)

        usage_info = None
        if usage is not None:
            usage_info = build_usage_info(usage, backend.backend_id, backend.model_id, self._config.pricing)
            log_usage(
                usage_info,
                command_label=request.command_label,
                backend_id=backend.backend_id,
                model_id=backend.model_id,
            )
        else:
            logger.debug(
                "No usage data for %s (%s/%s); cost unknown",
                request.command_label,
                backend.backend_id,
                backend.model_id,
            )

        return RoleSucceeded(
            RequestResult(
                payload=payload,
                backend_id=backend.backend_id,
                model_id=backend.model_id,
                role=role.value,
                usage=usage_info,
            )
        )

    def _abort_for_capability(self, backend: BackendConfig, role: Role) -> SequenceAborted:
        error = CapabilityMismatchError(backend.backend_id, backend.model_id, role.value)
        logger.error("[Tool Support Error] %s", error)
        return SequenceAborted(error)

    async def _call(
        self,
        provider: AIProvider,
        backend: BackendConfig,
        role: Role,
        kind: ServiceKind,
        params: CallParams,
    ) -> ProviderResponse | StreamHandle:
        return await call_with_retries(
            lambda: provider.invoke(kind, params),
            max_retries=self._config.retry.max_retries,
            base_delay_ms=self._config.retry.base_delay_ms,
            role=role.value,
            backend_id=backend.backend_id,
            model_id=backend.model_id,
            sleep=self._sleep,
        )

    async def _invoke(
        self,
        provider: AIProvider,
        backend: BackendConfig,
        role: Role,
        kind: ServiceKind,
        request: ServiceRequest,
        params: CallParams,
    ) -> tuple[Any, TokenUsage | None]:
        response = await self._call(provider, backend, role, kind, params)

        if not kind.is_streaming:
            payload = response.text if kind is ServiceKind.TEXT else response.object
            return payload, response.usage

        if request.extraction is None:
            # Caller drains the open stream; usage is only known afterwards.
            return response, None

        streaming = self._config.streaming
        parser_config = StreamParserConfig.from_extraction(
            request.extraction,
            max_buffer_bytes=streaming.max_buffer_bytes,
            flush_wait_ms=streaming.flush_wait_ms,
        )
        try:
            extraction = await with_hard_timeout(
                parse_stream(response, parser_config),
                streaming.timeout_sec * 1000,
                label="Streaming response",
            )
        except StreamingError as exc:
            # The timed-out parse may still be running; detach it from the callbacks.
            parser_config.gate.close()
            if request.structure is None:
                raise
            logger.warning(
                "Streaming failed for role %s (%s): %s. Falling back to non-streaming object call.",
                role.value,
                exc.code.value,
                exc,
            )
            return await self._invoke_object_fallback(provider, backend, role, params, parser_config)

        usage = None
        if isinstance(response, StreamHandle):
            usage = await with_soft_timeout(response.get_usage(), streaming.usage_timeout_ms, None)
        return extraction, usage

    async def _invoke_object_fallback(
        self,
        provider: AIProvider,
        backend: BackendConfig,
        role: Role,
        params: CallParams,
        parser_config: StreamParserConfig,
    ) -> tuple[Any, TokenUsage | None]:
        response = await self._call(provider, backend, role, ServiceKind.OBJECT, params)
        if parser_config.full_item_extractor is None:
            return response.object, response.usage
        items = extract_items(response.object, parser_config)
        logger.info("Non-streaming fallback for role %s returned %d items", role.value, len(items))
        return (
            ExtractionResult(
                items=items,
                accumulated_text="",
                estimated_units=0,
                used_non_streaming=True,
            ),
            response.usage,
        )
