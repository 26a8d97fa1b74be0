"""Uniform contract every AI backend adapter implements."""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from llm_dispatch.errors import extract_error_message
from llm_dispatch.models import ServiceKind
from llm_dispatch.providers.capabilities import Capabilities
from llm_dispatch.retry import error_status

T = TypeVar("T")


class ProviderError(Exception):
    """Raised when a provider call fails.

    ``status`` carries the HTTP status of the underlying API error, if any.
    """

    def __init__(self, provider_name: str, message: str, status: int | None = None) -> None:
        self.provider_name = provider_name
        self.status = status
        super().__init__(f"[{provider_name}] {message}")


@dataclass(frozen=True)
class TokenUsage:
    input_units: int
    output_units: int


@dataclass
class CallParams:
    api_key: str | None
    model_id: str
    messages: list[dict[str, str]]
    max_tokens: int | None = None
    temperature: float | None = None
    base_url: str | None = None
    timeout_sec: int = 120
    capabilities: Capabilities = field(default_factory=Capabilities)
    schema: dict[str, Any] | None = None
    object_name: str = "generated_object"
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def system_prompt(self) -> str:
        return "\n\n".join(m["content"] for m in self.messages if m["role"] == "system")

    @property
    def chat_messages(self) -> list[dict[str, str]]:
        return [m for m in self.messages if m["role"] != "system"]


@dataclass
class ProviderResponse:
    text: str | None = None
    object: Any = None
    usage: TokenUsage | None = None


@dataclass
class StreamHandle:
    """An open streamed response.

    Exposes either ``text_stream`` (text chunks) or ``full_stream``
    (events, of which only ``text-delta`` carry text). ``usage`` resolves
    once the stream has been drained.
    """

    text_stream: AsyncIterator[str] | None = None
    full_stream: AsyncIterator[Any] | None = None
    usage: Callable[[], Awaitable[TokenUsage | None]] | None = None

    async def get_usage(self) -> TokenUsage | None:
        if self.usage is None:
            return None
        return await self.usage()


class AIProvider(ABC):
    """Abstract base for all AI backend adapters."""

    @abstractmethod
    def name(self) -> str:
        """Return the backend id (e.g. 'anthropic', 'openai')."""
        ...

    async def invoke(self, kind: ServiceKind, params: CallParams) -> ProviderResponse | StreamHandle:
        """Run one backend call of the given kind.

        Raises:
            ProviderError: On API failure, timeout, or invalid response.
        """
        kind = ServiceKind(kind)
        if kind is ServiceKind.TEXT:
            return await self.generate_text(params)
        if kind is ServiceKind.OBJECT:
            return await self.generate_object(params)
        if kind is ServiceKind.STREAM_TEXT:
            return await self.stream_text(params)
        return await self.stream_object(params)

    @abstractmethod
    async def generate_text(self, params: CallParams) -> ProviderResponse:
        ...

    @abstractmethod
    async def generate_object(self, params: CallParams) -> ProviderResponse:
        ...

    @abstractmethod
    async def stream_text(self, params: CallParams) -> StreamHandle:
        ...

    async def stream_object(self, params: CallParams) -> StreamHandle:
        """Stream the JSON text of an object response.

        Defaults to a text stream; the caller parses the JSON incrementally.
        """
        return await self.stream_text(params)


class UsageTracker:
    """Token counts reported while a stream is drained."""

    def __init__(self) -> None:
        self.input_units = 0
        self.output_units = 0
        self.reported = False
        self._drained = asyncio.Event()

    def record(self, input_units: int | None = None, output_units: int | None = None) -> None:
        if input_units is not None:
            self.input_units = input_units
            self.reported = True
        if output_units is not None:
            self.output_units = output_units
            self.reported = True

    def mark_drained(self) -> None:
        self._drained.set()

    async def wait(self) -> TokenUsage | None:
        await self._drained.wait()
        if not self.reported:
            return None
        return TokenUsage(input_units=self.input_units, output_units=self.output_units)


async def guarded_call(provider_name: str, operation: Awaitable[T], timeout_sec: int) -> T:
    """Await an SDK call, converting every failure into ProviderError."""
    try:
        return await asyncio.wait_for(operation, timeout=timeout_sec)
    except TimeoutError as exc:
        raise ProviderError(provider_name, f"Request timeout after {timeout_sec}s") from exc
    except Exception as exc:
        raise ProviderError(
            provider_name,
            f"API call failed: {extract_error_message(exc)}",
            status=error_status(exc),
        ) from exc
