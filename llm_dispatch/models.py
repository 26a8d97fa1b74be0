"""Dataclasses shared across the dispatch pipeline."""

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from llm_dispatch.providers.capabilities import Capabilities


class ServiceKind(str, Enum):
    TEXT = "text"
    OBJECT = "object"
    STREAM_TEXT = "stream_text"
    STREAM_OBJECT = "stream_object"

    @property
    def is_streaming(self) -> bool:
        return self in (ServiceKind.STREAM_TEXT, ServiceKind.STREAM_OBJECT)

    @property
    def produces_object(self) -> bool:
        return self in (ServiceKind.OBJECT, ServiceKind.STREAM_OBJECT)


@dataclass(frozen=True)
class BackendConfig:
    backend_id: str
    model_id: str
    max_tokens: int
    temperature: float | None = None
    base_url: str | None = None
    api_key_env: str | None = None
    requires_api_key: bool = True
    timeout_sec: int = 120
    capabilities: Capabilities = field(default_factory=Capabilities)


@dataclass
class RetryState:
    max_retries: int
    base_delay_ms: int
    attempt: int = 0

    def can_retry(self) -> bool:
        return self.attempt < self.max_retries

    def next_delay_sec(self) -> float:
        return self.base_delay_ms * 2**self.attempt / 1000


@dataclass(frozen=True)
class StreamProgress:
    count: int
    expected_total: int
    accumulated_text: str
    estimated_units: int


@dataclass
class StreamState:
    """Text and items gathered from one streamed response.

    Items are append-only and keep arrival order. Once finalized the state
    is read-only.
    """

    expected_total: int = 0
    accumulated_text: str = ""
    parsed_items: list[Any] = field(default_factory=list)
    byte_size: int = 0
    reconciled_upto: int = 0
    finalized: bool = False

    def append_text(self, chunk: str, new_byte_size: int) -> None:
        self._check_open()
        self.accumulated_text += chunk
        self.byte_size = new_byte_size

    def add_item(self, item: Any) -> None:
        self._check_open()
        self.parsed_items.append(item)

    def mark_reconciled(self, index: int) -> None:
        self._check_open()
        self.reconciled_upto = max(self.reconciled_upto, index)

    def finalize(self) -> None:
        self.finalized = True

    def _check_open(self) -> None:
        if self.finalized:
            raise RuntimeError("StreamState is finalized")


@dataclass(frozen=True)
class ExtractionResult:
    items: list[Any]
    accumulated_text: str
    estimated_units: int
    used_fallback: bool = False
    used_non_streaming: bool = False


@dataclass(frozen=True)
class UsageInfo:
    input_units: int
    output_units: int
    total_units: int
    total_cost: float
    currency: str = "USD"
    cost_unknown: bool = False


@dataclass(frozen=True)
class RequestResult:
    payload: Any                 # text, object, ExtractionResult or open StreamHandle
    backend_id: str
    model_id: str
    role: str
    usage: UsageInfo | None = None


@dataclass
class StreamExtraction:
    """How to turn a streamed object response into items."""

    item_path: str = "$.tasks.*"
    expected_total: int = 0
    item_validator: Callable[[Any], bool] | None = None
    full_item_extractor: Callable[[Any], Any] | None = None
    on_progress: Callable[[Any, StreamProgress], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    max_buffer_bytes: int | None = None


@dataclass
class ServiceRequest:
    role: str
    prompt: str
    system_prompt: str = ""
    command_label: str = "unknown"
    structure: dict[str, Any] | None = None
    object_name: str = "generated_object"
    extraction: StreamExtraction | None = None
    extra_params: dict[str, Any] = field(default_factory=dict)
