"""Incremental extraction of array items from a streamed JSON response.

Items at ``item_path`` are emitted as soon as the streaming parser closes
them, so callers can report progress long before the response completes.
The accumulated text is bounded; a response that outgrows the bound fails
the whole attempt rather than being silently truncated.
"""

import asyncio
import codecs
import logging
import math
from collections.abc import AsyncIterator, Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

import ijson

from llm_dispatch.errors import StreamingError, StreamingErrorCode
from llm_dispatch.models import ExtractionResult, StreamExtraction, StreamProgress, StreamState
from llm_dispatch.reconciliation import attempt_reconciliation

logger = logging.getLogger(__name__)

DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024
DEFAULT_FLUSH_WAIT_MS = 100


def default_item_validator(item: Any) -> bool:
    """An item is usable when it has a non-blank string ``title``."""
    if not isinstance(item, dict):
        return False
    title = item.get("title")
    return isinstance(title, str) and bool(title.strip())


def estimate_units(text: str) -> int:
    return math.ceil(len(text) / 4)


def to_ijson_prefix(item_path: str) -> str:
    """Convert ``$.tasks.*`` / ``$.tasks[*]`` style paths to an ijson prefix.

    Dotted ijson prefixes (``tasks.item``) are returned unchanged.
    """
    path = item_path.strip()
    if not path.startswith("$"):
        return path
    path = path[1:].replace("[*]", ".*").lstrip(".")
    parts = ["item" if part == "*" else part for part in path.split(".") if part]
    return ".".join(parts)


def items_at_path(document: Any, item_path: str) -> Any:
    """Look up the array ``item_path`` points into in a complete document.

    Returns None when the path does not resolve.
    """
    node = document
    for key in to_ijson_prefix(item_path).split(".")[:-1]:
        if key == "item":
            return None
        if not isinstance(node, dict) or key not in node:
            return None
        node = node[key]
    return node


class StreamGate:
    """Switch that detaches an abandoned parse from the caller's callbacks.

    Once closed, the parse stops reading the stream and no further progress
    or error callbacks fire.
    """

    def __init__(self) -> None:
        self.closed = False

    def close(self) -> None:
        self.closed = True


@dataclass
class StreamParserConfig:
    item_path: str
    on_progress: Callable[[Any, StreamProgress], None] | None = None
    on_error: Callable[[Exception], None] | None = None
    estimate_units: Callable[[str], int] = estimate_units
    expected_total: int = 0
    full_item_extractor: Callable[[Any], Any] | None = None
    item_validator: Callable[[Any], Any] = default_item_validator
    max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES
    flush_wait_ms: int = DEFAULT_FLUSH_WAIT_MS
    gate: StreamGate = field(default_factory=StreamGate)

    def __post_init__(self) -> None:
        if not isinstance(self.item_path, str) or not self.item_path.strip():
            raise ValueError("item_path is required and must be a non-empty string")
        if self.max_buffer_bytes <= 0:
            raise ValueError("max_buffer_bytes must be positive")
        if self.expected_total < 0:
            raise ValueError("expected_total cannot be negative")
        for name in ("on_progress", "on_error", "full_item_extractor"):
            value = getattr(self, name)
            if value is not None and not callable(value):
                raise ValueError(f"{name} must be callable")
        for name in ("estimate_units", "item_validator"):
            if not callable(getattr(self, name)):
                raise ValueError(f"{name} must be callable")

    @classmethod
    def from_extraction(
        cls,
        extraction: StreamExtraction,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
        flush_wait_ms: int = DEFAULT_FLUSH_WAIT_MS,
    ) -> "StreamParserConfig":
        return cls(
            item_path=extraction.item_path,
            on_progress=extraction.on_progress,
            on_error=extraction.on_error,
            expected_total=extraction.expected_total,
            full_item_extractor=extraction.full_item_extractor,
            item_validator=extraction.item_validator or default_item_validator,
            max_buffer_bytes=extraction.max_buffer_bytes or max_buffer_bytes,
            flush_wait_ms=flush_wait_ms,
        )


def _member(handle: Any, name: str) -> Any:
    if isinstance(handle, Mapping):
        return handle.get(name)
    return getattr(handle, name, None)


def _is_iterable(obj: Any) -> bool:
    if obj is None or isinstance(obj, (str, bytes, Mapping)):
        return False
    return hasattr(obj, "__aiter__") or hasattr(obj, "__iter__")


async def _iterate(source: Any) -> AsyncIterator[Any]:
    if hasattr(source, "__aiter__"):
        async for chunk in source:
            yield chunk
    else:
        for chunk in source:
            yield chunk


def _text_delta(event: Any) -> str | None:
    if _member(event, "type") != "text-delta":
        return None
    for key in ("text_delta", "textDelta"):
        value = _member(event, key)
        if value:
            return value
    return None


async def _text_deltas(events: Any) -> AsyncIterator[str]:
    async for event in _iterate(events):
        delta = _text_delta(event)
        if delta:
            yield delta


def _chunk_source(handle: Any) -> AsyncIterator[Any]:
    """Pick how to read text from a stream handle.

    Tried in order: a ``text_stream`` of chunks, a ``full_stream`` of events,
    then the handle itself.
    """
    text_stream = _member(handle, "text_stream")
    if _is_iterable(text_stream):
        return _iterate(text_stream)
    full_stream = _member(handle, "full_stream")
    if _is_iterable(full_stream):
        return _text_deltas(full_stream)
    if _is_iterable(handle):
        return _iterate(handle)
    raise StreamingError(
        "Stream object is not iterable - no text_stream, full_stream, or direct iterator found",
        StreamingErrorCode.STREAM_NOT_ITERABLE,
    )


async def process_text_stream(handle: Any, on_chunk: Callable[[str], None]) -> None:
    """Feed every text chunk of ``handle`` to ``on_chunk``."""
    decoder = codecs.getincrementaldecoder("utf-8")()
    async for chunk in _chunk_source(handle):
        if isinstance(chunk, bytes):
            chunk = decoder.decode(chunk)
        if chunk:
            on_chunk(chunk)


class _ItemParser:
    """Push-style ijson parser that collects completed items at one prefix."""

    def __init__(self, item_path: str, on_item: Callable[[Any], None], on_error: Callable[[Exception], None]) -> None:
        self._completed = ijson.sendable_list()
        prefix = to_ijson_prefix(item_path)
        self._coro = ijson.items_coro(self._completed, prefix, use_float=True)
        # A path into an object can only start at "{"; a bare array path at "[".
        self._opener = "[" if prefix.split(".")[0] == "item" else "{"
        self._on_item = on_item
        self._on_error = on_error
        self._started = False
        self._failed = False

    def write(self, text: str) -> None:
        if self._failed:
            return
        if not self._started:
            # Skip any preamble (prose, an opening code fence) before the document.
            start = text.find(self._opener)
            if start == -1:
                return
            text = text[start:]
            self._started = True
        try:
            self._coro.send(text.encode("utf-8"))
        except (ijson.JSONError, ValueError) as exc:
            self._fail(exc)
        finally:
            self._drain()

    def end(self) -> None:
        if self._failed or not self._started:
            return
        try:
            self._coro.close()
        except (ijson.JSONError, ValueError) as exc:
            self._fail(exc)
        finally:
            self._drain()

    def _fail(self, exc: Exception) -> None:
        self._failed = True
        self._on_error(ValueError(f"JSON parsing error: {exc}"))

    def _drain(self) -> None:
        completed = list(self._completed)
        del self._completed[:]
        for item in completed:
            self._on_item(item)


class _StreamConsumer:
    """Owns the StreamState of one response and reports progress into it."""

    def __init__(self, config: StreamParserConfig) -> None:
        self.config = config
        self.state = StreamState(expected_total=config.expected_total)
        self.parser = _ItemParser(config.item_path, self.on_parsed_value, self.report_error)

    def on_chunk(self, chunk: str) -> None:
        if self.config.gate.closed:
            raise StreamingError(
                "Stream abandoned by caller", StreamingErrorCode.STREAM_PROCESSING_FAILED
            )
        new_size = self.state.byte_size + len(chunk.encode("utf-8"))
        if new_size > self.config.max_buffer_bytes:
            raise StreamingError(
                f"Buffer size exceeded: {new_size} bytes > {self.config.max_buffer_bytes} bytes maximum",
                StreamingErrorCode.BUFFER_SIZE_EXCEEDED,
            )
        self.state.append_text(chunk, new_size)
        self.parser.write(chunk)

    def on_parsed_value(self, item: Any) -> None:
        if self.config.item_validator(item):
            self.add_item(item)

    def add_item(self, item: Any) -> None:
        self.state.add_item(item)
        if self.config.on_progress is None or self.config.gate.closed:
            return
        progress = StreamProgress(
            count=len(self.state.parsed_items),
            expected_total=self.state.expected_total,
            accumulated_text=self.state.accumulated_text,
            estimated_units=self.config.estimate_units(self.state.accumulated_text),
        )
        try:
            self.config.on_progress(item, progress)
        except Exception as exc:
            self.report_error(RuntimeError(f"Progress callback failed: {exc}"))

    def report_error(self, error: Exception) -> None:
        logger.debug("Stream parsing issue: %s", error)
        if self.config.on_error is not None and not self.config.gate.closed:
            self.config.on_error(error)


async def parse_stream(handle: Any, config: StreamParserConfig) -> ExtractionResult:
    """Consume a streamed response and return the items found at ``item_path``.

    Falls back to a full re-parse of the accumulated text when fewer than
    ``expected_total`` items were extracted incrementally.

    Raises:
        StreamingError: NOT_ASYNC_ITERABLE for a missing handle,
            STREAM_NOT_ITERABLE when no readable stream is exposed,
            BUFFER_SIZE_EXCEEDED when the response outgrows the bound, and
            STREAM_PROCESSING_FAILED when reading fails or nothing at all
            could be parsed.
    """
    if handle is None:
        raise StreamingError("Stream result is null or undefined", StreamingErrorCode.NOT_ASYNC_ITERABLE)

    consumer = _StreamConsumer(config)
    try:
        await process_text_stream(handle, consumer.on_chunk)
    except StreamingError:
        raise
    except Exception as exc:
        raise StreamingError(
            f"Failed to process AI text stream: {exc}",
            StreamingErrorCode.STREAM_PROCESSING_FAILED,
        ) from exc

    consumer.parser.end()
    # Give the parser a bounded moment to hand over its last completed items.
    await asyncio.sleep(config.flush_wait_ms / 1000)

    state = consumer.state
    recovered = attempt_reconciliation(
        state,
        full_item_extractor=config.full_item_extractor,
        item_validator=config.item_validator,
        add_item=consumer.add_item,
        on_error=consumer.report_error,
    )
    state.finalize()

    logger.debug(
        "Stream parsed: %d items, %d bytes, reconciliation=%s",
        len(state.parsed_items),
        state.byte_size,
        bool(recovered),
    )
    return ExtractionResult(
        items=list(state.parsed_items),
        accumulated_text=state.accumulated_text,
        estimated_units=config.estimate_units(state.accumulated_text),
        used_fallback=bool(recovered),
    )


def extract_items(payload: Any, config: StreamParserConfig) -> list[Any]:
    """Validated items of a complete (non-streamed) object response."""
    if config.full_item_extractor is None:
        return []
    items = config.full_item_extractor(payload)
    if not isinstance(items, Iterable) or isinstance(items, (str, bytes, Mapping)):
        return []
    return [item for item in items if config.item_validator(item)]
