"""Deadlines for in-flight async operations.

A timed-out operation is not cancelled: AI completions cannot be killed in
general, so a timeout only stops the caller from waiting. The operation
keeps running as a background task and its outcome is discarded.
"""

import asyncio
import logging
from collections.abc import Awaitable
from typing import Any, TypeVar

from llm_dispatch.errors import StreamingError, StreamingErrorCode

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _discard_outcome(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("Abandoned operation finished with error: %s", exc)


async def with_hard_timeout(operation: Awaitable[T], duration_ms: int, label: str = "Operation") -> T:
    """Await ``operation`` for at most ``duration_ms``.

    Raises:
        StreamingError: STREAM_PROCESSING_FAILED if the deadline passes first.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=duration_ms / 1000)
    except TimeoutError as exc:
        task.add_done_callback(_discard_outcome)
        raise StreamingError(
            f"{label} timed out after {duration_ms / 1000:g}s",
            StreamingErrorCode.STREAM_PROCESSING_FAILED,
        ) from exc


async def with_soft_timeout(operation: Awaitable[T], duration_ms: int, default: Any = None) -> T | Any:
    """Await ``operation`` for at most ``duration_ms``, else return ``default``.

    Errors raised by the operation also resolve to ``default``; use this only
    for best-effort work that must never block or fail the caller.
    """
    task = asyncio.ensure_future(operation)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=duration_ms / 1000)
    except TimeoutError:
        task.add_done_callback(_discard_outcome)
        logger.debug("Soft timeout after %dms, using default", duration_ms)
        return default
    except Exception as exc:
        logger.debug("Best-effort operation failed, using default: %s", exc)
        return default


def is_timeout_error(error: BaseException) -> bool:
    return (
        isinstance(error, StreamingError)
        and error.code is StreamingErrorCode.STREAM_PROCESSING_FAILED
        and "timed out" in str(error)
    )
