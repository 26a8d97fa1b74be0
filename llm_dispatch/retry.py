"""Retry classification and the per-backend retry loop."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TypeVar

from llm_dispatch.models import RetryState

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 2
INITIAL_RETRY_DELAY_MS = 1000

_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "overloaded",
    "service temporarily unavailable",
    "timeout",
    "network error",
)


def error_status(error: BaseException) -> int | None:
    """HTTP-like status carried by an error, if any."""
    for attr in ("status", "status_code", "code"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def is_retryable_error(error: BaseException) -> bool:
    """True for transient failures: rate limits, overload, timeouts, 429/5xx."""
    message = str(error).lower()
    if any(pattern in message for pattern in _RETRYABLE_PATTERNS):
        return True
    status = error_status(error)
    return status is not None and (status == 429 or status >= 500)


async def call_with_retries(
    operation: Callable[[], Awaitable[T]],
    *,
    max_retries: int = MAX_RETRIES,
    base_delay_ms: int = INITIAL_RETRY_DELAY_MS,
    role: str = "unknown",
    backend_id: str = "unknown",
    model_id: str = "unknown",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``operation`` until it succeeds, retrying transient failures.

    Waits ``base_delay_ms * 2**attempt`` between attempts, making at most
    ``max_retries + 1`` calls. Non-retryable errors, and the last error once
    retries are exhausted, propagate unchanged.
    """
    state = RetryState(max_retries=max_retries, base_delay_ms=base_delay_ms)
    while True:
        event = {
            "event": "provider_attempt",
            "attempt": state.attempt + 1,
            "role": role,
            "backend_id": backend_id,
            "model_id": model_id,
        }
        try:
            result = await operation()
        except Exception as exc:
            logger.warning(
                "Attempt %d/%d failed for role %s (%s/%s): %s",
                state.attempt + 1,
                max_retries + 1,
                role,
                backend_id,
                model_id,
                exc,
                extra={**event, "outcome": "failure"},
            )
            if not (is_retryable_error(exc) and state.can_retry()):
                if is_retryable_error(exc):
                    logger.error(
                        "Max retries reached for role %s (%s/%s)", role, backend_id, model_id
                    )
                raise
            delay = state.next_delay_sec()
            logger.info("Retrying role %s in %.1fs", role, delay)
            await sleep(delay)
            state.attempt += 1
            continue

        logger.debug(
            "Attempt %d succeeded for role %s (%s/%s)",
            state.attempt + 1,
            role,
            backend_id,
            model_id,
            extra={**event, "outcome": "success"},
        )
        return result
