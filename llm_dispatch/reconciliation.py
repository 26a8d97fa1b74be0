"""Recover items a streaming parse missed by re-parsing the full response text."""

import json
import logging
import re
from collections.abc import Callable
from typing import Any

from llm_dispatch.errors import StreamingError, StreamingErrorCode
from llm_dispatch.models import StreamState

logger = logging.getLogger(__name__)

_LEADING_FENCE = re.compile(r"^\s*```(?:json)?[ \t]*\n?", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\n?```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove one markdown code-fence wrapper, if present."""
    text = _LEADING_FENCE.sub("", text, count=1)
    text = _TRAILING_FENCE.sub("", text, count=1)
    return text.strip()


def needs_reconciliation(state: StreamState, full_item_extractor: Callable[[Any], Any] | None) -> bool:
    return (
        state.expected_total > 0
        and len(state.parsed_items) < state.expected_total
        and bool(state.accumulated_text)
        and full_item_extractor is not None
    )


def attempt_reconciliation(
    state: StreamState,
    *,
    full_item_extractor: Callable[[Any], Any] | None,
    item_validator: Callable[[Any], Any],
    add_item: Callable[[Any], None],
    on_error: Callable[[Exception], None] | None = None,
) -> list[Any]:
    """Append the items the full response holds beyond those already parsed.

    Deduplication is positional: the first ``len(state.parsed_items)``
    entries of the full array are assumed to be the ones already streamed.
    The consumed index is recorded on the state, so running this twice adds
    nothing the second time even when some entries failed validation.
    Extractor and validator failures are treated like a parse failure.

    Returns:
        The newly appended items (possibly empty).

    Raises:
        StreamingError: STREAM_PROCESSING_FAILED when the full text cannot be
            parsed or extracted and no items were gathered at all.
    """
    if not needs_reconciliation(state, full_item_extractor):
        return []

    start = max(len(state.parsed_items), state.reconciled_upto)
    try:
        full_response = json.loads(strip_code_fence(state.accumulated_text))
        full_items = full_item_extractor(full_response)
        if not isinstance(full_items, list):
            return []
        candidates = [item for item in full_items[start:] if item_validator(item)]
    except Exception as exc:
        if not state.parsed_items:
            raise StreamingError(
                f"Failed to parse AI response as JSON: {exc}",
                StreamingErrorCode.STREAM_PROCESSING_FAILED,
            ) from exc
        logger.warning(
            "Full-response parse failed; keeping %d streamed items: %s",
            len(state.parsed_items),
            exc,
        )
        if on_error is not None:
            on_error(exc)
        return []

    for item in candidates:
        add_item(item)
    state.mark_reconciled(len(full_items))

    if candidates:
        logger.info(
            "Reconciliation recovered %d items (%d/%d)",
            len(candidates),
            len(state.parsed_items),
            state.expected_total,
        )
    return candidates
