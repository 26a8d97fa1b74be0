"""Error taxonomy for dispatch, streaming and capability failures."""

import json
from enum import Enum


class StreamingErrorCode(str, Enum):
    """Stable, code-addressable streaming failure kinds."""

    NOT_ASYNC_ITERABLE = "STREAMING_NOT_SUPPORTED"
    STREAM_PROCESSING_FAILED = "STREAM_PROCESSING_FAILED"
    STREAM_NOT_ITERABLE = "STREAM_NOT_ITERABLE"
    BUFFER_SIZE_EXCEEDED = "BUFFER_SIZE_EXCEEDED"


class StreamingError(Exception):
    """Raised when a streamed response cannot be consumed or parsed.

    Callers branch on ``code``, never on the message text.
    """

    def __init__(self, message: str, code: StreamingErrorCode) -> None:
        self.code = code
        super().__init__(message)


class AIServiceError(RuntimeError):
    """Raised once every role in a sequence has failed."""


class CapabilityMismatchError(AIServiceError):
    """Raised when the selected model cannot produce structured output."""

    def __init__(self, backend_id: str, model_id: str, role: str) -> None:
        self.backend_id = backend_id
        self.model_id = model_id
        self.role = role
        super().__init__(
            f"Model '{model_id}' via provider '{backend_id}' does not support the "
            "'tool use' required for structured output. Configure a model that supports "
            f"tool/function calling for the '{role}' role, or request plain text if "
            "structured output is not strictly required."
        )


_UNKNOWN_ERROR = "An unknown AI service error occurred."


def extract_error_message(error: object) -> str:
    """Return the most specific human-readable message carried by an error.

    Prefers nested API error bodies over the top-level message.
    """
    body = getattr(error, "body", None)
    nested = _nested_message(body)
    if nested:
        return nested

    nested = _nested_message({"error": getattr(error, "error", None)})
    if nested:
        return nested

    response_body = getattr(error, "response_body", None)
    if isinstance(response_body, str):
        try:
            nested = _nested_message(json.loads(response_body))
        except json.JSONDecodeError:
            nested = None
        if nested:
            return nested

    if isinstance(error, str):
        return error or _UNKNOWN_ERROR

    message = getattr(error, "message", None)
    if isinstance(message, str) and message:
        return message

    text = str(error) if error is not None else ""
    return text or _UNKNOWN_ERROR


def _nested_message(payload: object) -> str | None:
    if not isinstance(payload, dict):
        return None
    inner = payload.get("error")
    if isinstance(inner, dict):
        message = inner.get("message")
    else:
        message = getattr(inner, "message", None)
    if isinstance(message, str) and message:
        return message
    return None
