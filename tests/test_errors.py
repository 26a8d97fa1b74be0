"""Tests for llm_dispatch/errors.py."""

from types import SimpleNamespace

from llm_dispatch.errors import (
    AIServiceError,
    CapabilityMismatchError,
    StreamingError,
    StreamingErrorCode,
    extract_error_message,
)


def test_nested_body_message_wins():
    error = Exception("Error code: 429")
    error.body = {"error": {"message": "Rate limit reached for requests", "type": "rate_limit"}}
    assert extract_error_message(error) == "Rate limit reached for requests"


def test_error_attribute_message():
    error = Exception("outer")
    error.error = SimpleNamespace(message="inner detail")
    assert extract_error_message(error) == "inner detail"


def test_json_response_body():
    error = Exception("HTTP 400")
    error.response_body = '{"error": {"message": "max_tokens too large"}}'
    assert extract_error_message(error) == "max_tokens too large"


def test_unparseable_response_body_falls_through():
    error = Exception("HTTP 502")
    error.response_body = "<html>Bad gateway</html>"
    assert extract_error_message(error) == "HTTP 502"


def test_message_attribute_and_plain_strings():
    assert extract_error_message(SimpleNamespace(message="from attribute")) == "from attribute"
    assert extract_error_message("already a string") == "already a string"
    assert extract_error_message(RuntimeError("plain")) == "plain"


def test_unknown_error_fallback():
    assert extract_error_message(None) == "An unknown AI service error occurred."
    assert extract_error_message("") == "An unknown AI service error occurred."
    assert extract_error_message(RuntimeError()) == "An unknown AI service error occurred."


def test_streaming_error_carries_code():
    error = StreamingError("too big", StreamingErrorCode.BUFFER_SIZE_EXCEEDED)
    assert error.code is StreamingErrorCode.BUFFER_SIZE_EXCEEDED
    assert str(error) == "too big"


def test_capability_mismatch_is_service_error():
    error = CapabilityMismatchError("openrouter", "mistral-7b", "research")
    assert isinstance(error, AIServiceError)
    assert "Model 'mistral-7b' via provider 'openrouter'" in str(error)
    assert "'research' role" in str(error)
