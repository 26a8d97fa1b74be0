"""Tests for llm_dispatch/providers/capabilities.py."""

from llm_dispatch.providers.capabilities import Capabilities, generation_kwargs, structured_output_mode


def test_generation_kwargs_defaults():
    assert generation_kwargs(Capabilities(), 1024, 0.3) == {"max_tokens": 1024, "temperature": 0.3}


def test_generation_kwargs_drops_unsupported_temperature():
    caps = Capabilities(supports_temperature=False)
    assert generation_kwargs(caps, 1024, 0.3) == {"max_tokens": 1024}


def test_generation_kwargs_skips_unset_values():
    assert generation_kwargs(Capabilities(), None, None) == {}


def test_structured_output_mode():
    assert structured_output_mode(Capabilities()) == "tool"
    assert structured_output_mode(Capabilities(needs_explicit_json_schema=True)) == "json"
