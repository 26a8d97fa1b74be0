"""Integration tests — real API calls, no mocks. Requires .env with at least one API key."""

import json
import os

import pytest
from dotenv import load_dotenv

load_dotenv()

_AVAILABLE_KEYS = [
    k for k in ["ANTHROPIC_API_KEY", "OPENAI_API_KEY", "GEMINI_API_KEY", "XAI_API_KEY"]
    if os.environ.get(k, "").strip()
]
pytestmark = pytest.mark.integration

if not _AVAILABLE_KEYS:
    pytestmark = pytest.mark.skip(reason="Need at least one API key, found none")

TASKS_SCHEMA = {
    "type": "object",
    "properties": {
        "tasks": {
            "type": "array",
            "items": {
                "type": "object",
                "properties": {"title": {"type": "string"}, "details": {"type": "string"}},
                "required": ["title", "details"],
            },
        }
    },
    "required": ["tasks"],
}


def _orchestrator():
    from config.config_loader import load_config
    from llm_dispatch.cli import _build_providers
    from llm_dispatch.orchestrator import ServiceOrchestrator

    config = load_config()
    return ServiceOrchestrator(config, _build_providers(config))


async def test_text_request_round_trip():
    from llm_dispatch.models import ServiceRequest

    result = await _orchestrator().run(
        "text",
        ServiceRequest(role="main", prompt="Name one benefit of type hints in one sentence.", command_label="it"),
    )

    assert isinstance(result.payload, str)
    assert len(result.payload) > 10
    print(f"\nRole {result.role} via {result.backend_id}/{result.model_id}: {result.payload[:120]}")


async def test_streamed_tasks_are_extracted():
    from llm_dispatch.models import ServiceRequest, StreamExtraction
    from llm_dispatch.stream_parser import items_at_path

    progress = []
    request = ServiceRequest(
        role="main",
        prompt="Break 'ship a CLI tool' into exactly 3 tasks. Respond with JSON only.",
        command_label="it",
        structure=TASKS_SCHEMA,
        extraction=StreamExtraction(
            item_path="$.tasks.*",
            expected_total=3,
            full_item_extractor=lambda doc: items_at_path(doc, "$.tasks.*"),
            on_progress=lambda item, p: progress.append(p.count),
        ),
    )

    result = await _orchestrator().run("stream_object", request)

    assert len(result.payload.items) >= 1
    print(f"\nItems: {json.dumps(result.payload.items)[:300]}")
    print(f"Progress counts: {progress}, usage: {result.usage}")
