"""Per-backend capability flags and the pure functions that consume them."""

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class Capabilities:
    supports_temperature: bool = True
    needs_explicit_json_schema: bool = False
    supports_structured_output: bool = True


def generation_kwargs(
    capabilities: Capabilities,
    max_tokens: int | None,
    temperature: float | None,
) -> dict[str, Any]:
    """Sampling parameters a backend accepts, with unsupported ones dropped."""
    kwargs: dict[str, Any] = {}
    if max_tokens is not None:
        kwargs["max_tokens"] = max_tokens
    if capabilities.supports_temperature and temperature is not None:
        kwargs["temperature"] = temperature
    return kwargs


def structured_output_mode(capabilities: Capabilities) -> str:
    """How an object request is expressed to the backend.

    ``"tool"`` forces a tool/function call whose arguments are the object,
    ``"json"`` asks for a raw JSON document constrained by the schema.
    """
    if capabilities.needs_explicit_json_schema:
        return "json"
    return "tool"
