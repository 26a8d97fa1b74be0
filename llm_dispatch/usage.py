"""Token usage and cost accounting for completed requests."""

import logging
from dataclasses import dataclass

from llm_dispatch.models import UsageInfo
from llm_dispatch.providers.base import TokenUsage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelPricing:
    """Per-model input/output pricing per 1M tokens."""

    input_per_1m: float
    output_per_1m: float
    currency: str = "USD"


def calculate_cost(input_units: int, output_units: int, pricing: ModelPricing) -> float:
    cost = (input_units / 1_000_000) * pricing.input_per_1m + (output_units / 1_000_000) * pricing.output_per_1m
    return round(cost, 6)


def lookup_pricing(
    pricing: dict[str, dict[str, ModelPricing]],
    backend_id: str,
    model_id: str,
) -> ModelPricing | None:
    """Pricing for ``model_id`` under ``backend_id``, falling back to a ``*`` entry."""
    by_model = pricing.get(backend_id)
    if by_model is None:
        return None
    return by_model.get(model_id) or by_model.get("*")


def build_usage_info(
    usage: TokenUsage,
    backend_id: str,
    model_id: str,
    pricing: dict[str, dict[str, ModelPricing]],
) -> UsageInfo:
    model_pricing = lookup_pricing(pricing, backend_id, model_id)
    total_units = usage.input_units + usage.output_units
    if model_pricing is None:
        logger.debug("No pricing for %s/%s; cost unknown", backend_id, model_id)
        return UsageInfo(
            input_units=usage.input_units,
            output_units=usage.output_units,
            total_units=total_units,
            total_cost=0.0,
            cost_unknown=True,
        )
    return UsageInfo(
        input_units=usage.input_units,
        output_units=usage.output_units,
        total_units=total_units,
        total_cost=calculate_cost(usage.input_units, usage.output_units, model_pricing),
        currency=model_pricing.currency,
    )


def log_usage(info: UsageInfo, *, command_label: str, backend_id: str, model_id: str) -> None:
    cost = "unknown" if info.cost_unknown else f"{info.total_cost:.6f} {info.currency}"
    logger.info(
        "%s via %s/%s: %d in, %d out, cost %s",
        command_label,
        backend_id,
        model_id,
        info.input_units,
        info.output_units,
        cost,
        extra={
            "event": "ai_usage",
            "command": command_label,
            "backend_id": backend_id,
            "model_id": model_id,
            "input_units": info.input_units,
            "output_units": info.output_units,
            "total_cost": info.total_cost,
        },
    )
