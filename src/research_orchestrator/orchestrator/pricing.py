"""Token cost estimation helpers for provider calls."""

from __future__ import annotations

import os
from dataclasses import dataclass

PRICING_ENV_VAR = "RESEARCH_ORCH_PRICING"


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


DEFAULT_PRICING = ModelPricing(input_per_1m=2.0, output_per_1m=8.0)

BUILTIN_PRICING: dict[str, ModelPricing] = {
    "grok-4-1-fast": ModelPricing(input_per_1m=0.20, output_per_1m=0.50),
    "grok-4-1-fast-reasoning": ModelPricing(input_per_1m=0.20, output_per_1m=0.50),
    "grok-3-beta": ModelPricing(input_per_1m=2.00, output_per_1m=8.00),
    "grok-4": ModelPricing(input_per_1m=3.00, output_per_1m=15.00),
}


def estimate_cost_usd(
    *,
    provider: str,
    model: str,
    input_tokens: int,
    output_tokens: int,
) -> float:
    """Estimate call cost in USD; unknown models use the default rate."""

    pricing = lookup_pricing(provider=provider, model=model)
    return (input_tokens / 1_000_000) * pricing.input_per_1m + (
        output_tokens / 1_000_000
    ) * pricing.output_per_1m


def lookup_pricing(*, provider: str, model: str) -> ModelPricing:
    mapping = _parse_pricing_mapping(os.getenv(PRICING_ENV_VAR, ""))
    provider_key = provider.strip().lower()
    model_key = model.strip()

    direct = mapping.get((provider_key, model_key))
    if direct is not None:
        return direct

    wildcard_model = mapping.get((provider_key, "*"))
    if wildcard_model is not None:
        return wildcard_model

    builtin = BUILTIN_PRICING.get(model_key)
    if builtin is not None:
        return builtin

    global_default = mapping.get(("*", "*"))
    if global_default is not None:
        return global_default
    return DEFAULT_PRICING


def _parse_pricing_mapping(raw: str) -> dict[tuple[str, str], ModelPricing]:
    """Parse `RESEARCH_ORCH_PRICING` mapping.

    Format:
    - `provider:model:input_per_1m:output_per_1m`
    - multiple entries separated by `,`
    - supports wildcards in provider/model (`*`)
    """

    parsed: dict[tuple[str, str], ModelPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 4:
            continue
        provider, model, input_price, output_price = parts
        try:
            input_per_1m = float(input_price)
            output_per_1m = float(output_price)
        except ValueError:
            continue
        parsed[(provider.lower(), model)] = ModelPricing(
            input_per_1m=input_per_1m,
            output_per_1m=output_per_1m,
        )
    return parsed
