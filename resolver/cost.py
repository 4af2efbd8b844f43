"""
QA Resolver — Generation Cost Estimation

Static USD-per-million-token price table for the chat models the
generation adapter calls. Model ids are matched by substring, most
specific first, so dated or suffixed ids ("gpt-4o-mini-2024-07-18")
price like their family. Unknown models price at the cheapest tier.

The table can be overridden from the `pricing` section of the YAML
config:

    pricing:
      gpt-4o-mini:
        input_per_million: 0.15
        output_per_million: 0.6

Usage:
    from resolver.cost import estimate_cost_usd

    estimate_cost_usd("gpt-4o", prompt_tokens=1200, completion_tokens=300)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger("qa_resolver.cost")


@dataclass(frozen=True)
class ModelPricing:
    """Pricing per million tokens for a model."""
    model: str
    input_per_million: float
    output_per_million: float

    def cost(self, input_tokens: int, output_tokens: int) -> float:
        input_cost = (input_tokens / 1_000_000) * self.input_per_million
        output_cost = (output_tokens / 1_000_000) * self.output_per_million
        return input_cost + output_cost


DEFAULT_PRICING_MODEL = "gpt-4o-mini"

PRICING: dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing("gpt-4o-mini", 0.15, 0.6),
    "gpt-4o": ModelPricing("gpt-4o", 2.5, 10.0),
    "gpt-4-turbo": ModelPricing("gpt-4-turbo", 10.0, 30.0),
    "gpt-4": ModelPricing("gpt-4", 30.0, 60.0),
    "gpt-3.5-turbo": ModelPricing("gpt-3.5-turbo", 0.5, 1.5),
}

# Substring probe order; longer families before their prefixes
_MATCH_ORDER = ("gpt-4o-mini", "gpt-4o", "gpt-4-turbo", "gpt-3.5-turbo", "gpt-4")


def normalize_model_for_pricing(model: str | None) -> str:
    """Map a model id onto a price table family. Unknown → gpt-4o-mini."""
    lowered = (model or "").lower()
    for family in _MATCH_ORDER:
        if family in lowered:
            return family
    return DEFAULT_PRICING_MODEL


def load_pricing(settings: dict[str, Any] | None) -> dict[str, ModelPricing]:
    """Built-in table with any `pricing` section entries layered on top."""
    table = dict(PRICING)
    for model, prices in ((settings or {}).get("pricing") or {}).items():
        table[model] = ModelPricing(
            model=model,
            input_per_million=float(prices.get("input_per_million", 0.0)),
            output_per_million=float(prices.get("output_per_million", 0.0)),
        )
    return table


def estimate_cost_usd(
    model: str | None,
    prompt_tokens: int,
    completion_tokens: int,
    pricing: dict[str, ModelPricing] | None = None,
) -> float:
    """Estimated USD cost, rounded to 8 decimal places."""
    table = pricing or PRICING
    entry = table.get(model or "")
    if entry is None:
        family = normalize_model_for_pricing(model)
        entry = table.get(family) or PRICING[family]
    return round(entry.cost(prompt_tokens, completion_tokens), 8)
