"""
Pricing calculations and rate management.

Estimates cost for log lines that carry token counts but no cost.
"""

import re
from dataclasses import dataclass
from decimal import ROUND_UP, Decimal
from typing import Dict

from .token_counter import TokenUsage

MILLION = Decimal("1000000")


@dataclass(frozen=True)
class ModelPricing:
    """Per-million-token pricing for a specific model."""
    input_per_million: Decimal
    output_per_million: Decimal
    cache_write_per_million: Decimal
    cache_read_per_million: Decimal


@dataclass(frozen=True)
class PricingTable:
    """Fixed pricing table for supported models."""
    prices: Dict[str, ModelPricing]

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a model, normalizing dated or aliased names.

        Args:
            model: Model identifier as it appears in the logs

        Returns:
            ModelPricing for the model

        Raises:
            ValueError: If model is not supported
        """
        key = normalize_model_name(model)
        if key not in self.prices:
            raise ValueError(f"Unsupported model: {model}")
        return self.prices[key]

    def supports(self, model: str) -> bool:
        return normalize_model_name(model) in self.prices


def _pricing(input_rate: str, output_rate: str, write_rate: str, read_rate: str) -> ModelPricing:
    return ModelPricing(Decimal(input_rate), Decimal(output_rate), Decimal(write_rate), Decimal(read_rate))


PRICING_TABLE = PricingTable({
    "claude-4-opus": _pricing("15.00", "75.00", "18.75", "1.50"),
    "claude-4-sonnet": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-4-haiku": _pricing("1.00", "5.00", "1.25", "0.10"),
    "claude-3-5-sonnet": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-3-opus": _pricing("15.00", "75.00", "18.75", "1.50"),
    "claude-3-sonnet": _pricing("3.00", "15.00", "3.75", "0.30"),
    "claude-3-haiku": _pricing("0.25", "1.25", "0.30", "0.03"),
    "gemini-2.5-pro": _pricing("1.25", "10.00", "0.31", "0.25"),
})

# Compacted spellings (lowercase, no separators, no date suffix) to table keys
MODEL_ALIASES = {
    "claude4opus": "claude-4-opus",
    "claudeopus4": "claude-4-opus",
    "opus4": "claude-4-opus",
    "claudeopus41": "claude-4-opus",
    "claude4sonnet": "claude-4-sonnet",
    "claudesonnet4": "claude-4-sonnet",
    "sonnet4": "claude-4-sonnet",
    "claude4haiku": "claude-4-haiku",
    "claudehaiku4": "claude-4-haiku",
    "haiku4": "claude-4-haiku",
    "claude35sonnet": "claude-3-5-sonnet",
    "claude3sonnet35": "claude-3-5-sonnet",
    "claudesonnet35": "claude-3-5-sonnet",
    "claude37sonnet": "claude-3-5-sonnet",
    "claude3opus": "claude-3-opus",
    "claude3sonnet": "claude-3-sonnet",
    "claude3haiku": "claude-3-haiku",
    "gemini25pro": "gemini-2.5-pro",
}

_DATE_SUFFIX = re.compile(r"-?\d{8}$")


def normalize_model_name(model: str) -> str:
    """Map a logged model name onto a pricing table key.

    Unknown names are returned lowercased.
    """
    lowered = model.strip().lower()
    compact = _DATE_SUFFIX.sub("", lowered)
    compact = re.sub(r"[-_.\s]", "", compact)
    return MODEL_ALIASES.get(compact, lowered)


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to use

    Returns:
        Total cost rounded UP to the nearest micro-dollar

    Raises:
        ValueError: If model is not supported
    """
    pricing = table.get_pricing(model)

    total_cost = (
        Decimal(usage.input_tokens) * pricing.input_per_million
        + Decimal(usage.output_tokens) * pricing.output_per_million
        + Decimal(usage.cache_creation_tokens) * pricing.cache_write_per_million
        + Decimal(usage.cache_read_tokens) * pricing.cache_read_per_million
    ) / MILLION

    return float(total_cost.quantize(Decimal("0.000001"), rounding=ROUND_UP))


def estimate_cost(model: str, usage: TokenUsage, table: PricingTable = PRICING_TABLE) -> float:
    """Like calculate_cost, but unknown models cost nothing."""
    if not table.supports(model):
        return 0.0
    return calculate_cost(model, usage, table)
