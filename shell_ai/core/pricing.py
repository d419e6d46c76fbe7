"""
Pricing calculations and rate management.

Estimates the USD cost of a request from the token counts the provider reports.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: float  # USD per 1M prompt tokens
    output_per_million: float  # USD per 1M completion tokens

    def __post_init__(self):
        if self.input_per_million < 0 or self.output_per_million < 0:
            raise ValueError("prices must be >= 0")


@dataclass(frozen=True)
class PricingTable:
    """Pricing table for supported models."""
    prices: Dict[str, ModelPricing] = field(default_factory=dict)

    def get_pricing(self, model: str) -> Optional[ModelPricing]:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or None when the model is not listed
        """
        return self.prices.get(model)

    def merged(self, overrides: Mapping[str, ModelPricing]) -> "PricingTable":
        """Return a new table with ``overrides`` layered over these prices."""
        prices = dict(self.prices)
        prices.update(overrides)
        return PricingTable(prices)


# Prices as of December 2024, USD per 1M tokens
DEFAULT_PRICING_TABLE = PricingTable({
    "gpt-4.1": ModelPricing(input_per_million=2.50, output_per_million=10.00),
    "gpt-4.1-mini": ModelPricing(input_per_million=0.15, output_per_million=0.60),
    "gpt-4o": ModelPricing(input_per_million=2.50, output_per_million=10.00),
    "gpt-4o-mini": ModelPricing(input_per_million=0.15, output_per_million=0.60),
    "gpt-4-turbo": ModelPricing(input_per_million=10.00, output_per_million=30.00),
    "gpt-4": ModelPricing(input_per_million=30.00, output_per_million=60.00),
    "gpt-3.5-turbo": ModelPricing(input_per_million=0.50, output_per_million=1.50),
})


class CostEstimator:
    """Computes request cost from a pricing table.

    The table is supplied at construction so callers can substitute their own
    prices. Models missing from the table cost 0.0; that is a policy, not a
    failure signal.
    """

    def __init__(self, pricing_table: PricingTable = DEFAULT_PRICING_TABLE):
        self.pricing_table = pricing_table

    def estimate_cost(self, model: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Estimate the USD cost of a request.

        Args:
            model: Model identifier
            prompt_tokens: Tokens sent to the model
            completion_tokens: Tokens generated by the model

        Returns:
            Estimated cost in USD, 0.0 for unknown models

        Raises:
            ValueError: If a token count is negative
        """
        if prompt_tokens < 0 or completion_tokens < 0:
            raise ValueError("token counts must be >= 0")

        pricing = self.pricing_table.get_pricing(model)
        if pricing is None:
            return 0.0

        input_cost = prompt_tokens / 1e6 * pricing.input_per_million
        output_cost = completion_tokens / 1e6 * pricing.output_per_million
        return input_cost + output_cost


def calculate_cost(model: str, prompt_tokens: int, completion_tokens: int) -> float:
    """Estimate cost against the default pricing table."""
    return CostEstimator().estimate_cost(model, prompt_tokens, completion_tokens)
