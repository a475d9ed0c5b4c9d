"""
Pricing calculations and rate management.

Converts token usage into a dollar cost using per-million token rates.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, ROUND_UP
from typing import Dict

from .token_counter import TokenUsage

logger = logging.getLogger(__name__)

ONE_MILLION = Decimal("1000000")
# Micro-dollar precision; per-call costs are far below a cent
COST_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True)
class ModelPricing:
    """Per-token pricing for a specific model."""
    input_per_million: Decimal  # Cost per 1M prompt tokens
    output_per_million: Decimal  # Cost per 1M completion tokens


@dataclass(frozen=True)
class PricingTable:
    """Operator-edited pricing table with a fallback entry."""
    prices: Dict[str, ModelPricing]
    default: ModelPricing

    def get_pricing(self, model: str) -> ModelPricing:
        """Get pricing for a specific model.

        Args:
            model: Model identifier

        Returns:
            ModelPricing for the model, or the default rates if unlisted
        """
        pricing = self.prices.get(model)
        if pricing is None:
            logger.debug("No pricing for model %s, using default rates", model)
            return self.default
        return pricing


def calculate_cost(model: str, usage: TokenUsage, table: PricingTable) -> float:
    """Calculate total cost for model usage with conservative rounding.

    Resolution order:
    1. prompt and completion counts -> exact split pricing
    2. total only -> total charged at input + output rate (overcharges)
    3. no usage -> 0, logged so billing gaps can be spotted

    Args:
        model: Model identifier
        usage: Token usage data
        table: Pricing table to read rates from

    Returns:
        Total cost rounded UP to the nearest micro-dollar
    """
    pricing = table.get_pricing(model)

    if usage.is_empty:
        logger.warning("Response for %s carried no usage data; recording zero cost", model)
        return 0.0

    if usage.has_split:
        prompt_cost = (Decimal(usage.prompt_tokens) / ONE_MILLION) * pricing.input_per_million
        completion_cost = (Decimal(usage.completion_tokens) / ONE_MILLION) * pricing.output_per_million
        total_cost = prompt_cost + completion_cost
    else:
        logger.info(
            "Usage for %s has no prompt/completion split; charging %d tokens at combined rate",
            model, usage.total_tokens
        )
        total_cost = (Decimal(usage.total_tokens) / ONE_MILLION) * (
            pricing.input_per_million + pricing.output_per_million
        )

    return float(total_cost.quantize(COST_QUANTUM, rounding=ROUND_UP))
