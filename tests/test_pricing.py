"""
Unit tests for pricing calculations.

Tests model name normalization, cost accuracy, rounding behavior, and error handling.
"""

import pytest
from decimal import Decimal

from usage_ledger.core.pricing import (
    PRICING_TABLE,
    calculate_cost,
    estimate_cost,
    normalize_model_name,
)
from usage_ledger.core.token_counter import TokenUsage


class TestTokenUsage:
    """Test TokenUsage dataclass."""

    def test_total_tokens_calculation(self):
        """Verify total_tokens sums all four counters."""
        usage = TokenUsage(input_tokens=100, output_tokens=50, cache_creation_tokens=20, cache_read_tokens=5)
        assert usage.total_tokens == 175

    def test_zero_tokens(self):
        """Verify zero token handling."""
        assert TokenUsage().total_tokens == 0


class TestModelNormalization:
    """Test mapping of logged model names onto table keys."""

    @pytest.mark.parametrize("logged, expected", [
        ("claude-sonnet-4-20250514", "claude-4-sonnet"),
        ("claude-opus-4-20250514", "claude-4-opus"),
        ("claude-opus-4-1-20250805", "claude-4-opus"),
        ("claude-3-5-sonnet-20241022", "claude-3-5-sonnet"),
        ("claude-3-7-sonnet-20250219", "claude-3-5-sonnet"),
        ("claude-3-haiku-20240307", "claude-3-haiku"),
        ("Claude-4-Sonnet", "claude-4-sonnet"),
        ("gemini-2.5-pro", "gemini-2.5-pro"),
    ])
    def test_known_models(self, logged, expected):
        assert normalize_model_name(logged) == expected

    def test_unknown_model_is_lowercased(self):
        assert normalize_model_name("  Mystery-Model ") == "mystery-model"


class TestPricingTable:
    """Test pricing table functionality."""

    def test_get_supported_model(self):
        """Verify pricing retrieval for supported models."""
        pricing = PRICING_TABLE.get_pricing("claude-sonnet-4-20250514")
        assert pricing.input_per_million == Decimal("3.00")
        assert pricing.output_per_million == Decimal("15.00")
        assert pricing.cache_write_per_million == Decimal("3.75")
        assert pricing.cache_read_per_million == Decimal("0.30")

    def test_unsupported_model_raises_error(self):
        """Verify error for unknown models."""
        with pytest.raises(ValueError, match="Unsupported model: unknown-model"):
            PRICING_TABLE.get_pricing("unknown-model")

    def test_supports(self):
        assert PRICING_TABLE.supports("claude-opus-4-20250514")
        assert not PRICING_TABLE.supports("gpt-4")


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_exact_cost_sonnet(self):
        """Verify exact cost calculation across all counters."""
        usage = TokenUsage(
            input_tokens=1_000_000,
            output_tokens=100_000,
            cache_creation_tokens=200_000,
            cache_read_tokens=1_000_000,
        )
        # 3.00 + 1.50 + 0.75 + 0.30
        assert calculate_cost("claude-sonnet-4-20250514", usage) == pytest.approx(5.55)

    def test_exact_cost_opus(self):
        usage = TokenUsage(input_tokens=1000, output_tokens=1000)
        # 0.015 + 0.075
        assert calculate_cost("claude-opus-4-20250514", usage) == pytest.approx(0.09)

    def test_rounding_is_conservative(self):
        """Fractions of a micro-dollar round up."""
        usage = TokenUsage(input_tokens=1)
        assert calculate_cost("claude-3-haiku", usage) == 0.000001

    def test_zero_usage_costs_nothing(self):
        assert calculate_cost("claude-4-sonnet", TokenUsage()) == 0.0

    def test_unsupported_model(self):
        with pytest.raises(ValueError, match="Unsupported model"):
            calculate_cost("gpt-4", TokenUsage(input_tokens=10))

    def test_estimate_cost_for_unknown_model(self):
        """Estimation never fails; unknown models are free."""
        assert estimate_cost("gpt-4", TokenUsage(input_tokens=10)) == 0.0
        assert estimate_cost("claude-4-sonnet", TokenUsage(input_tokens=1_000_000)) == pytest.approx(3.0)
