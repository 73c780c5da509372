"""Tests for pricing functionality."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import aiohttp
import pytest

from par_cc_ingest.enums import ModelType
from par_cc_ingest.exceptions import PricingError
from par_cc_ingest.pricing import (
    DEFAULT_PRICING,
    ZERO_PRICING,
    ModelPricing,
    PricingCache,
    PricingProvider,
    TokenCost,
    calculate_token_cost,
    format_cost,
    get_default_pricing,
    model_family,
    resolve_pricing,
)

SAMPLE_PRICE_LIST = {
    "claude-3-5-sonnet-20241022": {
        "input_cost_per_token": 3e-6,
        "output_cost_per_token": 15e-6,
        "cache_creation_input_token_cost": 3.75e-6,
        "cache_read_input_token_cost": 0.3e-6,
    },
    "anthropic/claude-3-opus-20240229": {
        "input_cost_per_token": 15e-6,
        "output_cost_per_token": 75e-6,
    },
    "sample_spec": "not a model",
}


def _mock_session(payload, status=200):
    """Build a patched aiohttp.ClientSession returning a payload."""
    response = MagicMock()
    response.status = status
    response.json = AsyncMock(return_value=payload)
    response.__aenter__ = AsyncMock(return_value=response)
    response.__aexit__ = AsyncMock(return_value=None)

    session = MagicMock()
    session.get = MagicMock(return_value=response)
    session.__aenter__ = AsyncMock(return_value=session)
    session.__aexit__ = AsyncMock(return_value=None)
    return session


class TestModelPricing:
    """Test ModelPricing class."""

    def test_model_pricing_creation(self):
        """Test creating ModelPricing with various inputs."""
        pricing = ModelPricing(
            input_cost_per_token=0.001,
            output_cost_per_token=0.002,
            cache_creation_input_token_cost=0.0005,
            cache_read_input_token_cost=0.0001,
        )
        assert pricing.input_cost_per_token == 0.001
        assert pricing.output_cost_per_token == 0.002
        assert pricing.cache_creation_input_token_cost == 0.0005
        assert pricing.cache_read_input_token_cost == 0.0001

    def test_model_pricing_validation(self):
        """Test ModelPricing validation with string inputs."""
        pricing = ModelPricing(
            input_cost_per_token="0.001",
            output_cost_per_token="invalid",
            cache_creation_input_token_cost=None,
            cache_read_input_token_cost=-1,
        )
        assert pricing.input_cost_per_token == 0.001
        assert pricing.output_cost_per_token is None
        assert pricing.cache_creation_input_token_cost is None
        assert pricing.cache_read_input_token_cost is None


class TestDefaultPricing:
    """Test the built-in pricing table."""

    def test_model_family(self):
        """Test family detection from model names."""
        assert model_family("claude-3-opus-latest") == ModelType.OPUS
        assert model_family("claude-sonnet-4-20250514") == ModelType.SONNET
        assert model_family("claude-3-5-haiku") == ModelType.HAIKU
        assert model_family("gpt-4o") == ModelType.UNKNOWN
        assert model_family(None) == ModelType.UNKNOWN

    def test_default_pricing_lookup(self):
        """Test default prices by family, zero for unknown models."""
        assert get_default_pricing("claude-3-opus-latest") == DEFAULT_PRICING[ModelType.OPUS]
        assert get_default_pricing("mystery") == ZERO_PRICING

    def test_resolve_pricing_without_provider(self):
        """Test the default table is used when no provider is given."""
        assert resolve_pricing("claude-3-5-sonnet", None) == DEFAULT_PRICING[ModelType.SONNET]

    def test_resolve_pricing_provider_error(self):
        """Test provider errors fall back to the default table."""
        provider = MagicMock()
        provider.get_pricing.side_effect = PricingError("nope")

        assert resolve_pricing("claude-3-5-haiku", provider) == DEFAULT_PRICING[ModelType.HAIKU]

    def test_resolve_pricing_unexpected_provider_failure(self):
        """Test unexpected provider failures never propagate."""
        provider = MagicMock()
        provider.get_pricing.side_effect = RuntimeError("boom")

        assert resolve_pricing("claude-3-opus", provider) == DEFAULT_PRICING[ModelType.OPUS]

    def test_resolve_pricing_uses_provider(self):
        """Test a working provider wins over the default table."""
        custom = ModelPricing(input_cost_per_token=1.0)
        provider = MagicMock()
        provider.get_pricing.return_value = custom

        assert resolve_pricing("claude-3-opus", provider) is custom


class TestPricingCache:
    """Test the LiteLLM-backed pricing cache."""

    def test_is_pricing_provider(self):
        """Test PricingCache satisfies the provider protocol."""
        assert isinstance(PricingCache(), PricingProvider)

    def test_unloaded_cache_raises(self):
        """Test lookups fail before any price list is loaded."""
        with pytest.raises(PricingError):
            PricingCache().get_pricing("claude-3-5-sonnet-20241022")

    def test_unknown_model_names_are_free(self):
        """Test placeholder model names price at zero."""
        cache = PricingCache()
        for name in ["unknown", "Unknown", "none", "", "null", "<synthetic>"]:
            assert cache.get_pricing(name) == ZERO_PRICING

    @pytest.mark.asyncio
    async def test_load_and_lookup(self):
        """Test loading a price list and looking up models."""
        cache = PricingCache()
        with patch("par_cc_ingest.pricing.aiohttp.ClientSession", return_value=_mock_session(SAMPLE_PRICE_LIST)):
            assert await cache.load() is True

        assert cache.loaded is True
        assert cache.get_pricing("claude-3-5-sonnet-20241022").input_cost_per_token == 3e-6
        # Provider-prefixed key
        assert cache.get_pricing("claude-3-opus-20240229").output_cost_per_token == 75e-6
        # Family fallback
        assert cache.get_pricing("claude-3-5-sonnet-latest").input_cost_per_token == 3e-6

    @pytest.mark.asyncio
    async def test_load_http_error(self):
        """Test a non-200 response leaves the cache unloaded."""
        cache = PricingCache()
        with patch("par_cc_ingest.pricing.aiohttp.ClientSession", return_value=_mock_session({}, status=503)):
            assert await cache.load() is False
        assert cache.loaded is False

    @pytest.mark.asyncio
    async def test_load_network_error(self):
        """Test network failures are reported, not raised."""
        cache = PricingCache()
        with patch(
            "par_cc_ingest.pricing.aiohttp.ClientSession",
            side_effect=aiohttp.ClientConnectionError("Connection failed"),
        ):
            assert await cache.load() is False

    @pytest.mark.asyncio
    async def test_load_timeout(self):
        """Test timeouts are reported, not raised."""
        cache = PricingCache()
        with patch("par_cc_ingest.pricing.aiohttp.ClientSession", side_effect=asyncio.TimeoutError()):
            assert await cache.load() is False

    @pytest.mark.asyncio
    async def test_load_unexpected_payload(self):
        """Test a non-object payload is rejected."""
        cache = PricingCache()
        with patch("par_cc_ingest.pricing.aiohttp.ClientSession", return_value=_mock_session([1, 2, 3])):
            assert await cache.load() is False

    def test_unknown_family_without_match(self):
        """Test non-Claude models missing from the list raise."""
        cache = PricingCache()
        with patch("par_cc_ingest.pricing.aiohttp.ClientSession", return_value=_mock_session(SAMPLE_PRICE_LIST)):
            assert cache.load_sync() is True
        with pytest.raises(PricingError):
            cache.get_pricing("gpt-4o")


class TestTokenCost:
    """Test TokenCost class."""

    def test_token_cost_creation(self):
        """Test creating TokenCost."""
        cost = TokenCost(
            input_cost=1.0,
            output_cost=2.0,
            cache_creation_cost=0.5,
            cache_read_cost=0.1,
            total_cost=3.6,
        )
        assert cost.input_cost == 1.0
        assert cost.total_cost == 3.6


class TestCalculateTokenCost:
    """Test calculate_token_cost function."""

    def test_sonnet_cost(self):
        """Test cost calculation across all token kinds."""
        cost = calculate_token_cost(DEFAULT_PRICING[ModelType.SONNET], 1_000_000, 1_000_000, 1_000_000, 1_000_000)

        assert cost.input_cost == pytest.approx(3.0)
        assert cost.output_cost == pytest.approx(15.0)
        assert cost.cache_creation_cost == pytest.approx(3.75)
        assert cost.cache_read_cost == pytest.approx(0.3)
        assert cost.total_cost == pytest.approx(22.05)

    def test_missing_prices_count_as_zero(self):
        """Test None prices contribute nothing."""
        cost = calculate_token_cost(ModelPricing(input_cost_per_token=1e-6), 1000, 1000)
        assert cost.total_cost == pytest.approx(0.001)

    def test_zero_pricing(self):
        """Test zero pricing yields zero cost."""
        assert calculate_token_cost(ZERO_PRICING, 1000, 500).total_cost == 0.0


class TestFormatCost:
    """Test format_cost function."""

    def test_format_cost_various_amounts(self):
        """Test formatting various cost amounts."""
        test_cases = [
            (0, "$0.00"),
            (0.001, "$0.0010"),
            (0.0056, "$0.0056"),
            (0.01, "$0.010"),
            (0.123, "$0.123"),
            (1.0, "$1.00"),
            (12.34, "$12.34"),
            (123.456, "$123.46"),
        ]

        for cost, expected in test_cases:
            result = format_cost(cost)
            assert result == expected, f"Expected {expected} for cost {cost}, got {result}"
