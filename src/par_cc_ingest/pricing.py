"""Model pricing: provider protocol, LiteLLM-backed cache and default table."""

from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Protocol, runtime_checkable

import aiohttp
from pydantic import BaseModel, ValidationError, field_validator

from .enums import ModelType
from .exceptions import PricingError

logger = logging.getLogger(__name__)

LITELLM_PRICING_URL = (
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json"
)
PRICING_FETCH_TIMEOUT = 10.0

# Model names that carry no pricing information at all
UNKNOWN_MODEL_NAMES = {"", "unknown", "none", "null", "<synthetic>"}


class ModelPricing(BaseModel):
    """Per-token prices for one model."""

    input_cost_per_token: float | None = None
    output_cost_per_token: float | None = None
    cache_creation_input_token_cost: float | None = None
    cache_read_input_token_cost: float | None = None

    @field_validator(
        "input_cost_per_token",
        "output_cost_per_token",
        "cache_creation_input_token_cost",
        "cache_read_input_token_cost",
        mode="before",
    )
    @classmethod
    def validate_cost(cls, value: Any) -> float | None:
        """Coerce numeric strings; invalid or negative values become None."""
        if value is None:
            return None
        try:
            cost = float(value)
        except (TypeError, ValueError):
            return None
        if cost < 0:
            return None
        return cost


class TokenCost(BaseModel):
    """Cost breakdown for a set of token counts."""

    input_cost: float = 0.0
    output_cost: float = 0.0
    cache_creation_cost: float = 0.0
    cache_read_cost: float = 0.0
    total_cost: float = 0.0


ZERO_PRICING = ModelPricing(
    input_cost_per_token=0.0,
    output_cost_per_token=0.0,
    cache_creation_input_token_cost=0.0,
    cache_read_input_token_cost=0.0,
)

DEFAULT_PRICING: dict[ModelType, ModelPricing] = {
    ModelType.OPUS: ModelPricing(
        input_cost_per_token=15e-6,
        output_cost_per_token=75e-6,
        cache_creation_input_token_cost=18.75e-6,
        cache_read_input_token_cost=1.5e-6,
    ),
    ModelType.SONNET: ModelPricing(
        input_cost_per_token=3e-6,
        output_cost_per_token=15e-6,
        cache_creation_input_token_cost=3.75e-6,
        cache_read_input_token_cost=0.3e-6,
    ),
    ModelType.HAIKU: ModelPricing(
        input_cost_per_token=0.8e-6,
        output_cost_per_token=4e-6,
        cache_creation_input_token_cost=1e-6,
        cache_read_input_token_cost=0.08e-6,
    ),
}


@runtime_checkable
class PricingProvider(Protocol):
    """Anything that can price a model by name."""

    def get_pricing(self, model_name: str) -> ModelPricing:
        """Return pricing for a model or raise PricingError."""
        ...


def model_family(model_name: str | None) -> ModelType:
    """Classify a model name into a Claude family."""
    if not model_name:
        return ModelType.UNKNOWN
    lowered = model_name.lower()
    for family in (ModelType.OPUS, ModelType.SONNET, ModelType.HAIKU):
        if family.value in lowered:
            return family
    return ModelType.UNKNOWN


def get_default_pricing(model_name: str | None) -> ModelPricing:
    """Get built-in pricing for a model, zero for unknown families."""
    return DEFAULT_PRICING.get(model_family(model_name), ZERO_PRICING)


class PricingCache:
    """Pricing provider backed by the LiteLLM model price list.

    The table is fetched once with ``await load()``; lookups afterwards are
    synchronous and safe to call from worker threads.
    """

    def __init__(self, url: str = LITELLM_PRICING_URL, timeout: float = PRICING_FETCH_TIMEOUT):
        self.url = url
        self.timeout = timeout
        self._cache: dict[str, Any] = {}
        self._loaded = False
        self._lock = threading.Lock()

    @property
    def loaded(self) -> bool:
        """Whether a price list has been fetched successfully."""
        return self._loaded

    async def load(self) -> bool:
        """Fetch the price list.

        Returns:
            True if pricing data was loaded, False on any fetch failure
        """
        try:
            timeout = aiohttp.ClientTimeout(total=self.timeout)
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(self.url) as response:
                    if response.status != 200:
                        logger.warning("Pricing fetch failed with HTTP %s", response.status)
                        return False
                    data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, OSError) as e:
            logger.warning("Pricing fetch failed: %s", e)
            return False

        if not isinstance(data, dict):
            logger.warning("Pricing fetch returned unexpected payload type %s", type(data).__name__)
            return False

        table: dict[str, ModelPricing] = {}
        for name, raw in data.items():
            if not isinstance(raw, dict):
                continue
            try:
                table[name] = ModelPricing.model_validate(raw)
            except ValidationError:
                continue

        with self._lock:
            self._cache = table
            self._loaded = True
        logger.info("Loaded pricing for %d models", len(table))
        return True

    def load_sync(self) -> bool:
        """Fetch the price list from synchronous code."""
        return asyncio.run(self.load())

    def _get_pricing_from_cache(self, model_name: str) -> ModelPricing | None:
        """Look up a model by exact or provider-prefixed name."""
        if model_name.strip().lower() in UNKNOWN_MODEL_NAMES:
            return ZERO_PRICING
        with self._lock:
            for key in (model_name, f"anthropic/{model_name}", model_name.lower()):
                pricing = self._cache.get(key)
                if isinstance(pricing, ModelPricing):
                    return pricing
        return None

    def _get_fallback_pricing(self, model_name: str) -> ModelPricing | None:
        """Find any cached Claude model of the same family."""
        family = model_family(model_name)
        if family is ModelType.UNKNOWN:
            return None
        with self._lock:
            candidates = sorted(
                key for key, value in self._cache.items()
                if isinstance(value, ModelPricing) and "claude" in key and family.value in key
            )
            if not candidates:
                return None
            return self._cache[candidates[-1]]

    def get_pricing(self, model_name: str) -> ModelPricing:
        """Get pricing for a model.

        Raises:
            PricingError: When the model is not in the loaded price list
        """
        pricing = self._get_pricing_from_cache(model_name)
        if pricing is None:
            pricing = self._get_fallback_pricing(model_name)
        if pricing is None:
            raise PricingError(f"No pricing available for model {model_name!r}")
        return pricing


def resolve_pricing(model_name: str, provider: PricingProvider | None) -> ModelPricing:
    """Price a model via the provider, falling back to the default table."""
    if provider is not None:
        try:
            return provider.get_pricing(model_name)
        except PricingError as e:
            logger.debug("Falling back to default pricing: %s", e)
        except Exception as e:  # noqa: BLE001
            logger.warning("Pricing provider failed for %s, using default pricing: %s", model_name, e)
    return get_default_pricing(model_name)


def calculate_token_cost(
    pricing: ModelPricing,
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_creation_tokens: int = 0,
    cache_read_tokens: int = 0,
) -> TokenCost:
    """Calculate the cost of a set of token counts.

    Args:
        pricing: Per-token prices; missing prices count as zero
        input_tokens: Input token count
        output_tokens: Output token count
        cache_creation_tokens: Cache creation token count
        cache_read_tokens: Cache read token count

    Returns:
        TokenCost with per-kind and total cost in USD
    """
    input_cost = input_tokens * (pricing.input_cost_per_token or 0.0)
    output_cost = output_tokens * (pricing.output_cost_per_token or 0.0)
    cache_creation_cost = cache_creation_tokens * (pricing.cache_creation_input_token_cost or 0.0)
    cache_read_cost = cache_read_tokens * (pricing.cache_read_input_token_cost or 0.0)
    return TokenCost(
        input_cost=input_cost,
        output_cost=output_cost,
        cache_creation_cost=cache_creation_cost,
        cache_read_cost=cache_read_cost,
        total_cost=input_cost + output_cost + cache_creation_cost + cache_read_cost,
    )


def format_cost(cost: float) -> str:
    """Format a USD amount for display."""
    if cost == 0:
        return "$0.00"
    if cost < 0.01:
        return f"${cost:.4f}"
    if cost < 1:
        return f"${cost:.3f}"
    return f"${cost:.2f}"
