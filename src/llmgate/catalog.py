"""Model catalog and pricing table."""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional


class ModelId(str, Enum):
    """Closed set of routable models plus the ``auto`` sentinel."""

    CLAUDE_OPUS_4 = "claude-opus-4"
    CLAUDE_SONNET_4 = "claude-sonnet-4"
    GPT_4O = "gpt-4o"
    GPT_4O_MINI = "gpt-4o-mini"
    GEMINI_FLASH = "gemini-2.0-flash-exp"
    DEEPSEEK_CHAT = "deepseek-chat"
    GAMMA = "gamma"
    AUTO = "auto"

    def __str__(self) -> str:
        return self.value


CONCRETE_MODELS: tuple[ModelId, ...] = tuple(m for m in ModelId if m is not ModelId.AUTO)


@dataclass(frozen=True)
class ModelPrice:
    """Cost per 1 million tokens for a specific model, in USD."""

    input_per_million: float
    output_per_million: float

    @property
    def blended_per_million(self) -> float:
        return (self.input_per_million + self.output_per_million) / 2


@dataclass(frozen=True)
class ModelSpec:
    """Static description of one routable model."""

    model_id: ModelId
    provider: str  # key into the provider registry
    api_model: str  # the vendor's own model name
    display_name: str
    price: ModelPrice
    premium: bool = False


_BUILTIN_SPECS: dict[ModelId, ModelSpec] = {
    ModelId.CLAUDE_OPUS_4: ModelSpec(
        ModelId.CLAUDE_OPUS_4, "claude", "claude-opus-4-20250514",
        "Claude Opus 4", ModelPrice(15.00, 75.00), premium=True,
    ),
    ModelId.CLAUDE_SONNET_4: ModelSpec(
        ModelId.CLAUDE_SONNET_4, "claude", "claude-sonnet-4-20250514",
        "Claude Sonnet 4", ModelPrice(3.00, 15.00), premium=True,
    ),
    ModelId.GPT_4O: ModelSpec(
        ModelId.GPT_4O, "openai", "gpt-4o",
        "GPT-4o", ModelPrice(2.50, 10.00), premium=True,
    ),
    ModelId.GPT_4O_MINI: ModelSpec(
        ModelId.GPT_4O_MINI, "openai", "gpt-4o-mini",
        "GPT-4o Mini", ModelPrice(0.15, 0.60),
    ),
    # Free during preview
    ModelId.GEMINI_FLASH: ModelSpec(
        ModelId.GEMINI_FLASH, "google", "gemini-2.0-flash-exp",
        "Gemini 2.0 Flash", ModelPrice(0.0, 0.0),
    ),
    ModelId.DEEPSEEK_CHAT: ModelSpec(
        ModelId.DEEPSEEK_CHAT, "deepseek", "deepseek-chat",
        "DeepSeek V3", ModelPrice(0.14, 0.28),
    ),
    # Billed by Gamma separately, not per token
    ModelId.GAMMA: ModelSpec(
        ModelId.GAMMA, "gamma", "gamma",
        "Gamma", ModelPrice(0.0, 0.0),
    ),
}

_ZERO = ModelPrice(0.0, 0.0)


def parse_model(value: "str | ModelId") -> ModelId:
    """Return the ``ModelId`` for *value*; raises ``ValueError`` if unknown."""
    if isinstance(value, ModelId):
        return value
    try:
        return ModelId(value)
    except ValueError:
        raise ValueError(
            f"Unknown model: '{value}'. "
            f"Available: {', '.join(m.value for m in ModelId)}"
        ) from None


class ModelCatalog:
    """Lookup of model specs, with optional per-model overrides from config.

    Overrides are read once at construction::

        models:
          claude-sonnet-4:
            api_model: claude-3-5-sonnet-latest
            input_per_million: 3.0
            output_per_million: 15.0
    """

    def __init__(self, overrides: Optional[dict] = None) -> None:
        self._specs: dict[ModelId, ModelSpec] = dict(_BUILTIN_SPECS)
        for raw_id, cfg in (overrides or {}).items():
            model_id = parse_model(raw_id)
            if model_id is ModelId.AUTO or not cfg:
                continue
            base = self._specs[model_id]
            price = base.price
            if "input_per_million" in cfg or "output_per_million" in cfg:
                price = ModelPrice(
                    float(cfg.get("input_per_million", price.input_per_million)),
                    float(cfg.get("output_per_million", price.output_per_million)),
                )
            self._specs[model_id] = replace(
                base,
                api_model=cfg.get("api_model", base.api_model),
                price=price,
                premium=bool(cfg.get("premium", base.premium)),
            )

    def get(self, model: "str | ModelId") -> ModelSpec:
        model_id = parse_model(model)
        if model_id is ModelId.AUTO:
            raise ValueError("'auto' must be resolved before looking up a model spec")
        return self._specs[model_id]

    def get_price(self, model: "str | ModelId") -> ModelPrice:
        try:
            model_id = parse_model(model)
        except ValueError:
            return _ZERO
        spec = self._specs.get(model_id)
        return spec.price if spec is not None else _ZERO

    def is_premium(self, model: "str | ModelId") -> bool:
        try:
            return self.get(model).premium
        except ValueError:
            return False

    def calculate_cost(
        self,
        model: "str | ModelId",
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """Return the dollar cost of one request.

        ``(input/1e6) * input_rate + (output/1e6) * output_rate``; negative
        token counts are treated as zero.
        """
        price = self.get_price(model)
        input_cost = (max(input_tokens, 0) / 1_000_000) * price.input_per_million
        output_cost = (max(output_tokens, 0) / 1_000_000) * price.output_per_million
        return input_cost + output_cost

    def cheapest(self, models) -> ModelId:
        """Return the lowest blended-price model among *models* (first wins ties)."""
        return min(models, key=lambda m: self.get_price(m).blended_per_million)


DEFAULT_CATALOG = ModelCatalog()


def calculate_cost(model: "str | ModelId", input_tokens: int, output_tokens: int) -> float:
    """Cost of a request at built-in prices."""
    return DEFAULT_CATALOG.calculate_cost(model, input_tokens, output_tokens)
