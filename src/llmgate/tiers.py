"""Per-tier limits and model allow-lists."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Optional

from llmgate.catalog import ModelId, parse_model
from llmgate.messages import UserTier

_FREE_MODELS = (
    ModelId.GPT_4O_MINI,
    ModelId.GEMINI_FLASH,
    ModelId.DEEPSEEK_CHAT,
    ModelId.GAMMA,
)
_PAID_MODELS = _FREE_MODELS + (ModelId.CLAUDE_SONNET_4, ModelId.GPT_4O)
_ALL_MODELS = _PAID_MODELS + (ModelId.CLAUDE_OPUS_4,)


@dataclass(frozen=True)
class TierLimits:
    max_tokens_per_day: int
    max_tokens_per_month: int
    allowed_models: tuple[ModelId, ...] = field(default_factory=tuple)
    # None means uncapped
    max_cost_per_month: Optional[float] = None

    def allows(self, model: "str | ModelId") -> bool:
        try:
            return parse_model(model) in self.allowed_models
        except ValueError:
            return False


DEFAULT_TIER_LIMITS: dict[UserTier, TierLimits] = {
    UserTier.FREE: TierLimits(50_000, 500_000, _FREE_MODELS, 5.0),
    UserTier.PRO: TierLimits(1_000_000, 20_000_000, _PAID_MODELS, 50.0),
    UserTier.BUSINESS: TierLimits(5_000_000, 100_000_000, _PAID_MODELS, 250.0),
    UserTier.ENTERPRISE: TierLimits(20_000_000, 500_000_000, _ALL_MODELS, None),
}


def _cost_cap(value) -> Optional[float]:
    return None if value is None else float(value)


def _cost_rank(limits: TierLimits) -> float:
    return math.inf if limits.max_cost_per_month is None else limits.max_cost_per_month


def load_tier_limits(overrides: Optional[dict] = None) -> dict[UserTier, TierLimits]:
    """Apply the config ``tiers`` section over the defaults.

    Raises ``ValueError`` if the result is not monotonically non-decreasing
    from free to enterprise.
    """
    limits = dict(DEFAULT_TIER_LIMITS)
    for raw_tier, cfg in (overrides or {}).items():
        tier = UserTier(raw_tier)
        base = limits[tier]
        allowed = cfg.get("allowed_models")
        limits[tier] = TierLimits(
            max_tokens_per_day=int(cfg.get("max_tokens_per_day", base.max_tokens_per_day)),
            max_tokens_per_month=int(cfg.get("max_tokens_per_month", base.max_tokens_per_month)),
            allowed_models=(
                tuple(parse_model(m) for m in allowed) if allowed is not None else base.allowed_models
            ),
            max_cost_per_month=_cost_cap(cfg.get("max_cost_per_month", base.max_cost_per_month)),
        )

    ordered = [limits[t] for t in UserTier]
    for lower, higher in zip(ordered, ordered[1:]):
        if (
            higher.max_tokens_per_day < lower.max_tokens_per_day
            or higher.max_tokens_per_month < lower.max_tokens_per_month
            or _cost_rank(higher) < _cost_rank(lower)
        ):
            raise ValueError("Tier limits must not decrease from free to enterprise")
    return limits


def tier_limits(tier: "str | UserTier") -> TierLimits:
    return DEFAULT_TIER_LIMITS[UserTier.parse(tier)]
