"""Deterministic model selection from task signals and caller tier."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from llmgate._logging import get_logger
from llmgate.catalog import DEFAULT_CATALOG, ModelCatalog, ModelId
from llmgate.fallback import get_fallback_chain
from llmgate.messages import ChatMessage, ModelSelectionContext, UserTier
from llmgate.tiers import DEFAULT_TIER_LIMITS, TierLimits

logger = get_logger("LlmGate.Selector")

_CODE_RE = re.compile(
    r"\b(code|function|debug|fix|implement|refactor|typescript|javascript|python|java|class|api)\b"
)
_WRITING_RE = re.compile(r"\b(write|draft|compose|create|document|article|essay|email|letter)\b")
_ANALYSIS_RE = re.compile(r"\b(analyze|explain|understand|summarize|review|compare)\b")
_REASONING_RE = re.compile(r"\b(why|how|reason|logic|think|consider|evaluate|assess)\b")
_PRESENTATION_RE = re.compile(r"\b(presentation|slides|deck|powerpoint)\b")

COMPLEX_MESSAGE_COUNT = 10
COMPLEX_CHAR_COUNT = 5000
FREE_SHORT_CHARS = 500
PRO_LONG_CONTEXT_CHARS = 3000


@dataclass(frozen=True)
class TaskSignals:
    """Independent classifications of the most recent message."""

    is_code: bool = False
    is_writing: bool = False
    is_analysis: bool = False
    requires_reasoning: bool = False
    is_presentation: bool = False
    message_count: int = 0
    total_chars: int = 0

    @property
    def has_complex_context(self) -> bool:
        return self.message_count > COMPLEX_MESSAGE_COUNT or self.total_chars > COMPLEX_CHAR_COUNT


def classify_task(
    messages: Sequence[ChatMessage],
    context: Optional[ModelSelectionContext] = None,
) -> TaskSignals:
    context = context or ModelSelectionContext()
    last = messages[-1].content.lower() if messages else ""
    return TaskSignals(
        is_code=context.is_code_task or bool(_CODE_RE.search(last)),
        is_writing=bool(_WRITING_RE.search(last)),
        is_analysis=bool(_ANALYSIS_RE.search(last)),
        requires_reasoning=context.requires_reasoning or bool(_REASONING_RE.search(last)),
        is_presentation=bool(_PRESENTATION_RE.search(last)),
        message_count=len(messages),
        total_chars=sum(len(m.content) for m in messages),
    )


def _route_free(signals: TaskSignals, context: ModelSelectionContext) -> tuple[ModelId, str]:
    if signals.total_chars < FREE_SHORT_CHARS and not signals.is_code:
        return ModelId.GPT_4O_MINI, "short message"
    return ModelId.GEMINI_FLASH, "free model"


def _route_pro(signals: TaskSignals, context: ModelSelectionContext) -> tuple[ModelId, str]:
    if signals.is_code:
        return ModelId.CLAUDE_SONNET_4, "code task"
    if signals.requires_reasoning and signals.has_complex_context:
        return ModelId.GPT_4O, "complex reasoning"
    if signals.total_chars > PRO_LONG_CONTEXT_CHARS:
        return ModelId.GEMINI_FLASH, "long context"
    return ModelId.GPT_4O_MINI, "default"


def _route_business(signals: TaskSignals, context: ModelSelectionContext) -> tuple[ModelId, str]:
    if signals.is_code:
        return ModelId.CLAUDE_SONNET_4, "code task"
    if signals.requires_reasoning:
        return ModelId.GPT_4O, "reasoning task"
    if context.has_tools:
        return ModelId.GPT_4O, "tool use"
    return ModelId.GPT_4O, "default"


def _route_enterprise(signals: TaskSignals, context: ModelSelectionContext) -> tuple[ModelId, str]:
    if signals.is_code:
        return ModelId.CLAUDE_OPUS_4, "code task"
    if signals.requires_reasoning:
        return ModelId.CLAUDE_OPUS_4, "reasoning task"
    if context.has_tools:
        return ModelId.CLAUDE_OPUS_4, "tool use"
    return ModelId.CLAUDE_OPUS_4, "default"


_TIER_ROUTES = {
    UserTier.FREE: _route_free,
    UserTier.PRO: _route_pro,
    UserTier.BUSINESS: _route_business,
    UserTier.ENTERPRISE: _route_enterprise,
}


def _apply_budget(
    choice: ModelId,
    tier: UserTier,
    budget_cents: float,
    catalog: ModelCatalog,
    limits: dict[UserTier, TierLimits],
) -> ModelId:
    """Swap *choice* for a tier-allowed model whose blended price fits the budget."""

    def fits(model: ModelId) -> bool:
        return catalog.get_price(model).blended_per_million * 100 <= budget_cents

    if fits(choice):
        return choice
    allowed = [m for m in limits[tier].allowed_models if m is not ModelId.GAMMA]
    for candidate in get_fallback_chain(choice)[1:]:
        if candidate in allowed and fits(candidate):
            return candidate
    return catalog.cheapest(allowed)


def select_best_model(
    messages: Sequence[ChatMessage],
    tier: "str | UserTier",
    context: Optional[ModelSelectionContext] = None,
    catalog: Optional[ModelCatalog] = None,
    tier_limits: Optional[dict[UserTier, TierLimits]] = None,
) -> ModelId:
    """Pick one concrete model for this request.

    Pure and deterministic: identical inputs always give the same model.
    An explicit non-``auto`` preference wins over every other signal.
    Unrecognized tiers are treated as ``free``. A budget downgrade only
    picks models in *tier_limits* (the configured limits; defaults if None).
    """
    context = context or ModelSelectionContext()
    catalog = catalog or DEFAULT_CATALOG
    tier_limits = tier_limits or DEFAULT_TIER_LIMITS

    if context.user_preference is not None and context.user_preference != ModelId.AUTO:
        logger.info(f"[Selector] Using caller preference: {context.user_preference}")
        return ModelId(context.user_preference)

    signals = classify_task(messages, context)
    logger.debug(f"[Selector] Task analysis: {signals}")

    if signals.is_presentation:
        logger.info("[Selector] Selected 'gamma' for presentation task")
        return ModelId.GAMMA

    user_tier = UserTier.parse(tier)
    choice, reason = _TIER_ROUTES[user_tier](signals, context)

    if context.max_budget_cents_per_mtok is not None:
        budgeted = _apply_budget(
            choice, user_tier, context.max_budget_cents_per_mtok, catalog, tier_limits
        )
        if budgeted != choice:
            reason = f"{reason}, over budget for {choice}"
            choice = budgeted

    logger.info(f"[Selector] Selected '{choice}' for {user_tier} tier ({reason})")
    return choice
