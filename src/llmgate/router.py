from __future__ import annotations

from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Sequence

from llmgate._logging import get_logger
from llmgate.catalog import ModelId, parse_model
from llmgate.errors import FallbackExhaustedError
from llmgate.events import LoggingEvents, RoutingEvents
from llmgate.fallback import get_fallback_chain
from llmgate.messages import (
    ChatMessage,
    ModelSelectionContext,
    StreamChunk,
    ToolDefinition,
    UsageTally,
    UserTier,
)
from llmgate.providers import ProviderRegistry
from llmgate.selector import select_best_model
from llmgate.tiers import TierLimits

logger = get_logger("LlmGate.Router")


@dataclass
class RequestTrace:
    """What happened to one request, filled in by the router as it goes.

    Owned by the caller; pass a fresh one per request.
    """

    requested_model: str = ""
    resolved_model: Optional[ModelId] = None
    chain: list[ModelId] = field(default_factory=list)
    # (model, outcome) with outcome in skipped|failed|succeeded|aborted
    attempts: list[tuple[ModelId, str]] = field(default_factory=list)
    served_model: Optional[ModelId] = None
    # Usage of the attempt currently (or last) streaming
    usage: UsageTally = field(default_factory=UsageTally)
    # One tally per attempted candidate, in order; failed attempts may have billed tokens
    attempt_usage: list[tuple[ModelId, UsageTally]] = field(default_factory=list)
    emitted: bool = False
    completed: bool = False

    @property
    def attempted(self) -> list[ModelId]:
        return [m for m, outcome in self.attempts if outcome != "skipped"]

    @property
    def skipped(self) -> list[ModelId]:
        return [m for m, outcome in self.attempts if outcome == "skipped"]


class ChatRouter:
    """Fallback-chain streaming with graceful degradation.

    Resolves ``auto``, then walks the model's fallback chain one candidate
    at a time, forwarding the first candidate that produces output. Once
    any chunk has been forwarded, a failure is re-raised instead of retried.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        events: Optional[RoutingEvents] = None,
        tier_limits: Optional[dict[UserTier, TierLimits]] = None,
    ):
        self._registry = registry
        self._events = events or LoggingEvents()
        # Configured allow-lists for budget downgrades; defaults if None
        self._tier_limits = tier_limits

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    def _emit(self, hook: str, *args) -> None:
        try:
            getattr(self._events, hook)(*args)
        except Exception:
            # Never fail a request because of an event handler
            logger.debug("%s handler raised; ignoring", hook, exc_info=True)

    def resolve_model(
        self,
        model: "str | ModelId",
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        tier: "str | UserTier" = UserTier.FREE,
        context: Optional[ModelSelectionContext] = None,
    ) -> ModelId:
        """Return the concrete model for *model*, running selection for ``auto``."""
        model_id = parse_model(model)
        if model_id is not ModelId.AUTO:
            return model_id
        context = context or ModelSelectionContext()
        if tools and not context.has_tools:
            context = ModelSelectionContext(
                has_tools=True,
                is_code_task=context.is_code_task,
                requires_reasoning=context.requires_reasoning,
                max_budget_cents_per_mtok=context.max_budget_cents_per_mtok,
                user_preference=context.user_preference,
            )
        return select_best_model(
            messages,
            tier,
            context,
            catalog=self._registry.catalog,
            tier_limits=self._tier_limits,
        )

    async def stream_chat_completion(
        self,
        model: "str | ModelId",
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        tier: "str | UserTier" = UserTier.FREE,
        context: Optional[ModelSelectionContext] = None,
        trace: Optional[RequestTrace] = None,
    ) -> AsyncIterator[StreamChunk]:
        trace = trace if trace is not None else RequestTrace()
        trace.requested_model = str(model)

        resolved = self.resolve_model(model, messages, tools, tier, context)
        trace.resolved_model = resolved
        self._emit("on_model_selected", str(model), resolved, str(UserTier.parse(tier)))

        chain = get_fallback_chain(resolved)
        trace.chain = list(chain)

        last_error: Optional[BaseException] = None
        last_failed: Optional[ModelId] = None

        for candidate in chain:
            if not self._registry.is_model_available(candidate):
                trace.attempts.append((candidate, "skipped"))
                self._emit("on_candidate_skipped", candidate, "no credentials configured")
                continue

            if last_failed is not None and last_error is not None:
                self._emit("on_fallback", last_failed, candidate, last_error)

            provider = self._registry.get(candidate)
            spec = self._registry.spec(candidate)
            tally = UsageTally()
            trace.usage = tally
            trace.attempt_usage.append((candidate, tally))
            emitted = False

            try:
                async with aclosing(provider.stream(spec, messages, tools, tally=tally)) as stream:
                    async for chunk in stream:
                        emitted = True
                        trace.emitted = True
                        yield chunk
            except GeneratorExit:
                trace.attempts.append((candidate, "aborted"))
                raise
            except Exception as exc:
                trace.attempts.append((candidate, "failed"))
                self._emit("on_attempt_failed", candidate, exc, emitted)
                if emitted:
                    # Output already reached the caller; it cannot be rewound.
                    raise
                last_error = exc
                last_failed = candidate
                continue

            trace.attempts.append((candidate, "succeeded"))
            trace.served_model = candidate
            trace.completed = True
            self._emit("on_attempt_succeeded", candidate)
            return

        error = FallbackExhaustedError(
            str(resolved),
            attempted=[str(m) for m in trace.attempted],
            skipped=[str(m) for m in trace.skipped],
            last_error=last_error,
        )
        logger.error(str(error))
        if last_error is not None:
            raise error from last_error
        raise error
