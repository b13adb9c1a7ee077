"""Request front door: admit against quota, route, then account for usage.

Quota is consulted before the router runs and after it finishes, never by
the router itself.
"""

from __future__ import annotations

import asyncio
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Sequence

from llmgate._logging import get_logger
from llmgate.catalog import ModelId
from llmgate.messages import (
    ChatMessage,
    ModelSelectionContext,
    StreamChunk,
    ToolCall,
    ToolDefinition,
    Usage,
    UserTier,
)
from llmgate.quota.manager import QuotaManager
from llmgate.quota.models import QuotaCheckResult, QuotaUser, UsageOutcome
from llmgate.router import ChatRouter, RequestTrace

logger = get_logger("LlmGate.Gateway")


@dataclass
class Admission:
    check: QuotaCheckResult
    model: ModelId
    tier: UserTier
    estimated_tokens: int
    # Also the key of the quota reservation taken by an allowed check
    request_id: str = ""

    @property
    def allowed(self) -> bool:
        return self.check.allowed


@dataclass
class Completion:
    """Collected result of a non-streaming call."""

    admission: Admission
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Optional[Usage] = None
    served_model: Optional[ModelId] = None
    accounting: Optional[UsageOutcome] = None


@dataclass
class GatewayTrace(RequestTrace):
    """Router trace plus what the gateway did with the request's usage.

    ``attempt_accounting`` has one outcome per attempt that was billed;
    ``accounting`` is the last of them (the served model's, on success).
    """

    request_id: str = ""
    accounting: Optional[UsageOutcome] = None
    attempt_accounting: list[UsageOutcome] = field(default_factory=list)


class ChatGateway:
    def __init__(self, router: ChatRouter, quota: QuotaManager):
        self.router = router
        self.quota = quota

    async def admit(
        self,
        user: QuotaUser,
        model: "str | ModelId",
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        context: Optional[ModelSelectionContext] = None,
        allow_overage: bool = True,
        request_id: Optional[str] = None,
    ) -> Admission:
        """Resolve the model for *user* and run the pre-flight quota check.

        A denial comes back as ``Admission.allowed == False``; nothing is
        raised for quota reasons. An allowed check reserves the estimate
        under the admission's ``request_id`` until ``stream`` accounts for it.
        """
        request_id = request_id or uuid.uuid4().hex
        tier = await asyncio.to_thread(self.quota.get_tier, user)
        resolved = self.router.resolve_model(model, messages, tools, tier, context)
        estimated = self.quota.estimate_tokens(messages)
        check_fn = self.quota.check_quota_with_overage if allow_overage else self.quota.check_quota
        check = await asyncio.to_thread(
            check_fn, user, estimated, resolved.value, reservation_id=request_id
        )
        return Admission(
            check=check,
            model=resolved,
            tier=tier,
            estimated_tokens=estimated,
            request_id=request_id,
        )

    async def stream(
        self,
        admission: Admission,
        user: QuotaUser,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        context: Optional[ModelSelectionContext] = None,
        conversation_id: Optional[str] = None,
        request_id: Optional[str] = None,
        trace: Optional[GatewayTrace] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream an admitted request and record its usage afterwards.

        Every attempt whose provider reported tokens is recorded, including
        attempts that failed before a fallback served the request and the
        active attempt of an abandoned stream.
        """
        if not admission.allowed:
            raise ValueError(f"Request was not admitted: {admission.check.reason}")

        trace = trace if trace is not None else GatewayTrace()
        trace.request_id = (
            request_id or admission.request_id or trace.request_id or uuid.uuid4().hex
        )
        try:
            async with aclosing(
                self.router.stream_chat_completion(
                    admission.model, messages, tools, admission.tier, context, trace
                )
            ) as chunks:
                async for chunk in chunks:
                    yield chunk
        finally:
            outcomes = await self._account(
                user, trace, trace.request_id, conversation_id, admission.check.reservation_id
            )
            trace.attempt_accounting = outcomes
            trace.accounting = outcomes[-1] if outcomes else None

    def _billable_attempts(
        self, trace: RequestTrace, request_id: str
    ) -> list[tuple[ModelId, Usage, str]]:
        """(model, usage, ledger id) for each attempt that must be recorded.

        The last attempt is recorded under *request_id*, earlier ones under
        ``<request_id>:<attempt index>``.
        """
        billable = []
        last = len(trace.attempt_usage) - 1
        for i, (model, tally) in enumerate(trace.attempt_usage):
            usage = tally.snapshot()
            if trace.completed and i == last:
                # Unknown usage on the served model counts as zero
                usage = usage or Usage()
            elif usage is None or usage.total_tokens <= 0:
                continue
            billable.append((model, usage, request_id if i == last else f"{request_id}:{i}"))
        return billable

    async def _account(
        self,
        user: QuotaUser,
        trace: RequestTrace,
        request_id: str,
        conversation_id: Optional[str],
        reservation_id: Optional[str],
    ) -> list[UsageOutcome]:
        billable = self._billable_attempts(trace, request_id)
        if not billable:
            logger.info(f"[Gateway] Request {request_id} ended without billable usage")
            await asyncio.to_thread(self.quota.release_reservation, reservation_id)
            return []
        if not trace.completed:
            logger.info(
                f"[Gateway] Request {request_id} ended early; recording partial usage on "
                f"{', '.join(str(model) for model, _, _ in billable)}"
            )

        outcomes = []
        for model, usage, ledger_id in billable:
            cost = self.quota.catalog.calculate_cost(model, usage.input_tokens, usage.output_tokens)
            outcome = await asyncio.to_thread(
                self.quota.record_usage,
                user,
                model.value,
                usage.input_tokens,
                usage.output_tokens,
                cost,
                request_id=ledger_id,
                conversation_id=conversation_id,
                reservation_id=reservation_id,
            )
            outcomes.append(outcome)
        return outcomes

    async def complete(
        self,
        user: QuotaUser,
        model: "str | ModelId",
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        context: Optional[ModelSelectionContext] = None,
        conversation_id: Optional[str] = None,
    ) -> Completion:
        admission = await self.admit(user, model, messages, tools, context)
        result = Completion(admission=admission)
        if not admission.allowed:
            return result

        trace = GatewayTrace()
        parts: list[str] = []
        async for chunk in self.stream(
            admission, user, messages, tools, context, conversation_id, trace=trace
        ):
            if chunk.content:
                parts.append(chunk.content)
            if chunk.tool_calls:
                result.tool_calls.extend(chunk.tool_calls)
            if chunk.done:
                result.usage = chunk.usage
        result.content = "".join(parts)
        result.served_model = trace.served_model
        result.accounting = trace.accounting
        return result
