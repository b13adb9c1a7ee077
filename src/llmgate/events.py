"""Structured routing events.

The router, gateway and quota manager report what they decide through a
``RoutingEvents`` object instead of log strings, so tests can assert on
calls. ``LoggingEvents`` is the default and just logs.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from llmgate._logging import get_logger

if TYPE_CHECKING:
    from llmgate.catalog import ModelId
    from llmgate.quota.models import QuotaCheckResult, QuotaUser

logger = get_logger("LlmGate.Events")


class RoutingEvents:
    """No-op base; override the hooks you care about."""

    def on_model_selected(self, requested: str, selected: "ModelId", tier: str) -> None:
        pass

    def on_candidate_skipped(self, model: "ModelId", reason: str) -> None:
        """A candidate was never tried (no credentials / not registered)."""

    def on_attempt_failed(self, model: "ModelId", error: BaseException, partial: bool) -> None:
        """A candidate was tried and raised; *partial* if output had been forwarded."""

    def on_fallback(self, from_model: "ModelId", to_model: "ModelId", error: BaseException) -> None:
        pass

    def on_attempt_succeeded(self, model: "ModelId") -> None:
        pass

    def on_quota_denied(self, user: "QuotaUser", result: "QuotaCheckResult") -> None:
        pass

    def on_usage_recorded(
        self,
        user: "QuotaUser",
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
    ) -> None:
        pass


class LoggingEvents(RoutingEvents):
    """Log every event at a sensible level."""

    def on_model_selected(self, requested, selected, tier):
        logger.info(f"[Router] {requested} -> {selected} (tier={tier})")

    def on_candidate_skipped(self, model, reason):
        logger.info(f"[Router] Skipping {model}: {reason}")

    def on_attempt_failed(self, model, error, partial):
        if partial:
            logger.error(f"[Router] {model} failed after partial output: {error}")
        else:
            logger.warning(f"[Router] {model} failed: {error}")

    def on_fallback(self, from_model, to_model, error):
        logger.warning(f"[Router] Falling back {from_model} -> {to_model}")

    def on_attempt_succeeded(self, model):
        logger.info(f"[Router] Success from {model}.")

    def on_quota_denied(self, user, result):
        logger.warning(f"[Quota] Denied {user.user_id}: {result.reason}")

    def on_usage_recorded(self, user, model, input_tokens, output_tokens, cost):
        logger.info(
            f"[Quota] Recorded {input_tokens}+{output_tokens} tokens on {model} "
            f"for {user.user_id} (${cost:.6f})"
        )


class RecordingEvents(RoutingEvents):
    """Collects events as ``(name, args)`` tuples; handy in tests and the CLI."""

    def __init__(self, delegate: Optional[RoutingEvents] = None):
        self.events: list[tuple[str, tuple]] = []
        self._delegate = delegate

    def _record(self, name: str, *args) -> None:
        self.events.append((name, args))
        if self._delegate is not None:
            getattr(self._delegate, name)(*args)

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def on_model_selected(self, requested, selected, tier):
        self._record("on_model_selected", requested, selected, tier)

    def on_candidate_skipped(self, model, reason):
        self._record("on_candidate_skipped", model, reason)

    def on_attempt_failed(self, model, error, partial):
        self._record("on_attempt_failed", model, error, partial)

    def on_fallback(self, from_model, to_model, error):
        self._record("on_fallback", from_model, to_model, error)

    def on_attempt_succeeded(self, model):
        self._record("on_attempt_succeeded", model)

    def on_quota_denied(self, user, result):
        self._record("on_quota_denied", user, result)

    def on_usage_recorded(self, user, model, input_tokens, output_tokens, cost):
        self._record("on_usage_recorded", user, model, input_tokens, output_tokens, cost)
