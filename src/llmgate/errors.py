"""Exception hierarchy for llmgate."""

from __future__ import annotations

from typing import Optional


class LlmGateError(Exception):
    """Base class for all llmgate errors."""


class ConfigError(LlmGateError):
    """Invalid or unusable configuration."""


class ProviderError(LlmGateError):
    """A provider returned something the adapter cannot use."""

    def __init__(self, model: str, message: str):
        super().__init__(f"{model}: {message}")
        self.model = model


class RoutingError(LlmGateError):
    """Raised by the router when a request cannot be served."""


class FallbackExhaustedError(RoutingError):
    """Every candidate in the fallback chain failed or was unavailable."""

    def __init__(
        self,
        model: str,
        attempted: list[str],
        skipped: list[str],
        last_error: Optional[BaseException] = None,
    ):
        self.model = model
        self.attempted = list(attempted)
        self.skipped = list(skipped)
        self.last_error = last_error

        if not attempted:
            message = (
                f"No provider configured for '{model}' or any fallback "
                f"(skipped: {', '.join(skipped)})"
            )
        else:
            message = (
                f"All fallback candidates failed for '{model}' "
                f"(tried: {', '.join(attempted)}"
            )
            if skipped:
                message += f"; skipped: {', '.join(skipped)}"
            message += ")"
            if last_error is not None:
                message += f". Last error: {last_error}"
        super().__init__(message)
