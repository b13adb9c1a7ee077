import os
from abc import ABC, abstractmethod
from typing import AsyncIterator, Callable, Hashable, Optional, Sequence

from llmgate.catalog import ModelSpec
from llmgate.messages import ChatMessage, StreamChunk, ToolCall, ToolDefinition, UsageTally

DEFAULT_MAX_TOKENS = 8192
DEFAULT_TIMEOUT = 120.0


def split_system(messages: Sequence[ChatMessage]) -> tuple[str, list[ChatMessage]]:
    """Separate system messages from the conversation turns.

    Returns the joined system text (``""`` if none) and the remaining
    user/assistant messages in their original order.
    """
    system = "\n".join(m.content for m in messages if m.role == "system" and m.content)
    turns = [m for m in messages if m.role != "system"]
    return system, turns


class ToolCallAccumulator:
    """Accumulate streamed tool-call fragments and release each call once.

    Fragments are grouped by a provider-specific correlation key (a
    positional index, a content-block index, an explicit id). ``key_fn``
    may normalize keys before grouping. Calls come out in first-seen order.
    """

    def __init__(self, key_fn: Optional[Callable[[Hashable], Hashable]] = None):
        self._key_fn = key_fn or (lambda key: key)
        self._order: list[Hashable] = []
        self._calls: dict[Hashable, dict] = {}

    def add(
        self,
        key: Hashable,
        *,
        id: Optional[str] = None,
        name: Optional[str] = None,
        arguments: str = "",
    ) -> None:
        k = self._key_fn(key)
        call = self._calls.get(k)
        if call is None:
            call = {"id": "", "name": "", "arguments": ""}
            self._calls[k] = call
            self._order.append(k)
        if id:
            call["id"] = id
        if name:
            call["name"] = name
        if arguments:
            call["arguments"] += arguments

    def __bool__(self) -> bool:
        return bool(self._calls)

    def __len__(self) -> int:
        return len(self._calls)

    def drain(self) -> list[ToolCall]:
        """Return the completed calls and reset the accumulator."""
        calls = [
            ToolCall(
                id=self._calls[k]["id"] or f"call_{i}",
                name=self._calls[k]["name"],
                arguments_json=self._calls[k]["arguments"] or "{}",
            )
            for i, k in enumerate(self._order)
        ]
        self._order.clear()
        self._calls.clear()
        return calls


class StreamingProvider(ABC):
    """Abstract base for all streaming LLM providers.

    One instance serves every model of its provider family. Clients are
    created in ``__init__`` from the provider config section, never lazily.
    """

    name: str = ""

    def __init__(self, provider_config: dict):
        self.config = provider_config
        self.name = provider_config.get("name", self.name)
        self.api_key = self.resolve_api_key()

    def is_available(self) -> bool:
        """True when credentials for this provider are configured."""
        return bool(self.api_key)

    @abstractmethod
    def stream(
        self,
        model: ModelSpec,
        messages: Sequence[ChatMessage],
        tools: Optional[Sequence[ToolDefinition]] = None,
        *,
        tally: Optional[UsageTally] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Stream one completion as ``StreamChunk`` objects.

        Yields content chunks as they arrive, at most one tool-call chunk,
        and exactly one terminal ``done=True`` chunk carrying the final
        usage (``None`` when the provider reported none). *tally* is
        updated whenever usage arrives. Transport errors propagate.
        """
        ...

    @property
    def max_tokens(self) -> int:
        return int(self.config.get("parameters", {}).get("max_tokens", DEFAULT_MAX_TOKENS))

    @property
    def timeout(self) -> float:
        return float(self.config.get("timeout", DEFAULT_TIMEOUT))

    def resolve_api_key(self) -> Optional[str]:
        """Resolve an API key from config value or environment variable."""
        key = self.config.get("api_key")
        if key and "YOUR_PASTED_KEY" not in str(key) and "YOUR_API_KEY" not in str(key):
            return key
        env_key = self.config.get("env_key")
        if env_key:
            return os.environ.get(env_key) or None
        return None
