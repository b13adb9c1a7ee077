"""Request and stream data types shared by the router, adapters and quota layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from llmgate.catalog import ModelId

ROLES = ("user", "assistant", "system")


class UserTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    BUSINESS = "business"
    ENTERPRISE = "enterprise"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: "str | UserTier | None") -> "UserTier":
        """Parse *value*, failing closed to ``FREE`` for anything unrecognized."""
        if isinstance(value, UserTier):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.FREE


@dataclass(frozen=True)
class ChatMessage:
    role: str
    content: str

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"Invalid role '{self.role}', expected one of {ROLES}")

    @classmethod
    def from_dict(cls, data: dict) -> "ChatMessage":
        return cls(role=data.get("role", "user"), content=data.get("content") or "")

    def to_dict(self) -> dict:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class ToolDefinition:
    """Canonical tool shape: name, description and a JSON-Schema-like parameters dict."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments_json: str


@dataclass(frozen=True)
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class UsageTally:
    """Running usage for one provider attempt.

    Adapters update it as usage events arrive, so a caller that abandons
    the stream early can still see what the provider had already billed.
    ``reported`` stays False if the provider never sent usage at all.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    reported: bool = False

    def update(
        self,
        input_tokens: Optional[int] = None,
        output_tokens: Optional[int] = None,
    ) -> None:
        if input_tokens is not None:
            self.input_tokens = input_tokens
            self.reported = True
        if output_tokens is not None:
            self.output_tokens = output_tokens
            self.reported = True

    def snapshot(self) -> Optional[Usage]:
        if not self.reported:
            return None
        return Usage(self.input_tokens, self.output_tokens)


@dataclass(frozen=True)
class StreamChunk:
    content: str = ""
    done: bool = False
    usage: Optional[Usage] = None
    tool_calls: Optional[list[ToolCall]] = None


@dataclass(frozen=True)
class ModelSelectionContext:
    has_tools: bool = False
    is_code_task: bool = False
    requires_reasoning: bool = False
    max_budget_cents_per_mtok: Optional[float] = None
    user_preference: Optional[ModelId] = None
