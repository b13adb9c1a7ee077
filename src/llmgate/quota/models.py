"""Data models for quota checks and usage accounting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from llmgate.messages import UserTier

# Denials an overage plan may turn into a billed admission
CAP_CODES = ("daily_limit", "monthly_limit", "monthly_cost")


@dataclass(frozen=True)
class QuotaUser:
    """Who a request is accounted to. ``org_id`` defaults to the user id."""

    user_id: str
    org_id: str = ""

    @property
    def billing_id(self) -> str:
        return self.org_id or self.user_id


@dataclass
class QuotaSnapshot:
    """A user's tier, limits and current counters as the store sees them."""

    user_id: str
    org_id: str
    tier: UserTier
    max_tokens_per_day: int
    tokens_used_today: int
    max_tokens_per_month: int
    tokens_used_this_month: int
    allowed_models: list[str] = field(default_factory=list)
    max_cost_per_month: Optional[float] = None
    cost_spent_this_month: float = 0.0
    # Estimates held by admitted requests that have not recorded usage yet
    tokens_reserved: int = 0


@dataclass
class QuotaCheckResult:
    """Outcome of a pre-flight quota check. A denial is a value, not an error."""

    allowed: bool
    reason: Optional[str] = None
    daily_used: int = 0
    daily_limit: int = 0
    monthly_used: int = 0
    monthly_limit: int = 0
    is_overage: Optional[bool] = None
    overage_allowed: Optional[bool] = None
    estimated_cost_usd: Optional[float] = None
    cost_spent: float = 0.0
    cost_limit: Optional[float] = None
    # model_not_allowed | daily_limit | monthly_limit | monthly_cost | store_error | overage
    code: Optional[str] = None
    # Set when the store held the estimate against the caps for this request
    reservation_id: Optional[str] = None

    @property
    def over_limit(self) -> bool:
        return self.code in CAP_CODES

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "daily_used": self.daily_used,
            "daily_limit": self.daily_limit,
            "monthly_used": self.monthly_used,
            "monthly_limit": self.monthly_limit,
            "is_overage": self.is_overage,
            "overage_allowed": self.overage_allowed,
            "estimated_cost_usd": self.estimated_cost_usd,
            "cost_spent": self.cost_spent,
            "cost_limit": self.cost_limit,
            "code": self.code,
            "reservation_id": self.reservation_id,
        }


@dataclass(frozen=True)
class UsageRecord:
    """Single append-only row in the usage ledger."""

    request_id: str
    user_id: str
    org_id: str
    model: str
    input_tokens: int
    output_tokens: int
    cost_usd: float
    timestamp: str  # ISO 8601, UTC
    conversation_id: Optional[str] = None
    task_type: Optional[str] = None

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class MeterResult:
    is_overage: bool = False
    overage_cost: float = 0.0


@dataclass(frozen=True)
class OverageCheckResult:
    allowed: bool
    reason: Optional[str] = None
    current_overage_cost: float = 0.0
    max_overage_cost: Optional[float] = None
    rate_per_1k_tokens: float = 0.0


@dataclass
class UsageOutcome:
    """What ``QuotaManager.record_usage`` managed to do.

    Each step is best-effort; failures land in ``errors``.
    """

    recorded: bool = False
    duplicate: bool = False
    metered: bool = False
    is_overage: bool = False
    overage_cost: float = 0.0
    alerts_checked: bool = False
    errors: list[str] = field(default_factory=list)
