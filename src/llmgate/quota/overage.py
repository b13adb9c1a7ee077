"""Whether an organization may go past its token caps, and at what price."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional, Protocol

from llmgate._logging import get_logger
from llmgate.messages import UserTier
from llmgate.quota.models import OverageCheckResult

logger = get_logger("LlmGate.Overage")


@dataclass(frozen=True)
class PlanOverageConfig:
    overage_allowed: bool
    overage_rate_per_1k_tokens: float = 0.0
    max_overage_usd: Optional[float] = None


DEFAULT_PLAN_OVERAGE: dict[UserTier, PlanOverageConfig] = {
    UserTier.FREE: PlanOverageConfig(False),
    UserTier.PRO: PlanOverageConfig(True, 0.002, 100.0),
    UserTier.BUSINESS: PlanOverageConfig(True, 0.0015, 500.0),
    UserTier.ENTERPRISE: PlanOverageConfig(True, 0.001, None),
}


class _OverageSource(Protocol):
    def get_usage_summary(self, org_id: str): ...


def load_plan_overage(overrides: Optional[dict] = None) -> dict[UserTier, PlanOverageConfig]:
    plans = dict(DEFAULT_PLAN_OVERAGE)
    for raw_tier, cfg in (overrides or {}).items():
        tier = UserTier(raw_tier)
        base = plans[tier]
        plans[tier] = PlanOverageConfig(
            overage_allowed=bool(cfg.get("overage_allowed", base.overage_allowed)),
            overage_rate_per_1k_tokens=float(
                cfg.get("overage_rate_per_1k_tokens", base.overage_rate_per_1k_tokens)
            ),
            max_overage_usd=cfg.get("max_overage_usd", base.max_overage_usd),
        )
    return plans


class PlanOverageEligibility:
    """Plan-level overage policy with a per-organization off switch.

    Current overage spend comes from *meter* (anything with
    ``get_usage_summary(org_id).total_overage_cost``); with no meter it is
    taken as zero.
    """

    def __init__(
        self,
        plans: Optional[dict[UserTier, PlanOverageConfig]] = None,
        meter: Optional[_OverageSource] = None,
        disabled_orgs: Iterable[str] = (),
    ) -> None:
        self.plans = plans or dict(DEFAULT_PLAN_OVERAGE)
        self.meter = meter
        self._disabled = set(disabled_orgs)

    def disable(self, org_id: str) -> None:
        self._disabled.add(org_id)

    def enable(self, org_id: str) -> None:
        self._disabled.discard(org_id)

    def check_overage_allowed(self, org_id: str, tier: str) -> OverageCheckResult:
        tier = UserTier.parse(tier)
        config = self.plans.get(tier)
        if config is None:
            return OverageCheckResult(False, "Plan configuration not found")

        if not config.overage_allowed:
            return OverageCheckResult(
                False, f"Overage is not available on the {tier} plan. Upgrade to continue."
            )

        if org_id in self._disabled:
            return OverageCheckResult(
                False,
                "Overage has been disabled for this account.",
                max_overage_cost=config.max_overage_usd,
                rate_per_1k_tokens=config.overage_rate_per_1k_tokens,
            )

        current = 0.0
        if self.meter is not None:
            current = self.meter.get_usage_summary(org_id).total_overage_cost

        cap = config.max_overage_usd
        if cap is not None and current >= cap:
            logger.warning(f"[Overage] {org_id} reached overage cap ${cap:.2f}")
            return OverageCheckResult(
                False,
                f"Overage cap of ${cap:.2f} reached. Contact sales to increase limit.",
                current_overage_cost=current,
                max_overage_cost=cap,
                rate_per_1k_tokens=config.overage_rate_per_1k_tokens,
            )

        return OverageCheckResult(
            True,
            current_overage_cost=current,
            max_overage_cost=cap,
            rate_per_1k_tokens=config.overage_rate_per_1k_tokens,
        )
