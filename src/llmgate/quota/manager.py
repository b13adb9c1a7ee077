"""Pre-flight quota checks and post-hoc usage accounting."""

from __future__ import annotations

import math
from pathlib import Path
from typing import Optional, Sequence

from llmgate._logging import get_logger
from llmgate.catalog import DEFAULT_CATALOG, ModelCatalog
from llmgate.events import LoggingEvents, RoutingEvents
from llmgate.messages import ChatMessage, UserTier
from llmgate.quota.base import AlertSink, MeteringSink, OverageEligibility, QuotaStore
from llmgate.quota.models import QuotaCheckResult, QuotaUser, UsageOutcome

logger = get_logger("LlmGate.Quota")

CHARS_PER_TOKEN = 4


def estimate_tokens(messages: Sequence[ChatMessage], chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Rough pre-flight token estimate: total characters / *chars_per_token*, rounded up.

    This is only used to admit a request. It is not a billing figure;
    billing uses the usage the provider reports.
    """
    total_chars = sum(len(m.content) for m in messages)
    return math.ceil(total_chars / chars_per_token)


def _as_user(user: "QuotaUser | str") -> QuotaUser:
    return user if isinstance(user, QuotaUser) else QuotaUser(str(user))


class QuotaManager:
    """Admission and accounting against a ``QuotaStore``.

    Metering, alerting and overage eligibility are optional collaborators.
    Admission never raises on a store failure (it fails open), and
    accounting never raises at all.
    """

    def __init__(
        self,
        store: QuotaStore,
        meter: Optional[MeteringSink] = None,
        alerts: Optional[AlertSink] = None,
        overage: Optional[OverageEligibility] = None,
        catalog: Optional[ModelCatalog] = None,
        events: Optional[RoutingEvents] = None,
        chars_per_token: int = CHARS_PER_TOKEN,
    ) -> None:
        self.store = store
        self.meter = meter
        self.alerts = alerts
        self.overage = overage
        self.catalog = catalog or DEFAULT_CATALOG
        self.events = events or LoggingEvents()
        self.chars_per_token = chars_per_token

    @classmethod
    def from_config(
        cls,
        config,
        db_path: Optional[Path] = None,
        events: Optional[RoutingEvents] = None,
    ) -> "QuotaManager":
        """Wire the SQLite store, meter, overage policy and alerter from a ``ConfigLoader``."""
        from llmgate.quota.alerts import DEFAULT_THRESHOLDS, ThresholdAlerter
        from llmgate.quota.metering import SQLiteMeter, load_meter_config
        from llmgate.quota.overage import PlanOverageEligibility, load_plan_overage
        from llmgate.quota.store import SQLiteQuotaStore
        from llmgate.tiers import load_tier_limits

        quota_cfg = config.get_quota_config()
        overage_cfg = config.get_overage_config()
        alerts_cfg = config.get_alerts_config()

        path = db_path or quota_cfg.get("db_path")
        path = Path(path).expanduser() if path else None

        store = SQLiteQuotaStore(
            path,
            tier_limits=load_tier_limits(config.get_tiers_config()),
            default_tier=UserTier.parse(quota_cfg.get("default_tier")),
        )
        meter = SQLiteMeter(store.db_path, meters=load_meter_config(overage_cfg.get("meters")))
        overage = PlanOverageEligibility(
            plans=load_plan_overage(overage_cfg.get("plans")),
            meter=meter,
            disabled_orgs=overage_cfg.get("disabled_orgs", ()),
        )
        alerts = None
        if alerts_cfg.get("enabled", True):
            alerts = ThresholdAlerter(meter, alerts_cfg.get("thresholds", DEFAULT_THRESHOLDS))

        return cls(
            store,
            meter=meter,
            alerts=alerts,
            overage=overage,
            catalog=ModelCatalog(config.get_model_overrides()),
            events=events,
            chars_per_token=int(quota_cfg.get("chars_per_token", CHARS_PER_TOKEN)),
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def estimate_tokens(self, messages: Sequence[ChatMessage]) -> int:
        return estimate_tokens(messages, self.chars_per_token)

    def get_tier(self, user: "QuotaUser | str") -> UserTier:
        """The user's tier, or ``free`` if the store cannot be read."""
        user = _as_user(user)
        try:
            return UserTier.parse(self.store.get_or_create_quota(user.user_id, user.org_id).tier)
        except Exception as exc:
            logger.warning(f"[Quota] Tier lookup failed for {user.user_id}: {exc}", exc_info=True)
            return UserTier.FREE

    def _denied(self, user: QuotaUser, result: QuotaCheckResult) -> None:
        try:
            self.events.on_quota_denied(user, result)
        except Exception:
            logger.debug("on_quota_denied handler raised; ignoring", exc_info=True)

    def check_quota(
        self,
        user: "QuotaUser | str",
        estimated_tokens: int,
        model: str,
        *,
        reservation_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        """Check the caps; an allowed result holds its estimate until recorded or released."""
        user = _as_user(user)
        result = self._check_store(user, estimated_tokens, model, reservation_id)
        if not result.allowed:
            self._denied(user, result)
        return result

    def _check_store(
        self,
        user: QuotaUser,
        estimated_tokens: int,
        model: str,
        reservation_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        try:
            self.store.get_or_create_quota(user.user_id, user.org_id)
            result = self.store.can_use_tokens(
                user.user_id, estimated_tokens, str(model), reservation_id=reservation_id
            )
        except Exception as exc:
            logger.warning(
                f"[Quota] Store error checking {user.user_id}; allowing request: {exc}",
                exc_info=True,
            )
            return QuotaCheckResult(
                allowed=True,
                reason=f"Quota check unavailable: {exc}",
                code="store_error",
            )

        return result

    def check_quota_with_overage(
        self,
        user: "QuotaUser | str",
        estimated_tokens: int,
        model: str,
        *,
        reservation_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        """Like ``check_quota``, but an over-cap denial may become a billed overage.

        Only token and spend cap denials are eligible; a model outside the
        tier's allow-list stays denied. Overage admissions reserve nothing,
        since the cap they would count against is already spent.
        """
        user = _as_user(user)
        result = self._check_store(user, estimated_tokens, model, reservation_id)
        if result.allowed:
            return result
        if not result.over_limit:
            self._denied(user, result)
            return result

        result.is_overage = True
        result.overage_allowed = False
        eligibility = None
        if self.overage is not None:
            try:
                eligibility = self.overage.check_overage_allowed(user.billing_id, self.get_tier(user))
            except Exception as exc:
                logger.warning(f"[Quota] Overage check failed for {user.user_id}: {exc}", exc_info=True)

        if eligibility is None or not eligibility.allowed:
            if eligibility is not None and eligibility.reason:
                result.reason = f"{result.reason}. {eligibility.reason}"
            self._denied(user, result)
            return result

        if result.code == "monthly_cost":
            overflow = estimated_tokens
        else:
            over_daily = result.daily_used + estimated_tokens - result.daily_limit
            over_monthly = result.monthly_used + estimated_tokens - result.monthly_limit
            overflow = min(max(over_daily, over_monthly, 0), estimated_tokens)
        cost = overflow / 1000 * eligibility.rate_per_1k_tokens
        logger.info(f"[Quota] {user.user_id} admitted on overage (est. ${cost:.4f})")

        return QuotaCheckResult(
            allowed=True,
            reason=f"{result.reason}; continuing with overage billing",
            daily_used=result.daily_used,
            daily_limit=result.daily_limit,
            monthly_used=result.monthly_used,
            monthly_limit=result.monthly_limit,
            cost_spent=result.cost_spent,
            cost_limit=result.cost_limit,
            is_overage=True,
            overage_allowed=True,
            estimated_cost_usd=cost,
            code="overage",
        )

    # ------------------------------------------------------------------
    # Accounting
    # ------------------------------------------------------------------

    def release_reservation(self, reservation_id: Optional[str]) -> bool:
        """Give back an admission reservation that will never be recorded.

        Best-effort like the rest of accounting; unknown ids are a no-op.
        """
        if not reservation_id:
            return False
        try:
            return bool(self.store.release_reservation(reservation_id))
        except Exception as exc:
            logger.warning(f"[Quota] Failed to release reservation {reservation_id}: {exc}", exc_info=True)
            return False

    def record_usage(
        self,
        user: "QuotaUser | str",
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        *,
        request_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
        task_type: Optional[str] = None,
        reservation_id: Optional[str] = None,
    ) -> UsageOutcome:
        """Append the usage record, meter it, then check alert thresholds.

        Every step is best-effort: failures are logged and collected in
        ``UsageOutcome.errors``. A repeated *request_id* is a no-op. The
        admission reservation *reservation_id* is consumed with the record.
        """
        user = _as_user(user)
        outcome = UsageOutcome()
        total = max(input_tokens, 0) + max(output_tokens, 0)

        try:
            inserted = self.store.record_ai_usage(
                user.user_id,
                str(model),
                input_tokens,
                output_tokens,
                cost,
                conversation_id,
                task_type,
                request_id=request_id,
                org_id=user.org_id,
                reservation_id=reservation_id,
            )
        except Exception as exc:
            logger.warning(f"[Quota] Failed to record usage for {user.user_id}: {exc}", exc_info=True)
            outcome.errors.append(f"store: {exc}")
            return outcome

        if inserted is False:
            logger.info(f"[Quota] Usage for request {request_id} already recorded")
            outcome.duplicate = True
            return outcome

        outcome.recorded = True
        try:
            self.events.on_usage_recorded(user, str(model), input_tokens, output_tokens, cost)
        except Exception:
            logger.debug("on_usage_recorded handler raised; ignoring", exc_info=True)

        if self.meter is not None:
            try:
                result = self.meter.track_tokens(user.billing_id, total)
                if self.catalog.is_premium(model):
                    self.meter.track_premium_model_tokens(user.billing_id, total)
                outcome.metered = True
                outcome.is_overage = result.is_overage
                outcome.overage_cost = result.overage_cost
            except Exception as exc:
                logger.warning(f"[Quota] Metering failed for {user.billing_id}: {exc}", exc_info=True)
                outcome.errors.append(f"metering: {exc}")

        if self.alerts is not None:
            try:
                self.alerts.send_alert_notifications(user.billing_id)
                outcome.alerts_checked = True
            except Exception as exc:
                logger.warning(f"[Quota] Alert check failed for {user.billing_id}: {exc}", exc_info=True)
                outcome.errors.append(f"alerts: {exc}")

        return outcome
