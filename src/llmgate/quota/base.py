"""Collaborator interfaces the quota manager depends on."""

from __future__ import annotations

from typing import Optional, Protocol

from llmgate.quota.models import (
    MeterResult,
    OverageCheckResult,
    QuotaCheckResult,
    QuotaSnapshot,
)


class QuotaStore(Protocol):
    """Per-user tier, limits and counters.

    Implementations must check the caps and reserve the estimate in one
    atomic step, and must swap a reservation for recorded usage atomically;
    the core holds no locks of its own.
    """

    def get_or_create_quota(self, user_id: str, org_id: str = "") -> QuotaSnapshot:
        ...

    def can_use_tokens(
        self,
        user_id: str,
        estimated_tokens: int,
        model: str,
        *,
        reservation_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        ...

    def release_reservation(self, reservation_id: str) -> bool:
        ...

    def record_ai_usage(
        self,
        user_id: str,
        model: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        conversation_id: Optional[str] = None,
        task_type: Optional[str] = None,
        *,
        request_id: Optional[str] = None,
        org_id: str = "",
        reservation_id: Optional[str] = None,
    ) -> bool:
        """Append one usage record; return False if *request_id* was already recorded."""
        ...


class MeteringSink(Protocol):
    def track_tokens(self, org_id: str, total_tokens: int) -> MeterResult:
        ...

    def track_premium_model_tokens(self, org_id: str, total_tokens: int) -> MeterResult:
        ...


class AlertSink(Protocol):
    def send_alert_notifications(self, org_id: str) -> object:
        ...


class OverageEligibility(Protocol):
    def check_overage_allowed(self, org_id: str, tier: str) -> OverageCheckResult:
        ...
