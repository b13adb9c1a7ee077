from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from llmgate._logging import get_logger

logger = get_logger("LlmGate.Alerts")

DEFAULT_THRESHOLDS = (80, 90, 100)

_METER_LABELS = {
    "ai_tokens": "AI token",
    "premium_models": "premium model",
}


@dataclass(frozen=True)
class AlertNotification:
    org_id: str
    meter_type: str
    billing_period: str
    threshold: int
    current_percentage: float
    message: str
    severity: str  # warning | critical | exceeded


def severity_for(threshold: int) -> str:
    if threshold >= 100:
        return "exceeded"
    if threshold >= 90:
        return "critical"
    return "warning"


def _log_notifier(notification: AlertNotification) -> None:
    log = logger.error if notification.severity == "exceeded" else logger.warning
    log(f"[Alerts] {notification.org_id}: {notification.message}")


class ThresholdAlerter:
    """Fires one notification per threshold per meter per billing period.

    Sent state is held in memory. Only the latest billing period seen is
    kept; earlier periods are forgotten when a new one first appears.
    """

    def __init__(
        self,
        meter,
        thresholds: Sequence[int] = DEFAULT_THRESHOLDS,
        notifier: Optional[Callable[[AlertNotification], None]] = None,
    ) -> None:
        self.meter = meter
        self.thresholds = tuple(sorted(thresholds))
        self.notifier = notifier or _log_notifier
        self._sent: set[tuple[str, str, str, int]] = set()
        self._period: Optional[str] = None
        self._lock = threading.Lock()

    def _start_period(self, billing_period: str) -> None:
        with self._lock:
            if self._period is not None and billing_period <= self._period:
                return
            self._period = billing_period
            self._sent = {key for key in self._sent if key[2] == billing_period}

    def send_alert_notifications(self, org_id: str) -> list[AlertNotification]:
        summary = self.meter.get_usage_summary(org_id)
        notifications: list[AlertNotification] = []

        for usage in summary.meters:
            self._start_period(usage.billing_period)
            pct = usage.percent_used
            for threshold in self.thresholds:
                if pct < threshold:
                    break
                key = (org_id, usage.meter_type, usage.billing_period, threshold)
                with self._lock:
                    if key in self._sent:
                        continue
                    self._sent.add(key)

                label = _METER_LABELS.get(usage.meter_type, usage.meter_type)
                if threshold >= 100:
                    message = (
                        f"You've exceeded your {label} quota. "
                        f"Additional usage will incur overage charges."
                    )
                else:
                    message = f"You've used {pct:.0f}% of your {label} quota."
                notifications.append(
                    AlertNotification(
                        org_id=org_id,
                        meter_type=usage.meter_type,
                        billing_period=usage.billing_period,
                        threshold=threshold,
                        current_percentage=pct,
                        message=message,
                        severity=severity_for(threshold),
                    )
                )

        for notification in notifications:
            self.notifier(notification)
        return notifications
