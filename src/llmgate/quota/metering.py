"""Monthly per-organization usage meters with included quota and overage pricing."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from llmgate._logging import get_logger
from llmgate.quota.models import MeterResult

logger = get_logger("LlmGate.Metering")

AI_TOKENS = "ai_tokens"
PREMIUM_MODELS = "premium_models"


@dataclass(frozen=True)
class MeterConfig:
    included_quota: int
    overage_price_per_unit: float


DEFAULT_METERS: dict[str, MeterConfig] = {
    # $0.002 per 1K tokens over an included million
    AI_TOKENS: MeterConfig(1_000_000, 0.000002),
    # $0.01 per 1K premium-model tokens over 250K
    PREMIUM_MODELS: MeterConfig(250_000, 0.00001),
}

_CREATE_METERS = """\
CREATE TABLE IF NOT EXISTS usage_meters (
    org_id                 TEXT    NOT NULL,
    meter_type             TEXT    NOT NULL,
    billing_period         TEXT    NOT NULL,
    current_usage          INTEGER NOT NULL DEFAULT 0,
    included_quota         INTEGER NOT NULL,
    overage_price_per_unit REAL    NOT NULL,
    PRIMARY KEY (org_id, meter_type, billing_period)
)
"""


@dataclass
class MeterUsage:
    meter_type: str
    billing_period: str
    current_usage: int
    included_quota: int
    overage_price_per_unit: float

    @property
    def overage_units(self) -> int:
        return max(self.current_usage - self.included_quota, 0)

    @property
    def overage_cost(self) -> float:
        return self.overage_units * self.overage_price_per_unit

    @property
    def percent_used(self) -> float:
        if self.included_quota <= 0:
            return 100.0 if self.current_usage > 0 else 0.0
        return self.current_usage / self.included_quota * 100


@dataclass
class UsageSummary:
    org_id: str
    meters: list[MeterUsage]

    @property
    def total_overage_cost(self) -> float:
        return sum(m.overage_cost for m in self.meters)


def load_meter_config(overrides: Optional[dict] = None) -> dict[str, MeterConfig]:
    meters = dict(DEFAULT_METERS)
    for meter_type, cfg in (overrides or {}).items():
        base = meters.get(meter_type, MeterConfig(0, 0.0))
        meters[meter_type] = MeterConfig(
            included_quota=int(cfg.get("included_quota", base.included_quota)),
            overage_price_per_unit=float(
                cfg.get("overage_price_per_unit", base.overage_price_per_unit)
            ),
        )
    return meters


class SQLiteMeter:
    """Per-org meters keyed by calendar month (UTC).

    A meter row is created on first use in a billing period with the
    included quota and unit price configured at that moment.
    """

    def __init__(
        self,
        db_path: Path,
        meters: Optional[dict[str, MeterConfig]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.meters = meters or dict(DEFAULT_METERS)
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(_CREATE_METERS)
            finally:
                conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)

    def _period(self) -> str:
        return self._clock().strftime("%Y-%m")

    def _track(self, org_id: str, meter_type: str, units: int) -> MeterResult:
        cfg = self.meters[meter_type]
        period = self._period()
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        "INSERT OR IGNORE INTO usage_meters "
                        "(org_id, meter_type, billing_period, included_quota, overage_price_per_unit) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (org_id, meter_type, period, cfg.included_quota, cfg.overage_price_per_unit),
                    )
                    conn.execute(
                        "UPDATE usage_meters SET current_usage = current_usage + ? "
                        "WHERE org_id = ? AND meter_type = ? AND billing_period = ?",
                        (max(units, 0), org_id, meter_type, period),
                    )
                    row = conn.execute(
                        "SELECT current_usage, included_quota, overage_price_per_unit "
                        "FROM usage_meters WHERE org_id = ? AND meter_type = ? AND billing_period = ?",
                        (org_id, meter_type, period),
                    ).fetchone()
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

        usage = MeterUsage(meter_type, period, *row)
        if usage.overage_units:
            logger.info(
                f"[Metering] {org_id} {meter_type} over quota by {usage.overage_units:,} "
                f"(${usage.overage_cost:.4f})"
            )
        return MeterResult(is_overage=usage.overage_units > 0, overage_cost=usage.overage_cost)

    def track_tokens(self, org_id: str, total_tokens: int) -> MeterResult:
        return self._track(org_id, AI_TOKENS, total_tokens)

    def track_premium_model_tokens(self, org_id: str, total_tokens: int) -> MeterResult:
        return self._track(org_id, PREMIUM_MODELS, total_tokens)

    def get_usage_summary(self, org_id: str) -> UsageSummary:
        """All meters for *org_id* in the current billing period."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT meter_type, billing_period, current_usage, included_quota, "
                "overage_price_per_unit FROM usage_meters "
                "WHERE org_id = ? AND billing_period = ? ORDER BY meter_type",
                (org_id, self._period()),
            ).fetchall()
        finally:
            conn.close()
        return UsageSummary(org_id, [MeterUsage(*r) for r in rows])
