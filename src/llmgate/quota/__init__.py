from llmgate.quota.alerts import AlertNotification, ThresholdAlerter
from llmgate.quota.manager import CHARS_PER_TOKEN, QuotaManager, estimate_tokens
from llmgate.quota.metering import SQLiteMeter
from llmgate.quota.models import (
    MeterResult,
    OverageCheckResult,
    QuotaCheckResult,
    QuotaSnapshot,
    QuotaUser,
    UsageOutcome,
    UsageRecord,
)
from llmgate.quota.overage import PlanOverageConfig, PlanOverageEligibility
from llmgate.quota.store import SQLiteQuotaStore, evaluate_quota

__all__ = [
    "AlertNotification",
    "CHARS_PER_TOKEN",
    "MeterResult",
    "OverageCheckResult",
    "PlanOverageConfig",
    "PlanOverageEligibility",
    "QuotaCheckResult",
    "QuotaManager",
    "QuotaSnapshot",
    "QuotaUser",
    "SQLiteMeter",
    "SQLiteQuotaStore",
    "ThresholdAlerter",
    "UsageOutcome",
    "UsageRecord",
    "estimate_tokens",
    "evaluate_quota",
]
