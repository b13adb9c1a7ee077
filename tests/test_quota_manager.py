from unittest.mock import MagicMock

import pytest

from llmgate.events import RecordingEvents
from llmgate.messages import ChatMessage, UserTier
from llmgate.quota import (
    MeterResult,
    PlanOverageEligibility,
    QuotaManager,
    QuotaUser,
    SQLiteMeter,
    SQLiteQuotaStore,
    estimate_tokens,
)
from llmgate.quota.overage import load_plan_overage
from llmgate.tiers import load_tier_limits

SMALL_LIMITS = {
    "free": {"max_tokens_per_day": 100, "max_tokens_per_month": 1_000},
    "pro": {"max_tokens_per_day": 1_000, "max_tokens_per_month": 10_000},
}


@pytest.fixture
def store(tmp_path):
    return SQLiteQuotaStore(tmp_path / "quota.db", tier_limits=load_tier_limits(SMALL_LIMITS))


@pytest.fixture
def meter(tmp_path):
    return SQLiteMeter(tmp_path / "quota.db")


# ------------------------------------------------------------------
# estimate_tokens
# ------------------------------------------------------------------

def test_estimate_rounds_up():
    assert estimate_tokens([ChatMessage("user", "abcde")]) == 2
    assert estimate_tokens([ChatMessage("user", "abcd"), ChatMessage("assistant", "abcd")]) == 2
    assert estimate_tokens([]) == 0


def test_estimate_respects_configured_ratio(store):
    manager = QuotaManager(store, chars_per_token=2)
    assert manager.estimate_tokens([ChatMessage("user", "abcde")]) == 3


# ------------------------------------------------------------------
# check_quota
# ------------------------------------------------------------------

def test_check_allows_within_limits(store):
    result = QuotaManager(store).check_quota(QuotaUser("u1"), 50, "gpt-4o-mini")
    assert result.allowed
    assert result.daily_limit == 100


def test_check_denial_fires_event(store):
    events = RecordingEvents()
    manager = QuotaManager(store, events=events)
    result = manager.check_quota("u1", 500, "gpt-4o-mini")
    assert not result.allowed
    assert result.code == "daily_limit"
    assert events.names() == ["on_quota_denied"]


def test_check_fails_open_on_store_error():
    broken = MagicMock()
    broken.get_or_create_quota.side_effect = RuntimeError("database is locked")
    result = QuotaManager(broken).check_quota("u1", 10, "gpt-4o-mini")
    assert result.allowed
    assert result.code == "store_error"
    assert "database is locked" in result.reason


def test_get_tier_falls_back_to_free():
    broken = MagicMock()
    broken.get_or_create_quota.side_effect = OSError("disk")
    assert QuotaManager(broken).get_tier("u1") is UserTier.FREE


# ------------------------------------------------------------------
# check_quota_with_overage
# ------------------------------------------------------------------

def test_overage_admits_pro_user_over_cap(store):
    store.set_tier("u1", "pro", org_id="acme")
    store.record_ai_usage("u1", "gpt-4o-mini", 900, 0, 0.0)
    manager = QuotaManager(store, overage=PlanOverageEligibility())

    result = manager.check_quota_with_overage(QuotaUser("u1", "acme"), 300, "gpt-4o-mini")

    assert result.allowed
    assert result.is_overage and result.overage_allowed
    assert result.code == "overage"
    # 200 tokens past the daily cap at $0.002 / 1K
    assert result.estimated_cost_usd == pytest.approx(0.0004)


def test_overage_disabled_for_account_keeps_denial(store):
    store.set_tier("u1", "pro", org_id="acme")
    events = RecordingEvents()
    overage = PlanOverageEligibility(disabled_orgs=["acme"])
    manager = QuotaManager(store, overage=overage, events=events)

    result = manager.check_quota_with_overage(QuotaUser("u1", "acme"), 5_000, "gpt-4o-mini")

    assert not result.allowed
    assert result.is_overage is True
    assert result.overage_allowed is False
    assert "disabled" in result.reason
    assert events.names() == ["on_quota_denied"]


def test_free_plan_has_no_overage(store):
    manager = QuotaManager(store, overage=PlanOverageEligibility())
    result = manager.check_quota_with_overage("u1", 500, "gpt-4o-mini")
    assert not result.allowed
    assert result.overage_allowed is False
    assert "Upgrade" in result.reason


def test_model_denial_is_not_eligible_for_overage(store):
    overage = MagicMock()
    manager = QuotaManager(store, overage=overage)
    result = manager.check_quota_with_overage("u1", 10, "claude-opus-4")
    assert not result.allowed
    assert result.code == "model_not_allowed"
    overage.check_overage_allowed.assert_not_called()


def test_overage_cap_reached(store, meter):
    store.set_tier("u1", "pro")
    overage = PlanOverageEligibility(plans=load_plan_overage({"pro": {"max_overage_usd": 2.0}}), meter=meter)
    # 1.5M past the included AI-token quota at $0.002 / 1K = $3
    meter.track_tokens("u1", 2_500_000)

    result = QuotaManager(store, overage=overage).check_quota_with_overage("u1", 5_000, "gpt-4o-mini")
    assert not result.allowed
    assert "cap" in result.reason


def test_back_to_back_checks_cannot_both_take_the_last_tokens(store):
    store.record_ai_usage("u1", "gpt-4o-mini", 60, 0, 0.0)
    manager = QuotaManager(store)

    first = manager.check_quota("u1", 40, "gpt-4o-mini")
    second = manager.check_quota("u1", 40, "gpt-4o-mini")

    assert first.allowed
    assert (second.allowed, second.code) == (False, "daily_limit")


def test_release_reservation_frees_the_estimate(store):
    manager = QuotaManager(store)
    result = manager.check_quota("u1", 100, "gpt-4o-mini", reservation_id="req-1")
    assert result.reservation_id == "req-1"
    assert not manager.check_quota("u1", 1, "gpt-4o-mini").allowed

    assert manager.release_reservation("req-1")
    assert not manager.release_reservation(None)
    assert manager.check_quota("u1", 1, "gpt-4o-mini").allowed


def test_record_usage_swaps_reservation_for_actual_usage(store):
    manager = QuotaManager(store)
    manager.check_quota("u1", 90, "gpt-4o-mini", reservation_id="req-2")

    manager.record_usage("u1", "gpt-4o-mini", 20, 10, 0.0, request_id="req-2")

    snap = store.get_or_create_quota("u1")
    assert (snap.tokens_reserved, snap.tokens_used_today) == (0, 30)


def test_spend_cap_denial_is_eligible_for_overage(store):
    store.set_tier("u1", "pro", org_id="acme")
    store.record_ai_usage("u1", "gpt-4o", 100, 100, 60.0)
    manager = QuotaManager(store, overage=PlanOverageEligibility())

    denied = manager.check_quota(QuotaUser("u1", "acme"), 500, "gpt-4o")
    assert (denied.allowed, denied.code) == (False, "monthly_cost")
    assert denied.over_limit

    result = manager.check_quota_with_overage(QuotaUser("u1", "acme"), 500, "gpt-4o")
    assert result.allowed
    assert result.code == "overage"
    assert result.cost_limit == 50.0
    # The whole estimate is billed at $0.002 / 1K
    assert result.estimated_cost_usd == pytest.approx(0.001)
    assert result.reservation_id is None


def test_spend_cap_denial_on_free_plan_stays_denied(store):
    store.record_ai_usage("u1", "gpt-4o-mini", 1, 1, 5.0)
    result = QuotaManager(store, overage=PlanOverageEligibility()).check_quota_with_overage(
        "u1", 10, "gpt-4o-mini"
    )
    assert not result.allowed
    assert result.code == "monthly_cost"
    assert result.overage_allowed is False


# ------------------------------------------------------------------
# record_usage
# ------------------------------------------------------------------

def test_record_usage_meters_and_checks_alerts(store):
    meter = MagicMock()
    meter.track_tokens.return_value = MeterResult(is_overage=True, overage_cost=0.5)
    alerts = MagicMock()
    events = RecordingEvents()
    manager = QuotaManager(store, meter=meter, alerts=alerts, events=events)

    outcome = manager.record_usage(QuotaUser("u1", "acme"), "claude-sonnet-4", 100, 50, 0.001, request_id="r1")

    assert outcome.recorded and outcome.metered and outcome.alerts_checked
    assert outcome.is_overage and outcome.overage_cost == 0.5
    meter.track_tokens.assert_called_once_with("acme", 150)
    meter.track_premium_model_tokens.assert_called_once_with("acme", 150)
    alerts.send_alert_notifications.assert_called_once_with("acme")
    assert events.names() == ["on_usage_recorded"]


def test_record_usage_non_premium_skips_premium_meter(store):
    meter = MagicMock()
    meter.track_tokens.return_value = MeterResult()
    QuotaManager(store, meter=meter).record_usage("u1", "gpt-4o-mini", 10, 10, 0.0)
    meter.track_premium_model_tokens.assert_not_called()


def test_duplicate_request_is_a_no_op(store):
    meter = MagicMock()
    meter.track_tokens.return_value = MeterResult()
    manager = QuotaManager(store, meter=meter)

    manager.record_usage("u1", "gpt-4o-mini", 10, 10, 0.0, request_id="same")
    outcome = manager.record_usage("u1", "gpt-4o-mini", 10, 10, 0.0, request_id="same")

    assert outcome.duplicate and not outcome.recorded
    assert meter.track_tokens.call_count == 1
    assert store.get_or_create_quota("u1").tokens_used_today == 20


def test_accounting_failures_never_raise(store):
    meter = MagicMock()
    meter.track_tokens.side_effect = RuntimeError("billing down")
    alerts = MagicMock()
    alerts.send_alert_notifications.side_effect = RuntimeError("smtp down")
    manager = QuotaManager(store, meter=meter, alerts=alerts)

    outcome = manager.record_usage("u1", "gpt-4o-mini", 10, 10, 0.0)

    assert outcome.recorded
    assert not outcome.metered
    assert not outcome.alerts_checked
    assert len(outcome.errors) == 2


def test_store_failure_on_record_is_reported_not_raised():
    broken = MagicMock()
    broken.record_ai_usage.side_effect = RuntimeError("readonly database")
    meter = MagicMock()
    outcome = QuotaManager(broken, meter=meter).record_usage("u1", "gpt-4o-mini", 1, 1, 0.0)
    assert not outcome.recorded
    assert outcome.errors == ["store: readonly database"]
    meter.track_tokens.assert_not_called()


def test_from_config_wires_collaborators(config):
    manager = QuotaManager.from_config(config)
    assert isinstance(manager.store, SQLiteQuotaStore)
    assert manager.store.tier_limits[UserTier.FREE].max_tokens_per_day == 1000
    assert manager.alerts.thresholds == (50, 100)
    assert manager.catalog.get_price("claude-sonnet-4").input_per_million == 4.0
