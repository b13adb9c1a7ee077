"""Tests for the SQLite-backed quota store."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from llmgate.messages import UserTier
from llmgate.quota.store import SQLiteQuotaStore
from llmgate.tiers import load_tier_limits


class _Clock:
    def __init__(self, when: datetime):
        self.now = when

    def __call__(self) -> datetime:
        return self.now


def test_store_creation(tmp_path):
    db_path = tmp_path / "quota.db"
    SQLiteQuotaStore(db_path=db_path)
    assert db_path.exists()


def test_new_user_gets_default_tier(quota_store):
    snap = quota_store.get_or_create_quota("u1")
    assert snap.tier is UserTier.FREE
    assert snap.org_id == "u1"
    assert snap.tokens_used_today == 0
    assert snap.max_tokens_per_day == 50_000
    assert "claude-opus-4" not in snap.allowed_models


def test_set_tier_changes_limits(quota_store):
    snap = quota_store.set_tier("u1", "pro", org_id="acme")
    assert snap.tier is UserTier.PRO
    assert snap.org_id == "acme"
    assert snap.max_tokens_per_month == 20_000_000
    assert "claude-sonnet-4" in snap.allowed_models


def test_can_use_tokens_checks_allow_list_first(quota_store):
    result = quota_store.can_use_tokens("u1", 10, "claude-opus-4")
    assert not result.allowed
    assert result.code == "model_not_allowed"
    assert "free" in result.reason


def test_daily_and_monthly_caps(tmp_path):
    limits = load_tier_limits({"free": {"max_tokens_per_day": 100, "max_tokens_per_month": 150}})
    store = SQLiteQuotaStore(tmp_path / "q.db", tier_limits=limits)

    assert store.can_use_tokens("u1", 100, "gpt-4o-mini").allowed
    denied = store.can_use_tokens("u1", 101, "gpt-4o-mini")
    assert (denied.allowed, denied.code) == (False, "daily_limit")
    assert denied.over_limit

    store.record_ai_usage("u1", "gpt-4o-mini", 60, 20, 0.0)
    result = store.can_use_tokens("u1", 30, "gpt-4o-mini")
    assert (result.allowed, result.code) == (False, "daily_limit")
    assert (result.daily_used, result.daily_limit) == (80, 100)


def test_monthly_cap_after_daily_rollover(tmp_path):
    clock = _Clock(datetime(2025, 3, 10, 12, tzinfo=timezone.utc))
    limits = load_tier_limits({"free": {"max_tokens_per_day": 100, "max_tokens_per_month": 150}})
    store = SQLiteQuotaStore(tmp_path / "q.db", tier_limits=limits, clock=clock)

    store.record_ai_usage("u1", "gpt-4o-mini", 90, 0, 0.0)
    clock.now = datetime(2025, 3, 11, 0, 5, tzinfo=timezone.utc)

    snap = store.get_or_create_quota("u1")
    assert snap.tokens_used_today == 0
    assert snap.tokens_used_this_month == 90

    result = store.can_use_tokens("u1", 70, "gpt-4o-mini")
    assert (result.allowed, result.code) == (False, "monthly_limit")

    clock.now = datetime(2025, 4, 1, tzinfo=timezone.utc)
    assert store.can_use_tokens("u1", 70, "gpt-4o-mini").allowed


def test_record_is_idempotent_per_request_id(quota_store):
    assert quota_store.record_ai_usage("u1", "gpt-4o-mini", 100, 50, 0.01, request_id="req-1")
    assert not quota_store.record_ai_usage("u1", "gpt-4o-mini", 100, 50, 0.01, request_id="req-1")

    snap = quota_store.get_or_create_quota("u1")
    assert snap.tokens_used_today == 150
    assert snap.cost_spent_this_month == pytest.approx(0.01)
    assert len(quota_store.query(user_id="u1")) == 1


def test_query_filters(quota_store):
    quota_store.record_ai_usage("u1", "gpt-4o-mini", 1, 1, 0.0, conversation_id="c1")
    quota_store.record_ai_usage("u1", "gemini-2.0-flash-exp", 2, 2, 0.0, task_type="chat")
    quota_store.record_ai_usage("u2", "gpt-4o-mini", 3, 3, 0.0)

    rows = quota_store.query(model="gpt-4o-mini")
    assert [r.user_id for r in rows] == ["u1", "u2"]
    assert rows[0].conversation_id == "c1"

    rows = quota_store.query(user_id="u1", model="gemini-2.0-flash-exp")
    assert len(rows) == 1
    assert rows[0].task_type == "chat"
    assert rows[0].total_tokens == 4


def test_concurrent_records(quota_store):
    def worker(n):
        for i in range(20):
            quota_store.record_ai_usage("u1", "gpt-4o-mini", 1, 0, 0.0, request_id=f"{n}-{i}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert quota_store.get_or_create_quota("u1").tokens_used_today == 100


def test_allowed_check_reserves_until_recorded(tmp_path):
    store = SQLiteQuotaStore(tmp_path / "q.db")
    store.record_ai_usage("u1", "gpt-4o-mini", 49_900, 0, 0.0)

    first = store.can_use_tokens("u1", 100, "gpt-4o-mini")
    second = store.can_use_tokens("u1", 100, "gpt-4o-mini")

    assert first.allowed and first.reservation_id
    assert (second.allowed, second.code) == (False, "daily_limit")
    assert second.reservation_id is None
    assert store.get_or_create_quota("u1").tokens_reserved == 100

    store.record_ai_usage("u1", "gpt-4o-mini", 60, 20, 0.0, reservation_id=first.reservation_id)
    snap = store.get_or_create_quota("u1")
    assert (snap.tokens_reserved, snap.tokens_used_today) == (0, 49_980)
    assert store.can_use_tokens("u1", 20, "gpt-4o-mini").allowed


def test_record_consumes_reservation_keyed_by_request_id(quota_store):
    quota_store.can_use_tokens("u1", 500, "gpt-4o-mini", reservation_id="req-9")
    assert quota_store.get_or_create_quota("u1").tokens_reserved == 500

    quota_store.record_ai_usage("u1", "gpt-4o-mini", 10, 5, 0.0, request_id="req-9")
    assert quota_store.get_or_create_quota("u1").tokens_reserved == 0


def test_release_reservation(quota_store):
    result = quota_store.can_use_tokens("u1", 300, "gpt-4o-mini")

    assert quota_store.release_reservation(result.reservation_id)
    assert not quota_store.release_reservation(result.reservation_id)
    assert quota_store.get_or_create_quota("u1").tokens_reserved == 0


def test_stale_reservations_expire(tmp_path):
    clock = _Clock(datetime(2025, 3, 10, 12, tzinfo=timezone.utc))
    limits = load_tier_limits({"free": {"max_tokens_per_day": 100, "max_tokens_per_month": 150}})
    store = SQLiteQuotaStore(tmp_path / "q.db", tier_limits=limits, clock=clock)

    assert store.can_use_tokens("u1", 100, "gpt-4o-mini").allowed
    assert not store.can_use_tokens("u1", 1, "gpt-4o-mini").allowed

    clock.now += store.reservation_ttl + timedelta(seconds=1)
    assert store.get_or_create_quota("u1").tokens_reserved == 0
    assert store.can_use_tokens("u1", 1, "gpt-4o-mini").allowed


def test_zero_estimate_reserves_nothing(quota_store):
    result = quota_store.can_use_tokens("u1", 0, "gpt-4o-mini")
    assert result.allowed
    assert result.reservation_id is None


def test_monthly_spend_cap(quota_store):
    quota_store.set_tier("u1", "pro")
    quota_store.record_ai_usage("u1", "gpt-4o", 1_000, 1_000, 150.0)

    result = quota_store.can_use_tokens("u1", 100, "gpt-4o")

    assert (result.allowed, result.code) == (False, "monthly_cost")
    assert result.over_limit
    assert (result.cost_spent, result.cost_limit) == (150.0, 50.0)
    assert "$150.00/$50.00" in result.reason


def test_enterprise_spend_is_uncapped(quota_store):
    quota_store.set_tier("u1", "enterprise")
    quota_store.record_ai_usage("u1", "claude-opus-4", 1_000, 1_000, 10_000.0)

    result = quota_store.can_use_tokens("u1", 100, "claude-opus-4")
    assert result.allowed
    assert result.cost_limit is None


def test_free_tier_spend_cap_applies(quota_store):
    assert quota_store.can_use_tokens("u1", 10, "gpt-4o-mini").allowed

    quota_store.record_ai_usage("u1", "gpt-4o-mini", 10, 10, 5.0)
    result = quota_store.can_use_tokens("u1", 10, "gpt-4o-mini")
    assert (result.allowed, result.code) == (False, "monthly_cost")
