"""SQLite-backed quota store: per-user counters plus the usage ledger."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, Optional

from llmgate.messages import UserTier
from llmgate.quota.models import QuotaCheckResult, QuotaSnapshot, UsageRecord
from llmgate.tiers import DEFAULT_TIER_LIMITS, TierLimits

_DEFAULT_DB_PATH = Path.home() / ".llmgate" / "quota.db"

_CREATE_QUOTAS = """\
CREATE TABLE IF NOT EXISTS quotas (
    user_id                 TEXT PRIMARY KEY,
    org_id                  TEXT    NOT NULL,
    tier                    TEXT    NOT NULL,
    tokens_used_today       INTEGER NOT NULL DEFAULT 0,
    last_reset_date         TEXT    NOT NULL,
    tokens_used_this_month  INTEGER NOT NULL DEFAULT 0,
    month_start_date        TEXT    NOT NULL,
    cost_spent_this_month   REAL    NOT NULL DEFAULT 0,
    created_at              TEXT    NOT NULL
)
"""

_CREATE_USAGE = """\
CREATE TABLE IF NOT EXISTS usage (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id      TEXT    NOT NULL UNIQUE,
    user_id         TEXT    NOT NULL,
    org_id          TEXT    NOT NULL,
    model           TEXT    NOT NULL,
    input_tokens    INTEGER NOT NULL,
    output_tokens   INTEGER NOT NULL,
    cost_usd        REAL    NOT NULL,
    timestamp       TEXT    NOT NULL,
    conversation_id TEXT,
    task_type       TEXT
)
"""

_CREATE_RESERVATIONS = """\
CREATE TABLE IF NOT EXISTS reservations (
    reservation_id  TEXT PRIMARY KEY,
    user_id         TEXT    NOT NULL,
    tokens          INTEGER NOT NULL,
    created_at      TEXT    NOT NULL
)
"""

_CREATE_RESERVATIONS_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_reservations_user ON reservations (user_id)"
)

# A reservation nobody records or releases stops counting after this long
RESERVATION_TTL = timedelta(minutes=15)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def evaluate_quota(
    snapshot: QuotaSnapshot, estimated_tokens: int, model: str
) -> QuotaCheckResult:
    """Decide whether *estimated_tokens* more on *model* fit the snapshot's limits.

    Tokens reserved by other in-flight requests count against both token
    caps. The monthly spend cap is checked against money already spent.
    """
    result = QuotaCheckResult(
        allowed=True,
        daily_used=snapshot.tokens_used_today,
        daily_limit=snapshot.max_tokens_per_day,
        monthly_used=snapshot.tokens_used_this_month,
        monthly_limit=snapshot.max_tokens_per_month,
        cost_spent=snapshot.cost_spent_this_month,
        cost_limit=snapshot.max_cost_per_month,
    )
    if str(model) not in snapshot.allowed_models:
        result.allowed = False
        result.code = "model_not_allowed"
        result.reason = f"Model '{model}' is not available on the {snapshot.tier} tier"
        return result
    pending = snapshot.tokens_reserved + estimated_tokens
    if snapshot.tokens_used_today + pending > snapshot.max_tokens_per_day:
        result.allowed = False
        result.code = "daily_limit"
        result.reason = (
            f"Daily token limit reached "
            f"({snapshot.tokens_used_today:,}/{snapshot.max_tokens_per_day:,})"
        )
        return result
    if snapshot.tokens_used_this_month + pending > snapshot.max_tokens_per_month:
        result.allowed = False
        result.code = "monthly_limit"
        result.reason = (
            f"Monthly token limit reached "
            f"({snapshot.tokens_used_this_month:,}/{snapshot.max_tokens_per_month:,})"
        )
        return result
    cap = snapshot.max_cost_per_month
    if cap is not None and snapshot.cost_spent_this_month >= cap:
        result.allowed = False
        result.code = "monthly_cost"
        result.reason = (
            f"Monthly spend limit reached "
            f"(${snapshot.cost_spent_this_month:.2f}/${cap:.2f})"
        )
        return result
    return result


class SQLiteQuotaStore:
    """Thread-safe, connection-per-call SQLite quota store.

    Reads and counter updates each run inside one ``BEGIN IMMEDIATE``
    transaction, so concurrent writers serialize in SQLite rather than in
    process. Daily and monthly counters roll over on UTC date boundaries.

    An allowed ``can_use_tokens`` check reserves its estimate in the same
    transaction, so concurrent requests near a cap cannot all be admitted.
    ``record_ai_usage`` swaps the reservation for the real usage;
    ``release_reservation`` drops one that never produced usage.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        tier_limits: Optional[dict[UserTier, TierLimits]] = None,
        default_tier: UserTier = UserTier.FREE,
        clock: Callable[[], datetime] = _utcnow,
        reservation_ttl: timedelta = RESERVATION_TTL,
    ) -> None:
        self.db_path = Path(db_path) if db_path else _DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.tier_limits = tier_limits or dict(DEFAULT_TIER_LIMITS)
        self.default_tier = default_tier
        self.reservation_ttl = reservation_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._init_db()

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path), check_same_thread=False, isolation_level=None)

    def _init_db(self) -> None:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute(_CREATE_QUOTAS)
                conn.execute(_CREATE_USAGE)
                conn.execute(_CREATE_RESERVATIONS)
                conn.execute(_CREATE_RESERVATIONS_INDEX)
            finally:
                conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                else:
                    conn.execute("COMMIT")
            finally:
                conn.close()

    def _load_row(self, conn: sqlite3.Connection, user_id: str, org_id: str) -> tuple:
        """Fetch (creating if needed) and roll over the user's quota row."""
        now = self._clock()
        today = now.date().isoformat()
        month = now.strftime("%Y-%m")

        row = conn.execute(
            "SELECT user_id, org_id, tier, tokens_used_today, last_reset_date, "
            "tokens_used_this_month, month_start_date, cost_spent_this_month "
            "FROM quotas WHERE user_id = ?",
            (user_id,),
        ).fetchone()

        if row is None:
            conn.execute(
                "INSERT INTO quotas (user_id, org_id, tier, last_reset_date, "
                "month_start_date, created_at) VALUES (?, ?, ?, ?, ?, ?)",
                (user_id, org_id or user_id, self.default_tier.value, today, month, now.isoformat()),
            )
            return (user_id, org_id or user_id, self.default_tier.value, 0, today, 0, month, 0.0)

        user_id, org, tier, used_today, reset_date, used_month, month_start, cost_month = row
        if reset_date != today:
            used_today, reset_date = 0, today
        if month_start != month:
            used_month, cost_month, month_start = 0, 0.0, month
        if (reset_date, month_start) != (row[4], row[6]):
            conn.execute(
                "UPDATE quotas SET tokens_used_today = ?, last_reset_date = ?, "
                "tokens_used_this_month = ?, month_start_date = ?, "
                "cost_spent_this_month = ? WHERE user_id = ?",
                (used_today, reset_date, used_month, month_start, cost_month, user_id),
            )
        return (user_id, org, tier, used_today, reset_date, used_month, month_start, cost_month)

    def _reserved(self, conn: sqlite3.Connection, user_id: str) -> int:
        """Expire stale reservations, then total the user's live ones."""
        cutoff = (self._clock() - self.reservation_ttl).isoformat()
        conn.execute("DELETE FROM reservations WHERE created_at < ?", (cutoff,))
        (total,) = conn.execute(
            "SELECT COALESCE(SUM(tokens), 0) FROM reservations WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return total

    def _snapshot(self, row: tuple, reserved: int = 0) -> QuotaSnapshot:
        tier = UserTier.parse(row[2])
        limits = self.tier_limits[tier]
        return QuotaSnapshot(
            user_id=row[0],
            org_id=row[1],
            tier=tier,
            max_tokens_per_day=limits.max_tokens_per_day,
            tokens_used_today=row[3],
            max_tokens_per_month=limits.max_tokens_per_month,
            tokens_used_this_month=row[5],
            allowed_models=[m.value for m in limits.allowed_models],
            max_cost_per_month=limits.max_cost_per_month,
            cost_spent_this_month=row[7],
            tokens_reserved=reserved,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def get_or_create_quota(self, user_id: str, org_id: str = "") -> QuotaSnapshot:
        with self._transaction() as conn:
            row = self._load_row(conn, user_id, org_id)
            return self._snapshot(row, self._reserved(conn, user_id))

    def set_tier(self, user_id: str, tier: "str | UserTier", org_id: str = "") -> QuotaSnapshot:
        """Assign *user_id* to *tier* (creating the row if needed)."""
        tier = UserTier(tier)
        with self._transaction() as conn:
            self._load_row(conn, user_id, org_id)
            conn.execute("UPDATE quotas SET tier = ? WHERE user_id = ?", (tier.value, user_id))
            row = self._load_row(conn, user_id, org_id)
            return self._snapshot(row, self._reserved(conn, user_id))

    def can_use_tokens(
        self,
        user_id: str,
        estimated_tokens: int,
        model: str,
        *,
        reservation_id: Optional[str] = None,
    ) -> QuotaCheckResult:
        """Check the caps and, if allowed, reserve *estimated_tokens* atomically.

        The reservation id (*reservation_id* or a fresh one) is returned on
        the result.
        """
        with self._transaction() as conn:
            row = self._load_row(conn, user_id, "")
            snapshot = self._snapshot(row, self._reserved(conn, user_id))
            result = evaluate_quota(snapshot, estimated_tokens, model)
            if result.allowed and estimated_tokens > 0:
                result.reservation_id = reservation_id or uuid.uuid4().hex
                conn.execute(
                    "INSERT OR REPLACE INTO reservations "
                    "(reservation_id, user_id, tokens, created_at) VALUES (?, ?, ?, ?)",
                    (result.reservation_id, user_id, estimated_tokens, self._clock().isoformat()),
                )
        return result

    def release_reservation(self, reservation_id: str) -> bool:
        """Drop a reservation; False if it was already recorded, released or expired."""
        with self._transaction() as conn:
            cur = conn.execute(
                "DELETE FROM reservations WHERE reservation_id = ?", (reservation_id,)
            )
            return cur.rowcount > 0

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
        """Append a usage row and bump the counters in one transaction.

        The reservation keyed by *reservation_id* (default: *request_id*)
        is consumed in the same transaction. Returns False, leaving the
        counters unchanged, if *request_id* is already in the ledger.
        """
        request_id = request_id or uuid.uuid4().hex
        total = max(input_tokens, 0) + max(output_tokens, 0)
        with self._transaction() as conn:
            row = self._load_row(conn, user_id, org_id)
            conn.execute(
                "DELETE FROM reservations WHERE reservation_id = ?",
                (reservation_id or request_id,),
            )
            cur = conn.execute(
                "INSERT OR IGNORE INTO usage "
                "(request_id, user_id, org_id, model, input_tokens, output_tokens, "
                "cost_usd, timestamp, conversation_id, task_type) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    request_id,
                    user_id,
                    row[1],
                    str(model),
                    max(input_tokens, 0),
                    max(output_tokens, 0),
                    max(cost, 0.0),
                    self._clock().isoformat(),
                    conversation_id,
                    task_type,
                ),
            )
            if cur.rowcount == 0:
                return False
            conn.execute(
                "UPDATE quotas SET tokens_used_today = tokens_used_today + ?, "
                "tokens_used_this_month = tokens_used_this_month + ?, "
                "cost_spent_this_month = cost_spent_this_month + ? "
                "WHERE user_id = ?",
                (total, total, max(cost, 0.0), user_id),
            )
            return True

    def query(
        self,
        user_id: Optional[str] = None,
        start: Optional[str] = None,
        end: Optional[str] = None,
        model: Optional[str] = None,
    ) -> list[UsageRecord]:
        """Return matching ledger rows with optional filters."""
        clauses: list[str] = []
        params: list[object] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end)
        if model is not None:
            clauses.append("model = ?")
            params.append(str(model))

        where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
        sql = (
            "SELECT request_id, user_id, org_id, model, input_tokens, output_tokens, "
            f"cost_usd, timestamp, conversation_id, task_type FROM usage{where} ORDER BY id"
        )

        conn = self._connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        return [UsageRecord(*r) for r in rows]
