"""SQLite-backed state store for load hunting, booking, and invoicing."""
from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timezone
from functools import lru_cache
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from loadhunter.core.config import get_settings
from loadhunter.core.errors import (
    AuditLogWriteFailure,
    ConcurrentUpdateConflict,
    InvalidTransition,
    LoadExistsForMatch,
    SequenceGenerationConflict,
    TenantScopeViolation,
)
from loadhunter.core.logging import logger
from loadhunter.models.dispatch import (
    NON_TERMINAL_MATCH_STATUSES,
    AuditLogEntry,
    Customer,
    HuntPlan,
    Invoice,
    InvoiceLoad,
    InvoiceStatus,
    Load,
    LoadPosting,
    Match,
    MatchStatus,
    ReversalEligibility,
    Vehicle,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def parse_iso_utc(value: str | None) -> datetime | None:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = f"{text[:-1]}+00:00"
    try:
        dt = datetime.fromisoformat(text)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


_LIVE_MATCH_FILTER = "match_status NOT IN ('skipped', 'missed')"


class DispatchStateStore:
    """Durable, tenant-scoped state for postings, matches, loads, and invoices."""

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path | None = None) -> None:
        settings = get_settings()
        self._db_path = Path(db_path) if db_path else settings.resolved_db_path()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                f"""
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS load_postings (
                    tenant_id TEXT NOT NULL,
                    posting_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    received_at TEXT NOT NULL,
                    expires_at TEXT,
                    content_fingerprint TEXT,
                    assigned_load_id TEXT,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, posting_id)
                );

                CREATE INDEX IF NOT EXISTS idx_postings_tenant_fingerprint
                    ON load_postings (tenant_id, content_fingerprint, received_at DESC);

                CREATE TABLE IF NOT EXISTS vehicles (
                    tenant_id TEXT NOT NULL,
                    vehicle_id TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, vehicle_id)
                );

                CREATE TABLE IF NOT EXISTS hunt_plans (
                    tenant_id TEXT NOT NULL,
                    hunt_plan_id TEXT NOT NULL,
                    vehicle_id TEXT NOT NULL,
                    enabled INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, hunt_plan_id)
                );

                CREATE INDEX IF NOT EXISTS idx_hunt_plans_tenant_enabled ON hunt_plans (tenant_id, enabled);

                CREATE TABLE IF NOT EXISTS customers (
                    tenant_id TEXT NOT NULL,
                    customer_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    email TEXT,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, customer_id)
                );

                CREATE INDEX IF NOT EXISTS idx_customers_tenant_name ON customers (tenant_id, name COLLATE NOCASE);
                CREATE INDEX IF NOT EXISTS idx_customers_tenant_email ON customers (tenant_id, email COLLATE NOCASE);

                CREATE TABLE IF NOT EXISTS matches (
                    tenant_id TEXT NOT NULL,
                    match_id TEXT NOT NULL,
                    posting_id TEXT NOT NULL,
                    vehicle_id TEXT NOT NULL,
                    hunt_plan_id TEXT NOT NULL,
                    match_status TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    matched_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, match_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS uq_matches_live_pair
                    ON matches (tenant_id, vehicle_id, posting_id)
                    WHERE {_LIVE_MATCH_FILTER};
                CREATE INDEX IF NOT EXISTS idx_matches_tenant_status ON matches (tenant_id, match_status);
                CREATE INDEX IF NOT EXISTS idx_matches_tenant_posting ON matches (tenant_id, posting_id);

                CREATE TABLE IF NOT EXISTS match_status_counts (
                    tenant_id TEXT NOT NULL,
                    match_status TEXT NOT NULL,
                    count INTEGER NOT NULL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, match_status)
                );

                CREATE TABLE IF NOT EXISTS loads (
                    tenant_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    load_number TEXT NOT NULL,
                    match_id TEXT,
                    status TEXT NOT NULL,
                    financial_status TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, load_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS uq_loads_tenant_number ON loads (tenant_id, load_number);
                CREATE UNIQUE INDEX IF NOT EXISTS uq_loads_tenant_match ON loads (tenant_id, match_id)
                    WHERE match_id IS NOT NULL;

                CREATE TABLE IF NOT EXISTS invoices (
                    tenant_id TEXT NOT NULL,
                    invoice_id TEXT NOT NULL,
                    invoice_number TEXT NOT NULL,
                    status TEXT NOT NULL,
                    due_date TEXT,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, invoice_id)
                );

                CREATE INDEX IF NOT EXISTS idx_invoices_tenant_status ON invoices (tenant_id, status);

                CREATE TABLE IF NOT EXISTS invoice_loads (
                    tenant_id TEXT NOT NULL,
                    invoice_id TEXT NOT NULL,
                    load_id TEXT NOT NULL,
                    amount REAL NOT NULL,
                    PRIMARY KEY (tenant_id, invoice_id, load_id)
                );

                CREATE INDEX IF NOT EXISTS idx_invoice_loads_tenant_load ON invoice_loads (tenant_id, load_id);

                CREATE TABLE IF NOT EXISTS invoice_email_log (
                    tenant_id TEXT NOT NULL,
                    log_id TEXT NOT NULL,
                    invoice_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    recipient TEXT,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, log_id)
                );

                CREATE INDEX IF NOT EXISTS idx_invoice_email_log_tenant_invoice
                    ON invoice_email_log (tenant_id, invoice_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS audit_log (
                    tenant_id TEXT NOT NULL,
                    audit_id TEXT NOT NULL,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, audit_id)
                );

                CREATE INDEX IF NOT EXISTS idx_audit_log_tenant_entity ON audit_log (tenant_id, entity_type, entity_id);
                CREATE INDEX IF NOT EXISTS idx_audit_log_tenant_ts ON audit_log (tenant_id, created_at DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_tenant_time ON idempotency (tenant_id, stored_at);
                """
            )
            self._conn.commit()

    @staticmethod
    def _require_tenant(tenant_id: str | None) -> str:
        tenant = str(tenant_id or "").strip()
        if not tenant:
            raise TenantScopeViolation("Operation requires a tenant context")
        return tenant

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the block as one IMMEDIATE transaction under the shared lock."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.rollback()
                raise
            else:
                self._conn.commit()

    # -- sequences ---------------------------------------------------------

    @staticmethod
    def _default_sequence_start(key: str) -> int:
        if key == "invoice":
            return 1001
        return 1

    def _next_sequence_locked(self, tenant_id: str, key: str, start: int) -> int:
        row = self._conn.execute(
            "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
            (tenant_id, key),
        ).fetchone()
        if row is None:
            current = start
            self._conn.execute(
                "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                (tenant_id, key, current + 1),
            )
        else:
            current = int(row["next_value"])
            self._conn.execute(
                "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                (current + 1, tenant_id, key),
            )
        return current

    def next_sequence(self, tenant_id: str, key: str) -> int:
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            return self._next_sequence_locked(tenant, key, self._default_sequence_start(key))

    def generate_id(self, tenant_id: str, key: str, prefix: str) -> str:
        return f"{prefix}-{self.next_sequence(tenant_id, key):06d}"

    def next_daily_load_number(self, tenant_id: str, prefix: str, day: date) -> str:
        """Atomically reserve the next `PREFIX-YYMMDD-NNN` number for the tenant."""
        tenant = self._require_tenant(tenant_id)
        date_prefix = f"{prefix}-{day.strftime('%y%m%d')}"
        key = f"load_number:{date_prefix}"
        with self._transaction():
            row = self._conn.execute(
                "SELECT 1 FROM sequences WHERE tenant_id = ? AND key_name = ?",
                (tenant, key),
            ).fetchone()
            start = 1
            if row is None:
                # First booking of the day: continue after numbers created outside the sequence.
                existing = self._conn.execute(
                    "SELECT COUNT(*) AS c FROM loads WHERE tenant_id = ? AND load_number LIKE ?",
                    (tenant, f"{date_prefix}-%"),
                ).fetchone()
                start = int(existing["c"]) + 1
            current = self._next_sequence_locked(tenant, key, start)
        return f"{date_prefix}-{current:03d}"

    # -- idempotency -------------------------------------------------------

    def get_idempotent(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE tenant_id = ? AND key_name = ?",
                (tenant, key),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, tenant_id: str, key: str, response: Dict[str, Any]) -> None:
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO idempotency (tenant_id, key_name, stored_at, response_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (tenant, key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE tenant_id = ?
                  AND key_name NOT IN (
                    SELECT key_name FROM idempotency
                    WHERE tenant_id = ?
                    ORDER BY stored_at DESC
                    LIMIT 10000
                  )
                """,
                (tenant, tenant),
            )

    # -- postings ----------------------------------------------------------

    def insert_posting(self, tenant_id: str, posting: LoadPosting) -> LoadPosting:
        tenant = self._require_tenant(tenant_id)
        row = posting.model_dump(mode="json")
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO load_postings (
                    tenant_id, posting_id, status, received_at, expires_at,
                    content_fingerprint, assigned_load_id, data_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant,
                    posting.posting_id,
                    row["status"],
                    _iso(posting.received_at),
                    _iso(posting.expires_at),
                    posting.content_fingerprint,
                    posting.assigned_load_id,
                    _json_dumps(row),
                ),
            )
        return posting

    def mark_posting_status(self, tenant_id: str, posting_id: str, status: str, *, expected_status: str) -> bool:
        """Move `status` only; the rest of the stored posting is left as committed."""
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            cursor = self._conn.execute(
                """
                UPDATE load_postings
                SET status = ?, data_json = json_set(data_json, '$.status', ?)
                WHERE tenant_id = ? AND posting_id = ? AND status = ?
                """,
                (status, status, tenant, posting_id, expected_status),
            )
            if cursor.rowcount == 1:
                return True
            exists = self._conn.execute(
                "SELECT 1 FROM load_postings WHERE tenant_id = ? AND posting_id = ?",
                (tenant, posting_id),
            ).fetchone()
        if not exists:
            raise KeyError(posting_id)
        return False

    def get_posting(self, tenant_id: str, posting_id: str) -> Optional[LoadPosting]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM load_postings WHERE tenant_id = ? AND posting_id = ?",
                (tenant, posting_id),
            ).fetchone()
        if not row:
            return None
        return LoadPosting.model_validate_json(row["data_json"])

    def find_posting_by_fingerprint(
        self,
        tenant_id: str,
        fingerprint: str,
        *,
        since: Optional[datetime] = None,
    ) -> Optional[LoadPosting]:
        """Earliest original (non-update) posting with this fingerprint."""
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                """
                SELECT data_json FROM load_postings
                WHERE tenant_id = ? AND content_fingerprint = ? AND received_at >= ?
                  AND json_extract(data_json, '$.is_update') = 0
                ORDER BY received_at ASC
                LIMIT 1
                """,
                (tenant, fingerprint, _iso(since) or ""),
            ).fetchone()
        if not row:
            return None
        return LoadPosting.model_validate_json(row["data_json"])

    def list_postings(self, tenant_id: str, limit: int = 200) -> List[LoadPosting]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            rows = self._conn.execute(
                "SELECT data_json FROM load_postings WHERE tenant_id = ? ORDER BY received_at DESC LIMIT ?",
                (tenant, max(1, int(limit))),
            ).fetchall()
        return [LoadPosting.model_validate_json(row["data_json"]) for row in rows]

    def link_posting_to_load(self, tenant_id: str, posting_id: str, load_id: str) -> LoadPosting:
        """Set `assigned_load_id`; repeat calls with the same load are no-ops."""
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            row = self._conn.execute(
                "SELECT data_json FROM load_postings WHERE tenant_id = ? AND posting_id = ?",
                (tenant, posting_id),
            ).fetchone()
            if not row:
                raise KeyError(posting_id)
            posting = LoadPosting.model_validate_json(row["data_json"])
            if posting.assigned_load_id == load_id:
                return posting
            posting.assigned_load_id = load_id
            self._conn.execute(
                "UPDATE load_postings SET assigned_load_id = ?, data_json = ? WHERE tenant_id = ? AND posting_id = ?",
                (load_id, _json_dumps(posting.model_dump(mode="json")), tenant, posting_id),
            )
        return posting

    # -- vehicles, hunt plans, customers ------------------------------------

    def upsert_vehicle(self, tenant_id: str, vehicle: Vehicle) -> Vehicle:
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO vehicles (tenant_id, vehicle_id, data_json)
                VALUES (?, ?, ?)
                ON CONFLICT(tenant_id, vehicle_id)
                DO UPDATE SET data_json = excluded.data_json
                """,
                (tenant, vehicle.vehicle_id, _json_dumps(vehicle.model_dump(mode="json"))),
            )
        return vehicle

    def get_vehicle(self, tenant_id: str, vehicle_id: str) -> Optional[Vehicle]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM vehicles WHERE tenant_id = ? AND vehicle_id = ?",
                (tenant, vehicle_id),
            ).fetchone()
        if not row:
            return None
        return Vehicle.model_validate_json(row["data_json"])

    def upsert_hunt_plan(self, tenant_id: str, plan: HuntPlan) -> HuntPlan:
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO hunt_plans (tenant_id, hunt_plan_id, vehicle_id, enabled, data_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, hunt_plan_id)
                DO UPDATE SET vehicle_id = excluded.vehicle_id,
                              enabled = excluded.enabled,
                              data_json = excluded.data_json
                """,
                (
                    tenant,
                    plan.hunt_plan_id,
                    plan.vehicle_id,
                    1 if plan.enabled else 0,
                    _json_dumps(plan.model_dump(mode="json")),
                ),
            )
        return plan

    def get_hunt_plan(self, tenant_id: str, hunt_plan_id: str) -> Optional[HuntPlan]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM hunt_plans WHERE tenant_id = ? AND hunt_plan_id = ?",
                (tenant, hunt_plan_id),
            ).fetchone()
        if not row:
            return None
        return HuntPlan.model_validate_json(row["data_json"])

    def list_hunt_plans(self, tenant_id: str, enabled_only: bool = False) -> List[HuntPlan]:
        tenant = self._require_tenant(tenant_id)
        query = "SELECT data_json FROM hunt_plans WHERE tenant_id = ?"
        if enabled_only:
            query += " AND enabled = 1"
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY hunt_plan_id", (tenant,)).fetchall()
        return [HuntPlan.model_validate_json(row["data_json"]) for row in rows]

    def upsert_customer(self, tenant_id: str, customer: Customer) -> Customer:
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO customers (tenant_id, customer_id, name, email, data_json)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(tenant_id, customer_id)
                DO UPDATE SET name = excluded.name, email = excluded.email, data_json = excluded.data_json
                """,
                (
                    tenant,
                    customer.customer_id,
                    customer.name.strip(),
                    (customer.email or "").strip() or None,
                    _json_dumps(customer.model_dump(mode="json")),
                ),
            )
        return customer

    def find_customer_id(self, tenant_id: str, *, name: str | None = None, email: str | None = None) -> Optional[str]:
        """Case-insensitive exact lookup by name, else by email."""
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            if name and name.strip():
                row = self._conn.execute(
                    """
                    SELECT customer_id FROM customers
                    WHERE tenant_id = ? AND name = ? COLLATE NOCASE
                    ORDER BY customer_id LIMIT 1
                    """,
                    (tenant, name.strip()),
                ).fetchone()
                if row:
                    return row["customer_id"]
            if email and email.strip():
                row = self._conn.execute(
                    """
                    SELECT customer_id FROM customers
                    WHERE tenant_id = ? AND email = ? COLLATE NOCASE
                    ORDER BY customer_id LIMIT 1
                    """,
                    (tenant, email.strip()),
                ).fetchone()
                if row:
                    return row["customer_id"]
        return None

    # -- matches -----------------------------------------------------------

    @staticmethod
    def _match_from_row(row: sqlite3.Row) -> Match:
        data = json.loads(row["data_json"])
        data["match_status"] = row["match_status"]
        data["version"] = row["version"]
        return Match.model_validate(data)

    def _bump_match_count(self, tenant_id: str, status: str, delta: int) -> None:
        self._conn.execute(
            """
            INSERT INTO match_status_counts (tenant_id, match_status, count, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(tenant_id, match_status)
            DO UPDATE SET count = MAX(0, count + excluded.count), updated_at = excluded.updated_at
            """,
            (tenant_id, status, delta, _utc_now_iso()),
        )

    def insert_match_if_absent(self, tenant_id: str, match: Match) -> bool:
        """Insert unless the (vehicle, posting) pair has ever been matched."""
        tenant = self._require_tenant(tenant_id)
        row = match.model_dump(mode="json")
        with self._transaction():
            existing = self._conn.execute(
                "SELECT 1 FROM matches WHERE tenant_id = ? AND vehicle_id = ? AND posting_id = ? LIMIT 1",
                (tenant, match.vehicle_id, match.posting_id),
            ).fetchone()
            if existing:
                return False
            cursor = self._conn.execute(
                """
                INSERT OR IGNORE INTO matches (
                    tenant_id, match_id, posting_id, vehicle_id, hunt_plan_id,
                    match_status, version, matched_at, updated_at, data_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant,
                    match.match_id,
                    match.posting_id,
                    match.vehicle_id,
                    match.hunt_plan_id,
                    row["match_status"],
                    match.version,
                    _iso(match.matched_at),
                    _iso(match.updated_at),
                    _json_dumps(row),
                ),
            )
            if cursor.rowcount == 0:
                return False
            self._bump_match_count(tenant, row["match_status"], 1)
        return True

    def get_match(self, tenant_id: str, match_id: str) -> Optional[Match]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT match_status, version, data_json FROM matches WHERE tenant_id = ? AND match_id = ?",
                (tenant, match_id),
            ).fetchone()
        if not row:
            return None
        return self._match_from_row(row)

    def list_matches(
        self,
        tenant_id: str,
        *,
        status: Optional[MatchStatus] = None,
        posting_id: Optional[str] = None,
        vehicle_id: Optional[str] = None,
        limit: int = 500,
    ) -> List[Match]:
        tenant = self._require_tenant(tenant_id)
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant]
        if status is not None:
            clauses.append("match_status = ?")
            params.append(MatchStatus(status).value)
        if posting_id:
            clauses.append("posting_id = ?")
            params.append(posting_id)
        if vehicle_id:
            clauses.append("vehicle_id = ?")
            params.append(vehicle_id)
        params.append(max(1, int(limit)))
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT match_status, version, data_json FROM matches
                WHERE {' AND '.join(clauses)}
                ORDER BY matched_at DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [self._match_from_row(row) for row in rows]

    def compare_and_set_match(self, tenant_id: str, match: Match, *, expected_status: str, expected_version: int) -> bool:
        """Write `match` only if status and version are still what the caller read."""
        tenant = self._require_tenant(tenant_id)
        row = match.model_dump(mode="json")
        with self._transaction():
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE matches
                    SET match_status = ?, version = ?, updated_at = ?, data_json = ?
                    WHERE tenant_id = ? AND match_id = ? AND match_status = ? AND version = ?
                    """,
                    (
                        row["match_status"],
                        match.version,
                        _iso(match.updated_at),
                        _json_dumps(row),
                        tenant,
                        match.match_id,
                        expected_status,
                        expected_version,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise InvalidTransition(
                    "Another live match already exists for this vehicle and posting",
                    match_id=match.match_id,
                    current_status=expected_status,
                ) from exc
            if cursor.rowcount != 1:
                return False
            if expected_status != row["match_status"]:
                self._bump_match_count(tenant, expected_status, -1)
                self._bump_match_count(tenant, row["match_status"], 1)
        return True

    def list_expirable_matches(self, tenant_id: Optional[str] = None, *, cross_tenant: bool = False) -> List[Dict[str, Any]]:
        """Non-terminal matches joined with their posting's expiry."""
        params: List[Any] = list(sorted(NON_TERMINAL_MATCH_STATUSES))
        query = f"""
            SELECT m.tenant_id, m.match_id, m.match_status, m.version, m.matched_at, p.expires_at
            FROM matches m
            LEFT JOIN load_postings p
              ON p.tenant_id = m.tenant_id AND p.posting_id = m.posting_id
            WHERE m.match_status IN ({', '.join('?' for _ in params)})
        """
        if tenant_id is not None or not cross_tenant:
            query += " AND m.tenant_id = ?"
            params.append(self._require_tenant(tenant_id))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [dict(row) for row in rows]

    def expire_match(self, tenant_id: str, match_id: str, *, missed_at: datetime) -> Optional[str]:
        """Move a match to `missed` only if it is still non-terminal at write time.

        Returns the status it left, or None when nothing moved.
        """
        tenant = self._require_tenant(tenant_id)
        statuses = sorted(NON_TERMINAL_MATCH_STATUSES)
        missed_iso = _iso(missed_at)
        with self._transaction():
            row = self._conn.execute(
                "SELECT match_status FROM matches WHERE tenant_id = ? AND match_id = ?",
                (tenant, match_id),
            ).fetchone()
            if not row or row["match_status"] not in NON_TERMINAL_MATCH_STATUSES:
                return None
            previous = row["match_status"]
            cursor = self._conn.execute(
                f"""
                UPDATE matches
                SET match_status = ?,
                    version = version + 1,
                    updated_at = ?,
                    data_json = json_set(data_json, '$.missed_at', ?, '$.updated_at', ?)
                WHERE tenant_id = ? AND match_id = ? AND match_status = ?
                  AND match_status IN ({', '.join('?' for _ in statuses)})
                """,
                (
                    MatchStatus.MISSED.value,
                    missed_iso,
                    missed_iso,
                    missed_iso,
                    tenant,
                    match_id,
                    previous,
                    *statuses,
                ),
            )
            if cursor.rowcount != 1:
                return None
            self._bump_match_count(tenant, previous, -1)
            self._bump_match_count(tenant, MatchStatus.MISSED.value, 1)
        return previous

    def get_match_counts(self, tenant_id: str) -> Dict[str, int]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            rows = self._conn.execute(
                "SELECT match_status, count FROM match_status_counts WHERE tenant_id = ?",
                (tenant,),
            ).fetchall()
        return {row["match_status"]: int(row["count"]) for row in rows}

    def rebuild_match_counts(self, tenant_id: str) -> Dict[str, int]:
        tenant = self._require_tenant(tenant_id)
        now = _utc_now_iso()
        with self._transaction():
            rows = self._conn.execute(
                "SELECT match_status, COUNT(*) AS c FROM matches WHERE tenant_id = ? GROUP BY match_status",
                (tenant,),
            ).fetchall()
            counts = {row["match_status"]: int(row["c"]) for row in rows}
            self._conn.execute("DELETE FROM match_status_counts WHERE tenant_id = ?", (tenant,))
            for status, count in counts.items():
                self._conn.execute(
                    "INSERT INTO match_status_counts (tenant_id, match_status, count, updated_at) VALUES (?, ?, ?, ?)",
                    (tenant, status, count, now),
                )
        return counts

    # -- loads -------------------------------------------------------------

    def _raise_if_load_taken_locked(self, tenant_id: str, load: Load) -> None:
        if load.match_id:
            existing = self._conn.execute(
                "SELECT load_id FROM loads WHERE tenant_id = ? AND match_id = ?",
                (tenant_id, load.match_id),
            ).fetchone()
            if existing:
                raise LoadExistsForMatch(load.match_id, existing["load_id"])
        taken = self._conn.execute(
            "SELECT 1 FROM loads WHERE tenant_id = ? AND load_number = ?",
            (tenant_id, load.load_number),
        ).fetchone()
        if taken:
            raise SequenceGenerationConflict(load.load_number)

    def insert_load(self, tenant_id: str, load: Load) -> Load:
        """Insert a load; a match owns at most one load per tenant."""
        tenant = self._require_tenant(tenant_id)
        row = load.model_dump(mode="json")
        try:
            with self._transaction():
                self._raise_if_load_taken_locked(tenant, load)
                self._conn.execute(
                    """
                    INSERT INTO loads (
                        tenant_id, load_id, load_number, match_id, status,
                        financial_status, updated_at, data_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant,
                        load.load_id,
                        load.load_number,
                        load.match_id,
                        row["status"],
                        row["financial_status"],
                        row["updated_at"],
                        _json_dumps(row),
                    ),
                )
        except sqlite3.IntegrityError:
            # Another writer slipped in; report which key it took.
            with self._lock:
                self._raise_if_load_taken_locked(tenant, load)
            raise
        return load

    def get_load(self, tenant_id: str, load_id: str) -> Optional[Load]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE tenant_id = ? AND load_id = ?",
                (tenant, load_id),
            ).fetchone()
        if not row:
            return None
        return Load.model_validate_json(row["data_json"])

    def find_load_by_match(self, tenant_id: str, match_id: str) -> Optional[Load]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE tenant_id = ? AND match_id = ? ORDER BY updated_at ASC LIMIT 1",
                (tenant, match_id),
            ).fetchone()
        if not row:
            return None
        return Load.model_validate_json(row["data_json"])

    def list_loads(self, tenant_id: str, load_ids: Optional[Sequence[str]] = None) -> List[Load]:
        tenant = self._require_tenant(tenant_id)
        query = "SELECT data_json FROM loads WHERE tenant_id = ?"
        params: List[Any] = [tenant]
        if load_ids is not None:
            if not load_ids:
                return []
            query += f" AND load_id IN ({', '.join('?' for _ in load_ids)})"
            params.extend(load_ids)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY load_number", params).fetchall()
        return [Load.model_validate_json(row["data_json"]) for row in rows]

    def _update_load_status_locked(
        self,
        tenant_id: str,
        load_ids: Sequence[str],
        *,
        financial_status: str,
        status: Optional[str] = None,
    ) -> int:
        updated = 0
        now = _utc_now_iso()
        for load_id in load_ids:
            row = self._conn.execute(
                "SELECT data_json FROM loads WHERE tenant_id = ? AND load_id = ?",
                (tenant_id, load_id),
            ).fetchone()
            if not row:
                continue
            data = json.loads(row["data_json"])
            data["financial_status"] = financial_status
            if status is not None:
                data["status"] = status
            data["updated_at"] = now
            self._conn.execute(
                """
                UPDATE loads
                SET financial_status = ?, status = ?, updated_at = ?, data_json = ?
                WHERE tenant_id = ? AND load_id = ?
                """,
                (financial_status, data["status"], now, _json_dumps(data), tenant_id, load_id),
            )
            updated += 1
        return updated

    def set_loads_financial_status(
        self,
        tenant_id: str,
        load_ids: Sequence[str],
        financial_status: str,
        *,
        status: Optional[str] = None,
    ) -> int:
        """Update billing status; operational `status` changes only when passed explicitly."""
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            return self._update_load_status_locked(tenant, load_ids, financial_status=financial_status, status=status)

    # -- invoices ----------------------------------------------------------

    def create_invoice(self, tenant_id: str, invoice: Invoice, links: Sequence[InvoiceLoad]) -> Invoice:
        """Insert an invoice with its load links and mark those loads invoiced."""
        tenant = self._require_tenant(tenant_id)
        row = invoice.model_dump(mode="json")
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO invoices (tenant_id, invoice_id, invoice_number, status, due_date, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    tenant,
                    invoice.invoice_id,
                    invoice.invoice_number,
                    row["status"],
                    row["due_date"],
                    row["updated_at"],
                    _json_dumps(row),
                ),
            )
            for link in links:
                self._conn.execute(
                    "INSERT INTO invoice_loads (tenant_id, invoice_id, load_id, amount) VALUES (?, ?, ?, ?)",
                    (tenant, invoice.invoice_id, link.load_id, float(link.amount)),
                )
            self._update_load_status_locked(
                tenant,
                [link.load_id for link in links],
                financial_status="invoiced",
            )
        return invoice

    def get_invoice(self, tenant_id: str, invoice_id: str) -> Optional[Invoice]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM invoices WHERE tenant_id = ? AND invoice_id = ?",
                (tenant, invoice_id),
            ).fetchone()
        if not row:
            return None
        return Invoice.model_validate_json(row["data_json"])

    def _write_invoice_locked(self, tenant_id: str, invoice: Invoice) -> bool:
        """Conditional on the stored version still matching `invoice.version`; bumps it on success."""
        expected = invoice.version
        updated_at = datetime.now(timezone.utc)
        row = invoice.model_copy(update={"version": expected + 1, "updated_at": updated_at}).model_dump(mode="json")
        cursor = self._conn.execute(
            """
            UPDATE invoices SET status = ?, due_date = ?, updated_at = ?, data_json = ?
            WHERE tenant_id = ? AND invoice_id = ?
              AND COALESCE(json_extract(data_json, '$.version'), 1) = ?
            """,
            (
                row["status"],
                row["due_date"],
                row["updated_at"],
                _json_dumps(row),
                tenant_id,
                invoice.invoice_id,
                expected,
            ),
        )
        if cursor.rowcount != 1:
            return False
        invoice.version = expected + 1
        invoice.updated_at = updated_at
        return True

    def save_invoice(self, tenant_id: str, invoice: Invoice) -> Invoice:
        """Write back an invoice read earlier; a stale copy raises `ConcurrentUpdateConflict`."""
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            if self._write_invoice_locked(tenant, invoice):
                return invoice
            exists = self._conn.execute(
                "SELECT 1 FROM invoices WHERE tenant_id = ? AND invoice_id = ?",
                (tenant, invoice.invoice_id),
            ).fetchone()
        if not exists:
            raise KeyError(invoice.invoice_id)
        raise ConcurrentUpdateConflict(
            f"Invoice {invoice.invoice_number} changed since it was read (version {invoice.version})",
            entity_id=invoice.invoice_id,
        )

    def return_invoice_to_audit(
        self,
        tenant_id: str,
        invoice_id: str,
        *,
        evaluate: Callable[[Invoice, Optional[str]], ReversalEligibility],
        marker: str,
        restored_status: Optional[str] = None,
    ) -> tuple[ReversalEligibility, Invoice, List[str]]:
        """Re-check eligibility and cancel the invoice in one write transaction.

        Payments, email logs, and factoring submissions serialize against this
        transaction, so `evaluate` always sees the latest committed invoice. A
        blocked result leaves every row untouched and returns no load ids.
        """
        tenant = self._require_tenant(tenant_id)
        with self._transaction():
            row = self._conn.execute(
                "SELECT data_json FROM invoices WHERE tenant_id = ? AND invoice_id = ?",
                (tenant, invoice_id),
            ).fetchone()
            if not row:
                raise KeyError(invoice_id)
            invoice = Invoice.model_validate_json(row["data_json"])
            email = self._conn.execute(
                """
                SELECT status FROM invoice_email_log
                WHERE tenant_id = ? AND invoice_id = ?
                ORDER BY created_at DESC, log_id DESC
                LIMIT 1
                """,
                (tenant, invoice_id),
            ).fetchone()
            eligibility = evaluate(invoice, email["status"] if email else None)
            if not eligibility.allowed:
                return eligibility, invoice, []

            load_ids = [
                link["load_id"]
                for link in self._conn.execute(
                    "SELECT load_id FROM invoice_loads WHERE tenant_id = ? AND invoice_id = ? ORDER BY load_id",
                    (tenant, invoice_id),
                ).fetchall()
            ]
            self._conn.execute(
                "DELETE FROM invoice_loads WHERE tenant_id = ? AND invoice_id = ?",
                (tenant, invoice_id),
            )
            self._update_load_status_locked(
                tenant,
                load_ids,
                financial_status="pending_invoice",
                status=restored_status,
            )
            invoice.notes = f"{invoice.notes}\n{marker}" if invoice.notes else marker
            invoice.status = InvoiceStatus.CANCELLED
            if not self._write_invoice_locked(tenant, invoice):
                raise ConcurrentUpdateConflict(f"Invoice {invoice.invoice_number} changed mid-reversal", entity_id=invoice_id)
        return eligibility, invoice, load_ids

    def list_invoice_load_ids(self, tenant_id: str, invoice_id: str) -> List[str]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            rows = self._conn.execute(
                "SELECT load_id FROM invoice_loads WHERE tenant_id = ? AND invoice_id = ? ORDER BY load_id",
                (tenant, invoice_id),
            ).fetchall()
        return [row["load_id"] for row in rows]

    def list_invoiced_load_ids(self, tenant_id: str, load_ids: Sequence[str]) -> List[str]:
        tenant = self._require_tenant(tenant_id)
        if not load_ids:
            return []
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT DISTINCT load_id FROM invoice_loads
                WHERE tenant_id = ? AND load_id IN ({', '.join('?' for _ in load_ids)})
                """,
                (tenant, *load_ids),
            ).fetchall()
        return [row["load_id"] for row in rows]

    def add_invoice_email_log(self, tenant_id: str, invoice_id: str, status: str, recipient: str | None = None) -> Dict[str, Any]:
        tenant = self._require_tenant(tenant_id)
        entry = {
            "log_id": self.generate_id(tenant, "email_log", "IEL"),
            "invoice_id": invoice_id,
            "status": status.strip().lower(),
            "recipient": recipient,
            "created_at": _utc_now_iso(),
        }
        with self._transaction():
            self._conn.execute(
                """
                INSERT INTO invoice_email_log (tenant_id, log_id, invoice_id, status, recipient, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (tenant, entry["log_id"], invoice_id, entry["status"], recipient, entry["created_at"]),
            )
        return entry

    def latest_invoice_email_status(self, tenant_id: str, invoice_id: str) -> Optional[str]:
        tenant = self._require_tenant(tenant_id)
        with self._lock:
            row = self._conn.execute(
                """
                SELECT status FROM invoice_email_log
                WHERE tenant_id = ? AND invoice_id = ?
                ORDER BY created_at DESC, log_id DESC
                LIMIT 1
                """,
                (tenant, invoice_id),
            ).fetchone()
        return row["status"] if row else None

    def list_invoices_by_status(
        self,
        tenant_id: Optional[str],
        status: str,
        *,
        cross_tenant: bool = False,
    ) -> List[tuple[str, Invoice]]:
        query = "SELECT tenant_id, data_json FROM invoices WHERE status = ?"
        params: List[Any] = [status]
        if tenant_id is not None or not cross_tenant:
            query += " AND tenant_id = ?"
            params.append(self._require_tenant(tenant_id))
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [(row["tenant_id"], Invoice.model_validate_json(row["data_json"])) for row in rows]

    # -- audit -------------------------------------------------------------

    def append_audit_entry(self, tenant_id: str, entry: AuditLogEntry, *, once: bool = False) -> Optional[AuditLogEntry]:
        """Insert one entry; with `once`, skip it when the entity already has this action."""
        tenant = self._require_tenant(tenant_id)
        row = entry.model_dump(mode="json")
        try:
            with self._transaction():
                if once:
                    existing = self._conn.execute(
                        """
                        SELECT 1 FROM audit_log
                        WHERE tenant_id = ? AND entity_type = ? AND entity_id = ? AND action = ?
                        LIMIT 1
                        """,
                        (tenant, entry.entity_type, entry.entity_id, entry.action),
                    ).fetchone()
                    if existing:
                        return None
                self._conn.execute(
                    """
                    INSERT INTO audit_log (tenant_id, audit_id, entity_type, entity_id, action, actor, created_at, data_json)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        tenant,
                        entry.audit_id,
                        entry.entity_type,
                        entry.entity_id,
                        entry.action,
                        entry.actor,
                        row["created_at"],
                        _json_dumps(row),
                    ),
                )
        except sqlite3.Error as exc:
            logger.error("Audit insert failed", tenant_id=tenant, action=entry.action, error=str(exc))
            raise AuditLogWriteFailure(str(exc)) from exc
        return entry

    def list_audit_entries(
        self,
        tenant_id: str,
        *,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 300,
    ) -> List[AuditLogEntry]:
        tenant = self._require_tenant(tenant_id)
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant]
        if entity_type:
            clauses.append("entity_type = ?")
            params.append(entity_type)
        if entity_id:
            clauses.append("entity_id = ?")
            params.append(entity_id)
        params.append(max(1, int(limit)))
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT data_json FROM audit_log
                WHERE {' AND '.join(clauses)}
                ORDER BY created_at DESC, audit_id DESC
                LIMIT ?
                """,
                params,
            ).fetchall()
        return [AuditLogEntry.model_validate_json(row["data_json"]) for row in rows]


@lru_cache()
def get_dispatch_state_store() -> DispatchStateStore:
    """Process-wide store bound to the configured database path."""
    return DispatchStateStore()
