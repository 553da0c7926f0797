"""Persistent store backed by SQLite.

Holds every table the masking engine and the compliance center need.
Writes go through ``transaction()``; nested transactions join the outer
one, so callers can batch several writes and commit them atomically.

Usage:
    store = SqliteStore("~/.privacy-guard/guard.db")
    with store.transaction():
        msg_id = store.add_message(7, "hello")
        store.insert_detection_events(...)
"""

from __future__ import annotations
import json
import logging
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import StorageError
from .models import (
    AuditEntry,
    ComplianceMetric,
    DetectionEvent,
    DlpIncident,
    IdentityMapping,
    OrganizationalPolicy,
    RetentionNotification,
    RetentionPolicy,
    UnmaskingRequest,
)
from .types import (
    DataType,
    DlpAction,
    IncidentStatus,
    NotificationStatus,
    PolicyType,
    PrivacySettings,
    RequestStatus,
    ReviewStatus,
    Severity,
    Timeframe,
    UrgencyLevel,
)

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY,
    department TEXT,
    role TEXT NOT NULL DEFAULT 'user'
);
CREATE TABLE IF NOT EXISTS messages (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    sender_id INTEGER,
    content TEXT NOT NULL,
    classification TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_messages_created ON messages(created_at);
CREATE TABLE IF NOT EXISTS privacy_profiles (
    user_id INTEGER PRIMARY KEY,
    mask_pii INTEGER NOT NULL DEFAULT 1,
    mask_phi INTEGER NOT NULL DEFAULT 1,
    mask_financial INTEGER NOT NULL DEFAULT 1,
    ghost_mode INTEGER NOT NULL DEFAULT 0,
    anonymous_chat INTEGER NOT NULL DEFAULT 0,
    metadata_minimization INTEGER NOT NULL DEFAULT 1,
    ephemeral_messages INTEGER NOT NULL DEFAULT 0,
    ephemeral_duration_hours INTEGER NOT NULL DEFAULT 24,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS detection_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    message_id INTEGER,
    file_id INTEGER,
    detected_data_type TEXT NOT NULL,
    original_value TEXT NOT NULL,
    masked_value TEXT NOT NULL,
    confidence INTEGER NOT NULL,
    review_status TEXT NOT NULL DEFAULT 'pending',
    reviewed_by INTEGER,
    reviewed_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_detection_message ON detection_events(message_id);
CREATE INDEX IF NOT EXISTS idx_detection_created ON detection_events(created_at);
CREATE TABLE IF NOT EXISTS identity_vault (
    anonymous_id TEXT PRIMARY KEY,
    real_user_id INTEGER NOT NULL,
    session_id TEXT NOT NULL,
    encrypted_mapping TEXT NOT NULL,
    access_level TEXT NOT NULL DEFAULT 'anonymous',
    expires_at TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS dlp_incidents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    incident_type TEXT NOT NULL,
    severity TEXT NOT NULL,
    user_id INTEGER NOT NULL,
    message_id INTEGER,
    file_id INTEGER,
    detected_content TEXT NOT NULL,
    action_taken TEXT NOT NULL,
    review_status TEXT NOT NULL DEFAULT 'open',
    assigned_to INTEGER,
    resolution TEXT,
    resolved_at TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_incidents_created ON dlp_incidents(created_at);
CREATE TABLE IF NOT EXISTS organizational_policies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    policy_name TEXT NOT NULL,
    policy_type TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    rule_configuration TEXT NOT NULL,
    departments TEXT NOT NULL DEFAULT '[]',
    user_roles TEXT NOT NULL DEFAULT '[]',
    severity TEXT NOT NULL DEFAULT 'medium',
    is_active INTEGER NOT NULL DEFAULT 1,
    auto_enforce INTEGER NOT NULL DEFAULT 1,
    requires_approval INTEGER NOT NULL DEFAULT 0,
    created_by INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    last_modified TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS retention_policies (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    message_classification TEXT,
    retention_period_days INTEGER NOT NULL,
    notify_before_expiry_days INTEGER NOT NULL DEFAULT 30,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_by INTEGER,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS retention_notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    policy_id INTEGER NOT NULL REFERENCES retention_policies(id),
    message_id INTEGER NOT NULL,
    notification_type TEXT NOT NULL,
    scheduled_deletion TEXT NOT NULL,
    notified_users TEXT NOT NULL DEFAULT '[]',
    status TEXT NOT NULL DEFAULT 'pending',
    created_at TEXT NOT NULL,
    UNIQUE (policy_id, message_id)
);
CREATE TABLE IF NOT EXISTS unmasking_requests (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    requester_id INTEGER NOT NULL,
    target_message_id INTEGER NOT NULL,
    request_type TEXT NOT NULL,
    legal_justification TEXT NOT NULL,
    urgency_level TEXT NOT NULL DEFAULT 'standard',
    status TEXT NOT NULL DEFAULT 'pending',
    approved_by INTEGER,
    rejected_reason TEXT,
    audit_trail TEXT NOT NULL,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS compliance_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    metric_type TEXT NOT NULL,
    metric_name TEXT NOT NULL,
    value TEXT NOT NULL,
    unit TEXT NOT NULL,
    department TEXT,
    timeframe TEXT NOT NULL,
    recorded_at TEXT NOT NULL,
    metadata TEXT NOT NULL DEFAULT '{}'
);
"""

_PROFILE_COLUMNS = tuple(sorted(PrivacySettings.field_names()))


def to_db(dt: datetime) -> str:
    """UTC ISO-8601 with fixed precision, so text order is time order."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _dept_clause(column: str, department: str | None) -> tuple[str, list[Any]]:
    if department is None:
        return "", []
    return f" AND {column} IN (SELECT id FROM users WHERE department = ?)", [department]


class SqliteStore:
    """Relational store for privacy and compliance records."""

    __slots__ = ("_db", "_depth", "path")

    def __init__(self, db_path: str | Path = ":memory:") -> None:
        if str(db_path) != ":memory:":
            db_path = Path(db_path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
        self.path = str(db_path)
        try:
            # Autocommit mode; transaction() issues BEGIN/COMMIT explicitly.
            self._db = sqlite3.connect(self.path, check_same_thread=False, isolation_level=None)
            self._db.row_factory = sqlite3.Row
            self._db.execute("PRAGMA foreign_keys = ON")
            self._db.executescript(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageError(f"could not open store at {self.path}") from e
        self._depth = 0

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Atomic unit of work.  Nested calls join the outermost one."""
        outermost = self._depth == 0
        try:
            if outermost:
                self._db.execute("BEGIN IMMEDIATE")
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
            if outermost:
                self._db.execute("COMMIT")
        except BaseException as e:
            if outermost and self._db.in_transaction:
                self._db.execute("ROLLBACK")
                logger.warning("transaction rolled back: %s", type(e).__name__)
            if isinstance(e, sqlite3.Error):
                raise StorageError(str(e)) from e
            raise

    def _write(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        with self.transaction():
            return self._db.execute(sql, params)

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return self._db.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(str(e)) from e

    def _count(self, sql: str, params: Sequence[Any] = ()) -> int:
        return int(self._query(sql, params)[0][0])

    def close(self) -> None:
        self._db.close()

    # ------------------------------------------------------------------
    # Users and messages (owned by the messaging layer)
    # ------------------------------------------------------------------

    def add_user(self, user_id: int, *, department: str | None = None, role: str = "user") -> None:
        self._write(
            "INSERT INTO users (id, department, role) VALUES (?, ?, ?) "
            "ON CONFLICT(id) DO UPDATE SET department = excluded.department, role = excluded.role",
            (user_id, department, role),
        )

    def add_message(
        self,
        sender_id: int,
        content: str,
        *,
        created_at: datetime,
        classification: str | None = None,
    ) -> int:
        cur = self._write(
            "INSERT INTO messages (sender_id, content, classification, created_at) VALUES (?, ?, ?, ?)",
            (sender_id, content, classification, to_db(created_at)),
        )
        return cur.lastrowid

    def get_message_content(self, message_id: int) -> str | None:
        rows = self._query("SELECT content FROM messages WHERE id = ?", (message_id,))
        return rows[0]["content"] if rows else None

    def find_messages_created_before(
        self, cutoff: datetime, classification: str | None = None,
    ) -> list[int]:
        sql = "SELECT id FROM messages WHERE created_at <= ?"
        params: list[Any] = [to_db(cutoff)]
        if classification:
            sql += " AND classification = ?"
            params.append(classification)
        return [r["id"] for r in self._query(sql + " ORDER BY id", params)]

    def count_messages(self, start: datetime, end: datetime, department: str | None = None) -> int:
        extra, extra_params = _dept_clause("sender_id", department)
        return self._count(
            "SELECT COUNT(*) FROM messages WHERE created_at >= ? AND created_at <= ?" + extra,
            [to_db(start), to_db(end), *extra_params],
        )

    # ------------------------------------------------------------------
    # Privacy profiles
    # ------------------------------------------------------------------

    def get_privacy_profile(self, user_id: int) -> PrivacySettings | None:
        rows = self._query("SELECT * FROM privacy_profiles WHERE user_id = ?", (user_id,))
        if not rows:
            return None
        row = rows[0]
        return PrivacySettings(**{
            col: (row[col] if col == "ephemeral_duration_hours" else bool(row[col]))
            for col in _PROFILE_COLUMNS
        })

    def upsert_privacy_profile(self, user_id: int, changes: dict[str, Any], now: datetime) -> None:
        """Insert-or-update in one statement; concurrent writers can't lose the row."""
        cols = [c for c in _PROFILE_COLUMNS if c in changes]
        values = [int(changes[c]) for c in cols]
        ts = to_db(now)
        assignments = ", ".join([f"{c} = excluded.{c}" for c in cols] + ["updated_at = excluded.updated_at"])
        col_sql = ", ".join(["user_id", *cols, "created_at", "updated_at"])
        placeholders = ", ".join("?" * (len(cols) + 3))
        self._write(
            f"INSERT INTO privacy_profiles ({col_sql}) VALUES ({placeholders}) "
            f"ON CONFLICT(user_id) DO UPDATE SET {assignments}",
            [user_id, *values, ts, ts],
        )

    def get_profile_timestamps(self, user_id: int) -> tuple[datetime, datetime] | None:
        rows = self._query(
            "SELECT created_at, updated_at FROM privacy_profiles WHERE user_id = ?", (user_id,),
        )
        if not rows:
            return None
        return from_db(rows[0]["created_at"]), from_db(rows[0]["updated_at"])

    # ------------------------------------------------------------------
    # Detection events
    # ------------------------------------------------------------------

    def insert_detection_events(
        self,
        user_id: int,
        events: Sequence[tuple[DataType, str, str, int]],
        *,
        created_at: datetime,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> list[int]:
        """events: (data_type, encrypted_original, masked_value, confidence)."""
        ids: list[int] = []
        ts = to_db(created_at)
        with self.transaction():
            for data_type, encrypted, masked, confidence in events:
                cur = self._db.execute(
                    "INSERT INTO detection_events (user_id, message_id, file_id, detected_data_type, "
                    "original_value, masked_value, confidence, review_status, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (user_id, message_id, file_id, data_type.value, encrypted, masked,
                     confidence, ReviewStatus.PENDING.value, ts),
                )
                ids.append(cur.lastrowid)
        return ids

    def _event(self, row: sqlite3.Row) -> DetectionEvent:
        return DetectionEvent(
            id=row["id"],
            user_id=row["user_id"],
            message_id=row["message_id"],
            file_id=row["file_id"],
            detected_data_type=DataType(row["detected_data_type"]),
            original_value=row["original_value"],
            masked_value=row["masked_value"],
            confidence=row["confidence"],
            review_status=ReviewStatus(row["review_status"]),
            reviewed_by=row["reviewed_by"],
            reviewed_at=from_db(row["reviewed_at"]),
            created_at=from_db(row["created_at"]),
        )

    def get_detection_event(self, event_id: int) -> DetectionEvent | None:
        rows = self._query("SELECT * FROM detection_events WHERE id = ?", (event_id,))
        return self._event(rows[0]) if rows else None

    def list_detection_events(
        self, *, user_id: int | None = None, message_id: int | None = None,
    ) -> list[DetectionEvent]:
        sql = "SELECT * FROM detection_events WHERE 1 = 1"
        params: list[Any] = []
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        if message_id is not None:
            sql += " AND message_id = ?"
            params.append(message_id)
        return [self._event(r) for r in self._query(sql + " ORDER BY id", params)]

    def mark_detection_reviewed(self, event_id: int, reviewer_id: int, now: datetime) -> bool:
        cur = self._write(
            "UPDATE detection_events SET review_status = ?, reviewed_by = ?, reviewed_at = ? WHERE id = ?",
            (ReviewStatus.REVIEWED.value, reviewer_id, to_db(now), event_id),
        )
        return cur.rowcount == 1

    def count_masked_messages(self, start: datetime, end: datetime, department: str | None = None) -> int:
        """Distinct masking passes (message, or user+timestamp when unlinked) in window."""
        extra, extra_params = _dept_clause("user_id", department)
        return self._count(
            "SELECT COUNT(*) FROM (SELECT DISTINCT COALESCE(CAST(message_id AS TEXT), "
            "user_id || '@' || created_at) FROM detection_events "
            "WHERE created_at >= ? AND created_at <= ?" + extra + ")",
            [to_db(start), to_db(end), *extra_params],
        )

    # ------------------------------------------------------------------
    # Identity vault
    # ------------------------------------------------------------------

    def insert_identity_mapping(self, mapping: IdentityMapping) -> None:
        self._write(
            "INSERT INTO identity_vault (anonymous_id, real_user_id, session_id, encrypted_mapping, "
            "access_level, expires_at, is_active, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (mapping.anonymous_id, mapping.real_user_id, mapping.session_id,
             mapping.encrypted_mapping, mapping.access_level, to_db(mapping.expires_at),
             int(mapping.is_active), to_db(mapping.created_at)),
        )

    def get_identity_mapping(self, anonymous_id: str) -> IdentityMapping | None:
        rows = self._query("SELECT * FROM identity_vault WHERE anonymous_id = ?", (anonymous_id,))
        if not rows:
            return None
        r = rows[0]
        return IdentityMapping(
            anonymous_id=r["anonymous_id"],
            real_user_id=r["real_user_id"],
            session_id=r["session_id"],
            encrypted_mapping=r["encrypted_mapping"],
            access_level=r["access_level"],
            expires_at=from_db(r["expires_at"]),
            is_active=bool(r["is_active"]),
            created_at=from_db(r["created_at"]),
        )

    def deactivate_identity_mapping(self, anonymous_id: str) -> bool:
        cur = self._write(
            "UPDATE identity_vault SET is_active = 0 WHERE anonymous_id = ?", (anonymous_id,),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # DLP incidents
    # ------------------------------------------------------------------

    def insert_dlp_incident(
        self,
        *,
        incident_type: str,
        severity: Severity,
        user_id: int,
        detected_content: str,
        action_taken: DlpAction,
        created_at: datetime,
        message_id: int | None = None,
        file_id: int | None = None,
    ) -> int:
        cur = self._write(
            "INSERT INTO dlp_incidents (incident_type, severity, user_id, message_id, file_id, "
            "detected_content, action_taken, review_status, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (incident_type, severity.value, user_id, message_id, file_id, detected_content,
             action_taken.value, IncidentStatus.OPEN.value, to_db(created_at)),
        )
        return cur.lastrowid

    def _incident(self, r: sqlite3.Row) -> DlpIncident:
        return DlpIncident(
            id=r["id"],
            incident_type=r["incident_type"],
            severity=Severity(r["severity"]),
            user_id=r["user_id"],
            message_id=r["message_id"],
            file_id=r["file_id"],
            detected_content=r["detected_content"],
            action_taken=DlpAction(r["action_taken"]),
            review_status=IncidentStatus(r["review_status"]),
            assigned_to=r["assigned_to"],
            resolution=r["resolution"],
            resolved_at=from_db(r["resolved_at"]),
            created_at=from_db(r["created_at"]),
        )

    def get_dlp_incident(self, incident_id: int) -> DlpIncident | None:
        rows = self._query("SELECT * FROM dlp_incidents WHERE id = ?", (incident_id,))
        return self._incident(rows[0]) if rows else None

    def list_dlp_incidents(
        self, start: datetime, end: datetime, department: str | None = None,
    ) -> list[DlpIncident]:
        extra, extra_params = _dept_clause("user_id", department)
        rows = self._query(
            "SELECT * FROM dlp_incidents WHERE created_at >= ? AND created_at <= ?" + extra + " ORDER BY id",
            [to_db(start), to_db(end), *extra_params],
        )
        return [self._incident(r) for r in rows]

    def update_dlp_incident(
        self,
        incident_id: int,
        *,
        status: IncidentStatus,
        reviewer_id: int,
        resolution: str | None,
        now: datetime,
    ) -> bool:
        resolved_at = to_db(now) if status in (IncidentStatus.RESOLVED, IncidentStatus.FALSE_POSITIVE) else None
        cur = self._write(
            "UPDATE dlp_incidents SET review_status = ?, assigned_to = ?, resolution = ?, resolved_at = ? "
            "WHERE id = ?",
            (status.value, reviewer_id, resolution, resolved_at, incident_id),
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Organizational policies
    # ------------------------------------------------------------------

    def insert_policy(
        self,
        *,
        policy_name: str,
        policy_type: PolicyType,
        description: str,
        rule_configuration: dict[str, Any],
        departments: list[str],
        user_roles: list[str],
        severity: Severity,
        auto_enforce: bool,
        requires_approval: bool,
        created_by: int,
        now: datetime,
    ) -> int:
        ts = to_db(now)
        cur = self._write(
            "INSERT INTO organizational_policies (policy_name, policy_type, description, rule_configuration, "
            "departments, user_roles, severity, is_active, auto_enforce, requires_approval, created_by, "
            "created_at, last_modified) VALUES (?, ?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?, ?)",
            (policy_name, policy_type.value, description, json.dumps(rule_configuration),
             json.dumps(departments), json.dumps(user_roles), severity.value, int(auto_enforce),
             int(requires_approval), created_by, ts, ts),
        )
        return cur.lastrowid

    def _policy(self, r: sqlite3.Row) -> OrganizationalPolicy:
        return OrganizationalPolicy(
            id=r["id"],
            policy_name=r["policy_name"],
            policy_type=PolicyType(r["policy_type"]),
            description=r["description"],
            rule_configuration=json.loads(r["rule_configuration"]),
            departments=json.loads(r["departments"]),
            user_roles=json.loads(r["user_roles"]),
            severity=Severity(r["severity"]),
            is_active=bool(r["is_active"]),
            auto_enforce=bool(r["auto_enforce"]),
            requires_approval=bool(r["requires_approval"]),
            created_by=r["created_by"],
            created_at=from_db(r["created_at"]),
            last_modified=from_db(r["last_modified"]),
        )

    def get_policy(self, policy_id: int) -> OrganizationalPolicy | None:
        rows = self._query("SELECT * FROM organizational_policies WHERE id = ?", (policy_id,))
        return self._policy(rows[0]) if rows else None

    def list_policies(self, *, active_only: bool = False) -> list[OrganizationalPolicy]:
        sql = "SELECT * FROM organizational_policies"
        if active_only:
            sql += " WHERE is_active = 1"
        return [self._policy(r) for r in self._query(sql + " ORDER BY id")]

    def update_policy(self, policy_id: int, changes: dict[str, Any], now: datetime) -> bool:
        """changes: column -> already-encoded value (JSON text, ints for flags)."""
        cols = sorted(changes)
        assignments = ", ".join([f"{c} = ?" for c in cols] + ["last_modified = ?"])
        cur = self._write(
            f"UPDATE organizational_policies SET {assignments} WHERE id = ?",
            [*(changes[c] for c in cols), to_db(now), policy_id],
        )
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def insert_retention_policy(
        self,
        *,
        name: str,
        retention_period_days: int,
        notify_before_expiry_days: int,
        message_classification: str | None,
        created_by: int | None,
        now: datetime,
    ) -> int:
        cur = self._write(
            "INSERT INTO retention_policies (name, message_classification, retention_period_days, "
            "notify_before_expiry_days, is_active, created_by, created_at) VALUES (?, ?, ?, ?, 1, ?, ?)",
            (name, message_classification, retention_period_days, notify_before_expiry_days,
             created_by, to_db(now)),
        )
        return cur.lastrowid

    def list_active_retention_policies(self) -> list[RetentionPolicy]:
        rows = self._query("SELECT * FROM retention_policies WHERE is_active = 1 ORDER BY id")
        return [
            RetentionPolicy(
                id=r["id"],
                name=r["name"],
                message_classification=r["message_classification"],
                retention_period_days=r["retention_period_days"],
                notify_before_expiry_days=r["notify_before_expiry_days"],
                is_active=bool(r["is_active"]),
                created_by=r["created_by"],
                created_at=from_db(r["created_at"]),
            )
            for r in rows
        ]

    def set_retention_policy_active(self, policy_id: int, active: bool) -> bool:
        cur = self._write(
            "UPDATE retention_policies SET is_active = ? WHERE id = ?", (int(active), policy_id),
        )
        return cur.rowcount == 1

    def insert_retention_notification(
        self,
        *,
        policy_id: int,
        message_id: int,
        notification_type: str,
        scheduled_deletion: datetime,
        now: datetime,
    ) -> bool:
        """Returns False when (policy, message) was already notified."""
        cur = self._write(
            "INSERT OR IGNORE INTO retention_notifications (policy_id, message_id, notification_type, "
            "scheduled_deletion, notified_users, status, created_at) VALUES (?, ?, ?, ?, '[]', ?, ?)",
            (policy_id, message_id, notification_type, to_db(scheduled_deletion),
             NotificationStatus.PENDING.value, to_db(now)),
        )
        return cur.rowcount == 1

    def list_retention_notifications(self, *, policy_id: int | None = None) -> list[RetentionNotification]:
        sql = "SELECT * FROM retention_notifications"
        params: list[Any] = []
        if policy_id is not None:
            sql += " WHERE policy_id = ?"
            params.append(policy_id)
        return [
            RetentionNotification(
                id=r["id"],
                policy_id=r["policy_id"],
                message_id=r["message_id"],
                notification_type=r["notification_type"],
                scheduled_deletion=from_db(r["scheduled_deletion"]),
                notified_users=json.loads(r["notified_users"]),
                status=NotificationStatus(r["status"]),
                created_at=from_db(r["created_at"]),
            )
            for r in self._query(sql + " ORDER BY id", params)
        ]

    def set_notification_status(self, notification_id: int, status: NotificationStatus) -> bool:
        cur = self._write(
            "UPDATE retention_notifications SET status = ? WHERE id = ?", (status.value, notification_id),
        )
        return cur.rowcount == 1

    def count_retention_due(self, end: datetime, department: str | None = None) -> int:
        sql = (
            "SELECT COUNT(*) FROM retention_notifications n WHERE n.status = ? "
            "AND n.scheduled_deletion <= ?"
        )
        params: list[Any] = [NotificationStatus.PENDING.value, to_db(end)]
        if department is not None:
            sql += (" AND n.message_id IN (SELECT m.id FROM messages m JOIN users u "
                    "ON u.id = m.sender_id WHERE u.department = ?)")
            params.append(department)
        return self._count(sql, params)

    # ------------------------------------------------------------------
    # Unmasking requests
    # ------------------------------------------------------------------

    def insert_unmasking_request(
        self,
        *,
        requester_id: int,
        target_message_id: int,
        request_type: str,
        legal_justification: str,
        urgency_level: UrgencyLevel,
        audit_trail: list[AuditEntry],
        expires_at: datetime,
        now: datetime,
    ) -> int:
        cur = self._write(
            "INSERT INTO unmasking_requests (requester_id, target_message_id, request_type, "
            "legal_justification, urgency_level, status, audit_trail, expires_at, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (requester_id, target_message_id, request_type, legal_justification, urgency_level.value,
             RequestStatus.PENDING.value, _dump_trail(audit_trail), to_db(expires_at), to_db(now)),
        )
        return cur.lastrowid

    def _request(self, r: sqlite3.Row) -> UnmaskingRequest:
        return UnmaskingRequest(
            id=r["id"],
            requester_id=r["requester_id"],
            target_message_id=r["target_message_id"],
            request_type=r["request_type"],
            legal_justification=r["legal_justification"],
            urgency_level=UrgencyLevel(r["urgency_level"]),
            status=RequestStatus(r["status"]),
            approved_by=r["approved_by"],
            rejected_reason=r["rejected_reason"],
            audit_trail=[AuditEntry.from_dict(e) for e in json.loads(r["audit_trail"])],
            expires_at=from_db(r["expires_at"]),
            created_at=from_db(r["created_at"]),
        )

    def get_unmasking_request(self, request_id: int) -> UnmaskingRequest | None:
        rows = self._query("SELECT * FROM unmasking_requests WHERE id = ?", (request_id,))
        return self._request(rows[0]) if rows else None

    def list_unmasking_requests(self, *, status: RequestStatus | None = None) -> list[UnmaskingRequest]:
        sql = "SELECT * FROM unmasking_requests"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status.value)
        return [self._request(r) for r in self._query(sql + " ORDER BY id", params)]

    def transition_unmasking_request(
        self,
        request_id: int,
        *,
        expected: RequestStatus,
        new_status: RequestStatus,
        audit_trail: list[AuditEntry],
        approved_by: int | None = None,
        rejected_reason: str | None = None,
    ) -> bool:
        """Compare-and-set on status; False if someone else moved it first."""
        cur = self._write(
            "UPDATE unmasking_requests SET status = ?, audit_trail = ?, "
            "approved_by = COALESCE(?, approved_by), rejected_reason = COALESCE(?, rejected_reason) "
            "WHERE id = ? AND status = ?",
            (new_status.value, _dump_trail(audit_trail), approved_by, rejected_reason,
             request_id, expected.value),
        )
        return cur.rowcount == 1

    def append_unmasking_audit(self, request_id: int, *, status: RequestStatus, entry: AuditEntry) -> bool:
        """Append one entry to the trail of a request still in status.

        The read and the write share one transaction, so concurrent appends
        are serialized and none is lost.
        """
        with self.transaction():
            rows = self._query(
                "SELECT audit_trail FROM unmasking_requests WHERE id = ? AND status = ?",
                (request_id, status.value),
            )
            if not rows:
                return False
            trail = [AuditEntry.from_dict(e) for e in json.loads(rows[0]["audit_trail"])]
            self._db.execute(
                "UPDATE unmasking_requests SET audit_trail = ? WHERE id = ?",
                (_dump_trail([*trail, entry]), request_id),
            )
        return True

    def count_unmasking_requests(self, start: datetime, end: datetime, department: str | None = None) -> int:
        extra, extra_params = _dept_clause("requester_id", department)
        return self._count(
            "SELECT COUNT(*) FROM unmasking_requests WHERE created_at >= ? AND created_at <= ?" + extra,
            [to_db(start), to_db(end), *extra_params],
        )

    # ------------------------------------------------------------------
    # Metrics (append-only)
    # ------------------------------------------------------------------

    def insert_metric(
        self,
        *,
        metric_type: str,
        metric_name: str,
        value: str,
        unit: str,
        timeframe: Timeframe,
        department: str | None,
        metadata: dict[str, Any],
        now: datetime,
    ) -> int:
        cur = self._write(
            "INSERT INTO compliance_metrics (metric_type, metric_name, value, unit, department, timeframe, "
            "recorded_at, metadata) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
            (metric_type, metric_name, value, unit, department, timeframe.value, to_db(now),
             json.dumps(metadata)),
        )
        return cur.lastrowid

    def list_metrics(self, metric_name: str | None = None) -> list[ComplianceMetric]:
        sql = "SELECT * FROM compliance_metrics"
        params: list[Any] = []
        if metric_name is not None:
            sql += " WHERE metric_name = ?"
            params.append(metric_name)
        return [
            ComplianceMetric(
                id=r["id"],
                metric_type=r["metric_type"],
                metric_name=r["metric_name"],
                value=r["value"],
                unit=r["unit"],
                department=r["department"],
                timeframe=Timeframe(r["timeframe"]),
                recorded_at=from_db(r["recorded_at"]),
                metadata=json.loads(r["metadata"]),
            )
            for r in self._query(sql + " ORDER BY id", params)
        ]


def _dump_trail(trail: list[AuditEntry]) -> str:
    return json.dumps([
        {"action": e.action, "timestamp": to_db(e.timestamp), "user_id": e.user_id, "details": e.details}
        for e in trail
    ])
