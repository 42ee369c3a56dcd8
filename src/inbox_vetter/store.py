"""SQLite store for users, settings, credentials, vetter state and reports."""

from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping

from inbox_vetter.config import normalize_settings
from inbox_vetter.constants import STALE_RUN_SECONDS, STORE_DB_PATH
from inbox_vetter.errors import AlreadyActive, UnknownUser
from inbox_vetter.models import (
    LogEntry,
    LogRing,
    ReportRecord,
    Subscription,
    UserRecord,
    UserSettings,
    VetterState,
    parse_timestamp,
    utcnow_iso,
)

_CREATE_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS users (
    email TEXT PRIMARY KEY,
    name TEXT,
    created_at TEXT
);

CREATE TABLE IF NOT EXISTS subscriptions (
    email TEXT PRIMARY KEY,
    plan TEXT,
    status TEXT,
    renews_at TEXT,
    FOREIGN KEY (email) REFERENCES users(email)
);

CREATE TABLE IF NOT EXISTS settings (
    email TEXT PRIMARY KEY,
    settings_json TEXT,
    FOREIGN KEY (email) REFERENCES users(email)
);

CREATE TABLE IF NOT EXISTS credentials (
    email TEXT PRIMARY KEY,
    token_json TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS vetter_state (
    email TEXT PRIMARY KEY,
    active INTEGER DEFAULT 0,
    last_run_at TEXT,
    last_report_id TEXT,
    next_run_at TEXT,
    logs_json TEXT DEFAULT '[]',
    FOREIGN KEY (email) REFERENCES users(email)
);

CREATE TABLE IF NOT EXISTS processed_messages (
    email TEXT,
    message_id TEXT,
    processed_at TEXT,
    PRIMARY KEY (email, message_id)
);

CREATE TABLE IF NOT EXISTS reports (
    id TEXT PRIMARY KEY,
    email TEXT,
    title TEXT,
    description TEXT,
    status TEXT,
    snippet TEXT,
    created_at TEXT,
    meta_json TEXT,
    FOREIGN KEY (email) REFERENCES users(email)
);
"""


class VetterStore:
    """Persistent SQLite store.

    Each state transition is one ``BEGIN IMMEDIATE`` transaction, so the
    ``active`` check-and-set in ``begin_run`` is atomic even when several
    processes share the database file.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self.db_path = db_path or STORE_DB_PATH
        self.db_path = Path(self.db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self.db_path), timeout=30)
        self._conn.row_factory = sqlite3.Row
        self._create_tables()

    def _create_tables(self) -> None:
        self._conn.executescript(_CREATE_TABLES_SQL)

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield self._conn
        except BaseException:
            self._conn.rollback()
            raise
        else:
            self._conn.commit()

    # --- users ---

    def upsert_user(self, email: str, name: str = "") -> UserRecord:
        email = email.strip().lower()
        with self._write() as conn:
            conn.execute(
                "INSERT INTO users (email, name, created_at) VALUES (?, ?, ?) "
                "ON CONFLICT(email) DO UPDATE SET name = COALESCE(NULLIF(excluded.name, ''), users.name)",
                (email, name, utcnow_iso()),
            )
            conn.execute(
                "INSERT OR IGNORE INTO subscriptions (email, plan, status, renews_at) VALUES (?, 'free', 'active', NULL)",
                (email,),
            )
            conn.execute("INSERT OR IGNORE INTO vetter_state (email) VALUES (?)", (email,))
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()
        return self._row_to_user(row)

    def _row_to_user(self, row: sqlite3.Row) -> UserRecord:
        return UserRecord(email=row["email"], name=row["name"] or "", created_at=row["created_at"])

    def get_user(self, email: str) -> UserRecord | None:
        row = self._conn.execute("SELECT * FROM users WHERE email = ?", (email.lower(),)).fetchone()
        if row is None:
            return None
        return self._row_to_user(row)

    def list_users(self) -> list[UserRecord]:
        rows = self._conn.execute("SELECT * FROM users ORDER BY email").fetchall()
        return [self._row_to_user(r) for r in rows]

    def _require_user(self, email: str) -> str:
        email = email.lower()
        if self.get_user(email) is None:
            raise UnknownUser(email)
        return email

    # --- subscriptions ---

    def get_subscription(self, email: str) -> Subscription | None:
        row = self._conn.execute("SELECT * FROM subscriptions WHERE email = ?", (email.lower(),)).fetchone()
        if row is None:
            return None
        return Subscription(plan=row["plan"] or "", status=row["status"] or "", renews_at=row["renews_at"])

    def update_subscription(
        self,
        email: str,
        plan: str | None = None,
        status: str | None = None,
        renews_at: str | None = None,
    ) -> Subscription:
        email = self._require_user(email)
        current = self.get_subscription(email) or Subscription()
        updated = Subscription(
            plan=plan if plan is not None else current.plan,
            status=status if status is not None else current.status,
            renews_at=renews_at if renews_at is not None else current.renews_at,
        )
        with self._write() as conn:
            conn.execute(
                "INSERT INTO subscriptions (email, plan, status, renews_at) VALUES (?, ?, ?, ?) "
                "ON CONFLICT(email) DO UPDATE SET plan = excluded.plan, status = excluded.status, "
                "renews_at = excluded.renews_at",
                (email, updated.plan, updated.status, updated.renews_at),
            )
        return updated

    # --- settings ---

    def _raw_settings(self, email: str) -> dict:
        row = self._conn.execute("SELECT settings_json FROM settings WHERE email = ?", (email,)).fetchone()
        return json.loads(row["settings_json"]) if row else {}

    def get_settings(self, email: str) -> UserSettings:
        return normalize_settings(self._raw_settings(email.lower()))

    def update_settings(self, email: str, updates: Mapping[str, Any]) -> UserSettings:
        email = self._require_user(email)
        allowed = set(UserSettings.__dataclass_fields__)
        unknown = set(updates) - allowed
        if unknown:
            raise ValueError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
        merged = {**self._raw_settings(email), **updates}
        normalized = normalize_settings(merged)
        stored = {k: v for k, v in asdict(normalized).items() if v not in (None, "")}
        with self._write() as conn:
            conn.execute(
                "INSERT INTO settings (email, settings_json) VALUES (?, ?) "
                "ON CONFLICT(email) DO UPDATE SET settings_json = excluded.settings_json",
                (email, json.dumps(stored)),
            )
        return normalized

    # --- credentials ---

    def load_credentials(self, email: str) -> dict | None:
        row = self._conn.execute("SELECT token_json FROM credentials WHERE email = ?", (email.lower(),)).fetchone()
        return json.loads(row["token_json"]) if row else None

    def save_credentials(self, email: str, token_json: str) -> None:
        with self._write() as conn:
            conn.execute(
                "INSERT INTO credentials (email, token_json, updated_at) VALUES (?, ?, ?) "
                "ON CONFLICT(email) DO UPDATE SET token_json = excluded.token_json, updated_at = excluded.updated_at",
                (email.lower(), token_json, utcnow_iso()),
            )

    def clear_credentials(self, email: str) -> bool:
        with self._write() as conn:
            cursor = conn.execute("DELETE FROM credentials WHERE email = ?", (email.lower(),))
        return cursor.rowcount > 0

    def has_credentials(self, email: str) -> bool:
        token = self.load_credentials(email)
        return bool(token and token.get("refresh_token"))

    # --- vetter state ---

    def get_processed_ids(self, email: str) -> frozenset[str]:
        rows = self._conn.execute(
            "SELECT message_id FROM processed_messages WHERE email = ?", (email.lower(),)
        ).fetchall()
        return frozenset(r["message_id"] for r in rows)

    def get_state(self, email: str) -> VetterState:
        email = email.lower()
        row = self._conn.execute("SELECT * FROM vetter_state WHERE email = ?", (email,)).fetchone()
        if row is None:
            return VetterState()
        return VetterState(
            active=bool(row["active"]),
            last_run_at=row["last_run_at"],
            last_report_id=row["last_report_id"],
            next_run_at=row["next_run_at"],
            processed_message_ids=self.get_processed_ids(email),
            logs=LogRing.from_list(json.loads(row["logs_json"] or "[]")),
        )

    def _append_logs(self, conn: sqlite3.Connection, email: str, entries: Iterable[LogEntry]) -> None:
        row = conn.execute("SELECT logs_json FROM vetter_state WHERE email = ?", (email,)).fetchone()
        ring = LogRing.from_list(json.loads(row["logs_json"] or "[]")) if row else LogRing()
        ring.extend(entries)
        conn.execute("UPDATE vetter_state SET logs_json = ? WHERE email = ?", (json.dumps(ring.to_list()), email))

    def begin_run(self, email: str, message: str = "Starting inbox review.") -> VetterState:
        """Mark a run active. Raises ``AlreadyActive`` if one already is."""
        email = self._require_user(email)
        with self._write() as conn:
            conn.execute("INSERT OR IGNORE INTO vetter_state (email) VALUES (?)", (email,))
            row = conn.execute("SELECT active FROM vetter_state WHERE email = ?", (email,)).fetchone()
            if row["active"]:
                conflict = True
            else:
                conflict = False
                conn.execute(
                    "UPDATE vetter_state SET active = 1, last_run_at = ? WHERE email = ?",
                    (utcnow_iso(), email),
                )
                self._append_logs(conn, email, [LogEntry.create(message)])
        if conflict:
            raise AlreadyActive(email, self.get_state(email))
        return self.get_state(email)

    def finalize_run(
        self,
        email: str,
        report: ReportRecord,
        processed_ids: Iterable[str],
        logs: Iterable[LogEntry],
        next_run_at: str | None = None,
    ) -> VetterState:
        """Clear ``active``, store the report and grow the dedup set."""
        email = email.lower()
        now = utcnow_iso()
        with self._write() as conn:
            conn.execute(
                "INSERT INTO reports (id, email, title, description, status, snippet, created_at, meta_json) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    report.id,
                    email,
                    report.title,
                    report.description,
                    report.status,
                    report.snippet,
                    report.created_at,
                    json.dumps(report.meta),
                ),
            )
            conn.executemany(
                "INSERT OR IGNORE INTO processed_messages (email, message_id, processed_at) VALUES (?, ?, ?)",
                [(email, message_id, now) for message_id in processed_ids],
            )
            conn.execute(
                "UPDATE vetter_state SET active = 0, last_report_id = ?, last_run_at = ?, next_run_at = ? "
                "WHERE email = ?",
                (report.id, report.created_at, next_run_at, email),
            )
            self._append_logs(conn, email, logs)
        return self.get_state(email)

    def fail_run(self, email: str, error_message: str, logs: Iterable[LogEntry] = ()) -> VetterState:
        email = email.lower()
        with self._write() as conn:
            conn.execute("UPDATE vetter_state SET active = 0 WHERE email = ?", (email,))
            self._append_logs(conn, email, [*logs, LogEntry.create(f"Run failed: {error_message}", "error")])
        return self.get_state(email)

    def clear_stale_runs(self, older_than: timedelta = timedelta(seconds=STALE_RUN_SECONDS)) -> list[str]:
        """Reset ``active`` flags left behind by a process that died mid-run."""
        cutoff = datetime.now(timezone.utc) - older_than
        rows = self._conn.execute("SELECT email, last_run_at FROM vetter_state WHERE active = 1").fetchall()
        stale = []
        for row in rows:
            started = row["last_run_at"]
            if started is None or parse_timestamp(started) < cutoff:
                stale.append(row["email"])
        if not stale:
            return []
        with self._write() as conn:
            for email in stale:
                conn.execute("UPDATE vetter_state SET active = 0 WHERE email = ?", (email,))
                self._append_logs(conn, email, [LogEntry.create("Cleared a stale active run.", "warning")])
        return stale

    # --- reports ---

    def _row_to_report(self, row: sqlite3.Row) -> ReportRecord:
        return ReportRecord(
            id=row["id"],
            email=row["email"],
            title=row["title"],
            description=row["description"],
            status=row["status"],
            snippet=row["snippet"],
            created_at=row["created_at"],
            meta=json.loads(row["meta_json"] or "{}"),
        )

    def list_reports(self, email: str, limit: int | None = None) -> list[ReportRecord]:
        """Reports for a user, newest first."""
        sql = "SELECT * FROM reports WHERE email = ? ORDER BY created_at DESC, rowid DESC"
        params: tuple = (email.lower(),)
        if limit is not None:
            sql += " LIMIT ?"
            params += (limit,)
        return [self._row_to_report(r) for r in self._conn.execute(sql, params).fetchall()]

    def get_report(self, email: str, report_id: str) -> ReportRecord | None:
        row = self._conn.execute(
            "SELECT * FROM reports WHERE email = ? AND id = ?", (email.lower(), report_id)
        ).fetchone()
        return self._row_to_report(row) if row else None

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # --- context manager ---

    def __enter__(self) -> VetterStore:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # noqa: ANN001
        self.close()
