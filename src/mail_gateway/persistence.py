# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SQLite backed persistence used by the mail gateway.

Two tables:
    - ``entities``: key-value entity store addressed by ``(scope, id)``;
      each row carries a JSON object of fields. The gateway settings live in
      the ``(SmtpServer, Current)`` row.
    - ``server_logs``: append-only audit log written by ``AuditLog``.
    - ``spam_logs``: messages refused by an inbound check, keyed by day and
      time of refusal.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

import aiosqlite

from .models import SETTINGS_ID, SETTINGS_SCOPE, format_timestamp, parse_timestamp

RESTART_FIELD = "RestartRequested"


class SettingsStore:
    """Helper class responsible for reading and writing gateway state."""

    def __init__(self, db_path: str = "/data/mail_gateway.db"):
        """Persist data to the given database path (``:memory:`` allowed)."""
        self.db_path = db_path or ":memory:"

    async def init_db(self) -> None:
        """Create the database schema if missing."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS entities (
                    scope TEXT NOT NULL,
                    id TEXT NOT NULL,
                    data TEXT NOT NULL,
                    updated_at TEXT DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (scope, id)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS server_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    level TEXT NOT NULL,
                    message TEXT NOT NULL,
                    exception TEXT,
                    source TEXT
                )
                """
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_server_logs_ts ON server_logs(timestamp)")
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS spam_logs (
                    day TEXT NOT NULL,
                    row_key TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    session_id TEXT,
                    transaction_id TEXT,
                    sender TEXT,
                    recipients TEXT,
                    subject TEXT,
                    blob_path TEXT,
                    ip TEXT,
                    check_name TEXT,
                    PRIMARY KEY (day, row_key)
                )
                """
            )
            await db.commit()

    # Entities -----------------------------------------------------------------
    async def get_entity(self, scope: str, entity_id: str) -> dict[str, Any] | None:
        """Return the fields of an entity or ``None`` when it does not exist."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT data FROM entities WHERE scope = ? AND id = ?", (scope, entity_id)
            ) as cur:
                row = await cur.fetchone()
        if row is None:
            return None
        data = json.loads(row[0])
        return data if isinstance(data, dict) else {}

    async def upsert_entity(self, scope: str, entity_id: str, fields: dict[str, Any], *, merge: bool = True) -> dict[str, Any]:
        """Insert an entity or update it.

        With ``merge`` the given fields are layered over the stored ones
        (other fields are kept); without it the row is replaced.

        Returns:
            The stored field set after the write.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            current: dict[str, Any] = {}
            if merge:
                async with db.execute(
                    "SELECT data FROM entities WHERE scope = ? AND id = ?", (scope, entity_id)
                ) as cur:
                    row = await cur.fetchone()
                if row is not None:
                    loaded = json.loads(row[0])
                    current = loaded if isinstance(loaded, dict) else {}
            current.update(fields)
            await db.execute(
                """
                INSERT INTO entities (scope, id, data, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(scope, id) DO UPDATE SET data = excluded.data, updated_at = CURRENT_TIMESTAMP
                """,
                (scope, entity_id, json.dumps(current)),
            )
            await db.commit()
        return current

    async def delete_entity(self, scope: str, entity_id: str) -> bool:
        """Remove an entity, returning ``True`` when a row was deleted."""
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM entities WHERE scope = ? AND id = ?", (scope, entity_id))
            await db.commit()
            return cur.rowcount > 0

    # Settings helpers -----------------------------------------------------------
    async def get_settings_record(self) -> dict[str, Any] | None:
        """Return the raw gateway settings record."""
        return await self.get_entity(SETTINGS_SCOPE, SETTINGS_ID)

    async def update_settings(self, fields: dict[str, Any]) -> dict[str, Any]:
        """Merge the given fields into the gateway settings record."""
        return await self.upsert_entity(SETTINGS_SCOPE, SETTINGS_ID, fields)

    async def get_restart_requested(self) -> datetime | None:
        """Return the stored ``RestartRequested`` timestamp."""
        record = await self.get_settings_record()
        if not record:
            return None
        return parse_timestamp(record.get(RESTART_FIELD))

    async def request_restart(self) -> datetime:
        """Advance ``RestartRequested`` using the database clock.

        The new value is strictly greater than the stored one even when two
        requests land within the same millisecond.
        """
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("BEGIN IMMEDIATE")
            async with db.execute("SELECT strftime('%Y-%m-%dT%H:%M:%fZ', 'now')") as cur:
                (db_now,) = await cur.fetchone()
            async with db.execute(
                "SELECT data FROM entities WHERE scope = ? AND id = ?", (SETTINGS_SCOPE, SETTINGS_ID)
            ) as cur:
                row = await cur.fetchone()
            current: dict[str, Any] = {}
            if row is not None:
                loaded = json.loads(row[0])
                current = loaded if isinstance(loaded, dict) else {}

            requested = parse_timestamp(db_now)
            try:
                previous = parse_timestamp(current.get(RESTART_FIELD))
            except ValueError:
                previous = None
            if previous is not None and requested <= previous:
                requested = previous + timedelta(milliseconds=1)

            current[RESTART_FIELD] = format_timestamp(requested)
            await db.execute(
                """
                INSERT INTO entities (scope, id, data, updated_at)
                VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                ON CONFLICT(scope, id) DO UPDATE SET data = excluded.data, updated_at = CURRENT_TIMESTAMP
                """,
                (SETTINGS_SCOPE, SETTINGS_ID, json.dumps(current)),
            )
            await db.commit()
        return requested

    # Audit log ----------------------------------------------------------------
    async def add_log(
        self,
        timestamp: str,
        level: str,
        message: str,
        exception: str | None = None,
        source: str | None = None,
    ) -> None:
        """Append one audit entry."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                "INSERT INTO server_logs (timestamp, level, message, exception, source) VALUES (?, ?, ?, ?, ?)",
                (timestamp, level, message, exception, source),
            )
            await db.commit()

    async def list_logs(self, limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
        """Return audit entries, newest first."""
        query = "SELECT id, timestamp, level, message, exception, source FROM server_logs"
        params: list[Any] = []
        if level:
            query += " WHERE level = ?"
            params.append(level)
        query += " ORDER BY id DESC LIMIT ?"
        params.append(max(1, int(limit)))
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [dict(row) for row in rows]

    # Spam log -----------------------------------------------------------------
    async def add_spam_log(
        self,
        timestamp: datetime,
        *,
        session_id: str | None = None,
        transaction_id: str | None = None,
        sender: str | None = None,
        recipients: str | None = None,
        subject: str | None = None,
        blob_path: str | None = None,
        ip: str | None = None,
        check_name: str | None = None,
    ) -> dict[str, Any]:
        """Append one spam entry keyed by ``(yyyy-MM-dd, HHmmss.fff_<uuid>)``."""
        timestamp = timestamp.astimezone(timezone.utc)
        day = timestamp.strftime("%Y-%m-%d")
        row_key = f"{timestamp.strftime('%H%M%S')}.{timestamp.microsecond // 1000:03d}_{uuid.uuid4().hex}"
        entry = {
            "day": day,
            "row_key": row_key,
            "timestamp": format_timestamp(timestamp),
            "session_id": session_id,
            "transaction_id": transaction_id,
            "sender": sender,
            "recipients": recipients,
            "subject": subject,
            "blob_path": blob_path,
            "ip": ip,
            "check_name": check_name,
        }
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT INTO spam_logs (day, row_key, timestamp, session_id, transaction_id, sender,
                                       recipients, subject, blob_path, ip, check_name)
                VALUES (:day, :row_key, :timestamp, :session_id, :transaction_id, :sender,
                        :recipients, :subject, :blob_path, :ip, :check_name)
                """,
                entry,
            )
            await db.commit()
        return entry

    async def list_spam_logs(self, limit: int = 100, day: str | None = None) -> list[dict[str, Any]]:
        """Return spam entries, newest first, optionally for one ``yyyy-MM-dd`` day."""
        query = (
            "SELECT day, row_key, timestamp, session_id, transaction_id, sender, recipients,"
            " subject, blob_path, ip, check_name FROM spam_logs"
        )
        params: list[Any] = []
        if day:
            query += " WHERE day = ?"
            params.append(day)
        query += " ORDER BY day DESC, row_key DESC LIMIT ?"
        params.append(max(1, int(limit)))
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
        return [dict(row) for row in rows]
