# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Append-only audit log of lifecycle and delivery events.

``AuditLog.record`` is best effort: a failing write is reported through the
Python logger and never raised to the caller. Every entry is also mirrored
to the Python logger at the same level.

``AuditLog.spam`` appends to the spam log with the same best-effort contract.
"""

from __future__ import annotations

import asyncio
import logging
import traceback
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from .logger import get_logger
from .message import InboundMessage
from .persistence import SettingsStore


class AuditLevel(str, Enum):
    """Severity of an audit entry."""

    INFO = "Info"
    WARNING = "Warning"
    ERROR = "Error"


_LOG_LEVELS = {
    AuditLevel.INFO: logging.INFO,
    AuditLevel.WARNING: logging.WARNING,
    AuditLevel.ERROR: logging.ERROR,
}


def coerce_level(level: AuditLevel | str) -> AuditLevel:
    """Map a level name to ``AuditLevel`` ignoring case; unknown names become WARNING."""
    if isinstance(level, AuditLevel):
        return level
    name = str(level).strip().lower()
    for member in AuditLevel:
        if member.value.lower() == name or member.name.lower() == name:
            return member
    return AuditLevel.WARNING


def format_error(error: BaseException | str | None) -> str | None:
    """Render an exception (with traceback) or a detail string."""
    if error is None:
        return None
    if isinstance(error, BaseException):
        return "".join(traceback.format_exception(type(error), error, error.__traceback__)).strip()
    return str(error)


class AuditLog:
    """Audit sink backed by the ``server_logs`` table."""

    def __init__(self, store: SettingsStore | None, logger: logging.Logger | None = None):
        self._store = store
        self.logger = logger or get_logger("Audit")

    async def record(
        self,
        level: AuditLevel | str,
        message: str,
        error: BaseException | str | None = None,
        source: str | None = None,
    ) -> None:
        """Append an entry. Never raises except on cancellation."""
        level = coerce_level(level)
        detail = format_error(error)
        prefix = f"[{source}] " if source else ""
        if detail and isinstance(error, BaseException):
            self.logger.log(_LOG_LEVELS[level], "%s%s: %s", prefix, message, error)
        else:
            self.logger.log(_LOG_LEVELS[level], "%s%s", prefix, message)

        if self._store is None:
            return
        timestamp = datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        try:
            await self._store.add_log(timestamp, level.value, message, detail, source)
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Failed to write audit entry to the store")

    async def info(self, message: str, source: str | None = None) -> None:
        await self.record(AuditLevel.INFO, message, source=source)

    async def warning(self, message: str, error: BaseException | str | None = None, source: str | None = None) -> None:
        await self.record(AuditLevel.WARNING, message, error=error, source=source)

    async def error(self, message: str, error: BaseException | str | None = None, source: str | None = None) -> None:
        await self.record(AuditLevel.ERROR, message, error=error, source=source)

    async def spam(self, message: InboundMessage, check_name: str, blob_path: str | None = None) -> None:
        """Record a message refused by an inbound check in the spam log. Never raises except on cancellation."""
        self.logger.warning(
            "Message %s from %s refused by %s check", message.transaction_id, message.sender or "<>", check_name
        )
        if self._store is None:
            return
        try:
            await self._store.add_spam_log(
                message.received_at,
                session_id=message.session_id,
                transaction_id=message.transaction_id,
                sender=message.sender,
                recipients=", ".join(message.recipients),
                subject=message.parse().subject,
                blob_path=blob_path,
                ip=message.peer_ip,
                check_name=check_name,
            )
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Failed to write spam log entry to the store")

    async def recent(self, limit: int = 100, level: str | None = None) -> list[dict[str, Any]]:
        """Return the newest entries (empty when no store is attached)."""
        if self._store is None:
            return []
        return await self._store.list_logs(limit=limit, level=level)

    async def recent_spam(self, limit: int = 100, day: str | None = None) -> list[dict[str, Any]]:
        """Return the newest spam entries (empty when no store is attached)."""
        if self._store is None:
            return []
        return await self._store.list_spam_logs(limit=limit, day=day)
