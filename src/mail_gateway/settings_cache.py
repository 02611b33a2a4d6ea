# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Time-bounded cache of the gateway settings snapshot.

The cache owns the only shared mutable state of the delivery path: the
current ``ServerSettings`` snapshot. Refreshes are single-flight: at most
one store load runs at a time. The caller that triggers a refresh waits for
it; callers arriving meanwhile get the previous snapshot, or join the same
load when no snapshot exists yet.

Store failures never reach the callers: the last good snapshot (or a
defaults-only snapshot) is returned and a warning is audited.
"""

from __future__ import annotations

import asyncio
import time
from datetime import datetime
from typing import Callable

from .audit import AuditLog
from .logger import get_logger
from .models import FIELD_DEFAULTS, SETTINGS_ID, SETTINGS_SCOPE, ServerSettings
from .persistence import SettingsStore

DEFAULT_REFRESH_INTERVAL = 60.0
SOURCE = "SettingsCache"


class SettingsCache:
    """Load, self-heal and cache the ``(SmtpServer, Current)`` record."""

    def __init__(
        self,
        store: SettingsStore,
        *,
        audit: AuditLog | None = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
        logger=None,
    ):
        self._store = store
        self._audit = audit or AuditLog(None)
        self._refresh_interval = max(0.0, float(refresh_interval))
        self._clock = clock
        self.logger = logger or get_logger("SettingsCache")
        self._snapshot: ServerSettings | None = None
        self._loaded_at: float | None = None
        self._inflight: asyncio.Task[ServerSettings] | None = None
        self._inflight_generation = 0
        self._generation = 0
        self.loads = 0

    @property
    def snapshot(self) -> ServerSettings | None:
        """The current cached snapshot, without triggering a refresh."""
        return self._snapshot

    def is_stale(self, now: float | None = None) -> bool:
        """True when no snapshot is cached or it is older than the interval."""
        if self._snapshot is None or self._loaded_at is None:
            return True
        now = self._clock() if now is None else now
        return (now - self._loaded_at) >= self._refresh_interval

    async def get(self, now: float | None = None) -> ServerSettings:
        """Return the cached snapshot, refreshing it when stale."""
        if not self.is_stale(now):
            return self._snapshot  # type: ignore[return-value]
        if self._inflight is not None and not self._inflight.done():
            if self._snapshot is not None:
                return self._snapshot
            return await asyncio.shield(self._inflight)
        return await self._start_refresh(now)

    async def refresh(self) -> ServerSettings:
        """Force a load from the store (joining one already in flight).

        A load that started before the last ``invalidate`` is not joined:
        it is awaited and a new one is started.
        """
        if self._inflight is not None and not self._inflight.done():
            if self._inflight_generation == self._generation:
                return await asyncio.shield(self._inflight)
            await asyncio.shield(self._inflight)
            if self._inflight is not None and not self._inflight.done():
                return await asyncio.shield(self._inflight)
        return await self._start_refresh(None)

    def invalidate(self) -> None:
        """Mark the snapshot stale so the next ``get`` reloads it.

        A load already in flight still publishes its snapshot but leaves it
        stale, since it may have read the record before the change.
        """
        self._generation += 1
        self._loaded_at = None

    async def restart_marker(self) -> datetime | None:
        """Read ``RestartRequested`` straight from the store.

        Raises the store error: the supervisor decides how to handle it.
        """
        return await self._store.get_restart_requested()

    async def _start_refresh(self, now: float | None) -> ServerSettings:
        self._inflight_generation = self._generation
        self._inflight = asyncio.create_task(self._load(now, self._generation), name="settings-refresh")
        return await asyncio.shield(self._inflight)

    async def _load(self, now: float | None, generation: int) -> ServerSettings:
        self.loads += 1
        try:
            record = await self._store.get_entity(SETTINGS_SCOPE, SETTINGS_ID)
        except Exception as exc:
            return await self._fallback(exc, now, generation)

        record = dict(record or {})
        missing = {key: value for key, value in FIELD_DEFAULTS.items() if key not in record}
        if missing:
            record.update(missing)
            try:
                await self._store.upsert_entity(SETTINGS_SCOPE, SETTINGS_ID, missing)
            except Exception as exc:
                await self._audit.warning(
                    "Failed to write default settings back to the store; using in-memory defaults",
                    error=exc,
                    source=SOURCE,
                )
            else:
                await self._audit.info(
                    f"Initialized missing settings fields with defaults: {', '.join(sorted(missing))}",
                    source=SOURCE,
                )

        settings = ServerSettings.from_record(record)
        for warning in settings.config_warnings:
            await self._audit.warning(warning, source=SOURCE)

        self._snapshot = settings
        self._stamp(now, generation)
        self.logger.debug("Settings loaded (domains=%d)", len(settings.domains))
        return settings

    def _stamp(self, now: float | None, generation: int) -> None:
        if generation != self._generation:
            return
        self._loaded_at = self._clock() if now is None else now

    async def _fallback(self, exc: Exception, now: float | None, generation: int) -> ServerSettings:
        """Keep serving after a store failure."""
        if self._snapshot is not None:
            await self._audit.warning(
                "Failed to refresh settings from the store; keeping the last good snapshot",
                error=exc,
                source=SOURCE,
            )
        else:
            await self._audit.warning(
                "Failed to load settings from the store; using defaults",
                error=exc,
                source=SOURCE,
            )
            self._snapshot = ServerSettings.defaults()
        # Retry only after another interval, not on every call.
        self._stamp(now, generation)
        return self._snapshot
