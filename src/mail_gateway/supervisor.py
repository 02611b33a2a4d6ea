# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Listener lifecycle supervisor with hot reload and crash-only recovery.

The supervisor runs one cycle after another until it is cancelled:

    STARTING    refresh the settings, validate them (problems are audited,
                never fatal) and start a listener built from the snapshot.
    RUNNING     poll ``RestartRequested`` every ``poll_interval`` seconds
                while the listener task runs.
    DRAINING    stop the listener and wait for its serve task to finish.
    RESTARTING  loop back to STARTING.

A stored ``RestartRequested`` strictly later than the last one observed
triggers exactly one restart. A listener task that ends on its own counts as
a crash. Any unexpected exception is audited and followed by
``restart_backoff`` seconds of sleep before the next cycle. Cancellation
(``stop``) drains the listener and ends in STOPPED.
"""

from __future__ import annotations

import asyncio
import contextlib
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .audit import AuditLog
from .errors import ListenerStopped
from .logger import get_logger
from .models import CatchAllType, ServerSettings
from .prometheus import GatewayMetrics
from .settings_cache import SettingsCache

DEFAULT_POLL_INTERVAL = 5.0
DEFAULT_RESTART_BACKOFF = 5.0
SOURCE = "ReloadSupervisor"


class SupervisorState(str, Enum):
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"
    RESTARTING = "restarting"
    STOPPED = "stopped"


class Listener(Protocol):
    async def serve(self) -> None: ...

    async def stop(self) -> None: ...


def validate_settings(settings: ServerSettings) -> list[str]:
    """Return the configuration problems found in ``settings``."""
    problems: list[str] = []
    if not settings.server_name:
        problems.append("ServerName is not set")
    if settings.enable_spam_filtering:
        if not settings.relay_configured:
            problems.append("Spam filtering is enabled but no relay credentials are configured")
        if not settings.spamhaus_key:
            problems.append("Spam filtering is enabled but SpamhausKey is not set")
    if not settings.domains and not settings.server_name_as_domain:
        problems.append("No domains are configured")
    for domain in settings.domains:
        if domain.catch_all.type is CatchAllType.NONE and not domain.forwarding_rules:
            problems.append(f"Domain {domain.domain_name} has no catch-all and no forwarding rules")
    return problems


class ReloadSupervisor:
    """Own the SMTP listener and recycle it on request or crash."""

    def __init__(
        self,
        cache: SettingsCache,
        listener_factory: Callable[[ServerSettings], Listener],
        *,
        audit: Optional[AuditLog] = None,
        metrics: Optional[GatewayMetrics] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        restart_backoff: float = DEFAULT_RESTART_BACKOFF,
        logger=None,
    ):
        self.cache = cache
        self.listener_factory = listener_factory
        self.audit = audit or AuditLog(None)
        self.metrics = metrics
        self.poll_interval = poll_interval
        self.restart_backoff = restart_backoff
        self.logger = logger or get_logger("ReloadSupervisor")

        self.state = SupervisorState.STOPPED
        self.marker: Optional[datetime] = None
        self._seeded = False
        self.restarts = 0
        self.crashes = 0
        self.listener: Optional[Listener] = None
        self._task: Optional[asyncio.Task] = None
        self._running = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def status(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "marker": self.marker.isoformat() if self.marker else None,
            "restarts": self.restarts,
            "crashes": self.crashes,
        }

    async def start(self) -> None:
        """Start the supervisor loop in the background."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self.run(), name="reload-supervisor")

    async def wait_running(self) -> None:
        """Wait until a listener has been started at least once."""
        await self._running.wait()

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Cancel the loop and wait (up to ``timeout``) for it to exit."""
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
            await asyncio.wait_for(task, timeout=timeout)

    async def run(self) -> None:
        """Run listener cycles until cancelled."""
        try:
            while True:
                try:
                    await self._run_cycle()
                except asyncio.CancelledError:
                    raise
                except Exception as exc:
                    self.crashes += 1
                    await self.audit.error(
                        f"Listener cycle failed; restarting in {self.restart_backoff:g}s", error=exc, source=SOURCE
                    )
                    if self.metrics is not None:
                        self.metrics.inc_restart("crash")
                    self.state = SupervisorState.RESTARTING
                    await asyncio.sleep(self.restart_backoff)
        finally:
            self.state = SupervisorState.STOPPED
            self.logger.info("Supervisor stopped")

    async def _run_cycle(self) -> None:
        self.state = SupervisorState.STARTING
        settings = await self.cache.refresh()
        for problem in validate_settings(settings):
            await self.audit.error(f"Configuration problem: {problem}", source=SOURCE)

        listener = self.listener_factory(settings)
        self.listener = listener
        listener_task = asyncio.create_task(listener.serve(), name="smtp-listener")
        try:
            self.state = SupervisorState.RUNNING
            self._running.set()
            await self.audit.info(
                f"SMTP listener started for {settings.server_name} on port(s) "
                f"{', '.join(str(p) for p in settings.server_ports)}",
                source=SOURCE,
            )
            await self.seed_marker()
            while True:
                done, _ = await asyncio.wait({listener_task}, timeout=self.poll_interval)
                if listener_task in done:
                    if listener_task.cancelled():
                        raise ListenerStopped("SMTP listener task was cancelled")
                    exc = listener_task.exception()
                    if exc is not None:
                        raise ListenerStopped(f"SMTP listener failed: {exc}") from exc
                    raise ListenerStopped()
                if await self._restart_requested():
                    self.state = SupervisorState.DRAINING
                    self.restarts += 1
                    if self.metrics is not None:
                        self.metrics.inc_restart("signal")
                    await self.audit.info("Restart requested; recycling the SMTP listener", source=SOURCE)
                    break
        finally:
            await self._drain(listener, listener_task)
            self.listener = None
        self.state = SupervisorState.RESTARTING

    async def _restart_requested(self) -> bool:
        """Compare the stored marker with the last observed one."""
        try:
            stored = await self.cache.restart_marker()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self.audit.warning("Failed to read RestartRequested", error=exc, source=SOURCE)
            return False

        if not self._seeded:
            self.marker = stored
            self._seeded = True
            return False
        if stored is not None and (self.marker is None or stored > self.marker):
            self.marker = stored
            return True
        return False

    async def seed_marker(self) -> None:
        """Seed the marker from the store before the first poll."""
        if not self._seeded:
            await self._restart_requested()

    async def _drain(self, listener: Listener, listener_task: asyncio.Task) -> None:
        if self.state is not SupervisorState.DRAINING:
            self.state = SupervisorState.DRAINING
        try:
            await listener.stop()
        except asyncio.CancelledError:
            raise
        except Exception:
            self.logger.exception("Error while stopping the SMTP listener")
        if listener_task.done():
            if not listener_task.cancelled() and listener_task.exception() is not None:
                self.logger.debug("Listener task had failed: %s", listener_task.exception())
            return
        try:
            await listener_task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
        except Exception:
            self.logger.exception("SMTP listener failed while draining")
