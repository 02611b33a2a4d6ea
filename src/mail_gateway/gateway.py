# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Mail gateway service wiring.

``MailGateway`` owns every long-lived part of the process:

    - the settings store, audit log and settings cache;
    - the bounded delivery queue and its worker tasks, which survive
      listener restarts;
    - the delivery dispatcher with its archive and relay collaborators;
    - the reload supervisor running the SMTP listener.

Example:
    Running the gateway without the HTTP API::

        gateway = MailGateway(GatewayConfig(db_path="/tmp/gateway.db"))
        await gateway.start()
        ...
        await gateway.stop()
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from genro_storage import AsyncStorageManager

from .archive import StorageArchive
from .audit import AuditLog
from .checks import CheckRunner, InboundCheck
from .config import GatewayConfig
from .dispatcher import DeliveryDispatcher, DeliveryOutcome
from .listener import GatewayHandler, SmtpListener
from .logger import get_logger
from .message import InboundMessage
from .models import ServerSettings
from .persistence import SettingsStore
from .prometheus import GatewayMetrics
from .relay import Relay, relay_from_settings
from .settings_cache import SettingsCache
from .supervisor import Listener, ReloadSupervisor

SOURCE = "MailGateway"


def build_storage_archive(config: GatewayConfig) -> StorageArchive:
    """Mount the archive volume described by ``config.archive``."""
    storage = AsyncStorageManager()
    storage.configure([
        {"name": config.archive.volume, "type": config.archive.type, "path": config.archive.path}
    ])
    return StorageArchive(storage, volume=config.archive.volume, prefix=config.archive.prefix)


class MailGateway:
    """Inbound SMTP gateway: listener, delivery queue and workers."""

    def __init__(
        self,
        config: Optional[GatewayConfig] = None,
        *,
        store: Optional[SettingsStore] = None,
        archive: Optional[StorageArchive] = None,
        relay_factory: Callable[[ServerSettings], Optional[Relay]] = relay_from_settings,
        checks: Iterable[InboundCheck] = (),
        metrics: Optional[GatewayMetrics] = None,
        listener_factory: Optional[Callable[[ServerSettings], Listener]] = None,
        logger=None,
    ):
        self.config = config or GatewayConfig()
        self.logger = logger or get_logger()
        self.store = store or SettingsStore(self.config.db_path)
        self.audit = AuditLog(self.store)
        self.metrics = metrics or GatewayMetrics()
        self.cache = SettingsCache(
            self.store,
            audit=self.audit,
            refresh_interval=self.config.timing.settings_refresh_interval,
        )
        self.archive = archive if archive is not None else build_storage_archive(self.config)
        self.dispatcher = DeliveryDispatcher(
            self.archive,
            relay_factory=relay_factory,
            audit=self.audit,
            metrics=self.metrics,
        )
        self.checks = CheckRunner(checks)
        self.queue: asyncio.Queue[InboundMessage] = asyncio.Queue(maxsize=max(1, self.config.queue.size))
        self.supervisor = ReloadSupervisor(
            self.cache,
            listener_factory or self.build_listener,
            audit=self.audit,
            metrics=self.metrics,
            poll_interval=self.config.timing.poll_interval,
            restart_backoff=self.config.timing.restart_backoff,
        )
        self._workers: list[asyncio.Task] = []
        self.delivered = 0

    def build_listener(self, settings: ServerSettings) -> SmtpListener:
        """Build an SMTP listener for a settings snapshot."""
        handler = GatewayHandler(
            self.cache,
            self.queue,
            self.checks,
            put_timeout=self.config.queue.put_timeout,
            metrics=self.metrics,
            audit=self.audit,
        )
        return SmtpListener(
            handler,
            ports=settings.server_ports,
            host=self.config.listener.host,
            hostname=settings.server_name or None,
            data_size_limit=self.config.listener.data_size_limit,
            session_timeout=self.config.listener.session_timeout,
        )

    async def init(self) -> None:
        """Create the schema and the archive container."""
        await self.store.init_db()
        try:
            await self.archive.ensure_container()
        except Exception as exc:
            await self.audit.warning("Could not ensure the archive container exists", error=exc, source=SOURCE)

    async def start(self) -> None:
        """Initialize storage, start the delivery workers and the supervisor."""
        self.logger.debug("Starting MailGateway...")
        await self.init()
        workers = max(1, self.config.queue.workers)
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"delivery-worker-{i}") for i in range(workers)
        ]
        await self.supervisor.start()
        await self.audit.info(f"Mail gateway started with {workers} delivery worker(s)", source=SOURCE)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop the listener, drain the queue within ``timeout``, stop the workers."""
        timeout = self.config.timing.shutdown_timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        await self.supervisor.stop(timeout=timeout)

        remaining = max(0.0, deadline - loop.time())
        if self._workers and not self.queue.empty():
            self.logger.info("Waiting for %d queued message(s) to be delivered", self.queue.qsize())
            try:
                await asyncio.wait_for(self.queue.join(), timeout=remaining)
            except asyncio.TimeoutError:
                self.logger.warning("Shutdown timeout reached with %d message(s) still queued", self.queue.qsize())

        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        await self.audit.info("Mail gateway stopped", source=SOURCE)

    async def deliver(self, message: InboundMessage) -> list[DeliveryOutcome]:
        """Dispatch one message against the current settings snapshot."""
        settings = await self.cache.get()
        return await self.dispatcher.dispatch(message, settings)

    async def _worker_loop(self) -> None:
        while True:
            message = await self.queue.get()
            try:
                outcomes = await self.deliver(message)
                self.delivered += 1
                self.logger.debug(
                    "Message %s: %s",
                    message.transaction_id,
                    ", ".join(f"{o.recipient}={o.status}" for o in outcomes),
                )
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self.audit.error(
                    f"Unhandled error delivering message {message.transaction_id}", error=exc, source=SOURCE
                )
            finally:
                self.queue.task_done()
                self.metrics.set_queue_depth(self.queue.qsize())

    async def request_restart(self) -> datetime:
        """Ask the supervisor to recycle the listener."""
        requested = await self.store.request_restart()
        await self.audit.info(f"Restart requested at {requested.isoformat()}", source=SOURCE)
        return requested

    def status(self) -> dict[str, Any]:
        status = self.supervisor.status()
        listener = self.supervisor.listener
        status.update(
            {
                "queue_depth": self.queue.qsize(),
                "queue_size": self.queue.maxsize,
                "workers": sum(1 for t in self._workers if not t.done()),
                "delivered": self.delivered,
                "ports": list(getattr(listener, "bound_ports", []) or []),
            }
        )
        return status

    async def __aenter__(self) -> MailGateway:
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()
