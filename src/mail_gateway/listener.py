# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""SMTP listener built on aiosmtpd.

The wire protocol is aiosmtpd's; this module provides the handler hooks and
the server lifecycle:

    - ``GatewayHandler.handle_RCPT`` refuses recipients whose verdict is
      Reject, so the sending peer gets the error during the dialogue.
    - ``GatewayHandler.handle_DATA`` runs the enabled inbound checks and
      puts the message on the bounded delivery queue. Delivery happens later
      in the gateway workers; a full queue answers with a temporary error.
    - ``SmtpListener.serve`` binds one server per configured port and runs
      until ``stop`` is called. It then stops accepting and waits for every
      open session to end; idle peers are closed by aiosmtpd's own session
      timeout. Only cancelling ``serve`` closes open sessions at once.
"""

from __future__ import annotations

import asyncio
import uuid
import weakref
from typing import Optional

from aiosmtpd.smtp import SMTP, Envelope, Session

from .audit import AuditLog
from .checks import CheckRunner
from .logger import get_logger
from .message import InboundMessage
from .prometheus import GatewayMetrics
from .routing import Reject, resolve
from .settings_cache import SettingsCache

DEFAULT_DATA_SIZE_LIMIT = 33554432
DEFAULT_PUT_TIMEOUT = 5.0
DEFAULT_SESSION_TIMEOUT = 300.0


class GatewayHandler:
    """aiosmtpd handler feeding the delivery queue."""

    def __init__(
        self,
        cache: SettingsCache,
        queue: asyncio.Queue,
        checks: Optional[CheckRunner] = None,
        *,
        put_timeout: float = DEFAULT_PUT_TIMEOUT,
        metrics: Optional[GatewayMetrics] = None,
        audit: Optional[AuditLog] = None,
        logger=None,
    ):
        self.cache = cache
        self.queue = queue
        self.checks = checks or CheckRunner()
        self.put_timeout = put_timeout
        self.metrics = metrics
        self.audit = audit
        self.logger = logger or get_logger("SmtpListener")
        self._session_ids: weakref.WeakKeyDictionary[Session, str] = weakref.WeakKeyDictionary()

    def session_id(self, session: Session) -> str:
        sid = self._session_ids.get(session)
        if sid is None:
            sid = uuid.uuid4().hex
            self._session_ids[session] = sid
        return sid

    async def handle_RCPT(self, server: SMTP, session: Session, envelope: Envelope, address: str, rcpt_options):
        settings = await self.cache.get()
        verdict = resolve(address, settings)
        if isinstance(verdict, Reject):
            if self.metrics is not None:
                self.metrics.inc_rejected()
            self.logger.info("Rejected recipient %s at RCPT: %s", address, verdict.reason)
            return f"550 5.1.1 <{address}>: Recipient address rejected: {verdict.reason}"
        envelope.rcpt_tos.append(address)
        return "250 OK"

    async def handle_DATA(self, server: SMTP, session: Session, envelope: Envelope) -> str:
        if not envelope.rcpt_tos:
            return "554 5.5.1 Error: no valid recipients"

        content = envelope.original_content or envelope.content or b""
        if isinstance(content, str):
            content = content.encode("utf-8", errors="surrogateescape")
        peer = session.peer
        message = InboundMessage(
            sender=envelope.mail_from or "",
            recipients=tuple(envelope.rcpt_tos),
            raw=content,
            session_id=self.session_id(session),
            transaction_id=uuid.uuid4().hex,
            peer_ip=peer[0] if isinstance(peer, tuple) and peer else None,
        )

        settings = await self.cache.get()
        failed = await self.checks.run(message, settings)
        if failed is not None:
            if self.metrics is not None:
                self.metrics.inc_check_failure(failed)
            if self.audit is not None:
                await self.audit.spam(message, failed)
            return f"550 5.7.1 Message rejected by {failed} check"

        try:
            await asyncio.wait_for(self.queue.put(message), timeout=self.put_timeout)
        except asyncio.TimeoutError:
            self.logger.warning(
                "Delivery queue full, deferring message %s from %s", message.transaction_id, message.sender or "<>"
            )
            return "451 4.3.2 Delivery queue full, try again later"
        if self.metrics is not None:
            self.metrics.set_queue_depth(self.queue.qsize())
        self.logger.info(
            "Accepted message %s from %s for %d recipient(s) (%d bytes)",
            message.transaction_id,
            message.sender or "<>",
            len(message.recipients),
            len(message.raw),
        )
        return f"250 2.0.0 Ok: queued as {message.transaction_id}"


class _TrackedSMTP(SMTP):
    """SMTP protocol that registers itself with the listener while connected."""

    def __init__(self, handler, *, sessions: set, **kwargs):
        super().__init__(handler, **kwargs)
        self._sessions = sessions

    def connection_made(self, transport):
        super().connection_made(transport)
        self._sessions.add(self)

    def connection_lost(self, exc):
        self._sessions.discard(self)
        super().connection_lost(exc)


class SmtpListener:
    """One aiosmtpd server per configured port, run as a single task."""

    def __init__(
        self,
        handler: GatewayHandler,
        *,
        ports: tuple[int, ...] = (25,),
        host: Optional[str] = None,
        hostname: Optional[str] = None,
        data_size_limit: int = DEFAULT_DATA_SIZE_LIMIT,
        session_timeout: float = DEFAULT_SESSION_TIMEOUT,
        logger=None,
    ):
        self.handler = handler
        self.ports = tuple(ports)
        self.host = host
        self.hostname = hostname
        self.data_size_limit = data_size_limit
        self.session_timeout = session_timeout
        self.logger = logger or get_logger("SmtpListener")
        self._servers: list[asyncio.AbstractServer] = []
        self._sessions: set[_TrackedSMTP] = set()
        self._ready = asyncio.Event()
        self._stopping = asyncio.Event()

    @property
    def bound_ports(self) -> list[int]:
        ports = []
        for server in self._servers:
            for sock in server.sockets or ():
                ports.append(sock.getsockname()[1])
        return ports

    @property
    def active_sessions(self) -> int:
        return len(self._sessions)

    async def wait_ready(self) -> None:
        await self._ready.wait()

    def _protocol(self) -> _TrackedSMTP:
        return _TrackedSMTP(
            self.handler,
            sessions=self._sessions,
            hostname=self.hostname,
            data_size_limit=self.data_size_limit,
            timeout=self.session_timeout,
            enable_SMTPUTF8=True,
            loop=asyncio.get_running_loop(),
        )

    async def serve(self) -> None:
        """Accept sessions until ``stop`` is called, then wait for open sessions."""
        loop = asyncio.get_running_loop()
        try:
            for port in self.ports:
                server = await loop.create_server(self._protocol, host=self.host, port=port)
                self._servers.append(server)
            self.logger.info(
                "SMTP listener accepting on %s port(s) %s as %s",
                self.host or "*",
                ", ".join(str(p) for p in self.bound_ports),
                self.hostname or "-",
            )
            self._ready.set()
            await self._stopping.wait()
            self._close_servers()
            await self._wait_sessions()
            for server in self._servers:
                await server.wait_closed()
        except asyncio.CancelledError:
            self._abort_sessions()
            raise
        finally:
            self._close_servers()
            self._servers.clear()
        self.logger.info("SMTP listener stopped")

    async def stop(self) -> None:
        """Stop accepting new sessions; ``serve`` returns once open sessions end."""
        self._stopping.set()

    def _close_servers(self) -> None:
        for server in self._servers:
            server.close()

    async def _wait_sessions(self) -> None:
        if self._sessions:
            self.logger.info("Waiting for %d open SMTP session(s) to finish", len(self._sessions))
        while self._sessions:
            await asyncio.sleep(0.05)

    def _abort_sessions(self) -> None:
        if self._sessions:
            self.logger.warning("Closing %d open SMTP session(s)", len(self._sessions))
        for proto in list(self._sessions):
            if proto.transport is not None:
                proto.transport.close()
