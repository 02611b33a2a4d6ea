# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pluggable inbound checks (spam filtering, SPF, DKIM, DMARC).

The gateway does not implement any verification algorithm itself. A check
is a subclass of ``InboundCheck`` naming the settings flag that enables it;
``CheckRunner`` runs the enabled checks in registration order when a message
arrives and reports the first one that fails.

A check that raises is logged and counted as passed, so a broken resolver
never blocks inbound mail.
"""

from __future__ import annotations

import asyncio
from typing import Iterable, Optional

from .logger import get_logger
from .message import InboundMessage
from .models import ServerSettings

CHECK_FLAGS = (
    "enable_spam_filtering",
    "enable_spf_check",
    "enable_dkim_check",
    "enable_dmarc_check",
)


class InboundCheck:
    """Base class of inbound checks.

    Subclasses set ``name`` and ``flag`` (a boolean ``ServerSettings``
    attribute) and implement ``check``.
    """

    name: str = "check"
    flag: str = ""

    def enabled(self, settings: ServerSettings) -> bool:
        return bool(self.flag) and bool(getattr(settings, self.flag, False))

    async def check(self, message: InboundMessage, settings: ServerSettings) -> bool:
        """Return True when the message passes."""
        raise NotImplementedError


class CheckRunner:
    """Run the inbound checks enabled in a settings snapshot."""

    def __init__(self, checks: Iterable[InboundCheck] = (), logger=None):
        self.checks = list(checks)
        self.logger = logger or get_logger("InboundChecks")
        self._warned: set[str] = set()

    def register(self, check: InboundCheck) -> None:
        self.checks.append(check)

    def _warn_unregistered(self, settings: ServerSettings) -> None:
        covered = {c.flag for c in self.checks}
        for flag in CHECK_FLAGS:
            if getattr(settings, flag, False) and flag not in covered and flag not in self._warned:
                self._warned.add(flag)
                self.logger.warning("%s is enabled but no check is registered for it", flag)

    async def run(self, message: InboundMessage, settings: ServerSettings) -> Optional[str]:
        """Return the name of the first failing check, or None."""
        self._warn_unregistered(settings)
        for check in self.checks:
            if not check.enabled(settings):
                continue
            try:
                passed = await check.check(message, settings)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.exception("Inbound check %s failed to run; letting the message through", check.name)
                continue
            if not passed:
                self.logger.info(
                    "Message from %s refused by %s check", message.sender or "<>", check.name
                )
                return check.name
        return None
