# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient delivery of inbound messages.

``DeliveryDispatcher.dispatch`` resolves a verdict for every envelope
recipient, in envelope order, and executes it against the archive or relay
collaborators. Recipients are isolated from each other: an archive or relay
failure for one of them becomes a ``failed`` outcome and the remaining
recipients are still processed. Nothing is retried.

The dispatcher keeps no per-call state on the instance, so many workers can
share one dispatcher and call it concurrently; the settings snapshot is
passed in by the caller.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable, Optional

from .archive import StorageArchive, archive_path
from .audit import AuditLog
from .errors import RelayNotConfigured
from .logger import get_logger
from .message import InboundMessage, ParsedMessage, with_provenance
from .models import ServerSettings
from .prometheus import GatewayMetrics
from .relay import OutboundMessage, Relay, RelayAttachment, relay_from_settings
from .routing import DeliveryVerdict, Drop, Forward, Reject, StoreLocal, resolve

SOURCE = "DeliveryDispatcher"

STORED = "stored"
SUPPRESSED = "suppressed"
FORWARDED = "forwarded"
DROPPED = "dropped"
REJECTED = "rejected"
FAILED = "failed"

FORWARDER_NAME = "Forwarder"
NO_SUBJECT = "No Subject"
NO_TEXT = "No text content"
NO_CONTENT = "No content"
ORIGINAL_FILENAME = "original.eml"


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of delivering one message to one recipient."""

    recipient: str
    verdict: DeliveryVerdict
    status: str
    detail: str = ""
    path: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (STORED, SUPPRESSED, FORWARDED, DROPPED)


def build_forward(
    message: InboundMessage,
    parsed: ParsedMessage,
    destination: str,
    settings: ServerSettings,
) -> OutboundMessage:
    """Repackage an inbound message for forwarding to ``destination``."""
    from_email = settings.sendgrid_from_email or f"noreply@{settings.server_name}"
    text_body = parsed.text_body or NO_TEXT
    html_body = parsed.html_body or parsed.text_body or NO_CONTENT
    reply_to = parsed.from_address or message.sender or None

    attachments = [
        RelayAttachment(part.filename, part.content_type, part.content) for part in parsed.attachments
    ]
    attachments.append(RelayAttachment(ORIGINAL_FILENAME, "message/rfc822", message.raw))
    inline_parts = tuple(
        RelayAttachment(part.filename, part.content_type, part.content, part.content_id)
        for part in parsed.inline_parts
    )
    return OutboundMessage(
        from_email=from_email,
        from_name=FORWARDER_NAME,
        to_email=destination,
        subject=parsed.subject or NO_SUBJECT,
        text_body=text_body,
        html_body=html_body,
        reply_to=reply_to,
        reply_to_name=parsed.from_name if reply_to == parsed.from_address else "",
        attachments=tuple(attachments),
        inline_parts=inline_parts,
    )


class DeliveryDispatcher:
    """Execute routing verdicts against the archive and relay collaborators."""

    def __init__(
        self,
        archive: Optional[StorageArchive],
        *,
        relay_factory: Callable[[ServerSettings], Optional[Relay]] = relay_from_settings,
        audit: Optional[AuditLog] = None,
        metrics: Optional[GatewayMetrics] = None,
        logger=None,
    ):
        self.archive = archive
        self.relay_factory = relay_factory
        self.audit = audit or AuditLog(None)
        self.metrics = metrics
        self.logger = logger or get_logger("DeliveryDispatcher")

    async def dispatch(self, message: InboundMessage, settings: ServerSettings) -> list[DeliveryOutcome]:
        """Deliver ``message`` to each envelope recipient independently."""
        parsed = message.parse()
        if parsed.errors:
            await self.audit.warning(
                f"Message {message.transaction_id or '-'} parsed with errors; using best-effort metadata",
                error="; ".join(parsed.errors),
                source=SOURCE,
            )

        relay: Optional[Relay] = None
        relay_built = False
        outcomes: list[DeliveryOutcome] = []
        for recipient in message.recipients:
            verdict = resolve(recipient, settings)
            try:
                if isinstance(verdict, Forward) and not relay_built:
                    relay = self.relay_factory(settings)
                    relay_built = True
                outcome = await self._deliver(message, parsed, recipient, verdict, settings, relay)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await self.audit.error(
                    f"Delivery to {recipient} failed ({verdict.action})", error=exc, source=SOURCE
                )
                outcome = DeliveryOutcome(recipient, verdict, FAILED, detail=str(exc) or type(exc).__name__)
            if self.metrics is not None:
                self.metrics.inc_delivery(verdict.action, outcome.status)
            outcomes.append(outcome)
        return outcomes

    async def _deliver(
        self,
        message: InboundMessage,
        parsed: ParsedMessage,
        recipient: str,
        verdict: DeliveryVerdict,
        settings: ServerSettings,
        relay: Optional[Relay],
    ) -> DeliveryOutcome:
        if isinstance(verdict, StoreLocal):
            return await self._store(message, parsed, recipient, verdict, settings)
        if isinstance(verdict, Forward):
            return await self._forward(message, parsed, recipient, verdict, settings, relay)
        if isinstance(verdict, Drop):
            await self.audit.info(f"Dropped message for {recipient} (catch-all delete)", source=SOURCE)
            return DeliveryOutcome(recipient, verdict, DROPPED)
        if isinstance(verdict, Reject):
            self.logger.info("Rejected recipient %s: %s", recipient, verdict.reason)
            return DeliveryOutcome(recipient, verdict, REJECTED, detail=verdict.reason)
        raise TypeError(f"unknown verdict {verdict!r}")

    async def _store(
        self,
        message: InboundMessage,
        parsed: ParsedMessage,
        recipient: str,
        verdict: StoreLocal,
        settings: ServerSettings,
    ) -> DeliveryOutcome:
        if settings.do_not_save_messages:
            await self.audit.info(
                f"Archival suppressed for {recipient} (DoNotSaveMessages is set)", source=SOURCE
            )
            return DeliveryOutcome(recipient, verdict, SUPPRESSED)
        if self.archive is None:
            raise RuntimeError("no archive configured")

        path = archive_path(verdict.domain, verdict.user, message.received_at)
        content = with_provenance(message, recipient)
        metadata = {
            "Subject": parsed.subject or "(no subject)",
            "From": parsed.from_header or message.sender,
            "RecipientUser": recipient,
            "SessionId": message.session_id,
            "TransactionId": message.transaction_id,
        }
        await self.archive.put(path, content, metadata)
        self.logger.info("Saved message for %s to %s", recipient, path)
        return DeliveryOutcome(recipient, verdict, STORED, path=path)

    async def _forward(
        self,
        message: InboundMessage,
        parsed: ParsedMessage,
        recipient: str,
        verdict: Forward,
        settings: ServerSettings,
        relay: Optional[Relay],
    ) -> DeliveryOutcome:
        if relay is None:
            raise RelayNotConfigured(f"cannot forward to {verdict.destination}: no relay configured")

        outbound = build_forward(message, parsed, verdict.destination, settings)
        response = await relay.send(outbound)
        if not response.ok:
            await self.audit.error(
                f"Relay refused message for {recipient} to {verdict.destination} with status {response.status}",
                error=response.body or None,
                source=SOURCE,
            )
            return DeliveryOutcome(recipient, verdict, FAILED, detail=f"relay status {response.status}")
        self.logger.info("Forwarded message for %s to %s", recipient, verdict.destination)
        return DeliveryOutcome(recipient, verdict, FORWARDED, detail=f"relay status {response.status}")
