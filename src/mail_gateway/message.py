# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Inbound message envelope and its best-effort parsed view.

``InboundMessage`` is what the SMTP listener hands to the delivery workers:
the envelope plus the raw bytes, exactly as received. It is never modified;
``with_provenance`` returns a new byte string with the gateway headers on
top of a copy of the original.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import getaddresses

from .logger import get_logger

logger = get_logger("Message")

PROVENANCE_PREFIX = "X-SMTP-Server-"


@dataclass(frozen=True)
class MessagePart:
    """A decoded attachment or inline part of a message."""

    filename: str
    content_type: str
    content: bytes
    content_id: str | None = None


@dataclass(frozen=True)
class ParsedMessage:
    """Headers and bodies extracted from the raw message."""

    subject: str = ""
    from_header: str = ""
    from_address: str = ""
    from_name: str = ""
    text_body: str | None = None
    html_body: str | None = None
    attachments: tuple[MessagePart, ...] = ()
    inline_parts: tuple[MessagePart, ...] = ()
    errors: tuple[str, ...] = ()


@dataclass(frozen=True)
class InboundMessage:
    """Envelope and raw content of one accepted SMTP transaction."""

    sender: str
    recipients: tuple[str, ...]
    raw: bytes
    session_id: str = ""
    transaction_id: str = ""
    peer_ip: str | None = None
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def parse(self) -> ParsedMessage:
        return parse_message(self.raw)


def _decode_text(part: EmailMessage) -> str | None:
    try:
        return part.get_content()
    except Exception as exc:
        logger.warning("Failed to decode %s part with get_content(): %s", part.get_content_type(), exc)
        payload = part.get_payload(decode=True)
        if payload:
            charset = part.get_content_charset() or "utf-8"
            return payload.decode(charset, errors="replace")
        return None


def _as_part(part: EmailMessage) -> MessagePart:
    content = part.get_payload(decode=True) or b""
    content_id = part.get("Content-ID")
    if content_id:
        content_id = str(content_id).strip().strip("<>")
    return MessagePart(
        filename=part.get_filename() or "",
        content_type=part.get_content_type(),
        content=content,
        content_id=content_id or None,
    )


def parse_message(raw: bytes) -> ParsedMessage:
    """Extract subject, sender, bodies, attachments and inline parts.

    Header or body decoding problems never raise: the offending field is
    left empty and the problem is listed in ``errors``.
    """
    errors: list[str] = []
    try:
        msg = BytesParser(policy=policy.default).parsebytes(raw)
    except Exception as exc:
        return ParsedMessage(errors=(f"unparseable message: {exc}",))

    def header(name: str) -> str:
        try:
            value = msg.get(name)
        except Exception as exc:
            errors.append(f"invalid {name} header: {exc}")
            return ""
        return "" if value is None else str(value)

    subject = header("Subject")
    from_header = header("From")
    from_name, from_address = "", ""
    if from_header:
        try:
            addresses = getaddresses([from_header])
        except Exception as exc:
            errors.append(f"invalid From header: {exc}")
            addresses = []
        if addresses:
            from_name, from_address = addresses[0]

    text_body: str | None = None
    html_body: str | None = None
    attachments: list[MessagePart] = []
    inline_parts: list[MessagePart] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        content_type = part.get_content_type()
        disposition = part.get_content_disposition()
        try:
            if disposition == "attachment":
                attachments.append(_as_part(part))
            elif part.get("Content-ID") and not content_type.startswith("text/"):
                inline_parts.append(_as_part(part))
            elif part.get_filename():
                attachments.append(_as_part(part))
            elif content_type == "text/plain" and text_body is None:
                text_body = _decode_text(part)
            elif content_type == "text/html" and html_body is None:
                html_body = _decode_text(part)
        except Exception as exc:
            errors.append(f"failed to decode {content_type} part: {exc}")

    return ParsedMessage(
        subject=subject,
        from_header=from_header,
        from_address=from_address,
        from_name=from_name,
        text_body=text_body,
        html_body=html_body,
        attachments=tuple(attachments),
        inline_parts=tuple(inline_parts),
        errors=tuple(errors),
    )


def _header_value(value: str) -> str:
    return " ".join(str(value).split())


def provenance_headers(message: InboundMessage, recipient: str, received_at: datetime | None = None) -> list[tuple[str, str]]:
    """Headers recording how and when the gateway received the message."""
    received_at = received_at or message.received_at
    headers = [
        (f"{PROVENANCE_PREFIX}Received", received_at.astimezone(timezone.utc).isoformat()),
        (f"{PROVENANCE_PREFIX}SessionId", message.session_id),
        (f"{PROVENANCE_PREFIX}TransactionId", message.transaction_id),
        (f"{PROVENANCE_PREFIX}Recipient-User", recipient),
    ]
    if message.peer_ip:
        headers.append((f"{PROVENANCE_PREFIX}IP", message.peer_ip))
    return headers


def with_provenance(message: InboundMessage, recipient: str, received_at: datetime | None = None) -> bytes:
    """Return a copy of the raw bytes with the provenance headers on top."""
    eol = b"\r\n" if b"\r\n" in message.raw[:4096] or not message.raw else b"\n"
    lines = [
        f"{name}: {_header_value(value)}".encode("utf-8") + eol
        for name, value in provenance_headers(message, recipient, received_at)
    ]
    return b"".join(lines) + message.raw


__all__ = [
    "InboundMessage",
    "MessagePart",
    "ParsedMessage",
    "parse_message",
    "provenance_headers",
    "with_provenance",
]
