# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Outbound relay transports used to forward messages.

Two transports share one contract, ``await relay.send(message)`` returning a
``RelayResponse`` whose ``ok`` flag is true for 2xx status codes:

    - SendGridRelay: SendGrid v3 ``/mail/send`` HTTP API through aiohttp.
    - SmtpRelay: plain SMTP submission through aiosmtplib.

``relay_from_settings`` picks the transport configured in the settings
snapshot, or returns None when forwarding is not configured.
"""

from __future__ import annotations

import asyncio
import base64
from dataclasses import dataclass, field
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import formataddr, make_msgid
from typing import Any, Optional, Protocol

import aiohttp
import aiosmtplib

from .logger import get_logger
from .models import ServerSettings

SENDGRID_URL = "https://api.sendgrid.com/v3/mail/send"
DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class RelayAttachment:
    """A file carried by an outbound message."""

    filename: str
    content_type: str
    content: bytes
    content_id: Optional[str] = None

    @property
    def inline(self) -> bool:
        return self.content_id is not None


@dataclass(frozen=True)
class OutboundMessage:
    """A message ready to be handed to a relay."""

    from_email: str
    to_email: str
    subject: str
    text_body: str
    html_body: str
    from_name: str = ""
    reply_to: Optional[str] = None
    reply_to_name: str = ""
    attachments: tuple[RelayAttachment, ...] = ()
    inline_parts: tuple[RelayAttachment, ...] = ()


@dataclass(frozen=True)
class RelayResponse:
    """Transport status code and response body."""

    status: int
    body: str = ""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


class Relay(Protocol):
    name: str

    async def send(self, message: OutboundMessage) -> RelayResponse: ...


def build_payload(message: OutboundMessage) -> dict[str, Any]:
    """Build the SendGrid v3 ``mail/send`` request body."""
    sender: dict[str, str] = {"email": message.from_email}
    if message.from_name:
        sender["name"] = message.from_name
    payload: dict[str, Any] = {
        "personalizations": [{"to": [{"email": message.to_email}]}],
        "from": sender,
        "subject": message.subject,
        # SendGrid requires text/plain before text/html.
        "content": [
            {"type": "text/plain", "value": message.text_body},
            {"type": "text/html", "value": message.html_body},
        ],
    }
    if message.reply_to:
        reply_to = {"email": message.reply_to}
        if message.reply_to_name:
            reply_to["name"] = message.reply_to_name
        payload["reply_to"] = reply_to

    attachments = []
    for att in (*message.attachments, *message.inline_parts):
        item = {
            "content": base64.b64encode(att.content).decode("ascii"),
            "filename": att.filename or "attachment.bin",
            "type": att.content_type,
            "disposition": "inline" if att.inline else "attachment",
        }
        if att.inline:
            item["content_id"] = att.content_id
        attachments.append(item)
    if attachments:
        payload["attachments"] = attachments
    return payload


class SendGridRelay:
    """Forward through the SendGrid v3 HTTP API."""

    name = "sendgrid"

    def __init__(
        self,
        api_key: str,
        *,
        endpoint: str = SENDGRID_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[aiohttp.ClientSession] = None,
        logger=None,
    ):
        self.api_key = api_key
        self.endpoint = endpoint
        self.timeout = timeout
        self._session = session
        self.logger = logger or get_logger("Relay")

    async def send(self, message: OutboundMessage) -> RelayResponse:
        headers = {"Authorization": f"Bearer {self.api_key}"}
        payload = build_payload(message)
        if self._session is not None:
            return await self._post(self._session, payload, headers)
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout)) as session:
            return await self._post(session, payload, headers)

    async def _post(self, session: Any, payload: dict[str, Any], headers: dict[str, str]) -> RelayResponse:
        self.logger.debug("Posting message for %s to %s", payload["personalizations"][0]["to"][0]["email"], self.endpoint)
        async with session.post(self.endpoint, json=payload, headers=headers) as resp:
            body = await resp.text()
            return RelayResponse(resp.status, body, {k: v for k, v in resp.headers.items()})


def build_email(message: OutboundMessage) -> EmailMessage:
    """Build the MIME message submitted by ``SmtpRelay``."""
    msg = EmailMessage()
    msg["From"] = formataddr((message.from_name, message.from_email)) if message.from_name else message.from_email
    msg["To"] = message.to_email
    msg["Subject"] = message.subject
    if message.reply_to:
        msg["Reply-To"] = formataddr((message.reply_to_name, message.reply_to))
    msg["Message-ID"] = make_msgid(domain=message.from_email.rpartition("@")[2] or None)
    msg.set_content(message.text_body)
    msg.add_alternative(message.html_body, subtype="html")

    if message.inline_parts:
        html_part = msg.get_payload()[-1]
        for part in message.inline_parts:
            maintype, _, subtype = part.content_type.partition("/")
            html_part.add_related(
                part.content,
                maintype=maintype,
                subtype=subtype or "octet-stream",
                cid=f"<{part.content_id}>",
                disposition="inline",
                filename=part.filename or None,
            )

    for att in message.attachments:
        if att.content_type == "message/rfc822":
            attached = BytesParser(policy=policy.default).parsebytes(att.content)
            msg.add_attachment(attached, filename=att.filename)
            continue
        maintype, _, subtype = att.content_type.partition("/")
        msg.add_attachment(
            att.content,
            maintype=maintype or "application",
            subtype=subtype or "octet-stream",
            filename=att.filename or "attachment.bin",
        )
    return msg


class SmtpRelay:
    """Forward through an SMTP submission server."""

    name = "smtp"

    def __init__(
        self,
        host: str,
        port: int = 587,
        user: Optional[str] = None,
        password: Optional[str] = None,
        *,
        use_tls: bool = True,
        timeout: float = DEFAULT_TIMEOUT,
        logger=None,
    ):
        self.host = host
        self.port = port
        self.user = user or None
        self.password = password or None
        self.use_tls = use_tls
        self.timeout = timeout
        self.logger = logger or get_logger("Relay")

    def _client(self) -> aiosmtplib.SMTP:
        # Port 465: implicit TLS. Other ports with TLS: STARTTLS.
        if self.use_tls and self.port == 465:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=True, timeout=self.timeout)
        if self.use_tls:
            return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=True, use_tls=False, timeout=self.timeout)
        return aiosmtplib.SMTP(hostname=self.host, port=self.port, start_tls=False, use_tls=False, timeout=self.timeout)

    async def send(self, message: OutboundMessage) -> RelayResponse:
        msg = build_email(message)
        smtp = self._client()
        try:
            await smtp.connect()
            if self.user and self.password:
                await smtp.login(self.user, self.password)
            errors, response = await asyncio.wait_for(
                smtp.send_message(msg, sender=message.from_email, recipients=[message.to_email]),
                timeout=self.timeout,
            )
        except aiosmtplib.SMTPRecipientsRefused as exc:
            refused = exc.recipients[0] if exc.recipients else None
            if refused is not None:
                return RelayResponse(refused.code, refused.message)
            return RelayResponse(550, str(exc))
        except aiosmtplib.SMTPResponseException as exc:
            return RelayResponse(exc.code, exc.message)
        finally:
            if smtp.is_connected:
                try:
                    await smtp.quit()
                except aiosmtplib.SMTPException:
                    smtp.close()
        if errors:
            code, text = next(iter(errors.values()))
            return RelayResponse(code, text)
        return RelayResponse(250, response)


def relay_from_settings(settings: ServerSettings) -> Relay | None:
    """Return the relay configured in ``settings``; SendGrid API wins."""
    if settings.sendgrid_api_key:
        return SendGridRelay(settings.sendgrid_api_key)
    if settings.sendgrid_host:
        return SmtpRelay(
            settings.sendgrid_host,
            settings.sendgrid_port,
            settings.sendgrid_user,
            settings.sendgrid_pass,
        )
    return None


__all__ = [
    "OutboundMessage",
    "Relay",
    "RelayAttachment",
    "RelayResponse",
    "SendGridRelay",
    "SmtpRelay",
    "build_email",
    "build_payload",
    "relay_from_settings",
]
