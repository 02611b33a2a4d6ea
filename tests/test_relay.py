import asyncio
import base64
from email import policy
from email.parser import BytesParser

import pytest
from aiosmtpd.smtp import SMTP

from mail_gateway.models import ServerSettings
from mail_gateway.relay import (
    SENDGRID_URL,
    OutboundMessage,
    RelayAttachment,
    RelayResponse,
    SendGridRelay,
    SmtpRelay,
    build_email,
    build_payload,
    relay_from_settings,
)


def make_message(**overrides):
    values = dict(
        from_email="noreply@mx.example.com",
        to_email="dest@other.com",
        subject="Hello",
        text_body="plain",
        html_body="<p>html</p>",
        from_name="Forwarder",
        reply_to="alice@sender.org",
        reply_to_name="Alice",
        attachments=(RelayAttachment("a.txt", "text/plain", b"data"),),
        inline_parts=(RelayAttachment("logo.png", "image/png", b"\x89PNG", content_id="logo@x"),),
    )
    values.update(overrides)
    return OutboundMessage(**values)


class DummyResponse:
    def __init__(self, status, body="", headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class DummySession:
    def __init__(self, response):
        self.response = response
        self.calls = []

    def post(self, url, json=None, headers=None):
        self.calls.append((url, json, headers))
        return self.response


def test_relay_response_ok():
    assert RelayResponse(202).ok
    assert not RelayResponse(199).ok
    assert not RelayResponse(400, "bad").ok


def test_build_payload():
    payload = build_payload(make_message())
    assert payload["personalizations"] == [{"to": [{"email": "dest@other.com"}]}]
    assert payload["from"] == {"email": "noreply@mx.example.com", "name": "Forwarder"}
    assert payload["subject"] == "Hello"
    assert [c["type"] for c in payload["content"]] == ["text/plain", "text/html"]
    assert payload["reply_to"] == {"email": "alice@sender.org", "name": "Alice"}

    attachment, inline = payload["attachments"]
    assert attachment == {
        "content": base64.b64encode(b"data").decode("ascii"),
        "filename": "a.txt",
        "type": "text/plain",
        "disposition": "attachment",
    }
    assert inline["disposition"] == "inline"
    assert inline["content_id"] == "logo@x"


def test_build_payload_minimal():
    payload = build_payload(make_message(from_name="", reply_to=None, attachments=(), inline_parts=()))
    assert payload["from"] == {"email": "noreply@mx.example.com"}
    assert "reply_to" not in payload
    assert "attachments" not in payload


@pytest.mark.asyncio
async def test_sendgrid_relay_posts_payload():
    session = DummySession(DummyResponse(202, "", {"X-Message-Id": "abc"}))
    relay = SendGridRelay("SG.key", session=session)

    response = await relay.send(make_message())
    assert response.ok
    assert response.status == 202
    assert response.headers == {"X-Message-Id": "abc"}

    url, payload, headers = session.calls[0]
    assert url == SENDGRID_URL
    assert headers == {"Authorization": "Bearer SG.key"}
    assert payload["subject"] == "Hello"


@pytest.mark.asyncio
async def test_sendgrid_relay_reports_errors():
    session = DummySession(DummyResponse(401, '{"errors": [{"message": "bad key"}]}'))
    response = await SendGridRelay("SG.bad", session=session).send(make_message())
    assert not response.ok
    assert response.status == 401
    assert "bad key" in response.body


def test_build_email_structure():
    original = b"From: a@b.c\r\nSubject: original\r\n\r\nbody\r\n"
    message = make_message(
        attachments=(
            RelayAttachment("a.txt", "text/plain", b"data"),
            RelayAttachment("original.eml", "message/rfc822", original),
        )
    )
    msg = build_email(message)
    assert msg["From"] == "Forwarder <noreply@mx.example.com>"
    assert msg["To"] == "dest@other.com"
    assert msg["Reply-To"] == "Alice <alice@sender.org>"
    assert msg["Message-ID"].endswith("@mx.example.com>")
    assert msg.get_content_type() == "multipart/mixed"

    parts = list(msg.iter_attachments())
    assert [p.get_filename() for p in parts] == ["a.txt", "original.eml"]
    assert parts[1].get_content_type() == "message/rfc822"
    assert parts[1].get_content()["Subject"] == "original"

    body = msg.get_body(preferencelist=("html",))
    assert "<p>html</p>" in body.get_content()
    related = [p for p in msg.walk() if p.get_content_type() == "image/png"]
    assert related[0]["Content-ID"] == "<logo@x>"


def test_relay_from_settings():
    assert relay_from_settings(ServerSettings.defaults()) is None

    smtp = relay_from_settings(
        ServerSettings.from_record({"SendGridHost": "smtp.relay.net", "SendGridPort": 465, "SendGridUser": "u"})
    )
    assert isinstance(smtp, SmtpRelay)
    assert (smtp.host, smtp.port, smtp.user, smtp.password) == ("smtp.relay.net", 465, "u", None)

    both = relay_from_settings(ServerSettings.from_record({"SendGridApiKey": "SG.x", "SendGridHost": "smtp.relay.net"}))
    assert isinstance(both, SendGridRelay)
    assert both.api_key == "SG.x"


class CaptureHandler:
    def __init__(self, code="250 OK"):
        self.code = code
        self.envelopes = []

    async def handle_DATA(self, server, session, envelope):
        self.envelopes.append(envelope)
        return self.code


async def start_smtp(handler):
    loop = asyncio.get_running_loop()
    server = await loop.create_server(lambda: SMTP(handler), "127.0.0.1", 0)
    return server, server.sockets[0].getsockname()[1]


@pytest.mark.asyncio
async def test_smtp_relay_delivers_to_server():
    handler = CaptureHandler()
    server, port = await start_smtp(handler)
    try:
        relay = SmtpRelay("127.0.0.1", port, use_tls=False, timeout=5)
        response = await relay.send(make_message())
    finally:
        server.close()
        await server.wait_closed()

    assert response.ok
    envelope = handler.envelopes[0]
    assert envelope.mail_from == "noreply@mx.example.com"
    assert envelope.rcpt_tos == ["dest@other.com"]
    received = BytesParser(policy=policy.default).parsebytes(envelope.original_content)
    assert received["Subject"] == "Hello"


@pytest.mark.asyncio
async def test_smtp_relay_maps_server_rejection():
    server, port = await start_smtp(CaptureHandler("554 5.7.1 Rejected"))
    try:
        response = await SmtpRelay("127.0.0.1", port, use_tls=False, timeout=5).send(make_message())
    finally:
        server.close()
        await server.wait_closed()

    assert not response.ok
    assert response.status == 554
