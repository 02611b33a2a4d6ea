import asyncio
import json

import aiosmtplib
import pytest
from aiosmtpd.smtp import Envelope, Session

from mail_gateway.audit import AuditLog
from mail_gateway.checks import CheckRunner, InboundCheck
from mail_gateway.listener import GatewayHandler, SmtpListener
from mail_gateway.models import ServerSettings
from mail_gateway.persistence import SettingsStore
from mail_gateway.prometheus import GatewayMetrics

RAW = b"From: alice@sender.org\r\nSubject: hi\r\n\r\nbody\r\n"


def make_settings():
    domains = [
        {"DomainName": "example.com", "CatchAll": {"Type": "None"}},
        {"DomainName": "strict.com", "CatchAll": {"Type": "Reject"}},
    ]
    return ServerSettings.from_record({"ServerName": "mx.test", "DomainsJson": json.dumps(domains)})


class StaticCache:
    def __init__(self, settings):
        self.settings = settings
        self.calls = 0

    async def get(self):
        self.calls += 1
        return self.settings


class RefuseAll(InboundCheck):
    name = "spf"
    flag = "enable_spf_check"

    async def check(self, message, settings):
        return False


def make_session(peer=("192.0.2.7", 40000)):
    session = Session(asyncio.get_running_loop())
    session.peer = peer
    return session


def make_envelope(*recipients):
    envelope = Envelope()
    envelope.mail_from = "alice@sender.org"
    envelope.rcpt_tos = list(recipients)
    envelope.original_content = RAW
    envelope.content = RAW
    return envelope


@pytest.mark.asyncio
async def test_handle_rcpt_rejects_and_accepts():
    metrics = GatewayMetrics()
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue(), metrics=metrics)
    session = make_session()
    envelope = Envelope()

    status = await handler.handle_RCPT(None, session, envelope, "bob@strict.com", [])
    assert status.startswith("550 5.1.1 <bob@strict.com>")
    status = await handler.handle_RCPT(None, session, envelope, "bob@unknown.org", [])
    assert status.endswith("unmanaged domain")
    status = await handler.handle_RCPT(None, session, envelope, "Bob@Example.com", [])
    assert status == "250 OK"

    assert envelope.rcpt_tos == ["Bob@Example.com"]
    assert b"gmg_rejected_recipients_total 2.0" in metrics.generate_latest()


@pytest.mark.asyncio
async def test_handle_data_enqueues_message():
    queue = asyncio.Queue()
    handler = GatewayHandler(StaticCache(make_settings()), queue)
    session = make_session()

    status = await handler.handle_DATA(None, session, make_envelope("bob@example.com", "carol@example.com"))
    assert status.startswith("250 2.0.0 Ok: queued as ")

    message = queue.get_nowait()
    assert status.endswith(message.transaction_id)
    assert message.sender == "alice@sender.org"
    assert message.recipients == ("bob@example.com", "carol@example.com")
    assert message.raw == RAW
    assert message.peer_ip == "192.0.2.7"
    assert message.session_id == handler.session_id(session)


@pytest.mark.asyncio
async def test_session_id_is_stable_per_session():
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue())
    first, second = make_session(), make_session()
    assert handler.session_id(first) == handler.session_id(first)
    assert handler.session_id(first) != handler.session_id(second)


@pytest.mark.asyncio
async def test_handle_data_without_recipients():
    queue = asyncio.Queue()
    handler = GatewayHandler(StaticCache(make_settings()), queue)
    status = await handler.handle_DATA(None, make_session(), make_envelope())
    assert status.startswith("554")
    assert queue.empty()


@pytest.mark.asyncio
async def test_handle_data_refused_by_check():
    queue = asyncio.Queue()
    metrics = GatewayMetrics()
    settings = make_settings().model_copy(update={"enable_spf_check": True})
    handler = GatewayHandler(StaticCache(settings), queue, CheckRunner([RefuseAll()]), metrics=metrics)

    status = await handler.handle_DATA(None, make_session(), make_envelope("bob@example.com"))
    assert status == "550 5.7.1 Message rejected by spf check"
    assert queue.empty()
    assert b'gmg_check_failures_total{check="spf"} 1.0' in metrics.generate_latest()


@pytest.mark.asyncio
async def test_refused_message_is_written_to_spam_log(tmp_path):
    store = SettingsStore(str(tmp_path / "gw.db"))
    await store.init_db()
    settings = make_settings().model_copy(update={"enable_spf_check": True})
    handler = GatewayHandler(StaticCache(settings), asyncio.Queue(), CheckRunner([RefuseAll()]), audit=AuditLog(store))
    session = make_session()

    status = await handler.handle_DATA(None, session, make_envelope("bob@example.com", "carol@example.com"))
    assert status.startswith("550 5.7.1")

    (entry,) = await store.list_spam_logs()
    assert entry["session_id"] == handler.session_id(session)
    assert entry["sender"] == "alice@sender.org"
    assert entry["recipients"] == "bob@example.com, carol@example.com"
    assert entry["subject"] == "hi"
    assert entry["ip"] == "192.0.2.7"
    assert entry["check_name"] == "spf"
    assert entry["blob_path"] is None


@pytest.mark.asyncio
async def test_handle_data_full_queue_defers():
    queue = asyncio.Queue(maxsize=1)
    queue.put_nowait(object())
    handler = GatewayHandler(StaticCache(make_settings()), queue, put_timeout=0.05)
    status = await handler.handle_DATA(None, make_session(), make_envelope("bob@example.com"))
    assert status.startswith("451 4.3.2")
    assert queue.qsize() == 1


async def start_listener(handler, session_timeout=30.0):
    listener = SmtpListener(
        handler, ports=(0,), host="127.0.0.1", hostname="mx.test", session_timeout=session_timeout
    )
    task = asyncio.create_task(listener.serve())
    await asyncio.wait_for(listener.wait_ready(), timeout=5)
    return listener, task


def client(listener):
    return aiosmtplib.SMTP(hostname="127.0.0.1", port=listener.bound_ports[0], start_tls=False, use_tls=False, timeout=5)


@pytest.mark.asyncio
async def test_listener_end_to_end():
    queue = asyncio.Queue()
    handler = GatewayHandler(StaticCache(make_settings()), queue)
    listener, task = await start_listener(handler)
    try:
        smtp = client(listener)
        await smtp.connect()
        errors, response = await smtp.sendmail(
            "alice@sender.org", ["bob@example.com", "eve@strict.com"], RAW
        )
        await smtp.quit()
    finally:
        await listener.stop()
        await asyncio.wait_for(task, timeout=5)

    assert "queued as" in response
    assert set(errors) == {"eve@strict.com"}
    assert errors["eve@strict.com"][0] == 550

    message = queue.get_nowait()
    assert message.recipients == ("bob@example.com",)
    assert message.peer_ip == "127.0.0.1"
    assert b"Subject: hi" in message.raw


@pytest.mark.asyncio
async def test_listener_waits_for_open_sessions_on_stop():
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue())
    listener, task = await start_listener(handler)
    smtp = client(listener)
    await smtp.connect()
    await smtp.ehlo()

    await listener.stop()
    await asyncio.sleep(0.2)
    assert not task.done()
    assert listener.active_sessions == 1

    await smtp.quit()
    await asyncio.wait_for(task, timeout=5)
    assert listener.active_sessions == 0
    assert listener.bound_ports == []


@pytest.mark.asyncio
async def test_stop_keeps_open_transaction_until_it_completes():
    queue = asyncio.Queue()
    handler = GatewayHandler(StaticCache(make_settings()), queue)
    listener, task = await start_listener(handler)
    smtp = client(listener)
    await smtp.connect()
    await smtp.ehlo()
    await smtp.mail("alice@sender.org")
    await smtp.rcpt("bob@example.com")

    await listener.stop()
    await asyncio.sleep(0.5)
    assert not task.done()
    assert listener.active_sessions == 1

    response = await smtp.data(RAW)
    assert response.code == 250
    await smtp.quit()
    await asyncio.wait_for(task, timeout=5)

    assert listener.active_sessions == 0
    assert queue.get_nowait().recipients == ("bob@example.com",)


@pytest.mark.asyncio
async def test_idle_session_is_closed_by_session_timeout_during_stop():
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue())
    listener, task = await start_listener(handler, session_timeout=0.3)
    smtp = client(listener)
    await smtp.connect()

    await listener.stop()
    await asyncio.wait_for(task, timeout=5)
    assert listener.active_sessions == 0
    smtp.close()


@pytest.mark.asyncio
async def test_cancel_closes_open_sessions():
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue())
    listener, task = await start_listener(handler)
    smtp = client(listener)
    await smtp.connect()
    await smtp.ehlo()

    await listener.stop()
    await asyncio.sleep(0.1)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.1)
    assert listener.active_sessions == 0
    smtp.close()


@pytest.mark.asyncio
async def test_listener_stops_when_cancelled():
    handler = GatewayHandler(StaticCache(make_settings()), asyncio.Queue())
    listener, task = await start_listener(handler)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task
    assert listener.bound_ports == []
