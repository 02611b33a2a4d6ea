import asyncio
import json

import aiosmtplib
import pytest

from mail_gateway.config import GatewayConfig, ListenerConfig, QueueConfig, TimingConfig
from mail_gateway.gateway import MailGateway
from mail_gateway.message import InboundMessage
from mail_gateway.persistence import SettingsStore
from mail_gateway.relay import RelayResponse
from mail_gateway.supervisor import SupervisorState

RAW = b"From: Alice <alice@sender.org>\r\nSubject: hello\r\n\r\nbody\r\n"
DOMAINS = [
    {
        "DomainName": "example.com",
        "ForwardingRules": [{"IncomingEmail": "sales@example.com", "DestinationEmail": "team@other.com"}],
        "CatchAll": {"Type": "None"},
    },
    {"DomainName": "strict.com", "CatchAll": {"Type": "Reject"}},
]


class DummyArchive:
    def __init__(self):
        self.puts = []
        self.containers = 0

    async def ensure_container(self):
        self.containers += 1

    async def put(self, path, content, metadata=None):
        self.puts.append((path, content, metadata))
        return f"archive:{path}"


class BrokenContainerArchive(DummyArchive):
    async def ensure_container(self):
        raise OSError("permission denied")


class DummyRelay:
    name = "dummy"

    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)
        return RelayResponse(202)


def make_config(tmp_path, **overrides):
    config = GatewayConfig(
        db_path=str(tmp_path / "gw.db"),
        timing=TimingConfig(settings_refresh_interval=60, poll_interval=0.02, restart_backoff=0.05, shutdown_timeout=5),
        queue=QueueConfig(size=10, put_timeout=1, workers=2),
        listener=ListenerConfig(host="127.0.0.1", session_timeout=5),
    )
    for key, value in overrides.items():
        setattr(config, key, value)
    return config


async def seed(db_path, **fields):
    store = SettingsStore(db_path)
    await store.init_db()
    record = {"ServerName": "mx.test", "ServerPorts": "0", "DomainsJson": json.dumps(DOMAINS)}
    record.update(fields)
    await store.update_settings(record)
    return store


async def wait_until(predicate, timeout=5.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_end_to_end_store_and_forward(tmp_path):
    config = make_config(tmp_path)
    await seed(config.db_path)
    archive = DummyArchive()
    relay = DummyRelay()
    gateway = MailGateway(config, archive=archive, relay_factory=lambda settings: relay)

    async with gateway:
        await asyncio.wait_for(gateway.supervisor.wait_running(), timeout=5)
        await wait_until(lambda: gateway.status()["ports"])
        port = gateway.status()["ports"][0]

        smtp = aiosmtplib.SMTP(hostname="127.0.0.1", port=port, start_tls=False, use_tls=False, timeout=5)
        await smtp.connect()
        errors, _ = await smtp.sendmail(
            "alice@sender.org", ["bob@example.com", "sales@example.com", "eve@strict.com"], RAW
        )
        await smtp.quit()
        assert set(errors) == {"eve@strict.com"}

        await wait_until(lambda: gateway.delivered == 1)

    assert archive.containers == 1
    path, content, metadata = archive.puts[0]
    assert path.startswith("example.com/bob/")
    assert b"X-SMTP-Server-IP: 127.0.0.1" in content
    assert metadata["Subject"] == "hello"
    assert relay.sent[0].to_email == "team@other.com"
    assert gateway.supervisor.state is SupervisorState.STOPPED

    logs = await gateway.audit.recent(limit=50)
    messages = [entry["message"] for entry in logs]
    assert "Mail gateway stopped" in messages
    assert any(m.startswith("SMTP listener started for mx.test") for m in messages)


@pytest.mark.asyncio
async def test_restart_request_recycles_listener(tmp_path):
    config = make_config(tmp_path)
    await seed(config.db_path)
    built = []

    gateway = MailGateway(config, archive=DummyArchive())
    original_factory = gateway.build_listener

    def factory(settings):
        listener = original_factory(settings)
        built.append(listener)
        return listener

    gateway.supervisor.listener_factory = factory

    async with gateway:
        await gateway.supervisor.wait_running()
        await wait_until(lambda: gateway.supervisor._seeded)
        await gateway.request_restart()
        await wait_until(lambda: len(built) == 2 and gateway.supervisor.state is SupervisorState.RUNNING)
        await asyncio.sleep(0.1)
        assert gateway.supervisor.restarts == 1
        assert len(built) == 2


@pytest.mark.asyncio
async def test_deliver_uses_current_settings(tmp_path):
    config = make_config(tmp_path)
    store = await seed(config.db_path, DoNotSaveMessages=True)
    archive = DummyArchive()
    gateway = MailGateway(config, store=store, archive=archive, listener_factory=lambda s: None)

    message = InboundMessage(sender="a@b.c", recipients=("bob@example.com",), raw=RAW)
    outcomes = await gateway.deliver(message)
    assert [o.status for o in outcomes] == ["suppressed"]
    assert archive.puts == []


@pytest.mark.asyncio
async def test_stop_drains_queued_messages(tmp_path):
    config = make_config(tmp_path)
    await seed(config.db_path)
    archive = DummyArchive()
    gateway = MailGateway(config, archive=archive)

    await gateway.start()
    for i in range(3):
        gateway.queue.put_nowait(
            InboundMessage(sender="a@b.c", recipients=(f"user{i}@example.com",), raw=RAW, transaction_id=str(i))
        )
    await gateway.stop(timeout=5)

    assert len(archive.puts) == 3
    assert gateway.queue.empty()
    assert gateway.status()["workers"] == 0


@pytest.mark.asyncio
async def test_archive_container_failure_is_audited(tmp_path):
    config = make_config(tmp_path)
    gateway = MailGateway(config, archive=BrokenContainerArchive(), listener_factory=lambda s: None)
    await gateway.init()
    logs = await gateway.audit.recent(level="Warning")
    assert logs[0]["message"] == "Could not ensure the archive container exists"


@pytest.mark.asyncio
async def test_status_shape(tmp_path):
    gateway = MailGateway(make_config(tmp_path), archive=DummyArchive())
    status = gateway.status()
    assert status["state"] == "stopped"
    assert status["queue_size"] == 10
    assert status["queue_depth"] == 0
    assert status["workers"] == 0
    assert status["ports"] == []


@pytest.mark.asyncio
async def test_restart_waits_for_open_transaction(tmp_path):
    config = make_config(tmp_path)
    await seed(config.db_path)
    archive = DummyArchive()
    built = []
    gateway = MailGateway(config, archive=archive)
    original_factory = gateway.build_listener

    def factory(settings):
        listener = original_factory(settings)
        built.append(listener)
        return listener

    gateway.supervisor.listener_factory = factory

    async with gateway:
        await gateway.supervisor.wait_running()
        await wait_until(lambda: gateway.supervisor._seeded and built[0].bound_ports)
        smtp = aiosmtplib.SMTP(
            hostname="127.0.0.1", port=built[0].bound_ports[0], start_tls=False, use_tls=False, timeout=5
        )
        await smtp.connect()
        await smtp.ehlo()
        await smtp.mail("alice@sender.org")
        await smtp.rcpt("bob@example.com")

        await gateway.request_restart()
        await wait_until(lambda: gateway.supervisor.state is SupervisorState.DRAINING)
        await asyncio.sleep(0.3)
        assert len(built) == 1
        assert built[0].active_sessions == 1

        response = await smtp.data(RAW)
        assert response.code == 250
        await smtp.quit()

        await wait_until(lambda: len(built) == 2 and gateway.supervisor.state is SupervisorState.RUNNING)
        await wait_until(lambda: gateway.delivered == 1)

    assert archive.puts[0][0].startswith("example.com/bob/")


@pytest.mark.asyncio
async def test_stop_timeout_closes_open_sessions(tmp_path):
    config = make_config(tmp_path)
    await seed(config.db_path)
    built = []
    gateway = MailGateway(config, archive=DummyArchive())
    original_factory = gateway.build_listener

    def factory(settings):
        listener = original_factory(settings)
        built.append(listener)
        return listener

    gateway.supervisor.listener_factory = factory

    await gateway.start()
    await gateway.supervisor.wait_running()
    await wait_until(lambda: built and built[0].bound_ports)
    smtp = aiosmtplib.SMTP(hostname="127.0.0.1", port=built[0].bound_ports[0], start_tls=False, use_tls=False, timeout=5)
    await smtp.connect()
    await smtp.ehlo()

    await asyncio.wait_for(gateway.stop(timeout=0.5), timeout=5)
    await wait_until(lambda: built[0].active_sessions == 0)
    assert gateway.supervisor.state is SupervisorState.STOPPED
    smtp.close()
