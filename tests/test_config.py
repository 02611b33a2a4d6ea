from mail_gateway.config import GatewayConfig, load_config


def test_load_config_defaults(tmp_path):
    config = load_config(tmp_path / "missing.ini", environ={})
    assert config == GatewayConfig()
    assert config.listener.host is None
    assert config.api.token is None


def test_load_config_from_ini(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text(
        """
[storage]
db_path = /tmp/gw.db

[timing]
refresh_interval = 10
poll_interval = 0.5
restart_backoff = 2
shutdown_timeout = 15

[queue]
size = 50
put_timeout = 1.5
workers = 2

[smtp]
host = 127.0.0.1
data_size_limit = 1024
session_timeout = 3

[archive]
volume = mail
type = local
path = /tmp/archive
prefix = inbox

[server]
host = 127.0.0.1
port = 9000
api_token = secret

[logging]
level = debug
"""
    )
    config = load_config(config_file, environ={})
    assert config.db_path == "/tmp/gw.db"
    assert config.timing.settings_refresh_interval == 10.0
    assert config.timing.poll_interval == 0.5
    assert config.timing.restart_backoff == 2.0
    assert config.timing.shutdown_timeout == 15.0
    assert config.queue.size == 50
    assert config.queue.put_timeout == 1.5
    assert config.queue.workers == 2
    assert config.listener.host == "127.0.0.1"
    assert config.listener.data_size_limit == 1024
    assert config.listener.session_timeout == 3.0
    assert config.archive.volume == "mail"
    assert config.archive.path == "/tmp/archive"
    assert config.archive.prefix == "inbox"
    assert config.api.host == "127.0.0.1"
    assert config.api.port == 9000
    assert config.api.token == "secret"
    assert config.log_level == "DEBUG"


def test_environment_is_a_fallback(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text("[queue]\nsize = 20\n")
    env = {
        "MGW_QUEUE_SIZE": "999",
        "MGW_WORKERS": "8",
        "MGW_DB_PATH": "/var/lib/gw.db",
        "MGW_API_TOKEN": "  ",
        "MGW_SMTP_HOST": "",
        "MGW_POLL_INTERVAL": "1",
    }
    config = load_config(config_file, environ=env)
    assert config.queue.size == 20
    assert config.queue.workers == 8
    assert config.db_path == "/var/lib/gw.db"
    assert config.api.token is None
    assert config.listener.host is None
    assert config.timing.poll_interval == 1.0


def test_config_path_from_environment(tmp_path):
    config_file = tmp_path / "custom.ini"
    config_file.write_text("[server]\nport = 8123\n")
    config = load_config(environ={"MGW_CONFIG": str(config_file)})
    assert config.api.port == 8123
