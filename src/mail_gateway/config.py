# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Process configuration for the mail gateway.

This is the static configuration of the process (where the database lives,
how often to poll, where to bind). The runtime settings that can change
without a restart live in the settings record, see ``models.ServerSettings``.

Provides nested configuration structure for clean parameter organization:
- config.timing.poll_interval
- config.queue.size
- config.listener.host
"""

from __future__ import annotations

import configparser
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping


@dataclass
class TimingConfig:
    """Timing and interval settings."""

    settings_refresh_interval: float = 60.0
    """Maximum age in seconds of the cached settings snapshot."""

    poll_interval: float = 5.0
    """Seconds between two reads of ``RestartRequested``."""

    restart_backoff: float = 5.0
    """Seconds to wait after a failed listener cycle."""

    shutdown_timeout: float = 30.0
    """Upper bound in seconds for a graceful stop."""


@dataclass
class QueueConfig:
    """Delivery queue settings."""

    size: int = 1000
    """Maximum number of accepted messages waiting for a worker."""

    put_timeout: float = 5.0
    """Seconds the SMTP handler waits for room in a full queue."""

    workers: int = 4
    """Number of concurrent delivery workers."""


@dataclass
class ListenerConfig:
    """SMTP listener settings (ports and hostname come from the settings record)."""

    host: str | None = None
    """Bind address; None binds all interfaces."""

    data_size_limit: int = 33554432
    """Maximum accepted message size in bytes."""

    session_timeout: float = 300.0
    """Idle seconds before aiosmtpd closes an SMTP session."""


@dataclass
class ArchiveConfig:
    """Archive volume settings (genro-storage)."""

    volume: str = "archive"
    """Name of the storage volume."""

    type: str = "local"
    """genro-storage backend type."""

    path: str = "/data/archive"
    """Base path of a local volume."""

    prefix: str = "email-messages"
    """Container directory inside the volume."""


@dataclass
class ApiConfig:
    """Control API settings."""

    host: str = "0.0.0.0"
    port: int = 8000
    token: str | None = None


@dataclass
class GatewayConfig:
    """Main configuration container for the gateway.

    Example:
        config = GatewayConfig(
            db_path="/data/gateway.db",
            timing=TimingConfig(poll_interval=1.0),
        )
        gateway = MailGateway(config=config)
    """

    db_path: str = "/data/mail_gateway.db"
    """SQLite database path for settings and audit log."""

    timing: TimingConfig = field(default_factory=TimingConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    listener: ListenerConfig = field(default_factory=ListenerConfig)
    archive: ArchiveConfig = field(default_factory=ArchiveConfig)
    api: ApiConfig = field(default_factory=ApiConfig)

    log_level: str = "INFO"


def load_config(path: str | os.PathLike | None = None, environ: Mapping[str, str] | None = None) -> GatewayConfig:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with MGW_):
      MGW_CONFIG - Path to config.ini file (default: config.ini)
      MGW_LOG_LEVEL - Logging level (default: INFO)
      MGW_DB_PATH - Database path (default: /data/mail_gateway.db)
      MGW_REFRESH_INTERVAL - Settings cache refresh interval in seconds (default: 60)
      MGW_POLL_INTERVAL - Restart signal poll interval in seconds (default: 5)
      MGW_RESTART_BACKOFF - Backoff after a listener crash in seconds (default: 5)
      MGW_SHUTDOWN_TIMEOUT - Graceful shutdown bound in seconds (default: 30)
      MGW_QUEUE_SIZE - Delivery queue capacity (default: 1000)
      MGW_PUT_TIMEOUT - Queue put timeout in seconds (default: 5)
      MGW_WORKERS - Delivery workers (default: 4)
      MGW_SMTP_HOST - SMTP bind address (default: all interfaces)
      MGW_DATA_SIZE_LIMIT - Maximum message size in bytes (default: 32 MiB)
      MGW_SESSION_TIMEOUT - Idle SMTP session timeout in seconds (default: 300)
      MGW_ARCHIVE_VOLUME, MGW_ARCHIVE_TYPE, MGW_ARCHIVE_PATH, MGW_ARCHIVE_PREFIX - Archive volume
      MGW_HOST - API host (default: 0.0.0.0)
      MGW_PORT - API port (default: 8000)
      MGW_API_TOKEN - API authentication token

    Config file sections/keys:
      [storage] db_path
      [timing] refresh_interval, poll_interval, restart_backoff, shutdown_timeout
      [queue] size, put_timeout, workers
      [smtp] host, data_size_limit, session_timeout
      [archive] volume, type, path, prefix
      [server] host, port, api_token
      [logging] level
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get("MGW_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(config_path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    defaults = GatewayConfig()
    token = get("server", "api_token", env.get("MGW_API_TOKEN"))
    if isinstance(token, str):
        token = token.strip() or None
    smtp_host = get("smtp", "host", env.get("MGW_SMTP_HOST"))
    if isinstance(smtp_host, str):
        smtp_host = smtp_host.strip() or None

    return GatewayConfig(
        db_path=os.path.expanduser(get("storage", "db_path", env.get("MGW_DB_PATH", defaults.db_path))),
        timing=TimingConfig(
            settings_refresh_interval=get_float(
                "timing", "refresh_interval", env.get("MGW_REFRESH_INTERVAL"), defaults.timing.settings_refresh_interval
            ),
            poll_interval=get_float("timing", "poll_interval", env.get("MGW_POLL_INTERVAL"), defaults.timing.poll_interval),
            restart_backoff=get_float(
                "timing", "restart_backoff", env.get("MGW_RESTART_BACKOFF"), defaults.timing.restart_backoff
            ),
            shutdown_timeout=get_float(
                "timing", "shutdown_timeout", env.get("MGW_SHUTDOWN_TIMEOUT"), defaults.timing.shutdown_timeout
            ),
        ),
        queue=QueueConfig(
            size=get_int("queue", "size", env.get("MGW_QUEUE_SIZE"), defaults.queue.size),
            put_timeout=get_float("queue", "put_timeout", env.get("MGW_PUT_TIMEOUT"), defaults.queue.put_timeout),
            workers=get_int("queue", "workers", env.get("MGW_WORKERS"), defaults.queue.workers),
        ),
        listener=ListenerConfig(
            host=smtp_host,
            data_size_limit=get_int(
                "smtp", "data_size_limit", env.get("MGW_DATA_SIZE_LIMIT"), defaults.listener.data_size_limit
            ),
            session_timeout=get_float(
                "smtp", "session_timeout", env.get("MGW_SESSION_TIMEOUT"), defaults.listener.session_timeout
            ),
        ),
        archive=ArchiveConfig(
            volume=get("archive", "volume", env.get("MGW_ARCHIVE_VOLUME", defaults.archive.volume)),
            type=get("archive", "type", env.get("MGW_ARCHIVE_TYPE", defaults.archive.type)),
            path=os.path.expanduser(get("archive", "path", env.get("MGW_ARCHIVE_PATH", defaults.archive.path))),
            prefix=get("archive", "prefix", env.get("MGW_ARCHIVE_PREFIX", defaults.archive.prefix)),
        ),
        api=ApiConfig(
            host=get("server", "host", env.get("MGW_HOST", defaults.api.host)),
            port=get_int("server", "port", env.get("MGW_PORT"), defaults.api.port),
            token=token,
        ),
        log_level=(get("logging", "level", env.get("MGW_LOG_LEVEL", defaults.log_level)) or "INFO").upper(),
    )


__all__ = [
    "ApiConfig",
    "ArchiveConfig",
    "GatewayConfig",
    "ListenerConfig",
    "QueueConfig",
    "TimingConfig",
    "load_config",
]
