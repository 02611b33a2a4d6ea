# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""ASGI application entry point for uvicorn.

This module builds a gateway from the process configuration (INI file plus
``MGW_*`` environment variables, see ``config.load_config``) and serves its
control API. The gateway starts and stops with the ASGI lifespan.

Usage:
    uvicorn mail_gateway.server:app --host 0.0.0.0 --port 8000

Environment variables:
    MGW_CONFIG: Path to the INI configuration file (default: config.ini)
    MGW_DB_PATH: Path to SQLite database (default: /data/mail_gateway.db)
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import create_app
from .config import GatewayConfig, load_config
from .gateway import MailGateway
from .logger import configure_logging


def build_app(config: GatewayConfig, gateway: MailGateway | None = None) -> FastAPI:
    """Create the API application for ``gateway`` (built from ``config`` if omitted)."""
    gateway = gateway or MailGateway(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Application lifespan handler - starts and stops the gateway."""
        await gateway.start()
        yield
        await gateway.stop(timeout=config.timing.shutdown_timeout)

    return create_app(gateway, api_token=config.api.token, lifespan=lifespan)


_config = load_config()
configure_logging(_config.log_level)

# Create the configured application
app = build_app(_config)
