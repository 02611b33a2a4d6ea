# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI application factory for the mail gateway control API.

The API is the operations surface of a running gateway:

- ``GET /health``: liveness probe (no authentication)
- ``GET /status``: supervisor state, restart marker and queue depth
- ``GET /settings`` / ``PUT /settings``: read (secrets masked) or merge the
  runtime settings record
- ``GET /logs``: newest audit log entries
- ``GET /spam-logs``: messages refused by an inbound check
- ``POST /restart``: ask the supervisor to recycle the SMTP listener
- ``GET /metrics``: Prometheus exposition

Every endpoint but ``/health`` requires the ``X-API-Token`` header when a
token is configured.

Example:
    Creating and running the API application::

        from mail_gateway.gateway import MailGateway
        from mail_gateway.api import create_app

        gateway = MailGateway()
        app = create_app(gateway, api_token="secret-token")
        uvicorn.run(app, host="0.0.0.0", port=8000)
"""

from __future__ import annotations

import logging
from typing import Any, AsyncContextManager, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from prometheus_client import CONTENT_TYPE_LATEST
from pydantic import BaseModel

from .gateway import MailGateway
from .models import FIELD_DEFAULTS, ServerSettings

logger = logging.getLogger(__name__)

app = FastAPI(title="Mail Gateway")
service: MailGateway | None = None
API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)
app.state.api_token = None


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token is configured the dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class CommandStatus(BaseModel):
    ok: bool
    error: Optional[str] = None


class StatusResponse(CommandStatus):
    state: str
    marker: Optional[str] = None
    restarts: int = 0
    crashes: int = 0
    queue_depth: int = 0
    queue_size: int = 0
    workers: int = 0
    delivered: int = 0
    ports: List[int] = []


class SettingsResponse(CommandStatus):
    settings: Dict[str, Any]


class SettingsUpdateResponse(CommandStatus):
    updated: List[str]
    warnings: List[str] = []


class LogEntry(BaseModel):
    id: int
    timestamp: str
    level: str
    message: str
    exception: Optional[str] = None
    source: Optional[str] = None


class LogsResponse(CommandStatus):
    logs: List[LogEntry]


class SpamLogEntry(BaseModel):
    day: str
    row_key: str
    timestamp: str
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    sender: Optional[str] = None
    recipients: Optional[str] = None
    subject: Optional[str] = None
    blob_path: Optional[str] = None
    ip: Optional[str] = None
    check_name: Optional[str] = None


class SpamLogsResponse(CommandStatus):
    entries: List[SpamLogEntry]


class RestartResponse(CommandStatus):
    restart_requested: str


def _service() -> MailGateway:
    if not service:
        raise HTTPException(500, "Service not initialized")
    return service


def create_app(
    svc: MailGateway,
    api_token: str | None = None,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        The :class:`mail_gateway.gateway.MailGateway` served by the API.
    api_token:
        Optional secret protecting every endpoint but ``/health``.
    lifespan:
        Optional lifespan context manager for startup/shutdown events.
    """
    global service
    service = svc

    if lifespan is not None:
        api = FastAPI(title="Mail Gateway", lifespan=lifespan)
    else:
        api = app
    api.state.api_token = api_token

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, dependencies=[auth_dependency])
    async def gateway_status():
        return StatusResponse(ok=True, **_service().status())

    @api.get("/settings", response_model=SettingsResponse, dependencies=[auth_dependency])
    async def get_settings():
        """Current settings snapshot with secrets masked."""
        settings = await _service().cache.get()
        return SettingsResponse(ok=True, settings=settings.redacted())

    @api.put("/settings", response_model=SettingsUpdateResponse, dependencies=[auth_dependency])
    async def update_settings(payload: Dict[str, Any]):
        """Merge recognized fields into the settings record.

        Changes reach the running gateway on the next cache refresh; a
        restart is needed for ports and server name.
        """
        svc = _service()
        unknown = sorted(set(payload) - set(FIELD_DEFAULTS))
        if unknown:
            raise HTTPException(422, f"Unknown settings field(s): {', '.join(unknown)}")
        payload.pop("RestartRequested", None)
        stored = await svc.store.update_settings(payload)
        svc.cache.invalidate()
        preview = ServerSettings.from_record(stored)
        logger.info("Settings updated via API: %s", ", ".join(sorted(payload)))
        return SettingsUpdateResponse(ok=True, updated=sorted(payload), warnings=list(preview.config_warnings))

    @api.get("/logs", response_model=LogsResponse, dependencies=[auth_dependency])
    async def list_logs(limit: int = Query(100, ge=1, le=1000), level: Optional[str] = None):
        entries = await _service().audit.recent(limit=limit, level=level)
        return LogsResponse(ok=True, logs=[LogEntry(**entry) for entry in entries])

    @api.get("/spam-logs", response_model=SpamLogsResponse, dependencies=[auth_dependency])
    async def list_spam_logs(limit: int = Query(100, ge=1, le=1000), day: Optional[str] = None):
        """Spam log entries, newest first; ``day`` filters on ``yyyy-MM-dd``."""
        entries = await _service().audit.recent_spam(limit=limit, day=day)
        return SpamLogsResponse(ok=True, entries=[SpamLogEntry(**entry) for entry in entries])

    @api.post("/restart", response_model=RestartResponse, dependencies=[auth_dependency])
    async def restart():
        """Advance ``RestartRequested``; the supervisor picks it up on its next poll."""
        requested = await _service().request_restart()
        return RestartResponse(ok=True, restart_requested=requested.isoformat())

    @api.get("/metrics", dependencies=[auth_dependency])
    async def metrics():
        """Expose Prometheus metrics collected by the gateway."""
        return Response(content=_service().metrics.generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return api
