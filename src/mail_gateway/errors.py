# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by the mail gateway."""


class GatewayError(RuntimeError):
    """Base class of the gateway's own errors."""

    code = "gateway_error"


class ListenerStopped(GatewayError):
    """Raised when the SMTP listener ends without having been asked to stop."""

    code = "listener_stopped"

    def __init__(self, message: str = "SMTP listener stopped unexpectedly"):
        super().__init__(message)


class RelayNotConfigured(GatewayError):
    """Raised when a message must be forwarded but no relay is configured."""

    code = "relay_not_configured"

    def __init__(self, message: str = "no relay configured"):
        super().__init__(message)
