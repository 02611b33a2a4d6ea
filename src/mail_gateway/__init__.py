"""Inbound SMTP gateway with configuration-driven routing and hot reload.

This package accepts mail over SMTP and, for every recipient, decides whether
to archive the message, forward it through a relay, drop it or reject it:

- Per-domain forwarding rules and catch-all policies stored in SQLite
- Time-bounded, single-flight settings cache with self-healing defaults
- Archival to genro-storage volumes (local, S3, GCS, Azure Blob, ...)
- Forwarding via the SendGrid HTTP API or an SMTP relay
- Listener recycling on a polled restart signal, with crash-only recovery
- Prometheus metrics and a FastAPI control API

Example:
    Basic usage with the FastAPI application::

        from mail_gateway.gateway import MailGateway
        from mail_gateway.api import create_app

        gateway = MailGateway()
        app = create_app(gateway, api_token="secret")
"""
