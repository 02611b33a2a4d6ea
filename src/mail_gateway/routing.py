# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Per-recipient routing decisions.

``resolve`` maps a recipient address and a settings snapshot to a delivery
verdict. It is pure: no I/O, no logging, no dependence on anything but its
two arguments, so calling it twice with the same inputs gives equal results.

Resolution order:
    1. Split the address; a missing local part or domain is rejected.
    2. Find the first domain configuration with the same name (any case).
       Unknown domains are rejected, except the server's own name when the
       legacy single-domain mode is enabled.
    3. The first forwarding rule whose incoming address matches wins,
       whatever the catch-all says.
    4. Otherwise the domain catch-all decides.
"""

from __future__ import annotations

from dataclasses import dataclass
from email.utils import parseaddr
from typing import Union

from .models import CatchAllType, ServerSettings


@dataclass(frozen=True)
class StoreLocal:
    """Archive the message under ``{domain}/{user}``."""

    domain: str
    user: str

    @property
    def action(self) -> str:
        return "store"


@dataclass(frozen=True)
class Forward:
    """Relay the message to ``destination``."""

    destination: str

    @property
    def action(self) -> str:
        return "forward"


@dataclass(frozen=True)
class Drop:
    """Accept and discard the message."""

    @property
    def action(self) -> str:
        return "drop"


@dataclass(frozen=True)
class Reject:
    """Refuse the recipient."""

    reason: str = "rejected"

    @property
    def action(self) -> str:
        return "reject"


DeliveryVerdict = Union[StoreLocal, Forward, Drop, Reject]

MALFORMED_ADDRESS = "malformed address"
UNMANAGED_DOMAIN = "unmanaged domain"
CATCH_ALL_REJECT = "rejected by catch-all policy"


def split_address(address: str) -> tuple[str, str] | None:
    """Return ``(local, domain)`` lowercased, or None when malformed."""
    _, addr = parseaddr(address or "")
    addr = addr.strip()
    if addr.startswith("<") and addr.endswith(">"):
        addr = addr[1:-1]
    local, sep, domain = addr.rpartition("@")
    if not sep or not local or not domain:
        return None
    return local.lower(), domain.lower()


def resolve(recipient: str, settings: ServerSettings) -> DeliveryVerdict:
    """Compute the delivery verdict for one recipient."""
    parts = split_address(recipient)
    if parts is None:
        return Reject(MALFORMED_ADDRESS)
    local, domain = parts
    address = f"{local}@{domain}"

    config = settings.find_domain(domain)
    if config is None:
        if settings.server_name_as_domain and domain == settings.server_name.lower():
            return StoreLocal(domain, local)
        return Reject(UNMANAGED_DOMAIN)

    for rule in config.forwarding_rules:
        if rule.incoming_email.lower() == address and rule.destination_email:
            return Forward(rule.destination_email)

    catch_all = config.catch_all
    if catch_all.type is CatchAllType.REJECT:
        return Reject(CATCH_ALL_REJECT)
    if catch_all.type is CatchAllType.DELETE:
        return Drop()
    if catch_all.type is CatchAllType.FORWARD and catch_all.forward_to_email:
        return Forward(catch_all.forward_to_email)
    # None, or Forward without a target: keep the message.
    return StoreLocal(domain, local)


__all__ = [
    "DeliveryVerdict",
    "Drop",
    "Forward",
    "Reject",
    "StoreLocal",
    "resolve",
    "split_address",
]
