# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models for the gateway settings and domain routing configuration.

The settings live in a single store record (scope ``SmtpServer``, id
``Current``) whose field names are the PascalCase keys listed in
``FIELD_DEFAULTS``. ``ServerSettings.from_record`` turns that record into an
immutable snapshot; consumers never mutate it, the next refresh replaces it.

Models:
    - CatchAllType: Policy for recipients without a forwarding rule.
    - ForwardingRule: One ``IncomingEmail -> DestinationEmail`` mapping.
    - CatchAll: Catch-all action of a domain.
    - DomainConfig: One managed domain, as serialized in ``DomainsJson``.
    - ServerSettings: Process-wide configuration snapshot.
"""

from __future__ import annotations

import json
from collections import Counter
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

SETTINGS_SCOPE = "SmtpServer"
SETTINGS_ID = "Current"

FIELD_DEFAULTS: dict[str, Any] = {
    "ServerName": "localhost",
    "ServerPorts": "25",
    "ServerNameAsDomain": False,
    "EnableSpamFiltering": False,
    "SpamhausKey": "",
    "EnableSpfCheck": False,
    "EnableDkimCheck": False,
    "EnableDmarcCheck": False,
    "SendGridApiKey": "",
    "SendGridFromEmail": "",
    "SendGridHost": "",
    "SendGridPort": 587,
    "SendGridUser": "",
    "SendGridPass": "",
    "DomainsJson": "",
    "DoNotSaveMessages": False,
    "RestartRequested": "",
}
"""Recognized record fields and the defaults injected when they are missing."""

SECRET_FIELDS = frozenset({"SpamhausKey", "SendGridApiKey", "SendGridPass"})

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off", ""}


class CatchAllType(IntEnum):
    """Action applied to recipients that match no forwarding rule.

    The integer values are the wire values written by the settings editor.
    """

    REJECT = 0
    DELETE = 1
    FORWARD = 2
    NONE = 3

    @classmethod
    def coerce(cls, value: Any) -> CatchAllType:
        """Accept enum members, integer wire values or names (any case)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, bool):
            raise ValueError(f"invalid catch-all type: {value!r}")
        if isinstance(value, int):
            return cls(value)
        if isinstance(value, str):
            text = value.strip()
            if text.isdigit():
                return cls(int(text))
            try:
                return cls[text.upper()]
            except KeyError:
                raise ValueError(f"unknown catch-all type: {value!r}") from None
        raise ValueError(f"invalid catch-all type: {value!r}")


class ForwardingRule(BaseModel):
    """Forward mail addressed to ``incoming_email`` to ``destination_email``."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    incoming_email: str = Field(default="", alias="IncomingEmail")
    destination_email: str = Field(default="", alias="DestinationEmail")

    @field_validator("incoming_email", "destination_email", mode="before")
    @classmethod
    def _strip(cls, v: Any) -> str:
        return "" if v is None else str(v).strip()


class CatchAll(BaseModel):
    """Catch-all policy of a domain."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    type: CatchAllType = Field(default=CatchAllType.NONE, alias="Type")
    forward_to_email: str | None = Field(default=None, alias="ForwardToEmail")

    @field_validator("type", mode="before")
    @classmethod
    def _coerce_type(cls, v: Any) -> CatchAllType:
        if v is None:
            return CatchAllType.NONE
        return CatchAllType.coerce(v)

    @field_validator("forward_to_email", mode="before")
    @classmethod
    def _strip_target(cls, v: Any) -> str | None:
        if v is None:
            return None
        return str(v).strip() or None


class DomainConfig(BaseModel):
    """One managed domain with its ordered forwarding rules and catch-all."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    domain_name: str = Field(alias="DomainName", min_length=1)
    forwarding_rules: tuple[ForwardingRule, ...] = Field(default=(), alias="ForwardingRules")
    catch_all: CatchAll = Field(default_factory=CatchAll, alias="CatchAll")

    @field_validator("domain_name", mode="before")
    @classmethod
    def _normalise_domain(cls, v: Any) -> str:
        return "" if v is None else str(v).strip().lstrip("@")

    @field_validator("forwarding_rules", mode="before")
    @classmethod
    def _rules_default(cls, v: Any) -> Any:
        return () if v is None else v

    @field_validator("catch_all", mode="before")
    @classmethod
    def _catch_all_default(cls, v: Any) -> Any:
        return CatchAll() if v is None else v


def parse_domains(domains_json: str | None) -> tuple[tuple[DomainConfig, ...], list[str]]:
    """Deserialize ``DomainsJson``, skipping entries that do not validate.

    Returns:
        Tuple of (domains, warnings). A malformed document yields no domains
        and a single warning; it never raises.
    """
    if not domains_json or not domains_json.strip():
        return (), []
    try:
        data = json.loads(domains_json)
    except json.JSONDecodeError as exc:
        return (), [f"DomainsJson is not valid JSON: {exc}"]
    if not isinstance(data, list):
        return (), ["DomainsJson must be a JSON array of domain configurations"]

    domains: list[DomainConfig] = []
    warnings: list[str] = []
    for index, item in enumerate(data):
        try:
            domains.append(DomainConfig.model_validate(item))
        except ValidationError as exc:
            reasons = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'entry'}: {err['msg']}" for err in exc.errors()
            )
            warnings.append(f"Skipping domain entry #{index}: {reasons}")
    return tuple(domains), warnings


def find_config_warnings(domains: tuple[DomainConfig, ...]) -> list[str]:
    """Return configuration smells that are flagged at load time only."""
    warnings: list[str] = []
    names = Counter(d.domain_name.lower() for d in domains)
    for name, count in names.items():
        if count > 1:
            warnings.append(f"Domain {name} is configured {count} times; the first entry wins")

    for domain in domains:
        incoming = Counter(r.incoming_email.lower() for r in domain.forwarding_rules)
        for address, count in incoming.items():
            if count > 1:
                warnings.append(
                    f"Domain {domain.domain_name}: {count} forwarding rules for {address}; the first one wins"
                )
        if domain.catch_all.type is CatchAllType.FORWARD and not domain.catch_all.forward_to_email:
            warnings.append(
                f"Domain {domain.domain_name}: catch-all type is Forward but ForwardToEmail is empty"
            )
        if domain.catch_all.type is CatchAllType.NONE and not domain.forwarding_rules:
            warnings.append(
                f"Domain {domain.domain_name}: no forwarding rules and no catch-all; mail is archived only"
            )
    return warnings


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    normalized = str(value).strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    return False


def _as_str(value: Any) -> str:
    return "" if value is None else str(value).strip()


def parse_ports(value: Any) -> tuple[tuple[int, ...], list[str]]:
    """Parse a comma separated port list, defaulting to port 25."""
    warnings: list[str] = []
    ports: list[int] = []
    if isinstance(value, int) and not isinstance(value, bool):
        tokens = [str(value)]
    else:
        tokens = [t.strip() for t in _as_str(value).split(",") if t.strip()]
    for token in tokens:
        try:
            port = int(token)
        except ValueError:
            warnings.append(f"Ignoring invalid port {token!r} in ServerPorts")
            continue
        if not 0 <= port <= 65535:
            warnings.append(f"Ignoring out of range port {port} in ServerPorts")
            continue
        if port not in ports:
            ports.append(port)
    return (tuple(ports) or (25,)), warnings


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp into an aware UTC datetime, or None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value).strip().replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Format a timestamp the way it is stored in the settings record."""
    return value.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class ServerSettings(BaseModel):
    """Immutable process-wide configuration snapshot."""

    model_config = ConfigDict(frozen=True)

    server_name: str = "localhost"
    server_ports: tuple[int, ...] = (25,)
    server_name_as_domain: bool = False
    enable_spam_filtering: bool = False
    spamhaus_key: str = ""
    enable_spf_check: bool = False
    enable_dkim_check: bool = False
    enable_dmarc_check: bool = False
    sendgrid_api_key: str = ""
    sendgrid_from_email: str = ""
    sendgrid_host: str = ""
    sendgrid_port: int = 587
    sendgrid_user: str = ""
    sendgrid_pass: str = ""
    domains_json: str = ""
    domains: tuple[DomainConfig, ...] = ()
    do_not_save_messages: bool = False
    restart_requested: datetime | None = None
    config_warnings: tuple[str, ...] = ()

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ServerSettings:
        """Build a snapshot from a store record, defaults filling the gaps.

        Malformed values never raise: they fall back to the default and a
        warning is kept in ``config_warnings``.
        """
        data = dict(FIELD_DEFAULTS)
        data.update({k: v for k, v in record.items() if k in FIELD_DEFAULTS})
        warnings: list[str] = []

        ports, port_warnings = parse_ports(data["ServerPorts"])
        warnings.extend(port_warnings)

        try:
            sendgrid_port = int(data["SendGridPort"] or FIELD_DEFAULTS["SendGridPort"])
        except (TypeError, ValueError):
            warnings.append(f"Invalid SendGridPort {data['SendGridPort']!r}, using 587")
            sendgrid_port = FIELD_DEFAULTS["SendGridPort"]

        try:
            restart_requested = parse_timestamp(data["RestartRequested"])
        except (TypeError, ValueError):
            warnings.append(f"Invalid RestartRequested {data['RestartRequested']!r}, ignoring it")
            restart_requested = None

        domains_json = _as_str(data["DomainsJson"])
        domains, domain_warnings = parse_domains(domains_json)
        warnings.extend(domain_warnings)
        warnings.extend(find_config_warnings(domains))

        return cls(
            server_name=_as_str(data["ServerName"]),
            server_ports=ports,
            server_name_as_domain=_as_bool(data["ServerNameAsDomain"]),
            enable_spam_filtering=_as_bool(data["EnableSpamFiltering"]),
            spamhaus_key=_as_str(data["SpamhausKey"]),
            enable_spf_check=_as_bool(data["EnableSpfCheck"]),
            enable_dkim_check=_as_bool(data["EnableDkimCheck"]),
            enable_dmarc_check=_as_bool(data["EnableDmarcCheck"]),
            sendgrid_api_key=_as_str(data["SendGridApiKey"]),
            sendgrid_from_email=_as_str(data["SendGridFromEmail"]),
            sendgrid_host=_as_str(data["SendGridHost"]),
            sendgrid_port=sendgrid_port,
            sendgrid_user=_as_str(data["SendGridUser"]),
            sendgrid_pass=_as_str(data["SendGridPass"]),
            domains_json=domains_json,
            domains=domains,
            do_not_save_messages=_as_bool(data["DoNotSaveMessages"]),
            restart_requested=restart_requested,
            config_warnings=tuple(warnings),
        )

    @classmethod
    def defaults(cls) -> ServerSettings:
        """Snapshot made of defaults only, used when the store is unreachable."""
        return cls.from_record({})

    def find_domain(self, domain: str) -> DomainConfig | None:
        """Return the first domain configuration matching ``domain`` (any case)."""
        wanted = domain.lower()
        for config in self.domains:
            if config.domain_name.lower() == wanted:
                return config
        return None

    @property
    def relay_configured(self) -> bool:
        """True when either the SendGrid API or the SMTP relay is configured."""
        return bool(self.sendgrid_api_key or self.sendgrid_host)

    def redacted(self) -> dict[str, Any]:
        """Return a JSON-friendly dump with secrets masked."""
        data = self.model_dump(mode="json", exclude={"domains"})
        for key in ("spamhaus_key", "sendgrid_api_key", "sendgrid_pass"):
            if data.get(key):
                data[key] = "***"
        data["domains"] = [d.model_dump(mode="json", by_alias=True) for d in self.domains]
        return data


__all__ = [
    "FIELD_DEFAULTS",
    "SECRET_FIELDS",
    "SETTINGS_ID",
    "SETTINGS_SCOPE",
    "CatchAll",
    "CatchAllType",
    "DomainConfig",
    "ForwardingRule",
    "ServerSettings",
    "find_config_warnings",
    "format_timestamp",
    "parse_domains",
    "parse_ports",
    "parse_timestamp",
]
