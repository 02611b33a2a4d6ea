# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the mail gateway.

The CLI works directly on the gateway database, so it can inspect and edit
the runtime settings whether or not the gateway is running. A running
gateway picks up edits on its next settings refresh; ``restart`` asks it to
recycle the SMTP listener.

Usage:
    mail-gateway serve --port 8000
    mail-gateway settings show
    mail-gateway settings set ServerName mx.example.com
    mail-gateway domains list
    mail-gateway domains import domains.json
    mail-gateway restart
    mail-gateway logs --limit 20

Example:
    $ mail-gateway --db /data/mail_gateway.db settings set DoNotSaveMessages true
    $ mail-gateway --db /data/mail_gateway.db restart
"""

from __future__ import annotations

import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.table import Table

from mail_gateway.config import load_config
from mail_gateway.models import FIELD_DEFAULTS, SECRET_FIELDS, CatchAllType, ServerSettings, parse_domains
from mail_gateway.persistence import SettingsStore

console = Console()
err_console = Console(stderr=True)


def get_store(db_path: str) -> SettingsStore:
    """Create a SettingsStore for the given database path."""
    return SettingsStore(db_path)


def run_async(coro):
    """Run an async coroutine synchronously."""
    return asyncio.run(coro)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    err_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    console.print_json(json.dumps(data, indent=2, default=str))


def coerce_field(key: str, value: str) -> Any:
    """Convert a command-line value to the type of the settings field."""
    default = FIELD_DEFAULTS[key]
    if isinstance(default, bool):
        normalized = value.strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        raise click.BadParameter(f"{key} expects a boolean, got {value!r}")
    if isinstance(default, int):
        try:
            return int(value)
        except ValueError:
            raise click.BadParameter(f"{key} expects an integer, got {value!r}") from None
    return value


async def _load_settings(store: SettingsStore) -> tuple[dict[str, Any], ServerSettings]:
    await store.init_db()
    record = await store.get_settings_record() or {}
    return record, ServerSettings.from_record(record)


@click.group()
@click.option(
    "--db",
    "db_path",
    envvar="MGW_DB_PATH",
    default=None,
    help="Gateway database path (default: from the configuration file).",
)
@click.pass_context
def main(ctx: click.Context, db_path: str | None) -> None:
    """Inbound SMTP gateway administration."""
    ctx.ensure_object(dict)
    ctx.obj["db_path"] = db_path or load_config().db_path


# ============================================================================
# serve
# ============================================================================

@main.command("serve")
@click.option("--host", default=None, help="API bind address.")
@click.option("--port", type=int, default=None, help="API port.")
@click.option("--config", "config_path", type=click.Path(dir_okay=False), default=None, help="INI configuration file.")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None, config_path: str | None) -> None:
    """Run the gateway and its control API in the foreground."""
    import uvicorn

    if config_path:
        os.environ["MGW_CONFIG"] = config_path
    os.environ["MGW_DB_PATH"] = ctx.obj["db_path"]
    config = load_config()
    host = host or config.api.host
    port = port or config.api.port

    console.print("\n[bold cyan]Starting mail gateway[/bold cyan]")
    console.print(f"  DB:      {ctx.obj['db_path']}")
    console.print(f"  API:     {host}:{port}")
    console.print()

    uvicorn.run("mail_gateway.server:app", host=host, port=port, log_level=config.log_level.lower())


# ============================================================================
# settings
# ============================================================================

@main.group("settings", invoke_without_command=True)
@click.pass_context
def settings(ctx: click.Context) -> None:
    """Show or edit the runtime settings record."""
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@settings.command("show")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.option("--show-secrets", is_flag=True, help="Do not mask secret fields.")
@click.pass_context
def settings_show(ctx: click.Context, as_json: bool, show_secrets: bool) -> None:
    """Show the stored settings (defaults fill missing fields)."""
    record, parsed = run_async(_load_settings(get_store(ctx.obj["db_path"])))
    values = dict(FIELD_DEFAULTS)
    values.update({k: v for k, v in record.items() if k in FIELD_DEFAULTS})
    if not show_secrets:
        for key in SECRET_FIELDS:
            if values.get(key):
                values[key] = "***"

    if as_json:
        print_json({"settings": values, "warnings": list(parsed.config_warnings)})
        return

    table = Table(title="Settings")
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_column("Stored", justify="center")
    for key, value in values.items():
        if key == "DomainsJson":
            value = f"{len(parsed.domains)} domain(s)"
        table.add_row(key, str(value), "yes" if key in record else "[dim]default[/dim]")
    console.print(table)
    for warning in parsed.config_warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@settings.command("set")
@click.argument("key")
@click.argument("value")
@click.pass_context
def settings_set(ctx: click.Context, key: str, value: str) -> None:
    """Set one settings field."""
    if key not in FIELD_DEFAULTS:
        print_error(f"Unknown settings field '{key}'. Known fields: {', '.join(FIELD_DEFAULTS)}")
        sys.exit(1)
    if key == "RestartRequested":
        print_error("Use 'mail-gateway restart' to request a restart.")
        sys.exit(1)
    try:
        coerced = coerce_field(key, value)
    except click.BadParameter as exc:
        print_error(str(exc))
        sys.exit(1)

    store = get_store(ctx.obj["db_path"])

    async def _set():
        await store.init_db()
        return await store.update_settings({key: coerced})

    stored = run_async(_set())
    print_success(f"{key} updated.")
    for warning in ServerSettings.from_record(stored).config_warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


# ============================================================================
# domains
# ============================================================================

@main.group("domains", invoke_without_command=True)
@click.pass_context
def domains(ctx: click.Context) -> None:
    """Inspect or replace the managed domains."""
    if ctx.invoked_subcommand is None:
        ctx.invoke(domains_list)


@domains.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def domains_list(ctx: click.Context, as_json: bool = False) -> None:
    """List managed domains with their forwarding rules and catch-all."""
    _, parsed = run_async(_load_settings(get_store(ctx.obj["db_path"])))
    if as_json:
        print_json([d.model_dump(mode="json", by_alias=True) for d in parsed.domains])
        return
    if not parsed.domains:
        console.print("[dim]No domains configured.[/dim]")
        return

    table = Table(title="Domains")
    table.add_column("Domain", style="cyan")
    table.add_column("Forwarding rules")
    table.add_column("Catch-all")
    for domain in parsed.domains:
        rules = "\n".join(f"{r.incoming_email} → {r.destination_email}" for r in domain.forwarding_rules) or "-"
        catch_all = domain.catch_all.type.name.title()
        if domain.catch_all.type is CatchAllType.FORWARD:
            catch_all += f" → {domain.catch_all.forward_to_email or '(missing)'}"
        table.add_row(domain.domain_name, rules, catch_all)
    console.print(table)
    for warning in parsed.config_warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


@domains.command("import")
@click.argument("json_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def domains_import(ctx: click.Context, json_file: Path) -> None:
    """Replace DomainsJson with the content of a JSON file."""
    content = json_file.read_text()
    parsed, warnings = parse_domains(content)
    if warnings and not parsed:
        for warning in warnings:
            print_error(warning)
        sys.exit(1)

    store = get_store(ctx.obj["db_path"])

    async def _import():
        await store.init_db()
        return await store.update_settings({"DomainsJson": content})

    stored = run_async(_import())
    print_success(f"Imported {len(parsed)} domain(s).")
    for warning in ServerSettings.from_record(stored).config_warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")


# ============================================================================
# restart / logs
# ============================================================================

@main.command("restart")
@click.pass_context
def restart(ctx: click.Context) -> None:
    """Ask a running gateway to recycle its SMTP listener."""
    store = get_store(ctx.obj["db_path"])

    async def _restart():
        await store.init_db()
        return await store.request_restart()

    requested = run_async(_restart())
    print_success(f"Restart requested at {requested.isoformat()}.")


@main.command("logs")
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Number of entries.")
@click.option("--level", type=click.Choice(["Info", "Warning", "Error"]), default=None, help="Filter by level.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def logs(ctx: click.Context, limit: int, level: str | None, as_json: bool) -> None:
    """Show the newest audit log entries."""
    store = get_store(ctx.obj["db_path"])

    async def _logs():
        await store.init_db()
        return await store.list_logs(limit=limit, level=level)

    entries = run_async(_logs())
    if as_json:
        print_json(entries)
        return
    if not entries:
        console.print("[dim]No log entries.[/dim]")
        return

    colors = {"Info": "green", "Warning": "yellow", "Error": "red"}
    table = Table(title="Audit log")
    table.add_column("Time", style="dim")
    table.add_column("Level")
    table.add_column("Source", style="cyan")
    table.add_column("Message")
    for entry in entries:
        color = colors.get(entry["level"], "white")
        table.add_row(entry["timestamp"], f"[{color}]{entry['level']}[/{color}]", entry.get("source") or "-", entry["message"])
    console.print(table)


@main.command("spam-logs")
@click.option("--limit", "-n", type=int, default=50, show_default=True, help="Number of entries.")
@click.option("--day", default=None, metavar="YYYY-MM-DD", help="Only entries from this day (UTC).")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def spam_logs(ctx: click.Context, limit: int, day: str | None, as_json: bool) -> None:
    """Show messages refused by an inbound check."""
    store = get_store(ctx.obj["db_path"])

    async def _spam_logs():
        await store.init_db()
        return await store.list_spam_logs(limit=limit, day=day)

    entries = run_async(_spam_logs())
    if as_json:
        print_json(entries)
        return
    if not entries:
        console.print("[dim]No spam log entries.[/dim]")
        return

    table = Table(title="Spam log")
    table.add_column("Time", style="dim")
    table.add_column("Check", style="red")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Subject")
    table.add_column("IP", style="cyan")
    for entry in entries:
        table.add_row(
            entry["timestamp"],
            entry.get("check_name") or "-",
            entry.get("sender") or "<>",
            entry.get("recipients") or "-",
            entry.get("subject") or "",
            entry.get("ip") or "-",
        )
    console.print(table)


if __name__ == "__main__":
    main()
