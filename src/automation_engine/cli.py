# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Command-line interface for the automation engine.

This module provides a CLI for running the engine from a scheduler and for
managing tenants, automations and states directly in the database.

Usage:
    automation-engine run-once
    automation-engine serve
    automation-engine tenants list
    automation-engine tenants add acme --plan plan_starter --provider brevo \\
        --credential brevo.api_key=xkeysib-... --contact-email hello@acme.test
    automation-engine tenants tracking acme
    automation-engine automations add acme welcome --steps '[{"type": "send", "template_ref": "t1"}]'
    automation-engine leads add acme lead-1 --email jane@example.com
    automation-engine templates add acme t1 --subject "Welcome" --html "<p>Hi</p>"
    automation-engine states enroll acme welcome lead-1
    automation-engine states list acme --status error
    automation-engine states reactivate acme <state-id>

The database is taken from ``--db``, ``AE_DB_PATH`` or the config file.
"""

from __future__ import annotations

import asyncio
import json
import sys
from typing import Any

import click
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from .config import load_settings
from .errors import AutomationEngineError
from .logger import configure_logging
from .models import AutomationDefinition, Lead, ProviderName, Template, Tenant
from .persistence import Persistence
from .service import AutomationService

console = Console()
err_console = Console(stderr=True)


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


def _persistence(ctx: click.Context) -> Persistence:
    return Persistence(ctx.obj["settings"].db_path)


def _with_db(ctx: click.Context, fn):
    """Open the database, run ``fn(persistence)`` and close it again."""
    persistence = _persistence(ctx)

    async def _run():
        await persistence.init_db()
        try:
            return await fn(persistence)
        finally:
            await persistence.close()

    try:
        return run_async(_run())
    except (AutomationEngineError, ValidationError) as exc:
        print_error(str(exc))
        sys.exit(1)


def _parse_credentials(values: tuple[str, ...]) -> dict[str, dict[str, str]]:
    """Turn ``provider.key=value`` pairs into the nested credentials mapping."""
    credentials: dict[str, dict[str, str]] = {}
    for item in values:
        key, sep, value = item.partition("=")
        provider, dot, field = key.partition(".")
        if not sep or not dot or not provider or not field:
            raise click.BadParameter(f"expected provider.key=value, got '{item}'", param_hint="--credential")
        credentials.setdefault(provider, {})[field] = value
    return credentials


@click.group()
@click.option("--config", "config_path", type=click.Path(dir_okay=False), help="Path to config.ini.")
@click.option("--db", "db_path", envvar="AE_DB_PATH", help="Database path or PostgreSQL URL.")
@click.option("--log-level", help="Override the logging level.")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, db_path: str | None, log_level: str | None) -> None:
    """Multi-tenant automation engine."""
    settings = load_settings(config_path)
    if db_path:
        settings.db_path = db_path
    if log_level:
        settings.log_level = log_level.upper()
    configure_logging(settings.log_level)
    ctx.ensure_object(dict)
    ctx.obj["settings"] = settings


# ============================================================================
# Runs
# ============================================================================

@main.command("run-once")
@click.option("--deadline", type=float, help="Seconds after which no new tenant is started.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def run_once(ctx: click.Context, deadline: float | None, as_json: bool) -> None:
    """Process every eligible tenant once (for cron and other schedulers)."""
    service = AutomationService.from_settings(ctx.obj["settings"])

    async def _run():
        await service.init()
        try:
            return await service.run_once(deadline)
        finally:
            await service.persistence.close()

    summary = run_async(_run())
    if as_json:
        print_json(summary.as_dict())
        return
    console.print(summary.message)
    for line in summary.details:
        console.print(f"  {line}")
    for tenant_id, error in summary.errors.items():
        err_console.print(f"  [red]{tenant_id}[/red]: {error}")
    if summary.errors:
        sys.exit(1)


@main.command("serve")
@click.option("--host", help="Bind address (default from settings).")
@click.option("--port", type=int, help="Bind port (default from settings).")
@click.pass_context
def serve(ctx: click.Context, host: str | None, port: int | None) -> None:
    """Start the HTTP control plane (and the scheduler when active)."""
    import uvicorn

    from .server import build_app

    settings = ctx.obj["settings"]
    uvicorn.run(
        build_app(settings),
        host=host or settings.http_host,
        port=port or settings.http_port,
        log_level=settings.log_level.lower(),
    )


# ============================================================================
# Tenants
# ============================================================================

@main.group("tenants")
def tenants() -> None:
    """Manage tenants."""


@tenants.command("list")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def tenants_list(ctx: click.Context, as_json: bool) -> None:
    """List all tenants."""
    rows = _with_db(ctx, lambda p: p.list_tenants())
    if as_json:
        print_json([t.model_dump(exclude={"credentials"}) | {"providers": sorted(t.credentials)} for t in rows])
        return
    if not rows:
        console.print("[dim]No tenants configured.[/dim]")
        return
    table = Table(title="Tenants")
    table.add_column("ID", style="cyan")
    table.add_column("Name")
    table.add_column("Status")
    table.add_column("Plan")
    table.add_column("Provider")
    table.add_column("Credentials")
    for t in rows:
        status = "[green]active[/green]" if t.is_active else f"[red]{t.status}[/red]"
        table.add_row(
            t.id,
            t.name or "-",
            status,
            t.plan_id or "-",
            t.provider or "-",
            ", ".join(sorted(t.credentials)) or "-",
        )
    console.print(table)


@tenants.command("add")
@click.argument("tenant_id")
@click.option("--name", "-n", help="Human-readable tenant name.")
@click.option("--plan", "plan_id", help="Plan identifier (e.g. plan_starter).")
@click.option("--provider", type=click.Choice([p.value for p in ProviderName]), help="Selected provider.")
@click.option("--credential", "credentials", multiple=True, metavar="PROVIDER.KEY=VALUE",
              help="Provider credential, repeatable.")
@click.option("--contact-email", help="Fallback sender address.")
@click.option("--contact-name", help="Fallback sender name.")
@click.option("--status", default="active", show_default=True, help="Lifecycle status.")
@click.pass_context
def tenants_add(
    ctx: click.Context,
    tenant_id: str,
    name: str | None,
    plan_id: str | None,
    provider: str | None,
    credentials: tuple[str, ...],
    contact_email: str | None,
    contact_name: str | None,
    status: str,
) -> None:
    """Add or update a tenant."""
    try:
        tenant = Tenant(
            id=tenant_id,
            name=name,
            status=status,
            plan_id=plan_id,
            provider=provider,
            credentials=_parse_credentials(credentials),
            contact_email=contact_email,
            contact_name=contact_name,
        )
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)
    _with_db(ctx, lambda p: p.add_tenant(tenant))
    print_success(f"Tenant '{tenant_id}' saved.")


@tenants.command("tracking")
@click.argument("tenant_id")
@click.pass_context
def tenants_tracking(ctx: click.Context, tenant_id: str) -> None:
    """Show quota counters and circuit breaker state for a tenant."""

    async def _get(p: Persistence):
        if await p.get_tenant(tenant_id) is None:
            return None
        return await p.peek_quota_tracking(tenant_id)

    tracking = _with_db(ctx, _get)
    if tracking is None:
        print_error(f"Tenant '{tenant_id}' not found.")
        sys.exit(1)
    print_json(tracking.model_dump(mode="json"))


# ============================================================================
# Automations, leads, templates
# ============================================================================

@main.group("automations")
def automations() -> None:
    """Manage automation definitions."""


@automations.command("add")
@click.argument("tenant_id")
@click.argument("automation_id")
@click.option("--name", "-n", help="Automation name.")
@click.option("--steps", required=True, help="JSON list of steps.")
@click.option("--provider", help="Provider override for this automation.")
@click.option("--sender-email", help="Sender address override.")
@click.option("--sender-name", help="Sender name override.")
@click.pass_context
def automations_add(
    ctx: click.Context,
    tenant_id: str,
    automation_id: str,
    name: str | None,
    steps: str,
    provider: str | None,
    sender_email: str | None,
    sender_name: str | None,
) -> None:
    """Add or replace an automation definition."""
    try:
        step_list = json.loads(steps)
    except json.JSONDecodeError as e:
        print_error(f"Invalid JSON for --steps: {e}")
        sys.exit(1)
    delivery = None
    if provider or sender_email or sender_name:
        delivery = {"provider": provider, "sender_email": sender_email, "sender_name": sender_name}
    try:
        automation = AutomationDefinition(
            id=automation_id, tenant_id=tenant_id, name=name, steps=step_list, delivery=delivery
        )
    except ValidationError as e:
        print_error(f"Validation error: {e}")
        sys.exit(1)
    _with_db(ctx, lambda p: p.add_automation(automation))
    print_success(f"Automation '{automation_id}' saved with {len(automation.steps)} steps.")


@main.group("leads")
def leads() -> None:
    """Manage leads."""


@leads.command("add")
@click.argument("tenant_id")
@click.argument("lead_id")
@click.option("--email", required=True, help="Lead email address.")
@click.option("--name", "-n", help="Lead display name.")
@click.pass_context
def leads_add(ctx: click.Context, tenant_id: str, lead_id: str, email: str, name: str | None) -> None:
    """Add or update a lead."""
    lead = Lead(id=lead_id, tenant_id=tenant_id, email=email, name=name)
    _with_db(ctx, lambda p: p.add_lead(lead))
    print_success(f"Lead '{lead_id}' saved.")


@main.group("templates")
def templates() -> None:
    """Manage message templates."""


@templates.command("add")
@click.argument("tenant_id")
@click.argument("template_id")
@click.option("--subject", required=True, help="Message subject.")
@click.option("--html", required=True, help="HTML body.")
@click.pass_context
def templates_add(ctx: click.Context, tenant_id: str, template_id: str, subject: str, html: str) -> None:
    """Add or update a template."""
    template = Template(id=template_id, tenant_id=tenant_id, subject=subject, html=html)
    _with_db(ctx, lambda p: p.add_template(template))
    print_success(f"Template '{template_id}' saved.")


# ============================================================================
# States
# ============================================================================

@main.group("states")
def states() -> None:
    """Inspect and manage automation states."""


@states.command("enroll")
@click.argument("tenant_id")
@click.argument("automation_id")
@click.argument("lead_id")
@click.pass_context
def states_enroll(ctx: click.Context, tenant_id: str, automation_id: str, lead_id: str) -> None:
    """Start a lead at the first step of an automation."""
    state = _with_db(ctx, lambda p: p.enroll_lead(tenant_id, automation_id, lead_id))
    print_success(f"Lead '{lead_id}' enrolled in '{automation_id}' (state {state.id}).")


@states.command("list")
@click.argument("tenant_id")
@click.option("--status", type=click.Choice(["active", "completed", "error"]), help="Filter by status.")
@click.option("--json", "as_json", is_flag=True, help="Output as JSON.")
@click.pass_context
def states_list(ctx: click.Context, tenant_id: str, status: str | None, as_json: bool) -> None:
    """List automation states of a tenant."""
    rows = _with_db(ctx, lambda p: p.list_states(tenant_id, status))
    if as_json:
        print_json([s.model_dump(mode="json") for s in rows])
        return
    if not rows:
        console.print("[dim]No automation states.[/dim]")
        return
    table = Table(title=f"Automation states ({tenant_id})")
    table.add_column("ID", style="cyan")
    table.add_column("Automation")
    table.add_column("Lead")
    table.add_column("Step", justify="right")
    table.add_column("Next step time")
    table.add_column("Status")
    table.add_column("Error")
    for s in rows:
        table.add_row(
            s.id,
            s.automation_id,
            s.lead_id,
            str(s.next_step_index),
            s.next_step_time.isoformat(),
            s.status.value,
            s.error_message or "",
        )
    console.print(table)


@states.command("reactivate")
@click.argument("tenant_id")
@click.argument("state_id")
@click.pass_context
def states_reactivate(ctx: click.Context, tenant_id: str, state_id: str) -> None:
    """Move a state in error back to active at the same step."""
    changed = _with_db(ctx, lambda p: p.reactivate_state(tenant_id, state_id))
    if not changed:
        print_error(f"State '{state_id}' not found or not in error.")
        sys.exit(1)
    print_success(f"State '{state_id}' reactivated.")


if __name__ == "__main__":
    main()
