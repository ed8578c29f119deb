"""Command line interface for the scheduled access automation.

``enforce``, ``suspensions process`` and ``changes apply`` are the commands a
cron-like scheduler runs; the rest help administrators inspect and adjust the
JSON stores without the web portal.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import typer
import yaml

from . import enforcement, students
from .audit import SYSTEM_ACTOR
from .config import AppConfig, ConfigurationError, config_to_dict, load_config
from .context import Stores
from .errors import PortalError
from .graph_client import GraphClient, GraphClientError
from .models import parse_datetime, utc_now

app = typer.Typer(help="Schedule-driven access control for student Microsoft 365 accounts.")
policy_app = typer.Typer(help="Manage schedule policies.")
special_app = typer.Typer(help="Manage special (override) groups.")
suspension_app = typer.Typer(help="Work with student suspensions.")
changes_app = typer.Typer(help="Work with queued group membership changes.")
app.add_typer(policy_app, name="policy")
app.add_typer(special_app, name="special-group")
app.add_typer(suspension_app, name="suspensions")
app.add_typer(changes_app, name="changes")

CLI_ACTOR = "cli"

_CONFIG_OPTION = typer.Option(None, "--config", help="Path to a specific settings file (overrides default).")


@app.callback()
def main(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log debug output."),
) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load_configuration(config_path: Optional[Path]) -> AppConfig:
    try:
        return load_config(config_path)
    except ConfigurationError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _graph_client(config: AppConfig) -> GraphClient:
    try:
        return GraphClient(config.graph)
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)


def _parse_now(raw: Optional[str]) -> datetime:
    if not raw:
        return utc_now()
    parsed = parse_datetime(raw)
    if parsed is None:
        raise typer.BadParameter("Use an ISO timestamp, e.g. 2026-03-02T08:00:00Z.")
    return parsed


@app.command("enforce")
def enforce(
    dry_run: bool = typer.Option(False, "--dry-run", help="Report planned changes without applying them."),
    at: Optional[str] = typer.Option(None, "--at", help="Evaluate the schedule at this ISO timestamp."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Enable or disable managed students according to the active policies."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    try:
        report = enforcement.enforce_schedule(
            _graph_client(config), stores, now=_parse_now(at), dry_run=dry_run
        )
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    typer.echo(json.dumps(report.to_dict(), indent=2))
    if report.failures:
        raise typer.Exit(code=1)


@suspension_app.command("process")
def process_suspensions(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    """Re-enable students whose suspension has ended."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    if not stores.suspensions.expired():
        typer.echo("No expired suspensions to process.")
        return
    results = enforcement.process_expired_suspensions(_graph_client(config), stores)
    for result in results:
        typer.echo(f"- {result['studentName']}: {result['status']}")
    if any(result["status"] != "re-enabled" for result in results):
        raise typer.Exit(code=1)


@suspension_app.command("list")
def list_suspensions(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    """Show active suspensions."""

    config = _load_configuration(config_path)
    active = Stores.from_config(config).suspensions.active()
    if not active:
        typer.echo("No active suspensions.")
        return
    for suspension in active:
        typer.echo(
            f"- {suspension.student_name or suspension.student_id} until "
            f"{suspension.end_date.isoformat()}: {suspension.reason}"
        )


@changes_app.command("apply")
def apply_changes(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    """Carry out pending group membership changes."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    if not stores.pending_changes.pending_count():
        typer.echo("No pending changes.")
        return
    summary = enforcement.apply_pending_changes(_graph_client(config), stores)
    typer.echo(f"Completed {summary['completed']}, failed {summary['failed']}.")
    if summary["failed"]:
        raise typer.Exit(code=1)


@changes_app.command("list")
def list_changes(
    all_changes: bool = typer.Option(False, "--all", help="Include completed and failed changes."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    config = _load_configuration(config_path)
    store = Stores.from_config(config).pending_changes
    changes = store.list() if all_changes else store.pending()
    if not changes:
        typer.echo("No changes queued.")
        return
    for change in changes:
        line = f"- [{change.status}] {change.action} {change.student_name} -> {change.group_name}"
        if change.error:
            line += f" ({change.error})"
        typer.echo(line)


@policy_app.command("list")
def list_policies(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    """Display schedule policies."""

    config = _load_configuration(config_path)
    for policy in Stores.from_config(config).policies.list():
        state = "active" if policy.is_active else "inactive"
        typer.echo(f"- {policy.name} [{policy.id}] ({state})")
        typer.echo(f"    window: {policy.enable_time}-{policy.disable_time} {policy.timezone}")
        typer.echo(f"    days: {', '.join(policy.days_of_week)}")
        if policy.assigned_group_ids:
            names = policy.assigned_group_names or policy.assigned_group_ids
            typer.echo(f"    groups: {', '.join(names)}")


@policy_app.command("add")
def add_policy(
    name: str = typer.Argument(..., help="Policy name."),
    enable_time: str = typer.Option(..., "--enable", help="Enable time, HH:mm."),
    disable_time: str = typer.Option(..., "--disable", help="Disable time, HH:mm."),
    day: Optional[List[str]] = typer.Option(
        None, "--day", help="Day of week (repeatable). Defaults to Monday-Friday."
    ),
    timezone: Optional[str] = typer.Option(None, "--timezone", help="Windows or IANA time zone."),
    description: str = typer.Option("", "--description"),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Create an inactive schedule policy."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    days = day or ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday"]
    try:
        policy = stores.policies.create(
            name=name,
            enable_time=enable_time,
            disable_time=disable_time,
            days_of_week=days,
            description=description,
            timezone=timezone or config.directory.default_timezone,
            created_by=CLI_ACTOR,
        )
    except PortalError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)
    stores.audit.log_policy_action(
        "policy_created",
        CLI_ACTOR,
        f'Created policy "{policy.name}" ({policy.enable_time}-{policy.disable_time}, '
        f'{", ".join(policy.days_of_week)})',
    )
    typer.echo(f"Created policy '{policy.name}' ({policy.id}).")


@policy_app.command("assign")
def assign_policy(
    policy_id: str = typer.Argument(...),
    group_id: List[str] = typer.Option(..., "--group", help="Group object id (repeatable)."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Replace the groups a policy applies to."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    updated = stores.policies.update(policy_id, assigned_group_ids=list(group_id), assigned_group_names=list(group_id))
    if updated is None:
        typer.echo(f"Unknown policy '{policy_id}'.")
        raise typer.Exit(code=1)
    stores.audit.log_policy_action(
        "policy_assigned",
        CLI_ACTOR,
        f'Policy "{updated.name}" assigned to {", ".join(updated.assigned_group_ids)}',
    )
    typer.echo(f"Policy '{updated.name}' now applies to {len(updated.assigned_group_ids)} group(s).")


@policy_app.command("activate")
def activate_policy(
    policy_id: str = typer.Argument(...),
    off: bool = typer.Option(False, "--off", help="Deactivate instead."),
    apply_now: bool = typer.Option(False, "--apply-now", help="Enforce the policy's groups immediately."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    updated = stores.policies.update(policy_id, is_active=not off)
    if updated is None:
        typer.echo(f"Unknown policy '{policy_id}'.")
        raise typer.Exit(code=1)
    stores.audit.log_policy_action(
        "policy_updated", CLI_ACTOR, f'Policy "{updated.name}" {"deactivated" if off else "activated"}'
    )
    typer.echo(f"Policy '{updated.name}' is now {'inactive' if off else 'active'}.")
    if apply_now and not off:
        report = enforcement.apply_policy_now(_graph_client(config), stores, updated, actor=CLI_ACTOR)
        typer.echo(json.dumps(report.to_dict(), indent=2))


@special_app.command("list")
def list_special_groups(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    special_groups = stores.special_groups.list()
    if not special_groups:
        typer.echo("No special groups configured.")
        return
    for special in sorted(special_groups, key=lambda item: -item.priority):
        typer.echo(f"- {special.group_name} [{special.group_id}] priority {special.priority} -> {special.policy_name}")


@special_app.command("add")
def add_special_group(
    group_id: str = typer.Argument(..., help="Entra group object id."),
    policy_id: str = typer.Option(..., "--policy", help="Policy applied to members."),
    name: Optional[str] = typer.Option(None, "--name", help="Display name of the group."),
    priority: int = typer.Option(10, "--priority", help="Higher wins over other overrides."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Register an override group."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    policy = stores.policies.get(policy_id)
    if policy is None:
        typer.echo(f"Unknown policy '{policy_id}'.")
        raise typer.Exit(code=1)
    special = stores.special_groups.create(
        group_id=group_id,
        policy_id=policy.id,
        group_name=name,
        policy_name=policy.name,
        priority=priority,
        created_by=CLI_ACTOR,
    )
    stores.audit.log_policy_action(
        "special_group_added",
        CLI_ACTOR,
        f'Special group "{special.group_name}" created with policy "{policy.name}"',
        target_group=special.group_name,
    )
    typer.echo(f"Added special group '{special.group_name}' ({special.id}).")


@app.command("access")
def show_access(
    student: str = typer.Argument(..., help="Student object id or UPN."),
    at: Optional[str] = typer.Option(None, "--at", help="Evaluate at this ISO timestamp."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Explain what the schedule decides for one student."""

    config = _load_configuration(config_path)
    stores = Stores.from_config(config)
    client = _graph_client(config)
    try:
        user = client.get_user(student, select="id,displayName,userPrincipalName,accountEnabled")
        decision = students.explain_access(client, stores, user["id"], now=_parse_now(at))
    except GraphClientError as exc:
        typer.echo(f"Error: {exc}")
        raise typer.Exit(code=1)

    payload = decision.to_dict()
    payload["student"] = user.get("userPrincipalName")
    payload["accountEnabled"] = user.get("accountEnabled")
    typer.echo(json.dumps(payload, indent=2))


@app.command("audit")
def show_audit(
    action: Optional[str] = typer.Option(None, "--action"),
    limit: int = typer.Option(20, "--limit"),
    system_only: bool = typer.Option(False, "--system", help="Only automation entries."),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Print recent audit log entries."""

    config = _load_configuration(config_path)
    entries = Stores.from_config(config).audit.query(
        action=action,
        performed_by=SYSTEM_ACTOR if system_only else None,
        limit=limit,
    )
    for entry in entries:
        target = entry.target_user or entry.target_group or "-"
        typer.echo(f"{entry.timestamp.isoformat()} {entry.action} by {entry.performed_by} on {target}: {entry.details or ''}")


@app.command("show-config")
def show_config(config_path: Optional[Path] = _CONFIG_OPTION) -> None:
    """Print the effective configuration with secrets masked."""

    config = _load_configuration(config_path)
    payload = config_to_dict(config)
    for section in ("graph", "auth"):
        if payload[section].get("client_secret"):
            payload[section]["client_secret"] = "********"
    typer.echo(yaml.safe_dump(payload, sort_keys=False, indent=2))


@app.command("serve")
def serve(
    host: str = typer.Option("0.0.0.0", "--host"),
    port: int = typer.Option(5000, "--port"),
    debug: bool = typer.Option(False, "--debug"),
    config_path: Optional[Path] = _CONFIG_OPTION,
) -> None:
    """Run the portal API with Flask's development server."""

    from .web import create_app

    create_app(config_path).run(host=host, port=port, debug=debug)


def run():
    app()


if __name__ == "__main__":
    run()
