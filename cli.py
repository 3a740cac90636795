# cli.py
"""cms-maintenance - turn maintenance mode on/off from a shell."""
from __future__ import annotations

import json
import logging
import sys
from pathlib import Path
from typing import Optional

import click

from maintenance import DEFAULT_ALLOWED_IPS, DEFAULT_MESSAGE, MaintenanceManager, MaintenanceStore
from render import format_duration
from settings import resolve_maintenance_file

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s"
)


def _manager(base_path: Optional[str]) -> MaintenanceManager:
    path = resolve_maintenance_file(Path(base_path) if base_path else None)
    return MaintenanceManager(store=MaintenanceStore(path))


def parse_allowed_ips(value: Optional[str]) -> Optional[list[str]]:
    """None -> defaults, "" -> nobody, "a,b" -> [a, b]."""
    if value is None:
        return None
    if value.strip() == "":
        return []
    return [ip.strip() for ip in value.split(",") if ip.strip()]


@click.group()
@click.option(
    "--base-path",
    "-b",
    type=click.Path(file_okay=False),
    default=None,
    help="Application base directory (default: CMS_BASE_PATH / MAINTENANCE_FILE)",
)
@click.pass_context
def cli(ctx: click.Context, base_path: Optional[str]):
    """Maintenance mode control for the CMS."""
    ctx.obj = _manager(base_path)


@cli.command()
@click.option("--message", "-m", default=DEFAULT_MESSAGE, show_default=True, help="Message shown to visitors")
@click.option("--allow-ip", "-a", "allow_ip", default=None, help="Comma-separated IPs/CIDRs ('' = nobody)")
@click.option("--retry-after", "-r", type=click.IntRange(min=1), default=None, help="Expected downtime in seconds")
@click.option("--by", "enabled_by", default=None, help="Operator name (default: current OS user)")
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def enable(manager: MaintenanceManager, message: str, allow_ip: Optional[str], retry_after: Optional[int], enabled_by: Optional[str], force: bool):
    """Enable maintenance mode."""
    allowed_ips = parse_allowed_ips(allow_ip)
    shown_ips = list(DEFAULT_ALLOWED_IPS) if allowed_ips is None else allowed_ips

    if not force:
        click.echo(click.style("This will enable maintenance mode for the site.", fg="yellow"))
        click.echo(f"Message: {message}")
        click.echo(f"Allowed IPs: {', '.join(shown_ips) or '(none)'}")
        if retry_after:
            click.echo(f"Estimated downtime: {format_duration(retry_after)}")
        if not click.confirm("Enable maintenance mode?"):
            click.echo("Maintenance mode activation cancelled")
            return

    if not manager.enable(message, allowed_ips, retry_after, enabled_by):
        click.echo(f"[-] Failed to enable maintenance mode (check write permissions for {manager.path.parent})", err=True)
        sys.exit(1)

    click.echo(click.style("[+] Maintenance mode enabled", fg="green"))
    click.echo("To disable maintenance mode, run:")
    click.echo("  cms-maintenance disable")


@cli.command()
@click.option("--force", "-f", is_flag=True, help="Skip confirmation prompt")
@click.pass_obj
def disable(manager: MaintenanceManager, force: bool):
    """Disable maintenance mode."""
    status = manager.get_status()
    if status is None:
        click.echo(click.style("Maintenance mode is not currently enabled", fg="yellow"))
        return

    if not force:
        click.echo(f"Message: {status.message}")
        click.echo(f"Enabled at: {status.enabled_at or 'Unknown'}")
        click.echo(f"Enabled by: {status.enabled_by or 'Unknown'}")
        if not click.confirm("Disable maintenance mode?"):
            click.echo("Maintenance mode deactivation cancelled")
            return

    if not manager.disable():
        click.echo(f"[-] Failed to disable maintenance mode (check write permissions for {manager.path.parent})", err=True)
        sys.exit(1)

    click.echo(click.style("[+] Maintenance mode disabled", fg="green"))
    click.echo("Site is now accessible to all users")


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Machine-readable output")
@click.pass_obj
def status(manager: MaintenanceManager, as_json: bool):
    """Show maintenance mode status."""
    state = manager.get_status()

    if as_json:
        payload = {"enabled": state is not None}
        if state is not None:
            payload.update(state.model_dump())
        click.echo(json.dumps(payload, indent=2))
        return

    if state is None:
        click.echo("Maintenance mode: " + click.style("DISABLED", fg="green"))
        click.echo(f"State file: {manager.path}")
        return

    click.echo("Maintenance mode: " + click.style("ENABLED", fg="red"))
    click.echo(f"Message: {state.message}")
    click.echo(f"Allowed IPs: {', '.join(state.allowed_ips) or '(none)'}")
    if state.retry_after:
        click.echo(f"Retry after: {state.retry_after}s ({format_duration(state.retry_after)})")
    click.echo(f"Enabled at: {state.enabled_at or 'Unknown'}")
    click.echo(f"Enabled by: {state.enabled_by or 'Unknown'}")
    click.echo(f"State file: {manager.path}")


if __name__ == "__main__":
    cli()
