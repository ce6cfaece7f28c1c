"""CLI entry point for the issue orchestrator."""

import json
import signal
import sys

import click

from issue_orchestrator.config import ConfigError, get_config
from issue_orchestrator.core import ledger
from issue_orchestrator.core.scheduler import capacity_report
from issue_orchestrator.core.source import SourceError
from issue_orchestrator.db.engine import get_db
from issue_orchestrator.log import setup_logging
from issue_orchestrator.runtime import build_orchestrator


def _load_config():
    try:
        return get_config()
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


def _build(config, db, watch_config=False):
    try:
        return build_orchestrator(config, db, watch_config=watch_config)
    except ConfigError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@click.group()
def main():
    """iorch - Issue Orchestrator CLI"""
    pass


# ── Orchestrator Commands ─────────────────────────────────────────────────────


@main.command("start")
@click.option("--dry-run", is_flag=True, help="Show what would be assigned and exit")
def start(dry_run):
    """Run the orchestrator loop until interrupted."""
    config = _load_config()
    setup_logging(config.log_level)

    with get_db(config.db_path) as db:
        orchestrator = _build(config, db, watch_config=not dry_run)

        if dry_run:
            try:
                plan = orchestrator.dry_run()
            except SourceError as e:
                click.echo(f"Could not reach the project board: {e}", err=True)
                sys.exit(1)
            report = capacity_report(db, config)
            for name, slots in report["providers"].items():
                click.echo(f"  {name}: {slots['active']}/{slots['limit']} active")
            if not plan:
                click.echo("Nothing to assign.")
                return
            for provider, item in plan:
                click.echo(f"  #{item.id} {item.title} -> {provider}")
            return

        def _handle_signal(signum, frame):
            click.echo("\nShutting down...", err=True)
            orchestrator.request_stop()

        signal.signal(signal.SIGINT, _handle_signal)
        signal.signal(signal.SIGTERM, _handle_signal)
        orchestrator.start()


@main.command("reconcile")
def reconcile():
    """Run one reconciliation pass against the project board."""
    config = _load_config()
    setup_logging(config.log_level)
    with get_db(config.db_path) as db:
        orchestrator = _build(config, db)
        result = orchestrator.reconcile()
        click.echo(f"Checked: {result.checked}")
        click.echo(f"  Removed: {', '.join(f'#{i}' for i in result.removed) or '-'}")
        click.echo(f"  Adopted: {', '.join(f'#{i}' for i in result.adopted) or '-'}")
        click.echo(f"  Stale claims cleared: {', '.join(f'#{i}' for i in result.cleared) or '-'}")
        click.echo(f"  Released (no free slot): {', '.join(f'#{i}' for i in result.released) or '-'}")
        if result.errors:
            click.echo(f"  Errors: {result.errors}", err=True)


@main.command("unassign")
@click.argument("item_id", type=int)
@click.option("--remove-worktree", is_flag=True, help="Also delete the issue's worktree")
def unassign(item_id, remove_worktree):
    """Stop the worker for an issue and hand the issue back to the board."""
    config = _load_config()
    setup_logging(config.log_level)
    with get_db(config.db_path) as db:
        orchestrator = _build(config, db)
        if not orchestrator.unassign(item_id):
            click.echo(f"No assignment for #{item_id}", err=True)
            sys.exit(1)
        click.echo(f"Unassigned #{item_id}")
        if remove_worktree and orchestrator.workspaces is not None:
            if orchestrator.workspaces.remove(item_id, force=True):
                click.echo(f"  Removed worktree {orchestrator.workspaces.path_for(item_id)}")


# ── Ledger Commands ───────────────────────────────────────────────────────────


@main.command("status")
@click.option("--status", default=None, help="Filter by assignment status")
@click.option("--provider", default=None, help="Filter by worker class")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def status(status, provider, json_output):
    """List assignments in the local ledger."""
    config = _load_config()
    with get_db(config.db_path) as db:
        try:
            assignments = ledger.list_assignments(db, status=status, provider=provider)
        except ValueError as e:
            click.echo(str(e), err=True)
            sys.exit(1)

        if json_output:
            click.echo(json.dumps([_assignment_dict(a) for a in assignments], indent=2))
            return

        report = capacity_report(db, config)
        for name, slots in report["providers"].items():
            click.echo(f"{name}: {slots['active']}/{slots['limit']} active")

        if not assignments:
            click.echo("No assignments.")
            return

        status_icons = {
            "assigned": "○",
            "in-progress": "●",
            "dev-complete": "✓",
            "blocked": "✗",
            "failed": "✗",
        }
        for a in assignments:
            icon = status_icons.get(a.status, "·")
            pid = f" PID {a.process_id}" if a.process_id else ""
            click.echo(
                f"  {icon} #{a.item_id} {a.item_title} ({a.status}) "
                f"[{a.provider} {a.instance_token or '-'}{pid}]"
            )


@main.command("show")
@click.argument("item_id", type=int)
def show(item_id):
    """Show an assignment with its work sessions and history."""
    config = _load_config()
    with get_db(config.db_path) as db:
        a = ledger.get_assignment_by_item(db, item_id)
        events = ledger.get_events(db, item_id)
        if not a and not events:
            click.echo(f"No record of #{item_id}", err=True)
            sys.exit(1)

        if a:
            click.echo(f"#{a.item_id}: {a.item_title}")
            click.echo(f"  Status: {a.status}")
            click.echo(f"  Worker: {a.provider} {a.instance_token or '-'} (PID {a.process_id or '-'})")
            click.echo(f"  Branch: {a.branch_name}")
            click.echo(f"  Workdir: {a.workdir}")
            if a.result_ref:
                click.echo(f"  PR: #{a.result_ref}")
            sessions = ledger.list_work_sessions(db, a.id)
            if sessions:
                click.echo("  Sessions:")
                for s in sessions:
                    ended = s.ended_at.isoformat() if s.ended_at else "open"
                    summary = f": {s.summary[:80]}" if s.summary else ""
                    click.echo(f"    {s.instance_token} {s.started_at} -> {ended}{summary}")
        else:
            click.echo(f"#{item_id}: no current assignment")

        if events:
            click.echo("  History:")
            for e in events:
                change = f"{e.old_value or ''} -> {e.new_value or ''}".strip()
                click.echo(f"    {e.created_at} {e.event_type} {change}")


# ── Servers ───────────────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def ui_command(host, port):
    """Serve the read-only status API."""
    from issue_orchestrator.web.app import run_server

    click.echo(f"Status API at http://{host}:{port}/api/summary")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from issue_orchestrator.mcp.server import mcp

    mcp.run(transport="stdio")


def _assignment_dict(a) -> dict:
    return {
        "item_id": a.item_id,
        "title": a.item_title,
        "status": a.status,
        "provider": a.provider,
        "instance_token": a.instance_token,
        "process_id": a.process_id,
        "branch_name": a.branch_name,
        "workdir": a.workdir,
        "exclusive": a.exclusive,
        "result_ref": a.result_ref,
        "assigned_at": a.assigned_at.isoformat() if a.assigned_at else None,
        "completed_at": a.completed_at.isoformat() if a.completed_at else None,
    }
