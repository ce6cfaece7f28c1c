"""MCP server exposing the assignment ledger to agents and operators."""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from issue_orchestrator.config import Config, ConfigError, get_config
from issue_orchestrator.core import ledger
from issue_orchestrator.core.scheduler import capacity_report
from issue_orchestrator.core.source import SourceError
from issue_orchestrator.db.engine import init_db
from issue_orchestrator.runtime import build_orchestrator


@dataclass
class AppContext:
    db: sqlite3.Connection
    config: Config


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Initialize DB connection on startup, close on shutdown."""
    config = get_config()
    db = init_db(config.db_path)
    try:
        yield AppContext(db=db, config=config)
    finally:
        db.close()


mcp = FastMCP("issue-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Ledger Tools ──────────────────────────────────────────────────────────────


@mcp.tool()
def list_assignments(
    ctx: Context,
    status: str | None = None,
    provider: str | None = None,
) -> list[dict] | dict:
    """List assignments. Status: assigned, in-progress, dev-complete, blocked, failed,
    merge-review, stage-ready, merged."""
    app = _ctx(ctx)
    try:
        assignments = ledger.list_assignments(app.db, status=status, provider=provider)
    except ValueError as e:
        return {"error": str(e)}
    return [_assignment_to_dict(a) for a in assignments]


@mcp.tool()
def get_assignment(ctx: Context, item_id: int) -> dict:
    """Get the assignment for an issue with its work sessions and history."""
    app = _ctx(ctx)
    assignment = ledger.get_assignment_by_item(app.db, item_id)
    if not assignment:
        return {"error": f"No assignment for #{item_id}"}
    result = _assignment_to_dict(assignment)
    result["sessions"] = [
        {
            "instance_token": s.instance_token,
            "started_at": str(s.started_at) if s.started_at else None,
            "ended_at": str(s.ended_at) if s.ended_at else None,
            "summary": s.summary,
        }
        for s in ledger.list_work_sessions(app.db, assignment.id)
    ]
    result["events"] = [
        {
            "event_type": e.event_type,
            "old_value": e.old_value,
            "new_value": e.new_value,
            "created_at": str(e.created_at) if e.created_at else None,
        }
        for e in ledger.get_events(app.db, item_id)
    ]
    return result


@mcp.tool()
def orchestrator_summary(ctx: Context) -> dict:
    """Worker slot usage per provider and assignment counts per status."""
    app = _ctx(ctx)
    return capacity_report(app.db, app.config)


@mcp.tool()
def unassign_item(ctx: Context, item_id: int) -> dict:
    """Stop the worker for an issue, release it on the board and drop its assignment."""
    app = _ctx(ctx)
    try:
        orchestrator = build_orchestrator(app.config, app.db, watch_config=False)
        removed = orchestrator.unassign(item_id)
    except (ConfigError, SourceError) as e:
        return {"error": str(e)}
    if not removed:
        return {"error": f"No assignment for #{item_id}"}
    return {"item_id": item_id, "unassigned": True}


def _assignment_to_dict(a) -> dict:
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
        "assigned_at": str(a.assigned_at) if a.assigned_at else None,
        "completed_at": str(a.completed_at) if a.completed_at else None,
    }
