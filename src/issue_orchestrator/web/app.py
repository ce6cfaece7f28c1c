"""Read-only JSON status API for the issue orchestrator."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from issue_orchestrator.config import get_config
from issue_orchestrator.core import ledger
from issue_orchestrator.core.scheduler import capacity_report
from issue_orchestrator.db.engine import init_db


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_assignments(request: Request):
    status_filter = request.query_params.get("status")
    provider = request.query_params.get("provider")
    db = _get_db()
    try:
        try:
            assignments = ledger.list_assignments(db, status=status_filter, provider=provider)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)
        return JSONResponse([_assignment_dict(a) for a in assignments])
    finally:
        db.close()


async def api_get_assignment(request: Request):
    item_id = request.path_params["item_id"]
    db = _get_db()
    try:
        assignment = ledger.get_assignment_by_item(db, item_id)
        if not assignment:
            return JSONResponse({"error": "Assignment not found"}, status_code=404)
        ad = _assignment_dict(assignment)
        ad["sessions"] = [
            _session_dict(s) for s in ledger.list_work_sessions(db, assignment.id)
        ]
        ad["events"] = [_event_dict(e) for e in ledger.get_events(db, item_id)]
        return JSONResponse(ad)
    finally:
        db.close()


async def api_summary(request: Request):
    config = get_config()
    db = _get_db()
    try:
        return JSONResponse(capacity_report(db, config))
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _iso(dt) -> str | None:
    return dt.isoformat() if dt else None


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
        "coordinator": a.coordinator,
        "result_ref": a.result_ref,
        "assigned_at": _iso(a.assigned_at),
        "started_at": _iso(a.started_at),
        "last_activity": _iso(a.last_activity),
        "completed_at": _iso(a.completed_at),
    }


def _session_dict(s) -> dict:
    return {
        "instance_token": s.instance_token,
        "started_at": _iso(s.started_at),
        "ended_at": _iso(s.ended_at),
        "summary": s.summary,
    }


def _event_dict(e) -> dict:
    return {
        "id": e.id,
        "event_type": e.event_type,
        "old_value": e.old_value,
        "new_value": e.new_value,
        "created_at": _iso(e.created_at),
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/assignments", api_list_assignments),
        Route("/api/assignments/{item_id:int}", api_get_assignment),
        Route("/api/summary", api_summary),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
