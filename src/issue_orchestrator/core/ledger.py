"""Local assignment ledger: the durable record of which worker holds which item."""

import sqlite3
import uuid
from datetime import datetime

from issue_orchestrator.db.models import (
    ACTIVE_STATUSES,
    ASSIGNMENT_STATUSES,
    Assignment,
    AssignmentEvent,
    WorkSession,
)


# ── Row-to-model helpers ────────────────────────────────────────────────────


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


def _row_to_assignment(row: sqlite3.Row) -> Assignment:
    return Assignment(
        id=row["id"],
        item_id=row["item_id"],
        item_title=row["item_title"],
        item_body=row["item_body"] or "",
        provider=row["provider"],
        branch_name=row["branch_name"],
        workdir=row["workdir"],
        instance_token=row["instance_token"],
        process_id=row["process_id"],
        status=row["status"],
        exclusive=bool(row["exclusive"]),
        coordinator=bool(row["coordinator"]),
        tracker_ref=row["tracker_ref"],
        result_ref=row["result_ref"],
        assigned_at=_parse_dt(row["assigned_at"]),
        started_at=_parse_dt(row["started_at"]),
        last_activity=_parse_dt(row["last_activity"]),
        completed_at=_parse_dt(row["completed_at"]),
    )


def _row_to_session(row: sqlite3.Row) -> WorkSession:
    return WorkSession(
        id=row["id"],
        assignment_id=row["assignment_id"],
        instance_token=row["instance_token"],
        started_at=_parse_dt(row["started_at"]),
        ended_at=_parse_dt(row["ended_at"]),
        summary=row["summary"],
        prompt=row["prompt"],
    )


def _validate_status(status: str):
    if status not in ASSIGNMENT_STATUSES:
        raise ValueError(
            f"Invalid status '{status}'. Must be one of: {', '.join(ASSIGNMENT_STATUSES)}"
        )


def _log_event(
    db: sqlite3.Connection,
    item_id: int,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        """INSERT INTO assignment_events (item_id, event_type, old_value, new_value)
           VALUES (?, ?, ?, ?)""",
        (item_id, event_type, old_value, new_value),
    )


# ── Create / Read ───────────────────────────────────────────────────────────


def create_assignment(
    db: sqlite3.Connection,
    item_id: int,
    item_title: str,
    provider: str,
    branch_name: str,
    workdir: str,
    item_body: str = "",
    status: str = "assigned",
    exclusive: bool = False,
    coordinator: bool = False,
    tracker_ref: str | None = None,
) -> Assignment:
    """Record a new assignment. At most one assignment may exist per item."""
    _validate_status(status)
    if get_assignment_by_item(db, item_id):
        raise ValueError(f"Item #{item_id} already has an assignment")

    assignment_id = str(uuid.uuid4())
    db.execute(
        """INSERT INTO assignments
           (id, item_id, item_title, item_body, provider, branch_name, workdir,
            status, exclusive, coordinator, tracker_ref)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            assignment_id, item_id, item_title, item_body, provider, branch_name,
            workdir, status, int(exclusive), int(coordinator), tracker_ref,
        ),
    )
    _log_event(db, item_id, "created", None, status)
    db.commit()
    return get_assignment(db, assignment_id)


def get_assignment(db: sqlite3.Connection, assignment_id: str) -> Assignment | None:
    row = db.execute(
        "SELECT * FROM assignments WHERE id = ?", (assignment_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_assignment(row)


def get_assignment_by_item(db: sqlite3.Connection, item_id: int) -> Assignment | None:
    row = db.execute(
        "SELECT * FROM assignments WHERE item_id = ?", (item_id,)
    ).fetchone()
    if not row:
        return None
    return _row_to_assignment(row)


def get_assignment_by_token(db: sqlite3.Connection, token: str) -> Assignment | None:
    row = db.execute(
        "SELECT * FROM assignments WHERE instance_token = ?", (token,)
    ).fetchone()
    if not row:
        return None
    return _row_to_assignment(row)


def list_assignments(
    db: sqlite3.Connection,
    status: str | tuple[str, ...] | None = None,
    provider: str | None = None,
) -> list[Assignment]:
    """List assignments, optionally filtered by status (one or several) and provider."""
    query = "SELECT * FROM assignments WHERE 1=1"
    params: list = []
    if status:
        statuses = (status,) if isinstance(status, str) else tuple(status)
        for s in statuses:
            _validate_status(s)
        query += f" AND status IN ({', '.join('?' for _ in statuses)})"
        params.extend(statuses)
    if provider:
        query += " AND provider = ?"
        params.append(provider)
    query += " ORDER BY assigned_at, item_id"
    rows = db.execute(query, params).fetchall()
    return [_row_to_assignment(r) for r in rows]


def list_active(db: sqlite3.Connection, provider: str | None = None) -> list[Assignment]:
    return list_assignments(db, status=ACTIVE_STATUSES, provider=provider)


def count_active(db: sqlite3.Connection, provider: str) -> int:
    """Number of assignments holding a worker slot for a provider."""
    row = db.execute(
        f"""SELECT COUNT(*) FROM assignments
            WHERE provider = ? AND status IN ({', '.join('?' for _ in ACTIVE_STATUSES)})""",
        (provider, *ACTIVE_STATUSES),
    ).fetchone()
    return row[0]


def count_by_status(db: sqlite3.Connection) -> dict[str, int]:
    counts = {s: 0 for s in ASSIGNMENT_STATUSES}
    for row in db.execute(
        "SELECT status, COUNT(*) AS n FROM assignments GROUP BY status"
    ).fetchall():
        counts[row["status"]] = row["n"]
    return counts


# ── Update ──────────────────────────────────────────────────────────────────


def update_status(db: sqlite3.Connection, assignment_id: str, status: str) -> Assignment:
    """Move an assignment to a new lifecycle status."""
    _validate_status(status)
    assignment = get_assignment(db, assignment_id)
    if not assignment:
        raise ValueError(f"Assignment not found: {assignment_id}")

    old_status = assignment.status
    if old_status == status:
        return assignment

    if status == "in-progress" and not assignment.started_at:
        db.execute(
            """UPDATE assignments SET status = ?, started_at = datetime('now'),
               last_activity = datetime('now') WHERE id = ?""",
            (status, assignment_id),
        )
    elif status in ("dev-complete", "merged"):
        db.execute(
            """UPDATE assignments SET status = ?, completed_at = datetime('now'),
               last_activity = datetime('now') WHERE id = ?""",
            (status, assignment_id),
        )
    else:
        db.execute(
            "UPDATE assignments SET status = ?, last_activity = datetime('now') WHERE id = ?",
            (status, assignment_id),
        )

    _log_event(db, assignment.item_id, "status_changed", old_status, status)
    db.commit()
    return get_assignment(db, assignment_id)


def set_worker(
    db: sqlite3.Connection,
    assignment_id: str,
    instance_token: str | None,
    process_id: int | None,
) -> Assignment:
    """Attach a worker instance to an assignment. Tokens are unique across the ledger."""
    assignment = get_assignment(db, assignment_id)
    if not assignment:
        raise ValueError(f"Assignment not found: {assignment_id}")
    try:
        db.execute(
            """UPDATE assignments
               SET instance_token = ?, process_id = ?, last_activity = datetime('now')
               WHERE id = ?""",
            (instance_token, process_id, assignment_id),
        )
    except sqlite3.IntegrityError as e:
        db.rollback()
        raise ValueError(
            f"Instance token '{instance_token}' is already held by another assignment"
        ) from e
    _log_event(
        db, assignment.item_id, "worker_changed",
        assignment.instance_token, instance_token,
    )
    db.commit()
    return get_assignment(db, assignment_id)


def set_result_ref(db: sqlite3.Connection, assignment_id: str, result_ref: str | None):
    db.execute(
        "UPDATE assignments SET result_ref = ? WHERE id = ?",
        (result_ref, assignment_id),
    )
    db.commit()


def touch(db: sqlite3.Connection, assignment_id: str):
    db.execute(
        "UPDATE assignments SET last_activity = datetime('now') WHERE id = ?",
        (assignment_id,),
    )
    db.commit()


# ── Work Sessions ───────────────────────────────────────────────────────────


def add_work_session(
    db: sqlite3.Connection,
    assignment_id: str,
    instance_token: str | None,
    prompt: str | None = None,
    summary: str | None = None,
) -> WorkSession:
    """Append a work session. Earlier sessions are never rewritten."""
    cur = db.execute(
        """INSERT INTO work_sessions (assignment_id, instance_token, prompt, summary)
           VALUES (?, ?, ?, ?)""",
        (assignment_id, instance_token, prompt, summary),
    )
    db.commit()
    row = db.execute(
        "SELECT * FROM work_sessions WHERE id = ?", (cur.lastrowid,)
    ).fetchone()
    return _row_to_session(row)


def end_work_session(
    db: sqlite3.Connection,
    assignment_id: str,
    summary: str | None = None,
) -> WorkSession | None:
    """Close the open session of an assignment, if any."""
    row = db.execute(
        """SELECT * FROM work_sessions
           WHERE assignment_id = ? AND ended_at IS NULL
           ORDER BY id DESC LIMIT 1""",
        (assignment_id,),
    ).fetchone()
    if not row:
        return None
    db.execute(
        """UPDATE work_sessions
           SET ended_at = datetime('now'), summary = COALESCE(?, summary)
           WHERE id = ?""",
        (summary, row["id"]),
    )
    db.commit()
    row = db.execute(
        "SELECT * FROM work_sessions WHERE id = ?", (row["id"],)
    ).fetchone()
    return _row_to_session(row)


def list_work_sessions(db: sqlite3.Connection, assignment_id: str) -> list[WorkSession]:
    rows = db.execute(
        "SELECT * FROM work_sessions WHERE assignment_id = ? ORDER BY id",
        (assignment_id,),
    ).fetchall()
    return [_row_to_session(r) for r in rows]


def last_summary(db: sqlite3.Connection, assignment_id: str) -> str | None:
    """Most recent non-empty session summary, used to brief a resumed worker."""
    row = db.execute(
        """SELECT summary FROM work_sessions
           WHERE assignment_id = ? AND summary IS NOT NULL AND summary != ''
           ORDER BY id DESC LIMIT 1""",
        (assignment_id,),
    ).fetchone()
    return row["summary"] if row else None


# ── Delete ──────────────────────────────────────────────────────────────────


def delete_assignment(
    db: sqlite3.Connection,
    assignment_id: str,
    reason: str | None = None,
) -> bool:
    assignment = get_assignment(db, assignment_id)
    if not assignment:
        return False
    db.execute("DELETE FROM assignments WHERE id = ?", (assignment_id,))
    _log_event(db, assignment.item_id, "removed", assignment.status, reason)
    db.commit()
    return True


# ── Events ──────────────────────────────────────────────────────────────────


def log_event(
    db: sqlite3.Connection,
    item_id: int,
    event_type: str,
    old_value: str | None = None,
    new_value: str | None = None,
):
    _log_event(db, item_id, event_type, old_value, new_value)
    db.commit()


def get_events(db: sqlite3.Connection, item_id: int) -> list[AssignmentEvent]:
    rows = db.execute(
        "SELECT * FROM assignment_events WHERE item_id = ? ORDER BY id",
        (item_id,),
    ).fetchall()
    return [
        AssignmentEvent(
            id=r["id"],
            item_id=r["item_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]
