"""Task store operations."""

import re
import sqlite3
from datetime import datetime, timedelta

from work_loop.db.models import (
    TASK_STATUSES,
    AgentHandle,
    Comment,
    Task,
    TaskEvent,
    format_dt,
    parse_dt,
    utcnow,
)

# Fields other parts of the system may write directly. Status goes through
# update_task_status so that every transition is logged.
UPDATABLE_FIELDS = {
    "title",
    "description",
    "role",
    "priority",
    "pr_number",
    "branch",
    "worktree_path",
    "agent_retry_count",
    "agent_session_key",
    "agent_model",
    "agent_started_at",
    "agent_last_active_at",
    "triage_sent_at",
}


def slugify(title: str) -> str:
    """Convert a title to a URL-friendly slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug[:60].strip("-")


def _unique_id(db: sqlite3.Connection, base_slug: str) -> str:
    """Generate a unique task ID from a slug, appending a number if needed."""
    base_slug = base_slug or "task"
    existing = db.execute(
        "SELECT id FROM tasks WHERE id = ?", (base_slug,)
    ).fetchone()
    if not existing:
        return base_slug

    i = 2
    while True:
        candidate = f"{base_slug}-{i}"
        existing = db.execute(
            "SELECT id FROM tasks WHERE id = ?", (candidate,)
        ).fetchone()
        if not existing:
            return candidate
        i += 1


def create_task(
    db: sqlite3.Connection,
    title: str,
    project_id: str = "default",
    description: str = "",
    role: str | None = None,
    depends_on: list[str] | None = None,
    priority: int = 3,
    status: str = "backlog",
) -> Task:
    """Create a new task."""
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")
    task_id = _unique_id(db, slugify(title))
    priority = max(0, min(6, priority))

    db.execute(
        """INSERT INTO tasks (id, project_id, title, description, role, priority, status)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (task_id, project_id, title, description, role, priority, status),
    )

    if depends_on:
        for dep_id in depends_on:
            db.execute(
                "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
                (task_id, dep_id),
            )

    log_event(db, task_id, "created", None, status)
    db.commit()
    return get_task(db, task_id)


def get_task(db: sqlite3.Connection, task_id: str) -> Task | None:
    """Get a task by ID with its dependencies."""
    row = db.execute("SELECT * FROM tasks WHERE id = ?", (task_id,)).fetchone()
    if not row:
        return None

    task = _row_to_task(row)
    task.depends_on = _dependency_ids(db, task_id)
    return task


def list_tasks(
    db: sqlite3.Connection,
    project_id: str = "default",
    status: str | None = None,
) -> list[Task]:
    """List tasks for a project, highest priority first."""
    query = "SELECT * FROM tasks WHERE project_id = ?"
    params: list = [project_id]

    if status:
        query += " AND status = ?"
        params.append(status)

    query += " ORDER BY priority ASC, created_at ASC, id ASC"
    rows = db.execute(query, params).fetchall()
    tasks = []
    for row in rows:
        task = _row_to_task(row)
        task.depends_on = _dependency_ids(db, task.id)
        tasks.append(task)
    return tasks


def count_by_status(db: sqlite3.Connection, project_id: str) -> dict[str, int]:
    """Number of tasks per status, every status present."""
    counts = {status: 0 for status in TASK_STATUSES}
    rows = db.execute(
        "SELECT status, COUNT(*) AS n FROM tasks WHERE project_id = ? GROUP BY status",
        (project_id,),
    ).fetchall()
    for row in rows:
        counts[row["status"]] = row["n"]
    return counts


def update_task_status(
    db: sqlite3.Connection,
    task_id: str,
    status: str,
    actor: str | None = None,
    reason: str | None = None,
) -> Task | None:
    """Update a task's status. Returns the updated task.

    Re-issuing the current status is a no-op, so callers can retry freely.
    """
    if status not in TASK_STATUSES:
        raise ValueError(f"Invalid status: {status}")

    task = get_task(db, task_id)
    if not task:
        return None

    old_status = task.status
    if old_status == status:
        return task

    updates: dict = {"status": status}

    if status == "done":
        updates["completed_at"] = format_dt(utcnow())
    elif task.completed_at is not None:
        updates["completed_at"] = None
    if old_status == "blocked":
        # A task leaving triage gets a fresh triage request if it comes back.
        updates["triage_sent_at"] = None

    set_parts = [f"{k} = ?" for k in updates]
    set_parts.append("updated_at = datetime('now')")
    values = list(updates.values()) + [task_id]

    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values,
    )
    log_event(db, task_id, "status_changed", old_status, status, actor=actor, reason=reason)
    db.commit()
    return get_task(db, task_id)


def update_task_fields(db: sqlite3.Connection, task_id: str, **fields) -> Task | None:
    """Write plain task fields. Datetimes are stored as ISO strings."""
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update task fields: {', '.join(sorted(unknown))}")

    task = get_task(db, task_id)
    if not task:
        return None
    if not fields:
        return task

    values = []
    for value in fields.values():
        values.append(format_dt(value) if isinstance(value, datetime) else value)

    set_parts = [f"{k} = ?" for k in fields]
    set_parts.append("updated_at = datetime('now')")
    db.execute(
        f"UPDATE tasks SET {', '.join(set_parts)} WHERE id = ?",
        values + [task_id],
    )

    if "pr_number" in fields and fields["pr_number"] != task.pr_number:
        log_event(
            db, task_id, "pr_recorded",
            str(task.pr_number) if task.pr_number else None,
            str(fields["pr_number"]) if fields["pr_number"] else None,
        )
    db.commit()
    return get_task(db, task_id)


def record_agent_session(
    db: sqlite3.Connection,
    task_id: str,
    handle: AgentHandle,
) -> Task | None:
    """Store a freshly spawned agent's session on the task so later cycles can find it."""
    task = update_task_fields(
        db,
        task_id,
        agent_session_key=handle.session_key,
        agent_model=handle.model,
        agent_started_at=handle.spawned_at,
        agent_last_active_at=handle.last_active_at,
    )
    if task is None:
        return None
    log_event(
        db, task_id, "agent_assigned", None, handle.session_key,
        actor="work-loop", reason=f"{handle.role}:{handle.model}",
    )
    db.commit()
    return task


def update_agent_activity(
    db: sqlite3.Connection,
    task_id: str,
    last_active_at: datetime,
) -> None:
    """Bump the observed activity timestamp without touching updated_at."""
    db.execute(
        "UPDATE tasks SET agent_last_active_at = ? WHERE id = ?",
        (format_dt(last_active_at), task_id),
    )
    db.commit()


def dependencies_met(db: sqlite3.Connection, task: Task) -> bool:
    """True when every dependency exists and is done."""
    for dep_id in task.depends_on:
        dep = db.execute(
            "SELECT status FROM tasks WHERE id = ?", (dep_id,)
        ).fetchone()
        if not dep or dep["status"] != "done":
            return False
    return True


def find_stuck_tasks(
    db: sqlite3.Connection,
    project_id: str,
    older_than_minutes: int,
    status: str = "in_review",
    now: datetime | None = None,
) -> list[dict]:
    """Tasks sitting in a status without any update for longer than the threshold."""
    now = now or utcnow()
    cutoff = now - timedelta(minutes=older_than_minutes)
    stuck = []
    for task in list_tasks(db, project_id, status=status):
        if task.updated_at is None or task.updated_at >= cutoff:
            continue
        stuck.append({
            "id": task.id,
            "title": task.title,
            "updated_at": format_dt(task.updated_at),
            "age_minutes": round((now - task.updated_at).total_seconds() / 60),
        })
    stuck.sort(key=lambda t: t["updated_at"])
    return stuck


# ── Comments ─────────────────────────────────────────────────────────────────


def add_comment(
    db: sqlite3.Connection,
    task_id: str,
    content: str,
    author: str = "work-loop",
    author_type: str = "coordinator",
    comment_type: str = "message",
) -> Comment:
    """Append a comment to a task."""
    if not get_task(db, task_id):
        raise ValueError(f"Task not found: {task_id}")
    cur = db.execute(
        """INSERT INTO comments (task_id, author, author_type, content, type)
           VALUES (?, ?, ?, ?, ?)""",
        (task_id, author, author_type, content, comment_type),
    )
    db.commit()
    row = db.execute("SELECT * FROM comments WHERE id = ?", (cur.lastrowid,)).fetchone()
    return _row_to_comment(row)


def list_comments(
    db: sqlite3.Connection,
    task_id: str,
    include_automated: bool = True,
) -> list[Comment]:
    """Comments oldest first. Automated status-change notes can be filtered out."""
    query = "SELECT * FROM comments WHERE task_id = ?"
    if not include_automated:
        query += " AND type != 'status_change'"
    query += " ORDER BY created_at ASC, id ASC"
    rows = db.execute(query, (task_id,)).fetchall()
    return [_row_to_comment(r) for r in rows]


# ── Events ───────────────────────────────────────────────────────────────────


def log_event(
    db: sqlite3.Connection,
    task_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
    actor: str | None = None,
    reason: str | None = None,
):
    db.execute(
        """INSERT INTO task_events (task_id, event_type, old_value, new_value, actor, reason)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (task_id, event_type, old_value, new_value, actor, reason),
    )


def get_task_events(db: sqlite3.Connection, task_id: str) -> list[TaskEvent]:
    """Get the event history for a task."""
    rows = db.execute(
        "SELECT * FROM task_events WHERE task_id = ? ORDER BY created_at, id",
        (task_id,),
    ).fetchall()
    return [
        TaskEvent(
            id=r["id"],
            task_id=r["task_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            actor=r["actor"],
            reason=r["reason"],
            created_at=parse_dt(r["created_at"]),
        )
        for r in rows
    ]


# ── Dependencies ─────────────────────────────────────────────────────────────


def add_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Add a dependency to an existing task."""
    task = get_task(db, task_id)
    if not task:
        return None
    dep = get_task(db, depends_on_id)
    if not dep:
        raise ValueError(f"Dependency task not found: {depends_on_id}")
    if depends_on_id == task_id:
        raise ValueError("A task cannot depend on itself")
    if depends_on_id in task.depends_on:
        return task  # Already exists
    db.execute(
        "INSERT INTO task_dependencies (task_id, depends_on_task_id) VALUES (?, ?)",
        (task_id, depends_on_id),
    )
    log_event(db, task_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_task(db, task_id)


def remove_dependency(
    db: sqlite3.Connection,
    task_id: str,
    depends_on_id: str,
) -> Task | None:
    """Remove a dependency from a task."""
    task = get_task(db, task_id)
    if not task:
        return None
    db.execute(
        "DELETE FROM task_dependencies WHERE task_id = ? AND depends_on_task_id = ?",
        (task_id, depends_on_id),
    )
    log_event(db, task_id, "dependency_removed", depends_on_id, None)
    db.commit()
    return get_task(db, task_id)


def _dependency_ids(db: sqlite3.Connection, task_id: str) -> list[str]:
    deps = db.execute(
        "SELECT depends_on_task_id FROM task_dependencies WHERE task_id = ?",
        (task_id,),
    ).fetchall()
    return [d["depends_on_task_id"] for d in deps]


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        project_id=row["project_id"],
        title=row["title"],
        description=row["description"] or "",
        status=row["status"],
        role=row["role"],
        priority=row["priority"] if row["priority"] is not None else 3,
        pr_number=row["pr_number"],
        branch=row["branch"],
        worktree_path=row["worktree_path"],
        agent_retry_count=row["agent_retry_count"] or 0,
        agent_session_key=row["agent_session_key"],
        agent_model=row["agent_model"],
        agent_started_at=parse_dt(row["agent_started_at"]),
        agent_last_active_at=parse_dt(row["agent_last_active_at"]),
        triage_sent_at=parse_dt(row["triage_sent_at"]),
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
        completed_at=parse_dt(row["completed_at"]),
    )


def _row_to_comment(row: sqlite3.Row) -> Comment:
    return Comment(
        id=row["id"],
        task_id=row["task_id"],
        author=row["author"],
        author_type=row["author_type"],
        content=row["content"],
        type=row["type"],
        created_at=parse_dt(row["created_at"]),
    )
