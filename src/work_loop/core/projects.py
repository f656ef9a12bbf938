"""Project management operations."""

import sqlite3

from work_loop.db.models import Project, parse_dt


def create_project(
    db: sqlite3.Connection,
    project_id: str,
    name: str,
    local_path: str,
    default_branch: str = "main",
    github_repo: str | None = None,
    slack_channel: str | None = None,
    work_loop_enabled: bool = False,
    work_loop_max_agents: int | None = None,
) -> Project:
    """Create a new project."""
    db.execute(
        """INSERT INTO projects
           (id, name, local_path, default_branch, github_repo, slack_channel,
            work_loop_enabled, work_loop_max_agents)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            project_id, name, local_path, default_branch, github_repo,
            slack_channel, int(work_loop_enabled), work_loop_max_agents,
        ),
    )
    db.commit()
    return get_project(db, project_id)


def get_project(db: sqlite3.Connection, project_id: str) -> Project | None:
    """Get a project by ID."""
    row = db.execute("SELECT * FROM projects WHERE id = ?", (project_id,)).fetchone()
    if not row:
        return None
    return _row_to_project(row)


def list_projects(db: sqlite3.Connection) -> list[Project]:
    """List all projects."""
    rows = db.execute("SELECT * FROM projects ORDER BY created_at DESC, id").fetchall()
    return [_row_to_project(r) for r in rows]


def list_enabled_projects(db: sqlite3.Connection) -> list[Project]:
    """Projects the work loop should run against, in a stable order."""
    rows = db.execute(
        "SELECT * FROM projects WHERE work_loop_enabled = 1 ORDER BY id"
    ).fetchall()
    return [_row_to_project(r) for r in rows]


def update_project(
    db: sqlite3.Connection,
    project_id: str,
    **kwargs,
) -> Project | None:
    """Update project fields."""
    allowed = {
        "name", "local_path", "default_branch", "github_repo",
        "slack_channel", "work_loop_enabled", "work_loop_max_agents",
    }
    updates = {k: v for k, v in kwargs.items() if k in allowed and v is not None}
    if "work_loop_enabled" in updates:
        updates["work_loop_enabled"] = int(bool(updates["work_loop_enabled"]))
    if not updates:
        return get_project(db, project_id)

    set_clause = ", ".join(f"{k} = ?" for k in updates)
    values = list(updates.values()) + [project_id]
    db.execute(
        f"UPDATE projects SET {set_clause}, updated_at = datetime('now') WHERE id = ?",
        values,
    )
    db.commit()
    return get_project(db, project_id)


def ensure_default_project(db: sqlite3.Connection, local_path: str) -> Project:
    """Ensure a 'default' project exists, creating it if needed."""
    project = get_project(db, "default")
    if not project:
        project = create_project(db, "default", "Default Project", local_path)
    return project


def _row_to_project(row: sqlite3.Row) -> Project:
    return Project(
        id=row["id"],
        name=row["name"],
        local_path=row["local_path"],
        default_branch=row["default_branch"] or "main",
        github_repo=row["github_repo"],
        slack_channel=row["slack_channel"],
        work_loop_enabled=bool(row["work_loop_enabled"]),
        work_loop_max_agents=row["work_loop_max_agents"],
        created_at=parse_dt(row["created_at"]),
        updated_at=parse_dt(row["updated_at"]),
    )
