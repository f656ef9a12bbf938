"""MCP server through which spawned agents read and update the task store.

This is the only channel an agent has for reporting a result: moving its
task to in_review, done or blocked, recording the pull request it opened,
and leaving comments for humans.
"""

from __future__ import annotations

import sqlite3
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from work_loop.config import Config, get_config
from work_loop.core import tasks as tasks_mod
from work_loop.db.engine import init_db
from work_loop.loop.audit import AuditLog, entry_to_dict


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


mcp = FastMCP("work-loop", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


# ── Task Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
def get_task(ctx: Context, task_id: str) -> dict:
    """Get full details of a task, including human comments."""
    app = _ctx(ctx)
    task = tasks_mod.get_task(app.db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    result = _task_to_dict(task)
    result["comments"] = [
        {"author": c.author, "content": c.content, "created_at": c.created_at.isoformat() if c.created_at else None}
        for c in tasks_mod.list_comments(app.db, task_id, include_automated=False)
    ]
    return result


@mcp.tool()
def list_tasks(
    ctx: Context,
    project: str = "default",
    status: str | None = None,
) -> list[dict]:
    """List tasks of a project, highest priority first, optionally filtered by status."""
    app = _ctx(ctx)
    tasks = tasks_mod.list_tasks(app.db, project, status=status)
    return [_task_to_dict(t) for t in tasks]


@mcp.tool()
def update_task_status(
    ctx: Context,
    task_id: str,
    status: str,
    reason: str | None = None,
) -> dict:
    """Update a task's status.

    Valid statuses: backlog, ready, in_progress, in_review, blocked, done.
    Use in_review after opening a PR, done when the work is finished
    (or a reviewed PR is merged), blocked when you cannot continue.
    """
    return _update_status(_ctx(ctx).db, task_id, status, reason)


@mcp.tool()
def record_pull_request(
    ctx: Context,
    task_id: str,
    pr_number: int,
    branch: str | None = None,
) -> dict:
    """Record the pull request (and its head branch) opened for a task."""
    app = _ctx(ctx)
    fields = {"pr_number": pr_number}
    if branch:
        fields["branch"] = branch
    task = tasks_mod.update_task_fields(app.db, task_id, **fields)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


@mcp.tool()
def add_comment(ctx: Context, task_id: str, content: str, author: str = "agent") -> dict:
    """Leave a comment on a task: findings, blockers, or what was changed."""
    app = _ctx(ctx)
    try:
        comment = tasks_mod.add_comment(app.db, task_id, content, author=author, author_type="agent")
    except ValueError as e:
        return {"error": str(e)}
    return {
        "id": comment.id,
        "task_id": comment.task_id,
        "author": comment.author,
        "content": comment.content,
    }


@mcp.tool()
def reset_conflict_attempts(ctx: Context, task_id: str) -> dict:
    """Reset the conflict-resolution attempt counter after resolving a PR's conflicts."""
    app = _ctx(ctx)
    return _reset_attempts(app.db, task_id)


# ── Work Loop Tools ──────────────────────────────────────────────────────────


@mcp.tool()
def list_work_loop_runs(ctx: Context, project: str = "default", limit: int = 20) -> list[dict]:
    """Recent work loop audit entries for a project, newest first."""
    app = _ctx(ctx)
    return [entry_to_dict(e) for e in AuditLog(app.db).list_runs(project, limit=limit)]


# ── Helpers ──────────────────────────────────────────────────────────────────


def _update_status(db: sqlite3.Connection, task_id: str, status: str, reason: str | None) -> dict:
    try:
        task = tasks_mod.update_task_status(db, task_id, status, actor="agent", reason=reason)
    except ValueError as e:
        return {"error": str(e)}
    if not task:
        return {"error": f"Task not found: {task_id}"}
    return _task_to_dict(task)


def _reset_attempts(db: sqlite3.Connection, task_id: str) -> dict:
    task = tasks_mod.get_task(db, task_id)
    if not task:
        return {"error": f"Task not found: {task_id}"}
    previous = task.agent_retry_count
    task = tasks_mod.update_task_fields(db, task_id, agent_retry_count=0)
    tasks_mod.log_event(db, task_id, "conflict_attempts_reset", str(previous), "0", actor="agent")
    db.commit()
    return _task_to_dict(task)


def _task_to_dict(task) -> dict:
    d = {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "description": task.description,
        "branch": task.branch_name,
        "conflict_attempts": task.agent_retry_count,
    }
    if task.role is not None:
        d["role"] = task.role
    if task.pr_number:
        d["pr_number"] = task.pr_number
    if task.worktree_path:
        d["worktree_path"] = task.worktree_path
    if task.depends_on:
        d["depends_on"] = task.depends_on
    return d


