"""CLI entry point for the work loop."""

import json
import logging
import os
import signal
import sys
import threading

import click

from work_loop.config import get_config
from work_loop.core import projects as projects_mod
from work_loop.core import tasks as tasks_mod
from work_loop.core.decide import decide
from work_loop.core.reconciler import PullRequestReconciler
from work_loop.db.engine import get_db
from work_loop.db.models import REVIEWER_ROLE, TASK_STATUSES
from work_loop.integrations import slack as slack_mod
from work_loop.loop.audit import AuditLog


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@click.group()
def main():
    """wl - work loop orchestrator for autonomous coding agents"""
    pass


# ── Project Commands ──────────────────────────────────────────────────────────


@main.command("init")
@click.argument("project_name")
@click.option("--repo-path", default=".", help="Path to the git repository")
@click.option("--branch", default="main", help="Default branch name")
@click.option("--github-repo", default=None, help="GitHub repository as owner/name")
@click.option("--slack-channel", default=None, help="Slack channel for escalations")
@click.option("--max-agents", default=None, type=int, help="Per-project agent ceiling")
@click.option("--enable/--disable", default=False, help="Run the work loop on this project")
def init_project(project_name, repo_path, branch, github_repo, slack_channel, max_agents, enable):
    """Initialize a new project."""
    repo_path = os.path.abspath(repo_path)
    project_id = tasks_mod.slugify(project_name)

    with _get_db() as db:
        if projects_mod.get_project(db, project_id):
            click.echo(f"Project already exists: {project_id}", err=True)
            sys.exit(1)
        project = projects_mod.create_project(
            db, project_id, project_name, repo_path, branch,
            github_repo=github_repo,
            slack_channel=slack_channel,
            work_loop_enabled=enable,
            work_loop_max_agents=max_agents,
        )
        click.echo(f"Project created: {project.id} ({project.name})")
        click.echo(f"  Repo: {project.local_path}")
        click.echo(f"  Branch: {project.default_branch}")
        click.echo(f"  Work loop: {'enabled' if project.work_loop_enabled else 'disabled'}")


@main.group("project")
def project_group():
    """Manage projects."""
    pass


@project_group.command("list")
def project_list():
    """List projects."""
    with _get_db() as db:
        projects = projects_mod.list_projects(db)
        if not projects:
            click.echo("No projects found.")
            return
        for p in projects:
            state = "on" if p.work_loop_enabled else "off"
            click.echo(f"  {p.id}: {p.name} [{state}] {p.local_path}")


@project_group.command("enable")
@click.argument("project_id")
def project_enable(project_id):
    """Turn the work loop on for a project."""
    _set_enabled(project_id, True)


@project_group.command("disable")
@click.argument("project_id")
def project_disable(project_id):
    """Turn the work loop off for a project."""
    _set_enabled(project_id, False)


def _set_enabled(project_id: str, enabled: bool):
    with _get_db() as db:
        if not projects_mod.get_project(db, project_id):
            click.echo(f"Project not found: {project_id}", err=True)
            sys.exit(1)
        projects_mod.update_project(db, project_id, work_loop_enabled=enabled)
        click.echo(f"Work loop {'enabled' if enabled else 'disabled'} for {project_id}")


# ── Task Commands ─────────────────────────────────────────────────────────────


@main.group("task")
def task_group():
    """Manage tasks."""
    pass


@task_group.command("add")
@click.argument("title")
@click.option("--project", default="default", help="Project ID")
@click.option("--description", "-d", default="", help="Task description")
@click.option("--role", default=None, help="Agent role to dispatch (default: dev)")
@click.option("--depends-on", default=None, help="Comma-separated task IDs this depends on")
@click.option("--priority", "-p", default=3, type=int, help="Priority P0 (highest) to P6 (lowest)")
@click.option("--ready", is_flag=True, help="Create the task as ready instead of backlog")
def task_add(title, project, description, role, depends_on, priority, ready):
    """Create a new task."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None

    config = get_config()
    with _get_db() as db:
        if project == "default":
            projects_mod.ensure_default_project(db, str(config.repo_path))
        elif not projects_mod.get_project(db, project):
            click.echo(f"Project not found: {project}", err=True)
            sys.exit(1)
        task = tasks_mod.create_task(
            db, title, project, description,
            role=role, depends_on=deps, priority=priority,
            status="ready" if ready else "backlog",
        )
        click.echo(f"Created task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")


@task_group.command("list")
@click.option("--project", default="default", help="Project ID")
@click.option("--status", default=None, type=click.Choice(TASK_STATUSES), help="Filter by status")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def task_list(project, status, json_output):
    """List tasks."""
    with _get_db() as db:
        tasks = tasks_mod.list_tasks(db, project, status=status)

        if json_output:
            click.echo(json.dumps([_task_dict(t) for t in tasks], indent=2))
            return

        if not tasks:
            click.echo("No tasks found.")
            return

        status_icons = {
            "backlog": "·",
            "ready": "○",
            "in_progress": "●",
            "in_review": "◐",
            "blocked": "✗",
            "done": "✓",
        }

        for task in tasks:
            icon = status_icons.get(task.status, "?")
            deps = f" [depends: {', '.join(task.depends_on)}]" if task.depends_on else ""
            pr = f" [PR #{task.pr_number}]" if task.pr_number else ""
            click.echo(f"  {icon} P{task.priority} {task.id}: {task.title} ({task.status}){deps}{pr}")


@task_group.command("show")
@click.argument("task_id")
def task_show(task_id):
    """Show task details."""
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)

        click.echo(f"Task: {task.id}")
        click.echo(f"  Title: {task.title}")
        click.echo(f"  Priority: P{task.priority}")
        click.echo(f"  Status: {task.status}")
        click.echo(f"  Project: {task.project_id}")
        click.echo(f"  Role: {task.role if task.role is not None else 'dev (default)'}")
        if task.description:
            click.echo(f"  Description: {task.description}")
        click.echo(f"  Branch: {task.branch_name}")
        if task.worktree_path:
            click.echo(f"  Worktree: {task.worktree_path}")
        if task.pr_number:
            click.echo(f"  PR: #{task.pr_number}")
        if task.agent_retry_count:
            click.echo(f"  Conflict attempts: {task.agent_retry_count}")
        if task.agent_session_key:
            click.echo(f"  Agent: {task.agent_session_key} ({task.agent_model})")
        if task.depends_on:
            click.echo(f"  Depends on: {', '.join(task.depends_on)}")

        comments = tasks_mod.list_comments(db, task_id)
        if comments:
            click.echo("  Comments:")
            for c in comments:
                click.echo(f"    [{c.author}] {c.content}")

        events = tasks_mod.get_task_events(db, task_id)
        if events:
            click.echo("  History:")
            for e in events:
                change = f"{e.old_value} → {e.new_value}" if e.old_value else e.new_value
                why = f" ({e.reason})" if e.reason else ""
                click.echo(f"    {e.created_at}: {e.event_type} {change}{why}")


@task_group.command("move")
@click.argument("task_id")
@click.argument("status", type=click.Choice(TASK_STATUSES))
@click.option("--reason", default=None, help="Why the task is moving")
def task_move(task_id, status, reason):
    """Move a task to another status."""
    with _get_db() as db:
        task = tasks_mod.update_task_status(db, task_id, status, actor="human", reason=reason)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"Task {task.id} is now {task.status}")


@task_group.command("comment")
@click.argument("task_id")
@click.argument("content")
@click.option("--author", default=lambda: os.environ.get("USER", "human"), help="Comment author")
def task_comment(task_id, content, author):
    """Add a comment to a task."""
    with _get_db() as db:
        try:
            tasks_mod.add_comment(db, task_id, content, author=author, author_type="human")
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        click.echo(f"Comment added to {task_id}")


@task_group.command("add-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_add_dep(task_id, depends_on_id):
    """Make TASK_ID depend on DEPENDS_ON_ID."""
    with _get_db() as db:
        try:
            task = tasks_mod.add_dependency(db, task_id, depends_on_id)
        except ValueError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        click.echo(f"{task_id} now depends on: {', '.join(task.depends_on)}")


@task_group.command("remove-dep")
@click.argument("task_id")
@click.argument("depends_on_id")
def task_remove_dep(task_id, depends_on_id):
    """Remove a dependency from a task."""
    with _get_db() as db:
        task = tasks_mod.remove_dependency(db, task_id, depends_on_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        deps = ", ".join(task.depends_on) if task.depends_on else "none"
        click.echo(f"{task_id} dependencies: {deps}")


# ── Work Loop Commands ───────────────────────────────────────────────────────


@main.group("loop")
def loop_group():
    """Run and inspect the work loop."""
    pass


@loop_group.command("run")
@click.option("--once", is_flag=True, help="Run a single cycle and exit")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def loop_run(once, verbose):
    """Run the work loop."""
    from work_loop.loop.driver import WorkLoop

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    config = get_config()
    with _get_db() as db:
        loop = WorkLoop(db, config)
        if once:
            result = loop.run_cycle()
            click.echo(json.dumps(result, indent=2, default=str))
            return

        stop = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stop.set())
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        loop.run_forever(stop)


@loop_group.command("runs")
@click.argument("project_id")
@click.option("--limit", default=30, type=int, help="Number of entries")
@click.option("--action", default=None, help="Only entries with this action")
def loop_runs(project_id, limit, action):
    """Show recent work loop activity for a project."""
    with _get_db() as db:
        runs = AuditLog(db).list_runs(project_id, limit=limit, action=action)
        if not runs:
            click.echo("No work loop activity.")
            return
        for r in reversed(runs):
            task = f" {r.task_id}" if r.task_id else ""
            details = f" {json.dumps(r.details)}" if r.details else ""
            click.echo(f"  #{r.cycle} {r.phase:<8} {r.action}{task}{details}")


@loop_group.command("decide")
@click.argument("task_id")
def loop_decide(task_id):
    """Show what the work loop would do with a task right now (dry run)."""
    config = get_config()
    with _get_db() as db:
        task = tasks_mod.get_task(db, task_id)
        if not task:
            click.echo(f"Task not found: {task_id}", err=True)
            sys.exit(1)
        project = projects_mod.get_project(db, task.project_id)

        has_open_pr = False
        if task.status == "in_review" and project is not None:
            reconciler = PullRequestReconciler(project, timeout=config.gh_timeout_seconds)
            has_open_pr = reconciler.find_open_pr(task) is not None

        # A fresh process tracks no agents, so capacity is whatever the ceilings allow.
        role = task.role if task.role is not None else "dev"
        role_limit = config.role_limit(role)
        reviewer_limit = config.role_limit(REVIEWER_ROLE)
        action = decide(
            task,
            agent_status="none",
            has_open_pr=has_open_pr,
            dependencies_met=tasks_mod.dependencies_met(db, task),
            capacity_available=config.max_agents_global > 0 and (role_limit is None or role_limit > 0),
            reviewer_capacity_available=config.max_agents_global > 0 and reviewer_limit > 0,
        )
        click.echo(json.dumps({"task_id": task.id, "status": task.status, "action": action.to_dict()}, indent=2))


# ── Cleanup Commands ─────────────────────────────────────────────────────────


@main.group("cleanup")
def cleanup_group():
    """Find and resolve stuck tickets."""
    pass


@cleanup_group.command("stuck")
@click.argument("project_id")
@click.option("--minutes", default=None, type=int, help="Age threshold (default WORK_LOOP_STALE_REVIEW_MINUTES)")
@click.option("--mark", type=click.Choice(["done", "ready"]), default=None, help="Move TASK to this status")
@click.option("--task", "task_id", default=None, help="Stuck task to mark")
def cleanup_stuck(project_id, minutes, mark, task_id):
    """List tickets stuck in review, or mark one as done/ready."""
    config = get_config()
    with _get_db() as db:
        if mark:
            if not task_id:
                click.echo("--mark requires --task", err=True)
                sys.exit(1)
            task = tasks_mod.update_task_status(
                db, task_id, mark, actor="human", reason="stuck_ticket_cleanup",
            )
            if not task:
                click.echo(f"Task not found: {task_id}", err=True)
                sys.exit(1)
            click.echo(f"Ticket {task_id} marked as {mark}")
            return

        threshold = minutes if minutes is not None else config.stale_review_minutes
        stuck = tasks_mod.find_stuck_tasks(db, project_id, threshold)
        if not stuck:
            click.echo("No stuck tickets.")
            return
        for t in stuck:
            click.echo(f"  {t['id']}: {t['title']} (in review {t['age_minutes']} min)")


# ── Config Commands ──────────────────────────────────────────────────────────


@main.group("config")
def config_group():
    """Inspect configuration."""
    pass


@config_group.command("show")
def config_show():
    """Print the effective configuration."""
    try:
        config = get_config()
    except ValueError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    for key, value in vars(config).items():
        if key == "slack_bot_token" and value:
            value = "***"
        click.echo(f"  {key}: {value}")


# ── Slack Commands ────────────────────────────────────────────────────────────


@main.group("slack")
def slack_group():
    """Slack integration commands."""
    pass


@slack_group.command("status")
@click.option("--project", default="default", help="Project ID")
@click.option("--channel", default=None, help="Slack channel (uses project default if not set)")
def slack_status(project, channel):
    """Post a project status update to Slack."""
    config = get_config()
    with _get_db() as db:
        if not channel:
            proj = projects_mod.get_project(db, project)
            channel = proj.slack_channel if proj else None
        if not channel:
            click.echo("No channel specified and no default channel for project.", err=True)
            sys.exit(1)

        counts = tasks_mod.count_by_status(db, project)
        blocks = slack_mod.format_status_update(project, counts)
        try:
            result = slack_mod.send_message(
                config.slack_bot_token, channel, f"Status: {project}", blocks
            )
            click.echo(f"Status posted to {result.channel}")
        except slack_mod.SlackError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)


# ── Servers ──────────────────────────────────────────────────────────────────


@main.command("serve")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
def serve_command(host, port):
    """Serve the status API."""
    from work_loop.web.app import run_server

    click.echo(f"Serving status API at http://{host}:{port}")
    run_server(host=host, port=port)


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server agents report through (stdio transport)."""
    from work_loop.mcp.server import mcp

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _task_dict(task) -> dict:
    return {
        "id": task.id,
        "title": task.title,
        "status": task.status,
        "priority": f"P{task.priority}",
        "project": task.project_id,
        "role": task.role,
        "description": task.description,
        "branch": task.branch_name,
        "worktree": task.worktree_path,
        "pr_number": task.pr_number,
        "depends_on": task.depends_on,
    }


if __name__ == "__main__":
    main()
