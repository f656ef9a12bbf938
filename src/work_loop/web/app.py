"""Status API for the work loop: projects, audit log and stuck tickets."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from work_loop.config import get_config
from work_loop.core import projects as projects_mod
from work_loop.core import tasks as tasks_mod
from work_loop.db.engine import init_db
from work_loop.loop.audit import AuditLog, entry_to_dict

STUCK_TICKET_ACTIONS = ("done", "ready")


def _get_db():
    config = get_config()
    return init_db(config.db_path)


# ── Handlers ──────────────────────────────────────────────────────────────────


async def api_list_projects(request: Request):
    db = _get_db()
    try:
        projects = projects_mod.list_projects(db)
        return JSONResponse([_project_dict(p) for p in projects])
    finally:
        db.close()


async def api_project_summary(request: Request):
    project_id = request.path_params["project_id"]
    db = _get_db()
    try:
        if not projects_mod.get_project(db, project_id):
            return JSONResponse({"error": "Project not found"}, status_code=404)
        counts = tasks_mod.count_by_status(db, project_id)
        total = sum(counts.values())
        progress = (counts["done"] / total * 100) if total > 0 else 0
        return JSONResponse({
            "project_id": project_id,
            "counts": counts,
            "total": total,
            "progress_pct": round(progress, 1),
        })
    finally:
        db.close()


async def api_project_runs(request: Request):
    project_id = request.path_params["project_id"]
    try:
        limit = int(request.query_params.get("limit", "50"))
    except ValueError:
        return JSONResponse({"error": "limit must be an integer"}, status_code=400)
    action = request.query_params.get("action")
    db = _get_db()
    try:
        runs = AuditLog(db).list_runs(project_id, limit=limit, action=action)
        return JSONResponse([entry_to_dict(r) for r in runs])
    finally:
        db.close()


async def api_stuck_tickets(request: Request):
    project_id = request.path_params["project_id"]
    config = get_config()
    db = _get_db()
    try:
        stuck = tasks_mod.find_stuck_tasks(db, project_id, config.stale_review_minutes)
        return JSONResponse({"stuck_tickets": stuck, "count": len(stuck)})
    finally:
        db.close()


async def api_resolve_stuck_ticket(request: Request):
    task_id = request.path_params["task_id"]
    try:
        body = await request.json()
    except ValueError:
        return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
    action = body.get("action") if isinstance(body, dict) else None
    if action not in STUCK_TICKET_ACTIONS:
        return JSONResponse({"error": 'action must be "done" or "ready"'}, status_code=400)

    db = _get_db()
    try:
        task = tasks_mod.update_task_status(
            db, task_id, action, actor="human", reason="stuck_ticket_cleanup",
        )
        if not task:
            return JSONResponse({"error": "Task not found"}, status_code=404)
        return JSONResponse({
            "success": True,
            "task_id": task_id,
            "action": action,
            "message": f"Ticket marked as {action}",
        })
    finally:
        db.close()


# ── Serialization ─────────────────────────────────────────────────────────────


def _project_dict(p) -> dict:
    return {
        "id": p.id,
        "name": p.name,
        "local_path": p.local_path,
        "default_branch": p.default_branch,
        "github_repo": p.github_repo,
        "slack_channel": p.slack_channel,
        "work_loop_enabled": p.work_loop_enabled,
        "work_loop_max_agents": p.work_loop_max_agents,
        "created_at": p.created_at.isoformat() if p.created_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/api/projects", api_list_projects),
        Route("/api/projects/{project_id}/summary", api_project_summary),
        Route("/api/projects/{project_id}/runs", api_project_runs),
        Route("/api/projects/{project_id}/stuck-tickets", api_stuck_tickets),
        Route("/api/stuck-tickets/{task_id}", api_resolve_stuck_ticket, methods=["POST"]),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    uvicorn.run(create_app(), host=host, port=port)
