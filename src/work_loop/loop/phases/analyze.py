"""Analyze phase: retire agents of finished tasks and summarise the cycle."""

from work_loop.core.tasks import count_by_status, list_tasks
from work_loop.loop.context import PhaseContext

PHASE = "analyze"


def run_analyze_phase(ctx: PhaseContext) -> dict:
    retired = 0
    for task in list_tasks(ctx.db, ctx.project.id, status="done"):
        handle = ctx.tracker.get(task.id)
        if handle is None or handle.status == "running":
            continue
        ctx.tracker.release(task.id)
        retired += 1
        ctx.log(
            PHASE, "agent_retired", task_id=task.id, session_key=handle.session_key,
            details={"role": handle.role, "model": handle.model, "status": handle.status},
            duration_ms=int((ctx.now - handle.spawned_at).total_seconds() * 1000),
        )

    counts = count_by_status(ctx.db, ctx.project.id)
    ctx.log(
        PHASE, "cycle_summary",
        details={
            "tasks": counts,
            "agents": ctx.tracker.snapshot(),
            "project_agents": ctx.tracker.active_count_by_project(ctx.project.id),
        },
    )
    return {"retired": retired, **{f"tasks_{k}": v for k, v in counts.items()}}
