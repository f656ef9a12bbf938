"""Triage phase: make sure every blocked task has been put in front of a human."""

import logging

from work_loop.core.decide import AWAITING_TRIAGE, decide
from work_loop.core.tasks import list_comments, list_tasks, update_task_fields
from work_loop.db.models import Task
from work_loop.integrations.slack import format_triage_request
from work_loop.loop.context import PhaseContext

logger = logging.getLogger(__name__)

PHASE = "triage"


def run_triage_phase(ctx: PhaseContext) -> dict:
    counts = {"blocked": 0, "triage_requested": 0}
    for task in list_tasks(ctx.db, ctx.project.id, status="blocked"):
        counts["blocked"] += 1
        try:
            if _request_triage(ctx, task):
                counts["triage_requested"] += 1
        except Exception as e:
            logger.exception("Triage of task %s failed", task.short_id)
            ctx.log(PHASE, "error", task_id=task.id, details={"error": str(e)})
    return counts


def _request_triage(ctx: PhaseContext, task: Task) -> bool:
    handle = ctx.tracker.get(task.id)
    if handle is not None and handle.status != "running":
        ctx.tracker.release(task.id)

    action = decide(
        task,
        agent_status=ctx.tracker.status(task.id),
        has_open_pr=False,
        dependencies_met=True,
        capacity_available=True,
        reviewer_capacity_available=True,
    )
    if action.reason != AWAITING_TRIAGE or task.triage_sent_at is not None:
        return False

    comments = list_comments(ctx.db, task.id)
    last_comment = comments[-1].content if comments else None
    notified = False
    if ctx.notifier is not None:
        notified = ctx.notifier.notify(
            ctx.project.slack_channel,
            f"Triage needed: {task.title}",
            blocks=format_triage_request(task.id, task.title, last_comment),
        )

    update_task_fields(ctx.db, task.id, triage_sent_at=ctx.now)
    ctx.log(PHASE, "triage_requested", task_id=task.id, details={"notified": notified})
    logger.info("Triage requested for blocked task %s", task.short_id)
    return True
