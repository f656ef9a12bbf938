"""Automated resolution of pull requests that no longer merge cleanly."""

import logging

from work_loop.core.agents import SpawnError
from work_loop.core.prompts import build_conflict_resolver_prompt
from work_loop.core.tasks import add_comment, list_comments, update_task_fields
from work_loop.core.worktrees import ensure_task_worktree
from work_loop.db.models import CONFLICT_RESOLVER_ROLE, PullRequest, Task
from work_loop.integrations.git import GitError
from work_loop.loop.context import WORK_LOOP_ACTOR, PhaseContext

logger = logging.getLogger(__name__)

MAX_ATTEMPTS_EXCEEDED = "conflict_resolution_max_attempts_exceeded"


def handle_conflicting_pr(
    ctx: PhaseContext,
    task: Task,
    pr: PullRequest,
    mergeable: str,
) -> dict:
    """Dispatch a conflict resolver for the PR, or give up once attempts run out.

    ``agent_retry_count`` counts resolver dispatches that actually started;
    a failed spawn does not use up an attempt.
    """
    max_attempts = ctx.config.max_conflict_resolution_attempts
    attempts = task.agent_retry_count
    base = {"pr_number": pr.number, "mergeable": mergeable}

    if attempts >= max_attempts:
        comment = (
            f"PR #{pr.number} still has merge conflicts after {attempts}/{max_attempts} "
            f"automated resolution attempts. Resolve the conflicts by hand, then move "
            f"the task back to in_review."
        )
        ctx.escalate(task, MAX_ATTEMPTS_EXCEEDED, comment)
        return {
            "spawned": False,
            "details": {
                **base,
                "reason": MAX_ATTEMPTS_EXCEEDED,
                "attempts": attempts,
                "max_attempts": max_attempts,
            },
        }

    limit = ctx.limit_reached(CONFLICT_RESOLVER_ROLE)
    if limit is not None:
        return {"spawned": False, "details": {**base, "reason": "no_capacity", "limit": limit}}

    try:
        worktree = ensure_task_worktree(ctx.db, task, ctx.project)
    except GitError as e:
        logger.warning("No worktree for conflicting task %s: %s", task.short_id, e)
        return {"spawned": False, "details": {**base, "reason": "worktree_failed", "error": str(e)}}

    attempt = attempts + 1
    branch = pr.head_ref or task.branch_name
    prompt = build_conflict_resolver_prompt(
        task, pr, ctx.project, branch, worktree,
        attempt=attempt,
        max_attempts=max_attempts,
        comments=list_comments(ctx.db, task.id, include_automated=False),
    )
    try:
        handle = ctx.spawn_agent(
            task,
            CONFLICT_RESOLVER_ROLE,
            prompt,
            model=ctx.config.conflict_resolver_model,
            timeout_seconds=ctx.config.agent_timeout_seconds,
            cwd=worktree,
        )
    except SpawnError as e:
        logger.error("Conflict resolver spawn failed for task %s: %s", task.short_id, e)
        return {
            "spawned": False,
            "details": {**base, "reason": "conflict_resolver_spawn_failed", "error": str(e)},
        }

    update_task_fields(ctx.db, task.id, agent_retry_count=attempt)
    add_comment(
        ctx.db, task.id,
        f"PR #{pr.number} has merge conflicts ({mergeable}). "
        f"Conflict resolution attempt {attempt}/{max_attempts} started.",
        author=WORK_LOOP_ACTOR, author_type="coordinator", comment_type="status_change",
    )
    logger.info(
        "Conflict resolver %s dispatched for PR #%s (attempt %d/%d)",
        handle.session_key, pr.number, attempt, max_attempts,
    )
    return {
        "spawned": True,
        "session_key": handle.session_key,
        "details": {
            **base,
            "role": CONFLICT_RESOLVER_ROLE,
            "attempt": attempt,
            "max_attempts": max_attempts,
        },
    }
