"""Prompt construction for work-loop agents."""

from work_loop.db.models import Comment, Project, PullRequest, Task


def _task_section(task: Task) -> list[str]:
    parts = [
        "## Current Task",
        "",
        f"**Ticket ID:** {task.id}",
        f"**Ticket Title:** {task.title}",
    ]
    if task.description:
        parts.append(f"\n**Description:**\n{task.description}")
    return parts


def _comments_section(comments: list[Comment] | None) -> list[str]:
    if not comments:
        return []
    parts = ["", "## Task Comments (context from previous work / triage)", ""]
    for c in comments:
        when = c.created_at.isoformat() if c.created_at else "unknown time"
        parts.append(f"[{when}] {c.author}: {c.content}")
    return parts


def _completion_contract(task: Task, on_success: list[str]) -> list[str]:
    parts = [
        "",
        "## Completion Contract (REQUIRED)",
        "",
        "You have access to the work-loop MCP tools. Before you finish you MUST update the task.",
        "",
        "### Work completed:",
    ]
    parts += on_success
    parts += [
        "",
        "### CANNOT complete the work:",
        f"1. Call `add_comment` with task_id='{task.id}' explaining exactly what is blocking you.",
        f"2. Call `update_task_status` with task_id='{task.id}' and status='blocked'.",
        "",
        "NEVER finish without updating the task status. A run that ends without one "
        "is treated as a failure and escalated to a human.",
    ]
    return parts


def build_dev_prompt(
    task: Task,
    project: Project,
    branch: str,
    worktree_path: str,
    comments: list[Comment] | None = None,
) -> str:
    """Prompt for an implementation agent working a ready task."""
    role = task.role if task.role is not None else "dev"
    parts = [
        f"# Task Assignment ({role})",
        "",
    ]
    parts += _task_section(task)
    parts += _comments_section(comments)
    parts += [
        "",
        "## Project Context",
        f"Project: {project.name} ({project.id})",
        f"Repository: {project.local_path}",
        f"Default branch: {project.default_branch}",
        f"Working branch: {branch}",
        f"Worktree: {worktree_path}",
        "",
        "## Instructions",
        "1. Work only inside the worktree above, on the working branch.",
        "2. Keep changes scoped to the ticket.",
        f"3. Commit, push, and open a pull request against {project.default_branch}. "
        f"Push from `{branch}`; if you rename it, use `{branch}--<short-description>`.",
        "4. Do NOT merge your own pull request; a reviewer will.",
    ]
    parts += _completion_contract(task, [
        f"- With a PR: call `record_pull_request` with task_id='{task.id}', the PR number and "
        f"branch, then `update_task_status` with status='in_review'.",
        f"- Without code changes (research, analysis): post your findings with `add_comment`, "
        f"then `update_task_status` with status='done'.",
    ])
    return "\n".join(parts)


def build_reviewer_prompt(
    task: Task,
    pr: PullRequest,
    project: Project,
    branch: str,
    worktree_path: str,
    comments: list[Comment] | None = None,
) -> str:
    """Prompt for a reviewer verifying an open pull request."""
    parts = [
        "# Code Reviewer",
        "",
        "## Identity",
        "You are a Code Reviewer responsible for verifying pull requests before merge. "
        "You check correctness, code quality, test coverage and adherence to project standards.",
        "",
    ]
    parts += _task_section(task)
    parts += _comments_section(comments)
    parts += [
        "",
        f"**PR Number:** #{pr.number}",
        f"**PR Title:** {pr.title}",
        f"**Branch:** {branch}",
        f"**Worktree Path:** {worktree_path}",
        "",
        "## Review Steps",
        "1. Read the ticket above and understand what was asked.",
        f"2. Review the diff: `gh pr diff {pr.number}`",
        f"3. Run the project's checks and tests in `{worktree_path}`.",
        "4. Verify scope: changes should match the ticket, with no unrelated modifications.",
        "",
        "## After Review",
        "",
        "### If the PR is clean:",
        f"1. Merge it: `gh pr merge {pr.number} --squash --delete-branch`",
        f"2. Call `update_task_status` with task_id='{task.id}' and status='done'.",
        "",
        "### If the PR needs changes:",
        f"1. Leave specific, actionable feedback: `gh pr comment {pr.number} --body \"...\"`",
        f"2. Call `add_comment` with task_id='{task.id}' summarising what must change.",
        f"3. Call `update_task_status` with task_id='{task.id}' and status='blocked'.",
        "",
        "## Important Notes",
        "- DO NOT merge if any check fails.",
        "- Escalate architectural or security concerns instead of merging.",
        "- NEVER finish without updating the task status.",
    ]
    return "\n".join(parts)


def build_conflict_resolver_prompt(
    task: Task,
    pr: PullRequest,
    project: Project,
    branch: str,
    worktree_path: str,
    attempt: int,
    max_attempts: int,
    comments: list[Comment] | None = None,
) -> str:
    """Prompt for an agent that rebases a conflicting PR onto the trunk."""
    trunk = project.default_branch
    parts = [
        "# Conflict Resolver",
        "",
        "## Identity",
        f"You rebase pull request branches onto {trunk} and resolve merge conflicts.",
        f"This is attempt {attempt} of {max_attempts}.",
        "",
    ]
    parts += _task_section(task)
    parts += _comments_section(comments)
    parts += [
        "",
        f"**PR Number:** #{pr.number}",
        f"**PR Title:** {pr.title}",
        f"**Branch:** {branch}",
        f"**Worktree Path:** {worktree_path}",
        f"**Project Path:** {project.local_path}",
        "",
        "## Conflict Resolution Steps",
        f"1. `cd {worktree_path} && git status`",
        f"2. `git fetch origin {trunk} && git rebase origin/{trunk}`",
        "3. List conflicted files: `git diff --name-only --diff-filter=U`",
        "4. Resolve every conflict and leave no conflict markers behind.",
        "5. `git add -A && git rebase --continue`",
        "6. Run the project's checks and tests.",
        "7. `git push --force-with-lease`",
        f"8. Confirm: `gh pr view {pr.number} --json mergeable`",
        "",
        "## Conflict Resolution Guidelines",
        "",
        f"**Prefer {trunk} when:**",
        f"- the conflicting lines are unrelated to this PR's purpose",
        f"- code was moved or refactored on {trunk}",
        f"- {trunk} has a newer implementation of the same functionality",
        "",
        "**Preserve the task's intent when:**",
        "- the conflicting lines are the core change this PR introduces",
        f"- the PR fixes a bug that {trunk} still has",
        "",
        "**If truly ambiguous:** make a reasonable choice and document it in your completion comment.",
    ]
    parts += _completion_contract(task, [
        f"1. Call `add_comment` with task_id='{task.id}' listing the files you resolved.",
        f"2. Call `reset_conflict_attempts` with task_id='{task.id}'.",
        "3. Leave the status as in_review so the PR gets reviewed.",
    ])
    return "\n".join(parts)
