"""Shared state and helpers handed to every phase runner."""

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime

from work_loop.config import Config
from work_loop.core.agents import SpawnRequest, resolve_mcp_config
from work_loop.core.capacity import CapacityTracker
from work_loop.core.deploy import DeployHook
from work_loop.core.reconciler import PullRequestReconciler
from work_loop.core.tasks import add_comment, record_agent_session, update_task_status
from work_loop.db.models import AgentHandle, Project, Task, utcnow
from work_loop.integrations.slack import Notifier, format_escalation
from work_loop.loop.audit import AuditLog

logger = logging.getLogger(__name__)

WORK_LOOP_ACTOR = "work-loop"


@dataclass
class PhaseContext:
    db: sqlite3.Connection
    config: Config
    tracker: CapacityTracker
    spawner: object
    audit: AuditLog
    project: Project
    cycle: int
    reconciler: PullRequestReconciler
    deploy_hook: DeployHook | None = None
    notifier: Notifier | None = None
    now: datetime = field(default_factory=utcnow)

    def log(self, phase: str, action: str, task_id: str | None = None, **kwargs) -> None:
        self.audit.log(self.project.id, self.cycle, phase, action, task_id=task_id, **kwargs)

    # ── Capacity ─────────────────────────────────────────────────────────

    @property
    def project_limit(self) -> int:
        return self.project.work_loop_max_agents or self.config.max_agents_per_project

    def limit_reached(self, role: str | None = None) -> str | None:
        """Name of the first ceiling currently hit, or None if there is room."""
        if self.tracker.active_count() >= self.config.max_agents_global:
            return "global_max_agents"
        if self.tracker.active_count_by_project(self.project.id) >= self.project_limit:
            return "project_max_agents"
        if role is not None:
            limit = self.config.role_limit(role)
            if limit is not None and self.tracker.active_count_by_role(role) >= limit:
                return f"{role}_limit"
        return None

    def has_capacity(self, role: str | None = None) -> bool:
        return self.limit_reached(role) is None

    # ── Side effects ─────────────────────────────────────────────────────

    def spawn_agent(
        self,
        task: Task,
        role: str,
        prompt: str,
        model: str,
        timeout_seconds: int,
        cwd: str | None = None,
    ) -> AgentHandle:
        """Start an agent, track it and record its session on the task.

        Raises SpawnError when the process could not be started.
        """
        request = SpawnRequest(
            task_id=task.id,
            project_id=self.project.id,
            role=role,
            prompt=prompt,
            model=model,
            timeout_seconds=timeout_seconds,
            cwd=cwd or self.project.local_path,
            mcp_config_path=resolve_mcp_config(self.project),
        )
        handle = self.spawner.spawn(request)
        self.tracker.track(handle)
        record_agent_session(self.db, task.id, handle)
        return handle

    def escalate(self, task: Task, reason: str, comment: str) -> None:
        """Hand a task to humans: explain why, block it, free its slot, ping Slack."""
        add_comment(
            self.db, task.id, comment,
            author=WORK_LOOP_ACTOR, author_type="coordinator", comment_type="status_change",
        )
        update_task_status(self.db, task.id, "blocked", actor=WORK_LOOP_ACTOR, reason=reason)
        self.tracker.release(task.id)
        logger.warning("Blocked task %s: %s", task.short_id, reason)
        if self.notifier is not None:
            self.notifier.notify(
                self.project.slack_channel,
                f"Task blocked: {task.title} ({reason})",
                blocks=format_escalation(task.id, task.title, reason, comment),
            )
