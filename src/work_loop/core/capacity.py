"""Live agent bookkeeping and capacity ceilings."""

import logging
from datetime import datetime

from work_loop.db.models import AgentHandle, utcnow

logger = logging.getLogger(__name__)


class CapacityTracker:
    """Owns the set of agent handles the loop has spawned.

    Only ``running`` handles count against capacity. Finished and stale
    handles stay tracked until a phase releases them, so the decision engine
    can still see that an agent existed and ended. Stale handles keep being
    polled until their process exits.
    """

    def __init__(self, spawner=None):
        self.spawner = spawner
        self._handles: dict[str, AgentHandle] = {}

    def track(self, handle: AgentHandle) -> None:
        existing = self._handles.get(handle.task_id)
        if existing is not None and existing.status == "running":
            raise ValueError(
                f"Task '{handle.task_id}' already has a running agent ({existing.session_key})"
            )
        if existing is not None:
            self._forget(existing)
        self._handles[handle.task_id] = handle

    def release(self, task_id: str) -> AgentHandle | None:
        handle = self._handles.pop(task_id, None)
        if handle is not None:
            self._forget(handle)
        return handle

    def _forget(self, handle: AgentHandle) -> None:
        if self.spawner is not None:
            self.spawner.forget(handle)

    def refresh(self, now: datetime | None = None) -> None:
        """Re-poll every handle so reads within a phase see one snapshot."""
        if self.spawner is None:
            return
        now = now or utcnow()
        for handle in list(self._handles.values()):
            if handle.status == "finished":
                continue
            try:
                new_status = self.spawner.poll(handle, now)
            except Exception:
                logger.exception("Failed to poll agent %s", handle.session_key)
                continue
            if handle.status == "stale" and new_status != "finished":
                continue
            if new_status != handle.status:
                logger.info(
                    "Agent %s for task %s is now %s",
                    handle.session_key, handle.task_id[:8], new_status,
                )
                handle.status = new_status

    def has(self, task_id: str) -> bool:
        return task_id in self._handles

    def get(self, task_id: str) -> AgentHandle | None:
        return self._handles.get(task_id)

    def status(self, task_id: str) -> str:
        handle = self._handles.get(task_id)
        return handle.status if handle else "none"

    def is_running(self, task_id: str) -> bool:
        return self.status(task_id) == "running"

    def active_count(self) -> int:
        return sum(1 for h in self._handles.values() if h.status == "running")

    def active_count_by_role(self, role: str) -> int:
        return sum(
            1 for h in self._handles.values()
            if h.status == "running" and h.role == role
        )

    def active_count_by_project(self, project_id: str) -> int:
        return sum(
            1 for h in self._handles.values()
            if h.status == "running" and h.project_id == project_id
        )

    def handles(self) -> list[AgentHandle]:
        return list(self._handles.values())

    def snapshot(self) -> dict:
        by_role: dict[str, int] = {}
        for h in self._handles.values():
            if h.status == "running":
                by_role[h.role] = by_role.get(h.role, 0) + 1
        return {
            "active": self.active_count(),
            "tracked": len(self._handles),
            "by_role": by_role,
        }
