"""Agent process spawning and status polling.

Spawning is fire-and-forget: the loop never waits on an agent. Progress is
inferred later by polling the process and the activity of its output file,
and by the task status the agent writes back through the MCP server.
"""

import logging
import os
import subprocess
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from work_loop.db.models import AgentHandle, Project, utcnow

logger = logging.getLogger(__name__)


class SpawnError(Exception):
    """Raised when an agent process could not be started."""


@dataclass
class SpawnRequest:
    task_id: str
    project_id: str
    role: str
    prompt: str
    model: str
    timeout_seconds: int
    cwd: str | None = None
    mcp_config_path: str | None = None


def resolve_mcp_config(project: Project) -> str | None:
    """Use the project's .mcp.json when it has one."""
    candidate = Path(project.local_path) / ".mcp.json"
    if candidate.exists():
        return str(candidate)
    return None


class ClaudeCliSpawner:
    """Starts `claude -p` sub-agents in the background and reports on them."""

    def __init__(
        self,
        output_dir: str,
        stale_after_minutes: int = 30,
        permission_mode: str = "acceptEdits",
        executable: str = "claude",
    ):
        self.output_dir = output_dir
        self.stale_after = timedelta(minutes=stale_after_minutes)
        self.permission_mode = permission_mode
        self.executable = executable
        self._processes: dict[str, subprocess.Popen] = {}

    def build_command(self, request: SpawnRequest) -> list[str]:
        cmd = [self.executable, "-p", request.prompt, "--output-format", "json"]
        if request.model:
            cmd += ["--model", request.model]
        if self.permission_mode:
            cmd += ["--permission-mode", self.permission_mode]
        if request.mcp_config_path:
            cmd += ["--mcp-config", request.mcp_config_path]
        return cmd

    def spawn(self, request: SpawnRequest) -> AgentHandle:
        """Launch the agent. Raises SpawnError if the process cannot start."""
        out_path = Path(self.output_dir)
        out_path.mkdir(parents=True, exist_ok=True)
        spawned_at = utcnow()
        timestamp = spawned_at.strftime("%Y%m%d-%H%M%S")
        output_file = str(out_path / f"agent-{request.task_id}-{request.role}-{timestamp}.json")
        session_key = f"{request.project_id}:{request.role}:{request.task_id[:8]}:{uuid.uuid4().hex[:8]}"

        cwd = request.cwd if request.cwd and Path(request.cwd).is_dir() else None
        try:
            with open(output_file, "w") as f:
                proc = subprocess.Popen(
                    self.build_command(request),
                    cwd=cwd,
                    stdout=f,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except OSError as e:
            raise SpawnError(f"Could not start {self.executable} for task {request.task_id}: {e}") from e

        self._processes[session_key] = proc
        logger.info(
            "Spawned %s agent for task %s (PID %s, model %s)",
            request.role, request.task_id[:8], proc.pid, request.model,
        )
        return AgentHandle(
            session_key=session_key,
            task_id=request.task_id,
            project_id=request.project_id,
            role=request.role,
            model=request.model,
            spawned_at=spawned_at,
            last_active_at=spawned_at,
            status="running",
            pid=proc.pid,
            output_file=output_file,
            timeout_seconds=request.timeout_seconds,
        )

    def poll(self, handle: AgentHandle, now: datetime | None = None) -> str:
        """Current lifecycle status of a handle: running, finished or stale."""
        now = now or utcnow()
        proc = self._processes.get(handle.session_key)
        if proc is not None:
            if proc.poll() is not None:
                self._processes.pop(handle.session_key, None)
                return "finished"
        elif not _is_pid_alive(handle.pid):
            return "finished"

        last_active = _output_mtime(handle.output_file)
        if last_active and last_active > handle.last_active_at:
            handle.last_active_at = last_active

        if handle.timeout_seconds and now - handle.spawned_at > timedelta(seconds=handle.timeout_seconds):
            return "stale"
        if now - handle.last_active_at > self.stale_after:
            return "stale"
        return "running"

    def forget(self, handle: AgentHandle) -> None:
        """Stop tracking a handle's process, reaping it if it already exited."""
        proc = self._processes.pop(handle.session_key, None)
        if proc is not None and proc.poll() is None:
            logger.info("Agent %s released while still running (pid %s)", handle.session_key, proc.pid)


def _output_mtime(output_file: str | None) -> datetime | None:
    if not output_file:
        return None
    try:
        return datetime.fromtimestamp(os.path.getmtime(output_file), tz=timezone.utc)
    except OSError:
        return None


def _is_pid_alive(pid: int | None) -> bool:
    """Check if a process is still running."""
    if not pid:
        return False
    try:
        os.kill(pid, 0)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        return True  # Process exists but we can't signal it
