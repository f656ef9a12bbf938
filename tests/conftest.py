"""Shared fixtures: a real git repo, a temp database and fake agent/GitHub backends."""

import os
import subprocess
import tempfile
from pathlib import Path
from types import SimpleNamespace

import pytest

from work_loop.config import Config
from work_loop.core import projects as projects_mod
from work_loop.core.agents import SpawnError
from work_loop.core.capacity import CapacityTracker
from work_loop.db.engine import init_db
from work_loop.db.models import AgentHandle, utcnow
from work_loop.loop.audit import AuditLog
from work_loop.loop.context import PhaseContext

GIT_ENV = {
    "GIT_AUTHOR_NAME": "Test", "GIT_AUTHOR_EMAIL": "test@test.com",
    "GIT_COMMITTER_NAME": "Test", "GIT_COMMITTER_EMAIL": "test@test.com",
}


def init_git_repo(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, capture_output=True, check=True)
    subprocess.run(["git", "checkout", "-b", "main"], cwd=path, capture_output=True, check=True)
    (path / "README.md").write_text("# Test")
    subprocess.run(["git", "add", "."], cwd=path, capture_output=True, check=True)
    subprocess.run(
        ["git", "commit", "-m", "init"],
        cwd=path,
        capture_output=True,
        check=True,
        env={**os.environ, **GIT_ENV},
    )


class FakeSpawner:
    """Records spawn requests; statuses are driven by the test."""

    def __init__(self):
        self.requests = []
        self.handles = []
        self.statuses: dict[str, str] = {}
        self.forgotten: list[str] = []
        self.fail = False

    def spawn(self, request):
        if self.fail:
            raise SpawnError("claude not found")
        self.requests.append(request)
        now = utcnow()
        handle = AgentHandle(
            session_key=f"{request.project_id}:{request.role}:{request.task_id[:8]}:{len(self.requests):08d}",
            task_id=request.task_id,
            project_id=request.project_id,
            role=request.role,
            model=request.model,
            spawned_at=now,
            last_active_at=now,
            timeout_seconds=request.timeout_seconds,
        )
        self.handles.append(handle)
        return handle

    def poll(self, handle, now=None):
        return self.statuses.get(handle.session_key, "running")

    def forget(self, handle):
        self.forgotten.append(handle.session_key)

    def set_status(self, task_id: str, status: str):
        """Drive the latest agent spawned for a task to a new status."""
        handle = [h for h in self.handles if h.task_id == task_id][-1]
        self.statuses[handle.session_key] = status

    def roles(self) -> list[str]:
        return [r.role for r in self.requests]


class FakeReconciler:
    def __init__(self):
        self.open_prs = {}
        self.merged = set()
        self.mergeable = {}
        self.files = {}

    def find_open_pr(self, task):
        return self.open_prs.get(task.id)

    def is_merged(self, pr_number):
        return pr_number in self.merged

    def mergeable_status(self, pr_number):
        return self.mergeable.get(pr_number, "MERGEABLE")

    def changed_files(self, pr_number):
        return self.files.get(pr_number)


class FakeNotifier:
    def __init__(self):
        self.sent = []

    def notify(self, channel, text, blocks=None):
        self.sent.append((channel, text, blocks))
        return True


@pytest.fixture
def db():
    """A temporary database with one project."""
    with tempfile.TemporaryDirectory() as tmp:
        conn = init_db(Path(tmp) / "test.db")
        projects_mod.create_project(conn, "test", "Test Project", tmp)
        yield conn
        conn.close()


@pytest.fixture
def loop_env():
    """A work-loop-enabled project backed by a real git repo and fake externals."""
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        init_git_repo(repo)
        conn = init_db(Path(tmp) / "wl.db")
        project = projects_mod.create_project(
            conn, "demo", "Demo", str(repo),
            github_repo="acme/demo",
            slack_channel="#agents",
            work_loop_enabled=True,
        )
        config = Config(
            db_path=Path(tmp) / "wl.db",
            repo_path=repo,
            agent_output_dir=str(Path(tmp) / "out"),
        )
        spawner = FakeSpawner()
        env = SimpleNamespace(
            db=conn,
            project=project,
            config=config,
            spawner=spawner,
            tracker=CapacityTracker(spawner),
            reconciler=FakeReconciler(),
            notifier=FakeNotifier(),
            audit=AuditLog(conn),
            repo=repo,
        )

        def make_ctx(now=None, deploy_hook=None):
            env.tracker.refresh(now)
            return PhaseContext(
                db=conn,
                config=config,
                tracker=env.tracker,
                spawner=spawner,
                audit=env.audit,
                project=project,
                cycle=1,
                reconciler=env.reconciler,
                deploy_hook=deploy_hook,
                notifier=env.notifier,
                now=now or utcnow(),
            )

        env.ctx = make_ctx
        yield env
        conn.close()
