"""Tests for git worktree operations against a real repository."""

import shutil
import tempfile
from pathlib import Path

import pytest

from work_loop.core import projects as projects_mod
from work_loop.core import tasks as tasks_mod
from work_loop.core import worktrees as worktrees_mod
from work_loop.db.engine import init_db
from work_loop.integrations.git import GitError, branch_exists, run_git

from conftest import init_git_repo


@pytest.fixture
def repo_env():
    with tempfile.TemporaryDirectory() as tmp:
        repo = Path(tmp) / "repo"
        init_git_repo(repo)
        conn = init_db(Path(tmp) / "test.db")
        project = projects_mod.create_project(conn, "test", "Test", str(repo))
        yield conn, project
        conn.close()


class TestWorktreeLifecycle:
    def test_worktree_path_is_next_to_checkout(self, repo_env):
        _, project = repo_env
        path = worktrees_mod.worktree_path_for(project, "task/my-feature")
        assert path == f"{project.local_path}-worktrees/task/my-feature"

    def test_ensure_creates_branch_and_worktree(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "My feature", "test")

        path = worktrees_mod.ensure_task_worktree(db, task, project)

        assert Path(path).exists()
        assert branch_exists(project.local_path, "task/my-feature")
        stored = tasks_mod.get_task(db, task.id)
        assert stored.worktree_path == path
        assert stored.branch == "task/my-feature"

    def test_ensure_is_idempotent(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Idem task", "test")
        first = worktrees_mod.ensure_task_worktree(db, task, project)
        second = worktrees_mod.ensure_task_worktree(db, tasks_mod.get_task(db, task.id), project)
        assert first == second

    def test_ensure_reuses_existing_branch(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Again", "test")
        path = worktrees_mod.ensure_task_worktree(db, task, project)
        worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path)
        assert not Path(path).exists()

        again = worktrees_mod.ensure_task_worktree(db, tasks_mod.get_task(db, task.id), project)
        assert Path(again).exists()

    def test_ensure_outside_a_repo_raises(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Nowhere", "test")
        plain = Path(project.local_path).parent / "plain"
        plain.mkdir()
        project.local_path = str(plain)
        with pytest.raises(GitError):
            worktrees_mod.ensure_task_worktree(db, task, project)

    def test_remove_worktree(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Remove me", "test")
        worktrees_mod.ensure_task_worktree(db, task, project)

        result = worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path)

        assert result["removed"] is True
        assert tasks_mod.get_task(db, task.id).worktree_path is None
        events = [e.event_type for e in tasks_mod.get_task_events(db, task.id)]
        assert "worktree_created" in events
        assert "worktree_removed" in events

    def test_remove_without_worktree(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Bare", "test")
        result = worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path)
        assert result["removed"] is False

    def test_remove_missing_task(self, repo_env):
        db, project = repo_env
        with pytest.raises(ValueError):
            worktrees_mod.remove_worktree_for_task(db, "ghost", project.local_path)

    def test_deleted_directory_is_checked_out_again(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Vanished", "test")
        path = worktrees_mod.ensure_task_worktree(db, task, project)
        shutil.rmtree(path)

        again = worktrees_mod.ensure_task_worktree(db, tasks_mod.get_task(db, task.id), project)

        assert again == path
        assert Path(again, "README.md").exists()

    def test_remove_after_directory_vanished(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Gone", "test")
        path = worktrees_mod.ensure_task_worktree(db, task, project)
        shutil.rmtree(path)

        result = worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path)

        assert result["removed"] is True
        listing = run_git(["worktree", "list", "--porcelain"], cwd=project.local_path)
        assert path not in listing

    def test_dirty_worktree_is_kept_unless_forced(self, repo_env):
        db, project = repo_env
        task = tasks_mod.create_task(db, "Dirty", "test")
        path = worktrees_mod.ensure_task_worktree(db, task, project)
        Path(path, "scratch.txt").write_text("uncommitted")

        kept = worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path)
        assert kept["removed"] is False
        assert Path(path).exists()

        forced = worktrees_mod.remove_worktree_for_task(db, task.id, project.local_path, force=True)
        assert forced["removed"] is True
        assert not Path(path).exists()
