"""Tests for task store operations."""

from datetime import timedelta

import pytest

from work_loop.core import tasks as tasks_mod
from work_loop.db.models import AgentHandle, utcnow


class TestSlugify:
    def test_basic(self):
        assert tasks_mod.slugify("Hello World") == "hello-world"

    def test_special_chars(self):
        assert tasks_mod.slugify("Auth: Login & Signup!") == "auth-login-signup"

    def test_multiple_spaces(self):
        assert tasks_mod.slugify("  too   many   spaces  ") == "too-many-spaces"

    def test_truncation(self):
        long_title = "a" * 100
        assert len(tasks_mod.slugify(long_title)) <= 60

    def test_truncation_never_ends_with_dash(self):
        title = "a" * 59 + " tail"
        assert tasks_mod.slugify(title) == "a" * 59


class TestTaskCRUD:
    def test_create_task(self, db):
        task = tasks_mod.create_task(db, "Build login page", "test")
        assert task.id == "build-login-page"
        assert task.status == "backlog"
        assert task.role is None
        assert task.priority == 3
        assert task.branch_name == "task/build-login-page"

    def test_create_duplicate_gets_suffix(self, db):
        t1 = tasks_mod.create_task(db, "Build login page", "test")
        t2 = tasks_mod.create_task(db, "Build login page", "test")
        assert t1.id == "build-login-page"
        assert t2.id == "build-login-page-2"

    def test_create_with_role_and_status(self, db):
        task = tasks_mod.create_task(db, "Write e2e tests", "test", role="qa", status="ready")
        assert task.role == "qa"
        assert task.status == "ready"

    def test_empty_role_is_stored(self, db):
        task = tasks_mod.create_task(db, "Odd role", "test", role="")
        assert tasks_mod.get_task(db, task.id).role == ""

    def test_priority_is_clamped(self, db):
        assert tasks_mod.create_task(db, "Urgent", "test", priority=-2).priority == 0
        assert tasks_mod.create_task(db, "Someday", "test", priority=9).priority == 6

    def test_invalid_status(self, db):
        with pytest.raises(ValueError):
            tasks_mod.create_task(db, "Bad", "test", status="todo")

    def test_get_nonexistent_task(self, db):
        assert tasks_mod.get_task(db, "nope") is None

    def test_list_orders_by_priority(self, db):
        tasks_mod.create_task(db, "Low", "test", priority=5)
        tasks_mod.create_task(db, "High", "test", priority=0)
        tasks_mod.create_task(db, "Mid", "test")
        assert [t.id for t in tasks_mod.list_tasks(db, "test")] == ["high", "mid", "low"]

    def test_list_filters_by_status(self, db):
        tasks_mod.create_task(db, "A", "test", status="ready")
        tasks_mod.create_task(db, "B", "test")
        assert [t.id for t in tasks_mod.list_tasks(db, "test", status="ready")] == ["a"]

    def test_count_by_status(self, db):
        tasks_mod.create_task(db, "A", "test", status="ready")
        tasks_mod.create_task(db, "B", "test", status="ready")
        counts = tasks_mod.count_by_status(db, "test")
        assert counts["ready"] == 2
        assert counts["done"] == 0
        assert set(counts) == {"backlog", "ready", "in_progress", "in_review", "blocked", "done"}


class TestStatusUpdates:
    def test_status_change_is_logged(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test", status="ready")
        tasks_mod.update_task_status(db, task.id, "in_progress", actor="work-loop", reason="dispatched:dev")

        events = tasks_mod.get_task_events(db, task.id)
        change = [e for e in events if e.event_type == "status_changed"][-1]
        assert (change.old_value, change.new_value) == ("ready", "in_progress")
        assert change.actor == "work-loop"
        assert change.reason == "dispatched:dev"

    def test_same_status_is_noop(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test", status="ready")
        tasks_mod.update_task_status(db, task.id, "ready")
        events = tasks_mod.get_task_events(db, task.id)
        assert [e.event_type for e in events] == ["created"]

    def test_done_sets_completed_at(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        done = tasks_mod.update_task_status(db, task.id, "done")
        assert done.completed_at is not None

    def test_reopening_clears_completed_at(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        tasks_mod.update_task_status(db, task.id, "done")
        reopened = tasks_mod.update_task_status(db, task.id, "ready", actor="human")
        assert reopened.status == "ready"
        assert reopened.completed_at is None

    def test_leaving_blocked_clears_triage_stamp(self, db):
        task = tasks_mod.create_task(db, "Stuck", "test", status="blocked")
        tasks_mod.update_task_fields(db, task.id, triage_sent_at=utcnow())
        assert tasks_mod.get_task(db, task.id).triage_sent_at is not None
        moved = tasks_mod.update_task_status(db, task.id, "ready")
        assert moved.triage_sent_at is None

    def test_invalid_status(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        with pytest.raises(ValueError, match="Invalid status"):
            tasks_mod.update_task_status(db, task.id, "in-progress")

    def test_missing_task(self, db):
        assert tasks_mod.update_task_status(db, "nope", "done") is None


class TestFieldUpdates:
    def test_unknown_field_rejected(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        with pytest.raises(ValueError, match="status"):
            tasks_mod.update_task_fields(db, task.id, status="done")

    def test_pr_number_is_logged(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        updated = tasks_mod.update_task_fields(db, task.id, pr_number=42, branch="task/ship-it-v2")
        assert updated.pr_number == 42
        assert updated.branch_name == "task/ship-it-v2"
        events = [e for e in tasks_mod.get_task_events(db, task.id) if e.event_type == "pr_recorded"]
        assert events[0].new_value == "42"

    def test_record_agent_session(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        now = utcnow().replace(microsecond=0)
        handle = AgentHandle(
            session_key="test:dev:ship-it:abcd1234", task_id=task.id, project_id="test",
            role="dev", model="sonnet", spawned_at=now, last_active_at=now,
        )
        updated = tasks_mod.record_agent_session(db, task.id, handle)
        assert updated.agent_session_key == handle.session_key
        assert updated.agent_model == "sonnet"
        assert updated.agent_started_at == now

        assigned = [e for e in tasks_mod.get_task_events(db, task.id) if e.event_type == "agent_assigned"]
        assert assigned[0].reason == "dev:sonnet"
        assert assigned[0].actor == "work-loop"

    def test_update_agent_activity(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        later = (utcnow() + timedelta(minutes=5)).replace(microsecond=0)
        tasks_mod.update_agent_activity(db, task.id, later)
        assert tasks_mod.get_task(db, task.id).agent_last_active_at == later


class TestDependencies:
    def test_dependencies_met(self, db):
        dep = tasks_mod.create_task(db, "Schema", "test")
        task = tasks_mod.create_task(db, "API", "test", depends_on=[dep.id])
        assert not tasks_mod.dependencies_met(db, task)
        tasks_mod.update_task_status(db, dep.id, "done")
        assert tasks_mod.dependencies_met(db, tasks_mod.get_task(db, task.id))

    def test_no_dependencies_is_met(self, db):
        assert tasks_mod.dependencies_met(db, tasks_mod.create_task(db, "Solo", "test"))

    def test_add_and_remove(self, db):
        a = tasks_mod.create_task(db, "A", "test")
        b = tasks_mod.create_task(db, "B", "test")
        assert tasks_mod.add_dependency(db, b.id, a.id).depends_on == ["a"]
        assert tasks_mod.add_dependency(db, b.id, a.id).depends_on == ["a"]
        assert tasks_mod.remove_dependency(db, b.id, a.id).depends_on == []

    def test_self_dependency_rejected(self, db):
        a = tasks_mod.create_task(db, "A", "test")
        with pytest.raises(ValueError):
            tasks_mod.add_dependency(db, a.id, a.id)

    def test_missing_dependency_rejected(self, db):
        a = tasks_mod.create_task(db, "A", "test")
        with pytest.raises(ValueError, match="not found"):
            tasks_mod.add_dependency(db, a.id, "ghost")


class TestComments:
    def test_automated_comments_can_be_filtered(self, db):
        task = tasks_mod.create_task(db, "Ship it", "test")
        tasks_mod.add_comment(db, task.id, "Please add tests", author="alice", author_type="human")
        tasks_mod.add_comment(db, task.id, "Moved to blocked", comment_type="status_change")

        assert len(tasks_mod.list_comments(db, task.id)) == 2
        human = tasks_mod.list_comments(db, task.id, include_automated=False)
        assert [c.content for c in human] == ["Please add tests"]

    def test_comment_on_missing_task(self, db):
        with pytest.raises(ValueError):
            tasks_mod.add_comment(db, "nope", "hello")


class TestStuckTasks:
    def test_finds_old_in_review_tasks(self, db):
        old = tasks_mod.create_task(db, "Old review", "test", status="in_review")
        tasks_mod.create_task(db, "Fresh review", "test", status="in_review")
        tasks_mod.create_task(db, "Old ready", "test", status="ready")
        db.execute(
            "UPDATE tasks SET updated_at = datetime('now', '-2 hours') WHERE id IN (?, ?)",
            (old.id, "old-ready"),
        )
        db.commit()

        stuck = tasks_mod.find_stuck_tasks(db, "test", older_than_minutes=30)
        assert [s["id"] for s in stuck] == [old.id]
        assert stuck[0]["age_minutes"] >= 119
