"""Tests for the capacity tracker."""

from datetime import timedelta

import pytest

from work_loop.core.capacity import CapacityTracker
from work_loop.db.models import AgentHandle, utcnow


def _handle(task_id, role="dev", project_id="demo", status="running") -> AgentHandle:
    now = utcnow()
    return AgentHandle(
        session_key=f"{project_id}:{role}:{task_id}",
        task_id=task_id,
        project_id=project_id,
        role=role,
        model="sonnet",
        spawned_at=now,
        last_active_at=now,
        status=status,
    )


class StubSpawner:
    def __init__(self, statuses=None, error=None):
        self.statuses = statuses or {}
        self.error = error
        self.polled = []
        self.forgotten = []

    def poll(self, handle, now=None):
        self.polled.append(handle.task_id)
        if self.error:
            raise self.error
        return self.statuses.get(handle.task_id, "running")

    def forget(self, handle):
        self.forgotten.append(handle.task_id)


class TestTracking:
    def test_untracked_task_is_none(self):
        tracker = CapacityTracker()
        assert tracker.status("nope") == "none"
        assert not tracker.has("nope")
        assert not tracker.is_running("nope")

    def test_track_and_release(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a"))
        assert tracker.is_running("a")
        released = tracker.release("a")
        assert released.task_id == "a"
        assert tracker.status("a") == "none"
        assert tracker.release("a") is None

    def test_second_running_handle_rejected(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a"))
        with pytest.raises(ValueError, match="already has a running agent"):
            tracker.track(_handle("a", role="reviewer"))

    def test_ended_handle_can_be_replaced(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a", status="finished"))
        tracker.track(_handle("a", role="reviewer"))
        assert tracker.get("a").role == "reviewer"


class TestCounts:
    def test_only_running_handles_count(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a"))
        tracker.track(_handle("b", role="reviewer"))
        tracker.track(_handle("c", status="stale"))
        tracker.track(_handle("d", project_id="other", status="finished"))

        assert tracker.active_count() == 2
        assert tracker.active_count_by_role("dev") == 1
        assert tracker.active_count_by_role("reviewer") == 1
        assert tracker.active_count_by_project("demo") == 2
        assert tracker.active_count_by_project("other") == 0
        assert len(tracker.handles()) == 4

    def test_snapshot(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a"))
        tracker.track(_handle("b"))
        tracker.track(_handle("c", role="reviewer", status="finished"))
        assert tracker.snapshot() == {"active": 2, "tracked": 3, "by_role": {"dev": 2}}


class TestRefresh:
    def test_refresh_applies_polled_status(self):
        spawner = StubSpawner({"a": "finished", "b": "stale"})
        tracker = CapacityTracker(spawner)
        for task_id in ("a", "b", "c"):
            tracker.track(_handle(task_id))

        tracker.refresh(utcnow() + timedelta(minutes=1))

        assert tracker.status("a") == "finished"
        assert tracker.status("b") == "stale"
        assert tracker.status("c") == "running"
        assert tracker.active_count() == 1

    def test_finished_handles_are_not_polled_again(self):
        spawner = StubSpawner()
        tracker = CapacityTracker(spawner)
        tracker.track(_handle("a", status="finished"))
        tracker.refresh()
        assert spawner.polled == []

    def test_poll_failure_keeps_previous_status(self):
        tracker = CapacityTracker(StubSpawner(error=OSError("boom")))
        tracker.track(_handle("a"))
        tracker.refresh()
        assert tracker.is_running("a")

    def test_refresh_without_spawner_is_noop(self):
        tracker = CapacityTracker()
        tracker.track(_handle("a"))
        tracker.refresh()
        assert tracker.is_running("a")

    def test_stale_handle_is_polled_until_it_exits(self):
        spawner = StubSpawner({"a": "stale"})
        tracker = CapacityTracker(spawner)
        tracker.track(_handle("a"))

        tracker.refresh()
        assert tracker.status("a") == "stale"
        tracker.refresh()
        assert spawner.polled == ["a", "a"]

        spawner.statuses["a"] = "finished"
        tracker.refresh()
        assert tracker.status("a") == "finished"

    def test_stale_handle_does_not_come_back_to_running(self):
        spawner = StubSpawner({"a": "running"})
        tracker = CapacityTracker(spawner)
        tracker.track(_handle("a", status="stale"))
        tracker.refresh()
        assert tracker.status("a") == "stale"
        assert tracker.active_count() == 0


class TestForget:
    def test_release_hands_handle_back_to_spawner(self):
        spawner = StubSpawner()
        tracker = CapacityTracker(spawner)
        tracker.track(_handle("a", status="stale"))
        tracker.release("a")
        tracker.release("a")
        assert spawner.forgotten == ["a"]

    def test_replaced_handle_is_forgotten(self):
        spawner = StubSpawner()
        tracker = CapacityTracker(spawner)
        tracker.track(_handle("a", status="stale"))
        tracker.track(_handle("a", role="reviewer"))
        assert spawner.forgotten == ["a"]
        assert tracker.get("a").role == "reviewer"
