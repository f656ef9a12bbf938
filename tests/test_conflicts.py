"""Tests for the conflict resolution handler and its retry bound."""

from work_loop.core import tasks as tasks_mod
from work_loop.db.models import PullRequest
from work_loop.loop.conflicts import MAX_ATTEMPTS_EXCEEDED, handle_conflicting_pr
from work_loop.loop.phases.review import run_review_phase


def _conflicting(env, pr=42):
    task = tasks_mod.create_task(env.db, "Fix login", "demo", status="in_review")
    env.reconciler.open_prs[task.id] = PullRequest(number=pr, title="Fix login", head_ref=f"task/{task.id}")
    env.reconciler.mergeable[pr] = "CONFLICTING"
    return task


class TestRetryBound:
    def test_blocks_after_max_attempts(self, loop_env):
        task = _conflicting(loop_env)
        max_attempts = loop_env.config.max_conflict_resolution_attempts

        for attempt in range(1, max_attempts + 1):
            run_review_phase(loop_env.ctx())
            assert tasks_mod.get_task(loop_env.db, task.id).agent_retry_count == attempt
            loop_env.spawner.set_status(task.id, "finished")

        run_review_phase(loop_env.ctx())

        stored = tasks_mod.get_task(loop_env.db, task.id)
        assert stored.status == "blocked"
        assert not loop_env.tracker.has(task.id)

        notes = tasks_mod.list_comments(loop_env.db, task.id)
        assert f"{max_attempts}/{max_attempts}" in notes[-1].content
        assert "PR #42" in notes[-1].content
        assert notes[-1].type == "status_change"

        change = [e for e in tasks_mod.get_task_events(loop_env.db, task.id) if e.event_type == "status_changed"][-1]
        assert change.reason == MAX_ATTEMPTS_EXCEEDED
        assert loop_env.notifier.sent[-1][0] == "#agents"

        # Terminal: no further resolver once blocked.
        loop_env.spawner.set_status(task.id, "finished")
        run_review_phase(loop_env.ctx())
        assert loop_env.spawner.roles().count("conflict_resolver") == max_attempts

    def test_each_attempt_is_announced(self, loop_env):
        task = _conflicting(loop_env)
        run_review_phase(loop_env.ctx())

        notes = tasks_mod.list_comments(loop_env.db, task.id)
        assert "attempt 1/3" in notes[-1].content
        assert "attempt 1 of 3" in loop_env.spawner.requests[0].prompt

    def test_resolver_uses_its_own_model(self, loop_env):
        loop_env.config.conflict_resolver_model = "opus"
        _conflicting(loop_env)
        run_review_phase(loop_env.ctx())
        assert loop_env.spawner.requests[0].model == "opus"


class TestNoAttemptConsumed:
    def test_spawn_failure(self, loop_env):
        task = _conflicting(loop_env)
        loop_env.spawner.fail = True

        result = handle_conflicting_pr(
            loop_env.ctx(), task, loop_env.reconciler.open_prs[task.id], "CONFLICTING",
        )

        assert result["spawned"] is False
        assert result["details"]["reason"] == "conflict_resolver_spawn_failed"
        assert tasks_mod.get_task(loop_env.db, task.id).agent_retry_count == 0
        assert tasks_mod.list_comments(loop_env.db, task.id) == []

    def test_no_capacity(self, loop_env):
        loop_env.config.max_conflict_resolver_agents = 0
        task = _conflicting(loop_env)

        result = handle_conflicting_pr(
            loop_env.ctx(), task, loop_env.reconciler.open_prs[task.id], "CONFLICTING",
        )

        assert result["details"]["reason"] == "no_capacity"
        assert result["details"]["limit"] == "conflict_resolver_limit"
        assert tasks_mod.get_task(loop_env.db, task.id).agent_retry_count == 0
        assert loop_env.spawner.requests == []

    def test_reset_counter_allows_fresh_attempts(self, loop_env):
        task = _conflicting(loop_env)
        tasks_mod.update_task_fields(loop_env.db, task.id, agent_retry_count=3)
        tasks_mod.update_task_fields(loop_env.db, task.id, agent_retry_count=0)

        run_review_phase(loop_env.ctx())

        assert tasks_mod.get_task(loop_env.db, task.id).status == "in_review"
        assert loop_env.spawner.roles() == ["conflict_resolver"]
