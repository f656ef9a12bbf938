"""The work loop: one cycle runs every phase for every enabled project."""

import logging
import sqlite3
import threading
import time

from work_loop.config import Config
from work_loop.core.agents import ClaudeCliSpawner
from work_loop.core.capacity import CapacityTracker
from work_loop.core.deploy import DeployHook
from work_loop.core.projects import list_enabled_projects
from work_loop.core.reconciler import PullRequestReconciler
from work_loop.db.models import Project, utcnow
from work_loop.integrations.slack import Notifier
from work_loop.loop.audit import AuditLog
from work_loop.loop.context import PhaseContext
from work_loop.loop.phases.analyze import run_analyze_phase
from work_loop.loop.phases.cleanup import run_cleanup_phase
from work_loop.loop.phases.review import run_review_phase
from work_loop.loop.phases.triage import run_triage_phase
from work_loop.loop.phases.work import run_work_phase

logger = logging.getLogger(__name__)

PHASE_RUNNERS = (
    ("cleanup", run_cleanup_phase),
    ("triage", run_triage_phase),
    ("work", run_work_phase),
    ("review", run_review_phase),
    ("analyze", run_analyze_phase),
)


class WorkLoop:
    """Runs cycles one at a time; never two in parallel."""

    def __init__(
        self,
        db: sqlite3.Connection,
        config: Config,
        spawner=None,
        tracker: CapacityTracker | None = None,
        reconciler_factory=None,
        notifier: Notifier | None = None,
        deploy_hook: DeployHook | None = None,
        clock=utcnow,
    ):
        self.db = db
        self.config = config
        self.spawner = spawner or ClaudeCliSpawner(
            config.agent_output_dir, stale_after_minutes=config.stale_task_minutes,
        )
        self.tracker = tracker or CapacityTracker(self.spawner)
        self.reconciler_factory = reconciler_factory or self._default_reconciler
        self.notifier = notifier or Notifier(config.slack_bot_token)
        self.deploy_hook = deploy_hook or DeployHook(config.deploy_command, config.deploy_watch_prefix)
        self.clock = clock
        self.audit = AuditLog(db)
        self.cycle = self.audit.next_cycle_number() - 1

    def _default_reconciler(self, project: Project) -> PullRequestReconciler:
        return PullRequestReconciler(project, timeout=self.config.gh_timeout_seconds)

    def run_cycle(self) -> dict:
        """Run one cycle. Returns per-project, per-phase results."""
        if not self.config.enabled:
            logger.info("Work loop disabled (WORK_LOOP_ENABLED), skipping cycle")
            return {"cycle": None, "enabled": False, "projects": {}}

        self.cycle += 1
        results = {}
        for project in list_enabled_projects(self.db):
            try:
                results[project.id] = self._run_project(project)
            except Exception as e:
                logger.exception("Cycle %d failed for project %s", self.cycle, project.id)
                results[project.id] = {"error": str(e)}
        logger.info("Cycle %d complete (%d project(s))", self.cycle, len(results))
        return {"cycle": self.cycle, "enabled": True, "projects": results}

    def _run_project(self, project: Project) -> dict:
        reconciler = self.reconciler_factory(project)
        results = {}
        for phase, runner in PHASE_RUNNERS:
            now = self.clock()
            self.tracker.refresh(now)
            ctx = PhaseContext(
                db=self.db,
                config=self.config,
                tracker=self.tracker,
                spawner=self.spawner,
                audit=self.audit,
                project=project,
                cycle=self.cycle,
                reconciler=reconciler,
                deploy_hook=self.deploy_hook,
                notifier=self.notifier,
                now=now,
            )
            ctx.log(phase, "phase_start")
            started = time.monotonic()
            try:
                result = runner(ctx)
            except Exception as e:
                duration_ms = int((time.monotonic() - started) * 1000)
                logger.exception("Phase %s failed for project %s", phase, project.id)
                ctx.log(phase, "phase_failed", details={"error": str(e)}, duration_ms=duration_ms)
                results[phase] = {"error": str(e)}
                continue
            duration_ms = int((time.monotonic() - started) * 1000)
            ctx.log(phase, "phase_complete", details=result, duration_ms=duration_ms)
            logger.debug("Phase %s for %s: %s", phase, project.id, result)
            results[phase] = result
        return results

    def run_forever(self, stop_event: threading.Event | None = None) -> None:
        """Run cycles until stop_event is set, sleeping between them."""
        stop_event = stop_event or threading.Event()
        logger.info(
            "Work loop started (interval %.1fs, max %d agents)",
            self.config.cycle_interval_seconds, self.config.max_agents_global,
        )
        while not stop_event.is_set():
            try:
                self.run_cycle()
            except Exception:
                logger.exception("Work loop cycle failed")
            stop_event.wait(self.config.cycle_interval_seconds)
        logger.info("Work loop stopped after cycle %d", self.cycle)
