"""Post-merge deployment hook.

Some merged PRs touch a subsystem that has to be redeployed before other
tasks can rely on it (for example the task store's own schema). When a PR
is confirmed merged, and it changed files under the watched prefix, the
configured command is run in the project checkout.
"""

import logging
import shlex
import subprocess

from work_loop.db.models import Project

logger = logging.getLogger(__name__)

DEPLOY_TIMEOUT_SECONDS = 300


class DeployHook:
    def __init__(
        self,
        command: str | None,
        watch_prefix: str | None,
        timeout: float = DEPLOY_TIMEOUT_SECONDS,
    ):
        self.command = command
        self.watch_prefix = watch_prefix
        self.timeout = timeout

    @property
    def configured(self) -> bool:
        return bool(self.command and self.watch_prefix)

    def after_merge(self, project: Project, pr_number: int, reconciler) -> dict:
        """Deploy if the merged PR touched the watched path. Never raises."""
        if not self.configured:
            return {"deployed": False, "reason": "not_configured"}

        files = reconciler.changed_files(pr_number)
        if files is None:
            return {"deployed": False, "reason": "files_unavailable"}

        touched = [f for f in files if f.startswith(self.watch_prefix)]
        if not touched:
            return {"deployed": False, "reason": "no_watched_changes"}

        logger.info(
            "PR #%s touched %d file(s) under %s, running deploy: %s",
            pr_number, len(touched), self.watch_prefix, self.command,
        )
        try:
            subprocess.run(
                shlex.split(self.command),
                cwd=project.local_path,
                capture_output=True,
                text=True,
                check=True,
                timeout=self.timeout,
            )
        except subprocess.CalledProcessError as e:
            logger.error("Deploy after PR #%s failed: %s", pr_number, (e.stderr or "").strip())
            return {"deployed": False, "reason": "deploy_failed", "error": (e.stderr or "").strip()[:500]}
        except (subprocess.TimeoutExpired, OSError) as e:
            logger.error("Deploy after PR #%s failed: %s", pr_number, e)
            return {"deployed": False, "reason": "deploy_failed", "error": str(e)}

        return {"deployed": True, "files": touched}
