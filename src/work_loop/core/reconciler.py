"""Pull request reconciliation against GitHub.

Every lookup is best-effort: failures are logged and reported as "not
found" / "unknown" so one flaky call never stops a cycle.
"""

import logging

from work_loop.db.models import MERGEABLE_STATES, Project, PullRequest, Task
from work_loop.integrations.github import (
    GH_TIMEOUT_SECONDS,
    GhError,
    list_open_pull_requests,
    pull_request_files,
    view_pull_request,
)

logger = logging.getLogger(__name__)


class PullRequestReconciler:
    """Answers PR questions for one project's repository."""

    def __init__(self, project: Project, timeout: float = GH_TIMEOUT_SECONDS):
        self.project = project
        self.timeout = timeout

    def _gh_kwargs(self) -> dict:
        return {
            "cwd": self.project.local_path,
            "repo": self.project.github_repo,
            "timeout": self.timeout,
        }

    def find_open_pr(self, task: Task) -> PullRequest | None:
        """The task's open PR: by recorded number, else by branch name or prefix."""
        if task.pr_number:
            return self.get_open_pr(task.pr_number)
        return self.find_open_pr_for_branch(task.branch_name)

    def get_open_pr(self, pr_number: int) -> PullRequest | None:
        try:
            data = view_pull_request(
                pr_number, "number,title,state,headRefName", **self._gh_kwargs()
            )
        except GhError as e:
            logger.warning("Failed to get PR #%s: %s", pr_number, e)
            return None
        if data.get("state") != "OPEN":
            return None
        return PullRequest(
            number=data.get("number", pr_number),
            title=data.get("title", ""),
            head_ref=data.get("headRefName"),
            state="OPEN",
        )

    def find_open_pr_for_branch(self, branch: str) -> PullRequest | None:
        try:
            prs = list_open_pull_requests(**self._gh_kwargs())
        except GhError as e:
            logger.warning("Failed to check PR for branch %s: %s", branch, e)
            return None
        # Agents may append "--<desc>" to the branch they were given. Task ids
        # never contain "--", so a sibling task's branch cannot match.
        for pr in prs:
            head = pr.get("headRefName") or ""
            if head == branch or head.startswith(branch + "--"):
                return PullRequest(
                    number=pr["number"],
                    title=pr.get("title", ""),
                    head_ref=head,
                    state="OPEN",
                )
        return None

    def is_merged(self, pr_number: int) -> bool:
        try:
            data = view_pull_request(pr_number, "state", **self._gh_kwargs())
        except GhError as e:
            logger.warning("Failed to check merge state of PR #%s: %s", pr_number, e)
            return False
        return data.get("state") == "MERGED"

    def mergeable_status(self, pr_number: int) -> str | None:
        try:
            data = view_pull_request(pr_number, "mergeable", **self._gh_kwargs())
        except GhError as e:
            logger.warning("Failed to check mergeable status for PR #%s: %s", pr_number, e)
            return None
        status = data.get("mergeable")
        if status not in MERGEABLE_STATES:
            return "UNKNOWN" if status else None
        return status

    def changed_files(self, pr_number: int) -> list[str] | None:
        try:
            return pull_request_files(pr_number, **self._gh_kwargs())
        except GhError as e:
            logger.warning("Failed to list files of PR #%s: %s", pr_number, e)
            return None
