"""GitHub CLI (gh) subprocess wrappers for pull request queries."""

import json
import subprocess
from pathlib import Path

GH_TIMEOUT_SECONDS = 10.0


class GhError(Exception):
    """Raised when a gh command fails, times out or returns unreadable output."""


def run_gh(
    args: list[str],
    cwd: str | Path | None = None,
    timeout: float = GH_TIMEOUT_SECONDS,
) -> str:
    """Run a gh command and return stdout. Raises GhError on failure."""
    cmd = ["gh"] + args
    try:
        result = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            text=True,
            check=True,
            timeout=timeout,
        )
        return result.stdout.strip()
    except subprocess.CalledProcessError as e:
        raise GhError(f"gh {' '.join(args)} failed: {(e.stderr or '').strip()}") from e
    except subprocess.TimeoutExpired as e:
        raise GhError(f"gh {' '.join(args)} timed out after {timeout}s") from e
    except FileNotFoundError as e:
        raise GhError("gh executable not found") from e


def _run_gh_json(args: list[str], cwd, repo: str | None, timeout: float):
    if repo:
        args = args + ["--repo", repo]
    output = run_gh(args, cwd=cwd, timeout=timeout)
    try:
        return json.loads(output) if output else None
    except json.JSONDecodeError as e:
        raise GhError(f"gh {' '.join(args)} returned invalid JSON") from e


def list_open_pull_requests(
    cwd: str | Path | None = None,
    repo: str | None = None,
    timeout: float = GH_TIMEOUT_SECONDS,
) -> list[dict]:
    """Open PRs as dicts with number, title and headRefName."""
    data = _run_gh_json(
        ["pr", "list", "--state", "open", "--json", "number,title,headRefName"],
        cwd, repo, timeout,
    )
    if data is None:
        return []
    if not isinstance(data, list):
        raise GhError("gh pr list did not return a list")
    return data


def view_pull_request(
    number: int,
    fields: str,
    cwd: str | Path | None = None,
    repo: str | None = None,
    timeout: float = GH_TIMEOUT_SECONDS,
) -> dict:
    """Fetch selected JSON fields of a single PR."""
    data = _run_gh_json(
        ["pr", "view", str(number), "--json", fields],
        cwd, repo, timeout,
    )
    if not isinstance(data, dict):
        raise GhError(f"gh pr view {number} did not return an object")
    return data


def pull_request_files(
    number: int,
    cwd: str | Path | None = None,
    repo: str | None = None,
    timeout: float = GH_TIMEOUT_SECONDS,
) -> list[str]:
    """Paths changed by a PR."""
    args = ["pr", "diff", str(number), "--name-only"]
    if repo:
        args += ["--repo", repo]
    output = run_gh(args, cwd=cwd, timeout=timeout)
    return [line.strip() for line in output.splitlines() if line.strip()]
