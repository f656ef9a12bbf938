"""Data models for the work loop."""

from dataclasses import dataclass, field
from datetime import datetime, timezone

TASK_STATUSES = ("backlog", "ready", "in_progress", "in_review", "blocked", "done")
AGENT_STATUSES = ("running", "finished", "stale", "none")
PHASES = ("cleanup", "triage", "work", "review", "analyze")
MERGEABLE_STATES = ("MERGEABLE", "CONFLICTING", "DIRTY", "UNKNOWN")

DEFAULT_ROLE = "dev"
REVIEWER_ROLE = "reviewer"
CONFLICT_RESOLVER_ROLE = "conflict_resolver"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_dt(val: str | None) -> datetime | None:
    """Parse a stored timestamp; SQLite's datetime('now') is naive UTC."""
    if val is None:
        return None
    dt = datetime.fromisoformat(val)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_dt(val: datetime | None) -> str | None:
    if val is None:
        return None
    return val.astimezone(timezone.utc).isoformat(timespec="seconds")


@dataclass
class Project:
    id: str
    name: str
    local_path: str
    default_branch: str = "main"
    github_repo: str | None = None
    slack_channel: str | None = None
    work_loop_enabled: bool = False
    work_loop_max_agents: int | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def worktrees_base(self) -> str:
        return f"{self.local_path.rstrip('/')}-worktrees"


@dataclass
class Task:
    id: str
    project_id: str
    title: str
    description: str = ""
    status: str = "backlog"
    role: str | None = None
    priority: int = 3
    pr_number: int | None = None
    branch: str | None = None
    worktree_path: str | None = None
    agent_retry_count: int = 0
    agent_session_key: str | None = None
    agent_model: str | None = None
    agent_started_at: datetime | None = None
    agent_last_active_at: datetime | None = None
    triage_sent_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None
    depends_on: list[str] = field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.id[:8]

    @property
    def branch_name(self) -> str:
        """Recorded branch, or the one agents are told to create for this task."""
        return self.branch or f"task/{self.id}"


@dataclass
class Comment:
    id: int | None = None
    task_id: str = ""
    author: str = ""
    author_type: str = "human"
    content: str = ""
    type: str = "message"
    created_at: datetime | None = None


@dataclass
class TaskEvent:
    id: int | None = None
    task_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    actor: str | None = None
    reason: str | None = None
    created_at: datetime | None = None


@dataclass
class AgentHandle:
    session_key: str
    task_id: str
    project_id: str
    role: str
    model: str
    spawned_at: datetime
    last_active_at: datetime
    status: str = "running"
    pid: int | None = None
    output_file: str | None = None
    timeout_seconds: int | None = None


@dataclass
class PullRequest:
    number: int
    title: str
    head_ref: str | None = None
    state: str = "OPEN"


@dataclass
class AuditEntry:
    id: int | None = None
    project_id: str = ""
    cycle: int = 0
    phase: str = ""
    action: str = ""
    task_id: str | None = None
    session_key: str | None = None
    details: dict | None = None
    duration_ms: int | None = None
    created_at: datetime | None = None
