"""Configuration loading from environment variables."""

import os
from dataclasses import dataclass, field
from pathlib import Path

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def _env_bool(name: str) -> bool | None:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return None
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean, got {raw!r}")


@dataclass
class Config:
    db_path: Path = field(default_factory=lambda: Path.home() / ".work_loop" / "wl.db")
    repo_path: Path = field(default_factory=lambda: Path.cwd())
    agent_output_dir: str = ".agent_outputs"
    slack_bot_token: str | None = None

    # Work loop switches and ceilings
    enabled: bool = True
    max_agents_global: int = 4
    max_agents_per_project: int = 3
    max_dev_agents: int = 2
    max_reviewer_agents: int = 1
    max_conflict_resolver_agents: int = 1
    max_conflict_resolution_attempts: int = 3
    stale_task_minutes: int = 30
    stale_review_minutes: int = 30
    cycle_interval_seconds: float = 60.0

    # Agents
    agent_default_model: str = "sonnet"
    reviewer_model: str = "sonnet"
    conflict_resolver_model: str = "sonnet"
    agent_timeout_seconds: int = 1800
    reviewer_timeout_seconds: int = 600

    # External tools
    gh_timeout_seconds: float = 10.0
    deploy_command: str | None = None
    deploy_watch_prefix: str | None = None

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()

        if db := os.environ.get("WL_DB_PATH"):
            config.db_path = Path(db)

        if repo := os.environ.get("WL_REPO_PATH"):
            config.repo_path = Path(repo)

        if out_dir := os.environ.get("WL_AGENT_OUTPUT_DIR"):
            config.agent_output_dir = out_dir

        config.slack_bot_token = os.environ.get("SLACK_BOT_TOKEN")

        if (enabled := _env_bool("WORK_LOOP_ENABLED")) is not None:
            config.enabled = enabled

        int_settings = {
            "WORK_LOOP_MAX_AGENTS": "max_agents_global",
            "WORK_LOOP_MAX_AGENTS_PER_PROJECT": "max_agents_per_project",
            "WORK_LOOP_MAX_DEV_AGENTS": "max_dev_agents",
            "WORK_LOOP_MAX_REVIEWER_AGENTS": "max_reviewer_agents",
            "WORK_LOOP_MAX_CONFLICT_RESOLVER_AGENTS": "max_conflict_resolver_agents",
            "WORK_LOOP_MAX_CONFLICT_RESOLUTION_ATTEMPTS": "max_conflict_resolution_attempts",
            "WORK_LOOP_STALE_TASK_MINUTES": "stale_task_minutes",
            "WORK_LOOP_STALE_REVIEW_MINUTES": "stale_review_minutes",
            "WL_AGENT_TIMEOUT_SECONDS": "agent_timeout_seconds",
            "WL_REVIEWER_TIMEOUT_SECONDS": "reviewer_timeout_seconds",
        }
        for env_name, attr in int_settings.items():
            value = _env_int(env_name)
            if value is not None:
                setattr(config, attr, value)

        if (cycle_ms := _env_int("WORK_LOOP_CYCLE_MS")) is not None:
            config.cycle_interval_seconds = cycle_ms / 1000

        if (gh_timeout := _env_float("WL_GH_TIMEOUT_SECONDS")) is not None:
            config.gh_timeout_seconds = gh_timeout

        if model := os.environ.get("WL_AGENT_DEFAULT_MODEL"):
            config.agent_default_model = model

        if model := os.environ.get("WL_REVIEWER_MODEL"):
            config.reviewer_model = model

        if model := os.environ.get("WL_CONFLICT_RESOLVER_MODEL"):
            config.conflict_resolver_model = model

        config.deploy_command = os.environ.get("WL_DEPLOY_COMMAND") or None
        config.deploy_watch_prefix = os.environ.get("WL_DEPLOY_WATCH_PREFIX") or None

        return config

    def role_limit(self, role: str) -> int | None:
        """Per-role ceiling, or None when the role is only bound by the global limit."""
        return {
            "dev": self.max_dev_agents,
            "reviewer": self.max_reviewer_agents,
            "conflict_resolver": self.max_conflict_resolver_agents,
        }.get(role)


def get_config() -> Config:
    return Config.from_env()
