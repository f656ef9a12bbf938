"""Slack Web API integration."""

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class SlackError(Exception):
    """Raised when a Slack operation fails."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Get a Slack WebClient. Returns None if no token provided."""
    if not token:
        return None
    from slack_sdk import WebClient
    return WebClient(token=token)


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> SlackMessage:
    """Send a message to a Slack channel."""
    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    from slack_sdk.errors import SlackApiError
    try:
        response = client.chat_postMessage(
            channel=channel,
            text=text,
            blocks=blocks,
        )
    except SlackApiError as e:
        raise SlackError(f"Slack API error: {e.response.get('error', e)}") from e

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation(task_id: str, title: str, reason: str, detail: str) -> list[dict]:
    """Format a task escalation (moved to blocked) as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":red_circle: *Task Blocked*\n*{title}* (`{task_id}`)\n"
                    f"Reason: `{reason}`\n{detail}"
                ),
            },
        }
    ]


def format_triage_request(
    task_id: str,
    title: str,
    last_comment: str | None = None,
) -> list[dict]:
    """Format a request for a human to triage a blocked task."""
    context = f"\n>{last_comment}" if last_comment else ""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":eyes: *Triage Needed*\n*{title}* (`{task_id}`) is blocked "
                    f"and waiting on a human.{context}"
                ),
            },
        },
    ]


def format_status_update(project: str, counts: dict[str, int], active_agents: int = 0) -> list[dict]:
    """Format a project status update as Slack blocks."""
    total = sum(counts.values())
    done = counts.get("done", 0)
    progress = done / total * 100 if total > 0 else 0

    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":bar_chart: *Project Status: {project}*\n"
                    f":white_check_mark: Done: {done} | "
                    f":eyes: In Review: {counts.get('in_review', 0)} | "
                    f":large_blue_circle: In Progress: {counts.get('in_progress', 0)} | "
                    f":white_circle: Ready: {counts.get('ready', 0)} | "
                    f":red_circle: Blocked: {counts.get('blocked', 0)}\n"
                    f"Agents running: {active_agents}\n"
                    f"Progress: {progress:.0f}% ({done}/{total})"
                ),
            },
        }
    ]


class Notifier:
    """Best-effort Slack sink. Silent when no token or channel is set."""

    def __init__(self, token: str | None):
        self.token = token

    def notify(self, channel: str | None, text: str, blocks: list[dict] | None = None) -> bool:
        if not self.token or not channel:
            return False
        try:
            send_message(self.token, channel, text, blocks=blocks)
        except SlackError as e:
            logger.warning("Slack notification to %s failed: %s", channel, e)
            return False
        return True
