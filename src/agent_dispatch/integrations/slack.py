"""Slack Web API integration for escalation notices."""

import logging
from dataclasses import dataclass

from agent_dispatch.db.models import Task

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

    response = client.chat_postMessage(
        channel=channel,
        text=text,
        blocks=blocks,
    )

    return SlackMessage(
        channel=response["channel"],
        ts=response["ts"],
        text=text,
    )


def format_escalation(task: Task, agent_name: str, reason: str) -> list[dict]:
    """Format an escalation notice as Slack blocks."""
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f":rotating_light: *Needs attention*\n*{task.title}* (`{task.id}`)\n"
                    f"Agent: {agent_name} | Priority: P{task.priority}\n"
                    f"{reason[:500]}"
                ),
            },
        }
    ]


class SlackNotifier:
    """Posts escalations to one Slack channel."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def escalate(self, task: Task, agent_name: str, reason: str) -> SlackMessage:
        text = f"Task {task.id} needs attention: {reason[:200]}"
        message = send_message(
            self.token, self.channel, text,
            blocks=format_escalation(task, agent_name, reason),
        )
        logger.info("Escalated task %s to %s", task.id, self.channel)
        return message
