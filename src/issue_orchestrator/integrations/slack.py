"""Slack Web API integration."""

from dataclasses import dataclass


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


STATUS_EMOJI = {
    "in-progress": ":large_blue_circle:",
    "dev-complete": ":white_check_mark:",
    "blocked": ":red_circle:",
    "failed": ":x:",
    "resurrected": ":recycle:",
}


def format_assignment_notification(
    item_id: int,
    title: str,
    status: str,
    provider: str,
    detail: str | None = None,
) -> list[dict]:
    """Format an assignment lifecycle change as Slack blocks."""
    emoji = STATUS_EMOJI.get(status, ":grey_question:")
    text = f"{emoji} *#{item_id} {title}*\nStatus: *{status}* | Worker: {provider}"
    if detail:
        text += f"\n{detail[:300]}"
    return [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]


class SlackNotifier:
    """Posts assignment lifecycle changes to one channel."""

    def __init__(self, token: str, channel: str):
        self.token = token
        self.channel = channel

    def notify(
        self,
        item_id: int,
        title: str,
        status: str,
        provider: str,
        detail: str | None = None,
    ) -> SlackMessage:
        blocks = format_assignment_notification(item_id, title, status, provider, detail)
        return send_message(self.token, self.channel, f"#{item_id} {title}: {status}", blocks=blocks)
