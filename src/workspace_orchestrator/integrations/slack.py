"""Slack notifications for finished sessions and workspaces that need attention."""

from dataclasses import dataclass


class SlackError(Exception):
    """Raised when a notification cannot be delivered."""


@dataclass
class SlackMessage:
    channel: str
    ts: str
    text: str


def get_client(token: str | None):
    """Slack WebClient for a bot token, or None when notifications are not configured."""
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
    """Post text (and optional blocks) to a channel. Raises SlackError on any API failure."""
    from slack_sdk.errors import SlackApiError

    client = get_client(token)
    if not client:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")

    try:
        response = client.chat_postMessage(channel=channel, text=text, blocks=blocks)
    except SlackApiError as e:
        raise SlackError(f"Slack rejected the message for {channel}: {e.response.get('error')}") from e

    return SlackMessage(channel=response["channel"], ts=response["ts"], text=text)


def format_session_notification(
    session_id: str,
    requirement: str,
    status: str,
    branch: str | None = None,
    pr_url: str | None = None,
    error: str | None = None,
) -> list[dict]:
    """Format an agent session outcome as Slack blocks."""
    emoji = ":white_check_mark:" if status == "completed" else ":red_circle:"
    summary = requirement if len(requirement) <= 120 else requirement[:117] + "..."
    lines = [f"{emoji} *Agent session {status}*", f"*{summary}* (`{session_id[:8]}`)"]
    if branch:
        lines.append(f"Branch: `{branch}`")
    if pr_url:
        lines.append(f"<{pr_url}|View Pull Request>")
    if error:
        lines.append(f"Error: {error}")
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]


def format_sync_attention(statuses: list[dict]) -> list[dict]:
    """Format the workspaces that need manual sync attention as Slack blocks."""
    status_emoji = {
        "conflict": ":red_circle:",
        "diverged": ":large_orange_circle:",
    }
    lines = [":warning: *Workspaces need attention*"]
    for s in statuses:
        emoji = status_emoji.get(s.get("status", ""), ":grey_question:")
        lines.append(f"{emoji} `{s.get('project')}/{s.get('branch')}`: {s.get('message', '')}")
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": "\n".join(lines)},
        }
    ]
