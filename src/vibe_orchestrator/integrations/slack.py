"""Slack notices for finished agents."""

import logging

from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_CHARS = 200


class SlackError(Exception):
    """Raised when a notice cannot be posted."""


def send_message(
    token: str | None,
    channel: str,
    text: str,
    blocks: list[dict] | None = None,
) -> str:
    """Post to a channel and return the message timestamp."""
    if not token:
        raise SlackError("Slack not configured: SLACK_BOT_TOKEN not set")
    try:
        response = WebClient(token=token).chat_postMessage(
            channel=channel, text=text, blocks=blocks
        )
    except SlackApiError as e:
        raise SlackError(f"Slack rejected the message: {e.response.get('error')}") from e
    logger.debug("Posted agent notice to %s", channel)
    return response["ts"]


def format_agent_notification(
    agent_name: str,
    agent_id: str,
    session_name: str,
    success: bool,
    summary: str,
) -> list[dict]:
    emoji = ":white_check_mark:" if success else ":x:"
    outcome = "completed" if success else "finished with errors"
    preview = summary[:SUMMARY_PREVIEW_CHARS]
    return [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": (
                    f"{emoji} *Agent {outcome}*\n"
                    f"*{agent_name}* (`{agent_id[:8]}`) in session *{session_name}*\n"
                    f"{preview}"
                ),
            },
        }
    ]
