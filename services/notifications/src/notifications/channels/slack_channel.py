"""
Slack delivery channel for Herald.

Posts rendered notifications to a Slack channel via an incoming webhook.
Slack answers 200 on success; 429 and 5xx are worth retrying, any other
status means the webhook or payload is wrong and will stay wrong.
"""

from __future__ import annotations

from typing import Any

import structlog
from slack_sdk.webhook.async_client import AsyncWebhookClient

from .base import Channel, SendResult

logger = structlog.get_logger()

_MAX_SECTION_CHARS = 3000


def _format_slack_blocks(rendered_payload: str, recipient: str) -> list[dict[str, Any]]:
    """Build Slack Block Kit blocks for a rendered notification."""
    return [
        {
            "type": "section",
            "text": {"type": "mrkdwn", "text": rendered_payload[:_MAX_SECTION_CHARS]},
        },
        {
            "type": "context",
            "elements": [{"type": "mrkdwn", "text": f"recipient: `{recipient}`"}],
        },
    ]


def _is_transient_status(status: int) -> bool:
    return status == 429 or status >= 500


class SlackChannel(Channel):
    """Send notifications as Slack messages via incoming webhook.

    Args:
        webhook_url: Slack incoming-webhook URL.
        name: Channel name used by routing rules (default ``"slack"``).
    """

    def __init__(self, webhook_url: str, *, name: str = "slack") -> None:
        self.name = name
        self.webhook_url = webhook_url
        self._client = AsyncWebhookClient(url=webhook_url)

    async def send(self, rendered_payload: str, recipient: str) -> SendResult:
        """Deliver *rendered_payload* to Slack.

        Returns:
            A successful result on 200, otherwise a failure classified by
            status (network errors are transient).
        """
        blocks = _format_slack_blocks(rendered_payload, recipient)
        fallback_text = rendered_payload.splitlines()[0] if rendered_payload else recipient
        log = logger.bind(channel=self.name, recipient=recipient)
        try:
            response = await self._client.send(text=fallback_text, blocks=blocks)
        except Exception as exc:  # noqa: BLE001
            log.error("slack_delivery_failed", error=str(exc))
            return SendResult.fail(f"slack transport error: {exc}", transient=True)

        if response.status_code == 200:
            log.info("slack_delivered")
            return SendResult.ok()
        log.warning("slack_non_200", status=response.status_code, body=response.body)
        return SendResult.fail(
            f"slack returned {response.status_code}: {response.body}",
            transient=_is_transient_status(response.status_code),
        )
