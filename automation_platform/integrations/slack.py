from __future__ import annotations

import logging
from typing import Any, Dict

import httpx

from automation_platform.config import settings
from automation_platform.core.exceptions import IntegrationError

logger = logging.getLogger(__name__)

SLACK_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


class SlackClient:
    """Posts messages with a bot token; simulated when no token is configured."""

    def __init__(self, http_client: httpx.AsyncClient | None = None, token: str | None = None):
        if token is None and settings.slack_bot_token:
            token = settings.slack_bot_token.get_secret_value()
        self.token = token
        self._http_client = http_client

    @property
    def configured(self) -> bool:
        return bool(self.token)

    async def send_message(self, channel: str, text: str) -> Dict[str, Any]:
        if not self.configured:
            logger.info("Slack bot token not configured; simulating message to %s", channel)
            return {"sent": True, "simulated": True, "channel": channel, "message": text}

        client = self._http_client or httpx.AsyncClient(timeout=settings.http_timeout_seconds)
        try:
            response = await client.post(
                SLACK_POST_MESSAGE_URL,
                headers={"Authorization": f"Bearer {self.token}"},
                json={"channel": channel, "text": text},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as exc:
            raise IntegrationError(f"Slack request failed: {exc}", integration="slack") from exc
        finally:
            if self._http_client is None:
                await client.aclose()

        # Slack reports API failures with HTTP 200 and ok=false.
        if not data.get("ok"):
            raise IntegrationError(
                f"Slack API error: {data.get('error', 'unknown_error')}",
                integration="slack",
                recoverable=data.get("error") == "ratelimited",
            )
        return {
            "sent": True,
            "simulated": False,
            "channel": data.get("channel", channel),
            "ts": data.get("ts"),
            "message": text,
        }
