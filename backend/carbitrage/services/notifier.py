from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from backend.carbitrage.core.settings import settings

logger = logging.getLogger(__name__)


class SlackNotifier:
    """Posts block messages to a Slack incoming webhook. No-op without a webhook URL."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
    ):
        self.webhook_url = webhook_url if webhook_url is not None else settings.slack_webhook_url
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, blocks: List[Dict[str, Any]], text: Optional[str] = None) -> bool:
        if not self.enabled:
            return False
        payload: Dict[str, Any] = {"blocks": blocks}
        if text:
            payload["text"] = text
        try:
            if self._client is not None:
                response = await self._client.post(self.webhook_url, json=payload, timeout=self.timeout)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(self.webhook_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Slack notification failed: %s", exc)
            return False
        return True

    async def notify_source_disabled(self, display_name: str, source_key: str, fail_count: int, error: str) -> bool:
        blocks = [
            {"type": "header", "text": {"type": "plain_text", "text": "Auction Source Auto-Disabled", "emoji": True}},
            {
                "type": "section",
                "text": {
                    "type": "mrkdwn",
                    "text": (
                        f"*{display_name}* (`{source_key}`) was auto-disabled.\n"
                        f"• Fail streak: *{fail_count}*\n"
                        f"• Error: `{error}`\n"
                        "Action: re-enable the source once the crawler is fixed."
                    ),
                },
            },
        ]
        return await self.send(blocks, text=f"{display_name} auto-disabled after {fail_count} failures")
