import json

import httpx
import pytest

from backend.carbitrage.services.notifier import SlackNotifier


@pytest.mark.asyncio
async def test_notify_source_disabled_posts_blocks():
    captured = []

    def handler(request: httpx.Request) -> httpx.Response:
        captured.append(json.loads(request.content))
        return httpx.Response(200, text="ok")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier("https://hooks.slack.test/T000/B000", client=client)
        sent = await notifier.notify_source_disabled("Grays NSW", "grays_nsw", 3, "timeout after 180s")

    assert sent is True
    (payload,) = captured
    assert payload["blocks"][0]["text"]["text"] == "Auction Source Auto-Disabled"
    assert "grays_nsw" in payload["blocks"][1]["text"]["text"]
    assert payload["text"] == "Grays NSW auto-disabled after 3 failures"


@pytest.mark.asyncio
async def test_send_failure_is_logged_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, text="nope")

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        notifier = SlackNotifier("https://hooks.slack.test/T000/B000", client=client)
        assert await notifier.send([{"type": "section"}]) is False


@pytest.mark.asyncio
async def test_disabled_without_webhook():
    notifier = SlackNotifier("")
    assert notifier.enabled is False
    assert await notifier.send([{"type": "section"}]) is False
