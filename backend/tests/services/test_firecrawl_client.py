import httpx
import pytest

from backend.carbitrage.services.firecrawl_client import (
    FirecrawlClient,
    FirecrawlError,
    FirecrawlRetryableError,
)
from backend.tests.fakes import FakeTransport, make_response


@pytest.mark.asyncio
async def test_firecrawl_client_retries_on_retryable_status():
    responses = [
        make_response(429, {"success": False, "error": "rate"}),
        make_response(200, {"success": True, "data": {"html": "<html>lots</html>", "metadata": {"statusCode": 200}}}),
    ]
    transport = FakeTransport(responses)
    client = FirecrawlClient(transport=transport, max_attempts=2, backoff_base=0)
    result = await client.fetch("https://example.com", wait_for=5000)
    assert result.best_content == "<html>lots</html>"
    assert result.status_code == 200
    assert transport.calls == ["/v1/scrape", "/v1/scrape"]
    assert transport.payloads[0]["waitFor"] == 5000
    await client.aclose()


@pytest.mark.asyncio
async def test_firecrawl_client_gives_up_after_max_attempts():
    responses = [make_response(503, {}), make_response(503, {}), make_response(503, {})]
    client = FirecrawlClient(transport=FakeTransport(responses), max_attempts=3, backoff_base=0)
    with pytest.raises(FirecrawlRetryableError):
        await client.fetch("https://example.com")


@pytest.mark.asyncio
async def test_firecrawl_client_retries_request_errors():
    request = httpx.Request("POST", "https://api.firecrawl.dev/v1/scrape")
    responses = [
        httpx.ConnectError("boom", request=request),
        make_response(200, {"success": True, "data": {"markdown": "# Lot 1"}}),
    ]
    client = FirecrawlClient(transport=FakeTransport(responses), max_attempts=2, backoff_base=0)
    result = await client.fetch("https://example.com")
    assert result.best_content == "# Lot 1"


@pytest.mark.asyncio
async def test_firecrawl_client_does_not_retry_client_errors():
    transport = FakeTransport([make_response(401, {"error": "bad key"})])
    client = FirecrawlClient(transport=transport, max_attempts=3, backoff_base=0)
    with pytest.raises(FirecrawlError):
        await client.fetch("https://example.com")
    assert transport.calls == ["/v1/scrape"]


@pytest.mark.asyncio
async def test_firecrawl_client_unsuccessful_body_raises():
    client = FirecrawlClient(
        transport=FakeTransport([make_response(200, {"success": False, "error": "blocked"})]), backoff_base=0
    )
    with pytest.raises(FirecrawlError, match="blocked"):
        await client.fetch("https://example.com")

