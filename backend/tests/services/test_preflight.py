import httpx
import pytest
from sqlalchemy import select

from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.services.preflight import check_url, run_preflight
from backend.tests.fakes import FakeFirecrawlClient, html_result

LIST_URL = "https://auctions.example/catalogue"

GRID_HTML = """
<html><body>
<div class="lot-grid">
  <div class="lot-card"><h3>2019 Toyota Hilux SR5</h3><span>85,000 km</span><span>Reserve: $32,000</span></div>
  <div class="lot-card"><h3>2020 Ford Ranger XLT</h3><span>64,000 km</span><span>Reserve: $38,500</span></div>
</div>
</body></html>
"""
SHELL_HTML = "<html><body><div id='app'></div><script src='/bundle.js'></script></body></html>"


def _client(status_code=200, text="", exc=None) -> httpx.AsyncClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if exc is not None:
            raise exc(request)
        return httpx.Response(status_code, text=text)

    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _timeout(request):
    return httpx.ReadTimeout("timed out", request=request)


@pytest.mark.asyncio
async def test_tier_one_pass_detects_profile_and_lots():
    firecrawl = FakeFirecrawlClient([])
    async with _client(text=GRID_HTML) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=firecrawl)
    assert result.status == "pass"
    assert result.reason.startswith("Tier 1")
    assert result.markers.parser_profile_detected == "bidsonline_grid"
    assert result.markers.estimated_lots == 2
    assert result.markers.has_price_indicators is True
    assert firecrawl.urls == []


@pytest.mark.asyncio
async def test_forbidden_is_blocked_without_rendering():
    firecrawl = FakeFirecrawlClient([])
    async with _client(status_code=403) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=firecrawl)
    assert result.status == "blocked"
    assert result.markers.http_status == 403
    assert firecrawl.urls == []


@pytest.mark.asyncio
async def test_server_error_fails():
    async with _client(status_code=502) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=FakeFirecrawlClient([]))
    assert result.status == "fail"
    assert result.reason == "HTTP 502"


@pytest.mark.asyncio
async def test_captcha_body_is_blocked():
    async with _client(text="<html>Please complete the CAPTCHA to continue</html>") as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=FakeFirecrawlClient([]))
    assert result.status == "blocked"


@pytest.mark.asyncio
async def test_tier_two_renders_javascript_shell():
    firecrawl = FakeFirecrawlClient([html_result(LIST_URL, GRID_HTML)])
    async with _client(text=SHELL_HTML) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=firecrawl)
    assert result.status == "pass"
    assert result.reason.startswith("Tier 2")
    assert firecrawl.urls == [LIST_URL]


@pytest.mark.asyncio
async def test_tier_two_without_vehicles_fails():
    firecrawl = FakeFirecrawlClient([html_result(LIST_URL, SHELL_HTML)])
    async with _client(text=SHELL_HTML) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=firecrawl)
    assert result.status == "fail"
    assert result.reason == "No vehicle content found in either tier"


@pytest.mark.asyncio
async def test_timeout_status():
    async with _client(exc=_timeout) as http:
        result = await check_url("grays_nsw", LIST_URL, http=http, firecrawl=FakeFirecrawlClient([]))
    assert result.status == "timeout"


@pytest.mark.asyncio
async def test_run_preflight_records_outcome():
    with session_scope() as session:
        session.add(models.AuctionSource(source_key="grays_nsw", display_name="Grays NSW", list_url=LIST_URL))

    async with _client(text=GRID_HTML) as http:
        result = await run_preflight("grays_nsw", http=http, firecrawl=FakeFirecrawlClient([]))

    assert result["metrics"] == {"checked": 1, "passed": 1, "failed": 0}
    with session_scope() as session:
        source = session.execute(select(models.AuctionSource)).scalar_one()
        assert source.preflight_status == "ok"
        assert source.parser_profile == "bidsonline_grid"
        assert source.preflight_checked_at is not None
        event = session.execute(select(models.SourceEvent)).scalar_one()
        assert event.event_type == "preflight"
        assert event.meta["estimated_lots"] == 2


@pytest.mark.asyncio
async def test_run_preflight_unknown_source():
    with pytest.raises(ValueError):
        await run_preflight("nope", http=_client(), firecrawl=FakeFirecrawlClient([]))
