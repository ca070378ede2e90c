from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.services.firecrawl_client import FirecrawlError
from backend.carbitrage.services.stubs import (
    claim_detail_batch,
    deep_fetch,
    match_stub_score,
    match_stubs_to_specs,
    upsert_stub_anchors,
)
from backend.tests.fakes import FakeFirecrawlClient, html_result

NOW = datetime(2026, 5, 4, 8, 0, tzinfo=timezone.utc)
DETAIL_URL = "https://www.pickles.com.au/used/details/cars/2021-toyota-hilux/64821234"

DETAIL_HTML = """
<html><head><title>2021 Toyota Hilux SR5 Auto 4x4 | Pickles</title></head>
<body>
<h1>2021 Toyota Hilux SR5 Auto 4x4</h1>
<ul><li>Odometer: 48,200 km</li><li>Transmission: Automatic</li><li>Fuel: Diesel</li><li>Drive: 4WD</li></ul>
<p>Location: Yatala, QLD</p>
<div>Current Bid: $41,500</div>
</body></html>
"""


def _stub(stock_id="64821234", **overrides):
    stub = {
        "source_stock_id": stock_id,
        "detail_url": DETAIL_URL,
        "year": 2021,
        "make": "Toyota",
        "model": "Hilux",
        "km": 48200,
        "location": "Yatala, QLD",
        "raw_text": "2021 Toyota Hilux 48,200 km Yatala, QLD",
    }
    stub.update(overrides)
    return stub


def _add_spec(**overrides) -> int:
    fields = {
        "dealer_name": "Northside Toyota",
        "make": "Toyota",
        "model": "Hilux",
        "year_min": 2019,
        "year_max": 2022,
        "km_max": 80000,
        "enabled": True,
    }
    fields.update(overrides)
    with session_scope() as session:
        spec = models.DealerSpec(**fields)
        session.add(spec)
        session.flush()
        return spec.id


def _stubs():
    with session_scope() as session:
        return list(session.execute(select(models.StubAnchor).order_by(models.StubAnchor.id)).scalars())


def _queue():
    with session_scope() as session:
        return list(session.execute(select(models.DetailQueueItem).order_by(models.DetailQueueItem.id)).scalars())


def test_match_stub_score_components():
    spec = {"make": "Toyota", "model": "Hilux", "year_min": 2019, "year_max": 2022, "km_max": 80000}
    assert match_stub_score({"make": "toyota", "model": "HILUX", "year": 2021, "km": 50000}, spec) == 100
    assert match_stub_score({"make": "Toyota", "model": "Hilux", "year": 2023, "km": 95000}, spec) == 75
    assert match_stub_score({"make": "Toyota", "model": "Hilux", "year": 2015, "km": None}, spec) == 55
    assert match_stub_score({"make": "Toyota", "model": "Hilux", "year": 2020, "km": 150000}, spec) == 80
    assert match_stub_score({"make": "Toyota", "model": "Hilux", "year": 2020}, {**spec, "km_max": None}) == 90
    assert match_stub_score({"make": "Toyota", "model": "Prado", "year": 2021, "km": 1000}, spec) == 0


def test_upsert_stub_anchors_refreshes_without_wiping():
    first = upsert_stub_anchors("pickles", [_stub(), _stub(stock_id=None)], now=NOW)
    assert first["metrics"] == {"created": 1, "updated": 0, "exceptions": 1}

    later = NOW + timedelta(hours=6)
    second = upsert_stub_anchors("pickles", [_stub(km=None, location="Brisbane, QLD")], now=later)
    assert second["metrics"] == {"created": 0, "updated": 1, "exceptions": 0}

    (stub,) = _stubs()
    assert stub.km == 48200
    assert stub.location == "Brisbane, QLD"
    assert stub.first_seen_at == NOW
    assert stub.last_seen_at == later
    assert stub.status == "pending"


def test_match_stubs_queues_best_match_once():
    upsert_stub_anchors("pickles", [_stub(), _stub(stock_id="64829999", model="Prado")], now=NOW)
    strict = _add_spec()
    loose = _add_spec(dealer_name="Westside", km_max=None, year_min=2015, year_max=2019)
    _add_spec(dealer_name="Retired", enabled=False)

    result = match_stubs_to_specs(now=NOW)
    assert result["metrics"]["stubs_scanned"] == 2
    assert result["metrics"]["specs"] == 2
    assert result["metrics"]["matched"] == 1
    assert result["metrics"]["queued"] == 1

    matched = [s for s in _stubs() if s.source_stock_id == "64821234"][0]
    assert matched.status == "matched"
    assert matched.deep_fetch_triggered is True
    assert matched.deep_fetch_reason == "spec_match:score=100"
    assert matched.matched_spec_ids == [strict, loose]

    (item,) = _queue()
    assert (item.source, item.source_listing_id, item.crawl_status) == ("pickles", "64821234", "pending")

    # matched stubs are no longer pending, so a re-run queues nothing new
    assert match_stubs_to_specs(now=NOW)["metrics"]["queued"] == 0
    assert len(_queue()) == 1


def test_match_stubs_dry_run_leaves_rows_untouched():
    upsert_stub_anchors("pickles", [_stub()], now=NOW)
    _add_spec()
    result = match_stubs_to_specs(dry_run=True, now=NOW)
    assert result["metrics"]["matched"] == 1
    assert result["metrics"]["queued"] == 0
    assert _queue() == []
    assert _stubs()[0].status == "pending"


def test_claim_detail_batch_prefers_pending_and_skips_exhausted():
    with session_scope() as session:
        session.add_all(
            [
                models.DetailQueueItem(source="pickles", source_listing_id="1", detail_url="https://x/1",
                                       crawl_status="failed", retry_count=1, first_seen_at=NOW - timedelta(days=2)),
                models.DetailQueueItem(source="pickles", source_listing_id="2", detail_url="https://x/2",
                                       crawl_status="pending", retry_count=0, first_seen_at=NOW),
                models.DetailQueueItem(source="pickles", source_listing_id="3", detail_url="https://x/3",
                                       crawl_status="failed", retry_count=3, first_seen_at=NOW),
                models.DetailQueueItem(source="pickles", source_listing_id="4", detail_url="https://x/4",
                                       crawl_status="crawled", retry_count=0, first_seen_at=NOW),
            ]
        )

    claimed = claim_detail_batch(batch_size=10, claimed_by="w1", now=NOW)
    assert [row["source_listing_id"] for row in claimed] == ["2", "1"]
    statuses = {item.source_listing_id: (item.crawl_status, item.claimed_by) for item in _queue()}
    assert statuses["1"] == ("processing", "w1")
    assert statuses["3"] == ("failed", None)

    assert claim_detail_batch(batch_size=10, now=NOW + timedelta(minutes=1)) == []
    # abandoned claims become claimable again once stale
    assert len(claim_detail_batch(batch_size=10, now=NOW + timedelta(minutes=11))) == 2


@pytest.mark.asyncio
async def test_deep_fetch_enriches_stub_and_reconciles_listing():
    upsert_stub_anchors("pickles", [_stub()], now=NOW)
    _add_spec()
    match_stubs_to_specs(now=NOW)

    firecrawl = FakeFirecrawlClient([html_result(DETAIL_URL, DETAIL_HTML)])
    result = await deep_fetch(batch_size=5, firecrawl=firecrawl, delay=0)

    assert result["metrics"] == {"claimed": 1, "crawled": 1, "failed": 0}
    assert firecrawl.urls == [DETAIL_URL]
    assert firecrawl.closed is False

    (item,) = _queue()
    assert item.crawl_status == "crawled"
    assert _stubs()[0].status == "enriched"
    assert _stubs()[0].deep_fetch_completed_at is not None

    with session_scope() as session:
        listing = session.execute(
            select(models.Listing).where(models.Listing.listing_id == "pickles:64821234")
        ).scalar_one()
        assert listing.make == "Toyota"
        assert listing.model == "Hilux"
        assert listing.km == 48200
        assert float(listing.highest_bid) == 41500
        assert listing.drivetrain == "4WD"


@pytest.mark.asyncio
async def test_deep_fetch_failure_marks_exception_and_counts_retry():
    upsert_stub_anchors("pickles", [_stub()], now=NOW)
    _add_spec()
    match_stubs_to_specs(now=NOW)

    firecrawl = FakeFirecrawlClient([FirecrawlError("blocked")])
    result = await deep_fetch(batch_size=5, firecrawl=firecrawl, delay=0)

    assert result["success"] is False
    assert result["metrics"]["failed"] == 1
    (item,) = _queue()
    assert item.crawl_status == "failed"
    assert item.retry_count == 1
    assert item.last_error == "blocked"
    assert _stubs()[0].status == "exception"


@pytest.mark.asyncio
async def test_deep_fetch_dry_run_only_counts():
    upsert_stub_anchors("pickles", [_stub()], now=NOW)
    _add_spec()
    match_stubs_to_specs(now=NOW)
    result = await deep_fetch(dry_run=True, firecrawl=FakeFirecrawlClient([]))
    assert result["metrics"] == {"would_process": 1, "dry_run": True}
    assert _queue()[0].crawl_status == "pending"
