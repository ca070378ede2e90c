import pytest

from backend.carbitrage.parsers._fields import ParseError
from backend.carbitrage.parsers.pickles import (
    build_search_url,
    extract_stock_id,
    has_more_pages,
    parse_detail,
    parse_stubs,
)

SEARCH_HTML = """
<div class="results-header">Showing 1-120 of 348 results</div>
<div class="content-card">
  <a href="/used/details/cars/2021-toyota-hilux/64821234" class="card-link">
    <h2>2021 Toyota Hilux SR5 Double Cab</h2>
  </a>
  <span class="odo">48,200 km</span>
  <span class="loc">Yatala, QLD</span>
</div>
<div class="content-card">
  <a href="https://www.pickles.com.au/used/item/cars/2019-ford-ranger-xlt-55501234">
    <h2>2019 Ford Ranger XLT</h2>
  </a>
  <span class="odo">102,000 km</span>
  <span class="loc">Milperra, NSW</span>
</div>
<a href="/used/details/cars/2021-toyota-hilux/64821234">Duplicate link</a>
"""

DETAIL_HTML = """
<html><head><title>2020 Toyota Landcruiser GXL Auto 4x4 | Pickles</title></head>
<body>
<h1>2020 Toyota Landcruiser GXL Auto 4x4</h1>
<dl>
  <dt>Odometer</dt><dd>Odometer: 112,450 km</dd>
  <dt>Fuel</dt><dd>Fuel: Diesel</dd>
  <dt>Transmission</dt><dd>Transmission: Automatic</dd>
</dl>
<div class="price">Buy Now: $78,500</div>
<div class="status">Passed In</div>
<p>Location: Eagle Farm, QLD</p>
</body></html>
"""


def test_build_search_url():
    assert build_search_url(2) == "https://www.pickles.com.au/used/search/cars/state/nsw?limit=120&page=2"


def test_extract_stock_id_variants():
    assert extract_stock_id("/used/details/cars/2021-toyota-hilux/64821234") == "64821234"
    assert extract_stock_id("/used/item/cars/2019-ford-ranger-xlt-55501234") == "55501234"
    assert extract_stock_id("Stock# 7788123") == "7788123"
    assert extract_stock_id("nothing here") is None


def test_parse_stubs_reads_cards_and_dedupes_links():
    stubs = parse_stubs(SEARCH_HTML)
    assert len(stubs) == 2

    hilux, ranger = stubs
    assert hilux["source_stock_id"] == "64821234"
    assert hilux["detail_url"] == "https://www.pickles.com.au/used/details/cars/2021-toyota-hilux/64821234"
    assert (hilux["year"], hilux["make"], hilux["model"]) == (2021, "Toyota", "Hilux")
    assert hilux["km"] == 48200
    assert hilux["location"] == "Yatala, QLD"

    assert ranger["source_stock_id"] == "55501234"
    assert ranger["make"] is None
    assert ranger["year"] == 2019


def test_has_more_pages_uses_result_total():
    assert has_more_pages(SEARCH_HTML, 1) is True
    assert has_more_pages(SEARCH_HTML, 3) is False
    assert has_more_pages("<a href='?page=5'>5</a>", 4) is True
    assert has_more_pages("<p>No results</p>", 1) is False


def test_parse_detail_full_candidate():
    url = "https://www.pickles.com.au/used/details/cars/2020-toyota-landcruiser/63001234"
    candidate = parse_detail(DETAIL_HTML, url)
    assert candidate["native_id"] == "63001234"
    assert (candidate["make"], candidate["model"], candidate["year"]) == ("Toyota", "Landcruiser", 2020)
    assert candidate["variant_raw"] == "GXL Auto 4x4"
    assert candidate["variant_family"] == "GXL"
    assert candidate["km"] == 112450
    assert candidate["fuel"] == "Diesel"
    assert candidate["transmission"] == "Auto"
    assert candidate["drivetrain"] == "4WD"
    assert candidate["asking_price"] == 78500
    assert candidate["highest_bid"] is None
    assert candidate["price_type"] == "buy_now"
    assert candidate["status"] == "passed_in"
    assert candidate["auction_house"] == "Pickles"
    assert candidate["wovr"] is False


def test_parse_detail_rejects_empty_page():
    with pytest.raises(ParseError):
        parse_detail("", "https://www.pickles.com.au/used/details/cars/x/1")
