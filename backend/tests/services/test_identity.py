import pytest

from backend.carbitrage.services.identity import (
    build_listing_id,
    extract_native_id,
    normalize_url,
    source_family,
    url_hash,
)


def test_normalize_url_strips_tracking_and_sorts_params():
    url = "HTTP://WWW.Pickles.com.au/used/item/cars/ford-ranger-123456/?utm_source=fb&b=2&fbclid=x&a=1#gallery"
    assert normalize_url(url) == "https://www.pickles.com.au/used/item/cars/ford-ranger-123456?a=1&b=2"


def test_normalize_url_adds_scheme_and_keeps_root_slash():
    assert normalize_url("example.com/") == "https://example.com/"
    assert normalize_url("  ") is None
    assert normalize_url(None) is None


def test_source_family_uses_leading_token():
    assert source_family("pickles_nsw") == "pickles"
    assert source_family("Gumtree-QLD") == "gumtree"
    assert source_family("manheim") == "manheim"


def test_extract_native_id_prefers_source_patterns():
    assert extract_native_id("pickles", "https://www.pickles.com.au/used/item/cars/2021-toyota-hilux-54321987") == "54321987"
    assert extract_native_id("gumtree_nsw", "https://www.gumtree.com.au/s-ad/parramatta/cars/toyota-hilux/1312345678") == "1312345678"
    assert (
        extract_native_id("carsales", "https://www.carsales.com.au/cars/details/2020-toyota-hilux/SSE-AD-1234567/")
        == "SSE-AD-1234567"
    )


def test_extract_native_id_falls_back_to_query_then_path():
    assert extract_native_id("grays", "https://auction.example/lot?lot=774&x=1") == "774"
    assert extract_native_id("grays", "https://auction.example/catalogue/2024/lots/88213") == "88213"
    assert extract_native_id("grays", "https://auction.example/vehicle/ford-ranger-xlt-99881") == "99881"
    assert extract_native_id("grays", "https://auction.example/about") is None


def test_build_listing_id_is_deterministic():
    url = "https://auction.example/lots/88213?utm_campaign=spring"
    first = build_listing_id("grays", url=url)
    second = build_listing_id("grays", url="https://auction.example/lots/88213/")
    assert first == second == "grays:88213"


def test_build_listing_id_does_not_double_prefix():
    assert build_listing_id("manheim", "manheim:ABC123") == "manheim:ABC123"
    assert build_listing_id("manheim", "ABC123") == "manheim:ABC123"


def test_build_listing_id_hashes_url_without_native_id():
    url = "https://dealer.example/stock/toyota-hilux"
    listing_id = build_listing_id("dealer_x", url=url)
    assert listing_id == f"dealer_x:u{url_hash(url)}"
    assert listing_id == build_listing_id("dealer_x", url=url + "?utm_source=news")


def test_build_listing_id_requires_identity():
    with pytest.raises(ValueError):
        build_listing_id("manheim")
