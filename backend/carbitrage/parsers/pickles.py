"""Pickles list-page (stub) and detail-page parser."""

from __future__ import annotations

import re
from typing import Any, Dict, List, Optional, Tuple

from ._fields import (
    Candidate,
    ParseError,
    canonical_make,
    derive_variant_family,
    extract_km,
    extract_location,
    extract_make_model,
    extract_price,
    extract_year,
    normalize_drivetrain,
    normalize_fuel,
    normalize_status,
    normalize_transmission,
    plausible_km,
    plausible_year,
    strip_tags,
    title_case_slug,
)

BASE_URL = "https://www.pickles.com.au"
PAGE_SIZE = 120
CARD_BEFORE = 300
CARD_AFTER = 500
RAW_TEXT_LIMIT = 500

DETAIL_HREF_RE = re.compile(r'href="((?:https?://www\.pickles\.com\.au)?/used/(?:details|item)/cars/[^"]+)"', re.IGNORECASE)
DETAIL_ID_RE = re.compile(r"/used/details/cars/[^/]+/([A-F0-9-]{36}|\d+)", re.IGNORECASE)
ITEM_ID_RE = re.compile(r"/used/item/cars/[^/?#]+-(\d+)")
STOCK_TEXT_RE = re.compile(r"stock[#:\s]*(\d{5,})", re.IGNORECASE)
URL_SLUG_RE = re.compile(r"/used/details/cars/(\d{4})-([a-z0-9-]+)/[A-Z0-9-]+", re.IGNORECASE)
CARD_KM_RE = re.compile(r"(\d{1,3}(?:,\d{3})*|\d+)\s*km", re.IGNORECASE)
RESULTS_TOTAL_RE = re.compile(r"of\s+(\d+)\s+results", re.IGNORECASE)

TITLE_RE = re.compile(r"<title>([^<]+)</title>", re.IGNORECASE)
H1_RE = re.compile(r"<h1[^>]*>([^<]+)</h1>", re.IGNORECASE)
DETAIL_KM_PATTERNS = (
    re.compile(r"odometer[:\s]*(\d{1,3}(?:,\d{3})*)\s*km", re.IGNORECASE),
    re.compile(r"kilometres?[:\s]*(\d{1,3}(?:,\d{3})*)", re.IGNORECASE),
    re.compile(r"\"odometer\"[:\s]*\"?(\d+)\"?", re.IGNORECASE),
)
DETAIL_PRICE_PATTERNS: Tuple[Tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"buy\s*now[:\s]*\$?([\d,]+)", re.IGNORECASE), "buy_now"),
    (re.compile(r"current\s*bid[:\s]*\$?([\d,]+)", re.IGNORECASE), "current_bid"),
    (re.compile(r"guide[:\s]*\$?([\d,]+)", re.IGNORECASE), "guide"),
    (re.compile(r"price[:\s]*\$?([\d,]+)", re.IGNORECASE), "price"),
)
FUEL_RE = re.compile(r"fuel[:\s]*(petrol|diesel|hybrid|electric)|\b(petrol|diesel|hybrid|electric)\s*engine", re.IGNORECASE)
TRANSMISSION_RE = re.compile(r"transmission[:\s]*(automatic|manual|cvt)|\b(automatic|manual|cvt|auto)\b", re.IGNORECASE)
DRIVE_RE = re.compile(r"drive[:\s]*(awd|4wd|fwd|rwd|4x4)|\b(awd|4wd|fwd|rwd|4x4)\b", re.IGNORECASE)
STATUS_RE = re.compile(r"\b(passed in|sold|withdrawn|no sale)\b", re.IGNORECASE)
WOVR_RE = re.compile(r"wovr|write[ -]?off|stat[ -]?write", re.IGNORECASE)


def build_search_url(page: int, region: str = "nsw", limit: int = PAGE_SIZE) -> str:
    return f"{BASE_URL}/used/search/cars/state/{region}?limit={limit}&page={page}"


def extract_stock_id(text: str) -> Optional[str]:
    for pattern in (DETAIL_ID_RE, ITEM_ID_RE, STOCK_TEXT_RE):
        match = pattern.search(text or "")
        if match:
            return match.group(1)
    return None


def _absolute(url: str) -> str:
    return url if url.startswith("http") else f"{BASE_URL}{url}"


def _parse_stub(card: str, detail_url: str) -> Dict[str, Any]:
    year: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None

    slug_match = URL_SLUG_RE.search(detail_url)
    if slug_match:
        year = plausible_year(slug_match.group(1))
        parts = slug_match.group(2).split("-")
        make = canonical_make(parts[0]) or title_case_slug(parts[0])
        if len(parts) > 1:
            model = title_case_slug("-".join(parts[1:])).replace("-", " ")

    text = strip_tags(card)
    if year is None:
        year = extract_year(text)

    km = None
    km_match = CARD_KM_RE.search(text)
    if km_match:
        km = plausible_km(km_match.group(1))

    return {
        "source_stock_id": extract_stock_id(detail_url) or extract_stock_id(text),
        "detail_url": _absolute(detail_url),
        "year": year,
        "make": make,
        "model": model,
        "km": km,
        "location": extract_location(text),
        "raw_text": " ".join(text.split())[:RAW_TEXT_LIMIT],
    }


def parse_stubs(html: str) -> List[Dict[str, Any]]:
    """Extract stub anchors from a Pickles search results page."""
    stubs: List[Dict[str, Any]] = []
    seen = set()
    links = list(DETAIL_HREF_RE.finditer(html or ""))
    claimed_until = 0
    for idx, match in enumerate(links):
        url = match.group(1)
        if url in seen:
            continue
        seen.add(url)
        pos = match.start()
        # a card never reaches into the next vehicle or back into the previous one
        next_pos = next((m.start() for m in links[idx + 1 :] if m.group(1) != url), len(html))
        end = min(pos + CARD_AFTER, next_pos)
        start = max(pos - CARD_BEFORE, claimed_until)
        claimed_until = max(claimed_until, end)
        stubs.append(_parse_stub(html[start:end], url))
    return stubs


def has_more_pages(html: str, current_page: int, page_size: int = PAGE_SIZE) -> bool:
    if re.search(rf"page={current_page + 1}\b", html or ""):
        return True
    total_match = RESULTS_TOTAL_RE.search(html or "")
    if total_match:
        return current_page * page_size < int(total_match.group(1))
    return "/used/details/cars/" in (html or "")


def _first_group(match: Optional[re.Match[str]]) -> Optional[str]:
    if not match:
        return None
    return next((g for g in match.groups() if g), None)


def parse_detail(html: str, url: str) -> Candidate:
    """Parse a Pickles vehicle detail page into a full candidate listing."""
    if not html:
        raise ParseError(f"Empty Pickles detail page for {url}")

    title_match = TITLE_RE.search(html) or H1_RE.search(html)
    title = title_match.group(1).strip() if title_match else ""
    title = re.split(r"##|\||–", title)[0].strip()
    text = strip_tags(html)

    make, model = extract_make_model(title)
    slug_match = URL_SLUG_RE.search(url)
    if slug_match and (make is None or model is None):
        parts = slug_match.group(2).split("-")
        make = make or canonical_make(parts[0]) or title_case_slug(parts[0])
        if model is None and len(parts) > 1:
            model = title_case_slug(parts[1])

    year = extract_year(title) or (plausible_year(slug_match.group(1)) if slug_match else None) or extract_year(text)

    variant_raw = None
    if title and model and model in title:
        variant_raw = title.split(model, 1)[1].strip(" -") or None

    km = None
    for pattern in DETAIL_KM_PATTERNS:
        km = plausible_km(_first_group(pattern.search(text)))
        if km is not None:
            break
    if km is None:
        km = extract_km(text)

    price = None
    price_type = None
    for pattern, kind in DETAIL_PRICE_PATTERNS:
        match = pattern.search(text)
        if match:
            price = extract_price(f"${match.group(1)}")
            if price is not None:
                price_type = kind
                break

    candidate: Candidate = {
        "native_id": extract_stock_id(url),
        "listing_url": _absolute(url) if url.startswith("/") else url,
        "auction_house": "Pickles",
        "make": make,
        "model": model,
        "year": year,
        "variant_raw": variant_raw,
        "variant_family": derive_variant_family(variant_raw or title),
        "km": km,
        "fuel": normalize_fuel(_first_group(FUEL_RE.search(text))),
        "transmission": normalize_transmission(_first_group(TRANSMISSION_RE.search(text))),
        "drivetrain": normalize_drivetrain(_first_group(DRIVE_RE.search(text))),
        "location": extract_location(text),
        "status": normalize_status(_first_group(STATUS_RE.search(text))),
        "asking_price": price if price_type in {"buy_now", "price"} else None,
        "highest_bid": price if price_type == "current_bid" else None,
        "reserve": price if price_type == "guide" else None,
        "price_type": price_type,
        "wovr": bool(WOVR_RE.search(text)),
    }
    return candidate
