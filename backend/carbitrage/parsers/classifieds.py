"""Classified listing cards (Gumtree, Carsales, Drive, Autotrader) with seller hints."""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin

from ._fields import (
    Candidate,
    derive_variant_family,
    extract_km,
    extract_location,
    extract_make_model,
    extract_price,
    extract_year,
    normalize_drivetrain,
    normalize_fuel,
    normalize_location,
    normalize_status,
    normalize_transmission,
    plausible_km,
    plausible_price,
    plausible_year,
    strip_tags,
)

CARD_START_RE = re.compile(
    r"<(?:article|div|li)[^>]*(?:data-(?:listing-id|testid=[\"'][^\"']*listing)|class=[\"'][^\"']*(?:listing-card|result-card|search-result))[^>]*>",
    re.IGNORECASE,
)
LISTING_ID_ATTR_RE = re.compile(r"data-listing-id=[\"']([^\"']+)[\"']", re.IGNORECASE)
HREF_RE = re.compile(r"href=[\"']([^\"'#]+)[\"']", re.IGNORECASE)
TITLE_RE = re.compile(r"<(?:h[1-4]|a)[^>]*>([^<]*(?:19|20)\d{2}[^<]*)</(?:h[1-4]|a)>", re.IGNORECASE)
SELLER_NAME_ATTR_RE = re.compile(r"data-seller-name=[\"']([^\"']+)[\"']", re.IGNORECASE)
SELLER_NAME_TEXT_RE = re.compile(r"\b(?i:sold by|seller|listed by)[ \t]*[:\-]?[ \t]*([A-Z][^\n|<]{1,60}?)[ \t]*(?:\n|\||$)", re.MULTILINE)
DEALER_BADGE_RE = re.compile(r"\b(dealer\s*(?:used|demo|new)?|dealership)\b", re.IGNORECASE)
PRIVATE_BADGE_RE = re.compile(r"\bprivate\s*(?:seller|sale)?\b", re.IGNORECASE)
ACTIVE_LISTINGS_RE = re.compile(r"\b(\d{1,4})\s+(?:active\s+)?(?:listings|ads|cars for sale)\b", re.IGNORECASE)
DESCRIPTION_RE = re.compile(r"<p[^>]*class=[\"'][^\"']*(?:description|summary)[^\"']*[\"'][^>]*>(.*?)</p>", re.IGNORECASE | re.DOTALL)
PHONE_RE = re.compile(r"\(?0[2-478]\)?\s*\d{4}\s*\d{4}|\b04\d{2}\s*\d{3}\s*\d{3}\b")
ID_FROM_URL_RE = re.compile(r"/(\d{6,12})(?:[/?]|$)|-(\d{6,12})(?:[/?]|$)")
TRANSMISSION_WORD_RE = re.compile(r"\b(automatic|auto|manual|cvt)\b", re.IGNORECASE)
FUEL_WORD_RE = re.compile(r"\b(diesel|petrol|unleaded|hybrid|electric)\b", re.IGNORECASE)
DRIVE_WORD_RE = re.compile(r"\b(4wd|4x4|awd|fwd|rwd|4x2)\b", re.IGNORECASE)


def _group(pattern: re.Pattern[str], text: str) -> Optional[str]:
    match = pattern.search(text or "")
    if not match:
        return None
    value = next((g for g in match.groups() if g), None)
    return value.strip() if value else None


def split_cards(html: str) -> List[str]:
    starts = [m.start() for m in CARD_START_RE.finditer(html or "")]
    return [html[start : starts[idx + 1] if idx + 1 < len(starts) else len(html)] for idx, start in enumerate(starts)]


def _seller_hints(card: str, text: str) -> Dict[str, Any]:
    hints: Dict[str, Any] = {}
    if DEALER_BADGE_RE.search(text):
        hints["seller_badge"] = "dealer"
    elif PRIVATE_BADGE_RE.search(text):
        hints["seller_badge"] = "private"
    seller_name = _group(SELLER_NAME_ATTR_RE, card) or _group(SELLER_NAME_TEXT_RE, text)
    if seller_name:
        hints["seller_name"] = seller_name
    active = _group(ACTIVE_LISTINGS_RE, text)
    if active:
        hints["active_listings_count"] = int(active)
    description = _group(DESCRIPTION_RE, card)
    if description:
        hints["description"] = " ".join(strip_tags(description).split())
    phone_match = PHONE_RE.search(text)
    if phone_match:
        hints["phone"] = phone_match.group(0)
    return hints


def parse_card(card: str, *, base_url: Optional[str] = None) -> Candidate:
    text = strip_tags(card)
    title = " ".join((_group(TITLE_RE, card) or "").split())
    make, model = extract_make_model(title or text)
    href = _group(HREF_RE, card)
    url = urljoin(base_url, href) if href and base_url else href
    native_id = _group(LISTING_ID_ATTR_RE, card) or (_group(ID_FROM_URL_RE, url) if url else None)
    variant_raw = None
    if title and model and model in title:
        variant_raw = title.split(model, 1)[1].strip(" -,") or None

    return {
        "native_id": native_id,
        "listing_url": url,
        "make": make,
        "model": model,
        "year": extract_year(title) or extract_year(text),
        "variant_raw": variant_raw,
        "variant_family": derive_variant_family(variant_raw),
        "km": extract_km(text),
        "transmission": normalize_transmission(_group(TRANSMISSION_WORD_RE, text)),
        "fuel": normalize_fuel(_group(FUEL_WORD_RE, text)),
        "drivetrain": normalize_drivetrain(_group(DRIVE_WORD_RE, text)),
        "location": extract_location(text),
        "asking_price": extract_price(text),
        "status": "listed",
        "seller_hints": _seller_hints(card, text),
    }


def parse_listings(html: str, *, base_url: Optional[str] = None) -> List[Candidate]:
    """Parse a classifieds search results page into candidates carrying seller hints."""
    candidates: List[Candidate] = []
    for card in split_cards(html):
        candidate = parse_card(card, base_url=base_url)
        if candidate["make"] or candidate["native_id"]:
            candidates.append(candidate)
    return candidates


def parse_listing_records(records: Iterable[Dict[str, Any]]) -> List[Candidate]:
    """Normalize payloads pushed by upstream classifieds scrapers."""
    candidates: List[Candidate] = []
    for record in records:
        variant_raw = (record.get("variant_raw") or "").strip() or None
        candidates.append(
            {
                "native_id": record.get("source_listing_id") or record.get("native_id"),
                "listing_url": record.get("listing_url"),
                "make": (record.get("make") or "").strip() or None,
                "model": (record.get("model") or "").strip() or None,
                "year": plausible_year(record.get("year")),
                "variant_raw": variant_raw,
                "variant_family": derive_variant_family(variant_raw),
                "km": plausible_km(record.get("km")),
                "transmission": normalize_transmission(record.get("transmission")),
                "fuel": normalize_fuel(record.get("fuel")),
                "drivetrain": normalize_drivetrain(record.get("drivetrain")),
                "location": normalize_location(
                    record.get("location"), record.get("suburb"), record.get("state"), record.get("postcode")
                ),
                "asking_price": plausible_price(record.get("price") if record.get("price") is not None else record.get("asking_price")),
                "status": normalize_status(record.get("status")),
                "seller_hints": record.get("seller_hints"),
            }
        )
    return candidates
