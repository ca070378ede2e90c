"""Generic auction catalogue parser for regional auction houses (BidsOnline and friends).

Catalogues come in three shapes: card grids, HTML tables, or the markdown
rendering Firecrawl produces when the HTML is unusable. Each is split into
per-lot chunks, and every chunk runs through the shared field strategies.
Structured lot records (JSON feeds, CSV rows) go through ``parse_lot_records``.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence
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

PARSER_PROFILES: Dict[str, Dict[str, Sequence[re.Pattern[str]]]] = {
    "bidsonline_grid": {
        "patterns": (
            re.compile(r"class=[\"'][^\"']*(?:vehicle-grid|lot-grid|auction-grid)[^\"']*[\"']", re.IGNORECASE),
            re.compile(r"class=[\"'][^\"']*(?:card|tile)[^\"']*[\"'][^>]*>\s*<(?:img|picture)", re.IGNORECASE),
        ),
        "lot_patterns": (
            re.compile(r"<div[^>]*class=[\"'][^\"']*(?:vehicle-card|lot-card|auction-card)[^\"']*[\"'][^>]*>", re.IGNORECASE),
        ),
    },
    "bidsonline_table": {
        "patterns": (
            re.compile(r"<table[^>]*class=[\"'][^\"']*(?:vehicle|lot|auction|listing)[^\"']*[\"']", re.IGNORECASE),
            re.compile(r"<tr[^>]*data-(?:lot|vehicle|item)", re.IGNORECASE),
        ),
        "lot_patterns": (
            re.compile(r"<tr[^>]*(?:data-lot|data-vehicle|class=[\"'][^\"']*lot)[^>]*>", re.IGNORECASE),
        ),
    },
    "bidsonline_default": {
        "patterns": (
            re.compile(r"class=[\"'][^\"']*(?:lot-item|vehicle-item|listing-item)[^\"']*[\"']", re.IGNORECASE),
            re.compile(r"<article[^>]*class=[\"'][^\"']*(?:lot|vehicle)[^\"']*[\"']", re.IGNORECASE),
        ),
        "lot_patterns": (
            re.compile(
                r"<div[^>]*class=[\"'][^\"']*(?:lot-item|vehicle-card|auction-item|listing-item|stock-item)[^\"']*[\"'][^>]*>",
                re.IGNORECASE,
            ),
            re.compile(r"<article[^>]*>", re.IGNORECASE),
        ),
    },
}
DEFAULT_PROFILE = "bidsonline_default"

MARKDOWN_LOT_RE = re.compile(r"^(?:#{1,4}\s+|\*\*)?\s*Lot\s*(?:No\.?|#)?\s*[:\-]?\s*([A-Z0-9-]+)\b", re.IGNORECASE | re.MULTILINE)
MARKDOWN_HEADING_RE = re.compile(r"^#{1,4}\s+(.+)$", re.MULTILINE)
LOT_ATTR_RE = re.compile(r"data-(?:lot|lot-id|lotid|item|vehicle)=[\"']([^\"']+)[\"']", re.IGNORECASE)
LOT_TEXT_RE = re.compile(r"\blot\s*(?:no\.?|number|#)?\s*[:\-]?\s*([A-Z]?\d{1,6}[A-Z]?)\b", re.IGNORECASE)
HREF_RE = re.compile(r"href=[\"']([^\"'#]+)[\"']", re.IGNORECASE)
MD_LINK_RE = re.compile(r"\]\((https?://[^)\s]+|/[^)\s]+)\)")
TITLE_TAG_RE = re.compile(r"<(?:h[1-5]|strong|a)[^>]*>([^<]*(?:19|20)\d{2}[^<]*)</(?:h[1-5]|strong|a)>", re.IGNORECASE)
YEAR_TITLE_RE = re.compile(r"\b((?:19|20)\d{2})\s+([A-Za-z][\w-]*(?:\s+[\w-]+){1,6})")
VARIANT_LABEL_RE = re.compile(r"\b(?:variant|series|badge)\s*[:\-|]\s*([^\n|<]{2,40})", re.IGNORECASE)
TRANSMISSION_LABEL_RE = re.compile(r"\b(?:transmission|gearbox|trans)\s*[:\-|]?\s*([A-Za-z ]{3,20})", re.IGNORECASE)
FUEL_LABEL_RE = re.compile(r"\bfuel(?:\s*type)?\s*[:\-|]?\s*([A-Za-z ]{3,20})", re.IGNORECASE)
TRANSMISSION_WORD_RE = re.compile(r"\b(automatic|auto|manual|cvt)\b", re.IGNORECASE)
DRIVE_RE = re.compile(r"\b(4wd|4x4|awd|fwd|rwd|4x2)\b", re.IGNORECASE)
STATUS_TEXT_RE = re.compile(r"\b(passed\s*in|no\s*sale|sold|cleared|withdrawn)\b", re.IGNORECASE)
LOCATION_LABEL_RE = re.compile(r"\b(?:location|yard|branch)\s*[:\-|]\s*([^\n|<]{2,60})", re.IGNORECASE)
RESERVE_RE = re.compile(r"\b(?:reserve|guide)\s*(?:price)?\s*[:\-|]?\s*\$?\s*([\d,]+)", re.IGNORECASE)
BID_RE = re.compile(r"\b(?:current|highest|top)\s*bid\s*[:\-|]?\s*\$?\s*([\d,]+)", re.IGNORECASE)
DATE_DMY_RE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
DATE_ISO_RE = re.compile(r"\b(\d{4})-(\d{2})-(\d{2})(?:[T ](\d{2}):(\d{2}))?")
AUCTION_DATE_LABEL_RE = re.compile(r"\b(?:auction|sale)\s*(?:date|day|time)?\s*[:\-|]\s*([^\n<]{6,40})", re.IGNORECASE)


def detect_profile(html: str) -> Optional[str]:
    for profile, config in PARSER_PROFILES.items():
        if any(pattern.search(html or "") for pattern in config["patterns"]):
            return profile
    return None


def estimate_lot_count(html: str, profile: Optional[str]) -> int:
    config = PARSER_PROFILES.get(profile or DEFAULT_PROFILE, PARSER_PROFILES[DEFAULT_PROFILE])
    return max((len(pattern.findall(html or "")) for pattern in config["lot_patterns"]), default=0)


def parse_auction_date(raw: Optional[str]) -> Optional[datetime]:
    """Parse DD/MM/YYYY (Australian) or ISO dates into UTC datetimes."""
    if not raw:
        return None
    if isinstance(raw, datetime):
        return raw if raw.tzinfo else raw.replace(tzinfo=timezone.utc)
    text = str(raw)
    iso = DATE_ISO_RE.search(text)
    try:
        if iso:
            year, month, day = int(iso.group(1)), int(iso.group(2)), int(iso.group(3))
            hour = int(iso.group(4) or 0)
            minute = int(iso.group(5) or 0)
            return datetime(year, month, day, hour, minute, tzinfo=timezone.utc)
        dmy = DATE_DMY_RE.search(text)
        if dmy:
            return datetime(int(dmy.group(3)), int(dmy.group(2)), int(dmy.group(1)), tzinfo=timezone.utc)
    except ValueError:
        return None
    return None


def _chunks_by_starts(content: str, starts: List[int]) -> List[str]:
    starts = sorted(set(starts))
    return [content[start : starts[idx + 1] if idx + 1 < len(starts) else len(content)] for idx, start in enumerate(starts)]


def split_lots(content: str, profile: Optional[str] = None) -> List[str]:
    if not content:
        return []
    if "<" in content and ">" in content:
        config = PARSER_PROFILES.get(profile or "", None)
        configs = [config] if config else list(PARSER_PROFILES.values())
        for cfg in configs:
            for pattern in cfg["lot_patterns"]:
                starts = [m.start() for m in pattern.finditer(content)]
                if starts:
                    return _chunks_by_starts(content, starts)
    starts = [m.start() for m in MARKDOWN_LOT_RE.finditer(content)]
    if not starts:
        starts = [m.start() for m in MARKDOWN_HEADING_RE.finditer(content) if YEAR_TITLE_RE.search(m.group(1))]
    return _chunks_by_starts(content, starts)


def _group(pattern: re.Pattern[str], text: str) -> Optional[str]:
    match = pattern.search(text)
    return match.group(1).strip() if match else None


def _lot_title(chunk: str, text: str) -> str:
    tag = _group(TITLE_TAG_RE, chunk)
    if tag:
        return " ".join(tag.split())
    for heading in MARKDOWN_HEADING_RE.finditer(chunk):
        if YEAR_TITLE_RE.search(heading.group(1)):
            return re.sub(r"[\[\]*]|\(.*?\)", "", heading.group(1)).strip()
    match = YEAR_TITLE_RE.search(text)
    return match.group(0) if match else ""


def _lot_url(chunk: str, base_url: Optional[str]) -> Optional[str]:
    href = _group(HREF_RE, chunk) or _group(MD_LINK_RE, chunk)
    if not href:
        return None
    return urljoin(base_url, href) if base_url else href


def parse_lot_chunk(chunk: str, *, base_url: Optional[str] = None, default_auction_date: Optional[datetime] = None) -> Candidate:
    text = strip_tags(chunk)
    title = _lot_title(chunk, text)
    make, model = extract_make_model(title) if title else (None, None)
    if make is None:
        make, model = extract_make_model(text)

    variant_raw = _group(VARIANT_LABEL_RE, text)
    if not variant_raw and title and model and model in title:
        variant_raw = title.split(model, 1)[1].strip(" -,") or None

    native_id = _group(LOT_ATTR_RE, chunk) or _group(LOT_TEXT_RE, text)
    auction_date = parse_auction_date(_group(AUCTION_DATE_LABEL_RE, text)) or default_auction_date
    reserve = plausible_price(_group(RESERVE_RE, text))
    highest_bid = plausible_price(_group(BID_RE, text))
    drive_match = DRIVE_RE.search(text)

    return {
        "native_id": native_id,
        "listing_url": _lot_url(chunk, base_url),
        "make": make,
        "model": model,
        "year": extract_year(title) or extract_year(text),
        "variant_raw": variant_raw,
        "variant_family": derive_variant_family(variant_raw or title),
        "km": extract_km(text),
        "transmission": normalize_transmission(_group(TRANSMISSION_LABEL_RE, text) or _group(TRANSMISSION_WORD_RE, text)),
        "fuel": normalize_fuel(_group(FUEL_LABEL_RE, text)),
        "drivetrain": normalize_drivetrain(drive_match.group(1) if drive_match else None),
        "location": _group(LOCATION_LABEL_RE, text) or extract_location(text),
        "status": normalize_status(_group(STATUS_TEXT_RE, text)),
        "reserve": reserve,
        "highest_bid": highest_bid,
        "asking_price": None if (reserve or highest_bid) else extract_price(text),
        "auction_date": auction_date,
    }


def parse_lots(
    content: str,
    *,
    profile: Optional[str] = None,
    base_url: Optional[str] = None,
) -> List[Candidate]:
    """Parse an auction catalogue page (HTML grid/table or markdown) into candidates."""
    if not content:
        return []
    page_date = parse_auction_date(_group(AUCTION_DATE_LABEL_RE, strip_tags(content[:4000])))
    profile = profile or detect_profile(content)
    candidates: List[Candidate] = []
    for chunk in split_lots(content, profile):
        candidate = parse_lot_chunk(chunk, base_url=base_url, default_auction_date=page_date)
        if candidate["make"] or candidate["native_id"]:
            candidates.append(candidate)
    return candidates


def _first(record: Dict[str, Any], keys: Iterable[str]) -> Any:
    for key in keys:
        value = record.get(key)
        if value not in (None, ""):
            return value
    return None


def parse_lot_records(records: Iterable[Dict[str, Any]]) -> List[Candidate]:
    """Normalize structured lot records (feeds, harvested JSON) into candidates."""
    candidates: List[Candidate] = []
    for record in records:
        native_id = _first(record, ("lot_id", "lotId", "id", "stock_id"))
        listing_url = _first(record, ("listing_url", "url"))
        if native_id is None and not listing_url:
            continue
        variant_raw = _first(record, ("variant", "variant_raw", "series"))
        variant_raw = str(variant_raw).strip() if variant_raw else None
        location = normalize_location(
            _first(record, ("location", "yard", "branch")),
            record.get("suburb"),
            record.get("state"),
            record.get("postcode"),
        )
        candidates.append(
            {
                "native_id": str(native_id) if native_id is not None else None,
                "listing_url": listing_url,
                "event_id": _first(record, ("event_id", "sale_id")),
                "auction_house": record.get("auction_house"),
                "make": (str(record.get("make") or "").strip() or None),
                "model": (str(record.get("model") or "").strip() or None),
                "year": plausible_year(record.get("year")),
                "variant_raw": variant_raw,
                "variant_family": derive_variant_family(variant_raw),
                "km": plausible_km(_first(record, ("km", "odometer", "kilometres"))),
                "transmission": normalize_transmission(_first(record, ("transmission", "gearbox"))),
                "fuel": normalize_fuel(_first(record, ("fuel", "fuel_type"))),
                "drivetrain": normalize_drivetrain(_first(record, ("drivetrain", "drive_type", "drive"))),
                "location": location,
                "status": normalize_status(record.get("status")),
                "reserve": plausible_price(_first(record, ("reserve", "guide_price", "reserve_price"))),
                "asking_price": plausible_price(_first(record, ("price", "asking_price"))),
                "highest_bid": plausible_price(_first(record, ("current_bid", "highest_bid"))),
                "auction_date": parse_auction_date(_first(record, ("auction_datetime", "auction_date"))),
            }
        )
    return candidates
