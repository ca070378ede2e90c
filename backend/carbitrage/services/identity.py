"""Canonical listing identity: URL normalization, native id extraction and listing ids."""

from __future__ import annotations

import hashlib
import re
from typing import Dict, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PARAMS = {"fbclid", "gclid", "ref", "source"}
ID_QUERY_PARAMS = ("id", "lot", "stock", "itemId")

UUID_SEGMENT_RE = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)
NUMERIC_SEGMENT_RE = re.compile(r"^\d{3,}$")
SLUG_SUFFIX_RE = re.compile(r"-(\d{4,})$")

# Patterns tried ahead of the generic rules for sources with known URL schemes.
SOURCE_PATTERNS: Dict[str, Sequence[re.Pattern[str]]] = {
    "pickles": (
        re.compile(r"/used/details/cars/[^/]+/([A-F0-9-]{36}|\d+)", re.IGNORECASE),
        re.compile(r"/used/item/cars/[^/?#]+-(\d+)"),
    ),
    "gumtree": (re.compile(r"/s-ad/(?:[^/]+/)*(\d{6,})"),),
    "carsales": (re.compile(r"/details/[^/]+/((?:SSE|OAG|AGC|CP)-[A-Z]+-\d+)", re.IGNORECASE),),
    "autotrader": (re.compile(r"/car/(\d{5,})"),),
    "drive": (re.compile(r"/cars-for-sale/car/(\d{5,})"),),
}


def normalize_url(url: Optional[str]) -> Optional[str]:
    """Canonicalize a listing URL so the same vehicle page always hashes the same."""
    if not url or not url.strip():
        return None
    raw = url.strip()
    if not re.match(r"^https?://", raw, re.IGNORECASE):
        raw = "https://" + raw.lstrip("/")
    parts = urlsplit(raw)
    host = (parts.hostname or "").lower()
    netloc = f"{host}:{parts.port}" if parts.port and parts.port not in (80, 443) else host

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if not key.lower().startswith("utm_") and key.lower() not in TRACKING_PARAMS
    ]
    params.sort()

    path = parts.path or "/"
    if path != "/" and path.endswith("/"):
        path = path.rstrip("/") or "/"
    return urlunsplit(("https", netloc, path, urlencode(params), ""))


def source_family(source: str) -> str:
    return re.split(r"[_:\-]", (source or "").lower(), maxsplit=1)[0]


def extract_native_id(source: str, url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    parts = urlsplit(url if "://" in url else "https://" + url.lstrip("/"))

    for pattern in SOURCE_PATTERNS.get(source_family(source), ()):
        match = pattern.search(parts.path)
        if match:
            return match.group(1)

    query = dict(parse_qsl(parts.query))
    for key in ID_QUERY_PARAMS:
        if query.get(key):
            return query[key]

    segments: List[str] = [s for s in parts.path.split("/") if s]
    for segment in reversed(segments):
        if NUMERIC_SEGMENT_RE.match(segment) or UUID_SEGMENT_RE.match(segment):
            return segment

    if segments:
        match = SLUG_SUFFIX_RE.search(segments[-1])
        if match:
            return match.group(1)
    return None


def url_hash(url: str) -> str:
    normalized = normalize_url(url) or url
    return hashlib.sha1(normalized.encode("utf-8")).hexdigest()[:16]


def build_listing_id(source: str, native_id: Optional[str] = None, url: Optional[str] = None) -> str:
    """Return ``{source}:{native_id}``, falling back to a URL hash when no id can be found.

    Raises:
        ValueError: when neither a native id nor a URL is available.
    """
    if not source:
        raise ValueError("source is required to build a listing id")
    native = str(native_id).strip() if native_id is not None else ""
    if not native and url:
        native = extract_native_id(source, url) or ""
    if native:
        if native.startswith(f"{source}:"):
            return native
        return f"{source}:{native}"
    if not url:
        raise ValueError("listing has neither a native id nor a URL")
    return f"{source}:u{url_hash(url)}"
