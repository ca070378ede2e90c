"""Field extraction shared by the source adapters.

Every field is extracted by an ordered list of strategies; the first strategy
that produces a plausible value wins. Strategies never raise, they return None.
"""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

YEAR_MIN = 1980
KM_MIN = 100
KM_MAX = 999_999
PRICE_MIN = 500
PRICE_MAX = 2_000_000

Candidate = Dict[str, Any]
Strategy = Callable[[str], Optional[Any]]

KNOWN_MAKES = (
    "Alfa Romeo", "Audi", "BMW", "Chery", "Chevrolet", "Chrysler", "Citroen", "Cupra", "Dodge", "Fiat", "Ford",
    "Genesis", "GWM", "Haval", "Holden", "Honda", "Hyundai", "Infiniti", "Isuzu", "Jaguar", "Jeep", "Kia",
    "Land Rover", "LDV", "Lexus", "Mahindra", "Mazda", "Mercedes-Benz", "MG", "Mini", "Mitsubishi", "Nissan",
    "Peugeot", "Porsche", "Ram", "Renault", "Skoda", "SsangYong", "Subaru", "Suzuki", "Tesla", "Toyota",
    "Volkswagen", "Volvo",
)
_MAKE_ALIASES = {
    "vw": "Volkswagen",
    "merc": "Mercedes-Benz",
    "mercedes": "Mercedes-Benz",
    "mercedes benz": "Mercedes-Benz",
    "landrover": "Land Rover",
    "great wall": "GWM",
}
_MAKE_LOOKUP = {m.lower(): m for m in KNOWN_MAKES}
_MAKE_LOOKUP.update(_MAKE_ALIASES)
_MAKE_RE = re.compile(
    r"\b(" + "|".join(sorted((re.escape(k) for k in _MAKE_LOOKUP), key=len, reverse=True)) + r")\b",
    re.IGNORECASE,
)

YEAR_LABEL_RE = re.compile(r"\b(?:year|build\s*date|compliance|manufactured)\s*[:\-|]?\s*(?:\d{1,2}/)?((?:19|20)\d{2})\b", re.IGNORECASE)
YEAR_LEADING_RE = re.compile(r"^\W*((?:19|20)\d{2})\s+[A-Za-z]")
YEAR_ANY_RE = re.compile(r"\b((?:19|20)\d{2})\b")

KM_LABEL_RE = re.compile(r"\b(?:odometer|kilometres|kilometers|km\s*reading|kms?)\s*[:\-|]?\s*([\d,\s]{3,9})\b", re.IGNORECASE)
KM_SUFFIX_RE = re.compile(r"\b(\d{1,3}(?:[,\s]\d{3})+|\d{3,6})\s*(?:km|kms|kilometres|kilometers)\b", re.IGNORECASE)
KM_THOUSANDS_RE = re.compile(r"\b(\d{1,3}(?:\.\d)?)\s*k\s*(?:km|kms)\b", re.IGNORECASE)

PRICE_LABEL_RE = re.compile(
    r"\b(?:price|asking|drive\s*away|reserve|guide|current\s*bid|starting\s*bid|buy\s*now)\s*[:\-|]?\s*(?:AU)?\$\s*([\d,]+(?:\.\d{2})?)",
    re.IGNORECASE,
)
PRICE_DOLLAR_RE = re.compile(r"(?:AU)?\$\s*([\d]{1,3}(?:,\d{3})+|\d{3,7})(?:\.\d{2})?")
PRICE_JSON_RE = re.compile(r"\"(?:price|askingPrice|amount)\"\s*:\s*\"?([\d.]+)\"?", re.IGNORECASE)

TRANSMISSION_MAP: Sequence[Tuple[str, str]] = (("cvt", "CVT"), ("auto", "Auto"), ("manual", "Manual"))
FUEL_MAP: Sequence[Tuple[str, str]] = (
    ("diesel", "Diesel"),
    ("hybrid", "Hybrid"),
    ("electric", "Electric"),
    ("petrol", "Petrol"),
    ("unleaded", "Petrol"),
)
DRIVETRAIN_MAP: Sequence[Tuple[str, str]] = (
    ("4wd", "4WD"),
    ("4x4", "4WD"),
    ("awd", "AWD"),
    ("fwd", "FWD"),
    ("front", "FWD"),
    ("rwd", "RWD"),
    ("rear", "RWD"),
    ("4x2", "RWD"),
)
STATUS_MAP: Sequence[Tuple[str, str]] = (
    ("passed in", "passed_in"),
    ("passed_in", "passed_in"),
    ("passed", "passed_in"),
    ("no sale", "passed_in"),
    ("unsold", "passed_in"),
    ("withdrawn", "withdrawn"),
    ("cancelled", "withdrawn"),
    ("removed", "withdrawn"),
    ("sold", "sold"),
    ("cleared", "sold"),
)

VARIANT_FAMILY_TOKENS = (
    "HIGH COUNTRY", "PRO-4X", "X-TERRAIN", "WILDTRAK", "ST-X", "SAHARA", "KAKADU", "RUGGED", "ROGUE", "RAPTOR",
    "EXCEED", "PREMIUM", "LS-M", "LS-U", "LS-T", "SR5", "GXL", "XLT", "FX4", "LTZ", "Z71", "ZR2", "STX", "HSV",
    "CORE", "GX", "GL", "VX", "SR", "ST", "SL", "TI", "LT", "GR", "GT", "RS", "SS",
)

STATE_CODES = ("NSW", "VIC", "QLD", "SA", "WA", "TAS", "NT", "ACT")


class ParseError(RuntimeError):
    """Raised when a page cannot be parsed at all (as opposed to yielding no rows)."""


def current_year(now: Optional[datetime] = None) -> int:
    return (now or datetime.now(timezone.utc)).year


def first_match(text: str, strategies: Iterable[Strategy]) -> Optional[Any]:
    if not text:
        return None
    for strategy in strategies:
        value = strategy(text)
        if value is not None:
            return value
    return None


def _to_int(raw: Union[str, int, float, None]) -> Optional[int]:
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return int(raw)
    digits = re.sub(r"[^\d.]", "", str(raw))
    if not digits:
        return None
    try:
        return int(float(digits))
    except ValueError:
        return None


def plausible_year(value: Any, now: Optional[datetime] = None) -> Optional[int]:
    year = _to_int(value)
    if year is None or year < YEAR_MIN or year > current_year(now) + 1:
        return None
    return year


def plausible_km(value: Any) -> Optional[int]:
    km = _to_int(value)
    if km is None or km < KM_MIN or km > KM_MAX:
        return None
    return km


def plausible_price(value: Any) -> Optional[int]:
    price = _to_int(value)
    if price is None or price < PRICE_MIN or price > PRICE_MAX:
        return None
    return price


def _year_from_pattern(pattern: re.Pattern[str]) -> Strategy:
    def strategy(text: str) -> Optional[int]:
        for match in pattern.finditer(text):
            year = plausible_year(match.group(1))
            if year is not None:
                return year
        return None

    return strategy


def _km_thousands(text: str) -> Optional[int]:
    match = KM_THOUSANDS_RE.search(text)
    if not match:
        return None
    return plausible_km(float(match.group(1)) * 1000)


def _km_from_pattern(pattern: re.Pattern[str]) -> Strategy:
    def strategy(text: str) -> Optional[int]:
        for match in pattern.finditer(text):
            km = plausible_km(match.group(1))
            if km is not None:
                return km
        return None

    return strategy


def _price_from_pattern(pattern: re.Pattern[str]) -> Strategy:
    def strategy(text: str) -> Optional[int]:
        for match in pattern.finditer(text):
            price = plausible_price(match.group(1))
            if price is not None:
                return price
        return None

    return strategy


YEAR_STRATEGIES: List[Strategy] = [
    _year_from_pattern(YEAR_LABEL_RE),
    _year_from_pattern(YEAR_LEADING_RE),
    _year_from_pattern(YEAR_ANY_RE),
]
KM_STRATEGIES: List[Strategy] = [
    _km_from_pattern(KM_LABEL_RE),
    _km_from_pattern(KM_SUFFIX_RE),
    _km_thousands,
]
PRICE_STRATEGIES: List[Strategy] = [
    _price_from_pattern(PRICE_LABEL_RE),
    _price_from_pattern(PRICE_JSON_RE),
    _price_from_pattern(PRICE_DOLLAR_RE),
]


def extract_year(text: str) -> Optional[int]:
    return first_match(text, YEAR_STRATEGIES)


def extract_km(text: str) -> Optional[int]:
    return first_match(text, KM_STRATEGIES)


def extract_price(text: str) -> Optional[int]:
    return first_match(text, PRICE_STRATEGIES)


def canonical_make(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    cleaned = re.sub(r"[-_]+", " ", raw.strip()).lower()
    if cleaned in _MAKE_LOOKUP:
        return _MAKE_LOOKUP[cleaned]
    return _MAKE_LOOKUP.get(cleaned.replace(" ", "-"))


def extract_make_model(title: str) -> Tuple[Optional[str], Optional[str]]:
    """Split a title like '2019 Toyota Hilux SR5 (4x4)' into make and model."""
    if not title:
        return None, None
    match = _MAKE_RE.search(title)
    if not match:
        return None, None
    make = _MAKE_LOOKUP[match.group(1).lower()]
    rest = title[match.end():].strip(" -|,")
    model_match = re.match(r"([A-Za-z0-9][\w-]*)", rest)
    model = model_match.group(1) if model_match else None
    if model and model.isdigit() and len(model) == 4:
        model = None
    if model:
        model = model if any(c.isdigit() for c in model) or model.isupper() and len(model) <= 4 else model.title()
    return make, model


def title_case_slug(slug: str) -> str:
    return " ".join(part[:1].upper() + part[1:] for part in slug.replace("_", "-").split("-") if part)


def _map_keyword(raw: Optional[str], table: Sequence[Tuple[str, str]]) -> Optional[str]:
    if not raw:
        return None
    lowered = str(raw).lower()
    for keyword, value in table:
        if keyword in lowered:
            return value
    return None


def normalize_transmission(raw: Optional[str]) -> Optional[str]:
    return _map_keyword(raw, TRANSMISSION_MAP)


def normalize_fuel(raw: Optional[str]) -> Optional[str]:
    return _map_keyword(raw, FUEL_MAP)


def normalize_drivetrain(raw: Optional[str]) -> Optional[str]:
    return _map_keyword(raw, DRIVETRAIN_MAP)


def normalize_status(raw: Optional[str], default: str = "listed") -> str:
    return _map_keyword(raw, STATUS_MAP) or default


def derive_variant_family(variant_raw: Optional[str]) -> Optional[str]:
    if not variant_raw:
        return None
    upper = variant_raw.upper()
    for token in VARIANT_FAMILY_TOKENS:
        if re.search(r"(?<![A-Z0-9])" + re.escape(token) + r"(?![A-Z0-9])", upper):
            return token
    return None


def normalize_location(
    location: Optional[str] = None,
    suburb: Optional[str] = None,
    state: Optional[str] = None,
    postcode: Optional[str] = None,
) -> Optional[str]:
    if location and location.strip():
        return location.strip()
    parts = [p for p in (suburb and suburb.strip(), state and state.strip().upper(), postcode and str(postcode).strip()) if p]
    return ", ".join(parts) or None


LOCATION_RE = re.compile(r"\b([A-Z][a-z]+(?:\s+[A-Z][a-z]+)*),?\s+(" + "|".join(STATE_CODES) + r")\b")


def extract_location(text: str) -> Optional[str]:
    match = LOCATION_RE.search(text or "")
    if not match:
        return None
    return f"{match.group(1)}, {match.group(2)}"


def strip_tags(raw: str) -> str:
    text = re.sub(r"<(script|style)[^>]*>.*?</\1>", " ", raw or "", flags=re.DOTALL | re.IGNORECASE)
    text = re.sub(r"<[^>]+>", " ", text)
    text = text.replace("&nbsp;", " ").replace("&amp;", "&")
    return re.sub(r"[ \t]+", " ", text)


def validate_candidate(candidate: Candidate, now: Optional[datetime] = None) -> Optional[str]:
    """Return a drop reason for candidates missing required fields, else None.

    Optional numeric fields that fail their plausibility range are nulled in place.
    """
    if not (candidate.get("make") or "").strip():
        return "missing_make"
    if not (candidate.get("model") or "").strip():
        return "missing_model"
    year = plausible_year(candidate.get("year"), now)
    if year is None:
        return "invalid_year"
    candidate["year"] = year
    candidate["km"] = plausible_km(candidate.get("km")) if candidate.get("km") is not None else None
    for key in ("asking_price", "reserve", "highest_bid"):
        if candidate.get(key) is not None:
            candidate[key] = plausible_price(candidate.get(key))
    return None
