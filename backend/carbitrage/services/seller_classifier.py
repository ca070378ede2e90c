"""Deterministic dealer/private seller classification for classified listings."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

DEALER_NAME_PATTERNS = (
    re.compile(r"\b(motors?|automotive|auto|cars?|vehicles?)\s*(pty|ltd|group|sales)?\b", re.IGNORECASE),
    re.compile(r"\b(pty\.?\s*ltd\.?|limited)\b", re.IGNORECASE),
    re.compile(r"\b(dealership|dealer|yard|showroom)\b", re.IGNORECASE),
    re.compile(r"\b(used\s*cars?|pre-?owned)\b", re.IGNORECASE),
    re.compile(r"\b(wholesale|fleet|auction)\b", re.IGNORECASE),
)

DEALER_KEYWORDS = (
    "finance available", "financing available", "easy finance",
    "warranty included", "warranty available", "extended warranty",
    "trade-ins welcome", "trade in welcome", "tradein",
    "rego included", "roadworthy included", "rwc included",
    "lmct", "licensed motor car trader",
    "open 7 days", "open saturday", "open sunday",
    "visit our showroom", "visit our yard",
    "family owned", "family business",
    "over 100 vehicles", "large selection",
)

PRIVATE_KEYWORDS = (
    "genuine sale", "genuine reason for selling",
    "moving overseas", "moving interstate",
    "upgrading", "downsizing",
    "no longer needed", "rarely used",
    "reluctant sale", "sad to see it go",
    "private sale", "private seller",
    "one owner", "single owner",
    "my loss your gain",
)

FINANCE_RE = re.compile(r"\bfinance\b|\bfinancing\b", re.IGNORECASE)
WARRANTY_RE = re.compile(r"\bwarranty\b", re.IGNORECASE)
BUSINESS_HOURS_RE = re.compile(r"\b(?:mon(?:day)?\s*[-–]\s*fri(?:day)?|business hours|\d{1,2}(?::\d{2})?\s*am\s*[-–]\s*\d{1,2}(?::\d{2})?\s*pm)\b", re.IGNORECASE)
# AU landlines: (02) 9xxx xxxx and friends; mobiles start 04.
LANDLINE_RE = re.compile(r"\(?0[2378]\)?\s*\d{4}\s*\d{4}")
ABN_RE = re.compile(r"\bABN\s*:?\s*\d{2}\s?\d{3}\s?\d{3}\s?\d{3}\b", re.IGNORECASE)


@dataclass
class Classification:
    seller_type: str
    confidence: str
    reasons: List[str] = field(default_factory=list)
    dealer_score: int = 0
    private_score: int = 0


def detect_dealer_keywords(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in DEALER_KEYWORDS)


def detect_private_keywords(text: Optional[str]) -> bool:
    if not text:
        return False
    lowered = text.lower()
    return any(keyword in lowered for keyword in PRIVATE_KEYWORDS)


def matches_dealer_name(name: Optional[str]) -> bool:
    return bool(name) and any(pattern.search(name) for pattern in DEALER_NAME_PATTERNS)


def derive_hints(raw: Mapping[str, Any]) -> Dict[str, Any]:
    """Fill in text-derived hints (keywords, finance, warranty, ABN, phone) from ``description``."""
    hints = dict(raw)
    description = hints.get("description") or ""
    if hints.get("has_dealer_keywords") is None and description:
        hints["has_dealer_keywords"] = detect_dealer_keywords(description)
    if hints.get("has_private_keywords") is None and description:
        hints["has_private_keywords"] = detect_private_keywords(description)
    if hints.get("has_finance_mention") is None and description:
        hints["has_finance_mention"] = bool(FINANCE_RE.search(description))
    if hints.get("has_warranty_mention") is None and description:
        hints["has_warranty_mention"] = bool(WARRANTY_RE.search(description))
    if hints.get("has_abn") is None and description:
        hints["has_abn"] = bool(ABN_RE.search(description))
    if hints.get("has_business_hours") is None and description:
        hints["has_business_hours"] = bool(BUSINESS_HOURS_RE.search(description))
    phone = hints.get("phone")
    if hints.get("has_landline") is None and phone:
        hints["has_landline"] = bool(LANDLINE_RE.search(str(phone)))
    return hints


def _confidence(gap: int) -> str:
    if gap >= 50:
        return "high"
    if gap >= 25:
        return "medium"
    return "low"


def classify_seller_type(hints: Optional[Mapping[str, Any]]) -> Classification:
    if not hints:
        return Classification("unknown", "low", ["No seller hints provided"])

    hints = derive_hints(hints)
    reasons: List[str] = []
    dealer = 0
    private = 0

    badge = (hints.get("seller_badge") or "").lower()
    if badge == "dealer":
        dealer += 100
        reasons.append("Explicit dealer badge from source")
    elif badge == "private":
        private += 100
        reasons.append("Explicit private badge from source")

    if hints.get("has_abn") is True:
        dealer += 50
        reasons.append("ABN/business number present")

    seller_name = hints.get("seller_name")
    if matches_dealer_name(seller_name):
        dealer += 40
        reasons.append(f'Seller name matches dealer pattern: "{seller_name}"')

    active = hints.get("active_listings_count")
    if active is not None:
        if active >= 10:
            dealer += 35
            reasons.append(f"High active listings count: {active}")
        elif active >= 5:
            dealer += 20
            reasons.append(f"Moderate active listings count: {active}")
        elif active == 1:
            private += 15
            reasons.append("Single active listing")

    if hints.get("has_professional_photos") is True:
        dealer += 15
        reasons.append("Professional photos detected")
    if hints.get("has_finance_mention") is True:
        dealer += 20
        reasons.append("Finance mentioned in listing")
    if hints.get("has_warranty_mention") is True:
        dealer += 15
        reasons.append("Warranty mentioned in listing")
    if hints.get("has_dealer_keywords") is True:
        dealer += 25
        reasons.append("Dealer keywords found in description")
    if hints.get("has_private_keywords") is True:
        private += 25
        reasons.append("Private seller keywords found in description")
    if hints.get("has_landline") is True:
        dealer += 10
        reasons.append("Landline contact number")
    if hints.get("has_business_hours") is True:
        dealer += 15
        reasons.append("Business hours listed")

    if dealer + private == 0:
        reasons.append("No classification signals available")
        return Classification("unknown", "low", reasons)
    if dealer == private:
        reasons.append("Equal dealer/private scores - ambiguous")
        return Classification("unknown", "low", reasons, dealer, private)

    winner = "dealer" if dealer > private else "private"
    return Classification(winner, _confidence(abs(dealer - private)), reasons, dealer, private)
