"""Seller-pressure flags and the Watch/Buy scoring derived from listing history."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, List, Optional

PRICE_DROP_PCT = Decimal("-5")
FATIGUE_DAYS = 14
BUY_THRESHOLD = 3
MARGIN_OK = Decimal("1000")
MARGIN_STRONG = Decimal("2000")

PRICE_DROPPING = "PRICE_DROPPING"
FATIGUE_LISTING = "FATIGUE_LISTING"
RELISTED = "RELISTED"
PASSED_IN_X2 = "PASSED_IN_X2"
PASSED_IN_X3_PLUS = "PASSED_IN_X3_PLUS"
UNDER_SPECIFIED = "UNDER_SPECIFIED"
MARGIN_OK_FLAG = "MARGIN_OK"


def _dec(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _get(listing: Any, name: str) -> Any:
    if isinstance(listing, dict):
        return listing.get(name)
    return getattr(listing, name, None)


def days_listed(first_seen_at: Optional[datetime], now: Optional[datetime] = None) -> int:
    if first_seen_at is None:
        return 0
    now = now or datetime.now(timezone.utc)
    if first_seen_at.tzinfo is None:
        first_seen_at = first_seen_at.replace(tzinfo=timezone.utc)
    return max(0, (now - first_seen_at).days)


def pressure_flags(listing: Any, now: Optional[datetime] = None) -> List[str]:
    """Flags are computed on read; nothing here is persisted."""
    flags: List[str] = []
    pct = _dec(_get(listing, "price_change_pct"))
    if pct is not None and pct <= PRICE_DROP_PCT:
        flags.append(PRICE_DROPPING)
    if days_listed(_get(listing, "first_seen_at"), now) >= FATIGUE_DAYS:
        flags.append(FATIGUE_LISTING)

    pass_count = _get(listing, "pass_count") or 0
    relist_count = _get(listing, "relist_count") or 0
    if pass_count >= 2 or relist_count >= 1:
        flags.append(RELISTED)
    if pass_count >= 3:
        flags.append(PASSED_IN_X3_PLUS)
    elif pass_count == 2:
        flags.append(PASSED_IN_X2)

    description_score = _get(listing, "description_score")
    if description_score is not None and description_score <= 1:
        flags.append(UNDER_SPECIFIED)
    margin = _dec(_get(listing, "estimated_margin"))
    if margin is not None and margin >= MARGIN_OK:
        flags.append(MARGIN_OK_FLAG)
    return flags


def confidence_score(listing: Any) -> int:
    pass_count = _get(listing, "pass_count") or 0
    description_score = _get(listing, "description_score")
    margin = _dec(_get(listing, "estimated_margin"))
    score = 0
    if pass_count >= 2:
        score += 1
    if pass_count >= 3:
        score += 1
    if description_score is not None and description_score <= 1:
        score += 1
    if margin is not None and margin >= MARGIN_STRONG:
        score += 1
    return score


def determine_action(score: int) -> str:
    return "Buy" if score >= BUY_THRESHOLD else "Watch"
