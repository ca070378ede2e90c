from datetime import datetime, timedelta, timezone
from decimal import Decimal

from backend.carbitrage.services.pressure import (
    FATIGUE_LISTING,
    MARGIN_OK_FLAG,
    PASSED_IN_X2,
    PASSED_IN_X3_PLUS,
    PRICE_DROPPING,
    RELISTED,
    UNDER_SPECIFIED,
    confidence_score,
    days_listed,
    determine_action,
    pressure_flags,
)

NOW = datetime(2026, 4, 1, tzinfo=timezone.utc)


def test_all_flags_for_a_tired_listing():
    listing = {
        "price_change_pct": Decimal("-6.25"),
        "first_seen_at": NOW - timedelta(days=20),
        "pass_count": 3,
        "relist_count": 0,
        "description_score": 1,
        "estimated_margin": Decimal("2500"),
    }
    assert pressure_flags(listing, NOW) == [
        PRICE_DROPPING,
        FATIGUE_LISTING,
        RELISTED,
        PASSED_IN_X3_PLUS,
        UNDER_SPECIFIED,
        MARGIN_OK_FLAG,
    ]
    assert confidence_score(listing) == 4
    assert determine_action(confidence_score(listing)) == "Buy"


def test_fresh_listing_has_no_flags():
    listing = {"first_seen_at": NOW - timedelta(days=2), "pass_count": 0, "price_change_pct": Decimal("-2")}
    assert pressure_flags(listing, NOW) == []
    assert determine_action(confidence_score(listing)) == "Watch"


def test_second_pass_in_and_relist():
    assert PASSED_IN_X2 in pressure_flags({"pass_count": 2}, NOW)
    assert pressure_flags({"relist_count": 1}, NOW) == [RELISTED]


def test_days_listed_handles_naive_and_missing():
    assert days_listed(None, NOW) == 0
    assert days_listed(datetime(2026, 3, 25), NOW) == 7
