from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.services.fingerprints import (
    create_fingerprint,
    deactivate_fingerprint,
    expire_fingerprints,
    find_fingerprint_matches,
    is_strict_match,
    match_listings_to_specs,
    reactivate_fingerprint,
)

SALE_DATE = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _fingerprint(**overrides):
    fields = {
        "dealer_name": "Northside Toyota",
        "sale_date": SALE_DATE,
        "make": "Toyota",
        "model": "Hilux",
        "year": 2021,
        "sale_km": 60000,
        "variant_normalised": "SR5",
        "drivetrain": "4WD",
        "transmission": "Auto",
    }
    fields.update(overrides)
    return create_fingerprint(**fields)


def _listing(**overrides):
    listing = {
        "listing_id": "grays:5001",
        "make": "toyota",
        "model": "HILUX",
        "variant_normalised": "sr5",
        "drivetrain": "4wd",
        "transmission": "auto",
        "year": 2022,
        "km": 70000,
    }
    listing.update(overrides)
    return listing


def _active(fingerprint_id):
    with session_scope() as session:
        return session.execute(
            select(models.SaleFingerprint).where(models.SaleFingerprint.fingerprint_id == fingerprint_id)
        ).scalar_one()


def test_create_fingerprint_sets_ttl_and_km_allowance():
    fp = _fingerprint()
    assert fp.fingerprint_id.startswith("FP-")
    assert fp.expires_at == SALE_DATE + timedelta(days=120)
    assert fp.max_km == 75000
    assert fp.is_active is True


def test_create_fingerprint_requires_identity_fields():
    with pytest.raises(ValueError):
        _fingerprint(make="")


def test_create_fingerprint_requires_sale_km():
    with pytest.raises(ValueError, match="sale_km"):
        _fingerprint(sale_km=None)
    with session_scope() as session:
        assert session.execute(select(models.SaleFingerprint)).first() is None


def test_expire_and_reactivate():
    fp = _fingerprint()
    assert expire_fingerprints(SALE_DATE + timedelta(days=119))["metrics"]["expired"] == 0

    after = SALE_DATE + timedelta(days=121)
    assert expire_fingerprints(after)["metrics"]["expired"] == 1
    assert _active(fp.fingerprint_id).is_active is False

    reactivate_fingerprint(fp.fingerprint_id, after)
    revived = _active(fp.fingerprint_id)
    assert revived.is_active is True
    assert revived.expires_at == after + timedelta(days=120)

    deactivate_fingerprint(fp.fingerprint_id)
    assert _active(fp.fingerprint_id).is_active is False


def test_reactivate_unknown_fingerprint():
    with pytest.raises(ValueError):
        reactivate_fingerprint("FP-MISSING")


def test_strict_match_rules():
    fp = _fingerprint()
    now = SALE_DATE + timedelta(days=30)
    assert is_strict_match(_listing(), fp, now)
    assert not is_strict_match(_listing(year=2023), fp, now)
    assert not is_strict_match(_listing(km=76000), fp, now)
    assert not is_strict_match(_listing(km=None), fp, now)
    assert not is_strict_match(_listing(transmission="Manual"), fp, now)
    assert not is_strict_match(_listing(variant_normalised=None, variant_family="GXL"), fp, now)
    assert is_strict_match(_listing(variant_normalised=None, variant_family="SR5"), fp, now)
    assert not is_strict_match(_listing(), fp, SALE_DATE + timedelta(days=121))


def test_find_fingerprint_matches_skips_inactive():
    keep = _fingerprint()
    dropped = _fingerprint(dealer_name="Westside")
    deactivate_fingerprint(dropped.fingerprint_id)
    matches = find_fingerprint_matches(_listing(), SALE_DATE + timedelta(days=10))
    assert [fp.fingerprint_id for fp in matches] == [keep.fingerprint_id]


def test_match_listings_to_specs_uses_stub_scoring():
    specs = [
        {"id": 1, "make": "Toyota", "model": "Hilux", "year_min": 2020, "year_max": 2023, "km_max": 80000},
        {"id": 2, "make": "Toyota", "model": "Hilux", "year_min": 2010, "year_max": 2012, "km_max": 20000},
        {"id": 3, "make": "Toyota", "model": "Hilux", "enabled": False},
    ]
    listings = [
        {"listing_id": "grays:1", "make": "Toyota", "model": "Hilux", "year": 2021, "km": 40000},
        {"listing_id": "grays:2", "make": "Ford", "model": "Ranger", "year": 2021, "km": 40000},
    ]
    assert match_listings_to_specs(listings, specs) == [("grays:1", 1, 100), ("grays:1", 2, 50)]
    assert match_listings_to_specs(listings, specs, min_score=60) == [("grays:1", 1, 100)]
