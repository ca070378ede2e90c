from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from backend.carbitrage.db import models
from backend.carbitrage.db.session import get_session
from backend.carbitrage.services.fingerprints import match_listings_to_specs
from backend.carbitrage.services.pressure import days_listed, pressure_flags

router = APIRouter()


def _money(value):
    return float(value) if value is not None else None


def _iso(value):
    return value.isoformat() if value else None


@router.get("/{listing_id}")
async def listing_detail(listing_id: str, db: Session = Depends(get_session)):
    """Return a listing with its pressure flags (recomputed on every read) and snapshot history."""
    listing = db.execute(
        select(models.Listing)
        .options(selectinload(models.Listing.snapshots))
        .where(models.Listing.listing_id == listing_id)
    ).scalar_one_or_none()
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Listing '{listing_id}' not found")

    now = datetime.now(timezone.utc)
    return {
        "listing_id": listing.listing_id,
        "source": listing.source,
        "source_class": listing.source_class,
        "auction_house": listing.auction_house,
        "listing_url": listing.listing_url,
        "make": listing.make,
        "model": listing.model,
        "variant_raw": listing.variant_raw,
        "variant_family": listing.variant_family,
        "year": listing.year,
        "km": listing.km,
        "transmission": listing.transmission,
        "drivetrain": listing.drivetrain,
        "fuel": listing.fuel,
        "location": listing.location,
        "status": listing.status,
        "asking_price": _money(listing.asking_price),
        "reserve": _money(listing.reserve),
        "highest_bid": _money(listing.highest_bid),
        "first_seen_price": _money(listing.first_seen_price),
        "last_seen_price": _money(listing.last_seen_price),
        "price_change_pct": _money(listing.price_change_pct),
        "pass_count": listing.pass_count,
        "price_drop_count": listing.price_drop_count,
        "relist_count": listing.relist_count,
        "seller_type": listing.seller_type,
        "seller_confidence": listing.seller_confidence,
        "confidence_score": listing.confidence_score,
        "action": listing.action,
        "first_seen_at": _iso(listing.first_seen_at),
        "last_seen_at": _iso(listing.last_seen_at),
        "last_auction_date": _iso(listing.last_auction_date),
        "days_listed": days_listed(listing.first_seen_at, now),
        "pressure_flags": pressure_flags(listing, now),
        "snapshots": [
            {
                "seen_at": _iso(snap.seen_at),
                "status": snap.status,
                "price": _money(snap.price),
                "asking_price": _money(snap.asking_price),
                "reserve": _money(snap.reserve),
                "km": snap.km,
                "location": snap.location,
            }
            for snap in listing.snapshots
        ],
    }


@router.get("/{listing_id}/spec-matches")
async def listing_spec_matches(listing_id: str, min_score: int = 50, db: Session = Depends(get_session)):
    """Score a listing against every enabled dealer spec."""
    listing = db.execute(
        select(models.Listing).where(models.Listing.listing_id == listing_id)
    ).scalar_one_or_none()
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Listing '{listing_id}' not found")
    specs = db.execute(
        select(models.DealerSpec).where(
            models.DealerSpec.enabled.is_(True),
            models.DealerSpec.deleted_at.is_(None),
        )
    ).scalars()
    rows = match_listings_to_specs([listing], specs, min_score=min_score)
    return {
        "listing_id": listing_id,
        "matches": [{"spec_id": spec_id, "score": score} for _, spec_id, score in rows],
    }
