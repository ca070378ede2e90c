import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.orm import Session

from backend.carbitrage.db import models
from backend.carbitrage.db.session import get_session
from backend.carbitrage.services.fingerprints import (
    create_fingerprint,
    deactivate_fingerprint,
    expire_fingerprints,
    find_fingerprint_matches,
    reactivate_fingerprint,
)

logger = logging.getLogger(__name__)

router = APIRouter()


class FingerprintIn(BaseModel):
    dealer_name: str
    sale_date: datetime
    make: str
    model: str
    year: int
    sale_km: Optional[int] = None
    max_km: Optional[int] = None
    variant_normalised: Optional[str] = None
    engine: Optional[str] = None
    drivetrain: Optional[str] = None
    transmission: Optional[str] = None


def _fingerprint_out(fp: models.SaleFingerprint):
    return {
        "fingerprint_id": fp.fingerprint_id,
        "dealer_name": fp.dealer_name,
        "sale_date": fp.sale_date.isoformat(),
        "expires_at": fp.expires_at.isoformat(),
        "make": fp.make,
        "model": fp.model,
        "variant_normalised": fp.variant_normalised,
        "year": fp.year,
        "sale_km": fp.sale_km,
        "max_km": fp.max_km,
        "drivetrain": fp.drivetrain,
        "transmission": fp.transmission,
        "is_active": fp.is_active,
    }


@router.post("")
async def record_sale(body: FingerprintIn):
    try:
        fingerprint = create_fingerprint(**body.model_dump())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info("Recorded sale fingerprint %s for %s", fingerprint.fingerprint_id, body.dealer_name)
    return _fingerprint_out(fingerprint)


@router.post("/expire")
async def expire():
    try:
        return expire_fingerprints()
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Fingerprint expiry failed")
        raise HTTPException(status_code=500, detail="Fingerprint expiry failed") from exc


@router.post("/{fingerprint_id}/reactivate")
async def reactivate(fingerprint_id: str):
    try:
        return _fingerprint_out(reactivate_fingerprint(fingerprint_id))
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post("/{fingerprint_id}/deactivate")
async def deactivate(fingerprint_id: str):
    try:
        deactivate_fingerprint(fingerprint_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"fingerprint_id": fingerprint_id, "is_active": False}


@router.get("/matches/{listing_id}")
async def listing_matches(listing_id: str, db: Session = Depends(get_session)):
    """Active sale fingerprints a listing strictly matches."""
    listing = db.execute(
        select(models.Listing).where(models.Listing.listing_id == listing_id)
    ).scalar_one_or_none()
    if listing is None:
        raise HTTPException(status_code=404, detail=f"Listing '{listing_id}' not found")
    matches = find_fingerprint_matches(listing)
    return {"listing_id": listing_id, "matches": [_fingerprint_out(fp) for fp in matches]}
