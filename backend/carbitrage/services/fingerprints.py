from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import select, update

from backend.carbitrage.core.settings import settings
from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.services.stubs import match_stub_score

logger = logging.getLogger(__name__)

MAX_KM_ALLOWANCE = 15000
STRICT_FIELDS = ("make", "model", "drivetrain", "transmission")


def _ttl() -> timedelta:
    return timedelta(days=settings.fingerprint_ttl_days)


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").strip().lower() == (b or "").strip().lower()


def create_fingerprint(
    *,
    dealer_name: str,
    sale_date: datetime,
    make: str,
    model: str,
    year: int,
    sale_km: Optional[int] = None,
    max_km: Optional[int] = None,
    variant_normalised: Optional[str] = None,
    engine: Optional[str] = None,
    drivetrain: Optional[str] = None,
    transmission: Optional[str] = None,
) -> models.SaleFingerprint:
    """Record a dealer sale; it stays matchable for ``FINGERPRINT_TTL_DAYS`` after the sale."""
    if not (dealer_name and make and model and year) or sale_km is None:
        raise ValueError("dealer_name, make, model, year and sale_km are required")
    sale_date = _utc(sale_date)
    if max_km is None:
        max_km = sale_km + MAX_KM_ALLOWANCE
    with session_scope() as session:
        fingerprint = models.SaleFingerprint(
            fingerprint_id=f"FP-{uuid.uuid4().hex[:12].upper()}",
            dealer_name=dealer_name,
            sale_date=sale_date,
            expires_at=sale_date + _ttl(),
            make=make,
            model=model,
            year=year,
            sale_km=sale_km,
            max_km=max_km,
            variant_normalised=variant_normalised,
            engine=engine,
            drivetrain=drivetrain,
            transmission=transmission,
            is_active=True,
        )
        session.add(fingerprint)
        session.flush()
    return fingerprint


def expire_fingerprints(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = _utc(now or datetime.now(timezone.utc))
    with session_scope() as session:
        result = session.execute(
            update(models.SaleFingerprint)
            .where(
                models.SaleFingerprint.is_active.is_(True),
                models.SaleFingerprint.expires_at < now,
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        expired = result.rowcount or 0
    logger.info("Expired %s sale fingerprints", expired)
    return {"success": True, "metrics": {"expired": expired}, "errors": []}


def reactivate_fingerprint(fingerprint_id: str, now: Optional[datetime] = None) -> models.SaleFingerprint:
    """Re-arm an expired fingerprint; the TTL window restarts from ``now``."""
    now = _utc(now or datetime.now(timezone.utc))
    with session_scope() as session:
        fingerprint = session.execute(
            select(models.SaleFingerprint).where(models.SaleFingerprint.fingerprint_id == fingerprint_id)
        ).scalar_one_or_none()
        if fingerprint is None:
            raise ValueError(f"Unknown fingerprint {fingerprint_id}")
        fingerprint.is_active = True
        fingerprint.expires_at = now + _ttl()
    return fingerprint


def deactivate_fingerprint(fingerprint_id: str) -> None:
    with session_scope() as session:
        fingerprint = session.execute(
            select(models.SaleFingerprint).where(models.SaleFingerprint.fingerprint_id == fingerprint_id)
        ).scalar_one_or_none()
        if fingerprint is None:
            raise ValueError(f"Unknown fingerprint {fingerprint_id}")
        fingerprint.is_active = False


def is_strict_match(listing: Any, fingerprint: Any, now: Optional[datetime] = None) -> bool:
    now = _utc(now or datetime.now(timezone.utc))
    if not _get(fingerprint, "is_active"):
        return False
    expires_at = _get(fingerprint, "expires_at")
    if expires_at is None or _utc(expires_at) < now:
        return False
    for field in STRICT_FIELDS:
        if not _same(_get(listing, field), _get(fingerprint, field)):
            return False
    listing_variant = _get(listing, "variant_normalised") or _get(listing, "variant_family")
    if not _same(listing_variant, _get(fingerprint, "variant_normalised")):
        return False

    listing_year = _get(listing, "year")
    fp_year = _get(fingerprint, "year")
    if listing_year is None or fp_year is None or abs(listing_year - fp_year) > 1:
        return False

    max_km = _get(fingerprint, "max_km")
    km = _get(listing, "km")
    if max_km is not None and (km is None or km > max_km):
        return False
    return True


def find_fingerprint_matches(listing: Any, now: Optional[datetime] = None) -> List[models.SaleFingerprint]:
    with session_scope() as session:
        fingerprints = list(
            session.execute(
                select(models.SaleFingerprint).where(models.SaleFingerprint.is_active.is_(True))
            ).scalars()
        )
    return [fp for fp in fingerprints if is_strict_match(listing, fp, now)]


def match_listings_to_specs(
    listings: Iterable[Any],
    specs: Iterable[Any],
    min_score: int = 50,
) -> List[Tuple[str, Any, int]]:
    """Return ``(listing_id, spec_id, score)`` rows scoring at or above ``min_score``."""
    specs = list(specs)
    rows: List[Tuple[str, Any, int]] = []
    for listing in listings:
        for spec in specs:
            if _get(spec, "enabled") is False or _get(spec, "deleted_at") is not None:
                continue
            score = match_stub_score(listing, spec)
            if score >= min_score:
                rows.append((_get(listing, "listing_id"), _get(spec, "id"), score))
    rows.sort(key=lambda row: (-row[2], str(row[0])))
    return rows
