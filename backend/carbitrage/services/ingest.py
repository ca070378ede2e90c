from __future__ import annotations

import logging
from collections import Counter
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.parsers._fields import normalize_status, validate_candidate
from backend.carbitrage.parsers.auction_lots import parse_auction_date
from backend.carbitrage.services.identity import build_listing_id, normalize_url
from backend.carbitrage.services.pressure import confidence_score, determine_action
from backend.carbitrage.services.seller_classifier import classify_seller_type

logger = logging.getLogger(__name__)

SOURCE_CLASSES = {"auction", "classified", "retail", "dealer"}
RELIST_FROM = {
    "auction": {"passed_in", "withdrawn"},
    "classified": {"withdrawn", "sold"},
}
DESCRIPTOR_FIELDS = (
    "auction_house",
    "event_id",
    "make",
    "model",
    "variant_raw",
    "variant_family",
    "variant_normalised",
    "year",
    "km",
    "transmission",
    "drivetrain",
    "fuel",
    "location",
    "description_score",
)
PRICE_FIELDS = ("asking_price", "reserve", "highest_bid", "estimated_margin")
HUNDRED = Decimal("100")
CENT = Decimal("0.01")


def _ensure_utc(dt: Optional[datetime]) -> datetime:
    if dt is None:
        return datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _as_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except (TypeError, ValueError, ArithmeticError):
        return None


def _as_datetime(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return _ensure_utc(value)
    try:
        return _ensure_utc(datetime.fromisoformat(str(value).replace("Z", "+00:00")))
    except ValueError:
        return parse_auction_date(str(value))


def _tracked_price(candidate: Dict[str, Any]) -> Optional[Decimal]:
    for key in ("asking_price", "reserve", "highest_bid"):
        value = _as_decimal(candidate.get(key))
        if value is not None:
            return value
    return None


def _apply_price(listing: models.Listing, price: Optional[Decimal]) -> None:
    if price is None:
        return
    if listing.first_seen_price is None:
        listing.first_seen_price = price
    previous = listing.last_seen_price
    if previous is None:
        listing.last_seen_price = price
        return
    if price == previous:
        return
    listing.price_prev = previous
    first = listing.first_seen_price
    if first:
        listing.price_change_pct = ((price - first) / first * HUNDRED).quantize(CENT)
    if price < previous:
        listing.price_drop_count = (listing.price_drop_count or 0) + 1
    listing.last_seen_price = price


def _apply_lifecycle(
    listing: models.Listing,
    new_status: str,
    auction_date: Optional[datetime],
    source_class: str,
    is_new: bool,
) -> None:
    previous_status = listing.status
    last_auction = listing.last_auction_date
    newer = auction_date is not None and (last_auction is None or auction_date > last_auction)

    if source_class == "auction":
        last_pass = listing.last_pass_in_date
        # one count per auction event, however often it is re-scraped
        if new_status == "passed_in" and auction_date is not None and (last_pass is None or auction_date > last_pass):
            listing.pass_count = (listing.pass_count or 0) + 1
            listing.last_pass_in_date = auction_date
        if not is_new and new_status == "listed" and newer and previous_status in RELIST_FROM["auction"]:
            listing.relist_count = (listing.relist_count or 0) + 1
    elif not is_new and new_status == "listed" and previous_status in RELIST_FROM["classified"]:
        listing.relist_count = (listing.relist_count or 0) + 1

    if newer:
        listing.last_auction_date = auction_date
    listing.status = new_status


def _apply_seller(listing: models.Listing, classification) -> None:
    if classification is None:
        return
    # unknown never overwrites a known classification and is never coerced to private
    if classification.seller_type == "unknown" and listing.seller_type not in (None, "unknown"):
        return
    listing.seller_type = classification.seller_type
    listing.seller_confidence = classification.confidence


def _upsert_listing(
    session: Session,
    listing_id: str,
    candidate: Dict[str, Any],
    *,
    source_key: str,
    source_class: str,
    now: datetime,
    classification=None,
) -> bool:
    """Apply one candidate; returns True when the listing row was created."""
    listing = session.execute(
        select(models.Listing).where(models.Listing.listing_id == listing_id)
    ).scalar_one_or_none()

    is_new = listing is None
    if is_new:
        listing = models.Listing(
            listing_id=listing_id,
            source=source_key,
            source_class=source_class,
            native_id=listing_id.split(":", 1)[1],
            make=candidate["make"],
            model=candidate["model"],
            year=candidate["year"],
            status="listed",
            pass_count=0,
            price_drop_count=0,
            relist_count=0,
            confidence_score=0,
            action="Watch",
            first_seen_at=now,
            last_seen_at=now,
        )
        session.add(listing)

    for field in DESCRIPTOR_FIELDS:
        value = candidate.get(field)
        if value is not None:
            setattr(listing, field, value)
    for field in PRICE_FIELDS:
        value = _as_decimal(candidate.get(field))
        if value is not None:
            setattr(listing, field, value)
    url = normalize_url(candidate.get("listing_url"))
    if url:
        listing.listing_url = url

    price = _tracked_price(candidate)
    _apply_price(listing, price)
    _apply_lifecycle(
        listing,
        normalize_status(candidate.get("status")),
        _as_datetime(candidate.get("auction_date")),
        source_class,
        is_new,
    )
    _apply_seller(listing, classification)

    listing.last_seen_at = now
    listing.updated_at = now
    listing.confidence_score = confidence_score(listing)
    listing.action = determine_action(listing.confidence_score)

    session.flush()
    session.add(
        models.ListingSnapshot(
            listing_pk=listing.id,
            seen_at=now,
            status=listing.status,
            price=price,
            asking_price=_as_decimal(candidate.get("asking_price")),
            reserve=_as_decimal(candidate.get("reserve")),
            km=candidate.get("km"),
            location=candidate.get("location"),
        )
    )
    return is_new


def _open_run(source_key: str, source_class: str, started_at: datetime, total: int) -> int:
    with session_scope() as session:
        run = models.IngestionRun(
            source=source_key,
            started_at=started_at,
            status="running",
            lots_found=total,
            metadata_={"source_class": source_class},
        )
        session.add(run)
        session.flush()
        return run.id


def _close_run(run_id: int, status: str, metrics: Dict[str, Any], errors: List[str], source_class: str) -> None:
    with session_scope() as session:
        run = session.get(models.IngestionRun, run_id)
        if run is None:
            return
        run.completed_at = datetime.now(timezone.utc)
        run.status = status
        run.lots_created = metrics["created"]
        run.lots_updated = metrics["updated"]
        run.errors = errors or None
        run.metadata_ = {
            "source_class": source_class,
            "dropped": metrics["dropped"],
            "drop_reasons": metrics["drop_reasons"],
            "classification_stats": metrics["classification_stats"],
            "snapshots_added": metrics["snapshots_added"],
        }


def reconcile_listings(
    candidates: Iterable[Dict[str, Any]],
    source_key: str,
    *,
    source_class: str = "auction",
    now: Optional[datetime] = None,
    dry_run: bool = False,
) -> Dict[str, Any]:
    """Reconcile parsed candidates into canonical listings plus one snapshot each.

    Args:
        candidates: Parsed listing dicts from a source adapter or API payload.
        source_key: Source identifier; prefixes every ``listing_id``.
        source_class: auction | classified | retail | dealer. Drives relist and pass-in rules.
        now: Ingestion time (defaults to the current UTC time). ``first_seen_at`` is set from it.
        dry_run: Validate and count without writing anything.

    Returns:
        ``{success, metrics, errors}`` where metrics holds created/updated/snapshots_added/
        dropped/drop_reasons/classification_stats.
    """
    if not source_key:
        raise ValueError("source_key is required")
    if source_class not in SOURCE_CLASSES:
        raise ValueError(f"Unknown source_class {source_class!r}")

    now = _ensure_utc(now)
    candidates = list(candidates)
    drop_reasons: Counter = Counter()
    classification_stats: Counter = Counter()
    created = updated = snapshots_added = 0
    errors: List[str] = []

    run_id = None if dry_run else _open_run(source_key, source_class, now, len(candidates))
    logger.info("Reconciling %s candidates for %s (dry_run=%s)", len(candidates), source_key, dry_run)

    for raw in candidates:
        candidate = dict(raw)
        reason = validate_candidate(candidate, now)
        if reason:
            drop_reasons[reason] += 1
            continue
        try:
            listing_id = build_listing_id(source_key, candidate.get("native_id"), candidate.get("listing_url"))
        except ValueError:
            drop_reasons["missing_identity"] += 1
            continue

        classification = None
        if source_class == "classified":
            classification = classify_seller_type(candidate.get("seller_hints"))
            classification_stats[classification.seller_type] += 1

        if dry_run:
            with session_scope() as session:
                exists = session.execute(
                    select(models.Listing.id).where(models.Listing.listing_id == listing_id)
                ).first()
            if exists:
                updated += 1
            else:
                created += 1
            continue

        try:
            with session_scope() as session:
                is_new = _upsert_listing(
                    session,
                    listing_id,
                    candidate,
                    source_key=source_key,
                    source_class=source_class,
                    now=now,
                    classification=classification,
                )
        except SQLAlchemyError as exc:
            logger.exception("Failed to reconcile %s", listing_id)
            errors.append(f"{listing_id}: {exc.__class__.__name__}: {exc}")
            continue

        snapshots_added += 1
        if is_new:
            created += 1
        else:
            updated += 1

    metrics = {
        "created": created,
        "updated": updated,
        "snapshots_added": snapshots_added,
        "dropped": sum(drop_reasons.values()),
        "drop_reasons": dict(drop_reasons),
        "classification_stats": dict(classification_stats),
    }
    if run_id is not None:
        _close_run(run_id, "partial" if errors else "success", metrics, errors, source_class)
    logger.info(
        "Reconciled %s: created=%s updated=%s dropped=%s errors=%s",
        source_key,
        created,
        updated,
        metrics["dropped"],
        len(errors),
    )
    return {"success": not errors, "metrics": metrics, "errors": errors}
