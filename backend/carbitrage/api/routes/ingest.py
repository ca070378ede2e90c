import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.carbitrage.parsers.auction_lots import parse_lot_records
from backend.carbitrage.parsers.classifieds import parse_listing_records
from backend.carbitrage.services.ingest import reconcile_listings

logger = logging.getLogger(__name__)

router = APIRouter()


class IngestListingsIn(BaseModel):
    listings: List[Dict[str, Any]]
    source_key: str
    source_class: str = "auction"
    dry_run: bool = False


@router.post("/listings")
async def ingest_listings(body: IngestListingsIn):
    """Normalize pushed feed records and reconcile them into listings."""
    if body.source_class == "auction":
        candidates = parse_lot_records(body.listings)
    else:
        candidates = parse_listing_records(body.listings)
    try:
        return reconcile_listings(
            candidates,
            body.source_key,
            source_class=body.source_class,
            dry_run=body.dry_run,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Listing ingest failed for %s", body.source_key)
        raise HTTPException(status_code=500, detail="Ingest failed") from exc
