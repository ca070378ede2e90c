import logging
from typing import Any, Dict, List

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.carbitrage.services.stubs import deep_fetch, match_stubs_to_specs, upsert_stub_anchors

logger = logging.getLogger(__name__)

router = APIRouter()


class StubIngestIn(BaseModel):
    source: str
    stubs: List[Dict[str, Any]]


class StubMatchIn(BaseModel):
    batch_size: int = 100
    min_match_score: int = 50
    dry_run: bool = False


class DeepFetchIn(BaseModel):
    batch_size: int = 10
    dry_run: bool = False


@router.post("/ingest")
async def ingest_stubs(body: StubIngestIn):
    try:
        return upsert_stub_anchors(body.source, body.stubs)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Stub ingest failed for %s", body.source)
        raise HTTPException(status_code=500, detail="Stub ingest failed") from exc


@router.post("/match")
async def match_stubs(body: StubMatchIn):
    if body.batch_size < 1:
        raise HTTPException(status_code=400, detail="batch_size must be >= 1")
    try:
        return match_stubs_to_specs(body.batch_size, body.min_match_score, body.dry_run)
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Stub matching failed")
        raise HTTPException(status_code=500, detail="Stub matching failed") from exc


@router.post("/deep-fetch")
async def run_deep_fetch(body: DeepFetchIn):
    if body.batch_size < 1:
        raise HTTPException(status_code=400, detail="batch_size must be >= 1")
    try:
        return await deep_fetch(body.batch_size, body.dry_run)
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Deep fetch failed")
        raise HTTPException(status_code=500, detail="Deep fetch failed") from exc
