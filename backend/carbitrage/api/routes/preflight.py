import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.carbitrage.services.preflight import run_preflight

logger = logging.getLogger(__name__)

router = APIRouter()


class PreflightIn(BaseModel):
    source_key: str | None = None
    check_all: bool = False


@router.post("")
async def preflight(body: PreflightIn | None = None):
    body = body or PreflightIn()
    try:
        return await run_preflight(body.source_key, body.check_all)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Preflight failed")
        raise HTTPException(status_code=500, detail="Preflight failed") from exc
