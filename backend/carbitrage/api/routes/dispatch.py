import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.carbitrage.services.dispatcher import dispatch

logger = logging.getLogger(__name__)

router = APIRouter()


class DispatchIn(BaseModel):
    force: bool = False


@router.post("")
async def run_dispatch(body: DispatchIn | None = None):
    body = body or DispatchIn()
    try:
        return await dispatch(force=body.force)
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Dispatch failed")
        raise HTTPException(status_code=500, detail="Dispatch failed") from exc
