import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from backend.carbitrage.services.crawler import DEFAULT_MAX_PAGES, crawl_source
from backend.carbitrage.services.firecrawl_client import FirecrawlError

logger = logging.getLogger(__name__)

router = APIRouter()


class CrawlIn(BaseModel):
    max_pages: int = DEFAULT_MAX_PAGES
    dry_run: bool = False


@router.post("/{source_key}")
async def crawl(source_key: str, body: CrawlIn | None = None):
    body = body or CrawlIn()
    try:
        return await crawl_source(source_key, body.max_pages, body.dry_run)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FirecrawlError as exc:
        logger.warning("Crawl %s failed: %s", source_key, exc)
        raise HTTPException(status_code=500, detail=f"Fetch failed: {exc}") from exc
    except Exception as exc:  # pragma: no cover - unexpected failure
        logger.exception("Crawl %s failed", source_key)
        raise HTTPException(status_code=500, detail="Crawl failed") from exc
