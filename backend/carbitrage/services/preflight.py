"""Two-tier reachability check for auction sources before they are scheduled."""

from __future__ import annotations

import logging
import re
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx
from sqlalchemy import select

from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.parsers.auction_lots import detect_profile, estimate_lot_count
from backend.carbitrage.services.firecrawl_client import FirecrawlClient, FirecrawlError

logger = logging.getLogger(__name__)

DIRECT_TIMEOUT_SECONDS = 10.0
FIRECRAWL_WAIT_MS = 5000
USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"
RECHECK_STATUSES = ("pending", "fail", "timeout")

VEHICLE_MARKERS = (
    re.compile(r"\b(toyota|mazda|ford|hyundai|kia|mitsubishi|nissan|holden|volkswagen|honda|subaru|isuzu)\b", re.IGNORECASE),
    re.compile(r"\b(20[12][0-9])\s+(toyota|mazda|ford|hyundai|kia)\b", re.IGNORECASE),
    re.compile(r"\b\d{1,3}[,\s]?\d{3}\s*km\b", re.IGNORECASE),
)
PRICE_MARKERS = (
    re.compile(r"\$\s*[\d,]+"),
    re.compile(r"(?:reserve|guide|price)\s*:?\s*\$?\s*[\d,]+", re.IGNORECASE),
    re.compile(r"(?:current\s*bid|bid)\s*:?\s*\$?\s*[\d,]+", re.IGNORECASE),
    re.compile(r"call\s+for\s+price", re.IGNORECASE),
)
LOT_STRUCTURE_MARKERS = (
    re.compile(r"(?:lot|stock)\s*#?\s*:?\s*\d+", re.IGNORECASE),
    re.compile(r"data-(?:lot|vehicle|item)(?:-id)?", re.IGNORECASE),
    re.compile(r"href=[\"'][^\"']*/lots?/", re.IGNORECASE),
)
BLOCKED_INDICATORS = (
    re.compile(r"access\s*denied", re.IGNORECASE),
    re.compile(r"403\s*forbidden", re.IGNORECASE),
    re.compile(r"captcha", re.IGNORECASE),
    re.compile(r"cloudflare", re.IGNORECASE),
    re.compile(r"bot\s*detection", re.IGNORECASE),
    re.compile(r"rate\s*limit", re.IGNORECASE),
)


@dataclass
class PreflightMarkers:
    http_status: int = 0
    has_vehicle_content: bool = False
    has_price_indicators: bool = False
    has_lot_structure: bool = False
    estimated_lots: int = 0
    parser_profile_detected: Optional[str] = None


@dataclass
class PreflightResult:
    source_key: str
    status: str = "fail"  # pass|fail|blocked|timeout
    reason: str = ""
    markers: PreflightMarkers = field(default_factory=PreflightMarkers)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


def inspect_markers(html: str, markers: PreflightMarkers) -> bool:
    """Fill vehicle/price/lot markers from ``html``; True when the page looks crawlable."""
    markers.has_vehicle_content = any(p.search(html) for p in VEHICLE_MARKERS)
    markers.has_price_indicators = any(p.search(html) for p in PRICE_MARKERS)
    markers.has_lot_structure = any(p.search(html) for p in LOT_STRUCTURE_MARKERS)
    markers.parser_profile_detected = detect_profile(html)
    markers.estimated_lots = estimate_lot_count(html, markers.parser_profile_detected)
    return markers.has_vehicle_content and markers.estimated_lots > 0


def is_blocked(html: str) -> bool:
    return any(p.search(html) for p in BLOCKED_INDICATORS)


async def check_url(
    source_key: str,
    list_url: str,
    *,
    http: Optional[httpx.AsyncClient] = None,
    firecrawl: Optional[FirecrawlClient] = None,
) -> PreflightResult:
    result = PreflightResult(source_key=source_key)
    owns_http = http is None
    owns_firecrawl = firecrawl is None
    http = http or httpx.AsyncClient(timeout=DIRECT_TIMEOUT_SECONDS, follow_redirects=True)
    try:
        response = await http.get(list_url, headers={"User-Agent": USER_AGENT}, timeout=DIRECT_TIMEOUT_SECONDS)
        result.markers.http_status = response.status_code
        if response.status_code in (401, 403):
            result.status = "blocked"
            result.reason = f"HTTP {response.status_code} - Access denied"
            return result
        if not response.is_success:
            result.status = "fail"
            result.reason = f"HTTP {response.status_code}"
            return result

        html = response.text
        if is_blocked(html):
            result.status = "blocked"
            result.reason = "Blocked by security measures (captcha/cloudflare)"
            return result
        if inspect_markers(html, result.markers):
            result.status = "pass"
            result.reason = "Tier 1 (direct): Vehicle content detected"
            return result

        logger.info("Preflight %s: tier 1 inconclusive, rendering via Firecrawl", source_key)
        if firecrawl is None:
            firecrawl = FirecrawlClient()
        try:
            rendered = await firecrawl.fetch(list_url, wait_for=FIRECRAWL_WAIT_MS)
        except FirecrawlError as exc:
            result.status = "fail"
            result.reason = f"Firecrawl error: {exc}"
            return result
        html = rendered.html or rendered.raw_html or ""
        if not html:
            result.status = "fail"
            result.reason = "No HTML returned from Firecrawl"
            return result
        if inspect_markers(html, result.markers):
            result.status = "pass"
            result.reason = "Tier 2 (Firecrawl): Vehicle content detected"
            return result

        result.status = "fail"
        result.reason = "No vehicle content found in either tier"
        return result
    except httpx.TimeoutException:
        result.status = "timeout"
        result.reason = "Request timeout"
        return result
    except httpx.HTTPError as exc:
        result.status = "fail"
        result.reason = str(exc) or exc.__class__.__name__
        return result
    finally:
        if owns_http:
            await http.aclose()
        if owns_firecrawl and firecrawl is not None:
            await firecrawl.aclose()


def _record(result: PreflightResult, now: datetime) -> None:
    with session_scope() as session:
        source = session.execute(
            select(models.AuctionSource).where(models.AuctionSource.source_key == result.source_key)
        ).scalar_one_or_none()
        if source is None:
            return
        source.preflight_status = "ok" if result.status == "pass" else result.status
        source.preflight_reason = result.reason
        source.preflight_checked_at = now
        if result.markers.parser_profile_detected and not source.parser_profile:
            source.parser_profile = result.markers.parser_profile_detected
        session.add(
            models.SourceEvent(
                source_key=result.source_key,
                event_type="preflight",
                message=f"Preflight {result.status}: {result.reason}",
                meta=asdict(result.markers),
                created_at=now,
            )
        )


async def run_preflight(
    source_key: Optional[str] = None,
    check_all: bool = False,
    *,
    http: Optional[httpx.AsyncClient] = None,
    firecrawl: Optional[FirecrawlClient] = None,
) -> Dict[str, Any]:
    """Preflight one source, or every source awaiting a (re)check when ``check_all``."""
    with session_scope() as session:
        query = select(models.AuctionSource.source_key, models.AuctionSource.list_url)
        if source_key:
            query = query.where(models.AuctionSource.source_key == source_key)
        elif check_all:
            query = query.where(
                (models.AuctionSource.preflight_status.is_(None))
                | (models.AuctionSource.preflight_status.in_(RECHECK_STATUSES))
            )
        else:
            query = query.where(models.AuctionSource.preflight_status.is_(None)).limit(5)
        sources = session.execute(query.order_by(models.AuctionSource.id)).all()

    if source_key and not sources:
        raise ValueError(f"Source not found: {source_key}")

    results: List[Dict[str, Any]] = []
    errors: List[str] = []
    for key, list_url in sources:
        if not list_url:
            errors.append(f"{key}: no list_url configured")
            continue
        result = await check_url(key, list_url, http=http, firecrawl=firecrawl)
        _record(result, datetime.now(timezone.utc))
        logger.info("Preflight %s -> %s (%s)", key, result.status, result.reason)
        results.append(result.as_dict())

    passed = sum(1 for r in results if r["status"] == "pass")
    return {
        "success": not errors,
        "metrics": {"checked": len(results), "passed": passed, "failed": len(results) - passed},
        "results": results,
        "errors": errors,
    }
