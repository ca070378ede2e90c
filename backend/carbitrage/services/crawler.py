from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy import select

from backend.carbitrage.core.rate_limit import FixedDelayPacer
from backend.carbitrage.core.settings import settings
from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.parsers import pickles
from backend.carbitrage.parsers._fields import Candidate, ParseError
from backend.carbitrage.parsers.auction_lots import parse_lots
from backend.carbitrage.parsers.classifieds import parse_listings
from backend.carbitrage.services.firecrawl_client import FirecrawlClient, FirecrawlError
from backend.carbitrage.services.identity import normalize_url, source_family
from backend.carbitrage.services.ingest import reconcile_listings
from backend.carbitrage.services.stubs import upsert_stub_anchors

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 5


@dataclass(frozen=True)
class SourceAdapter:
    parse: Callable[[str, Optional[str]], List[Candidate]]
    lane: str = "listings"  # listings|stubs
    source_class: str = "auction"
    has_more: Optional[Callable[[str, int], bool]] = None
    default_list_url: Optional[Callable[[], str]] = None


def _auction_adapter(profile: Optional[str] = None) -> SourceAdapter:
    return SourceAdapter(parse=lambda content, base_url: parse_lots(content, profile=profile, base_url=base_url))


CLASSIFIEDS = SourceAdapter(
    parse=lambda content, base_url: parse_listings(content, base_url=base_url),
    source_class="classified",
)

PARSER_REGISTRY: Dict[str, SourceAdapter] = {
    "pickles": SourceAdapter(
        parse=lambda content, base_url: pickles.parse_stubs(content),
        lane="stubs",
        has_more=pickles.has_more_pages,
        default_list_url=lambda: pickles.build_search_url(1),
    ),
    "bidsonline": _auction_adapter(),
    "bidsonline_grid": _auction_adapter("bidsonline_grid"),
    "bidsonline_table": _auction_adapter("bidsonline_table"),
    "bidsonline_default": _auction_adapter("bidsonline_default"),
    "asp": _auction_adapter(),
    "custom": _auction_adapter(),
    "classifieds": CLASSIFIEDS,
    "gumtree": CLASSIFIEDS,
    "carsales": CLASSIFIEDS,
    "autotrader": CLASSIFIEDS,
    "drive": CLASSIFIEDS,
}


def resolve_adapter(platform: Optional[str], parser_profile: Optional[str] = None) -> Optional[SourceAdapter]:
    for key in (parser_profile, platform):
        if key and key.lower() in PARSER_REGISTRY:
            return PARSER_REGISTRY[key.lower()]
    return None


def page_url(list_url: str, page: int) -> str:
    if page <= 1:
        return list_url
    parts = urlsplit(list_url)
    params = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k != "page"]
    params.append(("page", str(page)))
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment))


def _row_key(row: Dict[str, Any], lane: str) -> Tuple[Any, ...]:
    if lane == "stubs":
        return ("stub", row.get("source_stock_id") or row.get("detail_url"))
    if row.get("native_id"):
        return ("id", str(row["native_id"]))
    url = normalize_url(row.get("listing_url"))
    if url:
        return ("url", url)
    return ("desc", row.get("make"), row.get("model"), row.get("year"), row.get("km"))


def _load_source(source_key: str) -> models.AuctionSource:
    with session_scope() as session:
        source = session.execute(
            select(models.AuctionSource).where(models.AuctionSource.source_key == source_key)
        ).scalar_one_or_none()
    if source is None:
        raise ValueError(f"Source not found: {source_key}")
    return source


async def crawl_source(
    source_key: str,
    max_pages: int = DEFAULT_MAX_PAGES,
    dry_run: bool = False,
    *,
    firecrawl: Optional[FirecrawlClient] = None,
    delay: Optional[float] = None,
) -> Dict[str, Any]:
    """Page through a source's list URL, parse each page and persist the results.

    Raises:
        ValueError: unknown source, missing list URL or no registered parser.
        FirecrawlError: when the first page cannot be fetched.
    """
    source = _load_source(source_key)
    adapter = resolve_adapter(source.platform, source.parser_profile)
    if adapter is None:
        raise ValueError(f"No parser registered for platform {source.platform!r}")
    list_url = source.list_url or (adapter.default_list_url() if adapter.default_list_url else None)
    if not list_url:
        raise ValueError(f"Source {source_key} has no list_url")

    owns_client = firecrawl is None
    firecrawl = firecrawl or FirecrawlClient()
    pacer = FixedDelayPacer(settings.request_delay_seconds if delay is None else delay)
    seen: set = set()
    rows: List[Dict[str, Any]] = []
    errors: List[str] = []
    pages_fetched = 0

    try:
        for page in range(1, max(1, max_pages) + 1):
            url = page_url(list_url, page)
            await pacer.wait()
            try:
                result = await firecrawl.fetch(url)
            except FirecrawlError as exc:
                if page == 1:
                    raise
                logger.warning("Crawl %s stopped at page %s: %s", source_key, page, exc)
                errors.append(f"page {page}: {exc}")
                break
            pages_fetched += 1

            content = result.best_content
            try:
                page_rows = adapter.parse(content, list_url)
            except ParseError as exc:
                errors.append(f"page {page}: {exc}")
                break
            if not page_rows:
                break

            fresh = []
            for row in page_rows:
                key = _row_key(row, adapter.lane)
                if key in seen:
                    continue
                seen.add(key)
                fresh.append(row)
            if not fresh:
                break
            rows.extend(fresh)

            if adapter.has_more is not None and not adapter.has_more(content, page):
                break
    finally:
        if owns_client:
            await firecrawl.aclose()

    metrics: Dict[str, Any] = {"pages_fetched": pages_fetched, "lots_found": len(rows)}
    if adapter.lane == "stubs":
        if dry_run:
            metrics.update({"created": 0, "updated": 0, "dropped": 0})
        else:
            outcome = upsert_stub_anchors(source_family(source_key), rows)
            metrics.update(
                {
                    "created": outcome["metrics"]["created"],
                    "updated": outcome["metrics"]["updated"],
                    "dropped": outcome["metrics"]["exceptions"],
                }
            )
    else:
        outcome = reconcile_listings(rows, source_key, source_class=source.source_class or adapter.source_class, dry_run=dry_run)
        errors.extend(outcome["errors"])
        metrics.update(
            {
                "created": outcome["metrics"]["created"],
                "updated": outcome["metrics"]["updated"],
                "dropped": outcome["metrics"]["dropped"],
                "drop_reasons": outcome["metrics"]["drop_reasons"],
            }
        )

    logger.info("Crawled %s: pages=%s lots=%s errors=%s", source_key, pages_fetched, len(rows), len(errors))
    return {"success": not errors, "metrics": metrics, "errors": errors}
