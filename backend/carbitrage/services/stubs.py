"""Two-lane stub pipeline.

Lane 1 turns list-page cards into ``StubAnchor`` rows and matches them against
dealer buy-specs. Lane 2 claims matched rows off the detail queue, deep-fetches
the detail page and reconciles the enriched listing.
"""

from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import and_, or_, select

from backend.carbitrage.core.settings import settings
from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.parsers._fields import Candidate, ParseError
from backend.carbitrage.parsers.pickles import parse_detail as parse_pickles_detail
from backend.carbitrage.services.firecrawl_client import FirecrawlClient, FirecrawlError
from backend.carbitrage.services.identity import source_family
from backend.carbitrage.services.ingest import reconcile_listings

logger = logging.getLogger(__name__)

STUB_FIELDS = ("year", "make", "model", "km", "location", "raw_text")
CLAIM_STALE_AFTER = timedelta(minutes=10)

DETAIL_PARSERS: Dict[str, Callable[[str, str], Candidate]] = {
    "pickles": parse_pickles_detail,
}


@dataclass
class SpecMatch:
    stub_id: int
    spec_id: int
    score: int


def _norm(value: Optional[str]) -> str:
    return " ".join((value or "").strip().lower().replace("-", " ").split())


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def match_stub_score(stub: Any, spec: Any) -> int:
    """Score a stub (or listing) against a dealer spec, 0-100. Make/model mismatch scores 0."""
    if not _norm(_field(stub, "make")) or _norm(_field(stub, "make")) != _norm(_field(spec, "make")):
        return 0
    if _norm(_field(stub, "model")) != _norm(_field(spec, "model")):
        return 0

    score = 50
    year = _field(stub, "year")
    year_min = _field(spec, "year_min") or 1900
    year_max = _field(spec, "year_max") or 2100
    if year is not None:
        if year_min <= year <= year_max:
            score += 30
        elif year_min - 1 <= year <= year_max + 1:
            score += 15

    km = _field(stub, "km")
    km_max = _field(spec, "km_max")
    if km_max is None:
        score += 10
    elif km is None:
        score += 5
    elif km <= km_max:
        score += 20
    elif km <= km_max * 1.25:
        score += 10
    return score


def upsert_stub_anchors(source: str, stubs: Iterable[Dict[str, Any]], *, now: Optional[datetime] = None) -> Dict[str, Any]:
    if not source:
        raise ValueError("source is required")
    now = now or datetime.now(timezone.utc)
    created = updated = exceptions = 0
    errors: List[str] = []

    with session_scope() as session:
        for stub in stubs:
            stock_id = stub.get("source_stock_id")
            detail_url = stub.get("detail_url")
            if not stock_id or not detail_url:
                exceptions += 1
                continue
            stock_id = str(stock_id)
            anchor = session.execute(
                select(models.StubAnchor).where(
                    models.StubAnchor.source == source,
                    models.StubAnchor.source_stock_id == stock_id,
                )
            ).scalar_one_or_none()
            if anchor is None:
                anchor = models.StubAnchor(
                    source=source,
                    source_stock_id=stock_id,
                    detail_url=detail_url,
                    status="pending",
                    deep_fetch_triggered=False,
                    first_seen_at=now,
                    last_seen_at=now,
                    **{field: stub.get(field) for field in STUB_FIELDS},
                )
                session.add(anchor)
                session.flush()
                created += 1
                continue

            for field in STUB_FIELDS:
                value = stub.get(field)
                if value is not None:
                    setattr(anchor, field, value)
            anchor.detail_url = detail_url
            anchor.last_seen_at = now
            updated += 1

    logger.info("Stub upsert %s: created=%s updated=%s exceptions=%s", source, created, updated, exceptions)
    return {
        "success": True,
        "metrics": {"created": created, "updated": updated, "exceptions": exceptions},
        "errors": errors,
    }


def _best_matches(stubs: List[models.StubAnchor], specs: List[models.DealerSpec], min_score: int) -> Dict[int, List[SpecMatch]]:
    grouped: Dict[int, List[SpecMatch]] = defaultdict(list)
    for stub in stubs:
        for spec in specs:
            score = match_stub_score(stub, spec)
            if score >= min_score:
                grouped[stub.id].append(SpecMatch(stub.id, spec.id, score))
    return grouped


def match_stubs_to_specs(
    batch_size: int = 100,
    min_score: int = 50,
    dry_run: bool = False,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    queued = 0
    with session_scope() as session:
        stubs = list(
            session.execute(
                select(models.StubAnchor)
                .where(
                    models.StubAnchor.status == "pending",
                    models.StubAnchor.deep_fetch_triggered.is_(False),
                )
                .order_by(models.StubAnchor.first_seen_at, models.StubAnchor.id)
                .limit(batch_size)
            ).scalars()
        )
        specs = list(
            session.execute(
                select(models.DealerSpec).where(
                    models.DealerSpec.enabled.is_(True),
                    models.DealerSpec.deleted_at.is_(None),
                )
            ).scalars()
        )
        grouped = _best_matches(stubs, specs, min_score)
        stubs_by_id = {stub.id: stub for stub in stubs}

        results = []
        for stub_id, matches in grouped.items():
            stub = stubs_by_id[stub_id]
            best = max(match.score for match in matches)
            spec_ids = [match.spec_id for match in sorted(matches, key=lambda m: (-m.score, m.spec_id))]
            results.append({"stub_id": stub_id, "best_score": best, "spec_ids": spec_ids})
            if dry_run:
                continue

            item = session.execute(
                select(models.DetailQueueItem).where(
                    models.DetailQueueItem.source == stub.source,
                    models.DetailQueueItem.source_listing_id == stub.source_stock_id,
                )
            ).scalar_one_or_none()
            if item is None:
                session.add(
                    models.DetailQueueItem(
                        source=stub.source,
                        source_listing_id=stub.source_stock_id,
                        detail_url=stub.detail_url,
                        stub_anchor_id=stub.id,
                        crawl_status="pending",
                        retry_count=0,
                        first_seen_at=now,
                    )
                )
            else:
                item.detail_url = stub.detail_url
                item.stub_anchor_id = stub.id
            queued += 1

            stub.status = "matched"
            stub.deep_fetch_triggered = True
            stub.deep_fetch_queued_at = now
            stub.deep_fetch_reason = f"spec_match:score={best}"
            stub.matched_spec_ids = spec_ids

        if dry_run:
            session.rollback()

    logger.info("Stub match: scanned=%s specs=%s matched=%s queued=%s", len(stubs), len(specs), len(results), queued)
    return {
        "success": True,
        "metrics": {
            "stubs_scanned": len(stubs),
            "specs": len(specs),
            "matched": len(results),
            "queued": queued,
            "dry_run": dry_run,
        },
        "matches": results,
        "errors": [],
    }


def claim_detail_batch(
    batch_size: int = 20,
    claimed_by: str = "worker",
    max_retries: int = 3,
    *,
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    """Claim pending rows (then failed rows with retries left) and mark them processing."""
    now = now or datetime.now(timezone.utc)
    stale_before = now - CLAIM_STALE_AFTER
    with session_scope() as session:
        rows = list(
            session.execute(
                select(models.DetailQueueItem)
                .where(
                    models.DetailQueueItem.retry_count < max_retries,
                    or_(
                        models.DetailQueueItem.crawl_status.in_(("pending", "failed")),
                        # a worker that died mid-batch leaves rows processing
                        and_(
                            models.DetailQueueItem.crawl_status == "processing",
                            models.DetailQueueItem.claimed_at < stale_before,
                        ),
                    ),
                )
                .order_by(models.DetailQueueItem.first_seen_at, models.DetailQueueItem.id)
                .with_for_update(skip_locked=True)
            ).scalars()
        )
        # pending rows go ahead of retries
        rows.sort(key=lambda row: 0 if row.crawl_status == "pending" else 1)
        claimed = []
        for row in rows[:batch_size]:
            row.crawl_status = "processing"
            row.claimed_by = claimed_by
            row.claimed_at = now
            claimed.append(
                {
                    "id": row.id,
                    "source": row.source,
                    "source_listing_id": row.source_listing_id,
                    "detail_url": row.detail_url,
                    "retry_count": row.retry_count,
                    "stub_anchor_id": row.stub_anchor_id,
                }
            )
    return claimed


def _merge_stub(candidate: Candidate, stub: Optional[models.StubAnchor]) -> Candidate:
    if stub is None:
        return candidate
    for field in ("year", "make", "model", "km", "location"):
        if candidate.get(field) is None:
            candidate[field] = getattr(stub, field)
    return candidate


def _finish_item(item_id: int, stub_id: Optional[int], *, ok: bool, error: Optional[str] = None) -> None:
    now = datetime.now(timezone.utc)
    with session_scope() as session:
        item = session.get(models.DetailQueueItem, item_id)
        stub = session.get(models.StubAnchor, stub_id) if stub_id else None
        if item is not None:
            item.claimed_at = None
            if ok:
                item.crawl_status = "crawled"
                item.crawled_at = now
                item.last_error = None
            else:
                item.crawl_status = "failed"
                item.retry_count = (item.retry_count or 0) + 1
                item.last_error = error
        if stub is not None:
            if ok:
                stub.status = "enriched"
                stub.deep_fetch_completed_at = now
            else:
                stub.status = "exception"


async def _process_item(item: Dict[str, Any], firecrawl: FirecrawlClient) -> None:
    parser = DETAIL_PARSERS.get(source_family(item["source"]))
    if parser is None:
        raise ParseError(f"No detail parser for source {item['source']}")
    result = await firecrawl.fetch(item["detail_url"])
    candidate = parser(result.best_content, item["detail_url"])
    with session_scope() as session:
        stub = session.get(models.StubAnchor, item["stub_anchor_id"]) if item["stub_anchor_id"] else None
        candidate = _merge_stub(candidate, stub)
    candidate["native_id"] = item["source_listing_id"]
    outcome = reconcile_listings([candidate], item["source"], source_class="auction")
    if outcome["errors"]:
        raise ParseError("; ".join(outcome["errors"]))
    if outcome["metrics"]["dropped"]:
        reasons = ",".join(outcome["metrics"]["drop_reasons"])
        raise ParseError(f"Detail page failed validation: {reasons}")


async def deep_fetch(
    batch_size: int = 10,
    dry_run: bool = False,
    *,
    firecrawl: Optional[FirecrawlClient] = None,
    claimed_by: str = "deep-fetch",
    delay: Optional[float] = None,
) -> Dict[str, Any]:
    """Lane 2: fetch, parse and reconcile detail pages for claimed queue rows."""
    if dry_run:
        with session_scope() as session:
            pending = session.execute(
                select(models.DetailQueueItem.id).where(models.DetailQueueItem.crawl_status == "pending").limit(batch_size)
            ).all()
        return {"success": True, "metrics": {"would_process": len(pending), "dry_run": True}, "errors": []}

    owns_client = firecrawl is None
    firecrawl = firecrawl or FirecrawlClient()
    delay = settings.request_delay_seconds if delay is None else delay
    claimed = claim_detail_batch(batch_size, claimed_by)
    crawled = failed = 0
    errors: List[str] = []

    try:
        for index, item in enumerate(claimed):
            if index and delay:
                await asyncio.sleep(delay)
            try:
                await _process_item(item, firecrawl)
            except (FirecrawlError, ParseError) as exc:
                logger.warning("Deep fetch failed for %s: %s", item["detail_url"], exc)
                errors.append(f"{item['source_listing_id']}: {exc}")
                _finish_item(item["id"], item["stub_anchor_id"], ok=False, error=str(exc))
                failed += 1
                continue
            _finish_item(item["id"], item["stub_anchor_id"], ok=True)
            crawled += 1
    finally:
        if owns_client:
            await firecrawl.aclose()

    logger.info("Deep fetch: claimed=%s crawled=%s failed=%s", len(claimed), crawled, failed)
    return {
        "success": failed == 0,
        "metrics": {"claimed": len(claimed), "crawled": crawled, "failed": failed},
        "errors": errors,
    }
