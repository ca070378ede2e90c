from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import select

from backend.carbitrage.core.settings import settings
from backend.carbitrage.db import models
from backend.carbitrage.db.session import session_scope
from backend.carbitrage.services.crawler import crawl_source
from backend.carbitrage.services.notifier import SlackNotifier

logger = logging.getLogger(__name__)

CRON_NAME = "auction-schedule-dispatch"
DEFAULT_TZ = "Australia/Sydney"
DEFAULT_TIME_LOCAL = "07:05"
DEFAULT_MIN_INTERVAL_MINUTES = 60
WINDOW_MINUTES = 5
AUDIT_RESULTS_LIMIT = 20

CrawlFn = Callable[[str], Awaitable[Dict[str, Any]]]


def _zone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or DEFAULT_TZ)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown schedule_tz %r, falling back to %s", name, DEFAULT_TZ)
        return ZoneInfo(DEFAULT_TZ)


def _minutes_of_day(value: Optional[str]) -> int:
    hours, _, minutes = (value or "00:00").partition(":")
    try:
        return int(hours) * 60 + int(minutes or 0)
    except ValueError:
        return 0


def _utc(dt: datetime) -> datetime:
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def should_run(source: Any, now: datetime, force: bool = False) -> str:
    """Return the first matching skip reason, or ``"due"``. ``force`` bypasses only the schedule rules."""
    if not source.enabled:
        return "disabled"
    if source.preflight_status != "ok":
        return "preflight_not_ok"
    if not source.schedule_enabled:
        return "schedule_disabled"
    if source.schedule_paused:
        return "paused"
    if (source.consecutive_failures or 0) >= settings.disable_after_failures:
        return "too_many_failures"
    if force:
        return "due"

    local = _utc(now).astimezone(_zone(source.schedule_tz))
    days = [d.upper()[:3] for d in (source.schedule_days or [])]
    if local.strftime("%a").upper() not in days:
        return "wrong_day"

    now_minutes = local.hour * 60 + local.minute
    start = _minutes_of_day(source.schedule_time_local or DEFAULT_TIME_LOCAL)
    if now_minutes < start or now_minutes >= start + WINDOW_MINUTES:
        return "not_in_window"

    interval = source.schedule_min_interval_minutes
    interval = DEFAULT_MIN_INTERVAL_MINUTES if interval is None else interval
    if source.last_scheduled_run_at is not None:
        elapsed = (_utc(now) - _utc(source.last_scheduled_run_at)).total_seconds() / 60
        if elapsed < interval:
            return "min_interval"
    return "due"


def _get_source(session, source_key: str) -> models.AuctionSource:
    return session.execute(
        select(models.AuctionSource).where(models.AuctionSource.source_key == source_key)
    ).scalar_one()


def _record_skip(source_key: str, run_date: date, reason: str) -> None:
    with session_scope() as session:
        session.add(models.ScheduleRun(source_key=source_key, run_date=run_date, status="skipped", reason=reason))


def _record_start(source_key: str, run_date: date, now: datetime) -> int:
    with session_scope() as session:
        run = models.ScheduleRun(source_key=source_key, run_date=run_date, status="started")
        session.add(run)
        # stamped before the crawl so an overlapping invocation sees min_interval
        _get_source(session, source_key).last_scheduled_run_at = now
        session.flush()
        return run.id


def _record_success(source_key: str, run_id: int, outcome: Dict[str, Any], now: datetime) -> Optional[int]:
    metrics = outcome.get("metrics") or {}
    lots_found = metrics.get("lots_found")
    counts = {key: metrics.get(key) for key in ("created", "updated", "dropped")}
    with session_scope() as session:
        source = _get_source(session, source_key)
        source.consecutive_failures = 0
        source.last_success_at = now
        source.last_error = None
        source.last_lots_found = lots_found
        run = session.get(models.ScheduleRun, run_id)
        run.status = "success"
        run.lots_found = lots_found
        run.created = counts["created"]
        run.updated = counts["updated"]
        run.dropped = counts["dropped"]
        session.add(
            models.SourceEvent(
                source_key=source_key,
                event_type="scheduled_success",
                message="Scheduled crawl succeeded",
                meta={"lots_found": lots_found, **counts},
            )
        )
    return lots_found


def _record_failure(source_key: str, run_id: int, error: str, now: datetime) -> Optional[Dict[str, Any]]:
    """Persist a failed run; returns alert details when this failure auto-disabled the source."""
    alert = None
    with session_scope() as session:
        source = _get_source(session, source_key)
        fail_count = (source.consecutive_failures or 0) + 1
        source.consecutive_failures = fail_count
        source.last_crawl_fail_at = now
        source.last_error = error

        if fail_count >= settings.disable_after_failures and source.enabled:
            reason = f"Auto-disabled after {fail_count} consecutive failures"
            source.enabled = False
            source.auto_disabled_at = now
            source.auto_disabled_reason = reason
            session.add(
                models.SourceEvent(
                    source_key=source_key,
                    event_type="disabled",
                    message=reason,
                    meta={"last_error": error},
                )
            )
            alert = {
                "display_name": source.display_name,
                "source_key": source_key,
                "fail_count": fail_count,
                "error": error,
            }

        run = session.get(models.ScheduleRun, run_id)
        run.status = "fail"
        run.error = error
        session.add(
            models.SourceEvent(
                source_key=source_key,
                event_type="scheduled_fail",
                message="Scheduled crawl failed",
                meta={"error": error},
            )
        )
    return alert


def _upsert_audit(run_date: date, success: bool, result: Optional[Dict[str, Any]], error: Optional[str] = None) -> None:
    with session_scope() as session:
        entry = session.execute(
            select(models.CronAuditLog).where(
                models.CronAuditLog.cron_name == CRON_NAME,
                models.CronAuditLog.run_date == run_date,
            )
        ).scalar_one_or_none()
        if entry is None:
            entry = models.CronAuditLog(cron_name=CRON_NAME, run_date=run_date)
            session.add(entry)
        entry.success = success
        entry.result = result
        entry.error = error
        entry.updated_at = datetime.now(timezone.utc)


async def _default_crawl(source_key: str) -> Dict[str, Any]:
    return await crawl_source(source_key)


async def dispatch(
    now: Optional[datetime] = None,
    force: bool = False,
    *,
    crawl: Optional[CrawlFn] = None,
    notifier: Optional[SlackNotifier] = None,
    concurrency: Optional[int] = None,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Run every due, schedule-enabled source with bounded concurrency and a per-source timeout."""
    now = _utc(now or datetime.now(timezone.utc))
    run_date = now.date()
    crawl = crawl or _default_crawl
    notifier = notifier or SlackNotifier()
    timeout = settings.source_timeout_seconds if timeout is None else timeout
    semaphore = asyncio.Semaphore(max(1, concurrency or settings.dispatch_concurrency))

    try:
        with session_scope() as session:
            sources = list(
                session.execute(
                    select(models.AuctionSource)
                    .where(models.AuctionSource.schedule_enabled.is_(True))
                    .order_by(models.AuctionSource.id)
                ).scalars()
            )

        results: List[Dict[str, Any]] = []
        due: List[models.AuctionSource] = []
        for source in sources:
            reason = should_run(source, now, force)
            if reason != "due":
                _record_skip(source.source_key, run_date, reason)
                results.append({"source_key": source.source_key, "status": "skipped", "reason": reason})
                continue
            due.append(source)

        async def run_one(source: models.AuctionSource) -> Dict[str, Any]:
            async with semaphore:
                run_id = _record_start(source.source_key, run_date, now)
                logger.info("Dispatching %s", source.source_key)
                try:
                    outcome = await asyncio.wait_for(crawl(source.source_key), timeout)
                except asyncio.TimeoutError:
                    error = f"timeout after {timeout:g}s"
                except Exception as exc:  # crawler failures of any kind count against the source
                    error = str(exc) or exc.__class__.__name__
                else:
                    lots = _record_success(source.source_key, run_id, outcome, now)
                    logger.info("Source %s succeeded (lots=%s)", source.source_key, lots)
                    return {"source_key": source.source_key, "status": "success", "lots": lots}

            logger.warning("Source %s failed: %s", source.source_key, error)
            alert = _record_failure(source.source_key, run_id, error, now)
            if alert:
                logger.error("Source %s auto-disabled after %s failures", source.source_key, alert["fail_count"])
                await notifier.notify_source_disabled(**alert)
            return {"source_key": source.source_key, "status": "fail", "error": error}

        results.extend(await asyncio.gather(*(run_one(source) for source in due)))
    except Exception as exc:
        _upsert_audit(run_date, False, None, str(exc))
        raise

    ran = sum(1 for r in results if r["status"] == "success")
    failed = sum(1 for r in results if r["status"] == "fail")
    skipped = sum(1 for r in results if r["status"] == "skipped")
    metrics = {"total": len(sources), "ran": ran, "skipped": skipped, "failed": failed}
    _upsert_audit(run_date, failed == 0, {**metrics, "results": results[:AUDIT_RESULTS_LIMIT]})
    logger.info("Dispatch complete: %s", metrics)
    return {
        "success": True,
        "metrics": metrics,
        "results": results,
        "errors": [f"{r['source_key']}: {r['error']}" for r in results if r["status"] == "fail"],
    }
