from datetime import timezone

from sqlalchemy import (
    JSON, Column, Integer, BigInteger, String, Numeric, Boolean, Text, Date, DateTime, ForeignKey, UniqueConstraint,
    TypeDecorator, func,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.dialects.postgresql import JSONB

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")
BigIntPK = BigInteger().with_variant(Integer(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware UTC datetimes on every backend (SQLite drops tzinfo)."""
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class AuctionSource(Base):
    __tablename__ = "auction_sources"
    id = Column(Integer, primary_key=True)
    source_key = Column(Text, nullable=False, unique=True)
    display_name = Column(Text, nullable=False)
    platform = Column(Text)           # pickles|bidsonline|asp|classifieds|custom
    parser_profile = Column(Text)
    source_class = Column(Text, nullable=False, default="auction")  # auction|classified|retail|dealer
    list_url = Column(Text)
    enabled = Column(Boolean, nullable=False, default=True)
    schedule_enabled = Column(Boolean, nullable=False, default=False)
    schedule_paused = Column(Boolean, nullable=False, default=False)
    schedule_days = Column(JSONType)  # ["MON","WED",...]
    schedule_time_local = Column(Text)
    schedule_min_interval_minutes = Column(Integer)
    schedule_tz = Column(Text)
    preflight_status = Column(Text)   # ok|fail|blocked|timeout
    preflight_reason = Column(Text)
    preflight_checked_at = Column(UTCDateTime)
    consecutive_failures = Column(Integer, nullable=False, default=0)
    last_scheduled_run_at = Column(UTCDateTime)
    last_success_at = Column(UTCDateTime)
    last_crawl_fail_at = Column(UTCDateTime)
    last_error = Column(Text)
    last_lots_found = Column(Integer)
    auto_disabled_at = Column(UTCDateTime)
    auto_disabled_reason = Column(Text)


class SourceEvent(Base):
    __tablename__ = "auction_source_events"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    source_key = Column(Text, nullable=False)
    event_type = Column(Text, nullable=False)  # scheduled_success|scheduled_fail|disabled|preflight
    message = Column(Text)
    meta = Column(JSONType)
    created_at = Column(UTCDateTime, server_default=func.now())


class ScheduleRun(Base):
    __tablename__ = "auction_schedule_runs"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    source_key = Column(Text, nullable=False)
    run_date = Column(Date, nullable=False)
    status = Column(Text, nullable=False)  # skipped|started|success|fail
    reason = Column(Text)
    error = Column(Text)
    lots_found = Column(Integer)
    created = Column(Integer)
    updated = Column(Integer)
    dropped = Column(Integer)
    created_at = Column(UTCDateTime, server_default=func.now())


class CronAuditLog(Base):
    __tablename__ = "cron_audit_log"
    id = Column(Integer, primary_key=True)
    cron_name = Column(Text, nullable=False)
    run_date = Column(Date, nullable=False)
    success = Column(Boolean, nullable=False)
    result = Column(JSONType)
    error = Column(Text)
    updated_at = Column(UTCDateTime)
    __table_args__ = (UniqueConstraint("cron_name", "run_date"),)


class IngestionRun(Base):
    __tablename__ = "ingestion_runs"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)
    started_at = Column(UTCDateTime, nullable=False)
    completed_at = Column(UTCDateTime)
    status = Column(Text, nullable=False, default="running")  # running|success|partial|failed
    lots_found = Column(Integer)
    lots_created = Column(Integer)
    lots_updated = Column(Integer)
    errors = Column(JSONType)
    metadata_ = Column("metadata", JSONType)


class Listing(Base):
    __tablename__ = "vehicle_listings"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    listing_id = Column(Text, nullable=False, unique=True)
    source = Column(Text, nullable=False)
    source_class = Column(Text, nullable=False, default="auction")
    native_id = Column(Text, nullable=False)
    auction_house = Column(Text)
    event_id = Column(Text)
    listing_url = Column(Text)
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    variant_raw = Column(Text)
    variant_family = Column(Text)
    variant_normalised = Column(Text)
    year = Column(Integer, nullable=False)
    km = Column(Integer)
    transmission = Column(Text)
    drivetrain = Column(Text)
    fuel = Column(Text)
    location = Column(Text)
    asking_price = Column(Numeric(12, 2))
    reserve = Column(Numeric(12, 2))
    highest_bid = Column(Numeric(12, 2))
    first_seen_price = Column(Numeric(12, 2))
    last_seen_price = Column(Numeric(12, 2))
    price_prev = Column(Numeric(12, 2))
    price_change_pct = Column(Numeric(7, 2))
    status = Column(Text, nullable=False, default="listed")  # listed|passed_in|sold|withdrawn
    pass_count = Column(Integer, nullable=False, default=0)
    price_drop_count = Column(Integer, nullable=False, default=0)
    relist_count = Column(Integer, nullable=False, default=0)
    last_auction_date = Column(UTCDateTime)
    last_pass_in_date = Column(UTCDateTime)  # auction date of the last counted pass-in
    first_seen_at = Column(UTCDateTime, nullable=False)
    last_seen_at = Column(UTCDateTime, nullable=False)
    updated_at = Column(UTCDateTime)
    seller_type = Column(Text)        # dealer|private|unknown
    seller_confidence = Column(Text)  # high|medium|low
    description_score = Column(Integer)
    estimated_margin = Column(Numeric(12, 2))
    confidence_score = Column(Integer, nullable=False, default=0)
    action = Column(Text, nullable=False, default="Watch")  # Watch|Buy

    snapshots = relationship(
        "ListingSnapshot",
        back_populates="listing",
        order_by="ListingSnapshot.id",
        passive_deletes=True,
    )


class ListingSnapshot(Base):
    __tablename__ = "listing_snapshots"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    listing_pk = Column(BigInteger, ForeignKey("vehicle_listings.id", ondelete="CASCADE"), nullable=False)
    seen_at = Column(UTCDateTime, nullable=False)
    status = Column(Text, nullable=False)
    price = Column(Numeric(12, 2))
    asking_price = Column(Numeric(12, 2))
    reserve = Column(Numeric(12, 2))
    km = Column(Integer)
    location = Column(Text)

    listing = relationship("Listing", back_populates="snapshots")


class StubAnchor(Base):
    __tablename__ = "stub_anchors"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)
    source_stock_id = Column(Text, nullable=False)
    detail_url = Column(Text, nullable=False)
    year = Column(Integer)
    make = Column(Text)
    model = Column(Text)
    km = Column(Integer)
    location = Column(Text)
    raw_text = Column(Text)
    status = Column(Text, nullable=False, default="pending")  # pending|matched|enriched|exception
    deep_fetch_triggered = Column(Boolean, nullable=False, default=False)
    deep_fetch_queued_at = Column(UTCDateTime)
    deep_fetch_completed_at = Column(UTCDateTime)
    deep_fetch_reason = Column(Text)
    matched_spec_ids = Column(JSONType)
    first_seen_at = Column(UTCDateTime, nullable=False)
    last_seen_at = Column(UTCDateTime, nullable=False)
    __table_args__ = (UniqueConstraint("source", "source_stock_id"),)


class DetailQueueItem(Base):
    __tablename__ = "detail_queue"
    id = Column(BigIntPK, primary_key=True, autoincrement=True)
    source = Column(Text, nullable=False)
    source_listing_id = Column(Text, nullable=False)
    detail_url = Column(Text, nullable=False)
    stub_anchor_id = Column(BigInteger, ForeignKey("stub_anchors.id", ondelete="SET NULL"))
    crawl_status = Column(Text, nullable=False, default="pending")  # pending|processing|crawled|failed
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    claimed_by = Column(Text)
    claimed_at = Column(UTCDateTime)
    crawled_at = Column(UTCDateTime)
    first_seen_at = Column(UTCDateTime, nullable=False)
    __table_args__ = (UniqueConstraint("source", "source_listing_id"),)


class DealerSpec(Base):
    __tablename__ = "dealer_specs"
    id = Column(Integer, primary_key=True)
    dealer_name = Column(Text, nullable=False)
    name = Column(Text)
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    variant_family = Column(Text)
    year_min = Column(Integer)
    year_max = Column(Integer)
    km_min = Column(Integer)
    km_max = Column(Integer)
    enabled = Column(Boolean, nullable=False, default=True)
    deleted_at = Column(UTCDateTime)


class SaleFingerprint(Base):
    __tablename__ = "sale_fingerprints"
    id = Column(Integer, primary_key=True)
    fingerprint_id = Column(String(64), nullable=False, unique=True)
    dealer_name = Column(Text, nullable=False)
    sale_date = Column(UTCDateTime, nullable=False)
    expires_at = Column(UTCDateTime, nullable=False)
    make = Column(Text, nullable=False)
    model = Column(Text, nullable=False)
    variant_normalised = Column(Text)
    year = Column(Integer, nullable=False)
    sale_km = Column(Integer)
    max_km = Column(Integer)
    engine = Column(Text)
    drivetrain = Column(Text)
    transmission = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
