"""Initial listing reconciliation schema.

Revision ID: 0001_initial
Revises: None
Create Date: 2026-01-10 09:12:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")
BIGINT_PK = sa.BigInteger().with_variant(sa.Integer(), "sqlite")


def upgrade() -> None:
    op.create_table(
        "auction_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("source_key", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=False),
        sa.Column("platform", sa.Text(), nullable=True),
        sa.Column("parser_profile", sa.Text(), nullable=True),
        sa.Column("source_class", sa.Text(), nullable=False, server_default="auction"),
        sa.Column("list_url", sa.Text(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("schedule_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schedule_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("schedule_days", JSON_TYPE, nullable=True),
        sa.Column("schedule_time_local", sa.Text(), nullable=True),
        sa.Column("schedule_min_interval_minutes", sa.Integer(), nullable=True),
        sa.Column("schedule_tz", sa.Text(), nullable=True),
        sa.Column("preflight_status", sa.Text(), nullable=True),
        sa.Column("preflight_reason", sa.Text(), nullable=True),
        sa.Column("preflight_checked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("consecutive_failures", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_scheduled_run_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_success_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_crawl_fail_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_lots_found", sa.Integer(), nullable=True),
        sa.Column("auto_disabled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("auto_disabled_reason", sa.Text(), nullable=True),
        sa.UniqueConstraint("source_key"),
    )

    op.create_table(
        "auction_source_events",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("source_key", sa.Text(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("meta", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )
    op.create_index("idx_source_events_key", "auction_source_events", ["source_key", "event_type"])

    op.create_table(
        "auction_schedule_runs",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("source_key", sa.Text(), nullable=False),
        sa.Column("run_date", sa.Date(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("lots_found", sa.Integer(), nullable=True),
        sa.Column("created", sa.Integer(), nullable=True),
        sa.Column("updated", sa.Integer(), nullable=True),
        sa.Column("dropped", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=True),
    )

    op.create_table(
        "cron_audit_log",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("cron_name", sa.Text(), nullable=False),
        sa.Column("run_date", sa.Date(), nullable=False),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("result", JSON_TYPE, nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("cron_name", "run_date"),
    )

    op.create_table(
        "ingestion_runs",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="running"),
        sa.Column("lots_found", sa.Integer(), nullable=True),
        sa.Column("lots_created", sa.Integer(), nullable=True),
        sa.Column("lots_updated", sa.Integer(), nullable=True),
        sa.Column("errors", JSON_TYPE, nullable=True),
        sa.Column("metadata", JSON_TYPE, nullable=True),
    )

    op.create_table(
        "vehicle_listings",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("listing_id", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("source_class", sa.Text(), nullable=False, server_default="auction"),
        sa.Column("native_id", sa.Text(), nullable=False),
        sa.Column("auction_house", sa.Text(), nullable=True),
        sa.Column("event_id", sa.Text(), nullable=True),
        sa.Column("listing_url", sa.Text(), nullable=True),
        sa.Column("make", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("variant_raw", sa.Text(), nullable=True),
        sa.Column("variant_family", sa.Text(), nullable=True),
        sa.Column("variant_normalised", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("km", sa.Integer(), nullable=True),
        sa.Column("transmission", sa.Text(), nullable=True),
        sa.Column("drivetrain", sa.Text(), nullable=True),
        sa.Column("fuel", sa.Text(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("asking_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("reserve", sa.Numeric(12, 2), nullable=True),
        sa.Column("highest_bid", sa.Numeric(12, 2), nullable=True),
        sa.Column("first_seen_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("last_seen_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_prev", sa.Numeric(12, 2), nullable=True),
        sa.Column("price_change_pct", sa.Numeric(7, 2), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="listed"),
        sa.Column("pass_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("price_drop_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("relist_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_auction_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("seller_type", sa.Text(), nullable=True),
        sa.Column("seller_confidence", sa.Text(), nullable=True),
        sa.Column("description_score", sa.Integer(), nullable=True),
        sa.Column("estimated_margin", sa.Numeric(12, 2), nullable=True),
        sa.Column("confidence_score", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("action", sa.Text(), nullable=False, server_default="Watch"),
        sa.UniqueConstraint("listing_id"),
    )
    op.create_index("idx_vehicle_listings_make_model", "vehicle_listings", ["make", "model"])
    op.create_index("idx_vehicle_listings_status", "vehicle_listings", ["status"])

    op.create_table(
        "listing_snapshots",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("listing_pk", sa.BigInteger(), sa.ForeignKey("vehicle_listings.id", ondelete="CASCADE"), nullable=False),
        sa.Column("seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("price", sa.Numeric(12, 2), nullable=True),
        sa.Column("asking_price", sa.Numeric(12, 2), nullable=True),
        sa.Column("reserve", sa.Numeric(12, 2), nullable=True),
        sa.Column("km", sa.Integer(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
    )
    op.create_index("idx_listing_snapshots_listing_seen", "listing_snapshots", ["listing_pk", "seen_at"])

    op.create_table(
        "stub_anchors",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("source_stock_id", sa.Text(), nullable=False),
        sa.Column("detail_url", sa.Text(), nullable=False),
        sa.Column("year", sa.Integer(), nullable=True),
        sa.Column("make", sa.Text(), nullable=True),
        sa.Column("model", sa.Text(), nullable=True),
        sa.Column("km", sa.Integer(), nullable=True),
        sa.Column("location", sa.Text(), nullable=True),
        sa.Column("raw_text", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("deep_fetch_triggered", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("deep_fetch_queued_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deep_fetch_completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deep_fetch_reason", sa.Text(), nullable=True),
        sa.Column("matched_spec_ids", JSON_TYPE, nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source", "source_stock_id"),
    )

    op.create_table(
        "detail_queue",
        sa.Column("id", BIGINT_PK, primary_key=True, autoincrement=True),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("source_listing_id", sa.Text(), nullable=False),
        sa.Column("detail_url", sa.Text(), nullable=False),
        sa.Column("stub_anchor_id", sa.BigInteger(), sa.ForeignKey("stub_anchors.id", ondelete="SET NULL"), nullable=True),
        sa.Column("crawl_status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("claimed_by", sa.Text(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("crawled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("first_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint("source", "source_listing_id"),
    )

    op.create_table(
        "dealer_specs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("dealer_name", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("make", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("variant_family", sa.Text(), nullable=True),
        sa.Column("year_min", sa.Integer(), nullable=True),
        sa.Column("year_max", sa.Integer(), nullable=True),
        sa.Column("km_min", sa.Integer(), nullable=True),
        sa.Column("km_max", sa.Integer(), nullable=True),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "sale_fingerprints",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("fingerprint_id", sa.String(length=64), nullable=False),
        sa.Column("dealer_name", sa.Text(), nullable=False),
        sa.Column("sale_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("make", sa.Text(), nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("variant_normalised", sa.Text(), nullable=True),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("sale_km", sa.Integer(), nullable=True),
        sa.Column("max_km", sa.Integer(), nullable=True),
        sa.Column("engine", sa.Text(), nullable=True),
        sa.Column("drivetrain", sa.Text(), nullable=True),
        sa.Column("transmission", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.UniqueConstraint("fingerprint_id"),
    )


def downgrade() -> None:
    op.drop_table("sale_fingerprints")
    op.drop_table("dealer_specs")
    op.drop_table("detail_queue")
    op.drop_table("stub_anchors")
    op.drop_index("idx_listing_snapshots_listing_seen", table_name="listing_snapshots")
    op.drop_table("listing_snapshots")
    op.drop_index("idx_vehicle_listings_status", table_name="vehicle_listings")
    op.drop_index("idx_vehicle_listings_make_model", table_name="vehicle_listings")
    op.drop_table("vehicle_listings")
    op.drop_table("ingestion_runs")
    op.drop_table("cron_audit_log")
    op.drop_table("auction_schedule_runs")
    op.drop_index("idx_source_events_key", table_name="auction_source_events")
    op.drop_table("auction_source_events")
    op.drop_table("auction_sources")
