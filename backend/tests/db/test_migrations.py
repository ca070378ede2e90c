import importlib.util
from pathlib import Path

import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from backend.carbitrage.db import models

VERSIONS = Path(__file__).resolve().parents[2] / "carbitrage" / "db" / "migrations" / "versions"
REVISION_FILES = ("20260110_0001_initial_schema.py", "20260302_0002_pass_in_tracking.py")


def _load(filename: str):
    spec = importlib.util.spec_from_file_location(filename[:-3], VERSIONS / filename)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _run(conn, step):
    with Operations.context(MigrationContext.configure(conn)):
        step()


def test_revisions_chain_in_order():
    revisions = [_load(name) for name in REVISION_FILES]
    assert revisions[0].down_revision is None
    for previous, current in zip(revisions, revisions[1:]):
        assert current.down_revision == previous.revision


def test_migrations_match_models_and_downgrade_cleanly(tmp_path):
    initial, pass_in_tracking = (_load(name) for name in REVISION_FILES)

    engine = sa.create_engine(f"sqlite:///{tmp_path / 'migrations.sqlite3'}")
    with engine.begin() as conn:
        _run(conn, initial.upgrade)
        conn.execute(
            sa.text(
                "INSERT INTO vehicle_listings (listing_id, source, source_class, native_id, make, model, year, "
                "status, pass_count, price_drop_count, relist_count, confidence_score, action, "
                "last_auction_date, first_seen_at, last_seen_at) VALUES ('grays:1', 'grays', 'auction', '1', "
                "'Toyota', 'Hilux', 2019, 'passed_in', 1, 0, 0, 0, 'Watch', '2026-03-01 00:00:00', "
                "'2026-03-01 00:00:00', '2026-03-01 00:00:00')"
            )
        )
        _run(conn, pass_in_tracking.upgrade)

        inspector = sa.inspect(conn)
        assert set(inspector.get_table_names()) == set(models.Base.metadata.tables)
        listing_columns = {col["name"] for col in inspector.get_columns("vehicle_listings")}
        assert listing_columns == {col.name for col in models.Listing.__table__.columns}

        backfilled = conn.execute(sa.text("SELECT last_pass_in_date FROM vehicle_listings")).scalar_one()
        assert str(backfilled).startswith("2026-03-01")

        _run(conn, pass_in_tracking.downgrade)
        columns = {col["name"] for col in sa.inspect(conn).get_columns("vehicle_listings")}
        assert "last_pass_in_date" not in columns

        _run(conn, initial.downgrade)
        assert sa.inspect(conn).get_table_names() == []
    engine.dispose()
