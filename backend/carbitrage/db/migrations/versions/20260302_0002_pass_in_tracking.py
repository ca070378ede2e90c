"""Track the auction date of the last counted pass-in

Revision ID: 0002_pass_in_tracking
Revises: 0001_initial
Create Date: 2026-03-02 00:00:00
"""

from alembic import op
import sqlalchemy as sa


revision = "0002_pass_in_tracking"
down_revision = "0001_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("vehicle_listings") as batch_op:
        batch_op.add_column(sa.Column("last_pass_in_date", sa.DateTime(timezone=True)))
    # passed-in listings already counted their latest event
    op.execute(
        "UPDATE vehicle_listings SET last_pass_in_date = last_auction_date "
        "WHERE status = 'passed_in' AND pass_count > 0"
    )


def downgrade() -> None:
    with op.batch_alter_table("vehicle_listings") as batch_op:
        batch_op.drop_column("last_pass_in_date")
