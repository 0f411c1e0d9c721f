"""Track refunds sent to the processor but not yet settled

Revision ID: 20261020_refund_requested
Revises: 20261019_initial
Create Date: 2026-10-20 00:00:00.000000
"""

from alembic import op
import sqlalchemy as sa

revision = "20261020_refund_requested"
down_revision = "20261019_initial"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("payments", sa.Column("refund_requested_at", sa.DateTime(timezone=True), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("payments") as batch_op:
        batch_op.drop_column("refund_requested_at")
