"""add processed_webhook_events ledger

Revision ID: 7e3b5d90c1a4
Revises: 4a7c2e91d0b3
Create Date: 2026-10-17

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = "7e3b5d90c1a4"
down_revision: Union[str, Sequence[str], None] = "4a7c2e91d0b3"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    bind = op.get_bind()
    insp = inspect(bind)
    if "processed_webhook_events" in insp.get_table_names():
        return

    op.create_table(
        "processed_webhook_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("event_type", sa.String(length=64), nullable=False),
        sa.Column("subscription_ref", sa.String(length=255), nullable=True),
        sa.Column("sequence", sa.BigInteger(), nullable=False),
        sa.Column("received_at", sa.DateTime(timezone=False), nullable=False),
        sa.UniqueConstraint("event_id", name="uq_processed_webhook_events_event_id"),
    )


def downgrade() -> None:
    op.drop_table("processed_webhook_events")
