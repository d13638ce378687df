"""initial entitlement schema

Revision ID: 4a7c2e91d0b3
Revises:
Create Date: 2026-10-17 09:12:40.118213

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4a7c2e91d0b3'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json():
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "profiles",
        sa.Column("id", sa.String(length=64), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("email_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=False), nullable=True),
        sa.UniqueConstraint("email", name="uq_profiles_email"),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("request_id", sa.String(length=64), nullable=True),
        sa.Column("actor_principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("actor_email", sa.String(length=320), nullable=True),
        sa.Column("action", sa.String(length=128), nullable=False),
        sa.Column("entity_type", sa.String(length=128), nullable=True),
        sa.Column("entity_id", sa.String(length=128), nullable=True),
        sa.Column("reason", sa.String(length=512), nullable=True),
        sa.Column("metadata_json", sa.Text(), nullable=True),
        sa.Column("client_ip", sa.String(length=64), nullable=True),
        sa.UniqueConstraint("request_id", "id", name="uq_audit_request_id_id"),
    )
    op.create_index("idx_audit_events_created_at", "audit_events", ["created_at"])

    op.create_table(
        "admin_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("role", sa.String(length=32), nullable=False),
        sa.Column("permissions", _json(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("granted_by_principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.UniqueConstraint("principal_id", name="uq_admin_records_principal_id"),
    )
    op.create_index("idx_admin_records_role", "admin_records", ["role"])

    op.create_table(
        "subscription_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("current_period_start", sa.DateTime(timezone=False), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=False), nullable=False),
        sa.Column("cancel_at_period_end", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_complimentary", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("payment_subscription_ref", sa.String(length=255), nullable=True),
        sa.Column("payment_customer_ref", sa.String(length=255), nullable=True),
        sa.Column("last_event_sequence", sa.BigInteger(), nullable=True),
        sa.Column("grant_reason", sa.String(length=500), nullable=True),
        sa.Column("granted_by_principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=False), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.UniqueConstraint("principal_id", name="uq_subscription_records_principal_id"),
        sa.UniqueConstraint("payment_subscription_ref", name="uq_subscription_records_payment_ref"),
        sa.CheckConstraint("current_period_end > current_period_start", name="ck_subscription_period_order"),
    )
    op.create_index("idx_subscription_records_status", "subscription_records", ["status"])
    op.create_index("idx_subscription_records_tier", "subscription_records", ["tier"])

    op.create_table(
        "usage_records",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("resource_kind", sa.String(length=64), nullable=False),
        sa.Column("period_start", sa.DateTime(timezone=False), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=False), nullable=False),
        sa.Column("used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.UniqueConstraint("principal_id", "resource_kind", "period_start", name="uq_usage_principal_kind_period"),
        sa.CheckConstraint("used >= 0", name="ck_usage_used_non_negative"),
    )
    op.create_index("idx_usage_records_period_end", "usage_records", ["period_end"])

    op.create_table(
        "promo_codes",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("code", sa.String(length=50), nullable=False),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("max_uses", sa.Integer(), nullable=True),
        sa.Column("current_uses", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("valid_from", sa.DateTime(timezone=False), nullable=False),
        sa.Column("valid_until", sa.DateTime(timezone=False), nullable=True),
        sa.Column("applicable_tiers", _json(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=False), nullable=False),
        sa.Column("created_by_principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True),
        sa.UniqueConstraint("code", name="uq_promo_codes_code"),
        sa.CheckConstraint("discount_value > 0", name="ck_promo_discount_positive"),
        sa.CheckConstraint("current_uses >= 0", name="ck_promo_uses_non_negative"),
        sa.CheckConstraint("max_uses IS NULL OR current_uses <= max_uses", name="ck_promo_uses_within_max"),
        sa.CheckConstraint("valid_until IS NULL OR valid_until > valid_from", name="ck_promo_validity_window"),
    )
    op.create_index("idx_promo_codes_active", "promo_codes", ["is_active"])

    op.create_table(
        "promo_redemptions",
        sa.Column("id", sa.Integer(), primary_key=True, nullable=False),
        sa.Column("promo_code_id", sa.Integer(), sa.ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False),
        sa.Column("principal_id", sa.String(length=64), sa.ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False),
        sa.Column("tier", sa.String(length=32), nullable=False),
        sa.Column("discount_type", sa.String(length=16), nullable=False),
        sa.Column("discount_value", sa.Numeric(10, 2), nullable=False),
        sa.Column("granted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("redeemed_at", sa.DateTime(timezone=False), nullable=False),
    )
    op.create_index("idx_promo_redemptions_principal", "promo_redemptions", ["principal_id"])


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("idx_promo_redemptions_principal", table_name="promo_redemptions")
    op.drop_table("promo_redemptions")
    op.drop_index("idx_promo_codes_active", table_name="promo_codes")
    op.drop_table("promo_codes")
    op.drop_index("idx_usage_records_period_end", table_name="usage_records")
    op.drop_table("usage_records")
    op.drop_index("idx_subscription_records_tier", table_name="subscription_records")
    op.drop_index("idx_subscription_records_status", table_name="subscription_records")
    op.drop_table("subscription_records")
    op.drop_index("idx_admin_records_role", table_name="admin_records")
    op.drop_table("admin_records")
    op.drop_index("idx_audit_events_created_at", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_table("profiles")
