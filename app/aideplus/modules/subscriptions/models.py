from __future__ import annotations

from datetime import datetime

from sqlalchemy import BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.aideplus.models import Base
from app.aideplus.utils import utcnow


class SubscriptionRecord(Base):
    """
    One row per principal with a non-free history. Never hard-deleted: cancellation and
    revocation are status transitions so the audit trail survives.
    """

    __tablename__ = "subscription_records"
    __table_args__ = (
        CheckConstraint("current_period_end > current_period_start", name="ck_subscription_period_order"),
        Index("idx_subscription_records_status", "status"),
        Index("idx_subscription_records_tier", "tier"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    principal_id: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)

    tier: Mapped[str] = mapped_column(String(32), nullable=False)  # basic, plus, premium
    status: Mapped[str] = mapped_column(String(32), nullable=False)  # active, trialing, past_due, incomplete, cancelled, revoked

    current_period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    is_complimentary: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Payment provider references (null for complimentary grants)
    payment_subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    payment_customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Highest provider event sequence applied; strictly older events are no-ops
    last_event_sequence: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    grant_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    granted_by_principal_id: Mapped[str | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)


class ProcessedWebhookEvent(Base):
    """
    Ledger of provider event ids already handled. A redelivered event id is a no-op;
    distinct events sharing a sequence value are still applied.
    """

    __tablename__ = "processed_webhook_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    sequence: Mapped[int] = mapped_column(BigInteger, nullable=False)
    received_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
