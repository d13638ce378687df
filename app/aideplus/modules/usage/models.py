from __future__ import annotations

from datetime import datetime

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from app.aideplus.models import Base
from app.aideplus.utils import utcnow


class UsageRecord(Base):
    """
    Per-principal, per-resource, per-period counter.
    A new row is created when a period rolls over; earlier periods stay queryable.
    """

    __tablename__ = "usage_records"
    __table_args__ = (
        UniqueConstraint("principal_id", "resource_kind", "period_start", name="uq_usage_principal_kind_period"),
        CheckConstraint("used >= 0", name="ck_usage_used_non_negative"),
        Index("idx_usage_records_period_end", "period_end"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    principal_id: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)
    resource_kind: Mapped[str] = mapped_column(String(64), nullable=False)  # chat_message, simulation, content_view, export

    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
