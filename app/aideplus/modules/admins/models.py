from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aideplus.models import Base, Profile
from app.aideplus.utils import utcnow


class AdminRecord(Base):
    __tablename__ = "admin_records"
    __table_args__ = (
        Index("idx_admin_records_role", "role"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    # at most one admin record per principal
    principal_id: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, unique=True)

    role: Mapped[str] = mapped_column(String(32), nullable=False)  # super_admin, admin, moderator, support
    # permission key -> bool; ignored entirely for super_admin
    permissions: Mapped[dict] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=dict
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    granted_by_principal_id: Mapped[str | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)

    profile: Mapped[Profile] = relationship(Profile, foreign_keys=[principal_id], lazy="joined")
