from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.aideplus.models import Base
from app.aideplus.utils import utcnow


class PromoCode(Base):
    __tablename__ = "promo_codes"
    __table_args__ = (
        CheckConstraint("discount_value > 0", name="ck_promo_discount_positive"),
        CheckConstraint("current_uses >= 0", name="ck_promo_uses_non_negative"),
        CheckConstraint("max_uses IS NULL OR current_uses <= max_uses", name="ck_promo_uses_within_max"),
        CheckConstraint("valid_until IS NULL OR valid_until > valid_from", name="ck_promo_validity_window"),
        Index("idx_promo_codes_active", "is_active"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    code: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)  # stored upper-case

    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)  # percentage, fixed
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)

    max_uses: Mapped[int | None] = mapped_column(Integer, nullable=True)  # null = unlimited
    current_uses: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    valid_from: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False)
    valid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    # empty list = applies to every paid tier
    applicable_tiers: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=False, default=list
    )
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)
    created_by_principal_id: Mapped[str | None] = mapped_column(ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True)

    redemptions: Mapped[list["PromoRedemption"]] = relationship(
        "PromoRedemption",
        back_populates="promo_code",
        lazy="selectin",
        order_by="PromoRedemption.redeemed_at",
    )


class PromoRedemption(Base):
    __tablename__ = "promo_redemptions"
    __table_args__ = (
        Index("idx_promo_redemptions_principal", "principal_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    promo_code_id: Mapped[int] = mapped_column(ForeignKey("promo_codes.id", ondelete="CASCADE"), nullable=False)
    principal_id: Mapped[str] = mapped_column(ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False)

    tier: Mapped[str] = mapped_column(String(32), nullable=False)
    discount_type: Mapped[str] = mapped_column(String(16), nullable=False)
    discount_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    # True when the redemption granted a complimentary period; False when the discount awaits checkout
    granted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    redeemed_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=utcnow)

    promo_code: Mapped[PromoCode] = relationship(PromoCode, back_populates="redemptions")
