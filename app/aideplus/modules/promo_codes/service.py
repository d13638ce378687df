from __future__ import annotations

import logging
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any

from sqlalchemy import or_, select, update

from app.aideplus.audit import record_event
from app.aideplus.constants import DISCOUNT_PERCENTAGE, DISCOUNT_TYPES, PAID_TIERS
from app.aideplus.db import supports_row_locks
from app.aideplus.errors import (
    CodeExhausted,
    CodeExpired,
    CodeInactive,
    CodeNotFound,
    Conflict,
    NotFound,
    TierNotApplicable,
    ValidationError,
)
from app.aideplus.modules.subscriptions import service as sub_svc
from app.aideplus.utils import isoformat, parse_datetime, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.aideplus.auth import Principal
    from app.aideplus.modules.promo_codes.models import PromoCode

logger = logging.getLogger(__name__)

CODE_RE = re.compile(r"^[A-Z0-9][A-Z0-9_-]{1,49}$")

UPDATABLE_FIELDS = ("discount_type", "discount_value", "max_uses", "valid_from", "valid_until", "applicable_tiers", "is_active")


def normalize_code(code: str | None) -> str:
    return (code or "").strip().upper()


def _parse_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def validate_promo_payload(payload: dict, *, partial: bool = False) -> list[str]:
    """Validate a create (or, with partial=True, update) payload. Returns list of errors."""
    errors = []

    if not partial:
        if not CODE_RE.match(normalize_code(payload.get("code"))):
            errors.append("code must be 2-50 characters: letters, digits, '-' or '_'.")

    if not partial or "discount_type" in payload:
        if payload.get("discount_type") not in DISCOUNT_TYPES:
            errors.append(f"Invalid discount_type. Must be one of: {', '.join(DISCOUNT_TYPES)}")

    if not partial or "discount_value" in payload:
        value = _parse_decimal(payload.get("discount_value"))
        if value is None or not value.is_finite() or value <= 0:
            errors.append("discount_value must be a number greater than 0.")
        elif payload.get("discount_type") == DISCOUNT_PERCENTAGE and value > 100:
            errors.append("A percentage discount cannot exceed 100.")

    if "max_uses" in payload and payload["max_uses"] is not None:
        max_uses = payload["max_uses"]
        if isinstance(max_uses, bool) or not isinstance(max_uses, int) or max_uses < 1:
            errors.append("max_uses must be a positive integer or null.")

    valid_from = valid_until = None
    for key in ("valid_from", "valid_until"):
        raw = payload.get(key)
        if raw in (None, ""):
            continue
        try:
            parsed = parse_datetime(str(raw))
        except ValueError:
            errors.append(f"{key} must be an ISO-8601 date or datetime.")
            continue
        if key == "valid_from":
            valid_from = parsed
        else:
            valid_until = parsed
    if valid_from and valid_until and valid_until <= valid_from:
        errors.append("valid_until must be after valid_from.")

    tiers = payload.get("applicable_tiers")
    if tiers is not None:
        if not isinstance(tiers, list):
            errors.append("applicable_tiers must be a list of tiers.")
        else:
            unknown = sorted({str(t) for t in tiers if t not in PAID_TIERS})
            if unknown:
                errors.append(f"Unknown tiers: {', '.join(unknown)}")

    if "is_active" in payload and not isinstance(payload["is_active"], bool):
        errors.append("is_active must be a boolean.")
    return errors


def get_promo_code(s: "Session", promo_id: int) -> "PromoCode":
    from app.aideplus.modules.promo_codes.models import PromoCode

    promo = s.get(PromoCode, promo_id)
    if promo is None:
        raise NotFound("Promo code not found.")
    return promo


def list_promo_codes(s: "Session", *, active: bool | None = None, search: str | None = None) -> list["PromoCode"]:
    from app.aideplus.modules.promo_codes.models import PromoCode

    q = s.query(PromoCode)
    if active is not None:
        q = q.filter(PromoCode.is_active.is_(active))
    if search:
        q = q.filter(PromoCode.code.like(f"%{normalize_code(search)}%"))
    return q.order_by(PromoCode.created_at.desc(), PromoCode.id.desc()).all()


def create_promo_code(s: "Session", payload: dict, actor: "Principal", now: datetime | None = None) -> "PromoCode":
    from app.aideplus.modules.promo_codes.models import PromoCode

    now = now or utcnow()
    code = normalize_code(payload["code"])
    if s.query(PromoCode).filter(PromoCode.code == code).one_or_none() is not None:
        raise Conflict(f"Promo code {code} already exists.")

    promo = PromoCode(
        code=code,
        discount_type=payload["discount_type"],
        discount_value=Decimal(str(payload["discount_value"])),
        max_uses=payload.get("max_uses"),
        current_uses=0,
        valid_from=parse_datetime(payload.get("valid_from")) or now,
        valid_until=parse_datetime(payload.get("valid_until")),
        applicable_tiers=sorted(set(payload.get("applicable_tiers") or [])),
        is_active=payload.get("is_active", True),
        created_at=now,
        updated_at=now,
        created_by_principal_id=actor.id,
    )
    if promo.valid_until and promo.valid_until <= promo.valid_from:
        raise ValidationError(["valid_until must be after valid_from."])
    s.add(promo)
    s.flush()

    record_event(
        s,
        actor=actor,
        action="promo_code.create",
        entity_type="PromoCode",
        entity_id=str(promo.id),
        metadata={"after": _snapshot(promo)},
    )
    return promo


def update_promo_code(s: "Session", promo: "PromoCode", payload: dict, actor: "Principal", now: datetime | None = None) -> "PromoCode":
    """Apply a partial update. `code` and `current_uses` are not editable."""
    before = _snapshot(promo)
    for key in UPDATABLE_FIELDS:
        if key not in payload:
            continue
        value = payload[key]
        if key == "discount_value":
            value = Decimal(str(value))
        elif key in ("valid_from", "valid_until"):
            value = parse_datetime(value) if value else None
        elif key == "applicable_tiers":
            value = sorted(set(value or []))
        setattr(promo, key, value)

    if promo.valid_from is None:
        raise ValidationError(["valid_from is required."])
    if promo.valid_until and promo.valid_until <= promo.valid_from:
        raise ValidationError(["valid_until must be after valid_from."])
    if promo.max_uses is not None and promo.max_uses < promo.current_uses:
        raise ValidationError([f"max_uses cannot be lower than current uses ({promo.current_uses})."])
    if promo.discount_type == DISCOUNT_PERCENTAGE and Decimal(promo.discount_value) > 100:
        raise ValidationError(["A percentage discount cannot exceed 100."])

    promo.updated_at = now or utcnow()
    s.flush()

    record_event(
        s,
        actor=actor,
        action="promo_code.update",
        entity_type="PromoCode",
        entity_id=str(promo.id),
        metadata={"before": before, "after": _snapshot(promo)},
    )
    return promo


def deactivate_promo_code(s: "Session", promo: "PromoCode", actor: "Principal", reason: str | None = None) -> "PromoCode":
    """Codes are never deleted; redemptions keep pointing at them."""
    if promo.is_active:
        promo.is_active = False
        promo.updated_at = utcnow()
        s.flush()
    record_event(
        s,
        actor=actor,
        action="promo_code.deactivate",
        entity_type="PromoCode",
        entity_id=str(promo.id),
        reason=reason,
        metadata={"code": promo.code},
    )
    return promo


def _load_for_redemption(s: "Session", code: str) -> "PromoCode | None":
    from app.aideplus.modules.promo_codes.models import PromoCode

    stmt = select(PromoCode).where(PromoCode.code == code)
    if supports_row_locks(s):
        stmt = stmt.with_for_update()
    return s.execute(stmt).scalar_one_or_none()


def check_redeemable(promo: "PromoCode | None", target_tier: str, now: datetime) -> None:
    """Run the redemption checks in order; the first failing one raises."""
    if promo is None:
        raise CodeNotFound()
    if not promo.is_active:
        raise CodeInactive()
    if now < promo.valid_from or (promo.valid_until is not None and now >= promo.valid_until):
        raise CodeExpired()
    if promo.max_uses is not None and promo.current_uses >= promo.max_uses:
        raise CodeExhausted()
    if promo.applicable_tiers and target_tier not in promo.applicable_tiers:
        raise TierNotApplicable(applicable_tiers=list(promo.applicable_tiers))


def apply(
    s: "Session",
    code: str,
    principal: "Principal",
    target_tier: str,
    now: datetime | None = None,
) -> sub_svc.SubscriptionGrant:
    """
    Redeem `code` for `principal` against `target_tier`.

    The use counter is bumped with a conditional UPDATE (current_uses < max_uses)
    on the row, locked FOR UPDATE where the database supports it. The counter, the
    subscription change and the redemption row share the caller's transaction.
    """
    from app.aideplus.modules.promo_codes.models import PromoCode, PromoRedemption

    if target_tier not in PAID_TIERS:
        raise ValidationError([f"Invalid tier. Must be one of: {', '.join(PAID_TIERS)}"])

    now = now or utcnow()
    normalized = normalize_code(code)
    promo = _load_for_redemption(s, normalized)
    check_redeemable(promo, target_tier, now)
    sub_svc.check_promo_eligible(s, principal.id, target_tier, promo, now)

    result = s.execute(
        update(PromoCode)
        .where(
            PromoCode.id == promo.id,
            PromoCode.is_active.is_(True),
            or_(PromoCode.max_uses.is_(None), PromoCode.current_uses < PromoCode.max_uses),
        )
        .values(current_uses=PromoCode.current_uses + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        logger.info("Promo code %s lost a redemption race principal_id=%s", normalized, principal.id)
        raise CodeExhausted()
    s.refresh(promo)

    grant = sub_svc.apply_promo_grant(s, principal.id, target_tier, promo, now)
    redemption = PromoRedemption(
        promo_code_id=promo.id,
        principal_id=principal.id,
        tier=target_tier,
        discount_type=promo.discount_type,
        discount_value=promo.discount_value,
        granted=grant.granted,
        redeemed_at=now,
    )
    s.add(redemption)
    s.flush()

    record_event(
        s,
        actor=principal,
        action="promo_code.redeem",
        entity_type="PromoCode",
        entity_id=str(promo.id),
        metadata={
            "code": promo.code,
            "tier": target_tier,
            "granted": grant.granted,
            "current_uses": promo.current_uses,
            "max_uses": promo.max_uses,
            "redemption_id": redemption.id,
        },
    )
    logger.info(
        "Promo code redeemed code=%s principal_id=%s tier=%s granted=%s uses=%s/%s",
        promo.code,
        principal.id,
        target_tier,
        grant.granted,
        promo.current_uses,
        promo.max_uses,
    )
    return grant


def _snapshot(promo: "PromoCode") -> dict:
    return {
        "code": promo.code,
        "discount_type": promo.discount_type,
        "discount_value": str(promo.discount_value),
        "max_uses": promo.max_uses,
        "valid_from": isoformat(promo.valid_from),
        "valid_until": isoformat(promo.valid_until),
        "applicable_tiers": list(promo.applicable_tiers or []),
        "is_active": promo.is_active,
    }


def serialize_promo(promo: "PromoCode") -> dict:
    data = _snapshot(promo)
    data.update(
        {
            "id": promo.id,
            "current_uses": promo.current_uses,
            "created_at": isoformat(promo.created_at),
            "updated_at": isoformat(promo.updated_at),
        }
    )
    return data
