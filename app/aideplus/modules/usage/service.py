from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import delete, select, update

from app.aideplus.constants import (
    PERIOD_DAY,
    RESOURCE_PERIODS,
    TIER_LIMITS,
    TIER_RANK,
    TIERS,
    UPGRADE_HINT_THRESHOLD,
)
from app.aideplus.db import insert_ignore_conflicts
from app.aideplus.errors import FeatureUnavailable, QuotaExceeded, ValidationError
from app.aideplus.modules.subscriptions.service import effective_tier_for
from app.aideplus.utils import day_bounds, isoformat, month_bounds, utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.aideplus.modules.usage.models import UsageRecord

logger = logging.getLogger(__name__)


def resolve_limit(tier: str, resource_kind: str) -> int | None:
    """Per-tier limit for a resource. None = unlimited, 0 = not available at this tier."""
    return TIER_LIMITS[tier][resource_kind]


def period_bounds(resource_kind: str, now: datetime) -> tuple[datetime, datetime]:
    if RESOURCE_PERIODS[resource_kind] == PERIOD_DAY:
        return day_bounds(now)
    return month_bounds(now)


def _check_kind(resource_kind: str) -> None:
    if resource_kind not in RESOURCE_PERIODS:
        raise ValidationError([f"Unknown resource kind: {resource_kind}"])


def _open_record_id(s: "Session", principal_id: str, resource_kind: str, now: datetime) -> int:
    """Id of the current period's record, creating it if this is the first use in the period."""
    from app.aideplus.modules.usage.models import UsageRecord

    start, end = period_bounds(resource_kind, now)
    s.execute(
        insert_ignore_conflicts(
            s,
            UsageRecord.__table__,
            {
                "principal_id": principal_id,
                "resource_kind": resource_kind,
                "period_start": start,
                "period_end": end,
                "used": 0,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["principal_id", "resource_kind", "period_start"],
        )
    )
    return s.execute(
        select(UsageRecord.id).where(
            UsageRecord.principal_id == principal_id,
            UsageRecord.resource_kind == resource_kind,
            UsageRecord.period_start == start,
        )
    ).scalar_one()


def consume(
    s: "Session",
    principal_id: str,
    resource_kind: str,
    amount: int = 1,
    now: datetime | None = None,
) -> int | None:
    """
    Meter `amount` units against the principal's current-period quota.

    The increment is a single conditional UPDATE (used + amount <= limit), so
    concurrent requests can never push `used` past the limit. Returns the units
    remaining after this call (None when unlimited).
    """
    from app.aideplus.modules.usage.models import UsageRecord

    _check_kind(resource_kind)
    if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
        raise ValidationError(["amount must be a positive integer."])

    now = now or utcnow()
    tier = effective_tier_for(s, principal_id, now)
    limit = resolve_limit(tier, resource_kind)
    if limit == 0:
        raise FeatureUnavailable(
            f"{resource_kind} is not available on the {tier} plan.",
            tier=tier,
            resource_kind=resource_kind,
            upgrade_required=True,
        )

    record_id = _open_record_id(s, principal_id, resource_kind, now)
    stmt = update(UsageRecord).where(UsageRecord.id == record_id)
    if limit is not None:
        stmt = stmt.where(UsageRecord.used + amount <= limit)
    result = s.execute(
        stmt.values(used=UsageRecord.used + amount, updated_at=now).execution_options(synchronize_session=False)
    )
    used = s.execute(select(UsageRecord.used).where(UsageRecord.id == record_id)).scalar_one()

    if result.rowcount == 0:
        logger.info(
            "Quota exceeded principal_id=%s kind=%s tier=%s used=%s limit=%s amount=%s",
            principal_id,
            resource_kind,
            tier,
            used,
            limit,
            amount,
        )
        raise QuotaExceeded(
            f"You have reached your limit of {limit} for {resource_kind} in this period.",
            tier=tier,
            resource_kind=resource_kind,
            limit=limit,
            used=used,
            remaining=max(0, limit - used),
            upgrade_required=True,
        )
    return None if limit is None else limit - used


def usage_for(s: "Session", principal_id: str, resource_kind: str, tier: str, now: datetime) -> dict:
    """Current-period usage without creating a record."""
    from app.aideplus.modules.usage.models import UsageRecord

    start, end = period_bounds(resource_kind, now)
    used = s.execute(
        select(UsageRecord.used).where(
            UsageRecord.principal_id == principal_id,
            UsageRecord.resource_kind == resource_kind,
            UsageRecord.period_start == start,
        )
    ).scalar_one_or_none() or 0
    limit = resolve_limit(tier, resource_kind)
    unlimited = limit is None
    return {
        "current": used,
        "limit": limit,
        "remaining": None if unlimited else max(0, limit - used),
        "unlimited": unlimited,
        "available": limit != 0,
        "percentage": 0 if unlimited or limit == 0 else round(used / limit * 100),
        "period": RESOURCE_PERIODS[resource_kind],
        "period_start": isoformat(start),
        "period_end": isoformat(end),
    }


def upgrade_recommendation(tier: str, usage: dict[str, dict]) -> dict:
    """Suggest the next tier up when some metered resource is nearly used up."""
    reasons = [
        kind
        for kind, u in usage.items()
        if u["available"] and not u["unlimited"] and u["percentage"] >= UPGRADE_HINT_THRESHOLD
    ]
    recommended = None
    if reasons and TIER_RANK[tier] < len(TIERS) - 1:
        recommended = TIERS[TIER_RANK[tier] + 1]
    return {"current_tier": tier, "recommended_tier": recommended, "reasons": reasons}


def usage_summary(s: "Session", principal_id: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    tier = effective_tier_for(s, principal_id, now)
    usage = {kind: usage_for(s, principal_id, kind, tier, now) for kind in RESOURCE_PERIODS}
    return {
        "tier": tier,
        "usage": usage,
        "upgrade": upgrade_recommendation(tier, usage),
    }


def usage_history(s: "Session", principal_id: str, resource_kind: str | None = None) -> list["UsageRecord"]:
    from app.aideplus.modules.usage.models import UsageRecord

    q = s.query(UsageRecord).filter(UsageRecord.principal_id == principal_id)
    if resource_kind:
        q = q.filter(UsageRecord.resource_kind == resource_kind)
    return q.order_by(UsageRecord.period_start.desc(), UsageRecord.resource_kind.asc()).all()


def compact_usage_records(s: "Session", before: datetime) -> int:
    """Delete superseded records whose period ended before `before`. Not needed for correctness."""
    from app.aideplus.modules.usage.models import UsageRecord

    result = s.execute(delete(UsageRecord).where(UsageRecord.period_end < before))
    logger.info("Compacted %s usage records ended before %s", result.rowcount, before.isoformat())
    return result.rowcount


def serialize_usage_record(record: "UsageRecord") -> dict:
    return {
        "id": record.id,
        "resource_kind": record.resource_kind,
        "period_start": isoformat(record.period_start),
        "period_end": isoformat(record.period_end),
        "used": record.used,
    }
