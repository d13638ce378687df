from flask import Blueprint, current_app, jsonify, request

from app.aideplus.auth import current_principal, require_principal
from app.aideplus.constants import TIER_BASIC
from app.aideplus.db import db_session
from app.aideplus.errors import ValidationError
from app.aideplus.modules.promo_codes import service as promo_svc
from app.aideplus.modules.subscriptions import service as sub_svc
from app.aideplus.modules.usage import service as usage_svc
from app.aideplus.rbac import effective_permissions, is_super_admin, require_tier, resolve_admin

bp = Blueprint("account", __name__)


@bp.get("/admin-status")
@require_principal
def admin_status():
    """What the admin UI needs to decide which screens to show."""
    s = db_session()
    admin = resolve_admin(s, current_principal())
    if admin is None:
        return jsonify({"is_admin": False, "is_super_admin": False, "role": None, "permissions": {}})
    return jsonify(
        {
            "is_admin": True,
            "is_super_admin": is_super_admin(admin),
            "role": admin.role,
            "permissions": effective_permissions(admin),
        }
    )


@bp.get("/subscription")
@require_principal
def subscription():
    s = db_session()
    record = sub_svc.get_subscription(s, current_principal().id)
    # persists a deferred cancellation that came due
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)})


@bp.post("/subscription/cancel")
@require_principal
def subscription_cancel():
    s = db_session()
    principal = current_principal()
    payload = request.get_json(silent=True) or {}
    record = sub_svc.cancel(
        s,
        principal.id,
        bool(payload.get("immediate")),
        actor=principal,
        provider=current_app.extensions.get("payment_provider"),
        reason=(payload.get("reason") or "").strip() or None,
    )
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)})


@bp.post("/subscription/resume")
@require_principal
def subscription_resume():
    s = db_session()
    principal = current_principal()
    record = sub_svc.resume(
        s,
        principal.id,
        actor=principal,
        provider=current_app.extensions.get("payment_provider"),
    )
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)})


@bp.get("/usage")
@require_principal
def usage():
    s = db_session()
    summary = usage_svc.usage_summary(s, current_principal().id)
    s.commit()
    return jsonify(summary)


@bp.get("/usage/history")
@require_tier(TIER_BASIC)
def usage_history():
    s = db_session()
    kind = (request.args.get("resource_kind") or "").strip() or None
    records = usage_svc.usage_history(s, current_principal().id, kind)
    return jsonify({"history": [usage_svc.serialize_usage_record(r) for r in records]})


@bp.post("/usage/<resource_kind>/consume")
@require_principal
def usage_consume(resource_kind: str):
    s = db_session()
    payload = request.get_json(silent=True) or {}
    amount = payload.get("amount", 1)
    remaining = usage_svc.consume(s, current_principal().id, resource_kind, amount)
    s.commit()
    return jsonify({"resource_kind": resource_kind, "remaining": remaining, "unlimited": remaining is None})


@bp.post("/promo-codes/redeem")
@require_principal
def promo_code_redeem():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    code = (payload.get("code") or "").strip()
    tier = (payload.get("tier") or "").strip()
    errors = []
    if not code:
        errors.append("code is required.")
    if not tier:
        errors.append("tier is required.")
    if errors:
        raise ValidationError(errors)
    grant = promo_svc.apply(s, code, current_principal(), tier)
    s.commit()
    return jsonify({"grant": grant.to_dict()})
