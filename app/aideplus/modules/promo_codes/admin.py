from flask import Blueprint, jsonify, request

from app.aideplus.auth import current_principal
from app.aideplus.constants import PERM_MANAGE_SUBSCRIPTIONS
from app.aideplus.db import db_session
from app.aideplus.errors import ValidationError
from app.aideplus.modules.promo_codes import service as promo_svc
from app.aideplus.rbac import require_permission

bp = Blueprint("promo_codes_admin", __name__)


@bp.get("/promo-codes")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def promo_codes_list():
    s = db_session()
    active_raw = (request.args.get("active") or "").strip().lower()
    active = {"1": True, "true": True, "0": False, "false": False}.get(active_raw)
    search = (request.args.get("q") or "").strip() or None
    promos = promo_svc.list_promo_codes(s, active=active, search=search)
    return jsonify({"promo_codes": [promo_svc.serialize_promo(p) for p in promos], "total": len(promos)})


@bp.get("/promo-codes/<int:promo_id>")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def promo_code_detail(promo_id: int):
    s = db_session()
    promo = promo_svc.get_promo_code(s, promo_id)
    data = promo_svc.serialize_promo(promo)
    data["redemptions"] = [
        {
            "principal_id": r.principal_id,
            "tier": r.tier,
            "granted": r.granted,
            "redeemed_at": r.redeemed_at.isoformat(),
        }
        for r in promo.redemptions
    ]
    return jsonify({"promo_code": data})


@bp.post("/promo-codes")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def promo_code_create():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    errors = promo_svc.validate_promo_payload(payload)
    if errors:
        raise ValidationError(errors)
    promo = promo_svc.create_promo_code(s, payload, current_principal())
    s.commit()
    return jsonify({"promo_code": promo_svc.serialize_promo(promo)}), 201


@bp.patch("/promo-codes/<int:promo_id>")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def promo_code_update(promo_id: int):
    s = db_session()
    payload = request.get_json(silent=True) or {}
    errors = promo_svc.validate_promo_payload(payload, partial=True)
    if errors:
        raise ValidationError(errors)
    promo = promo_svc.get_promo_code(s, promo_id)
    promo_svc.update_promo_code(s, promo, payload, current_principal())
    s.commit()
    return jsonify({"promo_code": promo_svc.serialize_promo(promo)})


@bp.delete("/promo-codes/<int:promo_id>")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def promo_code_deactivate(promo_id: int):
    s = db_session()
    payload = request.get_json(silent=True) or {}
    promo = promo_svc.get_promo_code(s, promo_id)
    promo_svc.deactivate_promo_code(s, promo, current_principal(), reason=(payload.get("reason") or "").strip() or None)
    s.commit()
    return jsonify({"promo_code": promo_svc.serialize_promo(promo)})
