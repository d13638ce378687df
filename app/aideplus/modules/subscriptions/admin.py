from flask import Blueprint, current_app, jsonify, request

from app.aideplus.auth import current_principal
from app.aideplus.constants import PERM_MANAGE_SUBSCRIPTIONS
from app.aideplus.db import db_session
from app.aideplus.errors import ValidationError
from app.aideplus.modules.subscriptions import service as sub_svc
from app.aideplus.rbac import current_admin, require_permission, require_super_admin

bp = Blueprint("subscriptions_admin", __name__)


@bp.get("/subscriptions")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def subscriptions_list():
    s = db_session()
    status = (request.args.get("status") or "").strip() or None
    tier = (request.args.get("tier") or "").strip() or None
    records = sub_svc.list_subscriptions(s, status=status, tier=tier)
    return jsonify(
        {
            "subscriptions": [sub_svc.serialize_subscription(r) for r in records],
            "total": len(records),
        }
    )


@bp.post("/subscriptions/grant")
@require_super_admin
def subscriptions_grant():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    payload.setdefault("duration_months", 1)
    errors = sub_svc.validate_grant_payload(payload)
    if errors:
        raise ValidationError(errors)
    record = sub_svc.grant(
        s,
        current_admin(),
        current_principal(),
        payload["principal_id"].strip(),
        payload["tier"].strip(),
        payload["duration_months"],
        reason=(payload.get("reason") or "").strip() or None,
    )
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)}), 201


@bp.post("/subscriptions/revoke")
@require_super_admin
def subscriptions_revoke():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    principal_id = (payload.get("principal_id") or "").strip()
    if not principal_id:
        raise ValidationError(["principal_id is required."])
    record = sub_svc.revoke(
        s,
        current_admin(),
        current_principal(),
        principal_id,
        reason=(payload.get("reason") or "").strip() or None,
    )
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)})


@bp.post("/subscriptions/<principal_id>/cancel")
@require_permission(PERM_MANAGE_SUBSCRIPTIONS)
def subscriptions_cancel(principal_id: str):
    s = db_session()
    payload = request.get_json(silent=True) or {}
    record = sub_svc.cancel(
        s,
        principal_id,
        bool(payload.get("immediate")),
        actor=current_principal(),
        provider=current_app.extensions.get("payment_provider"),
        reason=(payload.get("reason") or "").strip() or None,
    )
    s.commit()
    return jsonify({"subscription": sub_svc.serialize_subscription(record)})
