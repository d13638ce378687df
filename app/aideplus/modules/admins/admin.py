from flask import Blueprint, jsonify, request

from app.aideplus.auth import current_principal
from app.aideplus.db import db_session
from app.aideplus.errors import ValidationError
from app.aideplus.modules.admins import service as admin_svc
from app.aideplus.rbac import current_admin, require_super_admin

bp = Blueprint("admins", __name__)


@bp.get("/admins")
@require_super_admin
def admins_list():
    s = db_session()
    role = (request.args.get("role") or "").strip() or None
    search = (request.args.get("search") or "").strip() or None
    admins = admin_svc.list_admins(s, role=role, search=search)
    return jsonify({"admins": [admin_svc.serialize_admin(a) for a in admins], "total": len(admins)})


@bp.post("/admins")
@require_super_admin
def admins_grant():
    s = db_session()
    payload = request.get_json(silent=True) or {}
    errors = admin_svc.validate_admin_payload(payload)
    if errors:
        raise ValidationError(errors)

    record = admin_svc.grant_admin(
        s,
        current_admin(),
        current_principal(),
        payload["email"],
        payload["role"].strip(),
        payload.get("permissions"),
    )
    s.commit()
    return jsonify({"admin": admin_svc.serialize_admin(record)}), 201


@bp.delete("/admins/<int:admin_id>")
@require_super_admin
def admins_revoke(admin_id: int):
    s = db_session()
    payload = request.get_json(silent=True) or {}
    reason = (payload.get("reason") or "").strip() or None
    admin_svc.revoke_admin(s, current_admin(), current_principal(), admin_id, reason=reason)
    s.commit()
    return jsonify({"success": True})
