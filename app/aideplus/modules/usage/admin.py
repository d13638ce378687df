from flask import Blueprint, jsonify, request

from app.aideplus.constants import PERM_MANAGE_USERS
from app.aideplus.db import db_session
from app.aideplus.modules.usage import service as usage_svc
from app.aideplus.rbac import require_permission

bp = Blueprint("usage_admin", __name__)


@bp.get("/usage/<principal_id>")
@require_permission(PERM_MANAGE_USERS)
def usage_detail(principal_id: str):
    """Current-period summary plus every recorded period, newest first."""
    s = db_session()
    kind = (request.args.get("resource_kind") or "").strip() or None
    history = usage_svc.usage_history(s, principal_id, kind)
    return jsonify(
        {
            "principal_id": principal_id,
            "summary": usage_svc.usage_summary(s, principal_id),
            "history": [usage_svc.serialize_usage_record(r) for r in history],
        }
    )
