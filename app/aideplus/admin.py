import json
from datetime import date, datetime, time, timedelta

from flask import Blueprint, jsonify, request

from app.aideplus.db import db_session
from app.aideplus.errors import ValidationError
from app.aideplus.models import AuditEvent
from app.aideplus.rbac import require_super_admin

bp = Blueprint("audit", __name__)

AUDIT_PAGE_LIMIT = 200


def _parse_date(s: str) -> date | None:
    s = (s or "").strip()
    if not s:
        return None
    try:
        return datetime.strptime(s, "%Y-%m-%d").date()
    except ValueError:
        return None


def serialize_audit_event(e: AuditEvent) -> dict:
    return {
        "id": e.id,
        "created_at": e.created_at.isoformat(),
        "request_id": e.request_id,
        "actor_principal_id": e.actor_principal_id,
        "actor_email": e.actor_email,
        "action": e.action,
        "entity_type": e.entity_type,
        "entity_id": e.entity_id,
        "reason": e.reason,
        "metadata": json.loads(e.metadata_json) if e.metadata_json else None,
        "client_ip": e.client_ip,
    }


@bp.get("/audit-events")
@require_super_admin
def audit_list():
    """
    Audit trail (last 200 events) with simple filters:
    - action (contains)
    - actor_email (contains)
    - entity_type / entity_id (exact)
    - date range (YYYY-MM-DD, inclusive)
    """
    s = db_session()
    action = (request.args.get("action") or "").strip()
    actor_email = (request.args.get("actor_email") or "").strip()
    entity_type = (request.args.get("entity_type") or "").strip()
    entity_id = (request.args.get("entity_id") or "").strip()
    date_from = _parse_date(request.args.get("date_from") or "")
    date_to = _parse_date(request.args.get("date_to") or "")

    errors = []
    if (request.args.get("date_from") or "").strip() and not date_from:
        errors.append("date_from must be YYYY-MM-DD")
    if (request.args.get("date_to") or "").strip() and not date_to:
        errors.append("date_to must be YYYY-MM-DD")
    if errors:
        raise ValidationError(errors)

    q = s.query(AuditEvent)
    if action:
        q = q.filter(AuditEvent.action.like(f"%{action}%"))
    if actor_email:
        q = q.filter(AuditEvent.actor_email.like(f"%{actor_email.lower()}%"))
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id:
        q = q.filter(AuditEvent.entity_id == entity_id)
    if date_from:
        q = q.filter(AuditEvent.created_at >= datetime.combine(date_from, time.min))
    if date_to:
        q = q.filter(AuditEvent.created_at < datetime.combine(date_to + timedelta(days=1), time.min))

    events = q.order_by(AuditEvent.created_at.desc(), AuditEvent.id.desc()).limit(AUDIT_PAGE_LIMIT).all()
    return jsonify({"events": [serialize_audit_event(e) for e in events]})
