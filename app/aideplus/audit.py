import json
import logging
from typing import TYPE_CHECKING, Any

from flask import g, has_request_context, request
from sqlalchemy.orm import Session

from app.aideplus.models import AuditEvent

if TYPE_CHECKING:
    from app.aideplus.auth import Principal

logger = logging.getLogger(__name__)


def record_event(
    s: Session,
    *,
    actor: "Principal | None",
    action: str,
    entity_type: str | None = None,
    entity_id: str | None = None,
    reason: str | None = None,
    metadata: dict[str, Any] | None = None,
    request_id: str | None = None,
) -> AuditEvent:
    """
    Append-only audit event helper. Written in the caller's transaction, so the
    event commits (or rolls back) together with the change it describes.
    """
    in_request = has_request_context()
    rid = request_id or (getattr(g, "request_id", None) if in_request else None)
    ev = AuditEvent(
        request_id=rid,
        actor_principal_id=actor.id if actor else None,
        actor_email=actor.email if actor else None,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        reason=reason,
        metadata_json=json.dumps(metadata, sort_keys=True, default=str) if metadata else None,
        client_ip=request.remote_addr if in_request else None,
    )
    s.add(ev)
    logger.info(
        "audit action=%s actor=%s entity=%s:%s request_id=%s",
        action,
        actor.email if actor else None,
        entity_type,
        entity_id,
        rid,
    )
    return ev
