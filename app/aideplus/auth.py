from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import wraps
from typing import Any

from flask import Blueprint, current_app, g, jsonify, request

from app.aideplus.audit import record_event
from app.aideplus.db import db_session, insert_ignore_conflicts
from app.aideplus.errors import Forbidden, ServiceUnavailable, Unauthenticated, ValidationError
from app.aideplus.models import Profile
from app.aideplus.utils import utcnow

bp = Blueprint("auth", __name__)
logger = logging.getLogger(__name__)

_login_attempts: dict[str, list[datetime]] = defaultdict(list)
_LOGIN_RATE_LIMIT = 5
_LOGIN_RATE_WINDOW = 300  # seconds


@dataclass(frozen=True)
class Principal:
    """Identity returned by the identity provider. Read-only to this service."""

    id: str
    email: str
    email_verified: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "email": self.email, "email_verified": self.email_verified}


def _identity_provider():
    provider = current_app.extensions.get("identity_provider")
    if provider is None:
        raise ServiceUnavailable("Identity provider is not configured.")
    return provider


def authenticate(credential: str | None) -> Principal:
    """
    Verify a bearer credential with the identity provider.

    Raises Unauthenticated when the provider rejects the credential and
    ServiceUnavailable when it cannot be reached.
    """
    if not credential:
        raise Unauthenticated("No token provided.")
    user = _identity_provider().get_user(credential)
    email = (user.get("email") or "").strip().lower()
    if not email:
        raise Unauthenticated("Identity has no email address.")
    return Principal(
        id=str(user["id"]),
        email=email,
        email_verified=bool(user.get("email_confirmed_at") or user.get("email_verified")),
    )


def bearer_token() -> str | None:
    header = request.headers.get("Authorization") or ""
    if not header.startswith("Bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


def sync_profile(s, principal: Principal) -> Profile:
    """Upsert the local profile mirror for a verified principal."""
    now = utcnow()
    s.execute(
        insert_ignore_conflicts(
            s,
            Profile.__table__,
            {
                "id": principal.id,
                "email": principal.email,
                "email_verified": principal.email_verified,
                "created_at": now,
                "last_seen_at": now,
            },
            index_elements=["id"],
        )
    )
    profile = s.get(Profile, principal.id, populate_existing=True)
    if profile.email != principal.email or profile.email_verified != principal.email_verified:
        profile.email = principal.email
        profile.email_verified = principal.email_verified
    profile.last_seen_at = now
    s.commit()
    return profile


def load_request_context() -> None:
    """
    Assigns a per-request request_id (for audit/log correlation) and resets the
    principal slot. Authentication itself happens lazily in current_principal().
    """
    if not getattr(g, "request_id", None):
        g.request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex
    g.principal = None
    g.admin = None


def current_principal() -> Principal:
    """
    The authenticated principal for this request. Verified against the provider
    once per request; never carried over between requests.
    """
    principal: Principal | None = getattr(g, "principal", None)
    if principal is not None:
        return principal
    principal = authenticate(bearer_token())
    sync_profile(db_session(), principal)
    g.principal = principal
    return principal


def require_principal(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_principal()
        return fn(*args, **kwargs)

    return wrapped


def _check_rate_limit(ip: str) -> bool:
    now = utcnow()
    cutoff = now - timedelta(seconds=_LOGIN_RATE_WINDOW)
    recent = [t for t in _login_attempts.get(ip, ()) if t > cutoff]
    if not recent:
        _login_attempts.pop(ip, None)
        return False
    _login_attempts[ip] = recent
    return len(recent) >= _LOGIN_RATE_LIMIT


def _record_attempt(ip: str) -> None:
    _login_attempts[ip].append(utcnow())


@bp.get("/me")
@require_principal
def me():
    return jsonify({"principal": g.principal.to_dict()})


@bp.post("/admin/session")
def admin_session():
    """
    Admin login check: captcha (when configured) -> credential -> admin record.
    The client holds the provider session; this endpoint only confirms admin access.
    """
    from app.aideplus.rbac import effective_permissions, resolve_admin

    ip = request.remote_addr or "unknown"
    if _check_rate_limit(ip):
        return jsonify({"error": "rate_limited", "message": "Too many login attempts. Please wait 5 minutes."}), 429
    _record_attempt(ip)

    verifier = current_app.extensions.get("captcha_verifier")
    if verifier is not None:
        payload = request.get_json(silent=True) or {}
        token = payload.get("hcaptcha_token") or request.headers.get("X-Hcaptcha-Token")
        if not token:
            raise ValidationError(["hCaptcha token is required."])
        result = verifier.verify(token, remote_ip=ip)
        if not result.success:
            return jsonify({"error": "captcha_failed", "message": "hCaptcha verification failed."}), 400

    principal = current_principal()
    s = db_session()
    admin = resolve_admin(s, principal)
    if admin is None:
        record_event(
            s,
            actor=principal,
            action="admin.login_denied",
            entity_type="Profile",
            entity_id=principal.id,
            reason="Not an admin",
        )
        s.commit()
        raise Forbidden("Admin access required.")

    _login_attempts.pop(ip, None)
    record_event(s, actor=principal, action="admin.login", entity_type="AdminRecord", entity_id=str(admin.id))
    s.commit()
    return jsonify(
        {
            "principal": principal.to_dict(),
            "admin": {
                "id": admin.id,
                "role": admin.role,
                "permissions": effective_permissions(admin),
            },
        }
    )
