"""
Admin permission resolution and route guards.

Two rules are deliberately not expressible through the permission map:
- super_admin holds every permission, whatever its stored map says.
- admin management and complimentary/financial grants are super_admin-only,
  even for admins whose map contains manage_admins or manage_subscriptions.
"""
from __future__ import annotations

from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import g
from sqlalchemy.orm import Session

from app.aideplus.auth import Principal, current_principal
from app.aideplus.constants import ADMIN_PERMISSIONS, ROLE_SUPER_ADMIN, TIER_RANK
from app.aideplus.db import db_session
from app.aideplus.errors import Forbidden, NotSuperAdmin
from app.aideplus.modules.admins.models import AdminRecord


def resolve_admin(s: Session, principal: Principal) -> AdminRecord | None:
    """The principal's admin record, or None when they are not an admin."""
    return s.query(AdminRecord).filter(AdminRecord.principal_id == principal.id).one_or_none()


def is_super_admin(admin: AdminRecord | None) -> bool:
    return bool(admin and admin.role == ROLE_SUPER_ADMIN)


def has_permission(admin: AdminRecord | None, permission_key: str) -> bool:
    if admin is None:
        return False
    if admin.role == ROLE_SUPER_ADMIN:
        return True
    # closed world: unknown keys and non-True values never grant access
    return (admin.permissions or {}).get(permission_key) is True


def effective_permissions(admin: AdminRecord | None) -> dict[str, bool]:
    """Every known permission key resolved for this admin (what the UI should gate on)."""
    return {key: has_permission(admin, key) for key in ADMIN_PERMISSIONS}


def current_admin() -> AdminRecord:
    """Admin record for the authenticated principal; Forbidden when there is none."""
    admin: AdminRecord | None = getattr(g, "admin", None)
    if admin is not None:
        return admin
    principal = current_principal()
    admin = resolve_admin(db_session(), principal)
    if admin is None:
        raise Forbidden("Admin access required.")
    g.admin = admin
    return admin


def require_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        current_admin()
        return fn(*args, **kwargs)

    return wrapped


def require_permission(permission_key: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            # Unauthenticated -> 401, authenticated non-admin or missing permission -> 403
            admin = current_admin()
            if not has_permission(admin, permission_key):
                g.missing_permission = permission_key
                raise Forbidden(f"Permission required: {permission_key}", missing_permission=permission_key)
            return fn(*args, **kwargs)

        return wrapped

    return decorator


def require_super_admin(fn: Callable[..., Any]) -> Callable[..., Any]:
    @wraps(fn)
    def wrapped(*args: Any, **kwargs: Any):
        if not is_super_admin(current_admin()):
            raise NotSuperAdmin()
        return fn(*args, **kwargs)

    return wrapped


def require_tier(min_tier: str) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Gate a consumer route on the principal's effective tier."""
    required = TIER_RANK[min_tier]

    def decorator(fn: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(fn)
        def wrapped(*args: Any, **kwargs: Any):
            from app.aideplus.modules.subscriptions.service import effective_tier_for

            principal = current_principal()
            tier = effective_tier_for(db_session(), principal.id)
            if TIER_RANK[tier] < required:
                raise Forbidden(
                    f"This feature requires the {min_tier} plan or higher.",
                    required_tier=min_tier,
                    current_tier=tier,
                    upgrade_required=True,
                )
            return fn(*args, **kwargs)

        return wrapped

    return decorator
