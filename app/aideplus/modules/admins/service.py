from __future__ import annotations

from typing import TYPE_CHECKING

from app.aideplus.audit import record_event
from app.aideplus.constants import ADMIN_PERMISSIONS, ADMIN_ROLES, ROLE_SUPER_ADMIN
from app.aideplus.errors import CannotRevokeSelf, NotFound, NotSuperAdmin, TargetIsSuperAdmin, TargetNotFound
from app.aideplus.rbac import is_super_admin
from app.aideplus.utils import utcnow

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.aideplus.auth import Principal
    from app.aideplus.modules.admins.models import AdminRecord


def validate_admin_payload(payload: dict) -> list[str]:
    """Validate an admin grant payload. Returns list of errors."""
    errors = []
    email = (payload.get("email") or "").strip()
    if not email or "@" not in email:
        errors.append("A valid email is required.")
    role = (payload.get("role") or "").strip()
    if role not in ADMIN_ROLES:
        errors.append(f"Invalid role. Must be one of: {', '.join(ADMIN_ROLES)}")
    permissions = payload.get("permissions")
    if permissions is not None:
        if not isinstance(permissions, dict):
            errors.append("permissions must be an object of permission key -> boolean.")
        else:
            unknown = sorted(k for k in permissions if k not in ADMIN_PERMISSIONS)
            if unknown:
                errors.append(f"Unknown permission keys: {', '.join(unknown)}")
            if any(not isinstance(v, bool) for v in permissions.values()):
                errors.append("Permission values must be booleans.")
    return errors


def list_admins(s: "Session", *, role: str | None = None, search: str | None = None) -> list["AdminRecord"]:
    from app.aideplus.models import Profile
    from app.aideplus.modules.admins.models import AdminRecord

    q = s.query(AdminRecord).join(Profile, Profile.id == AdminRecord.principal_id)
    if role:
        q = q.filter(AdminRecord.role == role)
    if search:
        q = q.filter(Profile.email.like(f"%{search.strip().lower()}%"))
    return q.order_by(AdminRecord.created_at.asc(), AdminRecord.id.asc()).all()


def grant_admin(
    s: "Session",
    acting_admin: "AdminRecord",
    actor: "Principal",
    target_email: str,
    role: str,
    permissions: dict[str, bool] | None = None,
) -> "AdminRecord":
    """
    Create or overwrite the target's admin record. super_admin only: holding
    manage_admins in the permission map is not enough.
    """
    from app.aideplus.models import Profile
    from app.aideplus.modules.admins.models import AdminRecord

    if not is_super_admin(acting_admin):
        raise NotSuperAdmin("Only super admins can manage admins.")

    email = target_email.strip().lower()
    target = s.query(Profile).filter(Profile.email == email).one_or_none()
    if target is None:
        raise TargetNotFound(f"No user found with email {email}.")

    # super_admin implies every permission; its stored map is kept empty
    perms = {} if role == ROLE_SUPER_ADMIN else dict(permissions or {})
    now = utcnow()
    record = s.query(AdminRecord).filter(AdminRecord.principal_id == target.id).one_or_none()
    before = None
    if record is None:
        record = AdminRecord(
            principal_id=target.id,
            role=role,
            permissions=perms,
            created_at=now,
            updated_at=now,
            granted_by_principal_id=actor.id,
        )
        s.add(record)
    else:
        if record.role == ROLE_SUPER_ADMIN and role != ROLE_SUPER_ADMIN and count_super_admins(s) <= 1:
            raise TargetIsSuperAdmin("Cannot demote the last super admin.")
        before = {"role": record.role, "permissions": dict(record.permissions or {})}
        record.role = role
        record.permissions = perms
        record.updated_at = now
        record.granted_by_principal_id = actor.id
    s.flush()

    record_event(
        s,
        actor=actor,
        action="admin.grant" if before is None else "admin.update",
        entity_type="AdminRecord",
        entity_id=str(record.id),
        metadata={
            "target_principal_id": target.id,
            "target_email": target.email,
            "before": before,
            "after": {"role": role, "permissions": perms},
        },
    )
    return record


def revoke_admin(s: "Session", acting_admin: "AdminRecord", actor: "Principal", target_admin_id: int, reason: str | None = None) -> None:
    """
    Remove an admin record. Refuses self-revocation and revoking a super_admin,
    so at least one super_admin always remains.
    """
    from app.aideplus.modules.admins.models import AdminRecord

    if not is_super_admin(acting_admin):
        raise NotSuperAdmin("Only super admins can manage admins.")

    target = s.get(AdminRecord, target_admin_id)
    if target is None:
        raise NotFound("Admin not found.")
    if target.id == acting_admin.id or target.principal_id == actor.id:
        raise CannotRevokeSelf()
    if target.role == ROLE_SUPER_ADMIN:
        raise TargetIsSuperAdmin()

    record_event(
        s,
        actor=actor,
        action="admin.revoke",
        entity_type="AdminRecord",
        entity_id=str(target.id),
        reason=reason,
        metadata={
            "target_principal_id": target.principal_id,
            "role": target.role,
            "permissions": dict(target.permissions or {}),
        },
    )
    s.delete(target)
    s.flush()


def count_super_admins(s: "Session") -> int:
    from app.aideplus.modules.admins.models import AdminRecord

    return s.query(AdminRecord).filter(AdminRecord.role == ROLE_SUPER_ADMIN).count()


def serialize_admin(record: "AdminRecord") -> dict:
    from app.aideplus.rbac import effective_permissions

    return {
        "id": record.id,
        "principal_id": record.principal_id,
        "email": record.profile.email if record.profile else None,
        "role": record.role,
        "permissions": dict(record.permissions or {}),
        "effective_permissions": effective_permissions(record),
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "updated_at": record.updated_at.isoformat() if record.updated_at else None,
    }


def ensure_super_admin(s: "Session", email: str, principal_id: str | None = None) -> "AdminRecord":
    """
    Bootstrap path for scripts: make `email` a super_admin without an acting admin.

    The profile normally exists once the user has signed in; when `principal_id` is
    given it is created up front so the record can be seeded before first login.
    """
    from app.aideplus.models import Profile
    from app.aideplus.modules.admins.models import AdminRecord

    email = email.strip().lower()
    now = utcnow()
    profile = s.query(Profile).filter(Profile.email == email).one_or_none()
    if profile is None:
        if not principal_id:
            raise TargetNotFound(f"No user found with email {email}; sign in once or pass the principal id.")
        profile = Profile(id=principal_id, email=email, email_verified=False, created_at=now)
        s.add(profile)
        s.flush()

    record = s.query(AdminRecord).filter(AdminRecord.principal_id == profile.id).one_or_none()
    if record is not None and record.role == ROLE_SUPER_ADMIN:
        return record
    if record is None:
        record = AdminRecord(principal_id=profile.id, role=ROLE_SUPER_ADMIN, permissions={}, created_at=now, updated_at=now)
        s.add(record)
    else:
        record.role = ROLE_SUPER_ADMIN
        record.permissions = {}
        record.updated_at = now
    s.flush()
    record_event(
        s,
        actor=None,
        action="admin.bootstrap_super_admin",
        entity_type="AdminRecord",
        entity_id=str(record.id),
        metadata={"target_principal_id": profile.id, "target_email": email},
    )
    return record
