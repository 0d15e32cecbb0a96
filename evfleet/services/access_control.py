# evfleet/services/access_control.py
"""
Module-based role/permission checks.

authorize() answers "may this principal use <verb> on <module>?" from the
role -> module -> permission matrix stored in RolePermission (falling back
to DEFAULT_ROLE_PERMISSIONS for a role with no stored row).
require_role_level() is the coarser hierarchy check used for elevated
operations such as cancelling someone else's deployment.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional

from evfleet.db_models import db, RolePermission
from evfleet.services.errors import AuthorizationDenied
from evfleet.utils.logger import get_audit_logger

ROLE_HIERARCHY = {
    "pilot": 1,
    "employee": 2,
    "admin": 3,
    "super_admin": 4,
}

VERB_PERMISSIONS = {
    "GET": "read",
    "HEAD": "read",
    "POST": "create",
    "PUT": "update",
    "PATCH": "update",
    "DELETE": "delete",
}

ALL_PERMISSIONS = ("create", "read", "update", "delete", "export", "import")

MODULE_ACCESS_DENIED = "module access denied"
INSUFFICIENT_PERMISSION = "insufficient permission"
INSUFFICIENT_ROLE_LEVEL = "insufficient role level"


def _module(name, permissions):
    return {"name": name, "enabled": bool(permissions), "permissions": list(permissions)}


DEFAULT_ROLE_PERMISSIONS = {
    "super_admin": [
        _module("vehicle_deployment", ALL_PERMISSIONS),
        _module("trip_analytics", ALL_PERMISSIONS),
        _module("energy_management", ALL_PERMISSIONS),
        _module("audit_logs", ("read", "export")),
    ],
    "admin": [
        _module("vehicle_deployment", ("create", "read", "update", "delete", "export")),
        _module("trip_analytics", ("create", "read", "update", "delete", "export")),
        _module("energy_management", ("create", "read", "update", "delete", "export")),
        _module("audit_logs", ()),
    ],
    "employee": [
        _module("vehicle_deployment", ("create", "read", "update", "export")),
        _module("trip_analytics", ("read", "export")),
        _module("energy_management", ("create", "read", "update", "export")),
        _module("audit_logs", ()),
    ],
    # Pilots read their deployments and push tracking/status updates for them;
    # ownership is enforced per deployment by can_act_on_deployment().
    "pilot": [
        _module("vehicle_deployment", ("read", "update")),
        _module("trip_analytics", ("read", "export")),
        _module("energy_management", ("read", "export")),
        _module("audit_logs", ()),
    ],
}


@dataclass(frozen=True)
class Principal:
    user_id: Optional[int]
    role: str

    @property
    def level(self) -> int:
        return role_level(self.role)

    @property
    def actor(self) -> str:
        return f"user:{self.user_id}" if self.user_id is not None else f"role:{self.role}"


SYSTEM_PRINCIPAL = Principal(user_id=None, role="super_admin")


@dataclass(frozen=True)
class AccessDecision:
    allowed: bool
    module: str
    permission: Optional[str]
    reason: Optional[str] = None

    def to_error(self) -> AuthorizationDenied:
        return AuthorizationDenied(
            module=self.module,
            permission=self.permission,
            reason=self.reason or INSUFFICIENT_PERMISSION,
        )


def role_level(role: Optional[str]) -> int:
    return ROLE_HIERARCHY.get((role or "").strip().lower(), 0)


def permission_for_verb(verb: str) -> Optional[str]:
    return VERB_PERMISSIONS.get((verb or "").upper())


def load_role_modules(role: str) -> list[dict]:
    row = db.session.query(RolePermission).filter(RolePermission.role == role).one_or_none()
    if row is not None:
        return list(row.modules or [])
    return list(DEFAULT_ROLE_PERMISSIONS.get(role, []))


def check_permission(principal: Principal, module: str, permission: Optional[str], role_modules=None, verb=None) -> AccessDecision:
    if principal.role == "super_admin":
        decision = AccessDecision(True, module, permission)
    else:
        modules = role_modules if role_modules is not None else load_role_modules(principal.role)
        entry = next((m for m in modules if m.get("name") == module), None)

        if entry is None or not entry.get("enabled", False):
            decision = AccessDecision(False, module, permission, MODULE_ACCESS_DENIED)
        elif permission is None or permission not in (entry.get("permissions") or []):
            decision = AccessDecision(False, module, permission, INSUFFICIENT_PERMISSION)
        else:
            decision = AccessDecision(True, module, permission)

    _audit(principal, module, permission, decision, verb=verb)
    return decision


def authorize(principal: Principal, module: str, verb: str, role_modules=None) -> AccessDecision:
    """Map an HTTP-style verb to its permission and check it against the matrix."""
    return check_permission(principal, module, permission_for_verb(verb), role_modules=role_modules, verb=verb)


def require_role_level(role: str, allowed_roles: Iterable[str]) -> bool:
    """True when `role` sits at or above the lowest role in `allowed_roles`."""
    levels = [role_level(r) for r in allowed_roles if role_level(r) > 0]
    if not levels:
        return False
    return role_level(role) >= min(levels)


def can_act_on_deployment(principal: Principal, deployment, action: str) -> Optional[AuthorizationDenied]:
    """Employees and above act on any deployment; anyone else only on their own."""
    if require_role_level(principal.role, ("employee", "admin", "super_admin")):
        return None
    if principal.user_id is not None and principal.user_id == deployment.pilot_id:
        return None
    _audit(
        principal, "vehicle_deployment", action,
        AccessDecision(False, "vehicle_deployment", action, INSUFFICIENT_ROLE_LEVEL),
    )
    return AuthorizationDenied(module="vehicle_deployment", permission=action, reason=INSUFFICIENT_ROLE_LEVEL)


def seed_role_permissions(updated_by: str = "system", overwrite: bool = False) -> dict:
    """Writes DEFAULT_ROLE_PERMISSIONS; existing rows are kept unless overwrite=True."""
    created, updated, skipped = 0, 0, 0
    for role, modules in DEFAULT_ROLE_PERMISSIONS.items():
        row = db.session.query(RolePermission).filter(RolePermission.role == role).one_or_none()
        if row is None:
            db.session.add(RolePermission(role=role, modules=modules, updated_by=updated_by))
            created += 1
        elif overwrite:
            row.modules = modules
            row.updated_by = updated_by
            updated += 1
        else:
            skipped += 1
    db.session.commit()
    return {"created": created, "updated": updated, "skipped": skipped}


def _audit(principal: Principal, module: str, permission: Optional[str], decision: AccessDecision, verb=None):
    get_audit_logger().info(
        "access %s principal=%s role=%s module=%s verb=%s permission=%s reason=%s",
        "ALLOW" if decision.allowed else "DENY",
        principal.user_id, principal.role, module, verb or "-", permission, decision.reason or "-",
    )
