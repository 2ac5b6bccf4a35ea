from __future__ import annotations

from typing import Iterable, Tuple

from api.authentication import Principal

PERM_NEED_VIEW = "supplies.need.view"
PERM_NEED_CREATE = "supplies.need.create"
PERM_NEED_REVIEW = "supplies.need.review"
PERM_NEED_CONFIRM = "supplies.need.confirm"
PERM_NEED_SUPERVISE = "supplies.need.supervise"
PERM_NEED_COLLECT = "supplies.need.collect"
PERM_NEED_MATCH = "supplies.need.match"

PERM_BATCH_VIEW = "supplies.batch.view"
PERM_BATCH_CREATE = "supplies.batch.create"
PERM_BATCH_APPROVE = "supplies.batch.approve"

PERM_REGISTRATION_VIEW = "activities.registration.view"
PERM_REGISTRATION_REVIEW = "activities.registration.review"

_STAFF_PERMISSIONS = {
    PERM_NEED_VIEW,
    PERM_NEED_CREATE,
    PERM_NEED_REVIEW,
    PERM_NEED_CONFIRM,
    PERM_NEED_COLLECT,
    PERM_NEED_MATCH,
    PERM_BATCH_VIEW,
    PERM_BATCH_CREATE,
    PERM_REGISTRATION_VIEW,
    PERM_REGISTRATION_REVIEW,
}

_ROLE_PERMISSION_MAP = {
    "STAFF": _STAFF_PERMISSIONS,
    "SUPERVISOR": _STAFF_PERMISSIONS
    | {
        PERM_NEED_SUPERVISE,
        PERM_BATCH_APPROVE,
    },
    "VIEWER": {
        PERM_NEED_VIEW,
        PERM_BATCH_VIEW,
        PERM_REGISTRATION_VIEW,
    },
}

# Legacy role spellings issued by the admin UI.
_ROLE_ALIASES = {
    "WORKER": "STAFF",
    "EMPLOYEE": "STAFF",
    "員工": "STAFF",
    "ADMIN": "SUPERVISOR",
    "主管": "SUPERVISOR",
}


def _dedupe_preserve_order(items: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(items))


def _normalize_role(role: object) -> str:
    text = str(role or "").strip()
    upper = text.upper()
    return _ROLE_ALIASES.get(upper, _ROLE_ALIASES.get(text, upper))


def resolve_roles_and_permissions(
    request, principal: Principal
) -> Tuple[list[str], list[str]]:
    if hasattr(request, "_rbac_cache"):
        cached = request._rbac_cache
        return cached["roles"], cached["permissions"]

    roles: list[str] = _dedupe_preserve_order(
        _normalize_role(role) for role in (principal.roles or []) if str(role or "").strip()
    )
    permissions: list[str] = list(getattr(principal, "permissions", []) or [])
    permissions = _dedupe_preserve_order(
        list(permissions) + sorted(_permissions_for_roles(roles))
    )

    request._rbac_cache = {"roles": roles, "permissions": permissions}
    return roles, permissions


def _permissions_for_roles(roles: Iterable[str]) -> set[str]:
    permissions: set[str] = set()
    for role in roles:
        permissions |= _ROLE_PERMISSION_MAP.get(role.upper(), set())
    return permissions
