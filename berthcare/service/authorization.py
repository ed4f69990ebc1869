"""Role and permission checks shared by protected routes."""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, Optional, Union

from berthcare.storage.models import Role

WILDCARD = "*"

# Action-resource permission identifiers, e.g. ``create:visit``
ROLE_PERMISSIONS: Dict[Role, FrozenSet[str]] = {
    Role.CAREGIVER: frozenset(
        {
            "read:clients",
            "read:care-plans",
            "read:visits",
            "read:schedules",
            "create:visit",
            "update:visit",
            "update:visit-documentation",
            "delete:visit-draft",
            "create:visit-note",
            "create:alert",
            "resolve:alert",
            "create:message",
        }
    ),
    Role.COORDINATOR: frozenset(
        {
            "read:clients",
            "read:care-plans",
            "read:visits",
            "read:schedules",
            "create:visit",
            "update:visit",
            "update:visit-documentation",
            "delete:visit-draft",
            "create:visit-note",
            "create:alert",
            "resolve:alert",
            "delete:alert",
            "create:client",
            "update:client",
            "create:care-plan",
            "update:care-plan",
            "create:schedule",
            "update:schedule",
            "create:user",
        }
    ),
    Role.ADMIN: frozenset({WILDCARD}),
    Role.FAMILY: frozenset(
        {"read:clients", "read:care-plans", "read:visits", "read:schedules", "create:message"}
    ),
}


def _as_list(value: Union[str, Iterable[str]]) -> list:
    if isinstance(value, str):
        return [value]
    return list(value)


def role_permissions(role: Role) -> FrozenSet[str]:
    return ROLE_PERMISSIONS.get(Role(role), frozenset())


def has_role(role: Optional[Role], allowed: Union[Role, Iterable[Role]]) -> bool:
    if role is None:
        return False
    roles = [allowed] if isinstance(allowed, Role) else list(allowed)
    return bool(roles) and Role(role) in {Role(r) for r in roles}


def has_permission(role: Optional[Role], required: Union[str, Iterable[str]]) -> bool:
    """True when ``role`` grants every permission in ``required``."""
    if role is None:
        return False
    needed = _as_list(required)
    if not needed:
        return False
    granted = role_permissions(role)
    if WILDCARD in granted:
        return True
    return all(permission in granted for permission in needed)


def zone_access_allowed(
    role: Optional[Role], principal_zone: Optional[str], resource_zone: Optional[str]
) -> bool:
    """Admins cross zones; everyone else must match the resource's zone."""
    if role is None:
        return False
    if Role(role) == Role.ADMIN:
        return True
    if resource_zone is None:
        return True
    return principal_zone is not None and principal_zone == resource_zone
