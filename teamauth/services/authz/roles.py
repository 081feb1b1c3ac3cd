from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from teamauth.core.errors import InvalidRoleError


SCOPE_GLOBAL = "global"
SCOPE_ORGANIZATION = "organization"
SCOPE_INDIVIDUAL = "individual"
ROLE_SCOPES = (SCOPE_GLOBAL, SCOPE_ORGANIZATION, SCOPE_INDIVIDUAL)


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    scope: str
    # Higher rank dominates lower rank when granting.
    rank: int
    administrative: bool
    permissions: frozenset[str]


def _perms(*values: str) -> frozenset[str]:
    return frozenset(values)


_USER_ADMIN = ("users:read", "users:create", "users:update", "users:delete")
_INVITATIONS = ("invitations:read", "invitations:create", "invitations:manage")

_DEFINITIONS = (
    RoleDefinition(
        name="super_admin",
        scope=SCOPE_GLOBAL,
        rank=100,
        administrative=True,
        permissions=_perms(
            *_USER_ADMIN,
            *_INVITATIONS,
            "roles:read",
            "roles:assign",
            "roles:manage",
            "system:admin",
            "organizations:read",
            "organizations:manage",
            "service_credentials:read",
            "service_credentials:manage",
            "audit:read",
        ),
    ),
    RoleDefinition(
        name="internal_account_manager",
        scope=SCOPE_GLOBAL,
        rank=70,
        administrative=True,
        permissions=_perms(
            "users:read",
            "users:update",
            "roles:read",
            "roles:assign",
            "organizations:read",
            "organizations:manage",
            "invitations:read",
            "invitations:create",
            "audit:read",
        ),
    ),
    RoleDefinition(
        name="internal_hr",
        scope=SCOPE_GLOBAL,
        rank=50,
        administrative=False,
        permissions=_perms(
            "users:read", "users:update", "organizations:read", "invitations:read", "audit:read"
        ),
    ),
    RoleDefinition(
        name="internal_finance",
        scope=SCOPE_GLOBAL,
        rank=50,
        administrative=False,
        permissions=_perms("users:read", "organizations:read", "billing:read", "billing:manage"),
    ),
    RoleDefinition(
        name="internal_recruiter",
        scope=SCOPE_GLOBAL,
        rank=40,
        administrative=False,
        permissions=_perms("users:read", "organizations:read", "invitations:read", "invitations:create"),
    ),
    RoleDefinition(
        name="internal_marketing",
        scope=SCOPE_GLOBAL,
        rank=30,
        administrative=False,
        permissions=_perms("users:read", "organizations:read"),
    ),
    RoleDefinition(
        name="internal_employee",
        scope=SCOPE_GLOBAL,
        rank=20,
        administrative=False,
        permissions=_perms("users:read", "organizations:read", "audit:read"),
    ),
    RoleDefinition(
        name="client_admin",
        scope=SCOPE_ORGANIZATION,
        rank=60,
        administrative=True,
        permissions=_perms(
            *_USER_ADMIN,
            *_INVITATIONS,
            "roles:read",
            "roles:assign",
            "organizations:read",
            "service_credentials:read",
            "service_credentials:manage",
            "audit:read",
        ),
    ),
    RoleDefinition(
        name="client_hr",
        scope=SCOPE_ORGANIZATION,
        rank=50,
        administrative=False,
        permissions=_perms("users:read", "users:update", "organizations:read", "invitations:read"),
    ),
    RoleDefinition(
        name="client_finance",
        scope=SCOPE_ORGANIZATION,
        rank=50,
        administrative=False,
        permissions=_perms("users:read", "organizations:read", "billing:read"),
    ),
    RoleDefinition(
        name="client_recruiter",
        scope=SCOPE_ORGANIZATION,
        rank=40,
        administrative=False,
        permissions=_perms("users:read", "organizations:read", "invitations:read", "invitations:create"),
    ),
    RoleDefinition(
        name="client_employee",
        scope=SCOPE_ORGANIZATION,
        rank=20,
        administrative=False,
        permissions=_perms("users:read", "organizations:read"),
    ),
    RoleDefinition(
        name="candidate",
        scope=SCOPE_INDIVIDUAL,
        rank=10,
        administrative=False,
        permissions=_perms("profile:read", "profile:update"),
    ),
)

ROLE_DEFINITIONS: dict[str, RoleDefinition] = {definition.name: definition for definition in _DEFINITIONS}
ADMINISTRATIVE_ROLES: frozenset[str] = frozenset(
    definition.name for definition in _DEFINITIONS if definition.administrative
)
ALL_PERMISSIONS: frozenset[str] = frozenset().union(*(d.permissions for d in _DEFINITIONS))

# Historical vocabulary; only the one-time migration script reads this.
LEGACY_ROLE_MAP: dict[str, str] = {
    "admin": "client_admin",
    "account_manager": "internal_account_manager",
    "client_member": "client_employee",
    "internal_member": "internal_employee",
    "hr": "client_hr",
    "recruiter": "client_recruiter",
    "eor": "client_employee",
}
LEGACY_SCOPE_MAP: dict[str, str] = {
    "all": SCOPE_GLOBAL,
    "client": SCOPE_ORGANIZATION,
    "user": SCOPE_INDIVIDUAL,
}


def get_role(role_type: str) -> RoleDefinition:
    # Runtime accepts canonical names only; legacy strings are rejected here.
    normalized = (role_type or "").strip().lower()
    definition = ROLE_DEFINITIONS.get(normalized)
    if definition is None:
        raise InvalidRoleError(f"Unsupported role type: {role_type}")
    return definition


def permissions_for_roles(role_types: Iterable[str]) -> frozenset[str]:
    # Permissions are additive; the union never loses a grant.
    granted: set[str] = set()
    for role_type in role_types:
        definition = ROLE_DEFINITIONS.get(role_type)
        if definition is not None:
            granted |= definition.permissions
    return frozenset(granted)


def highest_rank(role_types: Iterable[str]) -> int:
    # Unknown names and an empty set rank below every defined role.
    return max((ROLE_DEFINITIONS[name].rank for name in role_types if name in ROLE_DEFINITIONS), default=0)


def role_label(role_types: Iterable[str]) -> str | None:
    # Highest-ranked role stands in for the actor in audit entries.
    known = [ROLE_DEFINITIONS[name] for name in role_types if name in ROLE_DEFINITIONS]
    if not known:
        return None
    return max(known, key=lambda definition: (definition.rank, definition.name)).name


def migrate_legacy_role(role_type: str, scope: str | None = None) -> tuple[str, str]:
    """Map a legacy (role, scope) pair onto the canonical vocabulary.

    Canonical values pass through unchanged. The canonical role decides the
    scope; a legacy scope is only checked for consistency.
    """
    normalized = (role_type or "").strip().lower()
    canonical = LEGACY_ROLE_MAP.get(normalized, normalized)
    definition = get_role(canonical)
    if scope is not None:
        mapped_scope = LEGACY_SCOPE_MAP.get(scope.strip().lower(), scope.strip().lower())
        if mapped_scope not in ROLE_SCOPES:
            raise InvalidRoleError(f"Unsupported role scope: {scope}")
    return definition.name, definition.scope
