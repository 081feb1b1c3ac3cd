from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from teamauth.core.errors import ForbiddenError, TokenExpiredError, UnauthenticatedError
from teamauth.core.timeutil import as_utc
from teamauth.domain.models import User
from teamauth.services import identity
from teamauth.services.authz import engine
from teamauth.services.authz.roles import highest_rank, permissions_for_roles, role_label
from teamauth.services.auth.service_credentials import is_valid_scope, scope_allows
from teamauth.services.auth.tokens import TokenClaims, TokenService


SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
# Never serialized to a service caller, at any nesting depth.
SECRET_FIELDS = frozenset(
    {
        "password",
        "password_hash",
        "reset_token",
        "password_reset_token",
        "verification_token",
        "verification_token_hash",
        "client_secret",
        "secret_hash",
        "token_hash",
        "refresh_token",
    }
)

# Serializers may emit camelCase; compare keys with separators dropped.
_SECRET_KEYS = frozenset(name.replace("_", "") for name in SECRET_FIELDS)

PRINCIPAL_USER = "user"
PRINCIPAL_SERVICE = "service"


@dataclass(frozen=True)
class AccessPolicy:
    """What an endpoint demands of its caller.

    ``required_scope`` opts the endpoint in for service tokens; without it
    service tokens are refused. Roles are any-of, permissions all-of.
    """

    required_scope: str | None = None
    required_roles: frozenset[str] = frozenset()
    required_permissions: frozenset[str] = frozenset()
    # Endpoint-specific predicates appended after the base chain.
    checks: tuple["GuardCheck", ...] = ()

    def __post_init__(self) -> None:
        # Scopes are read-only; a write scope cannot even be declared.
        if self.required_scope is not None and not is_valid_scope(self.required_scope):
            raise ValueError(f"Unsupported endpoint scope: {self.required_scope}")


@dataclass(frozen=True)
class Principal:
    kind: str
    subject_id: str
    audience: str
    token_id: str
    organization_id: str | None = None
    roles: frozenset[str] = frozenset()
    permissions: frozenset[str] = frozenset()
    scopes: frozenset[str] = frozenset()
    session_id: str | None = None
    client_name: str | None = None

    @property
    def is_service(self) -> bool:
        return self.kind == PRINCIPAL_SERVICE

    @property
    def user_id(self) -> str | None:
        return None if self.is_service else self.subject_id

    @property
    def role_label(self) -> str | None:
        if self.is_service:
            return PRINCIPAL_SERVICE
        return role_label(self.roles)


@dataclass
class GuardContext:
    session: AsyncSession
    credential: str | None
    policy: AccessPolicy
    audience: str
    is_write: bool
    claims: TokenClaims | None = None
    principal: Principal | None = None
    path_params: dict[str, Any] = field(default_factory=dict)


GuardCheck = Callable[[GuardContext], Awaitable[None]]


def is_write_method(method: str) -> bool:
    return method.upper() not in SAFE_METHODS


def _normalize_key(key: Any) -> str:
    return str(key).replace("_", "").replace("-", "").lower()


def sanitize_payload(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: sanitize_payload(item) for key, item in value.items() if _normalize_key(key) not in _SECRET_KEYS}
    if isinstance(value, list):
        return [sanitize_payload(item) for item in value]
    return value


def sanitize_for_principal(principal: Principal | None, payload: Any) -> Any:
    if principal is None or not principal.is_service:
        return payload
    return sanitize_payload(payload)


class AccessGuard:
    """Request-time authorization built as an ordered chain of checks.

    authenticate -> resolve_scope -> resolve_role. Each check either
    enriches the context or raises a typed error; the first failure wins.
    """

    def __init__(self, token_service: TokenService, permission_cache: engine.PermissionCache) -> None:
        self.token_service = token_service
        self.permission_cache = permission_cache

    def chain_for(self, policy: AccessPolicy) -> list[GuardCheck]:
        return [self.authenticate, self.resolve_scope, self.resolve_role, *policy.checks]

    def new_context(
        self,
        session: AsyncSession,
        credential: str | None,
        policy: AccessPolicy,
        *,
        audience: str,
        method: str,
        path_params: dict[str, Any] | None = None,
    ) -> GuardContext:
        return GuardContext(
            session=session,
            credential=credential,
            policy=policy,
            audience=audience,
            is_write=is_write_method(method),
            path_params=dict(path_params or {}),
        )

    async def run(self, ctx: GuardContext) -> Principal:
        # On failure ctx keeps whatever the earlier checks established, for auditing.
        for check in self.chain_for(ctx.policy):
            await check(ctx)
        if ctx.principal is None:
            raise UnauthenticatedError()
        return ctx.principal

    async def authorize(
        self,
        session: AsyncSession,
        credential: str | None,
        policy: AccessPolicy,
        *,
        audience: str,
        method: str,
        path_params: dict[str, Any] | None = None,
    ) -> Principal:
        ctx = self.new_context(
            session, credential, policy, audience=audience, method=method, path_params=path_params
        )
        return await self.run(ctx)

    async def authenticate(self, ctx: GuardContext) -> None:
        if not ctx.credential:
            raise UnauthenticatedError()
        claims = self.token_service.validate(ctx.credential, audience=ctx.audience)
        ctx.claims = claims
        if claims.is_service:
            return
        user = await ctx.session.get(User, claims.subject)
        if user is None or user.status != "active":
            raise UnauthenticatedError("Session is no longer valid")
        revoked_at = as_utc(user.sessions_revoked_at)
        # iat has whole-second precision, so a token minted in the revocation second is rejected too.
        if revoked_at is not None and claims.issued_at.timestamp() <= revoked_at.timestamp():
            raise TokenExpiredError("Session revoked")

    async def resolve_scope(self, ctx: GuardContext) -> None:
        claims = ctx.claims
        if claims is None or not claims.is_service:
            return
        # Enforced here for every endpoint: services never write.
        if ctx.is_write:
            raise ForbiddenError("Service tokens cannot perform write operations")
        required = ctx.policy.required_scope
        if required is None:
            raise ForbiddenError("Endpoint does not accept service tokens")
        if not scope_allows(claims.scopes, required):
            raise ForbiddenError(f"Service token lacks scope {required}")
        ctx.principal = Principal(
            kind=PRINCIPAL_SERVICE,
            subject_id=claims.subject,
            audience=claims.audience,
            token_id=claims.token_id,
            scopes=frozenset(claims.scopes),
            client_name=claims.client_name,
        )

    async def resolve_role(self, ctx: GuardContext) -> None:
        claims = ctx.claims
        if claims is None or claims.is_service:
            return
        # Roles are re-read per request; the token snapshot is informational.
        resolved = await engine.resolve_permissions(
            ctx.session,
            claims.subject,
            claims.organization_id,
            cache=self.permission_cache,
        )
        policy = ctx.policy
        if policy.required_roles and not (policy.required_roles & resolved.role_types):
            raise ForbiddenError("Missing required role")
        missing = policy.required_permissions - resolved.permissions
        if missing:
            raise ForbiddenError("Missing required permission")
        ctx.principal = Principal(
            kind=PRINCIPAL_USER,
            subject_id=claims.subject,
            audience=claims.audience,
            token_id=claims.token_id,
            organization_id=claims.organization_id,
            roles=resolved.role_types,
            permissions=resolved.permissions,
            session_id=claims.session_id,
            client_name=claims.client_name,
        )


async def authority_scope(session: AsyncSession, principal: Principal, permission: str) -> str | None:
    """Where ``principal`` may exercise ``permission``.

    None means everywhere: a service, or a user holding the permission
    through a global role. Otherwise the answer is the organization the
    session is bound to, and the caller is confined to its members.
    """
    if principal.is_service:
        return None
    if permission in permissions_for_roles(await engine.global_role_types(session, principal.subject_id)):
        return None
    if principal.organization_id is None or permission not in principal.permissions:
        raise ForbiddenError("Missing required permission")
    return principal.organization_id


def _granting_rank(role_types: frozenset[str], permission: str) -> int:
    return highest_rank(name for name in role_types if permission in permissions_for_roles((name,)))


async def require_authority_over(
    session: AsyncSession,
    principal: Principal,
    target_user_id: str,
    permission: str,
    *,
    rank_bound: bool = True,
) -> None:
    """Refuse ``principal`` acting on another user with ``permission``.

    Organization-scoped holders only reach members of their session's
    organization. With ``rank_bound`` the target may hold no role ranked
    above the strongest role through which the caller holds the permission.
    """
    if principal.is_service:
        return
    held_globally = await engine.global_role_types(session, principal.subject_id)
    if permission in permissions_for_roles(held_globally):
        ceiling = _granting_rank(held_globally, permission)
    else:
        organization_id = await authority_scope(session, principal, permission)
        if organization_id not in await identity.organization_memberships(session, user_id=target_user_id):
            raise ForbiddenError("Target user is outside the caller's organization")
        ceiling = _granting_rank(principal.roles, permission)
    if rank_bound and await engine.highest_held_rank(session, target_user_id) > ceiling:
        raise ForbiddenError("Target user holds a role above the caller's")


def managed_target(
    permission: str,
    *,
    param: str = "user_id",
    allow_self: bool = False,
    rank_bound: bool = True,
) -> GuardCheck:
    """Require authority over the user named by the ``param`` path parameter.

    With ``allow_self`` a user acting on their own record needs nothing more.
    Service principals already passed the scope check and are not affected.
    """

    async def check(ctx: GuardContext) -> None:
        principal = ctx.principal
        if principal is None or principal.is_service:
            return
        target_user_id = ctx.path_params.get(param)
        if allow_self and target_user_id == principal.subject_id:
            return
        if permission not in principal.permissions:
            raise ForbiddenError("Missing required permission")
        if target_user_id is not None:
            await require_authority_over(
                ctx.session, principal, str(target_user_id), permission, rank_bound=rank_bound
            )

    return check
