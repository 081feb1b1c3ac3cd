from __future__ import annotations

from typing import Any


class TeamAuthError(Exception):
    """Base error for teamauth.

    Subclasses carry a stable ``code`` and an HTTP ``status_code`` so the API
    layer can render them without inspecting messages.
    """

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Internal error"

    def __init__(self, message: str | None = None, *, details: dict[str, Any] | None = None) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)


class ConfigError(TeamAuthError):
    """Invalid configuration detected at process start."""

    code = "CONFIG_ERROR"


class NotFoundError(TeamAuthError):
    """Identity, role or assignment lookup miss."""

    code = "NOT_FOUND"
    status_code = 404
    default_message = "Resource not found"


class ConflictError(TeamAuthError):
    """Uniqueness constraint would be violated."""

    code = "CONFLICT"
    status_code = 409
    default_message = "Resource already exists"


class ForbiddenError(TeamAuthError):
    """Authenticated caller lacks the required role, scope or grant authority."""

    code = "AUTH_FORBIDDEN"
    status_code = 403
    default_message = "Forbidden"


class UnauthenticatedError(TeamAuthError):
    """No usable credential was presented."""

    code = "AUTH_UNAUTHORIZED"
    status_code = 401
    default_message = "Authentication required"


class InvalidCredentialsError(TeamAuthError):
    """Login failed; never says which part was wrong."""

    code = "AUTH_INVALID_CREDENTIALS"
    status_code = 401
    default_message = "Invalid email or password"


class TokenError(TeamAuthError):
    """Base class for token validation failures."""

    code = "TOKEN_INVALID"
    status_code = 401
    default_message = "Invalid token"


class TokenExpiredError(TokenError):
    code = "TOKEN_EXPIRED"
    default_message = "Token expired"


class TokenMalformedError(TokenError):
    code = "TOKEN_MALFORMED"
    default_message = "Token malformed"


class AudienceMismatchError(TokenError):
    code = "TOKEN_AUDIENCE_MISMATCH"
    default_message = "Token not valid for this audience"


class InvalidClientError(TeamAuthError):
    """Unknown service client or secret mismatch."""

    code = "INVALID_CLIENT"
    status_code = 401
    default_message = "Invalid client credentials"


class ScopeNotGrantedError(TeamAuthError):
    """A requested scope is outside the credential's allow-list."""

    code = "SCOPE_NOT_GRANTED"
    status_code = 400
    default_message = "Requested scope not granted"


class CannotRemovePrimaryError(TeamAuthError):
    code = "EMAIL_PRIMARY_NOT_REMOVABLE"
    status_code = 400
    default_message = "Primary email cannot be removed"


class NotVerifiedError(TeamAuthError):
    code = "EMAIL_NOT_VERIFIED"
    status_code = 400
    default_message = "Email must be verified first"


class InvalidKindError(TeamAuthError):
    code = "EMAIL_INVALID_KIND"
    status_code = 400
    default_message = "Invalid email kind"


class ScopeMismatchError(TeamAuthError):
    """Role scope and scope-entity id disagree."""

    code = "ROLE_SCOPE_MISMATCH"
    status_code = 400
    default_message = "Role scope does not match scope entity"


class InvalidRoleError(TeamAuthError):
    """Role type outside the canonical vocabulary."""

    code = "ROLE_INVALID"
    status_code = 400
    default_message = "Unsupported role type"


class CursorError(TeamAuthError):
    code = "INVALID_CURSOR"
    status_code = 400
    default_message = "Invalid cursor"


class ProviderUnavailableError(TeamAuthError):
    """Identity provider keys could not be fetched."""

    code = "PROVIDER_UNAVAILABLE"
    status_code = 502
    default_message = "Identity provider unavailable"


class InvalidEmailError(TeamAuthError):
    code = "EMAIL_INVALID"
    status_code = 400
    default_message = "Invalid email address"


class InvalidRedirectError(TeamAuthError):
    """Redirect URI not registered for the client; never redirected to."""

    code = "INVALID_REDIRECT_URI"
    status_code = 400
    default_message = "Redirect URI is not registered for this client"


class InvalidAuthorizationRequestError(TeamAuthError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid authorization request"


class InvalidGrantError(TeamAuthError):
    """Authorization code unknown, spent, expired or bound to something else."""

    code = "INVALID_GRANT"
    status_code = 400
    default_message = "Invalid authorization code"
