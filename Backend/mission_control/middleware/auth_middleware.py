"""JWT authentication and role checks for HTTP routes and the websocket handshake."""
from __future__ import annotations

from typing import Optional, List
import logging

from fastapi import Request, Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from mission_control.config import Settings
from mission_control.schemas.auth import UserRole
from mission_control.utils.errors import ApiError
from mission_control.utils.security import AuthError, decode_token, extract_bearer_token


logger = logging.getLogger(__name__)

# Only used so the OpenAPI docs show the bearer scheme; the header is parsed below.
bearer_scheme = HTTPBearer(auto_error=False)


class AuthContext:
    """Identity established from a verified access token."""
    def __init__(self, user_id: str, username: str, role: UserRole):
        self.user_id = user_id
        self.username = username
        self.role = role

    def has_role(self, roles: List[UserRole]) -> bool:
        return self.role in roles


def verify_access_token(token: Optional[str], settings: Settings) -> AuthContext:
    """
    Identity verifier shared by HTTP routes and the websocket stream.
    Raises AuthError when the token is missing, malformed, expired or carries an unknown role.
    """
    if not token:
        raise AuthError("Authorization token required", code="NO_TOKEN")

    payload = decode_token(token, settings)
    try:
        role = UserRole(payload["role"])
    except ValueError:
        raise AuthError("Unknown role in token")

    return AuthContext(
        user_id=str(payload["sub"]),
        username=str(payload.get("username") or ""),
        role=role,
    )


# ---------- JWT ----------

async def get_current_user_optional(
    request: Request,
    _credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Optional[AuthContext]:
    """
    Try to authenticate via JWT bearer token.
    Returns None if missing/invalid.
    """
    token = extract_bearer_token(request.headers.get("authorization"))
    if not token:
        return None
    try:
        ctx = verify_access_token(token, request.app.state.settings)
    except AuthError:
        return None
    request.state.auth = ctx
    return ctx


async def get_current_user(
    request: Request,
    _credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    """
    Strict version for endpoints that REQUIRE JWT user auth.
    """
    header = request.headers.get("authorization")
    if not header:
        raise ApiError(
            401, "NO_TOKEN", "Authorization token required",
            "Include Authorization: Bearer <token> header",
        )

    token = extract_bearer_token(header)
    if not token:
        raise ApiError(401, "INVALID_TOKEN", "Invalid authorization header format", "Use format: Bearer <token>")

    try:
        ctx = verify_access_token(token, request.app.state.settings)
    except AuthError as e:
        logger.warning("Token verification failed: %s", e)
        raise ApiError(401, "INVALID_TOKEN", "Invalid or expired token", str(e))

    request.state.auth = ctx
    return ctx


# ---------- RBAC ----------

class RoleChecker:
    """Dependency class for role-based access control."""
    def __init__(self, allowed_roles: List[UserRole]):
        self.allowed_roles = allowed_roles

    async def __call__(self, request: Request, auth: AuthContext = Depends(get_current_user)) -> AuthContext:
        if not auth.has_role(self.allowed_roles):
            logger.warning(
                "Access denied - insufficient role user_id=%s role=%s required=%s path=%s",
                auth.user_id, auth.role.value, [r.value for r in self.allowed_roles], request.url.path,
            )
            raise ApiError(
                403, "FORBIDDEN", "Insufficient permissions",
                f"Required role: {' or '.join(r.value for r in self.allowed_roles)}. Your role: {auth.role.value}",
            )
        return auth


require_admin = RoleChecker([UserRole.ADMIN])
require_operator = RoleChecker([UserRole.ADMIN, UserRole.OPERATOR])
