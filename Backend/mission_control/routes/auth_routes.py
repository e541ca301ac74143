"""
Authentication routes.

Assumptions:
- Sync SQLAlchemy session via Depends(get_db)
- UserService is sync and accepts db: Session
- audit_log is fire-and-forget and safe to call from sync handlers
"""

from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from mission_control.database import get_db
from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.schemas.auth import (
    UserCreate, UserLogin, UserResponse, LoginResponse, MessageResponse, UserRole,
)
from mission_control.services.auth_service import UserService
from mission_control.middleware.auth_middleware import get_current_user, get_current_user_optional, AuthContext
from mission_control.middleware.audit_log import audit_log, audit_route
from mission_control.utils.errors import ApiError

router = APIRouter(prefix="/auth", tags=["Authentication"])


def get_user_service(request: Request, db: Session = Depends(get_db)) -> UserService:
    return UserService(db, request.app.state.settings)


@router.post("/register", response_model=UserResponse, status_code=201)
def register(
    data: UserCreate,
    request: Request,
    auth: Optional[AuthContext] = Depends(get_current_user_optional),
    user_service: UserService = Depends(get_user_service),
):
    """
    Register a new user.

    - Anyone may self-register as viewer
    - Creating operator/admin accounts requires an admin token
    """
    if data.role != UserRole.VIEWER and (auth is None or auth.role != UserRole.ADMIN):
        raise ApiError(403, "FORBIDDEN", "Only admins can create operator or admin accounts")

    try:
        user = user_service.register_user(data)
    except ValueError as e:
        raise ApiError(409, "USER_EXISTS", str(e))

    audit_log(
        request,
        AuditAction.USER_CREATED,
        f"user:{user.id}",
        AuditResult.SUCCESS,
        details=f"Created user {user.username} with role {user.role.value}",
        user=auth if auth is not None else user,
    )
    return user


@router.post("/login", response_model=LoginResponse)
def login(
    data: UserLogin,
    request: Request,
    user_service: UserService = Depends(get_user_service),
):
    """Login with username (or email) and password. Returns an access token."""
    if not data.username and not data.email:
        raise ApiError(400, "VALIDATION_ERROR", "Username or email is required")

    try:
        user, tokens = user_service.authenticate(data.password, username=data.username, email=data.email)
    except ValueError as e:
        audit_log(
            request,
            AuditAction.LOGIN_FAILED,
            "auth",
            AuditResult.FAILURE,
            details=f"Failed login attempt for {data.username or data.email}: {e}",
        )
        raise ApiError(401, "INVALID_CREDENTIALS", str(e))

    audit_log(request, AuditAction.LOGIN, "auth", AuditResult.SUCCESS, user=user)
    return LoginResponse(user=user, tokens=tokens)


@router.post("/logout", response_model=MessageResponse)
@audit_route(AuditAction.LOGOUT, "auth")
async def logout(
    request: Request,
    auth: AuthContext = Depends(get_current_user),
):
    """Tokens are stateless; logout is recorded and the client discards its token."""
    return MessageResponse(message="Logged out")


@router.get("/me", response_model=UserResponse)
def get_current_user_info(
    auth: AuthContext = Depends(get_current_user),
    user_service: UserService = Depends(get_user_service),
):
    """Get current authenticated user info."""
    user = user_service.get_user(auth.user_id)
    if not user:
        raise ApiError(404, "USER_NOT_FOUND", "User not found")
    return UserService.to_response(user)
