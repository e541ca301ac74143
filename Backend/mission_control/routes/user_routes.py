"""User management routes (admin only)."""

from typing import List

from fastapi import APIRouter, Depends, Query, Request

from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.schemas.auth import RoleUpdate, UserResponse, MessageResponse, UserRole
from mission_control.services.auth_service import UserService
from mission_control.middleware.auth_middleware import AuthContext, require_admin
from mission_control.middleware.audit_log import audit_log
from mission_control.routes.auth_routes import get_user_service
from mission_control.utils.errors import ApiError

router = APIRouter(prefix="/users", tags=["Users"])


@router.get("", response_model=List[UserResponse])
def list_users(
    limit: int = Query(100, ge=1, le=1000),
    offset: int = Query(0, ge=0),
    auth: AuthContext = Depends(require_admin),
    user_service: UserService = Depends(get_user_service),
):
    return user_service.list_users(limit=limit, offset=offset)


@router.patch("/{user_id}/role", response_model=UserResponse)
def change_role(
    user_id: str,
    data: RoleUpdate,
    request: Request,
    auth: AuthContext = Depends(require_admin),
    user_service: UserService = Depends(get_user_service),
):
    """Change a user's role. Admins cannot demote themselves."""
    if user_id == auth.user_id and data.role != UserRole.ADMIN:
        audit_log(
            request, AuditAction.ROLE_CHANGED, f"user:{user_id}", AuditResult.DENIED,
            details="Attempted to demote own account",
        )
        raise ApiError(400, "CANNOT_DEMOTE_SELF", "You cannot change your own admin role")

    updated = user_service.update_role(user_id, data.role)
    if updated is None:
        raise ApiError(404, "USER_NOT_FOUND", "User not found")

    user, previous = updated
    audit_log(
        request, AuditAction.ROLE_CHANGED, f"user:{user_id}", AuditResult.SUCCESS,
        details=f"Changed role of {user.username} from {previous} to {user.role.value}",
    )
    return user


@router.delete("/{user_id}", response_model=MessageResponse)
def delete_user(
    user_id: str,
    request: Request,
    auth: AuthContext = Depends(require_admin),
    user_service: UserService = Depends(get_user_service),
):
    if user_id == auth.user_id:
        audit_log(
            request, AuditAction.USER_DELETED, f"user:{user_id}", AuditResult.DENIED,
            details="Attempted to delete own account",
        )
        raise ApiError(400, "CANNOT_DELETE_SELF", "You cannot delete your own account")

    deleted = user_service.delete_user(user_id)
    if deleted is None:
        raise ApiError(404, "USER_NOT_FOUND", "User not found")

    audit_log(
        request, AuditAction.USER_DELETED, f"user:{user_id}", AuditResult.SUCCESS,
        details=f"Deleted user {deleted.username}",
    )
    return MessageResponse(message=f"User {deleted.username} deleted")
