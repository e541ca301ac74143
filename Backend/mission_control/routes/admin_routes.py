"""
Admin bootstrap routes.

The setup endpoint only works while the user table is empty.
"""

from fastapi import APIRouter, Depends, Request

from mission_control.schemas.audit_log import AuditAction, AuditResult
from mission_control.schemas.auth import SetupRequest, UserResponse
from mission_control.services.auth_service import UserService
from mission_control.middleware.audit_log import audit_log
from mission_control.routes.auth_routes import get_user_service
from mission_control.utils.errors import ApiError

router = APIRouter(prefix="/admin", tags=["Administration"])


@router.post("/setup", response_model=UserResponse, status_code=201)
def initial_setup(
    data: SetupRequest,
    request: Request,
    user_service: UserService = Depends(get_user_service),
):
    """
    Initial setup - creates the first admin.
    This endpoint only works if no users exist in the system.
    """
    if user_service.count_users() > 0:
        raise ApiError(409, "SETUP_COMPLETED", "Setup already completed. Users already exist in the system.")

    try:
        user = user_service.create_admin(username=data.username, email=str(data.email), password=data.password)
    except ValueError as e:
        raise ApiError(409, "USER_EXISTS", str(e))

    audit_log(
        request, AuditAction.USER_CREATED, f"user:{user.id}", AuditResult.SUCCESS,
        details="Initial admin created by setup", user=user,
    )
    return user
