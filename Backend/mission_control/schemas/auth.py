"""
Pydantic schemas for Authentication and user management.

These define request/response payloads and JWT payload shapes.
"""

from __future__ import annotations

from pydantic import BaseModel, Field, EmailStr, ConfigDict
from typing import Optional
from datetime import datetime
from enum import Enum


class UserRole(str, Enum):
    ADMIN = "admin"
    OPERATOR = "operator"
    VIEWER = "viewer"


# -------------------------
# User requests
# -------------------------

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_-]+$")
    email: EmailStr
    password: str = Field(..., min_length=8)
    role: UserRole = UserRole.VIEWER


class UserLogin(BaseModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: str = Field(..., min_length=1)


class RoleUpdate(BaseModel):
    role: UserRole


class SetupRequest(BaseModel):
    username: str = Field(..., min_length=3, max_length=50, pattern=r"^[a-zA-Z0-9_-]+$")
    email: EmailStr
    password: str = Field(..., min_length=8)


# -------------------------
# User responses
# -------------------------

class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    email: EmailStr
    role: UserRole
    is_active: bool
    created_at: datetime


# -------------------------
# Tokens
# -------------------------

class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int  # seconds


class LoginResponse(BaseModel):
    user: UserResponse
    tokens: TokenResponse


class MessageResponse(BaseModel):
    message: str


class TokenPayload(BaseModel):
    """JWT claims payload shape (exp/iat are numeric timestamps in the token)."""
    sub: str  # user_id
    username: str
    role: UserRole
    type: str  # "access"
    exp: int
    iat: int
