"""User accounts and credential checks (SQLAlchemy)."""
from __future__ import annotations

from typing import Optional, Tuple, List
from datetime import datetime, timezone

import logging
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mission_control.config import Settings
from mission_control.schemas.auth import UserCreate, UserResponse, TokenResponse, UserRole
from mission_control.utils.security import hash_password, verify_password, create_access_token
from mission_control.models.auth import User

logger = logging.getLogger(__name__)


class UserService:
    def __init__(self, session: Session, settings: Settings):
        self.session = session
        self.settings = settings

    @staticmethod
    def to_response(u: User) -> UserResponse:
        return UserResponse(
            id=str(u.id),
            username=u.username,
            email=u.email,
            role=UserRole(u.role),
            is_active=u.is_active,
            created_at=u.created_at,
        )

    def register_user(self, user_data: UserCreate) -> UserResponse:
        """Register a new user. Raises ValueError if username or email is taken."""
        u = User(
            username=user_data.username,
            email=str(user_data.email).lower(),
            password_hash=hash_password(user_data.password),
            role=user_data.role.value,
            is_active=True,
        )
        self.session.add(u)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ValueError("Username or email already registered")

        self.session.refresh(u)
        logger.info("User registered user_id=%s username=%s role=%s", u.id, u.username, u.role)
        return self.to_response(u)

    def authenticate(
        self,
        password: str,
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Tuple[UserResponse, TokenResponse]:
        """Check credentials and issue an access token. Raises ValueError on any mismatch."""
        if not username and not email:
            raise ValueError("Username or email is required")

        conditions = []
        if username:
            conditions.append(User.username == username)
        if email:
            conditions.append(User.email == email.lower())
        u = self.session.execute(select(User).where(or_(*conditions))).scalars().first()

        # same message for unknown user and wrong password
        if not u or not verify_password(password, u.password_hash):
            raise ValueError("Invalid credentials")
        if not u.is_active:
            raise ValueError("Account is deactivated")

        expires_in = self.settings.access_token_expire_minutes * 60
        token = create_access_token(
            {"sub": str(u.id), "username": u.username, "role": u.role},
            self.settings,
        )
        return self.to_response(u), TokenResponse(access_token=token, expires_in=expires_in)

    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    def list_users(self, limit: int = 100, offset: int = 0) -> List[UserResponse]:
        stmt = select(User).order_by(User.created_at.asc(), User.username.asc()).offset(offset).limit(limit)
        return [self.to_response(u) for u in self.session.execute(stmt).scalars().all()]

    def count_users(self) -> int:
        return self.session.execute(select(func.count(User.id))).scalar_one()

    def update_role(self, user_id: str, role: UserRole) -> Optional[Tuple[UserResponse, str]]:
        """Change a user's role. Returns (user, previous_role) or None if the user does not exist."""
        u = self.get_user(user_id)
        if not u:
            return None
        previous = u.role
        u.role = role.value
        u.updated_at = datetime.now(timezone.utc)
        self.session.commit()
        self.session.refresh(u)
        return self.to_response(u), previous

    def delete_user(self, user_id: str) -> Optional[UserResponse]:
        u = self.get_user(user_id)
        if not u:
            return None
        deleted = self.to_response(u)
        self.session.delete(u)
        self.session.commit()
        return deleted

    def create_admin(self, username: str, email: str, password: str) -> UserResponse:
        """Create an admin user (for initial setup)."""
        user_data = UserCreate(username=username, email=email, password=password, role=UserRole.ADMIN)
        return self.register_user(user_data)
