from datetime import datetime, timezone, timedelta
from typing import Optional, Dict, Any

import bcrypt
import jwt

from mission_control.config import Settings


class AuthError(Exception):
    """Credential missing, malformed, expired or otherwise unusable."""

    def __init__(self, message: str, code: str = "INVALID_TOKEN"):
        super().__init__(message)
        self.code = code


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, hashed: str) -> bool:
    """Verify password against bcrypt hash."""
    return bcrypt.checkpw(password.encode("utf-8"), hashed.encode("utf-8"))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def create_access_token(
    data: Dict[str, Any],
    settings: Settings,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """Create JWT access token."""
    now = _utc_now()
    exp = now + (expires_delta if expires_delta is not None else timedelta(minutes=settings.access_token_expire_minutes))
    payload = dict(data)
    payload.update({"exp": exp, "iat": now, "type": "access"})
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def decode_token(token: str, settings: Settings) -> Dict[str, Any]:
    """
    Decode and validate a JWT access token.
    Raises AuthError distinguishing expired from otherwise invalid tokens.
    """
    if not token or token.count(".") != 2:
        raise AuthError("Malformed token")
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token has expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")

    if payload.get("type") != "access":
        raise AuthError("Invalid token type")
    if not payload.get("sub") or not payload.get("role"):
        raise AuthError("Invalid token payload")
    return payload


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the credential from an 'Authorization: Bearer <token>' header value."""
    if not authorization:
        return None
    parts = authorization.split(" ")
    if len(parts) != 2 or parts[0] != "Bearer" or not parts[1]:
        return None
    return parts[1]
