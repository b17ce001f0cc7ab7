"""
Authentication utilities: Password hashing and JWT token management
"""

import jwt
from datetime import timedelta
from passlib.context import CryptContext
from typing import Optional

from config import settings
from services.errors import AuthenticationError
from utils.time_utils import utcnow

# Password hashing context
pwd_context = CryptContext(
    schemes=["argon2"],
    deprecated="auto"
)

# JWT configuration
ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    """Hash a password using argon2"""
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    return pwd_context.verify(password, password_hash)


def create_jwt(user_id: str, expires_in: Optional[timedelta] = None) -> str:
    """Create a JWT token for a user"""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot create JWT token.")

    payload = {
        "sub": user_id,
        "exp": utcnow() + (expires_in if expires_in is not None else timedelta(days=settings.jwt_expiry_days))
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=ALGORITHM)


def decode_jwt(token: str):
    """Decode a JWT token. Returns None if invalid."""
    if not settings.jwt_secret_key:
        raise ValueError("JWT_SECRET_KEY is not set. Cannot decode JWT token.")

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[ALGORITHM])
        return payload
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None


def resolve_user_id(token: Optional[str]) -> int:
    """
    Resolve a bearer credential to the verified user id.

    Raises:
        AuthenticationError: Token missing, invalid, expired or malformed
    """
    if not token:
        raise AuthenticationError("Missing authentication token")

    payload = decode_jwt(token)
    if not payload:
        raise AuthenticationError("Invalid or expired token")

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise AuthenticationError("Invalid token payload")

    # JWT stores the id as a string
    try:
        return int(user_id_str)
    except (ValueError, TypeError):
        raise AuthenticationError("Invalid user ID in token")
