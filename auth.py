"""
Authentication routes and dependencies
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, HTTPException, Header, Depends, Cookie
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from auth_utils import hash_password, verify_password, create_jwt, resolve_user_id
from config import settings
from crud.entitlement import EntitlementRepository
from crud.user import UserRepository
from database import get_db
from services.errors import AuthenticationError

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

MIN_PASSWORD_LENGTH = 8


# Request models
class SignupRequest(BaseModel):
    email: str
    password: str


class LoginRequest(BaseModel):
    email: str
    password: str


def validate_email(email: str) -> bool:
    """Validate email format"""
    pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
    return re.match(pattern, email) is not None


def _token_response(user_id: int) -> JSONResponse:
    token = create_jwt(str(user_id))
    response = JSONResponse(
        content={
            "ok": True,
            "user_id": str(user_id),
            "token": token,
        }
    )
    response.set_cookie(
        key="auth_token",
        value=token,
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=settings.jwt_expiry_days * 86400,
    )
    return response


@auth_router.post("/signup")
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create a new user account and start its trial clock"""
    if not validate_email(request.email):
        raise HTTPException(status_code=400, detail="Invalid email format")
    if len(request.password) < MIN_PASSWORD_LENGTH:
        raise HTTPException(status_code=400, detail=f"Password must be at least {MIN_PASSWORD_LENGTH} characters")

    user_repo = UserRepository(db)
    if await user_repo.get_user_by_email(request.email):
        raise HTTPException(status_code=400, detail="Email already registered")

    user = await user_repo.create_user({
        "email": request.email,
        "hashed_password": hash_password(request.password),
        "is_active": True,
    })
    await EntitlementRepository(db).create(user.id, user.email)
    await db.commit()

    logger.info(f"User {user.id} signed up")
    return _token_response(user.id)


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user_repo = UserRepository(db)

    user = await user_repo.get_user_by_email(request.email)
    if not user or not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    # First sign-in for accounts created outside signup starts the trial here
    await EntitlementRepository(db).get_or_create(user.id, user.email)
    await db.commit()

    return _token_response(user.id)


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    response.set_cookie(
        key="auth_token",
        value="",
        httponly=True,
        secure=True,
        samesite="Lax",
        max_age=0
    )
    return response


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> dict:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Authorization header (Bearer token) for API consumers
    2. auth_token cookie set by login/signup
    3. Raise 401 if neither is found
    """
    token = None
    if authorization and authorization.startswith("Bearer "):
        token = authorization.replace("Bearer ", "").strip()
    elif auth_token:
        token = auth_token

    try:
        user_id = resolve_user_id(token)
    except AuthenticationError as e:
        raise HTTPException(status_code=e.status_code, detail=e.message)

    user = await UserRepository(db).get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return {
        "user_id": user.id,
        "email": user.email,
        "is_active": user.is_active,
    }


@auth_router.get("/me")
async def get_current_user_info(user: dict = Depends(get_current_user)):
    """Get current user information from JWT token"""
    return {
        "ok": True,
        "user_id": str(user["user_id"]),
        "email": user["email"],
        "is_active": user["is_active"],
    }
