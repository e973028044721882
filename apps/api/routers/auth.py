"""
Authentication router for Apple/Google sign-in, development login and profile retrieval.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from models.user import User
from routers.auth_scope import AuthContext, get_auth_context, get_current_user
from routers.rate_limit import rate_limit
from services.errors import ForbiddenError, ValidationError
from services.identity import (
    VerifiedIdentity,
    normalize_email,
    provision_user,
    verify_apple_token,
    verify_google_token,
)
from services.session_token import create_session_token

router = APIRouter()


class AppleUserInfo(BaseModel):
    email: Optional[str] = None
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None


class AppleSignInRequest(BaseModel):
    apple_id_token: str
    user_info: Optional[AppleUserInfo] = None


class GoogleSignInRequest(BaseModel):
    credential: str


class DevSignInRequest(BaseModel):
    email: str
    name: Optional[str] = None


def serialize_user(user: User) -> Dict[str, Any]:
    return {
        "id": user.id,
        "email": user.email,
        "display_name": user.display_name,
        "avatar_url": user.avatar_url,
        "language_code": user.language_code,
        "credits": int(user.credits or 0),
        "free_attempts": int(user.free_attempts or 0),
        "subscription_tier": user.subscription_tier,
        "subscription_expires_at": user.subscription_expires_at.isoformat() if user.subscription_expires_at else None,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }


def _session_response(user: User, provider: str, is_new_user: bool) -> Dict[str, Any]:
    session = create_session_token(user.id, user.email, provider=provider)
    return {
        "success": True,
        "user": serialize_user(user),
        "token": session["token"],
        "expires_at": session["expires_at"],
        "is_new_user": is_new_user,
    }


def _apple_display_name(info: Optional[AppleUserInfo]) -> Optional[str]:
    if info is None:
        return None
    if info.name:
        return info.name.strip() or None
    parts = [part.strip() for part in (info.given_name, info.family_name) if part and part.strip()]
    return " ".join(parts) or None


@router.post("/apple")
async def sign_in_with_apple(
    request: AppleSignInRequest,
    _rate_limit: None = Depends(rate_limit("auth", limit=30, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    identity = await verify_apple_token(request.apple_id_token)
    if not identity.email and request.user_info and request.user_info.email:
        # Apple only shares the email on the first authorization
        identity.email = normalize_email(request.user_info.email)

    user, created = await provision_user(db, identity, display_name=_apple_display_name(request.user_info))
    return _session_response(user, "apple", created)


@router.post("/google")
async def sign_in_with_google(
    request: GoogleSignInRequest,
    _rate_limit: None = Depends(rate_limit("auth", limit=30, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    identity = await verify_google_token(request.credential)
    user, created = await provision_user(db, identity)
    return _session_response(user, "google", created)


@router.post("/dev")
async def sign_in_for_development(
    request: DevSignInRequest,
    db: AsyncSession = Depends(get_db),
):
    """Password-less login for local development. Disabled unless DEV_AUTH_ENABLED."""
    if not settings.DEV_AUTH_ENABLED:
        raise ForbiddenError("Development login is disabled.")

    email = normalize_email(request.email)
    if not email or "@" not in email:
        raise ValidationError("A valid email is required")

    identity = VerifiedIdentity(provider="dev", subject=email, email=email, name=request.name)
    user, created = await provision_user(db, identity, initial_credits=settings.DEV_INITIAL_CREDITS)
    return _session_response(user, "dev", created)


@router.get("/me")
async def read_current_user(user: User = Depends(get_current_user)):
    """Get current user profile."""
    return {"success": True, "user": serialize_user(user)}


@router.post("/logout")
async def logout(_auth: AuthContext = Depends(get_auth_context)):
    """Frontend-managed logout acknowledgment endpoint."""
    return {"success": True, "message": "Logged out successfully"}
