"""Sign-in identity verification (Apple, Google) and user provisioning."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

import httpx
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token as google_id_token
from jose import JWTError, jwt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import is_production, settings
from models.user import User
from services.credits import add_credits
from services.errors import AuthenticationError

logger = logging.getLogger(__name__)

APPLE_KEYS_TTL_SECONDS = 3600
_apple_keys_cache: Dict[str, Any] = {"keys": [], "fetched_at": 0.0}


@dataclass
class VerifiedIdentity:
    provider: str
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    picture: Optional[str] = None


def normalize_email(value: Any) -> Optional[str]:
    text = str(value or "").strip().lower()
    return text or None


async def _apple_signing_keys(force_refresh: bool = False) -> List[Dict[str, Any]]:
    now = time.time()
    if not force_refresh and _apple_keys_cache["keys"] and now - _apple_keys_cache["fetched_at"] < APPLE_KEYS_TTL_SECONDS:
        return _apple_keys_cache["keys"]
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            response = await client.get(settings.APPLE_KEYS_URL)
            response.raise_for_status()
    except httpx.HTTPError as exc:
        logger.warning("Could not fetch Apple signing keys: %s", exc)
        raise AuthenticationError("Apple sign-in is temporarily unavailable.") from exc
    keys = response.json().get("keys") or []
    _apple_keys_cache["keys"] = keys
    _apple_keys_cache["fetched_at"] = now
    return keys


async def verify_apple_token(token: str) -> VerifiedIdentity:
    """Verify an Apple identity token against Apple's JWKS.

    Without ``APPLE_CLIENT_ID`` outside production the claims are decoded
    without a signature check so local clients can sign in.
    """
    if not token:
        raise AuthenticationError("Apple ID token is required")

    try:
        if not settings.APPLE_CLIENT_ID:
            if is_production():
                raise AuthenticationError("Apple sign-in is not configured.")
            claims = jwt.get_unverified_claims(token)
            if int(claims.get("exp") or 0) < int(time.time()):
                raise AuthenticationError("Apple ID token has expired")
        else:
            kid = jwt.get_unverified_header(token).get("kid")
            keys = await _apple_signing_keys()
            key = next((candidate for candidate in keys if candidate.get("kid") == kid), None)
            if key is None:
                keys = await _apple_signing_keys(force_refresh=True)
                key = next((candidate for candidate in keys if candidate.get("kid") == kid), None)
            if key is None:
                raise AuthenticationError("Invalid Apple ID token")
            claims = jwt.decode(
                token,
                key,
                algorithms=["RS256"],
                audience=settings.APPLE_CLIENT_ID,
                issuer=settings.APPLE_ISSUER,
            )
    except JWTError as exc:
        raise AuthenticationError("Invalid Apple ID token") from exc

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise AuthenticationError("Invalid Apple ID token")
    return VerifiedIdentity(provider="apple", subject=subject, email=normalize_email(claims.get("email")))


async def verify_google_token(credential: str) -> VerifiedIdentity:
    if not credential:
        raise AuthenticationError("Google credential is required")
    if not settings.GOOGLE_CLIENT_ID and is_production():
        raise AuthenticationError("Google sign-in is not configured.")

    try:
        claims = await asyncio.to_thread(
            google_id_token.verify_oauth2_token,
            credential,
            google_requests.Request(),
            settings.GOOGLE_CLIENT_ID or None,
        )
    except ValueError as exc:
        logger.info("Google token rejected: %s", exc)
        raise AuthenticationError("Invalid Google credential") from exc

    subject = str(claims.get("sub") or "").strip()
    if not subject:
        raise AuthenticationError("Invalid Google credential")
    return VerifiedIdentity(
        provider="google",
        subject=subject,
        email=normalize_email(claims.get("email")),
        name=claims.get("name"),
        picture=claims.get("picture"),
    )


async def _find_user(db: AsyncSession, identity: VerifiedIdentity) -> Optional[User]:
    user: Optional[User] = None
    column = {"apple": User.apple_id, "google": User.google_id}.get(identity.provider)
    if column is not None:
        result = await db.execute(select(User).where(column == identity.subject))
        user = result.scalar_one_or_none()
    if user is not None or not identity.email:
        return user

    result = await db.execute(
        select(User).where(User.email == identity.email).order_by(User.created_at.asc()).limit(1)
    )
    user = result.scalar_one_or_none()
    if user is not None:
        if identity.provider == "apple" and not user.apple_id:
            user.apple_id = identity.subject
        elif identity.provider == "google" and not user.google_id:
            user.google_id = identity.subject
    return user


async def provision_user(
    db: AsyncSession,
    identity: VerifiedIdentity,
    *,
    display_name: Optional[str] = None,
    initial_credits: Optional[int] = None,
) -> Tuple[User, bool]:
    """Find or create the user for a verified identity. Returns ``(user, created)``."""
    now = datetime.now(timezone.utc)
    user = await _find_user(db, identity)
    if user is not None:
        if identity.email and not user.email:
            user.email = identity.email
        if (display_name or identity.name) and not user.display_name:
            user.display_name = display_name or identity.name
        if identity.picture and not user.avatar_url:
            user.avatar_url = identity.picture
        user.last_login_at = now
        await db.commit()
        await db.refresh(user)
        return user, False

    grant = int(settings.INITIAL_CREDITS if initial_credits is None else initial_credits)
    user = User(
        apple_id=identity.subject if identity.provider == "apple" else None,
        google_id=identity.subject if identity.provider == "google" else None,
        email=identity.email,
        display_name=display_name or identity.name,
        avatar_url=identity.picture,
        credits=0,
        free_attempts=int(settings.INITIAL_FREE_ATTEMPTS),
        subscription_tier="free",
        last_login_at=now,
    )
    db.add(user)
    try:
        await db.flush()
        if grant > 0:
            await add_credits(
                user.id,
                db,
                amount=grant,
                transaction_type="initial",
                description="Welcome credits",
                commit=False,
            )
        await db.commit()
    except IntegrityError:
        # a concurrent first sign-in created the same identity
        await db.rollback()
        user = await _find_user(db, identity)
        if user is None:
            raise
        return user, False

    await db.refresh(user)
    logger.info("Created %s user %s with %d credits", identity.provider, user.id, grant)
    return user, True
