import time

import pytest
from jose import jwt
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import CreditTransaction
from models.user import User
from services import identity as identity_service


def _apple_token(sub="001234.apple-user", email="Person@PrivateRelay.AppleID.com", exp_offset=600):
    claims = {"sub": sub, "exp": int(time.time()) + exp_offset, "iss": "https://appleid.apple.com"}
    if email:
        claims["email"] = email
    return jwt.encode(claims, "local-signing-key", algorithm="HS256")


async def _initial_grants(session_maker, user_id):
    async with session_maker() as session:
        result = await session.execute(
            select(CreditTransaction).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.transaction_type == "initial",
            )
        )
        return result.scalars().all()


@pytest.mark.asyncio
async def test_dev_login_provisions_user_with_credits(client, session_maker):
    response = await client.post("/auth/dev", json={"email": "Dev@Example.com", "name": "Dev"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["success"] is True
    assert payload["is_new_user"] is True
    assert payload["token"]
    assert payload["user"]["email"] == "dev@example.com"
    assert payload["user"]["credits"] == 100
    assert payload["user"]["free_attempts"] == settings.INITIAL_FREE_ATTEMPTS

    grants = await _initial_grants(session_maker, payload["user"]["id"])
    assert [(grant.amount, grant.balance_after) for grant in grants] == [(100, 100)]

    me = await client.get("/auth/me", headers={"Authorization": f"Bearer {payload['token']}"})
    assert me.status_code == 200
    assert me.json()["user"]["id"] == payload["user"]["id"]


@pytest.mark.asyncio
async def test_repeat_dev_login_reuses_account(client, session_maker):
    first = await client.post("/auth/dev", json={"email": "dev@example.com"})
    second = await client.post("/auth/dev", json={"email": "DEV@example.com"})

    assert second.status_code == 200
    assert second.json()["is_new_user"] is False
    assert second.json()["user"]["id"] == first.json()["user"]["id"]
    assert len(await _initial_grants(session_maker, first.json()["user"]["id"])) == 1


@pytest.mark.asyncio
async def test_dev_login_can_be_disabled(client, monkeypatch):
    monkeypatch.setattr(settings, "DEV_AUTH_ENABLED", False)

    response = await client.post("/auth/dev", json={"email": "dev@example.com"})

    assert response.status_code == 403
    assert response.json()["code"] == "forbidden"


@pytest.mark.asyncio
async def test_dev_login_requires_email(client):
    response = await client.post("/auth/dev", json={"email": "not-an-email"})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_invalid_session_token_is_rejected(client):
    response = await client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})

    assert response.status_code == 401
    assert response.json()["code"] == "authentication_required"


@pytest.mark.asyncio
async def test_session_for_deleted_user_is_rejected(client, headers_for):
    response = await client.get("/auth/me", headers=headers_for("no-such-user"))
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_apple_sign_in_grants_welcome_credits(client, session_maker, monkeypatch):
    monkeypatch.setattr(settings, "APPLE_CLIENT_ID", "")

    response = await client.post(
        "/auth/apple",
        json={"apple_id_token": _apple_token(), "user_info": {"given_name": "Ada", "family_name": "Lovelace"}},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["is_new_user"] is True
    assert payload["user"]["credits"] == settings.INITIAL_CREDITS
    assert payload["user"]["free_attempts"] == settings.INITIAL_FREE_ATTEMPTS
    assert payload["user"]["email"] == "person@privaterelay.appleid.com"
    assert payload["user"]["display_name"] == "Ada Lovelace"

    async with session_maker() as session:
        user = await session.get(User, payload["user"]["id"])
        assert user.apple_id == "001234.apple-user"

    again = await client.post("/auth/apple", json={"apple_id_token": _apple_token(email=None)})
    assert again.json()["is_new_user"] is False
    assert again.json()["user"]["id"] == payload["user"]["id"]


@pytest.mark.asyncio
async def test_expired_apple_token_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "APPLE_CLIENT_ID", "")

    response = await client.post("/auth/apple", json={"apple_id_token": _apple_token(exp_offset=-60)})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_malformed_apple_token_is_rejected(client, monkeypatch):
    monkeypatch.setattr(settings, "APPLE_CLIENT_ID", "")

    response = await client.post("/auth/apple", json={"apple_id_token": "garbage"})

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_google_sign_in_links_existing_email(client, session_maker, make_user, monkeypatch):
    existing = await make_user("user-google", credits=7, email="reader@example.com")
    seen = {}

    def fake_verify(credential, request, audience):
        seen["credential"] = credential
        seen["audience"] = audience
        return {"sub": "google-sub-9", "email": "Reader@example.com", "name": "Reader", "picture": "https://img.test/r.png"}

    monkeypatch.setattr(settings, "GOOGLE_CLIENT_ID", "client-123.apps.googleusercontent.com")
    monkeypatch.setattr(identity_service.google_id_token, "verify_oauth2_token", fake_verify)

    response = await client.post("/auth/google", json={"credential": "google-jwt"})

    assert response.status_code == 200
    payload = response.json()
    assert payload["is_new_user"] is False
    assert payload["user"]["id"] == existing
    assert payload["user"]["credits"] == 7
    assert seen == {"credential": "google-jwt", "audience": "client-123.apps.googleusercontent.com"}

    async with session_maker() as session:
        user = await session.get(User, existing)
        assert user.google_id == "google-sub-9"
        assert user.avatar_url == "https://img.test/r.png"


@pytest.mark.asyncio
async def test_rejected_google_credential_returns_401(client, monkeypatch):
    def fake_verify(credential, request, audience):
        raise ValueError("Token expired")

    monkeypatch.setattr(identity_service.google_id_token, "verify_oauth2_token", fake_verify)

    response = await client.post("/auth/google", json={"credential": "stale"})

    assert response.status_code == 401
    assert response.json()["code"] == "authentication_required"


@pytest.mark.asyncio
async def test_logout_requires_session(client, make_user, headers_for):
    user_id = await make_user()
    assert (await client.post("/auth/logout")).status_code == 401
    response = await client.post("/auth/logout", headers=headers_for(user_id))
    assert response.status_code == 200
    assert response.json()["success"] is True
