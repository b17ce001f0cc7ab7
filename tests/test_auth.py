"""
Tests for user persistence, credentials and the sign-up/sign-in routes
"""
import pytest

from auth_utils import create_jwt, hash_password, resolve_user_id, verify_password
from crud.entitlement import EntitlementRepository
from crud.user import UserRepository
from services.errors import AuthenticationError


@pytest.mark.asyncio
async def test_create_and_get_user(test_db):
    """
    Test creating a new user and retrieving it by email.
    """
    user_repo = UserRepository(test_db)
    hashed_pwd = hash_password("test_password_123")

    created_user = await user_repo.create_user({
        "email": "Test@Example.com",
        "hashed_password": hashed_pwd,
    })
    await test_db.commit()

    assert created_user.email == "test@example.com"
    assert created_user.is_active is True

    retrieved_user = await user_repo.get_user_by_email("TEST@example.com")
    assert retrieved_user is not None
    assert retrieved_user.id == created_user.id
    assert verify_password("test_password_123", retrieved_user.hashed_password) is True
    assert verify_password("wrong_password", retrieved_user.hashed_password) is False


def test_resolve_user_id_round_trip():
    assert resolve_user_id(create_jwt("42")) == 42


@pytest.mark.parametrize("token", [None, "", "garbage", create_jwt("not-a-number")])
def test_resolve_user_id_rejects_bad_credentials(token):
    with pytest.raises(AuthenticationError) as exc_info:
        resolve_user_id(token)
    assert exc_info.value.status_code == 401


@pytest.mark.asyncio
async def test_signup_starts_trial_clock(client, test_db):
    response = await client.post("/api/auth/signup", json={"email": "New@Example.com", "password": "long-enough-pw"})

    assert response.status_code == 200
    user_id = int(response.json()["user_id"])
    record = await EntitlementRepository(test_db).get_by_user_id(user_id)
    assert record is not None
    assert record.email == "new@example.com"
    assert record.status == "inactive"
    assert record.trial_ends_at is not None

    token = response.json()["token"]
    me = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "new@example.com"


@pytest.mark.asyncio
async def test_signup_rejects_duplicates_and_bad_input(client):
    first = await client.post("/api/auth/signup", json={"email": "dup@example.com", "password": "long-enough-pw"})
    duplicate = await client.post("/api/auth/signup", json={"email": "dup@example.com", "password": "long-enough-pw"})
    bad_email = await client.post("/api/auth/signup", json={"email": "not-an-email", "password": "long-enough-pw"})
    short_password = await client.post("/api/auth/signup", json={"email": "short@example.com", "password": "short"})

    assert first.status_code == 200
    assert duplicate.status_code == 400
    assert bad_email.status_code == 400
    assert short_password.status_code == 400


@pytest.mark.asyncio
async def test_login_creates_missing_record(client, test_db):
    user = await UserRepository(test_db).create_user({
        "email": "legacy@example.com",
        "hashed_password": hash_password("legacy-password"),
    })
    await test_db.commit()
    user_id = user.id

    wrong = await client.post("/api/auth/login", json={"email": "legacy@example.com", "password": "nope-nope"})
    assert wrong.status_code == 401

    response = await client.post("/api/auth/login", json={"email": "legacy@example.com", "password": "legacy-password"})
    assert response.status_code == 200

    record = await EntitlementRepository(test_db).get_by_user_id(user_id)
    assert record is not None
    assert record.trial_ends_at is not None
