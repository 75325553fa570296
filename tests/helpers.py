"""Shared helpers for building users and API sessions in tests."""
from realm_pkm.models.schema import User
from realm_pkm.security.passwords import hash_password

TEST_SECRET = "test-secret-that-is-long-enough-for-hs256-signing"
TEST_PASSWORD = "Secret1!pass"


def make_user(user_repository, email, display_name="Test User"):
    """Store a user with the standard test password."""
    return user_repository.create(
        User(
            email=email,
            password_hash=hash_password(TEST_PASSWORD, rounds=4),
            display_name=display_name,
        )
    )


def register(client, email="carol@example.com", password=TEST_PASSWORD, name="Carol"):
    """Register through the API and return the auth headers."""
    response = client.post(
        "/api/auth/register",
        json={"email": email, "password": password, "display_name": name},
    )
    assert response.status_code == 201, response.text
    return {"Authorization": f"Bearer {response.json()['access_token']}"}
