"""Tests for password hashing and JWT tokens."""
import datetime

import jwt
import pydantic
import pytest

from realm_pkm.config import RealmConfig
from realm_pkm.security.passwords import hash_password, verify_password
from realm_pkm.security.tokens import ACCESS_AUDIENCE, JwtTokenProvider
from tests.helpers import TEST_SECRET


class TestPasswords:
    """Tests for bcrypt password hashing."""

    def test_hash_and_verify(self):
        encoded = hash_password("Secret1!pass", rounds=4)
        assert encoded.startswith("$2b$04$")
        assert verify_password("Secret1!pass", encoded)
        assert not verify_password("wrong", encoded)

    def test_cost_comes_from_config(self, isolated_config, monkeypatch):
        monkeypatch.setattr(isolated_config, "bcrypt_rounds", 5)
        assert hash_password("pw").startswith("$2b$05$")

    def test_cost_outside_bcrypt_range_is_rejected(self):
        with pytest.raises(pydantic.ValidationError):
            RealmConfig(bcrypt_rounds=3)

    def test_hashes_are_salted(self):
        assert hash_password("same", rounds=4) != hash_password("same", rounds=4)

    def test_malformed_hash_never_matches(self):
        assert not verify_password("x", "not-a-hash")
        assert not verify_password("x", "pbkdf2_sha256$390000$salt$hash")
        assert not verify_password("x", None)

    def test_long_passwords_use_first_72_bytes(self):
        encoded = hash_password("a" * 80, rounds=4)
        assert verify_password("a" * 80, encoded)
        assert verify_password("a" * 72 + "b" * 8, encoded)


class TestJwtTokenProvider:
    """Tests for issuing and reading tokens."""

    @pytest.fixture
    def provider(self):
        return JwtTokenProvider(secret=TEST_SECRET, expiration_ms=60_000)

    def test_access_token_round_trip(self, provider):
        token = provider.generate_token("alice@example.com")
        assert provider.validate_token(token)
        assert provider.get_username(token) == "alice@example.com"
        assert not provider.is_refresh_token(token)
        assert not provider.is_token_expired(token)
        assert 0 < provider.get_remaining_ms(token) <= 60_000

    def test_refresh_token_lives_longer(self, provider):
        token = provider.generate_refresh_token("alice@example.com")
        assert provider.is_refresh_token(token)
        assert provider.refresh_expiration_ms == 7 * 60_000
        assert provider.get_remaining_ms(token) > 60_000

    def test_claims_carry_issuer_and_audience(self, provider):
        token = provider.generate_token("alice@example.com")
        claims = jwt.decode(
            token, TEST_SECRET, algorithms=["HS256"], audience=ACCESS_AUDIENCE
        )
        assert claims["iss"] == provider.issuer
        assert claims["aud"] == ACCESS_AUDIENCE
        assert "type" not in claims

    def test_wrong_secret_is_invalid(self, provider):
        other = JwtTokenProvider(secret="another-secret-that-is-long-enough-too!!")
        token = other.generate_token("alice@example.com")
        assert provider.get_claims(token) is None
        assert provider.get_expiration(token) is None
        assert provider.is_token_expired(token)
        assert provider.get_remaining_ms(token) == 0

    def test_garbage_token(self, provider):
        assert not provider.validate_token("not.a.token")
        assert provider.get_username("not.a.token") is None

    def test_expired_token(self):
        provider = JwtTokenProvider(secret=TEST_SECRET, expiration_ms=-1000)
        token = provider.generate_token("alice@example.com")
        assert provider.get_claims(token) is None
        assert provider.is_token_expired(token)
        assert provider.get_remaining_ms(token) == 0
        # Expiry can still be read from a correctly signed token
        expiration = provider.get_expiration(token)
        assert expiration is not None
        assert expiration < datetime.datetime.now(datetime.timezone.utc)

    def test_issued_at(self, provider):
        token = provider.generate_token("alice@example.com")
        issued = provider.get_issued_at(token)
        assert issued <= datetime.datetime.now(datetime.timezone.utc)
