"""Tests for JWT access tokens and caller identity."""

from datetime import timedelta

import jwt

from devenv_api.core.config import get_settings
from devenv_api.core.security import create_access_token, decode_access_token
from devenv_api.models.common import PlanTier, UserRole


class TestAccessTokens:
    def test_round_trip_claims(self):
        token, expire = create_access_token(
            "user-1", role=UserRole.WORKER, plan=PlanTier.PRO, email="w@example.com"
        )
        payload = decode_access_token(token)

        assert payload is not None
        assert payload["sub"] == "user-1"
        assert payload["role"] == "worker"
        assert payload["plan"] == "pro"
        assert payload["email"] == "w@example.com"
        assert payload["exp"] == int(expire.timestamp())

    def test_email_is_optional(self):
        token, _ = create_access_token("user-1")
        assert "email" not in decode_access_token(token)

    def test_expired_token(self):
        token, _ = create_access_token("user-1", expires_delta=timedelta(seconds=-1))
        assert decode_access_token(token) is None

    def test_wrong_secret(self):
        token = jwt.encode({"sub": "user-1"}, "not-the-secret", algorithm="HS256")
        assert decode_access_token(token) is None

    def test_garbage(self):
        assert decode_access_token("not-a-jwt") is None

    def test_signed_with_settings_secret(self):
        token, _ = create_access_token("user-1")
        settings = get_settings()
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
        assert payload["sub"] == "user-1"
