"""Tests for Supabase token verification and admin checks."""

import time

import pytest
from jose import jwt

from taleforge.core.security import claims_to_user, decode_supabase_token, is_admin_user


@pytest.fixture
def patched_settings(settings, monkeypatch):
    monkeypatch.setattr("taleforge.core.security.get_settings", lambda: settings)
    return settings


def make_token(secret: str = "test-secret", **claims) -> str:
    payload = {
        "sub": "user-1",
        "email": "reader@example.com",
        "aud": "authenticated",
        "role": "authenticated",
        "exp": int(time.time()) + 3600,
        **claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


class TestDecodeSupabaseToken:
    """Test local JWT verification."""

    def test_valid_token(self, patched_settings) -> None:
        claims = decode_supabase_token(make_token())
        assert claims["sub"] == "user-1"

    def test_wrong_secret(self, patched_settings) -> None:
        assert decode_supabase_token(make_token(secret="other")) is None

    def test_expired(self, patched_settings) -> None:
        assert decode_supabase_token(make_token(exp=int(time.time()) - 10)) is None

    def test_wrong_audience(self, patched_settings) -> None:
        assert decode_supabase_token(make_token(aud="anon")) is None


class TestClaimsToUser:
    def test_maps_claims(self) -> None:
        user = claims_to_user({"sub": "u1", "email": "a@b.c", "app_metadata": {"role": "admin"}})
        assert user == {
            "id": "u1",
            "email": "a@b.c",
            "role": "authenticated",
            "app_metadata": {"role": "admin"},
            "user_metadata": {},
        }

    def test_requires_subject(self) -> None:
        assert claims_to_user({"email": "a@b.c"}) is None


class TestIsAdminUser:
    """Test the two ways to be an admin."""

    def test_app_metadata_role(self, patched_settings) -> None:
        assert is_admin_user({"app_metadata": {"role": "admin"}})
        assert is_admin_user({"app_metadata": {"roles": ["editor", "admin"]}})

    def test_admin_email(self, patched_settings) -> None:
        patched_settings.admin_emails = ["Boss@Example.com"]
        assert is_admin_user({"email": "boss@example.com", "app_metadata": {}})
        assert not is_admin_user({"email": "reader@example.com", "app_metadata": {}})

    def test_regular_user(self, patched_settings) -> None:
        assert not is_admin_user({"email": "", "app_metadata": {}})
