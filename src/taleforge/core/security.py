"""Token verification helpers for Supabase-issued access tokens."""
from typing import Any

from jose import JWTError, jwt

from .config import get_settings

SUPABASE_JWT_ALGORITHM = "HS256"


def decode_supabase_token(token: str) -> dict[str, Any] | None:
    """Decode and verify a Supabase access token locally.

    Uses the project's JWT secret, so no round trip to Supabase Auth is
    needed.

    Args:
        token: JWT access token from Supabase Auth

    Returns:
        Decoded claims, or None if the token is invalid or expired
    """
    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(
            token,
            settings.supabase_jwt_secret,
            algorithms=[SUPABASE_JWT_ALGORITHM],
            audience=settings.supabase_jwt_audience,
        )
        return payload
    except JWTError:
        return None


def claims_to_user(claims: dict[str, Any]) -> dict[str, Any] | None:
    """Convert Supabase JWT claims into the user dict used by the API.

    Args:
        claims: Decoded JWT claims

    Returns:
        User dict (id, email, role, metadata) or None without a subject
    """
    user_id = claims.get("sub")
    if not user_id:
        return None
    return {
        "id": user_id,
        "email": claims.get("email", ""),
        "role": claims.get("role", "authenticated"),
        "app_metadata": claims.get("app_metadata") or {},
        "user_metadata": claims.get("user_metadata") or {},
    }


def is_admin_user(user: dict[str, Any]) -> bool:
    """Check whether a Supabase user has admin access.

    Admins either carry ``role: admin`` in their app metadata or are listed
    in the ``ADMIN_EMAILS`` setting.
    """
    settings = get_settings()
    app_metadata = user.get("app_metadata") or {}
    if app_metadata.get("role") == "admin":
        return True
    roles = app_metadata.get("roles") or []
    if "admin" in roles:
        return True
    email = (user.get("email") or "").lower()
    return bool(email) and email in {e.lower() for e in settings.admin_emails}
