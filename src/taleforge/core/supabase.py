"""Supabase client management for FastAPI.

Provides typed Supabase clients for authentication and storage.
Uses the anon key for token verification and the service role key for
storage uploads made on behalf of background jobs.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from supabase import Client, create_client

from taleforge.core.config import get_settings
from taleforge.core.security import claims_to_user, decode_supabase_token, is_admin_user

logger = logging.getLogger(__name__)

# Module-level client instances
_supabase_client: Client | None = None
_supabase_admin: Client | None = None


def get_supabase_client() -> Client:
    """Get the Supabase client using anon key.

    This client respects RLS policies and is safe for user-facing operations.

    Returns:
        Supabase Client configured with anon key.

    Raises:
        RuntimeError: If Supabase is not configured.
    """
    global _supabase_client

    if _supabase_client is None:
        settings = get_settings()
        if not settings.has_supabase_config():
            raise RuntimeError(
                "Supabase not configured. Set SUPABASE_URL and SUPABASE_ANON_KEY."
            )
        _supabase_client = create_client(
            settings.supabase_url,
            settings.supabase_anon_key,
        )
        logger.info("Supabase client initialized with anon key")

    return _supabase_client


def get_supabase_admin() -> Client:
    """Get the Supabase admin client using service role key.

    WARNING: This client bypasses RLS policies. Use only for:
    - Storage uploads from background generation tasks
    - Admin operations

    Returns:
        Supabase Client configured with service role key.

    Raises:
        RuntimeError: If Supabase admin is not configured.
    """
    global _supabase_admin

    if _supabase_admin is None:
        settings = get_settings()
        if not settings.has_supabase_admin():
            raise RuntimeError(
                "Supabase admin not configured. Set SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY."
            )
        _supabase_admin = create_client(
            settings.supabase_url,
            settings.supabase_service_role_key,
        )
        logger.info("Supabase admin client initialized with service role key")

    return _supabase_admin


async def verify_supabase_jwt(token: str) -> dict | None:
    """Verify a Supabase JWT and extract user info.

    Verifies locally when SUPABASE_JWT_SECRET is set, otherwise asks
    Supabase Auth.

    Args:
        token: The JWT access token from Supabase Auth.

    Returns:
        User data dict if valid, None if invalid.
    """
    settings = get_settings()
    if settings.supabase_jwt_secret:
        claims = decode_supabase_token(token)
        return claims_to_user(claims) if claims else None

    try:
        client = get_supabase_client()
        response = await asyncio.to_thread(client.auth.get_user, token)
        if response and response.user:
            return {
                "id": response.user.id,
                "email": response.user.email,
                "role": response.user.role,
                "app_metadata": response.user.app_metadata,
                "user_metadata": response.user.user_metadata,
            }
    except Exception as e:
        logger.warning(f"JWT verification failed: {e}")
    return None


async def upload_public_file(
    bucket: str,
    path: str,
    data: bytes,
    content_type: str,
) -> str:
    """Upload bytes to a Supabase Storage bucket and return the public URL.

    Args:
        bucket: Storage bucket name
        path: Object path inside the bucket
        data: File contents
        content_type: MIME type stored with the object

    Returns:
        Public URL of the uploaded object.
    """
    client = get_supabase_admin()
    storage = client.storage.from_(bucket)
    await asyncio.to_thread(
        storage.upload,
        path,
        data,
        {"content-type": content_type, "upsert": "true"},
    )
    url: str = storage.get_public_url(path)
    logger.info(f"Uploaded {len(data)} bytes to {bucket}/{path}")
    return url


def close_supabase_clients() -> None:
    """Close Supabase client connections.

    Should be called during application shutdown.
    """
    global _supabase_client, _supabase_admin

    # Supabase Python client doesn't require explicit cleanup,
    # but we reset the module-level instances
    _supabase_client = None
    _supabase_admin = None
    logger.info("Supabase clients closed")


# Security scheme for Swagger UI
security = HTTPBearer(auto_error=False)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any]:
    """FastAPI dependency to get the current authenticated user.

    Raises:
        HTTPException: If not authenticated or token invalid.
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await verify_supabase_jwt(credentials.credentials)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


async def get_current_user_optional(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any] | None:
    """FastAPI dependency to optionally get the current user.

    Returns None if not authenticated instead of raising an exception.
    """
    if not credentials:
        return None

    return await verify_supabase_jwt(credentials.credentials)


async def require_admin(
    user: dict[str, Any] = Depends(get_current_user),
) -> dict[str, Any]:
    """FastAPI dependency requiring an admin user.

    Raises:
        HTTPException: If the user is not an admin.
    """
    if not is_admin_user(user):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin access required",
        )
    return user
