"""Core utilities and configuration for TaleForge.

This module contains:
- Configuration and settings management
- Supabase token verification helpers
"""
from .config import Settings, get_settings, settings
from .security import claims_to_user, decode_supabase_token, is_admin_user

__all__ = [
    # Config
    "settings",
    "Settings",
    "get_settings",
    # Security
    "decode_supabase_token",
    "claims_to_user",
    "is_admin_user",
]
