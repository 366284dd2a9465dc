"""FastAPI dependencies for dependency injection.

Provides reusable dependencies for authentication, database sessions,
providers and the realtime event bus.
"""

from typing import Annotated, Any

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taleforge.core.config import Settings, get_settings
from taleforge.core.supabase import get_current_user, get_current_user_optional, require_admin
from taleforge.models.database import get_session, get_session_factory
from taleforge.providers import ProviderRegistry, get_provider_registry
from taleforge.services.realtime import StoryEventBus, get_event_bus

# Settings dependency
AppSettings = Annotated[Settings, Depends(get_settings)]

# Database session dependency
DBSession = Annotated[AsyncSession, Depends(get_session)]

# Session factory for work that outlives the request (background tasks, SSE)
SessionFactory = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]

# Supabase user dict (id, email, role, app_metadata, user_metadata)
CurrentUser = Annotated[dict[str, Any], Depends(get_current_user)]
OptionalUser = Annotated[dict[str, Any] | None, Depends(get_current_user_optional)]
AdminUser = Annotated[dict[str, Any], Depends(require_admin)]

Registry = Annotated[ProviderRegistry, Depends(get_provider_registry)]
EventBus = Annotated[StoryEventBus, Depends(get_event_bus)]
