"""API routers for different endpoint groups.

Routers:
- account: Usage, subscription tier and founder status
- admin: Admin console data and maintenance
- billing: Stripe checkout, portal and webhook
- characters: Reusable user characters
- feedback: Feedback form
- health: Health check and monitoring endpoints
- sse: Server-Sent Events for live story updates
- stories: Segment generation and story management
- waitlist: Waitlist signup
"""

from .account import router as account_router
from .admin import router as admin_router
from .billing import router as billing_router
from .characters import router as characters_router
from .feedback import router as feedback_router
from .health import router as health_router
from .sse import router as sse_router
from .stories import router as stories_router
from .waitlist import router as waitlist_router

__all__ = [
    "account_router",
    "admin_router",
    "billing_router",
    "characters_router",
    "feedback_router",
    "health_router",
    "sse_router",
    "stories_router",
    "waitlist_router",
]
