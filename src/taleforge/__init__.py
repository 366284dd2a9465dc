"""TaleForge - interactive AI stories for children.

Backend for a branching storytelling app: readers pick a genre and an age
band, type a prompt, and each choice produces the next illustrated,
optionally narrated segment.

Quick Start:
    uvicorn taleforge.api.main:app --reload

    # or
    python -m taleforge

Architecture:
    api        FastAPI routers, dependencies and error handlers
    services   segment generation, images, narration, story bible,
               realtime delivery, tiers and billing
    providers  OVH AI Endpoints, OpenAI and ElevenLabs over HTTP
    models     SQLAlchemy async models
    core       settings, Supabase clients and token verification
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
