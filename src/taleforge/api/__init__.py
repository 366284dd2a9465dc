"""TaleForge HTTP API (FastAPI application, routers, dependencies)."""
