"""OpenAPI configuration and customization for TaleForge API.

Adds the long-form description, tag metadata, the Supabase bearer scheme
and a few response examples to the generated schema.
"""

from typing import Any

from fastapi import FastAPI
from fastapi.openapi.utils import get_openapi

# API metadata
API_TITLE = "TaleForge API"
API_DESCRIPTION = """
# TaleForge API

Interactive, illustrated and narrated stories for children.

## Overview

A story grows one segment at a time. Each segment ends with three choices;
picking one generates the next segment. Illustrations and narration are
produced in the background and delivered over Server-Sent Events.

## Authentication

Send the Supabase Auth access token as a bearer token:

```
Authorization: Bearer <supabase-access-token>
```

Anonymous visitors can create and read anonymous stories.

## Monthly Limits

| Tier | Stories | Images | Narration minutes | Characters |
|------|---------|--------|-------------------|------------|
| Free | 20 | 20 | 10 | 3 |
| Core | 100 | 100 | 60 | Unlimited |
| Pro | Unlimited | 300 | 140 | Unlimited |
| Family | Unlimited | 300 | 140 | Unlimited |

## Errors

Errors share one body shape: `{"error": "...", "details": {...}}`.

| Code | Description |
|------|-------------|
| 400 | Bad Request - Invalid parameters |
| 401 | Unauthorized - Missing or invalid token |
| 402 | Payment Required - Monthly limit reached |
| 403 | Forbidden - Not your story |
| 404 | Not Found - Resource doesn't exist |
| 409 | Conflict - Story finished or narration already running |
| 429 | Too Many Requests - Rate limited |
| 503 | Service Unavailable - Every AI provider failed |
"""

TAGS_METADATA = [
    {
        "name": "health",
        "description": "Health check and system status endpoints",
    },
    {
        "name": "stories",
        "description": "Generate, continue, finish, illustrate and narrate stories",
    },
    {
        "name": "sse",
        "description": "Server-Sent Events for live segment and narration updates",
    },
    {
        "name": "characters",
        "description": "Reusable characters for new stories",
    },
    {
        "name": "feedback",
        "description": "Feedback widget submissions",
    },
    {
        "name": "waitlist",
        "description": "Waitlist signup",
    },
    {
        "name": "account",
        "description": "Usage, subscription tier and founder status",
    },
    {
        "name": "billing",
        "description": "Stripe config, checkout, payment verification, customer portal and webhook",
    },
    {
        "name": "admin",
        "description": "Admin console data",
    },
]


def custom_openapi(app: FastAPI) -> dict[str, Any]:
    """Generate custom OpenAPI schema with enhanced documentation.

    Args:
        app: FastAPI application instance

    Returns:
        OpenAPI schema dictionary
    """
    if app.openapi_schema:
        return app.openapi_schema

    openapi_schema = get_openapi(
        title=API_TITLE,
        version=app.version,
        description=API_DESCRIPTION,
        routes=app.routes,
        tags=TAGS_METADATA,
    )

    if "components" not in openapi_schema:
        openapi_schema["components"] = {}

    openapi_schema["components"]["securitySchemes"] = {
        "BearerAuth": {
            "type": "http",
            "scheme": "bearer",
            "bearerFormat": "JWT",
            "description": "Supabase Auth access token",
        },
    }

    _add_schema_examples(openapi_schema)

    app.openapi_schema = openapi_schema
    return app.openapi_schema


def _add_schema_examples(schema: dict[str, Any]) -> None:
    """Add examples to schema definitions in place."""
    schemas = schema.get("components", {}).get("schemas", {})

    if "SegmentCreateRequest" in schemas:
        schemas["SegmentCreateRequest"]["example"] = {
            "prompt": "A shy dragon who wants to learn to fly",
            "genre": "fantasy-magic",
            "age": "4-6",
        }

    if "GeneratedSegmentResponse" in schemas:
        schemas["GeneratedSegmentResponse"]["example"] = {
            "id": "8b0f6c1e-2f9a-4d61-9a55-0f6a3c7d2e11",
            "story_id": "3d2c1b0a-9e8f-4a7b-8c6d-5e4f3a2b1c0d",
            "segment_number": 1,
            "segment_text": "High on a misty mountain lived a little dragon named Ember...",
            "choices": [
                "Ember asks the wise owl for help",
                "Ember practices flapping at sunrise",
                "Ember follows the migrating geese",
            ],
            "image_prompt": "A small red dragon on a misty mountain at dawn",
            "is_end": False,
            "image_url": None,
            "image_generation_status": "pending",
            "model_used": "Meta-Llama-3_3-70B-Instruct",
        }
