"""Health check endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import text

from taleforge.api.deps import AppSettings, Registry
from taleforge.models.database import get_engine

router = APIRouter()


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    database: str
    providers: dict[str, bool]


@router.get("/health", response_model=HealthResponse)
async def health_check(settings: AppSettings, registry: Registry) -> HealthResponse:
    """Check application health status.

    Returns:
        Health status including database connectivity and which
        provider modalities are configured.
    """
    db_status = "healthy"
    try:
        engine = get_engine()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except RuntimeError:
        db_status = "not initialized"
    except Exception:
        db_status = "error"

    providers = {
        "text": registry.text_primary is not None,
        "image": registry.image_primary is not None,
        "speech": registry.speech_primary is not None,
    }

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        version=settings.app_version,
        database=db_status,
        providers=providers,
    )


@router.get("/ready")
async def readiness_check() -> dict:
    """Kubernetes readiness probe.

    Returns:
        Simple ready status.
    """
    return {"ready": True}


@router.get("/live")
async def liveness_check() -> dict:
    """Kubernetes liveness probe.

    Returns:
        Simple alive status.
    """
    return {"alive": True}
