"""
Health check endpoints.
"""

import asyncio

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from sqlalchemy import text
import redis.asyncio as redis

from config import settings
from database import engine
from services.transcription_job import default_audio_provider

router = APIRouter()


async def _provider_status() -> str:
    try:
        provider = await asyncio.to_thread(default_audio_provider)
        available = await provider.is_available()
    except Exception as e:
        return f"down: {str(e)}"
    return f"{provider.name}: {'up' if available else 'unavailable'}"


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Returns database, Redis and transcription backend status.
    """
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": "unknown",
        "redis": "unknown",
        "job_backend": settings.JOB_BACKEND,
        "transcription_provider": "unknown",
        "openai_api_key": "configured" if settings.OPENAI_API_KEY else "missing",
    }

    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        health_status["database"] = "up"
    except Exception as e:
        health_status["database"] = f"down: {str(e)}"
        health_status["status"] = "degraded"

    if settings.JOB_BACKEND == "rq":
        try:
            r = redis.from_url(settings.REDIS_URL)
            await r.ping()
            await r.aclose()
            health_status["redis"] = "up"
        except Exception as e:
            health_status["redis"] = f"down: {str(e)}"
            health_status["status"] = "degraded"
    else:
        health_status["redis"] = "not required"

    health_status["transcription_provider"] = await _provider_status()
    if not health_status["transcription_provider"].endswith(": up"):
        health_status["status"] = "degraded"

    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Kubernetes-style readiness probe."""
    missing = []
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        missing.append("DATABASE_URL")
    if settings.USE_OPENAI_WHISPER and not settings.OPENAI_API_KEY:
        missing.append("OPENAI_API_KEY")

    if missing:
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
