"""
StudyScribe - FastAPI Backend
Media transcription and study content API.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, media, transcripts, study
from services.errors import InvalidTransition, NotFoundError, ValidationError
from services.events import build_event_bus
from services.job_queue import recover_stalled_transcriptions
from services.storage import cleanup_stale_workspaces

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting StudyScribe API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        recovered = await recover_stalled_transcriptions()
        if recovered:
            print(f"♻️ Recovered {recovered} stalled transcriptions after startup.")
    except Exception as exc:
        print(f"⚠️ Stalled transcription recovery skipped: {exc}")
    try:
        removed = cleanup_stale_workspaces()
        if removed:
            print(f"🧹 Removed {removed} stale job workspaces.")
    except Exception as exc:
        print(f"⚠️ Workspace cleanup skipped: {exc}")
    app.state.event_bus = build_event_bus()
    yield
    # Shutdown
    print("👋 Shutting down API...")


app = FastAPI(
    title="StudyScribe API",
    description="Transcribe lectures and recordings, then turn them into flashcards, quizzes and summaries",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(InvalidTransition)
async def invalid_transition_handler(request: Request, exc: InvalidTransition):
    return JSONResponse(status_code=409, content={"detail": str(exc)})


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(media.router, prefix="/media", tags=["Media"])
app.include_router(transcripts.router, prefix="/transcripts", tags=["Transcripts"])
app.include_router(study.router, prefix="/study", tags=["Study"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "StudyScribe API",
        "version": "0.1.0",
        "status": "running"
    }
