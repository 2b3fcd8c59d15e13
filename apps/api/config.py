"""
Application configuration using Pydantic Settings.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import List


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./studyscribe.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379"

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000

    # CORS
    CORS_ORIGINS: List[str] = [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:8081",
    ]

    # Background jobs: "rq" (Redis worker) or "inline" (asyncio task in the API process)
    JOB_BACKEND: str = "rq"
    STALLED_JOB_MAX_AGE_MINUTES: int = 120

    # Media storage
    MEDIA_UPLOAD_DIR: str = "/tmp/studyscribe_uploads"
    MEDIA_TEMP_DIR: str = "/tmp/studyscribe_work"
    MAX_UPLOAD_BYTES: int = 100 * 1024 * 1024
    TEMP_FILE_MAX_AGE_MINUTES: int = 60
    WORKSPACE_HEARTBEAT_SECONDS: float = 60.0
    ALLOW_MEDIA_DOWNLOAD: bool = False

    # Preprocessing / segment normalization
    MAX_CHUNK_SECONDS: int = 600
    MIN_SEGMENT_SECONDS: float = 2.0
    MAX_SEGMENT_SECONDS: float = 30.0

    # Transcription providers
    TRANSCRIPTION_SERVICE_URL: str = ""
    REMOTE_HEALTH_TIMEOUT_SECONDS: float = 5.0
    REMOTE_TRANSCRIBE_TIMEOUT_SECONDS: float = 600.0
    USE_OPENAI_WHISPER: bool = False
    OPENAI_WHISPER_MODEL: str = "whisper-1"
    WHISPER_CLI_PATH: str = "whisper"
    WHISPER_MODEL: str = "base"
    LOCAL_CLI_TIMEOUT_SECONDS: int = 1800
    CAPTION_FETCH_TIMEOUT_SECONDS: float = 30.0

    # OpenAI
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o-mini"

    # Study content
    STUDY_MIN_TRANSCRIPT_CHARS: int = 50
    STUDY_MAX_TRANSCRIPT_CHARS: int = 8000
    STUDY_GENERATION_TIMEOUT_SECONDS: float = 60.0

    # Client polling contract
    POLL_INTERVAL_SECONDS: float = 5.0
    POLL_MAX_ATTEMPTS: int = 60

    # Security
    JWT_SECRET: str = "change_me_in_production"
    JWT_ALGORITHM: str = "HS256"
    JWT_EXPIRATION_HOURS: int = 24
    ALLOW_INSECURE_DEV_SECRETS: bool = True
    AUTO_CREATE_DB_SCHEMA: bool = True

    # Submission quotas
    SUBMISSION_RATE_LIMIT: int = 30
    SUBMISSION_RATE_WINDOW_SECONDS: int = 3600
    CHAT_RATE_LIMIT: int = 120

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True)


settings = Settings()


def validate_security_settings() -> None:
    """Fail fast when insecure default secrets are still configured."""
    if settings.ALLOW_INSECURE_DEV_SECRETS:
        return
    insecure_values = {
        "",
        "change_me_in_production",
        "your_jwt_secret_change_in_production",
    }
    jwt_secret = (settings.JWT_SECRET or "").strip()
    if jwt_secret in insecure_values or len(jwt_secret) < 24:
        raise ValueError("JWT_SECRET is insecure. Configure a strong non-default secret (>=24 chars).")
