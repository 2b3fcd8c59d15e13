"""Submitted media asset model."""

from sqlalchemy import Column, String, DateTime, Float, Integer, Text
from sqlalchemy.sql import func
import uuid

from database import Base


class MediaAsset(Base):
    """Uploaded, recorded or linked media tracked through transcription."""

    __tablename__ = "media_assets"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    owner_id = Column(String, nullable=True, index=True)
    original_filename = Column(String, nullable=False)
    kind = Column(String, nullable=False, default="audio")  # audio | video | recording
    source_url = Column(String, nullable=True)
    storage_path = Column(String, nullable=True)
    file_size_bytes = Column(Integer, nullable=True)
    mime_type = Column(String, nullable=False)
    language_hint = Column(String, nullable=False, default="auto")
    detected_language = Column(String, nullable=True)
    duration_seconds = Column(Float, nullable=True)
    status = Column(String, nullable=False, default="pending", index=True)
    processing_error = Column(Text, nullable=True)
    transcript_id = Column(String, nullable=True, unique=True)
    transcript_source = Column(String, nullable=True)
    retry_of_id = Column(String, nullable=True, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    processing_started_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
