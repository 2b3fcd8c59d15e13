"""Versioned transcript model."""

import uuid

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class Transcript(Base):
    """Timestamped transcript produced by one successful transcription job."""

    __tablename__ = "transcripts"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    media_asset_id = Column(String, ForeignKey("media_assets.id"), nullable=False, unique=True, index=True)
    owner_id = Column(String, nullable=True, index=True)
    full_text = Column(Text, nullable=False, default="")
    language = Column(String, nullable=False, default="auto")
    detected_language = Column(String, nullable=True)
    confidence = Column(Float, nullable=True)
    source = Column(String, nullable=True)
    segments = Column(JSON, nullable=False, default=list)
    version = Column(Integer, nullable=False, default=1)
    edit_history = Column(JSON, nullable=False, default=list)
    export_formats = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
