"""Generated study material model."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class StudyMaterial(Base):
    """Flashcards, quiz and summary generated from a transcript."""

    __tablename__ = "study_materials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transcript_id = Column(String, ForeignKey("transcripts.id"), nullable=False, index=True)
    media_asset_id = Column(String, nullable=True, index=True)
    owner_id = Column(String, nullable=True, index=True)
    language = Column(String, nullable=False, default="en")
    flashcards = Column(JSON, nullable=False, default=list)
    quiz_items = Column(JSON, nullable=False, default=list)
    summary = Column(Text, nullable=True)
    fallback_used = Column(Boolean, nullable=False, default=False)
    sources = Column(JSON, nullable=False, default=dict)  # artifact -> backend name, null when it failed
    created_at = Column(DateTime(timezone=True), server_default=func.now())
