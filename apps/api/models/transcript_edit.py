"""Append-only transcript edit log model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.sql import func

from database import Base


class TranscriptEdit(Base):
    """One segment edit, with the text before and after."""

    __tablename__ = "transcript_edits"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transcript_id = Column(String, ForeignKey("transcripts.id"), nullable=False, index=True)
    segment_index = Column(Integer, nullable=False)
    edited_by = Column(String, nullable=True)
    old_text = Column(Text, nullable=False, default="")
    new_text = Column(Text, nullable=False, default="")
    version = Column(Integer, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
