"""Transcript insight score model."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, JSON, String, Text
from sqlalchemy.sql import func

from database import Base


class AnalysisInsight(Base):
    """Scored insights (coverage, action items, topics) for a transcript."""

    __tablename__ = "analysis_insights"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    transcript_id = Column(String, ForeignKey("transcripts.id"), nullable=False, index=True)
    study_material_id = Column(String, ForeignKey("study_materials.id"), nullable=True, index=True)
    media_asset_id = Column(String, nullable=True, index=True)
    owner_id = Column(String, nullable=True, index=True)
    overall_score = Column(Integer, nullable=False, default=0)
    agenda_coverage = Column(Integer, nullable=False, default=0)
    explanation = Column(Text, nullable=True)
    action_items = Column(JSON, nullable=False, default=list)
    topics = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
