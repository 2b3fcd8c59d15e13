"""On-demand study material generation for stored transcripts."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

from sqlalchemy import select

from config import settings
from database import async_session_maker
from models.analysis_insight import AnalysisInsight
from models.study_material import StudyMaterial
from multimodal.llm import build_study_backend
from services.study_fallback import LocalStudyGenerator
from services.study_generator import STATUS_OK, ChatReply, GenerationOutcome, StudyContentGenerator
from services.transcript_store import get_transcript

logger = logging.getLogger(__name__)


@dataclass
class StudyContentResult:
    outcome: GenerationOutcome
    study_material: Optional[StudyMaterial] = None
    insight: Optional[AnalysisInsight] = None


def build_study_generator() -> StudyContentGenerator:
    return StudyContentGenerator(
        remote=build_study_backend(settings.OPENAI_API_KEY, settings.OPENAI_MODEL),
        local=LocalStudyGenerator(),
        min_chars=settings.STUDY_MIN_TRANSCRIPT_CHARS,
        max_chars=settings.STUDY_MAX_TRANSCRIPT_CHARS,
        timeout=settings.STUDY_GENERATION_TIMEOUT_SECONDS,
    )


def _generation_language(transcript_language: Optional[str], requested: Optional[str]) -> str:
    for candidate in (requested, transcript_language):
        value = (candidate or "").strip().lower()
        if value and value != "auto":
            return value
    return "en"


async def generate_study_content(
    transcript_id: str,
    *,
    language: Optional[str] = None,
    summary_length: str = "medium",
    owner_id: Optional[str] = None,
    scoped: bool = False,
    generator: Optional[StudyContentGenerator] = None,
) -> StudyContentResult:
    """Generate and store a new StudyMaterial (plus AnalysisInsight when insights exist)."""
    transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    generation_language = _generation_language(transcript.detected_language or transcript.language, language)
    outcome = await (generator or build_study_generator()).generate(
        transcript.full_text,
        generation_language,
        summary_length=summary_length,
    )
    if outcome.status != STATUS_OK:
        logger.info("Transcript %s too short for study content", transcript_id)
        return StudyContentResult(outcome=outcome)

    async with async_session_maker() as db:
        material = StudyMaterial(
            transcript_id=transcript.id,
            media_asset_id=transcript.media_asset_id,
            owner_id=transcript.owner_id,
            language=generation_language,
            flashcards=[card.model_dump() for card in outcome.flashcards],
            quiz_items=[item.model_dump() for item in outcome.quiz],
            summary=outcome.summary,
            fallback_used=outcome.fallback_used,
            sources=dict(outcome.sources),
        )
        db.add(material)
        await db.flush()

        insight = None
        if outcome.insights is not None:
            insight = AnalysisInsight(
                transcript_id=transcript.id,
                study_material_id=material.id,
                media_asset_id=transcript.media_asset_id,
                owner_id=transcript.owner_id,
                overall_score=outcome.insights.overall_score,
                agenda_coverage=outcome.insights.agenda_coverage,
                explanation=outcome.insights.explanation,
                action_items=[item.model_dump() for item in outcome.insights.action_items],
                topics=[topic.model_dump() for topic in outcome.insights.topics],
            )
            db.add(insight)
        await db.commit()
        await db.refresh(material)

    if outcome.fallback_used:
        logger.info(
            "Study content for transcript %s used fallback for %s (failed: %s)",
            transcript_id,
            ", ".join(outcome.fallback_artifacts) or "none",
            ", ".join(outcome.failed_artifacts) or "none",
        )
    return StudyContentResult(outcome=outcome, study_material=material, insight=insight)


async def chat_with_transcript(
    transcript_id: str,
    message: str,
    *,
    history: Optional[List[Dict[str, str]]] = None,
    language: Optional[str] = None,
    owner_id: Optional[str] = None,
    scoped: bool = False,
    generator: Optional[StudyContentGenerator] = None,
) -> tuple[ChatReply, str]:
    """Answer a question about a transcript. Returns the reply and the language used."""
    transcript = await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    chat_language = _generation_language(transcript.detected_language or transcript.language, language)
    reply = await (generator or build_study_generator()).answer(
        transcript.full_text,
        message,
        history=history,
        language=chat_language,
    )
    if reply.source != "remote":
        logger.info("Transcript chat for %s answered by %s", transcript_id, reply.source or "nobody")
    return reply, chat_language


async def list_study_materials(
    transcript_id: str,
    *,
    owner_id: Optional[str] = None,
    scoped: bool = False,
) -> List[tuple[StudyMaterial, Optional[AnalysisInsight]]]:
    await get_transcript(transcript_id, owner_id=owner_id, scoped=scoped)
    async with async_session_maker() as db:
        materials = (
            await db.execute(
                select(StudyMaterial)
                .where(StudyMaterial.transcript_id == transcript_id)
                .order_by(StudyMaterial.created_at.desc())
            )
        ).scalars().all()
        insights = (
            await db.execute(select(AnalysisInsight).where(AnalysisInsight.transcript_id == transcript_id))
        ).scalars().all()
    by_material = {insight.study_material_id: insight for insight in insights}
    return [(material, by_material.get(material.id)) for material in materials]
