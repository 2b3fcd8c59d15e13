"""Study material (flashcards, quiz, summary, insights) router."""

from __future__ import annotations

from typing import Dict, List, Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from config import settings
from models.analysis_insight import AnalysisInsight
from models.study_material import StudyMaterial
from multimodal.models import Flashcard, QuizItem, TranscriptInsights
from routers.auth_scope import get_caller, owner_of
from routers.rate_limit import submission_quota
from services.caller_identity import Caller
from services.study_content import chat_with_transcript, generate_study_content, list_study_materials

router = APIRouter()


class GenerateStudyRequest(BaseModel):
    language: Optional[str] = Field(default=None, max_length=12)
    summary_length: Literal["short", "medium", "long"] = "medium"


class StudyMaterialResponse(BaseModel):
    status: str
    transcript_id: str
    study_material_id: Optional[str] = None
    language: Optional[str] = None
    flashcards: List[Flashcard] = []
    quiz: List[QuizItem] = []
    summary: Optional[str] = None
    insights: Optional[TranscriptInsights] = None
    fallback_used: bool = False
    fallback_artifacts: List[str] = []
    failed_artifacts: List[str] = []
    sources: Dict[str, Optional[str]] = {}
    created_at: Optional[str] = None


class ChatTurn(BaseModel):
    role: Literal["user", "model", "assistant"]
    text: str = Field(default="", max_length=8000)


class ChatRequest(BaseModel):
    message: str = Field(..., min_length=1, max_length=2000)
    history: List[ChatTurn] = Field(default_factory=list, max_length=50)
    language: Optional[str] = Field(default=None, max_length=12)


class ChatResponse(BaseModel):
    transcript_id: str
    reply: str
    source: Optional[str] = None
    language: str


def _insights_of(insight: Optional[AnalysisInsight]) -> Optional[TranscriptInsights]:
    if insight is None:
        return None
    return TranscriptInsights(
        overall_score=insight.overall_score,
        agenda_coverage=insight.agenda_coverage,
        explanation=insight.explanation or "",
        action_items=insight.action_items or [],
        topics=insight.topics or [],
    )


def _serialize_material(material: StudyMaterial, insight: Optional[AnalysisInsight]) -> StudyMaterialResponse:
    sources: Dict[str, Optional[str]] = dict(material.sources or {})
    return StudyMaterialResponse(
        status="ok",
        transcript_id=material.transcript_id,
        study_material_id=material.id,
        language=material.language,
        flashcards=material.flashcards or [],
        quiz=material.quiz_items or [],
        summary=material.summary,
        insights=_insights_of(insight),
        fallback_used=bool(material.fallback_used),
        fallback_artifacts=[name for name, source in sources.items() if source not in (None, "remote")],
        failed_artifacts=[name for name, source in sources.items() if source is None],
        sources=sources,
        created_at=material.created_at.isoformat() if material.created_at else None,
    )


@router.post("/{transcript_id}/generate", response_model=StudyMaterialResponse)
async def generate_study_material(
    transcript_id: str,
    request: Optional[GenerateStudyRequest] = None,
    _quota: None = Depends(submission_quota("study_generate")),
    caller: Optional[Caller] = Depends(get_caller),
):
    """
    Generate flashcards, a quiz, a summary and insights for a transcript.

    Transcripts too short to study from return `status="content_too_short"`
    and nothing is stored.
    """
    request = request or GenerateStudyRequest()
    result = await generate_study_content(
        transcript_id,
        language=request.language,
        summary_length=request.summary_length,
        owner_id=owner_of(caller),
        scoped=True,
    )
    if result.study_material is None:
        return StudyMaterialResponse(status=result.outcome.status, transcript_id=transcript_id)
    return _serialize_material(result.study_material, result.insight)


@router.get("/{transcript_id}/materials", response_model=List[StudyMaterialResponse])
async def get_study_materials(transcript_id: str, caller: Optional[Caller] = Depends(get_caller)):
    """All stored study materials for a transcript, newest first."""
    pairs = await list_study_materials(transcript_id, owner_id=owner_of(caller), scoped=True)
    return [_serialize_material(material, insight) for material, insight in pairs]


@router.post("/{transcript_id}/chat", response_model=ChatResponse)
async def chat_about_transcript(
    transcript_id: str,
    request: ChatRequest,
    _quota: None = Depends(submission_quota("study_chat", limit=settings.CHAT_RATE_LIMIT)),
    caller: Optional[Caller] = Depends(get_caller),
):
    """Ask a question about a transcript. Nothing is stored."""
    reply, language = await chat_with_transcript(
        transcript_id,
        request.message,
        history=[turn.model_dump() for turn in request.history],
        language=request.language,
        owner_id=owner_of(caller),
        scoped=True,
    )
    return ChatResponse(transcript_id=transcript_id, reply=reply.reply, source=reply.source, language=language)
