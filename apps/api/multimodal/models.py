from typing import List, Optional
from pydantic import BaseModel, Field


class TranscriptSegment(BaseModel):
    index: int = 0
    start: float        # seconds
    end: float          # seconds, > start
    text: str
    confidence: Optional[float] = None
    is_edited: bool = False
    original_text: Optional[str] = None
    edited_at: Optional[str] = None
    is_highlighted: bool = False
    highlight_color: str = "yellow"
    highlight_note: Optional[str] = None


class TranscriptionResult(BaseModel):
    text: str
    language: str
    segments: List[TranscriptSegment]
    confidence: Optional[float] = None
    source: str         # "remote", "openai", "local_cli", "subtitles", "auto-captions"


class Flashcard(BaseModel):
    front: str
    back: str


class QuizItem(BaseModel):
    question: str
    options: List[str]
    correct_option_index: int = 0
    correct_answer: str = ""
    explanation: Optional[str] = None


class ActionItem(BaseModel):
    task: str
    assignee: Optional[str] = None


class TopicRelevance(BaseModel):
    topic: str
    relevance: int = Field(ge=0, le=100)


class TranscriptInsights(BaseModel):
    overall_score: int = Field(ge=0, le=100)
    agenda_coverage: int = Field(ge=0, le=100)
    explanation: str = ""
    action_items: List[ActionItem] = []
    topics: List[TopicRelevance] = []
