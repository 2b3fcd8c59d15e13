"""Server-first, local-fallback study content generation."""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from multimodal.models import ActionItem, Flashcard, QuizItem, TopicRelevance, TranscriptInsights

logger = logging.getLogger(__name__)

ARTIFACTS = ("flashcards", "quiz", "summary", "insights")
MAX_FLASHCARDS = 15
MAX_QUIZ_ITEMS = 10
MAX_OPTIONS = 4
MAX_QUESTION_WORDS = 20

STATUS_OK = "ok"
STATUS_TOO_SHORT = "content_too_short"
NO_REPLY_TEXT = "I couldn't generate a response."


class GenerationBackend(Protocol):
    name: str

    async def flashcards(self, transcript_text: str, language: str) -> List[Dict[str, Any]]: ...

    async def quiz(self, transcript_text: str, language: str) -> List[Dict[str, Any]]: ...

    async def summary(self, transcript_text: str, language: str, length: str = "medium") -> str: ...

    async def insights(self, transcript_text: str, language: str) -> Dict[str, Any]: ...

    async def chat(self, history: List[Dict[str, str]], message: str, context: str, language: str) -> str: ...


class EmptyGeneration(ValueError):
    """Backend answered but produced nothing usable."""


def normalize_text(value: str) -> str:
    lowered = re.sub(r"\s+", " ", (value or "").lower())
    return re.sub(r"[.,;:!?\"'\-–—()\[\]]", "", lowered).strip()


def sanitize_flashcards(raw: Any, limit: int = MAX_FLASHCARDS) -> List[Flashcard]:
    """Fronts need 2+ words, backs 5+ words, front != back, unique by normalized front."""
    cards: List[Flashcard] = []
    seen = set()
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        front = str(item.get("front") or "").strip()
        back = str(item.get("back") or "").strip()
        if len(front.split()) < 2 or len(back.split()) < 5:
            continue
        key = normalize_text(front)
        if key == normalize_text(back) or key in seen:
            continue
        seen.add(key)
        cards.append(Flashcard(front=front, back=back))
        if len(cards) >= limit:
            break
    return cards


def _correct_text(item: Dict[str, Any], options: List[str]) -> str:
    for key in ("correctAnswer", "correct_answer", "answer"):
        value = item.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    for key in ("correctOptionIndex", "correct_option_index", "correctIndex"):
        value = item.get(key)
        if isinstance(value, int) and 0 <= value < len(options):
            return options[value]
    return ""


def sanitize_quiz(raw: Any, limit: int = MAX_QUIZ_ITEMS) -> List[QuizItem]:
    """
    Keep items with a question and 2+ options. Items repeating a question and
    answer are dropped; options are deduped and capped at 4. The correct index
    is the option matching the correct answer, or 0 when nothing matches.
    """
    items: List[QuizItem] = []
    seen_questions = set()
    for item in raw or []:
        if not isinstance(item, dict):
            continue
        question = " ".join(str(item.get("question") or "").split())
        options = [" ".join(str(o).split()) for o in (item.get("options") or []) if str(o or "").strip()]
        if not question or len(options) < 2:
            continue
        words = question.split(" ")
        if len(words) > MAX_QUESTION_WORDS:
            question = " ".join(words[:MAX_QUESTION_WORDS])

        correct = _correct_text(item, options)
        correct_key = normalize_text(correct)
        item_key = (normalize_text(question), correct_key)
        if item_key in seen_questions:
            continue
        unique: List[str] = []
        option_keys = set()
        for option in options:
            key = normalize_text(option)
            if key in option_keys:
                continue
            option_keys.add(key)
            unique.append(option)
        if len(unique) < 2:
            continue
        if len(unique) > MAX_OPTIONS:
            trimmed = unique[:MAX_OPTIONS]
            kept_keys = {normalize_text(o) for o in trimmed}
            if correct_key and correct_key in option_keys and correct_key not in kept_keys:
                original = next(o for o in unique if normalize_text(o) == correct_key)
                trimmed[-1] = original
            unique = trimmed

        index = next((i for i, o in enumerate(unique) if o == correct), None)
        if index is None:
            index = next((i for i, o in enumerate(unique) if correct_key and normalize_text(o) == correct_key), 0)

        seen_questions.add(item_key)
        explanation = item.get("explanation")
        items.append(
            QuizItem(
                question=question,
                options=unique,
                correct_option_index=index,
                correct_answer=unique[index],
                explanation=str(explanation).strip() if explanation else None,
            )
        )
        if len(items) >= limit:
            break
    return items


def flashcards_from_quiz(cards: List[Flashcard], quiz: List[QuizItem]) -> List[Flashcard]:
    """Append one card per quiz item (question -> correct option) not already covered."""
    merged = list(cards)
    seen = {normalize_text(card.front) for card in merged}
    for item in quiz:
        key = normalize_text(item.question)
        if key in seen:
            continue
        seen.add(key)
        merged.append(Flashcard(front=item.question, back=item.options[item.correct_option_index]))
    return merged


def sanitize_summary(raw: Any) -> str:
    text = str(raw or "").strip()
    return re.sub(r"(?m)^(\s*)\* ", r"\1- ", text)


def _clamp_score(value: Any) -> int:
    try:
        return max(0, min(100, int(round(float(value)))))
    except (TypeError, ValueError):
        return 0


def sanitize_insights(raw: Any) -> Optional[TranscriptInsights]:
    if not isinstance(raw, dict) or not raw:
        return None
    overall = raw.get("overallScore", raw.get("overall_score"))
    coverage = raw.get("agendaCoverage", raw.get("agenda_coverage"))
    if overall is None and coverage is None:
        return None

    action_items = []
    for item in raw.get("actionItems", raw.get("action_items")) or []:
        if isinstance(item, dict) and str(item.get("task") or "").strip():
            assignee = item.get("assignee")
            action_items.append(ActionItem(task=str(item["task"]).strip(), assignee=str(assignee).strip() if assignee else None))
        elif isinstance(item, str) and item.strip():
            action_items.append(ActionItem(task=item.strip()))

    topics = []
    for item in raw.get("topics") or []:
        if isinstance(item, dict) and str(item.get("topic") or "").strip():
            topics.append(TopicRelevance(topic=str(item["topic"]).strip(), relevance=_clamp_score(item.get("relevance"))))

    return TranscriptInsights(
        overall_score=_clamp_score(overall),
        agenda_coverage=_clamp_score(coverage),
        explanation=str(raw.get("agendaExplanation", raw.get("explanation")) or "").strip(),
        action_items=action_items,
        topics=topics,
    )


SANITIZERS: Dict[str, Callable[[Any], Any]] = {
    "flashcards": sanitize_flashcards,
    "quiz": sanitize_quiz,
    "summary": sanitize_summary,
    "insights": sanitize_insights,
}
EMPTY_VALUES: Dict[str, Callable[[], Any]] = {
    "flashcards": list,
    "quiz": list,
    "summary": lambda: None,
    "insights": lambda: None,
}


@dataclass
class ArtifactResult:
    artifact: str
    value: Any
    source: Optional[str]   # backend name, or None when every path failed


@dataclass
class GenerationOutcome:
    status: str
    flashcards: List[Flashcard] = field(default_factory=list)
    quiz: List[QuizItem] = field(default_factory=list)
    summary: Optional[str] = None
    insights: Optional[TranscriptInsights] = None
    sources: Dict[str, Optional[str]] = field(default_factory=dict)
    fallback_used: bool = False

    @property
    def fallback_artifacts(self) -> List[str]:
        return [name for name, source in self.sources.items() if source not in (None, "remote")]

    @property
    def failed_artifacts(self) -> List[str]:
        return [name for name, source in self.sources.items() if source is None]


@dataclass
class ChatReply:
    reply: str
    source: Optional[str]


class StudyContentGenerator:
    """
    Produces flashcards, quiz, summary and insights for a transcript.

    Each artifact is tried on the remote backend first and falls back to the
    local backend independently. The four artifacts run concurrently and the
    result is assembled after all of them settle; nothing is raised to the
    caller.
    """

    def __init__(
        self,
        remote: Optional[GenerationBackend],
        local: Optional[GenerationBackend],
        *,
        min_chars: int = 50,
        max_chars: int = 8000,
        timeout: float = 60.0,
    ):
        self.remote = remote
        self.local = local
        self.min_chars = min_chars
        self.max_chars = max_chars
        self.timeout = timeout

    def _prompt_text(self, text: str) -> str:
        if len(text) <= self.max_chars:
            return text
        return text[: self.max_chars] + "..."

    async def _attempt(self, backend: GenerationBackend, artifact: str, text: str, language: str, length: str) -> Any:
        method: Callable[..., Awaitable[Any]] = getattr(backend, artifact)
        call = method(text, language, length) if artifact == "summary" else method(text, language)
        raw = await asyncio.wait_for(call, timeout=self.timeout)
        value = SANITIZERS[artifact](raw)
        if not value:
            raise EmptyGeneration(f"{backend.name} returned no {artifact}")
        return value

    async def _generate_artifact(self, artifact: str, full_text: str, language: str, length: str) -> ArtifactResult:
        attempts = []
        if self.remote is not None:
            attempts.append((self.remote, self._prompt_text(full_text)))
        if self.local is not None:
            attempts.append((self.local, full_text))
        for backend, text in attempts:
            try:
                value = await self._attempt(backend, artifact, text, language, length)
                return ArtifactResult(artifact=artifact, value=value, source=backend.name)
            except Exception as exc:
                logger.warning("Study %s generation via %s failed: %s", artifact, backend.name, exc)
        return ArtifactResult(artifact=artifact, value=EMPTY_VALUES[artifact](), source=None)

    async def answer(
        self,
        transcript_text: str,
        message: str,
        history: Optional[List[Dict[str, str]]] = None,
        language: str = "en",
    ) -> ChatReply:
        """Answer a question about the transcript, remote first, then local."""
        context = " ".join((transcript_text or "").split())
        turns = list(history or [])
        attempts = []
        if self.remote is not None:
            attempts.append((self.remote, self._prompt_text(context)))
        if self.local is not None:
            attempts.append((self.local, context))
        for backend, text in attempts:
            try:
                raw = await asyncio.wait_for(backend.chat(turns, message, text, language), timeout=self.timeout)
            except Exception as exc:
                logger.warning("Transcript chat via %s failed: %s", backend.name, exc)
                continue
            reply = sanitize_summary(raw)
            if reply:
                return ChatReply(reply=reply, source=backend.name)
            logger.warning("Transcript chat via %s returned an empty reply", backend.name)
        return ChatReply(reply=NO_REPLY_TEXT, source=None)

    async def generate(self, transcript_text: str, language: str = "en", summary_length: str = "medium") -> GenerationOutcome:
        text = " ".join((transcript_text or "").split())
        if len(text) < self.min_chars:
            return GenerationOutcome(status=STATUS_TOO_SHORT)

        settled = await asyncio.gather(
            *(self._generate_artifact(artifact, text, language, summary_length) for artifact in ARTIFACTS),
            return_exceptions=True,
        )

        values: Dict[str, Any] = {}
        sources: Dict[str, Optional[str]] = {}
        for artifact, outcome in zip(ARTIFACTS, settled):
            if isinstance(outcome, BaseException):
                logger.error("Study %s generation crashed: %s", artifact, outcome)
                values[artifact], sources[artifact] = EMPTY_VALUES[artifact](), None
            else:
                values[artifact], sources[artifact] = outcome.value, outcome.source

        flashcards = flashcards_from_quiz(values["flashcards"], values["quiz"])
        fallback_used = any(source != "remote" for source in sources.values())
        return GenerationOutcome(
            status=STATUS_OK,
            flashcards=flashcards,
            quiz=values["quiz"],
            summary=values["summary"],
            insights=values["insights"],
            sources=sources,
            fallback_used=fallback_used,
        )
