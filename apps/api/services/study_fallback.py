"""Local study content heuristics used when server-side generation is unavailable."""

from __future__ import annotations

import random
import re
from collections import Counter
from typing import Any, Dict, List, Optional

MIN_SENTENCE_CHARS = 20
MAX_FLASHCARDS = 15
MAX_QUIZ_ITEMS = 10
SUMMARY_SENTENCES = 3
TOPIC_COUNT = 5

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?。！？])\s+")
_WORD = re.compile(r"[^\W\d_]+", re.UNICODE)
_ACTION_CUES = re.compile(
    r"\b(need to|needs to|should|must|will|have to|has to|action item|todo|follow up|cần|phải)\b",
    re.IGNORECASE,
)
_ASSIGNEE = re.compile(r"^([A-Z][a-z]+)\s+(?:will|should|must|needs to|has to)\b")

STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of", "with", "by", "from",
    "is", "are", "was", "were", "be", "been", "being", "have", "has", "had", "do", "does", "did",
    "will", "would", "could", "should", "may", "might", "must", "can", "this", "that", "these",
    "those", "i", "you", "he", "she", "it", "we", "they", "what", "which", "who", "when", "where",
    "why", "how", "about", "also", "just", "like", "really", "very", "there", "their", "then",
    "than", "them", "your", "into", "some", "more", "most", "other", "such", "only", "over",
    "because", "going", "know", "think", "want", "well", "yeah", "okay", "right", "actually",
}

QUESTION_TEXT = {
    "vi": "Theo nội dung, điều nào đúng nhất?",
    "en": "According to the content, which statement is most accurate?",
}
PADDING_QUESTION_TEXT = {
    "vi": "Chọn đáp án đúng theo nội dung transcript:",
    "en": "Choose the correct statement from the transcript:",
}
CHAT_LEAD_TEXT = {
    "vi": "Các đoạn liên quan nhất trong transcript:",
    "en": "The most relevant parts of the transcript:",
}
CHAT_NOT_FOUND_TEXT = {
    "vi": "Không tìm thấy nội dung liên quan trong transcript.",
    "en": "I couldn't find anything in the transcript about that.",
}
CHAT_SENTENCES = 3


def split_sentences(text: str) -> List[str]:
    collapsed = re.sub(r"\s+", " ", text or "").strip()
    if not collapsed:
        return []
    return [s.strip() for s in _SENTENCE_BOUNDARY.split(collapsed) if len(s.strip()) >= MIN_SENTENCE_CHARS]


def truncate_words(sentence: str, max_words: int = 8) -> str:
    parts = sentence.split(" ")
    if len(parts) <= max_words:
        return sentence
    return " ".join(parts[:max_words]) + "…"


def pick_distinct(items: List[str], count: int, exclude: Optional[str] = None) -> List[str]:
    out: List[str] = []
    for item in items:
        if len(out) >= count:
            break
        if item and item != exclude and item not in out:
            out.append(item)
    return out


def _localized(table: Dict[str, str], language: str) -> str:
    return table.get((language or "en").lower(), table["en"])


class LocalStudyGenerator:
    """Deterministic-enough heuristics over the raw transcript text."""

    name = "local"

    def __init__(self, rng: Optional[random.Random] = None):
        self.rng = rng or random.Random()

    async def flashcards(self, transcript_text: str, language: str) -> List[Dict[str, Any]]:
        sentences = split_sentences(transcript_text)
        cards = [{"front": truncate_words(s), "back": s} for s in sentences[:MAX_FLASHCARDS]]
        # Pad toward the target with clause-based fronts.
        for sentence in sentences[MAX_FLASHCARDS:] + sentences:
            if len(cards) >= MAX_FLASHCARDS * 2:
                break
            parts = [p.strip() for p in re.split(r"[,;:\-]+", sentence) if p.strip()]
            if len(parts) > 1:
                cards.append({"front": parts[0], "back": sentence})
        return cards

    def _quiz_item(self, correct: str, sentences: List[str], question: str) -> Dict[str, Any]:
        options = [correct] + pick_distinct([s for s in sentences if s != correct], 3)
        self.rng.shuffle(options)
        return {"question": question, "options": options, "correct_answer": correct}

    async def quiz(self, transcript_text: str, language: str) -> List[Dict[str, Any]]:
        sentences = split_sentences(transcript_text)
        if len(sentences) < 2:
            return []
        question = _localized(QUESTION_TEXT, language)
        items = [self._quiz_item(s, sentences, question) for s in sentences[:MAX_QUIZ_ITEMS]]
        padding_question = _localized(PADDING_QUESTION_TEXT, language)
        for sentence in sentences[MAX_QUIZ_ITEMS:]:
            if len(items) >= MAX_QUIZ_ITEMS * 2:
                break
            items.append(self._quiz_item(sentence, sentences, padding_question))
        return items

    async def summary(self, transcript_text: str, language: str, length: str = "medium") -> str:
        sentences = split_sentences(transcript_text)
        count = {"short": 2, "long": 5}.get(length, SUMMARY_SENTENCES)
        return " ".join(sentences[:count])

    async def chat(self, history: List[Dict[str, str]], message: str, context: str, language: str) -> str:
        """Answer with the transcript sentences sharing the most keywords with the question."""
        question_words = {w.lower() for w in _WORD.findall(message or "")} - STOP_WORDS
        ranked = []
        for position, sentence in enumerate(split_sentences(context)):
            overlap = len(question_words & {w.lower() for w in _WORD.findall(sentence)})
            if overlap:
                ranked.append((-overlap, position, sentence))
        if not ranked:
            return _localized(CHAT_NOT_FOUND_TEXT, language)

        best = sorted(sorted(ranked)[:CHAT_SENTENCES], key=lambda item: item[1])
        lines = [_localized(CHAT_LEAD_TEXT, language)] + [f"- {sentence}" for _, _, sentence in best]
        return "\n".join(lines)

    async def insights(self, transcript_text: str, language: str) -> Dict[str, Any]:
        sentences = split_sentences(transcript_text)
        words = [w.lower() for w in _WORD.findall(transcript_text or "")]
        keywords = [w for w in words if len(w) > 3 and w not in STOP_WORDS]
        if not sentences or not keywords:
            return {}

        counts = Counter(keywords).most_common(TOPIC_COUNT)
        top_count = counts[0][1]
        topics = [
            {"topic": word, "relevance": max(1, round(100 * count / top_count))}
            for word, count in counts
        ]

        topic_words = {word for word, _ in counts}
        covered = sum(1 for s in sentences if topic_words & set(_WORD.findall(s.lower())))
        agenda_coverage = round(100 * covered / len(sentences))

        action_items = []
        for sentence in sentences:
            if len(action_items) >= 5:
                break
            if _ACTION_CUES.search(sentence):
                match = _ASSIGNEE.match(sentence)
                action_items.append({"task": sentence, "assignee": match.group(1) if match else None})

        diversity = len(set(keywords)) / len(keywords)
        overall = round(45 + 30 * diversity + min(len(sentences), 25))
        return {
            "overallScore": overall,
            "agendaCoverage": agenda_coverage,
            "agendaExplanation": (
                f"Local estimate: {covered} of {len(sentences)} sentences touch the dominant topics."
            ),
            "actionItems": action_items,
            "topics": topics,
        }
