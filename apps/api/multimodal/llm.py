import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from openai import OpenAI

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {
    "en": "English",
    "vi": "Vietnamese",
    "fr": "French",
    "es": "Spanish",
    "de": "German",
    "ja": "Japanese",
}

SUMMARY_LENGTH_INSTRUCTIONS = {
    "short": "Keep the summary concise, focusing only on the high-level purpose and outcomes. Limit to around 150-200 words.",
    "medium": "Balance brevity and detail. Aim for roughly 300-400 words.",
    "long": "Provide a comprehensive and detailed summary. Include specific examples mentioned, nuance in the discussion, and cover all minor topics. Length should be substantial (over 500 words).",
}


def get_openai_client(api_key: str) -> Optional[OpenAI]:
    """Get OpenAI client, handling placeholders."""
    if not api_key or "your_" in api_key or api_key == "test-key":
        return None
    return OpenAI(api_key=api_key)


def language_instruction(language: str) -> str:
    code = (language or "en").strip().lower()
    if code in ("", "auto"):
        return "the same language as the transcript"
    return LANGUAGE_NAMES.get(code, f"the language with ISO code '{code}'")


class OpenAIStudyBackend:
    """
    Server-side study content generation via OpenAI chat completions.

    Every method raises on transport or parse errors; callers decide whether
    to fall back.
    """

    name = "remote"

    def __init__(self, client: OpenAI, model: str = "gpt-4o-mini"):
        self.client = client
        self.model = model

    def _complete(self, system_prompt: str, user_prompt: str, json_mode: bool) -> str:
        kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": 0.3,
            "max_tokens": 2500,
        }
        if json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        response = self.client.chat.completions.create(**kwargs)
        return response.choices[0].message.content or ""

    async def _complete_json(self, system_prompt: str, user_prompt: str) -> Dict[str, Any]:
        content = await asyncio.to_thread(self._complete, system_prompt, user_prompt, True)
        data = json.loads(content)
        if not isinstance(data, dict):
            raise ValueError("Model response is not a JSON object")
        return data

    async def flashcards(self, transcript_text: str, language: str) -> List[Dict[str, Any]]:
        system_prompt = f"""
        You are an expert educator.
        Create up to 15 high-quality study flashcards in {language_instruction(language)} based strictly on the transcript.

        Requirements:
          - front: clear question or key term (short, specific).
          - back: concise answer (1-2 sentences) with the essential detail.

        Return a strict JSON object: {{"flashcards": [{{"front": "string", "back": "string"}}]}}
        """
        data = await self._complete_json(system_prompt, f"Transcript:\n{transcript_text}")
        return list(data.get("flashcards") or [])

    async def quiz(self, transcript_text: str, language: str) -> List[Dict[str, Any]]:
        system_prompt = f"""
        You are an expert assessment designer specializing in focused, high-quality quizzes.
        Create approximately 10 multiple-choice questions in {language_instruction(language)} based strictly on the transcript.

        Requirements:
          - Focus on the most important concepts, key facts, main arguments and decisions.
          - Limit each question to 15-20 words.
          - Provide exactly 4 options per question.
          - correctAnswer must exactly match one of the options.
          - explanation briefly clarifies why the correct answer is right.

        Return a strict JSON object:
        {{"questions": [{{"question": "string", "options": ["string"], "correctAnswer": "string", "explanation": "string"}}]}}
        """
        data = await self._complete_json(system_prompt, f"Transcript:\n{transcript_text}")
        return list(data.get("questions") or [])

    async def summary(self, transcript_text: str, language: str, length: str = "medium") -> str:
        system_prompt = f"""
        You are an expert educational assistant.
        Summarize the following meeting/lecture transcript in {language_instruction(language)}.

        {SUMMARY_LENGTH_INSTRUCTIONS.get(length, SUMMARY_LENGTH_INSTRUCTIONS["medium"])}

        Grounding rules:
        - Base the summary strictly on the transcript; do not speculate.
        - If no action items exist, state "None" for that section.
        - Use hyphens (-) for bullets, never asterisks.

        Use this Markdown structure:
        ## Executive Summary
        ## Key Takeaways
        ## Main Arguments & Discussion Points
        ## Action Items
        """
        return await asyncio.to_thread(self._complete, system_prompt, f"Transcript:\n{transcript_text}", False)

    async def insights(self, transcript_text: str, language: str) -> Dict[str, Any]:
        system_prompt = f"""
        You are a rigorous meeting analyst. Respond in {language_instruction(language)}.
        Base all outputs strictly on the transcript. Use empty arrays when nothing applies.

        Return a strict JSON object matching this schema:
        {{
          "overallScore": 0-100,
          "agendaCoverage": 0-100,
          "agendaExplanation": "1-2 sentences",
          "actionItems": [{{"task": "string", "assignee": "string or null"}}],
          "topics": [{{"topic": "string", "relevance": 0-100}}]
        }}
        """
        return await self._complete_json(system_prompt, f"Transcript:\n{transcript_text}")

    def _chat_messages(
        self,
        history: List[Dict[str, str]],
        message: str,
        context: str,
        language: str,
    ) -> List[Dict[str, str]]:
        system_prompt = f"""
        You are a helpful teaching assistant. You have access to the transcript of a lecture or meeting.
        Answer the user's questions based primarily on this transcript.
        Respond in {language_instruction(language)}.

        Formatting rules:
        - Do NOT use asterisks (*) for bullets; use hyphens (-) or numbered lists.

        Transcript Context:
        {context}
        """
        messages = [{"role": "system", "content": system_prompt}]
        for turn in history:
            role = "assistant" if turn.get("role") in ("model", "assistant") else "user"
            text = turn.get("text") or ""
            if text.strip():
                messages.append({"role": role, "content": text})
        messages.append({"role": "user", "content": message})
        return messages

    def _chat_sync(self, messages: List[Dict[str, str]]) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=messages,
            temperature=0.3,
            max_tokens=1200,
        )
        return response.choices[0].message.content or ""

    async def chat(self, history: List[Dict[str, str]], message: str, context: str, language: str) -> str:
        messages = self._chat_messages(history, message, context, language)
        return await asyncio.to_thread(self._chat_sync, messages)


def build_study_backend(api_key: str, model: str) -> Optional[OpenAIStudyBackend]:
    client = get_openai_client(api_key)
    if client is None:
        logger.warning("OpenAI API key missing; study content will use the local generator.")
        return None
    return OpenAIStudyBackend(client, model=model)
