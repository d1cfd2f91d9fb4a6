"""Language Service: the external AI capability behind every AI feature.

``ClaudeLanguageService`` answers text operations with the Claude Agent SDK
and transcribes audio through a Whisper-compatible HTTP endpoint.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)
from pydantic import TypeAdapter, ValidationError

from models import (
    ContextMessage,
    CulturalContextResult,
    CulturalInsight,
    ExtractedEntity,
    FormalityLevel,
    FormalityResult,
    LanguageDetectionResult,
    ReplyCategory,
    SmartReply,
    TranscriptionResult,
    TranslationResult,
    UserCommunicationStyle,
)

from chatsync.config import settings
from chatsync.errors import LanguageServiceError

logger = logging.getLogger(__name__)

# Only the most recent part of the window goes into the prompt
SMART_REPLY_CONTEXT_MESSAGES = 30
MAX_SMART_REPLIES = 3


class LanguageService(ABC):
    """Black-box text and audio operations."""

    @abstractmethod
    async def translate(
        self, text: str, target_language: str, source_language: str | None = None
    ) -> TranslationResult: ...

    @abstractmethod
    async def detect_language(self, text: str) -> LanguageDetectionResult: ...

    @abstractmethod
    async def cultural_context(self, text: str, language: str) -> CulturalContextResult: ...

    @abstractmethod
    async def adjust_formality(
        self, text: str, source_language: str, target_language: str, level: FormalityLevel
    ) -> FormalityResult: ...

    @abstractmethod
    async def smart_replies(
        self,
        user_id: str,
        incoming: ContextMessage,
        context: list[ContextMessage],
        style: UserCommunicationStyle,
        target_language: str,
    ) -> list[SmartReply]: ...

    @abstractmethod
    async def transcribe(self, audio_url: str, message_id: str) -> TranscriptionResult: ...

    @abstractmethod
    async def extract_entities(self, text: str) -> list[ExtractedEntity]: ...


# ============= Prompts =============

TRANSLATE_PROMPT = """You are a professional translator. Translate the text below from {source} to {target}.
Maintain the original tone, context, and intent. Provide a natural, conversational translation.
Do not add explanations or notes - only return the translated text.

Text:
{text}"""

DETECT_PROMPT = """Detect the language of the text below. Return ONLY the ISO 639-1 language code (e.g. "en", "es", "fr", "ja", "zh", "ar").
If several languages are present, return the primary one. Return nothing except the 2-letter code.

Text:
{text}"""

CULTURAL_CONTEXT_PROMPT = """Analyze the following {language} text and identify any idioms, slang, cultural references, or expressions that may not translate literally.

For each phrase return an object with "phrase", "literal_translation", "actual_meaning", "context" (usage notes) and "formality" ("formal", "casual" or "slang").
Return ONLY a JSON array. If there are no special expressions, return [].

Text:
{text}"""

FORMALITY_INSTRUCTIONS = {
    FormalityLevel.FORMAL: "Use formal language: polite forms, honorifics and a professional register.",
    FormalityLevel.NEUTRAL: "Use a neutral register: polite but not stiff, suitable for most situations.",
    FormalityLevel.CASUAL: "Use casual language: informal forms, friendly and relaxed, as between friends.",
}

FORMALITY_PROMPT = """You are a professional translator specializing in cultural communication. Translate the text below from {source} to {target}.

{instructions}

For languages with formal/informal registers (Japanese keigo, Spanish usted/tú, German Sie/du, ...), strictly adhere to the {level} level.
Return ONLY the translated text, nothing else.

Text:
{text}"""

SMART_REPLY_PROMPT = """You are generating reply suggestions for a messaging app.
Suggest {count} contextually appropriate replies in {language} that match the user's communication style:
- Tone: {style.tone.value}
- Average message length: {style.avg_message_length} words
- Emoji usage: {style.emoji_usage.value}
- Contractions: {contractions}
- Punctuation: {style.punctuation_style}
{phrases}
Vary the lengths: one short (3-5 words), one medium (6-12 words), one longer (13-20 words).
Categorize each as AFFIRMATIVE, NEGATIVE, QUESTION or NEUTRAL and give a confidence between 0 and 1.

Return ONLY a JSON object: {{"replies": [{{"text": "...", "confidence": 0.95, "category": "AFFIRMATIVE"}}]}}

CONVERSATION CONTEXT:
{conversation}

INCOMING MESSAGE (requiring reply):
Other: {incoming}"""

EXTRACT_PROMPT = """Extract structured entities from the message below. Be conservative: only extract entities you are confident about.

Return ONLY a JSON array. Each item has "type" and "text" (the exact text from the message) and "confidence" (0-1), plus:
- ACTION_ITEM: "task", "priority" ("low", "medium" or "high"), optional "assigned_to", "due_date"
- DATE_TIME: "date_time" (ISO 8601), "is_range", optional "end_date_time", "description"
- CONTACT: optional "name", "email", "phone"
- LOCATION: "address", optional "place_name", "latitude", "longitude"
If there are no entities, return [].

Message:
{text}"""

_FENCE = re.compile(r"^```(?:json)?\s*|\s*```$")

_entities_adapter = TypeAdapter(list[ExtractedEntity])


class ClaudeLanguageService(LanguageService):
    """Language Service backed by Claude (text) and a Whisper-style API (audio)."""

    def __init__(self, model: str | None = None, timeout: float | None = None):
        self.model = model or settings.claude_model
        self.timeout = timeout or settings.language_service_timeout_seconds

    async def _ask(self, prompt: str) -> str:
        options = ClaudeAgentOptions(
            model=self.model,
            permission_mode="bypassPermissions",
            allowed_tools=[],
            max_turns=1,
        )

        collected_text: list[str] = []
        async for message in query(prompt=prompt, options=options):
            if isinstance(message, AssistantMessage):
                for block in message.content:
                    if isinstance(block, TextBlock):
                        collected_text.append(block.text)
            elif isinstance(message, ResultMessage):
                if message.is_error:
                    logger.error(f"Claude error: {message.result}")
                    raise LanguageServiceError(message.result or "Unknown error")

        answer = "\n".join(collected_text).strip()
        if not answer:
            raise LanguageServiceError("Empty answer from language model")
        return answer

    async def _ask_json(self, prompt: str) -> Any:
        answer = await self._ask(prompt)
        try:
            return json.loads(_FENCE.sub("", answer))
        except json.JSONDecodeError as e:
            logger.error(f"Unparseable model answer: {answer[:200]!r}")
            raise LanguageServiceError("Language model returned invalid JSON") from e

    async def translate(
        self, text: str, target_language: str, source_language: str | None = None
    ) -> TranslationResult:
        translated = await self._ask(
            TRANSLATE_PROMPT.format(
                source=source_language or "the detected language", target=target_language, text=text
            )
        )
        return TranslationResult(
            translated_text=translated,
            source_language=source_language or "auto",
            target_language=target_language,
        )

    async def detect_language(self, text: str) -> LanguageDetectionResult:
        answer = (await self._ask(DETECT_PROMPT.format(text=text))).strip().strip('"').lower()
        if not re.fullmatch(r"[a-z]{2}", answer):
            raise LanguageServiceError(f"Not a language code: {answer[:20]!r}")
        return LanguageDetectionResult(language_code=answer)

    async def cultural_context(self, text: str, language: str) -> CulturalContextResult:
        items = await self._ask_json(CULTURAL_CONTEXT_PROMPT.format(language=language, text=text))
        if not isinstance(items, list):
            raise LanguageServiceError("Expected a JSON array of insights")
        insights = []
        for item in items:
            try:
                insights.append(CulturalInsight.model_validate(item))
            except ValidationError as e:
                logger.warning(f"Skipping malformed insight {item!r}: {e.error_count()} error(s)")
        return CulturalContextResult(language=language, insights=insights)

    async def adjust_formality(
        self, text: str, source_language: str, target_language: str, level: FormalityLevel
    ) -> FormalityResult:
        adjusted = await self._ask(
            FORMALITY_PROMPT.format(
                source=source_language,
                target=target_language,
                instructions=FORMALITY_INSTRUCTIONS[level],
                level=level.value,
                text=text,
            )
        )
        return FormalityResult(
            original_text=text,
            adjusted_text=adjusted,
            source_language=source_language,
            target_language=target_language,
            formality_level=level,
        )

    async def smart_replies(
        self,
        user_id: str,
        incoming: ContextMessage,
        context: list[ContextMessage],
        style: UserCommunicationStyle,
        target_language: str,
    ) -> list[SmartReply]:
        conversation = "\n".join(
            f"{'You' if m.sender_id == user_id else 'Other'}: {m.text}"
            for m in context[-SMART_REPLY_CONTEXT_MESSAGES:]
        )
        answer = await self._ask_json(
            SMART_REPLY_PROMPT.format(
                count=MAX_SMART_REPLIES,
                language=target_language,
                style=style,
                contractions="uses contractions" if style.uses_contractions else "prefers full words",
                phrases=f"- Common phrases: {', '.join(style.common_phrases)}" if style.common_phrases else "",
                conversation=conversation,
                incoming=incoming.text,
            )
        )
        raw = answer.get("replies", []) if isinstance(answer, dict) else []

        replies = []
        for index, item in enumerate(raw[:MAX_SMART_REPLIES]):
            if not isinstance(item, dict):
                continue
            text = item.get("text") or item.get("reply_text") or ""
            if not text:
                continue
            try:
                category = ReplyCategory(item.get("category", "NEUTRAL"))
            except ValueError:
                category = ReplyCategory.NEUTRAL
            confidence = item.get("confidence")
            if not isinstance(confidence, (int, float)) or not 0 <= confidence <= 1:
                confidence = round(0.9 - index * 0.1, 2)
            replies.append(SmartReply(reply_text=text, confidence=confidence, category=category))

        if len(replies) < MAX_SMART_REPLIES:
            logger.warning(f"Only {len(replies)} smart replies generated, expected {MAX_SMART_REPLIES}")
        return replies

    async def transcribe(self, audio_url: str, message_id: str) -> TranscriptionResult:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            try:
                audio = await client.get(audio_url)
                audio.raise_for_status()
                response = await client.post(
                    f"{settings.transcription_api_url}/audio/transcriptions",
                    headers={"Authorization": f"Bearer {settings.transcription_api_key}"},
                    data={"model": settings.transcription_model, "response_format": "verbose_json"},
                    files={"file": ("audio.m4a", audio.content, "audio/mp4")},
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                logger.error(f"Transcription HTTP error: {e}")
                raise LanguageServiceError(f"HTTP {e.response.status_code} during transcription") from e
            except httpx.RequestError as e:
                logger.error(f"Transcription request error: {e}")
                raise LanguageServiceError(f"Transcription request failed: {e}") from e

        body = response.json()
        return TranscriptionResult(
            text=body.get("text", ""),
            language=body.get("language") or "unknown",
            message_id=message_id,
        )

    async def extract_entities(self, text: str) -> list[ExtractedEntity]:
        items = await self._ask_json(EXTRACT_PROMPT.format(text=text))
        if not isinstance(items, list):
            raise LanguageServiceError("Expected a JSON array of entities")
        entities = []
        for item in items:
            try:
                entities.extend(_entities_adapter.validate_python([item]))
            except ValidationError as e:
                logger.warning(f"Skipping malformed entity {item!r}: {e.error_count()} error(s)")
        return entities
