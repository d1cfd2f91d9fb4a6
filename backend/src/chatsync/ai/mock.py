"""Mock Language Service for fast testing without API calls.

Returns deterministic canned answers, counts calls per operation, and can be
told to stall (to exercise deadlines) or fail.
"""

import asyncio
import logging
import re
from collections import Counter

from models import (
    ActionItem,
    ContactEntity,
    ContextMessage,
    CulturalContextResult,
    CulturalInsight,
    DateTimeEntity,
    ExtractedEntity,
    Formality,
    FormalityLevel,
    FormalityResult,
    LanguageDetectionResult,
    ReplyCategory,
    SmartReply,
    TranscriptionResult,
    TranslationResult,
    UserCommunicationStyle,
)

from chatsync.ai.language import LanguageService

logger = logging.getLogger(__name__)

TRANSLATIONS = {
    ("hello", "es"): "Hola",
    ("hello", "fr"): "Bonjour",
    ("hello", "de"): "Hallo",
    ("thank you", "es"): "Gracias",
    ("good morning", "es"): "Buenos días",
    ("hola", "en"): "Hello",
}

# Pattern -> ISO 639-1 code, checked in order
LANGUAGE_PATTERNS = [
    (r"[぀-ヿ]", "ja"),
    (r"[一-鿿]", "zh"),
    (r"[가-힯]", "ko"),
    (r"[؀-ۿ]", "ar"),
    (r"[Ѐ-ӿ]", "ru"),
    (r"[ñ¿¡]|\b(hola|gracias|qué|buenos|adiós)\b", "es"),
    (r"\b(bonjour|merci|oui|très)\b", "fr"),
    (r"\b(hallo|danke|bitte|nicht)\b", "de"),
]

IDIOMS = {
    "break a leg": CulturalInsight(
        phrase="break a leg",
        literal_translation="romperse una pierna",
        actual_meaning="good luck",
        context="Wishes someone success, especially before a performance",
        formality=Formality.CASUAL,
    ),
    "piece of cake": CulturalInsight(
        phrase="piece of cake",
        literal_translation="pedazo de pastel",
        actual_meaning="something very easy",
        context="Describes a task that needs little effort",
        formality=Formality.CASUAL,
    ),
    "cuesta un ojo de la cara": CulturalInsight(
        phrase="cuesta un ojo de la cara",
        literal_translation="costs an eye of the face",
        actual_meaning="it is very expensive",
        context="Spanish idiom, like 'costs an arm and a leg'",
        formality=Formality.CASUAL,
    ),
}

EMAIL_PATTERN = re.compile(r"[\w.+-]+@[\w-]+\.[\w.]+")
PHONE_PATTERN = re.compile(r"\+?\d[\d\s().-]{7,}\d")
ACTION_PATTERN = re.compile(r"\b(?:remember to|don't forget to|todo:|please)\s+([^.!?\n]+)", re.IGNORECASE)
ISO_DATE_PATTERN = re.compile(r"\b\d{4}-\d{2}-\d{2}(?:T\d{2}:\d{2})?\b")


class MockLanguageService(LanguageService):
    """Provides predictable answers for testing."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: Counter[str] = Counter()
        self._failures: list[Exception] = []

    def fail_next(self, error: Exception) -> None:
        self._failures.append(error)

    async def _call(self, operation: str) -> None:
        self.calls[operation] += 1
        logger.info(f"Mock language service: {operation}")
        if self.delay:
            await asyncio.sleep(self.delay)
        if self._failures:
            raise self._failures.pop(0)

    async def translate(
        self, text: str, target_language: str, source_language: str | None = None
    ) -> TranslationResult:
        await self._call("translation")
        translated = TRANSLATIONS.get((text.strip().lower(), target_language))
        return TranslationResult(
            translated_text=translated or f"[{target_language}] {text}",
            source_language=source_language or "auto",
            target_language=target_language,
        )

    async def detect_language(self, text: str) -> LanguageDetectionResult:
        await self._call("language_detection")
        lowered = text.lower()
        for pattern, code in LANGUAGE_PATTERNS:
            if re.search(pattern, lowered):
                return LanguageDetectionResult(language_code=code)
        return LanguageDetectionResult(language_code="en")

    async def cultural_context(self, text: str, language: str) -> CulturalContextResult:
        await self._call("cultural_context")
        lowered = text.lower()
        insights = [insight for phrase, insight in IDIOMS.items() if phrase in lowered]
        return CulturalContextResult(language=language, insights=insights)

    async def adjust_formality(
        self, text: str, source_language: str, target_language: str, level: FormalityLevel
    ) -> FormalityResult:
        await self._call("formality")
        return FormalityResult(
            original_text=text,
            adjusted_text=f"[{level.value}:{target_language}] {text}",
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
        await self._call("smart_reply")
        if incoming.text.rstrip().endswith("?"):
            return [
                SmartReply(reply_text="Yes, sure!", confidence=0.9, category=ReplyCategory.AFFIRMATIVE),
                SmartReply(reply_text="Sorry, I can't", confidence=0.8, category=ReplyCategory.NEGATIVE),
                SmartReply(reply_text="What time works for you?", confidence=0.7, category=ReplyCategory.QUESTION),
            ]
        return [
            SmartReply(reply_text="Sounds good", confidence=0.9, category=ReplyCategory.AFFIRMATIVE),
            SmartReply(reply_text="Got it, thanks", confidence=0.8, category=ReplyCategory.NEUTRAL),
            SmartReply(reply_text="Can you tell me more?", confidence=0.7, category=ReplyCategory.QUESTION),
        ]

    async def transcribe(self, audio_url: str, message_id: str) -> TranscriptionResult:
        await self._call("transcription")
        name = audio_url.rstrip("/").rsplit("/", 1)[-1]
        return TranscriptionResult(text=f"Transcript of {name}", language="en", message_id=message_id)

    async def extract_entities(self, text: str) -> list[ExtractedEntity]:
        await self._call("entity_extraction")
        entities: list[ExtractedEntity] = []
        for match in ACTION_PATTERN.finditer(text):
            entities.append(ActionItem(text=match.group(0), task=match.group(1).strip()))
        for match in ISO_DATE_PATTERN.finditer(text):
            entities.append(DateTimeEntity(text=match.group(0), date_time=match.group(0)))
        for match in EMAIL_PATTERN.finditer(text):
            entities.append(ContactEntity(text=match.group(0), email=match.group(0)))
        for match in PHONE_PATTERN.finditer(text):
            phone = match.group(0).strip()
            if ISO_DATE_PATTERN.fullmatch(phone):
                continue
            entities.append(ContactEntity(text=phone, phone=phone))
        return entities
