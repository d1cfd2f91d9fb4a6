"""AI feature orchestration.

Every operation runs the same pipeline: caller identity, argument checks,
rate limit, two-tier cache, then the Language Service under a deadline.
"""

import asyncio
import logging
import re
from typing import Awaitable, Callable, TypeVar

from pydantic import BaseModel

from models import (
    AIResult,
    ContextMessage,
    CulturalContextResult,
    ExtractionResult,
    FormalityLevel,
    FormalityResult,
    LanguageDetectionResult,
    SmartReplySet,
    TranscriptionResult,
    TranslationResult,
)

from chatsync.ai.cache import MemoryResultCache, ResultCache, cache_key
from chatsync.ai.language import ClaudeLanguageService, LanguageService
from chatsync.ai.mock import MockLanguageService
from chatsync.ai.rate_limit import RateLimiter
from chatsync.ai.style import analyze_user_style
from chatsync.config import settings
from chatsync.db import Database, db
from chatsync.errors import (
    ChatSyncError,
    DeadlineExceededError,
    InvalidArgumentError,
    LanguageServiceError,
    NotAuthenticatedError,
    NotFoundError,
)
from chatsync.store import (
    InMemoryCacheStorage,
    InMemoryRateLimitStorage,
    PostgresCacheStorage,
    PostgresRateLimitStorage,
)

logger = logging.getLogger(__name__)

R = TypeVar("R", bound=AIResult)

LANGUAGE_CODE = re.compile(r"^[a-z]{2}$")


def _require_user(user_id: str | None) -> str:
    if not user_id:
        raise NotAuthenticatedError()
    return user_id


def _require_text(text: str | None, field: str = "text") -> str:
    if not text or not text.strip():
        raise InvalidArgumentError(f"{field} is required")
    if len(text) > settings.max_text_length:
        raise InvalidArgumentError(
            f"{field} is too long ({len(text)} > {settings.max_text_length} characters)"
        )
    return text


def _require_language(code: str | None, field: str) -> str:
    normalized = (code or "").strip().lower()
    if not LANGUAGE_CODE.match(normalized):
        raise InvalidArgumentError(f"{field} must be a two-letter ISO 639-1 code")
    return normalized


class AIFeatures:
    """Entry point for the AI functions."""

    def __init__(
        self,
        language: LanguageService,
        cache: ResultCache,
        limiter: RateLimiter,
        timeout: float | None = None,
    ):
        self.language = language
        self.cache = cache
        self.limiter = limiter
        self.timeout = timeout or settings.language_service_timeout_seconds

    async def _run(
        self,
        user_id: str,
        operation: str,
        key: str,
        result_type: type[R],
        compute: Callable[[], Awaitable[BaseModel]],
        **overrides,
    ) -> R:
        await self.limiter.check(user_id, operation)

        async def call() -> dict:
            try:
                result = await asyncio.wait_for(compute(), timeout=self.timeout)
            except asyncio.TimeoutError as e:
                logger.error(f"{operation} for {user_id} timed out after {self.timeout}s")
                raise DeadlineExceededError(f"{operation} timed out, please try again") from e
            except ChatSyncError:
                raise
            except Exception as e:
                logger.error(f"{operation} for {user_id} failed: {e!r}")
                raise LanguageServiceError(f"{operation} failed: {e}") from e
            return result.model_dump(mode="json", exclude={"cached"})

        value, cached = await self.cache.get_or_compute(key, settings.ttl_for(operation), call)
        logger.info(f"{operation} for {user_id} served (cached={cached})")
        return result_type.model_validate({**value, **overrides, "cached": cached})

    async def translate(
        self,
        user_id: str | None,
        text: str,
        target_language: str,
        source_language: str | None = None,
    ) -> TranslationResult:
        user_id = _require_user(user_id)
        text = _require_text(text)
        target = _require_language(target_language, "target_language")
        source = _require_language(source_language, "source_language") if source_language else None

        return await self._run(
            user_id,
            "translation",
            cache_key("translation", text=text, target_language=target),
            TranslationResult,
            lambda: self.language.translate(text, target, source),
        )

    async def detect_language(self, user_id: str | None, text: str) -> LanguageDetectionResult:
        user_id = _require_user(user_id)
        text = _require_text(text)
        return await self._run(
            user_id,
            "language_detection",
            cache_key("language_detection", text=text),
            LanguageDetectionResult,
            lambda: self.language.detect_language(text),
        )

    async def cultural_context(
        self, user_id: str | None, text: str, language: str
    ) -> CulturalContextResult:
        user_id = _require_user(user_id)
        text = _require_text(text)
        language = _require_language(language, "language")
        return await self._run(
            user_id,
            "cultural_context",
            cache_key("cultural_context", text=text, language=language),
            CulturalContextResult,
            lambda: self.language.cultural_context(text, language),
        )

    async def adjust_formality(
        self,
        user_id: str | None,
        text: str,
        source_language: str,
        target_language: str,
        level: FormalityLevel | str,
    ) -> FormalityResult:
        user_id = _require_user(user_id)
        text = _require_text(text)
        source = _require_language(source_language, "source_language")
        target = _require_language(target_language, "target_language")
        try:
            level = FormalityLevel(level)
        except ValueError as e:
            raise InvalidArgumentError("level must be formal, neutral or casual") from e

        return await self._run(
            user_id,
            "formality",
            cache_key(
                "formality",
                text=text,
                source_language=source,
                target_language=target,
                level=level.value,
            ),
            FormalityResult,
            lambda: self.language.adjust_formality(text, source, target, level),
        )

    async def smart_replies(
        self,
        user_id: str | None,
        conversation_id: str,
        incoming_message_id: str,
        target_language: str,
        context: list[ContextMessage],
    ) -> SmartReplySet:
        """Suggest up to three replies to incoming_message_id.

        context is the recent message window, oldest first; the user's own
        messages in it define the style the replies imitate.
        """
        user_id = _require_user(user_id)
        if not conversation_id or not incoming_message_id:
            raise InvalidArgumentError("conversation_id and incoming_message_id are required")
        target = _require_language(target_language, "target_language")
        incoming = next((m for m in context if m.id == incoming_message_id), None)
        if incoming is None:
            raise NotFoundError(f"Incoming message {incoming_message_id} not found")
        _require_text(incoming.text, "incoming message text")

        async def compute() -> SmartReplySet:
            style = analyze_user_style([m.text for m in context if m.sender_id == user_id])
            replies = await self.language.smart_replies(user_id, incoming, context, style, target)
            return SmartReplySet(replies=replies[:3], user_style=style)

        return await self._run(
            user_id,
            "smart_reply",
            cache_key(
                "smart_reply",
                conversation_id=conversation_id,
                incoming_message_id=incoming_message_id,
                target_language=target,
            ),
            SmartReplySet,
            compute,
        )

    async def transcribe(self, user_id: str | None, audio_url: str, message_id: str) -> TranscriptionResult:
        user_id = _require_user(user_id)
        if not audio_url or not audio_url.startswith(("http://", "https://")):
            raise InvalidArgumentError("audio_url must be an http(s) URL")
        if not message_id:
            raise InvalidArgumentError("message_id is required")
        return await self._run(
            user_id,
            "transcription",
            cache_key("transcription", audio_url=audio_url, message_id=message_id),
            TranscriptionResult,
            lambda: self.language.transcribe(audio_url, message_id),
        )

    async def extract_entities(
        self,
        user_id: str | None,
        text: str,
        message_id: str | None = None,
        conversation_id: str | None = None,
    ) -> ExtractionResult:
        user_id = _require_user(user_id)
        text = _require_text(text)

        async def compute() -> ExtractionResult:
            return ExtractionResult(entities=await self.language.extract_entities(text))

        # the entities depend on the text only; the IDs come from this request
        return await self._run(
            user_id,
            "entity_extraction",
            cache_key("entity_extraction", text=text),
            ExtractionResult,
            compute,
            message_id=message_id,
            conversation_id=conversation_id,
        )


def create_ai_features(
    language: LanguageService | None = None, database: Database | None = None
) -> AIFeatures:
    """Wire AIFeatures for the configured store backend and language service."""
    if language is None:
        if settings.language_service == "mock":
            language = MockLanguageService()
        else:
            language = ClaudeLanguageService()

    if settings.store_backend == "postgres":
        storage = PostgresCacheStorage(database or db, namespace="ai_results")
        counters = PostgresRateLimitStorage(database or db)
    else:
        storage = InMemoryCacheStorage()
        counters = InMemoryRateLimitStorage()

    return AIFeatures(
        language=language,
        cache=ResultCache(storage, memory=MemoryResultCache()),
        limiter=RateLimiter(counters),
    )
