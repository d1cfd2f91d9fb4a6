"""Tests for the AI feature pipeline using the mock Language Service."""

import asyncio

import pytest

from models import ContextMessage, FormalityLevel, ReplyCategory

from chatsync.ai import AIFeatures, MemoryResultCache, MockLanguageService, RateLimiter, ResultCache
from chatsync.config import RateLimitConfig
from chatsync.errors import (
    DeadlineExceededError,
    InvalidArgumentError,
    LanguageServiceError,
    NotAuthenticatedError,
    NotFoundError,
    RateLimitExceededError,
)
from chatsync.store import InMemoryCacheStorage, InMemoryRateLimitStorage


@pytest.fixture
def language():
    return MockLanguageService()


def make_features(language, limits=None, timeout=None) -> AIFeatures:
    return AIFeatures(
        language=language,
        cache=ResultCache(InMemoryCacheStorage(), memory=MemoryResultCache()),
        limiter=RateLimiter(InMemoryRateLimitStorage(), limits=limits),
        timeout=timeout,
    )


def context():
    return [
        ContextMessage(id="m1", sender_id="me", text="hey, I'm free later", timestamp=1),
        ContextMessage(id="m2", sender_id="them", text="Want to grab dinner?", timestamp=2),
    ]


class TestTranslate:
    """Test translation through cache and rate limit."""

    @pytest.mark.asyncio
    async def test_second_call_is_cached(self, language):
        features = make_features(language)

        first = await features.translate("u1", "Hello", "es")
        second = await features.translate("u1", "Hello", "es")

        assert first.translated_text == "Hola"
        assert first.cached is False
        assert second.translated_text == "Hola"
        assert second.cached is True
        assert language.calls["translation"] == 1

    @pytest.mark.asyncio
    async def test_cache_is_shared_across_users(self, language):
        features = make_features(language)

        await features.translate("u1", "Hello", "es")
        result = await features.translate("u2", "Hello", "ES")

        assert result.cached is True
        assert language.calls["translation"] == 1

    @pytest.mark.asyncio
    async def test_requires_user(self, language):
        features = make_features(language)
        with pytest.raises(NotAuthenticatedError):
            await features.translate(None, "Hello", "es")
        assert language.calls["translation"] == 0

    @pytest.mark.asyncio
    async def test_argument_checks(self, language):
        features = make_features(language)
        with pytest.raises(InvalidArgumentError):
            await features.translate("u1", "   ", "es")
        with pytest.raises(InvalidArgumentError):
            await features.translate("u1", "Hello", "spanish")
        with pytest.raises(InvalidArgumentError):
            await features.translate("u1", "x" * 10_001, "es")

    @pytest.mark.asyncio
    async def test_rate_limit_counts_cache_hits(self, language):
        """The limit is checked before the cache, so hits still spend budget."""
        features = make_features(
            language, limits={"translation": RateLimitConfig(max_requests=2, window_minutes=60)}
        )

        await features.translate("u1", "Hello", "es")
        await features.translate("u1", "Hello", "es")
        with pytest.raises(RateLimitExceededError):
            await features.translate("u1", "Hello", "es")

        assert language.calls["translation"] == 1

    @pytest.mark.asyncio
    async def test_invalid_requests_do_not_spend_budget(self, language):
        features = make_features(
            language, limits={"translation": RateLimitConfig(max_requests=1, window_minutes=60)}
        )
        with pytest.raises(InvalidArgumentError):
            await features.translate("u1", "", "es")

        result = await features.translate("u1", "Hello", "es")

        assert result.translated_text == "Hola"

    @pytest.mark.asyncio
    async def test_timeout(self):
        language = MockLanguageService(delay=0.5)
        features = make_features(language, timeout=0.01)

        with pytest.raises(DeadlineExceededError):
            await features.translate("u1", "Hello", "es")

    @pytest.mark.asyncio
    async def test_distinct_requests_run_in_parallel(self):
        """Waiting on another user's translation never eats into the deadline."""
        language = MockLanguageService(delay=0.3)
        features = make_features(language, timeout=0.5)
        loop = asyncio.get_running_loop()
        started = loop.time()

        results = await asyncio.gather(
            features.translate("u1", "Hello", "es"),
            features.translate("u2", "Thank you", "es"),
            features.translate("u3", "Good morning", "es"),
        )

        assert loop.time() - started < 0.5
        assert [r.cached for r in results] == [False, False, False]
        assert language.calls["translation"] == 3

    @pytest.mark.asyncio
    async def test_service_failure_is_wrapped_and_not_cached(self, language):
        features = make_features(language)
        language.fail_next(RuntimeError("upstream 500"))

        with pytest.raises(LanguageServiceError):
            await features.translate("u1", "Hello", "es")

        result = await features.translate("u1", "Hello", "es")
        assert result.cached is False
        assert language.calls["translation"] == 2


class TestTextFeatures:
    @pytest.mark.asyncio
    async def test_detect_language(self, language):
        features = make_features(language)

        assert (await features.detect_language("u1", "¿Qué tal?")).language_code == "es"
        assert (await features.detect_language("u1", "Good morning")).language_code == "en"

    @pytest.mark.asyncio
    async def test_cultural_context(self, language):
        features = make_features(language)

        result = await features.cultural_context("u1", "Break a leg tonight!", "en")

        assert result.has_insights
        assert result.insights[0].actual_meaning == "good luck"

    @pytest.mark.asyncio
    async def test_formality(self, language):
        features = make_features(language)

        result = await features.adjust_formality("u1", "hey there", "en", "es", "formal")

        assert result.formality_level == FormalityLevel.FORMAL
        assert result.adjusted_text == "[formal:es] hey there"

    @pytest.mark.asyncio
    async def test_formality_levels_are_cached_separately(self, language):
        features = make_features(language)

        await features.adjust_formality("u1", "hey there", "en", "es", "formal")
        casual = await features.adjust_formality("u1", "hey there", "en", "es", FormalityLevel.CASUAL)

        assert casual.cached is False
        assert language.calls["formality"] == 2

    @pytest.mark.asyncio
    async def test_unknown_formality_level(self, language):
        features = make_features(language)
        with pytest.raises(InvalidArgumentError):
            await features.adjust_formality("u1", "hey", "en", "es", "royal")


class TestSmartReplies:
    @pytest.mark.asyncio
    async def test_replies_and_style(self, language):
        features = make_features(language)

        result = await features.smart_replies("me", "c1", "m2", "en", context())

        assert len(result.replies) == 3
        assert result.replies[0].category == ReplyCategory.AFFIRMATIVE
        assert result.user_style.uses_contractions is True
        assert result.cached is False

        again = await features.smart_replies("me", "c1", "m2", "en", context())
        assert again.cached is True
        assert again.replies == result.replies

    @pytest.mark.asyncio
    async def test_incoming_must_be_in_context(self, language):
        features = make_features(language)
        with pytest.raises(NotFoundError):
            await features.smart_replies("me", "c1", "missing", "en", context())
        assert language.calls["smart_reply"] == 0


class TestTranscribeAndExtract:
    @pytest.mark.asyncio
    async def test_transcribe(self, language):
        features = make_features(language)

        result = await features.transcribe("u1", "https://cdn.example.com/voice/m9.m4a", "m9")

        assert result.text == "Transcript of m9.m4a"
        assert result.message_id == "m9"

    @pytest.mark.asyncio
    async def test_transcribe_needs_http_url(self, language):
        features = make_features(language)
        with pytest.raises(InvalidArgumentError):
            await features.transcribe("u1", "file:///tmp/a.m4a", "m9")

    @pytest.mark.asyncio
    async def test_extract_entities(self, language):
        features = make_features(language)

        result = await features.extract_entities(
            "u1",
            "Please send the slides by 2024-05-01, mail ana@example.com",
            message_id="m1",
            conversation_id="c1",
        )

        types = sorted(entity.type for entity in result.entities)
        assert types == ["ACTION_ITEM", "CONTACT", "DATE_TIME"]
        assert result.message_id == "m1"
        assert result.conversation_id == "c1"

    @pytest.mark.asyncio
    async def test_cached_extraction_takes_ids_from_request(self, language):
        features = make_features(language)
        text = "remember to call mom"

        await features.extract_entities("u1", text, message_id="m1", conversation_id="c1")
        result = await features.extract_entities("u1", text, message_id="m2", conversation_id="c2")

        assert result.cached is True
        assert result.message_id == "m2"
        assert result.conversation_id == "c2"
        assert language.calls["entity_extraction"] == 1
