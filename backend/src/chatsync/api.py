"""FastAPI application exposing the AI functions."""

import logging

from fastapi import Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse

from models import (
    CulturalContextResult,
    ExtractionResult,
    FormalityResult,
    LanguageDetectionResult,
    SmartReplySet,
    TranscriptionResult,
    TranslationResult,
)

from chatsync import __version__
from chatsync.ai import AIFeatures, create_ai_features
from chatsync.config import settings
from chatsync.db import db
from chatsync.errors import (
    ChatSyncError,
    DeadlineExceededError,
    InvalidArgumentError,
    LanguageServiceError,
    MalformedRemoteDataError,
    NotAuthenticatedError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitExceededError,
    RemoteUnavailableError,
)
from chatsync.models import (
    CulturalContextRequest,
    DetectLanguageRequest,
    ExtractRequest,
    FormalityRequest,
    SmartRepliesRequest,
    TranscribeRequest,
    TranslateRequest,
)

logger = logging.getLogger(__name__)

app = FastAPI(
    title="ChatSync AI API",
    description="Translation, cultural context, formality, smart replies, transcription and extraction",
    version=__version__,
)

# Error class -> HTTP status, most specific first
STATUS_CODES: list[tuple[type[ChatSyncError], int]] = [
    (NotAuthenticatedError, 401),
    (InvalidArgumentError, 400),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (RateLimitExceededError, 429),
    (DeadlineExceededError, 504),
    (LanguageServiceError, 502),
    (MalformedRemoteDataError, 502),
    (RemoteUnavailableError, 503),
]

_features: AIFeatures | None = None


def get_features() -> AIFeatures:
    """AIFeatures for this process, built on first use."""
    global _features
    if _features is None:
        _features = create_ai_features()
    return _features


@app.on_event("startup")
async def startup_event():
    """Configure logging and connect the durable store if one is used."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.store_backend == "postgres":
        await db.connect()
        await db.ensure_tables_exist()
    logger.info(
        f"ChatSync API started (store={settings.store_backend}, "
        f"language_service={settings.language_service})"
    )


@app.on_event("shutdown")
async def shutdown_event():
    """Clean up on shutdown."""
    if db.is_connected:
        await db.disconnect()


@app.exception_handler(ChatSyncError)
async def chatsync_error_handler(request: Request, exc: ChatSyncError) -> JSONResponse:
    status_code = next((code for cls, code in STATUS_CODES if isinstance(exc, cls)), 500)
    if status_code >= 500:
        logger.error(f"{request.url.path} failed: {exc}")
    headers = {}
    if isinstance(exc, RateLimitExceededError):
        headers["Retry-After"] = str(exc.retry_after_seconds)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers=headers,
    )


# ============= Health =============


@app.get("/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "store": settings.store_backend,
        "language_service": settings.language_service,
    }


# ============= AI functions =============


@app.post("/ai/translate", response_model=TranslationResult)
async def translate(
    request: TranslateRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    """Translate text into the target language."""
    return await features.translate(
        user_id, request.text, request.target_language, request.source_language
    )


@app.post("/ai/detect-language", response_model=LanguageDetectionResult)
async def detect_language(
    request: DetectLanguageRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    return await features.detect_language(user_id, request.text)


@app.post("/ai/cultural-context", response_model=CulturalContextResult)
async def cultural_context(
    request: CulturalContextRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    """Explain idioms, slang and cultural references in a text."""
    return await features.cultural_context(user_id, request.text, request.language)


@app.post("/ai/formality", response_model=FormalityResult)
async def formality(
    request: FormalityRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    """Translate text at a chosen formality level."""
    return await features.adjust_formality(
        user_id,
        request.text,
        request.source_language,
        request.target_language,
        request.formality_level,
    )


@app.post("/ai/smart-replies", response_model=SmartReplySet)
async def smart_replies(
    request: SmartRepliesRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    return await features.smart_replies(
        user_id,
        request.conversation_id,
        request.incoming_message_id,
        request.target_language,
        request.context,
    )


@app.post("/ai/transcribe", response_model=TranscriptionResult)
async def transcribe(
    request: TranscribeRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    """Transcribe a voice message."""
    return await features.transcribe(user_id, request.audio_url, request.message_id)


@app.post("/ai/extract", response_model=ExtractionResult)
async def extract(
    request: ExtractRequest,
    user_id: str = Header(alias="X-User-ID", default=None),
    features: AIFeatures = Depends(get_features),
):
    """Extract action items, dates, contacts and locations from a text."""
    return await features.extract_entities(
        user_id, request.text, request.message_id, request.conversation_id
    )


def run():
    """Run the application."""
    import uvicorn

    uvicorn.run(
        "chatsync.api:app",
        host=settings.host,
        port=settings.port,
    )
