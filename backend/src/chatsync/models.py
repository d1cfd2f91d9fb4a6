"""API-specific request models."""

from pydantic import BaseModel, Field

from models import ContextMessage, FormalityLevel


class TranslateRequest(BaseModel):
    text: str = Field(..., description="Text to translate")
    target_language: str = Field(..., description="ISO 639-1 target code")
    source_language: str | None = Field(None, description="ISO 639-1 source code, detected if omitted")


class DetectLanguageRequest(BaseModel):
    text: str


class CulturalContextRequest(BaseModel):
    text: str
    language: str = Field(..., description="Language the text is written in")


class FormalityRequest(BaseModel):
    text: str
    source_language: str
    target_language: str
    formality_level: FormalityLevel


class SmartRepliesRequest(BaseModel):
    """Request model for reply suggestions."""

    conversation_id: str
    incoming_message_id: str
    target_language: str = "en"
    context: list[ContextMessage] = Field(
        default_factory=list, description="Recent messages, oldest first"
    )


class TranscribeRequest(BaseModel):
    audio_url: str = Field(..., description="Where the voice message audio can be fetched")
    message_id: str


class ExtractRequest(BaseModel):
    text: str
    message_id: str | None = None
    conversation_id: str | None = None
