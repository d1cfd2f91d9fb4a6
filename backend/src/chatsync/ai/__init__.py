from chatsync.ai.cache import MemoryResultCache, ResultCache, cache_key
from chatsync.ai.features import AIFeatures, create_ai_features
from chatsync.ai.language import ClaudeLanguageService, LanguageService
from chatsync.ai.mock import MockLanguageService
from chatsync.ai.rate_limit import RateLimiter
from chatsync.ai.style import analyze_user_style

__all__ = [
    "AIFeatures",
    "ClaudeLanguageService",
    "LanguageService",
    "MemoryResultCache",
    "MockLanguageService",
    "RateLimiter",
    "ResultCache",
    "analyze_user_style",
    "cache_key",
    "create_ai_features",
]
